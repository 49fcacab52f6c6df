#!/usr/bin/env python3
"""
Checksum verification for installer images.
"""

import hashlib
from pathlib import Path
from typing import Optional, Union

from preseed_iso.logger import PreseedLogger, LogCategory

DEFAULT_ALGORITHM = "sha512"
CHUNK_SIZE = 1024 * 1024


def compute_digest(file_path: Union[str, Path], algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Return the hex digest of the whole file."""
    digest = hashlib.new(algorithm)
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_file_checksum(file_path: Union[str, Path], expected: str,
                         algorithm: str = DEFAULT_ALGORITHM,
                         logger: Optional[PreseedLogger] = None) -> bool:
    """
    Compare a file's digest against a published value.

    The comparison is an exact string compare: an upper-case digest does not
    match a lower-case one.

    Args:
        file_path: File to hash
        expected: Published hex digest
        algorithm: hashlib algorithm name
        logger: Session logger for the verification result

    Returns:
        True if the digests match, False otherwise
    """
    if logger:
        logger.log_info(LogCategory.FETCH, "verify_checksum",
                        f"Verifying checksum for {file_path}...")

    calculated = compute_digest(file_path, algorithm)

    if calculated == expected:
        if logger:
            logger.log_info(LogCategory.FETCH, "verify_checksum",
                            f"Checksum VERIFIED for {file_path}.")
        return True

    if logger:
        logger.log_error(LogCategory.FETCH, "verify_checksum",
                         f"Checksum MISMATCH for {file_path}!",
                         {"algorithm": algorithm}, error_code="CHECKSUM_MISMATCH")
        logger.log_error(LogCategory.FETCH, "verify_checksum", f"Expected: {expected}")
        logger.log_error(LogCategory.FETCH, "verify_checksum", f"Got:      {calculated}")
    return False
