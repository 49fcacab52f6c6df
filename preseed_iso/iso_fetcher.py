#!/usr/bin/env python3
"""
Installer Image Acquisition for Preseed ISO Builder

This module resolves the latest Debian netinst image from the published
SHA512SUMS manifest, downloads and verifies it, or accepts a local ISO
supplied by the operator.
"""

import urllib.request
import urllib.error
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from preseed_iso.checksum import verify_file_checksum
from preseed_iso.interactive_ui import PreseedUI
from preseed_iso.logger import PreseedLogger, LogCategory

DEBIAN_CD_BASE_URL = "https://cdimage.debian.org/debian-cd/current/amd64/iso-cd/"
SUMS_FILENAME = "SHA512SUMS"
NETINST_SUFFIX = "amd64-netinst.iso"
DOWNLOAD_CHUNK_SIZE = 64 * 1024

DOWNLOAD_ANSWERS = ("", "y", "yes")
LOCAL_ANSWERS = ("n", "no")


class FetchError(RuntimeError):
    """Raised when the installer image cannot be obtained or verified."""

    exit_code = 1


@dataclass
class IsoRelease:
    """A published installer image."""
    filename: str
    checksum: str
    url: str


class IsoFetcher:
    """Obtains the source installer image for a build."""

    def __init__(self, logger: PreseedLogger, base_url: str = DEBIAN_CD_BASE_URL):
        self.logger = logger
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"

    def fetch_latest_release(self) -> IsoRelease:
        """
        Look up the latest netinst image in the published checksum manifest.

        Returns:
            IsoRelease for the first manifest line naming a netinst ISO
        """
        sums_url = f"{self.base_url}{SUMS_FILENAME}"
        self.logger.log_info(LogCategory.FETCH, "fetch_latest",
                             f"Fetching latest Debian ISO information from {self.base_url}...")

        try:
            with urllib.request.urlopen(sums_url) as response:
                content = response.read().decode('utf-8')
        except (urllib.error.URLError, OSError) as e:
            raise FetchError(f"Failed to download {SUMS_FILENAME}. Cannot determine latest ISO: {e}")

        for line in content.splitlines():
            line = line.strip()
            if not line.endswith(NETINST_SUFFIX):
                continue
            parts = line.split()
            if len(parts) < 2:
                continue
            checksum, filename = parts[0], parts[1].lstrip('*')
            release = IsoRelease(
                filename=filename,
                checksum=checksum,
                url=f"{self.base_url}{filename}"
            )
            self.logger.log_info(LogCategory.FETCH, "fetch_latest",
                                 f"Latest Debian netinst ISO: {filename}")
            return release

        raise FetchError(f"Could not find {NETINST_SUFFIX} in {SUMS_FILENAME}.")

    def download(self, url: str, dest: Path, progress_callback=None) -> Path:
        """
        Download a file, streaming it to disk.

        Args:
            url: Source URL
            dest: Destination path
            progress_callback: Optional callback(message, percent)

        Returns:
            Path to the downloaded file
        """
        self.logger.log_info(LogCategory.FETCH, "download", f"Downloading {dest.name} from {url}...")
        dest.parent.mkdir(parents=True, exist_ok=True)

        try:
            with urllib.request.urlopen(url) as response:
                total_size = int(response.headers.get('Content-Length', 0) or 0)
                downloaded = 0

                with open(dest, 'wb') as f:
                    while True:
                        chunk = response.read(DOWNLOAD_CHUNK_SIZE)
                        if not chunk:
                            break
                        f.write(chunk)
                        downloaded += len(chunk)

                        if progress_callback and total_size > 0:
                            progress_callback(f"Downloading {dest.name}", downloaded * 100.0 / total_size)
        except (urllib.error.URLError, OSError) as e:
            if dest.exists():
                dest.unlink()
            raise FetchError(f"Download failed for {dest.name}: {e}")

        self.logger.log_info(LogCategory.FETCH, "download", f"Download complete: {dest}")
        return dest

    def obtain_latest(self, download_dir: Path, progress_callback=None) -> Path:
        """
        Return a verified copy of the latest netinst image in download_dir.

        A copy already present in download_dir is reused when its checksum
        matches; otherwise it is deleted and downloaded again. A fresh
        download that fails verification is fatal.
        """
        release = self.fetch_latest_release()
        iso_path = Path(download_dir) / release.filename

        if iso_path.is_file():
            self.logger.log_info(LogCategory.FETCH, "cached_iso",
                                 f"ISO {release.filename} already exists in {download_dir}. Verifying...")
            if verify_file_checksum(iso_path, release.checksum, logger=self.logger):
                return iso_path
            self.logger.log_warning(LogCategory.FETCH, "cached_iso",
                                    "Existing ISO checksum failed. Re-downloading.")
            iso_path.unlink()

        self.download(release.url, iso_path, progress_callback)

        if not verify_file_checksum(iso_path, release.checksum, logger=self.logger):
            raise FetchError("Downloaded ISO checksum verification failed. Aborting.")

        return iso_path

    def resolve_source(self, ui: PreseedUI, download_dir: Path,
                       choice: Optional[str] = None, progress_callback=None) -> Path:
        """
        Resolve the operator's answer to the ISO prompt into a source image.

        Args:
            ui: Prompt interface
            download_dir: Where the latest image is downloaded to
            choice: Pre-supplied answer; asked interactively when None
            progress_callback: Optional download progress callback

        Returns:
            Path to the source ISO
        """
        if choice is None:
            choice = ui.ask_iso_source()
        answer = choice.strip()

        if answer.lower() in LOCAL_ANSWERS:
            local_path = Path(ui.ask_local_iso_path().strip()).expanduser().resolve()
            if not local_path.is_file():
                raise FetchError(f"Local ISO file not found: {local_path}. Aborting.")
            self.logger.log_info(LogCategory.FETCH, "local_iso", f"Using local ISO: {local_path}")
            return local_path

        if answer.lower() in DOWNLOAD_ANSWERS:
            return self.obtain_latest(download_dir, progress_callback)

        local_path = Path(answer).expanduser().resolve()
        if not local_path.is_file():
            raise FetchError(f"Invalid input or local ISO file not found: {answer}. Aborting.")
        self.logger.log_info(LogCategory.FETCH, "local_iso", f"Using local ISO: {local_path}")
        return local_path
