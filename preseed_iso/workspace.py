#!/usr/bin/env python3
"""
Work directory and run context for Preseed ISO Builder

A build owns a single temporary work directory. WorkDirectory removes it
on every exit path, and termination_signals() turns SIGHUP, SIGINT, SIGQUIT
and SIGTERM into exceptions so that the removal also runs when the build is
interrupted.
"""

import os
import shutil
import signal
import stat
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from preseed_iso.logger import PreseedLogger, LogCategory
from preseed_iso.preseed import PRESEED_FILENAME

ISO_TREE_DIRNAME = "isofiles"
OUTPUT_PREFIX = "preseed-"

WRITE_BITS = stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH

TERMINATION_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGHUP", "SIGINT", "SIGQUIT", "SIGTERM")
    if hasattr(signal, name)
)


class TerminationRequested(Exception):
    """Raised from a signal handler to unwind the build."""

    def __init__(self, signum: int):
        self.signum = signum
        self.exit_code = 128 + signum
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Received {name}")


@dataclass
class BuildContext:
    """Everything a build stage needs to know about the current run."""
    output_dir: Path
    work_dir: Path
    source_iso: Optional[Path] = None

    @property
    def iso_root(self) -> Path:
        return self.work_dir / ISO_TREE_DIRNAME

    @property
    def preseed_path(self) -> Path:
        return self.work_dir / PRESEED_FILENAME

    @property
    def output_iso(self) -> Path:
        if self.source_iso is None:
            raise ValueError("Source ISO has not been resolved yet")
        return self.output_dir / f"{OUTPUT_PREFIX}{self.source_iso.name}"


def _chmod(path: Path, add: int = 0, remove: int = 0):
    mode = stat.S_IMODE(os.stat(path).st_mode)
    os.chmod(path, (mode | add) & ~remove)


def make_writable(path: Union[str, Path], recursive: bool = False):
    """Grant the owner write permission, like chmod u+w [-R]."""
    path = Path(path)
    _chmod(path, add=stat.S_IWUSR)
    if recursive and path.is_dir() and not path.is_symlink():
        for root, dirs, files in os.walk(path):
            for name in dirs + files:
                child = Path(root) / name
                if not child.is_symlink():
                    _chmod(child, add=stat.S_IWUSR)


def make_readonly(path: Union[str, Path], recursive: bool = False):
    """Drop every write permission bit, like chmod -w [-R]."""
    path = Path(path)
    if recursive and path.is_dir() and not path.is_symlink():
        for root, dirs, files in os.walk(path, topdown=False):
            for name in dirs + files:
                child = Path(root) / name
                if not child.is_symlink():
                    _chmod(child, remove=WRITE_BITS)
    _chmod(path, remove=WRITE_BITS)


class WorkDirectory:
    """Context manager owning the temporary work directory of one build."""

    def __init__(self, parent: Union[str, Path], logger: PreseedLogger):
        self.parent = Path(parent).resolve()
        self.logger = logger
        self.path: Optional[Path] = None

    def __enter__(self) -> Path:
        self.parent.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix="workdir.", dir=self.parent))
        self.logger.log_debug(LogCategory.SYSTEM, "work_dir", f"Created work directory {self.path}")
        return self.path

    def __exit__(self, exc_type, exc_value, traceback):
        self.cleanup()
        return False

    def cleanup(self):
        """Remove the work directory, restoring write permission first."""
        if self.path is None or not self.path.exists():
            return

        self.logger.log_info(LogCategory.CLEANUP, "cleanup",
                             f"Cleaning up temporary work directory: {self.path}")

        iso_root = self.path / ISO_TREE_DIRNAME
        if iso_root.is_dir():
            make_writable(iso_root, recursive=True)
        make_writable(self.path)

        shutil.rmtree(self.path)
        self.path = None


@contextmanager
def termination_signals(signals=TERMINATION_SIGNALS):
    """Raise TerminationRequested when one of the given signals arrives."""
    def handler(signum, frame):
        raise TerminationRequested(signum)

    previous = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, handler)

    try:
        yield
    finally:
        for sig, old_handler in previous.items():
            signal.signal(sig, old_handler)
