#!/usr/bin/env python3
"""
ISO Remastering Module for Preseed ISO Builder

This module turns the extracted installer tree into an unattended
installer: the preseed file is appended to the initrd, ISOLINUX (BIOS) and
GRUB (UEFI) are switched to the automated entry, md5sum.txt is regenerated
and a hybrid ISO is mastered with xorriso.

The steps edit the tree in place and must run in the order of run_all().
"""

import os
import re
import shutil
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from preseed_iso.checksum import compute_digest
from preseed_iso.logger import PreseedLogger, LogCategory
from preseed_iso.tools import ToolError, run_command
from preseed_iso.workspace import BuildContext, make_readonly, make_writable

INSTALL_DIR = "install.amd"
INITRD_NAME = "initrd"
ISOLINUX_CFG = Path("isolinux") / "isolinux.cfg"
ISOLINUX_BIN = Path("isolinux") / "isolinux.bin"
GRUB_CFG = Path("boot") / "grub" / "grub.cfg"
MANIFEST_NAME = "md5sum.txt"
MBR_TEMPLATE_NAME = "mbr_template.bin"
MBR_TEMPLATE_SIZE = 432
VOLUME_LABEL = "Debian AUTO amd64"

ISOLINUX_DEFAULT = "default auto"
GRUB_DEFAULT = 'set default="2>5"'
GRUB_TIMEOUT = "set timeout=3"


class RemasterError(RuntimeError):
    """Raised when a remastering step fails."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def force_isolinux_default(text: str) -> str:
    """Lengthen the boot menu timeout and make the 'auto' entry the default."""
    text = text.replace("timeout 0", "timeout 30")
    if not re.search(rf"^{re.escape(ISOLINUX_DEFAULT)}", text, re.MULTILINE):
        text = _append_line(text, ISOLINUX_DEFAULT)
    return text


def force_grub_default(text: str) -> str:
    """Select the automated install entry and shorten the GRUB timeout."""
    if GRUB_DEFAULT not in text:
        text = _append_line(text, GRUB_DEFAULT)
    if GRUB_TIMEOUT not in text:
        text = _append_line(text, GRUB_TIMEOUT)
    return text


def _append_line(text: str, line: str) -> str:
    if text and not text.endswith("\n"):
        text += "\n"
    return f"{text}{line}\n"


class IsoRemaster:
    """Applies the unattended-install modifications to an extracted ISO tree."""

    def __init__(self, context: BuildContext, logger: PreseedLogger):
        self.context = context
        self.logger = logger

    def _run(self, command: List[str], cwd: Optional[Path] = None,
             input_text: Optional[str] = None):
        try:
            return run_command(command, logger=self.logger, cwd=cwd, input_text=input_text)
        except ToolError as e:
            raise RemasterError(str(e), exit_code=e.exit_code) from e

    def run_all(self, progress_callback: Optional[Callable[[str], None]] = None) -> Path:
        """
        Run every remastering step in order.

        Args:
            progress_callback: Optional callback receiving a step description

        Returns:
            Path to the generated ISO
        """
        steps: List[Tuple[str, Callable]] = [
            ("Extracting ISO...", self.extract_iso),
            ("Adding preseed file to initrd...", self.add_preseed_to_initrd),
            ("Setting 'auto' as default ISOLINUX boot entry...", self.set_isolinux_default),
            ("Setting 'auto' as default GRUB boot entry...", self.set_grub_default),
            ("Recomputing md5sum.txt...", self.recompute_md5_checksum),
            ("Generating new ISO...", self.generate_new_iso),
        ]

        result = None
        for description, step in steps:
            if progress_callback:
                progress_callback(description)
            result = step()
        return result

    def extract_iso(self) -> Path:
        """Unpack the source ISO into a fresh tree under the work directory."""
        source = self.context.source_iso
        iso_root = self.context.iso_root
        self.logger.start_operation(LogCategory.IMAGE, "extract_iso",
                                    f"Extracting iso: {source} into {iso_root}...")

        if source is None or not Path(source).is_file():
            self.logger.end_operation(False, error_code="SOURCE_MISSING")
            raise RemasterError(f"Source ISO not found: {source}")

        if iso_root.exists():
            make_writable(iso_root, recursive=True)
            shutil.rmtree(iso_root)
        iso_root.mkdir(parents=True)

        try:
            self._run(["bsdtar", "-C", iso_root, "-xf", source])
        except RemasterError:
            self.logger.end_operation(False, error_code="EXTRACT_FAILED")
            raise

        self.logger.end_operation(True)
        return iso_root

    def add_preseed_to_initrd(self) -> Path:
        """
        Append the preseed file to the installer initrd.

        The initrd is decompressed, the preseed file is appended to the
        existing newc cpio archive and the result is compressed again, so
        everything already in the ramdisk is kept.
        """
        install_dir = self.context.iso_root / INSTALL_DIR
        initrd = install_dir / INITRD_NAME
        initrd_gz = install_dir / f"{INITRD_NAME}.gz"
        preseed_path = self.context.preseed_path

        self.logger.start_operation(LogCategory.IMAGE, "add_preseed_to_initrd",
                                    f"Adding {preseed_path.name} to initrd...")

        if not initrd_gz.is_file():
            self.logger.end_operation(False, error_code="INITRD_MISSING")
            raise RemasterError(f"Initrd not found: {initrd_gz}")
        if not preseed_path.is_file():
            self.logger.end_operation(False, error_code="PRESEED_MISSING")
            raise RemasterError(f"Preseed file not found: {preseed_path}")

        make_writable(install_dir, recursive=True)
        try:
            self._run(["gunzip", initrd_gz])
            # cpio runs inside the work dir, so the archive path must be absolute
            self._run(["cpio", "-H", "newc", "-o", "-A", "-F", initrd.absolute()],
                      cwd=self.context.work_dir, input_text=f"{preseed_path.name}\n")
            self._run(["gzip", initrd])
        except RemasterError:
            self.logger.end_operation(False, error_code="INITRD_FAILED")
            raise
        make_readonly(install_dir, recursive=True)

        self.logger.end_operation(True)
        return initrd_gz

    def _rewrite_config(self, relative_path: Path, transform: Callable[[str], str]) -> Path:
        """Apply a text transform to a config file, keeping its permission bits."""
        path = self.context.iso_root / relative_path
        if not path.is_file():
            raise RemasterError(f"Bootloader configuration not found: {path}")

        original_mode = os.stat(path).st_mode & 0o7777
        text = path.read_text()
        updated = transform(text)

        if updated != text:
            make_writable(path)
            try:
                path.write_text(updated)
            finally:
                os.chmod(path, original_mode)
        return path

    def set_isolinux_default(self) -> Path:
        self.logger.log_info(LogCategory.IMAGE, "isolinux_default",
                             "Setting 'auto' as default ISOLINUX boot entry...")
        return self._rewrite_config(ISOLINUX_CFG, force_isolinux_default)

    def set_grub_default(self) -> Path:
        self.logger.log_info(LogCategory.IMAGE, "grub_default",
                             "Setting 'auto' as default GRUB boot entry...")
        return self._rewrite_config(GRUB_CFG, force_grub_default)

    def _iter_tree_files(self, directory: Path, relative: Path,
                         ancestors: frozenset) -> Iterator[Tuple[Path, Path]]:
        """Yield (relative path, path) of regular files, following symlinks."""
        real = os.path.realpath(directory)
        if real in ancestors:
            self.logger.log_warning(LogCategory.IMAGE, "recompute_md5",
                                    f"File system loop detected; skipping {relative}")
            return
        ancestors = ancestors | {real}

        for entry in sorted(os.scandir(directory), key=lambda e: e.name):
            entry_path = Path(entry.path)
            if entry.is_dir(follow_symlinks=True):
                yield from self._iter_tree_files(entry_path, relative / entry.name, ancestors)
            elif entry.is_file(follow_symlinks=True) and entry.name != MANIFEST_NAME:
                yield relative / entry.name, entry_path

    def build_manifest(self) -> str:
        """Return md5sum-style lines for every file in the tree but the manifest."""
        lines = []
        for relative, path in self._iter_tree_files(self.context.iso_root, Path("."), frozenset()):
            lines.append(f"{compute_digest(path, 'md5')}  ./{relative.as_posix()}")
        return "\n".join(lines) + "\n" if lines else ""

    def recompute_md5_checksum(self) -> Path:
        """Regenerate md5sum.txt after all tree modifications."""
        manifest = self.context.iso_root / MANIFEST_NAME
        self.logger.start_operation(LogCategory.IMAGE, "recompute_md5",
                                    "Calculating new md5 checksum for files in ISO structure...")

        content = self.build_manifest()
        iso_root_mode = os.stat(self.context.iso_root).st_mode & 0o7777
        try:
            # md5sum.txt may be missing, so the root must accept a new entry
            make_writable(self.context.iso_root)
            if manifest.exists():
                make_writable(manifest)
            manifest.write_text(content)
            make_readonly(manifest)
        except OSError as e:
            self.logger.end_operation(False, error_code="MANIFEST_FAILED")
            raise RemasterError(f"Failed to write {manifest}: {e}") from e
        finally:
            os.chmod(self.context.iso_root, iso_root_mode)

        self.logger.end_operation(True, details={"files": content.count("\n")})
        return manifest

    def generate_new_iso(self) -> Path:
        """Master the hybrid BIOS/UEFI ISO into the output directory."""
        source = Path(self.context.source_iso)
        output_iso = self.context.output_iso
        mbr_template = self.context.work_dir / MBR_TEMPLATE_NAME
        iso_root = self.context.iso_root

        self.logger.start_operation(LogCategory.IMAGE, "generate_new_iso",
                                    f"Generating new iso: {output_iso}...")

        with open(source, 'rb') as f:
            mbr = f.read(MBR_TEMPLATE_SIZE)
        if len(mbr) < MBR_TEMPLATE_SIZE:
            self.logger.end_operation(False, error_code="MBR_TOO_SHORT")
            raise RemasterError(f"Source ISO is too small to hold a boot sector: {source}")
        mbr_template.write_bytes(mbr)

        make_writable(iso_root / ISOLINUX_BIN)

        if output_iso.exists():
            self.logger.log_warning(LogCategory.IMAGE, "generate_new_iso",
                                    f"Replacing existing {output_iso}")
            output_iso.unlink()

        command = [
            "xorriso", "-as", "mkisofs", "-r",
            "-V", VOLUME_LABEL,
            "-o", output_iso,
            "-J", "-joliet-long",
            "-cache-inodes",
            "-isohybrid-mbr", mbr_template,
            "-b", "isolinux/isolinux.bin",
            "-c", "isolinux/boot.cat",
            "-boot-load-size", "4", "-boot-info-table",
            "-no-emul-boot", "-eltorito-alt-boot",
            "-e", "boot/grub/efi.img", "-no-emul-boot",
            "-isohybrid-gpt-basdat",
            "-isohybrid-apm-hfsplus",
            iso_root,
        ]
        try:
            self._run(command)
        except RemasterError:
            self.logger.end_operation(False, error_code="MASTERING_FAILED")
            raise

        self.logger.end_operation(True)
        self.logger.log_info(LogCategory.IMAGE, "generate_new_iso", f"New ISO created: {output_iso}")
        return output_iso
