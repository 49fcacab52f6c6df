#!/usr/bin/env python3
"""
Unit tests for ISO remastering.

External tools are replaced by FakeIsoTools, which builds a miniature
read-only installer tree in place of bsdtar.
"""

import unittest
import sys
import os
import gzip
import hashlib
import tempfile
import shutil
from pathlib import Path
from unittest.mock import patch

# Add project root and tests directory to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from fake_tools import FakeIsoTools, INITRD_CONTENT, is_writable
from preseed_iso.iso_remaster import (
    IsoRemaster, RemasterError, force_grub_default, force_isolinux_default,
    VOLUME_LABEL, MBR_TEMPLATE_SIZE
)
from preseed_iso.logger import PreseedLogger
from preseed_iso.workspace import BuildContext

PRESEED_TEXT = "#Hardening Applied: false\nd-i passwd/username string alice\n"


class TestBootloaderTransforms(unittest.TestCase):
    """Test cases for the ISOLINUX and GRUB text edits."""

    def test_isolinux_timeout_and_default(self):
        result = force_isolinux_default("prompt 0\ntimeout 0\n")
        self.assertIn("timeout 30", result)
        self.assertNotIn("timeout 0\n", result)
        self.assertTrue(result.endswith("default auto\n"))

    def test_isolinux_is_idempotent(self):
        once = force_isolinux_default("prompt 0\ntimeout 0\n")
        self.assertEqual(force_isolinux_default(once), once)
        self.assertEqual(once.count("default auto"), 1)

    def test_isolinux_existing_default_kept(self):
        original = "default auto\ntimeout 30\n"
        self.assertEqual(force_isolinux_default(original), original)

    def test_isolinux_missing_trailing_newline(self):
        self.assertEqual(force_isolinux_default("prompt 0"), "prompt 0\ndefault auto\n")

    def test_grub_appends_once(self):
        once = force_grub_default("menuentry 'Install' {\n}")
        self.assertTrue(once.endswith('}\nset default="2>5"\nset timeout=3\n'))
        self.assertEqual(force_grub_default(once), once)

    def test_grub_only_missing_directive_added(self):
        result = force_grub_default("set timeout=3\n")
        self.assertEqual(result.count("set timeout=3"), 1)
        self.assertIn('set default="2>5"', result)


class TestIsoRemaster(unittest.TestCase):
    """Test cases for the remastering steps."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.base = Path(self.temp_dir)
        self.logger = PreseedLogger(log_dir=self.base / "logs", console=False)

        self.source_iso = self.base / "debian-13.1.0-amd64-netinst.iso"
        self.source_iso.write_bytes(bytes(range(256)) * 4)

        work_dir = self.base / "out" / "workdir.test"
        work_dir.mkdir(parents=True)
        self.context = BuildContext(output_dir=self.base / "out", work_dir=work_dir,
                                    source_iso=self.source_iso)
        self.context.preseed_path.write_text(PRESEED_TEXT)

        self.tools = FakeIsoTools()
        patcher = patch('preseed_iso.iso_remaster.run_command', self.tools)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.remaster = IsoRemaster(self.context, self.logger)

    def tearDown(self):
        self.logger.close()
        for dirpath, dirnames, filenames in os.walk(self.temp_dir):
            for name in dirnames + filenames:
                path = os.path.join(dirpath, name)
                if not os.path.islink(path):
                    os.chmod(path, 0o755)
        shutil.rmtree(self.temp_dir)

    def test_extract_creates_tree(self):
        root = self.remaster.extract_iso()

        self.assertEqual(root, self.context.iso_root)
        self.assertTrue((root / "install.amd" / "initrd.gz").is_file())
        self.assertEqual(self.tools.calls[0][:2], ["bsdtar", "-C"])

    def test_extract_missing_source(self):
        self.context.source_iso = self.base / "missing.iso"
        with self.assertRaises(RemasterError):
            self.remaster.extract_iso()

    def test_preseed_appended_to_initrd(self):
        self.remaster.extract_iso()
        initrd_gz = self.remaster.add_preseed_to_initrd()

        content = gzip.decompress(initrd_gz.read_bytes())
        self.assertTrue(content.startswith(INITRD_CONTENT))
        self.assertTrue(content.endswith(PRESEED_TEXT.encode()))
        self.assertEqual(self.tools.programs()[1:], ["gunzip", "cpio", "gzip"])
        self.assertFalse(is_writable(initrd_gz))
        self.assertFalse(is_writable(initrd_gz.parent))

    def test_cpio_appends_from_work_dir(self):
        self.remaster.extract_iso()
        with patch('preseed_iso.iso_remaster.run_command', wraps=self.tools) as mock_run:
            self.remaster.add_preseed_to_initrd()

        cpio_call = [c for c in mock_run.call_args_list if c.args[0][0] == "cpio"][0]
        self.assertIn("-A", [str(arg) for arg in cpio_call.args[0]])
        self.assertEqual(cpio_call.kwargs["cwd"], self.context.work_dir)
        self.assertEqual(cpio_call.kwargs["input_text"], "preseed.cfg\n")

    def test_cpio_archive_path_independent_of_cwd(self):
        previous_cwd = os.getcwd()
        os.chdir(self.temp_dir)
        self.addCleanup(os.chdir, previous_cwd)
        self.context.work_dir = Path("out") / "workdir.test"

        self.remaster.extract_iso()
        initrd_gz = self.remaster.add_preseed_to_initrd()

        cpio = [argv for argv in self.tools.calls if argv[0] == "cpio"][0]
        self.assertTrue(Path(cpio[cpio.index("-F") + 1]).is_absolute())
        self.assertTrue(gzip.decompress(initrd_gz.read_bytes()).endswith(PRESEED_TEXT.encode()))

    def test_tool_failure_carries_exit_code(self):
        self.tools.fail_on = "gunzip"
        self.tools.fail_code = 7
        self.remaster.extract_iso()

        with self.assertRaises(RemasterError) as ctx:
            self.remaster.add_preseed_to_initrd()
        self.assertEqual(ctx.exception.exit_code, 7)

    def test_bootloader_steps_keep_mode_and_are_idempotent(self):
        self.remaster.extract_iso()
        isolinux_cfg = self.context.iso_root / "isolinux" / "isolinux.cfg"
        grub_cfg = self.context.iso_root / "boot" / "grub" / "grub.cfg"
        modes = {path: os.stat(path).st_mode for path in (isolinux_cfg, grub_cfg)}

        for _ in range(2):
            self.remaster.set_isolinux_default()
            self.remaster.set_grub_default()

        self.assertEqual(isolinux_cfg.read_text().count("default auto"), 1)
        self.assertIn("timeout 30", isolinux_cfg.read_text())
        self.assertEqual(grub_cfg.read_text().count('set default="2>5"'), 1)
        self.assertEqual(grub_cfg.read_text().count("set timeout=3"), 1)
        for path, mode in modes.items():
            self.assertEqual(os.stat(path).st_mode, mode)

    def test_manifest_excludes_itself_and_skips_loops(self):
        self.remaster.extract_iso()
        manifest = self.remaster.recompute_md5_checksum()

        lines = manifest.read_text().splitlines()
        paths = [line.split("  ", 1)[1] for line in lines]

        self.assertNotIn("./md5sum.txt", paths)
        self.assertIn("./.disk/info", paths)
        self.assertIn("./install.amd/initrd.gz", paths)
        self.assertFalse(any(path.startswith("./debian/") for path in paths))
        self.assertEqual(paths, sorted(paths))
        self.assertFalse(is_writable(manifest))

        initrd = self.context.iso_root / "install.amd" / "initrd.gz"
        expected = hashlib.md5(initrd.read_bytes()).hexdigest()
        self.assertIn(f"{expected}  ./install.amd/initrd.gz", lines)

        warnings = [entry.message for entry in self.logger.operations if entry.level == "WARNING"]
        self.assertTrue(any("loop" in message for message in warnings))

    def test_manifest_stable_after_touch(self):
        self.remaster.extract_iso()
        first = self.remaster.recompute_md5_checksum().read_text()

        for dirpath, dirnames, filenames in os.walk(self.context.iso_root):
            for name in filenames:
                os.utime(os.path.join(dirpath, name))

        second = self.remaster.recompute_md5_checksum().read_text()
        self.assertEqual(first, second)

    def test_manifest_created_when_missing(self):
        self.remaster.extract_iso()
        root = self.context.iso_root
        os.chmod(root, 0o755)
        (root / "md5sum.txt").unlink()
        os.chmod(root, 0o555)

        manifest = self.remaster.recompute_md5_checksum()

        self.assertTrue(manifest.is_file())
        self.assertIn("./install.amd/initrd.gz", manifest.read_text())
        self.assertEqual(os.stat(root).st_mode & 0o7777, 0o555)
        self.assertFalse(is_writable(manifest))

    def test_manifest_write_failure_raises_remaster_error(self):
        self.remaster.extract_iso()
        os.chmod(self.context.iso_root, 0o555)

        with patch('preseed_iso.iso_remaster.make_readonly',
                   side_effect=PermissionError("Permission denied")):
            with self.assertRaises(RemasterError) as ctx:
                self.remaster.recompute_md5_checksum()

        self.assertIn("md5sum.txt", str(ctx.exception))
        self.assertEqual(os.stat(self.context.iso_root).st_mode & 0o7777, 0o555)

    def test_generate_new_iso(self):
        self.remaster.extract_iso()
        output = self.remaster.generate_new_iso()

        self.assertEqual(output, self.base / "out" / "preseed-debian-13.1.0-amd64-netinst.iso")
        self.assertTrue(output.is_file())

        mbr = self.context.work_dir / "mbr_template.bin"
        self.assertEqual(mbr.read_bytes(), self.source_iso.read_bytes()[:MBR_TEMPLATE_SIZE])

        xorriso = self.tools.calls[-1]
        self.assertEqual(xorriso[:3], ["xorriso", "-as", "mkisofs"])
        self.assertEqual(xorriso[xorriso.index("-V") + 1], VOLUME_LABEL)
        self.assertEqual(xorriso[xorriso.index("-isohybrid-mbr") + 1], str(mbr))
        self.assertIn("-isohybrid-gpt-basdat", xorriso)
        self.assertEqual(xorriso[-1], str(self.context.iso_root))

    def test_run_all_order(self):
        steps = []
        output = self.remaster.run_all(steps.append)

        self.assertEqual(len(steps), 6)
        self.assertEqual(self.tools.programs(), ["bsdtar", "gunzip", "cpio", "gzip", "xorriso"])
        self.assertTrue(output.is_file())

        manifest = (self.context.iso_root / "md5sum.txt").read_text()
        initrd = self.context.iso_root / "install.amd" / "initrd.gz"
        self.assertIn(hashlib.md5(initrd.read_bytes()).hexdigest(), manifest)


if __name__ == '__main__':
    unittest.main()
