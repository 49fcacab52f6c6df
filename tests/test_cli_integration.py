#!/usr/bin/env python3
"""
Integration tests for the Preseed ISO Builder CLI.

Runs main.py commands through typer's CliRunner with prompts answered by
mocks and the ISO tools emulated by FakeIsoTools.
"""

import unittest
from unittest.mock import patch
import sys
import os
import signal
import hashlib
import tempfile
import shutil
from pathlib import Path

# Add project root and tests directory to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from typer.testing import CliRunner
from main import app as main_app, default_output_dir
from fake_tools import FakeIsoTools, FakeMirror, sums_manifest, ISO_NAME
from preseed_iso.interactive_ui import PreseedUI, PromptCancelled
from preseed_iso.workspace import make_writable


FAKE_HASH = "$6$rounds=5000$abcdefgh$fakehashfakehashfakehash"


class RecordingTools(FakeIsoTools):
    """FakeIsoTools that keeps a copy of the preseed file appended to the initrd."""

    preseed_text = None

    def _cpio(self, argv, cwd, input_text):
        self.preseed_text = (Path(cwd) / input_text.strip()).read_text()
        super()._cpio(argv, cwd, input_text)


class TestMainCLI(unittest.TestCase):
    """Test cases for the informational commands."""

    def setUp(self):
        self.runner = CliRunner()
        self.temp_dir = tempfile.mkdtemp()
        self.log_dir = str(Path(self.temp_dir) / "logs")

    def tearDown(self):
        if os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir)

    def test_version_command(self):
        result = self.runner.invoke(main_app, ["version"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("Preseed ISO Builder", result.stdout)
        self.assertIn("0.1.0", result.stdout)

    def test_help_command(self):
        result = self.runner.invoke(main_app, ["--help"])

        self.assertEqual(result.exit_code, 0)
        for command in ("build", "preseed", "verify", "latest", "version"):
            self.assertIn(command, result.stdout)

    def test_verify_command(self):
        iso = Path(self.temp_dir) / "image.iso"
        iso.write_bytes(b"image")
        digest = hashlib.sha512(b"image").hexdigest()

        ok = self.runner.invoke(main_app, ["verify", str(iso), digest, "--log-dir", self.log_dir])
        bad = self.runner.invoke(main_app, ["verify", str(iso), "0" * 128, "--log-dir", self.log_dir])

        self.assertEqual(ok.exit_code, 0)
        self.assertEqual(bad.exit_code, 1)

    def test_verify_missing_file(self):
        result = self.runner.invoke(main_app, ["verify", str(Path(self.temp_dir) / "none.iso"), "abc"])
        self.assertEqual(result.exit_code, 1)

    @patch('urllib.request.urlopen')
    def test_latest_command(self, mock_urlopen):
        mock_urlopen.side_effect = FakeMirror(sums_manifest("c" * 128))

        result = self.runner.invoke(main_app, ["latest", "--log-dir", self.log_dir])

        self.assertEqual(result.exit_code, 0)
        self.assertIn(ISO_NAME, result.stdout)

    @patch('main.check_command', return_value=True)
    @patch('preseed_iso.credentials.hash_password', return_value=FAKE_HASH)
    @patch.object(PreseedUI, 'ask_hardening', return_value=True)
    @patch.object(PreseedUI, 'ask_password_confirmation', return_value="hunter2")
    @patch.object(PreseedUI, 'ask_password', return_value="hunter2")
    @patch.object(PreseedUI, 'ask_username', return_value="alice")
    def test_preseed_command(self, *mocks):
        output = Path(self.temp_dir) / "preseed.cfg"

        result = self.runner.invoke(main_app, ["preseed", "--output", str(output),
                                               "--log-dir", self.log_dir])

        self.assertEqual(result.exit_code, 0)
        content = output.read_text()
        self.assertTrue(content.startswith("#Hardening Applied: true"))
        self.assertIn(f"d-i passwd/user-password-crypted password {FAKE_HASH}", content)


@patch('main.check_dependencies')
@patch('preseed_iso.credentials.hash_password', return_value=FAKE_HASH)
@patch.object(PreseedUI, 'ask_password_confirmation', return_value="hunter2")
@patch.object(PreseedUI, 'ask_password', return_value="hunter2")
@patch.object(PreseedUI, 'ask_username', return_value="alice")
class TestBuildCommand(unittest.TestCase):
    """End-to-end builds with emulated tools."""

    def setUp(self):
        self.runner = CliRunner()
        self.temp_dir = tempfile.mkdtemp()
        self.output_dir = Path(self.temp_dir) / "out"
        self.log_dir = str(Path(self.temp_dir) / "logs")

        self.source_iso = Path(self.temp_dir) / "debian-13.1.0-amd64-netinst.iso"
        self.source_iso.write_bytes(bytes(range(256)) * 8)

        patcher = patch.object(PreseedUI, 'ask_iso_source', return_value=str(self.source_iso))
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        if os.path.exists(self.temp_dir):
            make_writable(self.temp_dir, recursive=True)
            shutil.rmtree(self.temp_dir)

    def build(self, tools, hardening=False):
        with patch('preseed_iso.iso_remaster.run_command', tools), \
                patch.object(PreseedUI, 'ask_hardening', return_value=hardening):
            return self.runner.invoke(main_app, [
                "build", "--output-dir", str(self.output_dir), "--log-dir", self.log_dir
            ])

    def leftover_work_dirs(self):
        return list(self.output_dir.glob("workdir.*"))

    def test_standard_build(self, *mocks):
        tools = RecordingTools()
        result = self.build(tools)

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual([p.name for p in self.output_dir.iterdir()],
                         ["preseed-debian-13.1.0-amd64-netinst.iso"])
        self.assertEqual(self.leftover_work_dirs(), [])

        self.assertIn("d-i passwd/username string alice", tools.preseed_text)
        self.assertIn("choose_recipe select atomic", tools.preseed_text)
        self.assertNotIn("expert_recipe", tools.preseed_text)
        self.assertNotIn("hunter2", tools.preseed_text)

    def test_hardened_build(self, *mocks):
        tools = RecordingTools()
        result = self.build(tools, hardening=True)

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("ufw aide", tools.preseed_text)
        self.assertEqual(tools.preseed_text.count("lv_name{"), 5)
        self.assertIn("mountpoint{ /boot/efi }", tools.preseed_text)
        self.assertIn("mountpoint{ /boot }", tools.preseed_text)

    def test_relative_output_dir(self, *mocks):
        previous_cwd = os.getcwd()
        os.chdir(self.temp_dir)
        self.addCleanup(os.chdir, previous_cwd)
        tools = RecordingTools()

        with patch('preseed_iso.iso_remaster.run_command', tools), \
                patch.object(PreseedUI, 'ask_hardening', return_value=False):
            result = self.runner.invoke(main_app, [
                "build", "--output-dir", "out", "--log-dir", self.log_dir
            ])

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertTrue((self.output_dir / "preseed-debian-13.1.0-amd64-netinst.iso").is_file())
        self.assertEqual(self.leftover_work_dirs(), [])
        cpio = [argv for argv in tools.calls if argv[0] == "cpio"][0]
        self.assertTrue(Path(cpio[cpio.index("-F") + 1]).is_absolute())

    def test_default_output_next_to_invoked_program(self, *mocks):
        launcher = self.output_dir / "preseed-iso"
        self.output_dir.mkdir()
        launcher.write_text("#!/bin/sh\n")

        with patch.object(sys, 'argv', [str(launcher)]), \
                patch('preseed_iso.iso_remaster.run_command', FakeIsoTools()), \
                patch.object(PreseedUI, 'ask_hardening', return_value=False):
            result = self.runner.invoke(main_app, ["build", "--log-dir", self.log_dir])

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertTrue((self.output_dir / "preseed-debian-13.1.0-amd64-netinst.iso").is_file())
        self.assertEqual(self.leftover_work_dirs(), [])

    def test_password_never_logged(self, *mocks):
        self.build(RecordingTools())

        for log_file in Path(self.log_dir).iterdir():
            self.assertNotIn("hunter2", log_file.read_text())

    def test_tool_failure_exit_code(self, *mocks):
        result = self.build(FakeIsoTools(fail_on="xorriso", fail_code=5))

        self.assertEqual(result.exit_code, 5)
        self.assertEqual(self.leftover_work_dirs(), [])
        self.assertFalse((self.output_dir / "preseed-debian-13.1.0-amd64-netinst.iso").exists())

    def test_termination_signal_cleans_up(self, *mocks):
        previous_handler = signal.getsignal(signal.SIGTERM)

        def send_sigterm(argv):
            if argv[0] == "cpio":
                os.kill(os.getpid(), signal.SIGTERM)

        result = self.build(FakeIsoTools(on_call=send_sigterm))

        self.assertEqual(result.exit_code, 128 + signal.SIGTERM)
        self.assertEqual(self.leftover_work_dirs(), [])
        self.assertEqual(signal.getsignal(signal.SIGTERM), previous_handler)

    def test_keyboard_interrupt_cleans_up(self, *mocks):
        def interrupt(argv):
            if argv[0] == "gzip":
                raise KeyboardInterrupt

        result = self.build(FakeIsoTools(on_call=interrupt))

        self.assertEqual(result.exit_code, 130)
        self.assertEqual(self.leftover_work_dirs(), [])

    def test_cancelled_prompt(self, mock_username, *mocks):
        mock_username.side_effect = PromptCancelled("Prompt cancelled by user")
        tools = FakeIsoTools()

        result = self.build(tools)

        self.assertEqual(result.exit_code, 130)
        self.assertEqual(tools.calls, [])
        self.assertEqual(self.leftover_work_dirs(), [])

    def test_missing_source_iso(self, *mocks):
        self.source_iso.unlink()
        tools = FakeIsoTools()

        result = self.build(tools)

        self.assertEqual(result.exit_code, 1)
        self.assertEqual(tools.calls, [])
        self.assertEqual(self.leftover_work_dirs(), [])


class TestDefaultOutputDir(unittest.TestCase):
    """Test cases for where the ISO goes when --output-dir is not given."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        if os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir)

    def test_directory_of_invoked_script(self):
        script = Path(self.temp_dir) / "main.py"
        script.write_text("")

        with patch.object(sys, 'argv', [str(script), "build"]):
            self.assertEqual(default_output_dir(), script.resolve().parent)

    def test_falls_back_to_cwd(self):
        with patch.object(sys, 'argv', ["-c"]):
            self.assertEqual(default_output_dir(), Path.cwd())
        with patch.object(sys, 'argv', [""]):
            self.assertEqual(default_output_dir(), Path.cwd())


if __name__ == '__main__':
    unittest.main()
