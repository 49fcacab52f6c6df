#!/usr/bin/env python3
"""
External tool execution for Preseed ISO Builder.

Every call to bsdtar, cpio, gzip, xorriso, mkpasswd and apt-get goes through
run_command() so that each invocation is logged with its exit status and
captured output.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from preseed_iso.logger import PreseedLogger


class ToolError(RuntimeError):
    """Raised when an external tool exits with a non-zero status."""

    def __init__(self, command: Sequence[str], exit_code: int, stderr: str = ""):
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr or ""
        detail = f": {self.stderr.strip()}" if self.stderr.strip() else ""
        super().__init__(f"Command failed ({exit_code}): {' '.join(self.command)}{detail}")


@dataclass(frozen=True)
class CommandResult:
    command: List[str]
    returncode: int
    stdout: str
    stderr: str


def run_command(command: Sequence[str], logger: Optional[PreseedLogger] = None,
                cwd: Optional[Union[str, Path]] = None, input_text: Optional[str] = None,
                log_output: bool = True) -> CommandResult:
    """
    Run an external command to completion and capture its output.

    A non-zero exit status always raises ToolError.

    Args:
        command: Program and arguments
        logger: Session logger that records the execution
        cwd: Working directory for the command
        input_text: Text written to the command's stdin
        log_output: Whether stdout may be recorded in the logs

    Returns:
        CommandResult with the exit status and captured streams
    """
    argv = [str(part) for part in command]

    try:
        process = subprocess.run(
            argv,
            input=input_text,
            capture_output=True,
            text=True,
            cwd=str(cwd) if cwd else None,
        )
    except FileNotFoundError:
        if logger:
            logger.log_command_execution(argv, 127, stderr=f"{argv[0]}: command not found")
        raise ToolError(argv, 127, f"{argv[0]}: command not found")

    if logger:
        logger.log_command_execution(
            argv, process.returncode,
            stdout=process.stdout if log_output else None,
            stderr=process.stderr,
        )

    if process.returncode != 0:
        raise ToolError(argv, process.returncode, process.stderr)

    return CommandResult(argv, process.returncode, process.stdout, process.stderr)
