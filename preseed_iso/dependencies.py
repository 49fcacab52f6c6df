#!/usr/bin/env python3
"""
Host tool checks for Preseed ISO Builder.

Each external program the build shells out to is looked up on PATH. A
missing program can be installed from its Debian package after the operator
agrees.
"""

import os
import shutil
from typing import Dict, List

from preseed_iso.interactive_ui import PreseedUI
from preseed_iso.logger import PreseedLogger, LogCategory
from preseed_iso.tools import ToolError, run_command

# command -> package providing it
REQUIRED_TOOLS: Dict[str, str] = {
    "bsdtar": "libarchive-tools",
    "xorriso": "xorriso",
    "mkpasswd": "whois",
    "cpio": "cpio",
    "gzip": "gzip",
}


class DependencyError(RuntimeError):
    """Raised when required host tools are still missing."""

    exit_code = 1

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required commands: {', '.join(self.missing)}")


def _privilege_prefix() -> List[str]:
    return [] if os.geteuid() == 0 else ["sudo"]


def install_package(package: str, logger: PreseedLogger) -> bool:
    """Install a package with apt-get; returns False if either step fails."""
    prefix = _privilege_prefix()
    try:
        run_command(prefix + ["apt-get", "update"], logger=logger)
        run_command(prefix + ["apt-get", "install", "-y", package], logger=logger)
    except ToolError as e:
        logger.log_error(LogCategory.DEPENDENCIES, "install_package",
                         f"Failed to install {package}: {e}", error_code="INSTALL_FAILED")
        return False
    return True


def check_command(command: str, package: str, ui: PreseedUI, logger: PreseedLogger) -> bool:
    """
    Make sure a command is available, offering to install it when missing.

    Args:
        command: Program name looked up on PATH
        package: Debian package that provides the program
        ui: Prompt interface for the install offer
        logger: Session logger

    Returns:
        True if the command is available afterwards
    """
    if shutil.which(command):
        logger.log_debug(LogCategory.DEPENDENCIES, "check_command", f"{command} found")
        return True

    logger.log_warning(LogCategory.DEPENDENCIES, "check_command",
                       f"Command '{command}' not found. It is provided by the '{package}' package.")

    if not ui.confirm_package_install(command, package):
        logger.log_error(LogCategory.DEPENDENCIES, "check_command",
                         f"'{command}' is required. Please install '{package}' manually.")
        return False

    logger.log_info(LogCategory.USER_ACTION, "install_package", f"Installing {package}...")
    if not install_package(package, logger) or not shutil.which(command):
        logger.log_error(LogCategory.DEPENDENCIES, "check_command",
                         f"'{command}' is still not available after installing '{package}'.")
        return False

    logger.log_info(LogCategory.DEPENDENCIES, "check_command", f"Successfully installed {package}.")
    return True


def check_dependencies(ui: PreseedUI, logger: PreseedLogger,
                       tools: Dict[str, str] = None):
    """Check every required tool; raise DependencyError if any is missing."""
    tools = tools or REQUIRED_TOOLS
    logger.start_operation(LogCategory.DEPENDENCIES, "check_dependencies",
                           "Checking for required commands...")

    missing = [command for command, package in tools.items()
               if not check_command(command, package, ui, logger)]

    if missing:
        logger.end_operation(False, error_code="MISSING_DEPENDENCIES",
                             details={"missing": missing})
        raise DependencyError(missing)

    logger.end_operation(True)
