#!/usr/bin/env python3
"""
Account credential collection for the installed system.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from preseed_iso.interactive_ui import PreseedUI
from preseed_iso.logger import PreseedLogger, LogCategory
from preseed_iso.tools import run_command


@dataclass(frozen=True)
class Credentials:
    """Username and crypt(3) SHA-512 password hash; never the plaintext."""
    username: str
    hashed_password: str

    def __repr__(self):
        return f"Credentials(username={self.username!r}, hashed_password='***')"


def hash_password(password: str, logger: Optional[PreseedLogger] = None) -> str:
    """
    Derive a salted SHA-512 crypt hash with mkpasswd.

    The password is fed on stdin so it never shows up in the process list,
    and mkpasswd picks a fresh random salt on every call.
    """
    result = run_command(
        ["mkpasswd", "--method=sha-512", "--stdin"],
        logger=logger,
        input_text=password,
        log_output=False,
    )
    return result.stdout.strip()


def collect_credentials(ui: PreseedUI, logger: PreseedLogger,
                        hasher: Optional[Callable[..., str]] = None) -> Credentials:
    """
    Prompt for the account name and password of the installed system.

    The password is asked twice until both entries match and are non-empty;
    there is no retry limit.

    Args:
        ui: Prompt interface
        logger: Session logger
        hasher: Password hashing function (default: hash_password)

    Returns:
        Credentials holding the hashed password only
    """
    hasher = hasher or hash_password

    logger.log_info(LogCategory.CREDENTIALS, "collect_credentials",
                    "Configuring user account for the new system...")
    username = ui.ask_username()

    while True:
        password = ui.ask_password(username)
        confirmation = ui.ask_password_confirmation()

        if password != confirmation:
            logger.log_error(LogCategory.CREDENTIALS, "collect_credentials",
                             "Passwords do not match. Please try again.")
        elif not password:
            logger.log_warning(LogCategory.CREDENTIALS, "collect_credentials",
                               "Password is empty. This is insecure. Please provide a password.")
        else:
            break

    hashed = hasher(password, logger=logger)
    del password, confirmation

    logger.log_debug(LogCategory.CREDENTIALS, "collect_credentials",
                     f"Password hash derived for {username}")
    return Credentials(username=username, hashed_password=hashed)
