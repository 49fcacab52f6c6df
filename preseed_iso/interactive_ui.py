#!/usr/bin/env python3
"""
Interactive User Interface Module for Preseed ISO Builder

This module asks every question the build needs up front (ISO source,
account credentials, hardening) and renders the panels shown around the
non-interactive remastering steps.
"""

import re

import questionary
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from typing import Optional


PROMPT_STYLE = questionary.Style([
    ('question', 'bold'),
    ('answer', 'fg:#ff9d00 bold'),
    ('pointer', 'fg:#ff9d00 bold'),
    ('highlighted', 'fg:#ff9d00 bold'),
])

# Debian adduser NAME_REGEX default, plus the useradd length limit
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]*$")
USERNAME_MAX_LENGTH = 32


class PromptCancelled(Exception):
    """Raised when the operator aborts a prompt (Ctrl-C / Ctrl-D)."""


def validate_username(text: str):
    """Return True for a valid account name, otherwise the message questionary shows."""
    name = text.strip()
    if not name:
        return "Username cannot be empty"
    if len(name) > USERNAME_MAX_LENGTH:
        return f"Username must be at most {USERNAME_MAX_LENGTH} characters"
    if not USERNAME_PATTERN.match(name):
        return "Use lowercase letters, digits, '_' or '-', starting with a letter or '_'"
    return True


class PreseedUI:
    """Interactive prompts and panels for the preseed ISO builder."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def show_welcome(self):
        """Display what the tool is about to do."""
        welcome_text = """
[bold blue]Debian Preseed ISO Builder[/bold blue]

Turn a Debian netinst image into a fully unattended installer.

[yellow]What will happen:[/yellow]
• Download the latest netinst ISO, or use one you already have
• Create a user account with passwordless sudo
• Generate a preseed file, optionally with a hardened partition layout
• Inject the preseed file into the installer ramdisk
• Make the automated install the default boot entry (BIOS and UEFI)
• Write a new hybrid ISO next to this tool

[red]⚠️  The generated ISO erases the disk of any machine it boots on ⚠️[/red]
        """

        panel = Panel(
            welcome_text.strip(),
            title="💿 Preseed ISO Builder",
            border_style="blue",
            padding=(1, 2)
        )

        self.console.print(panel)
        self.console.print()

    def _answer(self, value):
        if value is None:
            raise PromptCancelled("Prompt cancelled by user")
        return value

    def ask_iso_source(self) -> str:
        """Ask whether to download the latest ISO; any other answer is a path."""
        answer = questionary.text(
            "Do you want to download the latest Debian netinst ISO? (Y/n) or provide path to local ISO:",
            style=PROMPT_STYLE
        ).ask()
        return self._answer(answer)

    def ask_local_iso_path(self) -> str:
        """Ask for the path of a local ISO file."""
        answer = questionary.path(
            "Enter the full path to your local Debian ISO file:",
            style=PROMPT_STYLE
        ).ask()
        return self._answer(answer)

    def ask_username(self) -> str:
        """Ask for the account name created on the installed system."""
        answer = questionary.text(
            "Enter username for the new system:",
            validate=validate_username,
            style=PROMPT_STYLE
        ).ask()
        return self._answer(answer).strip()

    def ask_password(self, username: str) -> str:
        answer = questionary.password(f"Enter password for {username}:", style=PROMPT_STYLE).ask()
        return self._answer(answer)

    def ask_password_confirmation(self) -> str:
        answer = questionary.password("Confirm password:", style=PROMPT_STYLE).ask()
        return self._answer(answer)

    def ask_hardening(self) -> bool:
        """Ask whether the hardened profile should be applied."""
        self.console.print("\n[bold blue]System Hardening Configuration[/bold blue]")
        return Confirm.ask(
            "Do you want to apply system hardening (hardened partitioning, firewall, etc.)?",
            default=False,
            console=self.console
        )

    def confirm_package_install(self, command: str, package: str) -> bool:
        """Offer to install the package that provides a missing command."""
        return Confirm.ask(
            f"Do you want to try and install '{package}' using 'apt-get install {package}'?",
            default=False,
            console=self.console
        )

    def show_build_summary(self, source_iso: str, username: str, hardening: bool,
                           output_iso: str):
        """Summarize the answers before the non-interactive steps start."""
        summary_text = f"""
[bold]Source ISO:[/bold] {source_iso}
[bold]Username:[/bold] {username} (passwordless sudo)
[bold]Profile:[/bold] {'[red]Hardened[/red] (LVM recipe, ufw, aide)' if hardening else 'Standard (guided LVM)'}
[bold]Output ISO:[/bold] {output_iso}
        """

        panel = Panel(
            summary_text.strip(),
            title="📋 Build Summary",
            border_style="cyan",
            padding=(1, 2)
        )

        self.console.print(panel)

    def show_progress_screen(self, title: str):
        """Create a spinner for the remastering steps."""
        return Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=self.console,
            transient=True
        )

    def show_error(self, title: str, message: str, details: str = None):
        """Display error message with optional details."""
        error_text = f"[red]{message}[/red]"
        if details:
            error_text += f"\n\n[dim]{details}[/dim]"

        panel = Panel(
            error_text,
            title=f"❌ {title}",
            border_style="red",
            padding=(1, 2)
        )

        self.console.print(panel)

    def show_success(self, title: str, message: str):
        """Display success message."""
        panel = Panel(
            f"[green]{message}[/green]",
            title=f"✅ {title}",
            border_style="green",
            padding=(1, 2)
        )

        self.console.print(panel)
