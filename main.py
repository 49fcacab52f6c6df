import sys
import typer
from pathlib import Path
from typing import Optional

from preseed_iso import __version__
from preseed_iso.checksum import DEFAULT_ALGORITHM, verify_file_checksum
from preseed_iso.credentials import collect_credentials
from preseed_iso.dependencies import DependencyError, REQUIRED_TOOLS, check_command, check_dependencies
from preseed_iso.interactive_ui import PreseedUI, PromptCancelled
from preseed_iso.iso_fetcher import DEBIAN_CD_BASE_URL, FetchError, IsoFetcher
from preseed_iso.iso_remaster import IsoRemaster, RemasterError
from preseed_iso.logger import PreseedLogger, LogCategory, create_progress_callback
from preseed_iso.preseed import PRESEED_FILENAME, PreseedOptions, write_preseed
from preseed_iso.tools import ToolError
from preseed_iso.workspace import BuildContext, TerminationRequested, WorkDirectory, termination_signals

INTERRUPTED_EXIT_CODE = 130

app = typer.Typer(
    name="preseed-iso",
    help="Preseed ISO Builder - Turn a Debian netinst image into an unattended installer",
    add_completion=False
)

BUILD_ERRORS = (DependencyError, FetchError, RemasterError, ToolError)


def default_output_dir() -> Path:
    """Directory of the invoked script or console entry point, else the current directory."""
    invoked = Path(sys.argv[0]) if sys.argv and sys.argv[0] else None
    if invoked is not None and invoked.is_file():
        return invoked.resolve().parent
    return Path.cwd()


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """
    Build an unattended Debian installer ISO.

    Without a command, runs 'build' with default options.
    """
    if ctx.invoked_subcommand is None:
        run_build()


def run_build(output_dir: Optional[Path] = None, download_dir: Optional[Path] = None,
              mirror: str = DEBIAN_CD_BASE_URL, log_dir: Optional[Path] = None):
    """Run the whole build; every prompt is answered before the ISO is touched."""
    ui = PreseedUI()
    logger = PreseedLogger(log_dir=log_dir)
    output_dir = Path(output_dir).resolve() if output_dir else default_output_dir()
    download_dir = Path(download_dir).resolve() if download_dir else None

    success = False
    exit_code = 0
    try:
        with termination_signals():
            ui.show_welcome()
            check_dependencies(ui, logger)

            with WorkDirectory(output_dir, logger) as work_dir:
                context = BuildContext(output_dir=output_dir, work_dir=work_dir)

                fetcher = IsoFetcher(logger, base_url=mirror)
                context.source_iso = fetcher.resolve_source(
                    ui,
                    download_dir or work_dir,
                    progress_callback=create_progress_callback(logger, LogCategory.FETCH, "download")
                )

                credentials = collect_credentials(ui, logger)
                hardening = ui.ask_hardening()
                logger.log_info(LogCategory.USER_ACTION, "hardening",
                                f"Hardening {'enabled' if hardening else 'disabled'}")

                ui.show_build_summary(str(context.source_iso), credentials.username,
                                      hardening, str(context.output_iso))

                write_preseed(
                    PreseedOptions(
                        username=credentials.username,
                        hashed_password=credentials.hashed_password,
                        hardening=hardening
                    ),
                    context.preseed_path,
                    logger
                )

                remaster = IsoRemaster(context, logger)
                with ui.show_progress_screen("Remastering ISO") as progress:
                    task = progress.add_task("Preparing...", total=None)
                    output_iso = remaster.run_all(
                        lambda msg: progress.update(task, description=msg)
                    )

        success = True
        ui.show_success("ISO Ready", f"Unattended installer written to {output_iso}")

    except PromptCancelled:
        ui.console.print("\n[yellow]Build cancelled by user.[/yellow]")
        exit_code = INTERRUPTED_EXIT_CODE
    except KeyboardInterrupt:
        ui.console.print("\n[yellow]Build interrupted by user.[/yellow]")
        exit_code = INTERRUPTED_EXIT_CODE
    except TerminationRequested as e:
        ui.console.print(f"\n[yellow]Build interrupted: {e}[/yellow]")
        exit_code = e.exit_code
    except BUILD_ERRORS as e:
        ui.show_error("Build Failed", str(e), details=f"Logs: {logger.log_dir}")
        exit_code = e.exit_code or 1
    except Exception as e:
        logger.log_critical(LogCategory.SYSTEM, "build", f"Unexpected error: {e}",
                            {"type": type(e).__name__}, error_code="UNEXPECTED")
        ui.show_error("Build Failed", f"An unexpected error occurred: {str(e)}")
        exit_code = 1
    finally:
        logger.finalize_session(success)
        logger.close()

    if exit_code:
        raise typer.Exit(exit_code)


@app.command()
def build(
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", help="Where the new ISO is written (default: next to the invoked program)"),
    download_dir: Optional[Path] = typer.Option(
        None, "--download-dir", help="Where the latest netinst ISO is downloaded (default: the work directory)"),
    mirror: str = typer.Option(
        DEBIAN_CD_BASE_URL, "--mirror", help="Debian CD image directory holding SHA512SUMS"),
    log_dir: Optional[Path] = typer.Option(
        None, "--log-dir", help="Directory for session logs (default: ~/.preseed_iso_logs)"),
):
    """
    Build a preseeded Debian installer ISO.

    Asks for the source ISO, the account to create and whether to apply
    hardening, then writes preseed-<source name> to the output directory.
    """
    run_build(output_dir=output_dir, download_dir=download_dir, mirror=mirror, log_dir=log_dir)


@app.command()
def preseed(
    output: Path = typer.Option(
        Path(PRESEED_FILENAME), "--output", "-o", help="Path of the preseed file to write"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Directory for session logs"),
):
    """Write only the preseed file, for inspection or use with another ISO."""
    ui = PreseedUI()
    logger = PreseedLogger(log_dir=log_dir)

    success = False
    try:
        if not check_command("mkpasswd", REQUIRED_TOOLS["mkpasswd"], ui, logger):
            raise DependencyError(["mkpasswd"])

        credentials = collect_credentials(ui, logger)
        hardening = ui.ask_hardening()
        path = write_preseed(
            PreseedOptions(
                username=credentials.username,
                hashed_password=credentials.hashed_password,
                hardening=hardening
            ),
            output,
            logger
        )
        success = True
        ui.show_success("Preseed Written", f"Preseed configuration written to {path}")
    except (PromptCancelled, KeyboardInterrupt):
        ui.console.print("\n[yellow]Cancelled by user.[/yellow]")
        raise typer.Exit(INTERRUPTED_EXIT_CODE)
    except (DependencyError, ToolError, OSError) as e:
        ui.show_error("Preseed Generation Failed", str(e))
        raise typer.Exit(getattr(e, "exit_code", 1) or 1)
    finally:
        logger.finalize_session(success)
        logger.close()


@app.command()
def verify(
    file: Path = typer.Argument(..., help="File to check"),
    digest: str = typer.Argument(..., help="Expected hex digest"),
    algorithm: str = typer.Option(DEFAULT_ALGORITHM, "--algorithm", help="hashlib algorithm name"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Directory for session logs"),
):
    """Check a file against a published digest."""
    ui = PreseedUI()

    if not file.is_file():
        ui.show_error("Verification Failed", f"File not found: {file}")
        raise typer.Exit(1)

    logger = PreseedLogger(log_dir=log_dir)
    try:
        matched = verify_file_checksum(file, digest, algorithm=algorithm, logger=logger)
    except ValueError as e:
        ui.show_error("Verification Failed", str(e))
        matched = None
    finally:
        logger.finalize_session(bool(matched))
        logger.close()

    if not matched:
        raise typer.Exit(1)


@app.command()
def latest(
    mirror: str = typer.Option(DEBIAN_CD_BASE_URL, "--mirror", help="Debian CD image directory"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Directory for session logs"),
):
    """Show the latest netinst ISO published on the mirror."""
    ui = PreseedUI()
    logger = PreseedLogger(log_dir=log_dir)

    success = False
    try:
        release = IsoFetcher(logger, base_url=mirror).fetch_latest_release()
        ui.console.print(f"[bold]Filename:[/bold] {release.filename}")
        ui.console.print(f"[bold]SHA512:[/bold]   {release.checksum}")
        ui.console.print(f"[bold]URL:[/bold]      {release.url}")
        success = True
    except FetchError as e:
        ui.show_error("Lookup Failed", str(e))
        raise typer.Exit(e.exit_code)
    finally:
        logger.finalize_session(success)
        logger.close()


@app.command()
def version():
    """Show version information."""
    ui = PreseedUI()
    ui.console.print("[bold blue]Preseed ISO Builder[/bold blue]")
    ui.console.print(f"Version: {__version__}")
    ui.console.print("A tool for building unattended Debian installer ISOs")


if __name__ == "__main__":
    app()
