"""CLI for ZipBackup (Typer + Rich)."""

import logging
import os
from typing import Annotated, List, Optional

import click
import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from zipbackup import __version__, configure_logging
from zipbackup.backup.executor import BackupExecutor
from zipbackup.config import get_config
from zipbackup.settings import SettingsError, default_settings, load_settings, save_settings
from zipbackup.utils.formatting import format_file_size
from zipbackup.utils.master_key import encode_secret


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_WARNING = 2

app = typer.Typer(
    name="zipbackup",
    help="Full/incremental 7-Zip backups with remote sync.",
    add_completion=False,
)
console = Console()
logger = logging.getLogger(__name__)


@app.command()
def backup(
    full: Annotated[bool, typer.Option("--full", help="Force a full backup for every job")] = False,
    configure: Annotated[
        bool, typer.Option("--configure", help="Enter passwords and write the settings file")
    ] = False,
    config_file: Annotated[
        Optional[str], typer.Option("--config", help="Settings file (default: $ZIPBACKUP_CONFIG or ./config.yaml)")
    ] = None,
) -> None:
    """Run a backup of every configured job."""
    config_file = config_file or get_config().CONFIG_FILE

    if configure:
        raise typer.Exit(_configure(config_file))

    raise typer.Exit(_run(config_file, full))


def _run(config_file: str, force_full: bool) -> int:
    cfg = get_config()
    log_file = configure_logging(cfg.log_file(), debug=cfg.DEBUG)
    logger.info(f"ZipBackup {__version__} starting (settings: {config_file})")

    try:
        settings = load_settings(config_file)
    except SettingsError as e:
        logger.error(str(e))
        console.print(f"[red]Error:[/] {escape(str(e))}")
        console.print("Run [bold]zipbackup --configure[/] to create the settings file.")
        return EXIT_FAILURE

    if force_full:
        console.print("[bold]Full backup forced for all jobs[/]")

    executor = BackupExecutor(settings, log_file=log_file)
    success = executor.perform_backups(force_full=force_full)

    _print_summary(executor)
    return EXIT_SUCCESS if success else EXIT_FAILURE


def _print_summary(executor: BackupExecutor):
    summary = executor.summary
    if not summary.jobs and summary.remote is None and not summary.errors:
        console.print("[yellow]No backup jobs configured.[/]")
        return

    table = Table(title="Backup Summary")
    table.add_column("Job", style="cyan")
    table.add_column("Mode")
    table.add_column("Archive")
    table.add_column("Size", justify="right")
    table.add_column("Status")

    for outcome in summary.jobs:
        decision = outcome.decision
        table.add_row(
            outcome.job_name,
            decision.mode if decision else "-",
            os.path.basename(decision.target_path) if decision else "-",
            format_file_size(outcome.archive_size) if outcome.archive_size is not None else "-",
            "[green]OK[/]" if outcome.succeeded else "[red]FAIL[/]",
        )

    console.print(table)

    if summary.remote is not None:
        remote = summary.remote
        console.print(
            f"Remote: uploaded {len(remote.uploaded)} ({format_file_size(remote.bytes_uploaded)}), "
            f"deleted {len(remote.deleted_remote)}, unchanged {len(remote.skipped)}"
        )

    errors = summary.all_errors
    if errors:
        console.print(Panel(escape("\n".join(str(error) for error in errors)), title="[red]Backup FAILED[/]"))
    else:
        console.print("[green]Backup completed successfully.[/]")


def _configure(config_file: str) -> int:
    if os.path.exists(config_file):
        try:
            settings = load_settings(config_file)
        except SettingsError as e:
            console.print(f"[red]Error:[/] {escape(str(e))}")
            console.print("Fix or remove the settings file, then run --configure again.")
            return EXIT_FAILURE
    else:
        console.print(f"[yellow]No settings found at {config_file}, creating defaults.[/]")
        settings = default_settings()

    console.print("Leave a password blank to keep the stored value.")
    _prompt_secret(settings, 'archive_password', "Archive password")
    _prompt_secret(settings.remote, 'password', f"Remote password ({settings.remote.username})")
    _prompt_secret(settings.email, 'password', f"E-mail password ({settings.email.username})")

    try:
        backup_path = save_settings(settings, config_file)
    except SettingsError as e:
        console.print(f"[red]Error:[/] {escape(str(e))}")
        return EXIT_FAILURE

    console.print(f"[green]Settings written to[/] {config_file}")
    if backup_path:
        console.print(f"Previous settings kept in {backup_path}")
    console.print("Edit the file to configure jobs, remote and e-mail settings.")
    return EXIT_SUCCESS


def _prompt_secret(target, attribute: str, label: str):
    value = Prompt.ask(label, password=True, default="", show_default=False)
    if value:
        setattr(target, attribute, encode_secret(value))


def main(argv: Optional[List[str]] = None) -> int:
    """
    Console script entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Process exit code
    """
    try:
        result = app(args=argv, standalone_mode=False, prog_name="zipbackup")
    except click.ClickException as e:
        e.show()
        return EXIT_FAILURE
    except click.exceptions.Abort:
        console.print("Aborted.")
        return EXIT_FAILURE

    return result if isinstance(result, int) else EXIT_SUCCESS
