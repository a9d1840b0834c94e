"""
Implements command-line commands and user interaction.
"""

import asyncio
import logging
import signal
import sys
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from ddx.core.analytics import LoggingAnalytics
from ddx.core.client import HttpTransport, PortalClient
from ddx.core.config import ConfigManager, PortalConfig
from ddx.core.filesystem import FileDescriptor, FileSystemError, describe_files, format_size
from ddx.core.orchestrator import InitiationFailure
from ddx.core.quota import QuotaDisplayAdapter, QuotaInfo, QuotaRefreshFailure, ValidationRejection
from ddx.core.manager import UploadManager
from ddx.core.transfer import TransferCancelled, TransferError
from ddx.core.transfer_log import TransferLogger

# Rich console for pretty output
console = Console()

STATUS_STYLES = {
    "success": "[green]✓ success[/green]",
    "error": "[red]✗ error[/red]",
    "cancelled": "[yellow]– cancelled[/yellow]",
    "uploading": "[blue]uploading[/blue]",
    "selected": "selected",
    "idle": "idle",
}

QUOTA_LEVEL_STYLES = {
    "critical": "red",
    "high": "dark_orange",
    "moderate": "yellow",
    "normal": "blue",
}


def setup_logging(verbose: bool):
    """Route library logging through rich"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def cli(verbose: bool):
    """DirectDrive transfer client - Upload files to your storage portal

    Common commands:
    \b
    - upload         Upload one file, or a batch of up to 5 files
    - quota          Show today's upload quota
    - login          Store an access token
    - logs           Show finished uploads
    """
    setup_logging(verbose)


def _build_manager(config: PortalConfig, authenticated: bool) -> UploadManager:
    client = PortalClient(config.api_url, token=config.access_token, timeout=config.timeout)
    return UploadManager(
        client,
        transport=HttpTransport(client, chunk_size=config.chunk_size),
        authenticated=lambda: authenticated,
        download_origin=config.download_origin,
        analytics=LoggingAnalytics(),
        transfer_logger=TransferLogger(),
    )


async def _run_upload(files: List[FileDescriptor], config: PortalConfig, authenticated: bool) -> dict:
    """
    Upload files with live progress

    Returns:
        Manager snapshot after the upload finished

    Raises:
        ValidationRejection: If the selection is refused
        InitiationFailure: If the batch could not be reserved
    """
    manager = _build_manager(config, authenticated)
    loop = asyncio.get_running_loop()
    try:
        await manager.open()
        flow = manager.select(files)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            tasks = {}

            def update_progress(session):
                if session.id not in tasks:
                    tasks[session.id] = progress.add_task(session.file.name, total=100)
                progress.update(tasks[session.id], completed=session.progress_percent)

            flow.add_listener(update_progress)

            try:
                loop.add_signal_handler(signal.SIGINT, manager.cancel)
            except (NotImplementedError, RuntimeError):
                pass

            try:
                await manager.start()
                await manager.wait()
            finally:
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except (NotImplementedError, RuntimeError):
                    pass

        return manager.snapshot()
    finally:
        await manager.close()


def _render_result(snapshot: dict):
    """Print per-file status and the overall outcome"""
    transfer = snapshot.get("transfer") or {}
    files = transfer.get("files") if snapshot.get("mode") == "batch" else [transfer]

    table = Table(title="Upload Results")
    table.add_column("File", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Details")

    for f in files or []:
        details = f.get("download_url") or f.get("error") or ""
        table.add_row(
            f.get("name") or "?",
            format_size(f["size"]) if f.get("size") is not None else "?",
            STATUS_STYLES.get(f.get("state"), f.get("state")),
            f"{f.get('progress', 0)}%",
            details,
        )
    console.print(table)

    state = transfer.get("state")
    if state == "success":
        if snapshot.get("mode") == "batch":
            console.print(
                f"[green]{len(files)} files have been uploaded "
                f"({transfer.get('failed', 0)} with errors)[/green]"
            )
        else:
            console.print("[green]Your file has been uploaded successfully[/green]")
        if transfer.get("download_url"):
            console.print(f"Download link: {transfer['download_url']}")
    elif state == "cancelled":
        console.print("[yellow]Upload was cancelled[/yellow]")
    elif state == "error":
        console.print(f"[red]Upload failed: {transfer.get('error')}[/red]")

    if snapshot.get("quota"):
        console.print(f"Daily usage: {snapshot['quota']}")


@cli.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(dir_okay=False))
def upload(files: tuple):
    """Upload files to the portal

    FILES: One file for a single upload, or 2-5 files for a batch

    Press Ctrl+C during the upload to cancel it.

    Examples:
    \b
    - Upload one file:        ddx upload report.pdf
    - Upload a batch:         ddx upload a.jpg b.jpg c.mp4
    """
    config_manager = ConfigManager()
    config = config_manager.effective()

    try:
        descriptors = describe_files(list(files))
    except FileSystemError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    try:
        snapshot = asyncio.run(_run_upload(descriptors, config, config_manager.is_authenticated()))
    except ValidationRejection as e:
        console.print(f"[red]{e.reason}[/red]")
        sys.exit(1)
    except InitiationFailure as e:
        console.print(f"[red]Batch could not be started: {e}[/red]")
        sys.exit(1)
    except TransferCancelled:
        console.print("[yellow]Upload was cancelled[/yellow]")
        return
    except TransferError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    _render_result(snapshot)
    transfer = snapshot.get("transfer") or {}
    if snapshot.get("mode") == "single" and transfer.get("state") == "error":
        sys.exit(1)


async def _fetch_quota(config: PortalConfig) -> Optional[QuotaInfo]:
    async with PortalClient(config.api_url, token=config.access_token, timeout=config.timeout) as client:
        try:
            return await client.get_quota()
        except QuotaRefreshFailure as e:
            logging.getLogger(__name__).warning("%s", e)
            return None


@cli.command()
def quota():
    """Show today's upload quota"""
    config = ConfigManager().effective()

    with console.status("[blue]Fetching quota...[/blue]"):
        info = asyncio.run(_fetch_quota(config))

    display = QuotaDisplayAdapter.project(info)
    if display is None:
        console.print("[yellow]Quota information unavailable[/yellow]")
        return

    style = QUOTA_LEVEL_STYLES[display.level]
    table = Table(title="Daily Usage")
    table.add_column("Tier", style="cyan")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right", style="green")
    table.add_column("Usage", justify="right", style=style)
    table.add_row(
        display.tier_label,
        display.summary(),
        f"{display.remaining_gb:.1f}GB",
        f"{display.bar_percentage:.0f}%",
    )
    console.print(table)


@cli.command()
@click.option("--token", prompt=True, hide_input=True, help="Access token issued by the portal")
def login(token: str):
    """Store an access token for authenticated uploads"""
    ConfigManager().set_token(token)
    console.print("[green]Signed in; uploads use the authenticated limits[/green]")


@cli.command()
def logout():
    """Remove the stored access token"""
    ConfigManager().set_token(None)
    console.print("[green]Signed out[/green]")


@click.group()
def config():
    """Manage client settings"""
    pass


@config.command()
def show():
    """Show current settings"""
    manager = ConfigManager()
    table = Table(title=f"Settings ({manager.config_file})")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    for key, value in asdict(manager.effective()).items():
        if key == "access_token" and value:
            value = "********"
        table.add_row(key, str(value))
    console.print(table)


@config.command(name="set")
@click.argument("key")
@click.argument("value")
def set_value(key: str, value: str):
    """Change a setting"""
    try:
        ConfigManager().set_value(key, value)
        console.print(f"[green]Set {key}[/green]")
    except ValueError as e:
        console.print(f"[red]Error: {str(e)}[/red]")
        sys.exit(1)


@cli.command()
@click.option(
    "--date",
    type=str,
    help="Show logs for specific date (YYYY-MM-DD format)"
)
@click.option(
    "--show-files",
    is_flag=True,
    help="Show detailed file lists in the log"
)
def logs(date: str = None, show_files: bool = False):
    """View finished uploads

    Examples:
    \b
    - View the latest day's logs:
      ddx logs

    - View logs for specific date:
      ddx logs --date 2025-03-22

    - View logs with file details:
      ddx logs --show-files
    """
    logger = TransferLogger()

    if date is None:
        dates = logger.get_log_dates()
        if not dates:
            console.print("[yellow]No transfer logs found[/yellow]")
            return
        date = dates[-1]  # Use most recent date

    entries = logger.get_entries(date)
    if not entries:
        console.print(f"[yellow]No transfer logs found for {date}[/yellow]")
        return

    table = Table(title=f"Transfer Logs for {date}")
    table.add_column("Time", style="cyan")
    table.add_column("Type", style="green")
    table.add_column("Outcome", style="yellow")
    table.add_column("Files", style="blue")
    table.add_column("Size", style="magenta")
    table.add_column("Duration", style="cyan")

    for entry in entries:
        time = datetime.fromisoformat(entry.timestamp).strftime("%H:%M:%S")

        files = f"{len(entry.successful_files)}/{entry.file_count}"

        table.add_row(
            time,
            entry.upload_type,
            entry.outcome,
            files,
            format_size(entry.total_size),
            f"{entry.duration:.1f}s"
        )

        if show_files:
            for file in entry.successful_files:
                console.print(f"  ✓ {file}")
            for file in entry.failed_files:
                console.print(f"  ✗ {file}")
            for file in entry.cancelled_files:
                console.print(f"  – {file}")
            for url in entry.download_urls:
                console.print(f"  → {url}")

    console.print(table)

# Register command groups
cli.add_command(config)

if __name__ == "__main__":
    cli()
