"""Command line interface for swarmget.

Provides the ``download`` command plus helpers to inspect a torrent and the
effective configuration.
"""

from __future__ import annotations

import asyncio
import logging

import click
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from swarmget import __version__
from swarmget.config import ConfigManager, init_config
from swarmget.core.torrent import TorrentParser
from swarmget.exceptions import SwarmGetError
from swarmget.logging_config import setup_logging
from swarmget.models import Config, LogLevel, TorrentDescriptor
from swarmget.session.coordinator import DownloadCoordinator, DownloadResult
from swarmget.storage.file_assembler import FileAssembler

logger = logging.getLogger(__name__)


def _format_size(num_bytes: float) -> str:
    for unit in ("B", "KiB", "MiB"):
        if num_bytes < 1024:
            return f"{num_bytes:.1f} {unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f} GiB"


@click.group()
@click.version_option(__version__, prog_name="swarmget")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: info, -vv: debug)",
)
@click.pass_context
def cli(ctx, config, verbose):
    """swarmget - fetch torrent content from a UDP tracker swarm."""
    ctx.ensure_object(dict)
    console = Console()
    try:
        config_manager = init_config(config, configure_logging=False)
    except SwarmGetError as e:
        console.print(f"[red]Error: {e}[/red]")
        ctx.exit(2)

    observability = config_manager.config.observability.model_copy()
    if verbose >= 2:
        observability.log_level = LogLevel.DEBUG
    elif verbose == 1:
        observability.log_level = LogLevel.INFO
    setup_logging(observability)

    ctx.obj["config_manager"] = config_manager
    ctx.obj["console"] = console


async def _run_download(
    descriptor: TorrentDescriptor,
    config: Config,
    console: Console,
) -> DownloadResult:
    storage = FileAssembler(descriptor, config.disk.output_dir, config.disk)
    coordinator = DownloadCoordinator(descriptor, storage, config)
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        DownloadColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=console,
    )
    with progress:
        task = progress.add_task(descriptor.name, total=descriptor.total_length)

        def _update(stats):
            progress.update(task, completed=descriptor.total_length - stats["bytes_remaining"])

        coordinator.on_progress = _update
        try:
            return await coordinator.start()
        finally:
            storage.close()


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(file_okay=False), help="Output directory")
@click.option("--listen-port", type=int, help="Port announced to the tracker")
@click.option("--max-connections", type=int, help="Maximum simultaneous peer connections")
@click.option("--pipeline-depth", type=int, help="Outstanding block requests per peer")
@click.option("--no-reannounce", is_flag=True, help="Only use peers from the first announce")
@click.pass_context
def download(ctx, torrent_file, output, listen_port, max_connections, pipeline_depth, no_reannounce):
    """Download the content described by TORRENT_FILE."""
    console: Console = ctx.obj["console"]
    config_manager: ConfigManager = ctx.obj["config_manager"]
    try:
        config = config_manager.apply_overrides(
            {
                "disk.output_dir": output,
                "network.listen_port": listen_port,
                "network.max_connections": max_connections,
                "network.pipeline_depth": pipeline_depth,
                "tracker.reannounce": False if no_reannounce else None,
            },
        )
        descriptor = TorrentParser().parse(torrent_file)
    except SwarmGetError as e:
        console.print(f"[red]Error: {e}[/red]")
        ctx.exit(2)

    console.print(
        f"[bold]{descriptor.name}[/bold]: {descriptor.num_pieces} pieces, "
        f"{_format_size(descriptor.total_length)} -> {config.disk.output_dir}",
    )
    try:
        result = asyncio.run(_run_download(descriptor, config, console))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        ctx.exit(130)
    except SwarmGetError as e:
        logger.debug("Download failed", exc_info=True)
        console.print(f"[red]Download failed: {e}[/red]")
        ctx.exit(1)

    if not result.success:
        console.print(
            f"[red]Download incomplete: {result.error} "
            f"({result.verified_pieces}/{result.total_pieces} pieces)[/red]",
        )
        ctx.exit(1)
    console.print(
        f"[green]Downloaded {descriptor.name} "
        f"({_format_size(result.bytes_verified)} in {result.duration:.1f}s "
        f"from {result.peers_connected} peers)[/green]",
    )


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def info(ctx, torrent_file):
    """Show the metadata of TORRENT_FILE."""
    console: Console = ctx.obj["console"]
    try:
        descriptor = TorrentParser().parse(torrent_file)
    except SwarmGetError as e:
        console.print(f"[red]Error: {e}[/red]")
        ctx.exit(2)

    table = Table(title=descriptor.name, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Tracker", descriptor.announce)
    table.add_row("Info hash", descriptor.info_hash.hex())
    table.add_row("Size", _format_size(descriptor.total_length))
    table.add_row("Pieces", f"{descriptor.num_pieces} x {_format_size(descriptor.piece_length)}")
    for file_info in descriptor.files:
        table.add_row("File", f"{'/'.join(file_info.path)} ({_format_size(file_info.length)})")
    console.print(table)


@cli.command("config")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["toml", "json"]),
    default="toml",
    help="Output format",
)
@click.pass_context
def show_config(ctx, fmt):
    """Print the effective configuration."""
    config_manager: ConfigManager = ctx.obj["config_manager"]
    click.echo(config_manager.export(fmt))


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
