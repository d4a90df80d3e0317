#!/usr/bin/env python3
"""
dropmo CLI

Command-line interface for the rendezvous service and peers.

Usage:
    dropmo serve                     # Run the rendezvous service
    dropmo listen --id bob           # Stay online and receive files
    dropmo send FILE bob carol       # Drop a file on one or more peers
    dropmo peers                     # List peers online
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, TextColumn, BarColumn, DownloadColumn, TransferSpeedColumn
from rich.panel import Panel
from rich.logging import RichHandler

from config import Config, load_config
from dropmo.api import run_signaling_server
from dropmo.peer import PeerConfig, PeerNode, ReceivedFile
from dropmo.transfer import TransferProgress

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def peer_config(config: Config) -> PeerConfig:
    """Build a peer configuration from the loaded settings."""
    return PeerConfig(
        identifier=config.identifier,
        signaling_url=config.signaling_url,
        host=config.host,
        channel_port=config.channel_port,
        advertise_host=config.advertise_host,
        download_dir=config.download_dir,
        chunk_size=config.chunk_size,
        channel_open_timeout=config.channel_open_timeout,
        ready_timeout=config.ready_timeout,
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.option('--id', 'identifier', help='Peer identifier')
@click.option('--url', 'signaling_url', help='Rendezvous WebSocket URL')
@click.pass_context
def cli(ctx, verbose, config_path, identifier, signaling_url):
    """dropmo - direct peer-to-peer file drops via a rendezvous service."""
    config = load_config(Path(config_path) if config_path else None)
    if identifier:
        config.identifier = identifier
    if signaling_url:
        config.signaling_url = signaling_url

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Rendezvous port')
@click.pass_context
def serve(ctx, host, port):
    """Run the rendezvous service."""
    config = ctx.obj['config']
    host = host or config.host
    port = port or config.signaling_port

    console.print(Panel.fit(
        f"[bold green]Rendezvous Service[/bold green]\n\n"
        f"WebSocket: [cyan]ws://{host}:{port}/ws[/cyan]\n"
        f"Peers: [cyan]http://{host}:{port}/peers[/cyan]",
        title="dropmo"
    ))

    try:
        asyncio.run(run_signaling_server(host=host, port=port, log_level=config.log_level))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.option('--port', default=None, type=int, help='Direct channel TCP port')
@click.option('--download-dir', type=click.Path(file_okay=False), help='Where received files go')
@click.pass_context
def listen(ctx, port, download_dir):
    """Stay online and receive files."""
    config = ctx.obj['config']
    if port is not None:
        config.channel_port = port
    if download_dir:
        config.download_dir = Path(download_dir)

    async def run():
        node = PeerNode(peer_config(config))

        def show_peers(peers):
            names = ', '.join(peers) if peers else 'nobody else'
            console.print(f"[dim]Online: {names}[/dim]")

        def show_file(received: ReceivedFile):
            console.print(
                f"[green]✓ Received {received.file_name}[/green] "
                f"({format_size(received.size)}, {received.mime_type}) "
                f"from [cyan]{received.peer_id}[/cyan] -> {received.path}"
            )

        node.on_peer_change(show_peers)
        node.on_file_received(show_file)

        try:
            await node.start()

            console.print(Panel.fit(
                f"[bold green]Peer Online[/bold green]\n\n"
                f"Identifier: [cyan]{node.identifier}[/cyan]\n"
                f"Channel Port: [yellow]{node.channel_server.port}[/yellow]\n"
                f"Download Dir: [blue]{node.download_dir}[/blue]",
                title="Peer Info"
            ))
            console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

            while True:
                await asyncio.sleep(1)

        except ConnectionError as e:
            console.print(f"[red]{e}[/red]")
        finally:
            await node.stop()
            console.print("[green]Peer stopped[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.argument('targets', nargs=-1, required=True)
@click.pass_context
def send(ctx, file_path, targets):
    """Send FILE to one or more TARGETS."""
    config = ctx.obj['config']
    file_path = Path(file_path)
    # Outbound only: let the OS pick the channel port
    config.channel_port = 0

    async def run():
        node = PeerNode(peer_config(config))

        try:
            await node.start()
        except ConnectionError as e:
            console.print(f"[red]{e}[/red]")
            return

        try:
            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                DownloadColumn(),
                TransferSpeedColumn(),
                console=console,
            ) as progress:
                tasks: Dict[str, int] = {
                    target: progress.add_task(f"→ {target}", total=None)
                    for target in dict.fromkeys(targets)
                }

                def update_progress(p: TransferProgress):
                    task = tasks.get(p.peer_id)
                    if task is not None:
                        progress.update(task, completed=p.bytes_transferred,
                                        total=p.total_size or 1)

                results = await node.send(file_path, targets, update_progress)

            table = Table(title=f"Sent {file_path.name}")
            table.add_column("Peer", style="cyan")
            table.add_column("Result")
            table.add_column("Bytes", justify="right", style="yellow")
            table.add_column("Detail")

            for target, result in results.items():
                table.add_row(
                    target,
                    "[green]✓ complete[/green]" if result.succeeded else "[red]✗ failed[/red]",
                    f"{result.bytes_transferred:,}",
                    str(result.error) if result.error else "",
                )

            console.print(table)
            if not all(r.succeeded for r in results.values()):
                ctx.exit(1)
        finally:
            await node.stop()

    asyncio.run(run())


@cli.command()
@click.pass_context
def peers(ctx):
    """List peers online."""
    config = ctx.obj['config']
    config.channel_port = 0

    async def run():
        node = PeerNode(peer_config(config))

        try:
            await node.start()
        except ConnectionError as e:
            console.print(f"[red]{e}[/red]")
            return

        try:
            online = await node.refresh_peers()
        except asyncio.TimeoutError:
            online = node.get_peers()
        finally:
            await node.stop()

        if not online:
            console.print("[yellow]No other peers online[/yellow]")
            return

        table = Table(title="Online Peers")
        table.add_column("Identifier", style="cyan")
        for peer_id in online:
            table.add_row(peer_id)
        console.print(table)

    asyncio.run(run())


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
