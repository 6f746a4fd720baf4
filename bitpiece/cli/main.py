"""Command-line interface for bitpiece.

Provides commands to:
- Decode bencoded values
- Inspect torrent files and their peers
- Handshake with a single peer
- Download one piece or the whole file
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, NoReturn

import click
from rich.console import Console
from rich.markup import escape

from bitpiece.config.config import init_config
from bitpiece.core.bencode import decode
from bitpiece.core.torrent import TorrentParser
from bitpiece.models import Config, LogLevel, PeerInfo, TorrentInfo
from bitpiece.peer.peer_connection import open_peer_connection
from bitpiece.session.session import DownloadSession
from bitpiece.utils.exceptions import BitpieceError
from bitpiece.utils.logging_config import setup_logging
from bitpiece.utils.version import get_version, resolve_peer_id

logger = logging.getLogger(__name__)

err_console = Console(stderr=True)


def _fail(message: str) -> NoReturn:
    """Print an error and exit with status 1."""
    err_console.print(f"[bold red]Error:[/bold red] {escape(message)}", highlight=False)
    raise click.exceptions.Exit(1)


def _to_json(value: Any) -> Any:
    """Make a decoded bencode value JSON-serializable; byte-strings become text."""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, list):
        return [_to_json(item) for item in value]
    if isinstance(value, dict):
        return {_to_json(key): _to_json(item) for key, item in value.items()}
    return value


def _parse_peer(value: str) -> PeerInfo:
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        msg = f"Peer must be ip:port, got {value!r}"
        raise click.BadParameter(msg)
    try:
        return PeerInfo(ip=host, port=int(port))
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _load_torrent(path: str) -> TorrentInfo:
    try:
        return TorrentParser().parse(path)
    except BitpieceError as e:
        _fail(str(e))


def _get_config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


@click.group()
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
@click.version_option(get_version(), prog_name="bitpiece")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: int) -> None:
    """bitpiece - a small BitTorrent client."""
    ctx.ensure_object(dict)
    try:
        config_manager = init_config(config)
    except BitpieceError as e:
        _fail(str(e))

    cfg = config_manager.config
    observability = cfg.observability
    if verbose >= 2:
        observability = observability.model_copy(update={"log_level": LogLevel.DEBUG})
    elif verbose == 1:
        observability = observability.model_copy(update={"log_level": LogLevel.INFO})
    setup_logging(observability)

    ctx.obj["config"] = cfg


@cli.command("decode")
@click.argument("value")
def decode_cmd(value: str) -> None:
    """Decode a bencoded VALUE and print it as JSON."""
    try:
        decoded = decode(value.encode("utf-8"))
    except BitpieceError as e:
        _fail(str(e))
    click.echo(json.dumps(_to_json(decoded)))


@cli.command()
@click.argument("torrent", type=click.Path(exists=True, dir_okay=False))
def info(torrent: str) -> None:
    """Show the metadata of a TORRENT file."""
    meta = _load_torrent(torrent)
    click.echo(f"Tracker URL: {meta.announce}")
    click.echo(f"Length: {meta.length}")
    click.echo(f"Info Hash: {meta.info_hash_hex}")
    click.echo(f"Piece Length: {meta.piece_length}")
    click.echo("Piece Hashes:")
    for digest in meta.pieces:
        click.echo(digest.hex())


@cli.command()
@click.argument("torrent", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def peers(ctx: click.Context, torrent: str) -> None:
    """List the peers the tracker returns for TORRENT."""
    meta = _load_torrent(torrent)

    async def _discover() -> list[PeerInfo]:
        async with DownloadSession(meta, _get_config(ctx)) as session:
            return await session.discover_peers()

    try:
        found = asyncio.run(_discover())
    except BitpieceError as e:
        _fail(str(e))
    for peer in found:
        click.echo(str(peer))


@cli.command()
@click.argument("torrent", type=click.Path(exists=True, dir_okay=False))
@click.argument("peer")
@click.pass_context
def handshake(ctx: click.Context, torrent: str, peer: str) -> None:
    """Handshake with PEER (ip:port) for TORRENT and print its peer id."""
    meta = _load_torrent(torrent)
    peer_info = _parse_peer(peer)
    cfg = _get_config(ctx)

    async def _handshake() -> bytes:
        connection = await asyncio.wait_for(
            open_peer_connection(
                peer_info,
                meta.info_hash,
                resolve_peer_id(cfg.protocol.peer_id),
                max_frame_size=cfg.protocol.max_frame_size,
                connect_timeout=cfg.network.connection_timeout,
            ),
            timeout=cfg.network.handshake_timeout,
        )
        try:
            return connection.remote_peer_id or b""
        finally:
            await connection.close()

    try:
        remote_id = asyncio.run(_handshake())
    except asyncio.TimeoutError:
        _fail(f"Handshake with {peer_info} timed out")
    except BitpieceError as e:
        _fail(str(e))
    click.echo(f"Peer ID: {remote_id.hex()}")


@cli.command("download-piece")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, writable=True),
    required=True,
    help="File to write the piece to",
)
@click.argument("torrent", type=click.Path(exists=True, dir_okay=False))
@click.argument("index", type=click.IntRange(min=0))
@click.pass_context
def download_piece(ctx: click.Context, output: str, torrent: str, index: int) -> None:
    """Download and verify piece INDEX of TORRENT."""
    meta = _load_torrent(torrent)
    if index >= meta.num_pieces:
        msg = f"Piece index {index} out of range (torrent has {meta.num_pieces} pieces)"
        raise click.BadParameter(msg, param_hint="INDEX")

    async def _download() -> bytes:
        async with DownloadSession(meta, _get_config(ctx)) as session:
            await session.connect()
            return await session.download_piece(index)

    try:
        data = asyncio.run(_download())
    except BitpieceError as e:
        _fail(str(e))

    Path(output).write_bytes(data)
    err_console.print(f"Piece {index} downloaded to {output}.", highlight=False)


@cli.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, writable=True),
    required=True,
    help="File to write the download to",
)
@click.argument("torrent", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def download(ctx: click.Context, output: str, torrent: str) -> None:
    """Download every piece of TORRENT into one file."""
    meta = _load_torrent(torrent)
    partial = Path(f"{output}.part")

    async def _download() -> None:
        async with DownloadSession(meta, _get_config(ctx)) as session:
            await session.connect()
            with open(partial, "wb") as f:
                async for _index, data in session.iter_pieces():
                    f.write(data)

    try:
        asyncio.run(_download())
    except BitpieceError as e:
        partial.unlink(missing_ok=True)
        _fail(str(e))

    partial.replace(output)
    err_console.print(f"Downloaded {meta.name} to {output}.", highlight=False)


def main() -> None:
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
