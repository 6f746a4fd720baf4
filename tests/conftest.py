"""Pytest configuration and shared fixtures for bitpiece tests."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from typing import Any

import pytest
import pytest_asyncio
from aiohttp import web

from bitpiece.config import config as config_module
from bitpiece.core.bencode import encode
from bitpiece.core.torrent import TorrentParser
from bitpiece.models import PeerInfo, TorrentInfo
from bitpiece.peer.peer import (
    Bitfield,
    Handshake,
    Interested,
    MessageFramer,
    Piece,
    PeerState,
    Request,
    Unchoke,
)
from bitpiece.peer.peer_connection import ConnectionState
from bitpiece.utils.exceptions import PeerConnectionError, ProtocolError

SEEDER_PEER_ID = b"-FS0001-seeder000001"
CLIENT_PEER_ID = b"-BP0100-client000001"


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep config lookups away from the developer's files and environment."""
    for name in list(os.environ):
        if name.startswith("BITPIECE_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    config_module.reset_config()
    yield
    config_module.reset_config()


def build_torrent(
    content: bytes,
    piece_length: int,
    *,
    name: str = "sample.bin",
    announce: str = "http://tracker.test/announce",
) -> tuple[bytes, TorrentInfo]:
    """Build single-file torrent bytes for ``content`` and parse them back."""
    pieces = b"".join(
        hashlib.sha1(content[i : i + piece_length]).digest()
        for i in range(0, len(content), piece_length)
    )
    meta: dict[bytes, Any] = {
        b"announce": announce.encode(),
        b"info": {
            b"length": len(content),
            b"name": name.encode(),
            b"piece length": piece_length,
            b"pieces": pieces,
        },
    }
    raw = encode(meta)
    return raw, TorrentParser().parse_bytes(raw)


def sample_content(size: int) -> bytes:
    """Deterministic non-repeating test payload."""
    out = bytearray()
    counter = 0
    while len(out) < size:
        out += hashlib.sha256(counter.to_bytes(8, "big")).digest()
        counter += 1
    return bytes(out[:size])


@pytest.fixture
def torrent_factory():
    """Return the torrent builder."""
    return build_torrent


@pytest.fixture
def seeder_peer_id() -> bytes:
    """Peer id every FakeSeeder answers with."""
    return SEEDER_PEER_ID


@pytest.fixture
def client_peer_id() -> bytes:
    """Local peer id used by tests."""
    return CLIENT_PEER_ID


@pytest.fixture
def content_factory():
    """Return the test payload generator."""
    return sample_content


class ScriptedConnection:
    """Stand-in for a handshaken PeerConnection that replays messages."""

    def __init__(self, incoming=(), peer_info: PeerInfo | None = None):
        self.incoming = list(incoming)
        self.sent: list[Any] = []
        self.peer_info = peer_info or PeerInfo(ip="10.0.0.1", port=6881)
        self.peer_state = PeerState()
        self.state = ConnectionState.CONNECTED

    def is_connected(self) -> bool:
        return self.state in (ConnectionState.CONNECTED, ConnectionState.ACTIVE)

    async def send(self, message) -> None:
        self.sent.append(message)

    async def receive(self):
        if not self.incoming:
            msg = "Script exhausted"
            raise PeerConnectionError(msg)
        return self.incoming.pop(0)


@pytest.fixture
def scripted_connection():
    """Return the ScriptedConnection class."""
    return ScriptedConnection


class FakeSeeder:
    """In-process TCP peer that seeds one torrent.

    Args:
        torrent: Torrent being served
        content: Full file content
        have: Piece indices announced in the bitfield (all by default)
        corrupt_piece: Piece whose first byte is flipped when served
        reorder: Hold this many requests and answer them in reverse order
        answer_info_hash: Info hash sent back in the handshake

    """

    def __init__(
        self,
        torrent: TorrentInfo,
        content: bytes,
        *,
        peer_id: bytes = SEEDER_PEER_ID,
        have=None,
        corrupt_piece: int | None = None,
        reorder: int = 1,
        answer_info_hash: bytes | None = None,
        handshake_delay: float = 0.0,
    ):
        self.torrent = torrent
        self.content = content
        self.peer_id = peer_id
        self.have = set(range(torrent.num_pieces)) if have is None else set(have)
        self.corrupt_piece = corrupt_piece
        self.reorder = reorder
        self.answer_info_hash = answer_info_hash or torrent.info_hash
        self.handshake_delay = handshake_delay

        self.requests: list[Request] = []
        self.handshakes = 0
        self._server: asyncio.AbstractServer | None = None
        self._writers: list[asyncio.StreamWriter] = []
        self.peer_info: PeerInfo | None = None

    async def start(self) -> PeerInfo:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        port = self._server.sockets[0].getsockname()[1]
        self.peer_info = PeerInfo(ip="127.0.0.1", port=port)
        return self.peer_info

    async def stop(self) -> None:
        for writer in self._writers:
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    def bitfield(self) -> bytes:
        data = bytearray(max(1, (self.torrent.num_pieces + 7) // 8))
        for index in self.have:
            data[index // 8] |= 0x80 >> (index % 8)
        return bytes(data)

    def _piece(self, request: Request) -> Piece:
        offset = request.index * self.torrent.piece_length + request.begin
        block = bytearray(self.content[offset : offset + request.length])
        if request.index == self.corrupt_piece and request.begin == 0:
            block[0] ^= 0xFF
        return Piece(request.index, request.begin, bytes(block))

    async def _handle(self, reader, writer) -> None:
        self._writers.append(writer)
        framer = MessageFramer()
        try:
            Handshake.decode(await reader.readexactly(68))
            if self.handshake_delay:
                await asyncio.sleep(self.handshake_delay)
            self.handshakes += 1
            writer.write(Handshake(self.answer_info_hash, self.peer_id).to_bytes())
            writer.write(framer.encode_message(Bitfield(self.bitfield())))
            await writer.drain()

            buffer = bytearray()
            held: list[Request] = []
            while True:
                chunk = await reader.read(65536)
                if not chunk:
                    break
                buffer.extend(chunk)
                while (message := framer.decode_message(buffer)) is not None:
                    if isinstance(message, Interested):
                        writer.write(framer.encode_message(Unchoke()))
                    elif isinstance(message, Request):
                        self.requests.append(message)
                        held.append(message)
                        size = self.torrent.piece_size(message.index)
                        if len(held) >= self.reorder or message.begin + message.length == size:
                            for request in reversed(held):
                                writer.write(framer.encode_message(self._piece(request)))
                            held.clear()
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError, ProtocolError):
            pass
        finally:
            writer.close()


@pytest_asyncio.fixture
async def seeder_factory():
    """Start FakeSeeders on demand and stop them after the test."""
    seeders: list[FakeSeeder] = []

    async def _make(torrent: TorrentInfo, content: bytes, **kwargs) -> FakeSeeder:
        seeder = FakeSeeder(torrent, content, **kwargs)
        await seeder.start()
        seeders.append(seeder)
        return seeder

    yield _make
    for seeder in seeders:
        await seeder.stop()


@pytest_asyncio.fixture
async def closed_port() -> int:
    """A local port with nothing listening on it."""
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    return port


@pytest_asyncio.fixture
async def tracker_server():
    """Serve ``handler`` at /announce on a local port; returns the URL."""
    runners: list[web.AppRunner] = []

    async def _start(handler) -> str:
        app = web.Application()
        app.router.add_get("/announce", handler)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        runners.append(runner)
        host, port = runner.addresses[0][:2]
        return f"http://{host}:{port}/announce"

    yield _start
    for runner in runners:
        await runner.cleanup()
