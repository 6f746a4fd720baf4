"""End-to-end downloads from local seeders through a DownloadSession."""

from __future__ import annotations

import asyncio
import socket
import struct

import pytest
from aiohttp import web

pytestmark = [pytest.mark.integration, pytest.mark.session]

from bitpiece.core.bencode import encode
from bitpiece.models import Config, PeerInfo
from bitpiece.peer.peer import Bitfield, Handshake, MessageFramer
from bitpiece.piece.piece_download import DownloadState, PieceDownloader
from bitpiece.session.session import DownloadSession
from bitpiece.utils.exceptions import (
    PeerConnectionError,
    ProtocolError,
    VerificationError,
)


def _config(**download) -> Config:
    return Config(
        network={"handshake_timeout": 5.0, "message_timeout": 5.0},
        download=download or {"max_piece_attempts": 3},
    )


@pytest.fixture
def payload(torrent_factory, content_factory):
    """150000 bytes in 64 KiB pieces (three pieces, the last short)."""
    content = content_factory(150000)
    _, torrent = torrent_factory(content, 65536)
    return torrent, content


def _piece(content: bytes, torrent, index: int) -> bytes:
    start = index * torrent.piece_length
    return content[start : start + torrent.piece_size(index)]


class TestSinglePeer:
    """Downloads from one healthy seeder."""

    async def test_download_one_piece(self, payload, seeder_factory, client_peer_id):
        """Test connect then a verified piece."""
        torrent, content = payload
        seeder = await seeder_factory(torrent, content)

        async with DownloadSession(torrent, _config(), peer_id=client_peer_id) as session:
            assert await session.connect([seeder.peer_info]) == 1
            data = await session.download_piece(2)

        assert data == _piece(content, torrent, 2)
        assert len(data) == 150000 - 2 * 65536
        assert seeder.handshakes == 1

    async def test_iter_all_pieces(self, payload, seeder_factory, client_peer_id):
        """Test every piece in order over a single connection."""
        torrent, content = payload
        seeder = await seeder_factory(torrent, content)

        async with DownloadSession(torrent, _config(), peer_id=client_peer_id) as session:
            await session.connect([seeder.peer_info])
            pieces = [item async for item in session.iter_pieces()]

        assert [index for index, _ in pieces] == [0, 1, 2]
        assert b"".join(data for _, data in pieces) == content
        assert seeder.handshakes == 1

    async def test_iter_selected_pieces(self, payload, seeder_factory, client_peer_id):
        """Test a chosen subset of pieces."""
        torrent, content = payload
        seeder = await seeder_factory(torrent, content)

        async with DownloadSession(torrent, _config(), peer_id=client_peer_id) as session:
            await session.connect([seeder.peer_info])
            pieces = [item async for item in session.iter_pieces([2, 0])]

        assert pieces == [
            (2, _piece(content, torrent, 2)),
            (0, _piece(content, torrent, 0)),
        ]

    async def test_pipelined_out_of_order(self, payload, seeder_factory, client_peer_id):
        """Test blocks answered in reverse order with a deep pipeline."""
        torrent, content = payload
        seeder = await seeder_factory(torrent, content, reorder=4)
        config = _config().model_copy(deep=True)
        config.protocol.pipeline_depth = 4

        async with DownloadSession(torrent, config, peer_id=client_peer_id) as session:
            await session.connect([seeder.peer_info])
            data = await session.download_piece(0)

        assert data == _piece(content, torrent, 0)
        assert [r.begin for r in seeder.requests] == [0, 16384, 32768, 49152]

    async def test_invalid_index(self, payload, client_peer_id):
        """Test an index outside the torrent."""
        torrent, _ = payload
        async with DownloadSession(torrent, _config(), peer_id=client_peer_id) as session:
            with pytest.raises(IndexError):
                await session.download_piece(3)


class TestRetries:
    """A failed piece moves to another live connection."""

    async def test_corrupt_peer_then_good_peer(
        self, payload, seeder_factory, client_peer_id
    ):
        """Test a hash failure discards the peer and the retry succeeds."""
        torrent, content = payload
        bad = await seeder_factory(torrent, content, corrupt_piece=1)
        good = await seeder_factory(torrent, content, handshake_delay=0.2)

        async with DownloadSession(torrent, _config(), peer_id=client_peer_id) as session:
            assert await session.connect([bad.peer_info, good.peer_info]) == 2
            data = await session.download_piece(1)

            assert data == _piece(content, torrent, 1)
            assert len(session.pool) == 1
            assert "hash verification" in session.pool.failures[str(bad.peer_info)]

    async def test_peer_without_piece(self, payload, seeder_factory, client_peer_id):
        """Test a peer whose bitfield lacks the piece is passed over."""
        torrent, content = payload
        partial = await seeder_factory(torrent, content, have=[0])
        full = await seeder_factory(torrent, content, handshake_delay=0.2)

        async with DownloadSession(torrent, _config(), peer_id=client_peer_id) as session:
            await session.connect([partial.peer_info, full.peer_info])
            data = await session.download_piece(2)

        assert data == _piece(content, torrent, 2)
        assert partial.requests == []

    async def test_attempts_exhausted(self, payload, seeder_factory, client_peer_id):
        """Test the last error is raised once attempts run out."""
        torrent, content = payload
        bad = await seeder_factory(torrent, content, corrupt_piece=0)
        good = await seeder_factory(torrent, content, handshake_delay=0.2)

        config = _config(max_piece_attempts=1)
        async with DownloadSession(torrent, config, peer_id=client_peer_id) as session:
            await session.connect([bad.peer_info, good.peer_info])
            with pytest.raises(VerificationError):
                await session.download_piece(0)
            assert len(session.pool) == 1

    async def test_no_connection_left(self, payload, seeder_factory, client_peer_id):
        """Test every peer failing before attempts run out."""
        torrent, content = payload
        first = await seeder_factory(torrent, content, corrupt_piece=0)
        second = await seeder_factory(torrent, content, have=[1, 2])

        config = _config(max_piece_attempts=5)
        async with DownloadSession(torrent, config, peer_id=client_peer_id) as session:
            await session.connect([first.peer_info, second.peer_info])
            with pytest.raises(PeerConnectionError, match="No live peer") as exc_info:
                await session.download_piece(0)

        assert exc_info.value.details == {"attempts": 2}
        assert isinstance(exc_info.value.__cause__, (VerificationError, ProtocolError))

    async def test_silent_peer_times_out(self, payload, client_peer_id):
        """Test a peer that stops talking is bounded by the message timeout."""
        torrent, _ = payload
        framer = MessageFramer()

        async def _silent(reader, writer):
            await reader.readexactly(68)
            writer.write(Handshake(torrent.info_hash, b"S" * 20).to_bytes())
            writer.write(framer.encode_message(Bitfield(b"\xe0")))
            await writer.drain()
            while await reader.read(1024):
                pass
            writer.close()

        server = await asyncio.start_server(_silent, "127.0.0.1", 0)
        peer = PeerInfo(ip="127.0.0.1", port=server.sockets[0].getsockname()[1])
        config = Config(
            network={"message_timeout": 0.2}, download={"max_piece_attempts": 1}
        )
        try:
            async with DownloadSession(torrent, config, peer_id=client_peer_id) as session:
                await session.connect([peer])
                with pytest.raises(PeerConnectionError, match="timed out"):
                    await session.download_piece(0)
                assert len(session.pool) == 0
        finally:
            server.close()
            await server.wait_closed()

    async def test_corrupt_piece_state(self, payload, seeder_factory, client_peer_id):
        """Test the downloader ends in FAILED on a corrupt piece."""
        torrent, content = payload
        seeder = await seeder_factory(torrent, content, corrupt_piece=0)

        async with DownloadSession(torrent, _config(), peer_id=client_peer_id) as session:
            await session.connect([seeder.peer_info])
            connection = session.pool.acquire()
            downloader = PieceDownloader(connection, torrent)
            with pytest.raises(VerificationError):
                await downloader.download(0)
            assert downloader.state == DownloadState.FAILED


class TestConnect:
    """Peer discovery and handshakes."""

    async def test_no_reachable_peers(self, payload, closed_port, client_peer_id):
        """Test connect fails when every handshake fails."""
        torrent, _ = payload
        peer = PeerInfo(ip="127.0.0.1", port=closed_port)

        async with DownloadSession(torrent, _config(), peer_id=client_peer_id) as session:
            with pytest.raises(PeerConnectionError, match="Could not connect") as exc_info:
                await session.connect([peer])

        assert str(peer) in exc_info.value.details

    async def test_wrong_torrent_peer_skipped(
        self, payload, seeder_factory, client_peer_id
    ):
        """Test peers answering for another torrent are not kept."""
        torrent, content = payload
        foreign = await seeder_factory(torrent, content, answer_info_hash=b"\x01" * 20)
        good = await seeder_factory(torrent, content)

        async with DownloadSession(torrent, _config(), peer_id=client_peer_id) as session:
            assert await session.connect([foreign.peer_info, good.peer_info]) == 1
            assert "mismatch" in session.pool.failures[str(foreign.peer_info)]

    async def test_peers_from_tracker(
        self, tracker_server, seeder_factory, torrent_factory, content_factory
    ):
        """Test announce, connect and download with no explicit peers."""
        content = content_factory(30000)
        port_holder = {}

        async def _announce(request):
            compact = struct.pack(
                "!4sH", socket.inet_aton("127.0.0.1"), port_holder["port"]
            )
            return web.Response(body=encode({b"interval": 60, b"peers": compact}))

        url = await tracker_server(_announce)
        _, torrent = torrent_factory(content, 16384, announce=url)
        seeder = await seeder_factory(torrent, content)
        port_holder["port"] = seeder.peer_info.port

        async with DownloadSession(torrent, _config()) as session:
            assert await session.discover_peers() == [seeder.peer_info]
            assert await session.connect() == 1
            data = await session.download_piece(1)

        assert data == content[16384:]

    async def test_max_peers_cap(self, payload, seeder_factory, client_peer_id):
        """Test only ``max_peers`` peers are dialled."""
        torrent, content = payload
        seeders = [await seeder_factory(torrent, content) for _ in range(3)]
        config = Config(network={"max_peers": 2})

        async with DownloadSession(torrent, config, peer_id=client_peer_id) as session:
            assert await session.connect([s.peer_info for s in seeders]) == 2

        assert [s.handshakes for s in seeders] == [1, 1, 0]


class TestSessionSetup:
    """Peer id and config selection."""

    def test_peer_id_from_config(self, payload):
        """Test a configured peer id is used."""
        torrent, _ = payload
        config = Config(protocol={"peer_id": "-BP0100-fixedid00001"})
        session = DownloadSession(torrent, config)
        assert session.peer_id == b"-BP0100-fixedid00001"
        assert session.pool.peer_id == session.peer_id

    def test_generated_peer_id(self, payload):
        """Test a random peer id with the client prefix by default."""
        torrent, _ = payload
        session = DownloadSession(torrent, Config())
        assert len(session.peer_id) == 20
        assert session.peer_id.startswith(b"-BP")

    def test_global_config(self, payload, monkeypatch):
        """Test the process-wide config is used when none is passed."""
        torrent, _ = payload
        monkeypatch.setenv("BITPIECE_MAX_PIECE_ATTEMPTS", "7")
        monkeypatch.setenv("BITPIECE_MAX_CONCURRENT_HANDSHAKES", "3")
        session = DownloadSession(torrent)
        assert session.config.download.max_piece_attempts == 7
        assert session.pool.max_concurrent_handshakes == 3
