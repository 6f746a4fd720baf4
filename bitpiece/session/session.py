"""Download session for a single torrent.

Ties the tracker client, the connection pool and the piece downloader
together: discover peers, handshake with them, then fetch pieces one at a
time, moving a failed piece to another live connection.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from bitpiece.config.config import get_config
from bitpiece.discovery.tracker import AsyncTrackerClient
from bitpiece.peer.connection_pool import PeerConnectionPool
from bitpiece.piece.piece_download import PieceDownloader
from bitpiece.utils.exceptions import (
    NetworkError,
    PeerConnectionError,
    ProtocolError,
    VerificationError,
)
from bitpiece.utils.logging_config import set_correlation_id
from bitpiece.utils.version import resolve_peer_id

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import AsyncIterator, Iterable

    from bitpiece.models import Config, PeerInfo, TorrentInfo
    from bitpiece.peer.peer_connection import PeerConnection


class DownloadSession:
    """Downloads the pieces of one torrent from a pool of peers."""

    def __init__(
        self,
        torrent: TorrentInfo,
        config: Config | None = None,
        *,
        peer_id: bytes | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            torrent: Parsed torrent metadata
            config: Configuration; the global one when omitted
            peer_id: Our peer id; taken from config or generated when omitted

        """
        self.torrent = torrent
        self.config = config or get_config()

        self.peer_id = peer_id or resolve_peer_id(self.config.protocol.peer_id)

        network = self.config.network
        self.pool = PeerConnectionPool(
            torrent.info_hash,
            self.peer_id,
            max_concurrent_handshakes=network.max_concurrent_handshakes,
            handshake_timeout=network.handshake_timeout,
            connect_timeout=network.connection_timeout,
            max_frame_size=self.config.protocol.max_frame_size,
        )
        self.tracker = AsyncTrackerClient(
            self.peer_id,
            port=network.listen_port,
            timeout=network.tracker_timeout,
        )
        self.logger = logging.getLogger(__name__)

    async def __aenter__(self) -> DownloadSession:
        """Enter async context."""
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        """Close connections and the tracker client."""
        await self.close()

    async def discover_peers(self) -> list[PeerInfo]:
        """Announce to the tracker and return at most ``max_peers`` peers."""
        await self.tracker.start()
        response = await self.tracker.announce(self.torrent)
        return response.peers[: self.config.network.max_peers]

    async def connect(self, peers: Iterable[PeerInfo] | None = None) -> int:
        """Handshake with ``peers`` (from the tracker when omitted).

        Returns:
            Number of live connections in the pool

        Raises:
            PeerConnectionError: If no connection could be established

        """
        if peers is None:
            peers = await self.discover_peers()
        peers = list(peers)[: self.config.network.max_peers]

        await self.pool.connect(peers)
        if not len(self.pool):
            msg = f"Could not connect to any of {len(peers)} peers"
            raise PeerConnectionError(msg, self.pool.failures or None)
        return len(self.pool)

    async def download_piece(self, index: int) -> bytes:
        """Download and verify one piece, retrying on other connections.

        A connection that fails a piece is discarded. After
        ``max_piece_attempts`` failures the last error is raised.

        Raises:
            PeerConnectionError: If no live connection is left to try
            IndexError: If ``index`` is not a piece of this torrent

        """
        self.torrent.piece_size(index)
        max_attempts = self.config.download.max_piece_attempts
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            connection = self.pool.acquire()
            if connection is None:
                msg = f"No live peer connection left for piece {index}"
                raise PeerConnectionError(msg, {"attempts": attempt - 1}) from last_error

            try:
                data = await self._download_from(connection, index)
            except asyncio.TimeoutError as e:
                last_error = e
                reason = f"timed out after {self.config.network.message_timeout}s"
            except (ProtocolError, VerificationError, NetworkError) as e:
                last_error = e
                reason = str(e)
            else:
                self.pool.release(connection)
                return data

            self.logger.warning(
                "Piece %d attempt %d/%d from %s failed: %s",
                index,
                attempt,
                max_attempts,
                connection.peer_info,
                reason,
            )
            await self.pool.discard(connection, reason)

        if isinstance(last_error, asyncio.TimeoutError):
            msg = f"Piece {index} timed out on {max_attempts} peers"
            raise PeerConnectionError(msg) from last_error
        raise last_error  # type: ignore[misc]

    async def _download_from(self, connection: PeerConnection, index: int) -> bytes:
        set_correlation_id(str(connection.peer_info))
        downloader = PieceDownloader(
            connection,
            self.torrent,
            block_size=self.config.protocol.block_size,
            pipeline_depth=self.config.protocol.pipeline_depth,
        )
        return await asyncio.wait_for(
            downloader.download(index),
            timeout=self.config.network.message_timeout,
        )

    async def iter_pieces(
        self, indices: Iterable[int] | None = None
    ) -> AsyncIterator[tuple[int, bytes]]:
        """Yield ``(index, data)`` for each piece in order."""
        if indices is None:
            indices = range(self.torrent.num_pieces)
        for index in indices:
            data = await self.download_piece(index)
            self.logger.info(
                "Piece %d/%d done", index + 1, self.torrent.num_pieces
            )
            yield index, data

    async def close(self) -> None:
        """Close every peer connection and the tracker client."""
        await self.pool.close()
        await self.tracker.stop()
