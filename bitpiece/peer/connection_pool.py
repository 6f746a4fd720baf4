"""Connection pool for handshaken peer connections.

This module opens connections to many peers with a bounded number of
simultaneous attempts and keeps every successful one in a registry, so a
failed download can move on to another live peer instead of reconnecting.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from bitpiece.peer.peer import MAX_FRAME_SIZE
from bitpiece.peer.peer_connection import (
    ConnectionState,
    PeerConnection,
    open_peer_connection,
)
from bitpiece.utils.exceptions import BitpieceError
from bitpiece.utils.logging_config import set_correlation_id

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable

    from bitpiece.models import PeerInfo


class PeerConnectionPool:
    """Registry of live peer connections for one torrent.

    Connections are either idle (available to :meth:`acquire`) or leased to
    a download. A leased connection comes back through :meth:`release`, or
    is closed and forgotten through :meth:`discard`.
    """

    def __init__(
        self,
        info_hash: bytes,
        peer_id: bytes,
        *,
        max_concurrent_handshakes: int = 5,
        handshake_timeout: float | None = 10.0,
        connect_timeout: float | None = None,
        max_frame_size: int = MAX_FRAME_SIZE,
    ):
        """Initialize connection pool.

        Args:
            info_hash: Info hash every peer must answer with
            peer_id: Our 20-byte peer id
            max_concurrent_handshakes: Upper bound on simultaneous attempts
            handshake_timeout: Deadline for connect + handshake per peer
            connect_timeout: Deadline for the TCP connect alone
            max_frame_size: Frame ceiling for each connection

        """
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.max_concurrent_handshakes = max_concurrent_handshakes
        self.handshake_timeout = handshake_timeout
        self.connect_timeout = connect_timeout
        self.max_frame_size = max_frame_size

        self._idle: list[PeerConnection] = []
        self._leased: set[PeerConnection] = set()
        self._failed: dict[str, str] = {}

        self.logger = logging.getLogger(__name__)

    def __len__(self) -> int:
        """Number of live connections, idle or leased."""
        return len(self._idle) + len(self._leased)

    async def __aenter__(self) -> PeerConnectionPool:
        """Enter async context."""
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        """Close every connection on exit."""
        await self.close()

    @property
    def idle_count(self) -> int:
        """Connections available to acquire."""
        return len(self._idle)

    @property
    def failures(self) -> dict[str, str]:
        """Last failure reason per peer address."""
        return dict(self._failed)

    async def connect(self, peers: Iterable[PeerInfo]) -> list[PeerConnection]:
        """Handshake with ``peers`` and register every success.

        At most ``max_concurrent_handshakes`` attempts run at once. Results
        are registered as each attempt finishes, in completion order.

        Returns:
            The newly registered connections

        """
        known = {str(c.peer_info) for c in (*self._idle, *self._leased)}
        targets = [p for p in dict.fromkeys(peers) if str(p) not in known]
        if not targets:
            return []

        semaphore = asyncio.Semaphore(self.max_concurrent_handshakes)
        tasks = [
            asyncio.create_task(self._connect_one(peer, semaphore)) for peer in targets
        ]

        connected: list[PeerConnection] = []
        try:
            for next_done in asyncio.as_completed(tasks):
                connection = await next_done
                if connection is not None:
                    self._idle.append(connection)
                    connected.append(connection)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        self.logger.info(
            "Connected to %d of %d peers (%d live)",
            len(connected),
            len(targets),
            len(self),
        )
        return connected

    async def _connect_one(
        self, peer: PeerInfo, semaphore: asyncio.Semaphore
    ) -> PeerConnection | None:
        async with semaphore:
            set_correlation_id(str(peer))
            try:
                return await asyncio.wait_for(
                    open_peer_connection(
                        peer,
                        self.info_hash,
                        self.peer_id,
                        max_frame_size=self.max_frame_size,
                        connect_timeout=self.connect_timeout,
                    ),
                    timeout=self.handshake_timeout,
                )
            except asyncio.TimeoutError:
                self._failed[str(peer)] = "handshake timed out"
                self.logger.debug("Handshake with %s timed out", peer)
            except BitpieceError as e:
                self._failed[str(peer)] = str(e)
                self.logger.debug("Could not connect to %s: %s", peer, e)
            return None

    def acquire(self) -> PeerConnection | None:
        """Lease an idle connection, or return None if none is idle."""
        while self._idle:
            connection = self._idle.pop(0)
            if connection.is_connected():
                self._leased.add(connection)
                return connection
            self.logger.debug("Dropping dead connection %s", connection)
        return None

    def release(self, connection: PeerConnection) -> None:
        """Return a leased connection to the idle set."""
        self._leased.discard(connection)
        if connection.is_connected():
            self._idle.append(connection)

    async def discard(self, connection: PeerConnection, reason: str = "") -> None:
        """Close a connection and remove it from the pool."""
        self._leased.discard(connection)
        if connection in self._idle:
            self._idle.remove(connection)
        if reason:
            self._failed[str(connection.peer_info)] = reason
        await connection.close(ConnectionState.CLOSED)
        self.logger.debug("Discarded %s %s", connection.peer_info, reason)

    async def close(self) -> None:
        """Close every connection."""
        connections = [*self._idle, *self._leased]
        self._idle.clear()
        self._leased.clear()
        await asyncio.gather(
            *(c.close() for c in connections), return_exceptions=True
        )
