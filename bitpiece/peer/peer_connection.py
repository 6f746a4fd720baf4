"""Async peer connection for the BitTorrent client.

This module handles establishing a TCP connection to a peer, exchanging
handshakes and moving framed messages in both directions using asyncio.

Only the TCP connect can carry its own timeout. ``handshake()`` and
``receive()`` are the suspension points a caller bounds with
``asyncio.wait_for``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from bitpiece.models import PeerInfo
from bitpiece.peer.peer import (
    HANDSHAKE_LENGTH,
    MAX_FRAME_SIZE,
    Handshake,
    Message,
    MessageFramer,
    PeerState,
)
from bitpiece.utils.exceptions import HandshakeError, PeerConnectionError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


class ConnectionState(Enum):
    """States of a peer connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKE_SENT = "handshake_sent"
    CONNECTED = "connected"
    ACTIVE = "active"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(eq=False)
class PeerConnection:
    """Represents an async connection to a single peer."""

    peer_info: PeerInfo
    info_hash: bytes
    peer_id: bytes
    reader: asyncio.StreamReader | None = None
    writer: asyncio.StreamWriter | None = None
    max_frame_size: int = MAX_FRAME_SIZE
    state: ConnectionState = ConnectionState.DISCONNECTED
    peer_state: PeerState = field(default_factory=PeerState)
    remote_peer_id: bytes | None = None
    last_activity: float = field(default_factory=time.time)
    error_message: str | None = None

    def __post_init__(self) -> None:
        """Set up the framer and receive buffer."""
        self.framer = MessageFramer(self.max_frame_size)
        self._buffer = bytearray()

    def __str__(self) -> str:
        """Return string representation of peer connection."""
        return f"PeerConnection({self.peer_info}, state={self.state.value})"

    def is_connected(self) -> bool:
        """Check if the handshake completed and the stream is open."""
        return self.state in (ConnectionState.CONNECTED, ConnectionState.ACTIVE)

    async def connect(self) -> None:
        """Open the TCP stream to the peer."""
        self.state = ConnectionState.CONNECTING
        try:
            self.reader, self.writer = await asyncio.open_connection(
                self.peer_info.ip, self.peer_info.port
            )
        except OSError as e:
            self.state = ConnectionState.ERROR
            self.error_message = str(e)
            msg = f"Failed to connect to {self.peer_info}: {e}"
            raise PeerConnectionError(msg) from e
        logger.debug("TCP connection established with %s", self.peer_info)

    async def handshake(self) -> bytes:
        """Send our handshake, read the peer's and validate it.

        Returns:
            The remote peer id (opaque 20 bytes)

        Raises:
            HandshakeError: If the reply is malformed or for another torrent;
                the connection is closed before raising
            PeerConnectionError: If the stream ends early

        """
        if self.reader is None or self.writer is None:
            msg = f"Not connected to {self.peer_info}"
            raise PeerConnectionError(msg)

        ours = Handshake(self.info_hash, self.peer_id)
        try:
            self.writer.write(ours.to_bytes())
            await self.writer.drain()
            self.state = ConnectionState.HANDSHAKE_SENT

            try:
                data = await self.reader.readexactly(HANDSHAKE_LENGTH)
            except asyncio.IncompleteReadError as e:
                msg = (
                    f"Connection closed during handshake "
                    f"(got {len(e.partial)} of {HANDSHAKE_LENGTH} bytes)"
                )
                raise PeerConnectionError(msg) from e

            theirs = Handshake.decode(data)
            ours.validate_reply(theirs)
        except (HandshakeError, PeerConnectionError, OSError) as e:
            self.error_message = str(e)
            await self.close(ConnectionState.ERROR)
            if isinstance(e, OSError):
                msg = f"Handshake with {self.peer_info} failed: {e}"
                raise PeerConnectionError(msg) from e
            raise

        self.remote_peer_id = theirs.peer_id
        self.peer_info = self.peer_info.model_copy(update={"peer_id": theirs.peer_id})
        self.state = ConnectionState.CONNECTED
        self.last_activity = time.time()
        logger.debug(
            "Handshake complete with %s (peer id %s)",
            self.peer_info,
            theirs.peer_id.hex(),
        )
        return theirs.peer_id

    async def send(self, message: Message) -> None:
        """Frame and send one message."""
        if self.writer is None:
            msg = f"Not connected to {self.peer_info}"
            raise PeerConnectionError(msg)
        self.writer.write(self.framer.encode_message(message))
        try:
            await self.writer.drain()
        except OSError as e:
            msg = f"Send to {self.peer_info} failed: {e}"
            raise PeerConnectionError(msg) from e
        logger.debug("Sent %s to %s", type(message).__name__, self.peer_info)

    async def receive(self) -> Message:
        """Wait for the next complete message from the peer.

        Raises:
            MessageError: If the peer sends a malformed frame
            PeerConnectionError: If the peer closes the stream

        """
        if self.reader is None:
            msg = f"Not connected to {self.peer_info}"
            raise PeerConnectionError(msg)

        while True:
            message = self.framer.decode_message(self._buffer)
            if message is not None:
                self.last_activity = time.time()
                logger.debug(
                    "Received %s from %s", type(message).__name__, self.peer_info
                )
                return message

            try:
                data = await self.reader.read(READ_CHUNK_SIZE)
            except OSError as e:
                msg = f"Read from {self.peer_info} failed: {e}"
                raise PeerConnectionError(msg) from e
            if not data:
                msg = f"Connection closed by {self.peer_info}"
                raise PeerConnectionError(msg)
            self._buffer.extend(data)

    async def close(self, state: ConnectionState = ConnectionState.CLOSED) -> None:
        """Close the stream; safe to call more than once."""
        self.state = state
        writer, self.writer, self.reader = self.writer, None, None
        if writer is None:
            return
        if not writer.is_closing():
            writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()


async def open_peer_connection(
    peer_info: PeerInfo,
    info_hash: bytes,
    peer_id: bytes,
    *,
    max_frame_size: int = MAX_FRAME_SIZE,
    connect_timeout: float | None = None,
) -> PeerConnection:
    """Connect to a peer and complete the handshake.

    The connection is closed if any step fails.

    Raises:
        PeerConnectionError: If the TCP connect fails or times out
        HandshakeError: If the peer answers for another torrent

    """
    connection = PeerConnection(
        peer_info, info_hash, peer_id, max_frame_size=max_frame_size
    )
    try:
        try:
            await asyncio.wait_for(connection.connect(), timeout=connect_timeout)
        except asyncio.TimeoutError as e:
            msg = f"Connecting to {peer_info} timed out after {connect_timeout}s"
            raise PeerConnectionError(msg) from e
        await connection.handshake()
    except BaseException:
        await connection.close(ConnectionState.ERROR)
        raise
    return connection
