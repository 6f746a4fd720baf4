"""Async HTTP tracker client for bitpiece.

Announces to the torrent's tracker over HTTP(S) and turns the bencoded reply
into a :class:`TrackerResponse` with a list of peers.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import struct
import urllib.parse
from typing import TYPE_CHECKING, Any

import aiohttp
from pydantic import ValidationError as PydanticValidationError
from yarl import URL

from bitpiece.core.bencode import decode
from bitpiece.models import PeerInfo, TrackerResponse
from bitpiece.utils.exceptions import BencodeDecodeError, TrackerError
from bitpiece.utils.version import get_user_agent

if TYPE_CHECKING:  # pragma: no cover
    from bitpiece.models import TorrentInfo

COMPACT_PEER_LENGTH = 6

_COMPACT_PEER = struct.Struct("!4sH")


def build_tracker_url(
    base_url: str,
    info_hash: bytes,
    peer_id: bytes,
    port: int,
    uploaded: int,
    downloaded: int,
    left: int,
    event: str | None = None,
) -> str:
    """Build the announce URL with all required parameters.

    ``info_hash`` and ``peer_id`` are raw bytes and are percent-encoded byte
    by byte; the result must not be encoded again.
    """
    query_parts = [
        f"info_hash={urllib.parse.quote(info_hash, safe='')}",
        f"peer_id={urllib.parse.quote(peer_id, safe='')}",
        f"port={port}",
        f"uploaded={uploaded}",
        f"downloaded={downloaded}",
        f"left={left}",
        "compact=1",
    ]
    if event:
        query_parts.append(f"event={urllib.parse.quote(event, safe='')}")

    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{'&'.join(query_parts)}"


def parse_compact_peers(peers_data: bytes) -> list[PeerInfo]:
    """Parse compact peer format.

    In compact format, peers are encoded as 6 bytes per peer:
    - 4 bytes: IP address (network byte order)
    - 2 bytes: port (network byte order)

    Records with port 0 are skipped.

    Raises:
        TrackerError: If the data is not a whole number of records

    """
    if len(peers_data) % COMPACT_PEER_LENGTH != 0:
        msg = f"Invalid compact peer data length: {len(peers_data)} bytes"
        raise TrackerError(msg)

    peers = []
    for ip_bytes, port in _COMPACT_PEER.iter_unpack(peers_data):
        if port == 0:
            continue
        peers.append(PeerInfo(ip=socket.inet_ntoa(ip_bytes), port=port))
    return peers


def _parse_dict_peers(peers_data: list[Any]) -> list[PeerInfo]:
    peers = []
    for entry in peers_data:
        if not isinstance(entry, dict):
            continue
        ip = entry.get(b"ip")
        port = entry.get(b"port")
        if not isinstance(ip, bytes) or not isinstance(port, int):
            continue
        if not 0 < port <= 0xFFFF:
            continue
        peer_id = entry.get(b"peer id")
        try:
            peer = PeerInfo(
                ip=ip.decode("utf-8", errors="replace"),
                port=port,
                peer_id=peer_id if isinstance(peer_id, bytes) else None,
            )
        except PydanticValidationError:
            continue
        peers.append(peer)
    return peers


def parse_tracker_response(response_data: bytes) -> TrackerResponse:
    """Parse a bencoded announce response.

    Raises:
        TrackerError: On a failure reason, a malformed body or missing keys

    """
    try:
        decoded = decode(response_data)
    except BencodeDecodeError as e:
        msg = f"Malformed tracker response: {e}"
        raise TrackerError(msg) from e

    if not isinstance(decoded, dict):
        msg = "Tracker response is not a dictionary"
        raise TrackerError(msg)

    if b"failure reason" in decoded:
        reason = decoded[b"failure reason"]
        if isinstance(reason, bytes):
            reason = reason.decode("utf-8", errors="replace")
        msg = f"Tracker failure: {reason}"
        raise TrackerError(msg)

    interval = decoded.get(b"interval")
    if not isinstance(interval, int):
        msg = "Missing interval in tracker response"
        raise TrackerError(msg)

    peers_data = decoded.get(b"peers")
    if isinstance(peers_data, bytes):
        peers = parse_compact_peers(peers_data)
    elif isinstance(peers_data, list):
        peers = _parse_dict_peers(peers_data)
    else:
        msg = "Missing peers in tracker response"
        raise TrackerError(msg)

    warning = decoded.get(b"warning message")
    complete = decoded.get(b"complete")
    incomplete = decoded.get(b"incomplete")
    try:
        return TrackerResponse(
            interval=interval,
            peers=peers,
            complete=complete if isinstance(complete, int) else None,
            incomplete=incomplete if isinstance(incomplete, int) else None,
            warning_message=(
                warning.decode("utf-8", errors="replace")
                if isinstance(warning, bytes)
                else None
            ),
        )
    except PydanticValidationError as e:
        msg = f"Invalid tracker response: {e.errors()[0]['msg']}"
        raise TrackerError(msg) from e


class AsyncTrackerClient:
    """HTTP tracker client built on a shared aiohttp session."""

    def __init__(
        self,
        peer_id: bytes,
        *,
        port: int = 6881,
        timeout: float = 15.0,
    ):
        """Initialize the tracker client.

        Args:
            peer_id: Our 20-byte peer id
            port: Listening port reported to the tracker
            timeout: Total request timeout in seconds

        """
        self.peer_id = peer_id
        self.port = port
        self.timeout = timeout
        self.user_agent = get_user_agent()
        self.session: aiohttp.ClientSession | None = None

        self.logger = logging.getLogger(__name__)

    async def __aenter__(self) -> AsyncTrackerClient:
        """Start the client."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        """Stop the client."""
        await self.stop()

    async def start(self) -> None:
        """Create the HTTP session."""
        if self.session is not None:
            return
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={"User-Agent": self.user_agent},
        )
        self.logger.debug("Tracker client started")

    async def stop(self) -> None:
        """Close the HTTP session."""
        session, self.session = self.session, None
        if session is not None and not session.closed:
            await session.close()
        self.logger.debug("Tracker client stopped")

    async def announce(
        self,
        torrent: TorrentInfo,
        uploaded: int = 0,
        downloaded: int = 0,
        left: int | None = None,
        event: str | None = "started",
    ) -> TrackerResponse:
        """Announce to the torrent's tracker.

        Raises:
            TrackerError: On a transport failure, a non-200 status or a
                failure reason in the response

        """
        url = build_tracker_url(
            torrent.announce,
            torrent.info_hash,
            self.peer_id,
            self.port,
            uploaded,
            downloaded,
            torrent.length if left is None else left,
            event,
        )
        self.logger.debug("Announcing to %s", torrent.announce)
        data = await self._make_request_async(url)
        response = parse_tracker_response(data)

        if response.warning_message:
            self.logger.warning("Tracker warning: %s", response.warning_message)
        self.logger.info(
            "Tracker returned %d peers (interval %ds)",
            len(response.peers),
            response.interval,
        )
        return response

    async def _make_request_async(self, url: str) -> bytes:
        """Make HTTP GET request to tracker."""
        if self.session is None:
            msg = "HTTP session not initialized"
            raise RuntimeError(msg)

        try:
            # The query is already percent-encoded
            async with self.session.get(URL(url, encoded=True)) as response:
                if response.status != 200:
                    msg = f"HTTP {response.status}: {response.reason}"
                    raise TrackerError(msg, {"status": response.status})
                return await response.read()
        except aiohttp.ClientError as e:
            msg = f"HTTP tracker request failed: {e}"
            raise TrackerError(msg) from e
        except asyncio.TimeoutError as e:
            msg = f"HTTP tracker request timed out after {self.timeout}s"
            raise TrackerError(msg) from e
