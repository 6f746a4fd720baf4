"""Single-piece download over one peer connection.

Drives the peer through the bitfield / interested / unchoke preamble,
requests the piece block by block, reassembles the blocks in offset order
and verifies the SHA-1 digest before handing the bytes back.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from bitpiece.peer.peer import (
    Bitfield,
    Choke,
    Have,
    Interested,
    Piece,
    Request,
    Unchoke,
)
from bitpiece.peer.peer_connection import ConnectionState
from bitpiece.utils.exceptions import (
    PeerConnectionError,
    ProtocolError,
    VerificationError,
)

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Sequence

    from bitpiece.models import TorrentInfo
    from bitpiece.peer.peer_connection import PeerConnection

logger = logging.getLogger(__name__)

BLOCK_SIZE = 1 << 14


class DownloadState(Enum):
    """States of a piece download."""

    AWAIT_BITFIELD = "await_bitfield"
    AWAIT_UNCHOKE = "await_unchoke"
    REQUESTING_BLOCKS = "requesting_blocks"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class BlockRequest:
    """One block of a piece."""

    index: int
    begin: int
    length: int


def plan_blocks(
    index: int, piece_size: int, block_size: int = BLOCK_SIZE
) -> list[BlockRequest]:
    """Lay out the blocks of a piece; only the last block may be short."""
    if block_size <= 0:
        msg = f"Block size must be positive, got {block_size}"
        raise ValueError(msg)
    return [
        BlockRequest(index, begin, min(block_size, piece_size - begin))
        for begin in range(0, piece_size, block_size)
    ]


def assemble_blocks(blocks: Sequence[bytes | None]) -> bytes:
    """Join received blocks in offset order.

    Raises:
        ValueError: If a block is still missing

    """
    missing = [slot for slot, block in enumerate(blocks) if block is None]
    if missing:
        msg = f"Cannot assemble piece, missing blocks {missing}"
        raise ValueError(msg)
    return b"".join(blocks)  # type: ignore[arg-type]


def verify_piece(data: bytes, expected_hash: bytes) -> bool:
    """Check piece data against its SHA-1 digest."""
    return hashlib.sha1(data).digest() == expected_hash  # nosec B324 - protocol-mandated


class PieceDownloader:
    """Downloads pieces from a single handshaken peer.

    The bitfield and unchoke preamble happens once per connection; the
    outcome is kept on ``connection.peer_state`` so later downloads on the
    same connection go straight to requesting blocks.
    """

    def __init__(
        self,
        connection: PeerConnection,
        torrent: TorrentInfo,
        *,
        block_size: int = BLOCK_SIZE,
        pipeline_depth: int = 1,
    ):
        if pipeline_depth < 1:
            msg = f"Pipeline depth must be at least 1, got {pipeline_depth}"
            raise ValueError(msg)
        self.connection = connection
        self.torrent = torrent
        self.block_size = block_size
        self.pipeline_depth = pipeline_depth
        self.state = DownloadState.AWAIT_BITFIELD

    async def download(self, index: int) -> bytes:
        """Download and verify piece ``index``.

        Returns:
            The verified piece bytes

        Raises:
            ProtocolError: If the peer deviates from the expected exchange
            VerificationError: If the assembled piece fails its hash check
            PeerConnectionError: If the connection drops

        """
        try:
            piece_size = self.torrent.piece_size(index)
            if not self.connection.is_connected():
                msg = f"Connection to {self.connection.peer_info} is not open"
                raise PeerConnectionError(msg)
            self.connection.state = ConnectionState.ACTIVE

            await self._await_bitfield(index)
            await self._await_unchoke()

            self.state = DownloadState.REQUESTING_BLOCKS
            blocks = await self._request_blocks(index, piece_size)

            self.state = DownloadState.VERIFYING
            data = assemble_blocks(blocks)
            if not verify_piece(data, self.torrent.piece_hash(index)):
                msg = f"Piece {index} failed hash verification"
                raise VerificationError(
                    msg, {"index": index, "peer": str(self.connection.peer_info)}
                )
        except BaseException:
            self.state = DownloadState.FAILED
            if self.connection.state == ConnectionState.ACTIVE:
                self.connection.state = ConnectionState.ERROR
            raise

        self.state = DownloadState.DONE
        self.connection.state = ConnectionState.CONNECTED
        logger.debug(
            "Piece %d (%d bytes) verified from %s",
            index,
            len(data),
            self.connection.peer_info,
        )
        return data

    async def _await_bitfield(self, index: int) -> None:
        peer_state = self.connection.peer_state
        if peer_state.bitfield is None:
            self.state = DownloadState.AWAIT_BITFIELD
            message = await self.connection.receive()
            if not isinstance(message, Bitfield):
                msg = f"Expected Bitfield, got {type(message).__name__}"
                raise ProtocolError(msg)
            peer_state.bitfield = message

        if not peer_state.bitfield.has_piece(index):
            msg = f"Peer {self.connection.peer_info} does not have piece {index}"
            raise ProtocolError(msg, {"index": index})

    async def _await_unchoke(self) -> None:
        peer_state = self.connection.peer_state
        if not peer_state.am_interested:
            await self.connection.send(Interested())
            peer_state.am_interested = True

        if peer_state.peer_choking:
            self.state = DownloadState.AWAIT_UNCHOKE
            message = await self.connection.receive()
            if not isinstance(message, Unchoke):
                msg = f"Expected Unchoke, got {type(message).__name__}"
                raise ProtocolError(msg)
            peer_state.peer_choking = False

    async def _request_blocks(self, index: int, piece_size: int) -> list[bytes | None]:
        plan = plan_blocks(index, piece_size, self.block_size)
        blocks: list[bytes | None] = [None] * len(plan)
        pending: dict[tuple[int, int], BlockRequest] = {}
        next_block = 0
        received = 0

        while received < len(plan):
            while len(pending) < self.pipeline_depth and next_block < len(plan):
                block = plan[next_block]
                await self.connection.send(Request(block.index, block.begin, block.length))
                pending[(block.index, block.begin)] = block
                next_block += 1

            message = await self.connection.receive()
            if isinstance(message, Piece):
                block = self._match_block(index, message, pending)
                blocks[block.begin // self.block_size] = message.block
                received += 1
            elif isinstance(message, Choke):
                self.connection.peer_state.peer_choking = True
                msg = f"Choked with {len(pending)} requests outstanding"
                raise ProtocolError(msg, {"index": index})
            elif isinstance(message, Have):
                logger.debug(
                    "Peer %s announced piece %d", self.connection.peer_info, message.index
                )
            else:
                logger.debug(
                    "Ignoring %s from %s while requesting blocks",
                    type(message).__name__,
                    self.connection.peer_info,
                )

        return blocks

    def _match_block(
        self,
        index: int,
        message: Piece,
        pending: dict[tuple[int, int], BlockRequest],
    ) -> BlockRequest:
        if message.index != index:
            msg = f"Expected block of piece {index}, got piece {message.index}"
            raise ProtocolError(msg, {"index": message.index})
        if message.begin % self.block_size != 0:
            msg = f"Block offset {message.begin} is not aligned to {self.block_size}"
            raise ProtocolError(msg, {"begin": message.begin})
        block = pending.pop((message.index, message.begin), None)
        if block is None:
            msg = f"Unrequested block at offset {message.begin} of piece {index}"
            raise ProtocolError(msg, {"begin": message.begin})
        if len(message.block) != block.length:
            msg = (
                f"Block at offset {message.begin} has {len(message.block)} bytes, "
                f"expected {block.length}"
            )
            raise ProtocolError(msg, {"begin": message.begin})
        return block
