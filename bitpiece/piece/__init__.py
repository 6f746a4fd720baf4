"""Piece download and verification."""

from __future__ import annotations

from bitpiece.piece.piece_download import (
    BLOCK_SIZE,
    BlockRequest,
    DownloadState,
    PieceDownloader,
    assemble_blocks,
    plan_blocks,
    verify_piece,
)

__all__ = [
    "BLOCK_SIZE",
    "BlockRequest",
    "DownloadState",
    "PieceDownloader",
    "assemble_blocks",
    "plan_blocks",
    "verify_piece",
]
