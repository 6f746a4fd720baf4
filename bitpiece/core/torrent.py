"""Torrent file parsing for the BitTorrent client.

This module handles parsing torrent files, extracting metadata,
and calculating info hashes as required by the BitTorrent protocol.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from bitpiece.core.bencode import decode, encode
from bitpiece.models import TorrentInfo
from bitpiece.utils.exceptions import HashShapeError, MetainfoError

logger = logging.getLogger(__name__)

HASH_LENGTH = 20


def compute_info_hash(info: dict[bytes, Any]) -> bytes:
    """SHA-1 of the canonical encoding of the info dictionary."""
    return hashlib.sha1(encode(info)).digest()  # nosec B324 - protocol-mandated


def split_piece_hashes(pieces: bytes) -> list[bytes]:
    """Split the concatenated ``pieces`` string into 20-byte digests.

    Raises:
        HashShapeError: If the length is not a multiple of 20

    """
    if len(pieces) % HASH_LENGTH != 0:
        msg = f"pieces length {len(pieces)} is not a multiple of {HASH_LENGTH}"
        raise HashShapeError(msg, {"length": len(pieces)})
    return [pieces[i : i + HASH_LENGTH] for i in range(0, len(pieces), HASH_LENGTH)]


def _require(data: dict[bytes, Any], key: bytes, kind: type, where: str) -> Any:
    if key not in data:
        msg = f"Missing required key in {where}: {key.decode()}"
        raise MetainfoError(msg)
    value = data[key]
    if not isinstance(value, kind) or isinstance(value, bool):
        msg = (
            f"Key {key.decode()} in {where} must be {kind.__name__}, "
            f"got {type(value).__name__}"
        )
        raise MetainfoError(msg)
    return value


class TorrentParser:
    """Parser for single-file BitTorrent metainfo."""

    def parse(self, torrent_path: str | Path) -> TorrentInfo:
        """Parse a torrent file from a local path.

        Raises:
            MetainfoError: If the file is missing or its metadata is invalid
            BencodeDecodeError: If the file is not valid bencode

        """
        path = Path(torrent_path)
        if not path.exists():
            msg = f"Torrent file not found: {path}"
            raise MetainfoError(msg)

        with open(path, "rb") as f:
            return self.parse_bytes(f.read())

    def parse_bytes(self, data: bytes) -> TorrentInfo:
        """Parse bencoded torrent bytes."""
        decoded = decode(data)
        if not isinstance(decoded, dict):
            msg = "Torrent must be a bencoded dictionary"
            raise MetainfoError(msg)
        return self.from_dict(decoded)

    def from_dict(self, data: dict[bytes, Any]) -> TorrentInfo:
        """Build torrent metadata from a decoded top-level dictionary."""
        announce = _require(data, b"announce", bytes, "torrent")
        info = _require(data, b"info", dict, "torrent")

        name = _require(info, b"name", bytes, "info")
        length = _require(info, b"length", int, "info")
        piece_length = _require(info, b"piece length", int, "info")
        pieces = _require(info, b"pieces", bytes, "info")

        if length < 0:
            msg = f"Invalid length {length}"
            raise MetainfoError(msg)
        if piece_length <= 0:
            msg = f"Invalid piece length {piece_length}"
            raise MetainfoError(msg)

        hashes = split_piece_hashes(pieces)

        try:
            torrent = TorrentInfo(
                announce=announce.decode("utf-8", errors="replace"),
                name=name.decode("utf-8", errors="replace"),
                length=length,
                piece_length=piece_length,
                pieces=hashes,
                info_hash=compute_info_hash(info),
            )
        except PydanticValidationError as e:
            msg = f"Invalid torrent metadata: {e.errors()[0]['msg']}"
            raise MetainfoError(msg) from e

        logger.debug(
            "Parsed torrent %s: %d bytes, %d pieces, info hash %s",
            torrent.name,
            torrent.length,
            torrent.num_pieces,
            torrent.info_hash_hex,
        )
        return torrent
