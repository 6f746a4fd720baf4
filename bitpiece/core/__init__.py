"""Core BitTorrent metadata handling.

This package contains:
- Bencoding (encoding/decoding)
- Torrent file parsing and info hash derivation
"""

from __future__ import annotations

from bitpiece.core.bencode import (
    BencodeDecoder,
    BencodeEncoder,
    decode,
    decode_prefix,
    encode,
)
from bitpiece.core.torrent import TorrentParser, compute_info_hash

__all__ = [
    "BencodeDecoder",
    "BencodeEncoder",
    "TorrentParser",
    "compute_info_hash",
    "decode",
    "decode_prefix",
    "encode",
]
