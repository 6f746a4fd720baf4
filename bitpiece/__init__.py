"""bitpiece - a small asyncio BitTorrent client."""

from __future__ import annotations

__version__ = "0.1.0"
