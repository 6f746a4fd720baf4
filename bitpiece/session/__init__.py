"""Download session management."""

from __future__ import annotations

from bitpiece.session.session import DownloadSession

__all__ = ["DownloadSession"]
