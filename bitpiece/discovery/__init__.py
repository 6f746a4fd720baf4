"""Peer discovery through HTTP trackers."""

from __future__ import annotations

from bitpiece.discovery.tracker import (
    AsyncTrackerClient,
    build_tracker_url,
    parse_compact_peers,
    parse_tracker_response,
)

__all__ = [
    "AsyncTrackerClient",
    "build_tracker_url",
    "parse_compact_peers",
    "parse_tracker_response",
]
