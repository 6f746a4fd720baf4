"""Peer wire protocol and connections.

This package handles the handshake, message framing and the pool of live
peer connections.
"""

from __future__ import annotations

from bitpiece.peer.connection_pool import PeerConnectionPool
from bitpiece.peer.peer import (
    Bitfield,
    Cancel,
    Choke,
    Handshake,
    Have,
    Interested,
    Message,
    MessageFramer,
    NotInterested,
    Piece,
    RawMessage,
    Request,
    Unchoke,
    message_from_raw,
)
from bitpiece.peer.peer_connection import (
    ConnectionState,
    PeerConnection,
    open_peer_connection,
)

__all__ = [
    "Bitfield",
    "Cancel",
    "Choke",
    "ConnectionState",
    "Handshake",
    "Have",
    "Interested",
    "Message",
    "MessageFramer",
    "NotInterested",
    "PeerConnection",
    "PeerConnectionPool",
    "Piece",
    "RawMessage",
    "Request",
    "Unchoke",
    "message_from_raw",
    "open_peer_connection",
]
