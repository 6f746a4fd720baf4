"""Exception hierarchy for bitpiece.

Every error raised by the codec, the wire protocol and the download
orchestrator derives from :class:`BitpieceError`, so callers can catch the
whole family or a single kind.
"""

from __future__ import annotations

from typing import Any


class BitpieceError(Exception):
    """Base exception for all bitpiece errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize bitpiece error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class NetworkError(BitpieceError):
    """Network-related errors."""


class TrackerError(NetworkError):
    """Tracker communication errors."""


class PeerConnectionError(NetworkError):
    """Peer connection errors."""


class ProtocolError(BitpieceError):
    """BitTorrent peer wire protocol errors."""


class HandshakeError(ProtocolError):
    """Handshake protocol errors."""


class MessageError(ProtocolError):
    """Message framing and payload errors."""


class ValidationError(BitpieceError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class BencodeError(ValidationError):
    """Bencode encoding/decoding errors."""


class BencodeDecodeError(BencodeError):
    """Malformed bencoded input.

    ``offset`` is the byte position in the input where decoding failed.
    """

    def __init__(self, message: str, offset: int):
        """Initialize decode error with the failing offset."""
        super().__init__(message, {"offset": offset})
        self.offset = offset


class BencodeEncodeError(BencodeError):
    """Value cannot be represented in bencode."""


class MetainfoError(ValidationError):
    """Torrent metainfo is missing keys or has values of the wrong kind."""


class HashShapeError(MetainfoError):
    """The ``pieces`` byte-string length is not a multiple of 20."""


class VerificationError(ValidationError):
    """A downloaded piece does not match its expected hash."""
