"""Pydantic models for bitpiece.

Provides validated data models for torrent metadata, peers, tracker
responses and configuration.
"""

from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class MessageType(int, Enum):
    """BitTorrent message types."""

    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8


class PeerInfo(BaseModel):
    """Peer information."""

    ip: str = Field(..., description="Peer IP address")
    port: int = Field(..., ge=1, le=65535, description="Peer port number")
    peer_id: bytes | None = Field(None, description="Peer ID")

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v):
        """Validate IP address format."""
        if not v:
            msg = "IP address cannot be empty"
            raise ValueError(msg)
        return v

    def __str__(self) -> str:
        """String representation of peer info."""
        return f"{self.ip}:{self.port}"

    def __hash__(self) -> int:
        """Hash peer info for use as dictionary key."""
        return hash((self.ip, self.port))

    def __eq__(self, other) -> bool:
        """Equality comparison for peer info."""
        if not isinstance(other, PeerInfo):
            return False
        return self.ip == other.ip and self.port == other.port


class TrackerResponse(BaseModel):
    """Tracker response data."""

    interval: int = Field(..., ge=0, description="Announce interval in seconds")
    peers: list[PeerInfo] = Field(default_factory=list, description="List of peers")
    complete: int | None = Field(None, ge=0, description="Number of seeders")
    incomplete: int | None = Field(None, ge=0, description="Number of leechers")
    warning_message: str | None = Field(None, description="Warning message")


class TorrentInfo(BaseModel):
    """Single-file torrent metadata.

    Immutable once built; the info hash and the piece hash table are shared
    read-only by every peer session of a download.
    """

    model_config = ConfigDict(frozen=True)

    announce: str = Field(..., description="Announce URL")
    name: str = Field(..., description="Suggested file name")
    length: int = Field(..., ge=0, description="Total length in bytes")
    piece_length: int = Field(..., gt=0, description="Nominal piece length in bytes")
    pieces: list[bytes] = Field(default_factory=list, description="Piece hashes")
    info_hash: bytes = Field(
        ..., min_length=20, max_length=20, description="SHA-1 of the info dictionary"
    )

    @field_validator("pieces")
    @classmethod
    def validate_pieces(cls, v: list[bytes]) -> list[bytes]:
        """Every piece hash is a 20-byte SHA-1 digest."""
        for index, digest in enumerate(v):
            if len(digest) != 20:
                msg = f"Piece hash {index} is {len(digest)} bytes, expected 20"
                raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_piece_count(self):
        """Piece count must cover the content exactly."""
        expected = math.ceil(self.length / self.piece_length)
        if len(self.pieces) != expected:
            msg = (
                f"Torrent has {len(self.pieces)} piece hashes but "
                f"{self.length} bytes in {self.piece_length}-byte pieces "
                f"needs {expected}"
            )
            raise ValueError(msg)
        return self

    @property
    def num_pieces(self) -> int:
        """Number of pieces."""
        return len(self.pieces)

    @property
    def info_hash_hex(self) -> str:
        """Info hash as lowercase hex."""
        return self.info_hash.hex()

    def piece_size(self, index: int) -> int:
        """Size of piece ``index``; the final piece holds the remainder."""
        if not 0 <= index < self.num_pieces:
            msg = f"Piece index {index} out of range (0..{self.num_pieces - 1})"
            raise IndexError(msg)
        if index < self.num_pieces - 1:
            return self.piece_length
        return self.length - self.piece_length * (self.num_pieces - 1)

    def piece_hash(self, index: int) -> bytes:
        """Expected SHA-1 of piece ``index``."""
        return self.pieces[index]


class NetworkConfig(BaseModel):
    """Network configuration."""

    listen_port: int = Field(
        default=6881,
        ge=1,
        le=65535,
        description="Port reported to the tracker",
    )
    connection_timeout: float = Field(
        default=10.0,
        gt=0,
        le=300.0,
        description="TCP connect timeout in seconds",
    )
    handshake_timeout: float = Field(
        default=10.0,
        gt=0,
        le=300.0,
        description="Handshake timeout in seconds",
    )
    message_timeout: float = Field(
        default=30.0,
        gt=0,
        le=3600.0,
        description="Upper bound on one piece download from a single peer",
    )
    tracker_timeout: float = Field(
        default=15.0,
        gt=0,
        le=300.0,
        description="Tracker HTTP request timeout in seconds",
    )
    max_concurrent_handshakes: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum simultaneous connection attempts",
    )
    max_peers: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum peers to connect to",
    )


class ProtocolConfig(BaseModel):
    """Peer wire protocol tunables."""

    block_size: int = Field(
        default=16384,
        ge=1,
        le=131072,
        description="Block request size in bytes",
    )
    max_frame_size: int = Field(
        default=32768,
        ge=64,
        le=1 << 24,
        description="Largest accepted frame (tag + payload) in bytes",
    )
    pipeline_depth: int = Field(
        default=1,
        ge=1,
        le=128,
        description="Outstanding block requests per connection",
    )
    peer_id: str | None = Field(
        None,
        description="Fixed 20-character local peer id (random when unset)",
    )

    @field_validator("peer_id")
    @classmethod
    def validate_peer_id(cls, v):
        """Validate peer id length."""
        if v is not None and len(v.encode("utf-8")) != 20:
            msg = "peer_id must encode to exactly 20 bytes"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_block_fits_frame(self):
        """A full block plus the piece header must fit in one frame."""
        if self.block_size + 9 > self.max_frame_size:
            msg = (
                f"block_size {self.block_size} does not fit in a "
                f"{self.max_frame_size}-byte frame"
            )
            raise ValueError(msg)
        return self


class DownloadConfig(BaseModel):
    """Download session configuration."""

    max_piece_attempts: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Peers to try for one piece before giving up",
    )


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False, description="Use structured JSON logging"
    )
    log_format: str = Field(
        default="%(asctime)s %(levelname)s %(name)s: %(message)s",
        description="Log format string for file output",
    )


class Config(BaseModel):
    """Main configuration model."""

    network: NetworkConfig = Field(
        default_factory=NetworkConfig,
        description="Network configuration",
    )
    protocol: ProtocolConfig = Field(
        default_factory=ProtocolConfig,
        description="Peer wire protocol configuration",
    )
    download: DownloadConfig = Field(
        default_factory=DownloadConfig,
        description="Download configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )
