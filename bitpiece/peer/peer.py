"""Peer wire protocol for the BitTorrent client.

This module holds the 68-byte handshake, the typed peer messages and the
length-prefixed framing codec that moves them over a byte stream.

Messages exist in two forms. :class:`RawMessage` is the wire form (a tag and
an opaque payload) and only lives at the framing boundary. Everything else
works with the typed messages (:class:`Choke` ... :class:`Cancel`), each
carrying only the fields valid for its kind.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import ClassVar, Union

from bitpiece.models import MessageType
from bitpiece.utils.exceptions import HandshakeError, MessageError

HANDSHAKE_LENGTH = 68
PROTOCOL_LENGTH = 19
MAX_FRAME_SIZE = 1 << 15

_LENGTH = struct.Struct("!I")
_INDEX_BEGIN = struct.Struct("!II")
_INDEX_BEGIN_LENGTH = struct.Struct("!III")


class PeerState:
    """Tracks what we know about the remote side of a connection."""

    def __init__(self) -> None:
        """Initialize peer state."""
        self.am_interested: bool = False  # We sent Interested
        self.peer_choking: bool = True  # Peer is choking us
        self.bitfield: Bitfield | None = None  # Pieces the peer announced

    def __str__(self) -> str:
        """Return string representation of peer state."""
        return (
            f"PeerState(interested={self.am_interested}, "
            f"peer_choking={self.peer_choking}, "
            f"bitfield={'yes' if self.bitfield else 'no'})"
        )


class Handshake:
    """BitTorrent handshake message."""

    PROTOCOL_STRING: ClassVar[bytes] = b"BitTorrent protocol"
    RESERVED_BYTES: ClassVar[bytes] = b"\x00" * 8

    def __init__(
        self,
        info_hash: bytes,
        peer_id: bytes,
        *,
        protocol: bytes = PROTOCOL_STRING,
        reserved: bytes = RESERVED_BYTES,
        protocol_len: int = PROTOCOL_LENGTH,
    ) -> None:
        """Initialize handshake.

        Args:
            info_hash: 20-byte SHA-1 hash of info dictionary
            peer_id: 20-byte peer ID
            protocol: 19-byte protocol name
            reserved: 8 reserved (extension) bytes
            protocol_len: Length byte sent ahead of the protocol string

        """
        if len(info_hash) != 20:
            msg = f"Info hash must be 20 bytes, got {len(info_hash)}"
            raise HandshakeError(msg)
        if len(peer_id) != 20:
            msg = f"Peer ID must be 20 bytes, got {len(peer_id)}"
            raise HandshakeError(msg)
        if len(protocol) != 19:
            msg = f"Protocol string must be 19 bytes, got {len(protocol)}"
            raise HandshakeError(msg)
        if not 0 <= protocol_len <= 0xFF:
            msg = f"Protocol length must fit in one byte, got {protocol_len}"
            raise HandshakeError(msg)
        if len(reserved) != 8:
            msg = f"Reserved must be 8 bytes, got {len(reserved)}"
            raise HandshakeError(msg)

        self.info_hash = bytes(info_hash)
        self.peer_id = bytes(peer_id)
        self.protocol = bytes(protocol)
        self.reserved = bytes(reserved)
        self.protocol_len = protocol_len

    def __eq__(self, other) -> bool:
        """Compare the wire forms."""
        if not isinstance(other, Handshake):
            return NotImplemented
        return self.to_bytes() == other.to_bytes()

    def __hash__(self) -> int:
        """Hash the wire form, consistent with equality."""
        return hash(self.to_bytes())

    def __repr__(self) -> str:
        """Return debug representation."""
        return f"Handshake(info_hash={self.info_hash.hex()}, peer_id={self.peer_id!r})"

    def to_bytes(self) -> bytes:
        """Encode handshake to bytes.

        Format: <protocol len><protocol><reserved><info_hash><peer_id>
        Total: 1 + 19 + 8 + 20 + 20 = 68 bytes
        """
        return (
            struct.pack("B", self.protocol_len)
            + self.protocol
            + self.reserved
            + self.info_hash
            + self.peer_id
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> Handshake | None:
        """Decode a 68-byte handshake, or return None for any other length.

        The received length byte, protocol string and reserved bytes are kept
        as-is, so ``Handshake.from_bytes(b).to_bytes() == b``.
        """
        if len(data) != HANDSHAKE_LENGTH:
            return None
        return cls(
            data[28:48],
            data[48:68],
            protocol=data[1:20],
            reserved=data[20:28],
            protocol_len=data[0],
        )

    @classmethod
    def decode(cls, data: bytes) -> Handshake:
        """Decode handshake from bytes.

        Raises:
            HandshakeError: If data is not a 68-byte handshake

        """
        handshake = cls.from_bytes(data)
        if handshake is None:
            msg = f"Handshake must be 68 bytes, got {len(data)}"
            raise HandshakeError(msg)
        return handshake

    def validate_reply(self, reply: Handshake) -> None:
        """Check the peer's reply against our handshake.

        Raises:
            HandshakeError: On a foreign protocol or an info hash mismatch

        """
        if reply.protocol_len != PROTOCOL_LENGTH:
            msg = f"Invalid protocol length byte: {reply.protocol_len}"
            raise HandshakeError(msg)
        if reply.protocol != self.PROTOCOL_STRING:
            msg = f"Invalid protocol string: {reply.protocol!r}"
            raise HandshakeError(msg)
        if reply.info_hash != self.info_hash:
            msg = "Info hash mismatch in handshake"
            raise HandshakeError(
                msg,
                {"expected": self.info_hash.hex(), "received": reply.info_hash.hex()},
            )


@dataclass(frozen=True)
class RawMessage:
    """Wire form of a message: tag plus undecoded payload."""

    tag: MessageType
    payload: bytes = b""


class PeerMessage:
    """Base class for typed peer messages."""

    message_id: ClassVar[MessageType]

    def payload(self) -> bytes:
        """Encode the message body (without tag)."""
        return b""

    def to_raw(self) -> RawMessage:
        """Convert to the wire form."""
        return RawMessage(self.message_id, self.payload())


@dataclass(frozen=True)
class Choke(PeerMessage):
    """Choke message."""

    message_id: ClassVar[MessageType] = MessageType.CHOKE


@dataclass(frozen=True)
class Unchoke(PeerMessage):
    """Unchoke message."""

    message_id: ClassVar[MessageType] = MessageType.UNCHOKE


@dataclass(frozen=True)
class Interested(PeerMessage):
    """Interested message."""

    message_id: ClassVar[MessageType] = MessageType.INTERESTED


@dataclass(frozen=True)
class NotInterested(PeerMessage):
    """Not interested message."""

    message_id: ClassVar[MessageType] = MessageType.NOT_INTERESTED


@dataclass(frozen=True)
class Have(PeerMessage):
    """Have message (announces that peer has a piece)."""

    message_id: ClassVar[MessageType] = MessageType.HAVE
    index: int

    def payload(self) -> bytes:
        return _LENGTH.pack(self.index)


@dataclass(frozen=True)
class Bitfield(PeerMessage):
    """Bitfield message (shows which pieces the peer has)."""

    message_id: ClassVar[MessageType] = MessageType.BITFIELD
    bitfield: bytes

    def payload(self) -> bytes:
        return self.bitfield

    def has_piece(self, piece_index: int) -> bool:
        """Check if the bit for ``piece_index`` is set (MSB first)."""
        if piece_index < 0:
            return False
        byte_index, bit_index = divmod(piece_index, 8)
        if byte_index >= len(self.bitfield):
            return False
        return bool(self.bitfield[byte_index] & (0x80 >> bit_index))


@dataclass(frozen=True)
class Request(PeerMessage):
    """Request message (request a block from a piece)."""

    message_id: ClassVar[MessageType] = MessageType.REQUEST
    index: int
    begin: int
    length: int

    def payload(self) -> bytes:
        return _INDEX_BEGIN_LENGTH.pack(self.index, self.begin, self.length)


@dataclass(frozen=True)
class Piece(PeerMessage):
    """Piece message (contains a block of piece data)."""

    message_id: ClassVar[MessageType] = MessageType.PIECE
    index: int
    begin: int
    block: bytes

    def payload(self) -> bytes:
        return _INDEX_BEGIN.pack(self.index, self.begin) + self.block


@dataclass(frozen=True)
class Cancel(PeerMessage):
    """Cancel message (cancel a previous request)."""

    message_id: ClassVar[MessageType] = MessageType.CANCEL
    index: int
    begin: int
    length: int

    def payload(self) -> bytes:
        return _INDEX_BEGIN_LENGTH.pack(self.index, self.begin, self.length)


Message = Union[
    Choke,
    Unchoke,
    Interested,
    NotInterested,
    Have,
    Bitfield,
    Request,
    Piece,
    Cancel,
]

_EMPTY_MESSAGES: dict[MessageType, Message] = {
    MessageType.CHOKE: Choke(),
    MessageType.UNCHOKE: Unchoke(),
    MessageType.INTERESTED: Interested(),
    MessageType.NOT_INTERESTED: NotInterested(),
}


def _bad_length(tag: MessageType, length: int) -> MessageError:
    msg = f"{tag.name} message has invalid payload length {length}"
    return MessageError(msg, {"tag": tag.name, "length": length})


def message_from_raw(raw: RawMessage) -> Message:
    """Convert a wire message into its typed form.

    Raises:
        MessageError: If the payload shape does not fit the tag

    """
    tag, payload = raw.tag, raw.payload
    size = len(payload)

    if tag in _EMPTY_MESSAGES:
        if size:
            raise _bad_length(tag, size)
        return _EMPTY_MESSAGES[tag]

    if tag == MessageType.HAVE:
        if size != 4:
            raise _bad_length(tag, size)
        return Have(_LENGTH.unpack(payload)[0])

    if tag == MessageType.BITFIELD:
        if size == 0:
            raise _bad_length(tag, size)
        return Bitfield(bytes(payload))

    if tag in (MessageType.REQUEST, MessageType.CANCEL):
        if size != 12:
            raise _bad_length(tag, size)
        index, begin, length = _INDEX_BEGIN_LENGTH.unpack(payload)
        if tag == MessageType.REQUEST:
            return Request(index, begin, length)
        return Cancel(index, begin, length)

    if tag == MessageType.PIECE:
        if size < 9:
            raise _bad_length(tag, size)
        index, begin = _INDEX_BEGIN.unpack(payload[:8])
        return Piece(index, begin, bytes(payload[8:]))

    msg = f"Unknown message type: {tag}"
    raise MessageError(msg)


class MessageFramer:
    """Length-prefixed framing over a growable receive buffer.

    Frame layout: ``[4-byte big-endian length][1-byte tag][payload]`` where
    ``length`` counts the tag and the payload. ``max_frame_size`` bounds
    ``length`` in both directions.
    """

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE) -> None:
        """Initialize framer."""
        self.max_frame_size = max_frame_size

    def encode(self, raw: RawMessage) -> bytes:
        """Encode a wire message into one frame.

        Raises:
            MessageError: If the frame would exceed ``max_frame_size``

        """
        full_size = len(raw.payload) + 1
        if full_size > self.max_frame_size:
            msg = f"Frame of length {full_size} is too large"
            raise MessageError(msg, {"limit": self.max_frame_size})
        return _LENGTH.pack(full_size) + bytes((raw.tag,)) + raw.payload

    @staticmethod
    def keep_alive() -> bytes:
        """Encode a zero-length keep-alive frame."""
        return _LENGTH.pack(0)

    def decode(self, buffer: bytearray) -> RawMessage | None:
        """Take one complete frame off the front of ``buffer``.

        Returns None, consuming nothing, until the whole frame is buffered.
        Keep-alive frames are consumed and skipped.

        Raises:
            MessageError: On an oversized frame or an unknown tag

        """
        while True:
            if len(buffer) < 4:
                return None

            length = _LENGTH.unpack_from(buffer, 0)[0]
            if length > self.max_frame_size:
                msg = f"Frame of length {length} is too large"
                raise MessageError(msg, {"limit": self.max_frame_size})

            if length == 0:
                del buffer[:4]
                continue

            if len(buffer) < 4 + length:
                return None

            tag_byte = buffer[4]
            payload = bytes(buffer[5 : 4 + length])
            del buffer[: 4 + length]

            try:
                tag = MessageType(tag_byte)
            except ValueError:
                msg = f"Message tag {tag_byte} is invalid"
                raise MessageError(msg, {"tag": tag_byte}) from None
            return RawMessage(tag, payload)

    def encode_message(self, message: Message) -> bytes:
        """Encode a typed message into one frame."""
        return self.encode(message.to_raw())

    def decode_message(self, buffer: bytearray) -> Message | None:
        """Take one typed message off the front of ``buffer``."""
        raw = self.decode(buffer)
        if raw is None:
            return None
        return message_from_raw(raw)
