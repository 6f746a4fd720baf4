"""Bencoding for the BitTorrent protocol.

Bencoded values map onto Python natives: byte-strings are ``bytes``,
integers are ``int``, lists are ``list`` and dictionaries are
``dict[bytes, value]``. The encoder is canonical: dictionary keys are always
emitted sorted by their raw bytes, so re-encoding a decoded ``info``
dictionary reproduces the bytes the info hash was computed over.
"""

from __future__ import annotations

from typing import Any, Union

from bitpiece.utils.exceptions import BencodeDecodeError, BencodeEncodeError

BencodeValue = Union[bytes, int, list, dict]

DEFAULT_MAX_DEPTH = 64

_DIGITS = b"0123456789"


class BencodeDecoder:
    """Recursive-descent decoder over a bytes buffer."""

    def __init__(self, data: bytes, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        """Initialize the decoder.

        Args:
            data: Bencoded input
            max_depth: Maximum nesting of lists/dictionaries

        """
        self.data = bytes(data)
        self.position = 0
        self.max_depth = max_depth
        self._depth = 0

    def decode(self) -> BencodeValue:
        """Decode one value starting at the current position.

        Returns:
            The decoded value. ``position`` is left just past it.

        Raises:
            BencodeDecodeError: If the input is malformed

        """
        if self.position >= len(self.data):
            if not self.data:
                msg = "Cannot decode empty input"
            else:
                msg = "Unexpected end of input"
            raise BencodeDecodeError(msg, self.position)

        lead = self.data[self.position : self.position + 1]
        if lead == b"i":
            return self._decode_int()
        if lead == b"l":
            return self._decode_list()
        if lead == b"d":
            return self._decode_dict()
        if lead in _DIGITS:
            return self._decode_bytes()

        msg = f"Unexpected byte {lead!r}"
        raise BencodeDecodeError(msg, self.position)

    @property
    def remaining(self) -> bytes:
        """Bytes not yet consumed."""
        return self.data[self.position :]

    def _decode_int(self) -> int:
        start = self.position
        end = self.data.find(b"e", start + 1)
        if end == -1:
            msg = "Unterminated integer"
            raise BencodeDecodeError(msg, start)

        body = self.data[start + 1 : end]
        digits = body[1:] if body.startswith(b"-") else body
        if not digits or any(c not in _DIGITS for c in digits):
            msg = f"Invalid integer {body!r}"
            raise BencodeDecodeError(msg, start + 1)

        self.position = end + 1
        return int(body)

    def _decode_bytes(self) -> bytes:
        start = self.position
        colon = self.data.find(b":", start)
        if colon == -1:
            msg = "Missing ':' after string length"
            raise BencodeDecodeError(msg, start)

        length_part = self.data[start:colon]
        if any(c not in _DIGITS for c in length_part):
            msg = f"Invalid string length {length_part!r}"
            raise BencodeDecodeError(msg, start)

        length = int(length_part)
        begin = colon + 1
        if begin + length > len(self.data):
            msg = (
                f"String length {length} exceeds remaining input "
                f"({len(self.data) - begin} bytes)"
            )
            raise BencodeDecodeError(msg, start)

        self.position = begin + length
        return self.data[begin : self.position]

    def _enter(self) -> None:
        self._depth += 1
        if self._depth > self.max_depth:
            msg = f"Nesting deeper than {self.max_depth} levels"
            raise BencodeDecodeError(msg, self.position)

    def _decode_list(self) -> list:
        start = self.position
        self._enter()
        self.position += 1
        result: list = []
        while True:
            if self.position >= len(self.data):
                msg = "Unterminated list"
                raise BencodeDecodeError(msg, start)
            if self.data[self.position] == ord("e"):
                break
            result.append(self.decode())
        self.position += 1
        self._depth -= 1
        return result

    def _decode_dict(self) -> dict:
        start = self.position
        self._enter()
        self.position += 1
        result: dict[bytes, Any] = {}
        while True:
            if self.position >= len(self.data):
                msg = "Unterminated dictionary"
                raise BencodeDecodeError(msg, start)
            if self.data[self.position] == ord("e"):
                break
            if self.data[self.position] not in _DIGITS:
                msg = "Dictionary key must be a byte-string"
                raise BencodeDecodeError(msg, self.position)
            key = self._decode_bytes()
            result[key] = self.decode()
        self.position += 1
        self._depth -= 1
        return result


class BencodeEncoder:
    """Canonical bencode encoder."""

    def encode(self, value: Any) -> bytes:
        """Encode a value to bencoded bytes.

        Raises:
            BencodeEncodeError: If the value has an unsupported type

        """
        out = bytearray()
        self._encode_into(value, out)
        return bytes(out)

    def _encode_into(self, value: Any, out: bytearray) -> None:
        # bool is an int subclass but has no bencode form
        if isinstance(value, bool):
            msg = f"Cannot encode type {type(value).__name__}"
            raise BencodeEncodeError(msg)
        if isinstance(value, int):
            out += b"i%de" % value
        elif isinstance(value, (bytes, bytearray, memoryview)):
            raw = bytes(value)
            out += b"%d:" % len(raw)
            out += raw
        elif isinstance(value, str):
            self._encode_into(value.encode("utf-8"), out)
        elif isinstance(value, (list, tuple)):
            out += b"l"
            for item in value:
                self._encode_into(item, out)
            out += b"e"
        elif isinstance(value, dict):
            out += b"d"
            for key, item in sorted(
                ((self._key_bytes(k), v) for k, v in value.items()),
                key=lambda kv: kv[0],
            ):
                self._encode_into(key, out)
                self._encode_into(item, out)
            out += b"e"
        else:
            msg = f"Cannot encode type {type(value).__name__}"
            raise BencodeEncodeError(msg)

    @staticmethod
    def _key_bytes(key: Any) -> bytes:
        if isinstance(key, (bytes, bytearray)):
            return bytes(key)
        if isinstance(key, str):
            return key.encode("utf-8")
        msg = f"Dictionary key must be bytes or str, got {type(key).__name__}"
        raise BencodeEncodeError(msg)


def decode_prefix(
    data: bytes, *, max_depth: int = DEFAULT_MAX_DEPTH
) -> tuple[BencodeValue, bytes]:
    """Decode one value from the front of ``data``.

    Returns:
        ``(value, remaining_bytes)``

    """
    decoder = BencodeDecoder(data, max_depth=max_depth)
    value = decoder.decode()
    return value, decoder.remaining


def decode(
    data: bytes, *, strict: bool = False, max_depth: int = DEFAULT_MAX_DEPTH
) -> BencodeValue:
    """Decode a bencoded value.

    Trailing bytes after the first complete value are ignored unless
    ``strict`` is set, in which case they are an error.
    """
    decoder = BencodeDecoder(data, max_depth=max_depth)
    value = decoder.decode()
    if strict and decoder.position != len(decoder.data):
        msg = f"Trailing data after value ({len(decoder.remaining)} bytes)"
        raise BencodeDecodeError(msg, decoder.position)
    return value


def encode(value: Any) -> bytes:
    """Encode a value to canonical bencoded bytes."""
    return BencodeEncoder().encode(value)
