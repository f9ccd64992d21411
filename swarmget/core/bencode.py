"""Bencode encoding and decoding.

Bencode is the serialization format of .torrent files. Strings are returned
as ``bytes``; dictionary keys are written in sorted order so the encoding of
an info dictionary is canonical and its SHA-1 is stable.
"""

from __future__ import annotations

from typing import Any

from swarmget.exceptions import BencodeError


class BencodeDecodeError(BencodeError):
    """Raised when bencoded data is malformed."""


class BencodeEncodeError(BencodeError):
    """Raised when a value cannot be bencoded."""


class BencodeDecoder:
    """Decoder for bencoded data."""

    def __init__(self, data: bytes):
        """Initialize decoder with the raw bencoded bytes."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.data = bytes(data)
        self.pos = 0

    def decode(self) -> Any:
        """Decode one complete value; trailing bytes are an error."""
        value = self._decode_next()
        if self.pos != len(self.data):
            msg = f"Trailing data after bencoded value at position {self.pos}"
            raise BencodeDecodeError(msg)
        return value

    def _peek(self) -> int:
        if self.pos >= len(self.data):
            msg = "Unexpected end of data"
            raise BencodeDecodeError(msg)
        return self.data[self.pos]

    def _decode_next(self) -> Any:
        char = self._peek()
        if char == ord("i"):
            return self._decode_int()
        if char == ord("l"):
            return self._decode_list()
        if char == ord("d"):
            return self._decode_dict()
        if ord("0") <= char <= ord("9"):
            return self._decode_string()
        msg = f"Invalid bencode type {chr(char)!r} at position {self.pos}"
        raise BencodeDecodeError(msg)

    def _decode_int(self) -> int:
        end = self.data.find(b"e", self.pos)
        if end == -1:
            msg = f"Unterminated integer at position {self.pos}"
            raise BencodeDecodeError(msg)
        raw = self.data[self.pos + 1 : end]
        # i-0e and leading zeros are not canonical
        if not raw or raw == b"-0" or (raw.lstrip(b"-").startswith(b"0") and raw.lstrip(b"-") != b"0"):
            msg = f"Invalid integer {raw!r} at position {self.pos}"
            raise BencodeDecodeError(msg)
        try:
            value = int(raw)
        except ValueError as e:
            msg = f"Invalid integer {raw!r} at position {self.pos}"
            raise BencodeDecodeError(msg) from e
        self.pos = end + 1
        return value

    def _decode_string(self) -> bytes:
        colon = self.data.find(b":", self.pos)
        if colon == -1:
            msg = f"Missing ':' in string length at position {self.pos}"
            raise BencodeDecodeError(msg)
        raw_len = self.data[self.pos : colon]
        if not raw_len.isdigit():
            msg = f"Invalid string length {raw_len!r} at position {self.pos}"
            raise BencodeDecodeError(msg)
        length = int(raw_len)
        start = colon + 1
        end = start + length
        if end > len(self.data):
            msg = f"String of length {length} exceeds data at position {self.pos}"
            raise BencodeDecodeError(msg)
        self.pos = end
        return self.data[start:end]

    def _decode_list(self) -> list[Any]:
        self.pos += 1
        result: list[Any] = []
        while self._peek() != ord("e"):
            result.append(self._decode_next())
        self.pos += 1
        return result

    def _decode_dict(self) -> dict[bytes, Any]:
        self.pos += 1
        result: dict[bytes, Any] = {}
        while self._peek() != ord("e"):
            if not ord("0") <= self._peek() <= ord("9"):
                msg = f"Dictionary key must be a string at position {self.pos}"
                raise BencodeDecodeError(msg)
            key = self._decode_string()
            result[key] = self._decode_next()
        self.pos += 1
        return result


class BencodeEncoder:
    """Encoder for bencoded data."""

    def encode(self, value: Any) -> bytes:
        """Encode a value to bencoded bytes."""
        out = bytearray()
        self._encode_into(value, out)
        return bytes(out)

    def _encode_into(self, value: Any, out: bytearray) -> None:
        if isinstance(value, bool):
            msg = "Booleans cannot be bencoded"
            raise BencodeEncodeError(msg)
        if isinstance(value, int):
            out += b"i%de" % value
        elif isinstance(value, (bytes, bytearray)):
            out += b"%d:" % len(value)
            out += value
        elif isinstance(value, str):
            self._encode_into(value.encode("utf-8"), out)
        elif isinstance(value, (list, tuple)):
            out += b"l"
            for item in value:
                self._encode_into(item, out)
            out += b"e"
        elif isinstance(value, dict):
            out += b"d"
            items = []
            for key, item in value.items():
                if isinstance(key, str):
                    key = key.encode("utf-8")
                if not isinstance(key, bytes):
                    msg = f"Dictionary keys must be strings, got {type(key).__name__}"
                    raise BencodeEncodeError(msg)
                items.append((key, item))
            for key, item in sorted(items, key=lambda kv: kv[0]):
                self._encode_into(key, out)
                self._encode_into(item, out)
            out += b"e"
        else:
            msg = f"Cannot bencode value of type {type(value).__name__}"
            raise BencodeEncodeError(msg)


def decode(data: bytes) -> Any:
    """Decode bencoded bytes."""
    return BencodeDecoder(data).decode()


def encode(value: Any) -> bytes:
    """Encode a value to bencoded bytes."""
    return BencodeEncoder().encode(value)
