"""Peer wire protocol messages.

Handshake and length-prefixed message encoding/decoding, plus a streaming
decoder that reassembles messages split across (or packed into) TCP reads.
"""

from __future__ import annotations

import struct
from typing import Iterator

from swarmget.exceptions import HandshakeError, MessageError
from swarmget.models import MessageType

HANDSHAKE_LENGTH = 68
LENGTH_PREFIX = struct.Struct("!I")
_INDEX = struct.Struct("!I")
_BLOCK_REF = struct.Struct("!III")
_PIECE_HEADER = struct.Struct("!II")
_PORT = struct.Struct("!H")


class Handshake:
    """BitTorrent handshake message."""

    PROTOCOL_STRING: bytes = b"BitTorrent protocol"
    RESERVED_BYTES: bytes = b"\x00" * 8

    def __init__(self, info_hash: bytes, peer_id: bytes, reserved: bytes = RESERVED_BYTES) -> None:
        """Initialize handshake.

        Args:
            info_hash: 20-byte SHA-1 hash of info dictionary
            peer_id: 20-byte peer ID
            reserved: 8 reserved bytes as sent by the peer
        """
        if len(info_hash) != 20:
            msg = f"Info hash must be 20 bytes, got {len(info_hash)}"
            raise HandshakeError(msg)
        if len(peer_id) != 20:
            msg = f"Peer ID must be 20 bytes, got {len(peer_id)}"
            raise HandshakeError(msg)

        self.info_hash: bytes = info_hash
        self.peer_id: bytes = peer_id
        self.reserved: bytes = reserved

    def encode(self) -> bytes:
        """Encode handshake to bytes.

        Format: <protocol len><protocol><reserved><info_hash><peer_id>
        Total: 1 + 19 + 8 + 20 + 20 = 68 bytes
        """
        return (
            bytes([len(self.PROTOCOL_STRING)])
            + self.PROTOCOL_STRING
            + self.RESERVED_BYTES
            + self.info_hash
            + self.peer_id
        )

    @classmethod
    def decode(cls, data: bytes) -> Handshake:
        """Decode handshake from bytes.

        Raises:
            HandshakeError: If data is not a well-formed 68-byte handshake
        """
        if len(data) != HANDSHAKE_LENGTH:
            msg = f"Handshake must be {HANDSHAKE_LENGTH} bytes, got {len(data)}"
            raise HandshakeError(msg)
        if data[0] != len(cls.PROTOCOL_STRING):
            msg = f"Invalid protocol length: {data[0]}"
            raise HandshakeError(msg)
        if data[1:20] != cls.PROTOCOL_STRING:
            msg = f"Invalid protocol string: {data[1:20]!r}"
            raise HandshakeError(msg)
        # Extension bits in the reserved bytes are tolerated but unused
        return cls(data[28:48], data[48:68], reserved=data[20:28])


class PeerMessage:
    """Base class for peer messages."""

    message_id: MessageType | None = None

    def payload(self) -> bytes:
        """Message payload following the id byte."""
        return b""

    def encode(self) -> bytes:
        """Encode message to bytes (length prefix, id, payload)."""
        body = bytes([self.message_id]) + self.payload()
        return LENGTH_PREFIX.pack(len(body)) + body

    @classmethod
    def decode_payload(cls, payload: bytes) -> PeerMessage:
        """Decode the payload of a message with this class's id."""
        if payload:
            msg = f"{cls.__name__} takes no payload, got {len(payload)} bytes"
            raise MessageError(msg)
        return cls()

    def __eq__(self, other: object) -> bool:
        """Messages compare equal when type and fields match."""
        return type(self) is type(other) and vars(self) == vars(other)

    def __repr__(self) -> str:
        """Return a debug representation."""
        fields = ", ".join(f"{k}={v!r}" for k, v in vars(self).items() if k != "block")
        return f"{type(self).__name__}({fields})"


class KeepAliveMessage(PeerMessage):
    """Keep-alive message (length = 0)."""

    def encode(self) -> bytes:
        """Encode keep-alive message."""
        return LENGTH_PREFIX.pack(0)


class ChokeMessage(PeerMessage):
    """Choke message."""

    message_id = MessageType.CHOKE


class UnchokeMessage(PeerMessage):
    """Unchoke message."""

    message_id = MessageType.UNCHOKE


class InterestedMessage(PeerMessage):
    """Interested message."""

    message_id = MessageType.INTERESTED


class NotInterestedMessage(PeerMessage):
    """Not interested message."""

    message_id = MessageType.NOT_INTERESTED


class HaveMessage(PeerMessage):
    """Have message (announces that peer has a piece)."""

    message_id = MessageType.HAVE

    def __init__(self, piece_index: int):
        """Initialize have message."""
        self.piece_index = piece_index

    def payload(self) -> bytes:
        """Encode piece index."""
        return _INDEX.pack(self.piece_index)

    @classmethod
    def decode_payload(cls, payload: bytes) -> HaveMessage:
        """Decode have payload."""
        if len(payload) != _INDEX.size:
            msg = f"Have payload must be 4 bytes, got {len(payload)}"
            raise MessageError(msg)
        return cls(_INDEX.unpack(payload)[0])


class BitfieldMessage(PeerMessage):
    """Bitfield message (shows which pieces the peer has)."""

    message_id = MessageType.BITFIELD

    def __init__(self, bitfield: bytes):
        """Initialize bitfield message."""
        self.bitfield = bitfield

    def payload(self) -> bytes:
        """Raw bitfield bytes."""
        return self.bitfield

    @classmethod
    def decode_payload(cls, payload: bytes) -> BitfieldMessage:
        """Decode bitfield payload."""
        return cls(bytes(payload))


class RequestMessage(PeerMessage):
    """Request message (asks for a block)."""

    message_id = MessageType.REQUEST

    def __init__(self, piece_index: int, begin: int, length: int):
        """Initialize request message."""
        self.piece_index = piece_index
        self.begin = begin
        self.length = length

    def payload(self) -> bytes:
        """Encode block reference."""
        return _BLOCK_REF.pack(self.piece_index, self.begin, self.length)

    @classmethod
    def decode_payload(cls, payload: bytes):
        """Decode block reference."""
        if len(payload) != _BLOCK_REF.size:
            msg = f"{cls.__name__} payload must be 12 bytes, got {len(payload)}"
            raise MessageError(msg)
        return cls(*_BLOCK_REF.unpack(payload))


class CancelMessage(RequestMessage):
    """Cancel message (withdraws a pending request)."""

    message_id = MessageType.CANCEL


class PieceMessage(PeerMessage):
    """Piece message (carries one block of data)."""

    message_id = MessageType.PIECE

    def __init__(self, piece_index: int, begin: int, block: bytes):
        """Initialize piece message."""
        self.piece_index = piece_index
        self.begin = begin
        self.block = block

    def payload(self) -> bytes:
        """Encode index, offset and block data."""
        return _PIECE_HEADER.pack(self.piece_index, self.begin) + self.block

    @classmethod
    def decode_payload(cls, payload: bytes) -> PieceMessage:
        """Decode piece payload."""
        if len(payload) < _PIECE_HEADER.size:
            msg = f"Piece payload too short: {len(payload)} bytes"
            raise MessageError(msg)
        piece_index, begin = _PIECE_HEADER.unpack_from(payload)
        return cls(piece_index, begin, bytes(payload[_PIECE_HEADER.size :]))


class PortMessage(PeerMessage):
    """Port message (peer's DHT listen port)."""

    message_id = MessageType.PORT

    def __init__(self, port: int):
        """Initialize port message."""
        self.port = port

    def payload(self) -> bytes:
        """Encode port."""
        return _PORT.pack(self.port)

    @classmethod
    def decode_payload(cls, payload: bytes) -> PortMessage:
        """Decode port payload."""
        if len(payload) != _PORT.size:
            msg = f"Port payload must be 2 bytes, got {len(payload)}"
            raise MessageError(msg)
        return cls(_PORT.unpack(payload)[0])


MESSAGE_CLASSES: dict[int, type[PeerMessage]] = {
    MessageType.CHOKE: ChokeMessage,
    MessageType.UNCHOKE: UnchokeMessage,
    MessageType.INTERESTED: InterestedMessage,
    MessageType.NOT_INTERESTED: NotInterestedMessage,
    MessageType.HAVE: HaveMessage,
    MessageType.BITFIELD: BitfieldMessage,
    MessageType.REQUEST: RequestMessage,
    MessageType.PIECE: PieceMessage,
    MessageType.CANCEL: CancelMessage,
    MessageType.PORT: PortMessage,
}


def decode_message(body: bytes) -> PeerMessage:
    """Decode one message body (everything after the length prefix)."""
    if not body:
        return KeepAliveMessage()
    message_cls = MESSAGE_CLASSES.get(body[0])
    if message_cls is None:
        msg = f"Unknown message id: {body[0]}"
        raise MessageError(msg)
    return message_cls.decode_payload(body[1:])


class MessageDecoder:
    """Incremental decoder for a peer's byte stream."""

    def __init__(self, max_message_length: int = 1024 * 1024):
        """Initialize message decoder.

        Args:
            max_message_length: Largest accepted length prefix in bytes
        """
        self.max_message_length = max_message_length
        self.buffer = bytearray()

    def feed(self, data: bytes) -> Iterator[PeerMessage]:
        """Buffer data and iterate over the messages it completes, in order.

        Messages are decoded lazily, so every message that precedes a bad one
        is yielded before the error is raised.

        Raises:
            MessageError: Unknown id, bad fixed length or oversized message
        """
        self.buffer.extend(data)
        return self._drain()

    def _drain(self) -> Iterator[PeerMessage]:
        while len(self.buffer) >= LENGTH_PREFIX.size:
            length = LENGTH_PREFIX.unpack_from(self.buffer)[0]
            if length > self.max_message_length:
                msg = f"Message length {length} exceeds limit {self.max_message_length}"
                raise MessageError(msg)
            end = LENGTH_PREFIX.size + length
            if len(self.buffer) < end:
                return
            body = bytes(self.buffer[LENGTH_PREFIX.size : end])
            del self.buffer[:end]
            yield decode_message(body)

    @property
    def buffered(self) -> int:
        """Bytes waiting for the rest of their message."""
        return len(self.buffer)
