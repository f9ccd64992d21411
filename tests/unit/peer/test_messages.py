"""Tests for peer wire message encoding and stream reassembly."""

from __future__ import annotations

import struct

import pytest

from swarmget.exceptions import HandshakeError, MessageError
from swarmget.peer.messages import (
    HANDSHAKE_LENGTH,
    BitfieldMessage,
    CancelMessage,
    ChokeMessage,
    Handshake,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    MessageDecoder,
    PieceMessage,
    PortMessage,
    RequestMessage,
    UnchokeMessage,
    decode_message,
)

pytestmark = [pytest.mark.unit, pytest.mark.peer]

INFO_HASH = bytes(range(20))
PEER_ID = b"-SG0100-000000000001"


class TestHandshake:
    """Handshake encoding and validation."""

    def test_encode_layout(self):
        """Handshake is pstrlen, pstr, 8 reserved bytes, info hash and peer id."""
        data = Handshake(INFO_HASH, PEER_ID).encode()
        assert len(data) == HANDSHAKE_LENGTH
        assert data[0] == 19
        assert data[1:20] == b"BitTorrent protocol"
        assert data[20:28] == b"\x00" * 8
        assert data[28:48] == INFO_HASH
        assert data[48:68] == PEER_ID

    def test_decode_roundtrip_keeps_reserved(self):
        """Reserved bytes from the remote side are preserved on decode."""
        data = bytearray(Handshake(INFO_HASH, PEER_ID).encode())
        data[25] = 0x10
        handshake = Handshake.decode(bytes(data))
        assert handshake.info_hash == INFO_HASH
        assert handshake.peer_id == PEER_ID
        assert handshake.reserved[5] == 0x10

    def test_decode_rejects_wrong_protocol(self):
        """A different protocol string fails the handshake."""
        data = bytearray(Handshake(INFO_HASH, PEER_ID).encode())
        data[1:20] = b"BitTorrent protocoX"
        with pytest.raises(HandshakeError):
            Handshake.decode(bytes(data))

    def test_decode_rejects_short_data(self):
        """Fewer than 68 bytes is not a handshake."""
        with pytest.raises(HandshakeError):
            Handshake.decode(Handshake(INFO_HASH, PEER_ID).encode()[:67])

    def test_info_hash_length(self):
        """Info hash must be 20 bytes."""
        with pytest.raises(HandshakeError):
            Handshake(b"\x00" * 19, PEER_ID)


class TestMessageEncoding:
    """Length-prefixed message encoding and decoding."""

    def test_keep_alive(self):
        """Keep-alive is a bare zero length prefix."""
        assert KeepAliveMessage().encode() == b"\x00\x00\x00\x00"
        assert isinstance(decode_message(b""), KeepAliveMessage)

    def test_request_encoding(self):
        """Request is 13 bytes of body: id 6 and three 32-bit integers."""
        data = RequestMessage(3, 16384, 16384).encode()
        assert data == struct.pack("!IBIII", 13, 6, 3, 16384, 16384)

    def test_piece_roundtrip(self):
        """Piece messages carry the block after index and offset."""
        message = PieceMessage(2, 32768, b"abc")
        assert decode_message(message.encode()[4:]) == message

    def test_cancel_is_distinct_from_request(self):
        """Cancel shares the request layout but decodes to its own type."""
        decoded = decode_message(CancelMessage(1, 0, 16384).encode()[4:])
        assert type(decoded) is CancelMessage

    def test_port_message(self):
        """Port message carries a 16-bit port."""
        assert decode_message(PortMessage(6881).encode()[4:]) == PortMessage(6881)

    def test_unknown_id_rejected(self):
        """Message ids outside 0-9 are a protocol error."""
        with pytest.raises(MessageError, match="Unknown message id"):
            decode_message(bytes([20, 1, 2]))

    def test_fixed_payload_length_enforced(self):
        """Have must carry exactly 4 bytes; choke carries none."""
        with pytest.raises(MessageError):
            decode_message(bytes([4, 0, 0, 1]))
        with pytest.raises(MessageError):
            decode_message(bytes([0, 1]))


class TestMessageDecoder:
    """Reassembly of messages from arbitrary read boundaries."""

    def test_byte_at_a_time(self):
        """A message split across many reads is emitted once complete."""
        decoder = MessageDecoder()
        encoded = PieceMessage(0, 0, b"x" * 100).encode()
        messages = []
        for i in range(len(encoded)):
            messages.extend(decoder.feed(encoded[i : i + 1]))
        assert messages == [PieceMessage(0, 0, b"x" * 100)]
        assert decoder.buffered == 0

    def test_several_messages_in_one_read(self):
        """Messages packed into one read come out in order."""
        decoder = MessageDecoder()
        data = (
            BitfieldMessage(b"\xf0").encode()
            + KeepAliveMessage().encode()
            + UnchokeMessage().encode()
            + HaveMessage(7).encode()
        )
        messages = list(decoder.feed(data))
        assert messages == [
            BitfieldMessage(b"\xf0"),
            KeepAliveMessage(),
            UnchokeMessage(),
            HaveMessage(7),
        ]

    def test_partial_tail_stays_buffered(self):
        """Bytes of an incomplete message wait for the next read."""
        decoder = MessageDecoder()
        data = ChokeMessage().encode() + InterestedMessage().encode()[:3]
        assert list(decoder.feed(data)) == [ChokeMessage()]
        assert decoder.buffered == 3
        assert list(decoder.feed(InterestedMessage().encode()[3:])) == [InterestedMessage()]

    def test_oversized_message_rejected(self):
        """A length prefix above the limit fails before buffering the body."""
        decoder = MessageDecoder(max_message_length=1024)
        with pytest.raises(MessageError, match="exceeds limit"):
            list(decoder.feed(struct.pack("!I", 4096)))

    def test_messages_before_a_bad_one_are_delivered(self):
        """Complete messages ahead of an unknown id are yielded before the error."""
        decoder = MessageDecoder()
        data = PieceMessage(0, 0, b"x" * 10).encode() + b"\x00\x00\x00\x01\x63"
        delivered = []
        with pytest.raises(MessageError, match="Unknown message id: 99"):
            for message in decoder.feed(data):
                delivered.append(message)
        assert delivered == [PieceMessage(0, 0, b"x" * 10)]
