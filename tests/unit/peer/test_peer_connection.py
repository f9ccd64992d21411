"""Tests for swarmget.peer.peer_connection against a fake peer on localhost."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from swarmget.events import EventType
from swarmget.exceptions import HandshakeError, MessageError, PeerConnectionError, ProtocolError
from swarmget.models import NetworkConfig, PeerInfo
from swarmget.peer.messages import (
    BitfieldMessage,
    ChokeMessage,
    Handshake,
    HaveMessage,
    KeepAliveMessage,
    PieceMessage,
    PortMessage,
    UnchokeMessage,
)
from swarmget.peer.peer_connection import ConnectionState, HandshakeStatus, PeerConnection
from swarmget.utils.bitfield import build_bitfield

pytestmark = [pytest.mark.unit, pytest.mark.peer]

INFO_HASH = b"\xaa" * 20
OTHER_HASH = b"\xbb" * 20
OUR_ID = b"-SG0100-111111111111"
REMOTE_ID = b"-XX0001-222222222222"


def _config(**overrides) -> NetworkConfig:
    values = {"connection_timeout": 2.0, "handshake_timeout": 2.0, "inactivity_timeout": 5.0}
    values.update(overrides)
    return NetworkConfig(**values)


def _peer_script(info_hash: bytes, chunks: list[bytes], hold: bool = False):
    """Server handler: answer the handshake, send ``chunks``, then close (or wait)."""

    async def handle(reader, writer):
        try:
            await reader.readexactly(68)
            writer.write(Handshake(info_hash, REMOTE_ID).encode())
            await writer.drain()
            for chunk in chunks:
                writer.write(chunk)
                await writer.drain()
                await asyncio.sleep(0.01)
            if hold:
                await reader.read()
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()

    return handle


async def _drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


async def _run(tcp_servers, handler, num_pieces=4, config=None):
    port = await tcp_servers(handler)
    events: asyncio.Queue = asyncio.Queue()
    connection = PeerConnection(
        PeerInfo(ip="127.0.0.1", port=port),
        INFO_HASH,
        OUR_ID,
        num_pieces,
        events,
        config=config or _config(),
    )
    await asyncio.wait_for(connection.run(), timeout=5.0)
    return connection, await _drain(events)


class TestPeerSession:
    """Connection task lifecycle."""

    @pytest.mark.asyncio
    async def test_messages_forwarded_in_order(self, tcp_servers):
        """Bitfield and unchoke reach the queue after CONNECTED, then DISCONNECTED on close."""
        script = [
            BitfieldMessage(build_bitfield({0, 2}, 4)).encode(),
            UnchokeMessage().encode(),
        ]
        connection, events = await _run(tcp_servers, _peer_script(INFO_HASH, script))

        assert [e.type for e in events] == [
            EventType.CONNECTED,
            EventType.MESSAGE,
            EventType.MESSAGE,
            EventType.DISCONNECTED,
        ]
        assert events[1].message == BitfieldMessage(build_bitfield({0, 2}, 4))
        assert events[2].message == UnchokeMessage()
        assert isinstance(events[3].error, PeerConnectionError)
        assert connection.peer_pieces == {0, 2}
        assert connection.peer_choking is False
        assert connection.remote_peer_id == REMOTE_ID
        assert connection.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_info_hash_mismatch_closes_without_messages(self, tcp_servers):
        """A peer serving another torrent never produces MESSAGE events."""
        script = [BitfieldMessage(build_bitfield({0}, 4)).encode()]
        connection, events = await _run(tcp_servers, _peer_script(OTHER_HASH, script, hold=True))

        assert [e.type for e in events] == [EventType.DISCONNECTED]
        assert isinstance(events[0].error, HandshakeError)
        assert connection.handshake_status == HandshakeStatus.FAILED
        assert connection.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_late_bitfield_is_protocol_error(self, tcp_servers):
        """A bitfield after another message ends the connection."""
        script = [
            UnchokeMessage().encode(),
            BitfieldMessage(build_bitfield({1}, 4)).encode(),
        ]
        _, events = await _run(tcp_servers, _peer_script(INFO_HASH, script, hold=True))

        assert [e.type for e in events] == [
            EventType.CONNECTED,
            EventType.MESSAGE,
            EventType.DISCONNECTED,
        ]
        assert events[1].message == UnchokeMessage()
        assert isinstance(events[2].error, ProtocolError)

    @pytest.mark.asyncio
    async def test_keep_alive_before_bitfield_allowed(self, tcp_servers):
        """Keep-alive and port messages do not count against the bitfield coming first."""
        script = [
            KeepAliveMessage().encode(),
            PortMessage(6882).encode(),
            BitfieldMessage(build_bitfield({1}, 4)).encode(),
        ]
        connection, events = await _run(tcp_servers, _peer_script(INFO_HASH, script))

        messages = [e.message for e in events if e.type == EventType.MESSAGE]
        assert messages == [BitfieldMessage(build_bitfield({1}, 4))]
        assert connection.peer_pieces == {1}
        assert isinstance(events[-1].error, PeerConnectionError)

    @pytest.mark.asyncio
    async def test_messages_ahead_of_bad_message_dispatched(self, tcp_servers):
        """Messages read together with an unknown id are forwarded before the connection closes."""
        script = [UnchokeMessage().encode() + HaveMessage(2).encode() + b"\x00\x00\x00\x01\x63"]
        _, events = await _run(tcp_servers, _peer_script(INFO_HASH, script, hold=True))

        assert [e.type for e in events] == [
            EventType.CONNECTED,
            EventType.MESSAGE,
            EventType.MESSAGE,
            EventType.DISCONNECTED,
        ]
        assert events[1].message == UnchokeMessage()
        assert events[2].message == HaveMessage(2)
        assert isinstance(events[3].error, MessageError)

    @pytest.mark.asyncio
    async def test_split_piece_reassembled(self, tcp_servers):
        """A piece message delivered in fragments arrives as one message."""
        encoded = PieceMessage(1, 0, b"z" * 5000).encode()
        script = [encoded[:3], encoded[3:2000], encoded[2000:]]
        connection, events = await _run(tcp_servers, _peer_script(INFO_HASH, script))

        messages = [e.message for e in events if e.type == EventType.MESSAGE]
        assert messages == [PieceMessage(1, 0, b"z" * 5000)]
        assert connection.bytes_downloaded == 5000

    @pytest.mark.asyncio
    async def test_port_and_keep_alive_not_forwarded(self, tcp_servers):
        """Port records the DHT port; keep-alives only refresh activity."""
        script = [
            PortMessage(6882).encode(),
            KeepAliveMessage().encode(),
            HaveMessage(3).encode(),
        ]
        connection, events = await _run(tcp_servers, _peer_script(INFO_HASH, script))

        messages = [e.message for e in events if e.type == EventType.MESSAGE]
        assert messages == [HaveMessage(3)]
        assert connection.dht_port == 6882
        assert connection.peer_pieces == {3}

    @pytest.mark.asyncio
    async def test_connect_refused(self, closed_port):
        """An unreachable peer reports DISCONNECTED with a connection error."""
        events: asyncio.Queue = asyncio.Queue()
        connection = PeerConnection(
            PeerInfo(ip="127.0.0.1", port=closed_port),
            INFO_HASH,
            OUR_ID,
            4,
            events,
            config=_config(),
        )
        await asyncio.wait_for(connection.run(), timeout=5.0)

        drained = await _drain(events)
        assert [e.type for e in drained] == [EventType.DISCONNECTED]
        assert isinstance(drained[0].error, PeerConnectionError)

    @pytest.mark.asyncio
    async def test_inactive_peer_dropped(self, tcp_servers):
        """A silent peer is closed after the inactivity timeout."""
        connection, events = await _run(
            tcp_servers,
            _peer_script(INFO_HASH, [], hold=True),
            config=_config(inactivity_timeout=0.2),
        )
        assert events[-1].type == EventType.DISCONNECTED
        assert "inactive" in str(events[-1].error)

    @pytest.mark.asyncio
    async def test_cancel_reports_disconnect(self, tcp_servers):
        """Cancelling the task still emits DISCONNECTED."""
        port = await tcp_servers(_peer_script(INFO_HASH, [], hold=True))
        events: asyncio.Queue = asyncio.Queue()
        connection = PeerConnection(
            PeerInfo(ip="127.0.0.1", port=port), INFO_HASH, OUR_ID, 4, events, config=_config()
        )
        task = asyncio.create_task(connection.run())
        first = await asyncio.wait_for(events.get(), timeout=5.0)
        assert first.type == EventType.CONNECTED

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        last = events.get_nowait()
        assert last.type == EventType.DISCONNECTED
        assert isinstance(last.error, PeerConnectionError)


class TestConnectionState:
    """State handling that does not need a socket."""

    def _connection(self, clock=None, **config) -> PeerConnection:
        kwargs = {"clock": clock} if clock is not None else {}
        connection = PeerConnection(
            PeerInfo(ip="10.0.0.1", port=6881),
            INFO_HASH,
            OUR_ID,
            8,
            asyncio.Queue(),
            config=_config(**config),
            **kwargs,
        )
        return connection

    def _establish(self, connection: PeerConnection) -> Mock:
        writer = Mock()
        writer.drain = AsyncMock()
        connection.writer = writer
        connection.state = ConnectionState.ESTABLISHED
        return writer

    def test_choke_clears_outstanding_requests(self):
        """Requests pending at a choke are dropped."""
        connection = self._connection()
        connection.peer_choking = False
        connection.outstanding_requests[(0, 0)] = 16384
        assert connection._apply(ChokeMessage()) is True
        assert connection.peer_choking is True
        assert connection.outstanding_requests == {}

    def test_pipeline_slots(self):
        """Slots are only available when established, unchoked and below depth."""
        connection = self._connection(pipeline_depth=2)
        assert connection.available_slots() == 0
        self._establish(connection)
        assert connection.available_slots() == 0
        connection.peer_choking = False
        assert connection.available_slots() == 2
        connection.outstanding_requests[(0, 0)] = 16384
        connection.outstanding_requests[(0, 16384)] = 16384
        assert connection.available_slots() == 0
        assert not connection.can_request()

    @pytest.mark.asyncio
    async def test_send_requires_established(self):
        """Messages are not written before the handshake completes."""
        connection = self._connection()
        assert await connection.send(UnchokeMessage()) is False

    @pytest.mark.asyncio
    async def test_send_request_tracks_outstanding(self):
        """A sent request is recorded until its block arrives."""
        connection = self._connection()
        writer = self._establish(connection)
        assert await connection.send_request(1, 0, 16384)
        assert connection.outstanding_requests == {(1, 0): 16384}
        writer.write.assert_called_once()
        connection._apply(PieceMessage(1, 0, b"\x00" * 16384))
        assert connection.outstanding_requests == {}

    @pytest.mark.asyncio
    async def test_keep_alive_only_when_idle(self, fake_clock):
        """Keep-alive goes out once nothing was sent for the interval."""
        connection = self._connection(clock=fake_clock, keep_alive_interval=90.0)
        writer = self._establish(connection)
        assert await connection.send_keep_alive_if_idle() is False
        fake_clock.advance(90.0)
        assert await connection.send_keep_alive_if_idle() is True
        writer.write.assert_called_once_with(b"\x00\x00\x00\x00")

    @pytest.mark.asyncio
    async def test_interest_sent_once(self):
        """Interested is only written on the first call."""
        connection = self._connection()
        writer = self._establish(connection)
        await connection.send_interested()
        await connection.send_interested()
        assert writer.write.call_count == 1
        assert connection.am_interested

    def test_has_timed_out(self, fake_clock):
        """Inactivity is measured from the last received message."""
        connection = self._connection(clock=fake_clock, inactivity_timeout=120.0)
        assert not connection.has_timed_out()
        fake_clock.advance(121.0)
        assert connection.has_timed_out()
