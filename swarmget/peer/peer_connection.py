"""Peer connection management.

One TCP connection to one remote peer: the handshake, a single reader loop
that reassembles framed messages, and the outbound message helpers used by
the download coordinator. Whatever ends the connection, the task reports a
DISCONNECTED event so the coordinator can reclaim the peer's requests.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from enum import Enum
from typing import Callable

from swarmget.config import get_network_config
from swarmget.events import EventType, PeerEvent
from swarmget.exceptions import HandshakeError, PeerConnectionError, ProtocolError, SwarmGetError
from swarmget.models import NetworkConfig, PeerInfo
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
    NotInterestedMessage,
    PeerMessage,
    PieceMessage,
    PortMessage,
    RequestMessage,
    UnchokeMessage,
)
from swarmget.utils.bitfield import parse_bitfield

READ_CHUNK = 64 * 1024


class ConnectionState(Enum):
    """States of a peer connection."""

    DISCONNECTED = "disconnected"
    HANDSHAKING = "handshaking"
    ESTABLISHED = "established"
    CLOSED = "closed"


class HandshakeStatus(Enum):
    """Outcome of the handshake exchange."""

    PENDING = "pending"
    OK = "ok"
    FAILED = "failed"


class PeerConnection:
    """A single peer connection with request pipelining."""

    def __init__(
        self,
        peer: PeerInfo,
        info_hash: bytes,
        peer_id: bytes,
        num_pieces: int,
        events: asyncio.Queue,
        config: NetworkConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize peer connection.

        Args:
            peer: Remote address
            info_hash: Info hash both sides must agree on
            peer_id: Our peer ID (20 bytes)
            num_pieces: Piece count, used to read bitfields and haves
            events: Coordinator event queue
            config: Network configuration, defaults to the global one
            clock: Monotonic clock, replaceable in tests
        """
        self.peer = peer
        self.info_hash = info_hash
        self.our_peer_id = peer_id
        self.num_pieces = num_pieces
        self.events = events
        self.config = config or get_network_config()
        self._clock = clock

        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None
        self.state = ConnectionState.DISCONNECTED
        self.handshake_status = HandshakeStatus.PENDING
        self.decoder = MessageDecoder(self.config.max_message_length)

        self.am_choking = True
        self.am_interested = False
        self.peer_choking = True
        self.peer_interested = False
        self.peer_pieces: set[int] = set()
        self.remote_peer_id: bytes | None = None
        self.dht_port: int | None = None

        # (piece_index, begin) -> length
        self.outstanding_requests: dict[tuple[int, int], int] = {}
        self.max_pipeline_depth = self.config.pipeline_depth
        self.messages_received = 0
        self.bytes_downloaded = 0
        self.last_activity = self._clock()
        self.last_sent = self._clock()

        self.logger = logging.getLogger(__name__)

    def __str__(self) -> str:
        """Return string representation of the connection."""
        return f"PeerConnection({self.peer}, state={self.state.value})"

    def is_established(self) -> bool:
        """Check if the handshake completed and the connection is open."""
        return self.state == ConnectionState.ESTABLISHED

    def can_request(self) -> bool:
        """Check if we can make new requests."""
        return (
            self.is_established()
            and not self.peer_choking
            and len(self.outstanding_requests) < self.max_pipeline_depth
        )

    def available_slots(self) -> int:
        """Get number of available pipeline slots."""
        if not self.is_established() or self.peer_choking:
            return 0
        return max(0, self.max_pipeline_depth - len(self.outstanding_requests))

    def has_timed_out(self, now: float | None = None) -> bool:
        """Check if the peer has been silent for the whole inactivity timeout."""
        now = self._clock() if now is None else now
        return now - self.last_activity >= self.config.inactivity_timeout

    async def run(self) -> None:
        """Connection task: connect, handshake, then read until closed."""
        error: BaseException | None = None
        try:
            await self.connect()
            await self.handshake()
            await self.events.put(PeerEvent(EventType.CONNECTED, peer=self.peer))
            await self._read_loop()
        except asyncio.CancelledError:
            error = PeerConnectionError("Connection cancelled")
            raise
        except (SwarmGetError, OSError, asyncio.IncompleteReadError) as e:
            error = e
            self.logger.debug("Peer %s dropped: %s", self.peer, e)
        finally:
            await self.close()
            self.events.put_nowait(PeerEvent(EventType.DISCONNECTED, peer=self.peer, error=error))

    async def connect(self) -> None:
        """Open the TCP connection."""
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.peer.ip, self.peer.port),
                timeout=self.config.connection_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            self.state = ConnectionState.CLOSED
            msg = f"Failed to connect to {self.peer}: {e!r}"
            raise PeerConnectionError(msg) from e
        self.state = ConnectionState.HANDSHAKING
        self.logger.debug("Connected to peer %s", self.peer)

    async def handshake(self) -> Handshake:
        """Exchange handshakes; any mismatch fails the connection.

        Raises:
            HandshakeError: Short, malformed or foreign-torrent handshake
        """
        if self.reader is None or self.writer is None:
            msg = f"Connection to {self.peer} is not open"
            raise PeerConnectionError(msg)
        try:
            self.writer.write(Handshake(self.info_hash, self.our_peer_id).encode())
            await self.writer.drain()
            data = await asyncio.wait_for(
                self.reader.readexactly(HANDSHAKE_LENGTH),
                timeout=self.config.handshake_timeout,
            )
            remote = Handshake.decode(data)
            if remote.info_hash != self.info_hash:
                msg = (
                    f"Info hash mismatch: expected {self.info_hash.hex()}, "
                    f"got {remote.info_hash.hex()}"
                )
                raise HandshakeError(msg)
        except (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError, HandshakeError) as e:
            self.handshake_status = HandshakeStatus.FAILED
            if isinstance(e, HandshakeError):
                raise
            msg = f"Handshake with {self.peer} failed: {e!r}"
            raise HandshakeError(msg) from e

        self.remote_peer_id = remote.peer_id
        self.handshake_status = HandshakeStatus.OK
        self.state = ConnectionState.ESTABLISHED
        self.last_activity = self._clock()
        self.logger.debug("Handshake with %s complete", self.peer)
        return remote

    async def _read_loop(self) -> None:
        """Read, reassemble and forward messages in arrival order."""
        assert self.reader is not None
        while self.is_established():
            now = self._clock()
            if self.has_timed_out(now):
                msg = f"Peer {self.peer} inactive for {self.config.inactivity_timeout}s"
                raise PeerConnectionError(msg)
            remaining = self.config.inactivity_timeout - (now - self.last_activity)
            try:
                data = await asyncio.wait_for(self.reader.read(READ_CHUNK), timeout=remaining)
            except asyncio.TimeoutError:
                continue
            if not data:
                msg = f"Peer {self.peer} closed the connection"
                raise PeerConnectionError(msg)

            for message in self.decoder.feed(data):
                self.last_activity = self._clock()
                if self._apply(message):
                    await self.events.put(
                        PeerEvent(EventType.MESSAGE, peer=self.peer, message=message),
                    )

    def _apply(self, message: PeerMessage) -> bool:
        """Update connection state for a message; return whether to forward it."""
        if isinstance(message, KeepAliveMessage):
            return False
        if isinstance(message, PortMessage):
            self.dht_port = message.port
            return False

        # Only state-carrying messages decide whether a bitfield came first
        first = self.messages_received == 0
        self.messages_received += 1

        if isinstance(message, ChokeMessage):
            self.peer_choking = True
            self.outstanding_requests.clear()
        elif isinstance(message, UnchokeMessage):
            self.peer_choking = False
        elif isinstance(message, InterestedMessage):
            self.peer_interested = True
        elif isinstance(message, NotInterestedMessage):
            self.peer_interested = False
        elif isinstance(message, BitfieldMessage):
            if not first:
                msg = f"Bitfield from {self.peer} after other messages"
                raise ProtocolError(msg)
            self.peer_pieces = parse_bitfield(message.bitfield, self.num_pieces)
        elif isinstance(message, HaveMessage):
            if 0 <= message.piece_index < self.num_pieces:
                self.peer_pieces.add(message.piece_index)
        elif isinstance(message, PieceMessage):
            self.outstanding_requests.pop((message.piece_index, message.begin), None)
            self.bytes_downloaded += len(message.block)
        elif isinstance(message, (RequestMessage, CancelMessage)):
            # Uploading is not supported
            self.logger.debug("Ignoring %r from %s", message, self.peer)
            return False
        return True

    async def send(self, message: PeerMessage) -> bool:
        """Send a message; a write failure closes the connection."""
        if self.writer is None or not self.is_established():
            return False
        try:
            self.writer.write(message.encode())
            await self.writer.drain()
        except (OSError, RuntimeError) as e:
            self.logger.debug("Failed to send to %s: %s", self.peer, e)
            await self.close()
            return False
        self.last_sent = self._clock()
        return True

    async def send_interested(self) -> bool:
        """Declare interest (only once)."""
        if self.am_interested:
            return True
        self.am_interested = True
        return await self.send(InterestedMessage())

    async def send_not_interested(self) -> bool:
        """Withdraw interest."""
        if not self.am_interested:
            return True
        self.am_interested = False
        return await self.send(NotInterestedMessage())

    async def send_request(self, piece_index: int, begin: int, length: int) -> bool:
        """Request one block and record it as outstanding."""
        self.outstanding_requests[(piece_index, begin)] = length
        return await self.send(RequestMessage(piece_index, begin, length))

    async def send_cancel(self, piece_index: int, begin: int, length: int) -> bool:
        """Cancel an outstanding block request."""
        self.outstanding_requests.pop((piece_index, begin), None)
        return await self.send(CancelMessage(piece_index, begin, length))

    async def send_have(self, piece_index: int) -> bool:
        """Tell the peer we now have a piece."""
        return await self.send(HaveMessage(piece_index))

    async def send_keep_alive_if_idle(self, now: float | None = None) -> bool:
        """Send a keep-alive when nothing was sent for a keep-alive interval."""
        now = self._clock() if now is None else now
        if now - self.last_sent < self.config.keep_alive_interval:
            return False
        return await self.send(KeepAliveMessage())

    async def close(self) -> None:
        """Close the connection (idempotent)."""
        if self.state == ConnectionState.CLOSED and self.writer is None:
            return
        self.state = ConnectionState.CLOSED
        self.outstanding_requests.clear()
        writer, self.writer = self.writer, None
        if writer is not None:
            writer.close()
            with contextlib.suppress(OSError, asyncio.TimeoutError):
                await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
