"""UDP Tracker Client (BEP 15) for BitTorrent.

Async connect/announce exchange with a single UDP tracker. Every request is
retransmitted on the BEP 15 schedule (15 * 2**n seconds) until the retry
budget is spent, and responses that do not match the in-flight request are
discarded without disturbing the running timer.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import socket
import struct
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable
from urllib.parse import urlparse

from swarmget.config import get_network_config, get_tracker_config
from swarmget.exceptions import ProtocolError, TrackerError, TrackerTimeoutError
from swarmget.models import PeerInfo, TorrentDescriptor, TrackerConfig
from swarmget.utils.backoff import ExponentialBackoff

PROTOCOL_ID = 0x41727101980

CONNECT_REQUEST = struct.Struct("!QII")
CONNECT_RESPONSE = struct.Struct("!IIQ")
ANNOUNCE_REQUEST = struct.Struct("!QII20s20sQQQIIIiH")
ANNOUNCE_HEADER = struct.Struct("!IIIII")
RESPONSE_HEADER = struct.Struct("!II")
COMPACT_PEER_SIZE = 6


class TrackerAction(Enum):
    """UDP tracker actions."""

    CONNECT = 0
    ANNOUNCE = 1
    SCRAPE = 2
    ERROR = 3


class TrackerEvent(Enum):
    """Tracker announce events."""

    NONE = 0
    COMPLETED = 1
    STARTED = 2
    STOPPED = 3


class TrackerPhase(Enum):
    """Lifecycle of one announce attempt."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ANNOUNCING = "announcing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class AnnounceResponse:
    """Parsed announce response."""

    interval: int
    leechers: int
    seeders: int
    peers: list[PeerInfo] = field(default_factory=list)


@dataclass
class TrackerSession:
    """UDP tracker session state for one announce attempt."""

    url: str
    host: str
    port: int
    transaction_id: int = 0
    connection_id: int | None = None
    connected_at: float = 0.0
    retry_count: int = 0
    phase: TrackerPhase = TrackerPhase.IDLE
    transport: asyncio.DatagramTransport | None = None
    waiter: asyncio.Future | None = None


def new_transaction_id() -> int:
    """Random 32-bit transaction id."""
    return secrets.randbits(32)


def parse_udp_url(url: str) -> tuple[str, int]:
    """Split a ``udp://host:port[/announce]`` URL into host and port."""
    parsed = urlparse(url)
    if parsed.scheme != "udp":
        msg = f"Unsupported tracker scheme: {url}"
        raise TrackerError(msg)
    try:
        port = parsed.port
    except ValueError as e:
        msg = f"Invalid tracker port in {url}"
        raise TrackerError(msg) from e
    if not parsed.hostname or not port:
        msg = f"Tracker URL must include host and port: {url}"
        raise TrackerError(msg)
    return parsed.hostname, port


def build_connect_request(transaction_id: int) -> bytes:
    """Build the 16-byte connect request."""
    return CONNECT_REQUEST.pack(PROTOCOL_ID, TrackerAction.CONNECT.value, transaction_id)


def parse_connect_response(data: bytes, transaction_id: int) -> int:
    """Validate a connect response and return the connection id."""
    if len(data) != CONNECT_RESPONSE.size:
        msg = f"Connect response must be {CONNECT_RESPONSE.size} bytes, got {len(data)}"
        raise ProtocolError(msg)
    action, tid, connection_id = CONNECT_RESPONSE.unpack(data)
    if action != TrackerAction.CONNECT.value:
        msg = f"Unexpected action {action} in connect response"
        raise ProtocolError(msg)
    if tid != transaction_id:
        msg = f"Transaction id mismatch: expected {transaction_id}, got {tid}"
        raise ProtocolError(msg)
    return connection_id


def build_announce_request(
    connection_id: int,
    transaction_id: int,
    info_hash: bytes,
    peer_id: bytes,
    downloaded: int,
    left: int,
    uploaded: int,
    event: TrackerEvent,
    key: int,
    port: int,
) -> bytes:
    """Build the fixed 98-byte announce request."""
    return ANNOUNCE_REQUEST.pack(
        connection_id,
        TrackerAction.ANNOUNCE.value,
        transaction_id,
        info_hash,
        peer_id,
        downloaded,
        left,
        uploaded,
        event.value,
        0,  # IP address (0 = use sender IP)
        key,
        -1,  # num_want (-1 = default)
        port,
    )


def parse_announce_response(data: bytes, transaction_id: int) -> AnnounceResponse:
    """Validate an announce response and decode its compact peer list."""
    if len(data) < ANNOUNCE_HEADER.size:
        msg = f"Announce response too short: {len(data)} bytes"
        raise ProtocolError(msg)
    action, tid, interval, leechers, seeders = ANNOUNCE_HEADER.unpack_from(data)
    if action != TrackerAction.ANNOUNCE.value:
        msg = f"Unexpected action {action} in announce response"
        raise ProtocolError(msg)
    if tid != transaction_id:
        msg = f"Transaction id mismatch: expected {transaction_id}, got {tid}"
        raise ProtocolError(msg)

    peers = []
    peer_data = data[ANNOUNCE_HEADER.size :]
    for i in range(0, len(peer_data) - COMPACT_PEER_SIZE + 1, COMPACT_PEER_SIZE):
        ip = socket.inet_ntoa(peer_data[i : i + 4])
        port = int.from_bytes(peer_data[i + 4 : i + 6], "big")
        if port == 0:
            continue
        peers.append(PeerInfo(ip=ip, port=port))
    return AnnounceResponse(interval=interval, leechers=leechers, seeders=seeders, peers=peers)


class UDPTrackerProtocol(asyncio.DatagramProtocol):
    """UDP protocol bound to one tracker session."""

    def __init__(self, client: TrackerClient, session: TrackerSession):
        """Initialize UDP tracker protocol."""
        self.client = client
        self.session = session

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        """Handle received datagram."""
        self.client.handle_response(self.session, data)

    def error_received(self, exc: Exception) -> None:
        """Handle error received."""
        self.client.logger.debug("UDP error from %s: %s", self.session.url, exc)


class TrackerClient:
    """Async UDP tracker client."""

    def __init__(
        self,
        peer_id: bytes,
        listen_port: int | None = None,
        config: TrackerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize UDP tracker client.

        Args:
            peer_id: Our peer ID (20 bytes)
            listen_port: Port announced to the tracker
            config: Tracker configuration, defaults to the global one
            clock: Monotonic clock, replaceable in tests
        """
        if len(peer_id) != 20:
            msg = "Peer id must be 20 bytes"
            raise ValueError(msg)
        self.config = config or get_tracker_config()
        self.peer_id = peer_id
        self.listen_port = listen_port or get_network_config().listen_port
        self.key = secrets.randbits(32)
        self.backoff = ExponentialBackoff(
            base_delay=self.config.base_timeout,
            multiplier=2.0,
            max_retries=self.config.max_retries,
        )
        self._clock = clock
        self.next_announce_at: dict[str, float] = {}

        self.logger = logging.getLogger(__name__)

    def can_announce(self, url: str) -> bool:
        """Whether the tracker's announce interval has elapsed for ``url``."""
        return self._clock() >= self.next_announce_at.get(url, 0.0)

    def seconds_until_announce(self, url: str) -> float:
        """Seconds left before ``can_announce(url)`` becomes true."""
        return max(0.0, self.next_announce_at.get(url, 0.0) - self._clock())

    async def announce(
        self,
        descriptor: TorrentDescriptor,
        downloaded: int = 0,
        uploaded: int = 0,
        left: int | None = None,
        event: TrackerEvent = TrackerEvent.NONE,
        max_retries: int | None = None,
    ) -> AnnounceResponse:
        """Run a full connect/announce exchange with the descriptor's tracker.

        Raises:
            TrackerError: Bad URL, socket failure or tracker error response
            TrackerTimeoutError: A phase exhausted its retry budget
        """
        url = descriptor.announce
        host, port = parse_udp_url(url)
        if left is None:
            left = descriptor.total_length
        retries = self.config.max_retries if max_retries is None else max_retries

        session = TrackerSession(url=url, host=host, port=port)
        loop = asyncio.get_running_loop()
        try:
            session.transport, _ = await loop.create_datagram_endpoint(
                lambda: UDPTrackerProtocol(self, session),
                remote_addr=(host, port),
            )
        except OSError as e:
            session.phase = TrackerPhase.FAILED
            msg = f"Cannot reach tracker {url}: {e}"
            raise TrackerError(msg) from e

        try:
            response = await self._announce(
                session,
                descriptor.info_hash,
                downloaded,
                left,
                uploaded,
                event,
                retries,
            )
        except BaseException:
            session.phase = TrackerPhase.FAILED
            raise
        finally:
            if session.waiter is not None and not session.waiter.done():
                session.waiter.cancel()
            session.transport.close()

        session.phase = TrackerPhase.DONE
        self.next_announce_at[url] = self._clock() + response.interval
        self.logger.info(
            "Tracker %s: %d peers (seeders=%d leechers=%d interval=%ds)",
            url,
            len(response.peers),
            response.seeders,
            response.leechers,
            response.interval,
        )
        return response

    async def _connect(self, session: TrackerSession, max_retries: int) -> None:
        """Connect phase: obtain a fresh connection id."""
        session.phase = TrackerPhase.CONNECTING
        session.connection_id = None
        session.transaction_id = new_transaction_id()
        request = build_connect_request(session.transaction_id)

        for attempt in range(max_retries + 1):
            connection_id = await self._send_and_wait(session, request, attempt)
            if connection_id is not None:
                session.connection_id = connection_id
                session.connected_at = self._clock()
                session.phase = TrackerPhase.CONNECTED
                self.logger.debug("Connected to tracker %s:%s", session.host, session.port)
                return

        msg = f"Tracker {session.url} did not answer connect after {max_retries} retries"
        raise TrackerTimeoutError(msg, {"phase": "connect"})

    def _connection_expired(self, session: TrackerSession) -> bool:
        return (
            session.connection_id is None
            or self._clock() - session.connected_at >= self.config.connection_id_ttl
        )

    async def _announce(
        self,
        session: TrackerSession,
        info_hash: bytes,
        downloaded: int,
        left: int,
        uploaded: int,
        event: TrackerEvent,
        max_retries: int,
    ) -> AnnounceResponse:
        """Announce phase, reconnecting whenever the connection id expires."""
        request: bytes | None = None
        for attempt in range(max_retries + 1):
            if self._connection_expired(session):
                if session.connection_id is not None:
                    self.logger.debug("Connection id for %s expired, reconnecting", session.url)
                await self._connect(session, max_retries)
                request = None
            if request is None:
                session.phase = TrackerPhase.ANNOUNCING
                session.transaction_id = new_transaction_id()
                request = build_announce_request(
                    session.connection_id,
                    session.transaction_id,
                    info_hash,
                    self.peer_id,
                    downloaded,
                    left,
                    uploaded,
                    event,
                    self.key,
                    self.listen_port,
                )
            response = await self._send_and_wait(session, request, attempt)
            if response is not None:
                return response

        msg = f"Tracker {session.url} did not answer announce after {max_retries} retries"
        raise TrackerTimeoutError(msg, {"phase": "announce"})

    async def _send_and_wait(self, session: TrackerSession, request: bytes, attempt: int):
        """Send one datagram and wait for the matching response, or None on timeout."""
        timeout = self.backoff.next_delay(attempt)
        session.retry_count = attempt
        session.waiter = asyncio.get_running_loop().create_future()
        if session.transport is None:
            msg = "UDP transport is not initialized"
            raise TrackerError(msg)
        session.transport.sendto(request)
        try:
            return await asyncio.wait_for(session.waiter, timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.debug(
                "No %s response from %s after %.1fs (retry %d)",
                session.phase.value,
                session.url,
                timeout,
                attempt,
            )
            return None
        finally:
            session.waiter = None

    def handle_response(self, session: TrackerSession, data: bytes) -> None:
        """Resolve the session's in-flight request if ``data`` answers it."""
        waiter = session.waiter
        if waiter is None or waiter.done():
            self.logger.debug("Unsolicited datagram from %s ignored", session.url)
            return
        if len(data) < RESPONSE_HEADER.size:
            self.logger.debug("Short datagram (%d bytes) from %s ignored", len(data), session.url)
            return

        action, tid = RESPONSE_HEADER.unpack_from(data)
        if action == TrackerAction.ERROR.value and tid == session.transaction_id:
            message = data[RESPONSE_HEADER.size :].decode("utf-8", errors="replace")
            msg = f"Tracker error: {message}"
            waiter.set_exception(TrackerError(msg, {"url": session.url}))
            return

        try:
            if session.phase == TrackerPhase.CONNECTING:
                result = parse_connect_response(data, session.transaction_id)
            else:
                result = parse_announce_response(data, session.transaction_id)
        except ProtocolError as e:
            self.logger.debug("Ignoring response from %s: %s", session.url, e)
            return
        waiter.set_result(result)
