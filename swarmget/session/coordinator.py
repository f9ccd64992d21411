"""Download coordination.

The coordinator owns the peer pool. Tracker results feed a backlog of
addresses; up to ``max_connections`` of them run as connection tasks. Every
connection, the tracker task and the tick task push events onto a single
queue, and one loop consumes it, so all piece state transitions happen in
one place.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from swarmget.config import get_config
from swarmget.discovery.tracker_udp_client import TrackerClient, TrackerEvent
from swarmget.events import EventType, PeerEvent
from swarmget.exceptions import (
    ProtocolError,
    StorageError,
    TrackerError,
    VerificationError,
)
from swarmget.logging_config import LoggingContext
from swarmget.models import Config, PeerInfo, TorrentDescriptor
from swarmget.peer.messages import (
    BitfieldMessage,
    ChokeMessage,
    HaveMessage,
    PieceMessage,
    UnchokeMessage,
)
from swarmget.peer.peer_connection import PeerConnection
from swarmget.piece.piece_manager import BlockOutcome, PieceManager
from swarmget.storage.base import StorageBackend
from swarmget.utils.peer_id import generate_peer_id
from swarmget.utils.tasks import BackgroundTaskGroup

# Wait before retrying a failed re-announce (seconds)
REANNOUNCE_RETRY_DELAY = 60.0


@dataclass
class DownloadResult:
    """Outcome of one download run."""

    success: bool
    name: str
    info_hash: bytes
    verified_pieces: int
    total_pieces: int
    bytes_verified: int
    duration: float
    peers_connected: int
    error: str | None = None


class DownloadCoordinator:
    """Drives one torrent from tracker discovery to verified storage."""

    def __init__(
        self,
        descriptor: TorrentDescriptor,
        storage: StorageBackend,
        config: Config | None = None,
        peer_id: bytes | None = None,
        tracker: TrackerClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize download coordinator.

        Args:
            descriptor: Torrent to download
            storage: Destination for verified pieces
            config: Configuration, defaults to the global one
            peer_id: Our peer ID, generated when omitted
            tracker: Tracker client, built from the config when omitted
            clock: Monotonic clock, replaceable in tests
        """
        self.descriptor = descriptor
        self.storage = storage
        self.config = config or get_config()
        self.peer_id = peer_id or generate_peer_id()
        self._clock = clock
        self.tracker = tracker or TrackerClient(
            self.peer_id,
            listen_port=self.config.network.listen_port,
            config=self.config.tracker,
            clock=clock,
        )
        self.piece_manager = PieceManager(descriptor, storage, self.config, clock)

        self.events: asyncio.Queue[PeerEvent] = asyncio.Queue()
        self.connections: dict[PeerInfo, PeerConnection] = {}
        self._connection_tasks: dict[PeerInfo, asyncio.Task] = {}
        self.backlog: deque[PeerInfo] = deque()
        self.peers_connected = 0
        # Peers that sent data failing verification are never reconnected
        self.banned: set[PeerInfo] = set()
        self._hash_failures: dict[PeerInfo, int] = {}
        self._dropping: set[PeerInfo] = set()

        self._tasks = BackgroundTaskGroup()
        self._stopping = False
        self._started_at = 0.0

        # Callbacks
        self.on_progress: Callable[[dict[str, Any]], None] | None = None

        self.logger = logging.getLogger(__name__)

    async def start(self) -> DownloadResult:
        """Run the download to completion, failure or ``stop()``.

        Raises:
            TrackerError: Initial peer discovery failed
            VerificationError: A piece kept failing verification
            StorageError: Verified data could not be written
        """
        self._started_at = self._clock()
        with LoggingContext("download", self.logger, torrent=self.descriptor.name):
            response = await self.tracker.announce(
                self.descriptor,
                left=self.piece_manager.bytes_remaining(),
                event=TrackerEvent.NONE,
            )
            self._add_peers(response.peers)
            if not self.backlog and not self.config.tracker.reannounce:
                msg = f"Tracker returned no peers for {self.descriptor.name}"
                raise TrackerError(msg)

            self._tasks.create(self._tick_loop(), name="swarmget-tick")
            self._tasks.create(self._tracker_loop(), name="swarmget-tracker")
            self._open_connections()

            error: str | None = None
            try:
                error = await self._run_loop()
            except (StorageError, VerificationError) as e:
                self.logger.error("Aborting download of %s: %s", self.descriptor.name, e)
                raise
            finally:
                await self._teardown()

            complete = self.piece_manager.is_complete()
            if complete:
                self.logger.info("Download of %s complete", self.descriptor.name)
                await self._announce_completed()
            return self._result(complete, error)

    async def stop(self) -> None:
        """Cancel the download from outside; ``start()`` returns unsuccessfully."""
        self._stopping = True
        await self.events.put(PeerEvent(EventType.TICK))

    async def _run_loop(self) -> str | None:
        """Consume events until complete, stopped or out of peers."""
        while not self.piece_manager.is_complete():
            if self._stopping:
                return "Download stopped"
            if self._out_of_peers():
                return "All peers exhausted"
            event = await self.events.get()
            await self._handle_event(event)
            await self._fill_requests()
        return None

    def _out_of_peers(self) -> bool:
        return not self.connections and not self.backlog and not self.config.tracker.reannounce

    def _result(self, success: bool, error: str | None) -> DownloadResult:
        return DownloadResult(
            success=success,
            name=self.descriptor.name,
            info_hash=self.descriptor.info_hash,
            verified_pieces=len(self.piece_manager.verified_pieces),
            total_pieces=self.piece_manager.num_pieces,
            bytes_verified=self.piece_manager.verified_bytes,
            duration=self._clock() - self._started_at,
            peers_connected=self.peers_connected,
            error=error,
        )

    # Peer pool

    def _add_peers(self, peers: list[PeerInfo]) -> int:
        """Queue addresses not already connected, queued or banned."""
        added = 0
        for peer in peers:
            if peer in self.connections or peer in self.backlog or peer in self.banned:
                continue
            self.backlog.append(peer)
            added += 1
        if added:
            self.logger.debug("Queued %d new peers (%d in backlog)", added, len(self.backlog))
        return added

    def _open_connections(self) -> None:
        while self.backlog and len(self.connections) < self.config.network.max_connections:
            peer = self.backlog.popleft()
            connection = PeerConnection(
                peer,
                self.descriptor.info_hash,
                self.peer_id,
                self.descriptor.num_pieces,
                self.events,
                config=self.config.network,
                clock=self._clock,
            )
            self.connections[peer] = connection
            self._connection_tasks[peer] = self._tasks.create(
                connection.run(),
                name=f"swarmget-peer-{peer}",
            )

    def _drop_peer(self, peer: PeerInfo, reason: str) -> None:
        """Close a misbehaving peer; its DISCONNECTED event does the cleanup."""
        self.logger.info("Dropping peer %s: %s", peer, reason)
        self._dropping.add(peer)
        task = self._connection_tasks.get(peer)
        if task is not None and not task.done():
            task.cancel()

    # Event handling

    async def _handle_event(self, event: PeerEvent) -> None:
        if event.type == EventType.CONNECTED:
            self.peers_connected += 1
            self.logger.info("Peer %s connected", event.peer)
        elif event.type == EventType.MESSAGE:
            connection = self.connections.get(event.peer)
            if connection is not None and event.message is not None:
                await self._handle_message(connection, event.message)
        elif event.type == EventType.DISCONNECTED:
            await self._handle_disconnect(event)
        elif event.type == EventType.PEERS_DISCOVERED:
            self._add_peers(event.peers)
            self._open_connections()
        elif event.type == EventType.TICK:
            await self._handle_tick()

    async def _handle_message(self, connection: PeerConnection, message: Any) -> None:
        peer = connection.peer
        try:
            if isinstance(message, BitfieldMessage):
                if await self.piece_manager.update_peer_bitfield(peer, message.bitfield):
                    await connection.send_interested()
            elif isinstance(message, HaveMessage):
                if await self.piece_manager.update_peer_have(peer, message.piece_index):
                    await connection.send_interested()
            elif isinstance(message, ChokeMessage):
                await self.piece_manager.release_peer(peer)
            elif isinstance(message, UnchokeMessage):
                self.logger.debug("Peer %s unchoked us", peer)
            elif isinstance(message, PieceMessage):
                await self._handle_piece(connection, message)
        except ProtocolError as e:
            self._drop_peer(peer, str(e))

    async def _handle_piece(self, connection: PeerConnection, message: PieceMessage) -> None:
        result = await self.piece_manager.handle_block(
            connection.peer,
            message.piece_index,
            message.begin,
            message.block,
        )
        if result.superseded_owner is not None:
            other = self.connections.get(result.superseded_owner)
            if other is not None:
                await other.send_cancel(message.piece_index, message.begin, len(message.block))

        if result.outcome == BlockOutcome.VERIFIED:
            await self._on_piece_verified(result.piece_index)
        elif result.outcome == BlockOutcome.HASH_MISMATCH:
            self._penalize(result.contributors, result.piece_index)

    def _penalize(self, peers: frozenset[PeerInfo], piece_index: int) -> None:
        """Count a failed piece against its contributors; ban those over the limit."""
        limit = self.config.strategy.max_peer_hash_failures
        for peer in peers:
            failures = self._hash_failures.get(peer, 0) + 1
            self._hash_failures[peer] = failures
            if failures >= limit:
                self.banned.add(peer)
                self._drop_peer(peer, f"sent data failing verification of piece {piece_index}")

    async def _on_piece_verified(self, piece_index: int) -> None:
        if self.config.strategy.broadcast_have:
            for connection in list(self.connections.values()):
                if connection.is_established() and piece_index not in connection.peer_pieces:
                    await connection.send_have(piece_index)
        for peer, connection in list(self.connections.items()):
            if connection.am_interested and not self.piece_manager.peer_has_wanted(peer):
                await connection.send_not_interested()
        if self.on_progress:
            self.on_progress(self.piece_manager.get_stats())

    async def _handle_disconnect(self, event: PeerEvent) -> None:
        peer = event.peer
        if peer is None or peer not in self.connections:
            return
        del self.connections[peer]
        self._connection_tasks.pop(peer, None)
        self._dropping.discard(peer)
        released = await self.piece_manager.remove_peer(peer)
        self.logger.debug(
            "Peer %s disconnected (%s), released %d requests",
            peer,
            event.error or "closed",
            len(released),
        )
        self._open_connections()

    async def _handle_tick(self) -> None:
        now = self._clock()
        for owner, request in await self.piece_manager.expire_requests(now):
            connection = self.connections.get(owner)
            if connection is not None:
                await connection.send_cancel(request.piece_index, request.begin, request.length)
        for connection in list(self.connections.values()):
            if connection.is_established():
                await connection.send_keep_alive_if_idle(now)

    async def _fill_requests(self) -> None:
        """Top up every unchoked peer's pipeline, most constrained peer first."""
        if self.piece_manager.is_complete() or self._stopping:
            return
        ready = [
            peer
            for peer, conn in self.connections.items()
            if peer not in self._dropping and conn.can_request()
        ]
        for peer in self.piece_manager.assignment_order(ready):
            connection = self.connections[peer]
            requests = await self.piece_manager.next_requests(peer, connection.available_slots())
            for request in requests:
                if not await connection.send_request(
                    request.piece_index,
                    request.begin,
                    request.length,
                ):
                    break

    # Background tasks

    async def _tick_loop(self) -> None:
        """Periodically wake the loop for expiry and keep-alives."""
        while True:
            await asyncio.sleep(self.config.strategy.tick_interval)
            await self.events.put(PeerEvent(EventType.TICK))

    async def _tracker_loop(self) -> None:
        """Re-announce every tracker interval and queue new peers."""
        if not self.config.tracker.reannounce:
            return
        url = self.descriptor.announce
        while True:
            await asyncio.sleep(self.tracker.seconds_until_announce(url))
            try:
                response = await self.tracker.announce(
                    self.descriptor,
                    left=self.piece_manager.bytes_remaining(),
                    event=TrackerEvent.NONE,
                )
            except TrackerError as e:
                self.logger.warning("Re-announce to %s failed: %s", url, e)
                await asyncio.sleep(REANNOUNCE_RETRY_DELAY)
                continue
            await self.events.put(PeerEvent(EventType.PEERS_DISCOVERED, peers=response.peers))

    async def _teardown(self) -> None:
        """Stop background tasks and close every connection."""
        self._stopping = True
        await self._tasks.cancel_and_wait(timeout=5.0)
        for connection in list(self.connections.values()):
            await connection.close()
        self.connections.clear()
        self._connection_tasks.clear()
        self.piece_manager.close()

    async def _announce_completed(self) -> None:
        if not self.config.tracker.announce_completed:
            return
        try:
            await self.tracker.announce(
                self.descriptor,
                left=0,
                event=TrackerEvent.COMPLETED,
                max_retries=self.config.tracker.completed_announce_retries,
            )
        except TrackerError as e:
            self.logger.warning("Completed announce failed: %s", e)
