"""Piece management for the download.

Implements rarest-first piece selection, per-peer availability tracking,
block request bookkeeping with expiry, and SHA-1 verification of completed
pieces in a thread pool. The manager is the only owner of piece and block
state; every mutating method runs under ``self.lock``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable

from swarmget.config import get_config
from swarmget.exceptions import ProtocolError, VerificationError
from swarmget.utils.bitfield import bitfield_length, parse_bitfield

if TYPE_CHECKING:
    from swarmget.models import Config, PeerInfo, TorrentDescriptor
    from swarmget.storage.base import StorageBackend


class PieceStatus(Enum):
    """States of a piece download."""

    MISSING = "missing"  # no block requested or received
    IN_PROGRESS = "in_progress"  # some blocks requested or received
    VERIFIED = "verified"  # hash matched and data flushed
    FAILED_VERIFY = "failed_verify"  # kept failing across distinct peers


class BlockStatus(Enum):
    """States of a block within a piece."""

    PENDING = "pending"
    REQUESTED = "requested"
    RECEIVED = "received"


class BlockOutcome(Enum):
    """What happened to a delivered block."""

    IGNORED = "ignored"  # duplicate, unknown offset, wrong length or finished piece
    ACCEPTED = "accepted"  # stored, piece still incomplete
    VERIFIED = "verified"  # completed the piece, hash matched, flushed to storage
    HASH_MISMATCH = "hash_mismatch"  # completed the piece but the hash did not match


@dataclass(frozen=True)
class BlockRequest:
    """A block reference as sent in request and cancel messages."""

    piece_index: int
    begin: int
    length: int


@dataclass
class Block:
    """Represents a block within a piece."""

    piece_index: int
    begin: int
    length: int
    status: BlockStatus = BlockStatus.PENDING
    owner: PeerInfo | None = None  # peer holding the request while REQUESTED
    requested_at: float = 0.0
    received_from: PeerInfo | None = None
    data: bytes | None = None

    def as_request(self) -> BlockRequest:
        """Block reference for the wire."""
        return BlockRequest(self.piece_index, self.begin, self.length)

    def reset(self) -> None:
        """Return the block to PENDING and drop its data."""
        self.status = BlockStatus.PENDING
        self.owner = None
        self.requested_at = 0.0
        self.received_from = None
        self.data = None


@dataclass
class Piece:
    """A piece with its assembly buffer and availability."""

    index: int
    length: int
    expected_hash: bytes
    blocks: list[Block] = field(default_factory=list)
    status: PieceStatus = PieceStatus.MISSING
    owners: set[PeerInfo] = field(default_factory=set)
    failed_peers: set[PeerInfo] = field(default_factory=set)
    verify_failures: int = 0

    def block_at(self, begin: int) -> Block | None:
        """Find the block starting at ``begin``."""
        for block in self.blocks:
            if block.begin == begin:
                return block
        return None

    def pending_blocks(self) -> list[Block]:
        """Blocks nobody has requested yet, in ascending offset order."""
        return [b for b in self.blocks if b.status == BlockStatus.PENDING]

    def is_full(self) -> bool:
        """Check if every block has been received."""
        return all(b.status == BlockStatus.RECEIVED for b in self.blocks)

    def is_done(self) -> bool:
        """Check if the piece needs no further work."""
        return self.status in (PieceStatus.VERIFIED, PieceStatus.FAILED_VERIFY)

    def assemble(self) -> bytes:
        """Concatenate block data in offset order."""
        return b"".join(b.data or b"" for b in self.blocks)

    def refresh_status(self) -> None:
        """Derive MISSING/IN_PROGRESS from block states."""
        if self.is_done():
            return
        if all(b.status == BlockStatus.PENDING for b in self.blocks):
            self.status = PieceStatus.MISSING
        else:
            self.status = PieceStatus.IN_PROGRESS


@dataclass
class BlockResult:
    """Result of handing a received block to the manager."""

    outcome: BlockOutcome
    piece_index: int
    superseded_owner: PeerInfo | None = None  # other peer whose request became redundant
    contributors: frozenset[PeerInfo] = frozenset()  # peers whose blocks failed the hash check


class PieceManager:
    """Rarest-first piece manager with hash verification."""

    def __init__(
        self,
        descriptor: TorrentDescriptor,
        storage: StorageBackend,
        config: Config | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize piece manager.

        Args:
            descriptor: Torrent being downloaded
            storage: Destination for verified pieces
            config: Configuration, defaults to the global one
            clock: Monotonic clock, replaceable in tests
        """
        self.descriptor = descriptor
        self.storage = storage
        self.config = config or get_config()
        self._clock = clock

        self.num_pieces = descriptor.num_pieces
        self.block_size = self.config.network.block_size_kib * 1024
        self.pipeline_depth = self.config.network.pipeline_depth
        self.request_timeout = self.config.network.request_timeout
        self.max_verify_failures = self.config.strategy.max_verify_failures

        self.pieces: list[Piece] = []
        for index in range(self.num_pieces):
            length = descriptor.piece_size(index)
            piece = Piece(index, length, descriptor.piece_hashes[index])
            piece.blocks = [
                Block(index, begin, min(self.block_size, length - begin))
                for begin in range(0, length, self.block_size)
            ]
            self.pieces.append(piece)

        self.lock = asyncio.Lock()
        self.peer_pieces: dict[PeerInfo, set[int]] = {}
        self.verified_pieces: set[int] = set()
        self.verified_bytes = 0
        self.hash_mismatches = 0

        # Unfinished pieces with at least one PENDING block
        self._pending: set[int] = set(range(self.num_pieces))
        # REQUESTED blocks per owner, keyed by (piece index, begin)
        self._requested: dict[PeerInfo, dict[tuple[int, int], Block]] = {}

        self.hash_executor = ThreadPoolExecutor(
            max_workers=self.config.disk.hash_workers,
            thread_name_prefix="swarmget-hash",
        )

        self.logger = logging.getLogger(__name__)

    # Availability

    def _set_owner(self, peer: PeerInfo, index: int) -> None:
        self.peer_pieces.setdefault(peer, set()).add(index)
        self.pieces[index].owners.add(peer)

    async def update_peer_bitfield(self, peer: PeerInfo, bitfield: bytes) -> bool:
        """Record a peer's bitfield; return whether it has pieces we want.

        Raises:
            ProtocolError: Bitfield length does not match the piece count
        """
        expected = bitfield_length(self.num_pieces)
        if len(bitfield) != expected:
            msg = f"Bitfield from {peer} is {len(bitfield)} bytes, expected {expected}"
            raise ProtocolError(msg)
        async with self.lock:
            for index in self.peer_pieces.pop(peer, set()):
                self.pieces[index].owners.discard(peer)
            self.peer_pieces[peer] = set()
            for index in parse_bitfield(bitfield, self.num_pieces):
                self._set_owner(peer, index)
            return self.peer_has_wanted(peer)

    async def update_peer_have(self, peer: PeerInfo, piece_index: int) -> bool:
        """Record a have announcement; return whether we want that piece.

        Raises:
            ProtocolError: Piece index out of range
        """
        if not 0 <= piece_index < self.num_pieces:
            msg = f"Have from {peer} for invalid piece {piece_index}"
            raise ProtocolError(msg)
        async with self.lock:
            self._set_owner(peer, piece_index)
            return not self.pieces[piece_index].is_done()

    def peer_has_wanted(self, peer: PeerInfo) -> bool:
        """Whether the peer owns any piece we still need."""
        return self.wanted_count(peer) > 0

    def wanted_count(self, peer: PeerInfo) -> int:
        """Number of unfinished pieces the peer owns."""
        return sum(1 for i in self.peer_pieces.get(peer, ()) if not self.pieces[i].is_done())

    def assignment_order(self, peers: Iterable[PeerInfo]) -> list[PeerInfo]:
        """Order in which peers should have their pipelines filled.

        Peers owning fewer wanted pieces are served first so a peer that only
        has a rare piece is given that piece before a well-stocked peer takes
        its blocks.
        """
        return sorted(peers, key=lambda p: (self.wanted_count(p), str(p)))

    # Request bookkeeping

    def _assign(self, block: Block, peer: PeerInfo, now: float) -> None:
        block.status = BlockStatus.REQUESTED
        block.owner = peer
        block.requested_at = now
        self._requested.setdefault(peer, {})[(block.piece_index, block.begin)] = block

    def _unassign(self, block: Block) -> None:
        if block.owner is None:
            return
        owned = self._requested.get(block.owner)
        if owned is not None:
            owned.pop((block.piece_index, block.begin), None)
            if not owned:
                del self._requested[block.owner]
        block.owner = None

    def _reset_block(self, block: Block) -> None:
        """Return a block to PENDING and make its piece selectable again."""
        self._unassign(block)
        block.reset()
        piece = self.pieces[block.piece_index]
        if not piece.is_done():
            self._pending.add(piece.index)

    # Selection

    def requested_by(self, peer: PeerInfo) -> list[Block]:
        """Blocks currently requested from ``peer``."""
        return list(self._requested.get(peer, {}).values())

    def _candidates(self, peer: PeerInfo) -> list[Piece]:
        owned = self.peer_pieces.get(peer)
        if not owned:
            return []
        candidates = [self.pieces[i] for i in self._pending.intersection(owned)]
        # Rarest first, lowest index on ties
        candidates.sort(key=lambda p: (len(p.owners), p.index))
        return candidates

    async def next_requests(self, peer: PeerInfo, slots: int | None = None) -> list[BlockRequest]:
        """Assign up to ``slots`` PENDING blocks to ``peer``, rarest piece first."""
        async with self.lock:
            free = self.pipeline_depth - len(self._requested.get(peer, ()))
            slots = free if slots is None else min(slots, free)
            if slots <= 0:
                return []

            now = self._clock()
            requests: list[BlockRequest] = []
            for piece in self._candidates(peer):
                for block in piece.pending_blocks()[: slots - len(requests)]:
                    self._assign(block, peer, now)
                    requests.append(block.as_request())
                if not piece.pending_blocks():
                    self._pending.discard(piece.index)
                piece.refresh_status()
                if len(requests) >= slots:
                    break
            return requests

    # Delivery and verification

    async def handle_block(
        self,
        peer: PeerInfo,
        piece_index: int,
        begin: int,
        data: bytes,
    ) -> BlockResult:
        """Store a received block and verify the piece once it is complete.

        Raises:
            VerificationError: The piece failed verification with too many
                distinct peers
            StorageError: The verified piece could not be written
        """
        async with self.lock:
            if not 0 <= piece_index < self.num_pieces:
                self.logger.debug("Block for invalid piece %d from %s", piece_index, peer)
                return BlockResult(BlockOutcome.IGNORED, piece_index)
            piece = self.pieces[piece_index]
            block = piece.block_at(begin)
            if (
                piece.is_done()
                or block is None
                or block.status == BlockStatus.RECEIVED
                or len(data) != block.length
            ):
                self.logger.debug(
                    "Ignoring block %d:%d (%d bytes) from %s",
                    piece_index,
                    begin,
                    len(data),
                    peer,
                )
                return BlockResult(BlockOutcome.IGNORED, piece_index)

            superseded = block.owner if block.owner not in (None, peer) else None
            self._unassign(block)
            block.status = BlockStatus.RECEIVED
            block.received_from = peer
            block.data = data
            if not piece.pending_blocks():
                self._pending.discard(piece_index)
            piece.refresh_status()

            if not piece.is_full():
                return BlockResult(BlockOutcome.ACCEPTED, piece_index, superseded)
            result = await self._verify_piece(piece)
            result.superseded_owner = superseded
            return result

    def _hash_matches(self, data: bytes, expected_hash: bytes) -> bool:
        return hashlib.sha1(data).digest() == expected_hash  # nosec B324 - SHA-1 required by BitTorrent protocol (BEP 3)

    async def _verify_piece(self, piece: Piece) -> BlockResult:
        data = piece.assemble()
        loop = asyncio.get_running_loop()
        matches = await loop.run_in_executor(
            self.hash_executor,
            self._hash_matches,
            data,
            piece.expected_hash,
        )
        if not matches:
            return self._reject_piece(piece)

        # Once issued, the write completes even if the download is cancelled
        await asyncio.shield(
            self.storage.write(self.descriptor.piece_offset(piece.index), data),
        )
        piece.status = PieceStatus.VERIFIED
        for block in piece.blocks:
            block.data = None
        self._pending.discard(piece.index)
        self.verified_pieces.add(piece.index)
        self.verified_bytes += piece.length
        self.logger.debug(
            "Verified piece %d (%d/%d)",
            piece.index,
            len(self.verified_pieces),
            self.num_pieces,
        )
        return BlockResult(BlockOutcome.VERIFIED, piece.index)

    def _reject_piece(self, piece: Piece) -> BlockResult:
        contributors = frozenset(
            b.received_from for b in piece.blocks if b.received_from is not None
        )
        for block in piece.blocks:
            self._reset_block(block)
        piece.status = PieceStatus.MISSING
        piece.verify_failures += 1
        piece.failed_peers |= contributors
        self.hash_mismatches += 1
        self.logger.warning(
            "Hash mismatch for piece %d (attempt %d, peers: %s)",
            piece.index,
            piece.verify_failures,
            ", ".join(sorted(str(p) for p in contributors)),
        )
        if len(piece.failed_peers) >= self.max_verify_failures:
            piece.status = PieceStatus.FAILED_VERIFY
            self._pending.discard(piece.index)
            msg = (
                f"Piece {piece.index} failed verification with "
                f"{len(piece.failed_peers)} distinct peers"
            )
            raise VerificationError(
                msg,
                {"piece_index": piece.index, "attempts": piece.verify_failures},
            )
        return BlockResult(BlockOutcome.HASH_MISMATCH, piece.index, contributors=contributors)

    # Reclaiming requests

    async def expire_requests(self, now: float | None = None) -> list[tuple[PeerInfo, BlockRequest]]:
        """Return stale REQUESTED blocks to PENDING.

        Returns:
            (previous owner, request) pairs so the caller can send cancels
        """
        async with self.lock:
            now = self._clock() if now is None else now
            expired = []
            for owner, blocks in list(self._requested.items()):
                for block in list(blocks.values()):
                    if now - block.requested_at >= self.request_timeout:
                        expired.append((owner, block.as_request()))
                        self._reset_block(block)
                        self.pieces[block.piece_index].refresh_status()
            if expired:
                self.logger.debug("Expired %d stale block requests", len(expired))
            return expired

    def _release(self, peer: PeerInfo) -> list[BlockRequest]:
        released = []
        for block in self.requested_by(peer):
            released.append(block.as_request())
            self._reset_block(block)
            self.pieces[block.piece_index].refresh_status()
        return released

    async def release_peer(self, peer: PeerInfo) -> list[BlockRequest]:
        """Return the peer's REQUESTED blocks to PENDING (e.g. after a choke)."""
        async with self.lock:
            return self._release(peer)

    async def remove_peer(self, peer: PeerInfo) -> list[BlockRequest]:
        """Forget a disconnected peer: drop its ownership and release its requests."""
        async with self.lock:
            for index in self.peer_pieces.pop(peer, set()):
                self.pieces[index].owners.discard(peer)
            return self._release(peer)

    # Progress

    def is_complete(self) -> bool:
        """Check if every piece is verified."""
        return len(self.verified_pieces) == self.num_pieces

    def bytes_remaining(self) -> int:
        """Bytes not yet verified."""
        return self.descriptor.total_length - self.verified_bytes

    def progress(self) -> float:
        """Fraction of pieces verified."""
        return len(self.verified_pieces) / self.num_pieces

    def get_stats(self) -> dict[str, Any]:
        """Get piece manager statistics."""
        by_status = {status.value: 0 for status in PieceStatus}
        for piece in self.pieces:
            by_status[piece.status.value] += 1
        return {
            "total_pieces": self.num_pieces,
            "verified_pieces": len(self.verified_pieces),
            "pieces_by_status": by_status,
            "bytes_remaining": self.bytes_remaining(),
            "progress": self.progress(),
            "hash_mismatches": self.hash_mismatches,
            "peer_count": len(self.peer_pieces),
        }

    def close(self) -> None:
        """Shut down the hash worker threads."""
        self.hash_executor.shutdown(wait=False)
