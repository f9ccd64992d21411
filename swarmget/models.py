"""Pydantic models for swarmget.

Holds the immutable torrent descriptor, peer addresses, wire enums and the
configuration tree.
"""

from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class MessageType(int, Enum):
    """BitTorrent message types."""

    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8
    PORT = 9


class PeerInfo(BaseModel):
    """Peer address as reported by a tracker."""

    ip: str = Field(..., description="Peer IP address")
    port: int = Field(..., ge=1, le=65535, description="Peer port number")

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v):
        """Validate IP address format."""
        if not v:
            msg = "IP address cannot be empty"
            raise ValueError(msg)
        return v

    def __str__(self) -> str:
        """String representation of peer info."""
        return f"{self.ip}:{self.port}"

    def __hash__(self) -> int:
        """Hash peer info for use as dictionary key."""
        return hash((self.ip, self.port))

    def __eq__(self, other) -> bool:
        """Equality comparison for peer info."""
        if not isinstance(other, PeerInfo):
            return False
        return self.ip == other.ip and self.port == other.port


class FileInfo(BaseModel):
    """One file of the torrent's ordered file layout."""

    path: list[str] = Field(..., min_length=1, description="File path components")
    length: int = Field(..., ge=0, description="File length in bytes")

    @property
    def name(self) -> str:
        """File name (last path component)."""
        return self.path[-1]


class TorrentDescriptor(BaseModel):
    """Immutable description of a torrent, read-only for the whole run."""

    announce: str = Field(..., description="Tracker announce URL")
    info_hash: bytes = Field(..., min_length=20, max_length=20, description="Info hash")
    name: str = Field(..., description="Torrent name")
    piece_length: int = Field(..., gt=0, description="Piece length in bytes")
    piece_hashes: list[bytes] = Field(..., description="SHA-1 hash of every piece")
    total_length: int = Field(..., gt=0, description="Total length in bytes")
    files: list[FileInfo] = Field(..., min_length=1, description="Ordered file layout")
    multi_file: bool = Field(
        default=False,
        description="Whether files live under a directory named after the torrent",
    )

    model_config = {"frozen": True}

    @field_validator("piece_hashes")
    @classmethod
    def validate_piece_hashes(cls, v: list[bytes]) -> list[bytes]:
        """Every piece hash must be a 20-byte SHA-1 digest."""
        for index, piece_hash in enumerate(v):
            if len(piece_hash) != 20:
                msg = f"Piece hash {index} must be 20 bytes, got {len(piece_hash)}"
                raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_layout(self) -> TorrentDescriptor:
        """Check file lengths and piece count against the total length."""
        file_total = sum(f.length for f in self.files)
        if file_total != self.total_length:
            msg = f"File lengths sum to {file_total}, expected {self.total_length}"
            raise ValueError(msg)
        expected_pieces = math.ceil(self.total_length / self.piece_length)
        if len(self.piece_hashes) != expected_pieces:
            msg = (
                f"Expected {expected_pieces} piece hashes for {self.total_length} bytes, "
                f"got {len(self.piece_hashes)}"
            )
            raise ValueError(msg)
        return self

    @property
    def num_pieces(self) -> int:
        """Number of pieces."""
        return len(self.piece_hashes)

    def piece_offset(self, index: int) -> int:
        """Absolute byte offset of a piece within the concatenated content."""
        return index * self.piece_length

    def piece_size(self, index: int) -> int:
        """Length of a piece; the last one may be shorter."""
        if index < 0 or index >= self.num_pieces:
            msg = f"Invalid piece index: {index}"
            raise IndexError(msg)
        return min(self.piece_length, self.total_length - self.piece_offset(index))


class NetworkConfig(BaseModel):
    """Network configuration."""

    listen_port: int = Field(
        default=6881,
        ge=1,
        le=65535,
        description="Port announced to the tracker",
    )
    max_connections: int = Field(
        default=30,
        ge=1,
        le=1000,
        description="Maximum simultaneous peer connections",
    )
    connection_timeout: float = Field(
        default=10.0,
        gt=0,
        description="TCP connect timeout in seconds",
    )
    handshake_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Time allowed for the peer handshake in seconds",
    )
    inactivity_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Close a peer that sends nothing for this many seconds",
    )
    keep_alive_interval: float = Field(
        default=90.0,
        gt=0,
        description="Send a keep-alive after this many idle seconds",
    )
    pipeline_depth: int = Field(
        default=5,
        ge=1,
        le=128,
        description="Outstanding block requests per peer",
    )
    block_size_kib: int = Field(
        default=16,
        ge=1,
        le=128,
        description="Block size in KiB",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds before an unanswered block request is reassigned",
    )
    max_message_length: int = Field(
        default=1024 * 1024,
        ge=1024,
        description="Largest accepted peer message payload in bytes",
    )


class TrackerConfig(BaseModel):
    """UDP tracker configuration."""

    base_timeout: float = Field(
        default=15.0,
        gt=0,
        description="Initial retransmission timeout in seconds",
    )
    max_retries: int = Field(
        default=8,
        ge=0,
        le=16,
        description="Retransmissions per phase before giving up",
    )
    connection_id_ttl: float = Field(
        default=60.0,
        gt=0,
        description="Seconds a connection id stays valid",
    )
    announce_completed: bool = Field(
        default=True,
        description="Send a completed event when the download finishes",
    )
    completed_announce_retries: int = Field(
        default=1,
        ge=0,
        le=16,
        description="Retry budget for the completed announce",
    )
    reannounce: bool = Field(
        default=True,
        description="Re-announce every tracker interval to find more peers",
    )


class StrategyConfig(BaseModel):
    """Piece selection and verification strategy."""

    max_verify_failures: int = Field(
        default=5,
        ge=1,
        description="Distinct peers a piece may fail verification with before aborting",
    )
    max_peer_hash_failures: int = Field(
        default=1,
        ge=1,
        description="Failed pieces a peer may contribute to before it is dropped and banned",
    )
    broadcast_have: bool = Field(
        default=True,
        description="Send have messages to peers lacking a freshly verified piece",
    )
    tick_interval: float = Field(
        default=1.0,
        gt=0,
        description="Seconds between request expiry and keep-alive sweeps",
    )


class DiskConfig(BaseModel):
    """Disk configuration."""

    output_dir: str = Field(default=".", description="Download directory")
    hash_workers: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Threads used for piece hashing",
    )
    disk_workers: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Threads used for file writes",
    )


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Emit JSON log lines instead of rich console output",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class Config(BaseModel):
    """Main configuration model."""

    network: NetworkConfig = Field(
        default_factory=NetworkConfig,
        description="Network configuration",
    )
    tracker: TrackerConfig = Field(
        default_factory=TrackerConfig,
        description="Tracker configuration",
    )
    strategy: StrategyConfig = Field(
        default_factory=StrategyConfig,
        description="Strategy configuration",
    )
    disk: DiskConfig = Field(
        default_factory=DiskConfig,
        description="Disk configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )
