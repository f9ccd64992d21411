"""Exception hierarchy for swarmget.

Errors are grouped by the layer that raises them so callers can decide
whether a failure is local to one peer or tracker attempt, or fatal to the
whole download.
"""

from __future__ import annotations

from typing import Any


class SwarmGetError(Exception):
    """Base exception for all swarmget errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize swarmget error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class NetworkError(SwarmGetError):
    """Network-related errors."""


class TrackerError(NetworkError):
    """Tracker communication errors."""


class TrackerTimeoutError(TrackerError):
    """Tracker did not answer within the retry budget."""


class PeerConnectionError(NetworkError):
    """Peer connection errors."""


class ProtocolError(SwarmGetError):
    """BitTorrent protocol errors (malformed message, mismatched ids)."""


class HandshakeError(ProtocolError):
    """Handshake protocol errors."""


class MessageError(ProtocolError):
    """Message parsing/serialization errors."""


class VerificationError(SwarmGetError):
    """Piece hash verification keeps failing across distinct peers."""


class DiskError(SwarmGetError):
    """Disk I/O related errors."""


class StorageError(DiskError):
    """Verified data could not be written to storage."""


class ValidationError(SwarmGetError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class TorrentError(ValidationError):
    """Torrent file validation errors."""


class BencodeError(ValidationError):
    """Bencode encoding/decoding errors."""
