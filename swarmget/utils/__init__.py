"""Shared utilities.

Small helpers used by the tracker, peer and session layers.
"""

from __future__ import annotations

from swarmget.utils.backoff import ExponentialBackoff
from swarmget.utils.bitfield import build_bitfield, parse_bitfield
from swarmget.utils.peer_id import generate_peer_id
from swarmget.utils.tasks import BackgroundTaskGroup

__all__ = [
    "BackgroundTaskGroup",
    "ExponentialBackoff",
    "build_bitfield",
    "generate_peer_id",
    "parse_bitfield",
]
