"""Peer discovery through UDP trackers."""

from __future__ import annotations

from swarmget.discovery.tracker_udp_client import (
    AnnounceResponse,
    TrackerClient,
    TrackerEvent,
    TrackerPhase,
    TrackerSession,
)

__all__ = [
    "AnnounceResponse",
    "TrackerClient",
    "TrackerEvent",
    "TrackerPhase",
    "TrackerSession",
]
