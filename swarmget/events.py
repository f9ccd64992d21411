"""Events exchanged between connection tasks and the download coordinator.

Every peer connection, the tracker task and the tick task push events onto
one ``asyncio.Queue``; the coordinator consumes them in arrival order.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from swarmget.models import PeerInfo
    from swarmget.peer.messages import PeerMessage


class EventType(Enum):
    """Coordinator event types."""

    CONNECTED = "connected"
    MESSAGE = "message"
    DISCONNECTED = "disconnected"
    PEERS_DISCOVERED = "peers_discovered"
    TICK = "tick"


@dataclass
class PeerEvent:
    """One entry of the coordinator's event queue."""

    type: EventType
    peer: PeerInfo | None = None
    message: PeerMessage | None = None
    error: BaseException | None = None
    peers: list[PeerInfo] = field(default_factory=list)
    timestamp: float = field(default_factory=time.monotonic)
