"""Peer wire protocol: message codec and TCP peer connections."""

from __future__ import annotations

from swarmget.peer.messages import Handshake, MessageDecoder, PeerMessage
from swarmget.peer.peer_connection import ConnectionState, HandshakeStatus, PeerConnection

__all__ = [
    "ConnectionState",
    "Handshake",
    "HandshakeStatus",
    "MessageDecoder",
    "PeerConnection",
    "PeerMessage",
]
