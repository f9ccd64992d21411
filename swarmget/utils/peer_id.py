"""Peer id generation."""

from __future__ import annotations

import secrets

from swarmget import __version__

PEER_ID_LENGTH = 20


def client_prefix(version: str = __version__) -> bytes:
    """Azureus-style client prefix, e.g. ``-SG0100-`` for version 0.1.0."""
    digits = "".join(part[:1] for part in version.split(".")[:3]).ljust(3, "0")
    return f"-SG{digits}0-".encode("ascii")


def generate_peer_id(prefix: bytes | None = None) -> bytes:
    """Generate a 20-byte peer id: client prefix followed by random digits."""
    prefix = client_prefix() if prefix is None else prefix
    if len(prefix) >= PEER_ID_LENGTH:
        msg = f"Peer id prefix must be shorter than {PEER_ID_LENGTH} bytes"
        raise ValueError(msg)
    suffix_len = PEER_ID_LENGTH - len(prefix)
    suffix = "".join(secrets.choice("0123456789") for _ in range(suffix_len))
    return prefix + suffix.encode("ascii")
