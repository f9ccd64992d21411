"""swarmget - a BitTorrent retrieval engine for UDP tracker swarms."""

from __future__ import annotations

__version__ = "0.1.0"
