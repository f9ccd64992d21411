"""Torrent metadata: bencode codec and .torrent parsing."""

from __future__ import annotations

from swarmget.core.bencode import (
    BencodeDecodeError,
    BencodeDecoder,
    BencodeEncodeError,
    BencodeEncoder,
    decode,
    encode,
)
from swarmget.core.torrent import TorrentParser

__all__ = [
    "BencodeDecodeError",
    "BencodeDecoder",
    "BencodeEncodeError",
    "BencodeEncoder",
    "TorrentParser",
    "decode",
    "encode",
]
