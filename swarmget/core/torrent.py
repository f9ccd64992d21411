"""Torrent file parsing.

Turns a .torrent file into the immutable :class:`TorrentDescriptor` used by
the rest of the engine, computing the info hash as required by the protocol.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from swarmget.core.bencode import decode, encode
from swarmget.exceptions import BencodeError, TorrentError
from swarmget.models import FileInfo, TorrentDescriptor

logger = logging.getLogger(__name__)

_UNSAFE_PATH_PARTS = {"", ".", ".."}


class TorrentParser:
    """Parser for BitTorrent torrent files."""

    def parse(self, torrent_path: str | Path) -> TorrentDescriptor:
        """Parse a torrent file from a local path.

        Raises:
            TorrentError: If the file is missing or is not a valid torrent
        """
        path = Path(torrent_path)
        if not path.exists():
            msg = f"Torrent file not found: {path}"
            raise TorrentError(msg)
        try:
            raw = path.read_bytes()
        except OSError as e:
            msg = f"Failed to read torrent file {path}: {e}"
            raise TorrentError(msg) from e
        return self.parse_bytes(raw)

    def parse_bytes(self, raw: bytes) -> TorrentDescriptor:
        """Parse torrent metadata already held in memory."""
        try:
            data = decode(raw)
        except BencodeError as e:
            msg = f"Failed to decode torrent: {e}"
            raise TorrentError(msg) from e

        self._validate_torrent(data)
        info = data[b"info"]
        info_hash = hashlib.sha1(encode(info)).digest()  # nosec B324 - protocol hash

        try:
            name = self._text(info[b"name"], "name")
            files = self._extract_file_info(info, name)
            descriptor = TorrentDescriptor(
                announce=self._text(data[b"announce"], "announce"),
                info_hash=info_hash,
                name=name,
                piece_length=info[b"piece length"],
                piece_hashes=self._extract_pieces_info(info),
                total_length=sum(f.length for f in files),
                files=files,
                multi_file=b"files" in info,
            )
        except PydanticValidationError as e:
            msg = f"Invalid torrent metadata: {e}"
            raise TorrentError(msg) from e

        logger.debug(
            "Parsed torrent %s: %d pieces, %d bytes, %d files",
            descriptor.name,
            descriptor.num_pieces,
            descriptor.total_length,
            len(descriptor.files),
        )
        return descriptor

    def _validate_torrent(self, data: Any) -> None:
        """Validate that the data is a valid torrent dictionary."""
        if not isinstance(data, dict):
            msg = "Torrent root must be a dictionary"
            raise TorrentError(msg)
        for key in (b"announce", b"info"):
            if key not in data:
                msg = f"Missing required key in torrent: {key.decode()}"
                raise TorrentError(msg)

        info = data[b"info"]
        if not isinstance(info, dict):
            msg = "Invalid info dictionary in torrent"
            raise TorrentError(msg)
        if b"length" not in info and b"files" not in info:
            msg = "Torrent must specify either length (single file) or files (multi-file)"
            raise TorrentError(msg)
        for key in (b"name", b"piece length", b"pieces"):
            if key not in info:
                msg = f"Missing {key.decode()} in torrent info"
                raise TorrentError(msg)
        if not isinstance(info[b"piece length"], int) or info[b"piece length"] <= 0:
            msg = "Piece length must be a positive integer"
            raise TorrentError(msg)

    def _text(self, value: Any, field: str) -> str:
        if not isinstance(value, bytes):
            msg = f"Torrent field {field} must be a string"
            raise TorrentError(msg)
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            msg = f"Torrent field {field} is not valid UTF-8"
            raise TorrentError(msg) from e

    def _extract_file_info(self, info: dict[bytes, Any], name: str) -> list[FileInfo]:
        """Extract the ordered file layout from the info dictionary."""
        self._check_path_part(name)
        if b"length" in info:
            length = info[b"length"]
            if not isinstance(length, int) or length < 0:
                msg = "File length must be a non-negative integer"
                raise TorrentError(msg)
            return [FileInfo(path=[name], length=length)]

        entries = info[b"files"]
        if not isinstance(entries, list) or not entries:
            msg = "Multi-file torrent must list at least one file"
            raise TorrentError(msg)

        files = []
        for entry in entries:
            if not isinstance(entry, dict) or b"length" not in entry or b"path" not in entry:
                msg = "File entry must have length and path"
                raise TorrentError(msg)
            length = entry[b"length"]
            if not isinstance(length, int) or length < 0:
                msg = "File length must be a non-negative integer"
                raise TorrentError(msg)
            raw_parts = entry[b"path"]
            if not isinstance(raw_parts, list) or not raw_parts:
                msg = "File path must be a non-empty list"
                raise TorrentError(msg)
            parts = [self._text(part, "path") for part in raw_parts]
            for part in parts:
                self._check_path_part(part)
            files.append(FileInfo(path=parts, length=length))
        return files

    def _check_path_part(self, part: str) -> None:
        if part in _UNSAFE_PATH_PARTS or "/" in part or "\\" in part:
            msg = f"Unsafe path component in torrent: {part!r}"
            raise TorrentError(msg)

    def _extract_pieces_info(self, info: dict[bytes, Any]) -> list[bytes]:
        """Split the concatenated piece hashes into 20-byte digests."""
        pieces_data = info[b"pieces"]
        if not isinstance(pieces_data, bytes) or len(pieces_data) % 20 != 0:
            msg = "Invalid pieces data length (should be multiple of 20)"
            raise TorrentError(msg)
        return [pieces_data[i : i + 20] for i in range(0, len(pieces_data), 20)]
