"""Storage of verified piece data."""

from __future__ import annotations

from swarmget.storage.base import StorageBackend
from swarmget.storage.file_assembler import FileAssembler, FileSegment

__all__ = ["FileAssembler", "FileSegment", "StorageBackend"]
