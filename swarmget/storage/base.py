"""Storage backend interface."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class StorageBackend(Protocol):
    """Destination for verified piece data.

    ``offset`` is the absolute byte offset within the torrent's concatenated
    content. A write always covers exactly one verified piece.
    """

    async def write(self, offset: int, data: bytes) -> None:
        """Persist ``data`` at ``offset``; raise StorageError on failure."""
        ...

    async def read(self, offset: int, length: int) -> bytes:
        """Read back ``length`` bytes at ``offset``."""
        ...

    def close(self) -> None:
        """Release resources."""
        ...
