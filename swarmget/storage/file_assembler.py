"""File assembler mapping torrent byte offsets onto the files on disk."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from swarmget.config import get_disk_config
from swarmget.exceptions import StorageError
from swarmget.models import DiskConfig, TorrentDescriptor


@dataclass(frozen=True)
class FileSegment:
    """The part of one file touched by a contiguous byte range."""

    path: Path
    file_offset: int
    data_start: int
    data_end: int


class FileAssembler:
    """Writes verified pieces into the torrent's file layout."""

    def __init__(
        self,
        descriptor: TorrentDescriptor,
        output_dir: str | Path | None = None,
        config: DiskConfig | None = None,
    ):
        """Initialize file assembler.

        Args:
            descriptor: Torrent being downloaded
            output_dir: Download directory, defaults to the configured one
            config: Disk configuration, defaults to the global one
        """
        self.config = config or get_disk_config()
        self.descriptor = descriptor
        self.output_dir = Path(output_dir if output_dir is not None else self.config.output_dir)
        root = self.output_dir / descriptor.name if descriptor.multi_file else self.output_dir

        # (absolute start offset, length, path), ordered by offset
        self.files: list[tuple[int, int, Path]] = []
        offset = 0
        for file_info in descriptor.files:
            self.files.append((offset, file_info.length, root.joinpath(*file_info.path)))
            offset += file_info.length

        self.executor = ThreadPoolExecutor(
            max_workers=self.config.disk_workers,
            thread_name_prefix="swarmget-disk",
        )
        self._allocated = False
        self._allocate_lock = asyncio.Lock()
        self.bytes_written = 0
        self.logger = logging.getLogger(__name__)

    @property
    def paths(self) -> list[Path]:
        """Target path of every file, in torrent order."""
        return [path for _, _, path in self.files]

    def segments_for(self, offset: int, length: int) -> list[FileSegment]:
        """Split an absolute byte range into per-file segments."""
        if offset < 0 or length < 0 or offset + length > self.descriptor.total_length:
            msg = f"Range {offset}+{length} outside torrent of {self.descriptor.total_length} bytes"
            raise StorageError(msg)
        end = offset + length
        segments = []
        for file_start, file_length, path in self.files:
            file_end = file_start + file_length
            if file_end <= offset or file_start >= end or file_length == 0:
                continue
            seg_start = max(offset, file_start)
            seg_end = min(end, file_end)
            segments.append(
                FileSegment(
                    path=path,
                    file_offset=seg_start - file_start,
                    data_start=seg_start - offset,
                    data_end=seg_end - offset,
                ),
            )
        return segments

    def _allocate(self) -> None:
        for _, file_length, path in self.files:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a+b") as f:
                f.truncate(file_length)

    async def _ensure_allocated(self) -> None:
        async with self._allocate_lock:
            if self._allocated:
                return
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(self.executor, self._allocate)
            except OSError as e:
                msg = f"Failed to create files under {self.output_dir}: {e}"
                raise StorageError(msg) from e
            self._allocated = True
            self.logger.debug("Allocated %d files under %s", len(self.files), self.output_dir)

    def _write_segments(self, segments: list[FileSegment], data: bytes) -> None:
        view = memoryview(data)
        for segment in segments:
            with open(segment.path, "r+b") as f:
                f.seek(segment.file_offset)
                f.write(view[segment.data_start : segment.data_end])

    def _read_segments(self, segments: list[FileSegment], length: int) -> bytes:
        out = bytearray()
        for segment in segments:
            with open(segment.path, "rb") as f:
                f.seek(segment.file_offset)
                out += f.read(segment.data_end - segment.data_start)
        if len(out) != length:
            msg = f"Short read: expected {length} bytes, got {len(out)}"
            raise StorageError(msg)
        return bytes(out)

    async def write(self, offset: int, data: bytes) -> None:
        """Write a verified piece at its absolute offset."""
        segments = self.segments_for(offset, len(data))
        await self._ensure_allocated()
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self.executor, self._write_segments, segments, data)
        except OSError as e:
            msg = f"Failed to write {len(data)} bytes at offset {offset}: {e}"
            raise StorageError(msg) from e
        self.bytes_written += len(data)

    async def read(self, offset: int, length: int) -> bytes:
        """Read back a byte range."""
        segments = self.segments_for(offset, length)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self.executor, self._read_segments, segments, length)
        except OSError as e:
            msg = f"Failed to read {length} bytes at offset {offset}: {e}"
            raise StorageError(msg) from e

    def close(self) -> None:
        """Shut down the disk worker threads."""
        self.executor.shutdown(wait=True)
        self.logger.debug("Storage closed after %d bytes", self.bytes_written)
