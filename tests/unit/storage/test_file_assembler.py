"""Tests for swarmget.storage.file_assembler."""

from __future__ import annotations

import pytest

from swarmget.exceptions import StorageError
from swarmget.models import DiskConfig
from swarmget.storage.base import StorageBackend
from swarmget.storage.file_assembler import FileAssembler, FileSegment

pytestmark = [pytest.mark.unit, pytest.mark.storage]


@pytest.fixture
def assemblers():
    """Create assemblers and close their worker pools afterwards."""
    created = []

    def make(descriptor, output_dir):
        assembler = FileAssembler(descriptor, output_dir, DiskConfig(disk_workers=1))
        created.append(assembler)
        return assembler

    yield make
    for assembler in created:
        assembler.close()


class TestLayout:
    """Mapping byte ranges onto files."""

    def test_single_file_path(self, assemblers, make_descriptor, make_content, tmp_path):
        """A single-file torrent writes directly into the output directory."""
        descriptor = make_descriptor(make_content(100), 32, name="movie.bin")
        assembler = assemblers(descriptor, tmp_path)
        assert assembler.paths == [tmp_path / "movie.bin"]
        assert isinstance(assembler, StorageBackend)

    def test_multi_file_paths(self, assemblers, make_descriptor, make_content, tmp_path):
        """Multi-file torrents live under a directory named after the torrent."""
        descriptor = make_descriptor(
            make_content(12),
            4,
            name="album",
            files=[(["a.txt"], 5), (["sub", "b.txt"], 7)],
        )
        assembler = assemblers(descriptor, tmp_path)
        assert assembler.paths == [tmp_path / "album" / "a.txt", tmp_path / "album" / "sub" / "b.txt"]

    def test_range_spanning_files(self, assemblers, make_descriptor, make_content, tmp_path):
        """A piece crossing a file boundary is split into per-file segments."""
        descriptor = make_descriptor(
            make_content(12),
            4,
            name="album",
            files=[(["a.txt"], 5), (["empty"], 0), (["b.txt"], 7)],
        )
        assembler = assemblers(descriptor, tmp_path)

        segments = assembler.segments_for(4, 4)

        assert segments == [
            FileSegment(tmp_path / "album" / "a.txt", 4, 0, 1),
            FileSegment(tmp_path / "album" / "b.txt", 0, 1, 4),
        ]

    def test_range_outside_torrent(self, assemblers, make_descriptor, make_content, tmp_path):
        """Ranges past the end of the content are rejected."""
        assembler = assemblers(make_descriptor(make_content(100), 32), tmp_path)
        with pytest.raises(StorageError):
            assembler.segments_for(90, 20)


class TestWrites:
    """Writing and reading back verified data."""

    @pytest.mark.asyncio
    async def test_single_file_roundtrip(self, assemblers, make_descriptor, make_content, tmp_path):
        """Pieces written out of order produce the original file."""
        content = make_content(100)
        descriptor = make_descriptor(content, 32)
        assembler = assemblers(descriptor, tmp_path)

        for index in (3, 1, 0, 2):
            offset = descriptor.piece_offset(index)
            await assembler.write(offset, content[offset : offset + descriptor.piece_size(index)])

        assert (tmp_path / "sample.bin").read_bytes() == content
        assert await assembler.read(30, 10) == content[30:40]
        assert assembler.bytes_written == 100

    @pytest.mark.asyncio
    async def test_files_preallocated(self, assemblers, make_descriptor, make_content, tmp_path):
        """The first write creates every file at its final size, empty ones included."""
        content = make_content(12)
        descriptor = make_descriptor(
            content,
            4,
            name="album",
            files=[(["a.txt"], 5), (["empty"], 0), (["sub", "b.txt"], 7)],
        )
        assembler = assemblers(descriptor, tmp_path)

        await assembler.write(0, content[:4])

        root = tmp_path / "album"
        assert (root / "a.txt").stat().st_size == 5
        assert (root / "empty").stat().st_size == 0
        assert (root / "sub" / "b.txt").stat().st_size == 7

    @pytest.mark.asyncio
    async def test_multi_file_content(self, assemblers, make_descriptor, make_content, tmp_path):
        """Writes spanning boundaries land in the right files."""
        content = make_content(12)
        descriptor = make_descriptor(
            content,
            4,
            name="album",
            files=[(["a.txt"], 5), (["sub", "b.txt"], 7)],
        )
        assembler = assemblers(descriptor, tmp_path)

        for index in range(descriptor.num_pieces):
            offset = descriptor.piece_offset(index)
            await assembler.write(offset, content[offset : offset + 4])

        assert (tmp_path / "album" / "a.txt").read_bytes() == content[:5]
        assert (tmp_path / "album" / "sub" / "b.txt").read_bytes() == content[5:]

    @pytest.mark.asyncio
    async def test_unwritable_location(self, assemblers, make_descriptor, make_content, tmp_path):
        """An output path that cannot hold files raises StorageError."""
        blocker = tmp_path / "blocker"
        blocker.write_bytes(b"not a directory")
        assembler = assemblers(make_descriptor(make_content(100), 32), blocker)

        with pytest.raises(StorageError):
            await assembler.write(0, make_content(32))
