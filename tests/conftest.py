"""Pytest configuration and shared fixtures for swarmget tests."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import os
import socket
import struct

import pytest
import pytest_asyncio

from swarmget.config import reset_config
from swarmget.core.bencode import encode
from swarmget.models import (
    Config,
    FileInfo,
    NetworkConfig,
    StrategyConfig,
    TorrentDescriptor,
    TrackerConfig,
)


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
        ("core", "marks tests as core functionality tests"),
        ("peer", "marks tests as peer protocol tests"),
        ("piece", "marks tests as piece management tests"),
        ("tracker", "marks tests as tracker tests"),
        ("storage", "marks tests as storage tests"),
        ("session", "marks tests as session management tests"),
        ("config", "marks tests as configuration tests"),
        ("cli", "marks tests as CLI tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep the global configuration away from user files and environment."""
    for name in list(os.environ):
        if name.startswith("SWARMGET_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    """A clock tests can move forward explicitly."""
    return FakeClock(1000.0)


def sample_content(size: int) -> bytes:
    """Deterministic, non-repeating-looking payload."""
    return bytes((i * 31 + 7) % 251 for i in range(size))


def build_descriptor(
    content: bytes,
    piece_length: int,
    name: str = "sample.bin",
    files: list[tuple[list[str], int]] | None = None,
    announce: str = "udp://127.0.0.1:6969/announce",
) -> TorrentDescriptor:
    """Descriptor whose piece hashes match ``content``."""
    hashes = [
        hashlib.sha1(content[i : i + piece_length]).digest()
        for i in range(0, len(content), piece_length)
    ]
    if files is None:
        file_infos = [FileInfo(path=[name], length=len(content))]
    else:
        file_infos = [FileInfo(path=path, length=length) for path, length in files]
    return TorrentDescriptor(
        announce=announce,
        info_hash=hashlib.sha1(name.encode() + content).digest(),
        name=name,
        piece_length=piece_length,
        piece_hashes=hashes,
        total_length=len(content),
        files=file_infos,
        multi_file=files is not None,
    )


def build_torrent_bytes(
    content: bytes,
    piece_length: int,
    name: str = "sample.bin",
    files: list[tuple[list[str], int]] | None = None,
    announce: str = "udp://127.0.0.1:6969/announce",
) -> bytes:
    """Bencoded .torrent file for ``content``."""
    pieces = b"".join(
        hashlib.sha1(content[i : i + piece_length]).digest()
        for i in range(0, len(content), piece_length)
    )
    info: dict = {"name": name, "piece length": piece_length, "pieces": pieces}
    if files is None:
        info["length"] = len(content)
    else:
        info["files"] = [{"length": length, "path": path} for path, length in files]
    return encode({"announce": announce, "info": info})


@pytest.fixture
def make_content():
    """Factory for deterministic payloads."""
    return sample_content


@pytest.fixture
def make_descriptor():
    """Factory for torrent descriptors."""
    return build_descriptor


@pytest.fixture
def make_torrent():
    """Factory for bencoded torrent files."""
    return build_torrent_bytes


@pytest.fixture
def fast_config():
    """Configuration with timeouts small enough for localhost tests."""
    return Config(
        network=NetworkConfig(
            connection_timeout=2.0,
            handshake_timeout=2.0,
            inactivity_timeout=10.0,
            request_timeout=5.0,
        ),
        tracker=TrackerConfig(base_timeout=0.05, max_retries=2),
        strategy=StrategyConfig(tick_interval=0.05),
    )


class MemoryStorage:
    """Storage backend keeping writes in memory."""

    def __init__(self, size: int = 0):
        self.data = bytearray(size)
        self.writes: list[tuple[int, bytes]] = []
        self.closed = False

    async def write(self, offset: int, data: bytes) -> None:
        self.writes.append((offset, data))
        end = offset + len(data)
        if end > len(self.data):
            self.data.extend(bytes(end - len(self.data)))
        self.data[offset:end] = data

    async def read(self, offset: int, length: int) -> bytes:
        return bytes(self.data[offset : offset + length])

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def memory_storage():
    """In-memory storage backend."""
    return MemoryStorage()


class FakeUDPTracker(asyncio.DatagramProtocol):
    """Minimal BEP 15 tracker answering on localhost.

    ``drop`` datagrams are swallowed before answering; ``responder`` replaces
    the default replies when set.
    """

    def __init__(self, peers=(), interval: int = 1800):
        self.peers = list(peers)
        self.interval = interval
        self.next_connection_id = 0x1122334455667700
        self.issued_connection_ids: list[int] = []
        self.requests: list[tuple[int, int, bytes]] = []
        self.drop = 0
        self.responder = None
        self.transport = None
        self.url = ""

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        action, tid = struct.unpack_from("!II", data, 8)
        self.requests.append((action, tid, data))
        if self.drop > 0:
            self.drop -= 1
            return
        responder = self.responder or self.default_reply
        for reply in responder(action, tid, data):
            self.transport.sendto(reply, addr)

    def actions(self) -> list[int]:
        return [action for action, _, _ in self.requests]

    def connect_reply(self, tid: int) -> bytes:
        self.next_connection_id += 1
        self.issued_connection_ids.append(self.next_connection_id)
        return struct.pack("!IIQ", 0, tid, self.next_connection_id)

    def announce_reply(self, tid: int) -> bytes:
        header = struct.pack("!IIIII", 1, tid, self.interval, 0, len(self.peers))
        body = b"".join(
            socket.inet_aton(peer.ip) + struct.pack("!H", peer.port) for peer in self.peers
        )
        return header + body

    def default_reply(self, action, tid, data):
        if action == 0:
            return [self.connect_reply(tid)]
        if action == 1:
            return [self.announce_reply(tid)]
        return []


@pytest_asyncio.fixture
async def udp_tracker():
    """Fake UDP tracker bound to an ephemeral localhost port."""
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        FakeUDPTracker,
        local_addr=("127.0.0.1", 0),
    )
    port = transport.get_extra_info("sockname")[1]
    protocol.url = f"udp://127.0.0.1:{port}/announce"
    yield protocol
    transport.close()


@pytest_asyncio.fixture
async def tcp_servers():
    """Start localhost TCP servers; all are closed after the test."""
    servers = []

    async def start(handler):
        server = await asyncio.start_server(handler, "127.0.0.1", 0)
        servers.append(server)
        return server.sockets[0].getsockname()[1]

    yield start
    for server in servers:
        server.close()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(server.wait_closed(), timeout=1.0)


@pytest.fixture
def closed_port():
    """A localhost port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
