"""Shared pytest configuration for Query Presence tests.

This module provides:
- src/ on sys.path for flat-layout imports
- Builders for server-side query protocol replies
- A local UDP game server double for QueryClient tests
- Mock collaborators (session store, query client, notifier)
"""

import asyncio
import struct
import sys
from pathlib import Path
from typing import AsyncGenerator, Callable, Dict, List, Optional, Sequence, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

# Add src/ to Python path for absolute imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from query_protocol import STATUS_FIELDS, Snapshot  # noqa: E402


# ════════════════════════════════════════════════════════════════════════════
# REPLY BUILDERS
# ════════════════════════════════════════════════════════════════════════════

DEFAULT_FIELDS: Dict[str, str] = {
    "hostname": "§aApple§r MC",
    "gametype": "SMP",
    "game_id": "MINECRAFT",
    "version": "1.21.1",
    "plugins": "",
    "map": "world",
    "numplayers": "2",
    "maxplayers": "20",
    "hostport": "25565",
    "hostip": "127.0.0.1",
}


def build_handshake_response(request_id: int, token: str) -> bytes:
    """Server side of the handshake: type 9, id, NUL-terminated token."""
    return struct.pack(">BI", 9, request_id) + token.encode("ascii") + b"\x00"


def build_status_response(
    request_id: int,
    fields: Optional[Dict[str, str]] = None,
    players: Sequence[str] = ("alice", "bob"),
    terminator: bool = True,
) -> bytes:
    """
    Full-stat reply as a game server sends it, terminator byte included.

    Layout: type 0, id, "splitnum\\0\\x80\\0", key/value pairs, empty key,
    "\\x01player_\\0\\0", NUL-terminated names, final NUL.
    """
    values = dict(DEFAULT_FIELDS)
    if fields:
        values.update(fields)

    out = bytearray(struct.pack(">BI", 0, request_id))
    out += b"splitnum\x00\x80\x00"
    for key in STATUS_FIELDS:
        out += key.encode("ascii") + b"\x00"
        out += values[key].encode("iso-8859-2") + b"\x00"
    out += b"\x00"
    out += b"\x01player_\x00\x00"
    for name in players:
        out += name.encode("iso-8859-2") + b"\x00"
    if terminator:
        out += b"\x00"
    return bytes(out)


def make_snapshot(players: Sequence[str] = (), **fields: str) -> Snapshot:
    """Snapshot with default field values and the given players."""
    values = dict(DEFAULT_FIELDS)
    values["numplayers"] = str(len(players))
    values.update(fields)
    return Snapshot(**values, players=tuple(players))


# ════════════════════════════════════════════════════════════════════════════
# UDP SERVER DOUBLE
# ════════════════════════════════════════════════════════════════════════════

Responder = Callable[[bytes], Optional[bytes]]


class FakeQueryServer(asyncio.DatagramProtocol):
    """UDP endpoint answering each request with responder(request), or silence on None."""

    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.requests: List[bytes] = []
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.requests.append(data)
        reply = self.responder(data)
        if reply is not None and self.transport is not None:
            self.transport.sendto(reply, addr)

    @property
    def port(self) -> int:
        assert self.transport is not None
        return self.transport.get_extra_info("sockname")[1]


def minecraft_responder(
    token: str = "9513307",
    players: Sequence[str] = ("alice", "bob"),
    fields: Optional[Dict[str, str]] = None,
) -> Responder:
    """Responder behaving like a healthy server."""

    def respond(request: bytes) -> Optional[bytes]:
        _, packet_type, request_id = struct.unpack(">HBI", request[:7])
        if packet_type == 9:
            return build_handshake_response(request_id, token)
        return build_status_response(request_id, fields=fields, players=players)

    return respond


@pytest_asyncio.fixture
async def fake_server_factory() -> AsyncGenerator[Callable, None]:
    """Start FakeQueryServer instances on 127.0.0.1 with an ephemeral port."""
    transports: List[asyncio.DatagramTransport] = []

    async def start(responder: Responder) -> FakeQueryServer:
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: FakeQueryServer(responder),
            local_addr=("127.0.0.1", 0),
        )
        transports.append(transport)
        return protocol

    yield start

    for transport in transports:
        transport.close()


# ════════════════════════════════════════════════════════════════════════════
# COLLABORATOR MOCKS
# ════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def mock_store() -> MagicMock:
    """Session store mock.

    Type Contract:
        - open/close_player_session(name, time) -> None
        - open/close_server_session(time) -> None
        - close_dangling_sessions(time) -> None
        - last_known_open_players() -> Dict[str, int] (empty)
        - open_server_session_start() -> Optional[int] (None)
    """
    store = MagicMock()
    store.last_known_open_players = MagicMock(return_value={})
    store.open_server_session_start = MagicMock(return_value=None)
    return store


@pytest.fixture
def mock_query_client() -> MagicMock:
    """Query client mock; set query.return_value / side_effect per test."""
    client = MagicMock()
    client.query = AsyncMock(return_value=None)
    return client


@pytest.fixture
def mock_notifier() -> MagicMock:
    notifier = MagicMock()
    notifier.notify = AsyncMock()
    return notifier
