# Copyright (c) 2025 Stephen Clau
#
# This file is part of Query Presence.
#
# Query Presence is dual-licensed:
#
# 1. GNU Affero General Public License v3.0 (AGPL-3.0)
#    See LICENSE file for full terms
#
# 2. Commercial License
#    For proprietary use without AGPL requirements
#    Contact: licensing@laudiversified.com
#
# SPDX-License-Identifier: AGPL-3.0-only OR Commercial

"""
Wire codec for the UDP game server query protocol.

Pure encode/decode of the four packet shapes, no sockets and no timing:
- Handshake request:  magic(2) type(1)=9 id(4)
- Handshake response: type(1)=9 id(4) token(NUL-terminated ASCII)
- Status request:     magic(2) type(1)=0 id(4) token(4) pad(4)
- Status response:    type(1)=0 id(4) pad(11) key/value block pad(1) pad(10)
                      player names (NUL-terminated) to end of buffer

All multi-byte integers are big-endian. String values are decoded as
ISO-8859-2; player names containing non-ASCII bytes depend on it.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List, Optional, Tuple

MAGIC = 0xFEFD
TYPE_HANDSHAKE = 9
TYPE_STATUS = 0

STRING_ENCODING = "iso-8859-2"

# Servers may mask the echoed session id with this value
SESSION_ID_MASK = 0x0F0F0F0F

STATUS_HEADER_PADDING = 11
STATUS_KV_TRAILER = 1
STATUS_PLAYERS_PADDING = 10

# Order is fixed by the remote; a key out of place means a malformed reply
STATUS_FIELDS: Tuple[str, ...] = (
    "hostname",
    "gametype",
    "game_id",
    "version",
    "plugins",
    "map",
    "numplayers",
    "maxplayers",
    "hostport",
    "hostip",
)

_REQUEST_HEADER = struct.Struct(">HBI")
_STATUS_REQUEST = struct.Struct(">HBII4x")
_RESPONSE_HEADER = struct.Struct(">BI")

_U32_MAX = 0xFFFFFFFF
_I32_MIN = -0x80000000


class DecodeError(ValueError):
    """Raised when a response buffer does not match the expected layout."""


@dataclass(frozen=True, slots=True)
class HandshakeResponse:
    """Decoded handshake reply."""
    id: int
    token: str


@dataclass(frozen=True, slots=True)
class Snapshot:
    """One decoded status response. All fields are kept as transmitted."""
    hostname: str
    gametype: str
    game_id: str
    version: str
    plugins: str
    map: str
    numplayers: str
    maxplayers: str
    hostport: str
    hostip: str
    players: Tuple[str, ...] = ()

    @property
    def server_name(self) -> str:
        """Hostname with inline color escapes removed."""
        return strip_color_escapes(self.hostname)

    @property
    def online_count(self) -> int:
        """Player count reported by the server, or the list length if unparsable."""
        try:
            return int(self.numplayers)
        except ValueError:
            return len(self.players)


def strip_color_escapes(text: str) -> str:
    """Remove `§x` color escapes (the marker and the code character after it)."""
    out: List[str] = []
    i = 0
    while i < len(text):
        if text[i] == "§":
            i += 2
            continue
        out.append(text[i])
        i += 1
    return "".join(out)


# ============================================================================
# Encoding
# ============================================================================

def encode_handshake_request(request_id: int) -> bytes:
    """Build the 7-byte handshake request."""
    return _REQUEST_HEADER.pack(MAGIC, TYPE_HANDSHAKE, request_id)


def encode_status_request(request_id: int, token: int) -> bytes:
    """Build the 15-byte status request (4 trailing padding bytes)."""
    return _STATUS_REQUEST.pack(MAGIC, TYPE_STATUS, request_id, token)


def strip_terminator(data: bytes) -> bytes:
    """Drop the protocol terminator byte that ends every status response."""
    return data[:-1]


# ============================================================================
# Decoding
# ============================================================================

def _read_header(data: bytes, expected_type: int) -> int:
    if len(data) < _RESPONSE_HEADER.size:
        raise DecodeError(
            f"response too short for header: {len(data)} bytes"
        )
    packet_type, request_id = _RESPONSE_HEADER.unpack_from(data, 0)
    if packet_type != expected_type:
        raise DecodeError(
            f"unexpected packet type {packet_type}, expected {expected_type}"
        )
    return request_id


def _skip(data: bytes, pos: int, count: int, what: str) -> int:
    end = pos + count
    if end > len(data):
        raise DecodeError(
            f"buffer too short to skip {what}: need {count} bytes at offset {pos}"
        )
    return end


def _read_cstring(data: bytes, pos: int, encoding: str = STRING_ENCODING) -> Tuple[str, int]:
    """Read a NUL-terminated string at pos, return (text, offset after NUL)."""
    end = data.find(b"\x00", pos)
    if end < 0:
        raise DecodeError(f"missing NUL terminator for string at offset {pos}")
    try:
        text = data[pos:end].decode(encoding)
    except UnicodeDecodeError as e:
        raise DecodeError(f"undecodable string at offset {pos}: {e}") from e
    return text, end + 1


def _expect_key(data: bytes, pos: int, key: str) -> int:
    """Check that key plus its NUL sits at pos, return the offset after it."""
    expected = key.encode("ascii") + b"\x00"
    end = _skip(data, pos, len(expected), f"key '{key}'")
    if data[pos:end] != expected:
        raise DecodeError(
            f"expected key '{key}' at offset {pos}, got {data[pos:end]!r}"
        )
    return end


def _id_matches(received: int, expected: int) -> bool:
    return received == expected or received == (expected & SESSION_ID_MASK)


def decode_handshake_response(data: bytes) -> HandshakeResponse:
    """Decode a handshake reply into its id and token text."""
    request_id = _read_header(data, TYPE_HANDSHAKE)
    token, _ = _read_cstring(data, _RESPONSE_HEADER.size, encoding="ascii")
    return HandshakeResponse(id=request_id, token=token)


def parse_token(text: str) -> int:
    """
    Parse the handshake token text into the unsigned 32-bit value sent back.

    Some servers print the token as a signed 32-bit integer; negative values
    are reinterpreted as unsigned.

    Raises:
        DecodeError: If the text is not a decimal integer in 32-bit range
    """
    try:
        value = int(text.strip())
    except ValueError as e:
        raise DecodeError(f"token is not numeric: {text!r}") from e

    if 0 <= value <= _U32_MAX:
        return value
    if _I32_MIN <= value < 0:
        return value & _U32_MAX
    raise DecodeError(f"token out of 32-bit range: {value}")


def decode_status_response(data: bytes, expected_id: Optional[int] = None) -> Snapshot:
    """
    Decode a status response whose terminator byte was already stripped.

    Args:
        data: Raw reply without its final byte (see strip_terminator)
        expected_id: Request id that was sent; None skips the echo check

    Returns:
        Decoded Snapshot

    Raises:
        DecodeError: On type/id mismatch, unexpected keys, missing
            terminators or short buffers
    """
    request_id = _read_header(data, TYPE_STATUS)
    if expected_id is not None and not _id_matches(request_id, expected_id):
        raise DecodeError(
            f"response id {request_id} does not match request id {expected_id}"
        )

    pos = _skip(data, _RESPONSE_HEADER.size, STATUS_HEADER_PADDING, "header padding")

    values: List[str] = []
    for key in STATUS_FIELDS:
        pos = _expect_key(data, pos, key)
        value, pos = _read_cstring(data, pos)
        values.append(value)

    pos = _skip(data, pos, STATUS_KV_TRAILER, "key/value trailer")

    remaining = len(data) - pos
    if remaining == STATUS_PLAYERS_PADDING - 1:
        # Remote omitted the terminator, so stripping it ate a padding byte
        return Snapshot(*values, players=())

    pos = _skip(data, pos, STATUS_PLAYERS_PADDING, "player list padding")

    players: List[str] = []
    while pos < len(data):
        name, pos = _read_cstring(data, pos)
        players.append(name)

    return Snapshot(*values, players=tuple(players))
