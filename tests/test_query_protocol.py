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

"""Tests for the query protocol wire codec."""

from __future__ import annotations

import struct

import pytest

from conftest import DEFAULT_FIELDS, build_handshake_response, build_status_response
from query_protocol import (
    MAGIC,
    STATUS_FIELDS,
    DecodeError,
    Snapshot,
    decode_handshake_response,
    decode_status_response,
    encode_handshake_request,
    encode_status_request,
    parse_token,
    strip_color_escapes,
    strip_terminator,
)


# ============================================================================
# REQUEST ENCODING
# ============================================================================

class TestRequestEncoding:
    """Outbound packet layouts."""

    def test_handshake_request_layout(self):
        packet = encode_handshake_request(1)
        assert packet == b"\xfe\xfd\x09\x00\x00\x00\x01"
        assert len(packet) == 7

    def test_handshake_request_big_endian_id(self):
        packet = encode_handshake_request(0x01020304)
        magic, packet_type, request_id = struct.unpack(">HBI", packet)
        assert magic == MAGIC
        assert packet_type == 9
        assert request_id == 0x01020304
        assert packet[3:] == b"\x01\x02\x03\x04"

    def test_status_request_layout(self):
        packet = encode_status_request(3, 9513307)
        assert len(packet) == 15
        assert packet[:3] == b"\xfe\xfd\x00"
        assert struct.unpack(">I", packet[3:7])[0] == 3
        assert struct.unpack(">I", packet[7:11])[0] == 9513307
        assert packet[11:] == b"\x00\x00\x00\x00"

    def test_status_request_max_token(self):
        packet = encode_status_request(0xFFFFFFFF, 0xFFFFFFFF)
        assert packet[3:11] == b"\xff" * 8


# ============================================================================
# HANDSHAKE DECODING
# ============================================================================

class TestHandshakeDecoding:
    """Handshake replies."""

    def test_decodes_id_and_token(self):
        response = decode_handshake_response(build_handshake_response(7, "9513307"))
        assert response.id == 7
        assert response.token == "9513307"

    def test_token_stops_at_first_nul(self):
        data = build_handshake_response(1, "123") + b"garbage"
        assert decode_handshake_response(data).token == "123"

    def test_wrong_type_fails(self):
        data = struct.pack(">BI", 0, 1) + b"123\x00"
        with pytest.raises(DecodeError, match="unexpected packet type"):
            decode_handshake_response(data)

    def test_missing_terminator_fails(self):
        data = struct.pack(">BI", 9, 1) + b"123"
        with pytest.raises(DecodeError, match="NUL"):
            decode_handshake_response(data)

    def test_short_header_fails(self):
        with pytest.raises(DecodeError, match="too short"):
            decode_handshake_response(b"\x09\x00")

    def test_non_ascii_token_fails(self):
        data = struct.pack(">BI", 9, 1) + b"\xe9\x00"
        with pytest.raises(DecodeError):
            decode_handshake_response(data)


class TestParseToken:
    """Token text -> unsigned 32-bit value."""

    def test_plain_value(self):
        assert parse_token("9513307") == 9513307

    def test_max_unsigned(self):
        assert parse_token("4294967295") == 0xFFFFFFFF

    def test_negative_signed_value_is_reinterpreted(self):
        assert parse_token("-1") == 0xFFFFFFFF
        assert parse_token("-2147483648") == 0x80000000

    def test_round_trips_through_status_request(self):
        token = parse_token("-5")
        packet = encode_status_request(1, token)
        assert struct.unpack(">i", packet[7:11])[0] == -5

    @pytest.mark.parametrize("text", ["", "abc", "12.5", "4294967296", "-2147483649"])
    def test_invalid_tokens_fail(self, text):
        with pytest.raises(DecodeError):
            parse_token(text)


# ============================================================================
# STATUS DECODING
# ============================================================================

class TestStatusDecoding:
    """Status replies (terminator stripped by the caller)."""

    def test_reproduces_field_values(self):
        raw = build_status_response(1, players=["alice", "bob"])
        snapshot = decode_status_response(strip_terminator(raw), expected_id=1)

        for key in STATUS_FIELDS:
            assert getattr(snapshot, key) == DEFAULT_FIELDS[key]
        assert snapshot.players == ("alice", "bob")

    def test_custom_field_values(self):
        fields = {"hostname": "Test", "map": "nether", "numplayers": "0", "maxplayers": "5"}
        raw = build_status_response(9, fields=fields, players=[])
        snapshot = decode_status_response(strip_terminator(raw), expected_id=9)

        assert snapshot.hostname == "Test"
        assert snapshot.map == "nether"
        assert snapshot.maxplayers == "5"
        assert snapshot.players == ()

    def test_player_names_use_single_byte_encoding(self):
        names = ["Ĺukáš", "Żółw", "plain"]
        raw = build_status_response(1, players=names)
        assert "Ĺukáš".encode("iso-8859-2") in raw

        snapshot = decode_status_response(strip_terminator(raw))
        assert list(snapshot.players) == names

    def test_hostname_keeps_color_escapes(self):
        raw = build_status_response(1)
        snapshot = decode_status_response(strip_terminator(raw))
        assert snapshot.hostname == "§aApple§r MC"
        assert snapshot.server_name == "Apple MC"

    def test_expected_id_none_skips_check(self):
        raw = build_status_response(42)
        assert decode_status_response(strip_terminator(raw)).players == ("alice", "bob")

    def test_masked_session_id_accepted(self):
        request_id = 0xFFFFFFFF
        raw = build_status_response(request_id & 0x0F0F0F0F)
        snapshot = decode_status_response(strip_terminator(raw), expected_id=request_id)
        assert snapshot.players == ("alice", "bob")

    def test_id_mismatch_fails(self):
        raw = build_status_response(2)
        with pytest.raises(DecodeError, match="does not match"):
            decode_status_response(strip_terminator(raw), expected_id=1)

    def test_wrong_type_fails(self):
        raw = bytearray(build_status_response(1))
        raw[0] = 9
        with pytest.raises(DecodeError, match="unexpected packet type"):
            decode_status_response(strip_terminator(bytes(raw)), expected_id=1)

    def test_missing_hostname_terminator_fails(self):
        # Header + padding + "hostname\0" + value with no NUL anywhere after it
        data = struct.pack(">BI", 0, 1) + b"splitnum\x00\x80\x00" + b"hostname\x00" + b"Apple MC"
        with pytest.raises(DecodeError, match="NUL"):
            decode_status_response(data, expected_id=1)

    def test_missing_hostname_nul_in_full_reply_fails(self):
        raw = build_status_response(1)
        hostname = DEFAULT_FIELDS["hostname"].encode("iso-8859-2") + b"\x00"
        broken = raw.replace(hostname, hostname[:-1], 1)
        assert len(broken) == len(raw) - 1

        with pytest.raises(DecodeError, match="expected key 'gametype'"):
            decode_status_response(strip_terminator(broken), expected_id=1)

    def test_wrong_key_fails(self):
        raw = build_status_response(1).replace(b"maxplayers\x00", b"maxplayerz\x00", 1)
        with pytest.raises(DecodeError, match="expected key 'maxplayers'"):
            decode_status_response(strip_terminator(raw), expected_id=1)

    def test_truncated_header_padding_fails(self):
        data = struct.pack(">BI", 0, 1) + b"split"
        with pytest.raises(DecodeError, match="header padding"):
            decode_status_response(data, expected_id=1)

    def test_truncated_player_padding_fails(self):
        raw = strip_terminator(build_status_response(1, players=[]))
        # Drop the last 5 bytes of the 10-byte player padding
        with pytest.raises(DecodeError, match="player list padding"):
            decode_status_response(raw[:-5], expected_id=1)

    def test_unterminated_player_name_fails(self):
        raw = build_status_response(1, players=["alice"], terminator=False) + b"bo"
        with pytest.raises(DecodeError, match="NUL"):
            decode_status_response(raw, expected_id=1)

    def test_missing_terminator_means_no_players(self):
        raw = build_status_response(1, players=[], terminator=False)
        snapshot = decode_status_response(strip_terminator(raw), expected_id=1)
        assert snapshot.players == ()
        assert snapshot.hostname == DEFAULT_FIELDS["hostname"]

    def test_empty_buffer_fails(self):
        with pytest.raises(DecodeError):
            decode_status_response(b"")


# ============================================================================
# SNAPSHOT HELPERS
# ============================================================================

class TestSnapshot:
    """Snapshot value helpers."""

    def _snapshot(self, **overrides) -> Snapshot:
        values = dict(DEFAULT_FIELDS)
        values.update(overrides)
        return Snapshot(**values, players=("a", "b", "c"))

    def test_online_count_parses_numplayers(self):
        assert self._snapshot(numplayers="7").online_count == 7

    def test_online_count_falls_back_to_player_list(self):
        assert self._snapshot(numplayers="?").online_count == 3

    def test_snapshot_is_immutable(self):
        snapshot = self._snapshot()
        with pytest.raises(Exception):
            snapshot.hostname = "other"  # type: ignore[misc]

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("plain", "plain"),
            ("§6Gold§r", "Gold"),
            ("a§", "a"),
            ("§§xy", "xy"),
        ],
    )
    def test_strip_color_escapes(self, text, expected):
        assert strip_color_escapes(text) == expected
