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
Human-readable text for presence events and chat command replies.

Everything user-facing is built here; the tracker and poll loop only deal in
PresenceEvent values.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Mapping, Optional, Sequence

try:
    from .presence_tracker import PresenceEvent, PresenceEventType  # type: ignore
    from .query_protocol import Snapshot  # type: ignore
    from .session_store import PlayerStats, ServerStats  # type: ignore
except ImportError:
    from presence_tracker import PresenceEvent, PresenceEventType  # type: ignore
    from query_protocol import Snapshot  # type: ignore
    from session_store import PlayerStats, ServerStats  # type: ignore


def human_readable_time(seconds: float) -> str:
    """
    Format seconds as "xh ym zs", leaving out zero parts.

    Returns:
        e.g. "1h 5s", "" for anything under a second, "error: <n>" if negative
    """
    if seconds < 0:
        return f"error: {seconds}"

    hours = int(seconds // 3600)
    seconds -= 3600 * hours
    minutes = int(seconds // 60)
    seconds -= 60 * minutes
    secs = int(seconds)

    parts: List[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0:
        parts.append(f"{secs}s")
    return " ".join(parts)


def readable_time(seconds: float, unit: str = "h", digits: int = 2) -> str:
    """Convert seconds to hours/minutes/seconds rounded to digits."""
    divisor = {"h": 3600, "m": 60, "s": 1}.get(unit)
    if divisor is None:
        raise ValueError(f"Unknown time unit: {unit}")
    return f"{seconds / divisor:.{digits}f}"


def format_date(when: datetime) -> str:
    """Format as `yyyy.mm.dd. hh:mm:ss` (local time of the datetime)."""
    return when.strftime("%Y.%m.%d. %H:%M:%S")


def _per_session(total_seconds: int, count: int) -> str:
    return readable_time(total_seconds / count) if count else readable_time(0)


class PresenceMessageFormatter:
    """Render presence event batches as chat messages."""

    def __init__(self, server_name: str = "") -> None:
        # Kept so a "down" message still names the server
        self.server_name = server_name

    def remember(self, snapshot: Optional[Snapshot]) -> None:
        if snapshot is not None:
            self.server_name = snapshot.server_name

    def format_events(
        self,
        events: Sequence[PresenceEvent],
        snapshot: Optional[Snapshot],
        when: datetime,
    ) -> List[str]:
        """
        Build the messages for one poll cycle.

        Returns:
            Server up/down line (if any) followed by one player summary
            message (if any player joined or left)
        """
        self.remember(snapshot)
        stamp = format_date(when)
        messages: List[str] = []

        joined: List[str] = []
        left: List[PresenceEvent] = []

        for event in events:
            if event.event_type == PresenceEventType.SERVER_UP:
                messages.append(f"server **{self.server_name}** is **up** ({stamp})!")
            elif event.event_type == PresenceEventType.SERVER_DOWN:
                msg = f"server **{self.server_name}** is **down** ({stamp})"
                if event.seconds is not None:
                    msg += f" after {human_readable_time(event.seconds)}"
                messages.append(msg + "!")
            elif event.event_type == PresenceEventType.JOIN:
                joined.append(event.player_name or "")
            elif event.event_type == PresenceEventType.LEAVE:
                left.append(event)

        if not joined and not left:
            return messages

        msg = ""
        if joined:
            msg += f"**Player(s) joined** ({stamp}):\n- " + "\n- ".join(sorted(joined)) + "\n"

        if left:
            msg += f"**Player(s) left** ({stamp}):\n"
            for event in sorted(left, key=lambda e: e.seconds or 0, reverse=True):
                msg += f"- {event.player_name} (after {human_readable_time(event.seconds or 0)} of gaming)\n"

        if snapshot is not None and snapshot.online_count > 0:
            msg += f"**Current players**: {', '.join(sorted(snapshot.players))}"
        else:
            msg += "Server is empty"

        messages.append(msg)
        return messages


# ============================================================================
# Command replies
# ============================================================================

def format_current_players(
    snapshot: Snapshot,
    stats: Iterable[PlayerStats],
    join_times: Mapping[str, int],
    now: int,
    show_counts: bool = False,
) -> str:
    """Reply for /players: players online now, longest total playtime first."""
    out = (
        f"**Current players on '{snapshot.server_name}' "
        f"({snapshot.numplayers}/{snapshot.maxplayers})**:"
    )
    for player in sorted(stats, key=lambda p: p.total_seconds, reverse=True):
        joined_at = join_times.get(player.name)
        current = now - joined_at if joined_at is not None else -1
        out += (
            f"\n1. **{player.name}** (current online time: {human_readable_time(current)}, "
            f"total: {human_readable_time(player.total_seconds)}"
        )
        if show_counts:
            out += (
                f", joined {player.session_count} times, "
                f"{_per_session(player.total_seconds, player.session_count)}h/session"
            )
        out += ")"
    return out


def format_all_players(
    server_name: str,
    stats: Iterable[PlayerStats],
    never_played: Iterable[str],
    show_counts: bool = False,
) -> str:
    """Reply for /players all_players:true, including registered players without sessions."""
    out = f"**All players on '{server_name}'**:"
    for player in sorted(stats, key=lambda p: p.total_seconds, reverse=True):
        out += f"\n1. **{player.name}** (total: {human_readable_time(player.total_seconds)}"
        if show_counts:
            out += (
                f", joined {player.session_count} times, "
                f"{_per_session(player.total_seconds, player.session_count)}h/session"
            )
        out += ")"

    for name in never_played:
        out += f"\n1. **{name}** (total: never played"
        if show_counts:
            out += ", joined 0 times, 0h/session"
        out += ")"
    return out


def format_server_status(
    server_name: str,
    stats: ServerStats,
    current_uptime: Optional[int],
    show_counts: bool = False,
) -> str:
    """Reply for /server."""
    out = f"**Current status of '{server_name}'**:\n"
    out += f"- **Current uptime**: {human_readable_time(current_uptime if current_uptime is not None else -1)}\n"
    out += f"- **Total uptime**: {human_readable_time(stats.total_seconds)}"
    if show_counts:
        out += f"\n- **Session count**: {stats.session_count}\n"
        out += f"- **Average hours/session**: {_per_session(stats.total_seconds, stats.session_count)}h"
    return out
