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
Presence tracking for a single monitored server.

Turns a sequence of status snapshots (or "unreachable") into server up/down
and player join/leave events. Single-writer: only the poll loop calls
observe(). Within one call, join events are always emitted before leave
events; joins follow snapshot order and leaves follow join order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional

import structlog

try:
    from .query_protocol import Snapshot  # type: ignore
except ImportError:
    from query_protocol import Snapshot  # type: ignore

logger = structlog.get_logger()


class PresenceEventType(str, Enum):
    """Types of presence events."""
    SERVER_UP = "server_up"
    SERVER_DOWN = "server_down"
    JOIN = "join"
    LEAVE = "leave"


@dataclass(frozen=True, slots=True)
class PresenceEvent:
    """Domain event emitted by PresenceTracker.observe()."""
    event_type: PresenceEventType
    player_name: Optional[str] = None
    # server_down: uptime before going down (None if unknown)
    # leave: seconds the player was online
    seconds: Optional[int] = None

    @classmethod
    def server_came_up(cls) -> "PresenceEvent":
        """Server answered after being unreachable."""
        return cls(PresenceEventType.SERVER_UP)

    @classmethod
    def server_went_down(cls, uptime_seconds: Optional[int]) -> "PresenceEvent":
        """Server stopped answering; uptime_seconds is None if unknown."""
        return cls(PresenceEventType.SERVER_DOWN, seconds=uptime_seconds)

    @classmethod
    def player_joined(cls, name: str) -> "PresenceEvent":
        """Player appeared in the snapshot."""
        return cls(PresenceEventType.JOIN, player_name=name)

    @classmethod
    def player_left(cls, name: str, online_seconds: int) -> "PresenceEvent":
        """Player disappeared after online_seconds."""
        return cls(PresenceEventType.LEAVE, player_name=name, seconds=online_seconds)


@dataclass
class PresenceState:
    """Last known view of the server, owned by one PresenceTracker."""

    server_up: bool = False
    """Whether the last observation reached the server."""

    server_up_since: Optional[int] = None
    """Time of the last known up transition, None if unknown."""

    player_join_times: Dict[str, int] = field(default_factory=dict)
    """Player name -> time first seen in the current online stretch."""


class PresenceTracker:
    """Diff successive snapshots into presence events."""

    def __init__(self, state: Optional[PresenceState] = None) -> None:
        self.state = state if state is not None else PresenceState()

    def seed(
        self,
        server_up: bool,
        server_up_since: Optional[int] = None,
        player_join_times: Optional[Mapping[str, int]] = None,
    ) -> None:
        """Replace the held state, e.g. with sessions persisted by a previous run."""
        self.state = PresenceState(
            server_up=server_up,
            server_up_since=server_up_since,
            player_join_times=dict(player_join_times or {}),
        )
        logger.info(
            "presence_state_seeded",
            server_up=server_up,
            server_up_since=server_up_since,
            players=len(self.state.player_join_times),
        )

    @property
    def online_players(self) -> List[str]:
        return list(self.state.player_join_times)

    def join_time(self, name: str) -> Optional[int]:
        return self.state.player_join_times.get(name)

    def observe(self, current_time: int, latest: Optional[Snapshot]) -> List[PresenceEvent]:
        """
        Fold one observation into the state and return the resulting events.

        Args:
            current_time: Observation time in seconds
            latest: Snapshot from the query, or None if unreachable

        Returns:
            Events in emission order (at most one up/down, then joins, then leaves)
        """
        state = self.state
        events: List[PresenceEvent] = []
        went_down = False

        if not state.server_up and latest is not None:
            state.server_up = True
            state.server_up_since = current_time
            events.append(PresenceEvent.server_came_up())
        elif state.server_up and latest is None:
            uptime = (
                current_time - state.server_up_since
                if state.server_up_since is not None
                else None
            )
            state.server_up = False
            state.server_up_since = None
            went_down = True
            events.append(PresenceEvent.server_went_down(uptime))

        # Still down: nothing to diff
        if latest is None and not went_down:
            return events

        current_players = dict.fromkeys(latest.players if latest is not None else ())
        known = state.player_join_times

        if current_players.keys() == known.keys():
            return events

        joined = [name for name in current_players if name not in known]
        left = [name for name in known if name not in current_players]

        for name in joined:
            known[name] = current_time
            events.append(PresenceEvent.player_joined(name))

        for name in left:
            online_seconds = current_time - known.pop(name)
            events.append(PresenceEvent.player_left(name, online_seconds))

        logger.debug(
            "presence_changed",
            joined=joined,
            left=left,
            online=len(known),
        )
        return events
