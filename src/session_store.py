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
SQLite persistence for player and server sessions.

A session is one continuous online stretch: a row is opened with a
connect_time and closed by setting disconnect_time. Statistics count still
open sessions up to the supplied "now".
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Dict, Final, List, Optional, Union

import structlog

logger = structlog.get_logger()


class SessionStoreError(Exception):
    """Raised when a database operation fails."""


qinit: Final[List[str]] = [
    """
CREATE TABLE IF NOT EXISTS players (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE
) STRICT
    """,
    """
CREATE TABLE IF NOT EXISTS sessions (
    player_id INTEGER NOT NULL,
    connect_time INTEGER NOT NULL,
    disconnect_time INTEGER,
    FOREIGN KEY (player_id) REFERENCES players (id)
) STRICT
    """,
    "CREATE INDEX IF NOT EXISTS sessions_player_idx ON sessions (player_id)",
    """
CREATE TABLE IF NOT EXISTS server_sessions (
    connect_time INTEGER NOT NULL,
    disconnect_time INTEGER
) STRICT
    """,
]


class Query(Enum):
    """Query identifies a particular operation on the database."""

    PlayerAdd = auto()
    SessionOpen = auto()
    SessionClose = auto()
    SessionCloseAll = auto()
    SessionGetOpen = auto()
    PlayerStats = auto()
    PlayerStatsAll = auto()
    PlayerNeverPlayed = auto()
    ServerSessionOpen = auto()
    ServerSessionClose = auto()
    ServerSessionGetOpen = auto()
    ServerStats = auto()
    ServerLastConnect = auto()


qdb: Final[Dict[Query, str]] = {
    Query.PlayerAdd: "INSERT OR IGNORE INTO players (name) VALUES (:name)",
    Query.SessionOpen: """
INSERT INTO sessions (player_id, connect_time)
VALUES ((SELECT id FROM players WHERE name = :name), :time)
    """,
    Query.SessionClose: """
UPDATE sessions
SET disconnect_time = :time
WHERE player_id = (SELECT id FROM players WHERE name = :name)
  AND disconnect_time IS NULL
    """,
    Query.SessionCloseAll: "UPDATE sessions SET disconnect_time = :time WHERE disconnect_time IS NULL",
    Query.SessionGetOpen: """
SELECT
    players.name,
    MIN(sessions.connect_time)
FROM players JOIN sessions ON sessions.player_id = players.id
WHERE sessions.disconnect_time IS NULL
GROUP BY players.id
    """,
    Query.PlayerStats: """
SELECT
    players.name,
    COUNT(sessions.player_id),
    SUM(COALESCE(sessions.disconnect_time, :time) - sessions.connect_time)
FROM players JOIN sessions ON sessions.player_id = players.id
WHERE players.name = :name
GROUP BY players.id
    """,
    Query.PlayerStatsAll: """
SELECT
    players.name,
    COUNT(sessions.player_id),
    SUM(COALESCE(sessions.disconnect_time, :time) - sessions.connect_time)
FROM players JOIN sessions ON sessions.player_id = players.id
GROUP BY players.id
    """,
    Query.PlayerNeverPlayed: """
SELECT players.name
FROM players LEFT JOIN sessions ON sessions.player_id = players.id
WHERE sessions.player_id IS NULL
ORDER BY players.name
    """,
    Query.ServerSessionOpen: "INSERT INTO server_sessions (connect_time) VALUES (:time)",
    Query.ServerSessionClose: """
UPDATE server_sessions SET disconnect_time = :time WHERE disconnect_time IS NULL
    """,
    Query.ServerSessionGetOpen: """
SELECT MAX(connect_time) FROM server_sessions WHERE disconnect_time IS NULL
    """,
    Query.ServerStats: """
SELECT
    COUNT(connect_time),
    SUM(COALESCE(disconnect_time, :time) - connect_time)
FROM server_sessions
    """,
    Query.ServerLastConnect: "SELECT MAX(connect_time) FROM server_sessions",
}


@dataclass(frozen=True, slots=True)
class PlayerStats:
    """Aggregated session data for one player."""
    name: str
    session_count: int
    total_seconds: int


@dataclass(frozen=True, slots=True)
class ServerStats:
    """Aggregated uptime data for the server."""
    session_count: int
    total_seconds: int


class SessionStore:
    """Player and server session persistence backed by SQLite."""

    def __init__(self, path: Union[Path, str] = "player_data.sqlite") -> None:
        """
        Open (and initialize if needed) the session database.

        Args:
            path: Database file, or ":memory:" for a throwaway database
        """
        self.path = str(path)
        try:
            self.db = sqlite3.connect(self.path)
            self.db.isolation_level = None
            cur = self.db.cursor()
            cur.execute("PRAGMA foreign_keys = true")
            for query in qinit:
                cur.execute(query)
        except sqlite3.Error as e:
            logger.error("session_store_open_failed", path=self.path, error=str(e))
            raise SessionStoreError(f"Cannot open database {self.path}: {e}") from e

        logger.info("session_store_opened", path=self.path)

    def close(self) -> None:
        """Close the database connection."""
        self.db.close()
        logger.debug("session_store_closed", path=self.path)

    def _execute(self, query: Query, params: Optional[Dict[str, object]] = None) -> sqlite3.Cursor:
        try:
            cur = self.db.cursor()
            cur.execute(qdb[query], params or {})
            return cur
        except sqlite3.Error as e:
            logger.error("session_store_query_failed", query=query.name, error=str(e))
            raise SessionStoreError(f"{query.name} failed: {e}") from e

    # ------------------------------------------------------------------
    # Session writes
    # ------------------------------------------------------------------

    def open_player_session(self, name: str, time: int) -> None:
        """Open a session for name, registering the player on first sight."""
        self._execute(Query.PlayerAdd, {"name": name})
        self._execute(Query.SessionOpen, {"name": name, "time": time})
        logger.debug("player_session_opened", player=name, time=time)

    def close_player_session(self, name: str, time: int) -> None:
        self._execute(Query.SessionClose, {"name": name, "time": time})
        logger.debug("player_session_closed", player=name, time=time)

    def open_server_session(self, time: int) -> None:
        self._execute(Query.ServerSessionOpen, {"time": time})
        logger.debug("server_session_opened", time=time)

    def close_server_session(self, time: int) -> None:
        self._execute(Query.ServerSessionClose, {"time": time})
        logger.debug("server_session_closed", time=time)

    def close_dangling_sessions(self, time: int) -> None:
        """Close every session (player and server) still open, e.g. after a crash."""
        players = self._execute(Query.SessionCloseAll, {"time": time}).rowcount
        servers = self._execute(Query.ServerSessionClose, {"time": time}).rowcount
        if players or servers:
            logger.info(
                "dangling_sessions_closed",
                player_sessions=players,
                server_sessions=servers,
                time=time,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def last_known_open_players(self) -> Dict[str, int]:
        """Players with an open session -> connect time of that session."""
        return {
            name: connect_time
            for name, connect_time in self._execute(Query.SessionGetOpen)
        }

    def open_server_session_start(self) -> Optional[int]:
        """Connect time of the open server session, None if the server is recorded down."""
        row = self._execute(Query.ServerSessionGetOpen).fetchone()
        return row[0] if row else None

    def last_server_connect_time(self) -> Optional[int]:
        row = self._execute(Query.ServerLastConnect).fetchone()
        return row[0] if row else None

    def player_stats(self, name: str, now: int) -> Optional[PlayerStats]:
        row = self._execute(Query.PlayerStats, {"name": name, "time": now}).fetchone()
        if row is None:
            return None
        return PlayerStats(name=row[0], session_count=row[1], total_seconds=row[2] or 0)

    def all_player_stats(self, now: int) -> List[PlayerStats]:
        """Stats for every player with at least one session."""
        return [
            PlayerStats(name=name, session_count=count, total_seconds=total or 0)
            for name, count, total in self._execute(Query.PlayerStatsAll, {"time": now})
        ]

    def never_played(self) -> List[str]:
        """Registered players without any session."""
        return [row[0] for row in self._execute(Query.PlayerNeverPlayed)]

    def server_stats(self, now: int) -> ServerStats:
        row = self._execute(Query.ServerStats, {"time": now}).fetchone()
        return ServerStats(session_count=row[0], total_seconds=row[1] or 0)
