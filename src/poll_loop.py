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
Scheduled presence polling.

Each cycle runs one query, one tracker observation, then forwards the events
to the session store and the notifier. Cycles never overlap, so the tracker
has exactly one writer.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, Sequence

import structlog

try:
    from .presence_tracker import PresenceEvent, PresenceEventType, PresenceTracker  # type: ignore
    from .query_client import POLL_REQUEST_ID, STARTUP_REQUEST_ID  # type: ignore
    from .query_protocol import Snapshot  # type: ignore
    from .session_store import SessionStoreError  # type: ignore
except ImportError:
    from presence_tracker import PresenceEvent, PresenceEventType, PresenceTracker  # type: ignore
    from query_client import POLL_REQUEST_ID, STARTUP_REQUEST_ID  # type: ignore
    from query_protocol import Snapshot  # type: ignore
    from session_store import SessionStoreError  # type: ignore

logger = structlog.get_logger()

DEFAULT_POLL_INTERVAL = 5.0


class Notifier(Protocol):
    """Receives every non-empty event batch."""

    async def notify(
        self,
        events: Sequence[PresenceEvent],
        snapshot: Optional[Snapshot],
        when: datetime,
    ) -> None:
        ...


class PollLoop:
    """Drive query -> observe -> forward on a fixed cadence."""

    def __init__(
        self,
        query_client: Any,
        tracker: PresenceTracker,
        store: Any,
        notifier: Optional[Notifier] = None,
        interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize poll loop.

        Args:
            query_client: Object with `async query(request_id) -> Optional[Snapshot]`
            tracker: Presence tracker this loop exclusively writes to
            store: Session store receiving open/close calls
            notifier: Optional notification sink
            interval: Seconds between the start of two cycles
            clock: Returns the current UNIX time in seconds
        """
        self.query_client = query_client
        self.tracker = tracker
        self.store = store
        self.notifier = notifier
        self.interval = interval
        self.clock = clock
        self._task: Optional[asyncio.Task[None]] = None

    async def bootstrap(self) -> None:
        """
        Seed the tracker before the first cycle.

        If the server answers, resume the sessions a previous run left open.
        Otherwise those sessions are stale and get closed now.
        """
        snapshot = await self.query_client.query(STARTUP_REQUEST_ID)
        now = int(self.clock())

        if snapshot is None:
            self.store.close_dangling_sessions(now)
            self.tracker.seed(server_up=False)
            logger.info("bootstrap_server_unreachable", time=now)
            return

        up_since = self.store.open_server_session_start()
        if up_since is None:
            self.store.open_server_session(now)
            up_since = now

        self.tracker.seed(
            server_up=True,
            server_up_since=up_since,
            player_join_times=self.store.last_known_open_players(),
        )
        logger.info(
            "bootstrap_server_reachable",
            server=snapshot.server_name,
            up_since=up_since,
        )

    async def run_once(self) -> List[PresenceEvent]:
        """Run one poll cycle and return the events it produced."""
        snapshot = await self.query_client.query(POLL_REQUEST_ID)
        now = int(self.clock())

        events = self.tracker.observe(now, snapshot)
        if not events:
            return events

        logger.info(
            "presence_events",
            count=len(events),
            types=[e.event_type.value for e in events],
        )

        self._record(events, now)

        if self.notifier is not None:
            await self.notifier.notify(events, snapshot, datetime.fromtimestamp(now))

        return events

    def _record(self, events: Sequence[PresenceEvent], now: int) -> None:
        """Mirror events into the session store, one write per event."""
        for event in events:
            try:
                if event.event_type == PresenceEventType.SERVER_UP:
                    self.store.open_server_session(now)
                elif event.event_type == PresenceEventType.SERVER_DOWN:
                    self.store.close_server_session(now)
                elif event.event_type == PresenceEventType.JOIN:
                    self.store.open_player_session(event.player_name, now)
                elif event.event_type == PresenceEventType.LEAVE:
                    self.store.close_player_session(event.player_name, now)
            except SessionStoreError as e:
                # The tracker already moved on; keep the rest of the batch
                logger.error(
                    "session_record_failed",
                    event_type=event.event_type.value,
                    player=event.player_name,
                    time=now,
                    error=str(e),
                )

    async def _loop(self) -> None:
        logger.info("poll_loop_started", interval=self.interval)
        while True:
            try:
                await asyncio.sleep(self.interval)
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("poll_loop_cancelled")
                raise
            except Exception as e:
                logger.error("poll_cycle_failed", error=str(e), exc_info=True)

    async def start(self) -> None:
        """Start polling if not already running."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
        else:
            logger.debug("poll_loop_already_running")

    async def stop(self) -> None:
        """Stop polling after cancelling the in-flight cycle."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("poll_loop_stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
