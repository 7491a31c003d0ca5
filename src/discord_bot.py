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

"""Discord bot client: presence notifications and status slash commands.

- notify(): posts presence event batches to the event channel
- /players: current (or all) players with playtime statistics
- /server: current and total uptime

Slash commands run their own on-demand query and only read tracker state;
the poll loop stays the tracker's single writer.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence

import discord
from discord import app_commands
import structlog

try:
    from .formatting import (  # type: ignore
        PresenceMessageFormatter,
        format_all_players,
        format_current_players,
        format_server_status,
    )
    from .presence_tracker import PresenceEvent, PresenceTracker  # type: ignore
    from .query_client import COMMAND_REQUEST_ID  # type: ignore
    from .query_protocol import Snapshot  # type: ignore
except ImportError:
    from formatting import (  # type: ignore
        PresenceMessageFormatter,
        format_all_players,
        format_current_players,
        format_server_status,
    )
    from presence_tracker import PresenceEvent, PresenceTracker  # type: ignore
    from query_client import COMMAND_REQUEST_ID  # type: ignore
    from query_protocol import Snapshot  # type: ignore

logger = structlog.get_logger()

OFFLINE_REPLY = "Server is offline!"
ERROR_REPLY = "There was an error while executing this command!"


class DiscordBot(discord.Client):
    """Discord client posting presence changes and answering status commands."""

    def __init__(
        self,
        token: str,
        event_channel_id: int,
        query_client: Any,
        store: Any,
        tracker: PresenceTracker,
        *,
        guild_id: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        intents: Optional[discord.Intents] = None,
    ):
        """
        Initialize Discord bot.

        Args:
            token: Discord bot token
            event_channel_id: Channel receiving presence notifications
            query_client: QueryClient used for on-demand command queries
            store: SessionStore for playtime statistics
            tracker: PresenceTracker, read only from here
            guild_id: Sync commands to this guild only (global when None)
            clock: Returns the current UNIX time in seconds
            intents: Discord intents (auto-configured if None)
        """
        if intents is None:
            intents = discord.Intents.default()
            intents.guilds = True
            intents.guild_messages = True

        super().__init__(intents=intents)

        self.token = token
        self.event_channel_id = event_channel_id
        self.query_client = query_client
        self.store = store
        self.tracker = tracker
        self.guild_id = guild_id
        self.clock = clock

        self.tree = app_commands.CommandTree(self)
        self.formatter = PresenceMessageFormatter()
        self._ready = asyncio.Event()
        self._connected = False
        self._connection_task: Optional[asyncio.Task] = None

        logger.info(
            "discord_bot_initialized",
            event_channel_id=event_channel_id,
            guild_id=guild_id,
        )

    # ========================================================================
    # Bot Lifecycle
    # ========================================================================

    async def setup_hook(self) -> None:
        """Register and sync slash commands."""
        self._register_commands()

        try:
            if self.guild_id is not None:
                guild = discord.Object(id=self.guild_id)
                self.tree.copy_global_to(guild=guild)
                synced = await self.tree.sync(guild=guild)
            else:
                synced = await self.tree.sync()
            logger.info(
                "commands_synced",
                count=len(synced),
                commands=[cmd.name for cmd in synced],
                guild_id=self.guild_id,
            )
        except Exception as e:
            logger.error("command_sync_failed", error=str(e), exc_info=True)

    def _register_commands(self) -> None:
        @app_commands.command(
            name="players",
            description="Current players with online time, total time and session counts.",
        )
        @app_commands.describe(
            all_players="show all players (even offline ones)?",
            session_count="show session counts for players?",
        )
        async def players(
            interaction: discord.Interaction,
            all_players: bool = False,
            session_count: bool = False,
        ) -> None:
            await self._respond(
                interaction,
                "players",
                lambda: self.players_reply(all_players, session_count),
            )

        @app_commands.command(
            name="server",
            description="Server uptime, total uptime and session counts.",
        )
        @app_commands.describe(session_count="show session count?")
        async def server(interaction: discord.Interaction, session_count: bool = False) -> None:
            await self._respond(
                interaction,
                "server",
                lambda: self.server_reply(session_count),
            )

        self.tree.add_command(players)
        self.tree.add_command(server)
        logger.info("commands_registered", commands=["players", "server"])

    async def on_ready(self) -> None:
        """Called when bot is ready (fires on initial connect AND reconnects)."""
        if self.user is None:
            logger.error("discord_bot_ready_but_no_user")
            return

        logger.info(
            "discord_bot_ready",
            bot_name=self.user.name,
            bot_id=self.user.id,
            guilds=len(self.guilds),
        )
        self._connected = True
        self._ready.set()

    async def on_disconnect(self) -> None:
        self._connected = False
        logger.warning("discord_bot_disconnected")

    async def connect_bot(self) -> None:
        """Log in and wait until the gateway reports ready."""
        try:
            logger.info("connecting_to_discord")
            await self.login(self.token)
            self._connection_task = asyncio.create_task(self.connect())

            try:
                await asyncio.wait_for(self._ready.wait(), timeout=30.0)
                logger.info("discord_bot_connected")
            except asyncio.TimeoutError:
                logger.error("discord_bot_connection_timeout")
                await self._cancel_connection_task()
                raise ConnectionError("Discord bot connection timed out after 30 seconds")
        except discord.errors.LoginFailure as e:
            logger.error("discord_login_failed", error=str(e))
            raise ConnectionError(f"Discord login failed: {e}")

    async def disconnect_bot(self) -> None:
        """Disconnect from Discord."""
        self._connected = False
        await self._cancel_connection_task()
        if not self.is_closed():
            await self.close()
        logger.info("discord_bot_closed")

    async def _cancel_connection_task(self) -> None:
        if self._connection_task is not None:
            if not self._connection_task.done():
                self._connection_task.cancel()
                try:
                    await self._connection_task
                except asyncio.CancelledError:
                    pass
            self._connection_task = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ========================================================================
    # Notifications
    # ========================================================================

    def _event_channel(self) -> Optional[discord.abc.Messageable]:
        channel = self.get_channel(self.event_channel_id)
        if channel is None:
            logger.warning(
                "event_channel_not_found",
                channel_id=self.event_channel_id,
            )
            return None

        if not isinstance(channel, discord.abc.Messageable):
            logger.warning(
                "event_channel_not_sendable",
                channel_id=self.event_channel_id,
            )
            return None

        return channel

    async def notify(
        self,
        events: Sequence[PresenceEvent],
        snapshot: Optional[Snapshot],
        when: datetime,
    ) -> None:
        """Format an event batch and post it to the event channel."""
        messages = self.formatter.format_events(events, snapshot, when)
        if not messages:
            return

        if not self._connected:
            logger.warning("notify_skipped_not_connected", messages=len(messages))
            return

        channel = self._event_channel()
        if channel is None:
            return

        for message in messages:
            try:
                await channel.send(message)
                logger.debug("notification_sent", length=len(message))
            except discord.errors.Forbidden as e:
                logger.error("notification_forbidden", error=str(e))
                return
            except discord.errors.HTTPException as e:
                logger.error("notification_http_error", error=str(e))

    # ========================================================================
    # Command Replies
    # ========================================================================

    async def _respond(
        self,
        interaction: discord.Interaction,
        command_name: str,
        build_reply: Callable[[], Any],
    ) -> None:
        """Defer, build the reply, send it; report failures ephemerally."""
        logger.info(
            "command_invoked",
            command=command_name,
            user=str(interaction.user),
        )
        await interaction.response.defer()

        try:
            reply = await build_reply()
        except Exception as e:
            logger.error("command_failed", command=command_name, error=str(e), exc_info=True)
            await interaction.followup.send(ERROR_REPLY, ephemeral=True)
            return

        await interaction.followup.send(reply)

    async def players_reply(self, all_players: bool = False, session_count: bool = False) -> str:
        """Build the /players reply."""
        snapshot = await self.query_client.query(COMMAND_REQUEST_ID)
        if snapshot is None:
            return OFFLINE_REPLY

        now = int(self.clock())

        if all_players:
            return format_all_players(
                snapshot.server_name,
                self.store.all_player_stats(now),
                self.store.never_played(),
                show_counts=session_count,
            )

        stats: List[Any] = []
        for name in snapshot.players:
            player = self.store.player_stats(name, now)
            if player is not None:
                stats.append(player)

        return format_current_players(
            snapshot,
            stats,
            self.tracker.state.player_join_times,
            now,
            show_counts=session_count,
        )

    async def server_reply(self, session_count: bool = False) -> str:
        """Build the /server reply."""
        snapshot = await self.query_client.query(COMMAND_REQUEST_ID)
        if snapshot is None:
            return OFFLINE_REPLY

        now = int(self.clock())
        last_up = self.store.last_server_connect_time()
        uptime = now - last_up if last_up is not None else None

        return format_server_status(
            snapshot.server_name,
            self.store.server_stats(now),
            uptime,
            show_counts=session_count,
        )
