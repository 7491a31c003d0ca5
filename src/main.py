"""
Query Presence - Main Entry Point

Polls a game server over the UDP query protocol and reports server up/down
and player join/leave to Discord, keeping session history in SQLite.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

try:
    from .config import load_config, validate_config  # type: ignore
    from .discord_bot import DiscordBot  # type: ignore
    from .health import HealthCheckServer  # type: ignore
    from .poll_loop import PollLoop  # type: ignore
    from .presence_tracker import PresenceTracker  # type: ignore
    from .query_client import QueryClient  # type: ignore
    from .session_store import SessionStore  # type: ignore
except ImportError:
    from config import load_config, validate_config  # type: ignore
    from discord_bot import DiscordBot  # type: ignore
    from health import HealthCheckServer  # type: ignore
    from poll_loop import PollLoop  # type: ignore
    from presence_tracker import PresenceTracker  # type: ignore
    from query_client import QueryClient  # type: ignore
    from session_store import SessionStore  # type: ignore

logger = structlog.get_logger()


def setup_logging(log_level: str, log_format: str, log_file: Optional[Path] = None) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (debug, info, warning, error, critical)
        log_format: Output format ("json" or "console")
        log_file: Also write every line here (truncated on start)
    """
    level_map: dict[str, int] = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    min_level = level_map.get(log_level.lower(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=log_file is None))

    if log_file is not None:
        # Tee console + file through stdlib handlers
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers: list[logging.Handler] = [
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, mode="w", encoding="utf-8"),
        ]
        logging.basicConfig(format="%(message)s", level=min_level, handlers=handlers, force=True)
        logger_factory: Any = structlog.stdlib.LoggerFactory()
    else:
        logger_factory = structlog.PrintLoggerFactory()

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )

    logger.info(
        "logging_configured",
        level=log_level,
        format=log_format,
        log_file=str(log_file) if log_file else None,
    )


class Application:
    """Main application orchestrator."""

    def __init__(self) -> None:
        """Initialize application components."""
        self.config: Any = None
        self.store: Optional[SessionStore] = None
        self.tracker: Optional[PresenceTracker] = None
        self.query_client: Optional[QueryClient] = None
        self.discord: Optional[DiscordBot] = None
        self.poll_loop: Optional[PollLoop] = None
        self.health_server: Optional[HealthCheckServer] = None
        self.shutdown_event: asyncio.Event = asyncio.Event()

    async def setup(self) -> None:
        """Load configuration and initialize core components."""
        logger.info("application_starting")

        try:
            self.config = load_config()
            if not validate_config(self.config):
                raise ValueError("Configuration validation failed")
        except Exception as e:
            logger.error("config_load_failed", error=str(e))
            raise

        setup_logging(self.config.log_level, self.config.log_format, self.config.log_file)

        self.store = SessionStore(self.config.database_path)
        self.tracker = PresenceTracker()

        # Scheduled polls and command queries share settings, not state
        self.query_client = QueryClient(
            host=self.config.query_host,
            port=self.config.query_port,
            timeout=self.config.query_timeout,
        )

        self.discord = DiscordBot(
            token=self.config.discord_bot_token,
            event_channel_id=self.config.event_channel_id,
            query_client=self.query_client,
            store=self.store,
            tracker=self.tracker,
            guild_id=self.config.guild_id,
        )

        self.poll_loop = PollLoop(
            query_client=self.query_client,
            tracker=self.tracker,
            store=self.store,
            notifier=self.discord,
            interval=self.config.poll_interval,
        )

        self.health_server = HealthCheckServer(
            host=self.config.health_check_host,
            port=self.config.health_check_port,
            tracker=self.tracker,
        )

        logger.info(
            "application_configured",
            query_host=self.config.query_host,
            query_port=self.config.query_port,
            poll_interval=self.config.poll_interval,
            health_port=self.config.health_check_port,
        )

    async def start(self) -> None:
        """Start all application components."""
        assert self.config is not None, "Config not loaded"
        assert self.health_server is not None, "Health server not initialized"
        assert self.discord is not None, "Discord bot not initialized"
        assert self.poll_loop is not None, "Poll loop not initialized"

        await self.health_server.start()

        await self.discord.connect_bot()

        await self.poll_loop.bootstrap()
        await self.poll_loop.start()

        logger.info("application_running")

    async def stop(self) -> None:
        """Gracefully stop all components."""
        logger.info("application_stopping")

        if self.poll_loop is not None:
            try:
                await self.poll_loop.stop()
            except Exception as e:
                logger.error("poll_loop_stop_failed", error=str(e))

        if self.discord is not None:
            try:
                await self.discord.disconnect_bot()
            except Exception as e:
                logger.error("discord_stop_failed", error=str(e))

        if self.health_server is not None:
            try:
                await self.health_server.stop()
            except Exception as e:
                logger.error("health_server_stop_failed", error=str(e))

        if self.store is not None:
            self.store.close()

        logger.info("application_stopped")

    async def run(self) -> None:
        """Main application run loop."""
        try:
            await self.setup()
            await self.start()
            await self.shutdown_event.wait()
        except KeyboardInterrupt:
            logger.info("received_keyboard_interrupt")
        except Exception as e:
            logger.error("application_error", error=str(e), exc_info=True)
            raise
        finally:
            await self.stop()


async def main() -> None:
    """Main async entry point."""
    app = Application()

    def _signal_handler(signum: int, frame: Any) -> None:
        logger.info("received_signal", signal=signal.Signals(signum).name)
        app.shutdown_event.set()

    # Not available on every platform/thread
    try:
        signal.signal(signal.SIGINT, _signal_handler)
        signal.signal(signal.SIGTERM, _signal_handler)
    except (ValueError, OSError) as e:
        logger.warning("signal_handlers_unavailable", error=str(e))

    try:
        await app.run()
    except Exception as e:
        logger.error("fatal_error", error=str(e), exc_info=True)
        sys.exit(1)


def cli() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown complete.")
        sys.exit(0)


if __name__ == "__main__":
    cli()
