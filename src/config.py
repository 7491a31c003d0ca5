# Copyright (c) 2025 Stephen Clau

# This file is part of Query Presence.

# Query Presence is dual-licensed:

# 1. GNU Affero General Public License v3.0 (AGPL-3.0)
#    See LICENSE file for full terms

# 2. Commercial License
#    For proprietary use without AGPL requirements
#    Contact: licensing@laudiversified.com

# SPDX-License-Identifier: AGPL-3.0-only OR Commercial

"""
Configuration module for Query Presence.

Sources, highest priority first:
- Docker secrets (/run/secrets/*) for credentials
- Environment variables
- Optional config.yml in CONFIG_DIR (lowercase keys, ${VAR} expansion)
- Hardcoded defaults
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any
import os
import re
import yaml
import structlog

logger = structlog.get_logger()


def _read_docker_secret(secret_name: str) -> Optional[str]:
    """
    Read a secret from Docker secrets location.

    Args:
        secret_name: Name of the secret (e.g., 'discord_bot_token')

    Returns:
        Secret value or None if not found
    """
    secret_path = Path(f"/run/secrets/{secret_name}")

    if secret_path.exists():
        try:
            return secret_path.read_text().strip()
        except (IOError, OSError) as e:
            logger.warning("docker_secret_read_error", secret=secret_name, error=str(e))
            return None

    return None


def get_config_value(
    env_var: str,
    secret_name: Optional[str] = None,
    required: bool = False,
    default: Optional[str] = None,
    file_values: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Get configuration value from Docker secrets, environment or config file.

    Tries in order:
    1. Docker secret file at /run/secrets/{secret_name}
    2. Environment variable {env_var}
    3. config.yml value under the lowercased env_var key
    4. Default value if provided
    5. Raise error if required and not found

    Args:
        env_var: Environment variable name (e.g., 'DISCORD_BOT_TOKEN')
        secret_name: Docker secret name. If not provided, uses env_var lowercased
        required: If True, raises ValueError when value not found
        default: Default value if not found anywhere else
        file_values: Parsed config.yml mapping

    Returns:
        Configuration value as a string, or None

    Raises:
        ValueError: If required=True and value not found
    """
    if secret_name is None:
        secret_name = env_var.lower()

    secret_value = _read_docker_secret(secret_name)
    if secret_value is not None:
        logger.debug("config_value_loaded_from_secret", source="docker_secret", var=env_var)
        return secret_value

    env_value = os.getenv(env_var)
    if env_value is not None:
        logger.debug("config_value_loaded_from_env", source="environment", var=env_var)
        return env_value

    if file_values:
        file_value = file_values.get(env_var.lower())
        if file_value is not None:
            logger.debug("config_value_loaded_from_file", source="config_file", var=env_var)
            return _expand_env_vars(str(file_value))

    if default is not None:
        logger.debug("config_value_loaded_from_default", source="default", var=env_var)
        return default

    if required:
        raise ValueError(
            f"Required configuration value not found for '{env_var}'. "
            f"Checked: Docker secret '{secret_name}', environment variable '{env_var}', "
            f"config.yml key '{env_var.lower()}'"
        )

    return None


def _safe_int(value: Any, field_name: str, default: int) -> int:
    """
    Safely convert value to int.

    Raises:
        ValueError: If conversion fails
    """
    if value is None:
        return default

    if isinstance(value, int):
        return value

    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"Invalid integer for {field_name}: {value}")

    raise ValueError(f"Cannot convert {field_name} to int: {type(value).__name__}")


def _safe_float(value: Any, field_name: str, default: float) -> float:
    """
    Safely convert value to float.

    Raises:
        ValueError: If conversion fails
    """
    if value is None:
        return default

    if isinstance(value, (int, float)):
        return float(value)

    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"Invalid float for {field_name}: {value}")

    raise ValueError(f"Cannot convert {field_name} to float: {type(value).__name__}")


@dataclass
class Config:
    """Main application configuration."""

    discord_bot_token: str
    """Discord bot token."""

    event_channel_id: int
    """Discord channel ID for join/leave/up/down notifications."""

    guild_id: Optional[int] = None
    """Sync slash commands to this guild only. Global sync when None."""

    query_host: str = "127.0.0.1"
    """Game server host answering the UDP query protocol."""

    query_port: int = 25565
    """Game server query port."""

    query_timeout: float = 2.0
    """Deadline in seconds for one handshake + status exchange."""

    poll_interval: float = 5.0
    """Seconds between presence polls."""

    database_path: Path = Path("player_data.sqlite")
    """SQLite file holding player and server sessions."""

    health_check_host: str = "0.0.0.0"
    """Host to bind health check server to."""

    health_check_port: int = 8080
    """Port to bind health check server to."""

    log_level: str = "info"
    """Logging level: debug, info, warning, error."""

    log_format: str = "console"
    """Logging format: console or json."""

    log_file: Optional[Path] = Path("logs/latest.log")
    """Log file written alongside the console. None disables it."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not self.discord_bot_token:
            raise ValueError("discord_bot_token is REQUIRED")

        if not self.event_channel_id or self.event_channel_id <= 0:
            raise ValueError(f"Invalid event_channel_id: {self.event_channel_id}")

        if not self.query_host:
            raise ValueError("query_host cannot be empty")

        if not 1 <= self.query_port <= 65535:
            raise ValueError(f"Invalid query_port: {self.query_port}. Must be 1-65535")

        if self.query_timeout <= 0:
            raise ValueError(f"query_timeout must be > 0, got {self.query_timeout}")

        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {self.poll_interval}")

        # A poll must finish before the next one is due
        if self.query_timeout > self.poll_interval:
            raise ValueError(
                f"query_timeout ({self.query_timeout}s) must not exceed "
                f"poll_interval ({self.poll_interval}s)"
            )

        valid_levels = {"debug", "info", "warning", "error"}
        if self.log_level.lower() not in valid_levels:
            raise ValueError(
                f"Invalid log_level '{self.log_level}'. Must be one of: {', '.join(sorted(valid_levels))}"
            )

        if not 1 <= self.health_check_port <= 65535:
            raise ValueError(
                f"Invalid health_check_port: {self.health_check_port}. Must be 1-65535"
            )

        valid_formats = {"console", "json"}
        if self.log_format.lower() not in valid_formats:
            raise ValueError(
                f"Invalid log_format '{self.log_format}'. Must be one of: {', '.join(sorted(valid_formats))}"
            )


def _expand_env_vars(value: str) -> str:
    """
    Expand ${VAR_NAME} references in a string.

    Unknown variables are left as-is.
    """
    if not isinstance(value, str):
        return value

    def replace_var(match: Any) -> str:
        var_name = match.group(1)
        return os.getenv(var_name, match.group(0))

    return re.sub(r'\$\{([^}]+)\}', replace_var, value)


def _load_config_file(config_dir: Path) -> Dict[str, Any]:
    """
    Read config.yml from config_dir if present.

    Raises:
        ValueError: If the file is not a YAML mapping
        yaml.YAMLError: If the file is invalid YAML
    """
    config_path = config_dir / "config.yml"
    if not config_path.exists():
        logger.debug("config_file_not_found", path=str(config_path))
        return {}

    with open(config_path) as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}

    if not isinstance(data, dict):
        raise ValueError(f"{config_path} must contain a mapping, got {type(data).__name__}")

    logger.info("config_file_loaded", path=str(config_path), keys=sorted(data))
    return {str(k).lower(): v for k, v in data.items()}


def load_config() -> Config:
    """
    Load configuration from secrets, environment and config.yml.

    Returns:
        Fully populated Config object with validation

    Raises:
        ValueError: If required config values are missing or invalid
        yaml.YAMLError: If config.yml is invalid YAML
    """
    config_dir = Path(os.getenv("CONFIG_DIR", "."))
    file_values = _load_config_file(config_dir)

    def value(env_var: str, default: Optional[str] = None, **kwargs: Any) -> Optional[str]:
        return get_config_value(env_var=env_var, default=default, file_values=file_values, **kwargs)

    discord_bot_token = value("DISCORD_BOT_TOKEN", secret_name="discord_bot_token", required=True)

    event_channel_id = _safe_int(value("EVENT_CHANNEL_ID", required=True), "event_channel_id", 0)

    guild_id_raw = value("DISCORD_GUILD_ID")
    guild_id = _safe_int(guild_id_raw, "guild_id", 0) if guild_id_raw else None

    log_file_raw = value("LOG_FILE", default="logs/latest.log")

    config = Config(
        discord_bot_token=discord_bot_token or "",
        event_channel_id=event_channel_id,
        guild_id=guild_id,
        query_host=value("QUERY_HOST", default="127.0.0.1") or "127.0.0.1",
        query_port=_safe_int(value("QUERY_PORT"), "query_port", 25565),
        query_timeout=_safe_float(value("QUERY_TIMEOUT"), "query_timeout", 2.0),
        poll_interval=_safe_float(value("POLL_INTERVAL"), "poll_interval", 5.0),
        database_path=Path(value("DATABASE_PATH", default="player_data.sqlite") or "player_data.sqlite"),
        health_check_host=value("HEALTH_CHECK_HOST", default="0.0.0.0") or "0.0.0.0",
        health_check_port=_safe_int(value("HEALTH_CHECK_PORT"), "health_check_port", 8080),
        log_level=value("LOG_LEVEL", default="info") or "info",
        log_format=value("LOG_FORMAT", default="console") or "console",
        log_file=Path(log_file_raw) if log_file_raw else None,
    )

    return config


def validate_config(config: Config) -> bool:
    """
    Validate a Config object for runtime readiness.

    Returns:
        True if config is usable, False otherwise
    """
    try:
        if not config.discord_bot_token:
            logger.error("config_validation_failed_no_token")
            return False

        if not config.event_channel_id:
            logger.error("config_validation_failed_no_event_channel")
            return False

        db_parent = config.database_path.parent
        if not db_parent.exists():
            logger.error("config_validation_failed_database_dir_missing", path=str(db_parent))
            return False

        return True

    except Exception as e:
        logger.error("config_validation_error", error=str(e))
        return False
