"""Configuration management for bitpiece.

Provides centralized configuration with TOML support, validation and
hierarchical loading from defaults → config file → environment.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import toml
from pydantic import ValidationError as PydanticValidationError

from bitpiece.models import (
    Config,
    DownloadConfig,
    NetworkConfig,
    ObservabilityConfig,
    ProtocolConfig,
)
from bitpiece.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "bitpiece.toml"

# Mapping of environment variables to config paths
ENV_MAPPINGS: dict[str, str] = {
    # Network
    "BITPIECE_LISTEN_PORT": "network.listen_port",
    "BITPIECE_CONNECTION_TIMEOUT": "network.connection_timeout",
    "BITPIECE_HANDSHAKE_TIMEOUT": "network.handshake_timeout",
    "BITPIECE_MESSAGE_TIMEOUT": "network.message_timeout",
    "BITPIECE_TRACKER_TIMEOUT": "network.tracker_timeout",
    "BITPIECE_MAX_CONCURRENT_HANDSHAKES": "network.max_concurrent_handshakes",
    "BITPIECE_MAX_PEERS": "network.max_peers",
    # Protocol
    "BITPIECE_BLOCK_SIZE": "protocol.block_size",
    "BITPIECE_MAX_FRAME_SIZE": "protocol.max_frame_size",
    "BITPIECE_PIPELINE_DEPTH": "protocol.pipeline_depth",
    "BITPIECE_PEER_ID": "protocol.peer_id",
    # Download
    "BITPIECE_MAX_PIECE_ATTEMPTS": "download.max_piece_attempts",
    # Observability
    "BITPIECE_LOG_LEVEL": "observability.log_level",
    "BITPIECE_LOG_FILE": "observability.log_file",
    "BITPIECE_STRUCTURED_LOGGING": "observability.structured_logging",
}

# Kept as text even when they look numeric
_STRING_PATHS = frozenset({"protocol.peer_id", "observability.log_file"})

# Global configuration instance
_config_manager: ConfigManager | None = None


def _parse_env_value(raw: str, path: str) -> bool | int | float | str:
    if path in _STRING_PATHS:
        return raw
    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Loads and validates configuration."""

    def __init__(self, config_file: str | Path | None = None):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for
                bitpiece.toml in the standard locations

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()

    def _find_config_file(
        self,
        config_file: str | Path | None,
    ) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file).expanduser()
            if not path.exists():
                msg = f"Config file not found: {path}"
                raise ConfigurationError(msg)
            return path

        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "bitpiece" / CONFIG_FILE_NAME,
            Path.home() / f".{CONFIG_FILE_NAME}",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e
            logger.debug("Loaded config file %s", self.config_file)

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except PydanticValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))
        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def export(self, fmt: str = "toml") -> str:
        """Export current configuration as a string in the given format.

        Args:
            fmt: one of "toml" or "json"

        """
        data = self.config.model_dump(mode="json", exclude_none=True)

        fmt = (fmt or "toml").lower()
        if fmt == "toml":
            return toml.dumps(data)
        if fmt == "json":
            return json.dumps(data, indent=2)
        msg = f"Unsupported export format: {fmt}"
        raise ConfigurationError(msg)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    return _config_manager


def reload_config() -> Config:
    """Reload configuration from file and environment."""
    if _config_manager is None:
        msg = "Configuration not initialized"
        raise ConfigurationError(msg)

    _config_manager.config = _config_manager._load_config()  # noqa: SLF001
    return _config_manager.config


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime.

    Components that snapshot config must re-read values to pick up changes.
    """
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(None)
    _config_manager.config = new_config


def reset_config() -> None:
    """Forget the global configuration; the next get_config() reloads."""
    global _config_manager
    _config_manager = None


def get_network_config() -> NetworkConfig:
    """Get network configuration."""
    return get_config().network


def get_protocol_config() -> ProtocolConfig:
    """Get peer wire protocol configuration."""
    return get_config().protocol


def get_download_config() -> DownloadConfig:
    """Get download configuration."""
    return get_config().download


def get_observability_config() -> ObservabilityConfig:
    """Get observability configuration."""
    return get_config().observability
