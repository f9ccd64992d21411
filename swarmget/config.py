"""Configuration management for swarmget.

Provides centralized configuration with TOML support and validation,
loaded hierarchically from defaults → config file → environment → CLI.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import toml

from swarmget.exceptions import ConfigurationError
from swarmget.logging_config import setup_logging
from swarmget.models import (
    Config,
    DiskConfig,
    NetworkConfig,
    TrackerConfig,
)

# Global configuration instance
_config_manager: ConfigManager | None = None

# Mapping of environment variables to config paths
ENV_MAPPINGS: dict[str, str] = {
    # Network
    "SWARMGET_LISTEN_PORT": "network.listen_port",
    "SWARMGET_MAX_CONNECTIONS": "network.max_connections",
    "SWARMGET_CONNECTION_TIMEOUT": "network.connection_timeout",
    "SWARMGET_HANDSHAKE_TIMEOUT": "network.handshake_timeout",
    "SWARMGET_INACTIVITY_TIMEOUT": "network.inactivity_timeout",
    "SWARMGET_KEEP_ALIVE_INTERVAL": "network.keep_alive_interval",
    "SWARMGET_PIPELINE_DEPTH": "network.pipeline_depth",
    "SWARMGET_BLOCK_SIZE_KIB": "network.block_size_kib",
    "SWARMGET_REQUEST_TIMEOUT": "network.request_timeout",
    # Tracker
    "SWARMGET_TRACKER_BASE_TIMEOUT": "tracker.base_timeout",
    "SWARMGET_TRACKER_MAX_RETRIES": "tracker.max_retries",
    "SWARMGET_ANNOUNCE_COMPLETED": "tracker.announce_completed",
    "SWARMGET_REANNOUNCE": "tracker.reannounce",
    # Strategy
    "SWARMGET_MAX_VERIFY_FAILURES": "strategy.max_verify_failures",
    "SWARMGET_MAX_PEER_HASH_FAILURES": "strategy.max_peer_hash_failures",
    "SWARMGET_BROADCAST_HAVE": "strategy.broadcast_have",
    # Disk
    "SWARMGET_OUTPUT_DIR": "disk.output_dir",
    "SWARMGET_HASH_WORKERS": "disk.hash_workers",
    "SWARMGET_DISK_WORKERS": "disk.disk_workers",
    # Observability
    "SWARMGET_LOG_LEVEL": "observability.log_level",
    "SWARMGET_LOG_FILE": "observability.log_file",
    "SWARMGET_STRUCTURED_LOGGING": "observability.structured_logging",
}


def _parse_env_value(raw: str) -> bool | int | float | str:
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
    """Manages configuration loading and validation."""

    def __init__(
        self,
        config_file: str | Path | None = None,
        configure_logging: bool = True,
    ):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for swarmget.toml
            configure_logging: Apply the observability section to stdlib logging
        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        if configure_logging:
            self._setup_logging()

    def _find_config_file(self, config_file: str | Path | None) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                msg = f"Config file not found: {path}"
                raise ConfigurationError(msg)
            return path

        # Search in current directory, then home directory
        search_paths = [
            Path.cwd() / "swarmget.toml",
            Path.home() / ".config" / "swarmget" / "swarmget.toml",
            Path.home() / ".swarmget.toml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file and self.config_file.exists():
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw))
        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def apply_overrides(self, overrides: dict[str, Any]) -> Config:
        """Apply dotted-path overrides (e.g. from CLI options) and revalidate."""
        data = self.config.model_dump(mode="json")
        for path, value in overrides.items():
            if value is not None:
                _set_nested(data, path, value)
        try:
            self.config = Config(**data)
        except Exception as e:
            msg = f"Invalid configuration override: {e}"
            raise ConfigurationError(msg) from e
        return self.config

    def export(self, fmt: str = "toml") -> str:
        """Export current configuration as a string ("toml" or "json")."""
        data = self.config.model_dump(mode="json")
        fmt = (fmt or "toml").lower()
        if fmt == "toml":
            return toml.dumps(data)
        if fmt == "json":
            return json.dumps(data, indent=2)
        msg = f"Unsupported export format: {fmt}"
        raise ConfigurationError(msg)

    def _setup_logging(self) -> None:
        """Set up logging configuration."""
        setup_logging(self.config.observability)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    return _config_manager.config


def init_config(
    config_file: str | Path | None = None,
    configure_logging: bool = True,
) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file, configure_logging=configure_logging)
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    _config_manager.config = new_config
    logging.getLogger(__name__).debug("Configuration replaced")


def reset_config() -> None:
    """Drop the global configuration so the next get_config() reloads it."""
    global _config_manager
    _config_manager = None


def get_network_config() -> NetworkConfig:
    """Get network configuration."""
    return get_config().network


def get_tracker_config() -> TrackerConfig:
    """Get tracker configuration."""
    return get_config().tracker


def get_disk_config() -> DiskConfig:
    """Get disk configuration."""
    return get_config().disk
