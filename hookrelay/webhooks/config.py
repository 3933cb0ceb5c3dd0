"""Webhook dispatcher configuration loader."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/webhooks.yaml")


@dataclass
class DebounceConfig:
    """Debouncer configuration.

    Events for the same entity arriving within ``interval_seconds`` of each
    other are coalesced. A burst is never delayed longer than
    ``max_wait_seconds``.
    """

    interval_seconds: float = 1.0
    max_wait_seconds: float = 5.0


@dataclass
class DispatcherConfig:
    """Dispatcher, delivery and housekeeping settings."""

    workers: int = 3
    queue_size: int = 100
    enable_debounce: bool = True
    debounce: DebounceConfig = field(default_factory=DebounceConfig)

    # Delivery
    max_attempts: int = 5
    initial_backoff_seconds: float = 60.0
    max_backoff_seconds: float = 24 * 60 * 60.0
    request_timeout_seconds: float = 30.0
    max_response_bytes: int = 10 * 1024
    user_agent: str = "HookRelay/1.0"

    # Background loops
    retry_interval_seconds: float = 30.0
    retry_batch_size: int = 50
    cleanup_interval_seconds: float = 24 * 60 * 60.0
    retention_days: int = 30
    worker_poll_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.workers <= 0:
            self.workers = 3


_POSITIVE_FIELDS = (
    "workers",
    "queue_size",
    "max_attempts",
    "initial_backoff_seconds",
    "max_backoff_seconds",
    "request_timeout_seconds",
    "max_response_bytes",
    "retry_interval_seconds",
    "retry_batch_size",
    "cleanup_interval_seconds",
    "retention_days",
    "worker_poll_seconds",
)


class DispatcherConfigLoader:
    """Loads dispatcher settings from the ``dispatcher`` section of a YAML file."""

    _config: DispatcherConfig | None = None

    @classmethod
    def load(cls, path: Path | str | None = None) -> DispatcherConfig:
        """Load settings from ``path`` (defaults to config/webhooks.yaml)."""
        config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH

        if not config_path.exists():
            logger.info(
                "Dispatcher configuration not found at %s. Using defaults.",
                config_path,
            )
            cls._config = DispatcherConfig()
            return cls._config

        try:
            with open(config_path) as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to read dispatcher configuration: %s", e)
            cls._config = DispatcherConfig()
            return cls._config

        try:
            if not isinstance(raw_config, dict):
                raise ValueError("top level must be a mapping")
            config = cls._parse(raw_config.get("dispatcher") or {})
        except (TypeError, ValueError) as e:
            logger.error("Invalid dispatcher configuration in %s: %s", config_path, e)
            config = DispatcherConfig()

        cls._config = config
        logger.info(
            "Loaded dispatcher configuration from %s (workers=%d, debounce=%s)",
            config_path,
            config.workers,
            config.enable_debounce,
        )
        return cls._config

    @classmethod
    def reload(cls, path: Path | str | None = None) -> DispatcherConfig:
        """Reload configuration."""
        return cls.load(path)

    @classmethod
    def get_config(cls) -> DispatcherConfig:
        """Get current configuration, loading if necessary."""
        if cls._config is None:
            cls.load()
        return cls._config  # type: ignore

    @classmethod
    def _parse(cls, data: dict[str, Any]) -> DispatcherConfig:
        """Parse and validate the dispatcher mapping."""
        if not isinstance(data, dict):
            raise ValueError("'dispatcher' must be a mapping")

        defaults = DispatcherConfig()
        values: dict[str, Any] = {}
        for name in _POSITIVE_FIELDS:
            default = getattr(defaults, name)
            raw = data.get(name, default)
            value = type(default)(raw)
            if value <= 0:
                raise ValueError(f"'{name}' must be positive, got {raw!r}")
            values[name] = value

        enable_debounce = data.get("enable_debounce", defaults.enable_debounce)
        if not isinstance(enable_debounce, bool):
            raise ValueError("'enable_debounce' must be a boolean")

        debounce_data = data.get("debounce") or {}
        if not isinstance(debounce_data, dict):
            raise ValueError("'debounce' must be a mapping")
        debounce = DebounceConfig(
            interval_seconds=float(
                debounce_data.get("interval_seconds", defaults.debounce.interval_seconds)
            ),
            max_wait_seconds=float(
                debounce_data.get("max_wait_seconds", defaults.debounce.max_wait_seconds)
            ),
        )
        if debounce.interval_seconds <= 0:
            raise ValueError("'debounce.interval_seconds' must be positive")
        if debounce.max_wait_seconds < debounce.interval_seconds:
            raise ValueError("'debounce.max_wait_seconds' must not be shorter than the interval")

        return DispatcherConfig(
            enable_debounce=enable_debounce,
            debounce=debounce,
            user_agent=str(data.get("user_agent", defaults.user_agent)),
            **values,
        )
