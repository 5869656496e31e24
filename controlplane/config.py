"""Application configuration helpers."""

from __future__ import annotations

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass

from controlplane import __version__
from controlplane.errors import ConfigError

__all__ = ["DEFAULT_HEALTH_PATHS", "ENV_PREFIX", "LOG_LEVELS", "Settings"]

ENV_PREFIX = "CONTROLPLANE_"
DEFAULT_HEALTH_PATHS = ("/health", "/healthz")
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name} must be an integer, got {value!r}") from None


def _parse_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from None


def _parse_paths(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True, slots=True)
class Settings:
    """Listener address, drain deadline, and logging flags.

    Values come from ``CONTROLPLANE_*`` environment variables via
    :meth:`from_env`; there is no configuration file.
    """

    app_name: str = "controlplane"
    version: str = __version__
    host: str = "0.0.0.0"
    port: int = 8080
    drain_deadline: float = 10.0
    startup_timeout: float = 5.0
    health_paths: tuple[str, ...] = DEFAULT_HEALTH_PATHS
    log_level: str = "INFO"
    access_log: bool = False
    debug: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port must be between 0 and 65535, got {self.port}")
        if not math.isfinite(self.drain_deadline) or self.drain_deadline < 0:
            raise ConfigError(f"drain deadline must be a finite number of seconds >= 0, got {self.drain_deadline}")
        if not math.isfinite(self.startup_timeout) or self.startup_timeout <= 0:
            raise ConfigError(f"startup timeout must be a finite number of seconds > 0, got {self.startup_timeout}")
        if not self.health_paths:
            raise ConfigError("at least one health path is required")
        for path in self.health_paths:
            if not path.startswith("/"):
                raise ConfigError(f"health path must start with '/', got {path!r}")
            if path == "/":
                raise ConfigError("health path cannot be the root path")
        level = self.log_level.upper()
        if level not in LOG_LEVELS:
            raise ConfigError(f"log level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")
        object.__setattr__(self, "log_level", level)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``CONTROLPLANE_*`` variables, falling back to defaults."""
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            return env.get(f"{ENV_PREFIX}{name}")

        values: dict[str, object] = {}
        if (app_name := get("APP_NAME")) is not None:
            values["app_name"] = app_name
        if (version := get("VERSION")) is not None:
            values["version"] = version
        if (host := get("HOST")) is not None:
            values["host"] = host
        if (port := get("PORT")) is not None:
            values["port"] = _parse_int("PORT", port)
        if (deadline := get("DRAIN_DEADLINE")) is not None:
            values["drain_deadline"] = _parse_float("DRAIN_DEADLINE", deadline)
        if (startup := get("STARTUP_TIMEOUT")) is not None:
            values["startup_timeout"] = _parse_float("STARTUP_TIMEOUT", startup)
        if (paths := get("HEALTH_PATHS")) is not None:
            values["health_paths"] = _parse_paths(paths)
        if (level := get("LOG_LEVEL")) is not None:
            values["log_level"] = level
        values["access_log"] = _truthy(get("ACCESS_LOG"))
        values["debug"] = _truthy(get("DEBUG"))
        return cls(**values)  # type: ignore[arg-type]
