"""Configuration loader for Tandem.

Loads from tandem.toml with sensible defaults when the file is absent.
Configuration is loaded once at startup and passed via dependency injection.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""


@dataclass(frozen=True)
class TurnConfig:
    """Limits that bound a single turn."""

    watchdog_timeout_seconds: float = 180.0
    max_recursion_depth: int = 20
    max_auth_retries: int = 2
    tool_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class AuthConfig:
    refresh_url: str = ""
    timeout_seconds: float = 30.0

    def __repr__(self) -> str:
        return f"AuthConfig(refresh_url={self.refresh_url!r})"


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class Config:
    """Top-level Tandem configuration."""

    turn: TurnConfig = field(default_factory=TurnConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _positive_float(section: str, key: str, value: object) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as e:
        raise ConfigError(f"[{section}] {key} must be a number, got {value!r}") from e
    if number <= 0:
        raise ConfigError(f"[{section}] {key} must be positive, got {number}")
    return number


def _non_negative_int(section: str, key: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"[{section}] {key} must be an integer, got {value!r}")
    if value < 0:
        raise ConfigError(f"[{section}] {key} must not be negative, got {value}")
    return value


def _parse_turn_config(data: dict) -> TurnConfig:
    defaults = TurnConfig()
    max_depth = _non_negative_int(
        "turn", "max_recursion_depth",
        data.get("max_recursion_depth", defaults.max_recursion_depth),
    )
    if max_depth == 0:
        # A zero cap would reject every turn before the first request.
        raise ConfigError("[turn] max_recursion_depth must be at least 1")
    return TurnConfig(
        watchdog_timeout_seconds=_positive_float(
            "turn", "watchdog_timeout_seconds",
            data.get("watchdog_timeout_seconds", defaults.watchdog_timeout_seconds),
        ),
        max_recursion_depth=max_depth,
        max_auth_retries=_non_negative_int(
            "turn", "max_auth_retries",
            data.get("max_auth_retries", defaults.max_auth_retries),
        ),
        tool_timeout_seconds=_positive_float(
            "turn", "tool_timeout_seconds",
            data.get("tool_timeout_seconds", defaults.tool_timeout_seconds),
        ),
    )


def load_config(path: Path | None = None) -> Config:
    """Load configuration from a TOML file.

    If path is None, searches for tandem.toml in current directory then ~/.tandem/.
    Returns default config if no file is found.
    """
    if path is None:
        candidates = [
            Path.cwd() / "tandem.toml",
            Path.home() / ".tandem" / "tandem.toml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None or not path.exists():
        return Config()

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    turn = _parse_turn_config(raw.get("turn", {}))

    auth_data = raw.get("auth", {})
    auth = AuthConfig(
        refresh_url=str(auth_data.get("refresh_url", "")),
        timeout_seconds=_positive_float(
            "auth", "timeout_seconds", auth_data.get("timeout_seconds", 30.0),
        ),
    )

    log_data = raw.get("logging", {})
    level = str(log_data.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"[logging] level must be one of {sorted(_LOG_LEVELS)}, got {level!r}")

    return Config(
        turn=turn,
        auth=auth,
        logging=LoggingConfig(level=level),
    )
