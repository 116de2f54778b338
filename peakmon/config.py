"""Configuration loading for peakmon.

Loads settings from TOML config files with sensible defaults.
Search order: explicit --config path → ~/.config/peakmon/config.toml → defaults only.
"""

from __future__ import annotations

import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from peakmon.errors import ConfigError

DEFAULT_CONFIG: dict[str, Any] = {
    "refresh_interval": 1.0,
    "poll_timeout": 0.25,
    "history_capacity": 300,
    "log_capacity": 5000,
    "max_events_per_tick": 64,
    "log_file": "",
    "log_stream": {
        "enabled": True,
        "command": [],
        "format": "",
        "reconnect_max_attempts": 5,
        "reconnect_base_delay": 1.0,
        "reconnect_max_delay": 30.0,
    },
    "thresholds": {
        "cpu_percent": {"warning": 80.0, "critical": 95.0},
        "ram_percent": {"warning": 85.0, "critical": 95.0},
        "swap_percent": {"warning": 50.0, "critical": 80.0},
        "disk_percent": {"warning": 85.0, "critical": 95.0},
        "cpu_temp": {"warning": 80.0, "critical": 90.0},
    },
}

MIN_REFRESH_INTERVAL = 0.25
MAX_REFRESH_INTERVAL = 10.0
LOG_FORMATS = ("compact", "journal-json")

_DEFAULT_PATH = Path.home() / ".config" / "peakmon" / "config.toml"


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base. Nested dicts are merged at the first level only."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            # Merge one level: overlay sub-keys into base sub-keys
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration, merging user TOML over defaults.

    Args:
        path: Explicit config file path (from --config). If None, tries the
              default location ~/.config/peakmon/config.toml.

    Returns:
        Merged configuration dict.

    Raises:
        SystemExit: If an explicit path doesn't exist or can't be parsed.
    """
    if path is not None:
        if not path.is_file():
            print(f"peakmon: config file not found: {path}", file=sys.stderr)
            raise SystemExit(1)
        try:
            user_config = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            print(f"peakmon: invalid TOML in {path}: {e}", file=sys.stderr)
            raise SystemExit(1) from e
        return _deep_merge(DEFAULT_CONFIG, user_config)

    # Try default location silently
    if _DEFAULT_PATH.is_file():
        try:
            user_config = tomllib.loads(_DEFAULT_PATH.read_text(encoding="utf-8"))
            return _deep_merge(DEFAULT_CONFIG, user_config)
        except tomllib.TOMLDecodeError:
            print(
                f"peakmon: warning: ignoring invalid TOML in {_DEFAULT_PATH}",
                file=sys.stderr,
            )

    return dict(DEFAULT_CONFIG)


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    return str(value)


def dump_default_config() -> str:
    """Return the default configuration as a TOML string."""
    lines = [
        "# peakmon configuration",
        "# Place this file at ~/.config/peakmon/config.toml",
        "",
    ]
    for key, value in DEFAULT_CONFIG.items():
        if not isinstance(value, dict):
            lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")

    lines.append("[log_stream]")
    lines.append("# Empty command/format pick the platform default")
    for key, value in DEFAULT_CONFIG["log_stream"].items():
        lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")

    # Thresholds only colour the gauges
    for metric, levels in DEFAULT_CONFIG["thresholds"].items():
        lines.append(f"[thresholds.{metric}]")
        lines.append(f"warning = {levels['warning']}")
        lines.append(f"critical = {levels['critical']}")
        lines.append("")

    return "\n".join(lines) + "\n"


# ── Typed settings ──────────────────────────────────────────────────────────


def _number(cfg: dict[str, Any], key: str, low: float, high: float | None = None) -> float:
    value = cfg.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{key} must be a number, got {value!r}")
    if value < low or (high is not None and value > high):
        bound = f"between {low} and {high}" if high is not None else f">= {low}"
        raise ConfigError(f"{key} must be {bound}, got {value}")
    return float(value)


def _integer(cfg: dict[str, Any], key: str, low: int) -> int:
    value = cfg.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    if value < low:
        raise ConfigError(f"{key} must be >= {low}, got {value}")
    return value


@dataclass(frozen=True)
class LogStreamSettings:
    enabled: bool
    command: tuple[str, ...]
    format: str
    reconnect_max_attempts: int
    reconnect_base_delay: float
    reconnect_max_delay: float


@dataclass(frozen=True)
class Settings:
    """Validated view of the merged config dict."""

    refresh_interval: float
    poll_timeout: float
    history_capacity: int
    log_capacity: int
    max_events_per_tick: int
    log_file: str
    log_stream: LogStreamSettings
    thresholds: dict[str, dict[str, float]]

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> Settings:
        """Build settings from a config dict, raising ConfigError on bad values."""
        stream = {**DEFAULT_CONFIG["log_stream"], **cfg.get("log_stream", {})}

        command = stream.get("command") or []
        if not isinstance(command, list) or not all(isinstance(c, str) for c in command):
            raise ConfigError(f"log_stream.command must be a list of strings, got {command!r}")
        fmt = stream.get("format") or ""
        if fmt and fmt not in LOG_FORMATS:
            raise ConfigError(f"log_stream.format must be one of {LOG_FORMATS}, got {fmt!r}")

        max_delay = _number(stream, "reconnect_max_delay", 0.0)
        base_delay = _number(stream, "reconnect_base_delay", 0.0)
        if base_delay > max_delay:
            raise ConfigError("log_stream.reconnect_base_delay exceeds reconnect_max_delay")

        poll_timeout = _number(cfg, "poll_timeout", 0.0)
        if poll_timeout == 0:
            raise ConfigError("poll_timeout must be > 0")

        log_file = cfg.get("log_file", "")
        if not isinstance(log_file, str):
            raise ConfigError(f"log_file must be a string, got {log_file!r}")

        thresholds: dict[str, dict[str, float]] = {}
        for metric, levels in cfg.get("thresholds", {}).items():
            if not isinstance(levels, dict):
                raise ConfigError(f"thresholds.{metric} must be a table, got {levels!r}")
            # A partial table keeps the default for the level it leaves out
            levels = {**DEFAULT_CONFIG["thresholds"].get(metric, {}), **levels}
            thresholds[metric] = {
                "warning": _number(levels, "warning", 0.0),
                "critical": _number(levels, "critical", 0.0),
            }

        return cls(
            refresh_interval=_number(
                cfg, "refresh_interval", MIN_REFRESH_INTERVAL, MAX_REFRESH_INTERVAL
            ),
            poll_timeout=poll_timeout,
            history_capacity=_integer(cfg, "history_capacity", 1),
            log_capacity=_integer(cfg, "log_capacity", 1),
            max_events_per_tick=_integer(cfg, "max_events_per_tick", 1),
            log_file=log_file,
            log_stream=LogStreamSettings(
                enabled=bool(stream.get("enabled", True)),
                command=tuple(command),
                format=fmt,
                reconnect_max_attempts=_integer(stream, "reconnect_max_attempts", 0),
                reconnect_base_delay=base_delay,
                reconnect_max_delay=max_delay,
            ),
            thresholds=thresholds,
        )
