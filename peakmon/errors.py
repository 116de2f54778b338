"""Exception types shared across peakmon.

Only ``TerminalError`` and ``ConfigError`` ever leave the core; the others
are absorbed where they happen and show up as state (stale flags, counters,
connection status).
"""

from __future__ import annotations


class PeakmonError(Exception):
    """Base class for peakmon errors."""


class TransientMetricError(PeakmonError):
    """A single sensor query failed; the previous value is kept."""

    def __init__(self, category: str, cause: BaseException) -> None:
        super().__init__(f"{category}: {cause}")
        self.category = category
        self.cause = cause


class ParseError(PeakmonError, ValueError):
    """A log line did not match the expected grammar."""


class SubprocessError(PeakmonError):
    """The log-producing process could not be started or exited."""


class TerminalError(PeakmonError):
    """Rendering or terminal mode failed. Fatal."""


class ConfigError(PeakmonError, ValueError):
    """A configuration value is missing, mistyped or out of range."""
