"""OS log stream: subprocess lifecycle, line parsing and bounded buffering.

The log-producing process is read through a non-blocking pipe, so
``LogStreamManager.poll()`` never waits. When the process dies it is
restarted with exponential backoff; the backoff is measured against a
clock and checked on each poll, never slept.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import sys
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from peakmon.errors import ParseError, SubprocessError

log = logging.getLogger(__name__)

DEFAULT_LOG_CAPACITY = 5000
READ_CHUNK = 64 * 1024
MAX_CHUNKS_PER_POLL = 16
MAX_LINE_BYTES = 64 * 1024

_BANNERS = ("Filtering the log data", "Timestamp ")


# ── Records ─────────────────────────────────────────────────────────────────


class Severity(Enum):
    DEFAULT = "DEFAULT"
    DEBUG = "DEBUG"
    INFO = "INFO"
    NOTICE = "NOTICE"
    WARNING = "WARNING"
    ERROR = "ERROR"
    FAULT = "FAULT"


_SEVERITY_TOKENS: dict[str, Severity] = {
    # macOS `log stream --style=compact` type codes
    "df": Severity.DEFAULT,
    "db": Severity.DEBUG,
    "in": Severity.INFO,
    "er": Severity.ERROR,
    "ft": Severity.FAULT,
    # spelled-out names
    "default": Severity.DEFAULT,
    "debug": Severity.DEBUG,
    "info": Severity.INFO,
    "notice": Severity.NOTICE,
    "warn": Severity.WARNING,
    "warning": Severity.WARNING,
    "err": Severity.ERROR,
    "error": Severity.ERROR,
    "fault": Severity.FAULT,
    "crit": Severity.FAULT,
    "critical": Severity.FAULT,
    "alert": Severity.FAULT,
    "emerg": Severity.FAULT,
}

# syslog priority 0-7
_SYSLOG_PRIORITIES = (
    Severity.FAULT,
    Severity.FAULT,
    Severity.FAULT,
    Severity.ERROR,
    Severity.WARNING,
    Severity.NOTICE,
    Severity.INFO,
    Severity.DEBUG,
)

LEVEL_FILTER_CYCLE: tuple[Severity | None, ...] = (
    None,
    Severity.ERROR,
    Severity.FAULT,
    Severity.WARNING,
    Severity.NOTICE,
    Severity.INFO,
    Severity.DEBUG,
    Severity.DEFAULT,
)


@dataclass(frozen=True, slots=True)
class LogRecord:
    timestamp: str
    severity: Severity
    subsystem: str
    message: str


_DATE_TOKEN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_TOKEN = re.compile(r"^\d{1,2}:\d{2}:\d{2}([.,]\d+)?([+-]\d{2}:?\d{2}|Z)?$")
_STAMP_TOKEN = re.compile(r"^\d[\dT:.,+\-/Z]*$")


def parse_severity(token: str) -> Severity:
    try:
        return _SEVERITY_TOKENS[token.lower()]
    except KeyError:
        raise ParseError(f"unknown severity {token!r}") from None


def parse_log_line(line: str) -> LogRecord:
    """Parse ``TIMESTAMP SEVERITY SUBSYSTEM MESSAGE``.

    TIMESTAMP is one token, or a date token followed by a time token.
    SUBSYSTEM loses a trailing ``:`` and any ``[pid]`` suffix. MESSAGE is
    the rest of the line and may be empty.

    Raises:
        ParseError: If the line does not have that shape.
    """
    text = line.rstrip("\r\n")
    parts = text.split(None, 4)
    if len(parts) >= 2 and _DATE_TOKEN.match(parts[0]) and _TIME_TOKEN.match(parts[1]):
        timestamp = f"{parts[0]} {parts[1]}"
        rest = parts[2:]
    else:
        parts = text.split(None, 3)
        if not parts or not _STAMP_TOKEN.match(parts[0]):
            raise ParseError(f"no timestamp: {text[:80]!r}")
        timestamp = parts[0]
        rest = parts[1:]

    if len(rest) < 2:
        raise ParseError(f"missing severity or subsystem: {text[:80]!r}")
    severity = parse_severity(rest[0])

    subsystem = rest[1]
    bracket = subsystem.find("[")
    if bracket != -1:
        subsystem = subsystem[:bracket]
    subsystem = subsystem.rstrip(":")
    if not subsystem:
        raise ParseError(f"empty subsystem: {text[:80]!r}")

    message = rest[2] if len(rest) > 2 else ""
    return LogRecord(timestamp=timestamp, severity=severity, subsystem=subsystem, message=message)


def format_log_line(record: LogRecord) -> str:
    """Render a record in the grammar ``parse_log_line`` accepts."""
    line = f"{record.timestamp} {record.severity.value} {record.subsystem}:"
    return f"{line} {record.message}" if record.message else line


def parse_journal_json(line: str) -> LogRecord:
    """Parse one ``journalctl --output=json`` entry."""
    try:
        entry: Any = json.loads(line)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e}") from e
    if not isinstance(entry, dict):
        raise ParseError("journal entry is not an object")

    try:
        micros = int(entry["__REALTIME_TIMESTAMP"])
    except (KeyError, TypeError, ValueError) as e:
        raise ParseError("missing __REALTIME_TIMESTAMP") from e
    timestamp = datetime.fromtimestamp(micros / 1_000_000).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

    priority = entry.get("PRIORITY")
    if priority is None:
        severity = Severity.DEFAULT
    else:
        try:
            severity = _SYSLOG_PRIORITIES[int(priority)]
        except (TypeError, ValueError, IndexError) as e:
            raise ParseError(f"bad PRIORITY {priority!r}") from e

    subsystem = entry.get("SYSLOG_IDENTIFIER") or entry.get("_COMM") or "unknown"
    message = entry.get("MESSAGE", "")
    if isinstance(message, list):
        # journald encodes non-UTF-8 payloads as byte arrays
        message = bytes(message).decode("utf-8", "replace")
    if not isinstance(message, str):
        raise ParseError(f"bad MESSAGE {message!r}")
    return LogRecord(
        timestamp=timestamp, severity=severity, subsystem=str(subsystem), message=message
    )


PARSERS: dict[str, Callable[[str], LogRecord]] = {
    "compact": parse_log_line,
    "journal-json": parse_journal_json,
}


def default_log_command(platform: str = sys.platform) -> tuple[tuple[str, ...], str]:
    """Return the platform's log streaming command and its line format."""
    if platform == "darwin":
        return ("log", "stream", "--style=compact", "--level=default"), "compact"
    return ("journalctl", "--follow", "--lines=0", "--output=json"), "journal-json"


# ── Buffer ──────────────────────────────────────────────────────────────────


class LogBuffer:
    """Bounded FIFO of log records; the oldest record is evicted on overflow."""

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._records: deque[LogRecord] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._records.maxlen or 0

    def append(self, record: LogRecord) -> None:
        self._records.append(record)

    def extend(self, records: Iterable[LogRecord]) -> int:
        count = 0
        for record in records:
            self._records.append(record)
            count += 1
        return count

    def records(self) -> tuple[LogRecord, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[LogRecord]:
        return iter(tuple(self._records))


def filter_records(
    records: Iterable[LogRecord], level: Severity | None = None, text: str = ""
) -> list[LogRecord]:
    """Keep records at ``level`` (if set) whose message or subsystem contains ``text``."""
    needle = text.lower()
    result: list[LogRecord] = []
    for record in records:
        if level is not None and record.severity is not level:
            continue
        if needle and needle not in record.message.lower() and needle not in record.subsystem.lower():
            continue
        result.append(record)
    return result


def next_level_filter(current: Severity | None) -> Severity | None:
    idx = LEVEL_FILTER_CYCLE.index(current)
    return LEVEL_FILTER_CYCLE[(idx + 1) % len(LEVEL_FILTER_CYCLE)]


# ── Subprocess manager ──────────────────────────────────────────────────────


class LogStreamStatus(Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


class LogStreamManager:
    """Owns the log-producing subprocess and turns its output into records.

    Args:
        command: argv of the log streaming command.
        fmt: line format, a key of ``PARSERS``.
        max_attempts: restarts tried after the process dies before giving up.
        base_delay: delay before the first restart, doubled for each further one.
        max_delay: cap on the restart delay.
        stable_after: a run that lasts this long clears the failure count.
            Defaults to max_delay, and never less than one second.
        spawn: ``subprocess.Popen`` compatible factory.
        clock: monotonic time source.
    """

    def __init__(
        self,
        command: Sequence[str],
        fmt: str = "compact",
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        stable_after: float | None = None,
        spawn: Callable[..., Any] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        if fmt not in PARSERS:
            raise ValueError(f"unknown log format {fmt!r}")
        self._command = list(command)
        self._parse = PARSERS[fmt]
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._stable_after = max(max_delay if stable_after is None else stable_after, 1.0)
        self._spawn = spawn
        self._clock = clock

        self.status = LogStreamStatus.IDLE
        self.parse_errors = 0
        self.restarts = 0
        self.last_retry_delay: float | None = None
        self.next_attempt_at: float | None = None
        self._failures = 0
        self._proc: Any = None
        self._launched_at = 0.0
        self._fd: int | None = None
        self._partial = b""

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def failures(self) -> int:
        """Consecutive failed runs since one stayed up for ``stable_after``."""
        return self._failures

    def backoff_delay(self, attempt: int) -> float:
        """Delay before restart ``attempt`` (1-based)."""
        return min(self._base_delay * 2 ** (attempt - 1), self._max_delay)

    # Lifecycle

    def start(self) -> None:
        """Spawn the log process. No-op while a stream is already active."""
        if self.status not in (LogStreamStatus.IDLE, LogStreamStatus.STOPPED):
            return
        self._failures = 0
        self.next_attempt_at = None
        self._launch()

    def stop(self) -> None:
        """Terminate the process and release the pipe. Safe to call twice."""
        if self.status is LogStreamStatus.STOPPED and self._proc is None:
            return
        self._release()
        self.next_attempt_at = None
        self.status = LogStreamStatus.STOPPED
        log.info("log stream stopped")

    def __enter__(self) -> LogStreamManager:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    # Reading

    def poll(self) -> Iterator[LogRecord]:
        """Return the records available right now. Never blocks.

        Pipe reads, restarts and exit handling happen eagerly; the returned
        iterator parses the collected lines lazily, counting malformed ones
        in ``parse_errors``.
        """
        if self.status is LogStreamStatus.RECONNECTING and self._retry_due():
            self.restarts += 1
            self._launch()
        if self._fd is None:
            return iter(())
        return self._parse_lines(self._read_lines(self._fd))

    def _retry_due(self) -> bool:
        return self.next_attempt_at is not None and self._clock() >= self.next_attempt_at

    def _launch(self) -> None:
        try:
            proc = self._spawn(
                self._command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except FileNotFoundError:
            # Retrying cannot make a missing binary appear
            self._fail(SubprocessError(f"{self._command[0]}: command not found"), retry=False)
            return
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            self._fail(SubprocessError(f"cannot start {self._command[0]}: {e}"))
            return

        if proc.stdout is None:
            proc.kill()
            self._fail(SubprocessError("log process has no stdout pipe"))
            return
        self._proc = proc
        self._launched_at = self._clock()
        self._fd = proc.stdout.fileno()
        os.set_blocking(self._fd, False)
        self._partial = b""
        self.status = LogStreamStatus.CONNECTED
        self.next_attempt_at = None
        log.info("log stream started: %s (pid %s)", " ".join(self._command), proc.pid)

    def _read_lines(self, fd: int) -> list[bytes]:
        chunks: list[bytes] = []
        eof = False
        for _ in range(MAX_CHUNKS_PER_POLL):
            try:
                chunk = os.read(fd, READ_CHUNK)
            except BlockingIOError:
                break
            except OSError as e:
                log.warning("log pipe read failed: %s", e)
                eof = True
                break
            if not chunk:
                eof = True
                break
            chunks.append(chunk)

        lines = (self._partial + b"".join(chunks)).split(b"\n")
        self._partial = lines.pop()
        if len(self._partial) > MAX_LINE_BYTES:
            self.parse_errors += 1
            self._partial = b""
        if eof:
            if self._partial:
                lines.append(self._partial)
                self._partial = b""
            self._on_exit()
        return lines

    def _parse_lines(self, lines: list[bytes]) -> Iterator[LogRecord]:
        for raw in lines:
            line = raw.decode("utf-8", "replace").rstrip("\r")
            if not line.strip() or line.startswith(_BANNERS):
                continue
            try:
                yield self._parse(line)
            except ParseError as e:
                self.parse_errors += 1
                log.debug("dropped log line: %s", e)

    # Failure handling

    def _on_exit(self) -> None:
        rc = self._proc.poll() if self._proc is not None else None
        self._release()
        uptime = self._clock() - self._launched_at
        # Only a run that stayed up counts as recovered
        if self._failures and uptime >= self._stable_after:
            log.info("log process ran for %.0fs, resetting retry count", uptime)
            self._failures = 0
        self._fail(SubprocessError(f"log process exited (status {rc})"))

    def _fail(self, err: SubprocessError, retry: bool = True) -> None:
        self._failures += 1
        if not retry or self._failures > self._max_attempts:
            self.status = LogStreamStatus.DISCONNECTED
            self.next_attempt_at = None
            log.error("%s; log stream disconnected after %d failure(s)", err, self._failures)
            return
        delay = self.backoff_delay(self._failures)
        self.last_retry_delay = delay
        self.next_attempt_at = self._clock() + delay
        self.status = LogStreamStatus.RECONNECTING
        log.warning(
            "%s; restarting in %.1fs (attempt %d/%d)",
            err,
            delay,
            self._failures,
            self._max_attempts,
        )

    def _release(self) -> None:
        proc, self._proc = self._proc, None
        self._fd = None
        self._partial = b""
        if proc is None:
            return
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=1)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        if proc.stdout is not None:
            proc.stdout.close()
