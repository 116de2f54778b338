"""Tests for peakmon.logstream: parsing, buffering and the subprocess manager."""

from __future__ import annotations

import json
import os
import subprocess
from collections.abc import Iterator
from datetime import datetime
from typing import Any

import pytest

from peakmon import logstream
from peakmon.errors import ParseError
from peakmon.logstream import (
    LEVEL_FILTER_CYCLE,
    LogBuffer,
    LogRecord,
    LogStreamManager,
    LogStreamStatus,
    Severity,
    default_log_command,
    filter_records,
    format_log_line,
    next_level_filter,
    parse_journal_json,
    parse_log_line,
)

LINE = b"2024-01-01 12:00:00.000 Info app: hello\n"


# ── Fakes ──────────────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcess:
    """Stands in for Popen; stdout is the read end of a real pipe."""

    def __init__(self, data: bytes = b"", exit_code: int | None = None) -> None:
        read_fd, self._write_fd = os.pipe()
        self.stdout = os.fdopen(read_fd, "rb", buffering=0)
        self.pid = 4242
        self.returncode: int | None = None
        self.terminated = False
        if data:
            self.write(data)
        if exit_code is not None:
            self.exit(exit_code)

    def write(self, data: bytes) -> None:
        assert self._write_fd is not None
        os.write(self._write_fd, data)

    def exit(self, code: int) -> None:
        self.returncode = code
        self.close_writer()

    def close_writer(self) -> None:
        if self._write_fd is not None:
            os.close(self._write_fd)
            self._write_fd = None

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)

    def wait(self, timeout: float | None = None) -> int | None:
        return self.returncode


class FakeSpawn:
    """Hands out the queued outcomes; a dying process once they run out."""

    def __init__(self, *outcomes: FakeProcess | BaseException) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[Any, dict[str, Any]]] = []
        self.spawned: list[FakeProcess] = []

    def __call__(self, argv: Any, **kwargs: Any) -> FakeProcess:
        self.calls.append((argv, kwargs))
        outcome = self.outcomes.pop(0) if self.outcomes else FakeProcess(exit_code=1)
        if isinstance(outcome, BaseException):
            raise outcome
        self.spawned.append(outcome)
        return outcome


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_manager(clock: FakeClock) -> Iterator[Any]:
    managers: list[LogStreamManager] = []
    spawns: list[FakeSpawn] = []

    def factory(spawn: FakeSpawn, **kwargs: Any) -> LogStreamManager:
        kwargs.setdefault("max_attempts", 3)
        kwargs.setdefault("base_delay", 1.0)
        kwargs.setdefault("max_delay", 30.0)
        mgr = LogStreamManager(["fake-log"], fmt="compact", spawn=spawn, clock=clock, **kwargs)
        managers.append(mgr)
        spawns.append(spawn)
        return mgr

    yield factory
    for mgr in managers:
        mgr.stop()
    for spawn in spawns:
        for proc in spawn.spawned:
            proc.close_writer()


# ── Line grammar ───────────────────────────────────────────────────────────


class TestParseLogLine:
    def test_compact_macos_line(self) -> None:
        rec = parse_log_line(
            "2024-01-01 12:00:00.123456-0800 Df kernel[0:1a2b] (AppleACPI) battery ok"
        )
        assert rec.timestamp == "2024-01-01 12:00:00.123456-0800"
        assert rec.severity is Severity.DEFAULT
        assert rec.subsystem == "kernel"
        assert rec.message == "(AppleACPI) battery ok"

    def test_single_token_timestamp(self) -> None:
        rec = parse_log_line("2024-01-01T12:00:00Z ERROR sshd[123]: Failed password for root")
        assert rec.timestamp == "2024-01-01T12:00:00Z"
        assert rec.severity is Severity.ERROR
        assert rec.subsystem == "sshd"
        assert rec.message == "Failed password for root"

    def test_colon_before_pid_suffix_stripped(self) -> None:
        rec = parse_log_line("2024-01-01 12:00:00 Info a:[12]: hi")
        assert rec.subsystem == "a"
        assert parse_log_line(format_log_line(rec)) == rec

    def test_empty_message_allowed(self) -> None:
        rec = parse_log_line("2024-01-01 12:00:00 Info app")
        assert rec.message == ""
        assert rec.subsystem == "app"

    @pytest.mark.parametrize(
        ("token", "expected"),
        [
            ("Df", Severity.DEFAULT),
            ("Db", Severity.DEBUG),
            ("In", Severity.INFO),
            ("Er", Severity.ERROR),
            ("Ft", Severity.FAULT),
            ("notice", Severity.NOTICE),
            ("WARNING", Severity.WARNING),
            ("critical", Severity.FAULT),
        ],
    )
    def test_severity_tokens(self, token: str, expected: Severity) -> None:
        assert parse_log_line(f"2024-01-01 12:00:00 {token} app msg").severity is expected

    @pytest.mark.parametrize(
        "line",
        [
            "",
            "hello world",
            "2024-01-01 12:00:00 BOGUS app message",
            "2024-01-01 12:00:00 Info",
            "Filtering the log data using predicate",
        ],
    )
    def test_malformed_lines_raise(self, line: str) -> None:
        with pytest.raises(ParseError):
            parse_log_line(line)

    def test_parse_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_log_line("nonsense")

    @pytest.mark.parametrize(
        "record",
        [
            LogRecord("2024-01-01 12:00:00.123", Severity.WARNING, "kernel", "disk full"),
            LogRecord("2024-01-01T12:00:00Z", Severity.FAULT, "launchd", "a  b: c"),
            LogRecord("2024-01-01 08:15:00", Severity.INFO, "cron", ""),
        ],
    )
    def test_format_then_parse(self, record: LogRecord) -> None:
        assert parse_log_line(format_log_line(record)) == record


class TestJournalJson:
    def _line(self, **fields: Any) -> str:
        entry = {"__REALTIME_TIMESTAMP": "1700000000000000", **fields}
        return json.dumps(entry)

    def test_fields_mapped(self) -> None:
        rec = parse_journal_json(
            self._line(PRIORITY="3", SYSLOG_IDENTIFIER="sshd", MESSAGE="boom")
        )
        expected_ts = datetime.fromtimestamp(1_700_000_000).strftime("%Y-%m-%d %H:%M:%S.000")
        assert rec.timestamp == expected_ts
        assert rec.severity is Severity.ERROR
        assert rec.subsystem == "sshd"
        assert rec.message == "boom"

    def test_falls_back_to_comm_and_default_severity(self) -> None:
        rec = parse_journal_json(self._line(_COMM="systemd", MESSAGE="started"))
        assert rec.subsystem == "systemd"
        assert rec.severity is Severity.DEFAULT

    def test_byte_array_message(self) -> None:
        rec = parse_journal_json(self._line(MESSAGE=[104, 105]))
        assert rec.message == "hi"

    @pytest.mark.parametrize(
        "line",
        [
            "not json",
            "[1, 2]",
            json.dumps({"MESSAGE": "no timestamp"}),
            json.dumps({"__REALTIME_TIMESTAMP": "1", "PRIORITY": "9"}),
        ],
    )
    def test_malformed_entries_raise(self, line: str) -> None:
        with pytest.raises(ParseError):
            parse_journal_json(line)


def test_default_log_command_macos() -> None:
    command, fmt = default_log_command("darwin")
    assert command[:2] == ("log", "stream")
    assert fmt == "compact"


def test_default_log_command_linux() -> None:
    command, fmt = default_log_command("linux")
    assert command[0] == "journalctl"
    assert "--follow" in command
    assert fmt == "journal-json"


# ── Buffer and filters ─────────────────────────────────────────────────────


def _rec(sev: Severity, sub: str = "app", msg: str = "m") -> LogRecord:
    return LogRecord("2024-01-01 00:00:00", sev, sub, msg)


class TestLogBuffer:
    def test_oldest_evicted(self) -> None:
        buf = LogBuffer(3)
        added = buf.extend(_rec(Severity.INFO, msg=str(i)) for i in range(5))
        assert added == 5
        assert len(buf) == 3
        assert [r.message for r in buf] == ["2", "3", "4"]

    def test_invalid_capacity(self) -> None:
        with pytest.raises(ValueError):
            LogBuffer(0)

    def test_filter_by_level_and_text(self) -> None:
        records = [
            _rec(Severity.ERROR, "kernel", "Disk failure"),
            _rec(Severity.INFO, "kernel", "disk ok"),
            _rec(Severity.ERROR, "sshd", "login failed"),
        ]
        assert len(filter_records(records, Severity.ERROR)) == 2
        assert [r.message for r in filter_records(records, text="DISK")] == [
            "Disk failure",
            "disk ok",
        ]
        assert [r.subsystem for r in filter_records(records, Severity.ERROR, "ssh")] == ["sshd"]
        assert filter_records(records) == records

    def test_level_filter_cycles_back_to_all(self) -> None:
        level: Severity | None = None
        seen = []
        for _ in LEVEL_FILTER_CYCLE:
            level = next_level_filter(level)
            seen.append(level)
        assert seen[0] is Severity.ERROR
        assert seen[-1] is None


# ── LogStreamManager ───────────────────────────────────────────────────────


class TestManagerReading:
    def test_start_spawns_detached_pipe(self, make_manager: Any) -> None:
        spawn = FakeSpawn(FakeProcess())
        mgr = make_manager(spawn)
        mgr.start()
        argv, kwargs = spawn.calls[0]
        assert list(argv) == ["fake-log"]
        assert kwargs["stdout"] is subprocess.PIPE
        assert kwargs["stderr"] is subprocess.DEVNULL
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert kwargs["start_new_session"] is True
        assert mgr.status is LogStreamStatus.CONNECTED

    def test_poll_parses_and_counts_bad_lines(self, make_manager: Any) -> None:
        data = b"Filtering the log data using \"predicate\"\n" + LINE + b"garbage\n\n"
        mgr = make_manager(FakeSpawn(FakeProcess(data)))
        mgr.start()
        records = list(mgr.poll())
        assert [r.message for r in records] == ["hello"]
        assert mgr.parse_errors == 1
        assert mgr.status is LogStreamStatus.CONNECTED

    def test_poll_without_data_returns_nothing(self, make_manager: Any) -> None:
        mgr = make_manager(FakeSpawn(FakeProcess()))
        mgr.start()
        assert list(mgr.poll()) == []
        assert mgr.status is LogStreamStatus.CONNECTED

    def test_partial_line_kept_until_newline(self, make_manager: Any) -> None:
        proc = FakeProcess()
        mgr = make_manager(FakeSpawn(proc))
        mgr.start()
        proc.write(b"2024-01-01 12:00:00 Info app: hel")
        assert list(mgr.poll()) == []
        proc.write(b"lo world\n")
        records = list(mgr.poll())
        assert [r.message for r in records] == ["hello world"]
        assert mgr.parse_errors == 0

    def test_oversized_partial_line_dropped(
        self, make_manager: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(logstream, "MAX_LINE_BYTES", 16)
        proc = FakeProcess()
        mgr = make_manager(FakeSpawn(proc))
        mgr.start()
        proc.write(b"x" * 32)
        assert list(mgr.poll()) == []
        assert mgr.parse_errors == 1

    def test_poll_before_start_is_empty(self, make_manager: Any) -> None:
        mgr = make_manager(FakeSpawn())
        assert list(mgr.poll()) == []
        assert mgr.status is LogStreamStatus.IDLE


class TestManagerRetries:
    def test_backoff_delays(self, make_manager: Any) -> None:
        mgr = make_manager(FakeSpawn(), base_delay=1.0, max_delay=30.0)
        delays = [mgr.backoff_delay(k) for k in range(1, 8)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_exit_restarts_with_backoff_then_disconnects(
        self, make_manager: Any, clock: FakeClock
    ) -> None:
        spawn = FakeSpawn()  # every process exits immediately
        mgr = make_manager(spawn, max_attempts=3, base_delay=1.0, max_delay=3.0)
        mgr.start()

        list(mgr.poll())
        assert mgr.status is LogStreamStatus.RECONNECTING
        delays = [mgr.last_retry_delay]

        # Nothing happens before the delay has elapsed
        list(mgr.poll())
        assert len(spawn.calls) == 1

        for _ in range(3):
            clock.advance(delays[-1])
            list(mgr.poll())
            if mgr.status is LogStreamStatus.RECONNECTING:
                delays.append(mgr.last_retry_delay)

        assert delays == [1.0, 2.0, 3.0]
        assert mgr.status is LogStreamStatus.DISCONNECTED
        assert mgr.restarts == 3
        assert len(spawn.calls) == 4

        clock.advance(1000)
        assert list(mgr.poll()) == []
        assert len(spawn.calls) == 4
        assert mgr.status is LogStreamStatus.DISCONNECTED

    def test_exit_flushes_last_line(self, make_manager: Any) -> None:
        proc = FakeProcess(b"2024-01-01 12:00:00 Info app: bye", exit_code=0)
        mgr = make_manager(FakeSpawn(proc))
        mgr.start()
        records = list(mgr.poll())
        assert [r.message for r in records] == ["bye"]
        assert mgr.status is LogStreamStatus.RECONNECTING

    def test_crash_loop_with_output_still_disconnects(
        self, make_manager: Any, clock: FakeClock
    ) -> None:
        # Each run prints one line and dies at once
        spawn = FakeSpawn(*[FakeProcess(LINE, exit_code=0) for _ in range(4)])
        mgr = make_manager(spawn, max_attempts=3, base_delay=1.0, max_delay=4.0)
        mgr.start()
        received = 0
        for _ in range(10):
            received += len(list(mgr.poll()))
            clock.advance(mgr.last_retry_delay or 1.0)
        assert mgr.status is LogStreamStatus.DISCONNECTED
        assert mgr.restarts == 3
        assert received == 4
        assert len(spawn.calls) == 4

    def test_stable_run_resets_failure_count(
        self, make_manager: Any, clock: FakeClock
    ) -> None:
        long_runner = FakeProcess(LINE)
        spawn = FakeSpawn(FakeProcess(exit_code=1), long_runner)
        mgr = make_manager(spawn, max_attempts=1, max_delay=30.0)
        mgr.start()
        list(mgr.poll())
        assert mgr.failures == 1
        clock.advance(1.0)
        assert len(list(mgr.poll())) == 1
        assert mgr.status is LogStreamStatus.CONNECTED

        clock.advance(30.0)
        long_runner.exit(0)
        list(mgr.poll())
        assert mgr.status is LogStreamStatus.RECONNECTING
        assert mgr.failures == 1
        assert mgr.last_retry_delay == 1.0

    def test_short_run_keeps_failure_count(
        self, make_manager: Any, clock: FakeClock
    ) -> None:
        short_runner = FakeProcess(LINE)
        spawn = FakeSpawn(FakeProcess(exit_code=1), short_runner)
        mgr = make_manager(spawn, max_attempts=1, stable_after=10.0)
        mgr.start()
        list(mgr.poll())
        clock.advance(1.0)
        list(mgr.poll())
        clock.advance(9.0)
        short_runner.exit(0)
        list(mgr.poll())
        assert mgr.status is LogStreamStatus.DISCONNECTED
        assert mgr.failures == 2

    def test_missing_binary_disconnects_immediately(self, make_manager: Any) -> None:
        spawn = FakeSpawn(FileNotFoundError(2, "No such file"))
        mgr = make_manager(spawn)
        mgr.start()
        assert mgr.status is LogStreamStatus.DISCONNECTED
        assert len(spawn.calls) == 1

    def test_spawn_error_schedules_retry(self, make_manager: Any, clock: FakeClock) -> None:
        spawn = FakeSpawn(PermissionError(13, "denied"), FakeProcess())
        mgr = make_manager(spawn)
        mgr.start()
        assert mgr.status is LogStreamStatus.RECONNECTING
        assert mgr.next_attempt_at == clock.now + 1.0
        clock.advance(1.0)
        list(mgr.poll())
        assert mgr.status is LogStreamStatus.CONNECTED
        assert mgr.restarts == 1


class TestManagerStop:
    def test_stop_terminates_and_is_idempotent(self, make_manager: Any) -> None:
        proc = FakeProcess()
        mgr = make_manager(FakeSpawn(proc))
        mgr.start()
        mgr.stop()
        assert proc.terminated
        assert proc.stdout.closed
        assert mgr.status is LogStreamStatus.STOPPED
        mgr.stop()
        assert mgr.status is LogStreamStatus.STOPPED
        assert list(mgr.poll()) == []

    def test_stop_cancels_pending_retry(self, make_manager: Any, clock: FakeClock) -> None:
        spawn = FakeSpawn()
        mgr = make_manager(spawn)
        mgr.start()
        list(mgr.poll())
        assert mgr.status is LogStreamStatus.RECONNECTING
        mgr.stop()
        clock.advance(100)
        list(mgr.poll())
        assert len(spawn.calls) == 1

    def test_context_manager(self, make_manager: Any) -> None:
        proc = FakeProcess()
        mgr = make_manager(FakeSpawn(proc))
        with mgr as active:
            assert active.status is LogStreamStatus.CONNECTED
        assert mgr.status is LogStreamStatus.STOPPED
        assert proc.terminated

    def test_empty_command_rejected(self) -> None:
        with pytest.raises(ValueError):
            LogStreamManager([])
