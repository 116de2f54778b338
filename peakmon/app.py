"""The single-threaded event loop that drives peakmon.

Each tick waits a bounded time for input, drains a bounded batch of pending
events, polls the log stream once without blocking, refreshes metrics when
the refresh deadline has passed, and renders exactly one frame. All state
lives in one ``ApplicationState`` that only this loop mutates; the renderer
receives a read-only ``AppView``.
"""

from __future__ import annotations

import curses
import logging
import math
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from peakmon.config import Settings
from peakmon.history import HistoryStore
from peakmon.logstream import LogBuffer, LogRecord, LogStreamStatus, next_level_filter
from peakmon.metrics import ProcessInfo, SystemSnapshot, record_history
from peakmon.processes import ProcessSortField, terminate_process, visible_processes
from peakmon.state import REFRESH_STEP, AppView, ApplicationState, Tab, clamp_interval

log = logging.getLogger(__name__)

KEY_CTRL_C = 3
KEY_TAB = 9
KEY_ENTER = (10, 13, curses.KEY_ENTER)
KEY_ESC = 27
KEY_BACKSPACE = (8, 127, curses.KEY_BACKSPACE)

_SORT_KEYS = {
    ord("c"): ProcessSortField.CPU,
    ord("m"): ProcessSortField.MEMORY,
    ord("p"): ProcessSortField.PID,
    ord("n"): ProcessSortField.NAME,
}


class LoopState(Enum):
    IDLE = "idle"
    DRAINING = "draining"
    REFRESHING = "refreshing"
    RENDERING = "rendering"
    SHUTTING_DOWN = "shutting_down"


class EventKind(Enum):
    KEY = "key"
    RESIZE = "resize"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class InputEvent:
    kind: EventKind
    key: int = -1

    @classmethod
    def keypress(cls, key: int | str) -> InputEvent:
        return cls(EventKind.KEY, ord(key) if isinstance(key, str) else key)


NO_EVENT = InputEvent(EventKind.NONE)


# ── Collaborator interfaces ─────────────────────────────────────────────────


class InputSource(Protocol):
    def read(self, timeout: float) -> InputEvent:
        """Wait at most ``timeout`` seconds for one event; 0 means don't wait."""
        ...


class Collector(Protocol):
    def refresh(self) -> SystemSnapshot: ...

    def close(self) -> None: ...


class LogSource(Protocol):
    status: LogStreamStatus
    parse_errors: int
    restarts: int

    def start(self) -> None: ...

    def poll(self) -> Iterable[LogRecord]: ...

    def stop(self) -> None: ...


# Returns the number of body rows it could show, or None if unknown.
Renderer = Callable[[AppView], int | None]


# ── Event loop ──────────────────────────────────────────────────────────────


class EventLoop:
    def __init__(
        self,
        settings: Settings,
        collector: Collector,
        history: HistoryStore,
        log_manager: LogSource | None,
        input_source: InputSource,
        render: Renderer,
        clock: Callable[[], float] = time.monotonic,
        terminate: Callable[[int], bool] = terminate_process,
    ) -> None:
        self.settings = settings
        self.state = ApplicationState(
            history=history,
            logs=LogBuffer(settings.log_capacity),
            refresh_interval=settings.refresh_interval,
            thresholds=settings.thresholds,
        )
        self.loop_state = LoopState.IDLE
        self._collector = collector
        self._log_manager = log_manager
        self._input = input_source
        self._render_frame = render
        self._clock = clock
        self._terminate = terminate
        self._started = False
        self._shut_down = False
        self._epoch = 0.0
        self._next_index = 0

    @property
    def next_refresh_at(self) -> float:
        return self._epoch + self._next_index * self.state.refresh_interval

    # Lifecycle

    def run(self) -> None:
        """Run until the user quits. Shutdown always runs, even on error."""
        try:
            self.start()
            while self.state.running:
                self.tick()
        except KeyboardInterrupt:
            log.info("interrupted")
        finally:
            self.shutdown()

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self._log_manager is not None:
            self._log_manager.start()
            self._sync_log_status(self._log_manager)
        self._epoch = self._clock()
        self._next_index = 0
        self._refresh()
        self._render()

    def tick(self) -> None:
        if not self.state.running:
            return
        if not self._started:
            self.start()

        self.loop_state = LoopState.IDLE
        wait = min(self.settings.poll_timeout, max(0.0, self.next_refresh_at - self._clock()))
        event = self._input.read(wait)

        self.loop_state = LoopState.DRAINING
        self._drain(event)
        if not self.state.running:
            self.shutdown()
            return
        self._poll_logs()

        if self._clock() >= self.next_refresh_at:
            self._refresh()

        self._render()
        self.loop_state = LoopState.IDLE

    def shutdown(self) -> None:
        """Stop the log stream and close the collector. Runs once."""
        if self._shut_down:
            return
        self._shut_down = True
        self.loop_state = LoopState.SHUTTING_DOWN
        self.state.running = False
        try:
            if self._log_manager is not None:
                self._log_manager.stop()
        finally:
            self._collector.close()
            log.info("shut down")

    # Tick phases

    def _drain(self, first: InputEvent) -> None:
        event = first
        handled = 0
        while event.kind is not EventKind.NONE:
            self.handle_event(event)
            handled += 1
            if not self.state.running or handled >= self.settings.max_events_per_tick:
                break
            event = self._input.read(0)

    def _poll_logs(self) -> None:
        if self._log_manager is None:
            return
        self.state.logs.extend(self._log_manager.poll())
        self._sync_log_status(self._log_manager)

    def _sync_log_status(self, manager: LogSource) -> None:
        self.state.log_status = manager.status
        self.state.log_parse_errors = manager.parse_errors
        self.state.log_restarts = manager.restarts

    def _refresh(self) -> None:
        self.loop_state = LoopState.REFRESHING
        snapshot = self._collector.refresh()
        self.state.snapshot = snapshot
        record_history(self.state.history, snapshot)

        # Next deadline is the first boundary strictly after now
        interval = self.state.refresh_interval
        index = math.floor((self._clock() - self._epoch) / interval) + 1
        skipped = index - self._next_index - 1
        if skipped > 0:
            self.state.skipped_refreshes += skipped
            log.debug("refresh overran, skipped %d cycle(s)", skipped)
        self._next_index = max(index, self._next_index + 1)

    def _render(self) -> None:
        self.loop_state = LoopState.RENDERING
        rows = self._render_frame(self.state.view())
        if rows is not None:
            self.state.viewport_height = max(1, rows)

    def _reschedule(self) -> None:
        self._epoch = self._clock()
        self._next_index = 1

    # Input handling

    def handle_event(self, event: InputEvent) -> None:
        if event.kind is EventKind.RESIZE:
            return
        state = self.state
        key = event.key

        if key == KEY_CTRL_C:
            state.running = False
            return
        if state.show_help:
            state.show_help = False
            return
        if state.confirm_kill is not None:
            pid, name = state.confirm_kill
            state.confirm_kill = None
            if key in (ord("y"), ord("Y")):
                log.info("terminating %s (%d)", name, pid)
                self._terminate(pid)
            return
        if state.filter_mode:
            self._filter_key(key)
            return

        if self._global_key(key):
            return
        tab_handler = {
            Tab.PROCESSES: self._process_key,
            Tab.LOGS: self._logs_key,
            Tab.TEMPERATURES: self._temps_key,
        }.get(state.active_tab)
        if tab_handler is not None and tab_handler(key):
            return
        self._scroll_key(key)

    def _global_key(self, key: int) -> bool:
        state = self.state
        if key in (ord("q"), ord("Q")):
            state.running = False
        elif key == ord("?"):
            state.show_help = True
        elif key in (ord("+"), ord("=")):
            self._set_interval(state.refresh_interval - REFRESH_STEP)
        elif key == ord("-"):
            self._set_interval(state.refresh_interval + REFRESH_STEP)
        elif ord("1") <= key <= ord("9"):
            self._select_index(key - ord("1"))
        elif key == ord("0"):
            self._select_index(9)
        elif key == KEY_TAB:
            state.select_tab(state.active_tab.next())
        elif key == curses.KEY_BTAB:
            state.select_tab(state.active_tab.prev())
        elif curses.KEY_F1 <= key <= curses.KEY_F10:
            self._select_index(key - curses.KEY_F1)
        elif key == ord("/") and state.active_tab in (Tab.PROCESSES, Tab.LOGS):
            state.filter_mode = True
            state.filter_buffer = ""
        else:
            return False
        return True

    def _select_index(self, index: int) -> None:
        tab = Tab.from_index(index)
        if tab is not None:
            self.state.select_tab(tab)

    def _set_interval(self, seconds: float) -> None:
        interval = clamp_interval(seconds)
        if interval == self.state.refresh_interval:
            return
        self.state.refresh_interval = interval
        self._reschedule()
        log.debug("refresh interval now %.2fs", interval)

    def _filter_key(self, key: int) -> None:
        state = self.state
        if key == KEY_ESC:
            state.filter_mode = False
            state.filter_buffer = ""
        elif key in KEY_ENTER:
            if state.active_tab is Tab.PROCESSES:
                state.process_filter = state.filter_buffer
                state.selected_row = 0
            elif state.active_tab is Tab.LOGS:
                state.log_filter = state.filter_buffer
            state.filter_mode = False
            state.filter_buffer = ""
            state.scroll_offset = 0
        elif key in KEY_BACKSPACE:
            state.filter_buffer = state.filter_buffer[:-1]
        elif 32 <= key < 127:
            state.filter_buffer += chr(key)

    def _process_rows(self) -> list[ProcessInfo]:
        state = self.state
        return visible_processes(
            state.snapshot.processes,
            state.process_sort,
            state.process_sort_ascending,
            state.process_filter,
            state.tree_mode,
        )

    def _process_key(self, key: int) -> bool:
        state = self.state
        if key in _SORT_KEYS:
            field = _SORT_KEYS[key]
            if field is state.process_sort:
                state.process_sort_ascending = not state.process_sort_ascending
            else:
                state.process_sort = field
                state.process_sort_ascending = False
        elif key == ord("t"):
            state.tree_mode = not state.tree_mode
            state.selected_row = 0
            state.scroll_offset = 0
        elif key == ord("K"):
            rows = self._process_rows()
            if 0 <= state.selected_row < len(rows):
                proc = rows[state.selected_row]
                state.confirm_kill = (proc.pid, proc.name)
        elif key in (ord("j"), curses.KEY_DOWN):
            self._move_selection(1)
        elif key in (ord("k"), curses.KEY_UP):
            self._move_selection(-1)
        elif key == curses.KEY_NPAGE:
            self._move_selection(state.viewport_height)
        elif key == curses.KEY_PPAGE:
            self._move_selection(-state.viewport_height)
        elif key == ord("g"):
            self._move_selection(-state.selected_row)
        elif key == ord("G"):
            self._move_selection(len(self._process_rows()))
        else:
            return False
        return True

    def _move_selection(self, delta: int) -> None:
        """Move the process selection and keep it inside the viewport."""
        state = self.state
        count = len(self._process_rows())
        state.selected_row = max(0, min(state.selected_row + delta, count - 1))
        if state.selected_row < state.scroll_offset:
            state.scroll_offset = state.selected_row
        elif state.selected_row >= state.scroll_offset + state.viewport_height:
            state.scroll_offset = state.selected_row - state.viewport_height + 1

    def _logs_key(self, key: int) -> bool:
        state = self.state
        if key == ord("l"):
            state.log_level_filter = next_level_filter(state.log_level_filter)
            state.scroll_offset = 0
        elif key == ord("a"):
            state.log_auto_scroll = not state.log_auto_scroll
            if not state.log_auto_scroll:
                state.scroll_offset = self._max_offset()
        else:
            return False
        return True

    def _temps_key(self, key: int) -> bool:
        state = self.state
        count = len(state.snapshot.temperatures)
        if key in (ord("j"), curses.KEY_DOWN):
            state.selected_sensor = min(state.selected_sensor + 1, max(0, count - 1))
        elif key in (ord("k"), curses.KEY_UP):
            state.selected_sensor = max(0, state.selected_sensor - 1)
        else:
            return False
        return True

    def _row_count(self) -> int:
        state = self.state
        snap = state.snapshot
        counts = {
            Tab.LOGS: lambda: len(state.visible_logs()),
            Tab.CPU: lambda: snap.cpu.core_count,
            Tab.AI: lambda: len(snap.ai.processes),
            Tab.DISK: lambda: len(snap.disks.devices),
            Tab.NETWORK: lambda: len(snap.network.interfaces),
            Tab.TEMPERATURES: lambda: len(snap.temperatures),
        }
        count = counts.get(state.active_tab)
        return count() if count is not None else 0

    def _max_offset(self) -> int:
        return max(0, self._row_count() - self.state.viewport_height)

    def _scroll_key(self, key: int) -> None:
        state = self.state
        steps = {
            ord("j"): 1,
            curses.KEY_DOWN: 1,
            ord("k"): -1,
            curses.KEY_UP: -1,
            curses.KEY_NPAGE: state.viewport_height,
            curses.KEY_PPAGE: -state.viewport_height,
        }
        if key == ord("g"):
            state.scroll_offset = 0
        elif key == ord("G"):
            state.scroll_offset = self._max_offset()
        elif key in steps:
            state.scroll_offset = max(0, min(state.scroll_offset + steps[key], self._max_offset()))
        else:
            return
        if state.active_tab is Tab.LOGS:
            # Manual scrolling pins the view
            state.log_auto_scroll = False
