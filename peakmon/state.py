"""Application state owned by the event loop, and the read-only view of it."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from peakmon.config import MAX_REFRESH_INTERVAL, MIN_REFRESH_INTERVAL
from peakmon.history import HistoryStore
from peakmon.logstream import (
    LogBuffer,
    LogRecord,
    LogStreamStatus,
    Severity,
    filter_records,
)
from peakmon.metrics import SystemSnapshot
from peakmon.processes import ProcessSortField

REFRESH_STEP = 0.25


class Tab(Enum):
    DASHBOARD = "Dashboard"
    CPU = "CPU"
    GPU = "GPU"
    AI = "AI"
    MEMORY = "Memory"
    DISK = "Disk"
    NETWORK = "Network"
    PROCESSES = "Processes"
    LOGS = "Logs"
    TEMPERATURES = "Temps"

    @property
    def label(self) -> str:
        return self.value

    @property
    def index(self) -> int:
        return _TAB_ORDER.index(self)

    def next(self) -> Tab:
        return _TAB_ORDER[(self.index + 1) % len(_TAB_ORDER)]

    def prev(self) -> Tab:
        return _TAB_ORDER[(self.index - 1) % len(_TAB_ORDER)]

    @classmethod
    def from_index(cls, index: int) -> Tab | None:
        """Tab at a zero-based position, or None when out of range."""
        if 0 <= index < len(_TAB_ORDER):
            return _TAB_ORDER[index]
        return None


_TAB_ORDER: tuple[Tab, ...] = tuple(Tab)


def clamp_interval(seconds: float) -> float:
    return min(MAX_REFRESH_INTERVAL, max(MIN_REFRESH_INTERVAL, seconds))


@dataclass(frozen=True)
class AppView:
    """Everything the renderer may look at for one frame."""

    snapshot: SystemSnapshot
    history: Mapping[str, tuple[float, ...]]
    logs: tuple[LogRecord, ...]
    log_status: LogStreamStatus
    log_parse_errors: int
    log_restarts: int
    log_level_filter: Severity | None
    log_auto_scroll: bool
    active_tab: Tab
    process_sort: ProcessSortField
    process_sort_ascending: bool
    process_filter: str
    log_filter: str
    tree_mode: bool
    scroll_offset: int
    selected_row: int
    selected_sensor: int
    filter_mode: bool
    filter_buffer: str
    show_help: bool
    confirm_kill: tuple[int, str] | None
    refresh_interval: float
    skipped_refreshes: int
    thresholds: Mapping[str, Mapping[str, float]]


@dataclass
class ApplicationState:
    """The one mutable aggregate. Only the event loop writes to it."""

    history: HistoryStore
    logs: LogBuffer
    refresh_interval: float
    thresholds: dict[str, dict[str, float]] = field(default_factory=dict)
    snapshot: SystemSnapshot = field(default_factory=SystemSnapshot.empty)
    log_status: LogStreamStatus = LogStreamStatus.IDLE
    log_parse_errors: int = 0
    log_restarts: int = 0
    log_level_filter: Severity | None = None
    log_filter: str = ""
    log_auto_scroll: bool = True
    active_tab: Tab = Tab.DASHBOARD
    process_sort: ProcessSortField = ProcessSortField.CPU
    process_sort_ascending: bool = False
    process_filter: str = ""
    tree_mode: bool = False
    scroll_offset: int = 0
    selected_row: int = 0
    selected_sensor: int = 0
    filter_mode: bool = False
    filter_buffer: str = ""
    show_help: bool = False
    confirm_kill: tuple[int, str] | None = None
    skipped_refreshes: int = 0
    running: bool = True
    viewport_height: int = 20

    def select_tab(self, tab: Tab) -> None:
        if tab is self.active_tab:
            return
        self.active_tab = tab
        self.scroll_offset = 0
        self.selected_row = 0
        self.filter_mode = False
        self.filter_buffer = ""
        self.confirm_kill = None

    def visible_logs(self) -> tuple[LogRecord, ...]:
        return tuple(filter_records(self.logs, self.log_level_filter, self.log_filter))

    def view(self) -> AppView:
        return AppView(
            snapshot=self.snapshot,
            history=self.history.snapshot(),
            logs=self.visible_logs(),
            log_status=self.log_status,
            log_parse_errors=self.log_parse_errors,
            log_restarts=self.log_restarts,
            log_level_filter=self.log_level_filter,
            log_auto_scroll=self.log_auto_scroll,
            active_tab=self.active_tab,
            process_sort=self.process_sort,
            process_sort_ascending=self.process_sort_ascending,
            process_filter=self.process_filter,
            log_filter=self.log_filter,
            tree_mode=self.tree_mode,
            scroll_offset=self.scroll_offset,
            selected_row=self.selected_row,
            selected_sensor=self.selected_sensor,
            filter_mode=self.filter_mode,
            filter_buffer=self.filter_buffer,
            show_help=self.show_help,
            confirm_kill=self.confirm_kill,
            refresh_interval=self.refresh_interval,
            skipped_refreshes=self.skipped_refreshes,
            thresholds=MappingProxyType(self.thresholds),
        )
