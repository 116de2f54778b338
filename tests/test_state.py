"""Tests for peakmon.state."""

from __future__ import annotations

import dataclasses

import pytest

from peakmon.history import HistoryStore, MetricSample
from peakmon.logstream import LogBuffer, LogRecord, Severity
from peakmon.state import ApplicationState, Tab, clamp_interval


def _state() -> ApplicationState:
    return ApplicationState(
        history=HistoryStore(10),
        logs=LogBuffer(10),
        refresh_interval=1.0,
        thresholds={"cpu_percent": {"warning": 80.0, "critical": 95.0}},
    )


class TestTab:
    def test_order_and_labels(self) -> None:
        assert Tab.from_index(0) is Tab.DASHBOARD
        assert Tab.from_index(3) is Tab.AI
        assert Tab.from_index(8) is Tab.LOGS
        assert Tab.from_index(9) is Tab.TEMPERATURES
        assert Tab.PROCESSES.label == "Processes"
        assert Tab.TEMPERATURES.index == 9
        assert Tab.AI.label == "AI"

    @pytest.mark.parametrize("index", [-1, 10, 42])
    def test_out_of_range(self, index: int) -> None:
        assert Tab.from_index(index) is None

    def test_next_and_prev_wrap(self) -> None:
        assert Tab.TEMPERATURES.next() is Tab.DASHBOARD
        assert Tab.DASHBOARD.prev() is Tab.TEMPERATURES
        assert Tab.CPU.next() is Tab.GPU
        assert Tab.GPU.next() is Tab.AI


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0.1, 0.25), (0.25, 0.25), (3.0, 3.0), (10.0, 10.0), (60.0, 10.0)],
)
def test_clamp_interval(value: float, expected: float) -> None:
    assert clamp_interval(value) == expected


class TestApplicationState:
    def test_select_tab_resets_per_tab_state(self) -> None:
        state = _state()
        state.scroll_offset = 12
        state.selected_row = 4
        state.filter_mode = True
        state.filter_buffer = "py"
        state.confirm_kill = (1, "init")
        state.select_tab(Tab.LOGS)
        assert state.active_tab is Tab.LOGS
        assert (state.scroll_offset, state.selected_row) == (0, 0)
        assert state.filter_mode is False
        assert state.filter_buffer == ""
        assert state.confirm_kill is None

    def test_select_same_tab_keeps_scroll(self) -> None:
        state = _state()
        state.scroll_offset = 5
        state.select_tab(Tab.DASHBOARD)
        assert state.scroll_offset == 5

    def test_visible_logs_filtered(self) -> None:
        state = _state()
        state.logs.append(LogRecord("t", Severity.ERROR, "kernel", "panic"))
        state.logs.append(LogRecord("t", Severity.INFO, "kernel", "fine"))
        state.log_level_filter = Severity.ERROR
        assert [r.message for r in state.visible_logs()] == ["panic"]
        state.log_level_filter = None
        state.log_filter = "FINE"
        assert [r.message for r in state.visible_logs()] == ["fine"]


class TestAppView:
    def test_view_is_a_snapshot(self) -> None:
        state = _state()
        state.history.record("cpu.total", MetricSample(1.0, 10.0))
        view = state.view()
        state.history.record("cpu.total", MetricSample(2.0, 20.0))
        state.active_tab = Tab.CPU
        assert view.history["cpu.total"] == (10.0,)
        assert view.active_tab is Tab.DASHBOARD

    def test_view_is_read_only(self) -> None:
        view = _state().view()
        with pytest.raises(dataclasses.FrozenInstanceError):
            view.scroll_offset = 3  # type: ignore[misc]
        with pytest.raises(TypeError):
            view.thresholds["cpu_percent"] = {}  # type: ignore[index]

    def test_view_copies_fields(self) -> None:
        state = _state()
        state.refresh_interval = 2.5
        state.skipped_refreshes = 3
        state.tree_mode = True
        view = state.view()
        assert view.refresh_interval == 2.5
        assert view.skipped_refreshes == 3
        assert view.tree_mode is True
        assert view.logs == ()
