"""Tab bodies. Each drawer fills the box ``(y, x, h, w)`` of ``win`` from an AppView."""

from __future__ import annotations

import curses
from collections.abc import Callable

from peakmon.logstream import Severity
from peakmon.metrics import sensor_metric_id
from peakmon.processes import visible_processes
from peakmon.state import AppView, Tab
from peakmon.widgets import (
    C_BLUE,
    C_CRITICAL,
    C_DIM,
    C_MAUVE,
    C_NORMAL,
    C_TITLE,
    C_WARNING,
    draw_bar,
    draw_box,
    draw_sparkline,
    fmt_bytes,
    fmt_duration,
    fmt_rate,
    levels,
    safe,
    severity_color,
    threshold_color,
    truncate,
)

_SEVERITY_COLORS = {
    Severity.FAULT: C_CRITICAL,
    Severity.ERROR: C_CRITICAL,
    Severity.WARNING: C_WARNING,
    Severity.NOTICE: C_BLUE,
    Severity.INFO: C_NORMAL,
    Severity.DEBUG: C_MAUVE,
    Severity.DEFAULT: C_DIM,
}


def _title(view: AppView, text: str, category: str) -> str:
    return f"{text} (stale)" if view.snapshot.is_stale(category) else text


def _rate_scale(values: tuple[float, ...]) -> float:
    return max(max(values, default=0.0), 1.0)


def _draw_rate_row(
    win: curses.window,
    y: int,
    x: int,
    w: int,
    label: str,
    rate: float,
    history: tuple[float, ...],
    color: int = C_BLUE,
) -> None:
    """``label   12.3 KB/s ▂▃▅▂`` with the sparkline scaled to its own peak."""
    text = f"{label:<8s} {fmt_rate(rate):>11s} "
    safe(win, y, x, text, curses.color_pair(C_DIM))
    draw_sparkline(win, y, x + len(text), w - len(text), history, _rate_scale(history), color)


# ── Dashboard ──────────────────────────────────────────────────────────────


def draw_dashboard(
    win: curses.window, y: int, x: int, h: int, w: int, view: AppView
) -> None:
    snap = view.snapshot
    two_col = w >= 82
    col_w = w // 2 if two_col else w
    top_h = 9 if snap.battery is not None else 8

    box = draw_box(win, y, x, top_h, col_w, "Overview")
    if box is not None:
        inner = col_w - 3
        cpu_color = threshold_color(snap.cpu.total, view.thresholds, "cpu_percent")
        draw_bar(box, 1, 1, inner, snap.cpu.total, "CPU", cpu_color)
        draw_sparkline(box, 2, 8, inner - 8, view.history.get("cpu.total", ()))

        mem = snap.memory
        ram_color = threshold_color(mem.ram_percent, view.thresholds, "ram_percent")
        draw_bar(box, 3, 1, inner, mem.ram_percent, "RAM", ram_color)
        detail = f"{fmt_bytes(mem.ram_used)} / {fmt_bytes(mem.ram_total)}"
        safe(box, 4, 8, detail[: inner - 8], curses.color_pair(C_DIM))
        swap_color = threshold_color(mem.swap_percent, view.thresholds, "swap_percent")
        draw_bar(box, 5, 1, inner, mem.swap_percent, "Swap", swap_color)

        if snap.battery is not None:
            batt = snap.battery
            if batt.plugged:
                state = "charging"
            else:
                state = f"{fmt_duration(batt.secs_left)} left"
            color = severity_color(100.0 - batt.percent, 80.0, 90.0)
            suffix = f" {batt.percent:3.0f}% {state}"
            draw_bar(box, 6, 1, inner, batt.percent, "Batt", color, suffix)

    io_y, io_x = (y, x + col_w) if two_col else (y + top_h, x)
    io_w = w - col_w if two_col else w
    box = draw_box(win, io_y, io_x, top_h, io_w, "Disk & Network")
    if box is not None:
        rates = [
            ("Read", snap.disks.read_rate, "disk.read"),
            ("Write", snap.disks.write_rate, "disk.write"),
            ("RX", snap.network.rx_rate, "net.rx"),
            ("TX", snap.network.tx_rate, "net.tx"),
        ]
        for row, (label, rate, metric) in enumerate(rates, start=1):
            hist = view.history.get(metric, ())
            _draw_rate_row(box, row, 2, io_w - 5, label, rate, hist)

    procs_y = io_y + top_h
    if procs_y < y + h - 3:
        _draw_process_rows(win, procs_y, x, y + h - procs_y, w, view, summary=True)


# ── CPU ────────────────────────────────────────────────────────────────────


def draw_cpu(win: curses.window, y: int, x: int, h: int, w: int, view: AppView) -> None:
    cpu = view.snapshot.cpu
    title = _title(view, f"CPU ({cpu.core_count} cores)", "cpu")
    box = draw_box(win, y, x, h, w, title)
    if box is None:
        return
    warn, crit = levels(view.thresholds, "cpu_percent")
    draw_bar(box, 1, 1, w - 3, cpu.total, "Total", severity_color(cpu.total, warn, crit))
    draw_sparkline(box, 2, 8, w - 11, view.history.get("cpu.total", ()))
    load = f"Load {cpu.load_avg[0]:.2f}  {cpu.load_avg[1]:.2f}  {cpu.load_avg[2]:.2f}"
    safe(box, 3, 8, load[: w - 11], curses.color_pair(C_DIM))

    # Per-core: bar on the left, history on the right
    half = (w - 3) // 2
    visible = max(0, h - 6)
    start = view.scroll_offset
    for row, pct in enumerate(cpu.per_core[start : start + visible], start=5):
        core = start + row - 5
        color = severity_color(pct, warn, crit)
        draw_bar(box, row, 1, half, pct, f"#{core}", color)
        hist = view.history.get(f"cpu.core.{core}", ())
        draw_sparkline(box, row, half + 2, w - half - 5, hist)


# ── GPU ────────────────────────────────────────────────────────────────────


def draw_gpu(win: curses.window, y: int, x: int, h: int, w: int, view: AppView) -> None:
    gpu = view.snapshot.gpu
    title = f"GPU - {gpu.name}" if gpu is not None else "GPU"
    box = draw_box(win, y, x, h, w, _title(view, truncate(title, w - 16), "gpu"))
    if box is None:
        return
    if gpu is None:
        safe(box, 1, 2, "No GPU telemetry available", curses.color_pair(C_DIM))
        return

    draw_bar(box, 1, 1, w - 3, gpu.util, "Load", severity_color(gpu.util, 80.0, 95.0))
    draw_sparkline(box, 2, 8, w - 11, view.history.get("gpu.util", ()))
    row = 4
    if gpu.mem_total > 0:
        pct = gpu.mem_used / gpu.mem_total * 100
        draw_bar(box, row, 1, w - 3, pct, "VRAM", severity_color(pct, 80.0, 95.0))
        detail = f"{gpu.mem_used:.0f} MiB / {gpu.mem_total:.0f} MiB"
        safe(box, row + 1, 8, detail, curses.color_pair(C_DIM))
        row += 3

    temp_pct = min(gpu.temp / 110.0 * 100.0, 100.0)
    color = threshold_color(gpu.temp, view.thresholds, "cpu_temp")
    draw_bar(box, row, 1, w - 3, temp_pct, "Temp", color, f" {gpu.temp:.0f} C")
    power = f"Power {gpu.power:.0f}W / {gpu.power_limit:.0f}W"
    safe(box, row + 2, 2, power, curses.color_pair(C_DIM))


# ── AI ─────────────────────────────────────────────────────────────────────


def draw_ai(win: curses.window, y: int, x: int, h: int, w: int, view: AppView) -> None:
    ai = view.snapshot.ai
    # Service grid: one dot and name per cell
    cell_w = 24
    cols = max(1, (w - 4) // cell_w)
    grid_rows = max(1, -(-len(ai.services) // cols))
    title = _title(view, f"AI Services ({len(ai.detected)} running)", "processes")
    box = draw_box(win, y, x, grid_rows + 2, w, title)
    if box is not None:
        if not ai.services:
            safe(box, 1, 2, "No process data yet", curses.color_pair(C_DIM))
        for i, service in enumerate(ai.services):
            row, col = 1 + i // cols, 2 + (i % cols) * cell_w
            dot, color = ("●", C_NORMAL) if service.detected else ("○", C_DIM)
            safe(box, row, col, f"{dot} ", curses.color_pair(color))
            text = service.name
            if service.pid is not None:
                text += f" [{service.pid}]"
            safe(box, truncate(text, cell_w - 3), curses.color_pair(C_TITLE))

    usage_y = y + grid_rows + 2
    box = draw_box(win, usage_y, x, 4, w, "AI Resource Usage")
    if box is not None:
        summary = (
            f"CPU {ai.cpu_percent:5.1f}%   MEM {fmt_bytes(ai.memory_rss)}"
            f"   {len(ai.processes)} process(es)"
        )
        safe(box, 1, 2, summary[: w - 5], curses.color_pair(C_BLUE))
        hist = view.history.get("ai.cpu", ())
        draw_sparkline(box, 2, 2, w - 5, hist, max(100.0, max(hist, default=0.0)), C_MAUVE)

    table_y = usage_y + 4
    if table_y >= y + h - 2:
        return
    table_h = y + h - table_y
    box = draw_box(win, table_y, x, table_h, w, f"AI Processes ({len(ai.processes)})")
    if box is None:
        return
    if not ai.processes:
        safe(box, 1, 2, "No AI processes running", curses.color_pair(C_DIM))
        return
    hdr = f" {'PID':>7s}  {'NAME':<20s} {'CPU%':>6s}  {'MEM':>10s}  COMMAND"
    safe(box, 1, 1, hdr[: w - 3], curses.color_pair(C_TITLE) | curses.A_BOLD)
    visible = max(0, table_h - 3)
    start = view.scroll_offset
    for row, p in enumerate(ai.processes[start : start + visible], start=2):
        line = (
            f" {p.pid:>7d}  {truncate(p.name, 20):<20s} {p.cpu_percent:>5.1f}%"
            f"  {fmt_bytes(p.memory_rss):>10s}  {p.command_line}"
        )
        color = severity_color(p.cpu_percent, 20.0, 50.0)
        safe(box, row, 1, line[: w - 3], curses.color_pair(color))


# ── Memory ─────────────────────────────────────────────────────────────────


def draw_memory(
    win: curses.window, y: int, x: int, h: int, w: int, view: AppView
) -> None:
    mem = view.snapshot.memory
    box = draw_box(win, y, x, h, w, _title(view, "Memory", "memory"))
    if box is None:
        return
    gauges = (
        ("RAM", mem.ram_percent, mem.ram_used, mem.ram_total, "ram"),
        ("Swap", mem.swap_percent, mem.swap_used, mem.swap_total, "swap"),
    )
    row = 1
    for label, pct, used, total, key in gauges:
        color = threshold_color(pct, view.thresholds, f"{key}_percent")
        draw_bar(box, row, 1, w - 3, pct, label, color)
        detail = f"{fmt_bytes(used)} / {fmt_bytes(total)}"
        safe(box, row + 1, 8, detail, curses.color_pair(C_DIM))
        draw_sparkline(box, row + 2, 8, w - 11, view.history.get(f"mem.{key}", ()))
        row += 4
    available = f"Available {fmt_bytes(mem.ram_available)}"
    safe(box, row, 2, available, curses.color_pair(C_DIM))


# ── Disk ───────────────────────────────────────────────────────────────────


def draw_disk(win: curses.window, y: int, x: int, h: int, w: int, view: AppView) -> None:
    disks = view.snapshot.disks
    title = _title(view, f"Volumes ({len(disks.devices)})", "disks")
    box = draw_box(win, y, x, h, w, title)
    if box is None:
        return

    hdr = (
        f" {'NAME':<16s} {'MOUNT':<16s} {'TOTAL':>10s} {'FREE':>10s}"
        f" {'READ':>11s} {'WRITE':>11s}    USE"
    )
    safe(box, 1, 1, hdr[: w - 3], curses.color_pair(C_TITLE) | curses.A_BOLD)
    visible = max(0, h - 7)
    start = view.scroll_offset
    for row, dev in enumerate(disks.devices[start : start + visible], start=2):
        line = (
            f" {truncate(dev.name, 16):<16s} {truncate(dev.mount_point, 16):<16s}"
            f" {fmt_bytes(dev.total):>10s} {fmt_bytes(dev.free):>10s}"
            f" {fmt_rate(dev.read_rate):>11s} {fmt_rate(dev.write_rate):>11s}"
        )
        safe(box, row, 1, line[: w - 3], curses.color_pair(C_DIM))
        color = threshold_color(dev.percent, view.thresholds, "disk_percent")
        safe(box, f" {dev.percent:5.1f}%", curses.color_pair(color))

    row = h - 4
    for label, rate, metric in (
        ("Read", disks.read_rate, "disk.read"),
        ("Write", disks.write_rate, "disk.write"),
    ):
        _draw_rate_row(box, row, 2, w - 5, label, rate, view.history.get(metric, ()))
        row += 1


# ── Network ────────────────────────────────────────────────────────────────


def draw_network(
    win: curses.window, y: int, x: int, h: int, w: int, view: AppView
) -> None:
    net = view.snapshot.network
    box = draw_box(win, y, x, h, w, _title(view, "Network", "network"))
    if box is None:
        return
    _draw_rate_row(
        box, 1, 2, w - 5, "Total RX", net.rx_rate, view.history.get("net.rx", ()), C_NORMAL
    )
    _draw_rate_row(
        box, 2, 2, w - 5, "Total TX", net.tx_rate, view.history.get("net.tx", ())
    )

    # Three rows per interface: name and totals, then RX and TX
    row = 4
    visible = max(0, (h - row - 1) // 3)
    start = view.scroll_offset
    for iface in net.interfaces[start : start + visible]:
        safe(box, row, 2, iface.name, curses.color_pair(C_TITLE) | curses.A_BOLD)
        totals = f"  total rx {fmt_bytes(iface.rx_total)}  tx {fmt_bytes(iface.tx_total)}"
        safe(box, totals[: max(0, w - len(iface.name) - 6)], curses.color_pair(C_DIM))
        rx_hist = view.history.get(f"net.{iface.name}.rx", ())
        tx_hist = view.history.get(f"net.{iface.name}.tx", ())
        _draw_rate_row(box, row + 1, 4, w - 7, "RX", iface.rx_rate, rx_hist, C_NORMAL)
        _draw_rate_row(box, row + 2, 4, w - 7, "TX", iface.tx_rate, tx_hist)
        row += 3


# ── Processes ──────────────────────────────────────────────────────────────


def _draw_process_rows(
    win: curses.window,
    y: int,
    x: int,
    h: int,
    w: int,
    view: AppView,
    summary: bool = False,
) -> None:
    procs = view.snapshot.processes
    if summary:
        # Dashboard panel: busiest first, no selection or filter
        rows = visible_processes(procs, view.process_sort, False, "", False)
        offset, selected = 0, -1
        title = "Top Processes"
    else:
        rows = visible_processes(
            procs,
            view.process_sort,
            view.process_sort_ascending,
            view.process_filter,
            view.tree_mode,
        )
        offset, selected = view.scroll_offset, view.selected_row
        title = f"Processes ({len(rows)}/{len(procs)})"
        if view.tree_mode:
            title += " [tree]"
        if view.process_filter:
            title += f" [filter: {view.process_filter}]"
    box = draw_box(win, y, x, h, w, _title(view, truncate(title, w - 16), "processes"))
    if box is None:
        return

    cols = {"pid": "PID", "cpu": "CPU%", "mem": "MEM", "name": "NAME"}
    cols[view.process_sort.value] += "^" if view.process_sort_ascending else "v"
    hdr = (
        f" {cols['pid']:>7s}  {'USER':<10s} S  {cols['cpu']:>6s}"
        f"  {cols['mem']:>10s}  {cols['name']}"
    )
    safe(box, 1, 1, hdr[: w - 3], curses.color_pair(C_TITLE) | curses.A_BOLD)

    visible = max(0, h - 3)
    for i, p in enumerate(rows[offset : offset + visible]):
        name = "  " * min(p.depth, 8) + p.name
        line = (
            f" {p.pid:>7d}  {truncate(p.username, 10):<10s} {p.status[:1]:1s}"
            f"  {p.cpu_percent:>5.1f}%  {fmt_bytes(p.memory_rss):>10s}  {name}"
        )
        attr = curses.color_pair(severity_color(p.cpu_percent, 20.0, 50.0))
        if offset + i == selected:
            attr |= curses.A_REVERSE
        safe(box, 2 + i, 1, line[: w - 3].ljust(w - 3), attr)


def draw_processes(
    win: curses.window, y: int, x: int, h: int, w: int, view: AppView
) -> None:
    _draw_process_rows(win, y, x, h, w, view)


# ── Logs ───────────────────────────────────────────────────────────────────


def draw_logs(win: curses.window, y: int, x: int, h: int, w: int, view: AppView) -> None:
    records = view.logs
    title = f"Logs ({len(records)})"
    if view.log_level_filter is not None:
        title += f" [level: {view.log_level_filter.value}]"
    if view.log_filter:
        title += f" [filter: {view.log_filter}]"
    if view.log_auto_scroll:
        title += " [auto-scroll]"
    box = draw_box(win, y, x, h, w, truncate(title, w - 8))
    if box is None:
        return
    if not records:
        status = f"No log records ({view.log_status.value})"
        safe(box, 1, 2, status, curses.color_pair(C_DIM))
        return

    visible = max(0, h - 2)
    last_start = max(0, len(records) - visible)
    offset = last_start if view.log_auto_scroll else min(view.scroll_offset, last_start)
    for row, rec in enumerate(records[offset : offset + visible], start=1):
        safe(box, row, 1, f"{rec.timestamp} "[: w - 3], curses.color_pair(C_DIM))
        color = _SEVERITY_COLORS[rec.severity]
        safe(box, f"[{rec.severity.value}] ", curses.color_pair(color))
        safe(box, f"{rec.subsystem}: ", curses.color_pair(C_BLUE))
        _, cx = box.getyx()
        if cx < w - 2:
            safe(box, row, cx, rec.message[: w - 2 - cx])


# ── Temperatures ───────────────────────────────────────────────────────────


def draw_temperatures(
    win: curses.window, y: int, x: int, h: int, w: int, view: AppView
) -> None:
    sensors = view.snapshot.temperatures
    if not sensors:
        box = draw_box(win, y, x, h, w, _title(view, "Temperatures", "temperatures"))
        if box is not None:
            msg = "No temperature sensors available."
            safe(box, 1, 2, msg, curses.color_pair(C_DIM))
        return

    warn, crit = levels(view.thresholds, "cpu_temp")
    selected = min(view.selected_sensor, len(sensors) - 1)
    list_h = max(3, min(len(sensors) + 2, h - 6))
    title = f"Sensors (selected: {sensors[selected].label})"
    box = draw_box(win, y, x, list_h, w, _title(view, truncate(title, w - 16), "temperatures"))
    if box is not None:
        visible = list_h - 2
        start = max(0, selected - visible + 1)
        for row, sensor in enumerate(sensors[start : start + visible], start=1):
            marker = ">" if start + row - 1 == selected else " "
            color = severity_color(sensor.current, warn, crit)
            label = f"{marker} {truncate(sensor.label, 24):<24s}"
            safe(box, row, 1, label, curses.color_pair(C_TITLE))
            pct = min(sensor.current / 110.0 * 100.0, 100.0)
            draw_bar(box, row, 27, w - 30, pct, "", color, f" {sensor.current:5.1f} C")

    sensor = sensors[selected]
    title = truncate(f"{sensor.label} History", w - 8)
    box = draw_box(win, y + list_h, x, h - list_h, w, title)
    if box is None:
        return
    color = severity_color(sensor.current, warn, crit)
    safe(box, 1, 2, f"{sensor.current:.1f} C", curses.color_pair(color) | curses.A_BOLD)
    if sensor.high is not None:
        safe(box, f"  high {sensor.high:.0f} C", curses.color_pair(C_DIM))
    hist = view.history.get(sensor_metric_id(sensor.label), ())
    draw_sparkline(box, 2, 2, w - 5, hist, 110.0, C_WARNING)


TabDrawer = Callable[[curses.window, int, int, int, int, AppView], None]

TAB_RENDERERS: dict[Tab, TabDrawer] = {
    Tab.DASHBOARD: draw_dashboard,
    Tab.CPU: draw_cpu,
    Tab.GPU: draw_gpu,
    Tab.AI: draw_ai,
    Tab.MEMORY: draw_memory,
    Tab.DISK: draw_disk,
    Tab.NETWORK: draw_network,
    Tab.PROCESSES: draw_processes,
    Tab.LOGS: draw_logs,
    Tab.TEMPERATURES: draw_temperatures,
}
