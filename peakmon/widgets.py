"""Curses drawing primitives and value formatting shared by every tab."""

from __future__ import annotations

import curses
from collections.abc import Mapping, Sequence
from typing import Any

SPARK = " ▁▂▃▄▅▆▇█"
BAR_FILL = "█"
BAR_EMPTY = "░"

# Curses colour-pair IDs
C_NORMAL = 1
C_WARNING = 2
C_CRITICAL = 3
C_TITLE = 4
C_DIM = 5
C_BLUE = 6
C_MAUVE = 7

# Used when a threshold table is missing from the config
_DEFAULT_LEVELS = (80.0, 95.0)


# ── Colour helpers ─────────────────────────────────────────────────────────


def init_colors() -> None:
    curses.start_color()
    curses.use_default_colors()
    curses.init_pair(C_NORMAL, curses.COLOR_GREEN, -1)
    curses.init_pair(C_WARNING, curses.COLOR_YELLOW, -1)
    curses.init_pair(C_CRITICAL, curses.COLOR_RED, -1)
    curses.init_pair(C_TITLE, curses.COLOR_CYAN, -1)
    curses.init_pair(C_DIM, curses.COLOR_WHITE, -1)
    curses.init_pair(C_BLUE, curses.COLOR_BLUE, -1)
    curses.init_pair(C_MAUVE, curses.COLOR_MAGENTA, -1)


def severity_color(value: float, warn: float, crit: float) -> int:
    if value >= crit:
        return C_CRITICAL
    if value >= warn:
        return C_WARNING
    return C_NORMAL


def levels(thresholds: Mapping[str, Mapping[str, float]], metric: str) -> tuple[float, float]:
    """Warning and critical level for ``metric``."""
    table = thresholds.get(metric)
    if not table:
        return _DEFAULT_LEVELS
    return (
        float(table.get("warning", _DEFAULT_LEVELS[0])),
        float(table.get("critical", _DEFAULT_LEVELS[1])),
    )


def threshold_color(
    value: float, thresholds: Mapping[str, Mapping[str, float]], metric: str
) -> int:
    warn, crit = levels(thresholds, metric)
    return severity_color(value, warn, crit)


# ── Formatting helpers ─────────────────────────────────────────────────────


def fmt_bytes(n: int | float) -> str:
    """Human-readable byte count (binary prefixes)."""
    v = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(v) < 1024:
            return f"{v:.1f} {unit}"
        v /= 1024
    return f"{v:.1f} TiB"


def fmt_rate(bps: float) -> str:
    """Human-readable transfer rate."""
    if bps < 1024:
        return f"{bps:.0f} B/s"
    if bps < 1024 * 1024:
        return f"{bps / 1024:.1f} KB/s"
    if bps < 1024**3:
        return f"{bps / 1024 ** 2:.1f} MB/s"
    return f"{bps / 1024 ** 3:.1f} GB/s"


def fmt_uptime(seconds: float) -> str:
    """``2d 3h 4m``, ``3h 4m`` or ``4m 5s``."""
    secs = max(0, int(seconds))
    days, rem = divmod(secs, 86400)
    hours, rem = divmod(rem, 3600)
    mins, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {mins}m"
    if hours:
        return f"{hours}h {mins}m"
    return f"{mins}m {secs}s"


def fmt_duration(seconds: int | None) -> str:
    if seconds is None:
        return "--"
    hours, rem = divmod(seconds, 3600)
    return f"{hours}h {rem // 60:02d}m"


def truncate(text: str, width: int) -> str:
    if width <= 0:
        return ""
    if len(text) <= width:
        return text
    if width <= 3:
        return text[:width]
    return text[: width - 3] + "..."


# ── Curses drawing primitives ──────────────────────────────────────────────


def safe(win: curses.window, *args: Any) -> None:
    """addstr wrapper that swallows out-of-bounds errors."""
    try:
        win.addstr(*args)
    except curses.error:
        pass


def draw_box(
    win: curses.window,
    y: int,
    x: int,
    h: int,
    w: int,
    title: str = "",
) -> curses.window | None:
    """Draw a bordered box and return the inner sub-window."""
    max_y, max_x = win.getmaxyx()
    h = min(h, max_y - y)
    w = min(w, max_x - x)
    if h < 3 or w < 4:
        return None
    try:
        sub = win.subwin(h, w, y, x)
        sub.box()
        if title and len(title) + 4 < w:
            sub.addstr(0, 2, f" {title} ", curses.color_pair(C_TITLE) | curses.A_BOLD)
        return sub
    except curses.error:
        return None


def draw_bar(
    win: curses.window,
    y: int,
    x: int,
    width: int,
    pct: float,
    label: str = "",
    color: int = C_NORMAL,
    suffix: str | None = None,
) -> None:
    """Render ``label ████░░░░ suffix`` on one line."""
    max_y, max_x = win.getmaxyx()
    if y >= max_y - 1 or x >= max_x - 1:
        return

    cx = x
    if label:
        safe(win, y, cx, f"{label:>6s} ", curses.color_pair(C_DIM))
        cx += 7

    if suffix is None:
        suffix = f" {pct:5.1f}%"

    bar_w = min(width - (cx - x) - len(suffix), max_x - cx - len(suffix) - 1)
    if bar_w < 3:
        return

    filled = int(bar_w * max(0.0, min(pct, 100.0)) / 100.0)
    empty = bar_w - filled

    safe(win, y, cx, BAR_FILL * filled, curses.color_pair(color) | curses.A_BOLD)
    safe(win, BAR_EMPTY * empty, curses.color_pair(C_DIM))
    safe(win, suffix, curses.color_pair(color) | curses.A_BOLD)


def sparkline(values: Sequence[float], width: int, max_val: float | None = None) -> str:
    """Block characters for the most recent ``width`` values.

    With no ``max_val`` the series is scaled to its own peak.
    """
    if width < 1 or not values:
        return ""
    recent = list(values)[-width:]
    top = max_val if max_val is not None else max(recent)
    if top <= 0:
        return SPARK[0] * len(recent)
    chars: list[str] = []
    for v in recent:
        idx = int(min(max(v, 0.0) / top, 1.0) * (len(SPARK) - 1))
        chars.append(SPARK[idx])
    return "".join(chars)


def draw_sparkline(
    win: curses.window,
    y: int,
    x: int,
    width: int,
    history: Sequence[float],
    max_val: float | None = 100.0,
    color: int = C_BLUE,
) -> None:
    """Render a sparkline from the most recent *width* history values."""
    max_y, max_x = win.getmaxyx()
    if y >= max_y - 1 or x >= max_x - 1:
        return
    w = min(width, max_x - x - 1)
    line = sparkline(history, w, max_val)
    if line:
        safe(win, y, x, line, curses.color_pair(color))
