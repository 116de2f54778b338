"""Interactive terminal front end for peakmon.

Wires the curses input source and renderer to the event loop. The event loop
owns all state; this module only reads keys and draws the ``AppView`` it is
handed.

Usage:
    peakmon
    peakmon --interval 2 --config path/to/config.toml
    peakmon --log-file /tmp/peakmon.log --no-logs
"""

from __future__ import annotations

import argparse
import curses
import logging
import math
import sys
import time
from pathlib import Path

from peakmon.app import NO_EVENT, EventKind, EventLoop, InputEvent
from peakmon.config import Settings, dump_default_config, load_config
from peakmon.errors import ConfigError, TerminalError
from peakmon.history import HistoryStore
from peakmon.logstream import LogStreamManager, default_log_command
from peakmon.metrics import MetricsCollector
from peakmon.state import AppView, Tab
from peakmon.tabs import TAB_RENDERERS
from peakmon.widgets import (
    C_CRITICAL,
    C_DIM,
    C_TITLE,
    C_WARNING,
    draw_box,
    fmt_uptime,
    init_colors,
    safe,
)

log = logging.getLogger(__name__)

MIN_ROWS = 10
MIN_COLS = 40

_HELP = [
    ("Navigation", None),
    ("1-9, 0", "Switch to tab by number"),
    ("Tab / Shift+Tab", "Cycle through tabs"),
    ("F1-F10", "Switch to tab by function key"),
    ("Scrolling", None),
    ("j / Down", "Scroll down / select next"),
    ("k / Up", "Scroll up / select previous"),
    ("g / G", "Jump to top / bottom"),
    ("PgDn / PgUp", "Page down / page up"),
    ("General", None),
    ("+ / -", "Faster / slower refresh"),
    ("/", "Filter (Processes & Logs)"),
    ("?", "Toggle this help"),
    ("q / Ctrl+C", "Quit"),
    ("Processes", None),
    ("c / m / p / n", "Sort by CPU / Mem / PID / Name"),
    ("t", "Toggle tree view"),
    ("K", "Kill selected process (SIGTERM)"),
    ("Logs", None),
    ("l", "Cycle log level filter"),
    ("a", "Toggle auto-scroll"),
]

_TAB_HINTS = {
    Tab.PROCESSES: "/ filter  c/m/p/n sort  t tree  K kill",
    Tab.LOGS: "/ filter  l level  a autoscroll",
    Tab.TEMPERATURES: "j/k select sensor",
}


# ── Input ──────────────────────────────────────────────────────────────────


class CursesInput:
    """Reads keys from a curses window with a bounded wait."""

    def __init__(self, stdscr: curses.window) -> None:
        self._stdscr = stdscr

    def read(self, timeout: float) -> InputEvent:
        # Round up so a sub-millisecond wait still blocks
        self._stdscr.timeout(max(0, math.ceil(timeout * 1000)))
        key = self._stdscr.getch()
        if key == -1:
            return NO_EVENT
        if key == curses.KEY_RESIZE:
            return InputEvent(EventKind.RESIZE)
        return InputEvent(EventKind.KEY, key)


# ── Rendering ──────────────────────────────────────────────────────────────


class CursesRenderer:
    """Draws one frame per call and reports how many table rows fit."""

    def __init__(self, stdscr: curses.window) -> None:
        self._stdscr = stdscr

    def __call__(self, view: AppView) -> int:
        scr = self._stdscr
        try:
            scr.erase()
            max_y, max_x = scr.getmaxyx()
            if max_y < MIN_ROWS or max_x < MIN_COLS:
                safe(scr, 0, 0, f"Terminal too small (need {MIN_COLS}x{MIN_ROWS}+)")
                scr.refresh()
                return 1

            body_h = max_y - 3
            self._draw_header(view, max_x)
            TAB_RENDERERS[view.active_tab](scr, 2, 0, body_h, max_x, view)
            self._draw_footer(view, max_y - 1, max_x)
            if view.show_help:
                self._draw_help(max_y, max_x)
            elif view.confirm_kill is not None:
                self._draw_confirm(view.confirm_kill, max_y, max_x)
            scr.refresh()
        except curses.error as e:
            raise TerminalError(f"render failed: {e}") from e
        # Rows left for table bodies once borders and the header line are drawn
        return max(1, body_h - 3)

    def _draw_header(self, view: AppView, w: int) -> None:
        scr = self._stdscr
        snap = view.snapshot
        attr = curses.color_pair(C_TITLE) | curses.A_REVERSE
        safe(scr, 0, 0, " " * (w - 1), attr)
        safe(scr, 0, 1, "peakmon", attr | curses.A_BOLD)
        load = snap.cpu.load_avg
        info = (
            f"  {snap.hostname}  up {fmt_uptime(snap.uptime)}"
            f"  load {load[0]:.2f} {load[1]:.2f} {load[2]:.2f}"
        )
        safe(scr, 0, 8, info[: max(0, w - 20)], attr)
        ts = time.strftime("%H:%M:%S")
        safe(scr, 0, max(0, w - len(ts) - 2), ts, attr)

        cx = 1
        for tab in Tab:
            num = (tab.index + 1) % 10
            label = f" {num}:{tab.label} "
            if cx + len(label) >= w:
                break
            if tab is view.active_tab:
                style = curses.color_pair(C_TITLE) | curses.A_REVERSE | curses.A_BOLD
            else:
                style = curses.color_pair(C_DIM)
            safe(scr, 1, cx, label, style)
            cx += len(label) + 1

    def _draw_footer(self, view: AppView, y: int, w: int) -> None:
        scr = self._stdscr
        if view.filter_mode:
            prompt = f" Filter: {view.filter_buffer}_   Enter confirm  Esc cancel"
            safe(scr, y, 0, prompt[: w - 1], curses.color_pair(C_WARNING) | curses.A_BOLD)
            return

        hints = " q quit  Tab switch  +/- rate  ? help  "
        hints += _TAB_HINTS.get(view.active_tab, "j/k scroll")
        status = f"{view.refresh_interval:.2f}s  logs: {view.log_status.value}"
        if view.log_parse_errors:
            status += f" ({view.log_parse_errors} bad)"
        if view.skipped_refreshes:
            status += f"  skipped {view.skipped_refreshes}"
        status += " "

        stale = sorted(view.snapshot.stale)
        stale_text = f" stale: {','.join(stale)}" if stale else ""
        room = w - len(status) - len(stale_text) - 2
        safe(scr, y, 0, hints[: max(0, room)], curses.color_pair(C_DIM))
        if stale_text and room > 0:
            safe(scr, y, room, stale_text, curses.color_pair(C_CRITICAL) | curses.A_BOLD)
        safe(scr, y, max(0, w - len(status) - 1), status, curses.color_pair(C_TITLE))

    def _draw_help(self, max_y: int, max_x: int) -> None:
        h = min(len(_HELP) + 2, max_y - 2)
        w = min(56, max_x - 2)
        y, x = (max_y - h) // 2, (max_x - w) // 2
        box = draw_box(self._stdscr, y, x, h, w, "Help")
        if box is None:
            return
        for row, (key, text) in enumerate(_HELP[: h - 2], start=1):
            safe(box, row, 1, " " * (w - 2))
            if text is None:
                safe(box, row, 2, key, curses.color_pair(C_TITLE) | curses.A_BOLD)
            else:
                safe(box, row, 4, f"{key:<18s}"[: w - 6], curses.color_pair(C_WARNING))
                safe(box, row, 23, text[: max(0, w - 24)], curses.color_pair(C_DIM))

    def _draw_confirm(self, target: tuple[int, str], max_y: int, max_x: int) -> None:
        pid, name = target
        msg = f"Send SIGTERM to {name} ({pid})?  y: yes  other: no"
        w = min(len(msg) + 6, max_x - 2)
        y, x = (max_y - 5) // 2, (max_x - w) // 2
        box = draw_box(self._stdscr, y, x, 5, w, "Kill process")
        if box is None:
            return
        safe(box, 1, 1, " " * (w - 2))
        safe(box, 2, 1, " " * (w - 2))
        safe(box, 2, 3, msg[: w - 6], curses.color_pair(C_CRITICAL) | curses.A_BOLD)
        safe(box, 3, 1, " " * (w - 2))


# ── Session ────────────────────────────────────────────────────────────────


def _build_log_manager(settings: Settings) -> LogStreamManager | None:
    stream = settings.log_stream
    if not stream.enabled:
        return None
    if stream.command:
        command, fmt = stream.command, stream.format or "compact"
    else:
        command, default_fmt = default_log_command()
        fmt = stream.format or default_fmt
    return LogStreamManager(
        command,
        fmt=fmt,
        max_attempts=stream.reconnect_max_attempts,
        base_delay=stream.reconnect_base_delay,
        max_delay=stream.reconnect_max_delay,
    )


def _session(stdscr: curses.window, settings: Settings) -> None:
    try:
        init_colors()
        curses.curs_set(0)
    except curses.error:
        log.debug("terminal has limited colour/cursor support")

    loop = EventLoop(
        settings,
        MetricsCollector(),
        HistoryStore(settings.history_capacity),
        _build_log_manager(settings),
        CursesInput(stdscr),
        CursesRenderer(stdscr),
    )
    loop.run()


def _setup_logging(path: str) -> None:
    """Send peakmon's log records to ``path``, or nowhere while curses owns the tty."""
    logger = logging.getLogger("peakmon")
    handler: logging.Handler
    if path:
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.setLevel(logging.DEBUG)
    else:
        handler = logging.NullHandler()
    logger.addHandler(handler)
    logger.propagate = False


# ── CLI entry point ────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Interactive system monitor with a live system log view.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between refreshes (default: from config, 1.0)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="Path to TOML config file",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        metavar="PATH",
        help="Write diagnostics to this file",
    )
    parser.add_argument(
        "--no-logs",
        action="store_true",
        help="Do not start the system log stream",
    )
    parser.add_argument(
        "--dump-config",
        action="store_true",
        help="Print the default configuration as TOML and exit",
    )
    args = parser.parse_args(argv)

    if args.dump_config:
        print(dump_default_config(), end="")
        return 0

    config = load_config(args.config)
    if args.interval is not None:
        config["refresh_interval"] = args.interval
    if args.log_file is not None:
        config["log_file"] = args.log_file
    if args.no_logs:
        config["log_stream"] = {**config["log_stream"], "enabled": False}

    try:
        settings = Settings.from_config(config)
    except ConfigError as e:
        print(f"peakmon: {e}", file=sys.stderr)
        return 1

    try:
        _setup_logging(settings.log_file)
    except OSError as e:
        print(f"peakmon: cannot open log file: {e}", file=sys.stderr)
        return 1

    try:
        curses.wrapper(_session, settings)
    except KeyboardInterrupt:
        pass
    except TerminalError as e:
        log.error("terminal failure: %s", e)
        print(f"peakmon: {e}", file=sys.stderr)
        return 2
    except curses.error as e:
        log.error("cannot initialise terminal: %s", e)
        print(f"peakmon: cannot initialise terminal: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
