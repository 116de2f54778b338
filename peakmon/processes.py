"""Process table ordering, filtering, tree view and termination."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from enum import Enum

import psutil

from peakmon.metrics import ProcessInfo

log = logging.getLogger(__name__)


class ProcessSortField(Enum):
    """Sort keys for the process table."""

    CPU = "cpu"
    MEMORY = "mem"
    PID = "pid"
    NAME = "name"


def sort_processes(
    processes: Iterable[ProcessInfo], field: ProcessSortField, ascending: bool = False
) -> list[ProcessInfo]:
    key_func = {
        ProcessSortField.CPU: lambda p: p.cpu_percent,
        ProcessSortField.MEMORY: lambda p: p.memory_rss,
        ProcessSortField.PID: lambda p: p.pid,
        ProcessSortField.NAME: lambda p: p.name.lower(),
    }
    return sorted(processes, key=key_func[field], reverse=not ascending)


def filter_processes(processes: Iterable[ProcessInfo], text: str) -> list[ProcessInfo]:
    """Case-insensitive substring match on the process name."""
    if not text:
        return list(processes)
    needle = text.lower()
    return [p for p in processes if needle in p.name.lower()]


def tree_view(processes: Iterable[ProcessInfo], text: str = "") -> list[ProcessInfo]:
    """Order processes parent-first with ``depth`` set for indentation.

    Roots (no known parent) come by CPU descending; children keep the order
    they had in ``processes``. The name filter is applied after the tree is
    built, so matching children still show their depth.
    """
    procs = list(processes)
    by_pid = {p.pid: p for p in procs}
    children: dict[int, list[int]] = {}
    roots: list[ProcessInfo] = []
    for proc in procs:
        if proc.ppid in by_pid and proc.ppid != proc.pid:
            children.setdefault(proc.ppid, []).append(proc.pid)
        else:
            roots.append(proc)
    roots.sort(key=lambda p: p.cpu_percent, reverse=True)

    result: list[ProcessInfo] = []
    seen: set[int] = set()
    # Members of a parent cycle are reachable from no root; they start their own tree
    starts = [root.pid for root in roots] + [p.pid for p in procs]
    for start in starts:
        stack = [(start, 0)]
        while stack:
            pid, depth = stack.pop()
            if pid in seen:
                continue
            seen.add(pid)
            result.append(dataclasses.replace(by_pid[pid], depth=depth))
            for child in reversed(children.get(pid, [])):
                stack.append((child, depth + 1))

    return filter_processes(result, text)


def visible_processes(
    processes: Iterable[ProcessInfo],
    field: ProcessSortField,
    ascending: bool,
    text: str,
    tree: bool,
) -> list[ProcessInfo]:
    """The rows the process tab shows, in display order."""
    ordered = sort_processes(processes, field, ascending)
    if tree:
        return tree_view(ordered, text)
    return filter_processes(ordered, text)


def terminate_process(pid: int) -> bool:
    """Send SIGTERM to ``pid``. Returns False if it is gone or not ours."""
    try:
        psutil.Process(pid).terminate()
    except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
        log.warning("could not terminate %d: %s", pid, e)
        return False
    log.info("sent SIGTERM to %d", pid)
    return True
