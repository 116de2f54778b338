"""System metric collection for peakmon.

``MetricsCollector.refresh()`` queries every resource category through
psutil and returns one immutable ``SystemSnapshot``. A category whose query
fails keeps its previous value and is listed in ``snapshot.stale``; the rest
of the refresh carries on.
"""

from __future__ import annotations

import logging
import os
import socket
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import psutil

from peakmon.ai import AiStats, summarize as summarize_ai
from peakmon.errors import TransientMetricError
from peakmon.history import HistoryStore, MetricSample

log = logging.getLogger(__name__)

CATEGORIES = (
    "cpu",
    "memory",
    "disks",
    "network",
    "processes",
    "ai",
    "temperatures",
    "gpu",
    "battery",
)

# Exceptions that mean "this sensor is unavailable right now"
_QUERY_ERRORS: tuple[type[BaseException], ...] = (
    psutil.Error,
    OSError,
    RuntimeError,
    AttributeError,
    NotImplementedError,
    ValueError,
    subprocess.SubprocessError,
)

_MIN_DISK_BYTES = 1_000_000  # skip tiny/virtual filesystems

_PROCESS_ATTRS = [
    "pid",
    "ppid",
    "name",
    "username",
    "status",
    "cpu_percent",
    "memory_percent",
    "memory_info",
    "num_threads",
    "cmdline",
]


# ── Data types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class CpuStats:
    total: float = 0.0
    per_core: tuple[float, ...] = ()
    load_avg: tuple[float, float, float] = (0.0, 0.0, 0.0)

    @property
    def core_count(self) -> int:
        return len(self.per_core)


@dataclass(frozen=True, slots=True)
class MemoryStats:
    ram_total: int = 0
    ram_used: int = 0
    ram_available: int = 0
    ram_percent: float = 0.0
    swap_total: int = 0
    swap_used: int = 0
    swap_percent: float = 0.0


@dataclass(frozen=True, slots=True)
class DiskDevice:
    name: str
    mount_point: str
    fstype: str
    total: int
    used: int
    free: int
    percent: float
    read_rate: float = 0.0
    write_rate: float = 0.0


@dataclass(frozen=True, slots=True)
class DiskStats:
    devices: tuple[DiskDevice, ...] = ()
    read_rate: float = 0.0
    write_rate: float = 0.0


@dataclass(frozen=True, slots=True)
class InterfaceStats:
    name: str
    rx_rate: float
    tx_rate: float
    rx_total: int
    tx_total: int


@dataclass(frozen=True, slots=True)
class NetworkStats:
    interfaces: tuple[InterfaceStats, ...] = ()
    rx_rate: float = 0.0
    tx_rate: float = 0.0


@dataclass(frozen=True, slots=True)
class ProcessInfo:
    pid: int
    ppid: int
    name: str
    username: str
    status: str
    cpu_percent: float
    memory_rss: int
    memory_percent: float
    threads: int
    command_line: str
    depth: int = 0  # set by the tree view


@dataclass(frozen=True, slots=True)
class SensorReading:
    label: str
    current: float
    high: float | None = None


@dataclass(frozen=True, slots=True)
class GpuStats:
    name: str
    util: float
    mem_used: float
    mem_total: float
    temp: float
    power: float
    power_limit: float


@dataclass(frozen=True, slots=True)
class BatteryStats:
    percent: float
    plugged: bool
    secs_left: int | None


@dataclass(frozen=True, slots=True)
class SystemSnapshot:
    """Consistent read of every category at one instant. Never mutated."""

    timestamp: float = 0.0
    hostname: str = ""
    uptime: float = 0.0
    cpu: CpuStats = field(default_factory=CpuStats)
    memory: MemoryStats = field(default_factory=MemoryStats)
    disks: DiskStats = field(default_factory=DiskStats)
    network: NetworkStats = field(default_factory=NetworkStats)
    processes: tuple[ProcessInfo, ...] = ()
    ai: AiStats = field(default_factory=AiStats)
    temperatures: tuple[SensorReading, ...] = ()
    gpu: GpuStats | None = None
    battery: BatteryStats | None = None
    stale: frozenset[str] = frozenset()

    @classmethod
    def empty(cls) -> SystemSnapshot:
        return cls()

    def is_stale(self, category: str) -> bool:
        return category in self.stale


# ── Rate computation ───────────────────────────────────────────────────────


class RateTracker:
    """Turns pairs of cumulative counters into per-second rates.

    The first reading of a key yields 0. A counter that went backwards
    (reset, wrap, device re-plugged) yields 0 rather than a negative rate.
    """

    def __init__(self) -> None:
        self._prev: dict[str, tuple[int, int]] = {}
        self._prev_time: float | None = None

    def update(
        self, now: float, counters: dict[str, tuple[int, int]]
    ) -> dict[str, tuple[float, float]]:
        elapsed = now - self._prev_time if self._prev_time is not None else 0.0
        rates: dict[str, tuple[float, float]] = {}
        for key, (first, second) in counters.items():
            prev = self._prev.get(key)
            if prev is None or elapsed <= 0:
                rates[key] = (0.0, 0.0)
                continue
            rates[key] = (
                max(0.0, (first - prev[0]) / elapsed),
                max(0.0, (second - prev[1]) / elapsed),
            )
        self._prev = dict(counters)
        self._prev_time = now
        return rates

    def reset(self) -> None:
        self._prev.clear()
        self._prev_time = None


# ── Individual readers ─────────────────────────────────────────────────────


def _read_gpu() -> dict[str, Any] | None:
    """Read GPU metrics via nvidia-smi.  Returns *None* if unavailable.

    Raises subprocess.TimeoutExpired when the tool hangs, which the
    collector treats as a transient failure.
    """
    try:
        result = subprocess.run(
            [
                "nvidia-smi",
                "--query-gpu=utilization.gpu,memory.used,memory.total,"
                "temperature.gpu,power.draw,power.limit,name",
                "--format=csv,noheader,nounits",
            ],
            capture_output=True,
            text=True,
            timeout=3,
        )
    except FileNotFoundError:
        return None
    if result.returncode != 0:
        return None
    lines = result.stdout.strip().splitlines()
    # First GPU only
    parts = [p.strip() for p in lines[0].split(",")] if lines else []
    if len(parts) < 7:
        return None
    return {
        "util": float(parts[0]),
        "mem_used": float(parts[1]),
        "mem_total": float(parts[2]),
        "temp": float(parts[3]),
        "power": float(parts[4]),
        "power_limit": float(parts[5]),
        "name": parts[6],
    }


def _read_temperatures() -> tuple[SensorReading, ...]:
    if not hasattr(psutil, "sensors_temperatures"):
        return ()
    temps = psutil.sensors_temperatures()
    readings: list[SensorReading] = []
    seen: dict[str, int] = {}
    for chip, entries in (temps or {}).items():
        for i, entry in enumerate(entries):
            if entry.label:
                label = f"{chip} {entry.label}"
            elif len(entries) > 1:
                label = f"{chip} #{i}"
            else:
                label = chip
            # Two sockets can both report "Core 0" under one chip
            seen[label] = seen.get(label, 0) + 1
            if seen[label] > 1:
                label = f"{label} #{seen[label]}"
            readings.append(
                SensorReading(
                    label=label,
                    current=float(entry.current),
                    high=float(entry.high) if entry.high else None,
                )
            )
    readings.sort(key=lambda r: r.label)
    return tuple(readings)


def _read_battery() -> BatteryStats | None:
    if not hasattr(psutil, "sensors_battery"):
        return None
    batt = psutil.sensors_battery()
    if batt is None:
        return None
    secs: int | None = None
    if batt.secsleft not in (psutil.POWER_TIME_UNLIMITED, psutil.POWER_TIME_UNKNOWN):
        secs = max(0, int(batt.secsleft))
    return BatteryStats(percent=float(batt.percent), plugged=bool(batt.power_plugged), secs_left=secs)


def _device_key(device: str) -> str:
    return os.path.basename(device)


# ── Collector ──────────────────────────────────────────────────────────────


class MetricsCollector:
    """Queries the OS for every tracked resource category.

    Keeps only what a refresh needs to compute deltas (previous raw
    counters) and to carry a failed category forward (the last snapshot).
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        probe_gpu: bool = True,
    ) -> None:
        self._clock = clock
        self._disk_rates = RateTracker()
        self._disk_total_rates = RateTracker()
        self._net_rates = RateTracker()
        self._gpu_available: bool | None = None if probe_gpu else False
        self._failing: set[str] = set()
        self._last = SystemSnapshot.empty()
        self._closed = False
        self._hostname = socket.gethostname()
        try:
            self._boot_time = psutil.boot_time()
        except _QUERY_ERRORS:
            self._boot_time = time.time()
        # Warm-up psutil internal deltas (first call returns 0.0)
        try:
            psutil.cpu_percent(interval=None, percpu=True)
        except _QUERY_ERRORS:
            pass

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last(self) -> SystemSnapshot:
        return self._last

    def refresh(self) -> SystemSnapshot:
        """Gather every category in one pass and return a new snapshot."""
        now = self._clock()
        readers: dict[str, Callable[[float], Any]] = {
            "cpu": self._read_cpu,
            "memory": self._read_memory,
            "disks": self._read_disks,
            "network": self._read_network,
            "processes": self._read_processes,
            # Derived from whichever process table this refresh ends up with
            "ai": lambda _now: summarize_ai(values["processes"]),
            "temperatures": lambda _now: _read_temperatures(),
            "gpu": self._read_gpu,
            "battery": lambda _now: _read_battery(),
        }

        values: dict[str, Any] = {}
        stale: set[str] = set()
        for category, reader in readers.items():
            try:
                values[category] = reader(now)
            except _QUERY_ERRORS as e:
                self._report(TransientMetricError(category, e))
                values[category] = getattr(self._last, category)
                stale.add(category)
            else:
                if category in self._failing:
                    log.info("%s readings recovered", category)
                    self._failing.discard(category)

        snapshot = SystemSnapshot(
            timestamp=now,
            hostname=self._hostname,
            uptime=max(0.0, time.time() - self._boot_time),
            stale=frozenset(stale),
            **values,
        )
        self._last = snapshot
        return snapshot

    def close(self) -> None:
        """Drop counter state. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._disk_rates.reset()
        self._disk_total_rates.reset()
        self._net_rates.reset()
        log.debug("metrics collector closed")

    def _report(self, err: TransientMetricError) -> None:
        if err.category in self._failing:
            log.debug("still failing: %s", err)
        else:
            log.warning("metric query failed, keeping previous value: %s", err)
            self._failing.add(err.category)

    # CPU
    def _read_cpu(self, now: float) -> CpuStats:
        per_core = tuple(float(p) for p in psutil.cpu_percent(interval=None, percpu=True))
        total = sum(per_core) / len(per_core) if per_core else 0.0
        la = psutil.getloadavg()
        return CpuStats(total=total, per_core=per_core, load_avg=(la[0], la[1], la[2]))

    # Memory
    def _read_memory(self, now: float) -> MemoryStats:
        ram = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return MemoryStats(
            ram_total=ram.total,
            ram_used=ram.used,
            ram_available=ram.available,
            ram_percent=ram.percent,
            swap_total=swap.total,
            swap_used=swap.used,
            swap_percent=swap.percent,
        )

    # Disks
    def _read_disks(self, now: float) -> DiskStats:
        io = psutil.disk_io_counters(perdisk=True) or {}
        per_disk = self._disk_rates.update(
            now, {name: (c.read_bytes, c.write_bytes) for name, c in io.items()}
        )

        devices: list[DiskDevice] = []
        for part in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except (PermissionError, FileNotFoundError):
                continue
            if usage.total < _MIN_DISK_BYTES:
                continue
            read_rate, write_rate = per_disk.get(_device_key(part.device), (0.0, 0.0))
            devices.append(
                DiskDevice(
                    name=part.device or part.mountpoint,
                    mount_point=part.mountpoint,
                    fstype=part.fstype,
                    total=usage.total,
                    used=usage.used,
                    free=usage.free,
                    percent=usage.percent,
                    read_rate=read_rate,
                    write_rate=write_rate,
                )
            )

        read_rate = write_rate = 0.0
        total = psutil.disk_io_counters(perdisk=False)
        if total is not None:
            rates = self._disk_total_rates.update(
                now, {"total": (total.read_bytes, total.write_bytes)}
            )
            read_rate, write_rate = rates["total"]
        return DiskStats(devices=tuple(devices), read_rate=read_rate, write_rate=write_rate)

    # Network
    def _read_network(self, now: float) -> NetworkStats:
        counters = psutil.net_io_counters(pernic=True) or {}
        rates = self._net_rates.update(
            now, {name: (c.bytes_recv, c.bytes_sent) for name, c in counters.items()}
        )
        interfaces: list[InterfaceStats] = []
        for name, c in sorted(counters.items()):
            # Hide interfaces that never saw traffic
            if c.bytes_recv == 0 and c.bytes_sent == 0:
                continue
            rx, tx = rates[name]
            interfaces.append(
                InterfaceStats(
                    name=name, rx_rate=rx, tx_rate=tx, rx_total=c.bytes_recv, tx_total=c.bytes_sent
                )
            )
        return NetworkStats(
            interfaces=tuple(interfaces),
            rx_rate=sum(i.rx_rate for i in interfaces),
            tx_rate=sum(i.tx_rate for i in interfaces),
        )

    # Processes
    def _read_processes(self, now: float) -> tuple[ProcessInfo, ...]:
        procs: list[ProcessInfo] = []
        for proc in psutil.process_iter(attrs=_PROCESS_ATTRS):
            try:
                info: dict[str, Any] = proc.info
                cmdline = info.get("cmdline") or []
                mem_info = info.get("memory_info")
                procs.append(
                    ProcessInfo(
                        pid=info.get("pid", 0),
                        ppid=info.get("ppid") or 0,
                        name=info.get("name") or "?",
                        username=info.get("username") or "",
                        status=info.get("status") or "?",
                        cpu_percent=info.get("cpu_percent") or 0.0,
                        memory_rss=mem_info.rss if mem_info else 0,
                        memory_percent=info.get("memory_percent") or 0.0,
                        threads=info.get("num_threads") or 0,
                        command_line=" ".join(cmdline) if cmdline else info.get("name") or "",
                    )
                )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                # Died mid-scan or not ours to read
                continue
        return tuple(procs)

    # GPU (stops probing after the tool turns out to be missing)
    def _read_gpu(self, now: float) -> GpuStats | None:
        if self._gpu_available is False:
            return None
        gpu = _read_gpu()
        if gpu is None:
            if self._gpu_available is None:
                log.info("no GPU telemetry available, not probing again")
            self._gpu_available = False
            return None
        self._gpu_available = True
        return GpuStats(
            name=str(gpu["name"]),
            util=gpu["util"],
            mem_used=gpu["mem_used"],
            mem_total=gpu["mem_total"],
            temp=gpu["temp"],
            power=gpu["power"],
            power_limit=gpu["power_limit"],
        )


# ── History recording ──────────────────────────────────────────────────────


def sensor_metric_id(label: str) -> str:
    return f"temp.{label}"


def record_history(store: HistoryStore, snapshot: SystemSnapshot) -> None:
    """Append the snapshot's tracked values to the history store.

    Categories flagged stale are skipped so history only holds real readings.
    """
    ts = snapshot.timestamp

    def put(metric_id: str, value: float) -> None:
        store.record(metric_id, MetricSample(ts, float(value)))

    if not snapshot.is_stale("cpu"):
        put("cpu.total", snapshot.cpu.total)
        for i, pct in enumerate(snapshot.cpu.per_core):
            put(f"cpu.core.{i}", pct)
    if not snapshot.is_stale("memory"):
        put("mem.ram", snapshot.memory.ram_percent)
        put("mem.swap", snapshot.memory.swap_percent)
    if not snapshot.is_stale("disks"):
        put("disk.read", snapshot.disks.read_rate)
        put("disk.write", snapshot.disks.write_rate)
    if not snapshot.is_stale("network"):
        put("net.rx", snapshot.network.rx_rate)
        put("net.tx", snapshot.network.tx_rate)
        for iface in snapshot.network.interfaces:
            put(f"net.{iface.name}.rx", iface.rx_rate)
            put(f"net.{iface.name}.tx", iface.tx_rate)
    if not snapshot.is_stale("processes"):
        put("ai.cpu", snapshot.ai.cpu_percent)
    if not snapshot.is_stale("temperatures"):
        for sensor in snapshot.temperatures:
            put(sensor_metric_id(sensor.label), sensor.current)
    if snapshot.gpu is not None and not snapshot.is_stale("gpu"):
        put("gpu.util", snapshot.gpu.util)
    if snapshot.battery is not None and not snapshot.is_stale("battery"):
        put("battery.percent", snapshot.battery.percent)
