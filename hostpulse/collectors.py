from __future__ import annotations
import logging
import os
import re
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import psutil

from .history import CHART_CAPACITY, HistoryBuffer
from .models import ChartHistory, LatencySample, SystemSnapshot, clamp_pct
from .rates import RateCounter

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# CPU ticks
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class CpuTicks:
    user: float
    system: float
    idle: float
    nice: float = 0.0

    @property
    def active(self) -> float:
        return self.user + self.system + self.nice

    @property
    def total(self) -> float:
        return self.active + self.idle


def cpu_usage_percent(previous: Optional[CpuTicks], current: CpuTicks) -> float:
    """Share of ticks spent busy between two cumulative readings."""
    if previous is None:
        return 0.0
    d_active = current.active - previous.active
    d_total = current.total - previous.total
    if d_total <= 0 or d_active < 0:
        return 0.0
    return clamp_pct(d_active / d_total * 100.0)


def read_cpu_ticks() -> CpuTicks:
    """Cumulative ticks summed over all cores (Windows has no `nice`)."""
    user = system = idle = nice = 0.0
    for core in psutil.cpu_times(percpu=True):
        user += core.user
        system += core.system
        idle += core.idle
        nice += getattr(core, "nice", 0.0)
    return CpuTicks(user=user, system=system, idle=idle, nice=nice)


# ──────────────────────────────────────────────
# Network interfaces
# ──────────────────────────────────────────────
_LOOPBACK_PREFIXES = ("lo", "Loopback")


def is_real_interface(name: str, stats: Dict[str, object]) -> bool:
    """Up, non-loopback adapters only."""
    if name.startswith(_LOOPBACK_PREFIXES):
        return False
    st = stats.get(name)
    if st is None:
        return True
    if not getattr(st, "isup", True):
        return False
    flags = getattr(st, "flags", "") or ""
    return "loopback" not in flags.split(",")


def _disk_root() -> str:
    return os.path.abspath(os.sep)


# ──────────────────────────────────────────────
# ResourceSampler – cpu / memory / disk / network
# ──────────────────────────────────────────────
class ResourceSampler:
    def __init__(self, history_capacity: int = CHART_CAPACITY,
                 disk_path: Optional[str] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._disk_path = disk_path or _disk_root()
        self._prev_cpu: Optional[CpuTicks] = None

        self._rx = RateCounter()
        self._tx = RateCounter()
        self._errors = RateCounter()
        self._peak_down = 0.0
        self._peak_up = 0.0

        self.cpu_history: HistoryBuffer[float] = HistoryBuffer(history_capacity)
        self.memory_history: HistoryBuffer[float] = HistoryBuffer(history_capacity)
        self.network_history: HistoryBuffer[float] = HistoryBuffer(history_capacity)
        self._pending_capacity: Optional[int] = None

    def request_history_capacity(self, capacity: int) -> None:
        """Applied at the start of the next sample() so the resize happens on the sampling thread."""
        self._pending_capacity = capacity

    # ── public ───────────────────────────────
    def sample(self) -> SystemSnapshot:
        self._apply_pending_capacity()
        now = self._clock()

        cpu = self._cpu_percent()
        mem_used, mem_free, mem_total, mem_pct = self._memory()
        disk_used, disk_total, disk_pct = self._disk()
        down, up, err_rate = self._network(now)

        snap = SystemSnapshot(
            timestamp=datetime.now(timezone.utc),
            cpu_usage_percent=cpu,
            memory_used_bytes=mem_used,
            memory_free_bytes=mem_free,
            memory_total_bytes=mem_total,
            memory_usage_percent=mem_pct,
            disk_used_bytes=disk_used,
            disk_total_bytes=disk_total,
            disk_usage_percent=disk_pct,
            network_download_bps=down,
            network_upload_bps=up,
            network_error_rate=err_rate,
            peak_download_bps=self._peak_down,
            peak_upload_bps=self._peak_up,
        )

        self.cpu_history.push(snap.cpu_usage_percent)
        self.memory_history.push(snap.memory_usage_percent)
        self.network_history.push(snap.network_total_bps)
        return snap

    def chart_series(self) -> ChartHistory:
        return ChartHistory(
            cpu=tuple(self.cpu_history.snapshot_slice()),
            memory=tuple(self.memory_history.snapshot_slice()),
            network=tuple(self.network_history.snapshot_slice()),
        )

    # ── sub-metrics (each degrades to zeros) ──
    def _cpu_percent(self) -> float:
        try:
            current = read_cpu_ticks()
        except Exception:
            log.debug("cpu ticks unavailable", exc_info=True)
            return 0.0
        pct = cpu_usage_percent(self._prev_cpu, current)
        self._prev_cpu = current
        return pct

    def _memory(self) -> Tuple[int, int, int, float]:
        try:
            vm = psutil.virtual_memory()
        except Exception:
            log.debug("virtual memory unavailable", exc_info=True)
            return 0, 0, 0, 0.0
        total = int(vm.total)
        # `available` counts reclaimable file cache as free
        free = max(0, int(vm.available))
        used = max(0, total - free)
        pct = clamp_pct(used / total * 100.0) if total > 0 else 0.0
        return used, free, total, pct

    def _disk(self) -> Tuple[int, int, float]:
        try:
            du = psutil.disk_usage(self._disk_path)
        except Exception:
            log.debug("disk usage unavailable for %s", self._disk_path, exc_info=True)
            return 0, 0, 0.0
        total = int(du.total)
        used = max(0, total - int(du.free))
        pct = clamp_pct(used / total * 100.0) if total > 0 else 0.0
        return used, total, pct

    def _network(self, now: float) -> Tuple[float, float, float]:
        try:
            per_nic = psutil.net_io_counters(pernic=True) or {}
            try:
                nic_stats = psutil.net_if_stats()
            except Exception:
                nic_stats = {}
        except Exception:
            log.debug("interface counters unavailable", exc_info=True)
            return 0.0, 0.0, 0.0

        rx = tx = errors = 0
        for name, c in per_nic.items():
            if not is_real_interface(name, nic_stats):
                continue
            rx += c.bytes_recv
            tx += c.bytes_sent
            errors += c.errin + c.errout

        down = self._rx.update(rx, now)
        up = self._tx.update(tx, now)
        err_rate = self._errors.update(errors, now)
        self._peak_down = max(self._peak_down, down)
        self._peak_up = max(self._peak_up, up)
        return down, up, err_rate

    def _apply_pending_capacity(self) -> None:
        capacity, self._pending_capacity = self._pending_capacity, None
        if capacity is None or capacity == self.cpu_history.capacity:
            return
        for attr in ("cpu_history", "memory_history", "network_history"):
            old: HistoryBuffer[float] = getattr(self, attr)
            new: HistoryBuffer[float] = HistoryBuffer(capacity)
            for v in old.snapshot_slice(capacity):
                new.push(v)
            setattr(self, attr, new)


# ──────────────────────────────────────────────
# LatencyProbe – ping based latency / packet loss
# ──────────────────────────────────────────────
_LOSS_RE = re.compile(r"([0-9.]+)%\s*(?:packet\s+)?loss")
_RTT_SUMMARY_RE = re.compile(r"=\s*[0-9.]+/([0-9.]+)/")
_WIN_AVG_RE = re.compile(r"Average\s*=\s*([0-9.]+)\s*ms")
_TIME_RE = re.compile(r"time[=<]([0-9.]+)\s*ms")


def parse_ping_output(output: str) -> LatencySample:
    """Average round-trip (ms) and loss (%) from unix or windows ping output."""
    loss: Optional[float] = None
    m = _LOSS_RE.search(output)
    if m:
        loss = float(m.group(1))

    latency: Optional[float] = None
    m = _RTT_SUMMARY_RE.search(output) or _WIN_AVG_RE.search(output)
    if m:
        latency = float(m.group(1))
    else:
        times = [float(t) for t in _TIME_RE.findall(output)]
        if times:
            latency = sum(times) / len(times)
    return LatencySample(latency_ms=latency, packet_loss_percent=loss)


class LatencyProbe:
    def __init__(self, host: str, count: int = 3, timeout_s: float = 5.0,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.host = host
        self.count = count
        self.timeout_s = timeout_s
        self._runner = runner

    def _command(self) -> list:
        flag = "-n" if sys.platform.startswith("win") else "-c"
        return ["ping", flag, str(self.count), self.host]

    def measure(self) -> LatencySample:
        try:
            result = self._runner(
                self._command(), capture_output=True, text=True, timeout=self.timeout_s,
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            log.debug("ping %s failed: %s", self.host, e)
            return LatencySample(latency_ms=None, packet_loss_percent=None)
        return parse_ping_output(result.stdout or "")
