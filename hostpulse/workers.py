from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from PySide6 import QtCore

from .collectors import LatencyProbe, ResourceSampler
from .connections import ConnectionEnumerator
from .models import ChartHistory, ConnectionSet, ConnectionStats, LatencySample, SystemSnapshot

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceResult:
    snapshot: SystemSnapshot
    chart: ChartHistory


@dataclass(frozen=True)
class ConnectionResult:
    connection_set: ConnectionSet
    stats: ConnectionStats


class PollRunnable(QtCore.QRunnable):
    """Runs one poll cycle on a pool thread."""
    def __init__(self, fn: Callable[..., None], *args):
        super().__init__()
        self._fn = fn
        self._args = args
        self.setAutoDelete(True)

    def run(self):
        self._fn(*self._args)


class ResourceWorker(QtCore.QObject):
    """
    Samples resource counters on the pool. The result goes back to the
    owning thread through `finished`; the worker itself never touches
    published state.
    """
    finished = QtCore.Signal(int, object)   # generation, ResourceResult | None

    def __init__(self, sampler: ResourceSampler):
        super().__init__()
        self.sampler = sampler

    def tick(self, generation: int) -> None:
        """RUNS ON POOL THREAD."""
        result: Optional[ResourceResult] = None
        try:
            snapshot = self.sampler.sample()
            result = ResourceResult(snapshot, self.sampler.chart_series())
        except MemoryError:
            raise
        except Exception:
            log.exception("resource cycle failed", extra={"event": "resource_cycle_failed"})
        self.finished.emit(generation, result)


class LatencyWorker(QtCore.QObject):
    """Runs the ping probe on its own cadence; a probe round blocks for seconds."""
    finished = QtCore.Signal(int, object)   # generation, LatencySample | None

    def __init__(self, probe: Optional[LatencyProbe] = None):
        super().__init__()
        self.probe = probe

    def tick(self, generation: int) -> None:
        """RUNS ON POOL THREAD."""
        result: Optional[LatencySample] = None
        probe = self.probe
        try:
            if probe is not None:
                result = probe.measure()
        except MemoryError:
            raise
        except Exception:
            log.exception("latency probe failed", extra={"event": "latency_cycle_failed"})
        self.finished.emit(generation, result)


class ConnectionWorker(QtCore.QObject):
    """Enumerates sockets on the pool; stats are derived from the previous aggregate."""
    finished = QtCore.Signal(int, object)   # generation, ConnectionResult | None

    def __init__(self, enumerator: ConnectionEnumerator):
        super().__init__()
        self.enumerator = enumerator

    def tick(self, generation: int, previous: Optional[ConnectionStats]) -> None:
        """RUNS ON POOL THREAD."""
        result: Optional[ConnectionResult] = None
        try:
            conn_set = self.enumerator.enumerate()
            result = ConnectionResult(conn_set, self.enumerator.stats(previous, conn_set))
        except MemoryError:
            raise
        except Exception:
            log.exception("connection cycle failed", extra={"event": "connection_cycle_failed"})
        self.finished.emit(generation, result)
