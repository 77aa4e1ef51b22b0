from __future__ import annotations
from typing import Iterable, Optional, Tuple

from PySide6 import QtCore

from .models import Alert, ChartHistory, ConnectionSet, ConnectionStats, LatencySample, SystemSnapshot


class MonitorState(QtCore.QObject):
    """
    Published monitoring state. Readers get immutable values; only the
    scheduler calls the setters, and only from the thread that owns this object.
    """
    snapshot_changed    = QtCore.Signal(object)   # SystemSnapshot
    history_changed     = QtCore.Signal(object)   # ChartHistory
    connections_changed = QtCore.Signal(object, object)   # ConnectionSet, ConnectionStats
    alerts_changed      = QtCore.Signal(object)   # Tuple[Alert, ...]
    latency_changed     = QtCore.Signal(object)   # LatencySample | None
    monitoring_changed  = QtCore.Signal(bool)

    def __init__(self, parent: Optional[QtCore.QObject] = None):
        super().__init__(parent)
        self._snapshot: Optional[SystemSnapshot] = None
        self._history = ChartHistory()
        self._connection_set: Optional[ConnectionSet] = None
        self._connection_stats: Optional[ConnectionStats] = None
        self._alerts: Tuple[Alert, ...] = ()
        self._latency: Optional[LatencySample] = None
        self._monitoring = False

    # ── read-only accessors ───────────────────
    @property
    def snapshot(self) -> Optional[SystemSnapshot]:
        return self._snapshot

    @property
    def chart_history(self) -> ChartHistory:
        return self._history

    @property
    def connection_set(self) -> Optional[ConnectionSet]:
        return self._connection_set

    @property
    def connection_stats(self) -> Optional[ConnectionStats]:
        return self._connection_stats

    @property
    def alerts(self) -> Tuple[Alert, ...]:
        return self._alerts

    @property
    def latency(self) -> Optional[LatencySample]:
        return self._latency

    @property
    def monitoring(self) -> bool:
        return self._monitoring

    # ── writer side (scheduler only) ──────────
    def set_snapshot(self, snapshot: SystemSnapshot, history: ChartHistory) -> None:
        self._snapshot = snapshot
        self._history = history
        self.snapshot_changed.emit(snapshot)
        self.history_changed.emit(history)

    def set_connections(self, connection_set: ConnectionSet, stats: ConnectionStats) -> None:
        self._connection_set = connection_set
        self._connection_stats = stats
        self.connections_changed.emit(connection_set, stats)

    def set_alerts(self, alerts: Iterable[Alert]) -> None:
        self._alerts = tuple(alerts)
        self.alerts_changed.emit(self._alerts)

    def set_latency(self, sample: Optional[LatencySample]) -> None:
        self._latency = sample
        self.latency_changed.emit(sample)

    def set_monitoring(self, running: bool) -> None:
        if running != self._monitoring:
            self._monitoring = running
            self.monitoring_changed.emit(running)
