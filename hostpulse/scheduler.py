from __future__ import annotations
import logging
from typing import Callable, Optional

from PySide6 import QtCore

from . import export
from .collectors import LatencyProbe, ResourceSampler
from .config import AppConfig, ConfigError, validate_config
from .connections import ConnectionEnumerator
from .detectors import AlertEngine
from .models import Alert, LatencySample
from .state import MonitorState
from .workers import (
    ConnectionResult, ConnectionWorker, LatencyWorker, PollRunnable, ResourceResult, ResourceWorker,
)

log = logging.getLogger(__name__)


def _make_probe(cfg: AppConfig) -> Optional[LatencyProbe]:
    return LatencyProbe(cfg.latency_probe_host) if cfg.latency_probe_host else None


def seconds_to_ms(seconds: float) -> int:
    return int(round(seconds * 1000))


class MonitoringScheduler(QtCore.QObject):
    """
    Owns one timer per poll family:
    - resources   (sample_interval_s)      -> pool thread
    - connections (connection_interval_s)  -> pool thread
    - latency     (latency_interval_s)     -> pool thread, only with a probe host
    - alerts      (alert_interval_s)       -> this thread, reads latest state

    Pool results come back through queued signals and are applied here, so
    MonitorState has a single writer. A family never runs two cycles at once;
    a tick that finds its previous cycle still running is skipped.
    """

    def __init__(self, cfg: AppConfig,
                 sampler: Optional[ResourceSampler] = None,
                 enumerator: Optional[ConnectionEnumerator] = None,
                 engine: Optional[AlertEngine] = None,
                 pool: Optional[QtCore.QThreadPool] = None,
                 probe: Optional[LatencyProbe] = None,
                 parent: Optional[QtCore.QObject] = None):
        super().__init__(parent)
        self.cfg = validate_config(cfg)
        self.state = MonitorState(self)

        self.sampler = sampler or ResourceSampler(cfg.chart_history_capacity)
        self.enumerator = enumerator or ConnectionEnumerator(
            prune_process_cache=cfg.prune_process_cache
        )
        self.engine = engine or AlertEngine(
            cfg.alert_rules, cfg.anomaly_history_capacity, cfg.alerts_enabled
        )
        self._pool = pool or QtCore.QThreadPool.globalInstance()

        self._resource_worker = ResourceWorker(self.sampler)
        self._connection_worker = ConnectionWorker(self.enumerator)
        self._latency_worker = LatencyWorker(probe or _make_probe(cfg))
        self._resource_worker.finished.connect(self._on_resource_result, QtCore.Qt.QueuedConnection)
        self._connection_worker.finished.connect(self._on_connection_result, QtCore.Qt.QueuedConnection)
        self._latency_worker.finished.connect(self._on_latency_result, QtCore.Qt.QueuedConnection)

        self._generation = 0
        self._running = False
        self._resource_busy = False
        self._connection_busy = False
        self._latency_busy = False

        self.resource_timer = self._make_timer(cfg.sample_interval_s, self._schedule_resources)
        self.connection_timer = self._make_timer(cfg.connection_interval_s, self._schedule_connections)
        self.latency_timer = self._make_timer(cfg.latency_interval_s, self._schedule_latency)
        self.alert_timer = self._make_timer(cfg.alert_interval_s, self.evaluate_alerts)

    def _make_timer(self, seconds: float, slot: Callable[[], None]) -> QtCore.QTimer:
        timer = QtCore.QTimer(self)
        timer.setInterval(seconds_to_ms(seconds))
        timer.timeout.connect(slot)
        return timer

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def probe(self) -> Optional[LatencyProbe]:
        return self._latency_worker.probe

    # ── lifecycle ─────────────────────────────
    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for timer in (self.resource_timer, self.connection_timer, self.alert_timer):
            timer.start()
        if self.probe is not None:
            self.latency_timer.start()
        self.state.set_monitoring(True)
        log.info(
            "monitoring started (resources %.1fs, connections %.1fs, alerts %.1fs)",
            self.cfg.sample_interval_s, self.cfg.connection_interval_s, self.cfg.alert_interval_s,
            extra={"event": "monitoring_started"},
        )
        self.poll_now()

    def stop(self) -> None:
        """Stop all timers; cycles still in flight finish but their results are dropped."""
        if not self._running:
            return
        for timer in (self.resource_timer, self.connection_timer, self.latency_timer, self.alert_timer):
            timer.stop()
        self._running = False
        self._generation += 1
        self.state.set_monitoring(False)
        log.info("monitoring stopped", extra={"event": "monitoring_stopped"})

    def wait_for_idle(self, msecs: int = 5000) -> bool:
        return self._pool.waitForDone(msecs)

    def poll_now(self) -> None:
        """Manual refresh: run a resource, connection and latency cycle right away."""
        self._schedule_resources()
        self._schedule_connections()
        self._schedule_latency()

    # ── configuration ─────────────────────────
    def apply_config(self, cfg: AppConfig) -> None:
        """Validate, then apply; on ConfigError nothing changes."""
        try:
            validate_config(cfg)
        except ConfigError as e:
            log.warning("config rejected: %s", e, extra={"event": "config_rejected"})
            raise

        old = self.cfg
        for timer, before, after in (
            (self.resource_timer, old.sample_interval_s, cfg.sample_interval_s),
            (self.connection_timer, old.connection_interval_s, cfg.connection_interval_s),
            (self.latency_timer, old.latency_interval_s, cfg.latency_interval_s),
            (self.alert_timer, old.alert_interval_s, cfg.alert_interval_s),
        ):
            if before != after:
                timer.setInterval(seconds_to_ms(after))
                if timer.isActive():
                    timer.start()

        if cfg.latency_probe_host != old.latency_probe_host:
            self._set_probe(_make_probe(cfg))

        self.sampler.request_history_capacity(cfg.chart_history_capacity)
        self.engine.resize_history(cfg.anomaly_history_capacity)
        self.engine.update_rules(cfg.alert_rules)
        self.engine.alerts_enabled = cfg.alerts_enabled
        self.enumerator.prune_process_cache = cfg.prune_process_cache
        self.cfg = cfg
        log.info("config applied", extra={"event": "config_applied"})

    def _set_probe(self, probe: Optional[LatencyProbe]) -> None:
        self._latency_worker.probe = probe
        if probe is None:
            self.latency_timer.stop()
            self.state.set_latency(None)
        elif self._running:
            self.latency_timer.start()

    # ── dispatch (this thread) ────────────────
    @QtCore.Slot()
    def _schedule_resources(self) -> None:
        if not self._running:
            return
        if self._resource_busy:
            log.debug("resource cycle still running, tick skipped")
            return
        self._resource_busy = True
        self._pool.start(PollRunnable(self._resource_worker.tick, self._generation))

    @QtCore.Slot()
    def _schedule_connections(self) -> None:
        if not self._running:
            return
        if self._connection_busy:
            log.debug("connection cycle still running, tick skipped")
            return
        self._connection_busy = True
        previous = self.state.connection_stats
        self._pool.start(PollRunnable(self._connection_worker.tick, self._generation, previous))

    @QtCore.Slot()
    def _schedule_latency(self) -> None:
        if not self._running or self.probe is None:
            return
        if self._latency_busy:
            log.debug("latency probe still running, tick skipped")
            return
        self._latency_busy = True
        self._pool.start(PollRunnable(self._latency_worker.tick, self._generation))

    # ── results (queued back to this thread) ──
    @QtCore.Slot(int, object)
    def _on_resource_result(self, generation: int, result: Optional[ResourceResult]) -> None:
        self._resource_busy = False
        if generation != self._generation or not self._running or result is None:
            return
        self.state.set_snapshot(result.snapshot, result.chart)
        fired = self.engine.record(result.snapshot, self.state.connection_stats, self.state.latency)
        if fired:
            self._publish_alerts()

    @QtCore.Slot(int, object)
    def _on_connection_result(self, generation: int, result: Optional[ConnectionResult]) -> None:
        self._connection_busy = False
        if generation != self._generation or not self._running or result is None:
            return
        self.state.set_connections(result.connection_set, result.stats)

    @QtCore.Slot(int, object)
    def _on_latency_result(self, generation: int, result: Optional[LatencySample]) -> None:
        self._latency_busy = False
        if generation != self._generation or not self._running or result is None:
            return
        if self.probe is None:
            return
        self.state.set_latency(result)

    @QtCore.Slot()
    def evaluate_alerts(self) -> None:
        fired = self.engine.evaluate(self.state.snapshot, self.state.connection_stats)
        if fired:
            self._publish_alerts()

    def _publish_alerts(self) -> None:
        self.state.set_alerts(self.engine.alerts)

    # ── alert actions ─────────────────────────
    def acknowledge(self, alert_id: str) -> Optional[Alert]:
        alert = self.engine.acknowledge(alert_id)
        if alert is not None:
            self._publish_alerts()
        return alert

    def acknowledge_all(self) -> int:
        count = self.engine.acknowledge_all()
        if count:
            self._publish_alerts()
        return count

    # ── exports ───────────────────────────────
    def export_history(self) -> str:
        return export.export_history(self.engine.history.snapshot_slice())

    def export_alerts(self) -> str:
        return export.export_alerts(self.engine.alerts)

    def export_connections_csv(self) -> str:
        conn_set = self.state.connection_set
        if conn_set is None:
            return ",".join(export.CSV_HEADER) + "\n"
        return export.export_connections_csv(conn_set)
