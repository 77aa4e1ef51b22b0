from __future__ import annotations
import logging
import math
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from .history import MAX_CAPACITY, HistoryBuffer
from .models import (
    Alert, AlertCategory, AlertRule, AlertSeverity, ConnectionStats, LatencySample,
    MonitoringMetric, NetworkDataPoint, SystemSnapshot,
)

log = logging.getLogger(__name__)

ANOMALY_BASELINE = 100
ANOMALY_Z_THRESHOLD = 3.0
ANOMALY_REASON = "Unusual bandwidth spike detected"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────
# AnomalyDetector – rolling z-score over bytes_in
# ──────────────────────────────────────────────
def mean_and_pstdev(values: List[float]) -> Tuple[float, float]:
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


class AnomalyDetector:
    def __init__(self, baseline: int = ANOMALY_BASELINE, z_threshold: float = ANOMALY_Z_THRESHOLD):
        self.baseline = baseline
        self.z_threshold = z_threshold

    def check(self, history: HistoryBuffer[NetworkDataPoint]) -> Optional[float]:
        """
        Score the newest point against the last `baseline` points (itself
        included). Stamps the point and returns its z-score when anomalous.
        """
        if len(history) <= self.baseline:
            return None

        window = history.snapshot_slice(self.baseline)
        mean, std = mean_and_pstdev([float(p.bytes_in) for p in window])
        if std == 0:
            return None

        latest = window[-1]
        z = abs(float(latest.bytes_in) - mean) / std
        if z <= self.z_threshold:
            return None

        latest.is_anomaly = True
        latest.anomaly_score = z
        latest.anomaly_reason = ANOMALY_REASON
        return z


# ──────────────────────────────────────────────
# AlertEngine – threshold rules with cooldown
# ──────────────────────────────────────────────
class AlertEngine:
    def __init__(self, rules: Optional[Iterable[AlertRule]] = None,
                 history_capacity: int = MAX_CAPACITY,
                 alerts_enabled: bool = True,
                 detector: Optional[AnomalyDetector] = None):
        self._rules: List[AlertRule] = list(rules or [])
        self._alerts: List[Alert] = []
        self.history: HistoryBuffer[NetworkDataPoint] = HistoryBuffer(history_capacity)
        self.detector = detector or AnomalyDetector()
        self.alerts_enabled = alerts_enabled

    # ── read-only views ───────────────────────
    @property
    def rules(self) -> Tuple[AlertRule, ...]:
        return tuple(self._rules)

    @property
    def alerts(self) -> Tuple[Alert, ...]:
        return tuple(self._alerts)

    # ── configuration ─────────────────────────
    def update_rules(self, rules: Iterable[AlertRule]) -> None:
        previous: Dict[str, AlertRule] = {r.id: r for r in self._rules}
        updated: List[AlertRule] = []
        for rule in rules:
            old = previous.get(rule.id)
            if old is not None and rule.last_triggered_at is None:
                rule.last_triggered_at = old.last_triggered_at
            updated.append(rule)
        self._rules = updated

    def resize_history(self, capacity: int) -> None:
        if capacity == self.history.capacity:
            return
        resized: HistoryBuffer[NetworkDataPoint] = HistoryBuffer(capacity)
        for p in self.history.snapshot_slice(capacity):
            resized.push(p)
        self.history = resized

    # ── time series + anomaly ─────────────────
    def record(self, snapshot: SystemSnapshot, stats: Optional[ConnectionStats] = None,
               latency: Optional[LatencySample] = None) -> List[Alert]:
        point = NetworkDataPoint(
            timestamp=snapshot.timestamp,
            bytes_in=snapshot.network_download_bps,
            bytes_out=snapshot.network_upload_bps,
            active_connections=stats.active_connections if stats else 0,
            latency=latency.latency_ms if latency else None,
            packet_loss=latency.packet_loss_percent if latency else None,
        )
        self.history.push(point)

        z = self.detector.check(self.history)
        if z is None:
            return []
        log.info("bandwidth anomaly z=%.2f", z, extra={"event": "anomaly"})
        if not self.alerts_enabled:
            return []
        alert = Alert(
            timestamp=point.timestamp,
            severity=AlertSeverity.WARNING,
            category=AlertCategory.ANOMALY,
            title="Network Anomaly Detected",
            description=f"Unusual traffic pattern detected (z-score: {z:.2f})",
        )
        self._alerts.append(alert)
        return [alert]

    # ── rule evaluation ───────────────────────
    def resolve_metric(self, metric: MonitoringMetric, snapshot: Optional[SystemSnapshot],
                       stats: Optional[ConnectionStats]) -> Optional[float]:
        """Current value of `metric`, or None when nothing reports it."""
        if metric is MonitoringMetric.CONNECTION_COUNT:
            return float(stats.active_connections) if stats else None
        if metric in (MonitoringMetric.LATENCY, MonitoringMetric.PACKET_LOSS):
            latest = self.history.latest
            if latest is None:
                return None
            return latest.latency if metric is MonitoringMetric.LATENCY else latest.packet_loss
        if snapshot is None:
            return None
        return {
            MonitoringMetric.BANDWIDTH_IN: snapshot.network_download_bps,
            MonitoringMetric.BANDWIDTH_OUT: snapshot.network_upload_bps,
            MonitoringMetric.TOTAL_BANDWIDTH: snapshot.network_total_bps,
            MonitoringMetric.CPU_USAGE: snapshot.cpu_usage_percent,
            MonitoringMetric.MEMORY_USAGE: snapshot.memory_usage_percent,
            MonitoringMetric.DISK_USAGE: snapshot.disk_usage_percent,
            MonitoringMetric.ERROR_RATE: snapshot.network_error_rate,
        }.get(metric)

    def evaluate(self, snapshot: Optional[SystemSnapshot], stats: Optional[ConnectionStats] = None,
                 now: Optional[datetime] = None) -> List[Alert]:
        if not self.alerts_enabled:
            return []
        now = now or _utcnow()
        fired: List[Alert] = []

        for rule in self._rules:
            if not rule.enabled:
                continue
            value = self.resolve_metric(rule.metric, snapshot, stats)
            if value is None or not rule.evaluate(value):
                continue
            # cooling down
            if rule.last_triggered_at is not None and \
                    (now - rule.last_triggered_at).total_seconds() < rule.duration:
                continue

            alert = Alert(
                timestamp=now,
                severity=rule.severity,
                category=AlertCategory.THRESHOLD,
                title=f"{rule.metric.label} Threshold Exceeded",
                description=(
                    f"{rule.metric.label} is {value:g}, {rule.condition.phrase} {rule.threshold:g}"
                ),
            )
            rule.last_triggered_at = now
            fired.append(alert)
            log.info("rule %s fired: %s", rule.id, alert.description,
                     extra={"event": "alert_fired", "rule_id": rule.id, "alert_id": alert.id})

        self._alerts.extend(fired)
        return fired

    # ── acknowledgement ───────────────────────
    def acknowledge(self, alert_id: str, now: Optional[datetime] = None) -> Optional[Alert]:
        for i, a in enumerate(self._alerts):
            if a.id == alert_id:
                if not a.acknowledged:
                    self._alerts[i] = a.acknowledge(now or _utcnow())
                return self._alerts[i]
        return None

    def acknowledge_all(self, now: Optional[datetime] = None) -> int:
        when = now or _utcnow()
        count = 0
        for i, a in enumerate(self._alerts):
            if not a.acknowledged:
                self._alerts[i] = a.acknowledge(when)
                count += 1
        return count

    @property
    def unacknowledged_count(self) -> int:
        return sum(1 for a in self._alerts if not a.acknowledged)
