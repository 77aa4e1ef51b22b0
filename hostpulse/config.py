from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging
import math

from .history import CHART_CAPACITY, MAX_CAPACITY
from .models import AlertRule, AlertSeverity, MonitoringMetric, RuleCondition

log = logging.getLogger(__name__)

APP_DIR = Path.home() / ".hostpulse"
CFG_PATH = APP_DIR / "config.json"

MIN_INTERVAL_S = 0.5
# QTimer intervals are signed 32-bit milliseconds
MAX_INTERVAL_S = (2 ** 31 - 1) // 1000
# anomaly baseline needs 100 samples plus the one being scored
MIN_ANOMALY_CAPACITY = 101


class ConfigError(ValueError):
    """Rejected configuration; the previous valid config stays active."""


def default_alert_rules() -> List[AlertRule]:
    return [
        AlertRule(MonitoringMetric.TOTAL_BANDWIDTH, RuleCondition.GREATER_THAN,
                  100_000_000, 60, AlertSeverity.WARNING, id="total-bandwidth"),   # 100 MB/s
        AlertRule(MonitoringMetric.LATENCY, RuleCondition.GREATER_THAN,
                  100, 30, AlertSeverity.WARNING, id="latency"),                   # ms
        AlertRule(MonitoringMetric.PACKET_LOSS, RuleCondition.GREATER_THAN,
                  1.0, 60, AlertSeverity.CRITICAL, id="packet-loss"),              # %
        AlertRule(MonitoringMetric.CPU_USAGE, RuleCondition.GREATER_THAN,
                  80.0, 300, AlertSeverity.WARNING, id="cpu"),
        AlertRule(MonitoringMetric.MEMORY_USAGE, RuleCondition.GREATER_THAN,
                  80.0, 300, AlertSeverity.WARNING, id="memory"),
        AlertRule(MonitoringMetric.DISK_USAGE, RuleCondition.GREATER_THAN,
                  90.0, 300, AlertSeverity.WARNING, id="disk"),
    ]


@dataclass
class AppConfig:
    sample_interval_s: float = 2.0
    connection_interval_s: float = 3.0
    alert_interval_s: float = 15.0
    latency_interval_s: float = 10.0    # only used with a latency_probe_host

    # History
    chart_history_capacity: int = CHART_CAPACITY
    anomaly_history_capacity: int = MAX_CAPACITY

    # Alerting
    alerts_enabled: bool = True
    alert_rules: List[AlertRule] = field(default_factory=default_alert_rules)

    # Connections
    prune_process_cache: bool = False    # drop cached names for PIDs that vanished

    # Latency probe – "" disables it
    latency_probe_host: str = ""


# ──────────────────────────────────────────────
# Validation
# ──────────────────────────────────────────────
INTERVAL_FIELDS = ("sample_interval_s", "connection_interval_s", "alert_interval_s", "latency_interval_s")


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _validate_rule(rule: AlertRule) -> None:
    for attr, enum_type in (("metric", MonitoringMetric), ("condition", RuleCondition),
                            ("severity", AlertSeverity)):
        if not isinstance(getattr(rule, attr), enum_type):
            raise ConfigError(f"rule {rule.id!r}: {attr} must be a {enum_type.__name__}, "
                              f"got {getattr(rule, attr)!r}")
    if not _is_finite_number(rule.threshold):
        raise ConfigError(f"rule {rule.id!r}: threshold must be a finite number")
    if not _is_finite_number(rule.duration) or rule.duration < 0:
        raise ConfigError(f"rule {rule.id!r}: duration must be a finite number >= 0")


def validate_config(cfg: AppConfig) -> AppConfig:
    for name in INTERVAL_FIELDS:
        value = getattr(cfg, name)
        if not _is_finite_number(value) or not MIN_INTERVAL_S <= value <= MAX_INTERVAL_S:
            raise ConfigError(
                f"{name} must be a number in {MIN_INTERVAL_S}..{MAX_INTERVAL_S}, got {value!r}"
            )

    for name, low in (("chart_history_capacity", 1),
                      ("anomaly_history_capacity", MIN_ANOMALY_CAPACITY)):
        value = getattr(cfg, name)
        if not isinstance(value, int) or isinstance(value, bool) or not low <= value <= MAX_CAPACITY:
            raise ConfigError(f"{name} must be an integer in {low}..{MAX_CAPACITY}, got {value!r}")

    seen = set()
    for rule in cfg.alert_rules:
        if not isinstance(rule, AlertRule):
            raise ConfigError(f"alert rule must be an AlertRule, got {type(rule).__name__}")
        if rule.id in seen:
            raise ConfigError(f"duplicate alert rule id {rule.id!r}")
        seen.add(rule.id)
        _validate_rule(rule)
    return cfg


# ──────────────────────────────────────────────
# (De)serialization
# ──────────────────────────────────────────────
def rule_to_dict(rule: AlertRule) -> Dict[str, Any]:
    return {
        "id": rule.id,
        "enabled": rule.enabled,
        "metric": rule.metric.value,
        "condition": rule.condition.value,
        "threshold": rule.threshold,
        "duration": rule.duration,
        "severity": rule.severity.value,
        "last_triggered_at": rule.last_triggered_at.isoformat() if rule.last_triggered_at else None,
    }


def rule_from_dict(data: Dict[str, Any]) -> AlertRule:
    try:
        last = data.get("last_triggered_at")
        return AlertRule(
            id=str(data["id"]),
            enabled=bool(data.get("enabled", True)),
            metric=MonitoringMetric(data["metric"]),
            condition=RuleCondition(data["condition"]),
            threshold=float(data["threshold"]),
            duration=float(data.get("duration", 0)),
            severity=AlertSeverity(data.get("severity", AlertSeverity.WARNING.value)),
            last_triggered_at=datetime.fromisoformat(last) if last else None,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"malformed alert rule {data!r}: {e}") from e


def config_to_dict(cfg: AppConfig) -> Dict[str, Any]:
    data = dict(cfg.__dict__)
    data["alert_rules"] = [rule_to_dict(r) for r in cfg.alert_rules]
    return data


def config_from_dict(data: Dict[str, Any]) -> AppConfig:
    known = {k: data[k] for k in data if k in AppConfig.__dataclass_fields__}
    if "alert_rules" in known:
        raw_rules = known["alert_rules"]
        if not isinstance(raw_rules, list):
            raise ConfigError("alert_rules must be a list")
        known["alert_rules"] = [rule_from_dict(r) for r in raw_rules]
    try:
        cfg = AppConfig(**known)
    except TypeError as e:
        raise ConfigError(str(e)) from e
    return validate_config(cfg)


def load_config(path: Optional[Path] = None) -> AppConfig:
    path = path or CFG_PATH
    if not path.exists():
        return AppConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ConfigError("config root must be an object")
        return config_from_dict(data)
    except (OSError, ValueError) as e:
        log.warning("config %s unusable, using defaults: %s", path, e,
                    extra={"event": "config_rejected"})
        return AppConfig()


def save_config(cfg: AppConfig, path: Optional[Path] = None) -> Path:
    path = path or CFG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config_to_dict(cfg), indent=2), encoding="utf-8")
    return path
