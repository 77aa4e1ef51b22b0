from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple
import uuid

EQUALITY_EPSILON = 0.001


def clamp_pct(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


# ──────────────────────────────────────────────
# Resource snapshot
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class SystemSnapshot:
    timestamp: datetime
    cpu_usage_percent: float = 0.0
    memory_used_bytes: int = 0
    memory_free_bytes: int = 0
    memory_total_bytes: int = 0
    memory_usage_percent: float = 0.0
    disk_used_bytes: int = 0
    disk_total_bytes: int = 0
    disk_usage_percent: float = 0.0
    network_download_bps: float = 0.0
    network_upload_bps: float = 0.0
    network_error_rate: float = 0.0     # interface errors / s
    peak_download_bps: float = 0.0
    peak_upload_bps: float = 0.0

    @property
    def network_total_bps(self) -> float:
        return self.network_download_bps + self.network_upload_bps


@dataclass(frozen=True)
class ChartHistory:
    """Immutable copy of the sampler's chart buffers, oldest first."""
    cpu: Tuple[float, ...] = ()
    memory: Tuple[float, ...] = ()
    network: Tuple[float, ...] = ()


# ──────────────────────────────────────────────
# Connections
# ──────────────────────────────────────────────
class TransportProtocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"
    ICMP = "ICMP"
    OTHER = "Other"


_STATE_ALIASES = {
    "SYN_RCVD": "SYN_RECEIVED",
    "SYN_RECV": "SYN_RECEIVED",
    "FIN_WAIT_1": "FIN_WAIT1",
    "FIN_WAIT_2": "FIN_WAIT2",
}


class ConnectionState(str, Enum):
    ESTABLISHED = "ESTABLISHED"
    LISTEN = "LISTEN"
    SYN_SENT = "SYN_SENT"
    SYN_RECEIVED = "SYN_RECEIVED"
    FIN_WAIT1 = "FIN_WAIT1"
    FIN_WAIT2 = "FIN_WAIT2"
    CLOSE_WAIT = "CLOSE_WAIT"
    CLOSING = "CLOSING"
    LAST_ACK = "LAST_ACK"
    TIME_WAIT = "TIME_WAIT"
    CLOSED = "CLOSED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, token: str) -> "ConnectionState":
        """Map a netstat / psutil state spelling onto the enum (UNKNOWN if unrecognised)."""
        key = (token or "").strip().upper()
        key = _STATE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class NetworkConnection:
    process_name: str
    process_id: int
    local_address: str
    local_port: int
    remote_address: str
    remote_port: int
    protocol: TransportProtocol
    state: ConnectionState
    bytes_received: int
    bytes_sent: int
    observed_at: datetime

    @property
    def total_bytes(self) -> int:
        return self.bytes_received + self.bytes_sent


@dataclass(frozen=True)
class ConnectionSet:
    connections: Tuple[NetworkConnection, ...]
    observed_at: datetime

    def __len__(self) -> int:
        return len(self.connections)

    def __iter__(self):
        return iter(self.connections)


@dataclass(frozen=True)
class ConnectionStats:
    timestamp: datetime
    total_bytes: int = 0
    bytes_per_second: float = 0.0
    active_connections: int = 0
    top_processes: Tuple[Tuple[str, int], ...] = ()


# ──────────────────────────────────────────────
# Alerting
# ──────────────────────────────────────────────
class MonitoringMetric(str, Enum):
    BANDWIDTH_IN = "bandwidthIn"
    BANDWIDTH_OUT = "bandwidthOut"
    TOTAL_BANDWIDTH = "totalBandwidth"
    LATENCY = "latency"
    PACKET_LOSS = "packetLoss"
    CPU_USAGE = "cpuUsage"
    MEMORY_USAGE = "memoryUsage"
    CONNECTION_COUNT = "connectionCount"
    ERROR_RATE = "errorRate"
    DISK_USAGE = "diskUsage"

    @property
    def label(self) -> str:
        return _METRIC_LABELS[self]


_METRIC_LABELS = {
    MonitoringMetric.BANDWIDTH_IN: "Bandwidth In",
    MonitoringMetric.BANDWIDTH_OUT: "Bandwidth Out",
    MonitoringMetric.TOTAL_BANDWIDTH: "Total Bandwidth",
    MonitoringMetric.LATENCY: "Latency",
    MonitoringMetric.PACKET_LOSS: "Packet Loss",
    MonitoringMetric.CPU_USAGE: "CPU Usage",
    MonitoringMetric.MEMORY_USAGE: "Memory Usage",
    MonitoringMetric.CONNECTION_COUNT: "Connection Count",
    MonitoringMetric.ERROR_RATE: "Error Rate",
    MonitoringMetric.DISK_USAGE: "Disk Usage",
}


class RuleCondition(str, Enum):
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"

    @property
    def phrase(self) -> str:
        return {
            RuleCondition.GREATER_THAN: "greater than",
            RuleCondition.LESS_THAN: "less than",
            RuleCondition.EQUALS: "equal to",
            RuleCondition.NOT_EQUALS: "not equal to",
        }[self]


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class AlertCategory(str, Enum):
    BANDWIDTH = "bandwidth"
    LATENCY = "latency"
    PACKET_LOSS = "packetLoss"
    DEVICE_DOWN = "deviceDown"
    SECURITY = "security"
    ANOMALY = "anomaly"
    THRESHOLD = "threshold"


@dataclass
class AlertRule:
    metric: MonitoringMetric
    condition: RuleCondition
    threshold: float
    duration: float                      # cooldown seconds between firings
    severity: AlertSeverity = AlertSeverity.WARNING
    enabled: bool = True
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    last_triggered_at: Optional[datetime] = None

    def evaluate(self, value: float) -> bool:
        if self.condition is RuleCondition.GREATER_THAN:
            return value > self.threshold
        if self.condition is RuleCondition.LESS_THAN:
            return value < self.threshold
        if self.condition is RuleCondition.EQUALS:
            return abs(value - self.threshold) < EQUALITY_EPSILON
        if self.condition is RuleCondition.NOT_EQUALS:
            return abs(value - self.threshold) >= EQUALITY_EPSILON
        return False


@dataclass(frozen=True)
class Alert:
    timestamp: datetime
    severity: AlertSeverity
    category: AlertCategory
    title: str
    description: str
    affected_device: Optional[str] = None
    affected_connection: Optional[str] = None
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def acknowledge(self, when: datetime) -> "Alert":
        return replace(self, acknowledged=True, acknowledged_at=when)


# ──────────────────────────────────────────────
# Time series
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class LatencySample:
    latency_ms: Optional[float]
    packet_loss_percent: Optional[float]


@dataclass
class NetworkDataPoint:
    timestamp: datetime
    bytes_in: float
    bytes_out: float
    active_connections: int = 0
    latency: Optional[float] = None
    packet_loss: Optional[float] = None
    # stamped by the anomaly detector
    is_anomaly: bool = False
    anomaly_score: float = 0.0
    anomaly_reason: Optional[str] = None
