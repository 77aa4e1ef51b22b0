"""Export helpers for external analysis tooling."""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from .models import Alert, ConnectionSet, NetworkDataPoint

log = logging.getLogger(__name__)

EMPTY_EXPORT = "[]"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def _export(records: Iterable[Any]) -> str:
    try:
        rows = [asdict(r) for r in records]
        if not rows:
            return EMPTY_EXPORT
        return json.dumps(rows, indent=2, default=_json_default)
    except (TypeError, ValueError) as e:
        log.warning("export failed: %s", e, extra={"event": "export_failed"})
        return EMPTY_EXPORT


def export_history(points: Iterable[NetworkDataPoint]) -> str:
    return _export(points)


def export_alerts(alerts: Iterable[Alert]) -> str:
    return _export(alerts)


CSV_HEADER = [
    "Timestamp", "Process", "PID", "Protocol", "Local Address",
    "Remote Address", "State", "Bytes Received", "Bytes Sent",
]


def export_connections_csv(connection_set: ConnectionSet) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for c in connection_set.connections:
        writer.writerow([
            c.observed_at.isoformat(), c.process_name, c.process_id, c.protocol.value,
            f"{c.local_address}:{c.local_port}", f"{c.remote_address}:{c.remote_port}",
            c.state.value, c.bytes_received, c.bytes_sent,
        ])
    return buf.getvalue()
