from __future__ import annotations
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from PySide6 import QtCore

from .config import CFG_PATH, load_config
from .logging_setup import configure_logging
from .models import SystemSnapshot
from .scheduler import MonitoringScheduler, seconds_to_ms

log = logging.getLogger(__name__)


class AlertLogger(QtCore.QObject):
    """Console subscriber: logs each alert once and a one-line summary per snapshot."""
    def __init__(self, scheduler: MonitoringScheduler):
        super().__init__(scheduler)
        self._seen = set()
        scheduler.state.alerts_changed.connect(self.on_alerts)
        scheduler.state.snapshot_changed.connect(self.on_snapshot)

    @QtCore.Slot(object)
    def on_alerts(self, alerts):
        for a in alerts:
            if a.id in self._seen:
                continue
            self._seen.add(a.id)
            log.warning("[%s] %s: %s", a.severity.value, a.title, a.description,
                        extra={"event": "alert", "alert_id": a.id})

    @QtCore.Slot(object)
    def on_snapshot(self, s: SystemSnapshot):
        log.info(
            "CPU %.0f%% | MEM %.0f%% | DISK %.0f%% | NET ↓%dB/s ↑%dB/s",
            s.cpu_usage_percent, s.memory_usage_percent, s.disk_usage_percent,
            int(s.network_download_bps), int(s.network_upload_bps),
        )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="hostpulse", description="Headless host resource and connection monitor")
    p.add_argument("--config", type=Path, default=CFG_PATH, help="config JSON (default: %(default)s)")
    p.add_argument("--duration", type=float, default=0.0,
                   help="stop after N seconds (0 = run until interrupted)")
    p.add_argument("--export-alerts", type=Path, help="write the alert list as JSON on exit")
    p.add_argument("--export-history", type=Path, help="write the bandwidth history as JSON on exit")
    p.add_argument("--export-connections", type=Path, help="write the last connection set as CSV on exit")
    p.add_argument("--verbose", action="store_true")
    return p


def _write_exports(scheduler: MonitoringScheduler, args: argparse.Namespace) -> None:
    for path, text in (
        (args.export_alerts, scheduler.export_alerts),
        (args.export_history, scheduler.export_history),
        (args.export_connections, scheduler.export_connections_csv),
    ):
        if path is not None:
            path.write_text(text(), encoding="utf-8")
            log.info("exported %s", path, extra={"event": "export_written"})


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    cfg = load_config(args.config)
    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv[:1])

    scheduler = MonitoringScheduler(cfg)
    AlertLogger(scheduler)

    # Qt's loop blocks Python signal handlers; an idle timer lets SIGINT through
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    wake = QtCore.QTimer()
    wake.timeout.connect(lambda: None)
    wake.start(250)

    if args.duration > 0:
        QtCore.QTimer.singleShot(seconds_to_ms(args.duration), app.quit)

    scheduler.start()
    code = app.exec()

    scheduler.stop()
    scheduler.wait_for_idle()
    _write_exports(scheduler, args)
    return code