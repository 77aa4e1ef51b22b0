"""Tests for the data model."""

from datetime import datetime, timezone

import pytest

from hostpulse.models import (
    Alert, AlertCategory, AlertSeverity, ConnectionState, SystemSnapshot, clamp_pct,
)

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestConnectionState:
    """Tests for ConnectionState.parse."""

    @pytest.mark.parametrize("token,expected", [
        ("ESTABLISHED", ConnectionState.ESTABLISHED),
        ("listen", ConnectionState.LISTEN),
        ("SYN_RCVD", ConnectionState.SYN_RECEIVED),
        ("SYN_RECV", ConnectionState.SYN_RECEIVED),
        ("FIN_WAIT_1", ConnectionState.FIN_WAIT1),
        ("FIN_WAIT2", ConnectionState.FIN_WAIT2),
        ("NONE", ConnectionState.UNKNOWN),
        ("", ConnectionState.UNKNOWN),
    ])
    def test_parse(self, token, expected):
        assert ConnectionState.parse(token) is expected


class TestSnapshot:
    """Tests for SystemSnapshot and helpers."""

    def test_total_bandwidth(self):
        snap = SystemSnapshot(timestamp=T0, network_download_bps=300.0, network_upload_bps=200.0)
        assert snap.network_total_bps == 500.0

    def test_clamp(self):
        assert clamp_pct(-5) == 0.0
        assert clamp_pct(150) == 100.0
        assert clamp_pct(42.5) == 42.5


class TestAlert:
    """Tests for Alert acknowledgement."""

    def test_acknowledge_returns_copy(self):
        alert = Alert(T0, AlertSeverity.WARNING, AlertCategory.ANOMALY, "t", "d")
        acked = alert.acknowledge(T0)
        assert not alert.acknowledged
        assert acked.acknowledged
        assert acked.acknowledged_at == T0
        assert acked.id == alert.id
