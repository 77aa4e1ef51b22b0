"""Tests for the resource sampler and latency probe."""

import subprocess
from types import SimpleNamespace

import pytest

from hostpulse import collectors
from hostpulse.collectors import (
    CpuTicks, LatencyProbe, ResourceSampler, cpu_usage_percent, is_real_interface,
    parse_ping_output,
)

GIB = 1024 ** 3


def _nic(recv, sent, errin=0, errout=0):
    return SimpleNamespace(bytes_recv=recv, bytes_sent=sent, errin=errin, errout=errout)


def _nic_stats(isup=True, flags="up,broadcast,running"):
    return SimpleNamespace(isup=isup, flags=flags)


class FakeHost:
    """Scriptable stand-in for the psutil calls the sampler makes."""

    def __init__(self):
        self.cpu = [SimpleNamespace(user=100.0, system=50.0, idle=850.0, nice=0.0)]
        self.rx = 0
        self.tx = 0
        self.errors = 0

    def cpu_times(self, percpu=False):
        return list(self.cpu)

    def virtual_memory(self):
        return SimpleNamespace(total=16 * GIB, available=4 * GIB)

    def disk_usage(self, path):
        return SimpleNamespace(total=500 * GIB, free=125 * GIB)

    def net_io_counters(self, pernic=False):
        return {
            "en0": _nic(self.rx, self.tx, errin=self.errors),
            "lo0": _nic(10 ** 9, 10 ** 9),
        }

    def net_if_stats(self):
        return {"en0": _nic_stats(), "lo0": _nic_stats(flags="up,loopback,running")}


@pytest.fixture
def host(monkeypatch):
    fake = FakeHost()
    for name in ("cpu_times", "virtual_memory", "disk_usage", "net_io_counters", "net_if_stats"):
        monkeypatch.setattr(collectors.psutil, name, getattr(fake, name))
    return fake


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now


class TestCpuUsage:
    """Tests for tick delta arithmetic."""

    def test_first_reading_is_zero(self):
        """Test no previous reading reports 0."""
        assert cpu_usage_percent(None, CpuTicks(100, 50, 850)) == 0.0

    def test_delta_percentage(self):
        """Test active delta over total delta."""
        prev = CpuTicks(user=100, system=50, idle=850, nice=0)
        cur = CpuTicks(user=110, system=55, idle=860, nice=0)
        assert cpu_usage_percent(prev, cur) == pytest.approx(60.0)

    def test_no_elapsed_ticks(self):
        """Test an unchanged total reports 0."""
        ticks = CpuTicks(100, 50, 850)
        assert cpu_usage_percent(ticks, ticks) == 0.0

    def test_counter_reset(self):
        """Test going backwards reports 0 instead of a negative share."""
        assert cpu_usage_percent(CpuTicks(500, 500, 500), CpuTicks(1, 1, 1)) == 0.0

    def test_nice_counts_as_active(self):
        """Test nice ticks are busy time."""
        prev = CpuTicks(0, 0, 0, nice=0)
        cur = CpuTicks(0, 0, 50, nice=50)
        assert cpu_usage_percent(prev, cur) == pytest.approx(50.0)


class TestInterfaceFilter:
    """Tests for is_real_interface."""

    def test_loopback_by_name(self):
        assert not is_real_interface("lo", {})
        assert not is_real_interface("lo0", {})
        assert not is_real_interface("Loopback Pseudo-Interface 1", {})

    def test_down_interface(self):
        assert not is_real_interface("eth0", {"eth0": _nic_stats(isup=False)})

    def test_loopback_flag(self):
        assert not is_real_interface("weird0", {"weird0": _nic_stats(flags="up,loopback")})

    def test_real_interface(self):
        assert is_real_interface("en0", {"en0": _nic_stats()})
        assert is_real_interface("eth1", {})


class TestResourceSampler:
    """Tests for ResourceSampler against a fake host."""

    def test_memory_and_disk(self, host):
        """Test used = total - available and disk percentage."""
        snap = ResourceSampler(clock=FakeClock()).sample()
        assert snap.memory_total_bytes == 16 * GIB
        assert snap.memory_used_bytes == 12 * GIB
        assert snap.memory_free_bytes == 4 * GIB
        assert snap.memory_usage_percent == pytest.approx(75.0)
        assert snap.disk_used_bytes == 375 * GIB
        assert snap.disk_usage_percent == pytest.approx(75.0)
        assert snap.timestamp.tzinfo is not None

    def test_cpu_across_samples(self, host):
        """Test the first sample is 0 and the second uses the tick delta."""
        sampler = ResourceSampler(clock=FakeClock())
        assert sampler.sample().cpu_usage_percent == 0.0
        host.cpu = [SimpleNamespace(user=110.0, system=55.0, idle=860.0, nice=0.0)]
        assert sampler.sample().cpu_usage_percent == pytest.approx(60.0)

    def test_network_rates_skip_loopback(self, host):
        """Test rates come from real interfaces only."""
        clock = FakeClock()
        sampler = ResourceSampler(clock=clock)
        first = sampler.sample()
        assert first.network_download_bps == 0.0

        host.rx, host.tx, host.errors = 4000, 2000, 6
        clock.now += 2.0
        snap = sampler.sample()
        assert snap.network_download_bps == pytest.approx(2000.0)
        assert snap.network_upload_bps == pytest.approx(1000.0)
        assert snap.network_total_bps == pytest.approx(3000.0)
        assert snap.network_error_rate == pytest.approx(3.0)

    def test_peaks_are_running_maxima(self, host):
        """Test peaks survive a quieter sample."""
        clock = FakeClock()
        sampler = ResourceSampler(clock=clock)
        sampler.sample()
        host.rx = 10_000
        clock.now += 1.0
        sampler.sample()
        host.rx = 10_100
        clock.now += 1.0
        snap = sampler.sample()
        assert snap.network_download_bps == pytest.approx(100.0)
        assert snap.peak_download_bps == pytest.approx(10_000.0)

    def test_counter_reset_is_zero(self, host):
        """Test a counter that goes backwards reports 0."""
        clock = FakeClock()
        host.rx = 50_000
        sampler = ResourceSampler(clock=clock)
        sampler.sample()
        host.rx = 10
        clock.now += 1.0
        assert sampler.sample().network_download_bps == 0.0

    def test_failures_degrade_to_zero(self, monkeypatch):
        """Test every sub-metric failing still yields a snapshot."""
        def boom(*args, **kwargs):
            raise RuntimeError("unavailable")

        for name in ("cpu_times", "virtual_memory", "disk_usage", "net_io_counters", "net_if_stats"):
            monkeypatch.setattr(collectors.psutil, name, boom)

        snap = ResourceSampler(clock=FakeClock()).sample()
        assert snap.cpu_usage_percent == 0.0
        assert snap.memory_total_bytes == 0
        assert snap.memory_usage_percent == 0.0
        assert snap.disk_total_bytes == 0
        assert snap.network_download_bps == 0.0

    def test_chart_history(self, host):
        """Test each sample pushes one value per chart series."""
        sampler = ResourceSampler(history_capacity=2, clock=FakeClock())
        for _ in range(3):
            sampler.sample()
        chart = sampler.chart_series()
        assert len(chart.cpu) == 2
        assert len(chart.memory) == 2
        assert len(chart.network) == 2
        assert chart.memory == (pytest.approx(75.0), pytest.approx(75.0))

    def test_capacity_change_applies_on_next_sample(self, host):
        """Test a requested resize keeps the newest samples."""
        sampler = ResourceSampler(history_capacity=5, clock=FakeClock())
        for _ in range(4):
            sampler.sample()
        sampler.request_history_capacity(2)
        assert sampler.cpu_history.capacity == 5
        sampler.sample()
        assert sampler.cpu_history.capacity == 2
        assert len(sampler.chart_series().cpu) == 2


LINUX_PING = """\
PING 1.1.1.1 (1.1.1.1) 56(84) bytes of data.
64 bytes from 1.1.1.1: icmp_seq=1 ttl=57 time=10.1 ms
64 bytes from 1.1.1.1: icmp_seq=2 ttl=57 time=12.4 ms
64 bytes from 1.1.1.1: icmp_seq=3 ttl=57 time=15.0 ms

--- 1.1.1.1 ping statistics ---
3 packets transmitted, 3 received, 0% packet loss, time 2003ms
rtt min/avg/max/mdev = 10.100/12.500/15.000/2.010 ms
"""

MAC_PING = """\
--- 1.1.1.1 ping statistics ---
3 packets transmitted, 2 packets received, 33.3% packet loss
round-trip min/avg/max/stddev = 1.000/2.000/3.000/0.500 ms
"""

WINDOWS_PING = """\
Ping statistics for 1.1.1.1:
    Packets: Sent = 3, Received = 3, Lost = 0 (0% loss),
Approximate round trip times in milli-seconds:
    Minimum = 1ms, Maximum = 3ms, Average = 2ms
"""

UNREACHABLE_PING = """\
--- 10.255.255.1 ping statistics ---
3 packets transmitted, 0 received, 100% packet loss, time 2049ms
"""


class TestPingParsing:
    """Tests for parse_ping_output."""

    def test_linux(self):
        sample = parse_ping_output(LINUX_PING)
        assert sample.latency_ms == pytest.approx(12.5)
        assert sample.packet_loss_percent == 0.0

    def test_macos(self):
        sample = parse_ping_output(MAC_PING)
        assert sample.latency_ms == pytest.approx(2.0)
        assert sample.packet_loss_percent == pytest.approx(33.3)

    def test_windows(self):
        sample = parse_ping_output(WINDOWS_PING)
        assert sample.latency_ms == pytest.approx(2.0)
        assert sample.packet_loss_percent == 0.0

    def test_unreachable(self):
        sample = parse_ping_output(UNREACHABLE_PING)
        assert sample.latency_ms is None
        assert sample.packet_loss_percent == 100.0

    def test_per_reply_times_without_summary(self):
        """Test falling back to the mean of time= values."""
        text = "reply time=10 ms\nreply time=20 ms\n"
        assert parse_ping_output(text).latency_ms == pytest.approx(15.0)

    def test_garbage(self):
        sample = parse_ping_output("nothing useful here")
        assert sample.latency_ms is None
        assert sample.packet_loss_percent is None


class TestLatencyProbe:
    """Tests for LatencyProbe with a fake runner."""

    def test_measure(self):
        calls = []

        def runner(cmd, **kwargs):
            calls.append((cmd, kwargs))
            return SimpleNamespace(stdout=LINUX_PING, returncode=0)

        sample = LatencyProbe("1.1.1.1", count=3, runner=runner).measure()
        assert sample.latency_ms == pytest.approx(12.5)
        cmd, kwargs = calls[0]
        assert cmd[0] == "ping"
        assert cmd[-2:] == ["3", "1.1.1.1"]
        assert kwargs["timeout"] == 5.0

    def test_timeout(self):
        def runner(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

        sample = LatencyProbe("1.1.1.1", runner=runner).measure()
        assert sample.latency_ms is None
        assert sample.packet_loss_percent is None

    def test_missing_binary(self):
        def runner(cmd, **kwargs):
            raise FileNotFoundError("ping")

        assert LatencyProbe("1.1.1.1", runner=runner).measure().latency_ms is None
