from __future__ import annotations
import logging
import subprocess
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import psutil

from .models import (
    ConnectionSet, ConnectionState, ConnectionStats, NetworkConnection, TransportProtocol,
)
from .rates import rate

log = logging.getLogger(__name__)

TOP_PROCESS_COUNT = 5
SYSTEM_PROCESS_NAME = "System"
UNKNOWN_PROCESS_NAME = "Unknown"
WILDCARD_ADDRESSES = {"", "*", "*.*"}


@dataclass(frozen=True)
class SocketRow:
    """One socket as reported by a connection source, before name resolution."""
    local_address: str
    local_port: int
    remote_address: str
    remote_port: int
    state: str
    bytes_received: int
    bytes_sent: int
    pid: Optional[int]


# ──────────────────────────────────────────────
# netstat text parsing
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class _Columns:
    local: int
    remote: int
    state: Optional[int]
    rx: int
    tx: int
    pid: int

    @property
    def min_fields(self) -> int:
        return self.pid + 1


# `netstat -anv` layouts; udp rows leave the (state) column blank
_TCP_COLUMNS = _Columns(local=3, remote=4, state=5, rx=6, tx=7, pid=10)
_UDP_COLUMNS = _Columns(local=3, remote=4, state=None, rx=5, tx=6, pid=9)


def _int_or(token: str, default: int = 0) -> int:
    try:
        return int(token)
    except (TypeError, ValueError):
        return default


def parse_address(token: str) -> Tuple[str, int]:
    """
    Split a netstat endpoint token into (address, port).

    "192.168.1.5.8080" -> ("192.168.1.5", 8080)
    "fe80::1:443"      -> ("fe80::1", 443)
    "fe80::1.443"      -> ("fe80::1", 443)    (BSD style v6)
    "*.53"             -> ("*", 53)
    anything else      -> (token, 0)
    """
    if ":" not in token:
        parts = token.split(".")
        if len(parts) >= 5:
            return ".".join(parts[:4]), _int_or(parts[-1])
        if len(parts) == 2 and parts[0] == "*" and parts[1].isdigit():
            return "*", int(parts[1])
        return token, 0

    head, _, tail = token.rpartition(":")
    if tail.isdigit() and head:
        return head, int(tail)
    head, _, tail = token.rpartition(".")
    if tail.isdigit() and head:
        return head, int(tail)
    return token, 0


def parse_netstat_line(line: str, protocol: TransportProtocol) -> Optional[SocketRow]:
    """Best effort: None for headers, blanks and rows with the wrong shape."""
    fields = line.split()
    cols = _UDP_COLUMNS if protocol is TransportProtocol.UDP else _TCP_COLUMNS
    if len(fields) < cols.min_fields:
        return None
    if not fields[0].lower().startswith(protocol.value.lower()):
        return None

    local_addr, local_port = parse_address(fields[cols.local])
    remote_addr, remote_port = parse_address(fields[cols.remote])
    pid_token = fields[cols.pid]
    return SocketRow(
        local_address=local_addr,
        local_port=local_port,
        remote_address=remote_addr,
        remote_port=remote_port,
        state=fields[cols.state] if cols.state is not None else "",
        bytes_received=max(0, _int_or(fields[cols.rx])),
        bytes_sent=max(0, _int_or(fields[cols.tx])),
        pid=int(pid_token) if pid_token.isdigit() else None,
    )


def parse_netstat_output(output: str, protocol: TransportProtocol) -> List[SocketRow]:
    rows: List[SocketRow] = []
    for line in output.splitlines():
        row = parse_netstat_line(line, protocol)
        if row is not None:
            rows.append(row)
    return rows


# ──────────────────────────────────────────────
# Connection sources
# ──────────────────────────────────────────────
class ConnectionSource:
    """Lists the sockets of one transport protocol. Blocking; may raise."""

    def list_sockets(self, protocol: TransportProtocol) -> List[SocketRow]:
        raise NotImplementedError


class NetstatConnectionSource(ConnectionSource):
    def __init__(self, executable: str = "netstat", timeout_s: float = 5.0,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.executable = executable
        self.timeout_s = timeout_s
        self._runner = runner

    def list_sockets(self, protocol: TransportProtocol) -> List[SocketRow]:
        proc = self._runner(
            [self.executable, "-anv", "-p", protocol.value.lower()],
            capture_output=True, text=True, timeout=self.timeout_s,
        )
        if proc.returncode != 0:
            log.debug("netstat %s exited %s", protocol.value, proc.returncode)
        return parse_netstat_output(proc.stdout or "", protocol)


class PsutilConnectionSource(ConnectionSource):
    """For platforms whose netstat has no per-socket byte counters (bytes stay 0)."""

    def list_sockets(self, protocol: TransportProtocol) -> List[SocketRow]:
        kind = "udp" if protocol is TransportProtocol.UDP else "tcp"
        rows: List[SocketRow] = []
        for c in psutil.net_connections(kind=kind):
            laddr = (c.laddr.ip, c.laddr.port) if c.laddr else ("", 0)
            raddr = (c.raddr.ip, c.raddr.port) if c.raddr else ("", 0)
            rows.append(SocketRow(
                local_address=laddr[0], local_port=int(laddr[1]),
                remote_address=raddr[0], remote_port=int(raddr[1]),
                state="" if protocol is TransportProtocol.UDP else str(c.status),
                bytes_received=0, bytes_sent=0,
                pid=int(c.pid) if c.pid is not None else None,
            ))
        return rows


def default_source() -> ConnectionSource:
    if sys.platform == "darwin":
        return NetstatConnectionSource()
    return PsutilConnectionSource()


# ──────────────────────────────────────────────
# ProcessNameCache
# ──────────────────────────────────────────────
def lookup_process_name(pid: int) -> str:
    name = psutil.Process(pid).name()
    return name.rsplit("/", 1)[-1] if name else ""


class ProcessNameCache:
    """
    PID -> process name memo shared with the background enumeration thread.
    Entries live for the lifetime of the cache unless pruned, so a reused
    PID can report the previous owner's name.
    """

    def __init__(self, lookup: Callable[[int], str] = lookup_process_name):
        self._lookup = lookup
        self._names: Dict[int, str] = {}
        self._lock = threading.Lock()

    def resolve(self, pid: int) -> str:
        if pid == 0:
            return SYSTEM_PROCESS_NAME
        with self._lock:
            cached = self._names.get(pid)
        if cached is not None:
            return cached

        try:
            name = self._lookup(pid) or f"PID:{pid}"
        except (psutil.Error, OSError) as e:
            log.debug("name lookup for pid %s failed: %s", pid, e)
            name = f"PID:{pid}"

        with self._lock:
            return self._names.setdefault(pid, name)

    def invalidate(self, pid: int) -> None:
        with self._lock:
            self._names.pop(pid, None)

    def prune(self, live_pids: Iterable[int]) -> int:
        live = set(live_pids)
        with self._lock:
            stale = [pid for pid in self._names if pid not in live]
            for pid in stale:
                del self._names[pid]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)


# ──────────────────────────────────────────────
# ConnectionEnumerator
# ──────────────────────────────────────────────
def _infer_udp_state(remote_address: str) -> ConnectionState:
    if remote_address in WILDCARD_ADDRESSES:
        return ConnectionState.LISTEN
    return ConnectionState.ESTABLISHED


class ConnectionEnumerator:
    PROTOCOLS = (TransportProtocol.TCP, TransportProtocol.UDP)

    def __init__(self, source: Optional[ConnectionSource] = None,
                 names: Optional[ProcessNameCache] = None,
                 prune_process_cache: bool = False):
        self.source = source or default_source()
        self.names = names or ProcessNameCache()
        self.prune_process_cache = prune_process_cache

    def enumerate(self) -> ConnectionSet:
        observed_at = datetime.now(timezone.utc)
        connections: List[NetworkConnection] = []

        for protocol in self.PROTOCOLS:
            try:
                rows = self.source.list_sockets(protocol)
            except Exception as e:
                log.debug("listing %s sockets failed: %s", protocol.value, e,
                          extra={"event": "connection_source_failed"})
                continue
            for row in rows:
                connections.append(self._build(row, protocol, observed_at))

        if self.prune_process_cache:
            self.names.prune(c.process_id for c in connections)

        return ConnectionSet(connections=tuple(connections), observed_at=observed_at)

    def _build(self, row: SocketRow, protocol: TransportProtocol,
               observed_at: datetime) -> NetworkConnection:
        if row.pid is None:
            pid, name = 0, UNKNOWN_PROCESS_NAME
        else:
            pid, name = row.pid, self.names.resolve(row.pid)

        if protocol is TransportProtocol.UDP:
            state = _infer_udp_state(row.remote_address)
        else:
            state = ConnectionState.parse(row.state)

        return NetworkConnection(
            process_name=name,
            process_id=pid,
            local_address=row.local_address,
            local_port=row.local_port,
            remote_address=row.remote_address,
            remote_port=row.remote_port,
            protocol=protocol,
            state=state,
            bytes_received=row.bytes_received,
            bytes_sent=row.bytes_sent,
            observed_at=observed_at,
        )

    @staticmethod
    def stats(previous: Optional[ConnectionStats], current: ConnectionSet) -> ConnectionStats:
        return connection_stats(previous, current)


def connection_stats(previous: Optional[ConnectionStats], current: ConnectionSet) -> ConnectionStats:
    total = sum(c.total_bytes for c in current.connections)

    bps = 0.0
    if previous is not None:
        r = rate(previous.total_bytes, previous.timestamp.timestamp(),
                 total, current.observed_at.timestamp())
        bps = previous.bytes_per_second if r is None else r

    by_process: Dict[str, int] = {}
    for c in current.connections:
        by_process[c.process_name] = by_process.get(c.process_name, 0) + c.total_bytes
    # sorted() is stable and dicts keep first-seen order, so ties stay in encounter order
    top = sorted(by_process.items(), key=lambda kv: kv[1], reverse=True)[:TOP_PROCESS_COUNT]

    return ConnectionStats(
        timestamp=current.observed_at,
        total_bytes=total,
        bytes_per_second=max(0.0, bps),
        active_connections=len(current.connections),
        top_processes=tuple(top),
    )


# ──────────────────────────────────────────────
# Filtering
# ──────────────────────────────────────────────
def filter_connections(connections: Sequence[NetworkConnection],
                       protocol: Optional[TransportProtocol] = None,
                       process: str = "",
                       address: str = "") -> List[NetworkConnection]:
    out = list(connections)
    if protocol is not None:
        out = [c for c in out if c.protocol is protocol]
    if process:
        needle = process.lower()
        out = [c for c in out if needle in c.process_name.lower()]
    if address:
        out = [c for c in out if address in c.local_address or address in c.remote_address]
    return out

