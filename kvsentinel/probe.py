"""Network probes a sentinel runs against monitored servers, and their state."""

from __future__ import annotations

import re
import socket
import threading
import time
from dataclasses import dataclass, field

from kvsentinel.replication import encode_command_resp

PROBE_TIMEOUT = 2.0
COMMAND_TIMEOUT = 5.0
DEFAULT_DOWN_AFTER = 30.0
DEFAULT_FAILOVER_TIME = 180.0

_INT_PREFIX = re.compile(r"\s*([+-]?\d+)")


@dataclass
class MonitorConfig:
    """What a sentinel monitors and how patient it is before failing over."""

    master_name: str = ""
    master_host: str = ""
    master_port: int = 0
    quorum: int = 0
    down_after_millis: int = 0
    failover_timeout: int = 0

    @property
    def down_after(self) -> float:
        """Seconds of silence before the master counts as down (30 when unset)."""
        if self.down_after_millis == 0:
            return DEFAULT_DOWN_AFTER
        return self.down_after_millis / 1000

    @property
    def failover_time(self) -> float:
        """Seconds allowed for a failover (180 when unset)."""
        if self.failover_timeout == 0:
            return DEFAULT_FAILOVER_TIME
        return self.failover_timeout / 1000

    @property
    def effective_quorum(self) -> int:
        """The quorum, with an unset quorum meaning a single sentinel."""
        return self.quorum or 1


@dataclass
class MonitoredInstance:
    """A server watched by a sentinel."""

    host: str
    port: int
    role: str = "slave"
    last_ping: float = field(default_factory=time.time)
    last_ping_ok: bool = True
    is_down: bool = False
    down_since: float = 0.0
    last_down_log_time: float | None = None
    priority: int = 0
    repl_offset: int = 0
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    def health(self) -> str:
        """"down", "ok" or "unknown", as reported in sentinel status."""
        if self.is_down:
            return "down"
        if self.last_ping_ok:
            return "ok"
        return "unknown"


def _exchange(host: str, port: int, payload: bytes, bufsize: int, timeout: float) -> bytes:
    """Send payload on a fresh connection and return one read of the reply."""
    with socket.create_connection((host, port), timeout=timeout) as conn:
        conn.settimeout(timeout)
        conn.sendall(payload)
        return conn.recv(bufsize)


def ping_instance(host: str, port: int) -> bool:
    """True when the server answers PING with a simple-string reply."""
    try:
        reply = _exchange(host, port, encode_command_resp(["PING"]), 1024, PROBE_TIMEOUT)
    except OSError:
        return False
    return reply.startswith(b"+")


def fetch_replication_info(host: str, port: int) -> str:
    """Text of the server's INFO replication reply; raises OSError on failure."""
    reply = _exchange(
        host, port, encode_command_resp(["INFO", "replication"]), 4096, PROBE_TIMEOUT
    )
    return reply.decode("utf-8", "replace")


def _scan_int(text: str) -> int:
    match = _INT_PREFIX.match(text)
    return int(match.group(1)) if match else 0


def parse_replication_info(text: str) -> list[tuple[str, int, int]]:
    """Replicas listed in INFO replication text, as (host, port, offset)."""
    replicas = []
    for line in text.split("\r\n"):
        if not line.startswith("slave"):
            continue
        parts = line.split(":")
        if len(parts) < 2:
            continue
        host, port, offset = "", 0, 0
        for pair in parts[1].split(","):
            kv = pair.split("=")
            if len(kv) != 2:
                continue
            name, value = kv
            if name == "ip":
                host = value
            elif name == "port":
                port = _scan_int(value)
            elif name == "offset":
                offset = _scan_int(value)
        if host and port > 0:
            replicas.append((host, port, offset))
    return replicas


def _command_succeeds(host: str, port: int, args: list[str]) -> bool:
    try:
        reply = _exchange(host, port, encode_command_resp(args), 1024, COMMAND_TIMEOUT)
    except OSError:
        return False
    return reply.startswith(b"+")


def promote_replica(host: str, port: int) -> bool:
    """Send REPLICAOF NO ONE; True when the server accepts it."""
    return _command_succeeds(host, port, ["REPLICAOF", "NO", "ONE"])


def reconfigure_replica(
    replica_host: str, replica_port: int, master_host: str, master_port: int
) -> bool:
    """Point a replica at a new master; True when the replica accepts it."""
    return _command_succeeds(
        replica_host, replica_port, ["REPLICAOF", master_host, str(master_port)]
    )