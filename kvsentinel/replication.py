"""Master-side replication: replica registry, command propagation and backlog."""

from __future__ import annotations

import enum
import logging
import queue
import secrets
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_BACKLOG_SIZE = 1024 * 1024
COMMAND_QUEUE_SIZE = 1000
DEFAULT_PRIORITY = 100

_STOP = object()


class Role(str, enum.Enum):
    """The server's role in replication."""

    MASTER = "master"
    REPLICA = "slave"


class ReplicaState(str, enum.Enum):
    """State of a replica's link to this master."""

    CONNECTING = "connecting"
    SYNCING = "syncing"
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass
class ReplicaInfo:
    """A replica connected to this master."""

    conn: Any
    replica_id: str
    addr: str
    listening_port: int = 0
    connected_at: float = field(default_factory=time.time)
    last_ping_at: float = field(default_factory=time.time)
    offset: int = 0
    state: ReplicaState = ReplicaState.CONNECTING
    capability_psync2: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


@dataclass
class _MasterLink:
    """This server's link to its master while it acts as a replica."""

    host: str
    port: int
    state: str = "disconnected"
    last_interaction: float = field(default_factory=time.time)
    offset: int = 0
    master_repl_id: str = ""
    conn: Any = None


@dataclass(frozen=True)
class ReplicationCommand:
    """A write command queued for propagation to replicas."""

    args: tuple[str, ...]
    timestamp: float = field(default_factory=time.time)


class ReplicationBacklog:
    """Bounded history of the most recent replication stream bytes."""

    def __init__(self, size: int) -> None:
        if size <= 0:
            raise ValueError(f"backlog size must be positive, got {size}")
        self.size = size
        self.offset = 0
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def append(self, data: bytes) -> None:
        """Add data, discarding the oldest bytes once the backlog is full."""
        self._buffer += data
        overflow = len(self._buffer) - self.size
        if overflow > 0:
            del self._buffer[:overflow]
            self.offset += overflow

    def get_range(self, offset: int) -> bytes | None:
        """Bytes from offset to the end, or None if offset is outside the backlog."""
        if offset < self.offset or offset > self.offset + len(self._buffer):
            return None
        return bytes(self._buffer[offset - self.offset:])


def generate_repl_id() -> str:
    """A random 40-character hexadecimal replication ID."""
    return secrets.token_hex(20)


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8", "surrogateescape")


def encode_command_resp(args: Sequence[str | bytes]) -> bytes:
    """Encode a command as a RESP array of bulk strings."""
    parts = [f"*{len(args)}\r\n".encode("ascii")]
    for arg in args:
        raw = _to_bytes(arg)
        parts.append(f"${len(raw)}\r\n".encode("ascii") + raw + b"\r\n")
    return b"".join(parts)


def parse_addr(addr: str) -> tuple[str, int]:
    """Split "host:port"; the port is 0 when it is missing or not a number."""
    if addr.startswith("["):
        close = addr.find("]")
        if close == -1 or addr[close + 1:close + 2] != ":":
            return addr, 0
        host, port_text = addr[1:close], addr[close + 2:]
    else:
        host, sep, port_text = addr.rpartition(":")
        if not sep or ":" in host:
            return addr, 0
    try:
        return host, int(port_text)
    except ValueError:
        return host, 0


def _format_peer(peer: Any) -> str:
    if isinstance(peer, tuple) and len(peer) >= 2:
        host, port = peer[0], peer[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(peer)


class ReplicationManager:
    """Tracks replicas and propagates write commands to them."""

    def __init__(self, role: Role) -> None:
        self.role = Role(role)
        self.repl_id = generate_repl_id()
        self.offset = 0
        self.listening_port = 0
        self.priority = DEFAULT_PRIORITY
        self.backlog = ReplicationBacklog(DEFAULT_BACKLOG_SIZE)
        self.master_link: _MasterLink | None = None
        self.command_executor: Callable[[list[str]], Any] | None = None
        self.store_getter: Callable[[], Any] | None = None

        self._replicas: dict[str, ReplicaInfo] = {}
        self._replicas_lock = threading.Lock()
        self._backlog_lock = threading.Lock()
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=COMMAND_QUEUE_SIZE)
        self._closed = False
        self._worker: threading.Thread | None = None
        if self.role is Role.MASTER:
            self._worker = threading.Thread(
                target=self._run, name="replication-propagator", daemon=True
            )
            self._worker.start()

    # ---- replica registry -------------------------------------------------

    def add_replica(self, conn: Any, replica_id: str) -> ReplicaInfo:
        """Register a newly connected replica."""
        replica = ReplicaInfo(conn=conn, replica_id=replica_id, addr=_format_peer(conn.getpeername()))
        with self._replicas_lock:
            self._replicas[replica_id] = replica
        log.info("Replica connected: %s (%s)", replica_id, replica.addr)
        return replica

    def remove_replica(self, replica_id: str) -> None:
        """Forget a replica and close its connection."""
        with self._replicas_lock:
            replica = self._replicas.pop(replica_id, None)
        if replica is None:
            return
        try:
            replica.conn.close()
        except OSError:
            pass
        log.info("Replica disconnected: %s", replica_id)

    def get_replica(self, replica_id: str) -> ReplicaInfo | None:
        with self._replicas_lock:
            return self._replicas.get(replica_id)

    def get_replica_by_addr(self, addr: str) -> ReplicaInfo | None:
        with self._replicas_lock:
            return next((r for r in self._replicas.values() if r.addr == addr), None)

    def update_replica_offset(self, replica_id: str, offset: int) -> None:
        """Record an acknowledged offset, which also counts as a ping."""
        with self._replicas_lock:
            replica = self._replicas.get(replica_id)
            if replica is not None:
                replica.offset = offset
                replica.last_ping_at = time.time()

    def set_replica_listening_port(self, replica_id: str, port: int) -> None:
        with self._replicas_lock:
            replica = self._replicas.get(replica_id)
            if replica is not None:
                replica.listening_port = port
                log.info("Set listening port %d for replica %s", port, replica_id)

    def all_replicas(self) -> list[ReplicaInfo]:
        with self._replicas_lock:
            return list(self._replicas.values())

    # ---- propagation ------------------------------------------------------

    def propagate_command(self, args: Sequence[str]) -> None:
        """Queue a command for the replicas; dropped when the queue is full."""
        if self.role is not Role.MASTER or self._closed:
            return
        try:
            self._queue.put_nowait(ReplicationCommand(tuple(args)))
        except queue.Full:
            log.warning("Command queue full, dropping command")

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            self._propagate_to_replicas(item)

    def _propagate_to_replicas(self, command: ReplicationCommand) -> None:
        data = encode_command_resp(command.args)
        with self._backlog_lock:
            self.backlog.append(data)
            self.offset += len(data)
            current = self.offset

        with self._replicas_lock:
            targets = [r for r in self._replicas.values() if r.state is ReplicaState.ONLINE]

        for replica in targets:
            with replica.lock:
                try:
                    replica.conn.sendall(data)
                except OSError as exc:
                    log.warning("Error sending to replica %s: %s", replica.replica_id, exc)
                    replica.state = ReplicaState.OFFLINE
                    failed = True
                else:
                    replica.offset = current
                    failed = False
            if failed:
                self.remove_replica(replica.replica_id)

    # ---- inspection -------------------------------------------------------

    def info(self) -> dict[str, Any]:
        """Replication details in the shape reported by INFO replication."""
        result: dict[str, Any] = {
            "role": self.role.value,
            "master_repl_id": self.repl_id,
            "master_repl_offset": self.offset,
        }
        if self.role is Role.MASTER:
            now = time.time()
            slaves = []
            with self._replicas_lock:
                result["connected_slaves"] = len(self._replicas)
                for index, replica in enumerate(self._replicas.values()):
                    ip, port = parse_addr(replica.addr)
                    if replica.listening_port > 0:
                        port = replica.listening_port
                    slave = {
                        "id": replica.replica_id,
                        "ip": ip,
                        "port": port,
                        "state": replica.state.value,
                        "offset": replica.offset,
                        "lag": now - replica.last_ping_at,
                    }
                    result[f"slave{index}"] = slave
                    slaves.append(slave)
            result["slaves"] = slaves
        else:
            result["slave_priority"] = self.priority
            link = self.master_link
            if link is not None:
                result["master_host"] = link.host
                result["master_port"] = link.port
                result["master_link_status"] = link.state
                result["master_last_io_seconds_ago"] = time.time() - link.last_interaction
                result["master_sync_in_progress"] = link.state == "syncing"
                result["slave_repl_offset"] = link.offset
                result["master_replid"] = link.master_repl_id
        return result

    def get_backlog_data(self, offset: int) -> bytes | None:
        """Backlog bytes from offset onwards, or None if they are no longer held."""
        with self._backlog_lock:
            return self.backlog.get_range(offset)

    def store_snapshot(self) -> Any:
        """The store as returned by store_getter, or None when none is set."""
        getter = self.store_getter
        return None if getter is None else getter()

    def execute_replicated_command(self, args: Sequence[str]) -> Any:
        """Run a command received from the master through command_executor."""
        executor = self.command_executor
        if executor is None:
            log.info("No command executor set, skipping command: %s", list(args))
            return None
        return executor(list(args))

    # ---- lifecycle --------------------------------------------------------

    def shutdown(self) -> None:
        """Drain queued commands, then close every replica and master connection."""
        if self._closed:
            return
        self._closed = True
        if self._worker is not None:
            self._queue.put(_STOP)
            self._worker.join()

        with self._replicas_lock:
            replicas = list(self._replicas.values())
        for replica in replicas:
            with replica.lock:
                try:
                    replica.conn.close()
                except OSError as exc:
                    log.warning("Error closing replica %s: %s", replica.replica_id, exc)

        link = self.master_link
        if link is not None and link.conn is not None:
            try:
                link.conn.close()
            except OSError:
                pass
        log.info("Replication shutdown complete")