"""A standalone sentinel: RESP command server, peer mesh and failover elections."""

from __future__ import annotations

import argparse
import logging
import random
import re
import signal
import socket
import threading
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from kvsentinel.config import SentinelServerConfig
from kvsentinel.replication import parse_addr
from kvsentinel.resp import (
    RespError,
    encode_array,
    encode_bulk_string,
    encode_error,
    encode_integer,
    encode_mixed_array,
    encode_nil_array,
    encode_null_bulk_string,
    encode_raw_array,
    encode_simple_string,
    parse_command,
)
from kvsentinel.sentinel import Sentinel
from kvsentinel.voting import VotingState

log = logging.getLogger(__name__)

CLIENT_IDLE_TIMEOUT = 30.0
PEER_CONNECT_TIMEOUT = 5.0
PEER_IO_TIMEOUT = 5.0
PEER_PING_INTERVAL = 10.0
PEER_MAX_BACKOFF = 30.0
VOTE_IO_TIMEOUT = 2.0
VOTE_TIMEOUT = 3.0
SHUTDOWN_TIMEOUT = 5.0
ACCEPT_POLL = 0.5
DEFAULT_ELECTION_BASE_MS = 30000

_INT_PREFIX = re.compile(r"\s*([+-]?\d+)")


def _scan_int(text: str) -> int:
    match = _INT_PREFIX.match(text)
    return int(match.group(1)) if match else 0


def _close_socket(conn: socket.socket) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        conn.close()
    except OSError:
        pass


@dataclass
class _Peer:
    """A connection to another sentinel of the mesh."""

    conn: socket.socket
    lock: threading.Lock = field(default_factory=threading.Lock)


class SentinelServer:
    """Serves sentinel commands and coordinates failover with peer sentinels."""

    def __init__(self, config: SentinelServerConfig | None = None) -> None:
        self.config = config if config is not None else SentinelServerConfig()
        self.sentinel_id = self.config.sentinel_id
        self.sentinel = Sentinel(self.config.monitor_config())
        self.voting = VotingState(self.sentinel_id)

        base_ms = self.config.down_after_millis or DEFAULT_ELECTION_BASE_MS
        self.election_timeout = (base_ms + random.randrange(base_ms)) / 1000
        self.last_master_contact = time.time()
        self._contact_lock = threading.Lock()
        self._election_reset = threading.Event()

        self.sentinel.on_vote_request = self.vote_for_failover
        self.sentinel.on_master_heartbeat = self._reset_election_timer
        self.sentinel.on_master_change = self._on_master_change

        self._peers: dict[str, _Peer] = {}
        self._peers_lock = threading.Lock()

        self._listener: socket.socket | None = None
        self._connections: dict[int, socket.socket] = {}
        self._connections_lock = threading.Lock()
        self._conn_counter = 0
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()
        self._state_lock = threading.Lock()
        self._started = False
        self._is_shutdown = False

        log.info(
            "Sentinel monitoring: %s at %s:%d",
            self.config.master_name, self.config.master_host, self.config.master_port,
        )
        log.info(
            "Sentinel quorum: %d, down-after: %dms, failover-timeout: %dms",
            self.config.quorum, self.config.down_after_millis, self.config.failover_timeout,
        )
        log.info("Election timeout for %s: %.3fs", self.sentinel_id, self.election_timeout)

    # ---- properties -------------------------------------------------------

    @property
    def address(self) -> tuple[str, int] | None:
        """The (host, port) the server listens on, once started."""
        if self._listener is None:
            return None
        host, port = self._listener.getsockname()[:2]
        return host, port

    @property
    def peer_addrs(self) -> list[str]:
        """Addresses of the peer sentinels currently connected."""
        with self._peers_lock:
            return sorted(self._peers)

    # ---- commands ---------------------------------------------------------

    def execute(self, args: Sequence[str]) -> bytes:
        """Run one command and return the encoded reply."""
        if not args:
            return encode_error("ERR no command provided")
        name = args[0].upper()
        if name == "PING":
            return encode_simple_string("PONG")
        if name == "SENTINEL":
            if len(args) < 2:
                return encode_error("ERR wrong number of arguments for 'sentinel' command")
            return self._sentinel_command(list(args[1:]))
        if name == "INFO":
            return self._info()
        return encode_error(f"ERR unknown command '{name}'")

    def _sentinel_command(self, args: list[str]) -> bytes:
        sub = args[0].upper()
        rest = args[1:]
        if sub == "GET-MASTER-ADDR-BY-NAME":
            return self._get_master_addr_by_name(rest)
        if sub in ("MASTER", "MASTERS"):
            return self._masters()
        if sub in ("REPLICAS", "SLAVES"):
            return self._replicas(rest)
        if sub == "SENTINELS":
            return self._sentinels(rest)
        if sub == "RESET":
            if not rest:
                return encode_error("ERR wrong number of arguments for 'sentinel reset' command")
            return encode_integer(1)
        if sub == "IS-MASTER-DOWN-BY-ADDR":
            return self._is_master_down_by_addr(rest)
        return encode_error(f"ERR Unknown sentinel subcommand '{sub}'")

    def _get_master_addr_by_name(self, args: list[str]) -> bytes:
        if not args:
            return encode_error(
                "ERR wrong number of arguments for 'sentinel get-master-addr-by-name' command"
            )
        if args[0] != self.config.master_name:
            return encode_null_bulk_string()
        host, port = self.sentinel.master_addr()
        return encode_array([host, str(port)])

    def _masters(self) -> bytes:
        status = self.sentinel.status()
        return encode_mixed_array([
            "name", self.config.master_name,
            "ip", status["master_host"],
            "port", status["master_port"],
            "status", status["master_status"],
            "replicas", status["replicas_count"],
            "quorum", self.config.quorum,
        ])

    def _replicas(self, args: list[str]) -> bytes:
        if not args:
            return encode_error("ERR wrong number of arguments for 'sentinel replicas' command")
        if args[0] != self.config.master_name:
            return encode_nil_array()
        entries = [
            encode_mixed_array([
                "name", f"{replica['host']}:{replica['port']}",
                "ip", replica["host"],
                "port", replica["port"],
                "status", replica["status"],
                "priority", replica["priority"],
                "repl-offset", replica["offset"],
            ])
            for replica in self.sentinel.status()["replicas"]
        ]
        return encode_raw_array(entries)

    def _sentinels(self, args: list[str]) -> bytes:
        if not args:
            return encode_error("ERR wrong number of arguments for 'sentinel sentinels' command")
        if args[0] != self.config.master_name:
            return encode_nil_array()
        entries = []
        for index, addr in enumerate(self.config.sentinel_addrs):
            parts = addr.split(":")
            if len(parts) != 2:
                continue
            entries.append(encode_mixed_array([
                "name", f"sentinel-{index}",
                "ip", parts[0],
                "port", parts[1],
                "runid", f"sentinel-{index}-runid",
            ]))
        return encode_raw_array(entries)

    def _is_master_down_by_addr(self, args: list[str]) -> bytes:
        if len(args) < 4:
            return encode_error(
                "ERR wrong number of arguments for 'sentinel is-master-down-by-addr' command"
            )
        return self.voting.handle_request(
            args[0],
            _scan_int(args[1]),
            _scan_int(args[2]),
            args[3],
            self.sentinel.master_addr(),
            self._is_master_down(),
        )

    def _info(self) -> bytes:
        status = self.sentinel.status()
        text = (
            "# Sentinel\r\n"
            "sentinel_masters:1\r\n"
            "sentinel_running_scripts:0\r\n"
            "sentinel_scripts_queue_length:0\r\n"
            "sentinel_simulate_failure_flags:0\r\n"
            f"master0:name={self.config.master_name},status={status['master_status']},"
            f"address={status['master_host']}:{status['master_port']},"
            f"slaves={status['replicas_count']},"
            f"sentinels={len(self.config.sentinel_addrs) + 1}\r\n"
        )
        return encode_bulk_string(text)

    # ---- election ---------------------------------------------------------

    def _is_master_down(self) -> bool:
        return self.sentinel.status().get("master_status") == "down"

    def _on_master_change(self, host: str, port: int) -> None:
        log.info("Master changed to %s:%d", host, port)

    def _reset_election_timer(self) -> None:
        with self._contact_lock:
            self.last_master_contact = time.time()
        self._election_reset.set()

    def _run_election_timer(self) -> None:
        while True:
            reset = self._election_reset.wait(self.election_timeout)
            if self._stop.is_set():
                return
            if reset:
                self._election_reset.clear()
                continue
            if self._is_master_down():
                log.warning(
                    "Election timeout expired (%.3fs) - master appears DOWN, becoming candidate",
                    self.election_timeout,
                )
                if self.vote_for_failover():
                    log.info("Won election - proceeding with failover")
                else:
                    log.info("Lost election - another sentinel won")
            else:
                with self._contact_lock:
                    self.last_master_contact = time.time()

    def vote_for_failover(self) -> bool:
        """Stand as candidate in a new epoch; True when the votes reach the quorum."""
        epoch = self.voting.begin_candidacy()
        if epoch is None:
            return False

        votes = 1
        host, port = self.sentinel.master_addr()
        with self._peers_lock:
            peers = dict(self._peers)
        log.info(
            "Initiating failover vote - epoch=%d, sentinel=%s, peers=%d, quorum=%d",
            epoch, self.sentinel_id, len(peers), self.config.quorum,
        )

        if peers:
            pool = ThreadPoolExecutor(max_workers=len(peers))
            try:
                futures = [
                    pool.submit(self._request_vote, addr, peer, host, port, epoch)
                    for addr, peer in peers.items()
                ]
                done, pending = wait(futures, timeout=VOTE_TIMEOUT)
                if pending:
                    log.warning(
                        "Timeout waiting for votes (received %d/%d responses)",
                        len(done), len(futures),
                    )
                votes += sum(future.result() for future in done)
            finally:
                pool.shutdown(wait=False)

        reached = votes >= self.config.quorum
        log.info(
            "Final tally - epoch=%d: %d votes, quorum: %d, result: %s",
            epoch, votes, self.config.quorum, reached,
        )
        return reached

    def _request_vote(self, addr: str, peer: _Peer, host: str, port: int, epoch: int) -> int:
        command = encode_array([
            "SENTINEL", "IS-MASTER-DOWN-BY-ADDR", host, str(port), str(epoch), self.sentinel_id,
        ])
        try:
            with peer.lock:
                peer.conn.settimeout(VOTE_IO_TIMEOUT)
                peer.conn.sendall(command)
                reply = peer.conn.recv(1024)
        except OSError as exc:
            log.warning("Failed to request vote from %s: %s", addr, exc)
            return 0
        if b":1" in reply:
            log.info("Peer %s agrees master is down", addr)
            return 1
        log.info("Peer %s disagrees master is down", addr)
        return 0

    # ---- peer mesh --------------------------------------------------------

    def _monitor_peer(self, addr: str) -> None:
        host, port = parse_addr(addr)
        backoff = 1.0
        while not self._stop.is_set():
            try:
                conn = socket.create_connection((host, port), timeout=PEER_CONNECT_TIMEOUT)
            except OSError as exc:
                log.info("Failed to connect to sentinel %s: %s (retrying in %.0fs)", addr, exc, backoff)
                if self._stop.wait(backoff):
                    return
                backoff = min(backoff * 2, PEER_MAX_BACKOFF)
                continue

            log.info("Connected to sentinel at %s", addr)
            backoff = 1.0
            peer = _Peer(conn)
            with self._peers_lock:
                self._peers[addr] = peer
            try:
                self._maintain_peer(peer, addr)
            finally:
                with self._peers_lock:
                    if self._peers.get(addr) is peer:
                        del self._peers[addr]
                _close_socket(conn)
            if self._stop.is_set():
                return
            log.info("Lost connection to sentinel %s, reconnecting", addr)
            if self._stop.wait(1.0):
                return

    def _maintain_peer(self, peer: _Peer, addr: str) -> None:
        while not self._stop.wait(PEER_PING_INTERVAL):
            try:
                with peer.lock:
                    peer.conn.settimeout(PEER_IO_TIMEOUT)
                    peer.conn.sendall(encode_array(["PING"]))
                    reply = peer.conn.recv(1024)
                    if b"PONG" not in reply:
                        log.warning("Unexpected response from sentinel %s: %r", addr, reply)
                        return
                    peer.conn.sendall(encode_array(
                        ["SENTINEL", "GET-MASTER-ADDR-BY-NAME", self.config.master_name]
                    ))
                    master_reply = peer.conn.recv(1024)
            except OSError as exc:
                log.warning("Lost contact with sentinel %s: %s", addr, exc)
                return
            if master_reply:
                trimmed = master_reply.decode("utf-8", "replace").strip()[:50]
                log.debug("Sentinel %s reports master info: %s", addr, trimmed)

    # ---- serving ----------------------------------------------------------

    def _spawn(self, target: Any, *args: Any, name: str) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def start(self) -> tuple[str, int]:
        """Listen for clients and start monitoring, peering and the election timer."""
        with self._state_lock:
            if self._is_shutdown:
                raise RuntimeError("server has been shut down")
            if self._started:
                raise RuntimeError("server already started")
            listener = socket.create_server((self.config.host, self.config.port))
            listener.settimeout(ACCEPT_POLL)
            self._listener = listener
            self._started = True

        log.info("Sentinel server listening on %s:%d", *self.address)
        self.sentinel.start()
        for addr in self.config.sentinel_addrs:
            self._spawn(self._monitor_peer, addr, name=f"sentinel-peer-{addr}")
        self._spawn(self._run_election_timer, name="sentinel-election")
        self._spawn(self._accept_loop, name="sentinel-accept")
        return self.address

    def _accept_loop(self) -> None:
        listener = self._listener
        while not self._stop.is_set():
            try:
                conn, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stop.is_set():
                    return
                log.warning("Error accepting connection", exc_info=True)
                continue
            with self._connections_lock:
                if len(self._connections) >= self.config.max_connections:
                    log.warning("Max connections reached, rejecting connection from %s", peer)
                    _close_socket(conn)
                    continue
                self._conn_counter += 1
                conn_id = self._conn_counter
                self._connections[conn_id] = conn
            log.info("New sentinel connection [%d] from %s", conn_id, peer)
            threading.Thread(
                target=self._serve_client, args=(conn, conn_id),
                name=f"sentinel-client-{conn_id}", daemon=True,
            ).start()

    def _serve_client(self, conn: socket.socket, conn_id: int) -> None:
        try:
            conn.settimeout(CLIENT_IDLE_TIMEOUT)
            with conn.makefile("rb") as stream:
                while not self._stop.is_set():
                    try:
                        args = parse_command(stream)
                    except (EOFError, RespError, OSError):
                        return
                    conn.sendall(self.execute(args))
        except OSError:
            pass
        finally:
            with self._connections_lock:
                self._connections.pop(conn_id, None)
            _close_socket(conn)

    def shutdown(self) -> None:
        """Stop serving and monitoring and close every connection."""
        with self._state_lock:
            if self._is_shutdown:
                return
            self._is_shutdown = True
        log.info("Initiating sentinel shutdown")
        self._stop.set()
        self._election_reset.set()

        if self._listener is not None:
            _close_socket(self._listener)
        with self._connections_lock:
            connections = list(self._connections.values())
        for conn in connections:
            _close_socket(conn)
        with self._peers_lock:
            peers = list(self._peers.values())
        for peer in peers:
            _close_socket(peer.conn)

        deadline = time.monotonic() + SHUTDOWN_TIMEOUT
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        if any(thread.is_alive() for thread in self._threads):
            log.warning("Shutdown timeout reached")
        self._threads = []

        self.sentinel.stop()
        log.info("Sentinel server shutdown complete")


def _parse_args(argv: Sequence[str] | None) -> SentinelServerConfig:
    defaults = SentinelServerConfig()
    parser = argparse.ArgumentParser(description="Run a sentinel that monitors a master.")
    parser.add_argument("--host", default=defaults.host)
    parser.add_argument("--port", type=int, default=defaults.port)
    parser.add_argument("--master-name", default=defaults.master_name)
    parser.add_argument("--master-host", default="127.0.0.1")
    parser.add_argument("--master-port", type=int, default=6379)
    parser.add_argument("--quorum", type=int, default=defaults.quorum)
    parser.add_argument("--sentinel-addrs", default="",
                        help="comma-separated host:port of the other sentinels")
    parser.add_argument("--down-after", type=int, default=defaults.down_after_millis,
                        help="milliseconds before the master counts as down")
    parser.add_argument("--failover-timeout", type=int, default=defaults.failover_timeout,
                        help="milliseconds allowed for a failover")
    parser.add_argument("--max-connections", type=int, default=defaults.max_connections)
    ns = parser.parse_args(argv)
    return SentinelServerConfig(
        host=ns.host,
        port=ns.port,
        master_name=ns.master_name,
        master_host=ns.master_host,
        master_port=ns.master_port,
        sentinel_addrs=[a.strip() for a in ns.sentinel_addrs.split(",") if a.strip()],
        quorum=ns.quorum,
        down_after_millis=ns.down_after,
        failover_timeout=ns.failover_timeout,
        max_connections=ns.max_connections,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Run a sentinel until interrupted."""
    config = _parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    server = SentinelServer(config)
    stopped = threading.Event()

    def _on_signal(signum: int, frame: Any) -> None:
        stopped.set()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        server.start()
        while not stopped.wait(1.0):
            pass
    finally:
        server.shutdown()
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    return 0