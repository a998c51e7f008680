"""Health monitoring of a master and its replicas, with automatic failover."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from kvsentinel.probe import (
    MonitorConfig,
    MonitoredInstance,
    fetch_replication_info,
    parse_replication_info,
    ping_instance,
    promote_replica,
    reconfigure_replica,
)

log = logging.getLogger(__name__)

FAILOVER_CHANNEL = "__sentinel__:failover"
MASTER_CHECK_INTERVAL = 1.0
DISCOVERY_INTERVAL = 10.0
REPLICA_CHECK_INTERVAL = 2.0
DOWN_LOG_INTERVAL = 30.0
DISCOVERED_PRIORITY = 100
PRIORITY_WEIGHT = 1_000_000

EventListener = Callable[[str, str], Any]


class Sentinel:
    """Watches a master and its replicas and promotes a replica when the master dies.

    Optional hooks, set as attributes:
    on_vote_request() -> bool is asked for quorum before a failover;
    on_master_heartbeat() is called whenever the master answers a ping;
    on_master_change(host, port) is called after a completed failover.
    """

    def __init__(self, config: MonitorConfig) -> None:
        self.master_name = config.master_name
        self.quorum = config.effective_quorum
        self.down_after = config.down_after
        self.failover_time = config.failover_time

        self.master = MonitoredInstance(
            host=config.master_host, port=config.master_port, role="master"
        )
        self._replicas: dict[str, MonitoredInstance] = {}
        self._replicas_lock = threading.Lock()

        self._failover_lock = threading.Lock()
        self._failover_in_progress = False
        self._failover_triggered = False

        self.on_vote_request: Callable[[], bool] | None = None
        self.on_master_heartbeat: Callable[[], Any] | None = None
        self.on_master_change: Callable[[str, int], Any] | None = None
        self._listeners: list[EventListener] = []
        self._listeners_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

        log.info(
            "Initialized - monitoring master %s at %s:%d",
            config.master_name, config.master_host, config.master_port,
        )
        log.info("Down after: %ss, Quorum: %d", self.down_after, self.quorum)

    # ---- lifecycle --------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Start the master and replica monitoring threads."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._monitor_master, name="sentinel-master", daemon=True),
            threading.Thread(target=self._monitor_replicas, name="sentinel-replicas", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        log.info("Started monitoring")

    def stop(self) -> None:
        """Stop monitoring and wait for the monitoring threads to finish."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join()
        self._threads = []
        log.info("Stopped")

    def _monitor_master(self) -> None:
        self.discover_replicas()
        next_discovery = time.monotonic() + DISCOVERY_INTERVAL
        while not self._stop_event.wait(MASTER_CHECK_INTERVAL):
            self.check_master_health()
            if time.monotonic() >= next_discovery:
                self.discover_replicas()
                next_discovery = time.monotonic() + DISCOVERY_INTERVAL

    def _monitor_replicas(self) -> None:
        while not self._stop_event.wait(REPLICA_CHECK_INTERVAL):
            self.check_replicas_health()

    # ---- events -----------------------------------------------------------

    def add_event_listener(self, callback: EventListener) -> None:
        """Subscribe to sentinel events; callback(channel, message)."""
        with self._listeners_lock:
            self._listeners.append(callback)

    def _publish(self, channel: str, message: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(channel, message)

    # ---- monitoring -------------------------------------------------------

    def check_master_health(self) -> bool:
        """Ping the master, update its state and trigger failover once it is down long enough."""
        master = self.master
        with master.lock:
            host, port = master.host, master.port

        ok = ping_instance(host, port)
        now = time.monotonic()
        heartbeat = None

        with master.lock:
            master.last_ping = time.time()
            master.last_ping_ok = ok
            if not ok:
                if not master.is_down:
                    master.is_down = True
                    master.down_since = now
                    master.last_down_log_time = None
                    log.warning("Master %s:%d is DOWN", host, port)
                    with self._failover_lock:
                        self._failover_triggered = False
                else:
                    down_for = now - master.down_since
                    if down_for >= self.down_after and (
                        master.last_down_log_time is None
                        or now - master.last_down_log_time >= DOWN_LOG_INTERVAL
                    ):
                        log.warning(
                            "Master down for %.1fs (threshold: %ss)", down_for, self.down_after
                        )
                        master.last_down_log_time = now
            else:
                if master.is_down:
                    master.is_down = False
                    log.info("Master %s:%d is UP", host, port)
                    with self._failover_lock:
                        self._failover_triggered = False
                heartbeat = self.on_master_heartbeat
            is_down, down_since = master.is_down, master.down_since

        if heartbeat is not None:
            heartbeat()

        if is_down and time.monotonic() - down_since >= self.down_after:
            with self._failover_lock:
                should_trigger = not self._failover_triggered
                self._failover_triggered = True
            if should_trigger:
                self.trigger_failover()
        return ok

    def check_replicas_health(self) -> None:
        """Ping every known replica in parallel and update its state."""
        with self._replicas_lock:
            replicas = list(self._replicas.values())
        if not replicas:
            return
        with ThreadPoolExecutor(max_workers=len(replicas)) as pool:
            list(pool.map(self._check_replica, replicas))

    @staticmethod
    def _check_replica(replica: MonitoredInstance) -> None:
        with replica.lock:
            host, port = replica.host, replica.port
        ok = ping_instance(host, port)
        with replica.lock:
            replica.last_ping = time.time()
            replica.last_ping_ok = ok
            if not ok and not replica.is_down:
                replica.is_down = True
                replica.down_since = time.monotonic()
                log.warning("Replica %s:%d is DOWN", host, port)
            elif ok and replica.is_down:
                replica.is_down = False
                log.info("Replica %s:%d is UP", host, port)

    def discover_replicas(self) -> None:
        """Learn replicas from the master's INFO replication reply."""
        with self.master.lock:
            host, port, is_down = self.master.host, self.master.port, self.master.is_down
        if is_down:
            return
        try:
            text = fetch_replication_info(host, port)
        except OSError:
            return

        for replica_host, replica_port, offset in parse_replication_info(text):
            key = f"{replica_host}:{replica_port}"
            with self._replicas_lock:
                known = self._replicas.get(key)
                if known is None:
                    self._replicas[key] = MonitoredInstance(
                        host=replica_host,
                        port=replica_port,
                        role="slave",
                        priority=DISCOVERED_PRIORITY,
                        repl_offset=offset,
                    )
                    log.info(
                        "Discovered replica: %s:%d (offset=%d)", replica_host, replica_port, offset
                    )
                else:
                    with known.lock:
                        known.repl_offset = offset

    # ---- failover ---------------------------------------------------------

    def trigger_failover(self) -> threading.Thread | None:
        """Start a failover in the background unless one is already running."""
        with self._failover_lock:
            if self._failover_in_progress:
                return None
            self._failover_in_progress = True
        log.warning("INITIATING AUTOMATIC FAILOVER")
        thread = threading.Thread(target=self.perform_failover, name="sentinel-failover", daemon=True)
        thread.start()
        return thread

    def perform_failover(self) -> bool:
        """Promote the best replica and repoint the others; True when it completed."""
        try:
            return self._failover()
        finally:
            with self._failover_lock:
                self._failover_in_progress = False

    def _failover(self) -> bool:
        started = time.monotonic()

        vote = self.on_vote_request
        if vote is not None:
            log.info("Requesting quorum vote from peer sentinels")
            if not vote():
                log.warning("FAILOVER ABORTED: quorum not reached")
                return False
            log.info("Quorum reached, proceeding with failover")
        else:
            log.info("No voting callback set, proceeding without quorum check")

        best = self.select_best_replica()
        if best is None:
            log.error("FAILOVER FAILED: no suitable replica available")
            return False
        with best.lock:
            new_host, new_port = best.host, best.port
        log.info("Selected replica %s:%d for promotion", new_host, new_port)

        if not promote_replica(new_host, new_port):
            log.error("FAILOVER FAILED: could not promote replica")
            return False

        with self.master.lock:
            old_host, old_port = self.master.host, self.master.port
            self.master.host = new_host
            self.master.port = new_port
            self.master.is_down = False
            self.master.last_ping_ok = True
            self.master.last_ping = time.time()
        log.info("Updated master from %s:%d to %s:%d", old_host, old_port, new_host, new_port)

        self._reconfigure_replicas(new_host, new_port)

        with self._replicas_lock:
            self._replicas.pop(f"{new_host}:{new_port}", None)
            self._replicas[f"{old_host}:{old_port}"] = MonitoredInstance(
                host=old_host,
                port=old_port,
                role="slave",
                last_ping_ok=False,
                is_down=True,
                down_since=time.monotonic(),
                priority=0,
            )

        log.info(
            "FAILOVER COMPLETED in %.3fs, new master: %s:%d",
            time.monotonic() - started, new_host, new_port,
        )

        event = (
            f"+switch-master {self.master_name} {old_host} {old_port} {new_host} {new_port}"
        )
        self._publish(FAILOVER_CHANNEL, event)
        log.info("Published event: %s", event)

        callback = self.on_master_change
        if callback is not None:
            callback(new_host, new_port)
        return True

    def _reconfigure_replicas(self, master_host: str, master_port: int) -> None:
        with self._replicas_lock:
            replicas = list(self._replicas.values())
        for replica in replicas:
            with replica.lock:
                host, port, is_down = replica.host, replica.port, replica.is_down
            if (host == master_host and port == master_port) or is_down:
                continue
            if reconfigure_replica(host, port, master_host, master_port):
                log.info(
                    "Reconfigured replica %s:%d to follow %s:%d", host, port, master_host, master_port
                )
            else:
                log.warning("Failed to reconfigure replica %s:%d", host, port)

    def select_best_replica(self) -> MonitoredInstance | None:
        """The live replica with the highest priority, then the highest offset."""
        best: MonitoredInstance | None = None
        best_score = -1
        with self._replicas_lock:
            replicas = list(self._replicas.values())
        for replica in replicas:
            with replica.lock:
                if replica.is_down:
                    continue
                score = replica.priority * PRIORITY_WEIGHT + replica.repl_offset
            if score > best_score:
                best_score = score
                best = replica
        return best

    # ---- replica registry -------------------------------------------------

    def add_replica(self, host: str, port: int, priority: int = 100, offset: int = 0) -> None:
        """Register a replica for monitoring."""
        with self._replicas_lock:
            self._replicas[f"{host}:{port}"] = MonitoredInstance(
                host=host, port=port, role="slave", priority=priority, repl_offset=offset
            )
        log.info("Added replica %s:%d for monitoring (priority: %d)", host, port, priority)

    def remove_replica(self, host: str, port: int) -> None:
        """Stop monitoring a replica."""
        with self._replicas_lock:
            self._replicas.pop(f"{host}:{port}", None)
        log.info("Removed replica %s:%d from monitoring", host, port)

    # ---- inspection -------------------------------------------------------

    def master_addr(self) -> tuple[str, int]:
        """The current master's (host, port)."""
        with self.master.lock:
            return self.master.host, self.master.port

    def status(self) -> dict[str, Any]:
        """The monitored topology and its health."""
        result: dict[str, Any] = {}
        with self.master.lock:
            result["master_host"] = self.master.host
            result["master_port"] = self.master.port
            result["master_status"] = self.master.health()

        with self._replicas_lock:
            replicas = list(self._replicas.values())
        replica_list = []
        for replica in replicas:
            with replica.lock:
                replica_list.append(
                    {
                        "host": replica.host,
                        "port": replica.port,
                        "status": replica.health(),
                        "priority": replica.priority,
                        "offset": replica.repl_offset,
                    }
                )
        result["replicas"] = replica_list
        result["replicas_count"] = len(replica_list)

        with self._failover_lock:
            result["failover_in_progress"] = self._failover_in_progress
        return result