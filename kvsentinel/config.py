"""Configuration for the data server and for standalone sentinels."""

from __future__ import annotations

from dataclasses import dataclass, field

from kvsentinel.probe import MonitorConfig


@dataclass
class RDBSavePoint:
    """Save a snapshot after `seconds` have passed if `changes` keys changed."""

    seconds: int = 60
    changes: int = 1000

    @property
    def enabled(self) -> bool:
        return self.seconds > 0 and self.changes > 0


@dataclass
class ServerConfig:
    """Settings of a data server. Durations are in seconds."""

    host: str = "0.0.0.0"
    port: int = 6379
    max_connections: int = 10000
    read_buffer_size: int = 4096
    write_buffer_size: int = 4096

    max_pipeline_commands: int = 1000
    slow_log_threshold: float = 0.010
    command_timeout: float = 30.0
    read_timeout: float = 60.0
    pipeline_timeout: float = 1.0

    rdb_filepath: str = "dump.rdb"
    rdb_save_point: RDBSavePoint = field(default_factory=RDBSavePoint)

    replication_role: str = "master"
    replication_master_host: str = ""
    replication_master_port: int = 0
    replica_priority: int = 100

    cluster_enabled: bool = False
    cluster_node_id: str = ""
    cluster_config: str = "nodes.conf"

    @property
    def is_replica(self) -> bool:
        return self.replication_role in ("replica", "slave")


@dataclass
class SentinelServerConfig:
    """Settings of a standalone sentinel."""

    host: str = "0.0.0.0"
    port: int = 26379
    master_name: str = "mymaster"
    master_host: str = ""
    master_port: int = 0
    sentinel_addrs: list[str] = field(default_factory=list)
    quorum: int = 2
    down_after_millis: int = 30000
    failover_timeout: int = 180000
    max_connections: int = 10000

    @property
    def sentinel_id(self) -> str:
        """This sentinel's identity among its peers: "host:port"."""
        return f"{self.host}:{self.port}"

    def monitor_config(self) -> MonitorConfig:
        """The monitoring part of this configuration."""
        return MonitorConfig(
            master_name=self.master_name,
            master_host=self.master_host,
            master_port=self.master_port,
            quorum=self.quorum,
            down_after_millis=self.down_after_millis,
            failover_timeout=self.failover_timeout,
        )