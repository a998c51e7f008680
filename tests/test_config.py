from kvsentinel.config import RDBSavePoint, SentinelServerConfig, ServerConfig


def test_server_defaults():
    config = ServerConfig()
    assert config.host == "0.0.0.0"
    assert config.port == 6379
    assert config.max_connections == 10000
    assert config.max_pipeline_commands == 1000
    assert config.rdb_filepath == "dump.rdb"
    assert config.rdb_save_point == RDBSavePoint(seconds=60, changes=1000)
    assert config.replication_role == "master"
    assert config.replica_priority == 100
    assert config.cluster_enabled is False
    assert config.cluster_config == "nodes.conf"


def test_server_timeouts():
    config = ServerConfig()
    assert config.command_timeout == 30.0
    assert config.read_timeout == 60.0
    assert config.pipeline_timeout == 1.0


def test_save_points_not_shared():
    first = ServerConfig()
    second = ServerConfig()
    first.rdb_save_point.changes = 5
    assert second.rdb_save_point.changes == 1000


def test_save_point_enabled():
    assert RDBSavePoint().enabled is True
    assert RDBSavePoint(seconds=0).enabled is False
    assert RDBSavePoint(changes=0).enabled is False


def test_is_replica():
    assert ServerConfig().is_replica is False
    assert ServerConfig(replication_role="replica").is_replica is True
    assert ServerConfig(replication_role="slave").is_replica is True


def test_sentinel_defaults():
    config = SentinelServerConfig()
    assert config.port == 26379
    assert config.master_name == "mymaster"
    assert config.sentinel_addrs == []
    assert config.quorum == 2
    assert config.down_after_millis == 30000
    assert config.failover_timeout == 180000
    assert config.max_connections == 10000


def test_sentinel_addrs_not_shared():
    first = SentinelServerConfig()
    first.sentinel_addrs.append("127.0.0.1:26380")
    assert SentinelServerConfig().sentinel_addrs == []


def test_sentinel_id():
    config = SentinelServerConfig(host="127.0.0.1", port=26380)
    assert config.sentinel_id == "127.0.0.1:26380"


def test_monitor_config_mapping():
    config = SentinelServerConfig(master_host="127.0.0.1", master_port=6379, quorum=3)
    monitor = config.monitor_config()
    assert monitor.master_name == "mymaster"
    assert monitor.master_host == "127.0.0.1"
    assert monitor.master_port == 6379
    assert monitor.effective_quorum == 3
    assert monitor.down_after_millis == config.down_after_millis
    assert monitor.failover_timeout == config.failover_timeout