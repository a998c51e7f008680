import pytest

from kvsentinel.replication import (
    ReplicaState,
    ReplicationBacklog,
    ReplicationManager,
    Role,
    encode_command_resp,
    generate_repl_id,
    parse_addr,
)


class FakeConn:
    def __init__(self, peer=("127.0.0.1", 50000), fail=False):
        self.peer = peer
        self.fail = fail
        self.sent = bytearray()
        self.closed = False

    def getpeername(self):
        return self.peer

    def sendall(self, data):
        if self.fail:
            raise OSError("broken pipe")
        self.sent += data

    def close(self):
        self.closed = True


@pytest.fixture
def master():
    manager = ReplicationManager(Role.MASTER)
    yield manager
    manager.shutdown()


def test_encode_command_resp_wire_format():
    assert encode_command_resp(["SET", "k", "v"]) == b"*3\r\n$3\r\nSET\r\n$1\r\nk\r\n$1\r\nv\r\n"


def test_encode_command_resp_uses_byte_length():
    encoded = encode_command_resp(["é"])
    assert encoded == b"*1\r\n$2\r\n" + "é".encode() + b"\r\n"


@pytest.mark.parametrize(
    "addr, expected",
    [
        ("127.0.0.1:6380", ("127.0.0.1", 6380)),
        ("[::1]:7000", ("::1", 7000)),
        ("nohost", ("nohost", 0)),
        ("host:abc", ("host", 0)),
    ],
)
def test_parse_addr(addr, expected):
    assert parse_addr(addr) == expected


def test_generate_repl_id_is_40_hex_chars_and_random():
    first, second = generate_repl_id(), generate_repl_id()
    assert len(first) == 40
    int(first, 16)
    assert first != second


def test_backlog_holds_appended_data():
    backlog = ReplicationBacklog(8)
    backlog.append(b"hello")
    assert backlog.get_range(0) == b"hello"
    assert backlog.get_range(2) == b"llo"
    assert backlog.get_range(5) == b""
    assert backlog.get_range(6) is None


def test_backlog_keeps_tail_of_oversized_data():
    backlog = ReplicationBacklog(4)
    backlog.append(b"abcdef")
    assert backlog.offset == 2
    assert backlog.get_range(2) == b"cdef"
    assert backlog.get_range(1) is None


def test_backlog_wraps_across_appends():
    backlog = ReplicationBacklog(4)
    backlog.append(b"abc")
    backlog.append(b"def")
    assert len(backlog) == 4
    assert backlog.get_range(2) == b"cdef"
    assert backlog.get_range(4) == b"ef"


def test_backlog_rejects_non_positive_size():
    with pytest.raises(ValueError):
        ReplicationBacklog(0)


def test_replica_registry(master):
    conn = FakeConn(("10.0.0.2", 41000))
    replica = master.add_replica(conn, "r1")
    assert replica.addr == "10.0.0.2:41000"
    assert replica.state is ReplicaState.CONNECTING
    assert master.get_replica("r1") is replica
    assert master.get_replica_by_addr("10.0.0.2:41000") is replica
    assert master.get_replica("missing") is None

    master.update_replica_offset("r1", 42)
    assert replica.offset == 42

    master.remove_replica("r1")
    assert conn.closed
    assert master.all_replicas() == []


def test_info_reports_listening_port(master):
    master.add_replica(FakeConn(("10.0.0.2", 41000)), "r1")
    master.set_replica_listening_port("r1", 6380)
    info = master.info()
    assert info["role"] == "master"
    assert info["connected_slaves"] == 1
    assert info["slave0"]["ip"] == "10.0.0.2"
    assert info["slave0"]["port"] == 6380
    assert info["slaves"] == [info["slave0"]]
    assert info["master_repl_id"] == master.repl_id


def test_propagation_reaches_online_replicas_only():
    manager = ReplicationManager(Role.MASTER)
    online = FakeConn(("10.0.0.2", 1))
    pending = FakeConn(("10.0.0.3", 2))
    manager.add_replica(online, "online").state = ReplicaState.ONLINE
    manager.add_replica(pending, "pending")

    manager.propagate_command(["SET", "k", "v"])
    manager.shutdown()

    expected = encode_command_resp(["SET", "k", "v"])
    assert bytes(online.sent) == expected
    assert bytes(pending.sent) == b""
    assert manager.offset == len(expected)
    assert manager.get_replica("online").offset == len(expected)
    assert manager.get_backlog_data(0) == expected
    assert online.closed


def test_failing_replica_is_removed():
    manager = ReplicationManager(Role.MASTER)
    broken = FakeConn(fail=True)
    manager.add_replica(broken, "bad").state = ReplicaState.ONLINE
    manager.propagate_command(["PING"])
    manager.shutdown()
    assert manager.get_replica("bad") is None
    assert broken.closed


def test_replica_role_does_not_propagate():
    manager = ReplicationManager(Role.REPLICA)
    manager.propagate_command(["SET", "k", "v"])
    manager.shutdown()
    assert manager.offset == 0
    assert manager.get_backlog_data(0) == b""


def test_replica_info_has_priority_without_master_link():
    manager = ReplicationManager(Role.REPLICA)
    manager.priority = 10
    info = manager.info()
    manager.shutdown()
    assert info["role"] == "slave"
    assert info["slave_priority"] == 10
    assert "master_host" not in info


def test_execute_replicated_command(master):
    assert master.execute_replicated_command(["SET", "a", "b"]) is None
    received = []
    master.command_executor = lambda args: received.append(args) or "done"
    assert master.execute_replicated_command(("SET", "a", "b")) == "done"
    assert received == [["SET", "a", "b"]]


def test_executor_errors_propagate(master):
    def failing(args):
        raise RuntimeError("command failed")

    master.command_executor = failing
    with pytest.raises(RuntimeError):
        master.execute_replicated_command(["SET"])


def test_store_snapshot(master):
    assert master.store_snapshot() is None
    store = {"k": "v"}
    master.store_getter = lambda: store
    assert master.store_snapshot() is store