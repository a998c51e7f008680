import socket
import time

import pytest

from kvsentinel.config import SentinelServerConfig
from kvsentinel.resp import encode_array, encode_error
from kvsentinel.sentinel_server import SentinelServer, main
from kvsentinel.voting import encode_vote_response


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def server():
    config = SentinelServerConfig(
        host="127.0.0.1",
        port=26390,
        master_host="127.0.0.1",
        master_port=6390,
        sentinel_addrs=["127.0.0.1:26391", "127.0.0.1:26392"],
        quorum=2,
    )
    return SentinelServer(config)


def test_ping(server):
    assert server.execute(["ping"]) == b"+PONG\r\n"


def test_empty_command(server):
    assert server.execute([]) == encode_error("ERR no command provided")


def test_unknown_command(server):
    assert server.execute(["foo"]) == b"-ERR unknown command 'FOO'\r\n"


def test_sentinel_without_subcommand(server):
    assert server.execute(["SENTINEL"]) == encode_error(
        "ERR wrong number of arguments for 'sentinel' command"
    )


def test_unknown_subcommand(server):
    assert server.execute(["SENTINEL", "nope"]).startswith(b"-ERR Unknown sentinel subcommand")


def test_get_master_addr(server):
    reply = server.execute(["SENTINEL", "get-master-addr-by-name", "mymaster"])
    assert reply == encode_array(["127.0.0.1", "6390"])


def test_get_master_addr_wrong_name(server):
    assert server.execute(["SENTINEL", "GET-MASTER-ADDR-BY-NAME", "other"]) == b"$-1\r\n"


def test_get_master_addr_missing_name(server):
    assert server.execute(["SENTINEL", "GET-MASTER-ADDR-BY-NAME"]).startswith(b"-ERR")


def test_masters_lists_name_and_quorum(server):
    reply = server.execute(["SENTINEL", "MASTERS"])
    assert reply.startswith(b"*12\r\n")
    assert b"$8\r\nmymaster\r\n" in reply
    assert b"$6\r\nquorum\r\n:2\r\n" in reply


def test_replicas(server):
    server.sentinel.add_replica("127.0.0.1", 6391, 100, 0)
    reply = server.execute(["SENTINEL", "REPLICAS", "mymaster"])
    assert reply.startswith(b"*1\r\n*12\r\n")
    assert b"127.0.0.1:6391" in reply


def test_replicas_wrong_name(server):
    assert server.execute(["SENTINEL", "SLAVES", "other"]) == b"*-1\r\n"


def test_sentinels(server):
    reply = server.execute(["SENTINEL", "SENTINELS", "mymaster"])
    assert reply.startswith(b"*2\r\n")
    assert b"sentinel-0-runid" in reply
    assert b"sentinel-1-runid" in reply


def test_reset(server):
    assert server.execute(["SENTINEL", "RESET", "mymaster"]) == b":1\r\n"
    assert server.execute(["SENTINEL", "RESET"]).startswith(b"-ERR")


def test_info(server):
    reply = server.execute(["INFO"])
    assert b"sentinel_masters:1" in reply
    assert b"name=mymaster,status=ok,address=127.0.0.1:6390,slaves=0,sentinels=3" in reply


def test_is_master_down_rejects_when_master_up(server):
    reply = server.execute(
        ["SENTINEL", "IS-MASTER-DOWN-BY-ADDR", "127.0.0.1", "6390", "5", "peer-a"]
    )
    assert reply == encode_vote_response(0, "", 5)


def test_is_master_down_grants_first_candidate(server):
    server.sentinel.master.is_down = True
    first = server.execute(
        ["SENTINEL", "IS-MASTER-DOWN-BY-ADDR", "127.0.0.1", "6390", "5", "peer-a"]
    )
    second = server.execute(
        ["SENTINEL", "IS-MASTER-DOWN-BY-ADDR", "127.0.0.1", "6390", "5", "peer-b"]
    )
    assert first == encode_vote_response(1, "peer-a", 5)
    assert second == encode_vote_response(0, "peer-a", 5)


def test_is_master_down_too_few_args(server):
    assert server.execute(["SENTINEL", "IS-MASTER-DOWN-BY-ADDR", "127.0.0.1"]).startswith(b"-ERR")


def test_vote_without_peers_misses_quorum(server):
    assert server.vote_for_failover() is False
    assert server.voting.voted_for == server.sentinel_id


def test_vote_without_peers_single_quorum():
    node = SentinelServer(SentinelServerConfig(host="127.0.0.1", master_host="127.0.0.1",
                                               master_port=6390, quorum=1))
    assert node.vote_for_failover() is True
    assert node.voting.current_epoch == 1


def test_vote_refused_after_voting_for_another(server):
    server.sentinel.master.is_down = True
    server.execute(["SENTINEL", "IS-MASTER-DOWN-BY-ADDR", "127.0.0.1", "6390", "3", "peer-a"])
    assert server.vote_for_failover() is False


def test_serves_commands_over_tcp():
    config = SentinelServerConfig(
        host="127.0.0.1", port=0, master_host="127.0.0.1", master_port=_free_port(),
        down_after_millis=600000,
    )
    node = SentinelServer(config)
    host, port = node.start()
    try:
        with socket.create_connection((host, port), timeout=5) as conn:
            conn.sendall(encode_array(["PING"]))
            assert conn.recv(64) == b"+PONG\r\n"
            conn.sendall(b"SENTINEL GET-MASTER-ADDR-BY-NAME other\r\n")
            assert conn.recv(64) == b"$-1\r\n"
    finally:
        node.shutdown()
    with pytest.raises(RuntimeError):
        node.start()


def test_peer_grants_vote_over_network():
    master_port = _free_port()
    voter = SentinelServer(SentinelServerConfig(
        host="127.0.0.1", port=0, master_host="127.0.0.1", master_port=master_port,
        down_after_millis=600000,
    ))
    voter.sentinel.master.is_down = True
    voter.sentinel.master.down_since = time.monotonic()
    voter_host, voter_port = voter.start()
    candidate = SentinelServer(SentinelServerConfig(
        host="127.0.0.1", port=0, master_host="127.0.0.1", master_port=master_port,
        sentinel_addrs=[f"{voter_host}:{voter_port}"], quorum=2, down_after_millis=600000,
    ))
    candidate.start()
    try:
        deadline = time.monotonic() + 5
        while not candidate.peer_addrs and time.monotonic() < deadline:
            time.sleep(0.05)
        assert candidate.peer_addrs == [f"{voter_host}:{voter_port}"]
        assert candidate.vote_for_failover() is True
        assert voter.voting.voted_for == candidate.sentinel_id
    finally:
        candidate.shutdown()
        voter.shutdown()


def test_main_help_exits_cleanly():
    with pytest.raises(SystemExit) as excinfo:
        main(["--help"])
    assert excinfo.value.code == 0