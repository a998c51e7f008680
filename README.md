# kvsentinel

Parts of a RESP-speaking key-value system with high availability:

- **`kvsentinel.rdb`** writes and reads binary snapshot files. A file starts
  with the `REDIS0009` header and ends with a CRC-64 (ECMA) checksum. It holds
  strings, lists, hashes, sets and sorted sets, and each of them can have an
  expiry time. Values of the Bloom filter and HyperLogLog types are left out
  when a snapshot is written. A file that contains them is rejected when it is
  read.
- **`kvsentinel.replication`** is the master side of replication.
  `ReplicationManager` tracks connected replicas and keeps a bounded backlog
  (1 MiB by default) for partial resync. It propagates write commands, encoded
  as RESP arrays, to every replica that is online, using a background thread.
- **`kvsentinel.probe`** holds the network probes of a monitor. They ping an
  instance, read and parse `INFO replication`, promote a replica with
  `REPLICAOF NO ONE` and point a replica at a new master.
- **`kvsentinel.sentinel`** has the `Sentinel` monitor, which watches one master
  and its replicas. It marks them down when pings fail and learns about
  replicas from the master. Once the master has been down for the down-after
  period, it picks the best replica (highest priority, then highest offset),
  promotes it and repoints the other replicas. After that it publishes
  `+switch-master <name> <old-ip> <old-port> <new-ip> <new-port>` on the
  `__sentinel__:failover` channel to listeners added with
  `add_event_listener`.
- **`kvsentinel.voting`** holds `VotingState`, which runs epoch-based votes
  between Sentinel peers. A Sentinel votes only for the first candidate that
  asks in an epoch, and only if it also sees the master as down. It rejects
  requests from older epochs.
- **`kvsentinel.resp`** encodes RESP replies and parses commands. It accepts
  both RESP arrays and inline commands.
- **`kvsentinel.sentinel_server`** holds `SentinelServer`, a standalone
  Sentinel that serves commands over TCP and coordinates failover votes with
  its peers.
- **`kvsentinel.config`** holds configuration records with the usual defaults:
  - `ServerConfig` uses port 6379.
  - `RDBSavePoint` is set to 60 seconds and 1000 changes.
  - `SentinelServerConfig` uses port 26379, a quorum of 2, 30000 ms down-after
    and a 180000 ms failover timeout.

The package uses only the standard library.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Running a Sentinel

The `kvsentinel-sentinel` command starts a Sentinel and runs it until it gets
SIGINT or SIGTERM. It takes these options:

| Option | Meaning | Default |
| --- | --- | --- |
| `--host` | address to listen on | `0.0.0.0` |
| `--port` | port to listen on | 26379 |
| `--master-name` | name of the master | `mymaster` |
| `--master-host` | host of the master | `127.0.0.1` |
| `--master-port` | port of the master | 6379 |
| `--quorum` | votes needed for a failover | 2 |
| `--sentinel-addrs` | other Sentinels, as comma-separated `host:port` | none |
| `--down-after` | milliseconds before the master counts as down | 30000 |
| `--failover-timeout` | failover timeout in milliseconds | 180000 |
| `--max-connections` | maximum number of client connections | 10000 |

A mesh of three Sentinels that watches a master on port 6379:

```
kvsentinel-sentinel --port 26379 --master-name mymaster --master-host 127.0.0.1 --master-port 6379 --quorum 2 --sentinel-addrs "127.0.0.1:26380,127.0.0.1:26381"
kvsentinel-sentinel --port 26380 --master-name mymaster --master-host 127.0.0.1 --master-port 6379 --quorum 2 --sentinel-addrs "127.0.0.1:26379,127.0.0.1:26381"
kvsentinel-sentinel --port 26381 --master-name mymaster --master-host 127.0.0.1 --master-port 6379 --quorum 2 --sentinel-addrs "127.0.0.1:26379,127.0.0.1:26380"
```

A Sentinel answers these commands:

- `PING` and `INFO`.
- `SENTINEL GET-MASTER-ADDR-BY-NAME <name>` returns the master's host and
  port.
- `SENTINEL MASTER` and `SENTINEL MASTERS` describe the master.
- `SENTINEL REPLICAS <name>` and `SENTINEL SLAVES <name>` list the replicas.
- `SENTINEL SENTINELS <name>` lists the configured peers.
- `SENTINEL IS-MASTER-DOWN-BY-ADDR <ip> <port> <epoch> <candidate>` is a vote
  request.
- `SENTINEL RESET <pattern>` replies `1` and resets nothing.

Each Sentinel draws a random election timeout between one and two times the
down-after period. When a pong from the master arrives, the timeout starts
again. If the timeout runs out while the master is down, the Sentinel raises
the epoch and votes for itself. It then asks its connected peers for their
votes with `SENTINEL IS-MASTER-DOWN-BY-ADDR` and waits up to 3 seconds for
replies. Before the monitor fails over, it holds the same vote, and it goes
ahead only if the votes reach the quorum.

A server can also be run in-process:

```python
from kvsentinel.config import SentinelServerConfig
from kvsentinel.sentinel_server import SentinelServer

server = SentinelServer(SentinelServerConfig(port=0, master_host="127.0.0.1", master_port=6379))
host, port = server.start()
server.execute(["SENTINEL", "GET-MASTER-ADDR-BY-NAME", "mymaster"])
server.shutdown()
```

## Using the library

Snapshots:

```python
from kvsentinel.rdb import RDBWriter, StoredValue, ValueType, open_reader

snapshot = {"greeting": StoredValue(ValueType.STRING, "hello")}
RDBWriter("dump.rdb").save(snapshot)      # written to dump.rdb.tmp, then renamed

reader = open_reader("dump.rdb")          # None if the file does not exist
with reader:
    for command in reader.load():         # LoadCommand records
        print(command.key, command.value, command.expiration)
```

`dumps(snapshot)` and `loads(data)` do the same work in memory. A wrong magic
string, a truncated file, an unknown type byte or a checksum mismatch raises
`RDBError`.

Replication:

```python
from kvsentinel.replication import ReplicationBacklog, encode_command_resp

encode_command_resp(["SET", "k", "v"])
# b"*3\r\n$3\r\nSET\r\n$1\r\nk\r\n$1\r\nv\r\n"

backlog = ReplicationBacklog(1024 * 1024)
backlog.append(encode_command_resp(["SET", "k", "v"]))
backlog.get_range(0)   # bytes from offset 0 on, or None if no longer held
```

Votes between Sentinels:

```python
from kvsentinel.voting import encode_vote_response

encode_vote_response(1, "127.0.0.1:26379", 5)
# b"*3\r\n:1\r\n$15\r\n127.0.0.1:26379\r\n:5\r\n"
```

## What the package does not do

- There is no key-value data server. `ServerConfig` and `RDBSavePoint`
  describe one, but no module stores keys, runs data commands or saves
  snapshots on a schedule.
- The replica side of replication is missing. Nothing connects to a master,
  performs the sync handshake or applies a replication stream.
  `ReplicationManager` in the replica role only reports its settings and
  passes commands to the `command_executor` that it is given.
- Loaded snapshots are not put back into a store. `loads` and
  `RDBReader.load` return `LoadCommand` records, and the caller applies them.