# raftkv

`raftkv` is a replicated key-value store. Every replica runs a Raft node.
Client requests become log entries, and each replica applies committed
entries to its own in-memory store in log order. Replicas talk to each
other, and clients talk to replicas, over a small RPC protocol carried on
TCP: each call is a varint-prefixed `RpcHeader` (service name, method name,
argument size) followed by the protobuf-encoded arguments.

The package has no dependencies outside the standard library.

## Layout

| Module | Contents |
| --- | --- |
| `raftkv.config` | `RpcConfig`, which reads `key=value` node files |
| `raftkv.controller` | `RpcController`, which records whether a call failed and why |
| `raftkv.wire` | varint and field encoding, `RpcHeader`, and `WireError` |
| `raftkv.channel` | `RpcChannel`, the client side of an RPC connection, and `build_request` |
| `raftkv.provider` | `RpcProvider`, a threaded TCP server that dispatches calls to registered services; `RpcMethod`; `parse_request` |
| `raftkv.persister` | `Persister`, which stores the Raft state and the snapshot in files |
| `raftkv.messages` | Raft RPC messages (`AppendEntriesArgs`, `RequestVoteArgs`, `InstallSnapshotRequest`, their replies, `LogEntry`), `AppState`, `VoteState` and `ApplyMsg` |
| `raftkv.raftlog` | `RaftLog` with snapshot-aware indexing, `PersistentState`, and `RaftInvariantError` |
| `raftkv.peer` | `RaftPeer`, the RPC stub that one node uses to reach another |
| `raftkv.node` | `RaftNode` and `Role`: the Raft state machine with its vote, replication and snapshot handlers |
| `raftkv.replica` | `RaftServer`, which adds election, heartbeat and apply loops to a node |
| `raftkv.kvserver` | `KvServer`, `Op`, the client request and reply types, `load_peer_addresses` and `start_kv_server` |

## Node configuration

A cluster is described by a plain text file. Each line holds one
`key=value` entry. Lines that start with `#` are comments, lines without
`=` are ignored, spaces around keys and values are dropped, and when a key
appears twice the first value wins. Nodes are numbered from 0 upwards, and
numbering stops at the first index that has no `ip` entry:

```
# three-node cluster
node0ip=127.0.0.1
node0port=7000
node1ip=127.0.0.1
node1port=7001
node2ip=127.0.0.1
node2port=7002
```

```python
from raftkv.config import RpcConfig
from raftkv.kvserver import load_peer_addresses

config = RpcConfig()
config.load_file("cluster.conf")
print(config.get("node1port"))      # "7001"; a missing key gives ""
print(load_peer_addresses(config))  # [("127.0.0.1", 7000), ("127.0.0.1", 7001), ...]
```

## Starting a replica

Each replica runs in its own process. Give `start_kv_server` the node's
index in the cluster, the log-size threshold for snapshots (`-1` turns
snapshots off), the cluster file and the port to listen on:

```python
from raftkv.kvserver import start_kv_server

start_kv_server(0, 500, "cluster.conf", 7000)
```

The call does not return. It starts an `RpcProvider` on the host's own
address, which appends `node<me>ip=` and `node<me>port=` lines to
`test.conf` in the working directory. It then waits six seconds, reads the
cluster file, connects a `RaftPeer` to every other node, and starts a
`RaftServer` and a `KvServer` on both services. It restores the stored
snapshot, if there is one, and applies committed commands from then on.
The Raft state and snapshot files are written to the working directory.

## Talking to a replica

Clients call the `kvServerRpc` service's `Get` and `PutAppend` methods
through an `RpcChannel`. `call_method` returns the parsed reply, or `None`
after recording the failure on the controller. A reply with
`err == "ErrWrongLeader"` means the node is not the leader, or the request
was not committed in time; try another node.

```python
from raftkv.channel import RpcChannel
from raftkv.controller import RpcController
from raftkv.kvserver import GetArgs, GetReply, PutAppendArgs, PutAppendReply

with RpcChannel("127.0.0.1", 7000, True) as channel:
    controller = RpcController()
    reply = channel.call_method(
        "kvServerRpc", "PutAppend",
        PutAppendArgs(key="x", value="1", op="Put", client_id="client-a", request_id=1),
        PutAppendReply, controller,
    )
    if controller.failed:
        print(controller.error_text)

    controller.reset()
    reply = channel.call_method(
        "kvServerRpc", "Get",
        GetArgs(key="x", client_id="client-a", request_id=2),
        GetReply, controller,
    )
    if reply is not None:
        print(reply.err, reply.value)  # "OK 1", or "ErrNoKey" for a missing key
```

Requests carry a client id and a request id; a request whose id is not
greater than the last one executed for that client is not executed again.
`Append` stores the given value, replacing the old one, exactly like `Put`.

## Persistence

`Persister(me, directory)` keeps node `me`'s Raft state in
`raftstatePersist<me>.txt` and its snapshot in `snapshotPersist<me>.txt`
inside `directory`, which must already exist. Both files are emptied when
the persister is created.

```python
from raftkv.persister import Persister

with Persister(0, "/tmp/raft") as persister:
    persister.save(b"state", b"snapshot")
    assert persister.read_snapshot() == b"snapshot"
```

`KvServer` snapshots are JSON holding the store and the last request id of
each client; Raft state is a `PersistentState` message.

## What the package does not do

- There is no client library that finds the leader and retries for you;
  clients make `RpcChannel` calls themselves, as shown above.
- There is no command-line program; replicas are started from Python with
  `start_kv_server`.
- The key-value store lives in memory and is only saved through snapshots.
- `RpcChannel` reads each reply with a single receive of up to 1024 bytes,
  so larger replies are not supported.

## Tests

The tests use pytest, installed with the `test` extra.