"""Key/value service replicated through Raft."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional

from .config import RpcConfig
from .messages import (
    INT32,
    STRING,
    ApplyMsg,
    WireMessage,
    decode_message,
    encode_message,
    wire_field,
)
from .peer import RaftPeer
from .persister import Persister
from .provider import RpcMethod, RpcProvider
from .replica import RaftServer

logger = logging.getLogger(__name__)

OK = "OK"
ERR_NO_KEY = "ErrNoKey"
ERR_WRONG_LEADER = "ErrWrongLeader"

SERVICE_NAME = "kvServerRpc"
CONSENSUS_TIMEOUT = 0.5


@dataclass
class Op:
    """A client command as it travels through the Raft log."""

    operation: str = ""
    key: str = ""
    value: str = ""
    client_id: str = ""
    request_id: int = 0

    def to_string(self) -> str:
        """Encode the command as a JSON object."""
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_string(cls, text: str) -> "Op":
        """Decode a command written by ``to_string``; raises ``ValueError``."""
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("command is not a JSON object")
        try:
            return cls(
                operation=str(data["operation"]),
                key=str(data["key"]),
                value=str(data["value"]),
                client_id=str(data["client_id"]),
                request_id=int(data["request_id"]),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"malformed command: {text!r}") from exc


@dataclass
class GetArgs(WireMessage):
    """A client's Get request."""

    key: str = wire_field(1, STRING, "")
    client_id: str = wire_field(2, STRING, "")
    request_id: int = wire_field(3, INT32)

    def to_bytes(self) -> bytes:
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "GetArgs":
        return decode_message(cls, data)


@dataclass
class GetReply(WireMessage):
    """Answer to ``GetArgs``."""

    err: str = wire_field(1, STRING, "")
    value: str = wire_field(2, STRING, "")

    def to_bytes(self) -> bytes:
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "GetReply":
        return decode_message(cls, data)


@dataclass
class PutAppendArgs(WireMessage):
    """A client's Put or Append request; ``op`` names which."""

    key: str = wire_field(1, STRING, "")
    value: str = wire_field(2, STRING, "")
    op: str = wire_field(3, STRING, "")
    client_id: str = wire_field(4, STRING, "")
    request_id: int = wire_field(5, INT32)

    def to_bytes(self) -> bytes:
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "PutAppendArgs":
        return decode_message(cls, data)


@dataclass
class PutAppendReply(WireMessage):
    """Answer to ``PutAppendArgs``."""

    err: str = wire_field(1, STRING, "")

    def to_bytes(self) -> bytes:
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "PutAppendReply":
        return decode_message(cls, data)


class KvServer:
    """Applies committed Raft commands to a key/value store and serves clients.

    ``raft`` must offer ``start``, ``get_state``, ``snapshot``,
    ``raft_state_size`` and ``cond_install_snapshot``. ``apply_queue`` is
    where Raft puts its ``ApplyMsg`` values. A ``max_raft_state`` of -1
    disables snapshots. Append stores the given value, replacing the old one.
    """

    service_name = SERVICE_NAME

    def __init__(
        self,
        me: int,
        max_raft_state: int,
        raft: Any,
        apply_queue: Any,
        consensus_timeout: float = CONSENSUS_TIMEOUT,
    ) -> None:
        self.me = me
        self.max_raft_state = max_raft_state
        self.raft = raft
        self.apply_queue = apply_queue
        self.consensus_timeout = consensus_timeout
        self.store: dict[str, str] = {}
        self.last_request_id: dict[str, int] = {}
        self.last_snapshot_raft_log_index = 0
        self._lock = threading.RLock()
        self._wait_channels: dict[int, queue.Queue[Op]] = {}

    # -- state machine -------------------------------------------------------

    def _log_store(self) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            with self._lock:
                logger.debug("[kvserver %d] store: %r", self.me, dict(self.store))

    def _execute_put(self, op: Op) -> None:
        with self._lock:
            self.store[op.key] = op.value
            self.last_request_id[op.client_id] = op.request_id
        self._log_store()

    def _execute_get(self, op: Op) -> tuple[str, bool]:
        with self._lock:
            exists = op.key in self.store
            value = self.store.get(op.key, "")
            self.last_request_id[op.client_id] = op.request_id
        self._log_store()
        return value, exists

    def is_duplicate(self, client_id: str, request_id: int) -> bool:
        """Whether ``request_id`` of ``client_id`` has already been executed."""
        with self._lock:
            last = self.last_request_id.get(client_id)
            return last is not None and request_id <= last

    # -- waiting for commits -------------------------------------------------

    def _submit(self, op: Op) -> tuple[Optional[int], Optional[Op]]:
        """Start ``op`` in Raft and wait for its commit.

        Returns ``(None, None)`` when not leader and ``(index, None)`` on timeout.
        """
        index, _term, is_leader = self.raft.start(op)
        if not is_leader:
            return None, None
        with self._lock:
            channel = self._wait_channels.setdefault(index, queue.Queue())
        try:
            return index, channel.get(timeout=self.consensus_timeout)
        except queue.Empty:
            return index, None
        finally:
            with self._lock:
                self._wait_channels.pop(index, None)

    def _send_to_wait_channel(self, op: Op, index: int) -> bool:
        with self._lock:
            channel = self._wait_channels.get(index)
            if channel is None:
                return False
            channel.put(op)
            return True

    def _get_reply(self, op: Op) -> GetReply:
        value, exists = self._execute_get(op)
        if exists:
            return GetReply(err=OK, value=value)
        return GetReply(err=ERR_NO_KEY, value="")

    # -- client RPCs ---------------------------------------------------------

    def get(self, args: GetArgs) -> GetReply:
        """Serve a Get once it has gone through the log."""
        op = Op("Get", args.key, "", args.client_id, args.request_id)
        index, committed = self._submit(op)
        if index is None:
            return GetReply(err=ERR_WRONG_LEADER)
        if committed is None:
            _term, is_leader = self.raft.get_state()
            if self.is_duplicate(op.client_id, op.request_id) and is_leader:
                return self._get_reply(op)
            return GetReply(err=ERR_WRONG_LEADER)
        if committed.client_id == op.client_id and committed.request_id == op.request_id:
            return self._get_reply(op)
        return GetReply(err=ERR_WRONG_LEADER)

    def put_append(self, args: PutAppendArgs) -> PutAppendReply:
        """Serve a Put or Append once it has been applied."""
        op = Op(args.op, args.key, args.value, args.client_id, args.request_id)
        index, committed = self._submit(op)
        if index is None:
            logger.debug("[kvserver %d] put_append from %s: not leader", self.me, args.client_id)
            return PutAppendReply(err=ERR_WRONG_LEADER)
        if committed is None:
            logger.debug("[kvserver %d] put_append timed out at index %d", self.me, index)
            if self.is_duplicate(op.client_id, op.request_id):
                return PutAppendReply(err=OK)
            return PutAppendReply(err=ERR_WRONG_LEADER)
        if committed.client_id == op.client_id and committed.request_id == op.request_id:
            return PutAppendReply(err=OK)
        return PutAppendReply(err=ERR_WRONG_LEADER)

    # -- messages from Raft --------------------------------------------------

    def handle_apply(self, message: ApplyMsg) -> None:
        """Apply one message from Raft: a command, a snapshot, or both."""
        if message.command_valid:
            self.apply_command(message)
        if message.snapshot_valid:
            self.apply_snapshot(message)

    def apply_command(self, message: ApplyMsg) -> None:
        """Execute a committed command unless it is covered by a snapshot or duplicate."""
        op = Op.from_string(message.command)
        logger.debug(
            "[kvserver %d] got command index %d: %r", self.me, message.command_index, op
        )
        if message.command_index <= self.last_snapshot_raft_log_index:
            return
        if not self.is_duplicate(op.client_id, op.request_id):
            if op.operation in ("Put", "Append"):
                self._execute_put(op)
        if self.max_raft_state != -1:
            self._snapshot_if_needed(message.command_index)
        self._send_to_wait_channel(op, message.command_index)

    def _snapshot_if_needed(self, raft_index: int) -> None:
        if self.raft.raft_state_size() > self.max_raft_state / 10.0:
            self.raft.snapshot(raft_index, self.make_snapshot())

    def apply_snapshot(self, message: ApplyMsg) -> None:
        """Install a snapshot that Raft received from the leader."""
        with self._lock:
            if self.raft.cond_install_snapshot(
                message.snapshot_term, message.snapshot_index, message.snapshot
            ):
                self.install_snapshot(message.snapshot)
                self.last_snapshot_raft_log_index = message.snapshot_index

    def make_snapshot(self) -> bytes:
        """Serialise the store and the last request id of every client."""
        with self._lock:
            data = {"kv": self.store, "last_request_id": self.last_request_id}
            return json.dumps(data, sort_keys=True).encode("utf-8")

    def install_snapshot(self, snapshot: bytes) -> None:
        """Replace the state with ``snapshot``; empty data is ignored."""
        if not snapshot:
            return
        try:
            data = json.loads(bytes(snapshot).decode("utf-8"))
            store = {str(k): str(v) for k, v in data["kv"].items()}
            requests = {str(k): int(v) for k, v in data["last_request_id"].items()}
        except (UnicodeDecodeError, KeyError, TypeError, AttributeError) as exc:
            raise ValueError("malformed snapshot") from exc
        with self._lock:
            self.store = store
            self.last_request_id = requests

    def read_apply_loop(self) -> None:
        """Apply messages from ``apply_queue`` until a ``None`` arrives."""
        while True:
            message = self.apply_queue.get()
            if message is None:
                return
            logger.debug("[kvserver %d] received a message from raft", self.me)
            self.handle_apply(message)

    def rpc_methods(self) -> list[RpcMethod]:
        """The client RPCs this server offers."""
        return [
            RpcMethod("PutAppend", PutAppendArgs, self.put_append),
            RpcMethod("Get", GetArgs, self.get),
        ]


def load_peer_addresses(config: RpcConfig) -> list[tuple[str, int]]:
    """Read ``node<i>ip`` / ``node<i>port`` pairs until a node has no ip."""
    addresses = []
    index = 0
    while True:
        node = f"node{index}"
        ip = config.get(f"{node}ip")
        if not ip:
            return addresses
        port_text = config.get(f"{node}port").strip()
        digits = ""
        for char in port_text:
            if not char.isdigit() and not (char in "+-" and not digits):
                break
            digits += char
        try:
            port = int(digits)
        except ValueError:
            port = 0
        addresses.append((ip, port))
        index += 1


def start_kv_server(me: int, max_raft_state: int, node_config_path: str, port: int) -> None:
    """Run node ``me`` of the cluster described in ``node_config_path``; never returns."""
    persister = Persister(me)
    apply_queue: queue.Queue[Optional[ApplyMsg]] = queue.Queue()
    provider = RpcProvider()
    threading.Thread(target=provider.run, args=(me, port), daemon=True).start()

    logger.info("raft server node %d waiting for the other nodes to start", me)
    time.sleep(6)
    logger.info("raft server node %d connecting to the other nodes", me)

    config = RpcConfig()
    config.load_file(node_config_path)
    addresses = load_peer_addresses(config)
    peers: list[Optional[RaftPeer]] = []
    for index, (ip, peer_port) in enumerate(addresses):
        if index == me:
            peers.append(None)
            continue
        peers.append(RaftPeer(ip, peer_port))
        logger.info("node %d connected to node %d", me, index)
    time.sleep(max(len(addresses) - me, 0))

    raft = RaftServer(peers, me, persister, apply_queue)
    server = KvServer(me, max_raft_state, raft, apply_queue)
    provider.notify_service(server)
    provider.notify_service(raft)
    raft.run()

    snapshot = persister.read_snapshot()
    if snapshot:
        server.install_snapshot(snapshot)
    server.read_apply_loop()