"""Raft consensus state machine: RPC handlers, log bookkeeping and persistence."""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Optional, Sequence, Union

from .messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    AppState,
    ApplyMsg,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    LogEntry,
    RequestVoteArgs,
    RequestVoteReply,
    VoteState,
)
from .peer import SERVICE_NAME
from .persister import Persister
from .provider import RpcMethod
from .raftlog import PersistentState, RaftInvariantError, RaftLog

logger = logging.getLogger(__name__)

# Returned in update_next_index when the leader's term is stale.
STALE_TERM_NEXT_INDEX = -100


class Role(Enum):
    """What a node currently believes it is."""

    FOLLOWER = "follower"
    CANDIDATE = "candidate"
    LEADER = "leader"


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise RaftInvariantError(message)


class RaftNode:
    """The state of one Raft node and the handlers that change it.

    ``peers[me]`` is this node's own slot and is not used. Timers and
    background loops are driven by a subclass; every method here takes
    ``lock`` itself, and the lock is reentrant so callers may hold it too.
    """

    service_name = SERVICE_NAME

    def __init__(
        self,
        peers: Sequence[Optional[Any]],
        me: int,
        persister: Persister,
        apply_queue: Any,
    ) -> None:
        self.lock = threading.RLock()
        self.peers = list(peers)
        self.me = me
        self.persister = persister
        self.apply_queue = apply_queue

        self.current_term = 0
        self.voted_for = -1
        self.role = Role.FOLLOWER
        self.commit_index = 0
        self.last_applied = 0
        self.log = RaftLog()
        self.next_index = [0] * len(self.peers)
        self.match_index = [0] * len(self.peers)
        self.last_reset_election_time = time.monotonic()
        self.last_reset_heartbeat_time = time.monotonic()

        with self.lock:
            self.read_persist(self.persister.read_raft_state())
            if self.log.snapshot_index > 0:
                self.last_applied = self.log.snapshot_index
        logger.debug(
            "[init] server %d, term %d, snapshot index %d, snapshot term %d",
            me,
            self.current_term,
            self.log.snapshot_index,
            self.log.snapshot_term,
        )

    # -- helpers -----------------------------------------------------------

    def _step_down(self, term: int) -> None:
        self.role = Role.FOLLOWER
        self.current_term = term
        self.voted_for = -1

    def reset_election_timer(self) -> None:
        self.last_reset_election_time = time.monotonic()

    # -- RPC handlers ------------------------------------------------------

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        """Handle log replication or a heartbeat from a leader."""
        with self.lock:
            reply = AppendEntriesReply(app_state=AppState.APP_NORMAL)
            if args.term < self.current_term:
                reply.success = False
                reply.term = self.current_term
                reply.update_next_index = STALE_TERM_NEXT_INDEX
                logger.debug(
                    "[append_entries rf %d] rejected leader %d with term %d < %d",
                    self.me,
                    args.leader_id,
                    args.term,
                    self.current_term,
                )
                return reply
            try:
                self._accept_entries(args, reply)
            finally:
                self.persist()
            return reply

    def _accept_entries(self, args: AppendEntriesArgs, reply: AppendEntriesReply) -> None:
        if args.term > self.current_term:
            self._step_down(args.term)
        _require(args.term == self.current_term, "args.term != current term")
        self.role = Role.FOLLOWER
        self.reset_election_timer()

        log = self.log
        last_index = log.last_index()
        if args.prev_log_index > last_index:
            reply.success = False
            reply.term = self.current_term
            reply.update_next_index = last_index + 1
            return
        if args.prev_log_index < log.snapshot_index:
            reply.success = False
            reply.term = self.current_term
            reply.update_next_index = log.snapshot_index + 1
            return

        if log.matches(args.prev_log_index, args.prev_log_term):
            for entry in args.entries:
                if entry.log_index > log.last_index():
                    log.append(entry)
                    continue
                existing = log.entry_at(entry.log_index)
                if existing.log_term == entry.log_term and existing.command != entry.command:
                    raise RaftInvariantError(
                        f"[append_entries rf {self.me}] entries at index {entry.log_index} "
                        f"and term {entry.log_term} differ: {existing.command!r} vs "
                        f"{entry.command!r} from leader {args.leader_id}"
                    )
                if existing.log_term != entry.log_term:
                    log.replace(entry)

            _require(
                log.last_index() >= args.prev_log_index + len(args.entries),
                f"last log index {log.last_index()} < prev log index "
                f"{args.prev_log_index} + {len(args.entries)} entries",
            )
            if args.leader_commit > self.commit_index:
                self.commit_index = min(args.leader_commit, log.last_index())
            _require(
                log.last_index() >= self.commit_index,
                f"last log index {log.last_index()} < commit index {self.commit_index}",
            )
            reply.success = True
            reply.term = self.current_term
            return

        reply.update_next_index = args.prev_log_index
        conflict_term = log.term_at(args.prev_log_index)
        for index in range(args.prev_log_index, log.snapshot_index - 1, -1):
            if log.term_at(index) != conflict_term:
                reply.update_next_index = index + 1
                break
        reply.success = False
        reply.term = self.current_term

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        """Decide whether to vote for a candidate."""
        with self.lock:
            try:
                return self._vote(args)
            finally:
                self.persist()

    def _vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        if args.term < self.current_term:
            return RequestVoteReply(
                term=self.current_term, vote_state=VoteState.EXPIRE, vote_granted=False
            )
        if args.term > self.current_term:
            self._step_down(args.term)
        _require(args.term == self.current_term, "args.term != current term")

        if not self.log.up_to_date(args.last_log_index, args.last_log_term):
            return RequestVoteReply(
                term=self.current_term, vote_state=VoteState.VOTED, vote_granted=False
            )
        if self.voted_for not in (-1, args.candidate_id):
            return RequestVoteReply(
                term=self.current_term, vote_state=VoteState.VOTED, vote_granted=False
            )
        self.voted_for = args.candidate_id
        self.reset_election_timer()
        return RequestVoteReply(
            term=self.current_term, vote_state=VoteState.NORMAL, vote_granted=True
        )

    def install_snapshot(self, args: InstallSnapshotRequest) -> InstallSnapshotResponse:
        """Adopt a snapshot sent by the leader and hand it to the service."""
        with self.lock:
            if args.term < self.current_term:
                return InstallSnapshotResponse(term=self.current_term)
            if args.term > self.current_term:
                self._step_down(args.term)
                self.persist()
            self.role = Role.FOLLOWER
            self.reset_election_timer()
            if args.last_snapshot_include_index <= self.log.snapshot_index:
                return InstallSnapshotResponse(term=self.current_term)

            index = args.last_snapshot_include_index
            self.log.install_snapshot(index, args.last_snapshot_include_term)
            self.commit_index = max(self.commit_index, index)
            self.last_applied = max(self.last_applied, index)

            message = ApplyMsg(
                snapshot_valid=True,
                snapshot=bytes(args.data),
                snapshot_term=args.last_snapshot_include_term,
                snapshot_index=index,
            )
            self.persister.save(self.persist_data(), args.data)
            reply = InstallSnapshotResponse(term=self.current_term)
        self.apply_queue.put(message)
        return reply

    # -- service interface -------------------------------------------------

    def start(self, command: Union[str, Any]) -> tuple[int, int, bool]:
        """Append ``command`` to the log if leader.

        Returns ``(index, term, is_leader)``; ``(-1, -1, False)`` when not leader.
        """
        text = command if isinstance(command, str) else command.to_string()
        with self.lock:
            if self.role is not Role.LEADER:
                logger.debug("[start rf %d] is not leader", self.me)
                return -1, -1, False
            entry = LogEntry(
                command=text, log_term=self.current_term, log_index=self.log.last_index() + 1
            )
            self.log.append(entry)
            logger.debug("[start rf %d] last log index %d", self.me, entry.log_index)
            self.persist()
            return entry.log_index, entry.log_term, True

    def snapshot(self, index: int, snapshot: bytes) -> bool:
        """Discard log entries up to ``index`` now covered by ``snapshot``.

        Returns False when ``index`` is already snapshotted or not committed.
        """
        with self.lock:
            if self.log.snapshot_index >= index or index > self.commit_index:
                logger.debug(
                    "[snapshot rf %d] rejects snapshot index %d, current snapshot index %d",
                    self.me,
                    index,
                    self.log.snapshot_index,
                )
                return False
            self.log.compact(index)
            self.commit_index = max(self.commit_index, index)
            self.last_applied = max(self.last_applied, index)
            self.persister.save(self.persist_data(), snapshot)
            return True

    def get_state(self) -> tuple[int, bool]:
        """Current term and whether this node believes it is leader."""
        with self.lock:
            return self.current_term, self.role is Role.LEADER

    def get_apply_logs(self) -> list[ApplyMsg]:
        """Messages for entries committed but not yet applied; marks them applied."""
        with self.lock:
            _require(
                self.commit_index <= self.log.last_index(),
                f"commit index {self.commit_index} > last log index {self.log.last_index()}",
            )
            messages = []
            while self.last_applied < self.commit_index:
                self.last_applied += 1
                entry = self.log.entry_at(self.last_applied)
                _require(
                    entry.log_index == self.last_applied,
                    f"entry index {entry.log_index} != last applied {self.last_applied}",
                )
                messages.append(
                    ApplyMsg(
                        command_valid=True,
                        snapshot_valid=False,
                        command=entry.command,
                        command_index=self.last_applied,
                    )
                )
            return messages

    def cond_install_snapshot(
        self, last_included_term: int, last_included_index: int, snapshot: bytes
    ) -> bool:
        """Snapshots are always accepted by the service."""
        return True

    def raft_state_size(self) -> int:
        return self.persister.raft_state_size()

    # -- persistence -------------------------------------------------------

    def persist_data(self) -> bytes:
        """Serialise term, vote, snapshot point and log."""
        with self.lock:
            return PersistentState(
                current_term=self.current_term,
                voted_for=self.voted_for,
                last_snapshot_include_index=self.log.snapshot_index,
                last_snapshot_include_term=self.log.snapshot_term,
                logs=list(self.log),
            ).to_bytes()

    def persist(self) -> None:
        with self.lock:
            self.persister.save_raft_state(self.persist_data())

    def read_persist(self, data: bytes) -> None:
        """Restore state written by ``persist_data``; empty data is ignored."""
        if not data:
            return
        state = PersistentState.from_bytes(data)
        with self.lock:
            self.current_term = state.current_term
            self.voted_for = state.voted_for
            self.log = RaftLog(
                state.logs,
                state.last_snapshot_include_index,
                state.last_snapshot_include_term,
            )

    # -- leader bookkeeping ------------------------------------------------

    def leader_update_commit_index(self) -> None:
        """Commit the newest current-term entry stored on a majority."""
        with self.lock:
            self.commit_index = self.log.snapshot_index
            majority = len(self.peers) // 2 + 1
            for index in range(self.log.last_index(), self.log.snapshot_index, -1):
                count = sum(
                    1
                    for peer, matched in enumerate(self.match_index)
                    if peer == self.me or matched >= index
                )
                if count >= majority and self.log.term_at(index) == self.current_term:
                    self.commit_index = index
                    break

    def prev_log_info(self, server: int) -> tuple[int, int]:
        """Index and term of the entry preceding what ``server`` needs next."""
        with self.lock:
            if self.next_index[server] == self.log.snapshot_index + 1:
                return self.log.snapshot_index, self.log.snapshot_term
            prev_index = self.next_index[server] - 1
            return prev_index, self.log.entry_at(prev_index).log_term

    def rpc_methods(self) -> list[RpcMethod]:
        """The Raft RPCs this node serves."""
        return [
            RpcMethod("AppendEntries", AppendEntriesArgs, self.append_entries),
            RpcMethod("InstallSnapshot", InstallSnapshotRequest, self.install_snapshot),
            RpcMethod("RequestVote", RequestVoteArgs, self.request_vote),
        ]