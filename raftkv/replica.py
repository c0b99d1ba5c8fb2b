"""A running Raft node: elections, heartbeats and the loops that drive them."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from .messages import (
    AppendEntriesArgs,
    AppState,
    InstallSnapshotRequest,
    RequestVoteArgs,
)
from .node import STALE_TERM_NEXT_INDEX, RaftNode, Role
from .persister import Persister
from .raftlog import RaftInvariantError

logger = logging.getLogger(__name__)


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise RaftInvariantError(message)


@dataclass
class _Tally:
    """A counter shared by the threads answering one election or heartbeat round."""

    count: int = 1


class RaftServer(RaftNode):
    """A Raft node that talks to its peers and runs its own timers.

    ``peers[i]`` must offer ``request_vote``, ``append_entries`` and
    ``install_snapshot``, each returning a reply or None on failure. Times
    are in seconds; ``election_timeout`` is the ``(low, high)`` range from
    which each election timeout is drawn.
    """

    def __init__(
        self,
        peers: Sequence[Optional[Any]],
        me: int,
        persister: Persister,
        apply_queue: Any,
        heartbeat_timeout: float = 0.025,
        election_timeout: tuple[float, float] = (0.3, 0.5),
        apply_interval: float = 0.01,
    ) -> None:
        low, high = election_timeout
        if heartbeat_timeout <= 0 or apply_interval <= 0:
            raise ValueError("timeouts must be positive")
        if not 0 < low <= high:
            raise ValueError(f"invalid election timeout range: {election_timeout}")
        super().__init__(peers, me, persister, apply_queue)
        self.heartbeat_timeout = heartbeat_timeout
        self.election_timeout = (low, high)
        self.apply_interval = apply_interval
        self._stopped = threading.Event()
        self._threads: list[threading.Thread] = []

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _spawn(target: Callable[..., Any], *args: Any) -> None:
        threading.Thread(target=target, args=args, daemon=True).start()

    def _randomized_election_timeout(self) -> float:
        return random.uniform(*self.election_timeout)

    # -- elections ---------------------------------------------------------

    def do_election(self) -> None:
        """Become a candidate in a new term and ask every peer for a vote."""
        with self.lock:
            if self.role is Role.LEADER:
                return
            logger.debug("[election rf %d] election timer expired, starting election", self.me)
            self.role = Role.CANDIDATE
            self.current_term += 1
            self.voted_for = self.me
            self.persist()
            votes = _Tally(1)
            self.reset_election_timer()
            for server in range(len(self.peers)):
                if server == self.me:
                    continue
                last_index, last_term = self.log.last_index_and_term()
                args = RequestVoteArgs(
                    term=self.current_term,
                    candidate_id=self.me,
                    last_log_index=last_index,
                    last_log_term=last_term,
                )
                self._spawn(self.send_request_vote, server, args, votes)

    def send_request_vote(self, server: int, args: RequestVoteArgs, votes: _Tally) -> bool:
        """Ask ``server`` for its vote and count it; False if the call failed."""
        reply = self.peers[server].request_vote(args)
        if reply is None:
            return False
        with self.lock:
            if reply.term > self.current_term:
                self._step_down(reply.term)
                self.persist()
                return True
            if reply.term < self.current_term:
                return True
            if not reply.vote_granted:
                return True

            votes.count += 1
            if votes.count >= len(self.peers) // 2 + 1:
                votes.count = 0
                _require(
                    self.role is not Role.LEADER,
                    f"[send_request_vote rf {self.me}] term {self.current_term}: elected twice",
                )
                self.role = Role.LEADER
                last_index = self.log.last_index()
                logger.debug(
                    "[send_request_vote rf %d] elected, term %d, last log index %d",
                    self.me,
                    self.current_term,
                    last_index,
                )
                self.next_index = [last_index + 1] * len(self.peers)
                self.match_index = [0] * len(self.peers)
                self._spawn(self.do_heartbeat)
                self.persist()
        return True

    # -- replication -------------------------------------------------------

    def do_heartbeat(self) -> None:
        """As leader, send every follower the entries it lacks (or a snapshot)."""
        with self.lock:
            if self.role is not Role.LEADER:
                return
            append_count = _Tally(1)
            for server in range(len(self.peers)):
                if server == self.me:
                    continue
                _require(
                    self.next_index[server] >= 1,
                    f"next_index[{server}] = {self.next_index[server]}",
                )
                if self.next_index[server] <= self.log.snapshot_index:
                    self._spawn(self.leader_send_snapshot, server)
                    continue
                prev_index, prev_term = self.prev_log_info(server)
                entries = self.log.entries_after(prev_index)
                args = AppendEntriesArgs(
                    term=self.current_term,
                    leader_id=self.me,
                    prev_log_index=prev_index,
                    prev_log_term=prev_term,
                    entries=entries,
                    leader_commit=self.commit_index,
                )
                last_index = self.log.last_index()
                _require(
                    prev_index + len(entries) == last_index,
                    f"prev log index {prev_index} + {len(entries)} entries != {last_index}",
                )
                self._spawn(self.send_append_entries, server, args, append_count)
            self.last_reset_heartbeat_time = time.monotonic()

    def send_append_entries(
        self, server: int, args: AppendEntriesArgs, append_count: _Tally
    ) -> bool:
        """Send ``args`` to ``server`` and act on its reply; False if the call failed."""
        reply = self.peers[server].append_entries(args)
        if reply is None:
            logger.debug("[send_append_entries rf %d] call to %d failed", self.me, server)
            return False
        if reply.app_state == AppState.DISCONNECTED:
            return True
        with self.lock:
            if reply.term > self.current_term:
                self._step_down(reply.term)
                return True
            if reply.term < self.current_term:
                return True
            if self.role is not Role.LEADER:
                return True

            if not reply.success:
                if reply.update_next_index != STALE_TERM_NEXT_INDEX:
                    self.next_index[server] = reply.update_next_index
                return True

            append_count.count += 1
            sent_up_to = args.prev_log_index + len(args.entries)
            self.match_index[server] = max(self.match_index[server], sent_up_to)
            self.next_index[server] = self.match_index[server] + 1
            last_index = self.log.last_index()
            _require(
                self.next_index[server] <= last_index + 1,
                f"next_index[{server}] {self.next_index[server]} > last log index {last_index} + 1",
            )
            if append_count.count >= 1 + len(self.peers) // 2:
                append_count.count = 0
                if args.entries and args.entries[-1].log_term == self.current_term:
                    self.commit_index = max(self.commit_index, sent_up_to)
                _require(
                    self.commit_index <= last_index,
                    f"commit index {self.commit_index} > last log index {last_index}",
                )
        return True

    def leader_send_snapshot(self, server: int) -> bool:
        """Send the current snapshot to ``server``; False if the call failed."""
        with self.lock:
            args = InstallSnapshotRequest(
                leader_id=self.me,
                term=self.current_term,
                last_snapshot_include_index=self.log.snapshot_index,
                last_snapshot_include_term=self.log.snapshot_term,
                data=self.persister.read_snapshot(),
            )
        reply = self.peers[server].install_snapshot(args)
        if reply is None:
            return False
        with self.lock:
            if self.role is not Role.LEADER or self.current_term != args.term:
                return True
            if reply.term > self.current_term:
                self._step_down(reply.term)
                self.persist()
                self.reset_election_timer()
                return True
            self.match_index[server] = args.last_snapshot_include_index
            self.next_index[server] = self.match_index[server] + 1
        return True

    # -- background loops --------------------------------------------------

    def election_ticker(self) -> None:
        """Start an election whenever the election timer runs out."""
        while not self._stopped.is_set():
            while self.role is Role.LEADER:
                if self._stopped.wait(self.heartbeat_timeout):
                    return
            with self.lock:
                wake = time.monotonic()
                sleep_for = (
                    self._randomized_election_timeout() + self.last_reset_election_time - wake
                )
            if sleep_for > 0.001 and self._stopped.wait(sleep_for):
                return
            if self._stopped.is_set():
                return
            if self.last_reset_election_time - wake > 0:
                continue
            self.do_election()

    def heartbeat_ticker(self) -> None:
        """As leader, send heartbeats every ``heartbeat_timeout`` seconds."""
        while not self._stopped.is_set():
            while self.role is not Role.LEADER:
                if self._stopped.wait(self.heartbeat_timeout):
                    return
            with self.lock:
                wake = time.monotonic()
                sleep_for = self.heartbeat_timeout + self.last_reset_heartbeat_time - wake
            if sleep_for > 0.001 and self._stopped.wait(sleep_for):
                return
            if self._stopped.is_set():
                return
            if self.last_reset_heartbeat_time - wake > 0:
                continue
            self.do_heartbeat()

    def applier_ticker(self) -> None:
        """Hand newly committed entries to the service."""
        while not self._stopped.is_set():
            messages = self.get_apply_logs()
            if messages:
                logger.debug("[applier rf %d] applying %d messages", self.me, len(messages))
            for message in messages:
                self.apply_queue.put(message)
            if self._stopped.wait(self.apply_interval):
                return

    def run(self) -> None:
        """Start the election, heartbeat and applier loops in background threads."""
        if any(thread.is_alive() for thread in self._threads):
            raise RuntimeError("raft server is already running")
        self._stopped.clear()
        self._threads = [
            threading.Thread(target=loop, daemon=True, name=f"raft-{self.me}-{loop.__name__}")
            for loop in (self.election_ticker, self.heartbeat_ticker, self.applier_ticker)
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Stop the background loops and wait for them to finish."""
        self._stopped.set()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=5)
        self._threads = []

    @property
    def running(self) -> bool:
        """Whether any background loop is still alive."""
        return any(thread.is_alive() for thread in self._threads)

    def __enter__(self) -> "RaftServer":
        self.run()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()