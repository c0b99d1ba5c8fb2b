import queue

import pytest

from raftkv.messages import (
    AppendEntriesArgs,
    AppState,
    InstallSnapshotRequest,
    LogEntry,
    RequestVoteArgs,
    VoteState,
)
from raftkv.node import RaftNode, Role
from raftkv.persister import Persister
from raftkv.raftlog import RaftInvariantError


def make_node(tmp_path, me=0, size=3):
    persister = Persister(me, tmp_path)
    return RaftNode([None] * size, me, persister, queue.Queue())


def entries(*pairs):
    return [LogEntry(command=c, log_term=t, log_index=i) for i, (c, t) in enumerate(pairs, 1)]


def feed(node, term=1, leader_commit=0, items=None):
    args = AppendEntriesArgs(
        term=term,
        leader_id=1,
        prev_log_index=0,
        prev_log_term=0,
        entries=items or [],
        leader_commit=leader_commit,
    )
    return node.append_entries(args)


def test_initial_state(tmp_path):
    node = make_node(tmp_path)
    assert node.get_state() == (0, False)
    assert node.log.last_index() == 0
    assert node.start("cmd") == (-1, -1, False)


def test_vote_granted_for_higher_term(tmp_path):
    node = make_node(tmp_path)
    reply = node.request_vote(RequestVoteArgs(term=3, candidate_id=2))
    assert reply.vote_granted is True
    assert reply.vote_state == VoteState.NORMAL
    assert reply.term == 3
    assert node.voted_for == 2
    assert node.current_term == 3


def test_second_candidate_same_term_rejected(tmp_path):
    node = make_node(tmp_path)
    node.request_vote(RequestVoteArgs(term=2, candidate_id=1))
    reply = node.request_vote(RequestVoteArgs(term=2, candidate_id=2))
    assert reply.vote_granted is False
    assert reply.vote_state == VoteState.VOTED
    assert node.voted_for == 1


def test_stale_vote_request_expires(tmp_path):
    node = make_node(tmp_path)
    node.request_vote(RequestVoteArgs(term=5, candidate_id=1))
    reply = node.request_vote(RequestVoteArgs(term=4, candidate_id=2))
    assert reply.vote_state == VoteState.EXPIRE
    assert reply.term == 5
    assert reply.vote_granted is False


def test_out_of_date_candidate_rejected(tmp_path):
    node = make_node(tmp_path)
    feed(node, term=2, items=entries(("a", 1), ("b", 2)))
    reply = node.request_vote(
        RequestVoteArgs(term=3, candidate_id=2, last_log_index=5, last_log_term=1)
    )
    assert reply.vote_granted is False
    assert reply.vote_state == VoteState.VOTED


def test_append_entries_stale_term(tmp_path):
    node = make_node(tmp_path)
    node.request_vote(RequestVoteArgs(term=4, candidate_id=1))
    reply = feed(node, term=2)
    assert reply.success is False
    assert reply.update_next_index == -100
    assert reply.term == 4


def test_append_entries_appends_and_commits(tmp_path):
    node = make_node(tmp_path)
    reply = feed(node, term=1, leader_commit=2, items=entries(("a", 1), ("b", 1)))
    assert reply.success is True
    assert reply.app_state == AppState.APP_NORMAL
    assert node.log.last_index() == 2
    assert node.commit_index == 2
    messages = node.get_apply_logs()
    assert [m.command for m in messages] == ["a", "b"]
    assert [m.command_index for m in messages] == [1, 2]
    assert node.get_apply_logs() == []


def test_commit_capped_at_last_index(tmp_path):
    node = make_node(tmp_path)
    feed(node, term=1, leader_commit=10, items=entries(("a", 1)))
    assert node.commit_index == node.log.last_index()


def test_prev_index_beyond_log(tmp_path):
    node = make_node(tmp_path)
    feed(node, items=entries(("a", 1)))
    reply = node.append_entries(AppendEntriesArgs(term=1, leader_id=1, prev_log_index=5, prev_log_term=1))
    assert reply.success is False
    assert reply.update_next_index == node.log.last_index() + 1


def test_conflicting_entry_replaced(tmp_path):
    node = make_node(tmp_path)
    feed(node, term=1, items=entries(("a", 1), ("b", 1)))
    new = LogEntry(command="c", log_term=2, log_index=2)
    reply = node.append_entries(
        AppendEntriesArgs(term=2, leader_id=1, prev_log_index=1, prev_log_term=1, entries=[new])
    )
    assert reply.success is True
    assert node.log.entry_at(2) == new


def test_same_term_different_command_raises(tmp_path):
    node = make_node(tmp_path)
    feed(node, term=1, items=entries(("a", 1)))
    with pytest.raises(RaftInvariantError):
        feed(node, term=1, items=entries(("z", 1)))


def test_mismatch_backs_off_to_term_start(tmp_path):
    node = make_node(tmp_path)
    feed(node, term=2, items=entries(("a", 1), ("b", 2), ("c", 2)))
    reply = node.append_entries(
        AppendEntriesArgs(term=2, leader_id=1, prev_log_index=3, prev_log_term=9)
    )
    assert reply.success is False
    assert reply.update_next_index == 2


def test_higher_term_heartbeat_steps_down(tmp_path):
    node = make_node(tmp_path)
    node.role = Role.LEADER
    feed(node, term=7)
    assert node.get_state() == (7, False)
    assert node.voted_for == -1


def test_leader_start_and_commit(tmp_path):
    node = make_node(tmp_path)
    node.current_term = 1
    node.role = Role.LEADER
    assert node.start("x") == (1, 1, True)
    assert node.start("y") == (2, 1, True)
    node.match_index = [0, 2, 0]
    node.leader_update_commit_index()
    assert node.commit_index == 2
    node.match_index = [0, 0, 0]
    node.leader_update_commit_index()
    assert node.commit_index == node.log.snapshot_index


def test_prev_log_info(tmp_path):
    node = make_node(tmp_path)
    feed(node, term=2, items=entries(("a", 1), ("b", 2)))
    node.next_index = [3, 1, 3]
    assert node.prev_log_info(1) == (0, 0)
    assert node.prev_log_info(2) == (2, 2)


def test_persist_roundtrip(tmp_path):
    node = make_node(tmp_path)
    node.request_vote(RequestVoteArgs(term=3, candidate_id=2))
    feed(node, term=3, items=entries(("a", 1), ("b", 3)))
    other = make_node(tmp_path / "..", me=9)
    other.read_persist(node.persist_data())
    assert other.current_term == node.current_term
    assert other.voted_for == node.voted_for
    assert list(other.log) == list(node.log)


def test_restart_reads_persisted_state(tmp_path):
    node = make_node(tmp_path)
    feed(node, term=1, leader_commit=2, items=entries(("a", 1), ("b", 1)))
    assert node.snapshot(1, b"snap") is True
    restarted = RaftNode([None] * 3, 0, node.persister, queue.Queue())
    assert restarted.log.snapshot_index == 1
    assert restarted.last_applied == 1
    assert restarted.log.last_index() == 2


def test_snapshot_compacts_log(tmp_path):
    node = make_node(tmp_path)
    feed(node, term=1, leader_commit=2, items=entries(("a", 1), ("b", 1), ("c", 1)))
    assert node.snapshot(3, b"snap") is False
    assert node.snapshot(2, b"snap") is True
    assert node.log.snapshot_index == 2
    assert len(node.log) == 1
    assert node.persister.read_snapshot() == b"snap"
    assert node.snapshot(2, b"again") is False


def test_install_snapshot(tmp_path):
    node = make_node(tmp_path)
    feed(node, term=1, items=entries(("a", 1), ("b", 1), ("c", 1)))
    reply = node.install_snapshot(
        InstallSnapshotRequest(
            leader_id=1, term=2, last_snapshot_include_index=2, last_snapshot_include_term=1, data=b"kv"
        )
    )
    assert reply.term == 2
    assert node.log.snapshot_index == 2
    assert node.log.last_index() == 3
    assert node.commit_index == 2
    assert node.last_applied == 2
    message = node.apply_queue.get_nowait()
    assert message.snapshot_valid is True
    assert message.snapshot == b"kv"
    assert message.snapshot_index == 2
    assert node.persister.read_snapshot() == b"kv"


def test_install_snapshot_stale_term(tmp_path):
    node = make_node(tmp_path)
    node.request_vote(RequestVoteArgs(term=5, candidate_id=1))
    reply = node.install_snapshot(InstallSnapshotRequest(term=3, last_snapshot_include_index=4))
    assert reply.term == 5
    assert node.log.snapshot_index == 0
    assert node.apply_queue.empty()


def test_rpc_methods_dispatch(tmp_path):
    node = make_node(tmp_path)
    methods = {m.name: m for m in node.rpc_methods()}
    assert set(methods) == {"AppendEntries", "InstallSnapshot", "RequestVote"}
    args = RequestVoteArgs(term=1, candidate_id=2)
    request = methods["RequestVote"].request_type.from_bytes(args.to_bytes())
    reply = methods["RequestVote"].handler(request)
    assert reply.vote_granted is True


def test_persist_updates_state_size(tmp_path):
    node = make_node(tmp_path)
    feed(node, term=1, items=entries(("a", 1)))
    assert node.raft_state_size() == len(node.persist_data())
    assert node.cond_install_snapshot(1, 1, b"") is True