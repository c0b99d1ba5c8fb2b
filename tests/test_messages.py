import pytest

from raftkv.messages import (
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
from raftkv.wire import WireError, encode_fields


def test_log_entry_wire_bytes():
    entry = LogEntry(command="x", log_term=1, log_index=2)
    assert entry.to_bytes() == b"\x0a\x01x\x10\x01\x18\x02"


def test_default_message_is_empty():
    assert LogEntry().to_bytes() == b""
    assert LogEntry.from_bytes(b"") == LogEntry()


def test_append_entries_args_round_trip():
    args = AppendEntriesArgs(
        term=3,
        leader_id=1,
        prev_log_index=4,
        prev_log_term=2,
        entries=[LogEntry("a", 3, 5), LogEntry("b", 3, 6)],
        leader_commit=4,
    )
    assert AppendEntriesArgs.from_bytes(args.to_bytes()) == args


def test_negative_update_next_index_round_trips():
    reply = AppendEntriesReply(term=2, success=False, update_next_index=-100, app_state=AppState.APP_NORMAL)
    decoded = AppendEntriesReply.from_bytes(reply.to_bytes())
    assert decoded.update_next_index == -100
    assert decoded.app_state == AppState.APP_NORMAL


@pytest.mark.parametrize(
    "message",
    [
        RequestVoteArgs(term=7, candidate_id=2, last_log_index=9, last_log_term=6),
        RequestVoteReply(term=7, vote_granted=True, vote_state=VoteState.NORMAL),
        InstallSnapshotRequest(
            leader_id=0, term=5, last_snapshot_include_index=10, last_snapshot_include_term=4, data=b"\x00\xffsnap"
        ),
        InstallSnapshotResponse(term=5),
        AppendEntriesReply(term=1, success=True, update_next_index=0, app_state=1),
    ],
)
def test_round_trips(message):
    assert type(message).from_bytes(message.to_bytes()) == message


def test_unknown_fields_are_skipped():
    entry = LogEntry("cmd", 4, 8)
    data = entry.to_bytes() + encode_fields([(15, 7), (16, b"extra")])
    assert LogEntry.from_bytes(data) == entry


def test_mismatched_wire_type_is_skipped():
    assert LogEntry.from_bytes(encode_fields([(2, b"zz")])) == LogEntry()


def test_invalid_utf8_command_raises():
    with pytest.raises(WireError):
        LogEntry.from_bytes(encode_fields([(1, b"\xff")]))


def test_truncated_data_raises():
    data = LogEntry("command", 1, 1).to_bytes()
    with pytest.raises(WireError):
        LogEntry.from_bytes(data[:3])


def test_out_of_range_int32_raises():
    with pytest.raises(ValueError):
        LogEntry(log_term=1 << 31).to_bytes()


def test_vote_state_encodes_as_its_number():
    reply = RequestVoteReply(term=1, vote_granted=False, vote_state=VoteState.EXPIRE)
    assert reply.to_bytes() == b"\x08\x01\x18\x02"
    decoded = RequestVoteReply.from_bytes(reply.to_bytes())
    assert decoded.vote_state == 2


def test_app_state_encodes_as_its_number():
    reply = AppendEntriesReply(app_state=AppState.APP_NORMAL)
    assert reply.to_bytes() == b"\x20\x01"
    assert AppendEntriesReply.from_bytes(b"").app_state == AppState.DISCONNECTED


def test_apply_msg_defaults():
    msg = ApplyMsg()
    assert (msg.command_valid, msg.snapshot_valid) == (False, False)
    assert (msg.command_index, msg.snapshot_term, msg.snapshot_index) == (-1, -1, -1)