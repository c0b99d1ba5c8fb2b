"""Messages exchanged between Raft nodes and between Raft and its service."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional, TypeVar

from .wire import LENGTH_DELIMITED, VARINT, WireError, decode_fields, encode_fields

INT32 = "int32"
BOOL = "bool"
STRING = "string"
BYTES = "bytes"
MESSAGES = "messages"

_INT32_MIN = -(1 << 31)
_INT32_MAX = (1 << 31) - 1

_M = TypeVar("_M")


class AppState(IntEnum):
    """Network state reported in an AppendEntries reply."""

    DISCONNECTED = 0
    APP_NORMAL = 1


class VoteState(IntEnum):
    """Why a vote was or was not granted."""

    KILLED = 0
    VOTED = 1
    EXPIRE = 2
    NORMAL = 3


def wire_field(
    number: int, kind: str, default: Any = 0, message_type: Optional[type] = None
) -> Any:
    """Declare a dataclass field stored as protobuf field ``number``."""
    metadata = {"number": number, "kind": kind, "message_type": message_type}
    if kind == MESSAGES:
        return field(default_factory=list, metadata=metadata)
    return field(default=default, metadata=metadata)


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value > _INT32_MAX else value


def _text(value: bytes) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WireError("field is not valid UTF-8") from exc


def encode_message(message: Any) -> bytes:
    """Serialise a dataclass declared with ``wire_field``.

    Fields equal to their default value are left out of the encoding.
    """
    pairs: list[tuple[int, Any]] = []
    for spec in dataclasses.fields(message):
        kind = spec.metadata.get("kind")
        if kind is None:
            continue
        number = spec.metadata["number"]
        value = getattr(message, spec.name)
        if kind == MESSAGES:
            pairs.extend((number, item.to_bytes()) for item in value)
            continue
        if value == spec.default:
            continue
        if kind == INT32:
            value = int(value)
            if not _INT32_MIN <= value <= _INT32_MAX:
                raise ValueError(f"{spec.name} out of int32 range: {value}")
        elif kind == BOOL:
            value = bool(value)
        elif kind == STRING:
            if not isinstance(value, str):
                raise TypeError(f"{spec.name} must be str")
        else:
            value = bytes(value)
        pairs.append((number, value))
    return encode_fields(pairs)


def decode_message(cls: type[_M], data: bytes) -> _M:
    """Parse a message of ``cls``; unknown fields and mismatched wire types are skipped."""
    by_number = {
        spec.metadata["number"]: spec
        for spec in dataclasses.fields(cls)  # type: ignore[arg-type]
        if "kind" in spec.metadata
    }
    values: dict[str, Any] = {}
    for number, wire_type, value in decode_fields(bytes(data)):
        spec = by_number.get(number)
        if spec is None:
            continue
        kind = spec.metadata["kind"]
        if kind in (INT32, BOOL):
            if wire_type != VARINT:
                continue
            values[spec.name] = _to_int32(value) if kind == INT32 else value != 0  # type: ignore[arg-type]
            continue
        if wire_type != LENGTH_DELIMITED:
            continue
        if kind == STRING:
            values[spec.name] = _text(value)  # type: ignore[arg-type]
        elif kind == BYTES:
            values[spec.name] = value
        else:
            message_type = spec.metadata["message_type"]
            values.setdefault(spec.name, []).append(message_type.from_bytes(value))
    return cls(**values)


class WireMessage:
    """Protobuf-style encoding for dataclasses declared with ``wire_field``."""

    def to_bytes(self) -> bytes:
        """Serialise the message."""
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> Any:
        """Parse a message."""
        return decode_message(cls, data)


@dataclass
class LogEntry(WireMessage):
    """One command in the replicated log."""

    command: str = wire_field(1, STRING, "")
    log_term: int = wire_field(2, INT32)
    log_index: int = wire_field(3, INT32)

    def to_bytes(self) -> bytes:
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "LogEntry":
        return decode_message(cls, data)


@dataclass
class AppendEntriesArgs(WireMessage):
    """Log replication and heartbeat request sent by the leader."""

    term: int = wire_field(1, INT32)
    leader_id: int = wire_field(2, INT32)
    prev_log_index: int = wire_field(3, INT32)
    prev_log_term: int = wire_field(4, INT32)
    entries: list[LogEntry] = wire_field(5, MESSAGES, message_type=LogEntry)
    leader_commit: int = wire_field(6, INT32)

    def to_bytes(self) -> bytes:
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "AppendEntriesArgs":
        return decode_message(cls, data)


@dataclass
class AppendEntriesReply(WireMessage):
    """Answer to ``AppendEntriesArgs``."""

    term: int = wire_field(1, INT32)
    success: bool = wire_field(2, BOOL, False)
    update_next_index: int = wire_field(3, INT32)
    app_state: int = wire_field(4, INT32)

    def to_bytes(self) -> bytes:
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "AppendEntriesReply":
        return decode_message(cls, data)


@dataclass
class RequestVoteArgs(WireMessage):
    """Vote request sent by a candidate."""

    term: int = wire_field(1, INT32)
    candidate_id: int = wire_field(2, INT32)
    last_log_index: int = wire_field(3, INT32)
    last_log_term: int = wire_field(4, INT32)

    def to_bytes(self) -> bytes:
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "RequestVoteArgs":
        return decode_message(cls, data)


@dataclass
class RequestVoteReply(WireMessage):
    """Answer to ``RequestVoteArgs``."""

    term: int = wire_field(1, INT32)
    vote_granted: bool = wire_field(2, BOOL, False)
    vote_state: int = wire_field(3, INT32)

    def to_bytes(self) -> bytes:
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "RequestVoteReply":
        return decode_message(cls, data)


@dataclass
class InstallSnapshotRequest(WireMessage):
    """Snapshot sent by the leader to a follower that lags behind."""

    leader_id: int = wire_field(1, INT32)
    term: int = wire_field(2, INT32)
    last_snapshot_include_index: int = wire_field(3, INT32)
    last_snapshot_include_term: int = wire_field(4, INT32)
    data: bytes = wire_field(5, BYTES, b"")

    def to_bytes(self) -> bytes:
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "InstallSnapshotRequest":
        return decode_message(cls, data)


@dataclass
class InstallSnapshotResponse(WireMessage):
    """Answer to ``InstallSnapshotRequest``."""

    term: int = wire_field(1, INT32)

    def to_bytes(self) -> bytes:
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "InstallSnapshotResponse":
        return decode_message(cls, data)


@dataclass
class ApplyMsg:
    """A committed command or an installed snapshot handed to the service."""

    command_valid: bool = False
    command: str = ""
    command_index: int = -1
    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = -1
    snapshot_index: int = -1