"""The in-memory Raft log with its snapshot point, and the persisted node state."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

from .messages import (
    INT32,
    MESSAGES,
    LogEntry,
    WireMessage,
    decode_message,
    encode_message,
    wire_field,
)


class RaftInvariantError(RuntimeError):
    """Raised when a Raft safety invariant is violated."""


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise RaftInvariantError(message)


class RaftLog:
    """Log entries following the snapshot point.

    Log indexes are logical; ``entries[0]`` holds index ``snapshot_index + 1``.
    """

    def __init__(
        self, entries: Iterable[LogEntry] = (), snapshot_index: int = 0, snapshot_term: int = 0
    ) -> None:
        self.entries: list[LogEntry] = list(entries)
        self.snapshot_index = snapshot_index
        self.snapshot_term = snapshot_term

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self.entries)

    def last_index_and_term(self) -> tuple[int, int]:
        """Index and term of the newest entry, or of the snapshot point."""
        if not self.entries:
            return self.snapshot_index, self.snapshot_term
        last = self.entries[-1]
        return last.log_index, last.log_term

    def last_index(self) -> int:
        return self.last_index_and_term()[0]

    def last_term(self) -> int:
        return self.last_index_and_term()[1]

    def term_at(self, index: int) -> int:
        """Term of the entry at ``index``; the snapshot point is allowed."""
        _require(
            index >= self.snapshot_index,
            f"index {index} < snapshot index {self.snapshot_index}",
        )
        last = self.last_index()
        _require(index <= last, f"index {index} > last log index {last}")
        if index == self.snapshot_index:
            return self.snapshot_term
        return self.entries[self.slice_index(index)].log_term

    def slice_index(self, index: int) -> int:
        """Position in ``entries`` of the entry with logical ``index``."""
        _require(
            index > self.snapshot_index,
            f"index {index} <= snapshot index {self.snapshot_index}",
        )
        last = self.last_index()
        _require(index <= last, f"index {index} > last log index {last}")
        return index - self.snapshot_index - 1

    def entry_at(self, index: int) -> LogEntry:
        return self.entries[self.slice_index(index)]

    def matches(self, index: int, term: int) -> bool:
        """Whether the entry at ``index`` has ``term``."""
        last = self.last_index()
        _require(
            self.snapshot_index <= index <= last,
            f"index {index} outside [{self.snapshot_index}, {last}]",
        )
        return term == self.term_at(index)

    def up_to_date(self, index: int, term: int) -> bool:
        """Whether a log ending at ``(index, term)`` is at least as new as this one."""
        last_index, last_term = self.last_index_and_term()
        return term > last_term or (term == last_term and index >= last_index)

    def append(self, entry: LogEntry) -> None:
        self.entries.append(entry)

    def replace(self, entry: LogEntry) -> None:
        """Overwrite the stored entry that has the same index as ``entry``."""
        self.entries[self.slice_index(entry.log_index)] = entry

    def entries_after(self, index: int) -> list[LogEntry]:
        """Entries following ``index``, which is the snapshot point or a stored index."""
        if index == self.snapshot_index:
            return list(self.entries)
        return self.entries[self.slice_index(index) + 1 :]

    def compact(self, index: int) -> None:
        """Drop entries up to and including ``index``, making it the snapshot point."""
        last = self.last_index()
        term = self.entry_at(index).log_term
        self.entries = self.entries[self.slice_index(index) + 1 :]
        self.snapshot_index = index
        self.snapshot_term = term
        _require(
            len(self.entries) + self.snapshot_index == last,
            f"{len(self.entries)} entries + snapshot index {self.snapshot_index} != {last}",
        )

    def install_snapshot(self, index: int, term: int) -> None:
        """Adopt a snapshot ending at ``(index, term)`` from the leader."""
        if self.last_index() > index:
            del self.entries[: self.slice_index(index) + 1]
        else:
            self.entries.clear()
        self.snapshot_index = index
        self.snapshot_term = term


@dataclass
class PersistentState(WireMessage):
    """The part of a Raft node's state that survives a restart."""

    current_term: int = wire_field(1, INT32)
    voted_for: int = wire_field(2, INT32, -1)
    last_snapshot_include_index: int = wire_field(3, INT32)
    last_snapshot_include_term: int = wire_field(4, INT32)
    logs: list[LogEntry] = wire_field(5, MESSAGES, message_type=LogEntry)

    def to_bytes(self) -> bytes:
        """Serialise the state."""
        return encode_message(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "PersistentState":
        """Parse state written by ``to_bytes``."""
        return decode_message(cls, data)