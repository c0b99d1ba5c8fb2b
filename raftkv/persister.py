"""File-backed storage for a Raft node's state and its snapshot."""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Union

BytesLike = Union[bytes, bytearray, memoryview]


class Persister:
    """Keeps the Raft state and snapshot of node ``me`` in two files.

    The files are ``raftstatePersist<me>.txt`` and ``snapshotPersist<me>.txt``
    inside ``directory``; both are emptied when the persister is created.
    """

    def __init__(self, me: int, directory: Union[str, os.PathLike[str]] = ".") -> None:
        base = Path(directory)
        self.raft_state_path = base / f"raftstatePersist{me}.txt"
        self.snapshot_path = base / f"snapshotPersist{me}.txt"
        self._lock = threading.Lock()
        self._raft_state_size = 0
        self._closed = False
        self.raft_state_path.write_bytes(b"")
        self.snapshot_path.write_bytes(b"")

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError("persister is closed")

    @staticmethod
    def _read(path: Path) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return b""

    def save(self, raft_state: BytesLike, snapshot: BytesLike) -> None:
        """Replace both the Raft state and the snapshot.

        The cached Raft state size is reset to zero, not set to the new size.
        """
        with self._lock:
            self._check_open()
            self._raft_state_size = 0
            self.raft_state_path.write_bytes(bytes(raft_state))
            self.snapshot_path.write_bytes(bytes(snapshot))

    def read_snapshot(self) -> bytes:
        """Return the stored snapshot, or ``b""`` if there is none."""
        with self._lock:
            self._check_open()
            return self._read(self.snapshot_path)

    def save_raft_state(self, data: BytesLike) -> None:
        """Replace the Raft state, leaving the snapshot untouched."""
        payload = bytes(data)
        with self._lock:
            self._check_open()
            self.raft_state_path.write_bytes(payload)
            self._raft_state_size = len(payload)

    def raft_state_size(self) -> int:
        """Size in bytes of the last state written by ``save_raft_state``."""
        with self._lock:
            return self._raft_state_size

    def read_raft_state(self) -> bytes:
        """Return the stored Raft state, or ``b""`` if there is none."""
        with self._lock:
            self._check_open()
            return self._read(self.raft_state_path)

    def close(self) -> None:
        """Stop accepting reads and writes."""
        with self._lock:
            self._closed = True

    def __enter__(self) -> "Persister":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()