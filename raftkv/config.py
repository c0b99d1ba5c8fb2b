"""Reading ``key=value`` configuration files used to describe cluster nodes."""

from __future__ import annotations

import os


def _trim(text: str) -> str:
    """Strip leading and trailing spaces (only the space character)."""
    return text.strip(" ")


class RpcConfig:
    """A flat ``key=value`` configuration store.

    Lines starting with ``#`` are comments, lines without ``=`` are ignored,
    and when a key appears twice the first value is kept.
    """

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}

    def load_file(self, path: str | os.PathLike[str]) -> None:
        """Parse the file at ``path`` and add its entries.

        Raises ``FileNotFoundError`` when the file does not exist.
        """
        with open(path, encoding="utf-8") as handle:
            self.load_text(handle.read())

    def load_text(self, text: str) -> None:
        """Parse configuration text and add its entries."""
        for raw_line in text.split("\n"):
            line = _trim(raw_line)
            if not line or line.startswith("#"):
                continue
            key, sep, value = line.partition("=")
            if not sep:
                continue
            self._entries.setdefault(_trim(key), _trim(value))

    def get(self, key: str) -> str:
        """Return the value stored for ``key``, or an empty string."""
        return self._entries.get(key, "")

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)