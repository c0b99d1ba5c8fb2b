"""Client for the Raft RPCs of one remote node."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .channel import RpcChannel
from .controller import RpcController
from .messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    RequestVoteArgs,
    RequestVoteReply,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "raftRpc"


class RaftPeer:
    """Sends AppendEntries, InstallSnapshot and RequestVote calls to one node.

    Each call returns the reply, or None when the call failed; the reason is
    kept in ``last_error``.
    """

    def __init__(self, ip: str, port: int, connect_now: bool = True) -> None:
        self._channel = RpcChannel(ip, port, connect_now)
        self.last_error = ""

    def _call(self, method: str, args: Any, reply_type: Any) -> Optional[Any]:
        controller = RpcController()
        reply = self._channel.call_method(SERVICE_NAME, method, args, reply_type, controller)
        if controller.failed:
            self.last_error = controller.error_text
            logger.debug("%s to %s:%s failed: %s", method, self._channel.ip, self._channel.port, self.last_error)
            return None
        self.last_error = ""
        return reply

    def append_entries(self, args: AppendEntriesArgs) -> Optional[AppendEntriesReply]:
        return self._call("AppendEntries", args, AppendEntriesReply)

    def install_snapshot(self, args: InstallSnapshotRequest) -> Optional[InstallSnapshotResponse]:
        return self._call("InstallSnapshot", args, InstallSnapshotResponse)

    def request_vote(self, args: RequestVoteArgs) -> Optional[RequestVoteReply]:
        return self._call("RequestVote", args, RequestVoteReply)

    def close(self) -> None:
        """Close the connection; a later call reconnects."""
        self._channel.close()

    def __enter__(self) -> "RaftPeer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()