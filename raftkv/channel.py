"""Client side of the RPC transport: frames calls and sends them over TCP."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Any, Callable, Optional, TypeVar

from .controller import RpcController
from .wire import RpcHeader, encode_varint

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_request(service_name: str, method_name: str, args: bytes) -> bytes:
    """Frame a call as ``varint(len(header)) + header + args``."""
    header = RpcHeader(service_name, method_name, len(args)).to_bytes()
    return encode_varint(len(header)) + header + bytes(args)


def _errno_text(exc: OSError) -> str:
    return str(exc.errno) if exc.errno is not None else "0"


class RpcChannel:
    """A long-lived TCP connection to one RPC server.

    A lost connection is re-established on the next call; if that fails the
    call is marked failed on its controller.
    """

    recv_size = 1024

    def __init__(self, ip: str, port: int, connect_now: bool = True) -> None:
        self.ip = ip
        self.port = port
        self._sock: Optional[socket.socket] = None
        self._lock = threading.Lock()
        if not connect_now:
            return
        error = self._connect()
        tries = 3
        while error is not None and tries:
            logger.warning("%s", error)
            tries -= 1
            error = self._connect()

    @property
    def connected(self) -> bool:
        """Whether a connection is currently open."""
        return self._sock is not None

    def _connect(self) -> Optional[str]:
        """Open a new connection; return an error message, or None on success."""
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        except OSError as exc:
            self._sock = None
            return f"create socket error! errno:{_errno_text(exc)}"
        try:
            sock.connect((self.ip, self.port))
        except OSError as exc:
            sock.close()
            self._sock = None
            return f"connect fail! errno:{_errno_text(exc)}"
        self._sock = sock
        return None

    def _drop(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            finally:
                self._sock = None

    def call_method(
        self,
        service_name: str,
        method_name: str,
        request: Any,
        response_type: Callable[..., T] | Any,
        controller: RpcController,
    ) -> Optional[T]:
        """Send ``request`` and parse the reply with ``response_type.from_bytes``.

        Returns the parsed reply, or None after recording the failure on
        ``controller``.
        """
        with self._lock:
            if self._sock is None:
                error = self._connect()
                if error is not None:
                    logger.debug("reconnect to %s:%s failed", self.ip, self.port)
                    controller.set_failed(error)
                    return None
                logger.debug("connected to %s:%s", self.ip, self.port)

            try:
                args = request.to_bytes()
            except (ValueError, TypeError, OverflowError):
                controller.set_failed("serialize request error!")
                return None

            try:
                payload = build_request(service_name, method_name, args)
            except (ValueError, TypeError):
                controller.set_failed("serialize rpc header error!")
                return None

            while True:
                assert self._sock is not None
                try:
                    self._sock.sendall(payload)
                    break
                except OSError:
                    logger.warning("retrying connection to %s:%s", self.ip, self.port)
                    self._drop()
                    error = self._connect()
                    if error is not None:
                        controller.set_failed(error)
                        return None

            try:
                data = self._sock.recv(self.recv_size)
            except OSError as exc:
                self._drop()
                controller.set_failed(f"recv error! errno:{_errno_text(exc)}")
                return None

            try:
                return response_type.from_bytes(data)
            except (ValueError, TypeError):
                controller.set_failed(f"parse error! response_str:{data!r}")
                return None

    def close(self) -> None:
        """Close the connection; a later call reconnects."""
        with self._lock:
            self._drop()

    def __enter__(self) -> "RpcChannel":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()