"""Server side of the RPC transport: dispatches framed calls to services."""

from __future__ import annotations

import logging
import os
import socket
import socketserver
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .wire import RpcHeader, WireError, decode_varint

logger = logging.getLogger(__name__)


@dataclass
class RpcMethod:
    """One callable method of a service.

    ``request_type.from_bytes`` parses the arguments, ``handler`` maps the
    request to a response that has ``to_bytes``.
    """

    name: str
    request_type: Any
    handler: Callable[[Any], Any]


def parse_request(data: bytes) -> tuple[RpcHeader, bytes]:
    """Split a framed call into its header and argument bytes.

    Bytes after the arguments are ignored. Raises ``WireError`` when the
    frame is truncated or malformed.
    """
    header_size, pos = decode_varint(data, 0)
    end = pos + header_size
    if end > len(data):
        raise WireError("truncated rpc header")
    header = RpcHeader.from_bytes(data[pos:end])
    args_end = end + header.args_size
    if args_end > len(data):
        raise WireError("truncated rpc arguments")
    return header, bytes(data[end:args_end])


def _frame_length(buffer: bytes) -> Optional[int]:
    """Total length of the first complete frame in ``buffer``, or None if incomplete."""
    if not buffer:
        return None
    if len(buffer) < 10 and all(byte & 0x80 for byte in buffer):
        return None
    header_size, pos = decode_varint(buffer, 0)
    end = pos + header_size
    if len(buffer) < end:
        return None
    header = RpcHeader.from_bytes(buffer[pos:end])
    total = end + header.args_size
    return total if len(buffer) >= total else None


def _local_ip() -> str:
    addresses = socket.gethostbyname_ex(socket.gethostname())[2]
    return addresses[-1]


class _Handler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        provider: RpcProvider = self.server.provider  # type: ignore[attr-defined]
        buffer = b""
        while True:
            try:
                chunk = self.request.recv(65536)
            except OSError:
                return
            if not chunk:
                return
            buffer += chunk
            while True:
                try:
                    end = _frame_length(buffer)
                except WireError:
                    logger.warning("dropping malformed rpc data")
                    buffer = b""
                    break
                if end is None:
                    break
                frame, buffer = buffer[:end], buffer[end:]
                try:
                    reply = provider.handle_message(frame)
                except Exception:
                    logger.exception("rpc handler failed")
                    continue
                if reply is not None:
                    try:
                        self.request.sendall(reply)
                    except OSError:
                        return


class _Server(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class RpcProvider:
    """Publishes services and serves calls to them over TCP."""

    def __init__(self) -> None:
        self._services: dict[str, dict[str, RpcMethod]] = {}
        self._server: Optional[_Server] = None
        self._ready = threading.Event()
        self._lock = threading.Lock()

    def notify_service(self, service: Any) -> None:
        """Register ``service``.

        The service is named by its ``service_name`` attribute (falling back
        to its class name) and lists its methods through ``rpc_methods()``.
        """
        name = getattr(service, "service_name", type(service).__name__)
        logger.info("service_name:%s", name)
        methods = {method.name: method for method in service.rpc_methods()}
        self._services.setdefault(name, methods)

    @property
    def service_names(self) -> list[str]:
        """Names of the registered services."""
        return list(self._services)

    def handle_message(self, data: bytes) -> Optional[bytes]:
        """Dispatch one framed call and return the serialised response.

        Returns None when the frame, service, method or arguments are invalid.
        """
        try:
            header, args = parse_request(data)
        except WireError:
            logger.warning("rpc header parse error: %r", data)
            return None

        methods = self._services.get(header.service_name)
        if methods is None:
            logger.warning(
                "service %s is not exist! known services: %s",
                header.service_name,
                " ".join(self._services),
            )
            return None
        method = methods.get(header.method_name)
        if method is None:
            logger.warning("%s:%s is not exist!", header.service_name, header.method_name)
            return None

        try:
            request = method.request_type.from_bytes(args)
        except (ValueError, TypeError):
            logger.warning("request parse error, content:%r", args)
            return None

        response = method.handler(request)
        try:
            return response.to_bytes()
        except (ValueError, TypeError, OverflowError):
            logger.error("serialize response error!")
            return None

    def run(
        self,
        node_index: int,
        port: int,
        host: Optional[str] = None,
        config_path: Union[str, os.PathLike[str]] = "test.conf",
    ) -> None:
        """Serve until ``shutdown`` is called.

        The address is appended to ``config_path`` as ``node<i>ip=`` and
        ``node<i>port=`` lines so other nodes can find this one.
        """
        ip = host or _local_ip()
        server = _Server((ip, port), _Handler)
        server.provider = self  # type: ignore[attr-defined]
        bound_port = server.server_address[1]
        node = f"node{node_index}"
        try:
            with open(config_path, "a", encoding="utf-8") as handle:
                handle.write(f"{node}ip={ip}\n")
                handle.write(f"{node}port={bound_port}\n")
        except OSError:
            server.server_close()
            raise
        with self._lock:
            self._server = server
        logger.info("RpcProvider start service at ip:%s port:%d", ip, bound_port)
        self._ready.set()
        try:
            server.serve_forever()
        finally:
            server.server_close()

    @property
    def server_address(self) -> Optional[tuple[str, int]]:
        """The bound address while serving, else None."""
        with self._lock:
            if self._server is None:
                return None
            host, port = self._server.server_address[:2]
            return str(host), int(port)

    def wait_until_serving(self, timeout: Optional[float] = None) -> bool:
        """Block until ``run`` has bound its socket; return whether it did."""
        return self._ready.wait(timeout)

    def shutdown(self) -> None:
        """Stop a running server."""
        with self._lock:
            server, self._server = self._server, None
        self._ready.clear()
        if server is not None:
            server.shutdown()