import threading
from dataclasses import dataclass

import pytest

from raftkv.channel import RpcChannel, build_request
from raftkv.config import RpcConfig
from raftkv.controller import RpcController
from raftkv.provider import RpcMethod, RpcProvider, parse_request
from raftkv.wire import LENGTH_DELIMITED, RpcHeader, WireError, decode_fields, encode_fields


@dataclass
class Text:
    value: str = ""

    def to_bytes(self):
        return encode_fields([(1, self.value)])

    @classmethod
    def from_bytes(cls, data):
        msg = cls()
        for number, wire_type, value in decode_fields(data):
            if number == 1 and wire_type == LENGTH_DELIMITED:
                msg.value = value.decode("utf-8")
        return msg


class TextService:
    service_name = "textRpc"

    def rpc_methods(self):
        return [
            RpcMethod("Echo", Text, lambda req: Text(req.value)),
            RpcMethod("Upper", Text, lambda req: Text(req.value.upper())),
        ]


def _provider():
    provider = RpcProvider()
    provider.notify_service(TextService())
    return provider


def test_parse_request_round_trip():
    args = Text("abc").to_bytes()
    header, parsed = parse_request(build_request("textRpc", "Echo", args))
    assert header == RpcHeader("textRpc", "Echo", len(args))
    assert parsed == args


def test_parse_request_ignores_trailing_bytes():
    args = Text("abc").to_bytes()
    header, parsed = parse_request(build_request("textRpc", "Echo", args) + b"extra")
    assert parsed == args


def test_parse_request_truncated_args():
    frame = build_request("textRpc", "Echo", Text("abc").to_bytes())
    with pytest.raises(WireError):
        parse_request(frame[:-1])


def test_parse_request_truncated_header():
    frame = build_request("textRpc", "Echo", b"")
    with pytest.raises(WireError):
        parse_request(frame[:3])


def test_notify_service_registers_name():
    assert _provider().service_names == ["textRpc"]


def test_handle_message_dispatches_by_method():
    provider = _provider()
    frame = build_request("textRpc", "Upper", Text("mixed Case").to_bytes())
    reply = Text.from_bytes(provider.handle_message(frame))
    assert reply.value == "mixed Case".upper()
    echo = Text.from_bytes(provider.handle_message(build_request("textRpc", "Echo", Text("same").to_bytes())))
    assert echo.value == "same"


def test_handle_message_unknown_service():
    frame = build_request("missing", "Echo", Text("x").to_bytes())
    assert _provider().handle_message(frame) is None


def test_handle_message_unknown_method():
    frame = build_request("textRpc", "Nope", Text("x").to_bytes())
    assert _provider().handle_message(frame) is None


def test_handle_message_bad_arguments():
    frame = build_request("textRpc", "Echo", b"\xff")
    assert _provider().handle_message(frame) is None


def test_handle_message_truncated_frame():
    frame = build_request("textRpc", "Echo", Text("x").to_bytes())
    assert _provider().handle_message(frame[:-1]) is None


def test_run_serves_calls_and_writes_config(tmp_path):
    config_path = tmp_path / "nodes.conf"
    provider = _provider()
    thread = threading.Thread(
        target=provider.run, args=(3, 0, "127.0.0.1", str(config_path)), daemon=True
    )
    thread.start()
    assert provider.wait_until_serving(5) is True
    host, port = provider.server_address

    channel = RpcChannel(host, port, True)
    controller = RpcController()
    first = channel.call_method("textRpc", "Upper", Text("hello"), Text, controller)
    second = channel.call_method("textRpc", "Echo", Text("again"), Text, controller)
    channel.close()
    provider.shutdown()
    thread.join(5)

    assert controller.failed is False
    assert first.value == "hello".upper()
    assert second.value == "again"
    assert thread.is_alive() is False
    assert provider.server_address is None

    config = RpcConfig()
    config.load_file(config_path)
    assert config.get("node3ip") == "127.0.0.1"
    assert config.get("node3port") == str(port)


def test_run_appends_to_existing_config(tmp_path):
    config_path = tmp_path / "nodes.conf"
    config_path.write_text("node0ip=127.0.0.1\nnode0port=1\n", encoding="utf-8")
    provider = _provider()
    thread = threading.Thread(
        target=provider.run, args=(1, 0, "127.0.0.1", str(config_path)), daemon=True
    )
    thread.start()
    assert provider.wait_until_serving(5) is True
    provider.shutdown()
    thread.join(5)

    config = RpcConfig()
    config.load_file(config_path)
    assert config.get("node0port") == "1"
    assert config.get("node1ip") == "127.0.0.1"