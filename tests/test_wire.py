import pytest

from raftkv.wire import (
    LENGTH_DELIMITED,
    VARINT,
    RpcHeader,
    WireError,
    decode_fields,
    decode_varint,
    encode_fields,
    encode_varint,
)


def test_varint_known_encodings():
    assert encode_varint(0) == b"\x00"
    assert encode_varint(300) == b"\xac\x02"
    assert encode_varint(-1) == b"\xff" * 9 + b"\x01"


@pytest.mark.parametrize("value", [0, 1, 127, 128, 300, 2**31, 2**64 - 1])
def test_varint_round_trip(value):
    encoded = encode_varint(value)
    assert decode_varint(encoded, 0) == (value, len(encoded))


def test_negative_varint_decodes_as_twos_complement():
    value, pos = decode_varint(encode_varint(-100), 0)
    assert value == 2**64 - 100
    assert pos == 10


def test_varint_out_of_range():
    with pytest.raises(ValueError):
        encode_varint(2**64)


def test_truncated_varint():
    with pytest.raises(WireError):
        decode_varint(b"\x80\x80", 0)


def test_decode_varint_at_offset():
    data = b"\x01" + encode_varint(300)
    assert decode_varint(data, 1) == (300, 3)


def test_fields_round_trip():
    data = encode_fields([(1, 7), (2, "key"), (3, b"\x00\x01"), (4, True)])
    assert decode_fields(data) == [
        (1, VARINT, 7),
        (2, LENGTH_DELIMITED, b"key"),
        (3, LENGTH_DELIMITED, b"\x00\x01"),
        (4, VARINT, 1),
    ]


def test_encode_fields_rejects_unknown_type():
    with pytest.raises(TypeError):
        encode_fields([(1, 1.5)])


def test_decode_fields_truncated_payload():
    with pytest.raises(WireError):
        decode_fields(b"\x0a\x05ab")


def test_header_wire_bytes():
    header = RpcHeader("raftRpc", "AppendEntries", 5)
    assert header.to_bytes() == b"\x0a\x07raftRpc\x12\x0dAppendEntries\x18\x05"


def test_default_header_is_empty():
    assert RpcHeader().to_bytes() == b""
    assert RpcHeader.from_bytes(b"") == RpcHeader()


def test_header_round_trip():
    header = RpcHeader("kvServerRpc", "PutAppend", 1234567)
    assert RpcHeader.from_bytes(header.to_bytes()) == header


def test_header_skips_unknown_fields():
    header = RpcHeader("svc", "m", 3)
    data = header.to_bytes() + encode_fields([(9, "extra"), (10, 42)])
    assert RpcHeader.from_bytes(data) == header


def test_header_rejects_bad_args_size():
    with pytest.raises(ValueError):
        RpcHeader("svc", "m", -1).to_bytes()