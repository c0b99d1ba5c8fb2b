"""Protocol-buffer wire encoding and the RPC call header."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

VARINT = 0
FIXED64 = 1
LENGTH_DELIMITED = 2
START_GROUP = 3
END_GROUP = 4
FIXED32 = 5

_MASK64 = (1 << 64) - 1
_MASK32 = (1 << 32) - 1

FieldValue = Union[int, bool, bytes, bytearray, str]


class WireError(ValueError):
    """Raised when encoded data is malformed."""


def encode_varint(value: int) -> bytes:
    """Encode an integer as a base-128 varint.

    Negative values are written as 64-bit two's complement, as protobuf
    does for signed integer fields.
    """
    if value < 0:
        if value < -(1 << 63):
            raise ValueError(f"varint out of range: {value}")
        value &= _MASK64
    elif value > _MASK64:
        raise ValueError(f"varint out of range: {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes, pos: int = 0) -> tuple[int, int]:
    """Read a varint starting at ``pos``; return ``(value, next_pos)``."""
    result = 0
    for shift in range(0, 70, 7):
        if pos >= len(data):
            raise WireError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _MASK64, pos
    raise WireError("varint is longer than ten bytes")


def encode_fields(fields: Iterable[tuple[int, FieldValue]]) -> bytes:
    """Encode ``(field_number, value)`` pairs in order.

    Integers and booleans become varints; ``bytes`` and ``str`` become
    length-delimited fields. Every pair is written, default or not.
    """
    out = bytearray()
    for number, value in fields:
        if number < 1:
            raise ValueError(f"invalid field number: {number}")
        if isinstance(value, (bool, int)):
            out += encode_varint(number << 3 | VARINT)
            out += encode_varint(int(value))
        elif isinstance(value, (bytes, bytearray, str)):
            payload = value.encode("utf-8") if isinstance(value, str) else bytes(value)
            out += encode_varint(number << 3 | LENGTH_DELIMITED)
            out += encode_varint(len(payload))
            out += payload
        else:
            raise TypeError(f"cannot encode field {number} of type {type(value).__name__}")
    return bytes(out)


def _take(data: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise WireError("truncated field")
    return bytes(data[pos:end]), end


def decode_fields(data: bytes) -> list[tuple[int, int, int | bytes]]:
    """Decode a message into ``(field_number, wire_type, value)`` triples.

    Varint and fixed-width values come back as unsigned integers,
    length-delimited values as ``bytes``.
    """
    fields: list[tuple[int, int, int | bytes]] = []
    pos = 0
    while pos < len(data):
        tag, pos = decode_varint(data, pos)
        number, wire_type = tag >> 3, tag & 7
        if number == 0:
            raise WireError("invalid field number 0")
        value: int | bytes
        if wire_type == VARINT:
            value, pos = decode_varint(data, pos)
        elif wire_type == FIXED64:
            raw, pos = _take(data, pos, 8)
            value = int.from_bytes(raw, "little")
        elif wire_type == LENGTH_DELIMITED:
            length, pos = decode_varint(data, pos)
            value, pos = _take(data, pos, length)
        elif wire_type == FIXED32:
            raw, pos = _take(data, pos, 4)
            value = int.from_bytes(raw, "little")
        else:
            raise WireError(f"unsupported wire type {wire_type}")
        fields.append((number, wire_type, value))
    return fields


def _text(value: bytes) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WireError("field is not valid UTF-8") from exc


@dataclass
class RpcHeader:
    """Names the service and method being called and the size of its arguments."""

    service_name: str = ""
    method_name: str = ""
    args_size: int = 0

    def to_bytes(self) -> bytes:
        """Serialise the header, leaving out fields at their default value."""
        if not 0 <= self.args_size <= _MASK32:
            raise ValueError(f"args_size out of range: {self.args_size}")
        fields: list[tuple[int, FieldValue]] = []
        if self.service_name:
            fields.append((1, self.service_name))
        if self.method_name:
            fields.append((2, self.method_name))
        if self.args_size:
            fields.append((3, self.args_size))
        return encode_fields(fields)

    @classmethod
    def from_bytes(cls, data: bytes) -> "RpcHeader":
        """Parse a header; unknown fields are skipped."""
        header = cls()
        for number, wire_type, value in decode_fields(data):
            if number == 1 and wire_type == LENGTH_DELIMITED:
                header.service_name = _text(value)  # type: ignore[arg-type]
            elif number == 2 and wire_type == LENGTH_DELIMITED:
                header.method_name = _text(value)  # type: ignore[arg-type]
            elif number == 3 and wire_type == VARINT:
                header.args_size = int(value) & _MASK32  # type: ignore[arg-type]
        return header