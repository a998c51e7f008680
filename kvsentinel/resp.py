"""Encoding of RESP replies and parsing of RESP commands."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, BinaryIO

CRLF = b"\r\n"


class RespError(Exception):
    """Raised when a command on the wire does not follow the protocol."""


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8", "surrogateescape")


def _to_text(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def encode_simple_string(value: str) -> bytes:
    """A simple-string reply: +value."""
    return b"+" + _to_bytes(value) + CRLF


def encode_error(message: str) -> bytes:
    """An error reply: -message."""
    return b"-" + _to_bytes(message) + CRLF


def encode_integer(value: int) -> bytes:
    """An integer reply: :value."""
    return f":{int(value)}".encode("ascii") + CRLF


def encode_bulk_string(value: str | bytes) -> bytes:
    """A bulk-string reply, length-prefixed in bytes."""
    raw = _to_bytes(value)
    return f"${len(raw)}".encode("ascii") + CRLF + raw + CRLF


def encode_null_bulk_string() -> bytes:
    """The null bulk string."""
    return b"$-1" + CRLF


def encode_nil_array() -> bytes:
    """The null array."""
    return b"*-1" + CRLF


def encode_raw_array(items: Sequence[bytes]) -> bytes:
    """An array whose elements are already encoded replies."""
    return f"*{len(items)}".encode("ascii") + CRLF + b"".join(items)


def encode_array(items: Sequence[str | bytes]) -> bytes:
    """An array of bulk strings."""
    return encode_raw_array([encode_bulk_string(item) for item in items])


def _encode_value(value: Any) -> bytes:
    if value is None:
        return encode_null_bulk_string()
    if isinstance(value, bool):
        return encode_integer(1 if value else 0)
    if isinstance(value, int):
        return encode_integer(value)
    if isinstance(value, (str, bytes)):
        return encode_bulk_string(value)
    if isinstance(value, (list, tuple)):
        return encode_mixed_array(value)
    return encode_bulk_string(str(value))


def encode_mixed_array(items: Iterable[Any]) -> bytes:
    """An array of values of mixed kinds.

    Strings become bulk strings, integers and booleans integers, None the null
    bulk string, and lists or tuples nested arrays; anything else is sent as
    the bulk string of its text.
    """
    return encode_raw_array([_encode_value(item) for item in items])


def _read_line(stream: BinaryIO) -> bytes | None:
    line = stream.readline()
    if not line:
        return None
    if not line.endswith(b"\n"):
        raise RespError("unexpected end of stream inside a line")
    return line.rstrip(b"\r\n")


def _parse_int(raw: bytes, what: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise RespError(f"invalid {what}: {raw!r}") from None


def parse_command(stream: BinaryIO) -> list[str]:
    """Read one command from a binary stream.

    Accepts a RESP array of bulk strings or an inline command. Raises EOFError
    when the stream ends before a command starts, and RespError when the input
    is malformed.
    """
    while True:
        line = _read_line(stream)
        if line is None:
            raise EOFError("end of stream")
        if line.strip():
            break

    if not line.startswith(b"*"):
        return [_to_text(part) for part in line.split()]

    count = _parse_int(line[1:], "array length")
    if count <= 0:
        return []

    args = []
    for _ in range(count):
        header = _read_line(stream)
        if header is None:
            raise RespError("unexpected end of stream in array")
        if not header.startswith(b"$"):
            raise RespError(f"expected bulk string, got {header!r}")
        size = _parse_int(header[1:], "bulk length")
        if size < 0:
            raise RespError(f"invalid bulk length: {size}")
        payload = stream.read(size + 2)
        if payload is None or len(payload) < size + 2:
            raise RespError("unexpected end of stream in bulk string")
        if payload[size:] != CRLF:
            raise RespError("bulk string not terminated by CRLF")
        args.append(_to_text(payload[:size]))
    return args