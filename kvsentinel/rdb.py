"""Snapshot files in the RDB format: writing, reading and checksumming."""

from __future__ import annotations

import enum
import os
import struct
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

RDB_VERSION = 9
RDB_MAGIC = b"REDIS"

OP_EOF = 0xFF
OP_SELECT_DB = 0xFE
OP_EXPIRE_TIME = 0xFD
OP_EXPIRE_TIME_MS = 0xFC
OP_RESIZE_DB = 0xFB
OP_AUX = 0xFA

_CRC64_ECMA_POLY = 0xC96C5795D7870F42
_MASK64 = 0xFFFFFFFFFFFFFFFF
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def _make_table(poly: int) -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ poly if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _make_table(_CRC64_ECMA_POLY)


class RDBError(Exception):
    """Raised when a snapshot cannot be written or read."""


class ValueType(enum.IntEnum):
    """Value types and the type codes they carry in a snapshot."""

    STRING = 0
    LIST = 1
    SET = 2
    ZSET = 3
    HASH = 4
    BLOOM_FILTER = 5
    HYPERLOGLOG = 6
    LIST_QUICK = 14


@dataclass(frozen=True)
class ZSetMember:
    """A sorted-set member with its score."""

    member: str
    score: float


@dataclass
class StoredValue:
    """A value held by the store, as handed to the snapshot writer."""

    type: ValueType
    data: Any
    expires_at: datetime | None = None


@dataclass
class LoadCommand:
    """One key restored from a snapshot."""

    key: str
    value: Any
    expiration: datetime | None
    type: ValueType


def crc64(data: bytes, crc: int = 0) -> int:
    """CRC-64 (ECMA polynomial, reflected) of data, continuing from crc."""
    crc ^= _MASK64
    for byte in data:
        crc = _CRC_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ _MASK64


def encode_length(length: int) -> bytes:
    """Encode a length as 6-bit, 14-bit or 32-bit big-endian form."""
    if length < 0:
        raise RDBError(f"negative length: {length}")
    if length < 64:
        return bytes([length])
    if length < 16384:
        return bytes([0x40 | (length >> 8), length & 0xFF])
    if length > 0xFFFFFFFF:
        raise RDBError(f"length too large: {length}")
    return b"\x80" + struct.pack(">I", length)


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8", "surrogateescape")


def encode_string(value: str | bytes) -> bytes:
    """Encode a length-prefixed string."""
    raw = _to_bytes(value)
    return encode_length(len(raw)) + raw


def _to_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.astimezone(timezone.utc)
    return (moment - _EPOCH) // _ONE_MS


def _from_millis(millis: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=millis)


def _zset_members(data: Any) -> list[ZSetMember]:
    if isinstance(data, Mapping):
        return [ZSetMember(member, float(score)) for member, score in data.items()]
    return [m if isinstance(m, ZSetMember) else ZSetMember(*m) for m in data]


def _encode_body(key: str, value: StoredValue) -> bytes | None:
    kind = ValueType(value.type)
    data = value.data
    if kind == ValueType.STRING:
        if not isinstance(data, (str, bytes)):
            raise RDBError(f"invalid string value for key {key}")
        return bytes([ValueType.STRING]) + encode_string(key) + encode_string(data)
    if kind == ValueType.LIST:
        items = list(data)
        parts = [bytes([ValueType.LIST]), encode_string(key), encode_length(len(items))]
        parts.extend(encode_string(item) for item in items)
        return b"".join(parts)
    if kind == ValueType.HASH:
        if not isinstance(data, Mapping):
            raise RDBError(f"invalid hash value for key {key}")
        parts = [bytes([ValueType.HASH]), encode_string(key), encode_length(len(data))]
        for field, val in data.items():
            parts.append(encode_string(field))
            parts.append(encode_string(val))
        return b"".join(parts)
    if kind == ValueType.SET:
        members = list(data)
        parts = [bytes([ValueType.SET]), encode_string(key), encode_length(len(members))]
        parts.extend(encode_string(member) for member in members)
        return b"".join(parts)
    if kind == ValueType.ZSET:
        members = _zset_members(data)
        parts = [bytes([ValueType.ZSET]), encode_string(key), encode_length(len(members))]
        for entry in members:
            parts.append(encode_string(entry.member))
            parts.append(struct.pack("<d", entry.score))
        return b"".join(parts)
    # Bloom filters and HyperLogLogs have no snapshot form and are left out.
    return None


def _encode_entry(key: str, value: StoredValue, now: datetime) -> bytes:
    body = _encode_body(key, value)
    if body is None:
        return b""
    prefix = b""
    if value.expires_at is not None:
        millis = _to_millis(value.expires_at)
        if millis > _to_millis(now):
            prefix = bytes([OP_EXPIRE_TIME_MS]) + struct.pack("<q", millis)
    return prefix + body


def dumps(snapshot: Mapping[str, StoredValue]) -> bytes:
    """Serialise a snapshot to the bytes of an RDB file, checksum included."""
    now = datetime.now(timezone.utc)
    parts = [
        RDB_MAGIC,
        f"{RDB_VERSION:04d}".encode("ascii"),
        bytes([OP_AUX]),
        encode_string("redis-ver"),
        encode_string("7.0.0"),
        bytes([OP_AUX]),
        encode_string("ctime"),
        encode_string(str(int(time.time()))),
        bytes([OP_SELECT_DB, 0]),
        bytes([OP_RESIZE_DB]),
        encode_length(len(snapshot)),
        encode_length(0),
    ]
    parts.extend(_encode_entry(key, value, now) for key, value in snapshot.items())
    parts.append(bytes([OP_EOF]))
    body = b"".join(parts)
    return body + struct.pack("<Q", crc64(body))


class _Cursor:
    """Sequential reader over snapshot bytes."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def take(self, count: int, what: str) -> bytes:
        end = self.pos + count
        if end > len(self.data):
            raise RDBError(f"failed to read {what}: unexpected EOF")
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def byte(self, what: str) -> int:
        return self.take(1, what)[0]

    def length(self, what: str) -> int:
        first = self.byte(what)
        encoding = (first & 0xC0) >> 6
        if encoding == 0:
            return first & 0x3F
        if encoding == 1:
            return ((first & 0x3F) << 8) | self.byte(what)
        if encoding == 2:
            return struct.unpack(">I", self.take(4, what))[0]
        raise RDBError(f"unsupported length encoding: {encoding}")

    def string(self, what: str) -> str:
        size = self.length(f"{what} length")
        return self.take(size, f"{what} data").decode("utf-8", "surrogateescape")

    def score(self, what: str) -> float:
        return struct.unpack("<d", self.take(8, what))[0]


def _read_value(cursor: _Cursor, kind: ValueType) -> Any:
    if kind == ValueType.STRING:
        return cursor.string("string")
    if kind == ValueType.LIST:
        count = cursor.length("list length")
        return [cursor.string(f"list element {i}") for i in range(count)]
    if kind == ValueType.HASH:
        count = cursor.length("hash length")
        result: dict[str, str] = {}
        for i in range(count):
            field = cursor.string(f"hash field {i}")
            result[field] = cursor.string(f"hash value {i}")
        return result
    if kind == ValueType.SET:
        count = cursor.length("set length")
        return {cursor.string(f"set member {i}") for i in range(count)}
    count = cursor.length("zset length")
    members = []
    for i in range(count):
        member = cursor.string(f"zset member {i}")
        members.append(ZSetMember(member, cursor.score(f"zset score {i}")))
    return members


_LOADABLE = {ValueType.STRING, ValueType.LIST, ValueType.HASH, ValueType.SET, ValueType.ZSET}


def loads(data: bytes) -> list[LoadCommand]:
    """Parse the bytes of an RDB file into the keys it restores."""
    cursor = _Cursor(data)
    if cursor.take(5, "magic string") != RDB_MAGIC:
        raise RDBError("invalid RDB file: wrong magic string")
    cursor.take(4, "version")

    commands: list[LoadCommand] = []
    expiration: datetime | None = None
    while True:
        if cursor.pos >= len(data):
            raise RDBError("unexpected EOF")
        opcode = cursor.byte("type byte")

        if opcode == OP_EXPIRE_TIME:
            seconds = struct.unpack("<I", cursor.take(4, "expiration"))[0]
            expiration = _EPOCH + timedelta(seconds=seconds)
        elif opcode == OP_EXPIRE_TIME_MS:
            millis = struct.unpack("<Q", cursor.take(8, "expiration ms"))[0]
            expiration = _from_millis(millis)
        elif opcode == OP_AUX:
            cursor.string("aux key")
            cursor.string("aux value")
        elif opcode == OP_SELECT_DB:
            cursor.length("database number")
        elif opcode == OP_RESIZE_DB:
            cursor.length("db size")
            cursor.length("expires size")
        elif opcode == OP_EOF:
            body_end = cursor.pos
            stored = struct.unpack("<Q", cursor.take(8, "checksum"))[0]
            calculated = crc64(data[:body_end])
            if calculated != stored:
                raise RDBError(f"checksum mismatch: expected {stored}, got {calculated}")
            return commands
        elif opcode in _LOADABLE:
            kind = ValueType(opcode)
            key = cursor.string("key")
            try:
                value = _read_value(cursor, kind)
            except RDBError as exc:
                raise RDBError(f"failed to read value for key {key}: {exc}") from exc
            commands.append(LoadCommand(key, value, expiration, kind))
            expiration = None
        elif opcode == ValueType.BLOOM_FILTER:
            raise RDBError("BloomFilter type not supported in RDB restore")
        elif opcode == ValueType.HYPERLOGLOG:
            raise RDBError("HyperLogLog type not supported in RDB restore")
        else:
            raise RDBError(f"unknown type byte: {opcode}")


class RDBWriter:
    """Writes snapshots to a file, replacing it atomically."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = os.fspath(path)

    def save(self, snapshot: Mapping[str, StoredValue]) -> None:
        """Write the snapshot to a temporary file, sync it, then rename it into place."""
        temp_path = self.path + ".tmp"
        payload = dumps(snapshot)
        try:
            with open(temp_path, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            try:
                os.remove(temp_path)
            except OSError:
                pass
            raise RDBError(f"failed to write RDB: {exc}") from exc
        try:
            os.replace(temp_path, self.path)
        except OSError as exc:
            raise RDBError(f"failed to replace RDB file: {exc}") from exc


class RDBReader:
    """Reads a snapshot file."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = os.fspath(path)
        try:
            self._file = open(self.path, "rb")
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise RDBError(f"failed to open RDB file: {exc}") from exc

    def load(self) -> list[LoadCommand]:
        """Parse the whole file into the keys it restores."""
        return loads(self._file.read())

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> RDBReader:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def open_reader(path: str | os.PathLike[str]) -> RDBReader | None:
    """Open a snapshot for reading, or return None when the file does not exist."""
    try:
        return RDBReader(path)
    except FileNotFoundError:
        return None