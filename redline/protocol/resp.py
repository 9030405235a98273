"""Recursive decoder for typed RESP responses.

Each response starts with a one-byte type prefix and is framed by CRLF:

    +OK\\r\\n                 simple string
    -ERR unknown\\r\\n        error (a value, not an exception)
    :42\\r\\n                 integer
    $5\\r\\nhello\\r\\n         bulk string ($-1 is null)
    *2\\r\\n:1\\r\\n+OK\\r\\n     array of responses (*-1 is null, *0 is empty)

``decode`` consumes exactly the bytes of one response; anything after it stays
buffered in the stream for the next call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Union

from redline.core.errors import ProtocolError
from redline.protocol.stream import BufferStream


DEFAULT_READ_TIMEOUT = 1.0
MAX_NESTING_DEPTH = 128
MAX_BULK_BYTES = 512 * 1024 * 1024
_INTEGER_RE = re.compile(rb"-?[0-9]+")


@dataclass(frozen=True, slots=True)
class SimpleString:
    value: str


@dataclass(frozen=True, slots=True)
class Error:
    message: str

    @property
    def kind(self) -> str:
        return self.message.split(" ", 1)[0] if self.message else ""


@dataclass(frozen=True, slots=True)
class Integer:
    value: int


@dataclass(frozen=True, slots=True)
class BulkString:
    value: bytes

    def text(self, encoding: str = "utf-8") -> str:
        return self.value.decode(encoding, errors="replace")


@dataclass(frozen=True, slots=True)
class Array:
    items: list[Response] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


@dataclass(frozen=True, slots=True)
class Null:
    kind: str = "bulk"


NULL_BULK = Null("bulk")
NULL_ARRAY = Null("array")

Response = Union[SimpleString, Error, Integer, BulkString, Array, Null]


def is_null(response: object) -> bool:
    return isinstance(response, Null)


def decode(stream, timeout: float | None = DEFAULT_READ_TIMEOUT) -> Response:
    """Read one complete response from ``stream``.

    Raises ``DecodeTimeout`` when no bytes arrive within ``timeout`` seconds
    of any single wait, ``ProtocolError`` on malformed framing and
    ``ConnectionClosed`` when the peer goes away mid-response.
    """
    stream.settimeout(timeout)
    return _decode(stream, depth=0)


def loads(data: bytes) -> Response:
    return decode(BufferStream(data), timeout=None)


def _decode(stream, depth: int) -> Response:
    line = stream.read_line()
    if not line:
        raise ProtocolError("empty response line")
    prefix, rest = line[:1], line[1:]

    if prefix == b"+":
        return SimpleString(_text(rest))
    if prefix == b"-":
        return Error(_text(rest))
    if prefix == b":":
        return Integer(_parse_int(rest, "integer"))
    if prefix == b"$":
        length = _parse_int(rest, "bulk length")
        if length == -1:
            return NULL_BULK
        if length < -1 or length > MAX_BULK_BYTES:
            raise ProtocolError(f"invalid bulk length {length}")
        payload = stream.read_exact(length + 2)
        if payload[-2:] != b"\r\n":
            raise ProtocolError("bulk string is not terminated by CRLF")
        return BulkString(payload[:-2])
    if prefix == b"*":
        count = _parse_int(rest, "array length")
        if count == -1:
            return NULL_ARRAY
        if count < -1:
            raise ProtocolError(f"invalid array length {count}")
        if depth >= MAX_NESTING_DEPTH:
            raise ProtocolError(f"array nesting exceeds {MAX_NESTING_DEPTH} levels")
        return Array([_decode(stream, depth + 1) for _ in range(count)])

    raise ProtocolError(f"unsupported type prefix {prefix!r}")


def _text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def _parse_int(raw: bytes, what: str) -> int:
    if not _INTEGER_RE.fullmatch(raw):
        raise ProtocolError(f"invalid {what}: {raw!r}")
    return int(raw)
