"""RESP response decoding and rendering."""

from .render import ACKNOWLEDGEMENTS, NULL_SENTINEL, render
from .resp import (
    NULL_ARRAY,
    NULL_BULK,
    Array,
    BulkString,
    Error,
    Integer,
    Null,
    Response,
    SimpleString,
    decode,
    is_null,
    loads,
)
from .stream import BufferStream, SocketStream

__all__ = [
    "ACKNOWLEDGEMENTS",
    "NULL_ARRAY",
    "NULL_BULK",
    "NULL_SENTINEL",
    "Array",
    "BufferStream",
    "BulkString",
    "Error",
    "Integer",
    "Null",
    "Response",
    "SimpleString",
    "SocketStream",
    "decode",
    "is_null",
    "loads",
    "render",
]
