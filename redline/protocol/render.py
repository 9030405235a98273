"""Evaluate-and-print for decoded responses."""

from __future__ import annotations

from typing import TextIO

from redline.core.errors import ExitCode
from redline.protocol.resp import Array, BulkString, Error, Integer, Null, Response, SimpleString


NULL_SENTINEL = "NuLL\a"
ACKNOWLEDGEMENTS = frozenset({"OK", "PONG"})


class _Abort(Exception):
    pass


def render(
    response: Response | None,
    out: TextIO,
    err: TextIO,
    *,
    suppress_acks: bool = False,
    pretty: bool = False,
) -> ExitCode:
    """Write ``response`` to ``out`` and server errors to ``err``.

    Returns ``ExitCode.SERVER_ERROR`` as soon as an Error value is met,
    nothing after it is printed. ``suppress_acks`` hides bare OK/PONG
    acknowledgements and must stay off when the output is parsed by a
    program.
    """
    if response is None:
        return ExitCode.SUCCESS
    try:
        _render(response, out, err, suppress_acks=suppress_acks, pretty=pretty, depth=0)
    except _Abort:
        return ExitCode.SERVER_ERROR
    return ExitCode.SUCCESS


def _render(
    response: Response,
    out: TextIO,
    err: TextIO,
    *,
    suppress_acks: bool,
    pretty: bool,
    depth: int,
) -> None:
    indent = "  " * (depth - 1) + "- " if pretty and depth else ""

    if isinstance(response, Error):
        err.write(f"{response.message}\n")
        raise _Abort()
    if isinstance(response, Array):
        if not response.items and pretty:
            out.write(f"{indent}(empty array)\n")
        for item in response.items:
            _render(item, out, err, suppress_acks=suppress_acks, pretty=pretty, depth=depth + 1)
        return
    if isinstance(response, Null):
        out.write(f"{indent}{NULL_SENTINEL}\n")
        return
    if isinstance(response, Integer):
        label = "(int) " if pretty else ""
        out.write(f"{indent}{label}{response.value}\n")
        return
    if isinstance(response, BulkString):
        out.write(f"{indent}{response.text()}\n")
        return
    if isinstance(response, SimpleString):
        if suppress_acks and response.value in ACKNOWLEDGEMENTS:
            return
        out.write(f"{indent}{response.value}\n")
        return
    raise TypeError(f"cannot render {type(response).__name__}")
