"""Bidirectional byte relay between a local client and an upstream socket."""

from __future__ import annotations

from dataclasses import dataclass
import selectors
import socket
import time


_CHUNK_SIZE = 65_536


class TerminatorRewriter:
    """Turn bare LF into CRLF, leaving existing CRLF untouched.

    A CR that ends one chunk is remembered so an LF opening the next chunk is
    not doubled.
    """

    def __init__(self) -> None:
        self._last_was_cr = False

    def feed(self, data: bytes) -> bytes:
        if not data:
            return data
        pieces = data.split(b"\n")
        rewritten = bytearray(pieces[0])
        previous = pieces[0]
        for index, piece in enumerate(pieces[1:]):
            if index == 0:
                had_cr = previous.endswith(b"\r") if previous else self._last_was_cr
            else:
                had_cr = previous.endswith(b"\r")
            rewritten.extend(b"\n" if had_cr else b"\r\n")
            rewritten.extend(piece)
            previous = piece
        self._last_was_cr = data.endswith(b"\r")
        return bytes(rewritten)


@dataclass(slots=True)
class RelayResult:
    client_bytes: int = 0
    upstream_bytes: int = 0
    client_closed: bool = False
    upstream_closed: bool = False


def relay(
    client: socket.socket,
    upstream: socket.socket,
    *,
    rewriter: TerminatorRewriter | None = None,
    linger: float = 1.0,
    half_close_upstream: bool = False,
    chunk_size: int = _CHUNK_SIZE,
) -> RelayResult:
    """Copy bytes both ways until either side is done.

    Client bytes pass through ``rewriter`` when given. After the client
    half-closes, upstream replies are still forwarded until the upstream has
    been idle for ``linger`` seconds. ``half_close_upstream`` forwards the
    client's EOF as a write shutdown; leave it off when the upstream socket
    must stay usable afterwards.
    """
    result = RelayResult()
    selector = selectors.DefaultSelector()
    selector.register(client, selectors.EVENT_READ, "client")
    selector.register(upstream, selectors.EVENT_READ, "upstream")
    linger_deadline: float | None = None
    try:
        while True:
            timeout = None
            if linger_deadline is not None:
                timeout = linger_deadline - time.monotonic()
                if timeout <= 0:
                    break
            events = selector.select(timeout)
            if not events and linger_deadline is not None:
                break
            for key, _ in events:
                data = _recv(key.fileobj, chunk_size)
                if key.data == "client":
                    if not data:
                        result.client_closed = True
                        selector.unregister(client)
                        if half_close_upstream:
                            _shutdown_write(upstream)
                        linger_deadline = time.monotonic() + linger
                        continue
                    if rewriter is not None:
                        data = rewriter.feed(data)
                    result.client_bytes += len(data)
                    if not _send_all(upstream, data):
                        result.upstream_closed = True
                        return result
                    continue
                if not data:
                    result.upstream_closed = True
                    return result
                result.upstream_bytes += len(data)
                if linger_deadline is not None:
                    linger_deadline = time.monotonic() + linger
                if not _send_all(client, data):
                    result.client_closed = True
                    return result
    finally:
        selector.close()
    return result


def _recv(sock: socket.socket, chunk_size: int) -> bytes:
    try:
        return sock.recv(chunk_size)
    except OSError:
        return b""


def _send_all(sock: socket.socket, data: bytes) -> bool:
    try:
        sock.sendall(data)
    except OSError:
        return False
    return True


def _shutdown_write(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_WR)
    except OSError:
        pass
