"""Buffered byte streams the decoder reads from."""

from __future__ import annotations

import select
import socket
import time

from redline.core.errors import ConnectionClosed, DecodeTimeout, ProtocolError, TransportError


CRLF = b"\r\n"
MAX_LINE_BYTES = 1_048_576
_RECV_CHUNK = 65_536


class _BufferedStream:
    def __init__(self) -> None:
        self._buffer = bytearray()

    def _fill(self) -> bytes:
        raise NotImplementedError

    def settimeout(self, timeout: float | None) -> None:
        _ = timeout

    def read_line(self, limit: int = MAX_LINE_BYTES) -> bytes:
        """Return the next line without its CRLF terminator."""
        start = 0
        while True:
            index = self._buffer.find(CRLF, start)
            if index >= 0:
                line = bytes(self._buffer[:index])
                del self._buffer[: index + 2]
                return line
            if len(self._buffer) > limit:
                raise ProtocolError(f"response line exceeds {limit} bytes")
            # a CR at the end may pair with an LF in the next chunk
            start = max(0, len(self._buffer) - 1)
            self._buffer.extend(self._fill())

    def read_exact(self, count: int) -> bytes:
        while len(self._buffer) < count:
            self._buffer.extend(self._fill())
        data = bytes(self._buffer[:count])
        del self._buffer[:count]
        return data

    @property
    def buffered(self) -> int:
        return len(self._buffer)


class BufferStream(_BufferedStream):
    """In-memory stream; reading past the end behaves like a closed peer."""

    def __init__(self, data: bytes = b"") -> None:
        super().__init__()
        self._buffer.extend(data)
        self.written = bytearray()

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def wait(self, timeout: float | None) -> bool:
        _ = timeout
        return bool(self._buffer)

    def write(self, data: bytes) -> None:
        self.written.extend(data)

    def _fill(self) -> bytes:
        raise ConnectionClosed("end of buffered data")


class SocketStream(_BufferedStream):
    def __init__(self, sock: socket.socket) -> None:
        super().__init__()
        self.sock = sock
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def settimeout(self, timeout: float | None) -> None:
        try:
            self.sock.settimeout(timeout)
        except OSError as exc:
            raise TransportError(str(exc)) from exc

    def _fill(self) -> bytes:
        try:
            chunk = self.sock.recv(_RECV_CHUNK)
        except TimeoutError as exc:
            raise DecodeTimeout("timed out waiting for server response") from exc
        except OSError as exc:
            raise TransportError(str(exc)) from exc
        if not chunk:
            raise ConnectionClosed("server closed the connection")
        return chunk

    def wait(self, timeout: float | None) -> bool:
        """Block until a response byte is available or ``timeout`` elapses."""
        if self._buffer:
            return True
        try:
            readable, _, _ = select.select([self.sock], [], [], timeout)
        except (OSError, ValueError) as exc:
            raise TransportError(str(exc)) from exc
        return bool(readable)

    def write(self, data: bytes) -> None:
        try:
            self.sock.sendall(data)
        except OSError as exc:
            raise TransportError(str(exc)) from exc

    def drain(self, timeout: float, limit: int = MAX_LINE_BYTES) -> int:
        """Discard buffered and already-arrived bytes; bounded in time and size."""
        discarded = len(self._buffer)
        self._buffer.clear()
        deadline = time.monotonic() + max(0.0, timeout)
        previous = self.sock.gettimeout()
        try:
            while discarded < limit:
                remaining = deadline - time.monotonic()
                self.sock.settimeout(max(0.0, remaining))
                try:
                    chunk = self.sock.recv(_RECV_CHUNK)
                except (TimeoutError, BlockingIOError):
                    break
                if not chunk:
                    raise ConnectionClosed("server closed the connection")
                discarded += len(chunk)
                if remaining <= 0:
                    break
        except OSError as exc:
            raise TransportError(str(exc)) from exc
        finally:
            try:
                self.sock.settimeout(previous)
            except OSError:
                pass
        return discarded

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        try:
            self.sock.close()
        except OSError:
            pass
