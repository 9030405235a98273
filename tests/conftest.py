from __future__ import annotations

import socket
import socketserver
import threading
import time
from typing import Any, Iterator

import pytest

from redline.config.schema import ConnectionConfig


class _Server(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


class FakeRedisServer:
    """In-process RESP server speaking strict CRLF inline commands.

    Besides a handful of real commands it understands test verbs: ERR,
    NESTED, NULLARRAY, EMPTY, SLEEP <seconds>, DROP (close without reply).
    """

    def __init__(self, password: str | None = None) -> None:
        self.password = password
        self.store: dict[str, bytes] = {}
        self.commands: list[str] = []
        self.connection_count = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self._drop_next = 0
        self._sockets: list[socket.socket] = []
        self._server: _Server | None = None
        self._thread: threading.Thread | None = None

    @property
    def host(self) -> str:
        return "127.0.0.1"

    @property
    def port(self) -> int:
        assert self._server is not None
        return int(self._server.server_address[1])

    def config(self, **overrides: Any) -> ConnectionConfig:
        values: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "keepalive_seconds": 0,
            "read_timeout_seconds": 1.0,
            "connect_timeout_seconds": 2.0,
        }
        values.update(overrides)
        return ConnectionConfig(**values)

    def start(self) -> FakeRedisServer:
        server = self

        class Handler(socketserver.BaseRequestHandler):
            def handle(self) -> None:
                server._serve(self.request)

        self._server = _Server(("127.0.0.1", 0), Handler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self.kill_connections()
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None

    def drop_next(self, count: int = 1) -> None:
        """Close the connection instead of answering the next ``count`` commands."""
        with self._lock:
            self._drop_next = count

    def kill_connections(self) -> None:
        with self._lock:
            sockets, self._sockets = self._sockets, []
        for sock in sockets:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

    def count(self, verb: str) -> int:
        with self._lock:
            return sum(1 for command in self.commands if command.split(" ", 1)[0].upper() == verb.upper())

    def _serve(self, conn: socket.socket) -> None:
        with self._lock:
            self.connection_count += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self._sockets.append(conn)
        state = {"authed": self.password is None, "db": 0}
        buffer = bytearray()
        try:
            while True:
                index = buffer.find(b"\r\n")
                if index < 0:
                    try:
                        chunk = conn.recv(65536)
                    except OSError:
                        return
                    if not chunk:
                        return
                    buffer.extend(chunk)
                    continue
                line = bytes(buffer[:index]).decode("utf-8", errors="replace")
                del buffer[: index + 2]
                with self._lock:
                    self.commands.append(line)
                    dropping = self._drop_next > 0
                    if dropping:
                        self._drop_next -= 1
                if dropping:
                    return
                reply = self._reply(conn, line, state)
                if reply is None:
                    return
                try:
                    conn.sendall(reply)
                except OSError:
                    return
        finally:
            with self._lock:
                self.active -= 1
                if conn in self._sockets:
                    self._sockets.remove(conn)

    def _reply(self, conn: socket.socket, line: str, state: dict[str, Any]) -> bytes | None:
        words = line.split()
        if not words:
            return b"-ERR empty command\r\n"
        verb, args = words[0].upper(), words[1:]
        if verb == "AUTH":
            if self.password is not None and args and args[-1] == self.password:
                state["authed"] = True
                return b"+OK\r\n"
            return b"-WRONGPASS invalid username-password pair or user is disabled.\r\n"
        if not state["authed"]:
            return b"-NOAUTH Authentication required.\r\n"
        if verb == "PING":
            return _bulk(args[0].encode()) if args else b"+PONG\r\n"
        if verb == "SELECT":
            if len(args) == 1 and args[0].isdigit() and int(args[0]) < 16:
                state["db"] = int(args[0])
                return b"+OK\r\n"
            return b"-ERR DB index is out of range\r\n"
        if verb == "ECHO" and args:
            return _bulk(" ".join(args).encode())
        if verb == "SET" and len(args) == 2:
            with self._lock:
                self.store[f"{state['db']}:{args[0]}"] = args[1].encode()
            return b"+OK\r\n"
        if verb == "GET" and len(args) == 1:
            with self._lock:
                value = self.store.get(f"{state['db']}:{args[0]}")
            return b"$-1\r\n" if value is None else _bulk(value)
        if verb == "INCR" and len(args) == 1:
            key = f"{state['db']}:{args[0]}"
            with self._lock:
                value = int(self.store.get(key, b"0")) + 1
                self.store[key] = str(value).encode()
            return f":{value}\r\n".encode()
        if verb == "ERR":
            return b"-ERR scripted failure\r\n"
        if verb == "NESTED":
            return b"*3\r\n:1\r\n*2\r\n+a\r\n$-1\r\n*0\r\n"
        if verb == "NULLARRAY":
            return b"*-1\r\n"
        if verb == "EMPTY":
            return b"*0\r\n"
        if verb == "SLEEP" and args:
            time.sleep(float(args[0]))
            return b"+OK\r\n"
        if verb == "SUBSCRIBE" and args:
            channel = args[0].encode()
            conn.sendall(b"*3\r\n" + _bulk(b"subscribe") + _bulk(channel) + b":1\r\n")
            return b"*3\r\n" + _bulk(b"message") + _bulk(channel) + _bulk(b"hello")
        if verb == "RESET":
            return b"+RESET\r\n"
        if verb == "DROP":
            return None
        return f"-ERR unknown command '{words[0]}'\r\n".encode()


def _bulk(value: bytes) -> bytes:
    return b"$" + str(len(value)).encode() + b"\r\n" + value + b"\r\n"


@pytest.fixture
def fake_server() -> Iterator[FakeRedisServer]:
    server = FakeRedisServer().start()
    yield server
    server.stop()


@pytest.fixture
def auth_server() -> Iterator[FakeRedisServer]:
    server = FakeRedisServer(password="s3cret").start()
    yield server
    server.stop()
