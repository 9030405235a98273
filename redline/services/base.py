"""Threaded local endpoint servers shared by the pool and its members."""

from __future__ import annotations

import os
from pathlib import Path
import socket
import socketserver
import stat
import threading
from typing import Any

from redline.core.logging import get_logger


LOOPBACK = "127.0.0.1"


class _ConnectionSlotsMixIn:
    """Caps concurrent handler threads.

    Connections over the cap are dropped, or, with ``hold_when_full``, left
    waiting in the accept loop until a slot frees or the server closes.
    """

    _slot_poll_seconds = 0.1

    def _init_slots(self, max_concurrent_connections: int, hold_when_full: bool = False) -> None:
        self._connection_slots = threading.BoundedSemaphore(max(1, int(max_concurrent_connections)))
        self.hold_when_full = hold_when_full
        self.closing = threading.Event()

    def _acquire_slot(self) -> bool:
        if not self.hold_when_full:
            return self._connection_slots.acquire(blocking=False)
        while not self.closing.is_set():
            if self._connection_slots.acquire(timeout=self._slot_poll_seconds):
                return True
        return False

    def process_request(self, request: Any, client_address: Any) -> None:
        if not self._acquire_slot():
            try:
                request.close()
            except OSError:
                pass
            return
        try:
            super().process_request(request, client_address)
        except Exception:
            self._connection_slots.release()
            raise

    def process_request_thread(self, request: Any, client_address: Any) -> None:
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._connection_slots.release()


class _ThreadingTCPServer(_ConnectionSlotsMixIn, socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True
    request_queue_size = 128

    def __init__(
        self, *args: Any, max_concurrent_connections: int = 256, hold_when_full: bool = False, **kwargs: Any
    ) -> None:
        self._init_slots(max_concurrent_connections, hold_when_full)
        super().__init__(*args, **kwargs)


class _ThreadingUnixServer(_ConnectionSlotsMixIn, socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True
    request_queue_size = 128

    def __init__(
        self, *args: Any, max_concurrent_connections: int = 256, hold_when_full: bool = False, **kwargs: Any
    ) -> None:
        self._init_slots(max_concurrent_connections, hold_when_full)
        super().__init__(*args, **kwargs)


Endpoint = tuple[str, int] | str


def parse_endpoint(value: str | int) -> Endpoint:
    """Map a numeric value to a loopback TCP port and anything else to a socket path."""
    text = str(value).strip()
    if not text:
        raise ValueError("endpoint must not be empty")
    if text.isdigit():
        port = int(text)
        if not 0 <= port <= 65535:
            raise ValueError(f"port {port} is out of range")
        return (LOOPBACK, port)
    return text


def format_endpoint(endpoint: Endpoint | None) -> str | None:
    if endpoint is None:
        return None
    if isinstance(endpoint, tuple):
        return f"{endpoint[0]}:{endpoint[1]}"
    return endpoint


def _remove_stale_socket(path: Path) -> None:
    try:
        mode = path.lstat().st_mode
    except FileNotFoundError:
        return
    if not stat.S_ISSOCK(mode):
        raise FileExistsError(f"refusing to replace non-socket file: {path}")
    path.unlink()


class EndpointServer:
    """Accept loop on a TCP port or Unix socket, one handler thread per client.

    Subclasses implement ``_handle_client``; the client socket is closed by
    socketserver once it returns.
    """

    name = "endpoint"

    def __init__(self, *, max_concurrent_connections: int = 256, hold_excess_connections: bool = False) -> None:
        self.logger = get_logger(f"redline.services.{self.name}")
        self.max_concurrent_connections = max_concurrent_connections
        self.hold_excess_connections = hold_excess_connections
        self.running = False
        self._server: _ThreadingTCPServer | _ThreadingUnixServer | None = None
        self._thread: threading.Thread | None = None
        self._endpoint: Endpoint | None = None

    def start(self, endpoint: Endpoint) -> Endpoint:
        if isinstance(endpoint, tuple):
            self._server = _ThreadingTCPServer(
                endpoint,
                self._build_handler(),
                max_concurrent_connections=self.max_concurrent_connections,
                hold_when_full=self.hold_excess_connections,
            )
            host, port = self._server.server_address[:2]
            self._endpoint = (str(host), int(port))
        else:
            path = Path(endpoint)
            _remove_stale_socket(path)
            self._server = _ThreadingUnixServer(
                str(path),
                self._build_handler(),
                max_concurrent_connections=self.max_concurrent_connections,
                hold_when_full=self.hold_excess_connections,
            )
            self._endpoint = str(path)
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name=f"{self.name}-accept",
            daemon=True,
        )
        self._thread.start()
        self.running = True
        self.logger.info(
            "endpoint started",
            extra={"component": self.name, "event_action": "endpoint_start",
                   "payload": {"endpoint": format_endpoint(self._endpoint)}},
        )
        return self._endpoint

    def stop(self) -> None:
        if self._server:
            self._server.closing.set()
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        self._thread = None
        if isinstance(self._endpoint, str):
            try:
                os.unlink(self._endpoint)
            except FileNotFoundError:
                pass
        if self.running:
            self.logger.info(
                "endpoint stopped",
                extra={"component": self.name, "event_action": "endpoint_stop",
                       "payload": {"endpoint": format_endpoint(self._endpoint)}},
            )
        self.running = False

    def bound_endpoint(self) -> Endpoint | None:
        return self._endpoint

    def _build_handler(self) -> type[socketserver.BaseRequestHandler]:
        server = self

        class EndpointHandler(socketserver.BaseRequestHandler):
            def handle(self) -> None:
                server._handle_client(self.request, self.client_address)

        return EndpointHandler

    def _handle_client(self, conn: socket.socket, client_address: Any) -> None:
        raise NotImplementedError
