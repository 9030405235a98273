"""One live server connection plus its configuration, lock and keepalive."""

from __future__ import annotations

from enum import Enum
import socket
import threading
from uuid import uuid4

from redline.config.schema import ConnectionConfig
from redline.core.errors import AuthError, ConnectError, DBError, RedlineError
from redline.core.executor import Executor
from redline.core.keepalive import KeepaliveMonitor
from redline.core.locks import ThreadLock, build_lock
from redline.core.logging import get_logger, session_extra
from redline.protocol.resp import Error
from redline.protocol.stream import SocketStream


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SELECTING_DB = "selecting_db"
    READY = "ready"


class Session:
    """Owner of one transport to the server.

    ``connect`` always tears down the previous transport first and
    ``disconnect`` is safe to call any number of times. Commands go through
    the ``Executor``, which serialises them with ``lock``.
    """

    def __init__(
        self,
        config: ConnectionConfig | None = None,
        *,
        executor: Executor | None = None,
        keepalive: bool = True,
        lock: ThreadLock | None = None,
        name: str | None = None,
    ) -> None:
        self.config = config or ConnectionConfig()
        self.name = name or f"redline-{uuid4().hex[:12]}"
        self.executor = executor or Executor.from_config(self.config)
        self.lock = lock or build_lock(self.config.lock_path)
        self.keepalive_enabled = keepalive
        self.logger = get_logger("redline.session")
        self.state = SessionState.DISCONNECTED
        self.stream: SocketStream | None = None
        self.keepalive: KeepaliveMonitor | None = None
        self._stale = False
        self._lifecycle = threading.RLock()

    @property
    def is_open(self) -> bool:
        stream = self.stream
        return stream is not None and not stream.closed

    @property
    def stale(self) -> bool:
        return self._stale

    def mark_stale(self) -> None:
        self._stale = True

    def connect(self) -> SessionState:
        with self._lifecycle:
            self.disconnect()
            self.state = SessionState.CONNECTING
            try:
                sock = socket.create_connection(
                    (self.config.host, self.config.port),
                    timeout=self.config.connect_timeout_seconds,
                )
            except OSError as exc:
                self.state = SessionState.DISCONNECTED
                self.logger.warning(
                    "connect failed",
                    extra=session_extra(
                        self,
                        component="session",
                        event_action="connect",
                        event_outcome="failure",
                        payload={"error": str(exc)},
                    ),
                )
                raise ConnectError(f"cannot connect to {self.config.address}: {exc}") from exc
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            self.stream = SocketStream(sock)

            if self.config.auth:
                self.state = SessionState.AUTHENTICATING
                self._handshake(f"AUTH {self.config.auth}", AuthError, "authentication")
            if self.config.database is not None:
                self.state = SessionState.SELECTING_DB
                self._handshake(f"SELECT {self.config.database}", DBError, f"database {self.config.database}")

            self.state = SessionState.READY
            if self.keepalive_enabled and self.config.keepalive_seconds > 0:
                self.keepalive = KeepaliveMonitor(self, self.executor, self.config.keepalive_seconds)
                self.keepalive.start()
            self.logger.info(
                "connected",
                extra=session_extra(
                    self,
                    component="session",
                    event_action="connect",
                    event_outcome="success",
                    payload={"database": self.config.database, "keepalive_seconds": self.config.keepalive_seconds},
                ),
            )
            return self.state

    def disconnect(self) -> None:
        with self._lifecycle:
            monitor, self.keepalive = self.keepalive, None
            if monitor is not None:
                monitor.cancel()
            stream, self.stream = self.stream, None
            if stream is not None:
                stream.close()
                self.logger.info(
                    "disconnected",
                    extra=session_extra(self, component="session", event_action="disconnect"),
                )
            self.lock.close()
            self._stale = False
            self.state = SessionState.DISCONNECTED

    def _handshake(self, command: str, error_type: type[RedlineError], what: str) -> None:
        try:
            reply = self.executor.execute(self, command, reconnect=False)
        except RedlineError as exc:
            self.disconnect()
            raise error_type(f"{what} failed: {exc}") from exc
        if isinstance(reply, Error):
            self.disconnect()
            raise error_type(f"{what} failed: {reply.message}")

    def status(self) -> dict[str, object]:
        monitor = self.keepalive
        return {
            "name": self.name,
            "server": self.config.address,
            "state": self.state.value,
            "stale": self._stale,
            "lock_busy": self.lock.busy,
            "keepalive": {
                "active": bool(monitor and monitor.active),
                "fires": monitor.fires if monitor else 0,
                "failures": monitor.failures if monitor else 0,
            },
        }

    def __enter__(self) -> Session:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.disconnect()
