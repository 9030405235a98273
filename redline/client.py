"""Library facade over one Session and its Executor."""

from __future__ import annotations

import threading
from typing import Callable

from redline.config.schema import ConnectionConfig
from redline.core.errors import ServerError
from redline.core.executor import Executor
from redline.core.session import Session, SessionState
from redline.protocol.resp import Error, Response, SimpleString


class Client:
    def __init__(self, config: ConnectionConfig | None = None, executor: Executor | None = None) -> None:
        self.config = config or ConnectionConfig()
        self.executor = executor or Executor.from_config(self.config)
        self.session = Session(self.config, executor=self.executor)

    @property
    def connected(self) -> bool:
        return self.session.state == SessionState.READY and self.session.is_open

    def connect(self) -> Client:
        self.session.connect()
        return self

    def close(self) -> None:
        self.session.disconnect()

    def execute(self, command: str, *, reconnect: bool = True) -> Response | None:
        """Run one inline command; server errors are returned as ``Error`` values."""
        return self.executor.execute(self.session, command, reconnect=reconnect)

    def call(self, command: str) -> Response | None:
        """Like ``execute`` but raises ``ServerError`` for an error reply."""
        reply = self.execute(command)
        if isinstance(reply, Error):
            raise ServerError(reply.message)
        return reply

    def ping(self) -> bool:
        return self.call("PING") == SimpleString("PONG")

    def push(
        self,
        command: str,
        on_reply: Callable[[Response], None],
        *,
        stop: threading.Event | None = None,
        confirm_stop: Callable[[], bool] | None = None,
        poll_timeout: float | None = None,
    ) -> int:
        return self.executor.push(
            self.session,
            command,
            on_reply,
            stop=stop,
            confirm_stop=confirm_stop,
            poll_timeout=poll_timeout,
        )

    def __enter__(self) -> Client:
        return self.connect()

    def __exit__(self, *args: object) -> None:
        self.close()
