"""Locked send-one-command, read-one-response critical section."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Callable

from redline.config.schema import ConnectionConfig
from redline.core.errors import (
    ConnectionClosed,
    DecodeTimeout,
    Disconnected,
    LockBusy,
    NotConnected,
    ProtocolError,
    RedlineError,
    TransportError,
)
from redline.core.logging import get_logger, session_extra
from redline.protocol.resp import DEFAULT_READ_TIMEOUT, Error, Response, SimpleString, decode
from redline.protocol.stream import MAX_LINE_BYTES

if TYPE_CHECKING:
    from redline.core.session import Session


_RESET_COMMAND = b"RESET\r\n"
_MAX_RESET_REPLIES = 1024


def inline_command(command: str) -> bytes | None:
    """Encode ``command`` as one CRLF-terminated inline line, or None if blank."""
    text = command.rstrip("\r\n")
    if not text.strip():
        return None
    if "\r" in text or "\n" in text:
        raise ValueError("inline commands must fit on a single line")
    return text.encode("utf-8") + b"\r\n"


def _redacted(command: str) -> str:
    verb, _, rest = command.strip().partition(" ")
    if verb.upper() == "AUTH" and rest:
        return f"{verb} ***"
    return command.strip()


class Executor:
    def __init__(
        self,
        *,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        drain_timeout: float = 0.001,
        drain_limit: int = MAX_LINE_BYTES,
    ) -> None:
        self.read_timeout = read_timeout
        self.drain_timeout = drain_timeout
        self.drain_limit = drain_limit
        self.logger = get_logger("redline.executor")

    @classmethod
    def from_config(cls, config: ConnectionConfig) -> Executor:
        return cls(read_timeout=config.read_timeout_seconds, drain_timeout=config.drain_timeout_seconds)

    def execute(self, session: Session | None, command: str, *, reconnect: bool = True) -> Response | None:
        """Send ``command`` and return the decoded response.

        Server-side errors come back as ``Error`` values. A broken transport
        is reconnected and the command sent once more; if that also fails the
        caller gets ``Disconnected``. With ``reconnect=False`` the first
        transport failure is reported as ``Disconnected`` straight away.
        """
        line = inline_command(command)
        if line is None:
            return None
        try:
            return self._exchange(session, line, command)
        except TransportError as exc:
            if not reconnect:
                raise Disconnected(f"connection to {session.config.address} lost: {exc}") from exc
            self.logger.warning(
                "connection lost, reconnecting",
                extra=session_extra(
                    session,
                    component="executor",
                    event_action="reconnect",
                    payload={"error": str(exc), "command": _redacted(command)},
                ),
            )

        try:
            session.connect()
        except RedlineError as exc:
            raise Disconnected(f"reconnect to {session.config.address} failed: {exc}") from exc
        try:
            return self._exchange(session, line, command)
        except TransportError as exc:
            raise Disconnected(f"connection to {session.config.address} lost after reconnect: {exc}") from exc

    def push(
        self,
        session: Session | None,
        command: str,
        on_reply: Callable[[Response], None],
        *,
        stop: threading.Event | None = None,
        confirm_stop: Callable[[], bool] | None = None,
        poll_timeout: float | None = None,
    ) -> int:
        """Run a subscribe/monitor style command and stream its replies.

        Replies are handed to ``on_reply`` until ``stop`` is set, or until a
        ``KeyboardInterrupt`` arrives and ``confirm_stop`` agrees. The
        connection is then returned to normal request/response mode with
        RESET. Returns the number of replies delivered.
        """
        line = inline_command(command)
        if line is None:
            return 0
        stream = self._acquire(session)
        poll = poll_timeout if poll_timeout is not None else self.read_timeout
        delivered = 0
        try:
            if session.stale:
                raise ConnectionClosed("session marked stale")
            stream.drain(self.drain_timeout, self.drain_limit)
            stream.write(line)
            self.logger.debug(
                "push mode started",
                extra=session_extra(session, component="executor", event_action="push_start",
                                    payload={"command": _redacted(command)}),
            )
            while stop is None or not stop.is_set():
                try:
                    if not stream.wait(poll):
                        continue
                    reply = decode(stream, self.read_timeout)
                    on_reply(reply)
                    delivered += 1
                except KeyboardInterrupt:
                    if confirm_stop is None or confirm_stop():
                        break
            self._reset(stream)
        except TransportError as exc:
            session.mark_stale()
            raise Disconnected(f"connection to {session.config.address} lost in push mode: {exc}") from exc
        except ProtocolError:
            # framing is lost and the server may still be in push mode
            session.mark_stale()
            raise
        finally:
            session.lock.release()
        self.logger.debug(
            "push mode ended",
            extra=session_extra(session, component="executor", event_action="push_end",
                                payload={"delivered": delivered}),
        )
        return delivered

    def _acquire(self, session: Session | None):
        if session is None or not session.is_open:
            raise NotConnected("not connected to a server")
        lock = session.lock
        if lock.busy or not lock.try_acquire():
            self.logger.debug(
                "command lock busy",
                extra=session_extra(session, component="executor", event_action="lock", event_outcome="failure"),
            )
            raise LockBusy("another command is running on this connection")
        stream = session.stream
        if stream is None:
            lock.release()
            raise NotConnected("not connected to a server")
        return stream

    def _exchange(self, session: Session | None, line: bytes, command: str) -> Response:
        stream = self._acquire(session)
        try:
            if session.stale:
                raise ConnectionClosed("session marked stale")
            stream.drain(self.drain_timeout, self.drain_limit)
            stream.write(line)
            self.logger.debug(
                "command sent",
                extra=session_extra(session, component="executor", event_action="command",
                                    payload={"command": _redacted(command)}),
            )
            return decode(stream, self.read_timeout)
        except TransportError:
            session.mark_stale()
            raise
        finally:
            session.lock.release()

    def _reset(self, stream) -> None:
        stream.write(_RESET_COMMAND)
        for _ in range(_MAX_RESET_REPLIES):
            try:
                reply = decode(stream, self.read_timeout)
            except ProtocolError:
                stream.drain(self.drain_timeout, self.drain_limit)
                return
            if reply == SimpleString("RESET") or isinstance(reply, Error):
                return
        raise DecodeTimeout("server did not acknowledge RESET")
