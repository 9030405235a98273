import threading

import pytest

from redline.config.schema import ConnectionConfig
from redline.core.errors import ConnectionClosed, Disconnected, LockBusy, NotConnected, ProtocolError
from redline.core.executor import Executor, inline_command
from redline.core.locks import ThreadLock
from redline.protocol.resp import BulkString, Error, SimpleString
from redline.protocol.stream import BufferStream


class _ScriptedStream(BufferStream):
    def __init__(self, data: bytes = b"", *, fail_write: bool = False) -> None:
        super().__init__(data)
        self.fail_write = fail_write
        self.drained = 0
        self.closed = False

    def drain(self, timeout: float, limit: int = 0) -> int:
        _ = timeout, limit
        self.drained += 1
        discarded = self.buffered
        self._buffer.clear()
        return discarded

    def write(self, data: bytes) -> None:
        if self.fail_write:
            raise ConnectionClosed("peer went away")
        super().write(data)


class _StubSession:
    """Session double: ``replies`` are queued into the stream after each write."""

    def __init__(self, *streams: _ScriptedStream) -> None:
        self.config = ConnectionConfig()
        self.name = "stub"
        self.lock = ThreadLock()
        self._streams = list(streams)
        self.stream = self._streams.pop(0) if self._streams else None
        self.stale = False
        self.connects = 0
        self.connect_error: Exception | None = None

    @property
    def is_open(self) -> bool:
        return self.stream is not None

    def mark_stale(self) -> None:
        self.stale = True

    def connect(self) -> None:
        self.connects += 1
        if self.connect_error is not None:
            raise self.connect_error
        self.stream = self._streams.pop(0)
        self.stale = False


class _ReplyingStream(_ScriptedStream):
    def __init__(self, replies: list[bytes], **kwargs) -> None:
        super().__init__(**kwargs)
        self.replies = list(replies)

    def write(self, data: bytes) -> None:
        super().write(data)
        if self.replies:
            self.feed(self.replies.pop(0))


def _executor() -> Executor:
    return Executor(read_timeout=0.1, drain_timeout=0.0)


def test_inline_command_encoding() -> None:
    assert inline_command("PING") == b"PING\r\n"
    assert inline_command("GET key\n") == b"GET key\r\n"
    assert inline_command("   ") is None
    with pytest.raises(ValueError):
        inline_command("SET a\r\nFLUSHALL")


def test_execute_writes_inline_line_and_decodes_one_reply() -> None:
    stream = _ReplyingStream([b"$3\r\nbar\r\n"])
    session = _StubSession(stream)
    reply = _executor().execute(session, "GET foo")
    assert reply == BulkString(b"bar")
    assert bytes(stream.written) == b"GET foo\r\n"
    assert stream.drained == 1
    assert not session.lock.busy


def test_blank_command_is_a_noop() -> None:
    stream = _ReplyingStream([])
    session = _StubSession(stream)
    assert _executor().execute(session, "  ") is None
    assert stream.written == bytearray()


def test_server_error_is_returned_as_value() -> None:
    session = _StubSession(_ReplyingStream([b"-ERR nope\r\n"]))
    assert _executor().execute(session, "BAD") == Error("ERR nope")


def test_missing_session_is_not_connected() -> None:
    with pytest.raises(NotConnected):
        _executor().execute(None, "PING")
    with pytest.raises(NotConnected):
        _executor().execute(_StubSession(), "PING")


def test_held_lock_fails_fast_without_io() -> None:
    stream = _ReplyingStream([b"+PONG\r\n"])
    session = _StubSession(stream)
    assert session.lock.try_acquire()
    with pytest.raises(LockBusy):
        _executor().execute(session, "PING")
    assert stream.written == bytearray()
    session.lock.release()


def test_transport_failure_reconnects_and_retries_once() -> None:
    broken = _ReplyingStream([], fail_write=True)
    fresh = _ReplyingStream([b"+PONG\r\n"])
    session = _StubSession(broken, fresh)
    assert _executor().execute(session, "PING") == SimpleString("PONG")
    assert session.connects == 1
    assert bytes(fresh.written) == b"PING\r\n"


def test_retry_failure_surfaces_as_disconnected() -> None:
    session = _StubSession(_ReplyingStream([], fail_write=True), _ReplyingStream([], fail_write=True))
    with pytest.raises(Disconnected):
        _executor().execute(session, "PING")
    assert session.connects == 1
    assert not session.lock.busy


def test_reconnect_failure_surfaces_as_disconnected() -> None:
    session = _StubSession(_ReplyingStream([], fail_write=True))
    session.connect_error = NotConnected("refused")
    with pytest.raises(Disconnected):
        _executor().execute(session, "PING")


def test_no_reconnect_mode_reports_first_failure() -> None:
    session = _StubSession(_ReplyingStream([], fail_write=True), _ReplyingStream([b"+PONG\r\n"]))
    with pytest.raises(Disconnected):
        _executor().execute(session, "PING", reconnect=False)
    assert session.connects == 0
    assert session.stale is True


def test_stale_session_is_reconnected_before_sending() -> None:
    stale = _ReplyingStream([b"+PONG\r\n"])
    fresh = _ReplyingStream([b"+PONG\r\n"])
    session = _StubSession(stale, fresh)
    session.stale = True
    assert _executor().execute(session, "PING") == SimpleString("PONG")
    assert stale.written == bytearray()
    assert session.connects == 1


def test_protocol_error_is_not_retried() -> None:
    session = _StubSession(_ReplyingStream([b"?garbage\r\n"]), _ReplyingStream([b"+PONG\r\n"]))
    with pytest.raises(ProtocolError):
        _executor().execute(session, "PING")
    assert session.connects == 0


def test_push_delivers_replies_until_stopped_then_resets() -> None:
    stream = _ReplyingStream(
        [
            b"*3\r\n$9\r\nsubscribe\r\n$2\r\nch\r\n:1\r\n*3\r\n$7\r\nmessage\r\n$2\r\nch\r\n$2\r\nhi\r\n",
            b"+RESET\r\n",
        ]
    )
    session = _StubSession(stream)
    stop = threading.Event()
    seen = []

    def _on_reply(reply) -> None:
        seen.append(reply)
        if len(seen) == 2:
            stop.set()

    delivered = _executor().push(session, "SUBSCRIBE ch", _on_reply, stop=stop, poll_timeout=0.01)
    assert delivered == 2
    assert seen[1].items[2] == BulkString(b"hi")
    assert bytes(stream.written) == b"SUBSCRIBE ch\r\nRESET\r\n"
    assert not session.lock.busy


def test_push_interrupt_needs_confirmation() -> None:
    stream = _ReplyingStream([b"", b"+RESET\r\n"])
    session = _StubSession(stream)
    answers = iter([False, True])
    interrupts = {"count": 0}

    def _on_reply(reply) -> None:
        _ = reply

    real_wait = stream.wait

    def _wait(timeout):
        if interrupts["count"] < 2:
            interrupts["count"] += 1
            raise KeyboardInterrupt
        return real_wait(timeout)

    stream.wait = _wait
    delivered = _executor().push(session, "MONITOR", _on_reply, confirm_stop=lambda: next(answers), poll_timeout=0.01)
    assert delivered == 0
    assert interrupts["count"] == 2
    assert bytes(stream.written).endswith(b"RESET\r\n")


def test_push_transport_failure_marks_stale() -> None:
    session = _StubSession(_ReplyingStream([], fail_write=True))
    with pytest.raises(Disconnected):
        _executor().push(session, "SUBSCRIBE ch", lambda reply: None, poll_timeout=0.01)
    assert session.stale is True
    assert not session.lock.busy


def test_push_protocol_error_marks_stale_so_next_command_reconnects() -> None:
    garbled = _ReplyingStream([b"*3\r\n$9\r\nsubscribe\r\n?oops\r\n"])
    fresh = _ReplyingStream([b"+PONG\r\n"])
    session = _StubSession(garbled, fresh)
    with pytest.raises(ProtocolError):
        _executor().push(session, "SUBSCRIBE ch", lambda reply: None, poll_timeout=0.01)
    assert session.stale is True
    assert not session.lock.busy
    assert _executor().execute(session, "PING") == SimpleString("PONG")
    assert session.connects == 1
