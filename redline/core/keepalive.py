"""Periodic PING over an idle session, sharing the executor's lock."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from redline.core.errors import DecodeError, Disconnected, LockBusy, NotConnected, TransportError
from redline.core.logging import get_logger, session_extra
from redline.protocol.resp import Error

if TYPE_CHECKING:
    from redline.core.executor import Executor
    from redline.core.session import Session


class KeepaliveMonitor:
    """Single-shot timer that re-arms itself after each successful PING.

    A failed PING never reconnects from the timer thread. The session is
    marked stale and the monitor stops; whoever runs the next command
    reconnects, and that connect arms a fresh monitor.
    """

    def __init__(self, session: Session, executor: Executor, interval: float, command: str = "PING") -> None:
        self.session = session
        self.executor = executor
        self.interval = interval
        self.command = command
        self.logger = get_logger("redline.keepalive")
        self.fires = 0
        self.failures = 0
        self._guard = threading.Lock()
        self._timer: threading.Timer | None = None
        self._cancelled = False

    @property
    def active(self) -> bool:
        with self._guard:
            return self._timer is not None and not self._cancelled

    def start(self) -> None:
        self._arm()

    def cancel(self) -> None:
        """Stop the monitor, waiting out a PING already in flight."""
        with self._guard:
            self._cancelled = True
            timer, self._timer = self._timer, None
        if timer is None:
            return
        timer.cancel()
        if timer is not threading.current_thread() and timer.is_alive():
            timer.join()

    def _arm(self) -> None:
        with self._guard:
            if self._cancelled:
                return
            timer = threading.Timer(self.interval, self._fire)
            timer.daemon = True
            timer.name = f"keepalive-{self.session.name}"
            self._timer = timer
            timer.start()

    def _fire(self) -> None:
        with self._guard:
            if self._cancelled:
                return
        self.fires += 1
        try:
            reply = self.executor.execute(self.session, self.command, reconnect=False)
        except LockBusy:
            # a foreground command is using the connection, which proves it alive
            pass
        except (Disconnected, NotConnected, TransportError, DecodeError) as exc:
            self.failures += 1
            self.session.mark_stale()
            self.logger.warning(
                "keepalive failed, connection marked stale",
                extra=session_extra(
                    self.session,
                    component="keepalive",
                    event_action="keepalive",
                    event_outcome="failure",
                    payload={"error": str(exc)},
                ),
            )
            return
        else:
            if isinstance(reply, Error):
                self.logger.warning(
                    "keepalive answered with an error",
                    extra=session_extra(
                        self.session,
                        component="keepalive",
                        event_action="keepalive",
                        event_outcome="failure",
                        payload={"error": reply.message},
                    ),
                )
        self._arm()
