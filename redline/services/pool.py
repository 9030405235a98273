"""Fixed-size connection pool behind one public local endpoint."""

from __future__ import annotations

import queue
import socket
import threading
import time
from typing import Any

from redline.config.schema import ConnectionConfig, PoolConfig
from redline.core.errors import DecodeError, Disconnected, LockBusy, NotConnected, RedlineError, TransportError
from redline.core.locks import ThreadLock
from redline.core.logging import session_extra
from redline.core.session import Session, SessionState
from redline.protocol.resp import SimpleString, decode
from redline.protocol.stream import SocketStream
from redline.services.base import LOOPBACK, Endpoint, EndpointServer, format_endpoint, parse_endpoint
from redline.services.relay import TerminatorRewriter, relay


_SYNC_COMMAND = b"PING\r\n"
_PONG = SimpleString("PONG")


def _client_label(client_address: Any) -> str | None:
    if isinstance(client_address, tuple) and len(client_address) >= 2:
        return f"{client_address[0]}:{client_address[1]}"
    return str(client_address) or None


class PoolMember(EndpointServer):
    """One upstream Session exposed on a private loopback port.

    The handler holds the Session lock for as long as its single client is
    attached, so the supervisor and any other caller see ``LockBusy``.
    """

    name = "pool-member"

    def __init__(self, index: int, config: ConnectionConfig) -> None:
        # the session lock admits one client; the spare slot covers a predecessor still closing
        super().__init__(max_concurrent_connections=2)
        self.index = index
        # members share one config, a shared lock file would serialise them
        self.session = Session(config, keepalive=False, lock=ThreadLock(), name=f"pool-{index}")

    @property
    def ready(self) -> bool:
        session = self.session
        return session.state == SessionState.READY and session.is_open and not session.stale

    def start(self, endpoint: Endpoint = (LOOPBACK, 0)) -> Endpoint:
        return super().start(endpoint)

    def connect(self) -> bool:
        try:
            self.session.connect()
        except RedlineError as exc:
            self.logger.warning(
                "pool member connect failed",
                extra=session_extra(self.session, component="pool", event_action="member_connect",
                                    event_outcome="failure", payload={"index": self.index, "error": str(exc)}),
            )
            return False
        return True

    def close(self) -> None:
        self.stop()
        self.session.disconnect()

    def status(self) -> dict[str, object]:
        return {
            "index": self.index,
            "endpoint": format_endpoint(self.bound_endpoint()),
            "state": self.session.state.value,
            "stale": self.session.stale,
        }

    def _handle_client(self, conn: socket.socket, client_address: Any) -> None:
        session = self.session
        if not session.lock.try_acquire():
            self.logger.warning(
                "pool member busy, dropping client",
                extra=session_extra(session, component="pool", event_action="member_relay",
                                    event_outcome="failure", client_address=_client_label(client_address)),
            )
            return
        try:
            stream = session.stream
            if stream is None or stream.closed or session.stale:
                return
            try:
                stream.drain(session.config.drain_timeout_seconds)
                stream.settimeout(None)
            except TransportError:
                session.mark_stale()
                return
            result = relay(conn, stream.sock, linger=session.config.read_timeout_seconds)
            if result.upstream_closed:
                session.mark_stale()
                self.logger.warning(
                    "upstream closed during relay",
                    extra=session_extra(session, component="pool", event_action="member_relay",
                                        event_outcome="failure", payload={"index": self.index}),
                )
            elif not self._resynchronise(stream):
                session.mark_stale()
                self.logger.warning(
                    "reply still owed after relay, dropping upstream connection",
                    extra=session_extra(session, component="pool", event_action="member_resync",
                                        event_outcome="failure", payload={"index": self.index}),
                )
        finally:
            session.lock.release()

    def _resynchronise(self, stream: SocketStream) -> bool:
        """Send PING and wait for its PONG so no earlier reply is still in flight.

        Replies arriving first belong to a command the last client left
        running and are discarded. Gives up after one read timeout.
        """
        read_timeout = self.session.config.read_timeout_seconds
        deadline = time.monotonic() + read_timeout
        try:
            stream.write(_SYNC_COMMAND)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                if decode(stream, remaining) == _PONG:
                    return True
        except RedlineError:
            return False
        finally:
            if not stream.closed:
                stream.settimeout(read_timeout)


class ConnectionPool(EndpointServer):
    """Public endpoint that hands each client to a free member, FIFO.

    Clients beyond the pool size wait in ``claim`` until a member is
    released, or until ``claim_timeout_seconds`` when that is non-zero.
    Connections beyond ``max_clients`` are held unaccepted, never dropped.
    """

    name = "pool"

    def __init__(self, connection_config: ConnectionConfig | None = None, pool_config: PoolConfig | None = None) -> None:
        self.connection_config = connection_config or ConnectionConfig()
        self.pool_config = pool_config or PoolConfig()
        super().__init__(max_concurrent_connections=self.pool_config.max_clients, hold_excess_connections=True)
        self.members: list[PoolMember] = []
        self._free: queue.Queue[PoolMember] = queue.Queue()
        self._claimed: set[int] = set()
        self._claimed_guard = threading.Lock()
        self._supervisor: threading.Thread | None = None
        self._stopping = threading.Event()

    def start(self, endpoint: Endpoint | str | None = None) -> Endpoint:
        target = endpoint if endpoint is not None else self.pool_config.listen
        public = parse_endpoint(target) if isinstance(target, (str, int)) else target
        self._stopping.clear()
        for index in range(self.pool_config.size):
            member = PoolMember(index, self.connection_config)
            self.members.append(member)
            member.start()
            member.connect()
            self._free.put(member)
        try:
            bound = super().start(public)
        except OSError:
            self._close_members()
            raise
        interval = self.connection_config.keepalive_seconds
        if interval > 0:
            self._supervisor = threading.Thread(
                target=self._supervise_loop,
                args=(interval,),
                name="pool-supervisor",
                daemon=True,
            )
            self._supervisor.start()
        self.logger.info(
            "pool started",
            extra={"component": "pool", "event_action": "pool_start",
                   "server_address": self.connection_config.host, "server_port": self.connection_config.port,
                   "payload": {"endpoint": format_endpoint(bound), "size": self.pool_config.size}},
        )
        return bound

    def stop(self) -> None:
        self._stopping.set()
        super().stop()
        if self._supervisor and self._supervisor.is_alive():
            self._supervisor.join(timeout=5.0)
        self._supervisor = None
        self._close_members()

    def claim(self, timeout: float | None = None) -> PoolMember | None:
        """Take the longest-free member, waiting up to ``timeout`` (None: forever)."""
        try:
            member = self._free.get(timeout=timeout)
        except queue.Empty:
            return None
        with self._claimed_guard:
            self._claimed.add(member.index)
        return member

    def release(self, member: PoolMember) -> None:
        with self._claimed_guard:
            self._claimed.discard(member.index)
        self._free.put(member)

    @property
    def free_count(self) -> int:
        return self._free.qsize()

    def supervise_once(self) -> int:
        """Ping every free member and reconnect the ones that fail.

        Claimed members are skipped. Returns how many members were reconnected.
        """
        checked: set[int] = set()
        reconnected = 0
        for _ in range(len(self.members)):
            try:
                member = self._free.get_nowait()
            except queue.Empty:
                break
            if member.index in checked:
                self._free.put(member)
                break
            checked.add(member.index)
            try:
                if self._check_member(member):
                    reconnected += 1
            finally:
                self._free.put(member)
        return reconnected

    def status(self) -> dict[str, object]:
        with self._claimed_guard:
            claimed = set(self._claimed)
        members = []
        for member in self.members:
            entry = member.status()
            entry["claimed"] = member.index in claimed
            members.append(entry)
        return {
            "endpoint": format_endpoint(self.bound_endpoint()),
            "server": self.connection_config.address,
            "size": len(self.members),
            "free": self.free_count,
            "members": members,
        }

    def _check_member(self, member: PoolMember) -> bool:
        session = member.session
        try:
            session.executor.execute(session, "PING", reconnect=False)
        except LockBusy:
            return False
        except (Disconnected, NotConnected, TransportError, DecodeError) as exc:
            self.logger.warning(
                "pool member unhealthy, reconnecting",
                extra=session_extra(session, component="pool", event_action="supervise",
                                    event_outcome="failure", payload={"index": member.index, "error": str(exc)}),
            )
            return member.connect()
        return False

    def _supervise_loop(self, interval: float) -> None:
        while not self._stopping.wait(interval):
            self.supervise_once()

    def _close_members(self) -> None:
        for member in self.members:
            member.close()
        self.members = []
        self._free = queue.Queue()
        with self._claimed_guard:
            self._claimed.clear()

    def _handle_client(self, conn: socket.socket, client_address: Any) -> None:
        client_label = _client_label(client_address)
        timeout = self.pool_config.claim_timeout_seconds or None
        member = self.claim(timeout)
        if member is None:
            self.logger.warning(
                "no pool member freed in time, closing client",
                extra={"component": "pool", "event_action": "claim", "event_outcome": "failure",
                       "client_address": client_label, "payload": {"timeout": timeout}},
            )
            return
        try:
            if not member.ready and not member.connect():
                return
            endpoint = member.bound_endpoint()
            if not isinstance(endpoint, tuple):
                return
            rewriter = TerminatorRewriter() if self.pool_config.rewrite_terminators else None
            with socket.create_connection(endpoint) as upstream:
                result = relay(
                    conn,
                    upstream,
                    rewriter=rewriter,
                    linger=3 * self.connection_config.read_timeout_seconds,
                    half_close_upstream=True,
                )
            self.logger.debug(
                "client relay finished",
                extra=session_extra(member.session, component="pool", event_action="relay",
                                    client_address=client_label,
                                    payload={"index": member.index, "client_bytes": result.client_bytes,
                                             "upstream_bytes": result.upstream_bytes}),
            )
        finally:
            self.release(member)
