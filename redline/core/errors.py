"""Exception taxonomy and stable exit codes."""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    SERVER_ERROR = 1
    AUTH_FAILED = 20
    DB_FAILED = 21
    NOT_CONNECTED = 22
    LOCK_BUSY = 23


class RedlineError(Exception):
    exit_code = ExitCode.NOT_CONNECTED


class TransportError(RedlineError):
    """The byte stream to the server failed or closed."""


class ConnectionClosed(TransportError):
    pass


class DecodeError(RedlineError):
    pass


class DecodeTimeout(DecodeError, TransportError):
    """No bytes arrived within the read timeout."""


class ProtocolError(DecodeError):
    """The server sent bytes that do not frame a valid response."""

    exit_code = ExitCode.SERVER_ERROR


class ConnectError(RedlineError):
    pass


class AuthError(RedlineError):
    exit_code = ExitCode.AUTH_FAILED


class DBError(RedlineError):
    exit_code = ExitCode.DB_FAILED


class NotConnected(RedlineError):
    pass


class Disconnected(RedlineError):
    """Transport failure that survived the single reconnect attempt."""


class LockBusy(RedlineError):
    exit_code = ExitCode.LOCK_BUSY


class ServerError(RedlineError):
    exit_code = ExitCode.SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> str:
        return self.message.split(" ", 1)[0] if self.message else ""
