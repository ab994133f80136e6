"""Error kinds shared by sessions, transfers, scripts and the executor."""

from __future__ import annotations

import errno
from enum import Enum
from typing import Any

import asyncssh


class ErrorKind(Enum):
    """Classification of a failure, used for retry decisions and reports."""

    AUTH_EXHAUSTED = "AuthExhausted"
    CONNECTION = "ConnectionError"
    COMMAND = "CommandError"
    PATH_MISMATCH = "PathMismatch"
    PERMISSION = "PermissionDenied"
    ALREADY_EXISTS = "AlreadyExists"
    CANCELLED = "Cancelled"
    CONFIG = "ConfigError"
    UNKNOWN = "Error"


class FleetError(Exception):
    """Base class for every error raised by sshfleet."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, detail: Any = None) -> None:
        super().__init__(message)
        self.detail = detail


class AuthExhausted(FleetError):
    """No configured credential was accepted by the server."""

    kind = ErrorKind.AUTH_EXHAUSTED


class SSHConnectionError(FleetError):
    """Network level failure: refused, reset, timed out. Retryable."""

    kind = ErrorKind.CONNECTION


class CommandError(FleetError):
    """A remote command exited non-zero."""

    kind = ErrorKind.COMMAND

    def __init__(self, message: str, *, result: Any = None, detail: Any = None) -> None:
        super().__init__(message, detail=detail)
        self.result = result


class PathMismatch(FleetError):
    """Transfer source and destination disagree on file vs directory."""

    kind = ErrorKind.PATH_MISMATCH


class Cancelled(FleetError):
    """The operator asked to stop."""

    kind = ErrorKind.CANCELLED


class ConfigError(FleetError, ValueError):
    kind = ErrorKind.CONFIG


class ScriptError(ConfigError):
    """A script file is malformed or names an unknown action."""


class TransferFailed(FleetError):
    """At least one transfer entry failed. ``detail`` holds the TransferResult."""

    def __init__(self, message: str, *, kind: ErrorKind, detail: Any = None) -> None:
        super().__init__(message, detail=detail)
        self.kind = kind


class ActionsFailed(CommandError):
    """At least one script action failed. ``detail`` holds the ActionResults."""


# errno values that mean the peer or the network went away
_NETWORK_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ENETDOWN,
    errno.ETIMEDOUT,
    errno.EPIPE,
}


def classify(exc: BaseException) -> ErrorKind:
    """Map an exception to the ErrorKind used for retry and reporting."""
    if isinstance(exc, FleetError):
        return exc.kind
    if isinstance(exc, asyncssh.PermissionDenied):
        return ErrorKind.AUTH_EXHAUSTED
    if isinstance(exc, asyncssh.SFTPPermissionDenied):
        return ErrorKind.PERMISSION
    if isinstance(exc, asyncssh.HostKeyNotVerifiable):
        return ErrorKind.UNKNOWN
    if isinstance(
        exc,
        (
            asyncssh.ConnectionLost,
            asyncssh.DisconnectError,
            asyncssh.SFTPConnectionLost,
            asyncssh.SFTPNoConnection,
        ),
    ):
        return ErrorKind.CONNECTION
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorKind.CONNECTION
    if isinstance(exc, PermissionError):
        return ErrorKind.PERMISSION
    if isinstance(exc, OSError):
        if exc.errno in _NETWORK_ERRNOS:
            return ErrorKind.CONNECTION
        # getaddrinfo failures carry no errno from the table above
        if exc.errno is None and "connect" in str(exc).lower():
            return ErrorKind.CONNECTION
    return ErrorKind.UNKNOWN
