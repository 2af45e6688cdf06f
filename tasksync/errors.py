from __future__ import annotations

from enum import Enum

import niquests
import requests


# caldav sends HTTP through niquests when it is installed and through requests
# otherwise. Timeouts are listed first since ConnectTimeout is both kinds.
TIMEOUT_ERRORS = (requests.exceptions.Timeout, niquests.exceptions.Timeout, TimeoutError)
CONNECTION_ERRORS = (requests.exceptions.ConnectionError, niquests.exceptions.ConnectionError, ConnectionError)


class ErrorKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    CONNECTIVITY = "connectivity"


class RemoteError(Exception):
    kind = ErrorKind.PERMANENT

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(RemoteError):
    pass


class ConflictError(RemoteError):
    def __init__(self, message: str, current_token: str = "") -> None:
        super().__init__(message, status_code=412)
        self.current_token = current_token


class NotFoundError(RemoteError):
    pass


class NetworkError(RemoteError):
    kind = ErrorKind.TRANSIENT


class ServerError(RemoteError):
    kind = ErrorKind.TRANSIENT


class RequestTimeoutError(RemoteError):
    kind = ErrorKind.TRANSIENT


class RateLimitError(RemoteError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ConnectivityError(RemoteError):
    kind = ErrorKind.CONNECTIVITY


def parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    return max(0.0, seconds)


def error_for_status(status: int, message: str, retry_after: float | None = None) -> RemoteError:
    if status in (401, 403):
        return AuthError(message, status_code=status)
    if status == 404:
        return NotFoundError(message, status_code=status)
    if status == 412:
        return ConflictError(message)
    if status == 429:
        return RateLimitError(message, retry_after=retry_after)
    if status == 408:
        return RequestTimeoutError(message, status_code=status)
    if status >= 500:
        return ServerError(message, status_code=status)
    return RemoteError(message, status_code=status)


def classify(error: BaseException) -> ErrorKind:
    """Map a failure raised by a remote call onto the retry taxonomy.

    Our own ``RemoteError`` subclasses carry their kind. Transport failures
    raised underneath the CalDAV library (``niquests``, ``requests`` and
    builtin socket errors) count as transient. Everything else is permanent.
    """
    if isinstance(error, RemoteError):
        return error.kind
    if isinstance(error, TIMEOUT_ERRORS + CONNECTION_ERRORS):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT
