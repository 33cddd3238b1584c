"""
Error taxonomy for the sync-and-alert pipeline.

Every failure raised by the Bsale client carries an ErrorKind assigned at the
point of failure. The orchestrator maps kinds to a tenant sync_status:

  AUTH        -> failed   (token invalid/expired, needs reconnection)
  RATE_LIMIT  -> pending  (retry on the next scheduled run)
  TRANSIENT   -> pending  (server errors, timeouts, refused or lost connections)
  VALIDATION  -> failed   (malformed upstream payload)
  FATAL       -> failed
"""

import asyncio
from enum import Enum

import httpx
from sqlalchemy.exc import DBAPIError, DisconnectionError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class ErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    VALIDATION = "validation"
    FATAL = "fatal"


class BsaleError(Exception):
    """Base class for Bsale API failures."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BsaleAuthError(BsaleError):
    kind = ErrorKind.AUTH


class BsaleRateLimitError(BsaleError):
    kind = ErrorKind.RATE_LIMIT


class BsaleServerError(BsaleError):
    kind = ErrorKind.TRANSIENT


class BsaleNetworkError(BsaleError):
    kind = ErrorKind.TRANSIENT


class BsaleValidationError(BsaleError):
    kind = ErrorKind.VALIDATION


class BsaleRequestError(BsaleError):
    """Any other non-2xx response (404, 400, ...)."""

    kind = ErrorKind.FATAL


_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TransportError,
    DisconnectionError,
    PoolTimeoutError,
)


def _is_lost_connection(exc: DBAPIError) -> bool:
    # Driver errors wrapped by SQLAlchemy: only connection-level failures count
    return exc.connection_invalidated or isinstance(exc.orig, (OSError, asyncio.TimeoutError))


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception to its ErrorKind."""
    if isinstance(exc, BsaleError):
        return exc.kind
    if isinstance(exc, _TRANSIENT_TYPES):
        return ErrorKind.TRANSIENT
    if isinstance(exc, DBAPIError) and _is_lost_connection(exc):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


def is_retryable_later(kind: ErrorKind) -> bool:
    return kind in (ErrorKind.RATE_LIMIT, ErrorKind.TRANSIENT)
