"""Relay error types and HTTP status classification."""

from __future__ import annotations

from enum import Enum


class RelayError(Exception):
    """Base class for relay failures."""


class AuthorizationError(RelayError):
    """Raised when source API credentials cannot be acquired at startup.

    This is the only failure that is allowed to stop the process.
    """


class DeliveryError(RelayError):
    """Raised when a single record cannot be delivered to its destination."""


class ErrorClass(str, Enum):
    """Coarse classification of a source API failure, used for logging."""

    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"
    TRANSIENT = "transient"
    UNEXPECTED = "unexpected"


def classify_status(status: int | None) -> ErrorClass:
    """Map an HTTP status code onto an :class:`ErrorClass`.

    ``None`` means the request never got a response (transport error) and
    is treated as transient.
    """
    if status is None or status >= 500:
        return ErrorClass.TRANSIENT
    if status == 429:
        return ErrorClass.RATE_LIMITED
    if status == 403:
        return ErrorClass.FORBIDDEN
    return ErrorClass.UNEXPECTED


class SourceAPIError(RelayError):
    """A failed call to the form source API."""

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def error_class(self) -> ErrorClass:
        return classify_status(self.status)

    @property
    def is_transient(self) -> bool:
        return self.error_class in (ErrorClass.RATE_LIMITED, ErrorClass.TRANSIENT)
