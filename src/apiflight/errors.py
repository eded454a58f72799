"""Exception hierarchy.

Request outcomes travel as :class:`apiflight.types.Result` values; the
exceptions here cover misuse, transport internals and ``Result.unwrap()``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from apiflight.types import ErrorInfo


class ApiflightError(Exception):
    """Base class for all apiflight exceptions."""


class InvalidRequestError(ApiflightError, ValueError):
    """A request descriptor was malformed (unknown method, empty endpoint)."""


class TransportError(ApiflightError):
    """No response was received (connection failure, timeout)."""

    def __init__(self, message: str, *, timeout: bool = False) -> None:
        super().__init__(message)
        self.timeout = timeout


class ResultError(ApiflightError):
    """Raised by ``Result.unwrap()`` on a failed result."""

    def __init__(self, error: ErrorInfo) -> None:
        super().__init__(f"{error.kind.value} ({error.status}): {error.message}")
        self.error = error

    @property
    def status(self) -> int:
        return self.error.status


__all__ = [
    "ApiflightError",
    "InvalidRequestError",
    "ResultError",
    "TransportError",
]
