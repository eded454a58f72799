"""Core types for the apiflight client."""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Generic, TypeVar

from apiflight.errors import InvalidRequestError, ResultError

T = TypeVar("T")
K = TypeVar("K")
V = TypeVar("V")

# Duration type alias
Duration = str | int | timedelta  # "30s", "5m", "1m30s", milliseconds or timedelta

# Wall clock in epoch milliseconds; injectable for tests
Clock = Callable[[], int]

READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
METHODS = READ_METHODS | {"POST", "PUT", "PATCH", "DELETE"}


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class ErrorKind(str, Enum):
    """Terminal failure categories of a request or fetch."""

    NETWORK = "network"
    UNAUTHENTICATED = "unauthenticated"
    HTTP_ERROR = "http_error"
    PARSE_ERROR = "parse_error"
    REFRESH_TIMEOUT = "refresh_timeout"


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    """Description of a failure."""

    kind: ErrorKind
    status: int  # 0 when no response was received
    message: str = ""
    detail: Any = None


@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    """Either a value or an error, never both."""

    value: T | None = None
    error: ErrorInfo | None = None
    status: int = 200

    def __post_init__(self) -> None:
        if self.error is not None and self.value is not None:
            raise ValueError("Result cannot hold both a value and an error")

    @classmethod
    def ok(cls, value: T | None = None, *, status: int = 200) -> Result[T]:
        return cls(value=value, status=status)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        status: int,
        message: str = "",
        *,
        detail: Any = None,
    ) -> Result[T]:
        error = ErrorInfo(kind=kind, status=status, message=message, detail=detail)
        return cls(error=error, status=status)

    @classmethod
    def from_error(cls, error: ErrorInfo) -> Result[T]:
        return cls(error=error, status=error.status)

    @property
    def is_ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None

    def unwrap(self) -> T | None:
        """Return the value, raising ``ResultError`` on failure."""
        if self.error is not None:
            raise ResultError(self.error)
        return self.value


@dataclass(frozen=True, slots=True)
class Credential:
    """Access/refresh token pair with an optional expiry (epoch ms)."""

    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None

    def is_valid(self, now: int) -> bool:
        return self.expires_at is None or now < self.expires_at

    def expires_within(self, window_ms: int, now: int) -> bool:
        """True if the credential expires within ``window_ms`` of ``now``."""
        return self.expires_at is not None and now + window_ms >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Credential:
        return cls(
            access_token=data["accessToken"],
            refresh_token=data.get("refreshToken"),
            expires_at=data.get("expiresAt"),
        )

    @classmethod
    def from_token_response(cls, payload: Any, now: int) -> Credential:
        """Build a credential from a login or refresh response body.

        Accepts camelCase or snake_case keys, the ``{"data": ...}`` response
        envelope and a nested ``{"tokens": ...}`` object. ``expiresIn`` is in
        seconds, ``expiresAt`` in epoch milliseconds.
        """
        if isinstance(payload, Mapping) and isinstance(payload.get("data"), Mapping):
            payload = payload["data"]
        if isinstance(payload, Mapping) and isinstance(payload.get("tokens"), Mapping):
            payload = payload["tokens"]
        if not isinstance(payload, Mapping):
            raise ValueError("Token response is not an object")

        access = payload.get("accessToken") or payload.get("access_token")
        if not access:
            raise ValueError("Token response has no access token")
        refresh = payload.get("refreshToken") or payload.get("refresh_token")

        expires_at = payload.get("expiresAt") or payload.get("expires_at")
        if expires_at is None:
            expires_in = payload.get("expiresIn") or payload.get("expires_in")
            if expires_in is not None:
                expires_at = now + int(expires_in) * 1000

        return cls(
            access_token=str(access),
            refresh_token=str(refresh) if refresh else None,
            expires_at=int(expires_at) if expires_at is not None else None,
        )

    def __repr__(self) -> str:
        # Tokens stay out of logs and tracebacks
        return f"Credential(expires_at={self.expires_at!r})"


def _normalize(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))


@dataclass(frozen=True, slots=True)
class RequestDescriptor:
    """One logical request. Immutable once constructed."""

    method: str
    endpoint: str
    body: Any = None
    params: Mapping[str, Any] | None = None
    headers: Mapping[str, str] | None = None
    requires_auth: bool = True
    dedupe: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.method, str):
            raise InvalidRequestError(f"Invalid method: {self.method!r}")
        method = self.method.upper()
        if method not in METHODS:
            raise InvalidRequestError(f"Unsupported method: {self.method!r}")
        if not isinstance(self.endpoint, str) or not self.endpoint.strip():
            raise InvalidRequestError("Endpoint must be a non-empty string")
        object.__setattr__(self, "method", method)

    @property
    def is_read(self) -> bool:
        return self.method in READ_METHODS

    @property
    def dedup_key(self) -> str:
        """Deterministic identity of (method, endpoint, body, params)."""
        digest = hashlib.sha256(
            _normalize([self.method, self.endpoint, self.body, self.params]).encode()
        ).hexdigest()[:16]
        return f"{self.method}:{self.endpoint}:{digest}"


@dataclass(frozen=True, slots=True)
class TransportResponse:
    """Raw response as returned by a transport."""

    status: int
    headers: Mapping[str, str]
    body: bytes = b""

    @property
    def content_type(self) -> str:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value.split(";", 1)[0].strip().lower()
        return ""


class EntryState(str, Enum):
    """Externally observable state of one cache key."""

    EMPTY = "empty"
    LOADING = "loading"
    ERROR = "error"
    FRESH = "fresh"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[K, V]):
    """Cached state for one key. Replaced as a whole, never mutated."""

    key: K
    value: V | None = None
    has_value: bool = False
    fetched_at: int | None = None  # Unix timestamp ms
    loading: bool = False
    error: ErrorInfo | None = None

    def is_fresh(self, now: int, ttl: int) -> bool:
        return (
            self.has_value
            and not self.loading
            and self.fetched_at is not None
            and now - self.fetched_at < ttl
        )

    def state(self, now: int, ttl: int) -> EntryState:
        if self.loading:
            return EntryState.LOADING
        if self.error is not None:
            return EntryState.ERROR
        if self.is_fresh(now, ttl):
            return EntryState.FRESH
        if self.has_value:
            return EntryState.STALE
        return EntryState.EMPTY
