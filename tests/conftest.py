"""Shared pytest fixtures."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from apiflight import (
    ApiClient,
    AsyncMemoryStorage,
    Credential,
    TokenManager,
    TransportResponse,
)

REFRESH_URL = "/api/auth/token/refresh"


def json_response(status: int = 200, data: Any = None) -> TransportResponse:
    """Build a JSON transport response."""
    body = b"" if data is None else json.dumps(data).encode()
    return TransportResponse(
        status=status, headers={"content-type": "application/json"}, body=body
    )


@dataclass
class SentRequest:
    method: str
    url: str
    headers: dict[str, str]
    body: Any = None
    params: Mapping[str, Any] | None = None

    @property
    def token(self) -> str | None:
        auth = self.headers.get("Authorization")
        return auth.removeprefix("Bearer ") if auth else None


Reply = TransportResponse | BaseException | Callable[[SentRequest], TransportResponse]


@dataclass
class FakeTransport:
    """Scriptable transport that records every request.

    Replies are consumed in order per (method, url); the last one repeats.
    Each send suspends for ``delay`` seconds so concurrent callers overlap.
    """

    delay: float = 0.01
    calls: list[SentRequest] = field(default_factory=list)
    routes: dict[tuple[str, str], list[Reply]] = field(default_factory=dict)
    closed: bool = False

    def reply(self, method: str, url: str, *replies: Reply) -> None:
        self.routes[(method, url)] = list(replies)

    def count(self, method: str, url: str) -> int:
        return sum(1 for c in self.calls if c.method == method and c.url == url)

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        body: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> TransportResponse:
        request = SentRequest(method, url, dict(headers), body, params)
        self.calls.append(request)
        await asyncio.sleep(self.delay)
        queue = self.routes.get((method, url))
        if not queue:
            return json_response(404, {"message": "not found"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(request)
        return item

    async def aclose(self) -> None:
        self.closed = True


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def storage() -> AsyncMemoryStorage:
    """Create a fresh AsyncMemoryStorage for each test."""
    return AsyncMemoryStorage()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tokens(
    storage: AsyncMemoryStorage, transport: FakeTransport, clock: FakeClock
) -> TokenManager:
    return TokenManager(storage, transport, refresh_endpoint=REFRESH_URL, clock=clock)


@pytest.fixture
def client(transport: FakeTransport, tokens: TokenManager) -> ApiClient:
    return ApiClient(transport, tokens)


@pytest.fixture
def expired_credential(clock: FakeClock) -> Credential:
    return Credential(access_token="old", refresh_token="rt-1", expires_at=clock.now - 1)
