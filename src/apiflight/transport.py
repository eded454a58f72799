"""Transport boundary and its httpx implementation."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

import httpx

from apiflight.duration import to_seconds
from apiflight.errors import TransportError
from apiflight.types import Duration, TransportResponse


@runtime_checkable
class AsyncTransport(Protocol):
    """Sends one request and returns the raw response.

    Raises ``TransportError`` when no response was received.
    """

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        body: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> TransportResponse:
        ...

    async def aclose(self) -> None:
        ...


def encode_body(body: Any) -> bytes | None:
    """Encode a request body: bytes and str pass through, the rest is JSON."""
    if body is None:
        return None
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    return json.dumps(body, default=str).encode("utf-8")


class HttpxTransport:
    """Transport over ``httpx.AsyncClient`` with a fixed timeout."""

    def __init__(
        self,
        *,
        base_url: str = "",
        timeout: Duration = "30s",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(to_seconds(timeout)),
        )

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        body: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> TransportResponse:
        """Send a request; connection failures and timeouts raise TransportError."""
        try:
            response = await self._client.request(
                method,
                url,
                headers=dict(headers),
                content=encode_body(body),
                params=dict(params) if params else None,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {method} {url}", timeout=True) from e
        except httpx.RequestError as e:
            raise TransportError(f"Request failed: {method} {url}: {e}") from e

        return TransportResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.content,
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()


__all__ = ["AsyncTransport", "HttpxTransport", "encode_body"]
