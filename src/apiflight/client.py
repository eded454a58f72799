"""Authenticated request pipeline."""

from __future__ import annotations

import inspect
import json
import logging
import time
from collections.abc import Callable, Mapping
from enum import Enum
from functools import partial
from typing import Any

from apiflight.adapters.base import AsyncStorageAdapter
from apiflight.adapters.memory import AsyncMemoryStorage
from apiflight.config import ClientSettings
from apiflight.endpoints import join_url
from apiflight.errors import TransportError
from apiflight.singleflight import SingleFlight
from apiflight.token_manager import TokenManager
from apiflight.transport import AsyncTransport, HttpxTransport
from apiflight.types import (
    Clock,
    Credential,
    Duration,
    ErrorKind,
    RequestDescriptor,
    Result,
    TransportResponse,
    now_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_HEADERS: dict[str, str] = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}

# Zero-argument hook, sync or async
UnauthorizedHook = Callable[[], Any]


class Phase(Enum):
    """States of one logical request.

    ATTEMPT -> DONE, or ATTEMPT -> REFRESH -> RETRY -> DONE. Only ATTEMPT
    can move to REFRESH, which bounds every request to one retry.
    """

    ATTEMPT = "attempt"
    REFRESH = "refresh"
    RETRY = "retry"
    DONE = "done"


def unwrap_envelope(data: Any) -> Any:
    """Strip the backend's ``{"status"|"success", "data", ...}`` wrapper."""
    if (
        isinstance(data, dict)
        and "data" in data
        and ("status" in data or "success" in data)
    ):
        return data["data"]
    return data


def _error_message(body: Any, status: int) -> str:
    if isinstance(body, dict):
        for field in ("message", "error", "detail"):
            value = body.get(field)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {status}"


class ApiClient:
    """Executes requests, attaching credentials and refreshing them on 401.

    Every outcome is returned as a :class:`Result`; the only exception that
    escapes :meth:`execute` is ``InvalidRequestError`` from building a bad
    descriptor. Concurrent identical reads share one transport call.
    """

    def __init__(
        self,
        transport: AsyncTransport,
        tokens: TokenManager | None = None,
        *,
        prefix: str = "",
        default_headers: Mapping[str, str] | None = None,
        auto_refresh: bool = True,
        on_unauthorized: UnauthorizedHook | None = None,
        unwrap_envelope: bool = False,
        clear_on_refresh_failure: bool = True,
    ) -> None:
        self._transport = transport
        self._tokens = tokens
        self._prefix = prefix
        self._default_headers = {**DEFAULT_HEADERS, **(default_headers or {})}
        self._auto_refresh = auto_refresh
        self._on_unauthorized = on_unauthorized
        self._unwrap_envelope = unwrap_envelope
        self._clear_on_refresh_failure = clear_on_refresh_failure
        self._in_flight: SingleFlight[Result[Any]] = SingleFlight()

    @property
    def tokens(self) -> TokenManager | None:
        return self._tokens

    @property
    def in_flight(self) -> int:
        """Number of deduplicated requests currently in flight."""
        return len(self._in_flight)

    async def execute(self, descriptor: RequestDescriptor) -> Result[Any]:
        """Run one logical request to completion."""
        if descriptor.dedupe and descriptor.is_read:
            key = descriptor.dedup_key
            if key in self._in_flight:
                logger.debug("Joining in-flight %s %s", descriptor.method, descriptor.endpoint)
            return await self._in_flight.do(key, partial(self._run, descriptor))
        return await self._run(descriptor)

    async def request(self, method: str, endpoint: str, **kwargs: Any) -> Result[Any]:
        return await self.execute(RequestDescriptor(method, endpoint, **kwargs))

    async def get(
        self,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        requires_auth: bool = True,
        dedupe: bool = True,
    ) -> Result[Any]:
        return await self.request(
            "GET",
            endpoint,
            params=params,
            headers=headers,
            requires_auth=requires_auth,
            dedupe=dedupe,
        )

    async def post(self, endpoint: str, body: Any = None, **kwargs: Any) -> Result[Any]:
        return await self.request("POST", endpoint, body=body, **kwargs)

    async def put(self, endpoint: str, body: Any = None, **kwargs: Any) -> Result[Any]:
        return await self.request("PUT", endpoint, body=body, **kwargs)

    async def patch(self, endpoint: str, body: Any = None, **kwargs: Any) -> Result[Any]:
        return await self.request("PATCH", endpoint, body=body, **kwargs)

    async def delete(self, endpoint: str, **kwargs: Any) -> Result[Any]:
        return await self.request("DELETE", endpoint, **kwargs)

    async def aclose(self) -> None:
        """Close the underlying transport."""
        await self._transport.aclose()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _run(self, descriptor: RequestDescriptor) -> Result[Any]:
        tokens = self._tokens
        credential: Credential | None = None
        if descriptor.requires_auth:
            credential = await tokens.get() if tokens is not None else None
            if credential is None:
                return Result.failure(ErrorKind.UNAUTHENTICATED, 401, "Not authenticated")

        phase = Phase.ATTEMPT
        result: Result[Any] = Result.failure(ErrorKind.NETWORK, 0, "Request not sent")
        while phase is not Phase.DONE:
            if phase is Phase.REFRESH:
                if tokens is None:
                    raise RuntimeError("Token refresh requires a TokenManager")
                refreshed = await self._refreshed_credential(tokens, credential)
                if not refreshed.is_ok:
                    result = await self._refresh_failed(tokens, refreshed)
                    phase = Phase.DONE
                    continue
                credential = refreshed.value
                phase = Phase.RETRY
                continue

            try:
                response = await self._send(descriptor, credential)
            except TransportError as e:
                logger.debug("%s %s failed: %s", descriptor.method, descriptor.endpoint, e)
                result = Result.failure(ErrorKind.NETWORK, 0, str(e))
                phase = Phase.DONE
                continue

            if response.status == 401:
                if (
                    descriptor.requires_auth
                    and phase is Phase.ATTEMPT
                    and self._auto_refresh
                    and tokens is not None
                ):
                    phase = Phase.REFRESH
                    continue
                if phase is Phase.RETRY:
                    logger.warning(
                        "%s %s still unauthorized after token refresh",
                        descriptor.method,
                        descriptor.endpoint,
                    )
                    await self._notify_unauthorized()
                result = self._unauthenticated(response)
                phase = Phase.DONE
                continue

            result = self._parse(response)
            phase = Phase.DONE

        return result

    async def _refreshed_credential(
        self, tokens: TokenManager, used: Credential | None
    ) -> Result[Credential]:
        # Another request may already have refreshed since this one was sent
        current = await tokens.get()
        if current is not None and used is not None and current.access_token != used.access_token:
            return Result.ok(current)
        return await tokens.refresh()

    async def _refresh_failed(
        self, tokens: TokenManager, refreshed: Result[Credential]
    ) -> Result[Any]:
        if self._clear_on_refresh_failure and refreshed.kind not in (
            ErrorKind.NETWORK,
            ErrorKind.REFRESH_TIMEOUT,
        ):
            await tokens.clear()
            logger.warning("Session cleared after failed token refresh")
        await self._notify_unauthorized()
        message = refreshed.error.message if refreshed.error else ""
        return Result.failure(
            ErrorKind.UNAUTHENTICATED,
            401,
            "Token refresh failed",
            detail=message or None,
        )

    async def _notify_unauthorized(self) -> None:
        if self._on_unauthorized is None:
            return
        try:
            outcome = self._on_unauthorized()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Unauthorized hook raised")

    def _headers(
        self, descriptor: RequestDescriptor, credential: Credential | None
    ) -> dict[str, str]:
        headers = dict(self._default_headers)
        if descriptor.headers:
            headers.update(descriptor.headers)
        if credential is not None:
            headers["Authorization"] = f"Bearer {credential.access_token}"
        return headers

    async def _send(
        self, descriptor: RequestDescriptor, credential: Credential | None
    ) -> TransportResponse:
        url = join_url(self._prefix, descriptor.endpoint)
        started = time.perf_counter()
        response = await self._transport.send(
            descriptor.method,
            url,
            headers=self._headers(descriptor, credential),
            body=descriptor.body,
            params=descriptor.params,
        )
        logger.debug(
            "%s %s -> %d (%.0fms)",
            descriptor.method,
            url,
            response.status,
            (time.perf_counter() - started) * 1000,
        )
        return response

    def _unauthenticated(self, response: TransportResponse) -> Result[Any]:
        body = self._decode_error_body(response)
        return Result.failure(
            ErrorKind.UNAUTHENTICATED, 401, _error_message(body, 401), detail=body
        )

    def _decode_error_body(self, response: TransportResponse) -> Any:
        if not response.body:
            return None
        try:
            return json.loads(response.body)
        except ValueError:
            return response.body.decode("utf-8", errors="replace")

    def _parse(self, response: TransportResponse) -> Result[Any]:
        status = response.status
        if status >= 400:
            body = self._decode_error_body(response)
            return Result.failure(
                ErrorKind.HTTP_ERROR, status, _error_message(body, status), detail=body
            )

        if not response.body:
            return Result.ok(None, status=status)

        content_type = response.content_type
        if content_type == "application/json" or content_type.endswith("+json"):
            try:
                data = json.loads(response.body)
            except ValueError as e:
                return Result.failure(
                    ErrorKind.PARSE_ERROR, status, f"Malformed JSON body: {e}"
                )
            if self._unwrap_envelope:
                data = unwrap_envelope(data)
            return Result.ok(data, status=status)

        if content_type.startswith("text/"):
            try:
                return Result.ok(response.body.decode("utf-8"), status=status)
            except UnicodeDecodeError as e:
                return Result.failure(ErrorKind.PARSE_ERROR, status, str(e))

        return Result.ok(response.body, status=status)


def create_client(
    settings: ClientSettings | None = None,
    *,
    storage: AsyncStorageAdapter | None = None,
    transport: AsyncTransport | None = None,
    on_unauthorized: UnauthorizedHook | None = None,
    refresh_timeout: Duration | None = None,
    auto_refresh: bool = True,
    unwrap_envelope: bool = False,
    clock: Clock = now_ms,
) -> ApiClient:
    """Wire transport, credential store and pipeline from settings.

    Args:
        settings: Endpoint, timeout and header configuration
        storage: Durable storage for the credential (default: in-memory)
        transport: Transport override (default: httpx with settings' timeout)
        on_unauthorized: Hook invoked when re-authentication failed
        refresh_timeout: Bound on waiting for a shared token refresh
        auto_refresh: Refresh and retry once on 401
        unwrap_envelope: Strip the backend's response envelope
        clock: Epoch-millisecond clock

    Returns:
        ApiClient with its TokenManager available as ``client.tokens``
    """
    settings = settings or ClientSettings()
    transport = transport or HttpxTransport(
        base_url=settings.base_url, timeout=settings.timeout
    )
    tokens = TokenManager(
        storage or AsyncMemoryStorage(),
        transport,
        refresh_endpoint=join_url(settings.prefix, settings.refresh_endpoint),
        storage_name=settings.credential_storage_name,
        refresh_timeout=refresh_timeout,
        clock=clock,
    )
    return ApiClient(
        transport,
        tokens,
        prefix=settings.prefix,
        default_headers=settings.default_headers,
        auto_refresh=auto_refresh,
        on_unauthorized=on_unauthorized,
        unwrap_envelope=unwrap_envelope,
    )


__all__ = ["ApiClient", "Phase", "UnauthorizedHook", "create_client", "unwrap_envelope"]
