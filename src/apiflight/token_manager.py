"""Credential store: current access/refresh tokens, persistence and refresh."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from apiflight.adapters.base import AsyncStorageAdapter
from apiflight.duration import to_seconds
from apiflight.errors import TransportError
from apiflight.singleflight import SingleFlight
from apiflight.transport import AsyncTransport
from apiflight.types import Clock, Credential, Duration, ErrorKind, Result, now_ms

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_NAME = "apiflight.credential"
DEFAULT_REFRESH_ENDPOINT = "/api/auth/token/refresh"

_HYDRATE = "hydrate"
_REFRESH = "refresh"

_JSON_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}


class TokenManager:
    """Single source of truth for the current credential.

    Reads are served from memory after a one-time hydration from storage.
    Writes go through :meth:`set`, :meth:`clear` and :meth:`refresh` only.
    At most one refresh runs at a time; concurrent callers join it.
    The store never logs the user out on its own: a failed refresh leaves
    the credential in place for the caller to decide.
    """

    def __init__(
        self,
        storage: AsyncStorageAdapter,
        transport: AsyncTransport,
        *,
        refresh_endpoint: str = DEFAULT_REFRESH_ENDPOINT,
        storage_name: str = DEFAULT_STORAGE_NAME,
        refresh_timeout: Duration | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._storage = storage
        self._transport = transport
        self._refresh_endpoint = refresh_endpoint
        self._storage_name = storage_name
        self._refresh_timeout = (
            to_seconds(refresh_timeout) if refresh_timeout is not None else None
        )
        self._clock = clock
        self._credential: Credential | None = None
        self._hydrated = False
        # Bumped by set() and clear()
        self._generation = 0
        self._flight: SingleFlight[Any] = SingleFlight()
        self._write_lock = asyncio.Lock()

    @property
    def current(self) -> Credential | None:
        """In-memory credential without touching storage."""
        return self._credential

    @property
    def refreshing(self) -> bool:
        return _REFRESH in self._flight

    async def get(self) -> Credential | None:
        """Return the credential, hydrating from storage on first use."""
        if self._credential is None and not self._hydrated:
            await self._flight.do(_HYDRATE, self._hydrate)
        return self._credential

    async def set(self, credential: Credential) -> None:
        """Replace the credential and persist it."""
        self._credential = credential
        self._hydrated = True
        self._generation += 1
        await self._persist()

    async def clear(self) -> None:
        """Forget the credential in memory and storage. Idempotent."""
        self._credential = None
        self._hydrated = True
        self._generation += 1
        await self._persist()

    async def is_valid(self) -> bool:
        credential = await self.get()
        return credential is not None and credential.is_valid(self._clock())

    async def login(self, payload: Mapping[str, Any]) -> Credential:
        """Store the credential carried by a login/token response."""
        credential = Credential.from_token_response(payload, self._clock())
        await self.set(credential)
        logger.info("Credential stored from login response")
        return credential

    async def refresh(self) -> Result[Credential]:
        """Exchange the refresh token for a new credential (single-flight)."""
        task = self._flight.start(_REFRESH, self._refresh)
        if self._refresh_timeout is None:
            return await asyncio.shield(task)
        try:
            return await asyncio.wait_for(asyncio.shield(task), self._refresh_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Gave up waiting for token refresh after %.3fs", self._refresh_timeout
            )
            return Result.failure(
                ErrorKind.REFRESH_TIMEOUT, 0, "Token refresh did not complete in time"
            )

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _hydrate(self) -> None:
        generation = self._generation
        try:
            raw = await self._storage.read(self._storage_name)
        except Exception:
            logger.exception("Failed to read persisted credential")
            return
        finally:
            self._hydrated = True
        # An explicit set() or clear() may have landed while the read was pending
        if raw is None or generation != self._generation:
            return
        try:
            self._credential = Credential.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring unreadable persisted credential")
            return
        logger.info("Credential hydrated from storage")

    async def _persist(self) -> None:
        # Always writes the latest in-memory state, so storage converges to
        # memory even when set()/clear() calls overlap.
        async with self._write_lock:
            credential = self._credential
            try:
                if credential is None:
                    await self._storage.remove(self._storage_name)
                else:
                    await self._storage.write(
                        self._storage_name, json.dumps(credential.to_dict())
                    )
            except Exception:
                # Memory stays authoritative; storage catches up on the next write
                logger.exception("Failed to persist credential")

    async def _refresh(self) -> Result[Credential]:
        credential = await self.get()
        if credential is None or not credential.refresh_token:
            return Result.failure(
                ErrorKind.UNAUTHENTICATED, 401, "No refresh token available"
            )

        generation = self._generation
        logger.debug("Refreshing access token via %s", self._refresh_endpoint)
        try:
            response = await self._transport.send(
                "POST",
                self._refresh_endpoint,
                headers=_JSON_HEADERS,
                body={"refreshToken": credential.refresh_token},
            )
        except TransportError as e:
            logger.warning("Token refresh failed: %s", e)
            return Result.failure(ErrorKind.NETWORK, 0, str(e))

        if not 200 <= response.status < 300:
            logger.warning("Token refresh rejected with HTTP %d", response.status)
            kind = (
                ErrorKind.UNAUTHENTICATED
                if response.status in (401, 403)
                else ErrorKind.HTTP_ERROR
            )
            return Result.failure(kind, response.status, "Token refresh rejected")

        try:
            payload = json.loads(response.body)
            fresh = Credential.from_token_response(payload, self._clock())
        except (ValueError, TypeError) as e:
            logger.warning("Token refresh returned an unusable body: %s", e)
            return Result.failure(ErrorKind.PARSE_ERROR, response.status, str(e))

        # set() or clear() landed while the request was in flight; they win
        if generation != self._generation:
            logger.info("Discarding refreshed token: credential changed during refresh")
            if self._credential is not None:
                return Result.ok(self._credential, status=response.status)
            return Result.failure(
                ErrorKind.UNAUTHENTICATED, 401, "Session cleared during refresh"
            )
        if fresh.refresh_token is None:
            fresh = replace(fresh, refresh_token=credential.refresh_token)
        await self.set(fresh)
        logger.info("Access token refreshed")
        return Result.ok(fresh, status=response.status)


__all__ = ["DEFAULT_REFRESH_ENDPOINT", "DEFAULT_STORAGE_NAME", "TokenManager"]
