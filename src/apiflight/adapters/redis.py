"""Redis storage adapter."""

from __future__ import annotations

from typing import Any


class AsyncRedisStorage:
    """Async Redis storage adapter.

    Values are stored as plain strings under ``<prefix>:store:<name>`` with
    no expiry; staleness is tracked by the callers' own timestamps.
    """

    def __init__(
        self,
        client: Any,  # redis.asyncio.Redis
        *,
        prefix: str = "apiflight",
    ) -> None:
        self._client = client
        self._prefix = prefix

    def _key(self, name: str) -> str:
        """Generate full Redis key for a stored name."""
        return f"{self._prefix}:store:{name}"

    async def read(self, name: str) -> str | None:
        """Read a stored value by name."""
        data = await self._client.get(self._key(name))
        if data is None:
            return None
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return str(data)

    async def write(self, name: str, data: str) -> None:
        """Store a value under name."""
        await self._client.set(self._key(name), data)

    async def remove(self, name: str) -> None:
        """Remove a stored value."""
        await self._client.delete(self._key(name))

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        await self._client.aclose()
