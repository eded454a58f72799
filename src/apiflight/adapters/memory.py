"""In-memory storage adapter (async only)."""

import asyncio
from collections import Counter


class AsyncMemoryStorage:
    """Async in-memory storage adapter.

    Keeps per-name write and remove counters so callers can observe how
    often state actually reached storage.
    """

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})
        self._lock = asyncio.Lock()
        self.writes: Counter[str] = Counter()
        self.removes: Counter[str] = Counter()
        self.reads: Counter[str] = Counter()

    async def read(self, name: str) -> str | None:
        """Read a stored value by name."""
        async with self._lock:
            self.reads[name] += 1
            return self._data.get(name)

    async def write(self, name: str, data: str) -> None:
        """Store a value under name."""
        async with self._lock:
            self.writes[name] += 1
            self._data[name] = data

    async def remove(self, name: str) -> None:
        """Remove a stored value."""
        async with self._lock:
            self.removes[name] += 1
            self._data.pop(name, None)

    async def disconnect(self) -> None:
        """Disconnect from the storage backend (no-op for memory)."""
        pass

    def snapshot(self) -> dict[str, str]:
        """Copy of everything currently stored."""
        return dict(self._data)
