"""Base adapter protocol for durable key-value storage."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class AsyncStorageAdapter(Protocol):
    """Async key-value storage for serialized state.

    Callers own any batching or debouncing; adapters write through.
    """

    async def read(self, name: str) -> str | None:
        """Read a stored value by name."""
        ...

    async def write(self, name: str, data: str) -> None:
        """Store a value under name, replacing any previous one."""
        ...

    async def remove(self, name: str) -> None:
        """Remove a stored value. Missing names are ignored."""
        ...

    async def disconnect(self) -> None:
        """Release any resources held by the adapter."""
        ...
