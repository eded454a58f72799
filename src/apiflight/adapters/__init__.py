"""Storage adapters for apiflight (async only)."""

from contextlib import suppress

from apiflight.adapters.base import AsyncStorageAdapter
from apiflight.adapters.file import AsyncFileStorage
from apiflight.adapters.memory import AsyncMemoryStorage

# Optional adapters - only available when dependencies are installed
with suppress(ImportError):
    from apiflight.adapters.redis import AsyncRedisStorage

__all__ = [
    "AsyncFileStorage",
    "AsyncMemoryStorage",
    "AsyncRedisStorage",
    "AsyncStorageAdapter",
]
