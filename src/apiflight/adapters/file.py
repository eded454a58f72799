"""File-system storage adapter: one file per name in a directory."""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
from pathlib import Path

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class AsyncFileStorage:
    """Async storage adapter backed by files.

    Writes go to a temporary file that replaces the target, so a reader
    never sees a partially written value. Blocking I/O runs in a thread.
    """

    def __init__(self, directory: str | os.PathLike[str], *, suffix: str = ".json") -> None:
        self._directory = Path(directory)
        self._suffix = suffix
        self._lock = asyncio.Lock()

    def _path(self, name: str) -> Path:
        safe = _UNSAFE.sub("_", name)
        if not safe or safe in {".", ".."}:
            raise ValueError(f"Invalid storage name: {name!r}")
        return self._directory / f"{safe}{self._suffix}"

    async def read(self, name: str) -> str | None:
        """Read a stored value by name."""
        path = self._path(name)
        async with self._lock:
            return await asyncio.to_thread(_read_text, path)

    async def write(self, name: str, data: str) -> None:
        """Atomically store a value under name."""
        path = self._path(name)
        async with self._lock:
            await asyncio.to_thread(_write_text, path, data)

    async def remove(self, name: str) -> None:
        """Remove a stored value."""
        path = self._path(name)
        async with self._lock:
            await asyncio.to_thread(path.unlink, True)

    async def disconnect(self) -> None:
        """Nothing to release for files."""
        pass


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def _write_text(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
