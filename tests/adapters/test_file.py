"""Tests for the file-system adapter."""

from pathlib import Path

import pytest

from apiflight import AsyncFileStorage, AsyncStorageAdapter, CachedResource


@pytest.fixture
def file_storage(tmp_path: Path) -> AsyncFileStorage:
    return AsyncFileStorage(tmp_path / "state")


class TestAsyncFileStorage:
    @pytest.mark.asyncio
    async def test_read_nonexistent_returns_none(self, file_storage: AsyncFileStorage) -> None:
        assert await file_storage.read("missing") is None

    @pytest.mark.asyncio
    async def test_write_creates_directory(
        self, file_storage: AsyncFileStorage, tmp_path: Path
    ) -> None:
        await file_storage.write("session", "data")
        assert (tmp_path / "state" / "session.json").read_text() == "data"
        assert await file_storage.read("session") == "data"

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(
        self, file_storage: AsyncFileStorage, tmp_path: Path
    ) -> None:
        await file_storage.write("session", "one")
        await file_storage.write("session", "two")
        assert await file_storage.read("session") == "two"
        assert [p.name for p in (tmp_path / "state").iterdir()] == ["session.json"]

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, file_storage: AsyncFileStorage) -> None:
        await file_storage.write("session", "data")
        await file_storage.remove("session")
        await file_storage.remove("session")
        assert await file_storage.read("session") is None

    @pytest.mark.asyncio
    async def test_names_are_sanitized(
        self, file_storage: AsyncFileStorage, tmp_path: Path
    ) -> None:
        await file_storage.write("../escape/me", "data")
        assert not (tmp_path / "escape").exists()
        assert await file_storage.read("../escape/me") == "data"

    @pytest.mark.asyncio
    async def test_invalid_name(self, file_storage: AsyncFileStorage) -> None:
        with pytest.raises(ValueError):
            await file_storage.read("")

    def test_satisfies_protocol(self, file_storage: AsyncFileStorage) -> None:
        assert isinstance(file_storage, AsyncStorageAdapter)


@pytest.mark.asyncio
async def test_cache_survives_restart(tmp_path: Path) -> None:
    async def fetch() -> str:
        return "fetched"

    first: CachedResource[str, str] = CachedResource(
        storage=AsyncFileStorage(tmp_path), storage_name="notes", ttl="1h"
    )
    first.set("k", "saved")
    await first.aclose()

    second: CachedResource[str, str] = CachedResource(
        storage=AsyncFileStorage(tmp_path), storage_name="notes", ttl="1h"
    )
    assert (await second.get("k", fetch)).value == "saved"
