"""Shared pytest fixtures for market-mirror."""

from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from market_mirror.core.config import ImportConfig, ProviderConfig, StorageConfig
from market_mirror.core.models import Notification, ObjectPage, RemoteObject
from market_mirror.ingestion.store import SqliteStore
from market_mirror.prices.models import EodPrice, Split

API_BASE = "https://api.test.polygon.io"
API_KEY = "test-key"


class FakeObjectStore:
    """In-memory ObjectStore: listing pages plus object bodies by key."""

    def __init__(self, objects: list[RemoteObject] | None = None, page_size: int = 1000):
        self.objects: list[RemoteObject] = list(objects or [])
        self.bodies: dict[str, bytes] = {}
        self.page_size = page_size
        self.fail_keys: set[str] = set()
        self.fail_listing: Exception | None = None
        self.downloads: list[str] = []
        self.list_calls = 0

    def add(
        self,
        key: str,
        etag: str = "abc",
        size: int = 10,
        body: bytes | None = None,
        last_modified: datetime | None = None,
    ) -> RemoteObject:
        obj = RemoteObject(
            key=key,
            etag=etag,
            size=size,
            last_modified=last_modified or datetime(2024, 5, 1, tzinfo=timezone.utc),
        )
        self.objects.append(obj)
        self.bodies[key] = body if body is not None else b"x" * size
        return obj

    def replace(self, key: str, **changes) -> None:
        for i, obj in enumerate(self.objects):
            if obj.key == key:
                self.objects[i] = obj.model_copy(update=changes)

    async def list_objects(self, bucket: str, continuation_token: str | None = None) -> ObjectPage:
        self.list_calls += 1
        if self.fail_listing is not None:
            raise self.fail_listing
        start = int(continuation_token) if continuation_token else 0
        end = start + self.page_size
        page = tuple(self.objects[start:end])
        truncated = end < len(self.objects)
        return ObjectPage(
            objects=page,
            next_continuation_token=str(end) if truncated else None,
            is_truncated=truncated,
        )

    async def download(self, bucket: str, key: str, destination: Path) -> int:
        if key in self.fail_keys:
            raise OSError(f"simulated download failure for {key}")
        body = self.bodies.get(key, b"")
        destination.write_bytes(body)
        self.downloads.append(key)
        return len(body)


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(base_url=API_BASE, rate_limit=100, request_timeout=5)


@pytest.fixture
def storage_config(tmp_path: Path) -> StorageConfig:
    return StorageConfig(sqlite_path=str(tmp_path / "mirror.db"))


@pytest.fixture
async def store(storage_config: StorageConfig) -> SqliteStore:
    s = SqliteStore(storage_config)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def make_import_config(tmp_path: Path):
    """Factory for ImportConfig with overridable defaults."""

    def _make(**overrides) -> ImportConfig:
        defaults = dict(
            source="polygon.io",
            api_key=API_KEY,
            access_key="access",
            actions={"Tickers": "stocks"},
            options={"Import File Location": str(tmp_path / "files")},
        )
        defaults.update(overrides)
        return ImportConfig(**defaults)

    return _make


@pytest.fixture
def fake_object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def notifications() -> list[Notification]:
    return []


@pytest.fixture
def make_price():
    """Factory for EodPrice with overridable defaults."""

    def _make(day: date, close: float = 100.0, code: str = "AAPL", **overrides) -> EodPrice:
        defaults = dict(
            code=code,
            date_eod=day,
            open=close,
            high=close,
            low=close,
            close=close,
            volume=1000,
            source="polygon.io",
        )
        defaults.update(overrides)
        return EodPrice(**defaults)

    return _make


@pytest.fixture
def make_split():
    def _make(day: date, before: float, after: float, code: str = "AAPL") -> Split:
        return Split(source="polygon.io", code=code, split_date=day, before=before, after=after)

    return _make
