"""Integration test fixtures: real SQLite and filesystem I/O, no network."""

from __future__ import annotations

import gzip
from datetime import datetime, timezone
from pathlib import Path

import pytest

from market_mirror.core.config import ProviderConfig, StorageConfig
from market_mirror.ingestion.client import PolygonClient
from market_mirror.ingestion.store import SqliteStore
from market_mirror.prices.store import SqlitePriceStore

DAY_AGG_HEADER = "ticker,volume,open,close,high,low,window_start,transactions\n"


@pytest.fixture
async def integration_store(tmp_path: Path) -> SqliteStore:
    """An initialized SqliteStore for integration tests."""
    store = SqliteStore(StorageConfig(sqlite_path=str(tmp_path / "integration.db")))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def integration_price_store(tmp_path: Path) -> SqlitePriceStore:
    # same file as the transactional store, different tables
    return SqlitePriceStore(str(tmp_path / "integration.db"))


@pytest.fixture
async def integration_client(provider_config: ProviderConfig) -> PolygonClient:
    async with PolygonClient(provider_config, "test-key") as c:
        yield c


def _day_nanos(day: str) -> int:
    dt = datetime.fromisoformat(day).replace(hour=4, tzinfo=timezone.utc)
    return int(dt.timestamp()) * 1_000_000_000


def day_agg_file(rows: list[tuple[str, str, float]]) -> bytes:
    """Gzip a day-aggregate CSV from (ticker, ISO date, close) tuples."""
    lines = [
        f"{code},1000,{close},{close},{close},{close},{_day_nanos(day)},10\n"
        for code, day, close in rows
    ]
    return gzip.compress((DAY_AGG_HEADER + "".join(lines)).encode())


@pytest.fixture
def populated_bucket(fake_object_store):
    """Three daily flat files bracketing a 4-for-1 AAPL split on 2099-01-05."""
    prefix = "us_stocks_sip/day_aggs_v1"
    days = {
        "2099-01-02": [("AAPL", 400.0), ("MSFT", 300.0)],
        "2099-01-05": [("AAPL", 101.0), ("MSFT", 301.0)],
        "2099-01-06": [("AAPL", 102.0), ("MSFT", 302.0)],
    }
    for day, rows in days.items():
        fake_object_store.add(
            f"{prefix}/{day[:4]}/{day[5:7]}/{day}.csv.gz",
            etag=f'"etag-{day}"',
            size=100,
            body=day_agg_file([(code, day, close) for code, close in rows]),
        )
    return fake_object_store
