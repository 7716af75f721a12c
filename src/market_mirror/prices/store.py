"""SQLite-backed storage for EOD prices and splits.

Adjusted prices are never stored; ``get_adjusted_prices`` recomputes them
from the raw series and the stored splits on every call.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiosqlite

from market_mirror.core.exceptions import StorageError
from market_mirror.prices.models import AdjustedEodPrice, EodPrice, Split
from market_mirror.prices.splits import adjust_prices

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_SECONDS = 30.0


@runtime_checkable
class PriceStore(Protocol):
    """Protocol for price data persistence backends.

    Backend failures surface as StorageError.
    """

    async def store_prices(self, prices: list[EodPrice]) -> int: ...

    async def get_prices(
        self, code: str, start: date | None = None, end: date | None = None
    ) -> list[EodPrice]: ...

    async def store_splits(self, splits: list[Split]) -> int: ...

    async def get_splits(self, code: str) -> list[Split]: ...

    async def get_adjusted_prices(
        self, code: str, start: date | None = None, end: date | None = None
    ) -> list[AdjustedEodPrice]: ...


class SqlitePriceStore:
    """SQLite-backed implementation of PriceStore.

    Parameters
    ----------
    db_path : str
        Path to the SQLite database file.
        Created automatically if it doesn't exist.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._initialized = False

    @asynccontextmanager
    async def _connect(self, operation: str, table: str) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self._db_path, timeout=_BUSY_TIMEOUT_SECONDS) as db:
                yield db
        except (aiosqlite.Error, OSError) as e:
            raise StorageError(
                f"Price store {operation} on {table} failed: {e}",
                context={"operation": operation, "table": table, "path": self._db_path},
            ) from e

    async def _ensure_tables(self) -> None:
        if self._initialized:
            return

        try:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Cannot create price store directory: {e}",
                context={"operation": "initialize", "path": self._db_path},
            ) from e

        async with self._connect("initialize", "eod_prices") as db:
            await db.execute(
                """CREATE TABLE IF NOT EXISTS eod_prices (
                    source TEXT NOT NULL,
                    code TEXT NOT NULL,
                    date_eod TEXT NOT NULL,
                    open REAL NOT NULL,
                    high REAL NOT NULL,
                    low REAL NOT NULL,
                    close REAL NOT NULL,
                    volume REAL NOT NULL DEFAULT 0,
                    PRIMARY KEY (source, code, date_eod)
                )"""
            )
            await db.execute(
                """CREATE TABLE IF NOT EXISTS splits (
                    source TEXT NOT NULL,
                    code TEXT NOT NULL,
                    split_date TEXT NOT NULL,
                    before REAL NOT NULL,
                    after REAL NOT NULL,
                    PRIMARY KEY (source, code, split_date)
                )"""
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_eod_prices_code ON eod_prices (code)"
            )
            await db.commit()
        self._initialized = True

    async def store_prices(self, prices: list[EodPrice]) -> int:
        """Store prices with upsert semantics (replace on conflict)."""
        if not prices:
            return 0

        await self._ensure_tables()

        async with self._connect("insert", "eod_prices") as db:
            rows = [
                (
                    p.source,
                    p.code,
                    p.date_eod.isoformat(),
                    p.open,
                    p.high,
                    p.low,
                    p.close,
                    p.volume,
                )
                for p in prices
            ]
            await db.executemany(
                """INSERT OR REPLACE INTO eod_prices
                   (source, code, date_eod, open, high, low, close, volume)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
            await db.commit()

        logger.info("Stored %d EOD prices", len(prices))
        return len(prices)

    async def get_prices(
        self, code: str, start: date | None = None, end: date | None = None
    ) -> list[EodPrice]:
        """Retrieve stored prices for a ticker, sorted by date."""
        await self._ensure_tables()

        query = """SELECT source, code, date_eod, open, high, low, close, volume
                   FROM eod_prices WHERE code = ?"""
        params: list = [code]
        if start is not None:
            query += " AND date_eod >= ?"
            params.append(start.isoformat())
        if end is not None:
            query += " AND date_eod <= ?"
            params.append(end.isoformat())
        query += " ORDER BY date_eod"

        async with self._connect("query", "eod_prices") as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()

        return [
            EodPrice(
                source=row[0],
                code=row[1],
                date_eod=date.fromisoformat(row[2]),
                open=row[3],
                high=row[4],
                low=row[5],
                close=row[6],
                volume=row[7],
            )
            for row in rows
        ]

    async def store_splits(self, splits: list[Split]) -> int:
        if not splits:
            return 0

        await self._ensure_tables()

        async with self._connect("insert", "splits") as db:
            await db.executemany(
                """INSERT OR REPLACE INTO splits
                   (source, code, split_date, before, after)
                   VALUES (?, ?, ?, ?, ?)""",
                [
                    (s.source, s.code, s.split_date.isoformat(), s.before, s.after)
                    for s in splits
                ],
            )
            await db.commit()

        logger.info("Stored %d splits", len(splits))
        return len(splits)

    async def get_splits(self, code: str) -> list[Split]:
        await self._ensure_tables()

        async with self._connect("query", "splits") as db:
            cursor = await db.execute(
                """SELECT source, code, split_date, before, after
                   FROM splits WHERE code = ? ORDER BY split_date""",
                (code,),
            )
            rows = await cursor.fetchall()

        return [
            Split(
                source=row[0],
                code=row[1],
                split_date=date.fromisoformat(row[2]),
                before=row[3],
                after=row[4],
            )
            for row in rows
        ]

    async def get_adjusted_prices(
        self, code: str, start: date | None = None, end: date | None = None
    ) -> list[AdjustedEodPrice]:
        """Split-adjust the full stored series, then clip to [start, end].

        The whole series is adjusted first so that the factor cursor sees
        every price regardless of the requested window.
        """
        prices = await self.get_prices(code)
        splits = await self.get_splits(code)
        adjusted = adjust_prices(prices, splits)
        return [
            a
            for a in adjusted
            if (start is None or a.date_eod >= start) and (end is None or a.date_eod <= end)
        ]
