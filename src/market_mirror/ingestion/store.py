"""Transactional store: generic query/execute surface plus import tables.

Each call opens its own connection so concurrent fanout workers never share
one. Use a file path, not ``:memory:``, since every connection to an
in-memory database sees a different database.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, ClassVar, Protocol, runtime_checkable
from uuid import UUID

import aiosqlite

from market_mirror.core.config import StorageConfig
from market_mirror.core.exceptions import StorageError

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_SECONDS = 30.0


@runtime_checkable
class SqlExecutor(Protocol):
    """The persistence surface the importer depends on."""

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]: ...
    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int: ...


class SqliteStore:
    """SQLite implementation of the transactional store.

    Uses aiosqlite for async access, WAL mode so readers and a writer can
    overlap, and a version-tracked migration system.
    """

    _MIGRATIONS: ClassVar[dict[int, tuple[str, list[str]]]] = {
        1: (
            "Initial schema",
            [
                """CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS api_transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source TEXT NOT NULL,
                    category TEXT NOT NULL,
                    sub_category TEXT,
                    request_uri TEXT NOT NULL,
                    response_body TEXT,
                    process_id TEXT,
                    created_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS remote_files (
                    source TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    hash_code TEXT NOT NULL,
                    location TEXT NOT NULL,
                    source_name TEXT NOT NULL,
                    local_name TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    update_date TEXT,
                    process_id TEXT,
                    updated_at TEXT DEFAULT (datetime('now')),
                    PRIMARY KEY (source, source_name)
                )""",
                "CREATE INDEX IF NOT EXISTS idx_api_transactions_source ON api_transactions(source)",
                "CREATE INDEX IF NOT EXISTS idx_api_transactions_category ON api_transactions(source, category, sub_category)",
                "CREATE INDEX IF NOT EXISTS idx_remote_files_provider ON remote_files(source, provider)",
            ],
        ),
    }

    def __init__(self, config: StorageConfig) -> None:
        self._path = config.sqlite_path

    @property
    def path(self) -> str:
        return self._path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        db = await aiosqlite.connect(self._path, timeout=_BUSY_TIMEOUT_SECONDS)
        try:
            db.row_factory = aiosqlite.Row
            yield db
        finally:
            await db.close()

    async def initialize(self) -> None:
        """Create the database file, enable WAL, and run migrations."""
        try:
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            async with self._connect() as db:
                await db.execute("PRAGMA journal_mode=WAL")
                current = await self._get_schema_version(db)
                await self._apply_migrations(db, current)
                await db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to initialize SQLite store: {e}",
                context={"operation": "initialize", "path": self._path},
            ) from e

    async def close(self) -> None:
        # Connections are per call; nothing is held open between them.
        return None

    # --- Schema Migration ---

    @staticmethod
    async def _get_schema_version(db: aiosqlite.Connection) -> int:
        try:
            async with db.execute("SELECT MAX(version) FROM schema_version") as cursor:
                row = await cursor.fetchone()
            return row[0] if row[0] is not None else 0
        except aiosqlite.OperationalError:
            return 0

    async def _apply_migrations(self, db: aiosqlite.Connection, current_version: int) -> None:
        for version in sorted(self._MIGRATIONS.keys()):
            if version <= current_version:
                continue
            desc, statements = self._MIGRATIONS[version]
            logger.info("Applying migration %d: %s", version, desc)
            for sql in statements:
                await db.execute(sql)
            await db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

    # --- Generic Access ---

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        """Run a parameterized SELECT on a fresh connection."""
        try:
            async with self._connect() as db:
                async with db.execute(sql, tuple(params)) as cursor:
                    return list(await cursor.fetchall())
        except Exception as e:
            raise StorageError(
                f"Query failed: {e}",
                context={"operation": "query", "sql": " ".join(sql.split()[:4])},
            ) from e

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a parameterized statement and commit. Returns affected rows."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(sql, tuple(params))
                count = cursor.rowcount
                await cursor.close()
                await db.commit()
                return count
        except Exception as e:
            raise StorageError(
                f"Statement failed: {e}",
                context={"operation": "execute", "sql": " ".join(sql.split()[:4])},
            ) from e

    # --- API Transactions ---

    async def record_transaction(
        self,
        source: str,
        category: str,
        sub_category: str | None,
        request_uri: str,
        response_body: str,
        process_id: UUID | None = None,
    ) -> None:
        await self.execute(
            """INSERT INTO api_transactions
               (source, category, sub_category, request_uri, response_body, process_id)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                source,
                category,
                sub_category,
                request_uri,
                response_body,
                str(process_id) if process_id else None,
            ),
        )

    async def count_transactions(self, source: str, category: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM api_transactions WHERE source = ?"
        params: list = [source]
        if category is not None:
            sql += " AND category = ?"
            params.append(category)
        rows = await self.query(sql, params)
        return rows[0][0]

    async def delete_transactions_for_source(self, source: str) -> int:
        deleted = await self.execute(
            "DELETE FROM api_transactions WHERE source = ?", (source,)
        )
        logger.info("Deleted %d api transactions for %s", deleted, source)
        return deleted


async def create_store(config: StorageConfig) -> SqliteStore:
    """Create and initialize the transactional store."""
    store = SqliteStore(config)
    await store.initialize()
    return store
