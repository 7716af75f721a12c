"""Ledger of remote objects already mirrored locally."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date
from uuid import UUID

import aiosqlite

from market_mirror.core.models import RemoteFileRecord, RemoteObject
from market_mirror.ingestion.store import SqlExecutor

logger = logging.getLogger(__name__)


class RemoteLedger:
    """Reads and writes ``remote_files`` rows through a SqlExecutor.

    An object counts as already synced only when a record matches its key,
    hash and size at once.
    """

    def __init__(self, executor: SqlExecutor) -> None:
        self._executor = executor

    async def load(self, source: str, provider: str) -> list[RemoteFileRecord]:
        rows = await self._executor.query(
            """SELECT source, provider, hash_code, location, source_name,
                      local_name, size, update_date, process_id
               FROM remote_files WHERE source = ? AND provider = ?""",
            (source, provider),
        )
        return [self._row_to_record(r) for r in rows]

    @staticmethod
    def find_match(
        records: Iterable[RemoteFileRecord], obj: RemoteObject
    ) -> RemoteFileRecord | None:
        for record in records:
            if record.matches(obj):
                return record
        return None

    async def upsert(self, record: RemoteFileRecord) -> None:
        await self._executor.execute(
            """INSERT INTO remote_files
               (source, provider, hash_code, location, source_name, local_name,
                size, update_date, process_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(source, source_name) DO UPDATE SET
                   provider = excluded.provider,
                   hash_code = excluded.hash_code,
                   location = excluded.location,
                   local_name = excluded.local_name,
                   size = excluded.size,
                   update_date = excluded.update_date,
                   process_id = excluded.process_id,
                   updated_at = datetime('now')""",
            (
                record.source,
                record.provider,
                record.hash_code,
                record.location,
                record.source_name,
                record.local_name,
                record.size,
                record.update_date.isoformat() if record.update_date else None,
                str(record.process_id) if record.process_id else None,
            ),
        )

    async def delete_for_source(self, source: str) -> int:
        deleted = await self._executor.execute(
            "DELETE FROM remote_files WHERE source = ?", (source,)
        )
        logger.info("Deleted %d remote file records for %s", deleted, source)
        return deleted

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> RemoteFileRecord:
        return RemoteFileRecord(
            source=row["source"],
            provider=row["provider"],
            hash_code=row["hash_code"],
            location=row["location"],
            source_name=row["source_name"],
            local_name=row["local_name"],
            size=row["size"],
            update_date=date.fromisoformat(row["update_date"]) if row["update_date"] else None,
            process_id=UUID(row["process_id"]) if row["process_id"] else None,
        )
