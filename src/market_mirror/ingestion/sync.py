"""Mirror the provider's flat-file bucket into a local directory.

Objects are selected by key pattern and embedded date, compared against the
remote-file ledger by (key, hash, size), and downloaded only when no ledger
record matches all three.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from uuid import UUID

from botocore.exceptions import BotoCoreError, ClientError

from market_mirror.core.exceptions import ImportCancelledError, StorageError
from market_mirror.core.models import (
    Notification,
    NotifyCallback,
    RemoteFileRecord,
    RemoteObject,
)
from market_mirror.ingestion.ledger import RemoteLedger
from market_mirror.ingestion.object_store import ObjectStore

logger = logging.getLogger(__name__)

_COMPONENT = "ObjectSync"
_KEY_PATTERN = r"{prefix}/\d{{4}}/\d{{2}}/([\d-]+)\.csv\.gz"

_STORAGE_ERRORS = (ClientError, BotoCoreError, OSError, StorageError)


def build_key_patterns(prefixes: Sequence[str]) -> list[re.Pattern[str]]:
    """One pattern per prefix: ``{prefix}/YYYY/MM/<date>.csv.gz``."""
    return [re.compile(_KEY_PATTERN.format(prefix=p), re.DOTALL) for p in prefixes]


def retention_cutoff(today: date, years_offset: int) -> date:
    """``today`` shifted by a (non-positive) number of years.

    Feb 29 maps to Feb 28 when the target year is not a leap year.
    """
    year = today.year + years_offset
    try:
        return today.replace(year=year)
    except ValueError:
        return today.replace(year=year, day=28)


def date_from_key(
    key: str, patterns: Sequence[re.Pattern[str]], cutoff: date
) -> date | None:
    """Return the key's embedded date if it matches a pattern and is after cutoff.

    A date equal to the cutoff is out of scope.
    """
    for pattern in patterns:
        match = pattern.search(key)
        if match is None:
            continue
        try:
            file_date = date.fromisoformat(match.group(1))
        except ValueError:
            continue
        if file_date > cutoff:
            return file_date
    return None


def local_name_for(key: str) -> str:
    """Flatten a bucket key into a local file name.

    ``a/b/.../z`` with three or more segments becomes ``a_b_z``; shorter keys
    are returned unchanged.
    """
    if not key or not key.strip():
        return key.strip()
    parts = key.split("/")
    if len(parts) < 3:
        return key
    return f"{parts[0]}_{parts[1]}_{parts[-1]}"


@dataclass
class SyncReport:
    listed: int = 0
    candidates: int = 0
    skipped: int = 0
    downloaded: int = 0
    failed: int = 0


class ObjectSync:
    """Lists, filters, deduplicates and downloads flat files."""

    def __init__(
        self,
        object_store: ObjectStore,
        ledger: RemoteLedger,
        *,
        source: str,
        bucket: str,
        download_dir: Path,
        prefixes: Sequence[str],
        years_offset: int = 0,
        provider: str = "AWS",
        process_id: UUID | None = None,
        notify: NotifyCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._store = object_store
        self._ledger = ledger
        self._source = source
        self._bucket = bucket
        self._download_dir = Path(download_dir)
        self._patterns = build_key_patterns(prefixes)
        self._years_offset = years_offset
        self._provider = provider
        self._process_id = process_id
        self._notify_cb = notify
        self._cancel_event = cancel_event
        self._today = today

    @property
    def cutoff(self) -> date:
        return retention_cutoff(self._today(), self._years_offset)

    def _notify(self, message: str) -> None:
        if self._notify_cb is not None:
            self._notify_cb(Notification(message, _COMPONENT))

    def _raise_if_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise ImportCancelledError("Flat-file sync cancelled", context={"phase": _COMPONENT})

    async def list_candidates(self, report: SyncReport | None = None) -> list[RemoteObject]:
        """Walk every listing page and keep keys in scope."""
        report = report if report is not None else SyncReport()
        cutoff = self.cutoff
        candidates: list[RemoteObject] = []
        token: str | None = None
        while True:
            self._raise_if_cancelled()
            page = await self._store.list_objects(self._bucket, token)
            report.listed += len(page.objects)
            for obj in page.objects:
                if date_from_key(obj.key, self._patterns, cutoff) is not None:
                    candidates.append(obj)
            token = page.next_continuation_token
            if not page.is_truncated or not token:
                break
        report.candidates = len(candidates)
        return candidates

    async def run(self) -> SyncReport:
        """Sync the bucket. Per-object storage failures are reported, not raised."""
        report = SyncReport()

        try:
            self._download_dir.mkdir(parents=True, exist_ok=True)
            candidates = await self.list_candidates(report)
        except _STORAGE_ERRORS as e:
            logger.error("Listing bucket %s failed: %s", self._bucket, e)
            self._notify(f"Listing bucket {self._bucket} failed: {e}")
            report.failed += 1
            return report

        if not candidates:
            logger.info("No flat files in scope (cutoff %s)", self.cutoff)
            return report

        try:
            records = await self._ledger.load(self._source, self._provider)
        except _STORAGE_ERRORS as e:
            logger.error("Loading remote-file ledger for %s failed: %s", self._source, e)
            self._notify(f"Loading remote-file ledger for {self._source} failed: {e}")
            report.failed += 1
            return report

        for obj in candidates:
            self._raise_if_cancelled()
            if self._ledger.find_match(records, obj) is not None:
                report.skipped += 1
                continue
            try:
                await self._download(obj)
                report.downloaded += 1
            except _STORAGE_ERRORS as e:
                logger.error("Failed to sync %s: %s", obj.key, e)
                self._notify(f"Failed to sync {obj.key}: {e}")
                report.failed += 1

        logger.info(
            "Flat-file sync: %d listed, %d in scope, %d unchanged, %d downloaded, %d failed",
            report.listed, report.candidates, report.skipped,
            report.downloaded, report.failed,
        )
        return report

    async def _download(self, obj: RemoteObject) -> None:
        local_name = local_name_for(obj.key)
        if not local_name:
            raise StorageError(
                f"Could not convert {obj.key!r} to a local file name",
                context={"operation": "download", "key": obj.key},
            )
        target = self._download_dir / local_name
        target.unlink(missing_ok=True)

        try:
            await self._store.download(self._bucket, obj.key, target)
        except BaseException:
            target.unlink(missing_ok=True)
            raise

        await self._ledger.upsert(
            RemoteFileRecord(
                source=self._source,
                provider=self._provider,
                hash_code=obj.etag,
                location=self._bucket,
                source_name=obj.key,
                local_name=local_name,
                size=obj.size,
                update_date=obj.last_modified.date() if obj.last_modified else None,
                process_id=self._process_id,
            )
        )
