"""Top-level import run: purge, reference data, flat files, stragglers."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Iterable
from datetime import date, timedelta
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

from pydantic import ValidationError

from market_mirror.core.config import POLYGON_SOURCE, ImportConfig, ProviderConfig
from market_mirror.core.exceptions import (
    ConfigError,
    ImportCancelledError,
    IngestionError,
    StorageError,
)
from market_mirror.core.models import (
    ActionName,
    ApiPage,
    ImportAction,
    ImportPhase,
    Notification,
    NotifyCallback,
    StragglerRequest,
    TickerTypeSet,
)
from market_mirror.ingestion.actions import ActionPlan
from market_mirror.ingestion.client import PolygonClient, redact
from market_mirror.ingestion.fanout import BoundedFanout
from market_mirror.ingestion.ledger import RemoteLedger
from market_mirror.ingestion.object_store import ObjectStore
from market_mirror.ingestion.store import SqliteStore
from market_mirror.ingestion.sync import ObjectSync, SyncReport
from market_mirror.prices.models import Split
from market_mirror.prices.store import PriceStore

logger = logging.getLogger(__name__)

_COMPONENT = "PolygonImporter"
_PURGE_PATTERNS = ("*.gz", "*.csv")
_PURGE_WARNING = (
    "This configuration file contains a command to purge all import data and "
    "downloaded files. Are you sure you want to do this?"
)


class StragglerQueue:
    """Append-only queue of failed requests, safe for concurrent producers.

    Drain order is append order. With concurrent producers the interleaving
    of appends is not deterministic, only the set of members is.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: list[StragglerRequest] = []

    def append(self, request: StragglerRequest) -> None:
        with self._lock:
            self._items.append(request)

    def drain(self) -> list[StragglerRequest]:
        with self._lock:
            items, self._items = self._items, []
        return items

    def snapshot(self) -> tuple[StragglerRequest, ...]:
        with self._lock:
            return tuple(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class PolygonImporter:
    """Runs every configured import action for one source, in a fixed order.

    Phases run strictly one after another:
    purge → tickers → ticker details → splits → dividends → flat files →
    stragglers. A phase whose action is missing or disabled is skipped.
    Failed API calls never abort a phase; they are reported through
    ``notify`` and queued for one sequential retry at the end of the run.
    Purge failures do abort the run.

    In dry-run mode each phase is announced but nothing is fetched, written,
    downloaded, or deleted.
    """

    def __init__(
        self,
        config: ImportConfig,
        *,
        client: PolygonClient,
        store: SqliteStore,
        object_store: ObjectStore | None = None,
        price_store: PriceStore | None = None,
        provider_config: ProviderConfig | None = None,
        process_id: UUID | None = None,
        dry_run: bool = False,
        notify: NotifyCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if config.source.strip().lower() != POLYGON_SOURCE:
            raise ConfigError(
                f"{_COMPONENT} requires source {POLYGON_SOURCE!r}, got {config.source!r}",
                context={"field": "source", "value": config.source},
            )

        self._config = config
        self._plan = ActionPlan.from_config(config.actions, config.file_prefixes)
        self._client = client
        self._store = store
        self._ledger = RemoteLedger(store)
        self._object_store = object_store
        self._price_store = price_store
        self._bucket = (provider_config or ProviderConfig()).flat_files_bucket
        self._process_id = process_id or uuid4()
        self._dry_run = dry_run
        self._notify_cb = notify
        self._cancel_event = cancel_event or asyncio.Event()

        self._max_parallelization = config.max_parallelization
        self._download_dir: Path | None = config.import_file_location
        self._years_offset = config.years_offset
        if self._download_dir is not None and not dry_run:
            self._download_dir.mkdir(parents=True, exist_ok=True)

        self._tickers: list[str] = []
        self._stragglers = StragglerQueue()
        self.phase = ImportPhase.IDLE
        self.last_sync_report: SyncReport | None = None

    @property
    def source(self) -> str:
        return POLYGON_SOURCE

    @property
    def plan(self) -> ActionPlan:
        return self._plan

    @property
    def process_id(self) -> UUID:
        return self._process_id

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def max_parallelization(self) -> int:
        return self._max_parallelization

    @property
    def tickers(self) -> tuple[str, ...]:
        return tuple(self._tickers)

    @property
    def stragglers(self) -> tuple[StragglerRequest, ...]:
        return self._stragglers.snapshot()

    def cancel(self) -> None:
        """Request cancellation; honoured before the next unit of work."""
        self._cancel_event.set()

    # --- Pre-flight ---

    def contains_danger(self) -> tuple[bool, list[str]]:
        """Whether this run would purge data, with a confirmation message."""
        if not self._dry_run and self._purge_requested():
            return True, [_PURGE_WARNING]
        return False, []

    def _purge_requested(self) -> bool:
        action = self._plan.find(ActionName.PURGE)
        return action is not None and action.enabled

    # --- Run ---

    async def run(self) -> timedelta:
        """Execute every phase in order. Returns elapsed wall time."""
        self._raise_if_cancelled()
        started = time.perf_counter()

        await self.purge()
        await self.discover_tickers()
        await self.enrich_ticker_details()
        await self.fetch_splits()
        await self.fetch_dividends()
        await self.sync_flat_files()
        await self.retry_stragglers()

        self.phase = ImportPhase.DONE
        elapsed = timedelta(seconds=time.perf_counter() - started)
        logger.info("Import for %s finished in %s", self.source, elapsed)
        return elapsed

    # --- Phases ---

    async def purge(self) -> None:
        """Delete downloaded files and all import records for this source.

        The two table deletes run concurrently; if either fails the error
        propagates once both have settled.
        """
        self._enter(ImportPhase.PURGING)
        if not self._purge_requested():
            return
        self._announce(ActionName.PURGE)
        if self._dry_run:
            return

        if self._download_dir is not None and self._download_dir.exists():
            for pattern in _PURGE_PATTERNS:
                for path in self._download_dir.glob(pattern):
                    if path.is_file():
                        path.unlink()

        results = await asyncio.gather(
            self._store.delete_transactions_for_source(self.source),
            self._ledger.delete_for_source(self.source),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def discover_tickers(self) -> None:
        self._enter(ImportPhase.DISCOVERING_TICKERS)
        action = self._active_action(ActionName.TICKERS)
        if action is None:
            return
        self._announce(ActionName.TICKERS)
        if self._dry_run:
            return

        ticker_types = TickerTypeSet.from_tokens(action.details)
        found: list[str] = []
        pages = await self._walk_listing(
            self._client.tickers_uri(),
            ActionName.TICKERS.value,
            "US",
            on_page=lambda page: found.extend(ticker_types.select(page.ticker_codes())),
        )

        self._tickers = list(dict.fromkeys(found))
        logger.info("Discovered %d tickers over %d page(s)", len(self._tickers), pages)

    async def enrich_ticker_details(self) -> None:
        self._enter(ImportPhase.ENRICHING_TICKER_DETAILS)
        action = self._active_action(ActionName.TICKER_DETAILS)
        if action is None:
            return
        self._announce(ActionName.TICKER_DETAILS)
        if self._dry_run or not self._tickers:
            return

        await self._fan_out(
            self._tickers,
            lambda code: self._invoke_api_call(
                self._client.ticker_details_uri(code), ActionName.TICKER_DETAILS.value, code
            ),
        )

    async def fetch_splits(self) -> None:
        self._enter(ImportPhase.FETCHING_SPLITS)
        action = self._active_action(ActionName.SPLITS)
        if action is None:
            return
        self._announce(ActionName.SPLITS)
        if self._dry_run:
            return

        if self._tickers:
            codes = TickerTypeSet.from_tokens(action.details).select(self._tickers)
            await self._fan_out(
                codes,
                lambda code: self._invoke_api_call(
                    self._client.splits_uri(code), ActionName.SPLITS.value, code
                ),
            )
        else:
            await self._walk_listing(self._client.splits_uri(), ActionName.SPLITS.value)

    async def fetch_dividends(self) -> None:
        self._enter(ImportPhase.FETCHING_DIVIDENDS)
        action = self._active_action(ActionName.DIVIDENDS)
        if action is None:
            return
        self._announce(ActionName.DIVIDENDS)
        if self._dry_run:
            return

        if self._tickers:
            codes = TickerTypeSet.from_tokens(action.details).select(self._tickers)
            await self._fan_out(
                codes,
                lambda code: self._invoke_api_call(
                    self._client.dividends_uri(code), ActionName.DIVIDENDS.value, code
                ),
            )
        else:
            await self._walk_listing(self._client.dividends_uri(), ActionName.DIVIDENDS.value)

    async def sync_flat_files(self) -> None:
        self._enter(ImportPhase.SYNCING_FLAT_FILES)
        action = self._plan.find(ActionName.FLAT_FILES)
        if action is None or not action.details or self._download_dir is None:
            return
        self._announce(ActionName.FLAT_FILES)
        if self._dry_run:
            return
        if self._object_store is None:
            logger.warning("Flat Files configured but no object store supplied; skipping")
            return

        sync = ObjectSync(
            self._object_store,
            self._ledger,
            source=self.source,
            bucket=self._bucket,
            download_dir=self._download_dir,
            prefixes=action.details,
            years_offset=self._years_offset,
            process_id=self._process_id,
            notify=self._notify_cb,
            cancel_event=self._cancel_event,
        )
        self.last_sync_report = await sync.run()

    async def retry_stragglers(self) -> None:
        """Retry each queued request once, sequentially, in enqueue order."""
        self._enter(ImportPhase.RETRYING_STRAGGLERS)
        pending = self._stragglers.drain()
        if not pending:
            return

        self._max_parallelization = 1
        self._notify(f"Processing {len(pending)} stragglers.")
        await self._fan_out(
            pending,
            lambda request: self._invoke_api_call(
                request.uri, request.category, request.sub_category, retrying=True
            ),
        )

    # --- Helpers ---

    def _active_action(self, name: ActionName) -> ImportAction | None:
        if not self._plan.is_enabled(name):
            return None
        return self._plan.find(name)

    async def _fan_out(self, items: Iterable, operation) -> None:
        fanout = BoundedFanout(self._max_parallelization, self._cancel_event)
        count = await fanout.run(items, operation)
        logger.debug("Fanout dispatched %d call(s) at parallelism %d", count, fanout.limit)

    async def _invoke_api_call(
        self,
        uri: str,
        category: str,
        sub_category: str | None = None,
        *,
        retrying: bool = False,
    ) -> bool:
        """Fetch one URI and record the response. Returns False on failure.

        Failures are queued as stragglers during the main pass and dropped
        during the retry pass.
        """
        self._raise_if_cancelled()
        try:
            body = await self._client.get_string(uri)
            await self._store.record_transaction(
                self.source, category, sub_category, redact(uri), body, self._process_id
            )
            if category == ActionName.SPLITS.value:
                await self._save_splits_from_body(body)
            return True
        except (IngestionError, StorageError) as e:
            if retrying:
                logger.error("Straggler %s/%s failed again; dropping: %s", category, sub_category, e)
                self._notify(f"Straggler {category} {sub_category or ''} failed again: {e}".strip())
            else:
                self._report_failure(uri, category, sub_category, e)
            return False

    async def _walk_listing(
        self,
        uri: str,
        category: str,
        sub_category: str | None = None,
        on_page: Callable[[ApiPage], object] | None = None,
    ) -> int:
        """Page through a listing, recording each page. Returns pages read.

        A failing page is queued as a straggler and ends the walk.
        """
        paginator = self._client.paginate(uri)
        try:
            async for page in paginator:
                await self._store.record_transaction(
                    self.source, category, sub_category,
                    redact(paginator.current_uri or uri),
                    page.model_dump_json(),
                    self._process_id,
                )
                if on_page is not None:
                    on_page(page)
                if category == ActionName.SPLITS.value:
                    await self._save_splits(page.results)
                self._raise_if_cancelled()
        except (IngestionError, StorageError) as e:
            self._report_failure(paginator.current_uri or uri, category, sub_category, e)
        return paginator.pages_read

    async def _save_splits_from_body(self, body: str) -> None:
        if self._price_store is None:
            return
        try:
            page = ApiPage.model_validate_json(body)
        except ValidationError as e:
            logger.warning("Could not parse splits response: %s", e)
            return
        await self._save_splits(page.results)

    async def _save_splits(self, results: list[dict[str, Any]]) -> None:
        if self._price_store is None or not results:
            return
        splits: list[Split] = []
        for r in results:
            split = self._split_from_result(r)
            if split is not None:
                splits.append(split)
        if splits:
            await self._price_store.store_splits(splits)

    def _split_from_result(self, result: dict[str, Any]) -> Split | None:
        code = result.get("ticker")
        executed = result.get("execution_date")
        if not code or not executed:
            return None
        try:
            split_date = date.fromisoformat(str(executed))
            if "split_from" in result and "split_to" in result:
                return Split(
                    source=self.source,
                    code=str(code),
                    split_date=split_date,
                    before=float(result["split_from"]),
                    after=float(result["split_to"]),
                )
            if "ratio" in result:
                return Split.from_text(self.source, str(code), split_date, str(result["ratio"]))
        except (ValueError, TypeError, ValidationError) as e:
            logger.warning("Skipping malformed split for %s: %s", code, e)
        return None

    def _report_failure(
        self, uri: str, category: str, sub_category: str | None, error: Exception
    ) -> None:
        logger.error("%s call for %s failed: %s", category, sub_category or "-", error)
        self._notify(f"{category} call for {sub_category or '-'} failed: {error}")
        self._stragglers.append(StragglerRequest(uri, category, sub_category))

    def _enter(self, phase: ImportPhase) -> None:
        self._raise_if_cancelled(phase)
        self.phase = phase
        logger.info("Entering phase %s", phase.value)

    def _announce(self, action: ActionName) -> None:
        message = f"{action.value} (dry run)" if self._dry_run else action.value
        self._notify(message)

    def _notify(self, message: str) -> None:
        if self._notify_cb is not None:
            self._notify_cb(Notification(message, _COMPONENT))

    def _raise_if_cancelled(self, phase: ImportPhase | None = None) -> None:
        if self._cancel_event.is_set():
            where = (phase or self.phase).value
            raise ImportCancelledError(f"Import cancelled during {where}", context={"phase": where})
