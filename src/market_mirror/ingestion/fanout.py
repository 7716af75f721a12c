"""Bounded-parallel execution of a per-item async operation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from market_mirror.core.exceptions import ImportCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BoundedFanout:
    """Runs ``operation(item)`` over a collection with a concurrency ceiling.

    A ceiling of 0 or 1 runs items one after another in input order. A larger
    ceiling runs up to that many operations at once with no ordering between
    items; a slot is released only after the item's operation, including any
    straggler bookkeeping it does, has finished.

    The optional ``cancel_event`` is checked before every dispatch. Once set,
    no further items start, in-flight operations are cancelled, and
    ImportCancelledError is raised.
    """

    def __init__(
        self,
        max_parallelization: int = 1,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._limit = max(max_parallelization, 1)
        self._cancel_event = cancel_event

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def sequential(self) -> bool:
        return self._limit <= 1

    def _raise_if_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise ImportCancelledError("Fanout cancelled", context={"phase": "fanout"})

    async def run(
        self,
        items: Iterable[T],
        operation: Callable[[T], Awaitable[object]],
    ) -> int:
        """Execute the operation for every item. Returns the number dispatched.

        Exceptions raised by an operation propagate after in-flight siblings
        are cancelled; operations that must not abort the fanout should handle
        their own failures.
        """
        if self.sequential:
            count = 0
            for item in items:
                self._raise_if_cancelled()
                await operation(item)
                count += 1
            return count

        semaphore = asyncio.Semaphore(self._limit)
        tasks: list[asyncio.Task] = []

        async def _run_one(item: T) -> None:
            try:
                await operation(item)
            finally:
                semaphore.release()

        try:
            for item in items:
                await semaphore.acquire()
                try:
                    self._raise_if_cancelled()
                except ImportCancelledError:
                    semaphore.release()
                    raise
                tasks.append(asyncio.create_task(_run_one(item)))
            await asyncio.gather(*tasks)
        except BaseException:
            pending = [t for t in tasks if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                logger.info("Cancelling %d in-flight fanout operation(s)", len(pending))
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return len(tasks)
