"""Flat-file adapter: turns downloaded day-aggregate files into EodPrice rows.

Flat files are gzip-compressed CSVs with one row per ticker per day:

    ticker,volume,open,close,high,low,window_start,transactions

``window_start`` is the bar's start as nanoseconds since the Unix epoch.
"""

from __future__ import annotations

import csv
import gzip
import logging
from collections.abc import Iterable
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from market_mirror.prices.models import EodPrice

logger = logging.getLogger(__name__)

_REQUIRED_COLUMNS = ("ticker", "open", "high", "low", "close", "window_start")
_NANOS_PER_SECOND = 1_000_000_000


def _window_start_to_date(value: str) -> date:
    nanos = int(value)
    return datetime.fromtimestamp(nanos / _NANOS_PER_SECOND, tz=timezone.utc).date()


class FlatFileAdapter:
    """Transforms day-aggregate CSV rows into EodPrice records.

    Parameters
    ----------
    source : str
        Source tag stamped on every produced price.
    codes : Iterable[str] | None
        If given, only rows for these tickers are kept.
    """

    def __init__(self, source: str = "polygon.io", codes: Iterable[str] | None = None) -> None:
        self._source = source
        self._codes = {c.upper() for c in codes} if codes is not None else None

    def adapt(self, raw_data: list[dict[str, Any]]) -> list[EodPrice]:
        """Parse rows from csv.DictReader into EodPrice, sorted by (code, date)."""
        if not raw_data:
            return []

        headers = set(raw_data[0].keys())
        missing = [c for c in _REQUIRED_COLUMNS if c not in headers]
        if missing:
            raise ValueError(f"Flat file is missing columns: {missing}")

        prices: list[EodPrice] = []
        for row in raw_data:
            code = (row.get("ticker") or "").strip()
            if not code:
                continue
            if self._codes is not None and code.upper() not in self._codes:
                continue
            try:
                prices.append(
                    EodPrice(
                        code=code,
                        date_eod=_window_start_to_date(row["window_start"]),
                        open=float(row["open"]),
                        high=float(row["high"]),
                        low=float(row["low"]),
                        close=float(row["close"]),
                        volume=float(row["volume"]) if row.get("volume") else 0,
                        source=self._source,
                    )
                )
            except (ValueError, TypeError) as e:
                logger.warning("Skipping unparseable flat-file row for %s: %s", code, e)

        return sorted(prices, key=lambda p: (p.code, p.date_eod))


def load_flat_file(
    filepath: str | Path,
    source: str = "polygon.io",
    codes: Iterable[str] | None = None,
) -> list[EodPrice]:
    """Load EOD prices from a downloaded flat file (.csv.gz or plain .csv)."""
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Flat file not found: {filepath}")

    opener = gzip.open if path.suffix == ".gz" else open
    with opener(path, "rt", newline="") as f:
        rows = list(csv.DictReader(f))

    adapter = FlatFileAdapter(source=source, codes=codes)
    return adapter.adapt(rows)
