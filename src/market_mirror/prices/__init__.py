"""End-of-day prices, splits, and split adjustment.

    flat file → FlatFileAdapter → list[EodPrice] → PriceStore
    provider splits → list[Split] → PriceStore
    PriceStore.get_adjusted_prices → adjust_prices → list[AdjustedEodPrice]

Key abstractions:

- ``EodPrice``: raw end-of-day bar.
- ``Split``: a corporate split with its after/before ratio.
- ``compute_split_factors``: cumulative factor table for one instrument.
- ``adjust_prices``: single-pass adjustment of a price series.
- ``SqlitePriceStore``: SQLite persistence for prices and splits.
"""

from market_mirror.prices.flat_file import FlatFileAdapter, load_flat_file
from market_mirror.prices.models import (
    AdjustedEodPrice,
    EodPrice,
    Split,
    SplitFactor,
    parse_split_ratio,
)
from market_mirror.prices.splits import adjust_prices, compute_split_factors
from market_mirror.prices.store import PriceStore, SqlitePriceStore

__all__ = [
    # Models
    "EodPrice",
    "AdjustedEodPrice",
    "Split",
    "SplitFactor",
    "parse_split_ratio",
    # Adjustment
    "compute_split_factors",
    "adjust_prices",
    # Flat files
    "FlatFileAdapter",
    "load_flat_file",
    # Storage
    "PriceStore",
    "SqlitePriceStore",
]
