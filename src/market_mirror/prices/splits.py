"""Split adjustment of end-of-day price series.

Prices dated before a split are multiplied by the cumulative factor of every
split that follows them, so the whole series is expressed in terms of the most
recent share structure.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from market_mirror.core.exceptions import SplitAdjustmentError
from market_mirror.prices.models import AdjustedEodPrice, EodPrice, Split, SplitFactor

logger = logging.getLogger(__name__)


def compute_split_factors(splits: Iterable[Split]) -> list[SplitFactor]:
    """Return splits in date order paired with cumulative factors.

    The latest split carries its own factor; each earlier split carries its
    own factor times the cumulative factor of the next split.
    """
    ordered = sorted(splits, key=lambda s: s.split_date)
    factors: list[SplitFactor] = []
    running = 1.0
    for split in reversed(ordered):
        running *= split.factor
        factors.append(SplitFactor(date=split.split_date, factor=running))
    factors.reverse()
    return factors


def adjust_prices(
    prices: Iterable[EodPrice],
    splits: Iterable[Split],
) -> list[AdjustedEodPrice]:
    """Apply split factors to a price series in a single forward pass.

    Args:
        prices: Raw prices for one instrument (any order; sorted here).
        splits: Splits for the same instrument.

    Returns:
        One AdjustedEodPrice per input price, ascending by date.

    Raises:
        SplitAdjustmentError: If the series ends before the factor cursor
            reaches the final split, i.e. no price exists on or after the
            second-to-last split date.
    """
    ordered = sorted(prices, key=lambda p: p.date_eod)
    factors = compute_split_factors(splits)

    if not factors:
        return [AdjustedEodPrice(price=p) for p in ordered]
    if not ordered:
        return []

    last = len(factors) - 1
    f = 0
    results: list[AdjustedEodPrice] = []

    for price in ordered:
        # Step past every split on or before this price, except the final one
        while f < last and price.date_eod >= factors[f].date:
            f += 1

        if f == last and price.date_eod >= factors[f].date:
            # past the final split
            results.append(AdjustedEodPrice(price=price))
        else:
            results.append(AdjustedEodPrice(price=price, factor=factors[f].factor))

    if f != last:
        code = ordered[0].code
        raise SplitAdjustmentError(
            f"Price series for {code} ends before split on {factors[f].date}; "
            f"{last - f} split factor(s) never reached",
            context={"code": code, "consumed": f, "factors": len(factors)},
        )

    return results
