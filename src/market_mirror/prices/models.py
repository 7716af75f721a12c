"""Price and corporate-action models used by split adjustment."""

from __future__ import annotations

import logging
import math
from datetime import date

from pydantic import BaseModel, ConfigDict, field_validator

logger = logging.getLogger(__name__)


def parse_split_ratio(text: str) -> tuple[float, float]:
    """Parse provider split text ("A/B" or "A:B") into (before, after).

    The first number is the post-split share count (after), the second the
    pre-split count (before). Text that does not parse yields (1, 1) so the
    split becomes a no-op.
    """
    splitter = "/" if "/" in text else ":"
    parts = [p.strip() for p in text.split(splitter) if p.strip()]
    if len(parts) == 2:
        try:
            after = float(parts[0])
            before = float(parts[1])
        except ValueError:
            pass
        else:
            if math.isfinite(after) and math.isfinite(before) and after > 0 and before >= 0:
                return before, after

    logger.warning("Could not properly parse split ratio %r", text)
    return 1.0, 1.0


class Split(BaseModel):
    """A stock split for one instrument."""

    model_config = ConfigDict(frozen=True)

    source: str
    code: str
    split_date: date
    before: float
    after: float

    @field_validator("after")
    @classmethod
    def after_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"after must be > 0, got {v}")
        return v

    @field_validator("before")
    @classmethod
    def before_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"before must be >= 0, got {v}")
        return v

    @classmethod
    def from_text(cls, source: str, code: str, split_date: date, text: str) -> Split:
        before, after = parse_split_ratio(text)
        return cls(source=source, code=code, split_date=split_date, before=before, after=after)

    @property
    def factor(self) -> float:
        return 1.0 if self.before == 0 else self.after / self.before


class SplitFactor(BaseModel):
    """A split date paired with its cumulative factor."""

    model_config = ConfigDict(frozen=True)

    date: date
    factor: float


class EodPrice(BaseModel):
    """A raw end-of-day price bar."""

    model_config = ConfigDict(frozen=True)

    code: str
    date_eod: date
    open: float
    high: float
    low: float
    close: float
    volume: float = 0
    source: str = "unknown"

    @field_validator("volume")
    @classmethod
    def volume_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"volume must be >= 0, got {v}")
        return v


class AdjustedEodPrice(BaseModel):
    """An EodPrice scaled by the cumulative split factor that applies to it.

    Derived on demand; never stored.
    """

    model_config = ConfigDict(frozen=True)

    price: EodPrice
    factor: float = 1.0

    @property
    def code(self) -> str:
        return self.price.code

    @property
    def date_eod(self) -> date:
        return self.price.date_eod

    @property
    def open(self) -> float:
        return self.price.open * self.factor

    @property
    def high(self) -> float:
        return self.price.high * self.factor

    @property
    def low(self) -> float:
        return self.price.low * self.factor

    @property
    def close(self) -> float:
        return self.price.close * self.factor
