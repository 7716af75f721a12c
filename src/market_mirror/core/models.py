"""Pydantic data models: the system's type contracts."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

# --- Type Aliases ---

Ticker = str
SourceName = str

# --- Enumerations ---


class ActionName(StrEnum):
    """The fixed vocabulary of import actions."""

    FLAT_FILES = "Flat Files"
    TICKERS = "Tickers"
    TICKER_DETAILS = "Ticker Details"
    PURGE = "Purge"
    SPLITS = "Splits"
    DIVIDENDS = "Dividends"

    @classmethod
    def lookup(cls, text: str | None) -> ActionName | None:
        """Case-insensitive match against the vocabulary, or None."""
        if text is None:
            return None
        wanted = text.strip().lower()
        for member in cls:
            if member.value.lower() == wanted:
                return member
        return None


class ImportPhase(StrEnum):
    """Linear states of a single import run."""

    IDLE = "idle"
    PURGING = "purging"
    DISCOVERING_TICKERS = "discovering_tickers"
    ENRICHING_TICKER_DETAILS = "enriching_ticker_details"
    FETCHING_SPLITS = "fetching_splits"
    FETCHING_DIVIDENDS = "fetching_dividends"
    SYNCING_FLAT_FILES = "syncing_flat_files"
    RETRYING_STRAGGLERS = "retrying_stragglers"
    DONE = "done"


# --- Import Actions ---


class ImportAction(BaseModel):
    """One configured import action and its detail tokens."""

    model_config = ConfigDict(frozen=True)

    name: ActionName
    details: tuple[str, ...] = ()

    @property
    def enabled(self) -> bool:
        """False only when the first detail is an explicit "false"."""
        return not (self.details and self.details[0].lower() == "false")

    @property
    def has_details(self) -> bool:
        return bool(self.details) and bool(self.details[0].strip())


_STOCK_ALIASES = frozenset({"s", "stock", "stocks"})
_INDEX_ALIASES = frozenset({"i", "index", "indexes"})
_CURRENCY_ALIASES = frozenset({"c", "currency", "currencies"})
_CRYPTO_ALIASES = frozenset({"x", "crypto", "cryptos"})


@dataclass(frozen=True)
class TickerTypeSet:
    """Which instrument classes an action applies to.

    Stocks are codes without a namespace separator; the other classes use the
    provider's ``I:``, ``C:`` and ``X:`` prefixes.
    """

    stocks: bool = False
    indexes: bool = False
    currencies: bool = False
    crypto: bool = False

    @classmethod
    def from_tokens(cls, tokens: Iterable[str]) -> TickerTypeSet:
        text = {t.strip().lower() for t in tokens}
        return cls(
            stocks=bool(text & _STOCK_ALIASES),
            indexes=bool(text & _INDEX_ALIASES),
            currencies=bool(text & _CURRENCY_ALIASES),
            crypto=bool(text & _CRYPTO_ALIASES),
        )

    @property
    def is_empty(self) -> bool:
        return not (self.stocks or self.indexes or self.currencies or self.crypto)

    def is_stock(self, code: str) -> bool:
        return self.stocks and ":" not in code

    def is_index(self, code: str) -> bool:
        return self.indexes and code.startswith("I:")

    def is_currency(self, code: str) -> bool:
        return self.currencies and code.startswith("C:")

    def is_crypto(self, code: str) -> bool:
        return self.crypto and code.startswith("X:")

    def matches(self, code: str) -> bool:
        return (
            self.is_stock(code)
            or self.is_index(code)
            or self.is_currency(code)
            or self.is_crypto(code)
        )

    def select(self, codes: Iterable[str]) -> list[str]:
        """Return the codes that belong to any requested class, in order."""
        return [c for c in codes if self.matches(c)]


# --- Provider API ---


class ApiPage(BaseModel):
    """One page of a cursor-paginated provider listing."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    results: list[dict[str, Any]] = Field(default_factory=list)
    next_url: str | None = None
    status: str | None = None
    request_id: str | None = None
    count: int | None = None

    @field_validator("results", mode="before")
    @classmethod
    def results_default(cls, v: Any) -> Any:
        return [] if v is None else v

    def ticker_codes(self) -> list[Ticker]:
        """Ticker codes present on this page."""
        return [str(r["ticker"]) for r in self.results if r.get("ticker")]


@dataclass(frozen=True)
class StragglerRequest:
    """An API call that failed during the main pass."""

    uri: str
    category: str
    sub_category: str | None = None


@dataclass(frozen=True)
class Notification:
    """Progress or error message emitted by a component."""

    message: str
    component: str | None = None


NotifyCallback = Callable[[Notification], None]


# --- Object Store ---


class RemoteObject(BaseModel):
    """A single object in the provider's flat-file bucket."""

    model_config = ConfigDict(frozen=True)

    key: str
    etag: str
    size: int
    last_modified: datetime | None = None

    @field_validator("etag")
    @classmethod
    def strip_quotes(cls, v: str) -> str:
        return v.strip('"')


class ObjectPage(BaseModel):
    """One page of an object-store listing."""

    model_config = ConfigDict(frozen=True)

    objects: tuple[RemoteObject, ...] = ()
    next_continuation_token: str | None = None
    is_truncated: bool = False


class RemoteFileRecord(BaseModel):
    """Ledger entry for a remote object that has been downloaded."""

    model_config = ConfigDict(frozen=True)

    source: SourceName
    provider: str
    hash_code: str
    location: str
    source_name: str
    local_name: str
    size: int
    update_date: date | None = None
    process_id: UUID | None = None

    def matches(self, obj: RemoteObject) -> bool:
        """True when key, hash and size all equal the remote object's."""
        return (
            self.source_name == obj.key
            and self.hash_code == obj.etag
            and self.size == obj.size
        )
