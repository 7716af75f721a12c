"""Custom exception hierarchy for market-mirror."""

from typing import Any


class MarketMirrorError(Exception):
    """Base exception for all market-mirror errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged or serialized without parsing the message.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(MarketMirrorError):
    """Invalid or missing configuration.

    Raised by load_config() and by ActionPlan when no usable import action
    is configured. Should be treated as fatal: the run never starts.

    Context keys:
        field (str): the config field that failed validation
        value (Any): the invalid value (redacted for secrets)
    """


class IngestionError(MarketMirrorError):
    """Failed to fetch data from the provider.

    Policy: log, notify, and queue the request as a straggler. Do not abort
    the run.

    Context keys:
        url (str): the URL that was being fetched (API key redacted)
        status_code (int | None): HTTP status if a response was received
    """


class RateLimitError(IngestionError):
    """Provider rate limit exceeded (HTTP 429).

    Policy: backoff and retry (handled by PolygonClient internally).

    Context keys:
        retry_after (int | None): seconds to wait
    """


class StorageError(MarketMirrorError):
    """Database or object-store operation failed.

    Policy: raise immediately. Purge failures abort the run.

    Context keys:
        operation (str): "insert", "query", "delete", "download", etc.
        table (str): the table involved
    """


class DataIntegrityError(MarketMirrorError):
    """Stored or derived data violates a consistency invariant.

    Policy: raise immediately. Results computed from inconsistent input
    are misleading.
    """


class SplitAdjustmentError(DataIntegrityError):
    """A price series did not consume every split factor.

    Context keys:
        code (str | None): ticker of the series
        consumed (int): index of the last factor reached
        factors (int): number of factors in the table
    """


class ImportCancelledError(MarketMirrorError):
    """An import run was cancelled before it finished.

    Context keys:
        phase (str): the phase that observed the cancellation
    """
