"""Rate-limited async HTTP client and cursor paginator for the provider API."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator
from urllib.parse import quote

import httpx
from aiolimiter import AsyncLimiter
from pydantic import ValidationError

from market_mirror.core.config import ProviderConfig
from market_mirror.core.exceptions import IngestionError, RateLimitError
from market_mirror.core.models import ApiPage

logger = logging.getLogger(__name__)

# Provider API paths
_TICKERS_PATH = "v3/reference/tickers?active=true"
_TICKER_DETAILS_PATH = "v3/reference/tickers"
_SPLITS_PATH = "v3/reference/splits"
_DIVIDENDS_PATH = "v3/reference/dividends"

_TOKEN_PARAM = "apiKey"
_TOKEN_PATTERN = re.compile(rf"({_TOKEN_PARAM}=)[^&]*", re.IGNORECASE)

# Retry configuration
_MAX_RETRIES_429 = 3
_DEFAULT_RETRY_AFTER = 12
_MAX_RETRIES_SERVER = 3
_MAX_RETRIES_CONNECTION = 2
_CONNECTION_RETRY_DELAY = 2.0


def redact(url: str) -> str:
    """Hide the access token in a URL for logs and error context."""
    return _TOKEN_PATTERN.sub(r"\1***", url)


def _retry_after_seconds(response: httpx.Response) -> int:
    """Seconds from a Retry-After header; HTTP-date or garbage falls back to the default."""
    try:
        return max(int(response.headers.get("Retry-After", _DEFAULT_RETRY_AFTER)), 0)
    except ValueError:
        return _DEFAULT_RETRY_AFTER


class PolygonClient:
    """Rate-limited async client for the provider's reference-data API.

    Every request carries the API key as a query parameter, including
    cursor URLs returned by the provider, which arrive without it.

    Use via `async with PolygonClient(...) as client:`.
    """

    def __init__(
        self,
        config: ProviderConfig,
        api_key: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._api_key = api_key
        self._limiter = AsyncLimiter(max_rate=config.rate_limit, time_period=1.0)
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout),
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> PolygonClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client. Called automatically by __aexit__."""
        await self._client.aclose()

    @property
    def max_pages(self) -> int | None:
        return self._config.max_pages

    # --- URI Construction ---

    def with_token(self, uri: str) -> str:
        """Append the access token unless the URI already carries one."""
        if _TOKEN_PATTERN.search(uri):
            return uri
        separator = "&" if "?" in uri else "?"
        return f"{uri}{separator}{_TOKEN_PARAM}={self._api_key}"

    def _url(self, path: str) -> str:
        return f"{self._config.base_url}/{path}"

    def tickers_uri(self) -> str:
        return self.with_token(self._url(_TICKERS_PATH))

    def ticker_details_uri(self, code: str) -> str:
        return self.with_token(self._url(f"{_TICKER_DETAILS_PATH}/{quote(code, safe=':')}"))

    def splits_uri(self, code: str | None = None) -> str:
        url = self._url(_SPLITS_PATH)
        if code is not None:
            url += f"?ticker={quote(code, safe=':')}"
        return self.with_token(url)

    def dividends_uri(self, code: str | None = None) -> str:
        url = self._url(_DIVIDENDS_PATH)
        if code is not None:
            url += f"?ticker={quote(code, safe=':')}"
        return self.with_token(url)

    # --- Requests ---

    async def get_string(self, uri: str) -> str:
        """GET a URI and return the response body as text.

        Raises:
            IngestionError: Network error or non-200 status.
            RateLimitError: HTTP 429 after retry exhaustion.
        """
        response = await self._rate_limited_request("GET", self.with_token(uri))
        return response.text

    async def get_page(self, uri: str) -> ApiPage:
        """GET a URI and deserialize one page of a paginated listing."""
        body = await self.get_string(uri)
        try:
            return ApiPage.model_validate_json(body)
        except ValidationError as e:
            raise IngestionError(
                f"Unparseable page from {redact(uri)}: {e.error_count()} error(s)",
                context={"url": redact(uri)},
            ) from e

    def paginate(self, uri: str) -> ApiPaginator:
        return ApiPaginator(self, uri, max_pages=self.max_pages)

    # --- Rate Limiting & Retry ---

    async def _rate_limited_request(
        self,
        method: str,
        url: str,
        **kwargs: object,
    ) -> httpx.Response:
        """Execute an HTTP request with rate limiting and retry logic.

        Retry policy:
            - HTTP 429: Wait for Retry-After header value (or 12s default),
              then retry up to 3 times.
            - HTTP 500/502/503/504: Retry up to 3 times with exponential backoff.
            - Other HTTP errors: Raise immediately (no retry).
            - Connection errors: Retry up to 2 times with 2s delay.
        """
        safe_url = redact(url)

        for attempt in range(_MAX_RETRIES_429 + 1):
            try:
                await self._limiter.acquire()
                response = await self._client.request(method, url, **kwargs)

                if response.status_code == 200:
                    return response

                if response.status_code == 429:
                    retry_after = _retry_after_seconds(response)
                    if attempt < _MAX_RETRIES_429:
                        logger.warning(
                            "Rate limited (429) on %s, waiting %ds (attempt %d/%d)",
                            safe_url, retry_after, attempt + 1, _MAX_RETRIES_429,
                        )
                        await asyncio.sleep(retry_after)
                        continue
                    raise RateLimitError(
                        f"Rate limit exceeded after {_MAX_RETRIES_429} retries: {safe_url}",
                        context={"url": safe_url, "retry_after": retry_after},
                    )

                if response.status_code in (500, 502, 503, 504):
                    if attempt < _MAX_RETRIES_SERVER:
                        delay = 2**attempt
                        logger.warning(
                            "Server error %d on %s, retrying in %ds (attempt %d/%d)",
                            response.status_code, safe_url, delay,
                            attempt + 1, _MAX_RETRIES_SERVER,
                        )
                        await asyncio.sleep(delay)
                        continue
                    raise IngestionError(
                        f"Server error {response.status_code} after retries: {safe_url}",
                        context={"url": safe_url, "status_code": response.status_code},
                    )

                raise IngestionError(
                    f"HTTP {response.status_code} from {safe_url}",
                    context={"url": safe_url, "status_code": response.status_code},
                )

            except httpx.ConnectError as e:
                if attempt < _MAX_RETRIES_CONNECTION:
                    logger.warning(
                        "Connection error on %s, retrying in %ds (attempt %d/%d)",
                        safe_url, _CONNECTION_RETRY_DELAY,
                        attempt + 1, _MAX_RETRIES_CONNECTION,
                    )
                    await asyncio.sleep(_CONNECTION_RETRY_DELAY)
                    continue
                raise IngestionError(
                    f"Connection failed after retries: {safe_url}",
                    context={"url": safe_url, "error": str(e)},
                ) from e
            except httpx.HTTPError as e:
                raise IngestionError(
                    f"Request failed: {safe_url}: {e}",
                    context={"url": safe_url, "error": str(e)},
                ) from e

        raise IngestionError(
            f"Request failed after all retries: {safe_url}",
            context={"url": safe_url},
        )


class ApiPaginator:
    """Walks a cursor-paginated listing until the provider stops sending cursors.

    Iterates once: a second ``async for`` raises RuntimeError. When
    ``max_pages`` is set, exceeding it raises IngestionError instead of
    following a cursor forever.
    """

    def __init__(
        self,
        client: PolygonClient,
        start_uri: str,
        max_pages: int | None = None,
    ) -> None:
        self._client = client
        self._start_uri = start_uri
        self._max_pages = max_pages
        self._consumed = False
        self.pages_read = 0
        self.current_uri: str | None = None

    def __aiter__(self) -> AsyncIterator[ApiPage]:
        if self._consumed:
            raise RuntimeError("ApiPaginator can only be iterated once")
        self._consumed = True
        return self._walk()

    async def _walk(self) -> AsyncIterator[ApiPage]:
        uri: str | None = self._start_uri
        while uri:
            if self._max_pages is not None and self.pages_read >= self._max_pages:
                raise IngestionError(
                    f"Pagination exceeded {self._max_pages} pages",
                    context={"url": redact(uri), "max_pages": self._max_pages},
                )
            self.current_uri = uri
            page = await self._client.get_page(uri)
            self.pages_read += 1
            yield page
            uri = self._client.with_token(page.next_url) if page.next_url else None
