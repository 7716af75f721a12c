"""Tests for market_mirror.ingestion.client (PolygonClient, ApiPaginator)."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from market_mirror.core.config import ProviderConfig
from market_mirror.core.exceptions import IngestionError, RateLimitError
from market_mirror.ingestion.client import PolygonClient, redact

HOST = "api.test.polygon.io"
BASE = f"https://{HOST}"


# --- Fixtures ---


@pytest.fixture
async def client(provider_config: ProviderConfig) -> PolygonClient:
    async with PolygonClient(provider_config, "test-key") as c:
        yield c


def _page(codes: list[str], next_url: str | None = None) -> dict:
    body = {"status": "OK", "results": [{"ticker": c} for c in codes]}
    if next_url:
        body["next_url"] = next_url
    return body


# --- URI construction ---


class TestUris:
    def test_tickers_uri(self, client: PolygonClient):
        assert client.tickers_uri() == f"{BASE}/v3/reference/tickers?active=true&apiKey=test-key"

    def test_ticker_details_uri(self, client: PolygonClient):
        assert client.ticker_details_uri("I:SPX") == f"{BASE}/v3/reference/tickers/I:SPX?apiKey=test-key"

    def test_splits_uri(self, client: PolygonClient):
        assert client.splits_uri("AAPL") == f"{BASE}/v3/reference/splits?ticker=AAPL&apiKey=test-key"
        assert client.splits_uri() == f"{BASE}/v3/reference/splits?apiKey=test-key"

    def test_dividends_uri(self, client: PolygonClient):
        assert client.dividends_uri("MSFT") == f"{BASE}/v3/reference/dividends?ticker=MSFT&apiKey=test-key"

    def test_with_token_is_idempotent(self, client: PolygonClient):
        uri = client.with_token(f"{BASE}/v3/reference/tickers?cursor=abc")
        assert uri.endswith("cursor=abc&apiKey=test-key")
        assert client.with_token(uri) == uri


def test_redact_hides_key():
    assert redact(f"{BASE}/x?ticker=A&apiKey=secret&b=1") == f"{BASE}/x?ticker=A&apiKey=***&b=1"


# --- Requests ---


class TestGetString:
    @respx.mock
    async def test_returns_body_with_key(self, client: PolygonClient):
        route = respx.get(host=HOST, path="/v3/reference/splits").mock(
            return_value=httpx.Response(200, text='{"results": []}')
        )
        body = await client.get_string(client.splits_uri("AAPL"))
        assert body == '{"results": []}'
        request = route.calls.last.request
        assert request.url.params["apiKey"] == "test-key"
        assert request.url.params["ticker"] == "AAPL"

    @respx.mock
    async def test_raises_on_404_without_leaking_key(self, client: PolygonClient):
        respx.get(host=HOST, path="/v3/reference/tickers/NOPE").mock(
            return_value=httpx.Response(404)
        )
        with pytest.raises(IngestionError, match="HTTP 404") as exc_info:
            await client.get_string(client.ticker_details_uri("NOPE"))
        assert "test-key" not in str(exc_info.value)
        assert exc_info.value.context["status_code"] == 404

    @respx.mock
    async def test_retries_on_429(self, client: PolygonClient):
        route = respx.get(host=HOST, path="/v3/reference/dividends").mock(
            side_effect=[
                httpx.Response(429, headers={"Retry-After": "0"}),
                httpx.Response(200, text="ok"),
            ]
        )
        assert await client.get_string(client.dividends_uri("AAPL")) == "ok"
        assert route.call_count == 2

    @respx.mock
    async def test_http_date_retry_after_uses_default(self, client: PolygonClient):
        route = respx.get(host=HOST, path="/v3/reference/dividends").mock(
            side_effect=[
                httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"}),
                httpx.Response(200, text="ok"),
            ]
        )
        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            assert await client.get_string(client.dividends_uri("AAPL")) == "ok"

        assert route.call_count == 2
        mock_sleep.assert_awaited_once_with(12)

    @respx.mock
    async def test_raises_rate_limit_after_retries(self, client: PolygonClient):
        respx.get(host=HOST, path="/v3/reference/dividends").mock(
            return_value=httpx.Response(429, headers={"Retry-After": "0"})
        )
        with pytest.raises(RateLimitError, match="Rate limit exceeded"):
            await client.get_string(client.dividends_uri("AAPL"))

    @respx.mock
    async def test_retries_on_server_error(self, client: PolygonClient):
        route = respx.get(host=HOST, path="/v3/reference/splits").mock(
            side_effect=[httpx.Response(503), httpx.Response(200, text="ok")]
        )
        assert await client.get_string(client.splits_uri("AAPL")) == "ok"
        assert route.call_count == 2

    @respx.mock
    async def test_transport_error_wrapped(self, client: PolygonClient):
        respx.get(host=HOST, path="/v3/reference/splits").mock(
            side_effect=httpx.ReadTimeout("timed out")
        )
        with pytest.raises(IngestionError, match="Request failed"):
            await client.get_string(client.splits_uri("AAPL"))

    @respx.mock
    async def test_get_page_rejects_malformed_json(self, client: PolygonClient):
        respx.get(host=HOST, path="/v3/reference/tickers").mock(
            return_value=httpx.Response(200, text="not json")
        )
        with pytest.raises(IngestionError, match="Unparseable page"):
            await client.get_page(client.tickers_uri())


# --- Pagination ---


class TestApiPaginator:
    @respx.mock
    async def test_follows_cursor_with_key(self, client: PolygonClient):
        route = respx.get(host=HOST, path="/v3/reference/tickers").mock(
            side_effect=[
                httpx.Response(200, json=_page(["AAPL", "MSFT"], f"{BASE}/v3/reference/tickers?cursor=p2")),
                httpx.Response(200, json=_page(["I:SPX"], f"{BASE}/v3/reference/tickers?cursor=p3")),
                httpx.Response(200, json=_page(["X:BTCUSD"])),
            ]
        )
        paginator = client.paginate(client.tickers_uri())
        codes = []
        async for page in paginator:
            codes.extend(page.ticker_codes())

        assert codes == ["AAPL", "MSFT", "I:SPX", "X:BTCUSD"]
        assert paginator.pages_read == 3
        second = route.calls[1].request.url
        assert second.params["cursor"] == "p2"
        assert second.params["apiKey"] == "test-key"

    @respx.mock
    async def test_single_page(self, client: PolygonClient):
        respx.get(host=HOST, path="/v3/reference/tickers").mock(
            return_value=httpx.Response(200, json=_page(["AAPL"]))
        )
        pages = [p async for p in client.paginate(client.tickers_uri())]
        assert len(pages) == 1

    @respx.mock
    async def test_not_restartable(self, client: PolygonClient):
        respx.get(host=HOST, path="/v3/reference/tickers").mock(
            return_value=httpx.Response(200, json=_page(["AAPL"]))
        )
        paginator = client.paginate(client.tickers_uri())
        async for _ in paginator:
            pass
        with pytest.raises(RuntimeError, match="once"):
            async for _ in paginator:
                pass

    @respx.mock
    async def test_max_pages_guard(self, provider_config: ProviderConfig):
        config = provider_config.model_copy(update={"max_pages": 2})
        respx.get(host=HOST, path="/v3/reference/tickers").mock(
            return_value=httpx.Response(
                200, json=_page(["AAPL"], f"{BASE}/v3/reference/tickers?cursor=loop")
            )
        )
        async with PolygonClient(config, "test-key") as c:
            paginator = c.paginate(c.tickers_uri())
            with pytest.raises(IngestionError, match="exceeded 2 pages"):
                async for _ in paginator:
                    pass
        assert paginator.pages_read == 2

    @respx.mock
    async def test_current_uri_tracks_failing_page(self, client: PolygonClient):
        respx.get(host=HOST, path="/v3/reference/tickers").mock(
            side_effect=[
                httpx.Response(200, json=_page(["AAPL"], f"{BASE}/v3/reference/tickers?cursor=p2")),
                httpx.Response(404),
            ]
        )
        paginator = client.paginate(client.tickers_uri())
        with pytest.raises(IngestionError):
            async for _ in paginator:
                pass
        assert "cursor=p2" in paginator.current_uri
