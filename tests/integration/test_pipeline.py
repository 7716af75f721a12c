"""Integration tests for the import → load → adjust pipeline.

Modules work together against real SQLite and the filesystem; the provider
API is mocked with respx and the bucket with an in-memory object store.
"""

from __future__ import annotations

from datetime import date

import httpx
import pytest
import respx

from market_mirror.core.config import ImportConfig
from market_mirror.core.models import ImportPhase
from market_mirror.ingestion.importer import PolygonImporter
from market_mirror.ingestion.ledger import RemoteLedger
from market_mirror.prices.flat_file import load_flat_file

pytestmark = pytest.mark.integration

HOST = "api.test.polygon.io"
PREFIX = "us_stocks_sip/day_aggs_v1"


@pytest.fixture
def import_config(tmp_path) -> ImportConfig:
    return ImportConfig(
        api_key="test-key",
        access_key="access",
        actions={"Tickers": "stocks", "Splits": "stocks", "Flat Files": "true"},
        import_file_prefixes=[PREFIX],
        options={"Import File Location": str(tmp_path / "files"), "Years of Data": "1"},
    )


def _mock_provider() -> None:
    respx.get(host=HOST, path="/v3/reference/tickers").mock(
        return_value=httpx.Response(
            200,
            json={"status": "OK", "results": [{"ticker": "AAPL"}, {"ticker": "MSFT"}, {"ticker": "I:SPX"}]},
        )
    )
    respx.get(host=HOST, path="/v3/reference/splits", params={"ticker": "AAPL"}).mock(
        return_value=httpx.Response(
            200,
            json={
                "status": "OK",
                "results": [
                    {"ticker": "AAPL", "execution_date": "2099-01-05", "split_from": 1, "split_to": 4}
                ],
            },
        )
    )
    respx.get(host=HOST, path="/v3/reference/splits", params={"ticker": "MSFT"}).mock(
        return_value=httpx.Response(200, json={"status": "OK", "results": []})
    )


def _importer(config, client, store, object_store, price_store, **kwargs) -> PolygonImporter:
    return PolygonImporter(
        config,
        client=client,
        store=store,
        object_store=object_store,
        price_store=price_store,
        **kwargs,
    )


class TestImportPipeline:
    @respx.mock
    async def test_import_load_adjust(
        self,
        import_config,
        integration_client,
        integration_store,
        integration_price_store,
        populated_bucket,
        tmp_path,
    ):
        _mock_provider()
        importer = _importer(
            import_config, integration_client, integration_store, populated_bucket, integration_price_store
        )

        await importer.run()

        assert importer.phase == ImportPhase.DONE
        assert importer.tickers == ("AAPL", "MSFT")
        assert importer.last_sync_report.downloaded == 3

        files = sorted((tmp_path / "files").glob("*.csv.gz"))
        assert [f.name for f in files] == [
            "us_stocks_sip_day_aggs_v1_2099-01-02.csv.gz",
            "us_stocks_sip_day_aggs_v1_2099-01-05.csv.gz",
            "us_stocks_sip_day_aggs_v1_2099-01-06.csv.gz",
        ]
        for f in files:
            await integration_price_store.store_prices(load_flat_file(f))

        adjusted = await integration_price_store.get_adjusted_prices("AAPL")
        assert [(a.date_eod, a.factor, a.close) for a in adjusted] == [
            (date(2099, 1, 2), 4.0, 1600.0),
            (date(2099, 1, 5), 1.0, 101.0),
            (date(2099, 1, 6), 1.0, 102.0),
        ]
        msft = await integration_price_store.get_adjusted_prices("MSFT")
        assert [a.factor for a in msft] == [1.0, 1.0, 1.0]

    @respx.mock
    async def test_second_run_is_idempotent(
        self,
        import_config,
        integration_client,
        integration_store,
        integration_price_store,
        populated_bucket,
    ):
        _mock_provider()
        first = _importer(
            import_config, integration_client, integration_store, populated_bucket, integration_price_store
        )
        await first.run()
        second = _importer(
            import_config, integration_client, integration_store, populated_bucket, integration_price_store
        )
        await second.run()

        assert second.last_sync_report.downloaded == 0
        assert second.last_sync_report.skipped == 3
        assert len(populated_bucket.downloads) == 3
        records = await RemoteLedger(integration_store).load("polygon.io", "AWS")
        assert {r.process_id for r in records} == {first.process_id}

    @respx.mock
    async def test_purge_then_reimport(
        self,
        import_config,
        integration_client,
        integration_store,
        integration_price_store,
        populated_bucket,
    ):
        _mock_provider()
        await _importer(
            import_config, integration_client, integration_store, populated_bucket, integration_price_store
        ).run()

        purge_config = import_config.model_copy(
            update={"actions": {**import_config.actions, "Purge": "true"}}
        )
        importer = _importer(
            purge_config, integration_client, integration_store, populated_bucket, integration_price_store
        )
        assert importer.contains_danger()[0]
        await importer.run()

        # purge cleared the ledger, so every file was fetched again
        assert importer.last_sync_report.downloaded == 3
        assert len(populated_bucket.downloads) == 6
        assert await integration_store.count_transactions("polygon.io", "Splits") == 2

    async def test_dry_run_leaves_no_trace(
        self,
        import_config,
        integration_client,
        integration_store,
        integration_price_store,
        populated_bucket,
        tmp_path,
    ):
        importer = _importer(
            import_config,
            integration_client,
            integration_store,
            populated_bucket,
            integration_price_store,
            dry_run=True,
        )
        await importer.run()

        assert populated_bucket.list_calls == 0
        assert not (tmp_path / "files").exists()
        assert await integration_store.count_transactions("polygon.io") == 0
        assert await integration_price_store.get_splits("AAPL") == []
