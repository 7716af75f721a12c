"""Tests for split parsing, cumulative factors and price adjustment."""

import logging
from datetime import date

import pytest
from pydantic import ValidationError

from market_mirror.core.exceptions import DataIntegrityError, SplitAdjustmentError
from market_mirror.prices.models import Split, parse_split_ratio
from market_mirror.prices.splits import adjust_prices, compute_split_factors

D1 = date(2020, 8, 31)
D2 = date(2022, 6, 6)


class TestParseSplitRatio:
    def test_slash(self):
        assert parse_split_ratio("4/1") == (1.0, 4.0)

    def test_colon(self):
        assert parse_split_ratio("3:2") == (2.0, 3.0)

    @pytest.mark.parametrize("text", ["", "four/one", "4/", "1/2/3", "0/1", "abc"])
    def test_malformed_is_noop(self, text, caplog):
        with caplog.at_level(logging.WARNING):
            assert parse_split_ratio(text) == (1.0, 1.0)
        assert "split ratio" in caplog.text


class TestSplit:
    def test_factor(self, make_split):
        assert make_split(D1, before=1, after=4).factor == 4.0

    def test_reverse_split_factor(self, make_split):
        assert make_split(D1, before=10, after=1).factor == pytest.approx(0.1)

    def test_zero_before_is_unit_factor(self, make_split):
        assert make_split(D1, before=0, after=5).factor == 1.0

    def test_after_must_be_positive(self, make_split):
        with pytest.raises(ValidationError, match="after must be > 0"):
            make_split(D1, before=1, after=0)

    def test_from_text_malformed(self):
        split = Split.from_text("polygon.io", "AAPL", D1, "garbage")
        assert split.factor == 1.0


class TestComputeSplitFactors:
    def test_cumulative_from_latest(self, make_split):
        factors = compute_split_factors(
            [make_split(D2, before=1, after=3), make_split(D1, before=1, after=2)]
        )
        assert [f.date for f in factors] == [D1, D2]
        assert [f.factor for f in factors] == [6.0, 3.0]

    def test_single(self, make_split):
        factors = compute_split_factors([make_split(D1, before=1, after=4)])
        assert [f.factor for f in factors] == [4.0]

    def test_empty(self):
        assert compute_split_factors([]) == []


class TestAdjustPrices:
    @pytest.fixture
    def splits(self, make_split):
        return [make_split(D1, before=1, after=2), make_split(D2, before=1, after=3)]

    def test_applied_factors_across_two_splits(self, make_price, splits):
        prices = [
            make_price(date(2020, 8, 28), close=600),
            make_price(D1, close=300),
            make_price(date(2021, 1, 4), close=300),
            make_price(D2, close=100),
            make_price(date(2022, 6, 7), close=100),
        ]
        adjusted = adjust_prices(prices, splits)
        assert [a.factor for a in adjusted] == [6.0, 3.0, 3.0, 1.0, 1.0]
        assert adjusted[0].close == 3600

    def test_unsorted_input_is_sorted(self, make_price, splits):
        prices = [make_price(D2), make_price(date(2020, 1, 2)), make_price(D1)]
        adjusted = adjust_prices(prices, splits)
        assert [a.date_eod for a in adjusted] == [date(2020, 1, 2), D1, D2]

    def test_missing_split_day_still_advances(self, make_price, splits):
        # no bar on either split date
        prices = [
            make_price(date(2020, 8, 28)),
            make_price(date(2020, 9, 1)),
            make_price(date(2022, 6, 8)),
        ]
        adjusted = adjust_prices(prices, splits)
        assert [a.factor for a in adjusted] == [6.0, 3.0, 1.0]

    def test_one_output_per_input(self, make_price, splits):
        prices = [make_price(date(2020, 8, 1 + i)) for i in range(28)] + [make_price(D2)]
        assert len(adjust_prices(prices, splits)) == len(prices)

    def test_no_splits_is_identity(self, make_price):
        prices = [make_price(date(2024, 1, 2), close=10), make_price(date(2024, 1, 3), close=11)]
        adjusted = adjust_prices(prices, [])
        assert [a.factor for a in adjusted] == [1.0, 1.0]
        assert [a.close for a in adjusted] == [10, 11]

    def test_no_prices(self, splits):
        assert adjust_prices([], splits) == []

    def test_single_split_history_entirely_before(self, make_price, make_split):
        adjusted = adjust_prices(
            [make_price(date(2020, 1, 2), close=400)], [make_split(D1, before=1, after=4)]
        )
        assert adjusted[0].factor == 4.0
        assert adjusted[0].close == 1600

    def test_series_ending_before_final_split_raises(self, make_price, splits):
        prices = [make_price(date(2020, 1, 2)), make_price(date(2020, 2, 3))]
        with pytest.raises(SplitAdjustmentError) as exc_info:
            adjust_prices(prices, splits)
        assert exc_info.value.context == {"code": "AAPL", "consumed": 0, "factors": 2}

    def test_integrity_error_is_catchable_as_parent(self, make_price, splits):
        with pytest.raises(DataIntegrityError):
            adjust_prices([make_price(date(2019, 5, 1))], splits)

    def test_malformed_ratio_does_not_adjust(self, make_price):
        split = Split.from_text("polygon.io", "AAPL", D1, "n/a")
        adjusted = adjust_prices([make_price(date(2020, 1, 2), close=50)], [split])
        assert adjusted[0].close == 50
