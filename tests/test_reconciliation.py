"""Tests for ReconciliationEngine."""

from datetime import datetime, timedelta, timezone

import pytest

from balance_tracker.common.addresses import NATIVE_TOKEN_ADDRESS
from balance_tracker.common.config import TuningConfig
from tracker_services.balances.models import BalanceRow, MissingEntry
from tracker_services.balances.reconciliation import ReconciliationEngine

from conftest import DAI, USDC, WALLET_A, WALLET_B

NOW = datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def store_row(store, wallet, network_id, token, date_str, captured_at):
    row = BalanceRow(wallet, network_id, token, date_str, "SYM", "1", 1, captured_at)
    store.balances[row.key] = row


@pytest.fixture
def engine():
    return ReconciliationEngine()


class TestFreshness:

    def test_historical_within_three_hours(self, engine):
        assert engine.is_timestamp_fresh(utc(2024, 1, 2, 2, 0), "2024-01-01", NOW)

    def test_historical_beyond_three_hours(self, engine):
        assert not engine.is_timestamp_fresh(utc(2024, 1, 2, 3, 1), "2024-01-01", NOW)

    def test_historical_before_end_of_day(self, engine):
        assert engine.is_timestamp_fresh(utc(2024, 1, 1, 22, 0), "2024-01-01", NOW)
        assert not engine.is_timestamp_fresh(utc(2024, 1, 1, 12, 0), "2024-01-01", NOW)

    def test_today_within_one_hour(self, engine):
        assert engine.is_timestamp_fresh(NOW - timedelta(minutes=59), "2024-01-05", NOW)

    def test_today_beyond_one_hour(self, engine):
        assert not engine.is_timestamp_fresh(NOW - timedelta(minutes=61), "2024-01-05", NOW)

    def test_naive_timestamp_is_utc(self, engine):
        naive = (NOW - timedelta(minutes=30)).replace(tzinfo=None)
        assert engine.is_timestamp_fresh(naive, "2024-01-05", NOW)

    def test_tolerances_configurable(self):
        engine = ReconciliationEngine(TuningConfig(today_tolerance_seconds=7200))
        assert engine.is_timestamp_fresh(NOW - timedelta(minutes=61), "2024-01-05", NOW)


class TestCheckMissing:

    def test_required_dates_deduplicated(self, engine):
        assert engine.required_dates(3, NOW) == ["2024-01-05", "2024-01-04", "2024-01-03"]
        assert engine.required_dates(1, NOW) == ["2024-01-05"]

    def test_empty_store_everything_missing(self, engine, sample_config, store):
        report = engine.check_missing(sample_config, store, now=NOW)

        # 2 wallets x (ETH + USDC + DAI on mainnet, POL on polygon) x dates
        assert len(report.today) == 8
        assert len(report.historical) == 16
        assert report.total == 24
        assert {e.date for e in report.historical} == {"2024-01-04", "2024-01-03"}
        assert store.lookup_calls == 1

    def test_entries_describe_tokens(self, engine, sample_config, store):
        report = engine.check_missing(sample_config, store, now=NOW)

        assert MissingEntry(WALLET_A, 1, "2024-01-05") in report.today
        assert MissingEntry(WALLET_B, 1, "2024-01-04", is_native=False, token_address=DAI) in report.historical
        assert report.today[0].is_native and report.today[0].token_address is None

    def test_fresh_rows_are_skipped(self, engine, sample_config, store):
        store_row(store, WALLET_A, 1, NATIVE_TOKEN_ADDRESS, "2024-01-05", NOW - timedelta(minutes=10))
        store_row(store, WALLET_A, 1, USDC, "2024-01-04", utc(2024, 1, 4, 23, 59, 50))

        report = engine.check_missing(sample_config, store, now=NOW)

        assert MissingEntry(WALLET_A, 1, "2024-01-05") not in report.today
        assert MissingEntry(WALLET_A, 1, "2024-01-04", False, USDC) not in report.historical
        assert len(report.today) == 7
        assert len(report.historical) == 15

    def test_stale_rows_are_refetched(self, engine, sample_config, store):
        store_row(store, WALLET_A, 1, NATIVE_TOKEN_ADDRESS, "2024-01-05", NOW - timedelta(hours=2))
        # Historical row captured at "now" (fallback block), far from its end of day
        store_row(store, WALLET_B, 137, NATIVE_TOKEN_ADDRESS, "2024-01-03", NOW)

        report = engine.check_missing(sample_config, store, now=NOW)

        assert MissingEntry(WALLET_A, 1, "2024-01-05") in report.today
        assert MissingEntry(WALLET_B, 137, "2024-01-03") in report.historical
        assert report.total == 24

    def test_no_wallets(self, engine, sample_config, store):
        config = sample_config.model_copy(update={"wallets": []})

        report = engine.check_missing(config, store, now=NOW)

        assert report.total == 0
        assert store.lookup_calls == 0
