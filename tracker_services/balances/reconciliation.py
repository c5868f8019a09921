"""Coverage reconciliation.

Works out which (wallet, network, token, date) snapshots are absent or too
stale to trust, using one batched timestamp lookup against the store.
"""

from datetime import datetime, timezone
from typing import List, Optional

import structlog

from balance_tracker.common.addresses import NATIVE_TOKEN_ADDRESS
from balance_tracker.common.config import TrackerConfig, TuningConfig
from .dates import end_of_day, last_n_days, to_date_str, utc_now
from .models import MissingEntry, MissingReport, SnapshotKey

logger = structlog.get_logger()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ReconciliationEngine:
    """Produces the per-cycle work list of missing or stale balances."""

    def __init__(self, tuning: Optional[TuningConfig] = None):
        self.tuning = tuning or TuningConfig()
        self.logger = logger.bind(component="reconciliation")

    def required_dates(self, history_days: int, now: datetime) -> List[str]:
        """Today plus the last `history_days` days, deduplicated, newest first."""
        dates = [to_date_str(now)] + last_n_days(history_days, now)
        return list(dict.fromkeys(dates))

    def required_keys(self, config: TrackerConfig, now: datetime) -> List[SnapshotKey]:
        dates = self.required_dates(config.history_days, now)
        keys = []
        for wallet in config.wallets:
            for network in config.networks:
                token_addresses = [NATIVE_TOKEN_ADDRESS] + [t.address for t in network.tokens]
                for token_address in token_addresses:
                    for date_str in dates:
                        keys.append(SnapshotKey(wallet.address, network.id, token_address, date_str))
        return keys

    def is_timestamp_fresh(self, timestamp: datetime, date_str: str, now: datetime) -> bool:
        """Whether a stored capture time is close enough to the instant it stands for.

        Today's snapshots are compared against `now`; historical ones against
        the end of their day, with a wider tolerance.
        """
        timestamp = _as_utc(timestamp)
        if date_str == to_date_str(now):
            gap = abs((now - timestamp).total_seconds())
            return gap <= self.tuning.today_tolerance_seconds

        gap = abs((timestamp - end_of_day(date_str)).total_seconds())
        return gap <= self.tuning.historical_tolerance_seconds

    def check_missing(self, config: TrackerConfig, store, now: Optional[datetime] = None) -> MissingReport:
        """Compare required coverage against stored snapshots.

        Args:
            config: Tracker configuration (wallets, networks, history_days)
            store: Persistence store answering the batched timestamp lookup
            now: Current instant (defaults to the wall clock)

        Returns:
            MissingReport with entries partitioned into today and historical
        """
        now = _as_utc(now or utc_now())
        today = to_date_str(now)

        keys = self.required_keys(config, now)
        stored = store.get_balance_timestamps(keys) if keys else {}

        report = MissingReport()
        stale = 0
        for key in keys:
            timestamp = stored.get(key)
            if timestamp is not None:
                if self.is_timestamp_fresh(timestamp, key.date, now):
                    continue
                stale += 1

            is_native = key.token_address == NATIVE_TOKEN_ADDRESS
            entry = MissingEntry(
                wallet_address=key.wallet_address,
                network_id=key.network_id,
                date=key.date,
                is_native=is_native,
                token_address=None if is_native else key.token_address,
            )
            if key.date == today:
                report.today.append(entry)
            else:
                report.historical.append(entry)

        self.logger.info(
            "reconciliation_complete",
            required=len(keys),
            today_missing=len(report.today),
            historical_missing=len(report.historical),
            total_missing=report.total,
            stale=stale,
        )
        return report
