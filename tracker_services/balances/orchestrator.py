"""Balance reconciliation orchestrator.

This module runs the update cycle: find what is missing or stale, fetch it at
the right block for each network and date, and persist it. A failure in one
(network, date) group is logged and never stops the rest of the pass.
"""

import asyncio
import time
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from balance_tracker.common.config import NetworkConfig, TrackerConfig, WalletConfig
from balance_tracker.common.logging_setup import get_logger, log_cycle_summary
from .block_timing import BlockResolver
from .models import MissingEntry, MissingReport
from .multicall_client import BalanceFetcher
from .reconciliation import ReconciliationEngine

logger = get_logger(__name__)


class WalletTracker:
    """Drives reconciliation passes over every configured wallet and network."""

    def __init__(self, config: TrackerConfig, store, registry, rate_limiter):
        """Initialize tracker.

        Args:
            config: Tracker configuration
            store: Persistence store (BalanceStorageService or compatible)
            registry: ChainClientRegistry built from the same configuration
            rate_limiter: RateLimiter built from the same configuration
        """
        self.config = config
        self.store = store
        self.registry = registry
        self.rate_limiter = rate_limiter

        self.resolver = BlockResolver(store, registry, rate_limiter, config.tuning)
        self.fetcher = BalanceFetcher(store, registry, rate_limiter, config.tuning.wallet_batch_size)
        self.reconciler = ReconciliationEngine(config.tuning)

    def _group_by_network(
        self,
        entries: List[MissingEntry],
    ) -> "OrderedDict[int, Tuple[NetworkConfig, List[WalletConfig]]]":
        """Collapse entries to unique wallets per network, dropping unknown ones."""
        groups: "OrderedDict[int, Tuple[NetworkConfig, List[WalletConfig]]]" = OrderedDict()
        seen = set()

        for entry in entries:
            network = self.config.get_network(entry.network_id)
            wallet = self.config.get_wallet(entry.wallet_address)
            if network is None or wallet is None:
                logger.debug(
                    f"Skipping entry for wallet {entry.wallet_address} on network "
                    f"{entry.network_id}: no longer configured"
                )
                continue

            if (network.id, wallet.address) in seen:
                continue
            seen.add((network.id, wallet.address))

            groups.setdefault(network.id, (network, []))[1].append(wallet)

        return groups

    async def _fetch_today_group(
        self,
        network: NetworkConfig,
        wallets: List[WalletConfig],
        date_str: str,
    ) -> Optional[int]:
        try:
            block = await self.resolver.get_current_block(network)
            return await self.fetcher.fetch_and_save(
                wallets, network, block.block_number, date_str, block.block_timestamp
            )
        except Exception as e:
            logger.error(
                f"Failed to update today's balances on {network.name} "
                f"({len(wallets)} wallets): {e}"
            )
            return None

    async def _fetch_historical_group(
        self,
        network: NetworkConfig,
        wallets: List[WalletConfig],
        date_str: str,
    ) -> Optional[int]:
        try:
            try:
                block = await self.resolver.resolve_block(network, date_str)
            except Exception as e:
                logger.warning(
                    f"Block resolution failed for {network.name} on {date_str}, "
                    f"falling back to current block: {e}"
                )
                block = await self.resolver.get_current_block(network)

            return await self.fetcher.fetch_and_save(
                wallets, network, block.block_number, date_str, block.block_timestamp
            )
        except Exception as e:
            logger.error(
                f"Failed to update balances on {network.name} for {date_str} "
                f"({len(wallets)} wallets): {e}"
            )
            return None

    async def _run_groups(self, coros) -> Tuple[int, int]:
        """Run groups concurrently; returns (rows saved, groups failed)."""
        results = await asyncio.gather(*coros)
        saved = sum(r for r in results if r is not None)
        failed = sum(1 for r in results if r is None)
        return saved, failed

    async def fetch_today_balances(self, entries: List[MissingEntry]) -> Tuple[int, int]:
        """Fetch today's entries at the current block, one group per network."""
        if not entries:
            return 0, 0

        date_str = entries[0].date
        groups = self._group_by_network(entries)
        logger.info(f"Fetching {len(entries)} missing entries for today across {len(groups)} networks")

        return await self._run_groups(
            self._fetch_today_group(network, wallets, date_str)
            for network, wallets in groups.values()
        )

    async def fetch_historical_balances(self, entries: List[MissingEntry]) -> Tuple[int, int]:
        """Fetch historical entries grouped by date, then network.

        Networks within a date run concurrently; dates run one after another.
        """
        if not entries:
            return 0, 0

        by_date: "OrderedDict[str, List[MissingEntry]]" = OrderedDict()
        for entry in entries:
            by_date.setdefault(entry.date, []).append(entry)

        saved = failed = 0
        for date_str, date_entries in by_date.items():
            groups = self._group_by_network(date_entries)
            logger.info(f"Fetching {len(date_entries)} missing entries for {date_str}")

            date_saved, date_failed = await self._run_groups(
                self._fetch_historical_group(network, wallets, date_str)
                for network, wallets in groups.values()
            )
            saved += date_saved
            failed += date_failed

        return saved, failed

    def _summary(self, report: MissingReport) -> Dict:
        return {
            'today_missing': len(report.today),
            'historical_missing': len(report.historical),
            'groups_failed': 0,
            'balances_saved': 0,
        }

    async def update_balances(self, now: Optional[datetime] = None) -> Dict:
        """Run one reconciliation pass.

        Returns:
            Summary with missing counts, failed groups and rows saved
        """
        start = time.time()

        if not self.config.wallets:
            logger.info("No wallets configured, nothing to update")
            return self._summary(MissingReport())

        report = self.reconciler.check_missing(self.config, self.store, now)
        summary = self._summary(report)

        for entries, fetch in (
            (report.today, self.fetch_today_balances),
            (report.historical, self.fetch_historical_balances),
        ):
            saved, failed = await fetch(entries)
            summary['balances_saved'] += saved
            summary['groups_failed'] += failed

        log_cycle_summary(__name__, summary, time.time() - start)
        return summary

    async def initialize(self, now: Optional[datetime] = None) -> Dict:
        """Initial fill: fetch every missing historical snapshot."""
        start = time.time()

        report = self.reconciler.check_missing(self.config, self.store, now)
        summary = self._summary(report)
        summary['today_missing'] = 0

        saved, failed = await self.fetch_historical_balances(report.historical)
        summary['balances_saved'] = saved
        summary['groups_failed'] = failed

        log_cycle_summary(__name__, summary, time.time() - start)
        return summary

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Repeat update passes every `update_interval` seconds until stopped."""
        stop_event = stop_event or asyncio.Event()
        interval = self.config.update_interval

        logger.info(f"Starting update loop every {interval}s")

        while not stop_event.is_set():
            try:
                await self.update_balances()
            except Exception as e:
                logger.exception(f"Update pass failed: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

        logger.info("Update loop stopped")
