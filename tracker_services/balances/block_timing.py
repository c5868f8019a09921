"""Block timing utilities for end-of-day snapshot resolution.

This module maps a (network, calendar date) pair to the block that best
represents the state of the chain at the end of that UTC day. A block-time
estimate lands close to the answer; a short corrective walk then settles on
the last block at or before the target instant. Resolved mappings are
persisted so each date is searched at most once.
"""

from datetime import datetime, timezone
from functools import partial
from typing import Dict, Optional

import structlog

from balance_tracker.common.config import DEFAULT_BLOCK_TIME_MS, NetworkConfig, TuningConfig
from .dates import end_of_day_timestamp
from .models import BlockMapping

logger = structlog.get_logger()


class BlockResolver:
    """Resolves calendar dates to end-of-day block numbers, with a persisted cache."""

    def __init__(self, store, registry, rate_limiter, tuning: Optional[TuningConfig] = None):
        """Initialize block resolver.

        Args:
            store: Persistence store holding the block mapping cache
            registry: ChainClientRegistry providing one client per network
            rate_limiter: RateLimiter admitting every chain call
            tuning: Search tolerances (defaults if omitted)
        """
        self.store = store
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.tuning = tuning or TuningConfig()

        self.logger = logger.bind(component="block_resolver")

    async def _latest_block(self, network_id: int):
        client = self.registry.get(network_id)
        return await self.rate_limiter.execute(
            network_id, client.get_latest_block, "get_latest_block"
        )

    async def _block_timestamp(self, network_id: int, block_number: int, seen: Dict[int, int]) -> int:
        if block_number in seen:
            return seen[block_number]

        client = self.registry.get(network_id)
        timestamp = await self.rate_limiter.execute(
            network_id,
            partial(client.get_block_timestamp, block_number),
            "get_block_timestamp",
        )
        seen[block_number] = timestamp
        return timestamp

    async def get_current_block(self, network: NetworkConfig) -> BlockMapping:
        """Chain head for `network`, uncached."""
        number, timestamp = await self._latest_block(network.id)
        return BlockMapping(number, timestamp)

    async def resolve_block(self, network: NetworkConfig, date_str: str) -> BlockMapping:
        """Find the block representing 23:59:59.999 UTC of `date_str`.

        Args:
            network: Network to resolve on
            date_str: Calendar date (YYYY-MM-DD)

        Returns:
            BlockMapping with the chosen block number and its timestamp

        Raises:
            RpcError, aiohttp.ClientError: On chain read failures (not retried)
        """
        cached = self.store.get_block_mapping(network.id, date_str)
        if cached is not None:
            self.logger.debug(
                "block_mapping_cache_hit",
                network_id=network.id,
                date=date_str,
                block_number=cached.block_number,
            )
            return cached

        log = self.logger.bind(network_id=network.id, date=date_str)
        target = end_of_day_timestamp(date_str)

        current_block, current_ts = await self._latest_block(network.id)

        if target > current_ts:
            # Day not over yet; the head is the best answer and must not be cached
            log.debug("target_in_future", current_block=current_block)
            return BlockMapping(current_block, current_ts)

        block_time_ms = network.block_time_ms or DEFAULT_BLOCK_TIME_MS
        blocks_ago = (current_ts - target) * 1000 // block_time_ms
        estimated = max(0, current_block - blocks_ago)

        seen = {current_block: current_ts}
        estimated_ts = await self._block_timestamp(network.id, estimated, seen)

        log.info(
            "resolving_block_by_timestamp",
            target_datetime=datetime.fromtimestamp(target, tz=timezone.utc).isoformat(),
            estimated_block=estimated,
            estimated_gap_seconds=estimated_ts - target,
        )

        if estimated_ts > target:
            block_number, block_ts = await self._walk_back(network.id, estimated, estimated_ts, target, seen)
        elif target - estimated_ts <= self.tuning.block_search_tolerance_seconds:
            block_number, block_ts = estimated, estimated_ts
        else:
            block_number, block_ts = await self._linear_search(network.id, estimated, estimated_ts, target, seen)

        self.store.save_block_mapping(network.id, date_str, block_number, block_ts)

        log.info(
            "block_resolved",
            block_number=block_number,
            block_timestamp=block_ts,
            time_diff_seconds=target - block_ts,
            blocks_fetched=len(seen) - 1,
        )

        return BlockMapping(block_number, block_ts)

    async def _walk_back(self, network_id, block_number, block_ts, target, seen):
        """Step back one block at a time until at or before `target`, or block 0."""
        while block_ts > target and block_number > 0:
            block_number -= 1
            block_ts = await self._block_timestamp(network_id, block_number, seen)
        return block_number, block_ts

    async def _linear_search(self, network_id, start, start_ts, target, seen):
        """Bounded walk toward `target` from a block that is too far from it.

        Tracks the block with the smallest gap and the last block at or before
        the target. Stops when a step widens the gap or lands within tolerance.
        If the closest block is after the target, the last block at or before
        it wins.
        """
        direction = 1 if start_ts < target else -1
        closest = (start, start_ts)
        closest_diff = abs(start_ts - target)
        last_before = (start, start_ts) if start_ts <= target else None

        block_number = start
        for _ in range(self.tuning.block_search_steps):
            block_number += direction
            if block_number < 0:
                break

            block_ts = await self._block_timestamp(network_id, block_number, seen)
            diff = abs(block_ts - target)

            if block_ts <= target:
                last_before = (block_number, block_ts)

            if diff >= closest_diff:
                break

            closest = (block_number, block_ts)
            closest_diff = diff

            if diff <= self.tuning.block_search_tolerance_seconds:
                break

        if closest[1] > target and last_before is not None:
            return last_before
        return closest
