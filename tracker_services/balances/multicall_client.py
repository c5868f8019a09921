"""Multicall balance fetcher.

Reads native and ERC-20 balances for groups of wallets at a fixed block with
one Multicall3 call per wallet batch, then persists each batch in a single
transaction.
"""

from datetime import datetime, timezone
from functools import partial
from typing import List, Optional, Sequence

import structlog

from balance_tracker.common.config import NetworkConfig, WalletConfig
from .models import ReadCall, TokenBalance, WalletBalances
from .rpc_client import BALANCE_OF_SELECTOR, GET_ETH_BALANCE_SELECTOR, MULTICALL3_ADDRESS

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 5


def build_calls(wallets: Sequence[WalletConfig], network: NetworkConfig) -> List[ReadCall]:
    """Native reads for every wallet, then balanceOf grouped by token, then wallet."""
    calls = [
        ReadCall(MULTICALL3_ADDRESS, GET_ETH_BALANCE_SELECTOR, (wallet.address,))
        for wallet in wallets
    ]
    for token in network.tokens:
        calls.extend(
            ReadCall(token.address, BALANCE_OF_SELECTOR, (wallet.address,))
            for wallet in wallets
        )
    return calls


def _as_balance(value: Optional[int]) -> str:
    return "0" if value is None else str(value)


class BalanceFetcher:
    """Batched balance reads and saves for one network at one block."""

    def __init__(self, store, registry, rate_limiter, batch_size: int = DEFAULT_BATCH_SIZE):
        """Initialize balance fetcher.

        Args:
            store: Persistence store receiving one transaction per batch
            registry: ChainClientRegistry providing one client per network
            rate_limiter: RateLimiter admitting every multicall
            batch_size: Wallets per multicall batch (default: 5)
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.batch_size = batch_size

        self.logger = logger.bind(component="balance_fetcher")

    async def fetch_balances(
        self,
        wallets: Sequence[WalletConfig],
        network: NetworkConfig,
        block_number: Optional[int],
    ) -> List[WalletBalances]:
        """Read balances of up to one batch of wallets in a single multicall.

        Returns:
            One WalletBalances per wallet, in input order. Failed reads are "0".
        """
        client = self.registry.get(network.id)
        calls = build_calls(wallets, network)

        values = await self.rate_limiter.execute(
            network.id,
            partial(client.batch_read, calls, block_number),
            "batch_read",
        )

        count = len(wallets)
        results = []
        for idx, wallet in enumerate(wallets):
            tokens = [
                TokenBalance(
                    address=token.address,
                    symbol=token.symbol,
                    balance=_as_balance(values[count * (t + 1) + idx]),
                    decimals=token.decimals,
                )
                for t, token in enumerate(network.tokens)
            ]
            results.append(
                WalletBalances(
                    address=wallet.address,
                    network_id=network.id,
                    native_symbol=network.native_token.symbol,
                    native_balance=_as_balance(values[idx]),
                    label=wallet.label,
                    tokens=tokens,
                )
            )
        return results

    async def fetch_and_save(
        self,
        wallets: Sequence[WalletConfig],
        network: NetworkConfig,
        block_number: int,
        date_str: str,
        block_timestamp: int,
    ) -> int:
        """Fetch balances at `block_number` and store them under `date_str`.

        Args:
            wallets: Wallets to read
            network: Network to read on
            block_number: Block every read is pinned to
            date_str: Snapshot date (YYYY-MM-DD)
            block_timestamp: Timestamp of `block_number`, recorded as capture time

        Returns:
            Number of balance rows written

        Raises:
            Chain and persistence errors propagate; batches already saved stay saved
        """
        log = self.logger.bind(
            network_id=network.id,
            date=date_str,
            block=block_number,
            num_wallets=len(wallets),
        )
        log.info("fetching_multi_wallet_balances")

        captured_at = datetime.fromtimestamp(block_timestamp, tz=timezone.utc)
        saved = 0

        for i in range(0, len(wallets), self.batch_size):
            batch = list(wallets[i:i + self.batch_size])
            balances = await self.fetch_balances(batch, network, block_number)

            rows = []
            for wallet_balances in balances:
                rows.extend(wallet_balances.to_rows(block_number, date_str, captured_at))

            self.store.save_balances(rows)
            saved += len(rows)

            log.debug("wallet_batch_saved", batch_index=i // self.batch_size, rows=len(rows))

        log.info("multi_wallet_balances_complete", balances_saved=saved)
        return saved
