"""Tests for BalanceFetcher."""

from datetime import datetime, timezone

import pytest

from balance_tracker.common.addresses import NATIVE_TOKEN_ADDRESS
from balance_tracker.common.config import WalletConfig
from tracker_services.balances.events import BalanceEvent
from tracker_services.balances.multicall_client import BalanceFetcher, build_calls
from tracker_services.balances.rpc_client import (
    BALANCE_OF_SELECTOR,
    GET_ETH_BALANCE_SELECTOR,
    MULTICALL3_ADDRESS,
    RpcError,
)

from conftest import DAI, USDC, WALLET_A, WALLET_B, FixtureChainClient, make_registry

BLOCK = 19_000_000
BLOCK_TS = 1704153500


def wallets(count):
    return [WalletConfig(address="0x%040x" % (i + 1)) for i in range(count)]


@pytest.fixture
def chain():
    return FixtureChainClient(lambda n: BLOCK_TS, head=BLOCK)


@pytest.fixture
def fetcher(store, chain, fast_rate_limiter):
    return BalanceFetcher(store, make_registry({1: chain, 137: chain}), fast_rate_limiter)


class TestBuildCalls:

    def test_native_first_then_grouped_by_token(self, sample_config):
        network = sample_config.get_network(1)
        group = [WalletConfig(address=WALLET_A), WalletConfig(address=WALLET_B)]

        calls = build_calls(group, network)

        assert [(c.target, c.selector, c.args) for c in calls] == [
            (MULTICALL3_ADDRESS, GET_ETH_BALANCE_SELECTOR, (WALLET_A,)),
            (MULTICALL3_ADDRESS, GET_ETH_BALANCE_SELECTOR, (WALLET_B,)),
            (USDC, BALANCE_OF_SELECTOR, (WALLET_A,)),
            (USDC, BALANCE_OF_SELECTOR, (WALLET_B,)),
            (DAI, BALANCE_OF_SELECTOR, (WALLET_A,)),
            (DAI, BALANCE_OF_SELECTOR, (WALLET_B,)),
        ]

    def test_network_without_tokens(self, sample_config):
        calls = build_calls([WalletConfig(address=WALLET_A)], sample_config.get_network(137))
        assert len(calls) == 1


class TestBalanceFetcher:

    @pytest.mark.asyncio
    async def test_fetch_balances_maps_results(self, fetcher, chain, sample_config):
        chain.balances = {
            (MULTICALL3_ADDRESS, WALLET_A): 10**18,
            (USDC, WALLET_A): 2500000,
            (DAI, WALLET_B): 2**200,
        }
        group = [WalletConfig(address=WALLET_A, label="alpha"), WalletConfig(address=WALLET_B)]

        result = await fetcher.fetch_balances(group, sample_config.get_network(1), BLOCK)

        first, second = result
        assert first.label == "alpha"
        assert first.native_symbol == "ETH"
        assert first.native_balance == "1000000000000000000"
        assert [(t.symbol, t.balance) for t in first.tokens] == [("USDC", "2500000"), ("DAI", "0")]
        assert second.native_balance == "0"
        assert second.tokens[1].balance == str(2**200)
        assert chain.batch_reads[0][1] == BLOCK

    @pytest.mark.asyncio
    async def test_batches_of_five(self, fetcher, chain, store, sample_config):
        """12 wallets -> 3 multicalls (5, 5, 2) and 3 persistence transactions."""
        saved = await fetcher.fetch_and_save(
            wallets(12), sample_config.get_network(1), BLOCK, "2024-01-01", BLOCK_TS
        )

        assert [len(calls) // 3 for calls, _ in chain.batch_reads] == [5, 5, 2]
        assert len(store.save_calls) == 3
        assert [len(rows) for rows in store.save_calls] == [15, 15, 6]
        assert saved == 36

    @pytest.mark.asyncio
    async def test_rows_carry_block_and_capture_time(self, fetcher, store, sample_config):
        await fetcher.fetch_and_save(
            [WalletConfig(address=WALLET_A)], sample_config.get_network(1), BLOCK, "2024-01-01", BLOCK_TS
        )

        rows = store.save_calls[0]
        assert [r.token_address for r in rows] == [NATIVE_TOKEN_ADDRESS, USDC, DAI]
        assert all(r.block_number == BLOCK for r in rows)
        assert all(r.date == "2024-01-01" for r in rows)
        assert rows[0].captured_at == datetime.fromtimestamp(BLOCK_TS, tz=timezone.utc)
        assert rows[0].symbol == "ETH"

    @pytest.mark.asyncio
    async def test_batch_size_configurable(self, store, chain, fast_rate_limiter, sample_config):
        fetcher = BalanceFetcher(store, make_registry({1: chain}), fast_rate_limiter, batch_size=4)

        await fetcher.fetch_and_save(wallets(9), sample_config.get_network(1), BLOCK, "2024-01-01", BLOCK_TS)

        assert len(store.save_calls) == 3

    def test_invalid_batch_size(self, store, fast_rate_limiter):
        with pytest.raises(ValueError):
            BalanceFetcher(store, make_registry({}), fast_rate_limiter, batch_size=0)

    @pytest.mark.asyncio
    async def test_save_failure_propagates(self, fetcher, store, sample_config):
        failures = []
        store.events.subscribe(BalanceEvent.BALANCES_SAVE_FAILED, lambda e, p: failures.append(p))
        store.fail_saves = True

        with pytest.raises(RuntimeError, match="write failed"):
            await fetcher.fetch_and_save(wallets(7), sample_config.get_network(1), BLOCK, "2024-01-01", BLOCK_TS)

        # First batch failed; the second was never attempted
        assert len(store.save_calls) == 1
        assert store.balances == {}
        assert len(failures) == 1

    @pytest.mark.asyncio
    async def test_chain_error_propagates(self, fetcher, chain, store, sample_config):
        chain.fail = RpcError("execution reverted")

        with pytest.raises(RpcError):
            await fetcher.fetch_and_save(wallets(2), sample_config.get_network(1), BLOCK, "2024-01-01", BLOCK_TS)

        assert store.save_calls == []

    @pytest.mark.asyncio
    async def test_successful_save_emits_change(self, fetcher, store, sample_config):
        changes = []
        store.events.subscribe(BalanceEvent.BALANCES_CHANGED, lambda e, p: changes.append(p))

        await fetcher.fetch_and_save(wallets(6), sample_config.get_network(137), BLOCK, "2024-01-01", BLOCK_TS)

        assert changes == [{"rows": 5}, {"rows": 1}]
