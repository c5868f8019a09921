"""Balance reconciliation services.

This module provides the pipeline that keeps daily balance snapshots for
tracked wallets complete across several EVM networks: date-to-block
resolution, rate-limited batched reads, staleness detection and storage.
"""

from .rate_limiter import RateLimiter, RateLimitTimeout, UnknownNetworkError
from .rpc_client import EvmRpcClient, ChainClientRegistry, RpcError
from .block_timing import BlockResolver
from .multicall_client import BalanceFetcher
from .reconciliation import ReconciliationEngine
from .events import BalanceEvent, EventChannel
from .schema import init_schema, get_table_stats
from .storage import BalanceStorageService
from .orchestrator import WalletTracker

__all__ = [
    # Clients
    'EvmRpcClient',
    'ChainClientRegistry',
    'RpcError',
    'RateLimiter',
    'RateLimitTimeout',
    'UnknownNetworkError',

    # Services
    'BlockResolver',
    'BalanceFetcher',
    'ReconciliationEngine',
    'BalanceStorageService',
    'WalletTracker',

    # Events
    'BalanceEvent',
    'EventChannel',

    # Schema utilities
    'init_schema',
    'get_table_stats',
]
