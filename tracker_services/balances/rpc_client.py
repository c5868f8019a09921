"""JSON-RPC client for EVM networks.

Exposes the three reads the tracker needs: the latest block, a block's
timestamp, and a batch of contract reads executed atomically at one block
through the Multicall3 contract. Calls are not retried here; every call is
admitted through the per-network rate limiter by the caller, and chain errors
propagate to it.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp
import structlog
from eth_abi import decode, encode

from .models import ReadCall
from .rate_limiter import UnknownNetworkError

logger = structlog.get_logger()

# Multicall3 is deployed at the same address on every supported network
MULTICALL3_ADDRESS = "0xca11bde05977b3631167028862be2a173976ca11"

AGGREGATE3_SELECTOR = "0x82ad56cb"  # aggregate3((address,bool,bytes)[])
GET_ETH_BALANCE_SELECTOR = "0x4d2301cc"  # getEthBalance(address)
BALANCE_OF_SELECTOR = "0x70a08231"  # balanceOf(address)


class RpcError(Exception):
    """Raised when a node returns an error or an unusable result."""
    pass


def _block_param(block_number: Optional[int]) -> str:
    return hex(block_number) if block_number is not None else "latest"


def encode_call(call: ReadCall) -> bytes:
    """Selector followed by ABI-encoded address arguments."""
    selector = bytes.fromhex(call.selector[2:])
    return selector + encode(["address"] * len(call.args), list(call.args))


def encode_aggregate3(calls: Sequence[ReadCall]) -> str:
    """Encode an aggregate3 call with allowFailure set on every entry."""
    entries = [(call.target, True, encode_call(call)) for call in calls]
    body = encode(["(address,bool,bytes)[]"], [entries])
    return AGGREGATE3_SELECTOR + body.hex()


def decode_aggregate3(result: str) -> List[Optional[int]]:
    """Decode aggregate3 output into one uint256 per call.

    A call that reverted, or returned less than one word, decodes to None.
    """
    raw = bytes.fromhex(result[2:] if result.startswith("0x") else result)
    (entries,) = decode(["(bool,bytes)[]"], raw)

    values: List[Optional[int]] = []
    for success, return_data in entries:
        if not success or len(return_data) < 32:
            values.append(None)
        else:
            values.append(int.from_bytes(return_data[:32], "big"))
    return values


class EvmRpcClient:
    """Async JSON-RPC client bound to one network endpoint."""

    def __init__(self, network_id: int, rpc_url: str, timeout: int = 30):
        self.network_id = network_id
        self.rpc_url = rpc_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

        self.logger = logger.bind(component="rpc_client", network_id=network_id)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def _rpc_call(self, method: str, params: List[Any]) -> Any:
        """Make a JSON-RPC call.

        Raises:
            RpcError: On RPC errors
            aiohttp.ClientError: On HTTP errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        session = await self._get_session()
        async with session.post(self.rpc_url, json=payload) as response:
            response.raise_for_status()
            data = await response.json()

        if "error" in data:
            error_msg = data["error"].get("message", "Unknown error")
            self.logger.error("rpc_error", method=method, error=error_msg)
            raise RpcError(f"RPC error: {error_msg}")

        return data.get("result")

    async def get_latest_block(self) -> Tuple[int, int]:
        """Return (number, timestamp) of the chain head."""
        result = await self._rpc_call("eth_getBlockByNumber", ["latest", False])
        if result is None:
            raise RpcError("Failed to fetch latest block")
        return int(result["number"], 16), int(result["timestamp"], 16)

    async def get_block_timestamp(self, block_number: int) -> int:
        result = await self._rpc_call("eth_getBlockByNumber", [hex(block_number), False])
        if result is None:
            raise RpcError(f"Block {block_number} not found")
        return int(result["timestamp"], 16)

    async def batch_read(
        self,
        calls: Sequence[ReadCall],
        block_number: Optional[int] = None,
    ) -> List[Optional[int]]:
        """Execute `calls` in one aggregate3 eth_call at `block_number`.

        Returns:
            One value per call, in call order; None where the call failed
        """
        if not calls:
            return []

        result = await self._rpc_call(
            "eth_call",
            [
                {"to": MULTICALL3_ADDRESS, "data": encode_aggregate3(calls)},
                _block_param(block_number),
            ],
        )
        if not result or result == "0x":
            raise RpcError("Empty multicall response")

        values = decode_aggregate3(result)
        if len(values) != len(calls):
            raise RpcError(f"Multicall returned {len(values)} results for {len(calls)} calls")
        return values

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class ChainClientRegistry:
    """One RPC client per configured network, built once at startup."""

    def __init__(self, clients: Dict[int, EvmRpcClient]):
        self._clients = dict(clients)

    @classmethod
    def from_config(cls, config, timeout: int = 30) -> "ChainClientRegistry":
        return cls({
            network.id: EvmRpcClient(network.id, network.rpc_url, timeout=timeout)
            for network in config.networks
        })

    def get(self, network_id: int) -> EvmRpcClient:
        client = self._clients.get(network_id)
        if client is None:
            raise UnknownNetworkError(f"No RPC client configured for network {network_id}")
        return client

    def network_ids(self) -> List[int]:
        return list(self._clients)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
