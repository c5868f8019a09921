"""
Address standardisation for EVM accounts and contracts.

Every address that enters the tracker (configuration, RPC responses, user
input) passes through standardize_address so storage and comparisons only
ever see the canonical 0x-prefixed lowercase form.
"""

from web3 import Web3

# Sentinel token address used for native currency balances
NATIVE_TOKEN_ADDRESS = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"


class InvalidAddressError(ValueError):
    """Raised when a string is not a valid EVM address."""
    pass


def standardize_address(address: str) -> str:
    """
    Convert an address to canonical form.

    Args:
        address: Address in any letter case, with 0x prefix

    Returns:
        Lowercase 0x-prefixed address

    Raises:
        InvalidAddressError: If the address is malformed
    """
    if not isinstance(address, str) or not address.startswith(("0x", "0X")):
        raise InvalidAddressError(f"Invalid Ethereum address: {address}")

    canonical = "0x" + address[2:].lower()
    if not Web3.is_address(canonical):
        raise InvalidAddressError(f"Invalid Ethereum address: {address}")
    return canonical
