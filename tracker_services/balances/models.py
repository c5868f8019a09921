"""Value types shared by the balance reconciliation pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, NamedTuple, Optional, Tuple

from balance_tracker.common.addresses import NATIVE_TOKEN_ADDRESS


class SnapshotKey(NamedTuple):
    """Identity of one balance snapshot row."""

    wallet_address: str
    network_id: int
    token_address: str
    date: str  # YYYY-MM-DD


class BlockMapping(NamedTuple):
    """Block chosen to represent the end of a calendar day."""

    block_number: int
    block_timestamp: int  # unix seconds


@dataclass(frozen=True)
class MissingEntry:
    """A (wallet, network, token, date) balance that needs fetching this cycle."""

    wallet_address: str
    network_id: int
    date: str
    is_native: bool = True
    token_address: Optional[str] = None


@dataclass
class MissingReport:
    today: List[MissingEntry] = field(default_factory=list)
    historical: List[MissingEntry] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.today) + len(self.historical)


@dataclass(frozen=True)
class ReadCall:
    """One read inside a multicall batch."""

    target: str
    selector: str  # 0x-prefixed 4-byte selector
    args: Tuple[str, ...] = ()


@dataclass
class TokenBalance:
    address: str
    symbol: str
    balance: str
    decimals: int


@dataclass
class WalletBalances:
    """Native and token balances of one wallet on one network at one block."""

    address: str
    network_id: int
    native_symbol: str
    native_balance: str
    label: Optional[str] = None
    tokens: List[TokenBalance] = field(default_factory=list)

    def to_rows(self, block_number: int, date_str: str, captured_at: datetime) -> List["BalanceRow"]:
        rows = [
            BalanceRow(
                wallet_address=self.address,
                network_id=self.network_id,
                token_address=NATIVE_TOKEN_ADDRESS,
                date=date_str,
                symbol=self.native_symbol,
                balance=self.native_balance,
                block_number=block_number,
                captured_at=captured_at,
            )
        ]
        for token in self.tokens:
            rows.append(
                BalanceRow(
                    wallet_address=self.address,
                    network_id=self.network_id,
                    token_address=token.address,
                    date=date_str,
                    symbol=token.symbol,
                    balance=token.balance,
                    block_number=block_number,
                    captured_at=captured_at,
                )
            )
        return rows


@dataclass
class BalanceRow:
    """One persisted snapshot. Balance is an integer carried as decimal text."""

    wallet_address: str
    network_id: int
    token_address: str
    date: str
    symbol: str
    balance: str
    block_number: int
    captured_at: datetime

    @property
    def key(self) -> SnapshotKey:
        return SnapshotKey(self.wallet_address, self.network_id, self.token_address, self.date)
