"""Balance snapshot storage and block mapping cache.

Snapshots are keyed by (wallet, network, token, date) and overwritten in
place on refetch. Every write goes through one transaction and raises a change
event once committed. Balances travel as decimal text in both directions.
"""

import time
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional

import psycopg
from psycopg.rows import dict_row

from balance_tracker.common.addresses import NATIVE_TOKEN_ADDRESS
from balance_tracker.common.logging_setup import get_logger
from .dates import to_date_str, utc_now
from .events import BalanceEvent, EventChannel
from .models import BalanceRow, BlockMapping, SnapshotKey

logger = get_logger(__name__)


UPSERT_BALANCE_SQL = """
INSERT INTO balances (
    wallet_address, network_id, token_address, snapshot_date,
    symbol, balance, block_number, captured_at
) VALUES (%s, %s, %s, %s, %s, %s::numeric, %s, %s)
ON CONFLICT (wallet_address, network_id, token_address, snapshot_date)
DO UPDATE SET
    symbol = EXCLUDED.symbol,
    balance = EXCLUDED.balance,
    block_number = EXCLUDED.block_number,
    captured_at = EXCLUDED.captured_at,
    updated_at = NOW()
"""

SELECT_TIMESTAMPS_SQL = """
SELECT b.wallet_address, b.network_id, b.token_address, b.snapshot_date, b.captured_at
FROM balances b
JOIN unnest(%s::text[], %s::bigint[], %s::text[], %s::date[])
    AS k(wallet_address, network_id, token_address, snapshot_date)
    ON b.wallet_address = k.wallet_address
    AND b.network_id = k.network_id
    AND b.token_address = k.token_address
    AND b.snapshot_date = k.snapshot_date
"""

INSERT_BLOCK_MAPPING_SQL = """
INSERT INTO block_mappings (network_id, snapshot_date, block_number, block_timestamp)
VALUES (%s, %s, %s, %s)
ON CONFLICT (network_id, snapshot_date) DO NOTHING
"""


class BalanceStorageService:
    """PostgreSQL-backed store for balance snapshots and block mappings."""

    def __init__(self, conn: psycopg.Connection, events: Optional[EventChannel] = None):
        """Initialize storage service.

        Args:
            conn: Database connection, used exclusively by this service
            events: Channel receiving change notifications
        """
        self.conn = conn
        self.events = events or EventChannel()

    def _query(self, query: str, params) -> List[Dict]:
        try:
            with self.conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
            self.conn.commit()
        except psycopg.Error:
            self.conn.rollback()
            raise
        return rows

    def get_balance_timestamps(
        self,
        keys: Iterable[SnapshotKey],
    ) -> Dict[SnapshotKey, Optional[object]]:
        """Capture timestamps for many snapshot keys in one round trip.

        Args:
            keys: Snapshot keys to look up

        Returns:
            Mapping of every requested key to its captured_at, or None if absent
        """
        keys = list(keys)
        result: Dict[SnapshotKey, Optional[object]] = {key: None for key in keys}
        if not keys:
            return result

        start_time = time.time()
        rows = self._query(
            SELECT_TIMESTAMPS_SQL,
            (
                [k.wallet_address for k in keys],
                [k.network_id for k in keys],
                [k.token_address for k in keys],
                [date.fromisoformat(k.date) for k in keys],
            ),
        )

        for row in rows:
            key = SnapshotKey(
                row['wallet_address'],
                row['network_id'],
                row['token_address'],
                to_date_str(row['snapshot_date']),
            )
            result[key] = row['captured_at']

        logger.log_operation(
            operation="get_balance_timestamps",
            params={"keys": len(keys)},
            status="completed",
            duration_ms=int((time.time() - start_time) * 1000),
            message=f"{len(rows)} of {len(keys)} snapshots present",
        )
        return result

    def save_balances(self, rows: List[BalanceRow]) -> int:
        """Upsert a group of balance rows in a single transaction.

        Either every row is written or none is. On failure the transaction
        is rolled back, a save-failed event is raised and the error re-raised.

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        params = [
            (
                row.wallet_address,
                row.network_id,
                row.token_address,
                date.fromisoformat(row.date),
                row.symbol,
                row.balance,
                row.block_number,
                row.captured_at,
            )
            for row in rows
        ]
        wallets = sorted({row.wallet_address for row in rows})
        dates = sorted({row.date for row in rows})
        network_ids = sorted({row.network_id for row in rows})

        start_time = time.time()
        try:
            with self.conn.cursor() as cur:
                cur.executemany(UPSERT_BALANCE_SQL, params)
            self.conn.commit()
        except psycopg.Error as e:
            self.conn.rollback()
            logger.log_operation(
                operation="save_balances",
                params={"wallets": wallets, "dates": dates},
                status="failed",
                error=str(e),
            )
            self.events.emit(
                BalanceEvent.BALANCES_SAVE_FAILED,
                wallets=wallets,
                network_ids=network_ids,
                dates=dates,
                error=str(e),
            )
            raise

        logger.log_operation(
            operation="save_balances",
            params={"wallets": wallets, "dates": dates},
            status="completed",
            duration_ms=int((time.time() - start_time) * 1000),
            message=f"Stored {len(rows)} balance snapshots",
        )
        self.events.emit(
            BalanceEvent.BALANCES_CHANGED,
            wallets=wallets,
            network_ids=network_ids,
            dates=dates,
            rows=len(rows),
        )
        return len(rows)

    def get_block_mapping(self, network_id: int, date_str: str) -> Optional[BlockMapping]:
        rows = self._query(
            "SELECT block_number, block_timestamp FROM block_mappings "
            "WHERE network_id = %s AND snapshot_date = %s",
            (network_id, date.fromisoformat(date_str)),
        )
        if not rows:
            return None
        return BlockMapping(rows[0]['block_number'], rows[0]['block_timestamp'])

    def save_block_mapping(
        self,
        network_id: int,
        date_str: str,
        block_number: int,
        block_timestamp: int,
    ) -> None:
        """Record the resolved block for a date. An existing mapping is kept."""
        try:
            with self.conn.cursor() as cur:
                cur.execute(
                    INSERT_BLOCK_MAPPING_SQL,
                    (network_id, date.fromisoformat(date_str), block_number, block_timestamp),
                )
                inserted = cur.rowcount
            self.conn.commit()
        except psycopg.Error as e:
            self.conn.rollback()
            logger.log_operation(
                operation="save_block_mapping",
                params={"network_id": network_id, "date": date_str},
                status="failed",
                error=str(e),
            )
            raise

        if inserted == 0:
            return
        self.events.emit(
            BalanceEvent.BLOCK_MAPPING_CHANGED,
            network_id=network_id,
            date=date_str,
            block_number=block_number,
            block_timestamp=block_timestamp,
        )

    def clear_block_mappings(self, network_id: Optional[int] = None) -> int:
        """Drop cached block mappings, for one network or all of them.

        Returns:
            Number of mappings removed
        """
        try:
            with self.conn.cursor() as cur:
                if network_id is None:
                    cur.execute("DELETE FROM block_mappings")
                else:
                    cur.execute("DELETE FROM block_mappings WHERE network_id = %s", (network_id,))
                deleted = cur.rowcount
            self.conn.commit()
        except psycopg.Error:
            self.conn.rollback()
            raise

        logger.info(f"Cleared {deleted} block mappings (network={network_id or 'all'})")
        return deleted

    def get_balances_for_date(
        self,
        wallet_address: str,
        network_id: int,
        date_str: str,
    ) -> Dict[str, Dict]:
        """Get all balances for a wallet on one network on a specific date.

        Returns:
            Dictionary of token address to balance row
        """
        rows = self._query(
            """
            SELECT token_address, symbol, balance::text AS balance, block_number, captured_at
            FROM balances
            WHERE wallet_address = %s
            AND network_id = %s
            AND snapshot_date = %s
            ORDER BY token_address
            """,
            (wallet_address, network_id, date.fromisoformat(date_str)),
        )

        return {
            row['token_address']: {
                'symbol': row['symbol'],
                'balance': row['balance'],
                'block_number': row['block_number'],
                'captured_at': row['captured_at'],
            }
            for row in rows
        }

    def get_balance_history(self, config, now=None) -> List[Dict]:
        """Snapshots of configured wallets and tokens over the last `history_days`.

        Rows come newest first, annotated with the token's decimals. Tokens no
        longer in configuration are left out.
        """
        today = (now or utc_now()).date()
        since = today - timedelta(days=config.history_days - 1)

        decimals = {}
        for network in config.networks:
            decimals[(network.id, NATIVE_TOKEN_ADDRESS)] = network.native_token.decimals
            for token in network.tokens:
                decimals[(network.id, token.address)] = token.decimals

        rows = self._query(
            """
            SELECT wallet_address, network_id, token_address, snapshot_date,
                   symbol, balance::text AS balance, block_number, captured_at
            FROM balances
            WHERE wallet_address = ANY(%s)
            AND network_id = ANY(%s)
            AND snapshot_date >= %s
            ORDER BY snapshot_date DESC, network_id, wallet_address, token_address
            """,
            (
                [w.address for w in config.wallets],
                [n.id for n in config.networks],
                since,
            ),
        )

        history = []
        for row in rows:
            token_decimals = decimals.get((row['network_id'], row['token_address']))
            if token_decimals is None:
                continue
            entry = dict(row)
            entry['snapshot_date'] = to_date_str(row['snapshot_date'])
            entry['decimals'] = token_decimals
            history.append(entry)
        return history
