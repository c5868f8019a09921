"""Database schema for balance snapshots and the block mapping cache."""

from typing import Dict

import psycopg

from balance_tracker.common.logging_setup import get_logger

logger = get_logger(__name__)


CREATE_BALANCES_TABLE = """
CREATE TABLE IF NOT EXISTS balances (
    wallet_address VARCHAR(42) NOT NULL,
    network_id BIGINT NOT NULL,
    token_address VARCHAR(42) NOT NULL,
    snapshot_date DATE NOT NULL,
    symbol VARCHAR(32) NOT NULL,
    balance NUMERIC(78,0) NOT NULL,  -- Raw integer amount (supports up to uint256)
    block_number BIGINT NOT NULL,
    captured_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW(),

    PRIMARY KEY (wallet_address, network_id, token_address, snapshot_date)
);
"""

CREATE_BALANCES_INDEXES = """
-- Network + date scans (history view, reconciliation)
CREATE INDEX IF NOT EXISTS idx_balances_network_date
    ON balances(network_id, snapshot_date);
"""

CREATE_BLOCK_MAPPINGS_TABLE = """
CREATE TABLE IF NOT EXISTS block_mappings (
    network_id BIGINT NOT NULL,
    snapshot_date DATE NOT NULL,
    block_number BIGINT NOT NULL,
    block_timestamp BIGINT NOT NULL,  -- Unix seconds
    created_at TIMESTAMPTZ DEFAULT NOW(),

    PRIMARY KEY (network_id, snapshot_date)
);
"""


def init_schema(conn: psycopg.Connection) -> None:
    """Create the balances and block_mappings tables if absent.

    Args:
        conn: Database connection
    """
    logger.info("Initializing balance tracker database schema")

    with conn.cursor() as cur:
        logger.info("Creating balances table")
        cur.execute(CREATE_BALANCES_TABLE)

        logger.info("Creating indexes for balances")
        cur.execute(CREATE_BALANCES_INDEXES)

        logger.info("Creating block_mappings table")
        cur.execute(CREATE_BLOCK_MAPPINGS_TABLE)

        conn.commit()

    logger.info("Schema initialization completed successfully")


def get_table_stats(conn: psycopg.Connection) -> Dict:
    """Row counts and date coverage of the tracker tables."""
    stats = {}

    with conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM balances")
        stats['total_balances'] = cur.fetchone()[0]

        cur.execute("SELECT COUNT(*) FROM block_mappings")
        stats['block_mappings'] = cur.fetchone()[0]

        cur.execute("SELECT MIN(snapshot_date), MAX(snapshot_date) FROM balances")
        min_date, max_date = cur.fetchone()
        stats['date_range'] = {
            'min': str(min_date) if min_date else None,
            'max': str(max_date) if max_date else None,
        }

        cur.execute("SELECT COUNT(DISTINCT wallet_address) FROM balances")
        stats['unique_wallets'] = cur.fetchone()[0]

    return stats
