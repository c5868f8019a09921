import time
from typing import Optional, Dict, List, Tuple
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row
import psycopg
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .config import settings
from .logging_setup import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: Optional[ConnectionPool] = None


def init_pool() -> None:
    """Initialize the connection pool"""
    global _pool
    if _pool is None:
        _pool = ConnectionPool(
            settings.database_url,
            min_size=1,
            max_size=5,
            timeout=30,
            max_idle=300,  # 5 minutes
            max_lifetime=3600,  # 1 hour
            check=ConnectionPool.check_connection,
        )
        logger.info("Database connection pool initialized")


def get_pool() -> ConnectionPool:
    """Get the connection pool, initializing if needed"""
    if _pool is None:
        init_pool()
    return _pool


@retry(
    stop=stop_after_attempt(settings.max_retries),
    wait=wait_exponential(multiplier=1, min=2, max=60),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    reraise=True,
)
def connect(database_url: Optional[str] = None) -> psycopg.Connection:
    """Open a dedicated connection for the balance store.

    The store manages its own transactions (one per wallet batch), so it
    holds a plain connection rather than borrowing from the pool.
    """
    conn = psycopg.connect(database_url or settings.database_url)
    logger.log_operation(
        operation="db_connect",
        params={"database_url": database_url or settings.database_url},
        status="completed",
    )
    return conn


@retry(
    stop=stop_after_attempt(settings.max_retries),
    wait=wait_exponential(multiplier=1, min=2, max=60),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    reraise=True,
)
def execute_with_retry(query: str, params: Optional[Tuple] = None, fetch: bool = True) -> Optional[List[Dict]]:
    """Execute a query with exponential backoff retry logic"""
    pool = get_pool()
    start_time = time.time()

    with pool.connection() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            result = cur.fetchall() if fetch else None
            conn.commit()

    duration_ms = int((time.time() - start_time) * 1000)
    logger.log_operation(
        operation="db_query",
        params={"query_type": query.split()[0].upper()},
        status="completed",
        duration_ms=duration_ms
    )

    return result


def test_connection() -> bool:
    """Test database connection and return True if successful"""
    try:
        result = execute_with_retry("SELECT 1 as test", fetch=True)
        return result is not None and len(result) > 0
    except psycopg.Error as e:
        logger.error(f"Database connection test failed: {e}")
        return False


def close_pool() -> None:
    """Close the connection pool gracefully"""
    global _pool
    if _pool:
        _pool.close()
        _pool = None
        logger.info("Database connection pool closed")
