from unittest.mock import MagicMock, patch
from psycopg import OperationalError

from balance_tracker.common import db


def pooled(cursor_result=None):
    mock_pool = MagicMock()
    mock_conn = MagicMock()
    mock_cursor = MagicMock()
    mock_cursor.fetchall.return_value = cursor_result

    mock_pool.connection.return_value.__enter__.return_value = mock_conn
    mock_conn.cursor.return_value.__enter__.return_value = mock_cursor
    return mock_pool, mock_conn, mock_cursor


def test_init_pool():
    """Test connection pool initialization"""
    with patch('balance_tracker.common.db.ConnectionPool') as mock_pool_class:
        mock_pool = MagicMock()
        mock_pool_class.return_value = mock_pool
        db._pool = None

        db.init_pool()

        mock_pool_class.assert_called_once()
        assert db._pool == mock_pool
    db._pool = None


def test_get_pool_initializes_if_needed():
    """Test get_pool initializes pool if not already initialized"""
    with patch('balance_tracker.common.db.init_pool') as mock_init:
        db._pool = None
        db.get_pool()
        mock_init.assert_called_once()


def test_connect_opens_dedicated_connection():
    with patch('balance_tracker.common.db.psycopg.connect') as mock_connect:
        conn = db.connect("postgresql://tracker@db/balances")

    mock_connect.assert_called_once_with("postgresql://tracker@db/balances")
    assert conn is mock_connect.return_value


def test_connect_retries_operational_error():
    with patch('balance_tracker.common.db.psycopg.connect') as mock_connect:
        mock_connect.side_effect = [OperationalError("the database system is starting up"), MagicMock()]

        with patch('time.sleep'):
            db.connect("postgresql://tracker@db/balances")

    assert mock_connect.call_count == 2


def test_execute_with_retry_success():
    """Test successful query execution with retry logic"""
    mock_pool, mock_conn, mock_cursor = pooled([{'id': 1}])

    with patch('balance_tracker.common.db.get_pool', return_value=mock_pool):
        result = db.execute_with_retry("SELECT * FROM balances", fetch=True)

    assert result == [{'id': 1}]
    mock_cursor.execute.assert_called_once_with("SELECT * FROM balances", None)
    mock_conn.commit.assert_called_once()


def test_execute_with_retry_retries_on_operational_error():
    """Test that execute_with_retry retries on OperationalError"""
    mock_pool, _, mock_cursor = pooled([{'id': 2}])
    mock_cursor.execute.side_effect = [OperationalError("Connection lost"), None]

    with patch('balance_tracker.common.db.get_pool', return_value=mock_pool):
        with patch('time.sleep'):
            result = db.execute_with_retry("SELECT * FROM balances", fetch=True)

    assert result == [{'id': 2}]
    assert mock_cursor.execute.call_count == 2


def test_test_connection():
    """Test database connection test function"""
    with patch('balance_tracker.common.db.execute_with_retry') as mock_execute:
        mock_execute.return_value = [{'test': 1}]
        assert db.test_connection() is True

        mock_execute.side_effect = OperationalError("Connection failed")
        assert db.test_connection() is False


def test_close_pool():
    """Test closing the connection pool"""
    mock_pool = MagicMock()
    db._pool = mock_pool

    db.close_pool()

    mock_pool.close.assert_called_once()
    assert db._pool is None
