"""Unit tests for Postgres connection managers."""

from unittest.mock import MagicMock, patch

import psycopg2
import psycopg2.errors
import psycopg2.extras
import pytest

from lakehouse_cdc.cdc.postgres.connection import PostgresConnectionManager, ReplicationConnectionManager
from lakehouse_cdc.common.config import SourceConfig
from lakehouse_cdc.common.errors import TransientIOError

CONNECT = "lakehouse_cdc.cdc.postgres.connection.psycopg2.connect"


def _manager(cls=PostgresConnectionManager, **kwargs):
    options = {"host": "db", "port": 5432, "user": "cdc", "password": "pw", "database": "app", "retry_delay": 0}
    options.update(kwargs)
    return cls(**options)


@pytest.mark.unit
class TestPostgresConnectionManager:
    """Test connection handling without a database."""

    def test_from_config(self):
        """Test managers are built from source settings."""
        manager = PostgresConnectionManager.from_config(SourceConfig(host="db", connect_retries=5))

        assert manager.host == "db"
        assert manager.max_retries == 5

    def test_connection_reused(self):
        """Test an open connection is returned again."""
        with patch(CONNECT) as connect:
            connect.return_value.closed = 0
            manager = _manager()

            first = manager.get_connection()
            second = manager.get_connection()

        assert first is second
        connect.assert_called_once()
        assert connect.call_args.kwargs["cursor_factory"] is psycopg2.extras.RealDictCursor

    def test_retries_then_transient_error(self):
        """Test failed connects are retried and then reported as transient."""
        with patch(CONNECT, side_effect=psycopg2.OperationalError("refused")) as connect:
            manager = _manager(max_retries=3)

            with pytest.raises(TransientIOError):
                manager.get_connection()

        assert connect.call_count == 3

    def test_execute_query_fetches_and_commits(self):
        """Test query results are returned and the transaction committed."""
        with patch(CONNECT) as connect:
            conn = connect.return_value
            conn.closed = 0
            cursor = conn.cursor.return_value.__enter__.return_value
            cursor.description = [("wal_level",)]
            cursor.fetchall.return_value = [{"wal_level": "logical"}]
            manager = _manager()

            assert manager.check_cdc_enabled()

        conn.commit.assert_called_once()

    def test_close(self):
        """Test closing releases the connection."""
        with patch(CONNECT) as connect:
            connect.return_value.closed = 0
            manager = _manager()
            manager.get_connection()

            manager.close()

        connect.return_value.close.assert_called_once()
        assert not manager.is_connected()


@pytest.mark.unit
class TestReplicationConnectionManager:
    """Test replication-specific behavior."""

    def test_uses_logical_replication_connection(self):
        """Test replication connections use psycopg2's replication factory."""
        with patch(CONNECT) as connect:
            connect.return_value.closed = 0
            _manager(ReplicationConnectionManager).get_connection()

        assert connect.call_args.kwargs["connection_factory"] is psycopg2.extras.LogicalReplicationConnection
        assert "cursor_factory" not in connect.call_args.kwargs

    def test_ensure_slot_creates(self):
        """Test a missing slot is created."""
        cursor = MagicMock()

        assert _manager(ReplicationConnectionManager).ensure_slot(cursor, "slot", "wal2json")
        cursor.create_replication_slot.assert_called_once_with("slot", output_plugin="wal2json")

    def test_ensure_slot_existing(self):
        """Test an existing slot is reused."""
        cursor = MagicMock()
        cursor.create_replication_slot.side_effect = psycopg2.errors.DuplicateObject("exists")

        assert not _manager(ReplicationConnectionManager).ensure_slot(cursor, "slot", "wal2json")
