"""Unit tests for the logical replication reader."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import psycopg2
import pytest

from lakehouse_cdc.cdc.models import ReplicationPosition
from lakehouse_cdc.cdc.postgres.reader import PostgresReplicationReader, wal2json_options
from lakehouse_cdc.common.config import SourceConfig
from lakehouse_cdc.common.errors import TransientIOError

COMMIT_LSN = ReplicationPosition.from_lsn("0/C8").lsn


def _message(data_start=0, **fields):
    return SimpleNamespace(payload=json.dumps(fields), data_start=data_start)


def _transaction(order_id):
    return [
        _message(action="B", xid=7),
        _message(
            action="I",
            schema="public",
            table="orders",
            columns=[{"name": "id", "type": "integer", "value": order_id}],
            pk=[{"name": "id", "type": "integer"}],
        ),
        _message(action="C", xid=7, lsn="0/C8"),
    ]


@pytest.fixture
def cursor():
    cursor = MagicMock()
    cursor.wal_end = 500
    return cursor


@pytest.fixture
def connections(cursor):
    manager = MagicMock()
    manager.get_connection.return_value.cursor.return_value = cursor
    return manager


@pytest.fixture
def reader(connections):
    return PostgresReplicationReader(
        SourceConfig(slot_name="orders_slot"),
        ["public.orders"],
        connection_manager=connections,
        clock=lambda: 100.0,
    )


@pytest.mark.unit
class TestWal2JsonOptions:
    """Test plugin options."""

    def test_options_filter_tables(self):
        """Test requested tables and the DDL prefix are passed to wal2json."""
        options = wal2json_options(["public.orders", "public.customers"], "lakehouse_cdc.ddl")

        assert options["format-version"] == "2"
        assert options["add-tables"] == "public.orders,public.customers"
        assert options["add-msg-prefixes"] == "lakehouse_cdc.ddl"

    def test_no_tables_streams_everything(self):
        """Test an empty table list adds no filter."""
        assert "add-tables" not in wal2json_options([], "lakehouse_cdc.ddl")


@pytest.mark.unit
class TestPostgresReplicationReader:
    """Test the reader against a mocked replication cursor."""

    def test_open_steps_back_one_byte(self, reader, connections, cursor):
        """Test a committed position is resumed so its transaction is resent."""
        reader.open(ReplicationPosition(100, 3))

        kwargs = cursor.start_replication.call_args.kwargs
        assert kwargs["slot_name"] == "orders_slot"
        assert kwargs["start_lsn"] == 99
        assert kwargs["decode"] is True
        connections.ensure_slot.assert_called_once_with(cursor, "orders_slot", "wal2json")
        assert reader.is_open

    def test_open_without_position_uses_slot(self, reader, cursor):
        """Test no position starts at the slot's confirmed position."""
        reader.open()

        assert cursor.start_replication.call_args.kwargs["start_lsn"] == 0

    def test_next_decodes_transaction(self, reader, cursor):
        """Test messages are decoded and released at commit."""
        cursor.read_message.side_effect = _transaction(42)
        reader.open()

        event = reader.next(1.0)

        assert dict(event.after) == {"id": 42}
        assert event.position == ReplicationPosition(COMMIT_LSN, 0)

    def test_transaction_boundary_after_last_change(self, reader, cursor):
        """Test only the final change of a transaction is reported as closing it."""
        first, insert, commit = _transaction(1)
        second = _transaction(2)[1]
        cursor.read_message.side_effect = [first, insert, second, commit]
        reader.open()

        assert reader.next(1.0).position == ReplicationPosition(COMMIT_LSN, 0)
        assert not reader.at_transaction_boundary
        assert reader.next(1.0).position == ReplicationPosition(COMMIT_LSN, 1)
        assert reader.at_transaction_boundary

    def test_next_times_out(self, reader, cursor):
        """Test None is returned when nothing arrives in time."""
        cursor.read_message.return_value = None
        reader.open()

        assert reader.next(0) is None

    def test_stream_failure_is_transient_and_reconnects(self, reader, cursor, connections):
        """Test a broken stream raises a retryable error and reopens on the next read."""
        reader.open(ReplicationPosition(100))
        cursor.read_message.side_effect = psycopg2.OperationalError("terminating connection")

        with pytest.raises(TransientIOError):
            reader.next(1.0)

        assert not reader.is_open
        connections.close.assert_called_once()

        cursor.read_message.side_effect = _transaction(1)
        reader.next(1.0)

        assert cursor.start_replication.call_count == 2
        assert cursor.start_replication.call_args.kwargs["start_lsn"] == 99

    def test_open_failure_is_transient(self, reader, connections):
        """Test connection errors while starting replication are retryable."""
        connections.get_connection.side_effect = psycopg2.OperationalError("connection refused")

        with pytest.raises(TransientIOError):
            reader.open()
        assert not reader.is_open

    def test_acknowledge_sends_feedback_forward_only(self, reader, cursor):
        """Test feedback is sent for new positions only."""
        reader.open()

        reader.acknowledge(ReplicationPosition(200))
        reader.acknowledge(ReplicationPosition(150))

        cursor.send_feedback.assert_called_once_with(flush_lsn=200)
        assert reader.lag_bytes() == 300

    def test_close_releases_connection(self, reader, connections):
        """Test closing drops the cursor and the connection."""
        reader.open()

        reader.close()

        assert not reader.is_open
        connections.close.assert_called_once()
