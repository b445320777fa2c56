"""Unit tests for the wal2json decoder."""

import json

import pytest

from lakehouse_cdc.cdc.models import Operation, ReplicationPosition
from lakehouse_cdc.cdc.postgres.decoder import Wal2JsonDecoder
from lakehouse_cdc.common.errors import DecodeError


def _msg(**fields):
    return json.dumps(fields)


BEGIN = _msg(action="B", xid=741, timestamp="2024-03-01 12:00:00.123456+00")
COMMIT = _msg(action="C", xid=741, lsn="0/16B3748", timestamp="2024-03-01 12:00:00.123456+00")
COMMIT_LSN = ReplicationPosition.from_lsn("0/16B3748").lsn


def _insert(order_id, status="new"):
    return _msg(
        action="I",
        schema="public",
        table="orders",
        columns=[
            {"name": "id", "type": "integer", "value": order_id},
            {"name": "status", "type": "text", "value": status},
        ],
        pk=[{"name": "id", "type": "integer"}],
    )


@pytest.mark.unit
class TestWal2JsonDecoder:
    """Test decoding of wal2json format-version 2 messages."""

    def test_transaction_released_on_commit(self):
        """Test changes are held until the commit frame arrives."""
        decoder = Wal2JsonDecoder()

        assert decoder.feed(BEGIN) == []
        assert decoder.feed(_insert(1)) == []
        assert decoder.feed(_insert(2)) == []
        assert decoder.in_transaction

        events = decoder.feed(COMMIT)

        assert not decoder.in_transaction
        assert [e.position for e in events] == [
            ReplicationPosition(COMMIT_LSN, 0),
            ReplicationPosition(COMMIT_LSN, 1),
        ]
        assert all(e.transaction_id == 741 for e in events)
        assert events[0].commit_time is not None

    def test_insert_event_fields(self):
        """Test an insert carries table, image, key and types."""
        decoder = Wal2JsonDecoder()
        decoder.feed(BEGIN)
        decoder.feed(_insert(5, "paid"))
        event = decoder.feed(COMMIT)[0]

        assert event.source_table == "public.orders"
        assert event.operation == Operation.INSERT
        assert event.before is None
        assert dict(event.after) == {"id": 5, "status": "paid"}
        assert event.key_columns == ("id",)
        assert dict(event.column_types) == {"id": "integer", "status": "text"}
        assert event.size_bytes > 0

    def test_update_uses_identity_as_before_image(self):
        """Test update before image comes from the identity columns."""
        decoder = Wal2JsonDecoder()
        decoder.feed(BEGIN)
        decoder.feed(
            _msg(
                action="U",
                schema="public",
                table="orders",
                columns=[{"name": "id", "type": "integer", "value": 5}, {"name": "status", "type": "text", "value": "x"}],
                identity=[{"name": "id", "type": "integer", "value": 5}],
                pk=[{"name": "id", "type": "integer"}],
            )
        )
        event = decoder.feed(COMMIT)[0]

        assert event.operation == Operation.UPDATE
        assert dict(event.before) == {"id": 5}
        assert event.after["status"] == "x"

    def test_delete_uses_identity(self):
        """Test delete carries its identity as before image."""
        decoder = Wal2JsonDecoder()
        decoder.feed(BEGIN)
        decoder.feed(
            _msg(
                action="D",
                schema="public",
                table="orders",
                identity=[{"name": "id", "type": "integer", "value": 9}],
                pk=[{"name": "id", "type": "integer"}],
            )
        )
        event = decoder.feed(COMMIT)[0]

        assert event.operation == Operation.DELETE
        assert event.after is None
        assert event.key() == (9,)

    def test_commit_lsn_falls_back_to_wal_start(self):
        """Test the message WAL position is used when the commit has no LSN."""
        decoder = Wal2JsonDecoder()
        decoder.feed(BEGIN)
        decoder.feed(_insert(1))
        events = decoder.feed(_msg(action="C", xid=741), wal_start=4096)

        assert events[0].position == ReplicationPosition(4096, 0)

    def test_ddl_message_becomes_ddl_event(self):
        """Test a transactional logical message with the DDL prefix."""
        decoder = Wal2JsonDecoder()
        content = {
            "schema": "public",
            "table": "orders",
            "command": "ALTER TABLE orders ADD COLUMN note text",
            "columns": [
                {"name": "id", "type": "integer", "nullable": False, "primary_key": True},
                {"name": "note", "type": "text"},
            ],
        }
        decoder.feed(BEGIN)
        decoder.feed(_msg(action="M", transactional=True, prefix="lakehouse_cdc.ddl", content=json.dumps(content)))
        decoder.feed(_insert(1))
        events = decoder.feed(COMMIT)

        assert [e.operation for e in events] == [Operation.DDL, Operation.INSERT]
        ddl = events[0]
        assert ddl.source_table == "public.orders"
        assert ddl.key_columns == ("id",)
        assert [c["name"] for c in ddl.after["columns"]] == ["id", "note"]
        assert ddl.after["columns"][0]["nullable"] is False

    def test_non_transactional_ddl_message_emitted_at_once(self):
        """Test a non-transactional DDL message is positioned at its WAL start."""
        decoder = Wal2JsonDecoder()
        content = {"table": "orders", "columns": [{"name": "id", "type": "integer"}]}

        events = decoder.feed(
            _msg(action="M", transactional=False, prefix="lakehouse_cdc.ddl", content=json.dumps(content)),
            wal_start=8192,
        )

        assert len(events) == 1
        assert events[0].position == ReplicationPosition(8192, 0)

    def test_other_message_prefixes_ignored(self):
        """Test logical messages with foreign prefixes produce nothing."""
        decoder = Wal2JsonDecoder()
        decoder.feed(BEGIN)
        decoder.feed(_msg(action="M", transactional=True, prefix="audit", content="hello"))

        assert decoder.feed(COMMIT) == []

    def test_truncate_is_rejected(self):
        """Test TRUNCATE cannot be silently dropped."""
        decoder = Wal2JsonDecoder()
        decoder.feed(BEGIN)

        with pytest.raises(DecodeError, match="TRUNCATE"):
            decoder.feed(_msg(action="T", schema="public", table="orders"))

    def test_malformed_payload(self):
        """Test invalid JSON raises DecodeError with a payload preview."""
        decoder = Wal2JsonDecoder()

        with pytest.raises(DecodeError) as exc_info:
            decoder.feed("{not json")

        assert exc_info.value.payload == "{not json"
        assert exc_info.value.stage == "reader"

    def test_unknown_action(self):
        """Test unknown actions are rejected."""
        with pytest.raises(DecodeError, match="Unknown"):
            Wal2JsonDecoder().feed(_msg(action="Z"))

    def test_row_outside_transaction(self):
        """Test row changes need an open transaction."""
        with pytest.raises(DecodeError):
            Wal2JsonDecoder().feed(_insert(1))

    def test_commit_without_transaction(self):
        """Test a commit frame is rejected once its transaction was released."""
        decoder = Wal2JsonDecoder()
        decoder.feed(BEGIN)
        decoder.feed(_insert(1))
        decoder.feed(COMMIT)

        with pytest.raises(DecodeError, match="without a transaction"):
            decoder.feed(COMMIT)
        assert not decoder.in_transaction

    def test_reset_drops_partial_transaction(self):
        """Test reset forgets changes of an unfinished transaction."""
        decoder = Wal2JsonDecoder()
        decoder.feed(BEGIN)
        decoder.feed(_insert(1))
        decoder.reset()

        assert not decoder.in_transaction
        decoder.feed(BEGIN)
        decoder.feed(_insert(2))
        events = decoder.feed(COMMIT)

        assert [e.after["id"] for e in events] == [2]

    def test_bytes_payload(self):
        """Test payloads may arrive as bytes."""
        decoder = Wal2JsonDecoder()
        decoder.feed(BEGIN.encode())
        decoder.feed(_insert(3).encode())

        assert decoder.feed(COMMIT.encode())[0].after["id"] == 3
