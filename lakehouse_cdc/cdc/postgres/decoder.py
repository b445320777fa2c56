"""Decoder for wal2json (format version 2) replication payloads."""

import json
from typing import Any, Dict, List, Optional, Tuple, Union

from lakehouse_cdc.cdc.models import ChangeEvent, Operation, ReplicationPosition
from lakehouse_cdc.common.errors import DecodeError
from lakehouse_cdc.common.utils import parse_cdc_timestamp
from lakehouse_cdc.observability.logging_config import get_logger

logger = get_logger(__name__)

_ROW_ACTIONS = {
    "I": Operation.INSERT,
    "U": Operation.UPDATE,
    "D": Operation.DELETE,
}


class _OpenTransaction:
    """Changes received between a begin and its commit."""

    def __init__(self, xid: Optional[int], timestamp: Any) -> None:
        self.xid = xid
        self.commit_time = parse_cdc_timestamp(timestamp)
        self.changes: List[Dict[str, Any]] = []


class Wal2JsonDecoder:
    """
    Turns raw wal2json messages into ChangeEvents.

    Events of a transaction are held until its commit frame arrives and
    are then released together, stamped with ``(commit_lsn, seq)``.
    """

    def __init__(self, ddl_message_prefix: str = "lakehouse_cdc.ddl") -> None:
        """
        Initialize decoder.

        Args:
            ddl_message_prefix: Logical message prefix that carries DDL
        """
        self.ddl_message_prefix = ddl_message_prefix
        self._txn: Optional[_OpenTransaction] = None

    @property
    def in_transaction(self) -> bool:
        return self._txn is not None

    def reset(self) -> None:
        """Forget a partially received transaction (used when reconnecting)."""
        self._txn = None

    def feed(self, payload: Union[str, bytes], wal_start: int = 0) -> List[ChangeEvent]:
        """
        Decode one replication message.

        Args:
            payload: Raw wal2json message
            wal_start: WAL position the server reported for the message

        Returns:
            Events that became complete with this message (empty until commit)

        Raises:
            DecodeError: If the payload cannot be decoded
        """
        message = self._load(payload)
        action = message.get("action")
        size = len(payload)

        if action == "B":
            if self._txn is not None:
                raise DecodeError("Begin received inside an open transaction", _preview(payload))
            self._txn = _OpenTransaction(message.get("xid"), message.get("timestamp"))
            return []

        if action == "C":
            if self._txn is None:
                raise DecodeError("Commit received without a transaction", _preview(payload))
            commit_lsn = self._commit_lsn(message, wal_start, payload)
            txn, self._txn = self._txn, None
            return self._release(txn, commit_lsn, message.get("timestamp"))

        if action in _ROW_ACTIONS:
            change = self._decode_row(message, _ROW_ACTIONS[action], payload)
            change["size_bytes"] = size
            return self._stage(change, payload)

        if action == "M":
            return self._decode_message(message, wal_start, payload)

        if action == "T":
            # Truncate has no row-level representation; skipping it would lose data.
            raise DecodeError(
                f"TRUNCATE of {message.get('schema')}.{message.get('table')} is not supported",
                _preview(payload),
            )

        raise DecodeError(f"Unknown wal2json action: {action!r}", _preview(payload))

    def _load(self, payload: Union[str, bytes]) -> Dict[str, Any]:
        try:
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8")
            message = json.loads(payload)
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(f"Malformed replication payload: {e}", _preview(payload)) from e

        if not isinstance(message, dict):
            raise DecodeError("Replication payload is not a JSON object", _preview(payload))
        return message

    def _commit_lsn(self, message: Dict[str, Any], wal_start: int, payload: Any) -> int:
        lsn_text = message.get("lsn")
        if lsn_text:
            try:
                return ReplicationPosition.from_lsn(lsn_text).lsn
            except ValueError as e:
                raise DecodeError(f"Invalid commit LSN {lsn_text!r}", _preview(payload)) from e
        if wal_start <= 0:
            raise DecodeError("Commit without LSN", _preview(payload))
        return wal_start

    def _stage(self, change: Dict[str, Any], payload: Any) -> List[ChangeEvent]:
        if self._txn is None:
            raise DecodeError("Row change received outside a transaction", _preview(payload))
        self._txn.changes.append(change)
        return []

    def _release(self, txn: _OpenTransaction, commit_lsn: int, commit_timestamp: Any) -> List[ChangeEvent]:
        commit_time = parse_cdc_timestamp(commit_timestamp) or txn.commit_time

        events = [
            ChangeEvent(
                position=ReplicationPosition(commit_lsn, seq),
                transaction_id=txn.xid,
                commit_time=commit_time,
                **change,
            )
            for seq, change in enumerate(txn.changes)
        ]

        logger.debug(
            f"Decoded transaction xid={txn.xid} with {len(events)} changes "
            f"at {ReplicationPosition(commit_lsn).lsn_text}"
        )
        return events

    def _decode_row(
        self, message: Dict[str, Any], operation: Operation, payload: Any
    ) -> Dict[str, Any]:
        schema = message.get("schema")
        table = message.get("table")
        if not schema or not table:
            raise DecodeError("Row change without schema/table", _preview(payload))

        columns, column_types = self._columns(message.get("columns"), payload)
        identity, identity_types = self._columns(message.get("identity"), payload)
        for name, type_name in identity_types.items():
            column_types.setdefault(name, type_name)

        key_columns = tuple(
            pk["name"] for pk in message.get("pk") or [] if isinstance(pk, dict) and "name" in pk
        )

        if operation == Operation.INSERT:
            before, after = None, columns
        elif operation == Operation.UPDATE:
            before, after = (identity or None), columns
        else:
            before, after = identity, None

        if operation != Operation.DELETE and not after:
            raise DecodeError(f"{operation.value} without column values", _preview(payload))
        if operation == Operation.DELETE and not before:
            raise DecodeError("delete without identity values", _preview(payload))

        return {
            "source_table": f"{schema}.{table}",
            "operation": operation,
            "before": before,
            "after": after,
            "key_columns": key_columns,
            "column_types": column_types,
        }

    def _columns(self, raw: Any, payload: Any) -> Tuple[Dict[str, Any], Dict[str, str]]:
        values: Dict[str, Any] = {}
        types: Dict[str, str] = {}
        if raw is None:
            return values, types
        if not isinstance(raw, list):
            raise DecodeError("Column list is not an array", _preview(payload))
        for column in raw:
            if not isinstance(column, dict) or "name" not in column:
                raise DecodeError("Column entry without a name", _preview(payload))
            values[column["name"]] = column.get("value")
            if column.get("type"):
                types[column["name"]] = column["type"]
        return values, types

    def _decode_message(
        self, message: Dict[str, Any], wal_start: int, payload: Any
    ) -> List[ChangeEvent]:
        if message.get("prefix") != self.ddl_message_prefix:
            logger.debug(f"Ignoring logical message with prefix {message.get('prefix')!r}")
            return []

        content = message.get("content")
        try:
            ddl = json.loads(content) if isinstance(content, str) else content
        except ValueError as e:
            raise DecodeError(f"Malformed DDL message content: {e}", _preview(payload)) from e
        if not isinstance(ddl, dict) or not ddl.get("table") or not isinstance(ddl.get("columns"), list):
            raise DecodeError("DDL message must carry table and columns", _preview(payload))

        columns = []
        for column in ddl["columns"]:
            if not isinstance(column, dict) or not column.get("name") or not column.get("type"):
                raise DecodeError("DDL column needs name and type", _preview(payload))
            columns.append(
                {
                    "name": column["name"],
                    "type": column["type"],
                    "nullable": bool(column.get("nullable", True)),
                    "primary_key": bool(column.get("primary_key", False)),
                }
            )

        change = {
            "source_table": f"{ddl.get('schema', 'public')}.{ddl['table']}",
            "operation": Operation.DDL,
            "after": {"columns": columns, "command": ddl.get("command")},
            "key_columns": tuple(c["name"] for c in columns if c["primary_key"]),
            "size_bytes": len(payload),
        }

        if message.get("transactional", True):
            return self._stage(change, payload)

        if wal_start <= 0:
            raise DecodeError("Non-transactional DDL message without WAL position", _preview(payload))
        return [ChangeEvent(position=ReplicationPosition(wal_start, 0), **change)]


def _preview(payload: Any, limit: int = 200) -> str:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    text = str(payload)
    return text if len(text) <= limit else text[:limit] + "..."
