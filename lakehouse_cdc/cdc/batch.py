"""Batch assembly: cutting, collapsing and columnar conversion of change events."""

import json
import time
from datetime import date, time as dtime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pyarrow as pa

from lakehouse_cdc.cdc.buffer import EventBuffer
from lakehouse_cdc.cdc.models import ChangeEvent, Operation, TableBatch
from lakehouse_cdc.common.errors import SchemaError
from lakehouse_cdc.common.utils import parse_cdc_timestamp
from lakehouse_cdc.iceberg.schema_mapper import TableSchema
from lakehouse_cdc.observability.logging_config import get_logger

logger = get_logger(__name__)


class _KeyState:
    """Net effect of the events seen so far for one primary key."""

    def __init__(self, first: ChangeEvent) -> None:
        self.existed_before = first.operation != Operation.INSERT
        self.first_before = first.before
        self.last: ChangeEvent = first
        self.column_types: Dict[str, str] = dict(first.column_types)

    def add(self, event: ChangeEvent) -> None:
        self.last = event
        self.column_types.update(event.column_types)

    @property
    def exists_after(self) -> bool:
        return self.last.operation != Operation.DELETE


def _is_collapsible(events: Sequence[ChangeEvent]) -> bool:
    for event in events:
        if event.is_ddl or not event.key_columns:
            return False
        if event.operation == Operation.UPDATE and event.before is not None:
            if event.before_key() != event.key():
                return False
    return True


def collapse_events(events: Sequence[ChangeEvent], merge_on_read: bool = False) -> List[ChangeEvent]:
    """
    Merge the events of each primary key into one net change.

    The result is equivalent to applying ``events`` one at a time:

    - absent before, present after: insert of the latest image
    - present before and after: update from the first before-image to the
      latest image
    - present before, absent after: delete of the first before-image
    - absent before and after: nothing, or a key-only delete tombstone when
      ``merge_on_read`` is set

    Net events keep the position of the last event that contributed to them
    and are returned in position order. Events of tables without a primary
    key, and runs where an update changes a key, are returned unchanged.

    Args:
        events: Row events of one table, in position order
        merge_on_read: Emit tombstones for rows inserted and deleted in the run

    Returns:
        Collapsed events
    """
    if not _is_collapsible(events):
        return list(events)

    states: Dict[Tuple[Any, ...], _KeyState] = {}
    for event in events:
        key = event.key()
        state = states.get(key)
        if state is None:
            states[key] = _KeyState(event)
        else:
            state.add(event)

    collapsed = []
    for key, state in states.items():
        last = state.last
        key_image = dict(zip(last.key_columns, key))

        if not state.existed_before and state.exists_after:
            operation, before, after = Operation.INSERT, None, last.after
        elif state.existed_before and state.exists_after:
            operation, before, after = Operation.UPDATE, state.first_before, last.after
        elif state.existed_before:
            operation, before, after = Operation.DELETE, state.first_before or key_image, None
        elif merge_on_read:
            operation, before, after = Operation.DELETE, key_image, None
        else:
            continue

        if operation == last.operation and before is last.before:
            collapsed.append(last)
            continue
        collapsed.append(
            ChangeEvent(
                source_table=last.source_table,
                operation=operation,
                position=last.position,
                transaction_id=last.transaction_id,
                before=before,
                after=after,
                commit_time=last.commit_time,
                key_columns=last.key_columns,
                column_types=state.column_types,
                size_bytes=last.size_bytes,
            )
        )

    collapsed.sort(key=lambda e: e.position)
    return collapsed


class BatchAssembler:
    """Cuts per-table batches from the event buffer."""

    def __init__(
        self,
        buffer: EventBuffer,
        max_rows: int,
        max_wait_seconds: float,
        max_bytes: Optional[int] = None,
        merge_on_read: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize assembler.

        Args:
            buffer: Buffer to drain
            max_rows: Row count that triggers a batch
            max_wait_seconds: Age of the oldest queued event that triggers a batch
            max_bytes: Upper bound on the summed event size of a batch
            merge_on_read: Keep key tombstones for rows inserted and deleted
                within one batch
            clock: Same clock the buffer timestamps enqueues with
        """
        if max_rows <= 0:
            raise ValueError("max_rows must be positive")
        self.buffer = buffer
        self.max_rows = max_rows
        self.max_wait_seconds = max_wait_seconds
        self.max_bytes = max_bytes
        self.merge_on_read = merge_on_read
        self._clock = clock

    def is_ready(self, table: str, force: bool = False) -> bool:
        """True if a batch should be cut for ``table`` now."""
        head = self.buffer.peek(table)
        if head is None:
            return False
        if force or head.is_ddl:
            return True
        if self.buffer.depth(table) >= self.max_rows:
            return True
        enqueued_at = self.buffer.oldest_enqueued_at(table)
        return enqueued_at is not None and self._clock() - enqueued_at >= self.max_wait_seconds

    def assemble(self, table: str, force: bool = False) -> Optional[TableBatch]:
        """
        Cut the next batch for a table.

        A DDL event is always returned as a batch of its own, and row events
        never run past a DDL event.

        Args:
            table: Destination table
            force: Cut whatever is queued regardless of thresholds

        Returns:
            The batch, or None if no trigger fired
        """
        if not self.is_ready(table, force):
            return None

        head = self.buffer.peek(table)
        if head is not None and head.is_ddl:
            drained = self.buffer.drain(table, 1)
            return TableBatch.from_events(table, drained) if drained else None

        drained = self.buffer.drain(table, self.max_rows, self.max_bytes, stop_before_ddl=True)
        if not drained:
            return None

        events = collapse_events(drained, self.merge_on_read)
        batch = TableBatch.from_events(table, drained, events)
        logger.debug(
            f"Assembled batch for {table}: {len(drained)} events, {len(events)} after collapsing",
            extra={"table": table, "position": str(batch.max_position)},
        )
        return batch


def _coerce(value: Any, logical_type: str) -> Any:
    if value is None:
        return None
    if logical_type == "boolean":
        if isinstance(value, str):
            return value.lower() in ("t", "true", "1", "y", "yes")
        return bool(value)
    if logical_type in ("int", "long"):
        return int(value)
    if logical_type in ("float", "double"):
        return float(value)
    if logical_type == "string":
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)
    if logical_type == "date":
        return value if isinstance(value, date) else date.fromisoformat(str(value))
    if logical_type == "time":
        if isinstance(value, dtime):
            return value.replace(tzinfo=None)
        text = str(value).split("+")[0].split("-")[0]
        return dtime.fromisoformat(text)
    if logical_type in ("timestamp", "timestamptz"):
        parsed = parse_cdc_timestamp(value)
        if parsed is None:
            raise ValueError(f"unparseable timestamp {value!r}")
        if logical_type == "timestamptz":
            return parsed.astimezone(timezone.utc) if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    if logical_type == "binary":
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        text = str(value)
        return bytes.fromhex(text[2:]) if text.startswith("\\x") else text.encode("utf-8")
    raise ValueError(f"unknown logical type {logical_type}")


def to_arrow(batch: TableBatch, schema: TableSchema) -> pa.Table:
    """
    Convert a row batch into an Arrow table of the destination schema.

    Deletes carry their before-image. CDC system columns record the
    operation, position, LSN, transaction id and commit time of each row.

    Raises:
        SchemaError: If a row carries a column unknown to ``schema`` or a
            value that does not fit its column type
    """
    known = set(schema.column_names)
    columns: Dict[str, List[Any]] = {name: [] for name in schema.column_names}
    system: Dict[str, List[Any]] = {
        "_cdc_operation": [],
        "_cdc_position": [],
        "_cdc_lsn": [],
        "_cdc_transaction_id": [],
        "_cdc_timestamp": [],
    }

    for event in batch.events:
        if event.is_ddl:
            raise ValueError(f"Schema change batch {batch.batch_id} has no rows")
        image = event.row_image()
        unknown = set(image) - known
        if unknown:
            raise SchemaError(
                f"Columns {sorted(unknown)} are not in version {schema.version} of {schema.table}",
                schema.table,
            )
        for column in schema.columns:
            try:
                columns[column.name].append(_coerce(image.get(column.name), column.logical_type))
            except (TypeError, ValueError) as e:
                raise SchemaError(
                    f"Value for {column.name} does not fit {column.logical_type}: {e}", schema.table
                ) from e

        commit_time = event.commit_time
        if commit_time is not None and commit_time.tzinfo is None:
            commit_time = commit_time.replace(tzinfo=timezone.utc)
        system["_cdc_operation"].append(event.operation.value)
        system["_cdc_position"].append(str(event.position))
        system["_cdc_lsn"].append(event.position.lsn)
        system["_cdc_transaction_id"].append(event.transaction_id)
        system["_cdc_timestamp"].append(commit_time)

    arrow_schema = schema.to_arrow()
    arrays = [pa.array(columns[name], type=arrow_schema.field(name).type) for name in schema.column_names]
    arrays.extend(pa.array(values, type=arrow_schema.field(name).type) for name, values in system.items())
    return pa.Table.from_arrays(arrays, schema=arrow_schema)
