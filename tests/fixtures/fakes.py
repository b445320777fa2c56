"""In-memory stand-ins for the catalog, the change stream and the clock."""

import itertools
from typing import Any, Dict, List, Optional, Sequence

import pyarrow.parquet as pq

from lakehouse_cdc.cdc.models import ChangeEvent, Operation, ReplicationPosition
from lakehouse_cdc.cdc.stream import ChangeStream
from lakehouse_cdc.common.errors import CommitConflict, EndOfStream, TransientIOError
from lakehouse_cdc.iceberg.catalog import PIPELINE_PROPERTY, POSITION_PROPERTY, DataFile, TableCatalog, TableMetadata
from lakehouse_cdc.iceberg.schema_mapper import TableSchema


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryCatalog(TableCatalog):
    """
    Catalog keeping tables and snapshots in dictionaries.

    Failures can be injected per table:

    - ``conflicts[name] = n``: the next n commits lose against a concurrent
      writer, which lands a snapshot of its own
    - ``fail_after_commit[name] = n``: the next n commits land and then
      report a transient failure (an ambiguous outcome)
    """

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Any]] = {}
        self.conflicts: Dict[str, int] = {}
        self.fail_after_commit: Dict[str, int] = {}
        self.commit_calls = 0
        self._ids = itertools.count(1)

    def table_exists(self, name: str) -> bool:
        return name in self.tables

    def load_table(self, name: str) -> TableMetadata:
        table = self.tables[name]
        return TableMetadata(
            name=name,
            schema=table["schema"],
            current_snapshot_id=table["snapshots"][-1]["id"] if table["snapshots"] else None,
        )

    def create_table(self, name: str, schema: TableSchema) -> TableMetadata:
        self.tables.setdefault(name, {"schema": schema, "snapshots": []})
        return self.load_table(name)

    def update_schema(self, name: str, schema: TableSchema) -> None:
        self.tables[name]["schema"] = schema

    def _append_snapshot(self, name: str, files: List[DataFile], properties: Dict[str, str]) -> int:
        snapshot_id = next(self._ids)
        self.tables[name]["snapshots"].append({"id": snapshot_id, "files": list(files), "properties": dict(properties)})
        return snapshot_id

    def commit(
        self,
        name: str,
        expected_snapshot_id: Optional[int],
        files: List[DataFile],
        schema_version: int,
        properties: Dict[str, str],
    ) -> int:
        self.commit_calls += 1
        if self.conflicts.get(name):
            self.conflicts[name] -= 1
            self._append_snapshot(name, [], {"writer": "someone-else"})
            raise CommitConflict(f"Concurrent commit on {name}", table=name)

        current = self.load_table(name).current_snapshot_id
        if current != expected_snapshot_id:
            raise CommitConflict(
                f"Snapshot of {name} is {current}, expected {expected_snapshot_id}",
                table=name,
                expected_snapshot_id=expected_snapshot_id,
                actual_snapshot_id=current,
            )

        snapshot_id = self._append_snapshot(name, files, properties)
        if self.fail_after_commit.get(name):
            self.fail_after_commit[name] -= 1
            raise TransientIOError(f"Connection reset while committing to {name}", stage="writer")
        return snapshot_id

    def committed_position(self, name: str, pipeline_id: str) -> Optional[ReplicationPosition]:
        if name not in self.tables:
            return None
        positions = [
            ReplicationPosition.parse(s["properties"][POSITION_PROPERTY])
            for s in self.tables[name]["snapshots"]
            if s["properties"].get(PIPELINE_PROPERTY) == pipeline_id
        ]
        return max(positions) if positions else None

    def data_files(self, name: str) -> List[DataFile]:
        return [f for s in self.tables[name]["snapshots"] for f in s["files"]]

    def read_column(self, name: str, column: str) -> List[Any]:
        """Values of one column across every committed data file, in commit order."""
        values: List[Any] = []
        for data_file in self.data_files(name):
            values.extend(pq.read_table(data_file.path).column(column).to_pylist())
        return values


class ListChangeStream(ChangeStream):
    """
    Change stream replaying a fixed list of events.

    Opening at a position replays every transaction whose commit LSN is at
    or after it, like a replication slot restarted one byte early. Opening
    without a position starts after the acknowledged LSN.
    """

    def __init__(
        self,
        events: Sequence[ChangeEvent],
        end_of_stream: bool = True,
        errors: Optional[Dict[int, Exception]] = None,
    ) -> None:
        self.events = list(events)
        self.end_of_stream = end_of_stream
        self.errors = dict(errors or {})
        self.acknowledged: Optional[ReplicationPosition] = None
        self.opened_at: List[Optional[ReplicationPosition]] = []
        self.is_open = False
        self.close_count = 0
        self._pending: List[ChangeEvent] = []
        self._last: Optional[ChangeEvent] = None
        self._reads = 0

    def open(self, start_position: Optional[ReplicationPosition] = None) -> "ListChangeStream":
        self.opened_at.append(start_position)
        if start_position is not None:
            self._pending = [e for e in self.events if e.position.lsn >= start_position.lsn]
        else:
            floor = self.acknowledged.lsn if self.acknowledged else 0
            self._pending = [e for e in self.events if e.position.lsn > floor]
        self.is_open = True
        return self

    def next(self, timeout: float) -> Optional[ChangeEvent]:
        assert self.is_open, "stream read while closed"
        self._reads += 1
        if self._reads in self.errors:
            raise self.errors.pop(self._reads)
        if self._pending:
            self._last = self._pending.pop(0)
            return self._last
        if self.end_of_stream:
            raise EndOfStream("No more events")
        return None

    @property
    def at_transaction_boundary(self) -> bool:
        if self._last is None:
            return False
        return not self._pending or self._pending[0].position.lsn != self._last.position.lsn

    def acknowledge(self, position: ReplicationPosition) -> None:
        if self.acknowledged is None or position > self.acknowledged:
            self.acknowledged = position

    def close(self) -> None:
        self.is_open = False
        self.close_count += 1


def _pg_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "double precision"
    return "text"


def row_event(
    operation: str,
    lsn: int,
    seq: int = 0,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    table: str = "public.orders",
    key_columns: Sequence[str] = ("id",),
    column_types: Optional[Dict[str, str]] = None,
    transaction_id: Optional[int] = None,
) -> ChangeEvent:
    """Build a row change; column types default to ones matching the values."""
    if column_types is None:
        column_types = {}
        for image in (before, after):
            for name, value in (image or {}).items():
                column_types.setdefault(name, _pg_type(value))
    return ChangeEvent(
        source_table=table,
        operation=Operation(operation),
        position=ReplicationPosition(lsn, seq),
        transaction_id=transaction_id if transaction_id is not None else lsn,
        before=before,
        after=after,
        key_columns=tuple(key_columns),
        column_types=column_types,
        size_bytes=100,
    )


def ddl_event(
    columns: Sequence[Dict[str, Any]],
    lsn: int,
    seq: int = 0,
    table: str = "public.orders",
) -> ChangeEvent:
    """Build a DDL change carrying the full post-change column list."""
    normalized = [
        {
            "name": c["name"],
            "type": c["type"],
            "nullable": c.get("nullable", True),
            "primary_key": c.get("primary_key", False),
        }
        for c in columns
    ]
    return ChangeEvent(
        source_table=table,
        operation=Operation.DDL,
        position=ReplicationPosition(lsn, seq),
        after={"columns": normalized, "command": None},
        key_columns=tuple(c["name"] for c in normalized if c["primary_key"]),
        size_bytes=200,
    )
