"""Table writer: uploads Parquet files and commits them as Iceberg snapshots."""

import time
import uuid
from typing import Dict, Optional, Set, Tuple

import pyarrow as pa
import pyarrow.parquet as pq

from lakehouse_cdc.cdc.batch import to_arrow
from lakehouse_cdc.cdc.models import TableBatch
from lakehouse_cdc.common.errors import CommitConflict, TransientIOError
from lakehouse_cdc.common.utils import format_bytes, split_table_identifier
from lakehouse_cdc.iceberg.catalog import (
    PIPELINE_PROPERTY,
    POSITION_PROPERTY,
    SOURCE_EVENTS_PROPERTY,
    DataFile,
    TableCatalog,
    TableMetadata,
)
from lakehouse_cdc.iceberg.schema_mapper import TableSchema
from lakehouse_cdc.iceberg.storage import ObjectStore
from lakehouse_cdc.observability.logging_config import get_logger
from lakehouse_cdc.observability.metrics import MetricsExporter

logger = get_logger(__name__)


class IcebergTableWriter:
    """
    Commits batches to Iceberg tables with optimistic concurrency.

    A batch is committed in two phases: its rows are uploaded as one
    immutable Parquet file, then the file is added to the table in a
    snapshot conditioned on the snapshot the writer last observed. The
    uploaded file is kept per table until the commit resolves, so retries
    never upload again. Files of commits that never succeed are left as
    orphans.
    """

    def __init__(
        self,
        catalog: TableCatalog,
        object_store: ObjectStore,
        pipeline_id: str,
        prefix: str = "cdc",
        max_conflict_retries: int = 5,
        metrics: Optional[MetricsExporter] = None,
    ) -> None:
        """
        Initialize writer.

        Args:
            catalog: Table catalog
            object_store: Write-once store for data files
            pipeline_id: Owning pipeline, recorded in every snapshot
            prefix: Key prefix of all data files
            max_conflict_retries: Conflicts tolerated per commit before giving up
            metrics: Metrics exporter
        """
        self.catalog = catalog
        self.object_store = object_store
        self.pipeline_id = pipeline_id
        self.prefix = prefix.strip("/")
        self.max_conflict_retries = max_conflict_retries
        self.metrics = metrics or MetricsExporter()
        self._snapshot_ids: Dict[str, Optional[int]] = {}
        self._staged: Dict[str, Tuple[str, int, DataFile]] = {}
        self._ambiguous: Set[str] = set()

    def ensure_table(self, name: str, schema: TableSchema) -> TableMetadata:
        """Create the table if needed and remember its current snapshot."""
        if self.catalog.table_exists(name):
            metadata = self.catalog.load_table(name)
        else:
            metadata = self.catalog.create_table(name, schema)
        self._snapshot_ids[name] = metadata.current_snapshot_id
        return metadata

    def apply_schema(self, name: str, schema: TableSchema) -> None:
        """
        Push a schema version to the table.

        Safe to repeat: columns already in place are left alone.
        """
        if not self.catalog.table_exists(name):
            self.ensure_table(name, schema)
            return
        self.catalog.update_schema(name, schema)
        self._snapshot_ids[name] = self.catalog.load_table(name).current_snapshot_id

    def data_path(self, name: str, batch: TableBatch) -> str:
        """Object key of the data file for a batch."""
        namespace, table = split_table_identifier(name)
        position = batch.max_position
        return (
            f"{self.prefix}/{self.pipeline_id}/{namespace}/{table}/data/"
            f"{position.lsn:016x}-{position.seq:06d}-{uuid.uuid4().hex}.parquet"
        )

    def _stage(self, batch: TableBatch, schema: TableSchema) -> DataFile:
        name = batch.destination_table
        staged = self._staged.get(name)
        if staged is not None and staged[0] == batch.batch_id and staged[1] == schema.version:
            return staged[2]

        arrow_table = to_arrow(batch, schema)
        sink = pa.BufferOutputStream()
        pq.write_table(arrow_table, sink)
        data = sink.getvalue().to_pybytes()

        path = self.data_path(name, batch)
        uri = self.object_store.put(path, data)
        data_file = DataFile(path=uri, record_count=arrow_table.num_rows, size_bytes=len(data))
        self._staged[name] = (batch.batch_id, schema.version, data_file)
        self.metrics.record_file_written(self.pipeline_id, name, len(data))
        logger.debug(f"Staged {arrow_table.num_rows} rows ({format_bytes(len(data))}) at {uri}")
        return data_file

    def _current_snapshot(self, name: str) -> Optional[int]:
        if name not in self._snapshot_ids:
            self._snapshot_ids[name] = self.catalog.load_table(name).current_snapshot_id
        return self._snapshot_ids[name]

    def _already_committed(self, batch: TableBatch) -> bool:
        committed = self.catalog.committed_position(batch.destination_table, self.pipeline_id)
        return committed is not None and committed >= batch.max_position

    def commit(self, batch: TableBatch, schema: TableSchema) -> Optional[int]:
        """
        Write and commit one row batch.

        Args:
            batch: Batch to commit
            schema: Schema version the rows are written with

        Returns:
            New snapshot ID, the current one if the batch turns out to be
            committed already, or None for a batch with no rows

        Raises:
            CommitConflict: If conflicts persist beyond the retry bound
            TransientIOError: On storage or catalog failures
        """
        if batch.is_schema_change:
            raise ValueError(f"Batch {batch.batch_id} is a schema change, not rows")
        name = batch.destination_table
        if not batch.events:
            return None

        if name in self._ambiguous:
            # The previous attempt may have landed before the failure.
            self._snapshot_ids.pop(name, None)
            if self._already_committed(batch):
                logger.info(f"Batch {batch.batch_id} was already committed")
                self._ambiguous.discard(name)
                self._staged.pop(name, None)
                return self._current_snapshot(name)
            self._ambiguous.discard(name)

        start = time.perf_counter()
        data_file = self._stage(batch, schema)
        properties = {
            PIPELINE_PROPERTY: self.pipeline_id,
            POSITION_PROPERTY: str(batch.max_position),
            SOURCE_EVENTS_PROPERTY: str(batch.source_event_count),
        }

        conflicts = 0
        while True:
            expected = self._current_snapshot(name)
            try:
                snapshot_id = self.catalog.commit(name, expected, [data_file], schema.version, properties)
                break
            except CommitConflict as e:
                conflicts += 1
                self.metrics.record_commit_conflict(self.pipeline_id, name)
                self._snapshot_ids.pop(name, None)
                if conflicts > self.max_conflict_retries:
                    raise CommitConflict(
                        f"Giving up on {batch.batch_id} after {conflicts} conflicts: {e}",
                        table=name,
                        expected_snapshot_id=e.expected_snapshot_id,
                        actual_snapshot_id=e.actual_snapshot_id,
                    ) from e
                logger.warning(
                    f"Commit conflict on {name} (attempt {conflicts}), refreshing metadata",
                    extra={"table": name, "position": str(batch.max_position)},
                )
            except TransientIOError:
                self._ambiguous.add(name)
                self._snapshot_ids.pop(name, None)
                raise

        self._snapshot_ids[name] = snapshot_id
        self._staged.pop(name, None)
        self.metrics.record_iceberg_commit(self.pipeline_id, name, snapshot_id, time.perf_counter() - start)
        logger.info(
            f"Committed batch {batch.batch_id} ({data_file.record_count} rows) as snapshot {snapshot_id}",
            extra={"table": name, "position": str(batch.max_position)},
        )
        return snapshot_id
