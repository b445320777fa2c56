"""
Pipeline supervisor.

Owns one pipeline: the change stream, the event buffer, the batch assembler,
the table writer and the pipeline state. A reader thread moves events from
the stream into the buffer; a writer thread runs scheduling ticks that cut,
commit and checkpoint batches. The supervisor is the only place where errors
turn into retries or into the failed state.
"""

import random
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from lakehouse_cdc.cdc.batch import BatchAssembler
from lakehouse_cdc.cdc.buffer import EventBuffer
from lakehouse_cdc.cdc.models import ChangeEvent, ReplicationPosition, TableBatch
from lakehouse_cdc.cdc.stream import ChangeStream
from lakehouse_cdc.common.config import PipelineConfig
from lakehouse_cdc.common.errors import CDCError, EndOfStream, InvalidTransition, describe, is_retryable
from lakehouse_cdc.iceberg.catalog import TableCatalog
from lakehouse_cdc.iceberg.schema_mapper import SchemaMapper, SchemaRegistry, TableSchema
from lakehouse_cdc.iceberg.storage import ObjectStore
from lakehouse_cdc.iceberg.writer import IcebergTableWriter
from lakehouse_cdc.observability.logging_config import get_logger
from lakehouse_cdc.observability.metrics import MetricsExporter
from lakehouse_cdc.pipeline.retry import RetryPolicy, RetryState
from lakehouse_cdc.pipeline.state import PipelineState, PipelineStatus, can_transition
from lakehouse_cdc.state.checkpoint import CheckpointManager
from lakehouse_cdc.state.dead_letter import DeadLetterQueue

logger = get_logger(__name__)

READER_STAGE = "reader"


class PipelineSupervisor:
    """Runs and supervises one CDC pipeline."""

    def __init__(
        self,
        config: PipelineConfig,
        stream: ChangeStream,
        catalog: TableCatalog,
        object_store: ObjectStore,
        checkpoints: CheckpointManager,
        schemas: SchemaRegistry,
        default_namespace: str = "cdc",
        storage_prefix: str = "cdc",
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
        metrics: Optional[MetricsExporter] = None,
        dead_letters: Optional[DeadLetterQueue] = None,
    ) -> None:
        """
        Initialize supervisor.

        Args:
            config: Pipeline definition
            stream: Source change stream (not opened yet)
            catalog: Destination catalog
            object_store: Data file storage
            checkpoints: Checkpoint manager
            schemas: Schema registry
            default_namespace: Namespace for source tables without a mapping
            storage_prefix: Key prefix of data files
            poll_interval: Seconds a thread waits for data before re-checking state
            clock: Monotonic clock for batching and retry scheduling
            rng: Jitter source for retry backoff
            metrics: Metrics exporter
            dead_letters: Queue receiving the payload of a failure
        """
        self.config = config
        self.pipeline_id = config.pipeline_id
        self.stream = stream
        self.catalog = catalog
        self.checkpoints = checkpoints
        self.schemas = schemas
        self.default_namespace = default_namespace
        self.poll_interval = poll_interval
        self.metrics = metrics or MetricsExporter()
        self.dead_letters = dead_letters
        self._clock = clock
        self._rng = rng

        self.buffer = EventBuffer(config.buffer.table_capacity, config.buffer.total_capacity, clock=clock)
        self.assembler = BatchAssembler(
            self.buffer,
            max_rows=config.batch.max_rows,
            max_wait_seconds=config.batch.max_wait_seconds,
            max_bytes=config.batch.max_bytes,
            merge_on_read=config.merge_on_read,
            clock=clock,
        )
        self.writer = IcebergTableWriter(
            catalog,
            object_store,
            self.pipeline_id,
            prefix=storage_prefix,
            max_conflict_retries=config.retry.commit_conflict_retries,
            metrics=self.metrics,
        )
        self.mapper = SchemaMapper()
        self.retry_policy = RetryPolicy.from_config(config.retry)

        self._lock = threading.RLock()
        self._state = PipelineState()
        self._stop = threading.Event()
        self._reader_thread: Optional[threading.Thread] = None
        self._writer_thread: Optional[threading.Thread] = None

        self._committed: Dict[str, ReplicationPosition] = {}
        self._high_water: Dict[str, ReplicationPosition] = {}
        self._in_flight: Dict[str, TableBatch] = {}
        self._uncheckpointed: Dict[str, str] = {}
        self._ensured: Set[str] = set()
        self._retries: Dict[str, RetryState] = {}
        self._held: Optional[Tuple[str, ChangeEvent]] = None
        self._stream_open = False
        self._resume_from: Optional[ReplicationPosition] = None
        self._last_seen: Optional[ReplicationPosition] = None
        self._last_seen_closes_txn = False
        self._ack_target: Optional[ReplicationPosition] = None
        self._acked: Optional[ReplicationPosition] = None
        self._end_of_stream = False

    # State

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state

    @property
    def status_value(self) -> PipelineStatus:
        return self.state.status

    def _transition(self, target: PipelineStatus, error: Optional[str] = None) -> None:
        with self._lock:
            current = self._state.status
            if not can_transition(current, target):
                raise InvalidTransition(f"Pipeline {self.pipeline_id} cannot go from {current.value} to {target.value}")
            changes: Dict[str, Any] = {"status": target}
            if error is not None or target in (PipelineStatus.RUNNING, PipelineStatus.IDLE):
                changes["last_error"] = error
            self._state = self._state.evolve(**changes)
        self.metrics.update_pipeline_state(self.pipeline_id, target.value)
        logger.info(
            f"Pipeline {self.pipeline_id}: {current.value} -> {target.value}",
            extra={"pipeline": self.pipeline_id},
        )

    def destination_for(self, source_table: str) -> str:
        return self.config.destination_for(source_table, self.default_namespace)

    def status(self) -> Dict[str, Any]:
        """Status as reported to the management API."""
        with self._lock:
            result = self._state.to_dict()
            result["pipeline_id"] = self.pipeline_id
            tables = set(self._committed) | set(self.buffer.tables())
            result["tables"] = {
                table: {
                    "checkpoint": str(self._committed[table]) if table in self._committed else None,
                    "buffered": self.buffer.depth(table),
                    "in_flight": table in self._in_flight,
                }
                for table in sorted(tables)
            }
            result["retries"] = {
                key: {"attempts": r.attempts, "next_attempt_at": r.next_attempt_at}
                for key, r in self._retries.items()
                if r.attempts
            }
            return result

    # Lifecycle

    def start(self, background: bool = True) -> None:
        """
        Start the pipeline from its checkpoints.

        Args:
            background: Run reader and writer threads; when False the caller
                drives the pipeline with ``pump`` and ``tick``

        Raises:
            InvalidTransition: If the pipeline is not idle
        """
        with self._lock:
            if self._state.status != PipelineStatus.IDLE:
                raise InvalidTransition(f"Pipeline {self.pipeline_id} is {self._state.status.value}, not idle")
            self._reset_runtime()
            self._load_checkpoints()
            self._transition(PipelineStatus.RUNNING)

        if background:
            self._reader_thread = threading.Thread(
                target=self._reader_loop, name=f"{self.pipeline_id}-reader", daemon=True
            )
            self._writer_thread = threading.Thread(
                target=self._writer_loop, name=f"{self.pipeline_id}-writer", daemon=True
            )
            self._reader_thread.start()
            self._writer_thread.start()

    def pause(self) -> None:
        """Pause: close the stream at its next suspension point, keep all state."""
        self._transition(PipelineStatus.PAUSED)
        if self._reader_thread is None:
            self._close_stream()

    def resume(self) -> None:
        """Resume a paused pipeline; the stream reopens before the oldest pending event."""
        with self._lock:
            if self._state.status != PipelineStatus.PAUSED:
                raise InvalidTransition(f"Pipeline {self.pipeline_id} is {self._state.status.value}, not paused")
            self._resume_from = self._restart_position()
            self._transition(PipelineStatus.RUNNING)

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the pipeline and drop buffered events.

        An in-flight commit finishes first. Uncommitted events are read again
        from the source on the next start.
        """
        self._transition(PipelineStatus.IDLE)
        self._shutdown(timeout)

    def reset(self) -> None:
        """Operator reset of a failed pipeline back to idle."""
        with self._lock:
            if self._state.status != PipelineStatus.FAILED:
                raise InvalidTransition(f"Pipeline {self.pipeline_id} is {self._state.status.value}, not failed")
        self._shutdown()
        with self._lock:
            self._state = PipelineState()
        self.metrics.update_pipeline_state(self.pipeline_id, PipelineStatus.IDLE.value)
        logger.info(f"Pipeline {self.pipeline_id} reset", extra={"pipeline": self.pipeline_id})

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until the pipeline threads have exited."""
        for thread in (self._reader_thread, self._writer_thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)

    def _shutdown(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self.buffer.wake_all()
        self.wait(timeout)
        self._reader_thread = None
        self._writer_thread = None
        self._close_stream()
        with self._lock:
            self.buffer.clear()
            self._in_flight.clear()
            self._held = None

    def _fail(self, error: BaseException) -> None:
        message = describe(error)
        with self._lock:
            if self._state.status not in (PipelineStatus.RUNNING, PipelineStatus.PAUSED):
                return
            self._transition(PipelineStatus.FAILED, error=message)
        self.metrics.record_cdc_error(self.pipeline_id, type(error).__name__)
        logger.error(f"Pipeline {self.pipeline_id} failed: {message}", extra={"pipeline": self.pipeline_id})
        self._stop.set()
        self.buffer.wake_all()
        if self._reader_thread is None or threading.current_thread() is self._reader_thread:
            self._close_stream()

    def _reset_runtime(self) -> None:
        self._stop.clear()
        self.buffer.reopen()
        self.buffer.clear()
        self._committed.clear()
        self._high_water.clear()
        self._in_flight.clear()
        self._uncheckpointed.clear()
        self._retries.clear()
        self._held = None
        self._last_seen = None
        self._last_seen_closes_txn = False
        self._ack_target = None
        self._acked = None
        self._end_of_stream = False

    def _load_checkpoints(self) -> None:
        committed = self.checkpoints.load_all(self.pipeline_id)

        # A commit may have landed without its checkpoint; the catalog knows.
        tables = set(committed) | set(self.config.tables.values())
        for table in sorted(tables):
            if not self.catalog.table_exists(table):
                continue
            recorded = self.catalog.committed_position(table, self.pipeline_id)
            if recorded is not None and (table not in committed or recorded > committed[table]):
                logger.warning(
                    f"Repairing checkpoint of {table} forward to {recorded}",
                    extra={"pipeline": self.pipeline_id, "table": table},
                )
                committed[table] = self.checkpoints.advance(self.pipeline_id, table, recorded)

        self._committed = dict(committed)
        for table, position in committed.items():
            self.metrics.update_checkpoint(self.pipeline_id, table, position.lsn)

        mapped = set(self.config.tables.values())
        if committed and mapped and mapped <= set(committed):
            self._resume_from = min(committed[t] for t in mapped)
        elif not committed and self.config.initial_position:
            self._resume_from = ReplicationPosition.parse(self.config.initial_position)
        else:
            # Some table has no checkpoint: start at the slot's confirmed position.
            self._resume_from = None
        logger.info(
            f"Pipeline {self.pipeline_id} resumes from {self._resume_from or 'slot position'}",
            extra={"pipeline": self.pipeline_id},
        )

    # Reader side

    def _open_stream(self) -> None:
        self.stream.open(self._resume_from)
        self._stream_open = True

    def _close_stream(self) -> None:
        if self._stream_open:
            self._stream_open = False
            self.stream.close()

    def _restart_position(self) -> Optional[ReplicationPosition]:
        oldest = self._oldest_pending()
        if oldest is not None:
            return oldest
        return self._last_seen or self._resume_from

    def _oldest_pending(self) -> Optional[ReplicationPosition]:
        oldest = self.buffer.oldest_pending()
        if self._held is not None:
            held = self._held[1].position
            if oldest is None or held < oldest:
                oldest = held
        return oldest

    def pump(self, timeout: Optional[float] = None) -> bool:
        """
        Move at most one event from the stream into the buffer.

        Args:
            timeout: Seconds to wait for the stream or for buffer capacity

        Returns:
            True if an event was consumed (enqueued or skipped as already seen)
        """
        timeout = self.poll_interval if timeout is None else timeout
        status = self.status_value
        if status == PipelineStatus.PAUSED:
            self._close_stream()
            return False
        if status != PipelineStatus.RUNNING or self._end_of_stream:
            return False

        now = self._clock()
        retry = self._retries.get(READER_STAGE)
        if retry is not None and not retry.ready(now):
            return False

        if self._held is not None:
            table, event = self._held
            if not self.buffer.put(table, event, timeout):
                return False
            with self._lock:
                self._held = None
            self._record_enqueued(table, event)
            return True

        try:
            if not self._stream_open:
                self._open_stream()
            self._send_acknowledgement()
            event = self.stream.next(timeout)
            closes_txn = self.stream.at_transaction_boundary
        except EndOfStream:
            logger.info(f"Change stream of {self.pipeline_id} ended", extra={"pipeline": self.pipeline_id})
            self._end_of_stream = True
            return False
        except CDCError as e:
            self._handle_error(READER_STAGE, READER_STAGE, e)
            return False

        if retry is not None:
            retry.record_success()
        self._update_lag()
        if event is None:
            return False

        if event.is_ddl and self.config.tables and event.source_table not in self.config.tables:
            # add-tables filters row changes only; DDL messages arrive for every table.
            logger.debug(
                f"Ignoring DDL for unreplicated table {event.source_table}",
                extra={"pipeline": self.pipeline_id, "position": str(event.position)},
            )
            self._mark_seen(event, closes_txn)
            return True

        table = self.destination_for(event.source_table)
        with self._lock:
            floor = max(
                (p for p in (self._committed.get(table), self._high_water.get(table)) if p is not None),
                default=None,
            )
        if floor is not None and event.position <= floor:
            logger.debug(f"Skipping {event.position} for {table}, already at {floor}")
            self._mark_seen(event, closes_txn)
            return True

        if not self.buffer.put(table, event, timeout):
            # Backpressure: keep the event and offer it again next time.
            with self._lock:
                self._held = (table, event)
                self._mark_seen(event, closes_txn)
            return False
        self._record_enqueued(table, event)
        self._mark_seen(event, closes_txn)
        return True

    def _mark_seen(self, event: ChangeEvent, closes_txn: bool) -> None:
        # Only called once the event is buffered, held or known to be committed.
        with self._lock:
            if self._last_seen is None or event.position > self._last_seen:
                self._last_seen = event.position
                self._last_seen_closes_txn = closes_txn

    def _record_enqueued(self, table: str, event: ChangeEvent) -> None:
        with self._lock:
            self._high_water[table] = event.position
            self._state = self._state.evolve(events_processed=self._state.events_processed + 1)
        self.metrics.record_cdc_event(self.pipeline_id, event.operation.value, table)
        self.metrics.update_buffer_depth(self.pipeline_id, table, self.buffer.depth(table))

    def _send_acknowledgement(self) -> None:
        with self._lock:
            target = self._ack_target
        if target is not None and (self._acked is None or target > self._acked):
            self.stream.acknowledge(target)
            self._acked = target

    def _update_lag(self) -> None:
        lag = self.stream.lag_bytes()
        if lag is None:
            current = self.stream.current_position
            with self._lock:
                floor = min(self._committed.values()) if self._committed else None
            if current is not None and floor is not None:
                lag = max(current.lsn - floor.lsn, 0)
        if lag is not None:
            with self._lock:
                self._state = self._state.evolve(lag_bytes=lag)
            self.metrics.update_cdc_lag(self.pipeline_id, lag)

    def _reader_loop(self) -> None:
        try:
            while not self._stop.is_set():
                status = self.status_value
                if status == PipelineStatus.PAUSED:
                    self._close_stream()
                    self._stop.wait(self.poll_interval)
                    continue
                if status != PipelineStatus.RUNNING:
                    break
                if not self.pump():
                    retry = self._retries.get(READER_STAGE)
                    if self._end_of_stream or (retry is not None and not retry.ready(self._clock())):
                        self._stop.wait(self.poll_interval)
        except Exception as e:
            logger.exception(f"Reader of {self.pipeline_id} crashed")
            self._fail(e)
        finally:
            self._close_stream()

    # Writer side

    def tick(self, now: Optional[float] = None) -> int:
        """
        One scheduling round of the writer.

        For every table, resolve its in-flight batch or cut a new one. A
        table never has more than one unresolved batch.

        Args:
            now: Clock reading used for retry scheduling

        Returns:
            Number of batches resolved
        """
        if self.status_value != PipelineStatus.RUNNING:
            return 0
        now = self._clock() if now is None else now

        resolved = 0
        with self._lock:
            tables = sorted(set(self.buffer.tables()) | set(self._in_flight))
        for table in tables:
            if self.status_value != PipelineStatus.RUNNING:
                break
            if self._tick_table(table, now):
                resolved += 1

        self._update_ack_target()
        self._check_drained()
        return resolved

    def _tick_table(self, table: str, now: float) -> bool:
        key = f"writer:{table}"
        retry = self._retries.get(key)
        if retry is not None and not retry.ready(now):
            return False

        with self._lock:
            batch = self._in_flight.get(table)
        if batch is None:
            batch = self.assembler.assemble(table, force=self._end_of_stream)
            if batch is None:
                return False
            with self._lock:
                self._in_flight[table] = batch
            self.metrics.record_batch(self.pipeline_id, batch.source_event_count)
            self.metrics.update_buffer_depth(self.pipeline_id, table, self.buffer.depth(table))

        try:
            self._process(batch)
        except CDCError as e:
            self._handle_error(key, "writer", e, now, batch=batch)
            return False

        if retry is not None:
            retry.record_success()
        with self._lock:
            self._in_flight.pop(table, None)
            self.buffer.acknowledge(table, batch.max_position)
            self._committed[table] = batch.max_position
            self._state = self._state.evolve(
                batches_committed=self._state.batches_committed + 1,
                last_commit_at=datetime.now(timezone.utc),
            )
        self.metrics.update_checkpoint(self.pipeline_id, table, batch.max_position.lsn)
        return True

    def _process(self, batch: TableBatch) -> None:
        table = batch.destination_table
        if self._uncheckpointed.get(table) != batch.batch_id:
            if batch.is_schema_change:
                self._apply_ddl(batch)
            elif batch.events:
                schema = self._schema_for(batch)
                self.writer.commit(batch, schema)
            self._uncheckpointed[table] = batch.batch_id

        self.checkpoints.advance(self.pipeline_id, table, batch.max_position)
        self._uncheckpointed.pop(table, None)

    def _apply_ddl(self, batch: TableBatch) -> None:
        table = batch.destination_table
        current = self.schemas.current(table)
        new_schema = self.mapper.reconcile(batch.events[0], current, table=table)
        if new_schema is not current:
            # Catalog first: publishing is what marks the version as applied.
            self.writer.apply_schema(table, new_schema)
            self._ensured.add(table)
            self.schemas.publish(new_schema)

    def _schema_for(self, batch: TableBatch) -> TableSchema:
        table = batch.destination_table
        current = self.schemas.current(table)
        schema = current if current is not None else self.mapper.infer_schema(table, batch.events[0])
        for event in batch.events:
            schema = self.mapper.reconcile_columns(schema, event)

        if schema != current:
            self.writer.apply_schema(table, schema)
            self._ensured.add(table)
            self.schemas.publish(schema)
        elif table not in self._ensured:
            self.writer.ensure_table(table, schema)
            self._ensured.add(table)
        return schema

    def _handle_error(
        self,
        key: str,
        stage: str,
        error: CDCError,
        now: Optional[float] = None,
        batch: Optional[TableBatch] = None,
    ) -> None:
        if not is_retryable(error):
            self._dead_letter(error, batch, attempts=1)
            self._fail(error)
            return
        now = self._clock() if now is None else now
        retry = self._retries.get(key)
        if retry is None:
            retry = self._retries[key] = RetryState(self.retry_policy, stage, self._rng)
        self.metrics.record_cdc_error(self.pipeline_id, type(error).__name__)
        if not retry.record_failure(describe(error), now):
            self._dead_letter(error, batch, attempts=retry.attempts)
            self._fail(error)
            return
        self.metrics.record_retry(self.pipeline_id, stage)
        with self._lock:
            self._state = self._state.evolve(last_error=describe(error))
        logger.warning(
            f"{stage} of {self.pipeline_id} failed (attempt {retry.attempts}/{self.retry_policy.max_attempts}), "
            f"retrying in {retry.next_attempt_at - now:.2f}s: {describe(error)}",
            extra={"pipeline": self.pipeline_id},
        )

    def _dead_letter(self, error: CDCError, batch: Optional[TableBatch], attempts: int) -> None:
        if self.dead_letters is None:
            return
        try:
            self.dead_letters.record(self.pipeline_id, error, batch=batch, attempts=attempts)
        except Exception:
            # The pipeline fails either way; the entry is best effort.
            logger.exception(
                f"Could not record dead letter for {self.pipeline_id}", extra={"pipeline": self.pipeline_id}
            )

    def _update_ack_target(self) -> None:
        with self._lock:
            oldest = self._oldest_pending()
            if oldest is not None:
                # Everything before the oldest pending transaction is durable.
                target = self._before(oldest)
            elif self._last_seen is not None and self._last_seen_closes_txn:
                target = ReplicationPosition(self._last_seen.lsn)
            elif self._last_seen is not None:
                # Later changes of this transaction have not been read yet.
                target = self._before(self._last_seen)
            else:
                target = None
            if target is not None and (self._ack_target is None or target > self._ack_target):
                self._ack_target = target
        if self._reader_thread is None and self._stream_open and self.status_value == PipelineStatus.RUNNING:
            self._send_acknowledgement()

    @staticmethod
    def _before(position: ReplicationPosition) -> Optional[ReplicationPosition]:
        return ReplicationPosition(position.lsn - 1) if position.lsn else None

    def _check_drained(self) -> None:
        with self._lock:
            drained = self._end_of_stream and not self._in_flight and self._held is None and self.buffer.is_empty()
            if not drained or self._state.status != PipelineStatus.RUNNING:
                return
            self._transition(PipelineStatus.IDLE)
        logger.info(f"Pipeline {self.pipeline_id} drained its stream", extra={"pipeline": self.pipeline_id})
        self._stop.set()
        if self._reader_thread is None:
            self._close_stream()

    def _writer_loop(self) -> None:
        try:
            while not self._stop.is_set():
                status = self.status_value
                if status == PipelineStatus.RUNNING:
                    if self.tick() == 0:
                        self.buffer.wait_for_data(min(self.poll_interval, 0.1))
                        self._stop.wait(0.01)
                elif status == PipelineStatus.PAUSED:
                    self._stop.wait(self.poll_interval)
                else:
                    break
        except Exception as e:
            logger.exception(f"Writer of {self.pipeline_id} crashed")
            self._fail(e)

    def run_until_idle(self, max_rounds: int = 10000) -> PipelineStatus:
        """
        Drive a pipeline started with ``background=False`` until it leaves
        the running state or ``max_rounds`` is reached.
        """
        for _ in range(max_rounds):
            if self.status_value != PipelineStatus.RUNNING:
                break
            self.pump(0)
            self.tick()
        return self.status_value

    def tables(self) -> List[str]:
        with self._lock:
            return sorted(set(self._committed) | set(self.buffer.tables()))
