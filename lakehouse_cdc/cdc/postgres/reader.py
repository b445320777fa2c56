"""Logical replication reader for PostgreSQL (wal2json)."""

import select
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import psycopg2

from lakehouse_cdc.cdc.models import ChangeEvent, ReplicationPosition
from lakehouse_cdc.cdc.postgres.connection import ReplicationConnectionManager
from lakehouse_cdc.cdc.postgres.decoder import Wal2JsonDecoder
from lakehouse_cdc.cdc.stream import ChangeStream
from lakehouse_cdc.common.config import SourceConfig
from lakehouse_cdc.common.errors import TransientIOError
from lakehouse_cdc.observability.logging_config import get_logger

logger = get_logger(__name__)


def wal2json_options(tables: List[str], ddl_message_prefix: str) -> Dict[str, str]:
    """
    Plugin options requested from wal2json.

    Args:
        tables: Qualified source tables to stream (empty streams all tables)
        ddl_message_prefix: Logical message prefix carrying DDL

    Returns:
        Option mapping for ``start_replication``
    """
    options = {
        "format-version": "2",
        "include-xids": "1",
        "include-timestamp": "1",
        "include-pk": "1",
        "include-lsn": "1",
        "include-transaction": "1",
        "include-types": "1",
        "add-msg-prefixes": ddl_message_prefix,
    }
    if tables:
        options["add-tables"] = ",".join(tables)
    return options


class PostgresReplicationReader(ChangeStream):
    """Streams decoded changes from a logical replication slot."""

    def __init__(
        self,
        config: SourceConfig,
        tables: List[str],
        connection_manager: Optional[ReplicationConnectionManager] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize reader.

        Args:
            config: Source connection and slot settings
            tables: Qualified source tables to stream
            connection_manager: Connection manager (built from config if omitted)
            clock: Monotonic clock used for keepalive scheduling
        """
        self.config = config
        self.tables = list(tables)
        self.connections = connection_manager or ReplicationConnectionManager.from_config(config)
        self.decoder = Wal2JsonDecoder(config.ddl_message_prefix)
        self._clock = clock
        self._cursor: Any = None
        self._pending: Deque[ChangeEvent] = deque()
        self._start_position: Optional[ReplicationPosition] = None
        self._flushed_lsn = 0
        self._last_feedback = 0.0

    @property
    def is_open(self) -> bool:
        return self._cursor is not None

    def open(self, start_position: Optional[ReplicationPosition] = None) -> "PostgresReplicationReader":
        """
        Connect and start replication.

        A committed position is resumed from one byte before its LSN so the
        transaction holding it is sent again; already-committed changes are
        dropped downstream by position.
        """
        self._start_position = start_position
        start_lsn = max(start_position.lsn - 1, 0) if start_position else 0

        try:
            conn = self.connections.get_connection()
            cursor = conn.cursor()
            if self.config.create_slot:
                self.connections.ensure_slot(cursor, self.config.slot_name, self.config.output_plugin)
            cursor.start_replication(
                slot_name=self.config.slot_name,
                decode=True,
                start_lsn=start_lsn,
                options=wal2json_options(self.tables, self.config.ddl_message_prefix),
                status_interval=self.config.keepalive_interval,
            )
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self._reset()
            raise TransientIOError(f"Failed to start replication: {e}", stage="reader") from e

        self._cursor = cursor
        self._flushed_lsn = max(self._flushed_lsn, start_lsn)
        self._last_feedback = self._clock()
        logger.info(
            f"Started replication from slot {self.config.slot_name} "
            f"at {ReplicationPosition(start_lsn).lsn_text}"
        )
        return self

    def next(self, timeout: float) -> Optional[ChangeEvent]:
        if self._pending:
            return self._pending.popleft()
        if self._cursor is None:
            # Reconnect after a transient failure.
            self.open(self._resume_position())

        deadline = self._clock() + timeout
        while not self._pending:
            try:
                message = self._cursor.read_message()
                if message is not None:
                    self._pending.extend(self.decoder.feed(message.payload, message.data_start))
                    continue

                self._keepalive()
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return None
                select.select([self._cursor], [], [], remaining)
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._reset()
                raise TransientIOError(f"Replication stream failed: {e}", stage="reader") from e

        return self._pending.popleft()

    def acknowledge(self, position: ReplicationPosition) -> None:
        if position.lsn <= self._flushed_lsn:
            return
        self._flushed_lsn = position.lsn
        if self._cursor is None:
            return
        try:
            self._cursor.send_feedback(flush_lsn=self._flushed_lsn)
            self._last_feedback = self._clock()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self._reset()
            raise TransientIOError(f"Failed to send replication feedback: {e}", stage="reader") from e
        logger.debug(f"Acknowledged up to {position.lsn_text}")

    @property
    def at_transaction_boundary(self) -> bool:
        # The decoder releases a transaction whole, so an empty queue means
        # its last change has been handed out.
        return self._cursor is not None and not self._pending

    @property
    def current_position(self) -> Optional[ReplicationPosition]:
        wal_end = getattr(self._cursor, "wal_end", None)
        return ReplicationPosition(wal_end) if wal_end else None

    def lag_bytes(self) -> Optional[int]:
        wal_end = getattr(self._cursor, "wal_end", None)
        if not wal_end:
            return None
        return max(wal_end - self._flushed_lsn, 0)

    def close(self) -> None:
        self._cursor = None
        self.decoder.reset()
        self.connections.close()

    def _keepalive(self) -> None:
        if self._clock() - self._last_feedback >= self.config.keepalive_interval:
            self._cursor.send_feedback(flush_lsn=self._flushed_lsn)
            self._last_feedback = self._clock()

    def _resume_position(self) -> Optional[ReplicationPosition]:
        if self._flushed_lsn:
            # Resume after the last released LSN; open() steps back one byte.
            return ReplicationPosition(self._flushed_lsn + 1)
        return self._start_position

    def _reset(self) -> None:
        self._cursor = None
        self._pending.clear()
        self.decoder.reset()
        self.connections.close()
