"""Durable checkpoints and schema history."""

import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
from psycopg2 import sql

from lakehouse_cdc.cdc.models import Checkpoint, DeadLetter, ReplicationPosition
from lakehouse_cdc.cdc.postgres.connection import PostgresConnectionManager
from lakehouse_cdc.common.config import StateConfig
from lakehouse_cdc.common.errors import TransientIOError
from lakehouse_cdc.observability.logging_config import get_logger

logger = get_logger(__name__)


class StateStore(ABC):
    """Persistence for checkpoints and schema versions."""

    @abstractmethod
    def load_checkpoint(self, pipeline_id: str, table: str) -> Optional[Checkpoint]:
        """Read one checkpoint."""

    @abstractmethod
    def load_checkpoints(self, pipeline_id: str) -> List[Checkpoint]:
        """Read all checkpoints of a pipeline."""

    @abstractmethod
    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Upsert a checkpoint; a lower position never replaces a higher one."""

    @abstractmethod
    def save_schema_version(self, table: str, version: int, payload: str) -> None:
        """
        Append a schema version.

        Raises:
            ValueError: If a different schema is already stored under the version
        """

    @abstractmethod
    def load_schema_versions(self, table: str) -> List[Tuple[int, str]]:
        """All ``(version, payload)`` rows of a table."""

    @abstractmethod
    def save_dead_letter(self, letter: DeadLetter) -> int:
        """Store an undeliverable change and return its id."""

    @abstractmethod
    def load_dead_letters(
        self, pipeline_id: str, now: datetime, include_expired: bool = False, limit: int = 100
    ) -> List[DeadLetter]:
        """Newest dead letters of a pipeline first."""

    @abstractmethod
    def purge_expired_dead_letters(self, now: datetime) -> int:
        """Delete dead letters whose retention ended; returns how many."""

    def close(self) -> None:
        """Release resources."""


class SQLiteStateStore(StateStore):
    """State store in an embedded SQLite file."""

    def __init__(self, path: str) -> None:
        """
        Initialize store.

        Args:
            path: Database file (``:memory:`` for a throwaway store)
        """
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS checkpoints (
                    pipeline_id TEXT NOT NULL,
                    destination_table TEXT NOT NULL,
                    lsn INTEGER NOT NULL,
                    seq INTEGER NOT NULL,
                    committed_at TEXT NOT NULL,
                    PRIMARY KEY (pipeline_id, destination_table)
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_versions (
                    destination_table TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    schema_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (destination_table, version)
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dead_letters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    pipeline_id TEXT NOT NULL,
                    source_table TEXT,
                    destination_table TEXT,
                    position TEXT,
                    error_type TEXT NOT NULL,
                    error_message TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    attempts INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
                """
            )

    @staticmethod
    def _row_to_dead_letter(row: Tuple) -> DeadLetter:
        (id_, pipeline_id, source_table, destination_table, position,
         error_type, error_message, payload, attempts, created_at, expires_at) = row
        return DeadLetter(
            id=id_,
            pipeline_id=pipeline_id,
            source_table=source_table,
            destination_table=destination_table,
            position=ReplicationPosition.parse(position) if position else None,
            error_type=error_type,
            error_message=error_message,
            payload=payload,
            attempts=attempts,
            created_at=datetime.fromisoformat(created_at),
            expires_at=datetime.fromisoformat(expires_at),
        )

    @staticmethod
    def _row_to_checkpoint(row: Tuple) -> Checkpoint:
        pipeline_id, table, lsn, seq, committed_at = row
        return Checkpoint(
            pipeline_id=pipeline_id,
            destination_table=table,
            committed_position=ReplicationPosition(lsn, seq),
            committed_at=datetime.fromisoformat(committed_at),
        )

    def load_checkpoint(self, pipeline_id: str, table: str) -> Optional[Checkpoint]:
        with self._lock:
            row = self._conn.execute(
                "SELECT pipeline_id, destination_table, lsn, seq, committed_at FROM checkpoints "
                "WHERE pipeline_id = ? AND destination_table = ?",
                (pipeline_id, table),
            ).fetchone()
        return self._row_to_checkpoint(row) if row else None

    def load_checkpoints(self, pipeline_id: str) -> List[Checkpoint]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT pipeline_id, destination_table, lsn, seq, committed_at FROM checkpoints "
                "WHERE pipeline_id = ? ORDER BY destination_table",
                (pipeline_id,),
            ).fetchall()
        return [self._row_to_checkpoint(row) for row in rows]

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        position = checkpoint.committed_position
        committed_at = (checkpoint.committed_at or datetime.now(timezone.utc)).isoformat()
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO checkpoints (pipeline_id, destination_table, lsn, seq, committed_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (pipeline_id, destination_table) DO UPDATE SET
                    lsn = excluded.lsn,
                    seq = excluded.seq,
                    committed_at = excluded.committed_at
                WHERE excluded.lsn > checkpoints.lsn
                   OR (excluded.lsn = checkpoints.lsn AND excluded.seq > checkpoints.seq)
                """,
                (checkpoint.pipeline_id, checkpoint.destination_table, position.lsn, position.seq, committed_at),
            )

    def save_schema_version(self, table: str, version: int, payload: str) -> None:
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT schema_json FROM schema_versions WHERE destination_table = ? AND version = ?",
                (table, version),
            ).fetchone()
            if row is not None:
                if row[0] != payload:
                    raise ValueError(f"Version {version} of {table} is already stored with another schema")
                return
            self._conn.execute(
                "INSERT INTO schema_versions (destination_table, version, schema_json, created_at) "
                "VALUES (?, ?, ?, ?)",
                (table, version, payload, datetime.now(timezone.utc).isoformat()),
            )

    def load_schema_versions(self, table: str) -> List[Tuple[int, str]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT version, schema_json FROM schema_versions WHERE destination_table = ? ORDER BY version",
                (table,),
            ).fetchall()
        return [(int(version), payload) for version, payload in rows]

    def list_schema_tables(self) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT DISTINCT destination_table FROM schema_versions ORDER BY destination_table"
            ).fetchall()
        return [row[0] for row in rows]

    def save_dead_letter(self, letter: DeadLetter) -> int:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "INSERT INTO dead_letters (pipeline_id, source_table, destination_table, position, error_type, "
                "error_message, payload, attempts, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    letter.pipeline_id,
                    letter.source_table,
                    letter.destination_table,
                    str(letter.position) if letter.position else None,
                    letter.error_type,
                    letter.error_message,
                    letter.payload,
                    letter.attempts,
                    letter.created_at.isoformat(timespec="microseconds"),
                    letter.expires_at.isoformat(timespec="microseconds"),
                ),
            )
        return cursor.lastrowid

    def load_dead_letters(
        self, pipeline_id: str, now: datetime, include_expired: bool = False, limit: int = 100
    ) -> List[DeadLetter]:
        query = (
            "SELECT id, pipeline_id, source_table, destination_table, position, error_type, error_message, "
            "payload, attempts, created_at, expires_at FROM dead_letters WHERE pipeline_id = ?"
        )
        params: List[Any] = [pipeline_id]
        if not include_expired:
            query += " AND expires_at > ?"
            params.append(now.isoformat(timespec="microseconds"))
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_dead_letter(row) for row in rows]

    def purge_expired_dead_letters(self, now: datetime) -> int:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "DELETE FROM dead_letters WHERE expires_at <= ?", (now.isoformat(timespec="microseconds"),)
            )
        return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class PostgresStateStore(StateStore):
    """State store in PostgreSQL tables."""

    def __init__(self, connections: PostgresConnectionManager, schema_name: str = "lakehouse_cdc") -> None:
        """
        Initialize store.

        Args:
            connections: Connection manager for the state database
            schema_name: Schema holding the state tables
        """
        self.connections = connections
        self.schema_name = schema_name
        self._lock = threading.Lock()
        self._initialized = False

    def _table(self, name: str) -> sql.Composed:
        return sql.SQL("{}.{}").format(sql.Identifier(self.schema_name), sql.Identifier(name))

    def _execute(self, query: Any, params: Optional[Tuple] = None, fetch: bool = True) -> Optional[List[Dict[str, Any]]]:
        with self._lock:
            try:
                if not self._initialized:
                    self._create_tables()
                return self.connections.execute_query(query, params, fetch=fetch)
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self.connections.close()
                raise TransientIOError(f"State store unavailable: {e}", stage="checkpoint") from e

    def _create_tables(self) -> None:
        self.connections.execute_query(
            sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(self.schema_name)), fetch=False
        )
        self.connections.execute_query(
            sql.SQL(
                """
                CREATE TABLE IF NOT EXISTS {} (
                    pipeline_id TEXT NOT NULL,
                    destination_table TEXT NOT NULL,
                    lsn NUMERIC(20, 0) NOT NULL,
                    seq INTEGER NOT NULL,
                    position TEXT NOT NULL,
                    committed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (pipeline_id, destination_table)
                )
                """
            ).format(self._table("checkpoints")),
            fetch=False,
        )
        self.connections.execute_query(
            sql.SQL(
                """
                CREATE TABLE IF NOT EXISTS {} (
                    destination_table TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    schema_json TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (destination_table, version)
                )
                """
            ).format(self._table("schema_versions")),
            fetch=False,
        )
        self.connections.execute_query(
            sql.SQL(
                """
                CREATE TABLE IF NOT EXISTS {} (
                    id BIGSERIAL PRIMARY KEY,
                    pipeline_id TEXT NOT NULL,
                    source_table TEXT,
                    destination_table TEXT,
                    position TEXT,
                    error_type TEXT NOT NULL,
                    error_message TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    expires_at TIMESTAMPTZ NOT NULL
                )
                """
            ).format(self._table("dead_letters")),
            fetch=False,
        )
        self._initialized = True

    @staticmethod
    def _row_to_dead_letter(row: Dict[str, Any]) -> DeadLetter:
        return DeadLetter(
            id=row["id"],
            pipeline_id=row["pipeline_id"],
            source_table=row.get("source_table"),
            destination_table=row.get("destination_table"),
            position=ReplicationPosition.parse(row["position"]) if row.get("position") else None,
            error_type=row["error_type"],
            error_message=row["error_message"],
            payload=row["payload"],
            attempts=row["attempts"],
            created_at=row.get("created_at"),
            expires_at=row.get("expires_at"),
        )

    @staticmethod
    def _row_to_checkpoint(row: Dict[str, Any]) -> Checkpoint:
        lsn = row["lsn"]
        return Checkpoint(
            pipeline_id=row["pipeline_id"],
            destination_table=row["destination_table"],
            committed_position=ReplicationPosition(int(lsn) if isinstance(lsn, Decimal) else lsn, row["seq"]),
            committed_at=row.get("committed_at"),
        )

    def load_checkpoint(self, pipeline_id: str, table: str) -> Optional[Checkpoint]:
        rows = self._execute(
            sql.SQL(
                "SELECT pipeline_id, destination_table, lsn, seq, committed_at FROM {} "
                "WHERE pipeline_id = %s AND destination_table = %s"
            ).format(self._table("checkpoints")),
            (pipeline_id, table),
        )
        return self._row_to_checkpoint(rows[0]) if rows else None

    def load_checkpoints(self, pipeline_id: str) -> List[Checkpoint]:
        rows = self._execute(
            sql.SQL(
                "SELECT pipeline_id, destination_table, lsn, seq, committed_at FROM {} "
                "WHERE pipeline_id = %s ORDER BY destination_table"
            ).format(self._table("checkpoints")),
            (pipeline_id,),
        )
        return [self._row_to_checkpoint(row) for row in rows or []]

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        position = checkpoint.committed_position
        self._execute(
            sql.SQL(
                """
                INSERT INTO {table} (pipeline_id, destination_table, lsn, seq, position, committed_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (pipeline_id, destination_table) DO UPDATE SET
                    lsn = EXCLUDED.lsn,
                    seq = EXCLUDED.seq,
                    position = EXCLUDED.position,
                    committed_at = EXCLUDED.committed_at
                WHERE ({table}.lsn, {table}.seq) < (EXCLUDED.lsn, EXCLUDED.seq)
                """
            ).format(table=self._table("checkpoints")),
            (
                checkpoint.pipeline_id,
                checkpoint.destination_table,
                position.lsn,
                position.seq,
                str(position),
                checkpoint.committed_at or datetime.now(timezone.utc),
            ),
            fetch=False,
        )

    def save_schema_version(self, table: str, version: int, payload: str) -> None:
        rows = self._execute(
            sql.SQL(
                """
                INSERT INTO {} (destination_table, version, schema_json)
                VALUES (%s, %s, %s)
                ON CONFLICT (destination_table, version) DO NOTHING
                RETURNING version
                """
            ).format(self._table("schema_versions")),
            (table, version, payload),
        )
        if rows:
            return
        existing = self._execute(
            sql.SQL("SELECT schema_json FROM {} WHERE destination_table = %s AND version = %s").format(
                self._table("schema_versions")
            ),
            (table, version),
        )
        if existing and existing[0]["schema_json"] != payload:
            raise ValueError(f"Version {version} of {table} is already stored with another schema")

    def load_schema_versions(self, table: str) -> List[Tuple[int, str]]:
        rows = self._execute(
            sql.SQL(
                "SELECT version, schema_json FROM {} WHERE destination_table = %s ORDER BY version"
            ).format(self._table("schema_versions")),
            (table,),
        )
        return [(int(row["version"]), row["schema_json"]) for row in rows or []]

    def list_schema_tables(self) -> List[str]:
        rows = self._execute(
            sql.SQL("SELECT DISTINCT destination_table FROM {} ORDER BY destination_table").format(
                self._table("schema_versions")
            )
        )
        return [row["destination_table"] for row in rows or []]

    def save_dead_letter(self, letter: DeadLetter) -> int:
        rows = self._execute(
            sql.SQL(
                """
                INSERT INTO {} (pipeline_id, source_table, destination_table, position, error_type,
                                error_message, payload, attempts, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """
            ).format(self._table("dead_letters")),
            (
                letter.pipeline_id,
                letter.source_table,
                letter.destination_table,
                str(letter.position) if letter.position else None,
                letter.error_type,
                letter.error_message,
                letter.payload,
                letter.attempts,
                letter.created_at,
                letter.expires_at,
            ),
        )
        return int(rows[0]["id"])

    def load_dead_letters(
        self, pipeline_id: str, now: datetime, include_expired: bool = False, limit: int = 100
    ) -> List[DeadLetter]:
        rows = self._execute(
            sql.SQL(
                "SELECT id, pipeline_id, source_table, destination_table, position, error_type, error_message, "
                "payload, attempts, created_at, expires_at FROM {} "
                "WHERE pipeline_id = %s AND (%s OR expires_at > %s) ORDER BY id DESC LIMIT %s"
            ).format(self._table("dead_letters")),
            (pipeline_id, include_expired, now, limit),
        )
        return [self._row_to_dead_letter(row) for row in rows or []]

    def purge_expired_dead_letters(self, now: datetime) -> int:
        rows = self._execute(
            sql.SQL("DELETE FROM {} WHERE expires_at <= %s RETURNING id").format(self._table("dead_letters")),
            (now,),
        )
        return len(rows or [])

    def close(self) -> None:
        self.connections.close()


def build_state_store(config: StateConfig) -> StateStore:
    """Create the state store selected by the state settings."""
    if config.backend == "sqlite":
        return SQLiteStateStore(config.sqlite_path)
    if config.backend == "postgres":
        connections = PostgresConnectionManager(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            database=config.db,
        )
        return PostgresStateStore(connections, config.schema_name)
    raise ValueError(f"Unknown state backend: {config.backend}")


class CheckpointManager:
    """
    Single source of truth for committed positions.

    Checkpoints only move forward: advancing to a position at or below the
    stored one leaves it unchanged.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store
        self._cache: Dict[Tuple[str, str], ReplicationPosition] = {}
        self._lock = threading.Lock()

    def advance(self, pipeline_id: str, table: str, position: ReplicationPosition) -> ReplicationPosition:
        """
        Durably record a committed position.

        Must only be called after the commit covering ``position`` succeeded.

        Returns:
            The checkpoint in effect afterwards
        """
        with self._lock:
            current = self._cache.get((pipeline_id, table))
            if current is None:
                stored = self.store.load_checkpoint(pipeline_id, table)
                current = stored.committed_position if stored else None
            if current is not None and position <= current:
                if position < current:
                    logger.warning(
                        f"Ignoring checkpoint regression for {table}: {position} < {current}",
                        extra={"pipeline": pipeline_id, "table": table},
                    )
                self._cache[(pipeline_id, table)] = current
                return current

            self.store.save_checkpoint(
                Checkpoint(
                    pipeline_id=pipeline_id,
                    destination_table=table,
                    committed_position=position,
                    committed_at=datetime.now(timezone.utc),
                )
            )
            self._cache[(pipeline_id, table)] = position
            logger.debug(
                f"Checkpoint for {table} advanced to {position}",
                extra={"pipeline": pipeline_id, "table": table, "position": str(position)},
            )
            return position

    def load(self, pipeline_id: str, table: str) -> Optional[ReplicationPosition]:
        """Last committed position of a table, or None."""
        checkpoint = self.store.load_checkpoint(pipeline_id, table)
        if checkpoint is None:
            return None
        with self._lock:
            self._cache[(pipeline_id, table)] = checkpoint.committed_position
        return checkpoint.committed_position

    def load_all(self, pipeline_id: str) -> Dict[str, ReplicationPosition]:
        """Committed positions of every table of a pipeline."""
        positions = {c.destination_table: c.committed_position for c in self.store.load_checkpoints(pipeline_id)}
        with self._lock:
            for table, position in positions.items():
                self._cache[(pipeline_id, table)] = position
        return positions
