"""Postgres connection managers for querying and logical replication."""

import time
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extras import RealDictCursor

from lakehouse_cdc.common.config import SourceConfig
from lakehouse_cdc.common.errors import TransientIOError
from lakehouse_cdc.observability.logging_config import get_logger

logger = get_logger(__name__)


class PostgresConnectionManager:
    """Plain psycopg2 connection used for server checks and the state store."""

    connection_factory: Any = None

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        """
        Initialize connection manager.

        Args:
            host: Database host
            port: Database port
            user: Database user
            password: Database password
            database: Database name
            max_retries: Connection attempts before giving up
            retry_delay: Seconds slept between attempts
        """
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._connection: Optional[psycopg2.extensions.connection] = None

    @classmethod
    def from_config(cls, config: SourceConfig) -> "PostgresConnectionManager":
        """Build a manager from the source section of the settings."""
        return cls(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            database=config.db,
            max_retries=config.connect_retries,
            retry_delay=config.connect_retry_delay,
        )

    def _connect_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.database,
        }
        if self.connection_factory is not None:
            kwargs["connection_factory"] = self.connection_factory
        else:
            kwargs["cursor_factory"] = RealDictCursor
        return kwargs

    def get_connection(self) -> psycopg2.extensions.connection:
        """
        Return the open connection, connecting with bounded retries if needed.

        Raises:
            TransientIOError: If connection fails after all retries
        """
        if self._connection and not self._connection.closed:
            return self._connection

        last_exception: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                logger.info(
                    f"Connecting to Postgres at {self.host}:{self.port}/{self.database} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                self._connection = psycopg2.connect(**self._connect_kwargs())
                logger.info(f"Connected to {self.host}:{self.port}/{self.database}")
                return self._connection
            except psycopg2.OperationalError as e:
                last_exception = e
                logger.warning(f"Connection attempt {attempt + 1} failed: {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_delay)

        logger.error(f"Giving up on {self.host}:{self.port} after {self.max_retries} attempts")
        raise TransientIOError(
            f"Could not connect to {self.host}:{self.port}/{self.database}: {last_exception}",
            stage="reader",
        ) from last_exception

    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.closed

    def close(self) -> None:
        """Close the connection if one is open."""
        if self._connection and not self._connection.closed:
            self._connection.close()
            logger.info("Closed Postgres connection")
        self._connection = None

    def execute_query(
        self, query: str, params: Optional[Tuple] = None, fetch: bool = True
    ) -> Optional[List[Dict[str, Any]]]:
        """
        Run one statement in its own transaction.

        Args:
            query: SQL text, composed with psycopg2.sql where identifiers vary
            params: Bound parameters
            fetch: Return the result rows when the statement produces any

        Returns:
            Rows as dicts, or None
        """
        conn = self.get_connection()
        with conn.cursor() as cursor:
            cursor.execute(query, params)
            if fetch and cursor.description:
                rows = cursor.fetchall()
                conn.commit()
                return rows  # type: ignore
            conn.commit()
            return None

    def check_cdc_enabled(self) -> bool:
        """
        Report whether the server can decode WAL for replication slots.
        """
        result = self.execute_query("SHOW wal_level")
        if result:
            wal_level = result[0].get("wal_level")
            logger.info(f"Current wal_level: {wal_level}")
            return wal_level == "logical"
        return False

    def __enter__(self) -> "PostgresConnectionManager":
        self.get_connection()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class ReplicationConnectionManager(PostgresConnectionManager):
    """Connection manager for a logical replication session."""

    connection_factory = psycopg2.extras.LogicalReplicationConnection

    def ensure_slot(self, cursor: Any, slot_name: str, output_plugin: str) -> bool:
        """
        Create the replication slot if it does not exist yet.

        Args:
            cursor: Replication cursor
            slot_name: Slot to create
            output_plugin: Logical decoding plugin

        Returns:
            True if the slot was created, False if it already existed
        """
        try:
            cursor.create_replication_slot(slot_name, output_plugin=output_plugin)
        except psycopg2.errors.DuplicateObject:
            logger.info(f"Replication slot {slot_name} already exists")
            return False
        logger.info(f"Created replication slot {slot_name} using {output_plugin}")
        return True
