"""
Iceberg catalog access.

``TableCatalog`` is the narrow interface the writer needs: read a table's
schema and current snapshot, and add data files as a new snapshot on the
condition that the current snapshot is still the one last observed.
``PyIcebergCatalog`` implements it on a pyiceberg REST catalog.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import requests
from pyiceberg.catalog import Catalog, load_catalog
from pyiceberg.exceptions import (
    CommitFailedException,
    CommitStateUnknownException,
    NamespaceAlreadyExistsError,
    ServerError,
    ServiceUnavailableError,
    TableAlreadyExistsError,
)

from lakehouse_cdc.cdc.models import ReplicationPosition
from lakehouse_cdc.common.config import CatalogConfig
from lakehouse_cdc.common.errors import CommitConflict, TransientIOError
from lakehouse_cdc.iceberg.schema_mapper import DEPRECATED_DOC, ICEBERG_TYPES, TableSchema
from lakehouse_cdc.observability.logging_config import get_logger

logger = get_logger(__name__)

PIPELINE_PROPERTY = "lakehouse-cdc.pipeline-id"
POSITION_PROPERTY = "lakehouse-cdc.position"
SCHEMA_VERSION_PROPERTY = "lakehouse-cdc.schema-version"
SOURCE_EVENTS_PROPERTY = "lakehouse-cdc.source-events"


@dataclass(frozen=True)
class DataFile:
    """A data file uploaded for one batch."""

    path: str
    record_count: int
    size_bytes: int


@dataclass
class TableMetadata:
    """Catalog view of a table."""

    name: str
    schema: Any
    current_snapshot_id: Optional[int]
    properties: Dict[str, str] = field(default_factory=dict)


class TableCatalog(ABC):
    """Catalog operations used by the table writer."""

    @abstractmethod
    def table_exists(self, name: str) -> bool:
        """Check whether a table exists."""

    @abstractmethod
    def load_table(self, name: str) -> TableMetadata:
        """Read a table's schema and current snapshot."""

    @abstractmethod
    def create_table(self, name: str, schema: TableSchema) -> TableMetadata:
        """Create a table (and its namespace) if it does not exist."""

    @abstractmethod
    def update_schema(self, name: str, schema: TableSchema) -> None:
        """Bring the table schema in line with ``schema``; idempotent."""

    @abstractmethod
    def commit(
        self,
        name: str,
        expected_snapshot_id: Optional[int],
        files: List[DataFile],
        schema_version: int,
        properties: Dict[str, str],
    ) -> int:
        """
        Add files as a new snapshot.

        Args:
            name: Table identifier
            expected_snapshot_id: Snapshot the caller last observed
            files: Data files to add
            schema_version: Schema version the files were written with
            properties: Snapshot summary properties

        Returns:
            New snapshot ID

        Raises:
            CommitConflict: If the current snapshot is not ``expected_snapshot_id``
            TransientIOError: If the outcome is unknown or the catalog is unreachable
        """

    @abstractmethod
    def committed_position(self, name: str, pipeline_id: str) -> Optional[ReplicationPosition]:
        """Highest position a pipeline recorded in the table's snapshots."""


class PyIcebergCatalog(TableCatalog):
    """TableCatalog backed by a pyiceberg catalog (REST by default)."""

    def __init__(self, config: CatalogConfig, catalog: Optional[Catalog] = None) -> None:
        """
        Initialize catalog.

        Args:
            config: Catalog connection settings
            catalog: Already loaded pyiceberg catalog
        """
        self.config = config
        self._catalog = catalog

    @property
    def catalog(self) -> Catalog:
        """Get or create catalog instance."""
        if self._catalog is None:
            with self._translate(f"load catalog {self.config.catalog_name}"):
                logger.info(f"Loading Iceberg catalog '{self.config.catalog_name}' from {self.config.uri}")
                self._catalog = load_catalog(self.config.catalog_name, **self.config.properties())
        return self._catalog

    @contextmanager
    def _translate(self, action: str, table: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except CommitFailedException as e:
            raise CommitConflict(f"Commit to {table} rejected: {e}", table=table) from e
        except CommitStateUnknownException as e:
            raise TransientIOError(f"Outcome of {action} unknown: {e}", stage="writer") from e
        except (ServerError, ServiceUnavailableError, requests.RequestException, OSError) as e:
            raise TransientIOError(f"Failed to {action}: {e}", stage="writer") from e

    def table_exists(self, name: str) -> bool:
        with self._translate(f"check table {name}"):
            return self.catalog.table_exists(name)

    def _load(self, name: str) -> Any:
        with self._translate(f"load table {name}"):
            return self.catalog.load_table(name)

    def load_table(self, name: str) -> TableMetadata:
        table = self._load(name)
        return TableMetadata(
            name=name,
            schema=table.schema(),
            current_snapshot_id=table.metadata.current_snapshot_id,
            properties=dict(table.properties),
        )

    def create_table(self, name: str, schema: TableSchema) -> TableMetadata:
        namespace = name.rpartition(".")[0]
        with self._translate(f"create table {name}"):
            try:
                self.catalog.create_namespace(namespace)
                logger.info(f"Created namespace {namespace}")
            except NamespaceAlreadyExistsError:
                pass
            try:
                self.catalog.create_table(
                    identifier=name,
                    schema=schema.to_iceberg(),
                    properties={
                        "format-version": "2",
                        SCHEMA_VERSION_PROPERTY: str(schema.version),
                    },
                )
                logger.info(f"Created Iceberg table: {name}")
            except TableAlreadyExistsError:
                logger.info(f"Iceberg table {name} already exists")
        return self.load_table(name)

    def update_schema(self, name: str, schema: TableSchema) -> None:
        table = self._load(name)
        current = {f.name: f for f in table.schema().fields}

        with self._translate(f"update schema of {name}", table=name):
            with table.transaction() as txn:
                with txn.update_schema() as update:
                    for column in schema.columns:
                        field_type = ICEBERG_TYPES[column.logical_type]
                        doc = DEPRECATED_DOC if column.deprecated else None
                        existing = current.get(column.name)
                        if existing is None:
                            update.add_column(column.name, field_type, doc=doc)
                            continue
                        if existing.field_type != field_type:
                            update.update_column(column.name, field_type=field_type)
                        if doc and existing.doc != doc:
                            update.update_column(column.name, doc=doc)
                txn.set_properties(**{SCHEMA_VERSION_PROPERTY: str(schema.version)})

        logger.info(f"Schema of {name} updated to version {schema.version}")

    def commit(
        self,
        name: str,
        expected_snapshot_id: Optional[int],
        files: List[DataFile],
        schema_version: int,
        properties: Dict[str, str],
    ) -> int:
        table = self._load(name)
        actual = table.metadata.current_snapshot_id
        if actual != expected_snapshot_id:
            raise CommitConflict(
                f"Snapshot of {name} is {actual}, expected {expected_snapshot_id}",
                table=name,
                expected_snapshot_id=expected_snapshot_id,
                actual_snapshot_id=actual,
            )

        summary = dict(properties)
        summary[SCHEMA_VERSION_PROPERTY] = str(schema_version)
        with self._translate(f"commit to {name}", table=name):
            # The snapshot update asserts the parent snapshot on the catalog side.
            with table.transaction() as txn:
                txn.add_files(file_paths=[f.path for f in files], snapshot_properties=summary)

        snapshot_id = table.metadata.current_snapshot_id
        logger.info(f"Committed {len(files)} files to {name} as snapshot {snapshot_id}")
        return snapshot_id

    def committed_position(self, name: str, pipeline_id: str) -> Optional[ReplicationPosition]:
        table = self._load(name)
        highest: Optional[ReplicationPosition] = None
        for snapshot in table.metadata.snapshots:
            summary = snapshot.summary.additional_properties if snapshot.summary else {}
            if summary.get(PIPELINE_PROPERTY) != pipeline_id or POSITION_PROPERTY not in summary:
                continue
            position = ReplicationPosition.parse(summary[POSITION_PROPERTY])
            if highest is None or position > highest:
                highest = position
        return highest
