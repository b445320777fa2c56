"""
Schema mapping and evolution between PostgreSQL tables and Iceberg tables.

Schema changes are expressed as explicit evolution operations
(AddColumn, WidenType, DeprecateColumn). Each operation validates against a
schema version without side effects, and applying a set of operations always
produces a new version; published versions are never mutated.
"""

import json
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pyarrow as pa
from pyiceberg.schema import Schema
from pyiceberg.types import (
    BinaryType,
    BooleanType,
    DateType,
    DoubleType,
    FloatType,
    IcebergType,
    IntegerType,
    LongType,
    NestedField,
    StringType,
    TimestampType,
    TimestamptzType,
    TimeType,
)

from lakehouse_cdc.cdc.models import ChangeEvent
from lakehouse_cdc.common.errors import SchemaError
from lakehouse_cdc.observability.logging_config import get_logger

logger = get_logger(__name__)

DEPRECATED_DOC = "deprecated: dropped at source"

# PostgreSQL type name -> logical column type
POSTGRES_TYPE_MAPPING: Dict[str, str] = {
    # Integer types
    "smallint": "int",
    "int2": "int",
    "integer": "int",
    "int": "int",
    "int4": "int",
    "serial": "int",
    "bigint": "long",
    "int8": "long",
    "bigserial": "long",
    "oid": "long",
    # Floating point types
    "real": "float",
    "float4": "float",
    "double precision": "double",
    "float8": "double",
    "numeric": "double",
    "decimal": "double",
    # Boolean
    "boolean": "boolean",
    "bool": "boolean",
    # String types
    "text": "string",
    "varchar": "string",
    "character varying": "string",
    "char": "string",
    "character": "string",
    "bpchar": "string",
    "name": "string",
    "uuid": "string",
    "json": "string",
    "jsonb": "string",
    "inet": "string",
    "cidr": "string",
    "macaddr": "string",
    # Date/Time types
    "date": "date",
    "time": "time",
    "time without time zone": "time",
    "time with time zone": "time",
    "timetz": "time",
    "timestamp": "timestamp",
    "timestamp without time zone": "timestamp",
    "timestamp with time zone": "timestamptz",
    "timestamptz": "timestamptz",
    # Binary
    "bytea": "binary",
}

ICEBERG_TYPES: Dict[str, IcebergType] = {
    "boolean": BooleanType(),
    "int": IntegerType(),
    "long": LongType(),
    "float": FloatType(),
    "double": DoubleType(),
    "string": StringType(),
    "date": DateType(),
    "time": TimeType(),
    "timestamp": TimestampType(),
    "timestamptz": TimestamptzType(),
    "binary": BinaryType(),
}

ARROW_TYPES: Dict[str, pa.DataType] = {
    "boolean": pa.bool_(),
    "int": pa.int32(),
    "long": pa.int64(),
    "float": pa.float32(),
    "double": pa.float64(),
    "string": pa.string(),
    "date": pa.date32(),
    "time": pa.time64("us"),
    "timestamp": pa.timestamp("us"),
    "timestamptz": pa.timestamp("us", tz="UTC"),
    "binary": pa.binary(),
}

# (from, to) pairs that can be widened without rewriting data
WIDENINGS = {("int", "long"), ("float", "double")}

# CDC metadata columns appended to every destination table
SYSTEM_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("_cdc_operation", "string"),
    ("_cdc_position", "string"),
    ("_cdc_lsn", "long"),
    ("_cdc_transaction_id", "long"),
    ("_cdc_timestamp", "timestamptz"),
)


def map_postgres_type(pg_type: str) -> str:
    """
    Map a PostgreSQL type name to a logical column type.

    Arrays and unknown types are stored as strings; modifiers such as
    ``varchar(20)`` or ``numeric(10,2)`` are ignored.

    Args:
        pg_type: Type name as reported by the source

    Returns:
        Logical type name (a key of ICEBERG_TYPES)
    """
    normalized = pg_type.strip().lower()
    if normalized.endswith("[]") or normalized.startswith("_"):
        return "string"
    if "(" in normalized:
        # "timestamp(3) with time zone" keeps its suffix
        head, _, rest = normalized.partition("(")
        normalized = (head.strip() + " " + rest.partition(")")[2].strip()).strip()
    return POSTGRES_TYPE_MAPPING.get(normalized, "string")


@dataclass(frozen=True)
class ColumnDef:
    """Column of a destination table."""

    name: str
    logical_type: str
    nullable: bool = True
    primary_key: bool = False
    deprecated: bool = False

    def __post_init__(self) -> None:
        if self.logical_type not in ICEBERG_TYPES:
            raise ValueError(f"Unknown logical type {self.logical_type!r} for column {self.name}")


@dataclass(frozen=True)
class TableSchema:
    """One immutable version of a destination table's schema."""

    table: str
    columns: Tuple[ColumnDef, ...]
    version: int = 1

    def column(self, name: str) -> Optional[ColumnDef]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def primary_key(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.columns if c.primary_key)

    def to_iceberg(self) -> Schema:
        """Iceberg schema with the CDC system columns appended."""
        fields = []
        for field_id, column in enumerate(self.columns, start=1):
            fields.append(
                NestedField(
                    field_id=field_id,
                    name=column.name,
                    field_type=ICEBERG_TYPES[column.logical_type],
                    required=False,
                    doc=DEPRECATED_DOC if column.deprecated else None,
                )
            )
        for offset, (name, logical_type) in enumerate(SYSTEM_COLUMNS, start=len(fields) + 1):
            fields.append(
                NestedField(field_id=offset, name=name, field_type=ICEBERG_TYPES[logical_type], required=False)
            )
        return Schema(*fields)

    def to_arrow(self) -> pa.Schema:
        """Arrow schema of the data files written for this version."""
        fields = [pa.field(c.name, ARROW_TYPES[c.logical_type], nullable=True) for c in self.columns]
        fields.extend(pa.field(name, ARROW_TYPES[t], nullable=True) for name, t in SYSTEM_COLUMNS)
        return pa.schema(fields)

    def to_json(self) -> str:
        return json.dumps(
            {"table": self.table, "version": self.version, "columns": [asdict(c) for c in self.columns]},
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, payload: str) -> "TableSchema":
        data = json.loads(payload)
        return cls(
            table=data["table"],
            columns=tuple(ColumnDef(**c) for c in data["columns"]),
            version=data["version"],
        )


@dataclass(frozen=True)
class AddColumn:
    """Append a new nullable column."""

    column: ColumnDef

    def validate(self, schema: TableSchema) -> None:
        existing = schema.column(self.column.name)
        if existing is not None and existing.deprecated:
            raise SchemaError(
                f"Column {self.column.name} was dropped earlier and cannot be re-added", schema.table
            )
        if existing is not None:
            raise SchemaError(f"Column {self.column.name} already exists", schema.table)
        if not self.column.nullable:
            raise SchemaError(f"Cannot add NOT NULL column {self.column.name}", schema.table)
        if self.column.primary_key:
            raise SchemaError(
                f"Primary key change: new key column {self.column.name}", schema.table
            )

    def apply(self, columns: Tuple[ColumnDef, ...]) -> Tuple[ColumnDef, ...]:
        return columns + (self.column,)


@dataclass(frozen=True)
class WidenType:
    """Promote a column to a wider type."""

    name: str
    from_type: str
    to_type: str

    def validate(self, schema: TableSchema) -> None:
        existing = schema.column(self.name)
        if existing is None:
            raise SchemaError(f"Cannot widen unknown column {self.name}", schema.table)
        if existing.logical_type != self.from_type:
            raise SchemaError(
                f"Column {self.name} is {existing.logical_type}, not {self.from_type}", schema.table
            )
        if (self.from_type, self.to_type) not in WIDENINGS:
            if (self.to_type, self.from_type) in WIDENINGS:
                raise SchemaError(
                    f"Narrowing {self.name} from {self.from_type} to {self.to_type} is not supported",
                    schema.table,
                )
            raise SchemaError(
                f"Changing {self.name} from {self.from_type} to {self.to_type} is not supported",
                schema.table,
            )

    def apply(self, columns: Tuple[ColumnDef, ...]) -> Tuple[ColumnDef, ...]:
        return tuple(replace(c, logical_type=self.to_type) if c.name == self.name else c for c in columns)


@dataclass(frozen=True)
class DeprecateColumn:
    """Mark a column dropped at the source; the column and its data stay."""

    name: str

    def validate(self, schema: TableSchema) -> None:
        existing = schema.column(self.name)
        if existing is None:
            raise SchemaError(f"Cannot drop unknown column {self.name}", schema.table)
        if existing.primary_key:
            raise SchemaError(f"Primary key change: key column {self.name} dropped", schema.table)

    def apply(self, columns: Tuple[ColumnDef, ...]) -> Tuple[ColumnDef, ...]:
        return tuple(replace(c, deprecated=True) if c.name == self.name else c for c in columns)


SchemaChange = Union[AddColumn, WidenType, DeprecateColumn]


def evolve(schema: TableSchema, changes: Sequence[SchemaChange]) -> TableSchema:
    """
    Apply evolution operations, producing the next version.

    Every operation is validated before anything is applied.

    Raises:
        SchemaError: If any operation is invalid for ``schema``
    """
    if not changes:
        return schema
    columns = schema.columns
    for change in changes:
        change.validate(replace(schema, columns=columns))
        columns = change.apply(columns)
    return TableSchema(table=schema.table, columns=columns, version=schema.version + 1)


class SchemaMapper:
    """Reconciles source table definitions with destination schemas."""

    def columns_from_ddl(self, event: ChangeEvent) -> List[ColumnDef]:
        """Column definitions carried by a DDL event."""
        raw = (event.after or {}).get("columns")
        if not raw:
            raise SchemaError("DDL event without column list", event.source_table)
        return [
            ColumnDef(
                name=c["name"],
                logical_type=map_postgres_type(c["type"]),
                nullable=bool(c.get("nullable", True)),
                primary_key=bool(c.get("primary_key", False)),
            )
            for c in raw
        ]

    def diff(
        self,
        current: TableSchema,
        desired: Sequence[ColumnDef],
        drop_missing: bool = True,
    ) -> List[SchemaChange]:
        """
        Compute the operations that take ``current`` to ``desired``.

        Args:
            current: Current destination schema
            desired: Source column list
            drop_missing: Deprecate active columns absent from ``desired``

        Raises:
            SchemaError: For changes no operation can express
        """
        changes: List[SchemaChange] = []
        for column in desired:
            existing = current.column(column.name)
            if existing is None or existing.deprecated:
                changes.append(AddColumn(replace(column, deprecated=False)))
                continue
            if column.primary_key != existing.primary_key:
                raise SchemaError(f"Primary key change on column {column.name}", current.table)
            if column.logical_type != existing.logical_type:
                changes.append(WidenType(column.name, existing.logical_type, column.logical_type))

        if drop_missing:
            desired_names = {c.name for c in desired}
            for column in current.columns:
                if not column.deprecated and column.name not in desired_names:
                    changes.append(DeprecateColumn(column.name))
        return changes

    def reconcile(
        self,
        ddl_event: ChangeEvent,
        current: Optional[TableSchema],
        table: Optional[str] = None,
    ) -> TableSchema:
        """
        Reconcile a DDL event with the current destination schema.

        Args:
            ddl_event: Event carrying the table's full post-DDL column list
            current: Current schema, or None for a table not created yet
            table: Destination table name for a first version

        Returns:
            ``current`` itself if nothing changed, otherwise version N+1

        Raises:
            SchemaError: If the change is not a supported evolution
        """
        table = current.table if current else (table or ddl_event.source_table)
        desired = self.columns_from_ddl(ddl_event)
        if current is None:
            return TableSchema(table=table, columns=tuple(desired), version=1)

        new_schema = evolve(current, self.diff(current, desired))
        if new_schema is not current:
            logger.info(
                f"Schema of {current.table} evolved to version {new_schema.version}",
                extra={"table": current.table, "position": str(ddl_event.position)},
            )
        return new_schema

    def reconcile_columns(self, current: TableSchema, event: ChangeEvent) -> TableSchema:
        """
        Account for columns first seen on a row event.

        Only additions and widenings are inferred; row images may be partial
        so missing columns are never treated as dropped.
        """
        desired = []
        for name in event.row_image():
            pg_type = event.column_types.get(name)
            existing = current.column(name)
            if pg_type is None:
                if existing is None:
                    raise SchemaError(f"Column {name} has no type information", current.table)
                continue
            logical_type = map_postgres_type(pg_type)
            if existing is not None and not existing.deprecated and logical_type == existing.logical_type:
                continue
            desired.append(
                ColumnDef(
                    name=name,
                    logical_type=logical_type,
                    primary_key=existing.primary_key if existing else False,
                )
            )
        if not desired:
            return current
        return evolve(current, self.diff(current, desired, drop_missing=False))

    def infer_schema(self, table: str, event: ChangeEvent) -> TableSchema:
        """Initial schema inferred from the first row event of a table."""
        columns = []
        for name in event.row_image():
            pg_type = event.column_types.get(name)
            if pg_type is None:
                raise SchemaError(f"Column {name} has no type information", table)
            columns.append(
                ColumnDef(
                    name=name,
                    logical_type=map_postgres_type(pg_type),
                    primary_key=name in event.key_columns,
                )
            )
        return TableSchema(table=table, columns=tuple(columns), version=1)


class SchemaRegistry:
    """Current schema version per destination table, persisted append-only."""

    def __init__(self, store: Any) -> None:
        """
        Initialize registry.

        Args:
            store: State store with ``save_schema_version`` and
                ``load_schema_versions``
        """
        self.store = store
        self._current: Dict[str, TableSchema] = {}

    def current(self, table: str) -> Optional[TableSchema]:
        if table not in self._current:
            versions = self.history(table)
            if versions:
                self._current[table] = versions[-1]
        return self._current.get(table)

    def history(self, table: str) -> List[TableSchema]:
        """All published versions of a table, oldest first."""
        rows = self.store.load_schema_versions(table)
        return [TableSchema.from_json(payload) for _, payload in sorted(rows)]

    def publish(self, schema: TableSchema) -> TableSchema:
        """
        Record a new version.

        Publishing the current version again is a no-op.

        Raises:
            SchemaError: If the version does not follow the current one
        """
        current = self.current(schema.table)
        if current is not None and schema.version == current.version:
            if schema != current:
                raise SchemaError(
                    f"Version {schema.version} of {schema.table} is already published", schema.table
                )
            return current
        expected = current.version + 1 if current else 1
        if schema.version != expected:
            raise SchemaError(
                f"Expected version {expected} of {schema.table}, got {schema.version}", schema.table
            )
        self.store.save_schema_version(schema.table, schema.version, schema.to_json())
        self._current[schema.table] = schema
        return schema

