"""Normalized change-data-capture types shared by every pipeline stage."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence, Tuple

_POSITION_RE = re.compile(r"^([0-9A-Fa-f]{1,8})/([0-9A-Fa-f]{1,8})(?::(\d+))?$")

_EMPTY: Mapping[str, Any] = MappingProxyType({})


class Operation(str, Enum):
    """Kind of change carried by a ChangeEvent."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    DDL = "ddl"


@dataclass(frozen=True, order=True)
class ReplicationPosition:
    """
    Totally ordered point in the source change log.

    ``lsn`` is the commit LSN of the source transaction and ``seq`` the
    ordinal of the change inside it, so a position can name any single
    change, not only transaction boundaries.
    """

    lsn: int
    seq: int = 0

    def __post_init__(self) -> None:
        if self.lsn < 0 or self.seq < 0:
            raise ValueError(f"Invalid replication position: {self.lsn}:{self.seq}")

    @classmethod
    def parse(cls, text: str) -> "ReplicationPosition":
        """
        Parse ``"16/B374D848"`` or ``"16/B374D848:3"``.

        Raises:
            ValueError: If the text is not a valid position
        """
        match = _POSITION_RE.match(text.strip())
        if not match:
            raise ValueError(f"Invalid replication position: {text!r}")
        hi, lo, seq = match.groups()
        return cls(lsn=(int(hi, 16) << 32) | int(lo, 16), seq=int(seq or 0))

    @classmethod
    def from_lsn(cls, lsn_text: str) -> "ReplicationPosition":
        """Parse a bare PostgreSQL LSN."""
        return cls.parse(lsn_text.split(":")[0])

    @property
    def lsn_text(self) -> str:
        """The LSN in PostgreSQL's ``XXX/XXX`` notation."""
        return f"{self.lsn >> 32:X}/{self.lsn & 0xFFFFFFFF:X}"

    def __str__(self) -> str:
        return f"{self.lsn_text}:{self.seq}"


@dataclass(frozen=True)
class ChangeEvent:
    """
    One decoded change from the source.

    For DDL events ``after`` holds ``{"columns": [...]}``, the full column
    list of the table after the change.
    """

    source_table: str
    operation: Operation
    position: ReplicationPosition
    transaction_id: Optional[int] = None
    before: Optional[Mapping[str, Any]] = None
    after: Optional[Mapping[str, Any]] = None
    commit_time: Optional[datetime] = None
    key_columns: Tuple[str, ...] = ()
    column_types: Mapping[str, str] = field(default_factory=dict)
    size_bytes: int = 0

    def __post_init__(self) -> None:
        # Images are frozen along with the event.
        for name in ("before", "after", "column_types"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, MappingProxyType):
                object.__setattr__(self, name, MappingProxyType(dict(value)))
        object.__setattr__(self, "key_columns", tuple(self.key_columns))

    @property
    def is_ddl(self) -> bool:
        return self.operation == Operation.DDL

    def row_image(self) -> Mapping[str, Any]:
        """The image written to the destination (before-image for deletes)."""
        if self.operation == Operation.DELETE:
            return self.before or _EMPTY
        return self.after or _EMPTY

    def key(self) -> Optional[Tuple[Any, ...]]:
        """
        Primary key of the affected row.

        Returns:
            Key tuple, or None when the table has no primary key
        """
        if not self.key_columns or self.is_ddl:
            return None
        image = self.row_image()
        return tuple(image.get(col) for col in self.key_columns)

    def before_key(self) -> Optional[Tuple[Any, ...]]:
        """Key taken from the before-image, falling back to the row image."""
        if not self.key_columns or self.before is None:
            return self.key()
        return tuple(self.before.get(col) for col in self.key_columns)


@dataclass(frozen=True)
class TableBatch:
    """Ordered run of events for one destination table."""

    destination_table: str
    events: Tuple[ChangeEvent, ...]
    min_position: ReplicationPosition
    max_position: ReplicationPosition
    source_event_count: int

    @classmethod
    def from_events(
        cls,
        destination_table: str,
        drained: Sequence[ChangeEvent],
        events: Optional[Sequence[ChangeEvent]] = None,
    ) -> "TableBatch":
        """
        Build a batch whose position range covers everything drained.

        Args:
            destination_table: Destination table identifier
            drained: Events removed from the buffer, in order
            events: Events to write (defaults to ``drained``)
        """
        if not drained:
            raise ValueError("A batch needs at least one drained event")
        return cls(
            destination_table=destination_table,
            events=tuple(drained if events is None else events),
            min_position=drained[0].position,
            max_position=drained[-1].position,
            source_event_count=len(drained),
        )

    @property
    def is_schema_change(self) -> bool:
        return len(self.events) == 1 and self.events[0].is_ddl

    @property
    def batch_id(self) -> str:
        return f"{self.destination_table}@{self.max_position}"


@dataclass(frozen=True)
class Checkpoint:
    """Durably committed position for one (pipeline, table)."""

    pipeline_id: str
    destination_table: str
    committed_position: ReplicationPosition
    committed_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeadLetter:
    """
    A change the pipeline could not deliver, kept for operators.

    ``payload`` is the raw replication message for decode failures, or the
    JSON of the undeliverable events otherwise.
    """

    pipeline_id: str
    error_type: str
    error_message: str
    payload: str
    source_table: Optional[str] = None
    destination_table: Optional[str] = None
    position: Optional[ReplicationPosition] = None
    attempts: int = 0
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    id: Optional[int] = None
