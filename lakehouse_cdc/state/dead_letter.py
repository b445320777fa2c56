"""Dead-letter queue for changes that made a pipeline fail."""

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from lakehouse_cdc.cdc.models import ChangeEvent, DeadLetter, TableBatch
from lakehouse_cdc.common.errors import DecodeError
from lakehouse_cdc.observability.logging_config import get_logger
from lakehouse_cdc.state.checkpoint import StateStore

logger = get_logger(__name__)


def event_to_dict(event: ChangeEvent) -> Dict[str, Any]:
    """JSON-ready view of a change event."""
    return {
        "source_table": event.source_table,
        "operation": event.operation.value,
        "position": str(event.position),
        "transaction_id": event.transaction_id,
        "before": dict(event.before) if event.before is not None else None,
        "after": dict(event.after) if event.after is not None else None,
        "commit_time": event.commit_time.isoformat() if event.commit_time else None,
        "key_columns": list(event.key_columns),
        "column_types": dict(event.column_types),
    }


class DeadLetterQueue:
    """
    Keeps what a pipeline could not deliver so operators can inspect it.

    Entries expire after the retention period. Recording an entry does not
    change the pipeline outcome: it still fails.
    """

    def __init__(
        self,
        store: StateStore,
        retention: timedelta = timedelta(hours=168),
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        """
        Initialize queue.

        Args:
            store: State store holding the entries
            retention: How long an entry is listed before it expires
            now: Wall clock returning aware datetimes
        """
        self.store = store
        self.retention = retention
        self._now = now

    def record(
        self,
        pipeline_id: str,
        error: Exception,
        batch: Optional[TableBatch] = None,
        events: Sequence[ChangeEvent] = (),
        attempts: int = 0,
    ) -> Optional[DeadLetter]:
        """
        Store the payload behind a failure.

        Args:
            pipeline_id: Pipeline that failed
            error: The error that failed it
            batch: Batch being written when it failed
            events: Events being handled when no batch exists yet
            attempts: Attempts made before giving up

        Returns:
            The stored entry, or None when the failure carries no payload
        """
        if batch is not None:
            events = batch.events
        if events:
            payload = json.dumps([event_to_dict(e) for e in events], default=str)
        elif isinstance(error, DecodeError) and error.payload is not None:
            payload = error.payload
        else:
            return None

        created_at = self._now()
        first = events[0] if events else None
        letter = DeadLetter(
            pipeline_id=pipeline_id,
            error_type=type(error).__name__,
            error_message=str(error),
            payload=payload,
            source_table=first.source_table if first else None,
            destination_table=batch.destination_table if batch is not None else None,
            position=first.position if first else None,
            attempts=attempts,
            created_at=created_at,
            expires_at=created_at + self.retention,
        )
        letter_id = self.store.save_dead_letter(letter)
        logger.warning(
            f"Recorded dead letter {letter_id} ({letter.error_type})",
            extra={"pipeline": pipeline_id, "table": letter.destination_table},
        )
        return replace(letter, id=letter_id)

    def entries(self, pipeline_id: str, include_expired: bool = False, limit: int = 100) -> List[DeadLetter]:
        """Entries of a pipeline, newest first."""
        return self.store.load_dead_letters(pipeline_id, self._now(), include_expired=include_expired, limit=limit)

    def purge_expired(self) -> int:
        """Delete expired entries; returns how many were removed."""
        removed = self.store.purge_expired_dead_letters(self._now())
        if removed:
            logger.info(f"Purged {removed} expired dead letters")
        return removed
