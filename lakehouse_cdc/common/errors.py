"""Error taxonomy for the CDC worker.

Stages classify library failures into these types and propagate them; the
pipeline supervisor is the only place that decides between retrying and
failing the pipeline.
"""

from typing import Optional


class CDCError(Exception):
    """Base class for all worker errors."""

    retryable = False

    def __init__(self, message: str, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class TransientIOError(CDCError):
    """Network or storage blip; retried with exponential backoff."""

    retryable = True


class CommitConflict(CDCError):
    """Optimistic concurrency lost against the catalog."""

    retryable = True

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        expected_snapshot_id: Optional[int] = None,
        actual_snapshot_id: Optional[int] = None,
    ) -> None:
        super().__init__(message, stage="writer")
        self.table = table
        self.expected_snapshot_id = expected_snapshot_id
        self.actual_snapshot_id = actual_snapshot_id


class SchemaError(CDCError):
    """A source schema change that cannot be applied to the destination."""

    def __init__(self, message: str, table: Optional[str] = None) -> None:
        super().__init__(message, stage="schema")
        self.table = table


class DecodeError(CDCError):
    """A replication payload that could not be decoded."""

    def __init__(self, message: str, payload: Optional[str] = None) -> None:
        super().__init__(message, stage="reader")
        self.payload = payload


class SourceNotReady(CDCError):
    """The source database is not configured for logical decoding."""


class CapacityExceeded(CDCError):
    """Buffer full. A backpressure signal, not a failure."""

    retryable = True


class EndOfStream(CDCError):
    """The change stream has no more events."""


class ObjectExistsError(CDCError):
    """A write-once object path was already taken."""


class InvalidTransition(CDCError):
    """Pipeline state transition not allowed from the current state."""


class PipelineNotFound(CDCError):
    """No pipeline registered under the given id."""


class PipelineExists(CDCError):
    """A pipeline with the given id is already registered."""


def is_retryable(error: BaseException) -> bool:
    """Return True if the supervisor should back off and retry."""
    return isinstance(error, CDCError) and error.retryable


def describe(error: BaseException) -> str:
    """Render an error for operators, keeping the original message verbatim."""
    return f"{type(error).__name__}: {error}"
