"""Pipeline status and lifecycle state machine."""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional


class PipelineStatus(str, Enum):
    """Lifecycle status of a pipeline."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    FAILED = "failed"


# Allowed transitions; FAILED is left only through an operator reset.
TRANSITIONS: Dict[PipelineStatus, FrozenSet[PipelineStatus]] = {
    PipelineStatus.IDLE: frozenset({PipelineStatus.RUNNING}),
    PipelineStatus.RUNNING: frozenset({PipelineStatus.PAUSED, PipelineStatus.FAILED, PipelineStatus.IDLE}),
    PipelineStatus.PAUSED: frozenset({PipelineStatus.RUNNING, PipelineStatus.FAILED, PipelineStatus.IDLE}),
    PipelineStatus.FAILED: frozenset({PipelineStatus.IDLE}),
}


def can_transition(current: PipelineStatus, target: PipelineStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass(frozen=True)
class PipelineState:
    """Snapshot of a pipeline's observable state."""

    status: PipelineStatus = PipelineStatus.IDLE
    last_error: Optional[str] = None
    lag_bytes: Optional[int] = None
    events_processed: int = 0
    batches_committed: int = 0
    last_commit_at: Optional[datetime] = None

    def evolve(self, **changes) -> "PipelineState":
        return replace(self, **changes)

    def to_dict(self) -> Dict:
        return {
            "status": self.status.value,
            "lag": self.lag_bytes,
            "last_error": self.last_error,
            "events_processed": self.events_processed,
            "batches_committed": self.batches_committed,
            "last_commit_at": self.last_commit_at.isoformat() if self.last_commit_at else None,
        }
