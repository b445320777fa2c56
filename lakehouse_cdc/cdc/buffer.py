"""Per-table ordered event buffer with bounded capacity."""

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

from lakehouse_cdc.cdc.models import ChangeEvent, ReplicationPosition
from lakehouse_cdc.common.errors import CapacityExceeded
from lakehouse_cdc.observability.logging_config import get_logger

logger = get_logger(__name__)


class _TableQueue:
    def __init__(self) -> None:
        self.queued: Deque[Tuple[ChangeEvent, float]] = deque()
        self.in_flight: List[ChangeEvent] = []
        self.last_position: Optional[ReplicationPosition] = None


class EventBuffer:
    """
    Ordered queues of change events, one per destination table.

    Capacity counts queued events only; draining frees it at once. Drained
    events stay in the table's in-flight list until ``acknowledge`` so they
    can be redelivered with ``requeue``.
    """

    def __init__(
        self,
        table_capacity: int,
        total_capacity: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize buffer.

        Args:
            table_capacity: Maximum queued events per table
            total_capacity: Maximum queued events across all tables
            clock: Clock used to timestamp enqueues
        """
        if table_capacity <= 0:
            raise ValueError("table_capacity must be positive")
        if total_capacity is not None and total_capacity <= 0:
            raise ValueError("total_capacity must be positive")

        self.table_capacity = table_capacity
        self.total_capacity = total_capacity
        self._clock = clock
        self._tables: Dict[str, _TableQueue] = {}
        self._total = 0
        self._cond = threading.Condition()
        self._closed = False

    def _queue(self, table: str) -> _TableQueue:
        queue = self._tables.get(table)
        if queue is None:
            queue = self._tables[table] = _TableQueue()
        return queue

    def _has_room(self, queue: _TableQueue) -> bool:
        if len(queue.queued) >= self.table_capacity:
            return False
        return self.total_capacity is None or self._total < self.total_capacity

    def _append(self, table: str, queue: _TableQueue, event: ChangeEvent) -> None:
        if queue.last_position is not None and event.position <= queue.last_position:
            raise ValueError(
                f"Out-of-order enqueue for {table}: {event.position} after {queue.last_position}"
            )
        queue.queued.append((event, self._clock()))
        queue.last_position = event.position
        self._total += 1
        self._cond.notify_all()

    def put(self, table: str, event: ChangeEvent, timeout: Optional[float] = None) -> bool:
        """
        Enqueue an event, waiting for capacity.

        Args:
            table: Destination table
            event: Event to enqueue; positions must increase per table
            timeout: Seconds to wait for capacity (None waits indefinitely)

        Returns:
            True if enqueued, False if still full after ``timeout``

        Raises:
            ValueError: If the event is not after the last enqueued position
        """
        with self._cond:
            queue = self._queue(table)
            if not self._cond.wait_for(lambda: self._closed or self._has_room(queue), timeout):
                return False
            if self._closed:
                return False
            self._append(table, queue, event)
            return True

    def put_nowait(self, table: str, event: ChangeEvent) -> None:
        """
        Enqueue without waiting.

        Raises:
            CapacityExceeded: If the table or the buffer is full
        """
        with self._cond:
            queue = self._queue(table)
            if not self._has_room(queue):
                raise CapacityExceeded(f"Buffer full for {table}", stage="buffer")
            self._append(table, queue, event)

    def drain(
        self,
        table: str,
        max_count: int,
        max_bytes: Optional[int] = None,
        stop_before_ddl: bool = False,
    ) -> List[ChangeEvent]:
        """
        Remove the oldest contiguous run of events for a table.

        At least one event is returned whenever the queue is not empty, even
        if it alone exceeds ``max_bytes``.

        Args:
            table: Destination table
            max_count: Maximum number of events
            max_bytes: Maximum summed ``size_bytes``
            stop_before_ddl: Stop before a DDL event that is not first in the run

        Returns:
            Drained events in enqueue order
        """
        with self._cond:
            queue = self._tables.get(table)
            if queue is None:
                return []

            drained: List[ChangeEvent] = []
            total_bytes = 0
            while queue.queued and len(drained) < max_count:
                event = queue.queued[0][0]
                if drained and stop_before_ddl and event.is_ddl:
                    break
                if drained and max_bytes is not None and total_bytes + event.size_bytes > max_bytes:
                    break
                queue.queued.popleft()
                drained.append(event)
                total_bytes += event.size_bytes

            if drained:
                queue.in_flight.extend(drained)
                self._total -= len(drained)
                self._cond.notify_all()
            return drained

    def acknowledge(self, table: str, position: ReplicationPosition) -> int:
        """
        Forget in-flight events at or below ``position``.

        Returns:
            Number of events released
        """
        with self._cond:
            queue = self._tables.get(table)
            if queue is None:
                return 0
            kept = [e for e in queue.in_flight if e.position > position]
            released = len(queue.in_flight) - len(kept)
            queue.in_flight = kept
            return released

    def requeue(self, table: str) -> int:
        """
        Put the in-flight run back at the head of the queue.

        Requeued events may temporarily exceed capacity.

        Returns:
            Number of events requeued
        """
        with self._cond:
            queue = self._tables.get(table)
            if queue is None or not queue.in_flight:
                return 0
            now = self._clock()
            count = len(queue.in_flight)
            queue.queued.extendleft((event, now) for event in reversed(queue.in_flight))
            queue.in_flight = []
            self._total += count
            self._cond.notify_all()
            logger.debug(f"Requeued {count} events for {table}")
            return count

    def peek(self, table: str) -> Optional[ChangeEvent]:
        """Oldest queued event of a table, without removing it."""
        with self._cond:
            queue = self._tables.get(table)
            return queue.queued[0][0] if queue and queue.queued else None

    def oldest_enqueued_at(self, table: str) -> Optional[float]:
        """Clock reading at which the oldest queued event was enqueued."""
        with self._cond:
            queue = self._tables.get(table)
            return queue.queued[0][1] if queue and queue.queued else None

    def oldest_pending(self, table: Optional[str] = None) -> Optional[ReplicationPosition]:
        """
        Lowest position not yet acknowledged (queued or in flight).

        Args:
            table: Restrict to one table; all tables when omitted
        """
        with self._cond:
            names = [table] if table is not None else list(self._tables)
            oldest: Optional[ReplicationPosition] = None
            for name in names:
                queue = self._tables.get(name)
                if queue is None:
                    continue
                candidates = []
                if queue.in_flight:
                    candidates.append(queue.in_flight[0].position)
                if queue.queued:
                    candidates.append(queue.queued[0][0].position)
                for position in candidates:
                    if oldest is None or position < oldest:
                        oldest = position
            return oldest

    def last_position(self, table: str) -> Optional[ReplicationPosition]:
        """Highest position ever enqueued for a table."""
        with self._cond:
            queue = self._tables.get(table)
            return queue.last_position if queue else None

    def depth(self, table: Optional[str] = None) -> int:
        """Queued (not in-flight) events for one table or overall."""
        with self._cond:
            if table is None:
                return self._total
            queue = self._tables.get(table)
            return len(queue.queued) if queue else 0

    def in_flight(self, table: str) -> int:
        with self._cond:
            queue = self._tables.get(table)
            return len(queue.in_flight) if queue else 0

    def tables(self) -> List[str]:
        with self._cond:
            return list(self._tables)

    def is_empty(self) -> bool:
        """True when nothing is queued or in flight."""
        with self._cond:
            return all(not q.queued and not q.in_flight for q in self._tables.values())

    def wait_for_data(self, timeout: float) -> bool:
        """Block until some table has queued events or ``timeout`` elapses."""
        with self._cond:
            return self._cond.wait_for(lambda: self._closed or self._total > 0, timeout)

    def wake_all(self) -> None:
        """Release every waiting producer and consumer (used on stop)."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        with self._cond:
            self._closed = False

    def clear(self) -> None:
        """Drop all queued and in-flight events."""
        with self._cond:
            self._tables.clear()
            self._total = 0
            self._cond.notify_all()
