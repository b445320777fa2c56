"""Change stream interface consumed by the pipeline supervisor."""

from abc import ABC, abstractmethod
from typing import Optional

from lakehouse_cdc.cdc.models import ChangeEvent, ReplicationPosition


class ChangeStream(ABC):
    """
    Ordered source of ChangeEvents.

    Events are returned in commit order. ``acknowledge`` tells the source
    that everything up to and including the given position is durable
    downstream and may be released.
    """

    @abstractmethod
    def open(self, start_position: Optional[ReplicationPosition] = None) -> "ChangeStream":
        """Start streaming at ``start_position`` (or the slot's confirmed position)."""

    @abstractmethod
    def next(self, timeout: float) -> Optional[ChangeEvent]:
        """
        Return the next event, or None if nothing arrived within ``timeout``.

        Raises:
            EndOfStream: If the source has no more events
            TransientIOError: On a connection failure
            DecodeError: On an undecodable payload
        """

    @abstractmethod
    def acknowledge(self, position: ReplicationPosition) -> None:
        """Release source resources up to ``position``."""

    @property
    def at_transaction_boundary(self) -> bool:
        """
        True when the last returned event was the final change of its source
        transaction. Streams that cannot tell report False, which keeps
        acknowledgements one transaction behind.
        """
        return False

    @property
    def current_position(self) -> Optional[ReplicationPosition]:
        """Last position observed on the wire."""
        return None

    def lag_bytes(self) -> Optional[int]:
        """Distance between the source head and the acknowledged position, if known."""
        return None

    def close(self) -> None:
        """Stop streaming and release the connection."""
