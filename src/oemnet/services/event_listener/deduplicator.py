"""Event deduplication for replayed blocks."""

import hashlib
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


class EventDeduplicator:
    """Deduplicates chaincode events using tx_id + event name + index.

    Bounded in-memory LRU; entries older than the window may be
    re-dispatched after a long replay.
    """

    def __init__(self, max_memory_size: int = 10000):
        """Initialize event deduplicator.

        Args:
            max_memory_size: Max entries kept in memory
        """
        self.max_memory_size = max_memory_size
        self._seen: OrderedDict[str, datetime] = OrderedDict()

    def _generate_event_id(self, tx_id: str, event_name: str, index: int) -> str:
        """Generate unique event ID.

        Args:
            tx_id: Transaction id
            event_name: Chaincode event name
            index: Position of the event within the transaction

        Returns:
            Unique event identifier
        """
        composite = f"{tx_id.lower()}:{event_name}:{index}"
        return hashlib.sha256(composite.encode()).hexdigest()[:32]

    def is_duplicate(self, tx_id: str, event_name: str, index: int) -> bool:
        return self._generate_event_id(tx_id, event_name, index) in self._seen

    def mark_processed(self, tx_id: str, event_name: str, index: int) -> None:
        event_id = self._generate_event_id(tx_id, event_name, index)
        self._add_to_memory(event_id, datetime.now(timezone.utc))

    def check_and_mark(self, tx_id: str, event_name: str, index: int) -> bool:
        """Check if duplicate and mark as processed if not.

        Returns:
            True if event is new (not duplicate), False if duplicate
        """
        if self.is_duplicate(tx_id, event_name, index):
            return False

        self.mark_processed(tx_id, event_name, index)
        return True

    def _add_to_memory(self, event_id: str, timestamp: datetime) -> None:
        while len(self._seen) >= self.max_memory_size:
            self._seen.popitem(last=False)
        self._seen[event_id] = timestamp

    def get_stats(self) -> dict[str, Any]:
        return {
            "memory_size": len(self._seen),
            "max_memory_size": self.max_memory_size,
        }

    def clear(self) -> None:
        self._seen.clear()
