"""Event listener service module."""

from oemnet.services.event_listener.checkpoint import (
    Checkpoint,
    CheckpointManager,
)
from oemnet.services.event_listener.deduplicator import (
    EventDeduplicator,
)
from oemnet.services.event_listener.listener import (
    EventHandler,
    EventListener,
    ListenerConfig,
    ListenerState,
    ListenerStats,
)

__all__ = [
    # Checkpoint
    "Checkpoint",
    "CheckpointManager",
    # Deduplicator
    "EventDeduplicator",
    # Listener
    "EventListener",
    "EventHandler",
    "ListenerConfig",
    "ListenerState",
    "ListenerStats",
]
