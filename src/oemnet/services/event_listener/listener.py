"""Event listener service for chaincode events."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine

from oemnet.infrastructure.fabric.errors import EventHubError
from oemnet.infrastructure.fabric.events import BlockEvent, ChaincodeEvent, EventHub
from oemnet.services.event_listener.checkpoint import CheckpointManager
from oemnet.services.event_listener.deduplicator import EventDeduplicator

logger = logging.getLogger(__name__)


class ListenerState(str, Enum):
    """Event listener state."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass
class ListenerConfig:
    """Configuration for event listener."""

    chaincode_id: str

    # Event names to dispatch (None = all events of the chaincode)
    event_names: list[str] | None = None

    # Dispatch events of transactions that failed validation
    include_invalid: bool = False

    # Auto-reconnect when the stream fails or closes
    auto_reconnect: bool = True

    # Reconnect delay (seconds), multiplied by the attempt number
    reconnect_delay: float = 5.0

    max_reconnect_attempts: int = 10

    # Start block when there is no checkpoint (None = newest)
    start_block: int | None = None

    # Subscription queue bound (0 = unbounded)
    queue_size: int = 0


@dataclass
class ListenerStats:
    """Statistics for event listener."""

    state: ListenerState = ListenerState.STOPPED
    current_block: int | None = None
    blocks_processed: int = 0
    events_processed: int = 0
    events_skipped: int = 0
    reconnects: int = 0
    errors: int = 0
    last_error: str = ""
    last_event_time: datetime | None = None
    started_at: datetime | None = None
    uptime_seconds: float = 0.0
    events_by_name: dict[str, int] = field(default_factory=dict)


EventHandler = Callable[[ChaincodeEvent], Coroutine[Any, Any, None]]

ALL_EVENTS = "*"


class EventListener:
    """Chaincode event listener with checkpoint-based resumption.

    Features:
    - Resumes from the block after the checkpoint on restart
    - Event deduplication (tx_id + event name + index)
    - Automatic reconnection with linear backoff
    - Per-event-name handlers
    """

    def __init__(
        self,
        hub: EventHub,
        config: ListenerConfig,
        checkpoint_manager: CheckpointManager | None = None,
        deduplicator: EventDeduplicator | None = None,
    ):
        """Initialize event listener.

        Args:
            hub: Event hub of the peer to listen on
            config: Listener configuration
            checkpoint_manager: Optional checkpoint manager
            deduplicator: Optional event deduplicator
        """
        self.hub = hub
        self.config = config
        self.checkpoint_manager = checkpoint_manager or CheckpointManager()
        self.deduplicator = deduplicator or EventDeduplicator()

        self._state = ListenerState.STOPPED
        self._stats = ListenerStats()
        self._handlers: dict[str, list[EventHandler]] = {}
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def stats(self) -> ListenerStats:
        """Get listener statistics."""
        self._stats.state = self._state
        if self._stats.started_at:
            self._stats.uptime_seconds = (
                datetime.now(timezone.utc) - self._stats.started_at
            ).total_seconds()
        return self._stats

    def add_handler(self, handler: EventHandler, event_name: str = ALL_EVENTS) -> None:
        """Add event handler.

        Args:
            handler: Async function called with each ChaincodeEvent
            event_name: Event name to handle, ``"*"`` for every event
        """
        self._handlers.setdefault(event_name, []).append(handler)

    def remove_handler(self, handler: EventHandler, event_name: str = ALL_EVENTS) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    async def start(self) -> None:
        """Start the event listener."""
        if self._state in (ListenerState.RUNNING, ListenerState.STARTING):
            logger.warning("Event listener is already running")
            return

        self._state = ListenerState.STARTING
        self._stop_event.clear()
        self._stats.started_at = datetime.now(timezone.utc)

        checkpoint = await self.checkpoint_manager.load()
        self._stats.current_block = checkpoint.last_block

        start = checkpoint.next_block
        if start is None:
            start = self.config.start_block
        logger.info(
            f"Starting event listener on {self.hub.peer_name} "
            f"from block {start if start is not None else 'newest'}"
        )

        self._task = asyncio.create_task(self._listen_loop())

    async def stop(self) -> None:
        """Stop the event listener."""
        if self._state == ListenerState.STOPPED and self._task is None:
            return

        logger.info("Stopping event listener...")
        self._stop_event.set()

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        # ERROR stays visible after the loop gave up
        if self._state != ListenerState.ERROR:
            self._state = ListenerState.STOPPED
        logger.info("Event listener stopped")

    async def wait(self) -> None:
        """Wait until the listener loop ends (stopped or out of reconnects)."""
        if self._task:
            await asyncio.shield(self._task)

    def _next_block(self) -> int | None:
        if self._stats.current_block is not None:
            return self._stats.current_block + 1
        return self.config.start_block

    async def _listen_loop(self) -> None:
        """Main loop: stream blocks, reconnecting on failure."""
        reconnect_attempts = 0

        while not self._stop_event.is_set():
            subscription = self.hub.subscribe(block=True, maxsize=self.config.queue_size)
            try:
                await self.hub.connect(start_block=self._next_block())
                self._state = ListenerState.RUNNING
                async for block in subscription:
                    await self._process_block(block)
                    reconnect_attempts = 0
                error = "Event stream closed"
            except EventHubError as e:
                error = str(e)
            finally:
                subscription.cancel()

            if self._stop_event.is_set():
                break

            self._stats.errors += 1
            self._stats.last_error = error
            logger.error(f"Event listener error: {error}")

            if not self.config.auto_reconnect:
                self._state = ListenerState.ERROR
                break

            reconnect_attempts += 1
            if reconnect_attempts > self.config.max_reconnect_attempts:
                logger.error("Max reconnect attempts reached, stopping")
                self._state = ListenerState.ERROR
                break

            self._state = ListenerState.RECONNECTING
            self._stats.reconnects += 1
            delay = self.config.reconnect_delay * reconnect_attempts
            logger.info(f"Reconnecting in {delay}s (attempt {reconnect_attempts})")
            await asyncio.sleep(delay)

    async def _process_block(self, block: BlockEvent) -> None:
        """Dispatch a block's chaincode events and checkpoint it."""
        last_tx_id = ""
        for tx in block.transactions:
            last_tx_id = tx.tx_id
            for index, event in enumerate(tx.chaincode_events):
                if self._wants(event):
                    await self._process_event(event, index)

        self._stats.current_block = block.number
        self._stats.blocks_processed += 1
        await self.checkpoint_manager.update_block(block.number, last_tx_id)

    def _wants(self, event: ChaincodeEvent) -> bool:
        if event.chaincode_id != self.config.chaincode_id:
            return False
        if self.config.event_names is not None and event.event_name not in self.config.event_names:
            return False
        return self.config.include_invalid or event.tx_status == "VALID"

    async def _process_event(self, event: ChaincodeEvent, index: int) -> None:
        """Process a single event.

        Args:
            event: Chaincode event
            index: Position of the event within its transaction
        """
        if not self.deduplicator.check_and_mark(event.tx_id, event.event_name, index):
            self._stats.events_skipped += 1
            return

        handlers = self._handlers.get(event.event_name, []) + self._handlers.get(ALL_EVENTS, [])
        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Event handler error for {event.event_name}: {e}")
                self._stats.errors += 1

        self._stats.events_processed += 1
        self._stats.events_by_name[event.event_name] = (
            self._stats.events_by_name.get(event.event_name, 0) + 1
        )
        self._stats.last_event_time = datetime.now(timezone.utc)

    def get_status(self) -> dict[str, Any]:
        """Get listener status.

        Returns:
            Status dictionary
        """
        stats = self.stats
        return {
            "state": stats.state.value,
            "peer": self.hub.peer_name,
            "channel": self.hub.channel_name,
            "current_block": stats.current_block,
            "blocks_processed": stats.blocks_processed,
            "events_processed": stats.events_processed,
            "events_skipped": stats.events_skipped,
            "events_by_name": dict(stats.events_by_name),
            "reconnects": stats.reconnects,
            "errors": stats.errors,
            "last_error": stats.last_error,
            "uptime_seconds": stats.uptime_seconds,
        }
