"""Block and chaincode event delivery from a peer's event source."""

import asyncio
import inspect
import itertools
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from oemnet.infrastructure.fabric.errors import EventHubDisconnectedError, EventHubError
from oemnet.infrastructure.fabric.profile import NodeConfig
from oemnet.infrastructure.fabric.transaction import b64decode, canonical_json
from oemnet.infrastructure.fabric.transport import DeliverRequest, PeerTransport

if TYPE_CHECKING:
    from oemnet.infrastructure.fabric.wallet import Identity

logger = logging.getLogger(__name__)

VALID = "VALID"


# =============================================================================
# Event records
# =============================================================================


@dataclass(frozen=True)
class ChaincodeEvent:
    """Event emitted by chaincode during a transaction."""

    chaincode_id: str
    event_name: str
    payload: bytes
    tx_id: str
    block_number: int
    tx_status: str = VALID

    def json(self) -> Any:
        """Decode the payload as JSON."""
        return json.loads(self.payload)


@dataclass(frozen=True)
class TxEvent:
    """Commit status of one transaction."""

    tx_id: str
    status: str
    block_number: int

    @property
    def valid(self) -> bool:
        return self.status == VALID


@dataclass(frozen=True)
class FilteredTransaction:
    tx_id: str
    validation_code: str
    chaincode_events: tuple[ChaincodeEvent, ...] = ()


@dataclass(frozen=True)
class BlockEvent:
    """A delivered block with its transactions in block order."""

    number: int
    transactions: tuple[FilteredTransaction, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


class BlockDecoder:
    """Decodes raw delivered blocks into event records."""

    def decode(self, raw: dict[str, Any]) -> BlockEvent:
        """Decode a raw block.

        Raises:
            EventHubError: Block has no number
        """
        if "number" not in raw:
            raise EventHubError(f"Delivered block has no number: {raw!r}")
        number = int(raw["number"])

        transactions = []
        for tx in raw.get("transactions") or []:
            tx_id = tx.get("tx_id", "")
            code = tx.get("validation_code", VALID)
            events = tuple(
                ChaincodeEvent(
                    chaincode_id=ev.get("chaincode_id", ""),
                    event_name=ev.get("event_name", ""),
                    payload=b64decode(ev.get("payload")),
                    tx_id=tx_id,
                    block_number=number,
                    tx_status=code,
                )
                for ev in tx.get("chaincode_events") or []
            )
            transactions.append(
                FilteredTransaction(tx_id=tx_id, validation_code=code, chaincode_events=events)
            )

        return BlockEvent(number=number, transactions=tuple(transactions), raw=raw)


# =============================================================================
# Event hub
# =============================================================================


EventCallback = Callable[[Any], Any]
ErrorCallback = Callable[[Exception], Any]


class RegistrationKind(str, Enum):
    BLOCK = "block"
    CHAINCODE = "chaincode"
    TX = "tx"


@dataclass
class _Registration:
    kind: RegistrationKind
    on_event: EventCallback
    on_error: ErrorCallback | None = None
    chaincode_id: str | None = None
    event_pattern: re.Pattern | None = None
    tx_id: str | None = None


class EventHub:
    """Event source bound to one peer of one channel.

    Registrations only fire once ``connect()`` has been awaited. Events from
    one hub are dispatched in block order; delivery is at-most-once for the
    lifetime of a connection.
    """

    def __init__(
        self,
        channel_name: str,
        peer_name: str,
        node: NodeConfig,
        transport: PeerTransport,
        identity: "Identity | None" = None,
        connect_timeout: float = 30.0,
    ):
        self.channel_name = channel_name
        self.peer_name = peer_name
        self.node = node
        self.transport = transport
        self.identity = identity
        self.connect_timeout = connect_timeout
        self.decoder = BlockDecoder()
        self.last_block_number: int | None = None

        self._registrations: dict[int, _Registration] = {}
        self._ids = itertools.count(1)
        self._task: asyncio.Task | None = None
        self._opened = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- registration ---------------------------------------------------------

    def _register(self, registration: _Registration) -> int:
        handle = next(self._ids)
        self._registrations[handle] = registration
        return handle

    def register_chaincode_event(
        self,
        chaincode_id: str,
        event_name: str,
        on_event: EventCallback,
        on_error: ErrorCallback | None = None,
    ) -> int:
        """Register for chaincode events.

        Args:
            chaincode_id: Chaincode emitting the event
            event_name: Regular expression the full event name must match
            on_event: Called with a ChaincodeEvent (sync or async)
            on_error: Called with the exception if delivery fails

        Returns:
            Handler id for ``unregister_chaincode_event``
        """
        return self._register(
            _Registration(
                kind=RegistrationKind.CHAINCODE,
                on_event=on_event,
                on_error=on_error,
                chaincode_id=chaincode_id,
                event_pattern=re.compile(event_name),
            )
        )

    def register_block_event(
        self, on_event: EventCallback, on_error: ErrorCallback | None = None
    ) -> int:
        """Register for every delivered block. Returns a handler id."""
        return self._register(
            _Registration(kind=RegistrationKind.BLOCK, on_event=on_event, on_error=on_error)
        )

    def register_tx_event(
        self,
        tx_id: str,
        on_event: EventCallback,
        on_error: ErrorCallback | None = None,
    ) -> int:
        """Register for the commit of one transaction.

        The registration is removed after the first matching event.
        """
        return self._register(
            _Registration(
                kind=RegistrationKind.TX, on_event=on_event, on_error=on_error, tx_id=tx_id
            )
        )

    def _unregister(self, handle: int, kind: RegistrationKind) -> bool:
        registration = self._registrations.get(handle)
        if registration is None or registration.kind != kind:
            return False
        del self._registrations[handle]
        return True

    def unregister_chaincode_event(self, handle: int) -> bool:
        return self._unregister(handle, RegistrationKind.CHAINCODE)

    def unregister_block_event(self, handle: int) -> bool:
        return self._unregister(handle, RegistrationKind.BLOCK)

    def unregister_tx_event(self, handle: int) -> bool:
        return self._unregister(handle, RegistrationKind.TX)

    def unregister(self, handle: int) -> bool:
        """Remove a registration of any kind."""
        return self._registrations.pop(handle, None) is not None

    @property
    def registration_count(self) -> int:
        return len(self._registrations)

    def wait_for_transaction(self, tx_id: str) -> asyncio.Future:
        """Future resolved with the TxEvent of ``tx_id``.

        Cancelling the future removes the registration.
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_event(event: TxEvent) -> None:
            if not future.done():
                future.set_result(event)

        def on_error(error: Exception) -> None:
            if not future.done():
                future.set_exception(error)

        handle = self.register_tx_event(tx_id, on_event, on_error)
        future.add_done_callback(lambda _: self.unregister_tx_event(handle))
        return future

    def subscribe(
        self,
        chaincode_id: str | None = None,
        event_name: str | None = None,
        block: bool = False,
        maxsize: int = 0,
    ) -> "EventSubscription":
        """Open a stream of typed event records.

        Either ``block=True`` for BlockEvents, or ``chaincode_id`` and
        ``event_name`` for ChaincodeEvents.
        """
        subscription = EventSubscription(self, maxsize=maxsize)
        if block:
            subscription.handle = self.register_block_event(
                subscription._push, subscription._close
            )
        else:
            if not chaincode_id or not event_name:
                raise ValueError("chaincode_id and event_name are required unless block=True")
            subscription.handle = self.register_chaincode_event(
                chaincode_id, event_name, subscription._push, subscription._close
            )
        return subscription

    # -- connection -----------------------------------------------------------

    def _deliver_request(self, start: int | str, full_block: bool) -> DeliverRequest:
        request = DeliverRequest(channel_id=self.channel_name, start=start, full_block=full_block)
        if self.identity is None:
            return request

        creator = self.identity.serialize()
        signature = self.identity.sign(canonical_json(request.seek_info()) + creator)
        return DeliverRequest(
            channel_id=request.channel_id,
            start=request.start,
            full_block=request.full_block,
            creator=creator,
            signature=signature,
        )

    async def connect(self, full_block: bool = False, start_block: int | None = None) -> None:
        """Start delivery and wait until the peer has accepted the stream.

        Calling it while connected only waits for the open stream. Returns
        early when the stream fails or ``connect_timeout`` elapses; failures
        reach the registrations' error callbacks.

        Args:
            full_block: Request full blocks instead of filtered ones
            start_block: First block to deliver (default: newest)
        """
        if not self.is_connected:
            start: int | str = start_block if start_block is not None else "newest"
            request = self._deliver_request(start, full_block)
            self._opened = asyncio.Event()
            self._task = asyncio.create_task(self._run(request, self._opened.set))
            logger.info(
                f"Event hub connecting to {self.peer_name} on {self.channel_name} (start={start})"
            )
        await self._wait_open(self._task, self._opened)

    async def _wait_open(self, task: asyncio.Task, opened: asyncio.Event) -> None:
        if opened.is_set():
            return
        opened_wait = asyncio.ensure_future(opened.wait())
        try:
            await asyncio.wait(
                {opened_wait, task},
                timeout=self.connect_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            opened_wait.cancel()

        if opened.is_set():
            logger.info(f"Event stream from {self.peer_name} open")
        elif not task.done():
            logger.warning(
                f"Event stream from {self.peer_name} not open after {self.connect_timeout}s"
            )

    async def disconnect(self) -> None:
        """Stop delivery and notify every registration's error callback."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        registrations = list(self._registrations.values())
        self._registrations.clear()
        error = EventHubDisconnectedError(f"Event hub for {self.peer_name} has been shut down")
        for registration in registrations:
            await self._notify_error(registration, error)
        logger.info(f"Event hub for {self.peer_name} disconnected")

    async def _run(self, request: DeliverRequest, on_open: Callable[[], None]) -> None:
        try:
            async for raw in self.transport.deliver(
                self.peer_name, self.node, request, on_open=on_open
            ):
                await self.process_block(self.decoder.decode(raw))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Event delivery from {self.peer_name} failed: {e}")
            error = e if isinstance(e, EventHubError) else EventHubError(str(e))
            await self._fail_all(error)
            return

        logger.info(f"Event stream from {self.peer_name} closed")
        await self._fail_all(
            EventHubDisconnectedError(f"Event stream from {self.peer_name} closed")
        )

    async def _fail_all(self, error: Exception) -> None:
        # Transaction waits cannot complete on a dead stream
        for handle, registration in list(self._registrations.items()):
            if registration.kind == RegistrationKind.TX:
                self._registrations.pop(handle, None)
            await self._notify_error(registration, error)

    # -- dispatch -------------------------------------------------------------

    async def process_block(self, block: BlockEvent) -> None:
        """Dispatch one block to the matching registrations."""
        self.last_block_number = block.number

        for registration in self._matching(RegistrationKind.BLOCK):
            await self._invoke(registration.on_event, block)

        for tx in block.transactions:
            for handle, registration in list(self._registrations.items()):
                if registration.kind == RegistrationKind.TX and registration.tx_id == tx.tx_id:
                    self._registrations.pop(handle, None)
                    await self._invoke(
                        registration.on_event,
                        TxEvent(tx_id=tx.tx_id, status=tx.validation_code, block_number=block.number),
                    )

            for event in tx.chaincode_events:
                for registration in self._matching(RegistrationKind.CHAINCODE):
                    if registration.chaincode_id != event.chaincode_id:
                        continue
                    if not registration.event_pattern.fullmatch(event.event_name):
                        continue
                    await self._invoke(registration.on_event, event)

    def _matching(self, kind: RegistrationKind) -> list[_Registration]:
        return [r for r in self._registrations.values() if r.kind == kind]

    async def _invoke(self, callback: Callable[[Any], Any], arg: Any) -> None:
        try:
            result = callback(arg)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Event callback {getattr(callback, '__name__', callback)} failed: {e}")

    async def _notify_error(self, registration: _Registration, error: Exception) -> None:
        if registration.on_error is not None:
            await self._invoke(registration.on_error, error)


_CLOSED = object()


class EventSubscription:
    """Cancellable async stream of event records from one registration.

    Iteration ends when the subscription is cancelled or the hub's stream
    closes; delivery errors are raised from ``receive`` / the iterator.
    """

    def __init__(self, hub: EventHub, maxsize: int = 0):
        self.hub = hub
        self.handle: int | None = None
        self.maxsize = maxsize
        self._queue: asyncio.Queue = asyncio.Queue()
        self._error: Exception | None = None
        self._closed = False
        self.dropped = 0

    def _push(self, event: Any) -> None:
        if self._closed:
            return
        if self.maxsize and self._queue.qsize() >= self.maxsize:
            self.dropped += 1
            logger.warning(f"Subscription queue full, dropped event ({self.dropped} total)")
            return
        self._queue.put_nowait(event)

    def _close(self, error: Exception | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        if error is not None and not isinstance(error, EventHubDisconnectedError):
            self._error = error
        self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def cancel(self) -> None:
        """Stop the subscription; pending events are still readable."""
        if self.handle is not None:
            self.hub.unregister(self.handle)
        self._close()

    async def receive(self, timeout: float | None = None) -> Any:
        """Wait for the next event record.

        Raises:
            TimeoutError: No event within ``timeout`` seconds
            EventHubDisconnectedError: Subscription is closed
            EventHubError: Delivery failed
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)

        if item is _CLOSED:
            # Keep the sentinel for any other waiter
            self._queue.put_nowait(_CLOSED)
            if self._error is not None:
                raise self._error
            raise EventHubDisconnectedError("Subscription closed")
        return item

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> Any:
        try:
            return await self.receive()
        except EventHubDisconnectedError:
            raise StopAsyncIteration from None

    async def __aenter__(self) -> "EventSubscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.cancel()
