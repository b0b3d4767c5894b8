"""
Sync worker for livegraph.

The SyncWorker connects the transaction layer to a SyncTransport:
- drains the outbound queue of submitted transactions
- consumes inbound events and dispatches them to the layer
- reconnects with exponential backoff, resending every still-pending
  transaction after each (re)connect

Invariants:
    - Transactions are sent in submission order
    - A send failure never changes local data; the transaction stays PENDING
      and is retried
    - Inbound events are dispatched in arrival order
    - A failed event is logged and does not block later events

How to change safely:
    - Keep submit() free of awaits; the worker is the only network path
    - Test reconnect paths with InMemorySyncTransport failure injection
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Deque, Optional

from ..config import StoreSettings
from ..errors import LiveGraphError, TransportError
from ..txn.operations import Transaction
from .base import GraphDelta, InboundEvent, SyncTransport, TxConfirmed, TxRejected

if TYPE_CHECKING:
    from ..txn.layer import TransactionLayer

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    """Counters for the sync worker."""

    connects: int = 0
    connect_failures: int = 0
    sent: int = 0
    send_failures: int = 0
    confirmed: int = 0
    rejected: int = 0
    deltas: int = 0
    event_errors: int = 0


class SyncWorker:
    """Moves transactions and events between the layer and a transport.

    Thread safety:
        Runs as asyncio tasks on one event loop. enqueue() may be called from
        any thread.

    Example:
        >>> worker = SyncWorker(transport, layer, settings)
        >>> await worker.start()
        >>> ...
        >>> await worker.stop()
    """

    def __init__(
        self,
        transport: SyncTransport,
        layer: TransactionLayer,
        settings: Optional[StoreSettings] = None,
    ) -> None:
        """Initialize the worker and register it as the layer's outbound sink.

        Args:
            transport: Channel to the remote authority
            layer: Transaction layer to feed
            settings: Reconnect backoff settings
        """
        settings = settings or StoreSettings()
        self.transport = transport
        self.layer = layer
        self.initial_delay = settings.reconnect_initial_delay
        self.max_delay = settings.reconnect_max_delay
        self.stats = SyncStats()

        self._outbox: Deque[str] = deque()
        self._wakeup: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False

        layer.set_outbound(self.enqueue)

    @property
    def running(self) -> bool:
        return self._running

    def enqueue(self, transaction: Transaction) -> None:
        """Queue a submitted transaction for sending."""
        self._outbox.append(transaction.tx_id)
        self._signal()

    def _signal(self) -> None:
        if self._loop is None or self._wakeup is None:
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is self._loop:
            self._wakeup.set()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wakeup.set)

    async def start(self) -> None:
        """Start the connect/send/receive loop as a background task."""
        if self._running:
            logger.warning("Sync worker already running")
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._running = True
        self._task = asyncio.create_task(self._run(), name="livegraph-sync")
        logger.info("Starting sync worker", extra={"pending": len(self.layer.pending())})

    async def stop(self) -> None:
        """Stop the worker and close the transport."""
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.transport.close()
        self._loop = None
        self._wakeup = None
        logger.info("Stopped sync worker")

    async def _run(self) -> None:
        delay = self.initial_delay
        try:
            while self._running:
                try:
                    await self.transport.connect()
                except TransportError as e:
                    self.stats.connect_failures += 1
                    logger.warning(f"Sync connect failed: {e.message}. Retrying in {delay}s")
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self.max_delay)
                    continue

                self.stats.connects += 1
                delay = self.initial_delay
                self._resend_pending()
                logger.info("Sync transport connected", extra={"outbox": len(self._outbox)})

                await self._session()

                if self._running:
                    logger.warning(f"Sync transport disconnected. Reconnecting in {delay}s")
                    await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.info("Sync worker cancelled")
        except Exception as e:
            logger.error(f"Sync worker error: {e}", exc_info=True)
            raise

    def _resend_pending(self) -> None:
        # Everything still pending goes out again, in submission order.
        self._outbox = deque(pending.tx_id for pending in self.layer.pending())

    async def _session(self) -> None:
        tasks = [
            asyncio.create_task(self._send_loop(), name="livegraph-sync-send"),
            asyncio.create_task(self._receive_loop(), name="livegraph-sync-receive"),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if task.cancelled():
                continue
            error = task.exception()
            if isinstance(error, TransportError):
                logger.warning(f"Sync session ended: {error.message}")
            elif error is not None:
                raise error

    async def _send_loop(self) -> None:
        delay = self.initial_delay
        while True:
            if not self._outbox:
                self._wakeup.clear()
                if not self._outbox:
                    await self._wakeup.wait()
                continue

            tx_id = self._outbox[0]
            pending = self.layer.get(tx_id)
            if pending is None or pending.done:
                self._outbox.popleft()
                continue

            try:
                await self.transport.send(pending.transaction)
            except TransportError as e:
                self.stats.send_failures += 1
                logger.warning(
                    f"Send failed: {e.message}. Retrying in {delay}s",
                    extra={"tx_id": tx_id},
                )
                if not self.transport.is_connected:
                    return
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_delay)
                continue

            self._outbox.popleft()
            self.stats.sent += 1
            delay = self.initial_delay

    async def _receive_loop(self) -> None:
        async for event in self.transport.events():
            self.dispatch(event)

    def dispatch(self, event: InboundEvent) -> None:
        """Apply one inbound event to the layer."""
        try:
            if isinstance(event, TxConfirmed):
                self.stats.confirmed += 1
                self.layer.confirm(event.tx_id)
            elif isinstance(event, TxRejected):
                self.stats.rejected += 1
                self.layer.reject(event.tx_id, event.reason)
            elif isinstance(event, GraphDelta):
                self.stats.deltas += 1
                self.layer.apply_remote_delta(event)
            else:
                logger.warning(f"Ignoring unknown inbound event: {event!r}")
        except LiveGraphError as e:
            self.stats.event_errors += 1
            logger.error(
                f"Failed to apply inbound event: {e.message}",
                extra={"event": type(event).__name__, "code": e.code},
            )
