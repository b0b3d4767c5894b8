"""
In-memory sync transport for testing.

InMemorySyncTransport is a loopback remote authority:
- Unit and integration tests
- Local development without a server

Invariants:
    - Sent transactions are recorded in order in `sent`
    - Inbound events are delivered in the order they were queued
    - Events queued while disconnected are delivered after the next connect

How to change safely:
    - This is test-only code, changes don't affect the store
    - Keep the interface compatible with the SyncTransport protocol
    - Add helpers for new testing scenarios rather than special cases
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Iterable, List, Optional

from ..errors import TransportError
from ..txn.operations import Operation, Transaction, now_ms
from .base import GraphDelta, InboundEvent, TxConfirmed, TxRejected

logger = logging.getLogger(__name__)

_CLOSED = object()


class InMemorySyncTransport:
    """In-memory implementation of SyncTransport for testing.

    Attributes:
        auto_confirm: Confirm every transaction as soon as it is sent
        sent: Transactions handed to the transport, in order

    Example:
        >>> transport = InMemorySyncTransport(auto_confirm=True)
        >>> async with LiveStore(registry, transport=transport) as store:
        ...     pending = store.submit([Create("technicians", "t1", {"firstName": "Amy"})])
        ...     await pending.wait(timeout=1.0)
    """

    def __init__(self, *, auto_confirm: bool = False, fail_connect: int = 0) -> None:
        """Initialize the transport.

        Args:
            auto_confirm: Confirm every sent transaction
            fail_connect: Number of connect() attempts that fail first
        """
        self.auto_confirm = auto_confirm
        self.sent: List[Transaction] = []
        self.connect_attempts = 0
        self._fail_connect = fail_connect
        self._fail_sends = 0
        self._connected = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.connect_attempts += 1
        if self._fail_connect > 0:
            self._fail_connect -= 1
            raise TransportError("Injected connect failure")
        # Drop close markers left over from a previous connection
        stale = []
        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if item is not _CLOSED:
                stale.append(item)
        for item in stale:
            self._inbox.put_nowait(item)
        self._connected = True
        logger.debug("InMemorySyncTransport connected")

    async def close(self) -> None:
        if self._connected:
            self._connected = False
            self._inbox.put_nowait(_CLOSED)
        logger.debug("InMemorySyncTransport closed")

    async def send(self, transaction: Transaction) -> None:
        if not self._connected:
            raise TransportError("Not connected", tx_id=transaction.tx_id)
        if self._fail_sends > 0:
            self._fail_sends -= 1
            raise TransportError("Injected send failure", tx_id=transaction.tx_id)

        self.sent.append(transaction)
        logger.debug(
            "Transaction sent to in-memory authority",
            extra={"tx_id": transaction.tx_id, "ops": len(transaction.operations)},
        )
        if self.auto_confirm:
            self._inbox.put_nowait(TxConfirmed(transaction.tx_id))

    async def events(self) -> AsyncIterator[InboundEvent]:
        if not self._connected:
            raise TransportError("Not connected")
        while True:
            item = await self._inbox.get()
            if item is _CLOSED:
                return
            yield item

    # Testing helpers

    def confirm(self, tx_id: str) -> None:
        """Queue a confirmation for a transaction."""
        self._inbox.put_nowait(TxConfirmed(tx_id))

    def reject(self, tx_id: str, reason: str = "rejected") -> None:
        """Queue a rejection for a transaction."""
        self._inbox.put_nowait(TxRejected(tx_id, reason))

    def push_delta(
        self,
        operations: Iterable[Operation],
        *,
        ts_ms: Optional[int] = None,
        origin: str = "remote",
    ) -> GraphDelta:
        """Queue changes made by another client."""
        delta = GraphDelta(tuple(operations), ts_ms if ts_ms is not None else now_ms(), origin)
        self._inbox.put_nowait(delta)
        return delta

    def fail_next_send(self, count: int = 1) -> None:
        """Make the next `count` send() calls raise TransportError."""
        self._fail_sends += count

    async def drop_connection(self) -> None:
        """Simulate the remote side dropping the channel."""
        await self.close()

    def sent_ids(self) -> List[str]:
        return [tx.tx_id for tx in self.sent]

    async def wait_for_sent(self, count: int, timeout: float = 5.0) -> bool:
        """Wait until at least `count` transactions were sent.

        Returns:
            True if count reached, False if timeout
        """
        start = time.time()
        while time.time() - start < timeout:
            if len(self.sent) >= count:
                return True
            await asyncio.sleep(0.01)
        return False
