"""
Transaction layer for livegraph.

Applies transactions optimistically and reconciles them with the remote
authority. The layer keeps two pieces of state:

- the confirmed base snapshot (what the authority has accepted)
- the replay log: locally applied transactions in submission order that
  are not yet folded into the base

The optimistic snapshot published to readers is always

    base + replay log (in submission order)

Transaction lifecycle:
    PENDING -> CONFIRMED      (remote acknowledgement)
    PENDING -> ROLLED_BACK    (remote rejection, local cancel, conflict, or an
                               earlier rejected transaction it depended on)

Invariants:
    - submit() validates and applies synchronously; on ValidationError or
      ApplyError nothing is mutated and nothing is logged or sent
    - Rolling back T rebuilds the optimistic state as if T never happened,
      replaying later transactions in their original order
    - A confirmed transaction folds into the base only once every earlier
      transaction is resolved
    - Every mutation of the base, the log and the published snapshot happens
      under one re-entrant lock; readers use the snapshot reference without it

How to change safely:
    - Keep _settle() the only place that publishes rebuilt snapshots
    - Call _notify() after leaving the lock, with what _settle() returned
    - Test new reconciliation paths with three interleaved transactions
"""

from __future__ import annotations

import asyncio
import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Sequence, Union

from ..errors import CacheError, LiveGraphError, RemoteRejection
from ..store.graph import ChangeSet, GraphSnapshot, diff_snapshots
from ..store.local_store import LocalGraphStore, apply_transaction, merge_remote
from .operations import Create, Delete, LinkAdd, LinkRemove, Operation, Transaction, Update, now_ms

if TYPE_CHECKING:
    from ..persist.sqlite_cache import SqliteLocalCache
    from ..subscribe.manager import SubscriptionManager
    from ..sync.base import GraphDelta

logger = logging.getLogger(__name__)


class TxState(str, Enum):
    """State of a locally submitted transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class ConflictPolicy(str, Enum):
    """How remote deltas interact with pending local writes.

    LAST_WRITER_WINS: the delta merges into the base per attribute by
        timestamp; pending local transactions replay on top of it.
    REJECT_ON_CONFLICT: pending local transactions writing an attribute the
        delta writes, or touching an entity the delta deletes, are rolled back.
    """

    LAST_WRITER_WINS = "last_writer_wins"
    REJECT_ON_CONFLICT = "reject_on_conflict"


class PendingTx:
    """Handle for a submitted transaction.

    Example:
        >>> pending = layer.submit([Update("t1", {"phone": "5559999999"})])
        >>> pending.state
        <TxState.PENDING: 'pending'>
        >>> await pending.wait(timeout=5.0)
        <TxState.CONFIRMED: 'confirmed'>
    """

    def __init__(self, transaction: Transaction, layer: TransactionLayer) -> None:
        self.transaction = transaction
        self.state = TxState.PENDING
        self.error: Optional[RemoteRejection] = None
        self._layer = layer
        self._callbacks: list[Callable[[PendingTx], Any]] = []
        self._lock = threading.Lock()

    @property
    def tx_id(self) -> str:
        return self.transaction.tx_id

    @property
    def done(self) -> bool:
        return self.state is not TxState.PENDING

    def add_done_callback(self, fn: Callable[[PendingTx], Any]) -> None:
        """Call fn(self) once the transaction is confirmed or rolled back.

        Called immediately when the transaction is already resolved.
        """
        with self._lock:
            if not self.done:
                self._callbacks.append(fn)
                return
        fn(self)

    async def wait(self, timeout: Optional[float] = None) -> TxState:
        """Wait until the transaction resolves or the timeout elapses.

        Returns the state at return time; a timeout leaves the transaction
        PENDING rather than raising.
        """
        if self.done:
            return self.state

        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()

        def _set() -> None:
            if not future.done():
                future.set_result(None)

        def _wake(_: PendingTx) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(_set)

        self.add_done_callback(_wake)
        try:
            await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            pass
        return self.state

    def cancel(self) -> bool:
        """Roll back locally. Returns False when no longer pending."""
        return self._layer.cancel(self.tx_id)

    def _resolve(self, state: TxState, error: Optional[RemoteRejection] = None) -> bool:
        with self._lock:
            if self.done:
                return False
            self.state = state
            self.error = error
            callbacks, self._callbacks = self._callbacks, []
        for fn in callbacks:
            try:
                fn(self)
            except Exception:
                logger.exception("PendingTx callback raised", extra={"tx_id": self.tx_id})
        return True

    def __repr__(self) -> str:
        return f"PendingTx(tx_id={self.tx_id!r}, state={self.state.value})"


OutboundSink = Callable[[Transaction], None]


class TransactionLayer:
    """Optimistic apply with rollback-and-replay.

    Thread safety:
        All methods that change state take the layer's re-entrant lock.
        Subscription notifications are published after the lock is
        released, so listeners may call back into the layer and other
        threads are not blocked while listeners run.
    """

    def __init__(
        self,
        store: LocalGraphStore,
        subscriptions: Optional[SubscriptionManager] = None,
        *,
        policy: ConflictPolicy = ConflictPolicy.LAST_WRITER_WINS,
        cache: Optional[SqliteLocalCache] = None,
        principal: Optional[str] = None,
    ) -> None:
        """Initialize the layer.

        Args:
            store: Local graph store holding the optimistic snapshot
            subscriptions: Notified after every published change
            policy: Conflict policy for remote deltas
            cache: Durable cache for the base and the pending log
            principal: Default author stamped on submitted transactions
        """
        self.store = store
        self.registry = store.registry
        self.subscriptions = subscriptions
        self.policy = ConflictPolicy(policy)
        self.cache = cache
        self.principal = principal

        self._lock = threading.RLock()
        self._base = store.snapshot
        self._log: list[PendingTx] = []
        self._by_id: dict[str, PendingTx] = {}
        self._cancelled: dict[str, Transaction] = {}
        self._outbound: Optional[OutboundSink] = None
        self._cached_base: Optional[GraphSnapshot] = None

    # Introspection

    @property
    def base(self) -> GraphSnapshot:
        """The confirmed base snapshot."""
        return self._base

    @property
    def snapshot(self) -> GraphSnapshot:
        """The optimistic snapshot (base + replay log)."""
        return self.store.snapshot

    @property
    def log(self) -> tuple[PendingTx, ...]:
        """Unfolded transactions in submission order."""
        with self._lock:
            return tuple(self._log)

    def pending(self) -> list[PendingTx]:
        """Transactions awaiting a remote verdict, in submission order."""
        with self._lock:
            return [ptx for ptx in self._log if ptx.state is TxState.PENDING]

    def overdue(self, timeout_seconds: float, now: Optional[int] = None) -> list[PendingTx]:
        """Pending transactions submitted more than timeout_seconds ago.

        Overdue transactions are only reported; they stay PENDING until the
        remote authority answers or the caller cancels them.
        """
        cutoff = (now if now is not None else now_ms()) - int(timeout_seconds * 1000)
        return [ptx for ptx in self.pending() if ptx.transaction.created_at < cutoff]

    def get(self, tx_id: str) -> Optional[PendingTx]:
        return self._by_id.get(tx_id)

    def set_outbound(self, sink: Optional[OutboundSink]) -> None:
        """Set the callable that hands submitted transactions to the sync worker."""
        self._outbound = sink

    # Local submission

    def submit(
        self,
        operations: Union[Sequence[Operation], Transaction],
        *,
        principal: Optional[str] = None,
    ) -> PendingTx:
        """Validate, apply optimistically, and queue for the remote authority.

        Returns immediately; the remote verdict arrives on the handle.

        Raises:
            ValidationError: An attribute violates its type or uniqueness
            ApplyError: An operation precondition failed
            CacheError: The transaction could not be persisted
            ValueError: The transaction is empty or its id is already pending
        """
        if isinstance(operations, Transaction):
            transaction = operations
        else:
            transaction = Transaction.build(tuple(operations), principal=principal or self.principal)
        if not transaction.operations:
            raise ValueError("A transaction needs at least one operation")

        with self._lock:
            if transaction.tx_id in self._by_id:
                raise ValueError(f"Transaction {transaction.tx_id} is already pending")

            previous = self.store.snapshot
            applied = self.store.apply(transaction)
            if self.cache is not None:
                try:
                    self.cache.append_pending(transaction)
                except CacheError:
                    self.store.reset(previous)
                    raise

            pending = PendingTx(transaction, self)
            self._log.append(pending)
            self._by_id[transaction.tx_id] = pending

            logger.debug(
                "Submitted transaction",
                extra={
                    "tx_id": transaction.tx_id,
                    "ops": len(transaction.operations),
                    "log_size": len(self._log),
                },
            )
            if self._outbound is not None:
                self._outbound(transaction)
        self._notify(applied.changes)
        return pending

    def cancel(self, tx_id: str) -> bool:
        """Roll back a pending transaction locally.

        A later remote confirmation of the cancelled transaction is applied
        as authoritative.

        Returns:
            False when the transaction is unknown or no longer pending
        """
        with self._lock:
            pending = self._by_id.get(tx_id)
            if pending is None or pending.state is not TxState.PENDING:
                return False
            self._drop(pending)
            self._cancelled[tx_id] = pending.transaction
            pending._resolve(TxState.ROLLED_BACK)
            logger.info("Cancelled transaction", extra={"tx_id": tx_id})
            published = self._settle(cause_tx_id=tx_id, reverted=True)
        self._notify(*published)
        return True

    # Remote verdicts

    def confirm(self, tx_id: str) -> Optional[PendingTx]:
        """Mark a transaction confirmed and fold the confirmed prefix into the base."""
        with self._lock:
            pending = self._by_id.get(tx_id)
            if pending is None:
                transaction = self._cancelled.pop(tx_id, None)
                if transaction is None:
                    logger.warning("Confirmation for unknown transaction", extra={"tx_id": tx_id})
                    return None
                logger.info(
                    "Remote confirmed a cancelled transaction; applying it as authoritative",
                    extra={"tx_id": tx_id},
                )
                self._merge_base(transaction.operations, transaction.created_at)
            elif not pending._resolve(TxState.CONFIRMED):
                logger.debug("Duplicate confirmation", extra={"tx_id": tx_id})
                return pending
            else:
                logger.debug("Confirmed transaction", extra={"tx_id": tx_id})
            published = self._settle()
        self._notify(*published)
        return pending

    def reject(self, tx_id: str, reason: str = "") -> Optional[PendingTx]:
        """Roll back a rejected transaction and replay the ones after it."""
        with self._lock:
            pending = self._by_id.get(tx_id)
            if pending is None:
                if self._cancelled.pop(tx_id, None) is not None:
                    logger.debug("Rejection for cancelled transaction", extra={"tx_id": tx_id})
                else:
                    logger.warning("Rejection for unknown transaction", extra={"tx_id": tx_id})
                return None
            if pending.state is TxState.CONFIRMED:
                logger.error(
                    "Rejection for a confirmed transaction ignored",
                    extra={"tx_id": tx_id, "reason": reason},
                )
                return pending

            self._drop(pending)
            pending._resolve(TxState.ROLLED_BACK, RemoteRejection(tx_id, reason or "rejected"))
            logger.info("Rolled back rejected transaction", extra={"tx_id": tx_id, "reason": reason})
            published = self._settle(cause_tx_id=tx_id, reverted=True)
        self._notify(*published)
        return pending

    def apply_remote_delta(self, delta: GraphDelta) -> None:
        """Merge authoritative changes from other clients into the base."""
        with self._lock:
            conflicted: list[PendingTx] = []
            if self.policy is ConflictPolicy.REJECT_ON_CONFLICT:
                writes, deletes = _footprint(delta.operations)
                for pending in list(self._log):
                    if pending.state is TxState.PENDING and _conflicts(
                        pending.transaction.operations, writes, deletes
                    ):
                        self._drop(pending)
                        conflicted.append(pending)

            self._merge_base(delta.operations, delta.ts_ms)
            for pending in conflicted:
                pending._resolve(
                    TxState.ROLLED_BACK,
                    RemoteRejection(
                        pending.tx_id,
                        f"conflicts with remote change from {delta.origin or 'remote'}",
                    ),
                )
                logger.info(
                    "Rolled back conflicting transaction",
                    extra={"tx_id": pending.tx_id, "origin": delta.origin},
                )
            published = self._settle(reverted=bool(conflicted))
        self._notify(*published)

    # Recovery

    def restore(self, base: GraphSnapshot, transactions: Iterable[Transaction]) -> list[PendingTx]:
        """Load a cached base and replay cached pending transactions on it.

        Transactions that no longer apply are rolled back.

        Raises:
            RuntimeError: If transactions were already submitted to this layer
        """
        with self._lock:
            if self._log:
                raise RuntimeError("Cannot restore into a layer with pending transactions")
            self._base = base
            self._cached_base = base
            for transaction in transactions:
                pending = PendingTx(transaction, self)
                self._log.append(pending)
                self._by_id[transaction.tx_id] = pending
            logger.info(
                "Restored local state",
                extra={"entities": len(base), "pending": len(self._log)},
            )
            published = self._settle()
            restored = list(self._log)
        self._notify(*published)
        return restored

    # Internals

    def _drop(self, pending: PendingTx) -> None:
        self._log.remove(pending)
        self._by_id.pop(pending.tx_id, None)
        self._forget(pending.tx_id)

    def _forget(self, tx_id: str) -> None:
        if self.cache is not None:
            try:
                self.cache.remove_pending(tx_id)
            except CacheError as e:
                logger.error(f"Failed to remove pending transaction from cache: {e.message}")

    def _merge_base(self, operations: Iterable[Operation], version: int) -> None:
        self._base, _ = merge_remote(self.registry, self._base, operations, version)

    def _fold_confirmed(self) -> list[str]:
        folded = []
        while self._log and self._log[0].state is TxState.CONFIRMED:
            pending = self._log.pop(0)
            self._by_id.pop(pending.tx_id, None)
            self._merge_base(pending.transaction.operations, pending.transaction.created_at)
            folded.append(pending.tx_id)
        return folded

    def _replay(
        self, cause_tx_id: Optional[str]
    ) -> tuple[GraphSnapshot, list[tuple[PendingTx, RemoteRejection]]]:
        """Rebuild base + log, dropping pending transactions that no longer apply."""
        snapshot = self._base
        failed: list[tuple[PendingTx, RemoteRejection]] = []
        for pending in list(self._log):
            transaction = pending.transaction
            if pending.state is TxState.CONFIRMED:
                snapshot, _ = merge_remote(
                    self.registry, snapshot, transaction.operations, transaction.created_at
                )
                continue
            try:
                snapshot, _ = apply_transaction(self.registry, snapshot, transaction)
            except LiveGraphError as e:
                self._drop(pending)
                reason = e.message if cause_tx_id is None else f"depends on {cause_tx_id}: {e.message}"
                failed.append((pending, RemoteRejection(transaction.tx_id, reason, cause_tx_id=cause_tx_id)))
        return snapshot, failed

    def _settle(
        self, *, cause_tx_id: Optional[str] = None, reverted: bool = False
    ) -> tuple[ChangeSet, bool]:
        """Fold confirmed transactions, rebuild the optimistic state and publish it.

        Returns the change set and reverted flag for _notify(), which callers
        invoke once they have released the lock.
        """
        base_before = self._base
        folded = self._fold_confirmed()
        snapshot, failed = self._replay(cause_tx_id)
        folded += self._fold_confirmed()

        if self.cache is not None and (folded or self._base is not base_before):
            try:
                self.cache.commit_base(self._base, folded, previous=self._cached_base)
                self._cached_base = self._base
            except CacheError as e:
                # The next commit rewrites the whole base.
                self._cached_base = None
                logger.error(f"Failed to commit base snapshot to cache: {e.message}")

        previous = self.store.snapshot
        self.store.reset(snapshot)
        changes = diff_snapshots(previous, snapshot)

        for pending, error in failed:
            pending._resolve(TxState.ROLLED_BACK, error)
            logger.info(
                "Rolled back dependent transaction",
                extra={"tx_id": pending.tx_id, "cause_tx_id": cause_tx_id},
            )

        return changes, reverted or bool(failed)

    def _notify(self, changes: ChangeSet, reverted: bool = False) -> None:
        if self.subscriptions is not None and not changes.empty:
            self.subscriptions.notify(changes, reverted=reverted)


def _footprint(operations: Iterable[Operation]) -> tuple[set[tuple[str, str]], set[str]]:
    """(entity id, attribute) pairs written and entity ids deleted."""
    writes: set[tuple[str, str]] = set()
    deletes: set[str] = set()
    for op in operations:
        if isinstance(op, (Create, Update)):
            writes.update((op.entity_id, name) for name in op.attributes)
        elif isinstance(op, Delete):
            deletes.add(op.entity_id)
    return writes, deletes


def _conflicts(
    operations: Iterable[Operation],
    remote_writes: set[tuple[str, str]],
    remote_deletes: set[str],
) -> bool:
    written_ids = {entity_id for entity_id, _ in remote_writes}
    for op in operations:
        if isinstance(op, (Create, Update)):
            if op.entity_id in remote_deletes:
                return True
            if any((op.entity_id, name) in remote_writes for name in op.attributes):
                return True
        elif isinstance(op, Delete):
            if op.entity_id in written_ids or op.entity_id in remote_deletes:
                return True
        elif isinstance(op, (LinkAdd, LinkRemove)):
            if op.from_id in remote_deletes or op.to_id in remote_deletes:
                return True
    return False
