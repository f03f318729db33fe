"""
sync.py: keeps the in-memory transaction/category lists consistent with the
Record Store across connectivity changes.

Every successful write is followed by a full re-fetch; there is no optimistic
merge. While offline (or resyncing) writes are refused up front and the lists
are served from the Local Cache. Live change events are queued by the feed
callback and drained in arrival order by a single consumer.
"""
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Union

from pydantic import ValidationError

from errors import OfflineError, RecordStoreError
from local_cache import LocalCache, Snapshot
from models import ChangeKind, NotifyEvent, SyncState
from record_store import RecordStore
from schemas import Category, Transaction, TransactionIn

logger = logging.getLogger(__name__)

Listener = Callable[["TransactionState"], None]


class TransactionNotifier(Protocol):
    async def notify_transaction(
        self,
        event: NotifyEvent,
        transaction: dict[str, Any],
        user_email: Optional[str] = None,
    ) -> Any: ...


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    new: Optional[dict[str, Any]] = None
    old: Optional[dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeEvent":
        """Accepts both the client-library shape (eventType/new/old) and the
        raw realtime shape (data.type/record/old_record)."""
        body = payload.get("data", payload)
        kind = body.get("eventType") or body.get("type")
        if not kind:
            raise ValueError("Change payload has no event type")
        return cls(
            kind=ChangeKind(str(kind).upper()),
            new=body.get("new") or body.get("record") or None,
            old=body.get("old") or body.get("old_record") or None,
        )

    @property
    def record_id(self) -> Optional[str]:
        for row in (self.new, self.old):
            if row and row.get("id") is not None:
                return str(row["id"])
        return None


class TransactionState:
    """Sole owner of the in-memory lists; others read or subscribe."""

    def __init__(self) -> None:
        self._transactions: list[Transaction] = []
        self._categories: list[Category] = []
        self._listeners: list[Listener] = []
        self.from_cache = False

    @property
    def transactions(self) -> list[Transaction]:
        return list(self._transactions)

    @property
    def categories(self) -> list[Category]:
        return list(self._categories)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def replace(
        self,
        transactions: list[Transaction],
        categories: Optional[list[Category]] = None,
        *,
        from_cache: bool = False,
    ) -> None:
        self._transactions = list(transactions)
        if categories is not None:
            self._categories = list(categories)
        self.from_cache = from_cache
        self._emit()

    def prepend(self, txn: Transaction) -> None:
        self._transactions.insert(0, txn)
        self._emit()

    def replace_one(self, txn: Transaction) -> bool:
        for index, current in enumerate(self._transactions):
            if current.id == txn.id:
                self._transactions[index] = txn
                self._emit()
                return True
        return False

    def remove(self, transaction_id: str) -> bool:
        kept = [t for t in self._transactions if t.id != transaction_id]
        if len(kept) == len(self._transactions):
            return False
        self._transactions = kept
        self._emit()
        return True

    def find(self, transaction_id: str) -> Optional[Transaction]:
        for txn in self._transactions:
            if txn.id == transaction_id:
                return txn
        return None

    def _emit(self) -> None:
        for listener in list(self._listeners):
            listener(self)


class SyncController:
    def __init__(
        self,
        store: RecordStore,
        cache: LocalCache,
        *,
        notifier: Optional[TransactionNotifier] = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.notifier = notifier
        self.user_id = user_id
        self.user_email = user_email
        self.state = TransactionState()
        self.status = SyncState.bootstrapping
        self._connected = True
        self._pending: deque[ChangeEvent] = deque()

    @property
    def is_online(self) -> bool:
        return self.status == SyncState.online

    @property
    def is_showing_cached(self) -> bool:
        return self.state.from_cache

    async def bootstrap(self) -> None:
        snapshot = self.cache.load()
        if snapshot is not None:
            self.state.replace(
                snapshot.transactions, snapshot.categories, from_cache=True
            )
            logger.info(f"sync_bootstrap: cached_transactions={len(snapshot.transactions)}")
        await self.refresh()

    async def _fetch(self) -> Snapshot:
        categories = await self.store.select("categories", order="name")
        transactions = await self.store.select(
            "transactions", order="date", descending=True
        )
        return Snapshot(
            transactions=[Transaction.model_validate(row) for row in transactions],
            categories=[Category.model_validate(row) for row in categories],
        )

    async def refresh(self) -> bool:
        """Full re-fetch; on failure fall back to the cache and go offline."""
        try:
            snapshot = await self._fetch()
        except (RecordStoreError, ValidationError) as exc:
            logger.warning(f"sync_refresh_failed: status={self.status.value} error={exc}")
            self._go_offline()
            return False
        self.state.replace(snapshot.transactions, snapshot.categories)
        self.cache.save(snapshot)
        self.status = SyncState.online if self._connected else SyncState.offline
        logger.info(
            f"sync_refresh: transactions={len(snapshot.transactions)} "
            f"categories={len(snapshot.categories)}"
        )
        return True

    def _go_offline(self) -> None:
        self.status = SyncState.offline
        snapshot = self.cache.load()
        if snapshot is not None:
            self.state.replace(
                snapshot.transactions, snapshot.categories, from_cache=True
            )

    async def set_connectivity(self, online: bool) -> None:
        self._connected = online
        if not online:
            if self.status != SyncState.offline:
                logger.info(f"sync_offline: previous={self.status.value}")
                self._go_offline()
            return
        if self.status != SyncState.offline:
            return
        self.status = SyncState.resyncing
        logger.info("sync_resync: reason=reconnected")
        await self.refresh()

    def _require_online(self) -> None:
        if self.status != SyncState.online:
            raise OfflineError()

    async def add_transaction(self, data: TransactionIn) -> Optional[Transaction]:
        self._require_online()
        row = data.to_row()
        if self.user_id:
            row["user_id"] = self.user_id
        created = await self.store.insert("transactions", row)
        await self.refresh()
        record = Transaction.model_validate(created[0]) if created else None
        await self._notify(NotifyEvent.created, created[0] if created else row)
        return record

    async def update_transaction(
        self, transaction_id: str, data: Union[TransactionIn, dict[str, Any]]
    ) -> Optional[Transaction]:
        self._require_online()
        patch = data.to_row() if isinstance(data, TransactionIn) else dict(data)
        updated = await self.store.update("transactions", transaction_id, patch)
        await self.refresh()
        await self._notify(NotifyEvent.updated, updated or {"id": transaction_id, **patch})
        return Transaction.model_validate(updated) if updated else None

    async def delete_transaction(self, transaction_id: str) -> None:
        self._require_online()
        existing = self.state.find(transaction_id)
        await self.store.delete("transactions", {"id": transaction_id})
        await self.refresh()
        if existing is not None:
            await self._notify(NotifyEvent.deleted, existing.to_row())

    async def _notify(self, event: NotifyEvent, transaction: dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_transaction(event, transaction, self.user_email)
        except RecordStoreError as exc:
            logger.warning(f"notify_failed: event={event.value} error={exc}")

    def apply_change(self, event: ChangeEvent) -> None:
        if self.status != SyncState.online:
            logger.info(f"change_ignored: kind={event.kind.value} status={self.status.value}")
            return
        if event.kind == ChangeKind.insert and event.new:
            self.state.prepend(Transaction.model_validate(event.new))
        elif event.kind == ChangeKind.update and event.new:
            txn = Transaction.model_validate(event.new)
            # an update for an id we no longer hold re-adds it until the next refresh
            if not self.state.replace_one(txn):
                self.state.prepend(txn)
        elif event.kind == ChangeKind.delete and event.record_id:
            self.state.remove(event.record_id)

    def enqueue_change(self, payload: Union[ChangeEvent, dict[str, Any]]) -> None:
        event = payload if isinstance(payload, ChangeEvent) else ChangeEvent.from_payload(payload)
        self._pending.append(event)

    def drain_changes(self) -> int:
        applied = 0
        while self._pending:
            self.apply_change(self._pending.popleft())
            applied += 1
        return applied
