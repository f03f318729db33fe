import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine

from database import Base, get_engine, session_scope
from models import CachedCategory, CachedTransaction, CacheState
from schemas import Category, Transaction

logger = logging.getLogger(__name__)

_STATE_ID = 1


@dataclass
class Snapshot:
    transactions: list[Transaction] = field(default_factory=list)
    categories: list[Category] = field(default_factory=list)
    synced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class LocalCache:
    """Last known-good snapshot, kept only for offline display."""

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self.engine = engine or get_engine()
        Base.metadata.create_all(self.engine)

    def load(self) -> Optional[Snapshot]:
        with session_scope(self.engine) as session:
            state = session.get(CacheState, _STATE_ID)
            if state is None:
                return None
            txn_rows = session.scalars(
                select(CachedTransaction).order_by(CachedTransaction.position)
            ).all()
            category_rows = session.scalars(
                select(CachedCategory).order_by(CachedCategory.position)
            ).all()
            return Snapshot(
                transactions=[
                    Transaction.model_validate(row, from_attributes=True)
                    for row in txn_rows
                ],
                categories=[
                    Category.model_validate(row, from_attributes=True)
                    for row in category_rows
                ],
                synced_at=state.synced_at.replace(tzinfo=timezone.utc),
            )

    def save(self, snapshot: Snapshot) -> None:
        synced_at = snapshot.synced_at.astimezone(timezone.utc).replace(tzinfo=None)
        with session_scope(self.engine) as session:
            session.execute(delete(CachedTransaction))
            session.execute(delete(CachedCategory))
            session.add_all(
                CachedTransaction(position=index, **txn.model_dump())
                for index, txn in enumerate(snapshot.transactions)
            )
            session.add_all(
                CachedCategory(position=index, **category.model_dump())
                for index, category in enumerate(snapshot.categories)
            )
            state = session.get(CacheState, _STATE_ID)
            if state is None:
                session.add(CacheState(id=_STATE_ID, synced_at=synced_at))
            else:
                state.synced_at = synced_at
        logger.info(
            f"cache_saved: transactions={len(snapshot.transactions)} "
            f"categories={len(snapshot.categories)}"
        )

    def clear(self) -> None:
        with session_scope(self.engine) as session:
            session.execute(delete(CachedTransaction))
            session.execute(delete(CachedCategory))
            session.execute(delete(CacheState))
