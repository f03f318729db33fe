import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from aggregation import BudgetProgress, budgets_for_month
from config import Settings, get_settings
from csv_utils import export_transactions
from errors import InputError, RecordStoreError
from models import NotifyEvent
from record_store import BackendClient, ObjectStorage, RecordStore
from schemas import (
    Budget,
    BudgetIn,
    Category,
    CategoryIn,
    Receipt,
    Tag,
    TagIn,
    Transaction,
    TransactionIn,
    TransactionTag,
)
from sync import SyncController

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {
    "image/jpeg",
    "image/png",
    "image/jpg",
    "image/webp",
    "application/pdf",
}
MAX_RECEIPT_BYTES = 5 * 1024 * 1024


class FunctionsClient(BackendClient):
    """Invokes the notification functions over HTTP."""

    def __init__(
        self, base_url: str, api_key: str, *, prefix: str = "/functions/v1", **kwargs: Any
    ) -> None:
        super().__init__(base_url, api_key, **kwargs)
        self.prefix = prefix.rstrip("/")

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, *, access_token: Optional[str] = None
    ) -> "FunctionsClient":
        settings = settings or get_settings()
        return cls(
            settings.supabase_url,
            settings.supabase_anon_key,
            access_token=access_token,
            timeout=settings.http_timeout_secs,
        )

    async def invoke(self, name: str, body: dict[str, Any]) -> dict[str, Any]:
        resp = await self._request("POST", f"{self.prefix}/{name}", json=body)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise RecordStoreError(
                f"{name} returned a non-JSON body", status_code=resp.status_code
            ) from exc

    async def budget_alert(
        self, budget: Budget, user_email: str, spent: float, percentage: int
    ) -> dict[str, Any]:
        return await self.invoke(
            "budget-alert",
            {
                "budget_id": budget.id,
                "user_email": user_email,
                "category_id": budget.category_id,
                "amount": budget.amount,
                "spent": spent,
                "percentage": percentage,
            },
        )

    async def notify_transaction(
        self,
        event: NotifyEvent,
        transaction: dict[str, Any],
        user_email: Optional[str] = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"event": event.value, "transaction": transaction}
        if user_email:
            body["user_email"] = user_email
        return await self.invoke("notify-transaction", body)


class CategoryService:
    def __init__(self, store: RecordStore, user_id: Optional[str] = None) -> None:
        self.store = store
        self.user_id = user_id

    async def list_all(self) -> list[Category]:
        rows = await self.store.select("categories", order="name")
        return [Category.model_validate(row) for row in rows]

    async def _get_editable(self, category_id: str) -> Category:
        category = Category.model_validate(await self.store.get("categories", category_id))
        if category.is_system:
            raise InputError("System categories cannot be modified")
        return category

    async def create(self, data: CategoryIn) -> Category:
        rows = await self.store.insert(
            "categories",
            {
                "name": data.name,
                "icon": data.icon,
                "color": data.color,
                "user_id": self.user_id,
                "is_system": False,
            },
        )
        return Category.model_validate(rows[0])

    async def update(self, category_id: str, data: CategoryIn) -> Category:
        category = await self._get_editable(category_id)
        row = await self.store.update("categories", category.id, data.model_dump())
        if row is None:
            return category.model_copy(update=data.model_dump())
        return Category.model_validate(row)

    async def delete(self, category_id: str) -> None:
        category = await self._get_editable(category_id)
        await self.store.delete("categories", {"id": category.id})


class TagService:
    def __init__(self, store: RecordStore, user_id: Optional[str] = None) -> None:
        self.store = store
        self.user_id = user_id

    async def list_all(self) -> list[Tag]:
        rows = await self.store.select("tags", order="name")
        return [Tag.model_validate(row) for row in rows]

    async def create(self, data: TagIn) -> Tag:
        rows = await self.store.insert(
            "tags", {"name": data.name, "color": data.color, "user_id": self.user_id}
        )
        return Tag.model_validate(rows[0])

    async def update(self, tag_id: str, data: TagIn) -> Optional[Tag]:
        row = await self.store.update("tags", tag_id, data.model_dump())
        return Tag.model_validate(row) if row else None

    async def delete(self, tag_id: str) -> None:
        await self.store.delete("tags", {"id": tag_id})

    async def transaction_tags(self, transaction_id: str) -> list[Tag]:
        rows = await self.store.select(
            "transaction_tags", {"transaction_id": transaction_id}, columns="tag_id,tags(*)"
        )
        return [Tag.model_validate(row["tags"]) for row in rows if row.get("tags")]

    async def set_transaction_tags(self, transaction_id: str, tag_ids: Sequence[str]) -> None:
        """Replace the transaction's tag set: delete every pair, insert the new ones."""
        unique = list(dict.fromkeys(str(tag_id) for tag_id in tag_ids))
        await self.store.delete("transaction_tags", {"transaction_id": transaction_id})
        if unique:
            await self.store.insert(
                "transaction_tags",
                [
                    TransactionTag(transaction_id=transaction_id, tag_id=tag_id).model_dump()
                    for tag_id in unique
                ],
            )

    async def tags_by_transaction(
        self, transaction_ids: Optional[Iterable[str]] = None
    ) -> dict[str, list[str]]:
        wanted = set(transaction_ids) if transaction_ids is not None else None
        rows = await self.store.select(
            "transaction_tags", columns="transaction_id,tags(name)"
        )
        grouped: dict[str, list[str]] = {}
        for row in rows:
            txn_id = str(row.get("transaction_id"))
            tag = row.get("tags") or {}
            if not tag.get("name") or (wanted is not None and txn_id not in wanted):
                continue
            grouped.setdefault(txn_id, []).append(tag["name"])
        return grouped


class BudgetService:
    def __init__(
        self,
        store: RecordStore,
        user_id: Optional[str] = None,
        functions: Optional[FunctionsClient] = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.functions = functions

    async def list_all(self) -> list[Budget]:
        rows = await self.store.select("budgets", order="month", descending=True)
        return [Budget.model_validate(row) for row in rows]

    async def create(self, data: BudgetIn) -> Budget:
        row = data.to_row()
        row["user_id"] = self.user_id
        rows = await self.store.insert("budgets", row)
        return Budget.model_validate(rows[0])

    async def update(self, budget_id: str, changes: dict[str, Any]) -> Optional[Budget]:
        row = await self.store.update("budgets", budget_id, changes)
        return Budget.model_validate(row) if row else None

    async def delete(self, budget_id: str) -> None:
        await self.store.delete("budgets", {"id": budget_id})

    async def progress_for_month(
        self,
        month: str,
        transactions: Sequence[Transaction],
        categories: Iterable[Category] = (),
    ) -> list[BudgetProgress]:
        return budgets_for_month(await self.list_all(), transactions, month, categories)

    async def check_alert(self, budget: Budget, spent: float, user_email: str) -> bool:
        """Send the threshold e-mail once per budget; failures never propagate."""
        if budget.amount <= 0 or self.functions is None:
            return False
        progress = BudgetProgress(
            budget=budget, spent=spent, percentage=spent / budget.amount * 100
        )
        if not progress.needs_alert:
            return False
        try:
            await self.functions.budget_alert(
                budget, user_email, spent, round(progress.percentage)
            )
            await self.store.update("budgets", budget.id, {"alert_sent": True})
        except RecordStoreError as exc:
            logger.warning(f"budget_alert_failed: budget_id={budget.id} error={exc}")
            return False
        logger.info(
            f"budget_alert: budget_id={budget.id} percentage={round(progress.percentage)}"
        )
        return True

    async def check_alerts(
        self, progress_rows: Iterable[BudgetProgress], user_email: str
    ) -> list[str]:
        """Run check_alert for every progress row; returns the budget ids alerted."""
        alerted: list[str] = []
        for progress in progress_rows:
            if await self.check_alert(progress.budget, progress.spent, user_email):
                alerted.append(progress.budget.id)
        return alerted


@dataclass(frozen=True)
class ReceiptUpload:
    file_name: str
    content: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        return self.file_name.rsplit(".", 1)[-1] if "." in self.file_name else "bin"


class ReceiptService:
    def __init__(
        self, store: RecordStore, storage: ObjectStorage, user_id: Optional[str] = None
    ) -> None:
        self.store = store
        self.storage = storage
        self.user_id = user_id

    @staticmethod
    def validate(upload: ReceiptUpload) -> None:
        if upload.size > MAX_RECEIPT_BYTES:
            raise InputError("Receipt too large: maximum size is 5MB")
        if upload.content_type not in ALLOWED_CONTENT_TYPES:
            raise InputError("Unsupported receipt type: use JPG, PNG, WEBP or PDF")

    async def upload(
        self,
        transaction_id: str,
        upload: ReceiptUpload,
        *,
        now: Optional[datetime] = None,
    ) -> Receipt:
        self.validate(upload)
        if not self.user_id:
            raise InputError("User is not authenticated")
        millis = int((now.timestamp() if now else time.time()) * 1000)
        path = f"{self.user_id}/{transaction_id}/{millis}.{upload.extension}"
        await self.storage.upload(path, upload.content, upload.content_type)
        rows = await self.store.insert(
            "receipts",
            {
                "transaction_id": transaction_id,
                "file_name": upload.file_name,
                "file_path": path,
                "file_size": upload.size,
                "content_type": upload.content_type,
            },
        )
        logger.info(f"receipt_uploaded: transaction_id={transaction_id} size={upload.size}")
        return Receipt.model_validate(rows[0])

    async def list(self, transaction_id: str) -> list[Receipt]:
        rows = await self.store.select(
            "receipts",
            {"transaction_id": transaction_id},
            order="created_at",
            descending=True,
        )
        return [Receipt.model_validate(row) for row in rows]

    async def delete(self, receipt: Receipt) -> None:
        await self.storage.remove([receipt.file_path])
        await self.store.delete("receipts", {"id": receipt.id})

    def public_url(self, path: str) -> str:
        return self.storage.public_url(path)


class TransactionEditor:
    """Edit-dialog save: update, then tags, then receipt; stops at the first failure."""

    def __init__(
        self, sync: SyncController, tags: TagService, receipts: ReceiptService
    ) -> None:
        self.sync = sync
        self.tags = tags
        self.receipts = receipts

    async def save(
        self,
        transaction_id: str,
        data: TransactionIn,
        tag_ids: Sequence[str],
        receipt: Optional[ReceiptUpload] = None,
    ) -> Optional[Transaction]:
        if receipt is not None:
            ReceiptService.validate(receipt)
        updated = await self.sync.update_transaction(transaction_id, data)
        await self.tags.set_transaction_tags(transaction_id, tag_ids)
        if receipt is not None:
            await self.receipts.upload(transaction_id, receipt)
        return updated


async def export_csv(
    transactions: Sequence[Transaction],
    categories: Iterable[Category],
    tags: TagService,
) -> str:
    tag_names = await tags.tags_by_transaction(t.id for t in transactions)
    return export_transactions(transactions, categories, tag_names)
