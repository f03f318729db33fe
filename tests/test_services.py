import asyncio
import json
from datetime import date, datetime, timezone

import httpx
import pytest

from database import create_cache_engine
from errors import InputError, RecordStoreError
from local_cache import LocalCache
from models import NotifyEvent
from schemas import Budget, BudgetIn, CategoryIn, TagIn, Transaction, TransactionIn
from services import (
    MAX_RECEIPT_BYTES,
    BudgetService,
    CategoryService,
    FunctionsClient,
    ReceiptService,
    ReceiptUpload,
    TagService,
    TransactionEditor,
    export_csv,
)
from sync import SyncController

from fakes import FakeRecordStore, FakeStorage


class RecordingFunctions:
    def __init__(self, fail: bool = False) -> None:
        self.alerts: list[tuple[str, float, int]] = []
        self.fail = fail

    async def budget_alert(self, budget, user_email, spent, percentage):
        if self.fail:
            raise RecordStoreError("budget-alert returned 500", status_code=500)
        self.alerts.append((budget.id, spent, percentage))
        return {"id": "email-1"}


def test_system_categories_cannot_be_changed() -> None:
    store = FakeRecordStore(
        {"categories": [{"id": "sys", "name": "Altro", "is_system": True, "user_id": None}]}
    )
    service = CategoryService(store, user_id="u1")

    async def run():
        created = await service.create(CategoryIn(name="  Palestra "))
        with pytest.raises(InputError):
            await service.update("sys", CategoryIn(name="Renamed"))
        with pytest.raises(InputError):
            await service.delete("sys")
        renamed = await service.update(created.id, CategoryIn(name="Sport", icon="🏋️"))
        return created, renamed, await service.list_all()

    created, renamed, listed = asyncio.run(run())

    assert created.name == "Palestra"
    assert created.user_id == "u1"
    assert not created.is_system
    assert renamed.name == "Sport"
    assert [c.name for c in listed] == ["Altro", "Sport"]


def test_set_transaction_tags_replaces_and_deduplicates() -> None:
    store = FakeRecordStore(
        {
            "tags": [{"id": "a", "name": "Lavoro"}, {"id": "b", "name": "Viaggi"}],
            "transaction_tags": [{"transaction_id": "t1", "tag_id": "a"}],
        }
    )
    service = TagService(store, user_id="u1")

    asyncio.run(service.set_transaction_tags("t1", ["b", "b", "a"]))

    pairs = store.tables["transaction_tags"]
    assert [(p["transaction_id"], p["tag_id"]) for p in pairs] == [("t1", "b"), ("t1", "a")]

    asyncio.run(service.set_transaction_tags("t1", []))
    assert store.tables["transaction_tags"] == []


def test_tag_crud_and_export_uses_tag_names() -> None:
    store = FakeRecordStore()
    service = TagService(store, user_id="u1")
    txn = Transaction(id="t1", amount=3, type="expense", date=date(2025, 3, 1), note="bar")

    async def run():
        tag = await service.create(TagIn(name="Caffè"))
        await service.update(tag.id, TagIn(name="Colazione", color="#000000"))
        store.tables["transaction_tags"] = [
            {"transaction_id": "t1", "tag_id": tag.id, "tags": {"name": "Colazione"}}
        ]
        return await export_csv([txn], [], service)

    content = asyncio.run(run())

    assert content.rstrip().endswith('"bar","Colazione"')
    assert store.tables["tags"][0]["user_id"] == "u1"


def test_budget_alert_sent_once_then_marked() -> None:
    store = FakeRecordStore()
    functions = RecordingFunctions()
    service = BudgetService(store, user_id="u1", functions=functions)

    async def run():
        budget = await service.create(BudgetIn(month="2025-03-17", amount="200"))
        below = await service.check_alert(budget, 100.0, "me@example.test")
        sent = await service.check_alert(budget, 170.0, "me@example.test")
        return budget, below, sent

    budget, below, sent = asyncio.run(run())

    assert budget.month == date(2025, 3, 1)
    assert not below
    assert sent
    assert functions.alerts == [(budget.id, 170.0, 85)]
    assert store.tables["budgets"][0]["alert_sent"] is True


def test_budget_alert_failure_is_swallowed() -> None:
    budget = Budget(id="b1", month="2025-03-01", amount=100)
    store = FakeRecordStore({"budgets": [budget.model_dump(mode="json")]})
    service = BudgetService(store, functions=RecordingFunctions(fail=True))

    assert asyncio.run(service.check_alert(budget, 150.0, "me@example.test")) is False
    assert store.tables["budgets"][0]["alert_sent"] is False


def test_budget_alert_skipped_when_already_sent() -> None:
    functions = RecordingFunctions()
    service = BudgetService(FakeRecordStore(), functions=functions)
    budget = Budget(id="b1", month="2025-03-01", amount=100, alert_sent=True)

    assert asyncio.run(service.check_alert(budget, 500.0, "me@example.test")) is False
    assert functions.alerts == []


def test_receipt_validation_happens_before_upload() -> None:
    store = FakeRecordStore()
    storage = FakeStorage()
    service = ReceiptService(store, storage, user_id="u1")

    with pytest.raises(InputError):
        asyncio.run(service.upload("t1", ReceiptUpload("a.gif", b"gif", "image/gif")))
    with pytest.raises(InputError):
        asyncio.run(
            service.upload(
                "t1", ReceiptUpload("a.pdf", b"0" * (MAX_RECEIPT_BYTES + 1), "application/pdf")
            )
        )

    assert storage.objects == {}
    assert store.calls == []


def test_receipt_upload_list_and_delete() -> None:
    store = FakeRecordStore()
    storage = FakeStorage()
    service = ReceiptService(store, storage, user_id="u1")
    now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    async def run():
        receipt = await service.upload(
            "t1", ReceiptUpload("scontrino.jpg", b"jpeg", "image/jpg"), now=now
        )
        listed = await service.list("t1")
        await service.delete(receipt)
        return receipt, listed

    receipt, listed = asyncio.run(run())

    assert receipt.file_path == f"u1/t1/{int(now.timestamp() * 1000)}.jpg"
    assert receipt.file_size == 4
    assert [r.id for r in listed] == [receipt.id]
    assert storage.objects == {}
    assert store.tables["receipts"] == []
    assert service.public_url(receipt.file_path).endswith(receipt.file_path)


def _editor(storage: FakeStorage):
    store = FakeRecordStore(
        {
            "transactions": [
                {"id": "t1", "amount": 5, "type": "expense", "category_id": "food",
                 "date": "2025-03-01"}
            ],
            "categories": [{"id": "food", "name": "Cibo"}],
        }
    )
    sync = SyncController(store, LocalCache(create_cache_engine("sqlite:///:memory:")))
    asyncio.run(sync.bootstrap())
    editor = TransactionEditor(
        sync, TagService(store, "u1"), ReceiptService(store, storage, "u1")
    )
    return store, editor


def test_editor_saves_update_tags_and_receipt_in_order() -> None:
    storage = FakeStorage()
    store, editor = _editor(storage)
    data = TransactionIn(amount=9, type="expense", category_id="food", date=date(2025, 3, 2))

    updated = asyncio.run(
        editor.save("t1", data, ["a"], ReceiptUpload("r.png", b"png", "image/png"))
    )

    assert updated.amount == 9
    ops = [op for op in store.calls if op[0] != "select"]
    assert ops == [
        ("update", "transactions"),
        ("delete", "transaction_tags"),
        ("insert", "transaction_tags"),
        ("insert", "receipts"),
    ]
    assert len(storage.objects) == 1


def test_editor_stops_at_first_failure_without_rollback() -> None:
    storage = FakeStorage()
    storage.fail = True
    store, editor = _editor(storage)
    data = TransactionIn(amount=9, type="expense", category_id="food", date=date(2025, 3, 2))

    with pytest.raises(RecordStoreError):
        asyncio.run(
            editor.save("t1", data, ["a"], ReceiptUpload("r.png", b"png", "image/png"))
        )

    assert store.tables["transactions"][0]["amount"] == 9
    assert [p["tag_id"] for p in store.tables["transaction_tags"]] == ["a"]
    assert "receipts" not in store.tables


def test_functions_client_posts_to_named_function() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True})

    client = FunctionsClient(
        "https://db.example.test", "anon-key", transport=httpx.MockTransport(handler)
    )
    budget = Budget(id="b1", month="2025-03-01", category_id="food", amount=100)

    async def run():
        async with client:
            await client.budget_alert(budget, "me@example.test", 90.0, 90)
            return await client.notify_transaction(
                NotifyEvent.updated, {"id": "t1", "amount": 4}
            )

    result = asyncio.run(run())

    assert result == {"success": True}
    assert [r.url.path for r in seen] == [
        "/functions/v1/budget-alert",
        "/functions/v1/notify-transaction",
    ]
    assert json.loads(seen[0].content)["percentage"] == 90
    assert json.loads(seen[1].content) == {
        "event": "updated",
        "transaction": {"id": "t1", "amount": 4},
    }


def test_progress_for_month_and_transaction_tags() -> None:
    store = FakeRecordStore(
        {
            "budgets": [
                {"id": "b1", "month": "2025-03-01", "amount": 50, "category_id": None},
                {"id": "b2", "month": "2025-02-01", "amount": 50, "category_id": None},
            ],
            "transaction_tags": [
                {"transaction_id": "t1", "tag_id": "a", "tags": {"id": "a", "name": "Lavoro"}},
            ],
        }
    )
    txns = [Transaction(id="t1", amount=20, type="expense", date=date(2025, 3, 3))]

    async def run():
        progress = await BudgetService(store).progress_for_month("2025-03", txns)
        tags = await TagService(store).transaction_tags("t1")
        return progress, tags

    progress, tags = asyncio.run(run())

    assert [(p.budget.id, p.percentage) for p in progress] == [("b1", 40)]
    assert [t.name for t in tags] == ["Lavoro"]


def _plain_text_functions() -> FunctionsClient:
    return FunctionsClient(
        "https://db.example.test",
        "anon-key",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="OK")),
    )


def test_non_json_function_reply_does_not_fail_the_mutation() -> None:
    store = FakeRecordStore({"transactions": [], "categories": []})
    sync = SyncController(
        store,
        LocalCache(create_cache_engine("sqlite:///:memory:")),
        notifier=_plain_text_functions(),
    )
    asyncio.run(sync.bootstrap())

    created = asyncio.run(
        sync.add_transaction(
            TransactionIn(amount=4, type="expense", category_id="food", date=date(2025, 3, 2))
        )
    )

    assert sync.state.find(created.id) is not None


def test_non_json_budget_alert_reply_is_swallowed() -> None:
    budget = Budget(id="b1", month="2025-03-01", amount=100)
    store = FakeRecordStore({"budgets": [budget.model_dump(mode="json")]})
    service = BudgetService(store, functions=_plain_text_functions())

    assert asyncio.run(service.check_alert(budget, 95.0, "me@example.test")) is False
    assert store.tables["budgets"][0]["alert_sent"] is False

    with pytest.raises(RecordStoreError) as info:
        asyncio.run(_plain_text_functions().invoke("budget-alert", {}))
    assert info.value.status_code == 200


def test_check_alerts_covers_every_progress_row() -> None:
    store = FakeRecordStore(
        {
            "budgets": [
                {"id": "near", "month": "2025-03-01", "amount": 100, "category_id": "food"},
                {"id": "low", "month": "2025-03-01", "amount": 1000, "category_id": None},
                {"id": "done", "month": "2025-03-01", "amount": 10, "alert_sent": True},
            ]
        }
    )
    functions = RecordingFunctions()
    service = BudgetService(store, functions=functions)
    txns = [
        Transaction(id="t1", amount=85, type="expense", category_id="food",
                    date=date(2025, 3, 3)),
    ]

    async def run():
        progress = await service.progress_for_month("2025-03", txns)
        return await service.check_alerts(progress, "me@example.test")

    alerted = asyncio.run(run())

    assert alerted == ["near"]
    assert [a[0] for a in functions.alerts] == ["near"]
