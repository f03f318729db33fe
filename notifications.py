"""
notifications.py: the server-side notification functions.

Budget alert e-mails go out through the Resend REST API; the daily report
and transaction-change notifications are relayed to n8n webhooks. An empty
webhook URL turns the matching function into a no-op.
"""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from aggregation import totals
from config import Settings
from errors import RecordStoreError
from periods import yesterday
from record_store import RecordStore
from schemas import BudgetAlertIn, Transaction, TransactionNotifyIn

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}
RESEND_URL = "https://api.resend.com/emails"
UNCATEGORIZED = "Senza categoria"
NOT_CONFIGURED = {"message": "Webhook not configured"}

StoreFactory = Callable[[], RecordStore]


def format_currency(value: float) -> str:
    """Euro amount in it-IT style: 1234.5 -> "1.234,50 €"."""
    text = f"{float(value):,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"{text} €"


def format_number(value: float) -> str:
    value = round(float(value), 2)
    if value.is_integer():
        return str(int(value))
    return f"{value:g}".replace(".", ",")


templates = Environment(
    loader=FileSystemLoader(Path(__file__).resolve().parent / "templates"),
    autoescape=select_autoescape(["html"]),
)
templates.filters["currency"] = format_currency
templates.filters["number"] = format_number


def render_budget_alert(alert: BudgetAlertIn) -> tuple[str, str]:
    scope = "per la categoria selezionata" if alert.category_id else "totale mensile"
    subject = f"⚠️ Alert Budget: {format_number(alert.percentage)}% raggiunto"
    html = templates.get_template("budget_alert.html").render(alert=alert, scope=scope)
    return subject, html


def _timestamp(now: Optional[datetime] = None) -> str:
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class EmailSender:
    def __init__(
        self,
        api_key: str,
        sender: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailSender":
        return cls(
            settings.resend_api_key,
            settings.alert_sender,
            timeout=settings.http_timeout_secs,
        )

    async def send(self, to: str, subject: str, html: str) -> dict[str, Any]:
        if not self.api_key:
            raise RuntimeError("RESEND_API_KEY is not configured")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(
                RESEND_URL,
                json={"from": self.sender, "to": [to], "subject": subject, "html": html},
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        if resp.is_error:
            raise RuntimeError(f"Resend rejected the e-mail: HTTP {resp.status_code} {resp.text}")
        return resp.json()

    async def send_budget_alert(self, alert: BudgetAlertIn) -> dict[str, Any]:
        logger.info(f"budget_alert_send: budget_id={alert.budget_id}")
        subject, html = render_budget_alert(alert)
        result = await self.send(alert.user_email, subject, html)
        logger.info(f"budget_alert_sent: budget_id={alert.budget_id} id={result.get('id')}")
        return result


class WebhookRelay:
    def __init__(
        self, *, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.timeout = timeout
        self.transport = transport

    async def post(self, url: str, payload: dict[str, Any]) -> bool:
        """POST the payload; a non-2xx answer is logged and reported as False."""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(url, json=payload)
        if resp.is_error:
            logger.error(f"webhook_failed: status={resp.status_code} body={resp.text[:200]}")
            return False
        logger.info(f"webhook_sent: status={resp.status_code}")
        return True


def _service_store_factory(settings: Settings) -> StoreFactory:
    return lambda: RecordStore.from_settings(settings, service=True)


class DailyReportService:
    def __init__(
        self,
        settings: Settings,
        relay: WebhookRelay,
        store_factory: Optional[StoreFactory] = None,
    ) -> None:
        self.settings = settings
        self.relay = relay
        self.store_factory = store_factory or _service_store_factory(settings)

    @staticmethod
    def _by_category(rows: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        grouped: dict[str, dict[str, Any]] = {}
        for row in rows:
            category = row.get("categories") or {}
            name = category.get("name") or UNCATEGORIZED
            bucket = grouped.setdefault(name, {"income": 0.0, "expense": 0.0, "count": 0})
            txn = Transaction.model_validate(row)
            bucket[txn.type.value] += txn.amount
            bucket["count"] += 1
        return grouped

    async def run(self, *, now: Optional[datetime] = None) -> dict[str, Any]:
        url = self.settings.daily_report_webhook
        if not url:
            logger.info("daily_report_skipped: reason=webhook_not_configured")
            return dict(NOT_CONFIGURED)

        day = yesterday(self.settings.timezone, now=now).start.isoformat()
        logger.info(f"daily_report_start: date={day}")
        async with self.store_factory() as store:
            rows = await store.select("transactions", {"date": day}, columns="*,categories(name)")

        summary = totals(Transaction.model_validate(row) for row in rows)
        payload = {
            "date": day,
            "timestamp": _timestamp(now),
            "summary": {
                "total_income": summary.income,
                "total_expenses": summary.expense,
                "net_balance": summary.net,
                "transaction_count": summary.count,
            },
            "by_category": self._by_category(rows),
            "transactions": rows,
        }
        await self.relay.post(url, payload)
        return {
            "success": True,
            "report": {
                "date": day,
                "transaction_count": summary.count,
                "total_income": summary.income,
                "total_expenses": summary.expense,
            },
        }


async def run_daily_report(
    settings: Settings,
    *,
    now: Optional[datetime] = None,
    relay: Optional[WebhookRelay] = None,
    store_factory: Optional[StoreFactory] = None,
) -> dict[str, Any]:
    relay = relay or WebhookRelay(timeout=settings.http_timeout_secs)
    return await DailyReportService(settings, relay, store_factory).run(now=now)


class TransactionNotifyService:
    def __init__(
        self,
        settings: Settings,
        relay: WebhookRelay,
        store_factory: Optional[StoreFactory] = None,
    ) -> None:
        self.settings = settings
        self.relay = relay
        self.store_factory = store_factory or _service_store_factory(settings)

    async def _category_name(self, category_id: str) -> Optional[str]:
        async with self.store_factory() as store:
            try:
                row = await store.get("categories", category_id, columns="name")
            except RecordStoreError as exc:
                logger.warning(f"category_lookup_failed: category_id={category_id} error={exc}")
                return None
        return row.get("name")

    async def notify(
        self, body: TransactionNotifyIn, *, now: Optional[datetime] = None
    ) -> dict[str, Any]:
        url = self.settings.transaction_webhook
        if not url:
            logger.info("transaction_notify_skipped: reason=webhook_not_configured")
            return dict(NOT_CONFIGURED)

        transaction = body.transaction.model_dump()
        category_name = None
        if body.transaction.category_id:
            category_name = await self._category_name(body.transaction.category_id)
        payload = {
            "event": body.event.value,
            "timestamp": _timestamp(now),
            "transaction": {**transaction, "category_name": category_name},
            "user_email": body.user_email,
        }
        logger.info(f"transaction_notify: event={body.event.value} id={body.transaction.id}")
        await self.relay.post(url, payload)
        return {"success": True}
