import logging
from typing import Any, Optional, Type, TypeVar

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from config import Settings, get_settings
from notifications import (
    CORS_HEADERS,
    DailyReportService,
    EmailSender,
    NOT_CONFIGURED,
    StoreFactory,
    TransactionNotifyService,
    WebhookRelay,
)
from record_store import RecordStore
from scheduler import SchedulerManager
from schemas import BudgetAlertIn, TransactionNotifyIn

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Manager Functions")

ModelT = TypeVar("ModelT", bound=BaseModel)


def get_app_settings() -> Settings:
    return get_settings()


def get_store_factory(settings: Settings = Depends(get_app_settings)) -> StoreFactory:
    return lambda: RecordStore.from_settings(settings, service=True)


def get_email_sender(settings: Settings = Depends(get_app_settings)) -> EmailSender:
    return EmailSender.from_settings(settings)


def get_webhook_relay(settings: Settings = Depends(get_app_settings)) -> WebhookRelay:
    return WebhookRelay(timeout=settings.http_timeout_secs)


def _json(payload: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code, headers=CORS_HEADERS)


async def _parse_body(request: Request, model: Type[ModelT]) -> ModelT:
    return model.model_validate(await request.json())


scheduler_manager: Optional[SchedulerManager] = None


@app.on_event("startup")
def startup_event():
    global scheduler_manager
    settings = get_settings()
    if settings.enable_scheduler:
        scheduler_manager = SchedulerManager(settings)
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    if scheduler_manager is not None:
        scheduler_manager.stop()


@app.options("/functions/{name}")
def preflight(name: str):
    return Response(status_code=200, headers=CORS_HEADERS)


@app.get("/functions/health")
def health():
    return _json({"status": "ok"})


@app.post("/functions/budget-alert")
async def budget_alert(
    request: Request, sender: EmailSender = Depends(get_email_sender)
):
    try:
        body = await _parse_body(request, BudgetAlertIn)
    except ValueError as exc:
        return _json({"error": str(exc)}, status_code=400)
    try:
        result = await sender.send_budget_alert(body)
    except Exception as exc:
        logger.error(f"budget_alert_error: budget_id={body.budget_id} error={exc}")
        return _json({"error": str(exc)}, status_code=500)
    return _json(result)


@app.post("/functions/daily-report")
async def daily_report(
    settings: Settings = Depends(get_app_settings),
    relay: WebhookRelay = Depends(get_webhook_relay),
    store_factory: StoreFactory = Depends(get_store_factory),
):
    service = DailyReportService(settings, relay, store_factory)
    try:
        result = await service.run()
    except Exception as exc:
        logger.error(f"daily_report_error: error={exc}")
        return _json({"error": str(exc)}, status_code=500)
    return _json(result)


@app.post("/functions/notify-transaction")
async def notify_transaction(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    relay: WebhookRelay = Depends(get_webhook_relay),
    store_factory: StoreFactory = Depends(get_store_factory),
):
    if not settings.transaction_webhook:
        logger.info("transaction_notify_skipped: reason=webhook_not_configured")
        return _json(dict(NOT_CONFIGURED))
    try:
        body = await _parse_body(request, TransactionNotifyIn)
    except ValueError as exc:
        return _json({"error": str(exc)}, status_code=400)
    try:
        service = TransactionNotifyService(settings, relay, store_factory)
        result = await service.notify(body)
    except Exception as exc:
        logger.error(f"transaction_notify_error: error={exc}")
        return _json({"error": str(exc)}, status_code=500)
    return _json(result)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
