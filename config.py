import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        cache_url: str,
        timezone: str,
        supabase_url: str = "",
        supabase_service_key: str = "",
        supabase_anon_key: str = "",
        receipts_bucket: str = "receipts",
        resend_api_key: str = "",
        alert_sender: str = "Budget Manager <onboarding@resend.dev>",
        daily_report_webhook: str = "",
        transaction_webhook: str = "",
        http_timeout_secs: float = 10.0,
        daily_report_time: str = "06:00",
        enable_scheduler: bool = False,
    ) -> None:
        self.cache_url = cache_url
        self.timezone = timezone
        self.supabase_url = supabase_url.rstrip("/")
        self.supabase_service_key = supabase_service_key
        self.supabase_anon_key = supabase_anon_key
        self.receipts_bucket = receipts_bucket
        self.resend_api_key = resend_api_key
        self.alert_sender = alert_sender
        self.daily_report_webhook = daily_report_webhook
        self.transaction_webhook = transaction_webhook
        self.http_timeout_secs = http_timeout_secs
        self.daily_report_time = daily_report_time
        self.enable_scheduler = enable_scheduler

    @property
    def daily_report_hour_minute(self) -> tuple[int, int]:
        hour, _, minute = self.daily_report_time.partition(":")
        return int(hour), int(minute or 0)


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    cache_url = os.getenv("BUDGET_CACHE_URL")
    if not cache_url:
        cache_url = f"sqlite:///{_ensure_data_dir() / 'cache.db'}"
    return Settings(
        cache_url=cache_url,
        timezone=os.getenv("BUDGET_TIMEZONE", "Europe/Rome"),
        supabase_url=os.getenv("SUPABASE_URL", ""),
        supabase_service_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
        supabase_anon_key=os.getenv("SUPABASE_ANON_KEY", ""),
        receipts_bucket=os.getenv("BUDGET_RECEIPTS_BUCKET", "receipts"),
        resend_api_key=os.getenv("RESEND_API_KEY", ""),
        alert_sender=os.getenv(
            "BUDGET_ALERT_SENDER", "Budget Manager <onboarding@resend.dev>"
        ),
        daily_report_webhook=os.getenv("N8N_WEBHOOK_DAILY_REPORT", ""),
        transaction_webhook=os.getenv("N8N_WEBHOOK_TRANSACTION", ""),
        http_timeout_secs=float(os.getenv("BUDGET_HTTP_TIMEOUT_SECS", "10")),
        daily_report_time=os.getenv("BUDGET_DAILY_REPORT_CRON", "06:00"),
        enable_scheduler=_flag(os.getenv("BUDGET_ENABLE_SCHEDULER", "0")),
    )
