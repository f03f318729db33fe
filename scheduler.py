import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import Settings, get_settings
from notifications import run_daily_report


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        try:
            result = asyncio.run(run_daily_report(self.settings))
        except Exception as exc:
            logger.error(f"scheduler_run_failed: source={source} error={exc}")
            return
        logger.info(f"scheduler_run: source={source} result={result}")

    def start(self) -> None:
        hour, minute = self.settings.daily_report_hour_minute
        trigger = CronTrigger(hour=hour, minute=minute, timezone=self.settings.timezone)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="daily_report",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with daily report at {hour:02d}:{minute:02d}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
