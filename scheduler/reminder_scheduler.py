# scheduler/reminder_scheduler.py
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

# Optional Redis jobstore (safe to ignore if not installed/configured)
try:
    from apscheduler.jobstores.redis import RedisJobStore
    from redis import Redis
except ImportError:  # pragma: no cover
    RedisJobStore = None  # type: ignore

logger = logging.getLogger("reminders.retry")

RetryHandler = Callable[[str], Awaitable[object]]

# Retry jobs are stored by textual reference so they survive a Redis jobstore
# round-trip; the handler itself is bound once at startup.
_retry_handler: Optional[RetryHandler] = None


def retry_job_id(appointment_id: str) -> str:
    return f"reminder-retry:{appointment_id}"


async def run_retry_job(appointment_id: str):
    if _retry_handler is None:
        logger.error("retry for %s fired before a handler was bound; dropping", appointment_id)
        return None
    return await _retry_handler(appointment_id)


class RetryScheduler(ABC):
    @abstractmethod
    def schedule(self, appointment_id: str, run_at: datetime) -> None:
        ...

    @abstractmethod
    def cancel(self, appointment_id: str) -> bool:
        ...


class ApsRetryScheduler(RetryScheduler):
    """One DateTrigger job per appointment; a newer retry replaces an older one."""

    def __init__(self, scheduler: AsyncIOScheduler, handler: RetryHandler):
        global _retry_handler
        self.scheduler = scheduler
        _retry_handler = handler

    def schedule(self, appointment_id: str, run_at: datetime) -> None:
        self.scheduler.add_job(
            "scheduler.reminder_scheduler:run_retry_job",
            DateTrigger(run_date=run_at),
            args=[str(appointment_id)],
            id=retry_job_id(appointment_id),
            replace_existing=True,
            # a retry delayed by a restart still runs; fire_retry re-checks state
            misfire_grace_time=None,
        )
        logger.info("retry for %s scheduled at %s", appointment_id, run_at.isoformat())

    def cancel(self, appointment_id: str) -> bool:
        try:
            self.scheduler.remove_job(retry_job_id(appointment_id))
        except JobLookupError:
            return False
        logger.info("retry for %s cancelled", appointment_id)
        return True


def create_scheduler(timezone: str = "UTC", redis_url: Optional[str] = None, misfire_grace_seconds: int = 60) -> AsyncIOScheduler:
    """
    AsyncIOScheduler for retries and the daily sweep (not started).
    Uses Redis jobstore if a URL is given.
    """
    # cron jobs hold live objects and are re-added at every startup, so they stay in memory
    jobstores = {"memory": MemoryJobStore()}
    if redis_url and RedisJobStore:
        store = RedisJobStore()
        # RedisJobStore only takes connection kwargs; swap in a client built from the URL
        store.redis = Redis.from_url(redis_url)
        jobstores["default"] = store
    elif redis_url:
        logger.warning("APS_REDIS_URL set but redis jobstore unavailable; retries stay in memory")

    return AsyncIOScheduler(
        jobstores=jobstores,
        timezone=timezone or "UTC",
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": misfire_grace_seconds,
        },
    )


def schedule_daily_job(scheduler: AsyncIOScheduler, job_id: str, hour: int, minute: int, timezone: str, func, *args):
    """
    Generic helper: schedule `func(*args)` once a day at hour:minute in `timezone`.
    """
    scheduler.add_job(
        func,
        CronTrigger(hour=hour, minute=minute, timezone=timezone or "UTC"),
        args=list(args),
        id=job_id,
        replace_existing=True,
        jobstore="memory",
        coalesce=True,
        max_instances=1,
    )
    logger.info("%s: scheduled daily at %02d:%02d (tz=%s)", job_id, hour, minute, timezone or "UTC")


def shutdown_scheduler(scheduler: Optional[AsyncIOScheduler], wait: bool = False):
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=wait)
