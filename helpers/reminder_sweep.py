# helpers/reminder_sweep.py
import asyncio
import logging
from collections import Counter
from datetime import datetime, time, timedelta
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from models.appointment import Appointment, ConfirmationStatus
from helpers.appointment_store import AppointmentStore
from helpers.confirmation import ConfirmationService, ResultCode, TransitionResult

logger = logging.getLogger("reminders")


def tomorrow_range(now: datetime, tz_name: str) -> Tuple[datetime, datetime]:
    """[00:00, 24:00) of the next local day in tz_name."""
    tz = ZoneInfo(tz_name)
    day = now.astimezone(tz).date() + timedelta(days=1)
    start = datetime.combine(day, time.min, tzinfo=tz)
    return start, datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)


def _due(appt: Appointment, max_attempts: int) -> bool:
    # anything already called is owned by the retry path
    return (
        appt.confirmation_status == ConfirmationStatus.PENDING
        and appt.last_call_id is None
        and appt.call_attempts < max_attempts
    )


async def run_reminder_sweep(
    service: ConfirmationService,
    store: AppointmentStore,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    """
    Call every pending appointment scheduled for tomorrow, once.
    One failing appointment never aborts the batch.
    """
    now = now or service.clock()
    if not service.within_business_hours(now):
        logger.info("sweep skipped: outside call window")
        return {"result": ResultCode.DEFERRED.value, "total": 0, "counts": {}}

    start, end = tomorrow_range(now, service.config.business_timezone)
    rows = await store.get_by_window(start, end, statuses=[ConfirmationStatus.PENDING])
    todo = [a for a in rows if _due(a, service.config.max_attempts)]
    logger.info("sweep %s..%s: %s pending, %s due", start.isoformat(), end.isoformat(), len(rows), len(todo))

    sem = asyncio.Semaphore(service.config.sweep_parallel)

    async def _one(appt: Appointment) -> Optional[TransitionResult]:
        async with sem:
            try:
                return await service.initiate_confirmation(appt, now=now)
            except Exception:
                logger.exception("sweep: appointment %s failed", appt.id)
                return None

    results: List[Optional[TransitionResult]] = await asyncio.gather(*[_one(a) for a in todo])
    counts = Counter(r.code.value if r is not None else "error" for r in results)
    logger.info("sweep done: %s", dict(counts))
    return {
        "result": "completed",
        "total": len(todo),
        "counts": dict(counts),
        "appointments": [r.as_dict() for r in results if r is not None],
    }


async def send_reminder_for(
    service: ConfirmationService,
    appointment_id: str,
    now: Optional[datetime] = None,
) -> TransitionResult:
    appt = await service.store.get(appointment_id)
    if appt is None:
        return TransitionResult(ResultCode.NOT_FOUND, appointment_id=appointment_id, detail="appointment not found")
    return await service.initiate_confirmation(appt, now=now)


async def run_scheduled_sweep(service: ConfirmationService) -> None:
    """Daily cron entry point."""
    await run_reminder_sweep(service, service.store)


async def reschedule_retries_on_startup(service: ConfirmationService, now: Optional[datetime] = None) -> int:
    """
    Startup hook: re-create retry jobs for pending appointments that still
    have `next_retry_at` set. Overdue retries run right away.
    """
    if service.retry_scheduler is None:
        return 0
    now = now or service.clock()
    rows = await service.store.get_scheduled_retries()
    for appt in rows:
        service.retry_scheduler.schedule(str(appt.id), max(appt.next_retry_at, now))
    logger.info("re-armed %s pending retries", len(rows))
    return len(rows)
