"""Unit tests for the reminder sweep (batch and single-target triggers)"""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from helpers.confirmation import ResultCode
from helpers.reminder_sweep import (
    reschedule_retries_on_startup,
    run_reminder_sweep,
    send_reminder_for,
    tomorrow_range,
)
from helpers.vapi_helper import DispatchResult
from models.appointment import ConfirmationStatus

NY = ZoneInfo("America/New_York")


def test_tomorrow_range_is_next_local_day():
    # 23:30 in New York is already the next day in UTC
    now = datetime(2030, 3, 4, 23, 30, tzinfo=NY)

    start, end = tomorrow_range(now, "America/New_York")

    assert start == datetime(2030, 3, 5, 0, 0, tzinfo=NY)
    assert end == datetime(2030, 3, 6, 0, 0, tzinfo=NY)


@pytest.mark.asyncio
async def test_sweep_calls_only_due_appointments(service, dispatcher, make_appointment, business_now):
    due = await make_appointment()
    await make_appointment(phone="+15550000002", confirmation_status=ConfirmationStatus.CONFIRMED)
    await make_appointment(phone="+15550000003", last_call_id="call-earlier")
    await make_appointment(phone="+15550000004", call_attempts=2)
    await make_appointment(phone="+15550000005", start_at=(business_now + timedelta(days=2)).replace(hour=10))

    summary = await run_reminder_sweep(service, service.store, now=business_now)

    assert summary["result"] == "completed"
    assert summary["total"] == 1
    assert summary["counts"] == {"dispatched": 1}
    dispatcher.place_call.assert_awaited_once()
    assert dispatcher.place_call.call_args.kwargs["metadata"]["appointmentId"] == str(due.id)


@pytest.mark.asyncio
async def test_sweep_outside_window_is_deferred(service, dispatcher, make_appointment, after_hours):
    await make_appointment()

    summary = await run_reminder_sweep(service, service.store, now=after_hours)

    assert summary["result"] == ResultCode.DEFERRED.value
    dispatcher.place_call.assert_not_awaited()


@pytest.mark.asyncio
async def test_sweep_isolates_failures(service, dispatcher, make_appointment, business_now):
    await make_appointment(phone="+15550000011")
    await make_appointment(phone="+15550000012")
    await make_appointment(phone="+15550000013")
    dispatcher.place_call.side_effect = [
        DispatchResult(ok=True, call_id="call-a"),
        RuntimeError("socket closed"),
        DispatchResult(ok=False, error="HTTP 400: bad number"),
    ]

    summary = await run_reminder_sweep(service, service.store, now=business_now)

    assert summary["total"] == 3
    assert summary["counts"] == {"dispatched": 1, "error": 1, "dispatch_failed": 1}
    assert dispatcher.place_call.await_count == 3


@pytest.mark.asyncio
async def test_sweep_respects_parallel_limit(service, dispatcher, make_appointment, business_now):
    service.config.sweep_parallel = 2
    for i in range(5):
        await make_appointment(phone=f"+1555000002{i}")

    in_flight = 0
    peak = 0

    async def _slow_call(*args, **kwargs):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return DispatchResult(ok=True, call_id="call-x")

    dispatcher.place_call = AsyncMock(side_effect=_slow_call)

    summary = await run_reminder_sweep(service, service.store, now=business_now)

    assert summary["counts"] == {"dispatched": 5}
    assert peak <= 2


@pytest.mark.asyncio
async def test_send_reminder_for_single_target(service, dispatcher, make_appointment):
    appt = await make_appointment()

    result = await send_reminder_for(service, str(appt.id))

    assert result.code == ResultCode.DISPATCHED
    dispatcher.place_call.assert_awaited_once()


@pytest.mark.asyncio
async def test_send_reminder_for_unknown(service):
    result = await send_reminder_for(service, "00000000-0000-0000-0000-000000000000")

    assert result.code == ResultCode.NOT_FOUND


@pytest.mark.asyncio
async def test_retries_are_rearmed_on_startup(service, retry_scheduler, make_appointment, business_now):
    overdue = await make_appointment(call_attempts=1, next_retry_at=business_now - timedelta(hours=1))
    upcoming = await make_appointment(
        phone="+15550000002", call_attempts=1, next_retry_at=business_now + timedelta(hours=1)
    )
    await make_appointment(phone="+15550000003")

    count = await reschedule_retries_on_startup(service)

    assert count == 2
    scheduled = {c.args[0]: c.args[1] for c in retry_scheduler.schedule.call_args_list}
    assert scheduled == {str(overdue.id): business_now, str(upcoming.id): business_now + timedelta(hours=1)}
