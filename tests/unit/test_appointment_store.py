"""Unit tests for the Tortoise-backed appointment store"""
from datetime import timedelta

import pytest

from helpers.appointment_store import AmbiguousCorrelationError
from models.appointment import ConfirmationStatus
from models.call_log import CallLog
from models.message import MessageRecord


@pytest.mark.asyncio
async def test_create_normalizes_phone_and_defaults(make_appointment):
    appt = await make_appointment(phone="(555) 123-4567")

    assert appt.phone == "+15551234567"
    assert appt.confirmation_status == ConfirmationStatus.PENDING
    assert appt.call_attempts == 0
    assert appt.start_at.utcoffset() == timedelta(0)


@pytest.mark.asyncio
async def test_get_rejects_non_uuid(store, make_appointment):
    appt = await make_appointment()

    assert (await store.get(str(appt.id))).id == appt.id
    assert await store.get("not-a-uuid") is None
    assert await store.get("") is None


@pytest.mark.asyncio
async def test_get_by_window_filters_time_and_status(store, make_appointment, business_now):
    tomorrow = (business_now + timedelta(days=1)).replace(hour=0)
    inside = await make_appointment()
    await make_appointment(start_at=(business_now + timedelta(days=3)).replace(hour=14), phone="+15550000002")
    await make_appointment(confirmation_status=ConfirmationStatus.CONFIRMED, phone="+15550000003")

    rows = await store.get_by_window(tomorrow, tomorrow + timedelta(days=1), statuses=[ConfirmationStatus.PENDING])

    assert [r.id for r in rows] == [inside.id]

    everything = await store.get_by_window(tomorrow, tomorrow + timedelta(days=1))
    assert len(everything) == 2


@pytest.mark.asyncio
async def test_correlation_by_id_ignores_status(store, make_appointment):
    appt = await make_appointment(confirmation_status=ConfirmationStatus.CANCELLED)

    found = await store.get_by_correlation_key(str(appt.id))

    assert found.id == appt.id


@pytest.mark.asyncio
async def test_correlation_by_phone_only_sees_open(store, make_appointment):
    await make_appointment(confirmation_status=ConfirmationStatus.CONFIRMED)

    assert await store.get_by_correlation_key("+15551234567") is None

    open_one = await make_appointment(service="Checkup")
    found = await store.get_by_correlation_key("555-123-4567")
    assert found.id == open_one.id


@pytest.mark.asyncio
async def test_correlation_by_phone_outside_window(store, make_appointment, business_now):
    await make_appointment(start_at=(business_now + timedelta(days=10)).replace(hour=14))

    assert await store.get_by_correlation_key("+15551234567") is None


@pytest.mark.asyncio
async def test_correlation_by_phone_ambiguous(store, make_appointment, business_now):
    a = await make_appointment()
    b = await make_appointment(start_at=(business_now + timedelta(days=1)).replace(hour=16))

    with pytest.raises(AmbiguousCorrelationError) as exc:
        await store.get_by_correlation_key("+15551234567")

    assert sorted(exc.value.ids) == sorted([str(a.id), str(b.id)])


@pytest.mark.asyncio
async def test_correlation_empty_key(store, db):
    assert await store.get_by_correlation_key("   ") is None


@pytest.mark.asyncio
async def test_update_status_is_conditional(store, make_appointment):
    appt = await make_appointment()

    ok = await store.update_status(
        str(appt.id), ConfirmationStatus.PENDING, ConfirmationStatus.PENDING, 1, expected_attempts=0, last_outcome="busy"
    )
    assert ok

    # stale read: still thinks attempts == 0
    stale = await store.update_status(
        str(appt.id), ConfirmationStatus.PENDING, ConfirmationStatus.SMS_FALLBACK_SENT, 2, expected_attempts=0
    )
    assert not stale

    wrong_status = await store.update_status(
        str(appt.id), ConfirmationStatus.SMS_FALLBACK_SENT, ConfirmationStatus.CONFIRMED, 1
    )
    assert not wrong_status

    fresh = await store.get(str(appt.id))
    assert fresh.confirmation_status == ConfirmationStatus.PENDING
    assert fresh.call_attempts == 1
    assert fresh.last_outcome == "busy"


@pytest.mark.asyncio
async def test_terminal_status_cannot_be_overwritten(store, make_appointment):
    appt = await make_appointment(confirmation_status=ConfirmationStatus.CONFIRMED)

    ok = await store.update_status(str(appt.id), ConfirmationStatus.PENDING, ConfirmationStatus.CANCELLED, 0)

    assert not ok
    assert (await store.get(str(appt.id))).confirmation_status == ConfirmationStatus.CONFIRMED


@pytest.mark.asyncio
async def test_append_log_and_record_message(store, make_appointment):
    appt = await make_appointment()

    await store.append_log(appt, "call-sent", attempt=1, call_id="call-1")
    await store.record_message(appt, "outbound", appt.phone, "+15550001111", "hello", sid="SM1", success=True)

    log = await CallLog.get(appointment_id=appt.id)
    assert (log.event, log.attempt, log.call_id, log.phone) == ("call-sent", 1, "call-1", "+15551234567")
    msg = await MessageRecord.get(appointment_id=appt.id)
    assert (msg.direction, msg.sid, msg.success) == ("outbound", "SM1", True)


@pytest.mark.asyncio
async def test_append_log_rejects_unknown_event(store, make_appointment):
    appt = await make_appointment()

    with pytest.raises(ValueError):
        await store.append_log(appt, "call-teleported")


@pytest.mark.asyncio
async def test_log_event_is_normalized(store, make_appointment):
    appt = await make_appointment()

    await store.append_log(appt, "SMS_SENT", attempt=2)

    assert (await CallLog.get(appointment_id=appt.id)).event == "sms-sent"


@pytest.mark.asyncio
async def test_correlation_by_phone_uses_given_now(store, make_appointment, business_now):
    later = await make_appointment(start_at=(business_now + timedelta(days=10)).replace(hour=14))

    found = await store.get_by_correlation_key("+15551234567", now=business_now + timedelta(days=9))

    assert found.id == later.id


@pytest.mark.asyncio
async def test_get_scheduled_retries(store, make_appointment, business_now):
    due = await make_appointment(call_attempts=1, next_retry_at=business_now + timedelta(hours=2))
    await make_appointment(phone="+15550000002")
    await make_appointment(
        phone="+15550000003",
        confirmation_status=ConfirmationStatus.CONFIRMED,
        next_retry_at=business_now + timedelta(hours=1),
    )

    rows = await store.get_scheduled_retries()

    assert [r.id for r in rows] == [due.id]
