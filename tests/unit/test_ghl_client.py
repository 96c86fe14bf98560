"""Unit tests for the GoHighLevel calendar client using httpx.MockTransport"""
import json
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import httpx
import pytest

from helpers.ghl_client import GhlCalendarClient, GhlError

NY = ZoneInfo("America/New_York")


def _client(handler):
    return GhlCalendarClient("ghl_key", base_url="https://ghl.test/v1", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_free_slots_queries_whole_local_day():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"2030-03-05": {"slots": ["2030-03-05T10:00:00-05:00", "2030-03-05T14:00:00-05:00"]}})

    slots = await _client(handler).free_slots("cal_1", datetime(2030, 3, 5, 14, 0, tzinfo=NY))

    assert slots == ["2030-03-05T10:00:00-05:00", "2030-03-05T14:00:00-05:00"]
    assert seen["path"] == "/v1/appointments/slots"
    assert seen["params"]["calendarId"] == "cal_1"
    start_ms = int(datetime(2030, 3, 5, tzinfo=NY).timestamp() * 1000)
    assert seen["params"]["startDate"] == str(start_ms)


@pytest.mark.asyncio
async def test_is_slot_free_compares_instants():
    def handler(request):
        return httpx.Response(200, json={"2030-03-05": {"slots": ["2030-03-05T19:00:00Z"]}})

    client = _client(handler)

    assert await client.is_slot_free("cal_1", datetime(2030, 3, 5, 14, 0, tzinfo=NY))
    assert not await client.is_slot_free("cal_1", datetime(2030, 3, 5, 15, 0, tzinfo=NY))


@pytest.mark.asyncio
async def test_is_slot_free_no_slots_that_day():
    def handler(request):
        return httpx.Response(200, json={})

    assert not await _client(handler).is_slot_free("cal_1", datetime(2030, 3, 5, 14, 0, tzinfo=NY))


@pytest.mark.asyncio
async def test_create_appointment_returns_id():
    seen = {}

    def handler(request: httpx.Request):
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "ghl_appt_1"})

    start = datetime(2030, 3, 5, 14, 0, tzinfo=NY)
    appt_id = await _client(handler).create_appointment("cal_1", "Jane", "+15551234567", start, start + timedelta(minutes=30))

    assert appt_id == "ghl_appt_1"
    assert seen["method"] == "POST"
    assert seen["body"]["calendarId"] == "cal_1"
    assert seen["body"]["appointmentStatus"] == "new"
    assert seen["body"]["startTime"] == "2030-03-05T14:00:00-05:00"


@pytest.mark.asyncio
async def test_create_appointment_error_raises():
    def handler(request):
        return httpx.Response(422, json={"msg": "slot no longer available"})

    start = datetime(2030, 3, 5, 14, 0, tzinfo=NY)
    with pytest.raises(GhlError) as exc:
        await _client(handler).create_appointment("cal_1", "Jane", "+15551234567", start, start)

    assert exc.value.status_code == 422
    assert exc.value.detail == {"msg": "slot no longer available"}


@pytest.mark.asyncio
async def test_update_status_puts_status():
    seen = {}

    def handler(request: httpx.Request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"succeded": True})

    await _client(handler).update_status("ghl_appt_1", "confirmed")

    assert seen == {"method": "PUT", "path": "/v1/appointments/ghl_appt_1/status", "body": {"status": "confirmed"}}
