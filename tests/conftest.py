"""Shared fixtures: in-memory Tortoise database, fake providers, confirmation service"""
from datetime import datetime, time, timedelta
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

from helpers.appointment_store import TortoiseAppointmentStore
from helpers.config import RelayConfig
from helpers.confirmation import ConfirmationService
from helpers.tortoise_config import close_db, init_db
from helpers.twilio_sms import SendResult, SmsSender
from helpers.vapi_helper import CallDispatcher, DispatchResult
from scheduler.reminder_scheduler import RetryScheduler

NY = ZoneInfo("America/New_York")


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite schema per test"""
    await init_db("sqlite://:memory:", generate_schemas=True)
    yield
    await close_db()


@pytest.fixture
def config():
    return RelayConfig(
        public_base_url="https://relay.example.com/",
        vapi_api_key="vapi_test_key",
        vapi_assistant_id="asst_1",
        vapi_phone_number_id="pn_1",
        twilio_account_sid="ACtest",
        twilio_auth_token="twilio_token",
        twilio_from_number="+15550001111",
        business_timezone="America/New_York",
        max_attempts=2,
        retry_delay_minutes=120,
    )


@pytest.fixture
def business_now():
    """11:00 local on today's date, inside the 09:00-18:00 window"""
    return datetime.combine(datetime.now(NY).date(), time(11, 0), tzinfo=NY)


@pytest.fixture
def after_hours(business_now):
    return business_now.replace(hour=20)


@pytest.fixture
def dispatcher():
    mock = MagicMock(spec=CallDispatcher)
    mock.place_call = AsyncMock(return_value=DispatchResult(ok=True, call_id="call-1"))
    return mock


@pytest.fixture
def sms_sender():
    mock = MagicMock(spec=SmsSender)
    mock.from_number = "+15550001111"
    mock.send = AsyncMock(return_value=SendResult(ok=True, sid="SM123"))
    return mock


@pytest.fixture
def retry_scheduler():
    return MagicMock(spec=RetryScheduler)


@pytest.fixture
def store():
    return TortoiseAppointmentStore(lookup_window_days=2)


@pytest.fixture
def service(db, config, store, dispatcher, sms_sender, retry_scheduler, business_now):
    return ConfirmationService(
        config,
        store,
        dispatcher,
        sms_sender=sms_sender,
        retry_scheduler=retry_scheduler,
        clock=lambda: business_now,
    )


@pytest.fixture
def make_appointment(db, store, business_now):
    """Factory: a pending appointment tomorrow at 14:00 local unless overridden"""

    async def _make(**overrides):
        start = overrides.pop("start_at", (business_now + timedelta(days=1)).replace(hour=14))
        fields = {
            "customer_name": "Jane Doe",
            "service": "Dental Cleaning",
            "phone": "+15551234567",
            "timezone": "America/New_York",
            "start_at": start,
            "end_at": start + timedelta(minutes=30),
        }
        fields.update(overrides)
        return await store.create(**fields)

    return _make
