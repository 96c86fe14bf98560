from dotenv import load_dotenv
load_dotenv()

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from controllers import appointment_controller, reminder_controller
from helpers.appointment_store import TortoiseAppointmentStore
from helpers.config import RelayConfig
from helpers.confirmation import ConfirmationService
from helpers.ghl_client import GhlCalendarClient
from helpers.reminder_sweep import reschedule_retries_on_startup, run_scheduled_sweep
from helpers.tortoise_config import close_db, init_db
from helpers.twilio_sms import TwilioSmsSender
from helpers.vapi_helper import VapiCallDispatcher
from scheduler.reminder_scheduler import (
    ApsRetryScheduler,
    create_scheduler,
    schedule_daily_job,
    shutdown_scheduler,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("reminders")


def build_service(config: RelayConfig, scheduler=None) -> ConfirmationService:
    store = TortoiseAppointmentStore(lookup_window_days=config.lookup_window_days)
    if not config.calls_enabled:
        logger.warning("VAPI_API_KEY / VAPI_ASSISTANT_ID / VAPI_PHONE_NUMBER_ID not set; calls will fail")
    dispatcher = VapiCallDispatcher(
        api_key=config.vapi_api_key or "",
        assistant_id=config.vapi_assistant_id or "",
        phone_number_id=config.vapi_phone_number_id or "",
        base_url=config.vapi_base_url,
    )
    sms_sender = None
    if config.sms_enabled:
        sms_sender = TwilioSmsSender(config.twilio_account_sid, config.twilio_auth_token, config.twilio_from_number)
    else:
        logger.warning("Twilio not configured; SMS fallback disabled")
    calendar = GhlCalendarClient(config.ghl_api_key, base_url=config.ghl_base_url) if config.calendar_enabled else None

    service = ConfirmationService(config, store, dispatcher, sms_sender=sms_sender, calendar=calendar)
    if scheduler is not None:
        service.retry_scheduler = ApsRetryScheduler(scheduler, handler=service.fire_retry)
    return service


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = RelayConfig.from_env()
    await init_db(config.database_url, generate_schemas=os.getenv("DB_GENERATE_SCHEMAS", "false").lower() == "true")

    scheduler = create_scheduler(config.business_timezone, config.aps_redis_url, config.aps_misfire_grace_seconds)
    service = build_service(config, scheduler)
    if config.sweep_enabled:
        schedule_daily_job(
            scheduler, "reminder-sweep", config.sweep_hour, config.sweep_minute,
            config.business_timezone, run_scheduled_sweep, service,
        )
    scheduler.start()
    await reschedule_retries_on_startup(service)

    app.state.config = config
    app.state.store = service.store
    app.state.calendar = service.calendar
    app.state.confirmation_service = service
    logger.info("reminder relay ready (calls=%s sms=%s calendar=%s)", config.calls_enabled, config.sms_enabled, config.calendar_enabled)
    try:
        yield
    finally:
        shutdown_scheduler(scheduler)
        await close_db()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(appointment_controller.router, prefix="/api", tags=["Appointments Controller"])
app.include_router(reminder_controller.router, prefix="/api", tags=["Reminders Controller"])


@app.get("/")
def greetings():
    return {"Message": "Appointment reminder relay is running"}
