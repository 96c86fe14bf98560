# helpers/config.py
import json
import os
from datetime import time
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _parse_hhmm(s: Optional[str], fallback: time) -> time:
    if not s:
        return fallback
    h, m = s.strip().split(":")
    return time(hour=int(h), minute=int(m))


class RelayConfig(BaseModel):
    """
    Everything the relay needs at runtime. Built once at startup and handed to
    the confirmation service and the provider adapters.
    """

    database_url: str = "sqlite://db.sqlite3"
    public_base_url: str = "http://localhost:8000"

    # Vapi (outbound calls)
    vapi_api_key: Optional[str] = None
    vapi_base_url: str = "https://api.vapi.ai"
    vapi_assistant_id: Optional[str] = None
    vapi_phone_number_id: Optional[str] = None

    # Twilio (SMS fallback)
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None
    validate_twilio_signature: bool = False

    # GoHighLevel (calendar backend)
    ghl_api_key: Optional[str] = None
    ghl_base_url: str = "https://rest.gohighlevel.com/v1"
    service_calendars: Dict[str, str] = Field(default_factory=dict)
    appointment_duration_minutes: int = 30

    # call window + retry policy
    business_timezone: str = "America/New_York"
    business_hours_start: time = time(9, 0)
    business_hours_end: time = time(18, 0)
    max_attempts: int = Field(2, ge=1)
    retry_delay_minutes: int = Field(120, ge=1)
    retry_respects_business_hours: bool = False
    lookup_window_days: int = 2

    # sweep
    sweep_enabled: bool = False
    sweep_hour: int = 10
    sweep_minute: int = 0
    sweep_parallel: int = Field(5, ge=1, le=50)

    # APScheduler
    aps_redis_url: Optional[str] = None
    aps_misfire_grace_seconds: int = 60

    @field_validator("public_base_url", "vapi_base_url", "ghl_base_url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return (v or "").strip().rstrip("/")

    @property
    def calls_enabled(self) -> bool:
        return bool(self.vapi_api_key and self.vapi_assistant_id and self.vapi_phone_number_id)

    @property
    def sms_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)

    @property
    def calendar_enabled(self) -> bool:
        return bool(self.ghl_api_key)

    @classmethod
    def from_env(cls) -> "RelayConfig":
        raw_calendars = os.getenv("GHL_SERVICE_CALENDARS", "").strip()
        try:
            calendars = json.loads(raw_calendars) if raw_calendars else {}
        except json.JSONDecodeError as e:
            raise ValueError(f"GHL_SERVICE_CALENDARS must be a JSON object: {e}") from e

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite://db.sqlite3"),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
            vapi_api_key=os.getenv("VAPI_API_KEY"),
            vapi_base_url=os.getenv("VAPI_BASE_URL", "https://api.vapi.ai"),
            vapi_assistant_id=os.getenv("VAPI_ASSISTANT_ID"),
            vapi_phone_number_id=os.getenv("VAPI_PHONE_NUMBER_ID"),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
            twilio_from_number=os.getenv("TWILIO_PHONE_NUMBER"),
            validate_twilio_signature=_env_bool("TWILIO_VALIDATE_SIGNATURE"),
            ghl_api_key=os.getenv("GHL_API_KEY"),
            ghl_base_url=os.getenv("GHL_BASE_URL", "https://rest.gohighlevel.com/v1"),
            service_calendars=calendars,
            appointment_duration_minutes=int(os.getenv("APPOINTMENT_DURATION_MINUTES", "30")),
            business_timezone=os.getenv("BUSINESS_TIMEZONE", "America/New_York"),
            business_hours_start=_parse_hhmm(os.getenv("BUSINESS_HOURS_START"), time(9, 0)),
            business_hours_end=_parse_hhmm(os.getenv("BUSINESS_HOURS_END"), time(18, 0)),
            max_attempts=int(os.getenv("REMINDER_MAX_ATTEMPTS", "2")),
            retry_delay_minutes=int(os.getenv("REMINDER_RETRY_DELAY_MINUTES", "120")),
            retry_respects_business_hours=_env_bool("RETRY_RESPECTS_BUSINESS_HOURS"),
            lookup_window_days=int(os.getenv("REMINDER_LOOKUP_WINDOW_DAYS", "2")),
            sweep_enabled=_env_bool("REMINDER_SWEEP_ENABLED"),
            sweep_hour=int(os.getenv("REMINDER_SWEEP_HOUR", "10")),
            sweep_minute=int(os.getenv("REMINDER_SWEEP_MINUTE", "0")),
            sweep_parallel=int(os.getenv("REMINDER_SWEEP_PARALLEL", "5")),
            aps_redis_url=(os.getenv("APS_REDIS_URL", "").strip() or None),
            aps_misfire_grace_seconds=int(os.getenv("APS_MISFIRE_GRACE_SECONDS", "60")),
        )
