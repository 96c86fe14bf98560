from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from models.appointment import Appointment, ConfirmationStatus
from helpers.appointment_store import AppointmentStore
from helpers.config import RelayConfig
from helpers.ghl_client import GhlCalendarClient, GhlError
from helpers.Normalizers import DATE_RE, TIME_12H_RE, build_slot, normalize_phone

router = APIRouter()
logger = logging.getLogger("booking")


# ───────── Pydantic I/O ─────────

class BookingRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    phone: str = Field(..., min_length=6, max_length=32, description="any format; stored as E.164")
    date: str = Field(..., description="YYYY-MM-DD")
    time: str = Field(..., description="H:MM AM/PM, e.g. '2:30 PM'")
    service: str = Field(..., min_length=1, max_length=200)

    @field_validator("name", "service", mode="before")
    @classmethod
    def _strip(cls, v):
        return str(v or "").strip()

    @field_validator("date")
    @classmethod
    def _date(cls, v: str) -> str:
        v = (v or "").strip()
        if not DATE_RE.match(v):
            raise ValueError("Date must be YYYY-MM-DD")
        return v

    @field_validator("time")
    @classmethod
    def _time(cls, v: str) -> str:
        v = " ".join((v or "").split()).upper()
        if not TIME_12H_RE.match(v):
            raise ValueError("Time must be H:MM AM/PM")
        return v


class AppointmentOut(BaseModel):
    id: UUID
    external_id: Optional[str] = None
    customer_name: str
    service: str
    phone: str
    timezone: str
    start_at: datetime
    end_at: Optional[datetime] = None
    confirmation_status: ConfirmationStatus
    call_attempts: int
    last_outcome: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# ───────── dependencies ─────────

def get_store(request: Request) -> AppointmentStore:
    return request.app.state.store


def get_config(request: Request) -> RelayConfig:
    return request.app.state.config


def get_calendar(request: Request) -> Optional[GhlCalendarClient]:
    return getattr(request.app.state, "calendar", None)


# ───────── routes ─────────

@router.post("/check-and-book", response_model=AppointmentOut, status_code=201)
async def check_and_book(
    payload: BookingRequest,
    store: AppointmentStore = Depends(get_store),
    config: RelayConfig = Depends(get_config),
    calendar: Optional[GhlCalendarClient] = Depends(get_calendar),
):
    phone = normalize_phone(payload.phone)
    if len(phone) < 8:
        raise HTTPException(status_code=422, detail="Phone number is not valid")

    try:
        start_at, end_at = build_slot(payload.date, payload.time, config.business_timezone, config.appointment_duration_minutes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    external_id = None
    calendar_id = config.service_calendars.get(payload.service)
    if calendar is not None:
        if not calendar_id:
            raise HTTPException(status_code=422, detail=f"Unknown service: {payload.service}")
        try:
            if not await calendar.is_slot_free(calendar_id, start_at):
                raise HTTPException(status_code=409, detail="Time slot not available")
            external_id = await calendar.create_appointment(calendar_id, payload.name, phone, start_at, end_at)
        except GhlError as e:
            raise HTTPException(status_code=502, detail=f"Calendar backend error: {e.detail}")
        except httpx.HTTPError as e:
            logger.error("calendar backend unreachable: %s", e)
            raise HTTPException(status_code=502, detail="Calendar backend unreachable")

    appt = await store.create(
        external_id=external_id,
        calendar_id=calendar_id,
        customer_name=payload.name,
        service=payload.service,
        phone=phone,
        timezone=config.business_timezone,
        start_at=start_at,
        end_at=end_at,
    )
    logger.info("booked %s (%s) for %s at %s", appt.id, payload.service, phone, start_at.isoformat())
    return appt


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
async def get_appointment(appointment_id: str, store: AppointmentStore = Depends(get_store)):
    appt: Optional[Appointment] = await store.get(appointment_id)
    if not appt:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return appt
