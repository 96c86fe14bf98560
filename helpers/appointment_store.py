"""
Appointment store adapter.

The confirmation flow only talks to `AppointmentStore`; the Tortoise-backed
implementation is what the app wires in. Every status write is a conditional
update on the expected prior state, so a stale transition can never overwrite
a newer one.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from models.appointment import Appointment, ConfirmationStatus, OPEN_STATUSES
from models.call_log import CallLog
from models.message import MessageRecord
from helpers.Normalizers import looks_like_uuid, normalize_phone

logger = logging.getLogger("reminders.store")


class AmbiguousCorrelationError(LookupError):
    """More than one open appointment matches a phone-number correlation key."""

    def __init__(self, key: str, ids: List[str]):
        super().__init__(f"{len(ids)} open appointments match {key!r}")
        self.key = key
        self.ids = ids


class AppointmentStore(ABC):
    @abstractmethod
    async def create(self, **fields) -> Appointment:
        ...

    @abstractmethod
    async def get(self, appointment_id: str) -> Optional[Appointment]:
        ...

    @abstractmethod
    async def get_by_window(
        self,
        start: datetime,
        end: datetime,
        statuses: Optional[Iterable[ConfirmationStatus]] = None,
    ) -> List[Appointment]:
        ...

    @abstractmethod
    async def get_by_correlation_key(
        self,
        key: str,
        statuses: Optional[Iterable[ConfirmationStatus]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Appointment]:
        """
        Resolve an appointment id or a phone number to one record.

        Phone lookups only consider records in `statuses` (open statuses by
        default) whose start time falls in the lookup window around `now`, and
        raise AmbiguousCorrelationError instead of guessing when several match.
        """

    @abstractmethod
    async def get_scheduled_retries(self) -> List[Appointment]:
        """Pending appointments that still have a retry call due."""

    @abstractmethod
    async def update_status(
        self,
        appointment_id: str,
        expected_status: ConfirmationStatus,
        new_status: ConfirmationStatus,
        attempts: int,
        expected_attempts: Optional[int] = None,
        **extra,
    ) -> bool:
        """Returns False on conflict (the row was not in the expected state)."""

    @abstractmethod
    async def append_log(
        self,
        appointment: Optional[Appointment],
        event: str,
        attempt: int = 0,
        phone: Optional[str] = None,
        call_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def record_message(
        self,
        appointment: Optional[Appointment],
        direction: str,
        to_number: str,
        from_number: Optional[str],
        body: str,
        sid: Optional[str] = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> None:
        ...


class TortoiseAppointmentStore(AppointmentStore):
    def __init__(self, lookup_window_days: int = 2):
        self.lookup_window_days = lookup_window_days

    async def create(self, **fields) -> Appointment:
        fields.setdefault("confirmation_status", ConfirmationStatus.PENDING)
        fields.setdefault("call_attempts", 0)
        if fields.get("phone"):
            fields["phone"] = normalize_phone(fields["phone"])
        # stored in UTC; the local zone is kept in `timezone`
        for k in ("start_at", "end_at"):
            if fields.get(k) is not None:
                fields[k] = fields[k].astimezone(timezone.utc)
        appt = await Appointment.create(**fields)
        logger.info("appointment %s created for %s at %s", appt.id, appt.phone, appt.start_at)
        return appt

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        if not looks_like_uuid(appointment_id):
            return None
        return await Appointment.get_or_none(id=appointment_id.strip())

    async def get_by_window(self, start, end, statuses=None) -> List[Appointment]:
        qs = Appointment.filter(start_at__gte=start.astimezone(timezone.utc), start_at__lt=end.astimezone(timezone.utc))
        if statuses is not None:
            qs = qs.filter(confirmation_status__in=[s.value for s in statuses])
        return await qs.order_by("start_at", "id")

    async def get_by_correlation_key(self, key, statuses=None, now=None) -> Optional[Appointment]:
        key = (key or "").strip()
        if not key:
            return None
        if looks_like_uuid(key):
            return await Appointment.get_or_none(id=key)

        phone = normalize_phone(key)
        allowed = list(statuses) if statuses is not None else list(OPEN_STATUSES)
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        # appointments from earlier today still count; the reminder goes out the day before
        rows = await Appointment.filter(
            phone=phone,
            confirmation_status__in=[s.value for s in allowed],
            start_at__gte=now - timedelta(days=1),
            start_at__lt=now + timedelta(days=self.lookup_window_days),
        ).order_by("start_at")

        if not rows:
            return None
        if len(rows) > 1:
            # a record that is waiting on an SMS reply wins over one still being called
            waiting = [r for r in rows if r.confirmation_status == ConfirmationStatus.SMS_FALLBACK_SENT]
            if len(waiting) == 1:
                return waiting[0]
            ids = [str(r.id) for r in rows]
            logger.warning("ambiguous phone correlation %s -> %s", phone, ids)
            raise AmbiguousCorrelationError(phone, ids)
        return rows[0]

    async def get_scheduled_retries(self) -> List[Appointment]:
        return await Appointment.filter(
            confirmation_status=ConfirmationStatus.PENDING.value,
            next_retry_at__isnull=False,
        ).order_by("next_retry_at")

    async def update_status(
        self,
        appointment_id,
        expected_status,
        new_status,
        attempts,
        expected_attempts=None,
        **extra,
    ) -> bool:
        qs = Appointment.filter(id=appointment_id, confirmation_status=expected_status.value)
        if expected_attempts is not None:
            qs = qs.filter(call_attempts=expected_attempts)
        # the update below bypasses save(), so auto_now has to be set by hand
        updated = await qs.update(
            confirmation_status=new_status.value,
            call_attempts=attempts,
            updated_at=datetime.now(timezone.utc),
            **extra,
        )
        if not updated:
            logger.info(
                "conflict on %s: expected %s/attempts=%s, wanted %s/attempts=%s",
                appointment_id, expected_status.value, expected_attempts, new_status.value, attempts,
            )
        return bool(updated)

    async def append_log(self, appointment, event, attempt=0, phone=None, call_id=None, detail=None) -> None:
        await CallLog.create(
            appointment=appointment,
            event=event,
            attempt=attempt,
            phone=phone or (appointment.phone if appointment else None),
            call_id=call_id,
            detail=detail,
        )

    async def record_message(
        self, appointment, direction, to_number, from_number, body, sid=None, success=True, error=None
    ) -> None:
        await MessageRecord.create(
            appointment=appointment,
            direction=direction,
            to_number=to_number,
            from_number=from_number,
            body=body,
            sid=sid,
            success=success,
            error=error,
        )
