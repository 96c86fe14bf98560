"""
Confirmation state machine for appointment reminders.

pending ──reply──▶ confirmed | cancelled | reschedule_requested   (terminal)
   │
   └─no-answer/busy─▶ retry after a fixed delay, until call_attempts hits
                      max_attempts, then ─▶ sms_fallback_sent ──reply──▶ terminal

call_attempts counts failed calls and is bumped when the no-answer/busy
outcome arrives, never at dispatch. Every write is conditional on the state
that was read under the appointment's lock, so duplicate or racing webhooks
cannot resurrect a terminal status.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

import httpx

from models.appointment import Appointment, ConfirmationStatus
from helpers.appointment_store import AmbiguousCorrelationError, AppointmentStore
from helpers.config import RelayConfig
from helpers.ghl_client import GhlCalendarClient, GhlError
from helpers.Normalizers import normalize_text
from helpers.twilio_sms import SmsSender
from helpers.vapi_helper import CallDispatcher
from scheduler.reminder_scheduler import RetryScheduler

logger = logging.getLogger("reminders")

CALL_SCRIPT = (
    'Hi {name}, this is Mia confirming your {service} appointment on {when}. '
    'Say "yes" to confirm, "no" to cancel, or "reschedule."'
)
SMS_FALLBACK_BODY = "We tried calling to confirm your appointment tomorrow. Reply YES, NO, or RESCHEDULE."

REPLY_STATUSES: Dict[str, ConfirmationStatus] = {
    "yes": ConfirmationStatus.CONFIRMED,
    "y": ConfirmationStatus.CONFIRMED,
    "confirm": ConfirmationStatus.CONFIRMED,
    "c": ConfirmationStatus.CONFIRMED,
    "no": ConfirmationStatus.CANCELLED,
    "n": ConfirmationStatus.CANCELLED,
    "cancel": ConfirmationStatus.CANCELLED,
    "stop": ConfirmationStatus.CANCELLED,
    "reschedule": ConfirmationStatus.RESCHEDULE_REQUESTED,
    "r": ConfirmationStatus.RESCHEDULE_REQUESTED,
}

OUTCOME_ALIASES: Dict[str, str] = {
    "no-answer": "no-answer",
    "noanswer": "no-answer",
    "customer-did-not-answer": "no-answer",
    "voicemail": "no-answer",
    "busy": "busy",
    "user-busy": "busy",
    "target-busy": "busy",
    "customer-busy": "busy",
    "call-rejected": "busy",
    "completed": "completed",
    "customer-ended-call": "completed",
    "assistant-ended-call": "completed",
    "assistant-said-end-call-phrase": "completed",
}
FAILED_OUTCOMES = {"no-answer", "busy"}

# statuses pushed to the calendar backend; reschedule requests stay "new" there
CALENDAR_STATUSES = {
    ConfirmationStatus.CONFIRMED: "confirmed",
    ConfirmationStatus.CANCELLED: "cancelled",
}


class ResultCode(str, Enum):
    DISPATCHED = "dispatched"
    DEFERRED = "deferred"
    NOT_PENDING = "not_pending"
    MAX_ATTEMPTS = "max_attempts"
    DISPATCH_FAILED = "dispatch_failed"
    RETRY_SCHEDULED = "retry_scheduled"
    SMS_FALLBACK = "sms_fallback"
    SMS_FAILED = "sms_failed"
    NO_CHANGE = "no_change"
    IGNORED = "ignored"
    STATUS_CHANGED = "status_changed"
    ALREADY_FINAL = "already_final"
    UNRECOGNIZED = "unrecognized"
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"
    CONFLICT = "conflict"


OK_CODES = {
    ResultCode.DISPATCHED,
    ResultCode.RETRY_SCHEDULED,
    ResultCode.SMS_FALLBACK,
    ResultCode.NO_CHANGE,
    ResultCode.IGNORED,
    ResultCode.STATUS_CHANGED,
    ResultCode.ALREADY_FINAL,
}


@dataclass
class TransitionResult:
    code: ResultCode
    appointment_id: Optional[str] = None
    status: Optional[ConfirmationStatus] = None
    call_attempts: Optional[int] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code in OK_CODES

    @property
    def changed(self) -> bool:
        return self.code in (ResultCode.RETRY_SCHEDULED, ResultCode.SMS_FALLBACK, ResultCode.SMS_FAILED, ResultCode.STATUS_CHANGED)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.ok,
            "result": self.code.value,
            "changed": self.changed,
            "appointment_id": self.appointment_id,
            "status": self.status.value if self.status else None,
            "call_attempts": self.call_attempts,
            "detail": self.detail,
        }


def _result(code: ResultCode, appt: Optional[Appointment] = None, detail: Optional[str] = None, **overrides) -> TransitionResult:
    res = TransitionResult(
        code=code,
        appointment_id=str(appt.id) if appt is not None else None,
        status=appt.confirmation_status if appt is not None else None,
        call_attempts=appt.call_attempts if appt is not None else None,
        detail=detail,
    )
    for k, v in overrides.items():
        setattr(res, k, v)
    return res


def normalize_outcome(raw: Optional[str]) -> str:
    s = normalize_text(raw).replace("_", "-").replace(" ", "-")
    return OUTCOME_ALIASES.get(s, s or "unknown")


def parse_reply(raw: Optional[str]) -> Optional[ConfirmationStatus]:
    return REPLY_STATUSES.get(normalize_text(raw).strip(".!"))


class ConfirmationService:
    def __init__(
        self,
        config: RelayConfig,
        store: AppointmentStore,
        dispatcher: CallDispatcher,
        sms_sender: Optional[SmsSender] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
        calendar: Optional[GhlCalendarClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.store = store
        self.dispatcher = dispatcher
        self.sms_sender = sms_sender
        self.retry_scheduler = retry_scheduler
        self.calendar = calendar
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._tz = ZoneInfo(config.business_timezone)
        # entries disappear once no coroutine holds the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ───────── helpers ─────────

    def _lock_for(self, appointment_id: str) -> asyncio.Lock:
        lock = self._locks.get(appointment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[appointment_id] = lock
        return lock

    def within_business_hours(self, now: Optional[datetime] = None) -> bool:
        local = (now or self.clock()).astimezone(self._tz)
        return self.config.business_hours_start <= local.time() < self.config.business_hours_end

    def next_window_open(self, now: Optional[datetime] = None) -> datetime:
        local = (now or self.clock()).astimezone(self._tz)
        opening = datetime.combine(local.date(), self.config.business_hours_start, tzinfo=self._tz)
        if local >= opening:
            opening = datetime.combine(local.date() + timedelta(days=1), self.config.business_hours_start, tzinfo=self._tz)
        return opening.astimezone(timezone.utc)

    def callback_urls(self, appt: Appointment) -> Tuple[str, str]:
        base = f"{self.config.public_base_url}/api/reminders"
        return (
            f"{base}/handle-confirmation?appointmentId={appt.id}",
            f"{base}/webhooks/vapi?appointmentId={appt.id}",
        )

    def build_script(self, appt: Appointment) -> str:
        try:
            tz = ZoneInfo(appt.timezone) if appt.timezone else self._tz
        except (KeyError, ValueError):
            tz = self._tz
        local = appt.start_at.astimezone(tz)
        when = f"{local:%A, %B} {local.day} at {local.strftime('%I:%M %p').lstrip('0')}"
        return CALL_SCRIPT.format(name=appt.customer_name or "there", service=appt.service, when=when)

    async def _resolve(self, key: str, statuses) -> Tuple[Optional[Appointment], Optional[TransitionResult]]:
        try:
            appt = await self.store.get_by_correlation_key(key, statuses=statuses, now=self.clock())
        except AmbiguousCorrelationError as e:
            return None, TransitionResult(ResultCode.AMBIGUOUS, detail=f"{len(e.ids)} open appointments match this number")
        if appt is None:
            logger.info("no appointment for correlation key %r", key)
            return None, TransitionResult(ResultCode.NOT_FOUND, detail="appointment not found")
        return appt, None

    def _cancel_retry(self, appointment_id: str) -> None:
        if self.retry_scheduler is not None:
            self.retry_scheduler.cancel(appointment_id)

    # ───────── initiate ─────────

    async def initiate_confirmation(
        self,
        appointment: Appointment,
        now: Optional[datetime] = None,
        enforce_window: bool = True,
    ) -> TransitionResult:
        now = now or self.clock()
        if enforce_window and not self.within_business_hours(now):
            logger.info("appointment %s: outside call window at %s", appointment.id, now.isoformat())
            return _result(ResultCode.DEFERRED, appointment, detail="outside call window")

        appt_id = str(appointment.id)
        async with self._lock_for(appt_id):
            appt = await self.store.get(appt_id)
            if appt is None:
                return TransitionResult(ResultCode.NOT_FOUND, appointment_id=appt_id, detail="appointment not found")
            return await self._dispatch_locked(appt)

    async def _dispatch_locked(self, appt: Appointment) -> TransitionResult:
        if appt.confirmation_status != ConfirmationStatus.PENDING:
            return _result(ResultCode.NOT_PENDING, appt, detail=f"status is {appt.confirmation_status.value}")
        if appt.call_attempts >= self.config.max_attempts:
            return _result(ResultCode.MAX_ATTEMPTS, appt, detail="no call attempts left")

        call_no = appt.call_attempts + 1
        confirm_url, status_url = self.callback_urls(appt)
        result = await self.dispatcher.place_call(
            appt.phone,
            self.build_script(appt),
            confirm_url,
            status_url,
            metadata={"appointmentId": str(appt.id), "attempt": call_no},
        )
        if not result.ok:
            logger.warning("appointment %s: call %s failed: %s", appt.id, call_no, result.error)
            await self.store.append_log(appt, "call-failed", attempt=call_no, detail=result.error)
            return _result(ResultCode.DISPATCH_FAILED, appt, detail=result.error)

        # a reply may already have landed; the call id is informational either way
        await self.store.update_status(
            str(appt.id),
            ConfirmationStatus.PENDING,
            ConfirmationStatus.PENDING,
            appt.call_attempts,
            expected_attempts=appt.call_attempts,
            last_call_id=result.call_id,
            next_retry_at=None,
        )
        await self.store.append_log(appt, "call-sent", attempt=call_no, call_id=result.call_id)
        logger.info("appointment %s: confirmation call %s placed (%s)", appt.id, call_no, result.call_id)
        return _result(ResultCode.DISPATCHED, appt, detail=result.call_id)

    # ───────── call outcome ─────────

    async def on_call_outcome(
        self,
        correlation_key: str,
        outcome: Optional[str],
        call_id: Optional[str] = None,
    ) -> TransitionResult:
        norm = normalize_outcome(outcome)
        found, err = await self._resolve(correlation_key, statuses=[ConfirmationStatus.PENDING])
        if err is not None:
            return err

        appt_id = str(found.id)
        async with self._lock_for(appt_id):
            appt = await self.store.get(appt_id)
            if appt is None:
                return TransitionResult(ResultCode.NOT_FOUND, appointment_id=appt_id, detail="appointment not found")

            await self.store.append_log(appt, "call-outcome", attempt=appt.call_attempts, call_id=call_id, detail=norm)

            if norm == "completed":
                return _result(ResultCode.NO_CHANGE, appt, detail="call completed; waiting for reply")
            if norm not in FAILED_OUTCOMES:
                logger.info("appointment %s: ignoring call outcome %r", appt.id, outcome)
                return _result(ResultCode.IGNORED, appt, detail=f"unhandled outcome {norm}")
            if appt.confirmation_status != ConfirmationStatus.PENDING:
                return _result(ResultCode.IGNORED, appt, detail=f"status is {appt.confirmation_status.value}")
            if call_id and call_id == appt.outcome_call_id:
                return _result(ResultCode.IGNORED, appt, detail="duplicate outcome for this call")

            return await self._handle_failed_call_locked(appt, norm, call_id)

    async def _handle_failed_call_locked(self, appt: Appointment, outcome: str, call_id: Optional[str]) -> TransitionResult:
        prior = appt.call_attempts
        attempts = min(prior + 1, self.config.max_attempts)
        now = self.clock()

        if attempts < self.config.max_attempts:
            run_at = now + timedelta(minutes=self.config.retry_delay_minutes)
            ok = await self.store.update_status(
                str(appt.id),
                ConfirmationStatus.PENDING,
                ConfirmationStatus.PENDING,
                attempts,
                expected_attempts=prior,
                last_outcome=outcome,
                outcome_call_id=call_id,
                next_retry_at=run_at,
            )
            if not ok:
                return _result(ResultCode.CONFLICT, appt, detail="appointment changed concurrently")
            if self.retry_scheduler is not None:
                self.retry_scheduler.schedule(str(appt.id), run_at)
            await self.store.append_log(appt, "retry-scheduled", attempt=attempts, call_id=call_id, detail=run_at.isoformat())
            logger.info("appointment %s: %s, retry %s/%s at %s", appt.id, outcome, attempts + 1, self.config.max_attempts, run_at.isoformat())
            return _result(ResultCode.RETRY_SCHEDULED, appt, detail=run_at.isoformat(), call_attempts=attempts)

        # the conditional write happens before the send so only one caller ever texts
        ok = await self.store.update_status(
            str(appt.id),
            ConfirmationStatus.PENDING,
            ConfirmationStatus.SMS_FALLBACK_SENT,
            attempts,
            expected_attempts=prior,
            last_outcome=outcome,
            outcome_call_id=call_id,
            next_retry_at=None,
        )
        if not ok:
            return _result(ResultCode.CONFLICT, appt, detail="appointment changed concurrently")
        self._cancel_retry(str(appt.id))
        sent = await self._send_fallback_sms(appt, attempts)
        return _result(
            ResultCode.SMS_FALLBACK if sent else ResultCode.SMS_FAILED,
            appt,
            status=ConfirmationStatus.SMS_FALLBACK_SENT,
            call_attempts=attempts,
        )

    async def _send_fallback_sms(self, appt: Appointment, attempts: int) -> bool:
        if self.sms_sender is None:
            logger.error("appointment %s: SMS fallback needed but no SMS sender configured", appt.id)
            await self.store.append_log(appt, "sms-failed", attempt=attempts, detail="sms not configured")
            return False

        res = await self.sms_sender.send(appt.phone, SMS_FALLBACK_BODY)
        await self.store.record_message(
            appt, "outbound", appt.phone, self.sms_sender.from_number, SMS_FALLBACK_BODY,
            sid=res.sid, success=res.ok, error=res.error,
        )
        if not res.ok:
            logger.warning("appointment %s: fallback SMS failed: %s", appt.id, res.error)
            await self.store.append_log(appt, "sms-failed", attempt=attempts, detail=res.error)
            return False
        await self.store.append_log(appt, "sms-sent", attempt=attempts, detail=res.sid)
        logger.info("appointment %s: fallback SMS sent (%s)", appt.id, res.sid)
        return True

    # ───────── replies ─────────

    async def on_confirmation_reply(self, correlation_key: str, raw_reply: Optional[str]) -> TransitionResult:
        new_status = parse_reply(raw_reply)
        found, err = await self._resolve(correlation_key, statuses=None)
        if err is not None:
            return err

        appt_id = str(found.id)
        async with self._lock_for(appt_id):
            appt = await self.store.get(appt_id)
            if appt is None:
                return TransitionResult(ResultCode.NOT_FOUND, appointment_id=appt_id, detail="appointment not found")
            if appt.is_terminal:
                logger.info("appointment %s: reply %r after final status %s", appt.id, raw_reply, appt.confirmation_status.value)
                return _result(ResultCode.ALREADY_FINAL, appt)
            if new_status is None:
                return _result(ResultCode.UNRECOGNIZED, appt, detail=f"unrecognized reply {normalize_text(raw_reply)!r}")

            prior = appt.confirmation_status
            ok = await self.store.update_status(
                appt_id, prior, new_status, appt.call_attempts,
                expected_attempts=appt.call_attempts, next_retry_at=None,
            )
            if not ok:
                return _result(ResultCode.CONFLICT, appt, detail="appointment changed concurrently")

            self._cancel_retry(appt_id)
            await self.store.append_log(appt, "status-changed", attempt=appt.call_attempts, detail=f"{prior.value} -> {new_status.value}")
            logger.info("appointment %s: %s -> %s", appt.id, prior.value, new_status.value)

        await self._mirror_status(appt, new_status)
        return _result(ResultCode.STATUS_CHANGED, appt, status=new_status)

    async def _mirror_status(self, appt: Appointment, status: ConfirmationStatus) -> None:
        remote = CALENDAR_STATUSES.get(status)
        if self.calendar is None or not appt.external_id or remote is None:
            return
        try:
            await self.calendar.update_status(appt.external_id, remote)
        except (GhlError, httpx.HTTPError) as e:
            logger.warning("appointment %s: calendar status push failed: %s", appt.id, e)

    # ───────── deferred retry ─────────

    async def fire_retry(self, appointment_id: str) -> TransitionResult:
        """Entry point for the scheduled retry job. Re-checks state before calling."""
        appt = await self.store.get(appointment_id)
        if appt is None:
            logger.warning("retry for missing appointment %s dropped", appointment_id)
            return TransitionResult(ResultCode.NOT_FOUND, appointment_id=appointment_id, detail="appointment not found")

        if appt.confirmation_status != ConfirmationStatus.PENDING or appt.call_attempts >= self.config.max_attempts:
            await self.store.append_log(appt, "retry-skipped", attempt=appt.call_attempts, detail=appt.confirmation_status.value)
            logger.info("appointment %s: retry skipped (%s, attempts=%s)", appt.id, appt.confirmation_status.value, appt.call_attempts)
            code = ResultCode.NOT_PENDING if appt.confirmation_status != ConfirmationStatus.PENDING else ResultCode.MAX_ATTEMPTS
            return _result(code, appt)

        now = self.clock()
        if self.config.retry_respects_business_hours and not self.within_business_hours(now):
            run_at = self.next_window_open(now)
            if not await self._rearm_retry(appt, run_at):
                return _result(ResultCode.CONFLICT, appt, detail="appointment changed concurrently")
            logger.info("appointment %s: retry moved to %s", appt.id, run_at.isoformat())
            return _result(ResultCode.DEFERRED, appt, detail=run_at.isoformat())

        result = await self.initiate_confirmation(appt, now=now, enforce_window=False)
        if result.code == ResultCode.DISPATCH_FAILED:
            # the provider never took the call, so no outcome webhook will follow
            run_at = now + timedelta(minutes=self.config.retry_delay_minutes)
            if run_at < appt.start_at and await self._rearm_retry(appt, run_at):
                await self.store.append_log(appt, "retry-scheduled", attempt=appt.call_attempts, detail=run_at.isoformat())
                logger.warning("appointment %s: retry not placed (%s); trying again at %s", appt.id, result.detail, run_at.isoformat())
            else:
                logger.warning("appointment %s: retry not placed: %s", appt.id, result.detail)
        elif not result.ok:
            logger.warning("appointment %s: retry not placed: %s", appt.id, result.detail or result.code.value)
        return result

    async def _rearm_retry(self, appt: Appointment, run_at: datetime) -> bool:
        ok = await self.store.update_status(
            str(appt.id), ConfirmationStatus.PENDING, ConfirmationStatus.PENDING, appt.call_attempts,
            expected_attempts=appt.call_attempts, next_retry_at=run_at,
        )
        if ok and self.retry_scheduler is not None:
            self.retry_scheduler.schedule(str(appt.id), run_at)
        return ok
