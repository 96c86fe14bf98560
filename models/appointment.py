from enum import Enum
from tortoise import fields, models


class ConfirmationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    RESCHEDULE_REQUESTED = "reschedule_requested"
    SMS_FALLBACK_SENT = "sms_fallback_sent"


TERMINAL_STATUSES = {
    ConfirmationStatus.CONFIRMED,
    ConfirmationStatus.CANCELLED,
    ConfirmationStatus.RESCHEDULE_REQUESTED,
}

# statuses that still accept a confirmation reply
OPEN_STATUSES = {ConfirmationStatus.PENDING, ConfirmationStatus.SMS_FALLBACK_SENT}


class Appointment(models.Model):
    id = fields.UUIDField(pk=True)

    # id in the calendar backend (GoHighLevel), when mirrored there
    external_id = fields.CharField(max_length=191, null=True, index=True)
    calendar_id = fields.CharField(max_length=191, null=True)

    customer_name = fields.CharField(max_length=200)
    service = fields.CharField(max_length=200)

    phone = fields.CharField(max_length=32)
    timezone = fields.CharField(max_length=64)

    start_at = fields.DatetimeField()
    end_at = fields.DatetimeField(null=True)

    confirmation_status = fields.CharEnumField(ConfirmationStatus, default=ConfirmationStatus.PENDING)
    call_attempts = fields.IntField(default=0)

    last_call_id = fields.CharField(max_length=191, null=True)
    last_outcome = fields.CharField(max_length=64, null=True)
    # provider call whose outcome was last applied; repeats of it are dropped
    outcome_call_id = fields.CharField(max_length=191, null=True)
    next_retry_at = fields.DatetimeField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "appointments"
        indexes = (("phone", "start_at"), ("confirmation_status", "start_at"))

    @property
    def is_terminal(self) -> bool:
        return self.confirmation_status in TERMINAL_STATUSES
