# models/call_log.py
from tortoise.models import Model
from tortoise import fields

ALLOWED_EVENTS = {
    "call-sent",
    "call-failed",
    "call-outcome",
    "retry-scheduled",
    "retry-skipped",
    "sms-sent",
    "sms-failed",
    "status-changed",
}


def _normalize_event(value: str | None) -> str | None:
    if not value:
        return None
    v = value.strip().lower().replace("_", "-").replace(" ", "-")
    return v if v in ALLOWED_EVENTS else None


class CallLog(Model):
    """Append-only audit trail of everything the reminder flow did for an appointment."""

    id = fields.IntField(pk=True)
    appointment = fields.ForeignKeyField(
        "models.Appointment", related_name="call_logs", null=True, on_delete=fields.SET_NULL
    )

    ts = fields.DatetimeField(auto_now_add=True)
    event = fields.CharField(max_length=32, index=True)

    phone = fields.CharField(max_length=32, null=True)
    attempt = fields.IntField(default=0)

    # provider ids / reasons
    call_id = fields.CharField(max_length=191, null=True)
    detail = fields.TextField(null=True)

    class Meta:
        table = "call_logs"

    async def save(self, *args, **kwargs):
        norm = _normalize_event(self.event)
        if norm is None:
            raise ValueError(f"Invalid event '{self.event}'. Allowed: {sorted(ALLOWED_EVENTS)}")
        self.event = norm
        await super().save(*args, **kwargs)
