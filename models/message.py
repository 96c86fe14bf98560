from tortoise import fields
from tortoise.models import Model


class MessageRecord(Model):
    id = fields.IntField(pk=True)
    appointment = fields.ForeignKeyField(
        "models.Appointment", related_name="message_records", null=True, on_delete=fields.SET_NULL
    )

    direction = fields.CharField(max_length=8, default="outbound")  # outbound|inbound
    to_number = fields.CharField(max_length=32)
    from_number = fields.CharField(max_length=32, null=True)
    body = fields.TextField()
    sid = fields.CharField(max_length=255, null=True)
    success = fields.BooleanField(default=False)
    error = fields.TextField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "message_records"
        indexes = (("to_number", "created_at"),)
