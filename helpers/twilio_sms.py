# helpers/twilio_sms.py
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from starlette.concurrency import run_in_threadpool
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from twilio.rest import Client

logger = logging.getLogger("twilio")


def _sanitize_phone(p: Optional[str]) -> str:
    s = (p or "").strip()
    return "*" * (len(s) - 4) + s[-4:] if len(s) > 4 else s


@dataclass
class SendResult:
    ok: bool
    sid: Optional[str] = None
    error: Optional[str] = None


class SmsSender(ABC):
    from_number: Optional[str] = None

    @abstractmethod
    async def send(self, phone: str, body: str) -> SendResult:
        """Send one message. Must not raise on provider errors."""


class TwilioSmsSender(SmsSender):
    def __init__(self, account_sid: str, auth_token: str, from_number: str, client: Optional[Client] = None):
        self.from_number = from_number
        self.client = client or Client(account_sid, auth_token)

    async def send(self, phone: str, body: str) -> SendResult:
        def _send():
            return self.client.messages.create(body=body, from_=self.from_number, to=phone)

        try:
            msg = await run_in_threadpool(_send)
        except TwilioRestException as e:
            logger.error("[send] twilio_error to=%s code=%s msg=%s", _sanitize_phone(phone), e.code, e.msg)
            return SendResult(ok=False, error=f"{e.code}: {e.msg}")
        except Exception as e:
            logger.exception("[send] unexpected_error to=%s: %s", _sanitize_phone(phone), e)
            return SendResult(ok=False, error=repr(e))

        sid = getattr(msg, "sid", None)
        logger.info("[send] to=%s sid=%s", _sanitize_phone(phone), sid)
        return SendResult(ok=True, sid=sid)


def validate_twilio_signature(auth_token: Optional[str], url: str, form_data: Dict[str, str], signature: str) -> bool:
    if not auth_token:
        return False
    return RequestValidator(auth_token).validate(url, form_data, signature)
