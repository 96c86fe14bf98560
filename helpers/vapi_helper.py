# helpers/vapi_helper.py
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger("vapi")


def _mask(val: Optional[str], keep: int = 4) -> str:
    if not val:
        return "unset"
    return f"{val[:keep]}…{val[-keep:] if len(val) > keep else ''}"


@dataclass
class DispatchResult:
    ok: bool
    call_id: Optional[str] = None
    error: Optional[str] = None


class CallDispatcher(ABC):
    @abstractmethod
    async def place_call(
        self,
        phone: str,
        script: str,
        callback_url: str,
        status_callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """Start one outbound call. Must not raise on provider errors."""


class VapiCallDispatcher(CallDispatcher):
    """
    Places confirmation calls through Vapi's `POST /call`.

    The assistant configured in Vapi reads `{{script}}` as its first message and
    posts the caller's answer to `{{confirmation_url}}`. Status and
    end-of-call-report server messages go to the per-call server URL.
    """

    def __init__(
        self,
        api_key: str,
        assistant_id: str,
        phone_number_id: str,
        base_url: str = "https://api.vapi.ai",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.assistant_id = assistant_id
        self.phone_number_id = phone_number_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        logger.info("vapi dispatcher ready (assistant=%s, key=%s)", assistant_id, _mask(api_key))

    def get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(
        self,
        phone: str,
        script: str,
        callback_url: str,
        status_callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return {
            "name": "Appointment confirmation",
            "assistantId": self.assistant_id,
            "phoneNumberId": self.phone_number_id,
            "customer": {
                "numberE164CheckEnabled": True,
                "number": phone,
            },
            "assistantOverrides": {
                "firstMessage": script,
                "variableValues": {
                    "script": script,
                    "confirmation_url": callback_url,
                    **{k: str(v) for k, v in (metadata or {}).items()},
                },
                "server": {"url": status_callback_url},
            },
            "metadata": {
                **(metadata or {}),
                "confirmationUrl": callback_url,
                "statusCallbackUrl": status_callback_url,
            },
        }

    async def place_call(self, phone, script, callback_url, status_callback_url, metadata=None) -> DispatchResult:
        payload = self.build_payload(phone, script, callback_url, status_callback_url, metadata)
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
                resp = await client.post(f"{self.base_url}/call", json=payload, headers=self.get_headers())
        except httpx.HTTPError as e:
            logger.error("vapi request failed for %s: %s: %s", phone, type(e).__name__, e)
            return DispatchResult(ok=False, error=f"{type(e).__name__}: {e}")

        if resp.status_code not in (200, 201):
            try:
                msg = resp.json().get("message", resp.text)
            except ValueError:
                msg = resp.text
            logger.error("VAPI error (%s): %s", resp.status_code, msg)
            return DispatchResult(ok=False, error=f"HTTP {resp.status_code}: {msg}")

        data = resp.json()
        call_id = data.get("id")
        if not call_id:
            logger.error("VAPI response missing call ID: %s", data)
            return DispatchResult(ok=False, error="response missing call id")

        logger.info("call placed: number=%s call_id=%s", phone, call_id)
        return DispatchResult(ok=True, call_id=call_id)
