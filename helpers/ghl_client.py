# helpers/ghl_client.py
import logging
from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("ghl")


class GhlError(Exception):
    def __init__(self, status_code: int, detail: Any):
        super().__init__(f"GoHighLevel error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _same_instant(a: str, b: datetime) -> bool:
    try:
        return datetime.fromisoformat(a.replace("Z", "+00:00")) == b
    except ValueError:
        return False


class GhlCalendarClient:
    """Thin GoHighLevel v1 appointments client (slots, create, status)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://rest.gohighlevel.com/v1",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
            r = await client.request(method, f"{self.base_url}{path}", headers=self.get_headers(), **kwargs)
        if r.status_code not in (200, 201):
            try:
                detail = r.json()
            except ValueError:
                detail = r.text
            logger.error("%s %s -> %s: %s", method, path, r.status_code, detail)
            raise GhlError(r.status_code, detail)
        return r.json() if r.content else {}

    async def free_slots(self, calendar_id: str, day_start: datetime) -> List[str]:
        """ISO slot strings offered for the local day that starts at `day_start`."""
        start = datetime.combine(day_start.date(), time.min, tzinfo=day_start.tzinfo)
        end = start + timedelta(days=1) - timedelta(seconds=1)
        data = await self._request(
            "GET",
            "/appointments/slots",
            params={"calendarId": calendar_id, "startDate": _ms(start), "endDate": _ms(end)},
        )
        return list((data.get(start.date().isoformat()) or {}).get("slots") or [])

    async def is_slot_free(self, calendar_id: str, start_at: datetime) -> bool:
        slots = await self.free_slots(calendar_id, start_at)
        return any(_same_instant(s, start_at) for s in slots)

    async def create_appointment(
        self,
        calendar_id: str,
        name: str,
        phone: str,
        start_at: datetime,
        end_at: datetime,
    ) -> str:
        payload = {
            "calendarId": calendar_id,
            "meetingLocationType": "custom",
            "meetingLocationId": "default",
            "appointmentStatus": "new",
            "name": name,
            "phone": phone,
            "startTime": start_at.isoformat(),
            "endTime": end_at.isoformat(),
            "ignoreFreeSlotValidation": False,
        }
        data = await self._request("POST", "/appointments/", json=payload)
        appt_id = data.get("id")
        if not appt_id:
            raise GhlError(502, f"create response missing id: {data}")
        logger.info("created GHL appointment %s on calendar %s", appt_id, calendar_id)
        return appt_id

    async def update_status(self, external_id: str, status: str) -> None:
        await self._request("PUT", f"/appointments/{external_id}/status", json={"status": status})
        logger.info("GHL appointment %s -> %s", external_id, status)
