import re
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

import phonenumbers
from phonenumbers.phonenumberutil import NumberParseException

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_12H_RE = re.compile(r"^([1-9]|1[0-2]):([0-5][0-9]) (AM|PM)$")
UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}$")


def normalize_phone(raw: str, default_region: str = "US") -> str:
    s = (raw or "").strip().lower()
    # convert 'plus' to '+' and remove spaces/hyphens/parentheses
    s = re.sub(r"\bplus\b", "+", s)
    s = re.sub(r"[^\d+]", "", s)
    if not s:
        return ""
    try:
        if not s.startswith("+"):
            num = phonenumbers.parse(s, default_region)
        else:
            num = phonenumbers.parse(s, None)
        if phonenumbers.is_valid_number(num):
            return phonenumbers.format_number(num, phonenumbers.PhoneNumberFormat.E164)
    except NumberParseException:
        pass
    # last resort: ensure '+' + digits
    if not s.startswith("+"):
        s = "+" + s
    return s


def looks_like_uuid(value: Optional[str]) -> bool:
    return bool(value) and bool(UUID_RE.match(value.strip()))


def normalize_text(raw: Optional[str]) -> str:
    # "  YES \n" -> "yes"
    return " ".join((raw or "").split()).lower()


def to_24h(time12h: str) -> str:
    """'10:00 AM' -> '10:00', '12:30 AM' -> '00:30'."""
    m = TIME_12H_RE.match((time12h or "").strip())
    if not m:
        raise ValueError("Time must be H:MM AM/PM")
    hh, mm, mod = int(m.group(1)), int(m.group(2)), m.group(3)
    if mod == "PM" and hh != 12:
        hh += 12
    if mod == "AM" and hh == 12:
        hh = 0
    return f"{hh:02d}:{mm:02d}"


def build_slot(date: str, time12h: str, tz_name: str, duration_minutes: int = 30) -> tuple[datetime, datetime]:
    """
    Booking input ('2025-11-03', '2:30 PM') -> tz-aware (start, end) in tz_name.
    Raises ValueError with a client-friendly message on bad input.
    """
    date = (date or "").strip()
    if not DATE_RE.match(date):
        raise ValueError("Date must be YYYY-MM-DD")
    hhmm = to_24h(time12h)
    try:
        naive = datetime.strptime(f"{date} {hhmm}", "%Y-%m-%d %H:%M")
    except ValueError:
        raise ValueError("Date must be a real calendar date")
    start = naive.replace(tzinfo=ZoneInfo(tz_name))
    return start, start + timedelta(minutes=duration_minutes)
