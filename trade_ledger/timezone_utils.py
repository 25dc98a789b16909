from __future__ import annotations

from datetime import date, datetime, time
from typing import Optional, Union

from zoneinfo import ZoneInfo

GST = ZoneInfo("Asia/Dubai")


DatetimeLike = Optional[Union[datetime, date]]


def now_gst() -> datetime:
    return datetime.now(tz=GST)


def today_gst() -> date:
    return now_gst().date()


def ensure_gst_datetime(value: DatetimeLike) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=GST)
    if value.tzinfo is None:
        # naive timestamps come back from SQLite; they were written in GST
        return value.replace(tzinfo=GST)
    return value.astimezone(GST)


def parse_business_date(raw: Union[str, date, datetime, None]) -> Optional[date]:
    """Accept YYYY-MM-DD or ISO datetimes from the boundary and return the GST calendar date."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        converted = ensure_gst_datetime(raw)
        return converted.date() if converted else None
    if isinstance(raw, date):
        return raw
    text = (raw or "").strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError("Invalid date format") from exc
    converted = ensure_gst_datetime(parsed)
    if converted is None:
        raise ValueError("Unable to convert date")
    return converted.date()
