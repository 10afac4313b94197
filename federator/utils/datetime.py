from datetime import datetime
from datetime import timezone

from dateutil.parser import isoparse


def parse_isoformat(isodate: str) -> datetime:
    return isoparse(isodate).astimezone(timezone.utc)


def maybe_parse_isoformat(isodate: str | None) -> datetime | None:
    if not isinstance(isodate, str):
        return None

    try:
        return parse_isoformat(isodate).replace(microsecond=0)
    except (ValueError, OverflowError):
        return None


def now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    # SQLite drops the tzinfo
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
