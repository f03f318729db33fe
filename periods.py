from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def month_start(day: date) -> date:
    return day.replace(day=1)


def add_months(day: date, count: int) -> date:
    month_index = (day.year * 12) + (day.month - 1) + count
    return date(month_index // 12, (month_index % 12) + 1, 1)


def month_end(day: date) -> date:
    return add_months(day, 1) - date.resolution


def month_period(key: str) -> Period:
    try:
        start = date.fromisoformat(f"{key}-01")
    except ValueError as exc:
        raise ValueError(f"Invalid month key: {key}") from exc
    return Period(month_key(start), start, month_end(start))


def resolve_period(
    month: Optional[str], *, today: Optional[date] = None
) -> Optional[Period]:
    """Period for a list filter value; None means no date filter."""
    if not month or month == "all":
        return None
    today = today or date.today()
    if month == "this_month":
        return month_period(month_key(today))
    if month == "last_month":
        return month_period(month_key(add_months(today, -1)))
    return month_period(month)


def today_in(timezone: str, *, now: Optional[datetime] = None) -> date:
    now = now or datetime.now(ZoneInfo(timezone))
    if now.tzinfo is not None:
        now = now.astimezone(ZoneInfo(timezone))
    return now.date()


def yesterday(timezone: str, *, now: Optional[datetime] = None) -> Period:
    day = today_in(timezone, now=now) - timedelta(days=1)
    return Period(day.isoformat(), day, day)
