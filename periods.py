from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from billing import days_in_month, shift_months


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def month_period(year: int, month: int) -> Period:
    """Calendar month; ``month`` is 1-based."""
    return Period(
        f"{year:04d}-{month:02d}",
        date(year, month, 1),
        date(year, month, days_in_month(year, month)),
    )


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    slug = (period or "this_month").strip().lower()

    if slug == "all":
        # Installment parts are dated in future months.
        return Period("all", date(1970, 1, 1), date.max)
    if slug == "this_month":
        current = month_period(today.year, today.month)
        return Period("this_month", current.start, current.end)
    if slug == "last_month":
        previous = shift_months(today.replace(day=1), -1)
        last = month_period(previous.year, previous.month)
        return Period("last_month", last.start, last.end)
    if slug == "last_30_days":
        return Period("last_30_days", today - timedelta(days=29), today)
    if slug == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if slug == "custom":
        if not (start and end):
            raise ValueError("A custom period needs both start and end")
        custom = Period("custom", date.fromisoformat(start), date.fromisoformat(end))
        if custom.end < custom.start:
            raise ValueError("Period end is before its start")
        return custom

    # "YYYY-MM" selects one calendar month
    try:
        year_str, month_str = slug.split("-", 1)
        return month_period(int(year_str), int(month_str))
    except ValueError as exc:
        raise ValueError(f"Unknown period: {period!r}") from exc
