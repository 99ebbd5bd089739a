from datetime import date

import pytest

from periods import resolve_period


TODAY = date(2024, 3, 15)


def test_named_periods() -> None:
    assert resolve_period(None, None, None, today=TODAY).start == date(2024, 3, 1)
    assert resolve_period(None, None, None, today=TODAY).end == date(2024, 3, 31)

    last = resolve_period("last_month", None, None, today=TODAY)
    assert (last.start, last.end) == (date(2024, 2, 1), date(2024, 2, 29))

    january = resolve_period("last_month", None, None, today=date(2024, 1, 10))
    assert (january.start, january.end) == (date(2023, 12, 1), date(2023, 12, 31))

    recent = resolve_period("last_30_days", None, None, today=TODAY)
    assert recent.start == date(2024, 2, 15)
    assert recent.contains(TODAY)


def test_month_and_custom_periods() -> None:
    month = resolve_period("2024-02", None, None, today=TODAY)
    assert (month.start, month.end) == (date(2024, 2, 1), date(2024, 2, 29))

    custom = resolve_period("custom", "2024-01-01", "2024-01-10", today=TODAY)
    assert custom.end == date(2024, 1, 10)

    with pytest.raises(ValueError):
        resolve_period("custom", "2024-02-01", "2024-01-01", today=TODAY)
    with pytest.raises(ValueError):
        resolve_period("custom", None, None, today=TODAY)
    with pytest.raises(ValueError):
        resolve_period("yesterday", None, None, today=TODAY)


def test_all_reaches_past_today() -> None:
    everything = resolve_period("all", None, None, today=TODAY)
    assert everything.contains(date(2024, 9, 15))
