"""Credit-card billing cycles.

Invoice months are zero-based (January == 0) to match the persisted
``credit_card_invoices.month`` column.
"""

from dataclasses import dataclass
from datetime import date
from typing import Optional


MONTH_NAMES = [
    "Janeiro",
    "Fevereiro",
    "Março",
    "Abril",
    "Maio",
    "Junho",
    "Julho",
    "Agosto",
    "Setembro",
    "Outubro",
    "Novembro",
    "Dezembro",
]


def days_in_month(year: int, month: int) -> int:
    """Length of a calendar month; ``month`` is 1-based here."""
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def shift_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


@dataclass(frozen=True, order=True)
class InvoicePeriod:
    year: int
    month: int

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def calendar_month(self) -> int:
        return self.month + 1

    @property
    def label(self) -> str:
        return f"{MONTH_NAMES[self.month]}/{self.year}"

    def next(self) -> "InvoicePeriod":
        if self.month == 11:
            return InvoicePeriod(self.year + 1, 0)
        return InvoicePeriod(self.year, self.month + 1)

    def day(self, day_of_month: int) -> date:
        dim = days_in_month(self.year, self.calendar_month)
        return date(self.year, self.calendar_month, min(day_of_month, dim))

    @classmethod
    def from_key(cls, key: str) -> "InvoicePeriod":
        try:
            year_str, month_str = key.split("-", 1)
            period = cls(int(year_str), int(month_str))
        except ValueError as exc:
            raise ValueError(f"Invalid invoice month key: {key!r}") from exc
        if not 0 <= period.month <= 11:
            raise ValueError(f"Invalid invoice month key: {key!r}")
        return period


def _check_day(value: int, name: str) -> None:
    if not 1 <= value <= 31:
        raise ValueError(f"{name} must be between 1 and 31")


def resolve_invoice_period(txn_date: date, closing_day: int) -> InvoicePeriod:
    """Invoice a charge posts to: on/after the closing day it rolls to next month."""
    own = InvoicePeriod(txn_date.year, txn_date.month - 1)
    if txn_date.day >= closing_day:
        return own.next()
    return own


def closing_date(period: InvoicePeriod, closing_day: int) -> date:
    return period.day(closing_day)


def due_date(period: InvoicePeriod, due_day: int) -> date:
    return period.day(due_day)


def current_invoice_period(today: date, closing_day: int) -> InvoicePeriod:
    own = InvoicePeriod(today.year, today.month - 1)
    if today.day <= closing_day:
        return own
    return own.next()


def best_purchase_day(closing_day: int, configured: Optional[int] = None) -> int:
    if configured:
        return configured
    _check_day(closing_day, "closing_day")
    if closing_day >= 28:
        return 1
    return closing_day + 1


@dataclass(frozen=True)
class PurchaseInfo:
    period: InvoicePeriod
    closing_date: date
    due_date: date
    days_until_due: int
    explanation: str


def describe_purchase(
    txn_date: date, closing_day: int, due_day: int, *, today: Optional[date] = None
) -> PurchaseInfo:
    _check_day(closing_day, "closing_day")
    _check_day(due_day, "due_day")
    today = today or date.today()
    period = resolve_invoice_period(txn_date, closing_day)
    due = due_date(period, due_day)
    if txn_date.day >= closing_day:
        explanation = (
            f"Compra no dia {txn_date.day} (no dia do fechamento ou após): "
            f"cairá na fatura de {period.label}"
        )
    else:
        explanation = (
            f"Compra no dia {txn_date.day} (antes do fechamento dia {closing_day}): "
            f"cairá na fatura de {period.label}"
        )
    return PurchaseInfo(
        period=period,
        closing_date=closing_date(period, closing_day),
        due_date=due,
        days_until_due=(due - today).days,
        explanation=explanation,
    )
