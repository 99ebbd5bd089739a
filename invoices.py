from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional, Protocol, Sequence, Union

from billing import InvoicePeriod, closing_date, due_date, resolve_invoice_period
from models import InvoiceStatus


ALL_CONTACTS = "all"
# Charges with no contact belong to the card holder.
PRIMARY_USER = "me"

ContactFilter = Union[str, int, None]


class CardCharge(Protocol):
    date: date
    amount_cents: int
    contact_id: Optional[int]


class InvoiceOverride(Protocol):
    month: int
    year: int
    status: InvoiceStatus
    paid_cents: int


@dataclass
class MonthlyInvoice:
    month: int
    year: int
    due_date: date
    closing_date: date
    transactions: list = field(default_factory=list)
    total_cents: int = 0
    paid_cents: int = 0
    status: InvoiceStatus = InvoiceStatus.open

    @property
    def period(self) -> InvoicePeriod:
        return InvoicePeriod(self.year, self.month)

    @property
    def key(self) -> str:
        return self.period.key

    @property
    def outstanding_cents(self) -> int:
        return max(self.total_cents - self.paid_cents, 0)


def _matches_contact(charge: CardCharge, contact: ContactFilter) -> bool:
    if contact is None or contact == ALL_CONTACTS:
        return True
    if contact == PRIMARY_USER:
        return charge.contact_id is None
    return charge.contact_id == int(contact)


def filter_transactions(
    transactions: Iterable[CardCharge],
    closing_day: int,
    *,
    month_key: Optional[str] = None,
    contact: ContactFilter = ALL_CONTACTS,
) -> list:
    period = InvoicePeriod.from_key(month_key) if month_key else None
    selected = []
    for txn in transactions:
        if period is not None and resolve_invoice_period(txn.date, closing_day) != period:
            continue
        if not _matches_contact(txn, contact):
            continue
        selected.append(txn)
    return selected


def aggregate_invoices(
    transactions: Iterable[CardCharge],
    closing_day: int,
    due_day: int,
    persisted: Sequence[InvoiceOverride] = (),
) -> list[MonthlyInvoice]:
    """Group card charges into monthly invoices, newest first.

    A persisted invoice row for the same month overrides the computed status
    and paid amount; the total always comes from the charges.
    """
    buckets: dict[InvoicePeriod, MonthlyInvoice] = {}
    for txn in transactions:
        period = resolve_invoice_period(txn.date, closing_day)
        invoice = buckets.get(period)
        if invoice is None:
            invoice = MonthlyInvoice(
                month=period.month,
                year=period.year,
                due_date=due_date(period, due_day),
                closing_date=closing_date(period, closing_day),
            )
            buckets[period] = invoice
        invoice.transactions.append(txn)
        invoice.total_cents += abs(txn.amount_cents)

    overrides = {InvoicePeriod(row.year, row.month): row for row in persisted}
    for period, invoice in buckets.items():
        row = overrides.get(period)
        if row is not None:
            invoice.status = row.status
            invoice.paid_cents = row.paid_cents

    return [buckets[p] for p in sorted(buckets, reverse=True)]


def used_limit_cents(invoices: Iterable[MonthlyInvoice]) -> int:
    # Charges added after an invoice was settled still count.
    return sum(invoice.outstanding_cents for invoice in invoices)


def derive_status(total_cents: int, paid_cents: int) -> InvoiceStatus:
    if paid_cents <= 0:
        return InvoiceStatus.open
    if paid_cents >= total_cents:
        return InvoiceStatus.paid
    return InvoiceStatus.partial
