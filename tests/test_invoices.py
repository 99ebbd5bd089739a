from datetime import date
from types import SimpleNamespace

from invoices import (
    aggregate_invoices,
    derive_status,
    filter_transactions,
    used_limit_cents,
)
from models import InvoiceStatus


def charge(day: date, amount: int, contact_id=None):
    return SimpleNamespace(date=day, amount_cents=amount, contact_id=contact_id)


CHARGES = [
    charge(date(2024, 3, 3), -1_000),
    charge(date(2024, 3, 10), -2_500, contact_id=7),
    charge(date(2024, 3, 20), -500),
    charge(date(2024, 12, 20), -4_000),
]


def test_charges_are_grouped_by_invoice_month_newest_first() -> None:
    invoices = aggregate_invoices(CHARGES, closing_day=5, due_day=15)

    assert [(i.year, i.month) for i in invoices] == [(2025, 0), (2024, 3), (2024, 2)]
    by_key = {i.key: i for i in invoices}
    assert by_key["2024-03"].total_cents == 3_000
    assert by_key["2024-02"].total_cents == 1_000
    assert by_key["2025-00"].total_cents == 4_000
    assert by_key["2024-03"].due_date == date(2024, 4, 15)
    assert by_key["2024-03"].closing_date == date(2024, 4, 5)
    assert all(i.status == InvoiceStatus.open for i in invoices)


def test_aggregation_is_idempotent() -> None:
    first = aggregate_invoices(CHARGES, 5, 15)
    second = aggregate_invoices(CHARGES, 5, 15)
    assert [(i.key, i.total_cents) for i in first] == [
        (i.key, i.total_cents) for i in second
    ]


def test_persisted_invoice_overrides_status_but_not_total() -> None:
    persisted = [
        SimpleNamespace(month=3, year=2024, status=InvoiceStatus.paid, paid_cents=3_000),
        SimpleNamespace(month=6, year=2024, status=InvoiceStatus.paid, paid_cents=99),
    ]
    invoices = aggregate_invoices(CHARGES, 5, 15, persisted)
    by_key = {i.key: i for i in invoices}

    assert by_key["2024-03"].status == InvoiceStatus.paid
    assert by_key["2024-03"].paid_cents == 3_000
    assert by_key["2024-03"].total_cents == 3_000
    assert "2024-06" not in by_key


def test_filters_by_invoice_month_and_contact() -> None:
    april = filter_transactions(CHARGES, 5, month_key="2024-03")
    assert [c.amount_cents for c in april] == [-2_500, -500]

    mine = filter_transactions(CHARGES, 5, contact="me")
    assert all(c.contact_id is None for c in mine)
    assert len(mine) == 3

    theirs = filter_transactions(CHARGES, 5, contact="7")
    assert [c.amount_cents for c in theirs] == [-2_500]

    assert len(filter_transactions(CHARGES, 5, contact="all")) == 4


def test_used_limit_ignores_paid_invoices() -> None:
    persisted = [
        SimpleNamespace(month=3, year=2024, status=InvoiceStatus.partial, paid_cents=1_000),
        SimpleNamespace(month=2, year=2024, status=InvoiceStatus.paid, paid_cents=1_000),
    ]
    invoices = aggregate_invoices(CHARGES, 5, 15, persisted)
    assert used_limit_cents(invoices) == 2_000 + 4_000


def test_derive_status() -> None:
    assert derive_status(10_000, 0) == InvoiceStatus.open
    assert derive_status(10_000, 4_000) == InvoiceStatus.partial
    assert derive_status(10_000, 10_000) == InvoiceStatus.paid
    assert derive_status(10_000, 12_000) == InvoiceStatus.paid


def test_charges_after_payment_count_against_the_limit() -> None:
    persisted = [
        SimpleNamespace(month=2, year=2024, status=InvoiceStatus.paid, paid_cents=1_000)
    ]
    late = CHARGES + [charge(date(2024, 3, 4), -300)]
    invoices = aggregate_invoices(late, 5, 15, persisted)
    assert used_limit_cents(invoices) == 300 + 3_000 + 4_000
