from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import Account, CreditCardInvoice, InvoiceStatus, TransactionType
from periods import Period
from schemas import (
    AccountIn,
    CreditCardIn,
    InvoicePaymentIn,
    InvoiceUpsertIn,
    TransactionIn,
)
from services import (
    AccountService,
    CreditCardService,
    InvoiceService,
    ReportService,
    TransactionService,
)


def setup_card(session: Session):
    account = AccountService(session).create(
        AccountIn(name="Corrente", initial_balance_cents=100_000)
    )
    card = CreditCardService(session).create(
        CreditCardIn(name="Nubank", limit_cents=100_000, due_day=15, closing_day=5)
    )
    TransactionService(session).create(
        TransactionIn(
            description="Passagem",
            amount_cents=30_000,
            type=TransactionType.expense,
            date=date(2024, 3, 10),
            credit_card_id=card.id,
        )
    )
    return account, card


def test_card_invoices_and_limit_summary() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, card = setup_card(session)
        invoices = InvoiceService(session).list_for_card(card.id)

        assert len(invoices) == 1
        assert invoices[0].key == "2024-03"
        assert invoices[0].total_cents == 30_000
        assert invoices[0].due_date == date(2024, 4, 15)

        summary = CreditCardService(session).limit_summary(card.id)
        assert summary["used_cents"] == 30_000
        assert summary["available_cents"] == 70_000


def test_current_invoice_without_charges_is_empty() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, card = setup_card(session)
        current = InvoiceService(session).current(card.id, today=date(2024, 6, 20))
        assert (current.year, current.month) == (2024, 6)
        assert current.total_cents == 0
        assert current.due_date == date(2024, 7, 15)


def test_upsert_keeps_one_row_per_card_and_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, card = setup_card(session)
        service = InvoiceService(session)

        first = service.upsert(
            InvoiceUpsertIn(credit_card_id=card.id, month=3, year=2024, total_cents=30_000)
        )
        assert first.status == InvoiceStatus.open
        assert first.due_date == date(2024, 4, 15)

        second = service.upsert(
            InvoiceUpsertIn(
                credit_card_id=card.id,
                month=3,
                year=2024,
                total_cents=30_000,
                paid_cents=30_000,
            )
        )
        assert second.id == first.id
        assert second.status == InvoiceStatus.paid

        count = session.scalar(select(func.count()).select_from(CreditCardInvoice))
        assert count == 1


def test_paying_an_invoice_moves_money_and_updates_status() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, card = setup_card(session)
        service = InvoiceService(session)

        row, result = service.pay(
            card.id,
            3,
            2024,
            InvoicePaymentIn(
                account_id=account.id, amount_cents=10_000, payment_date=date(2024, 4, 10)
            ),
        )
        assert row.status == InvoiceStatus.partial
        assert row.paid_cents == 10_000
        assert result.transactions[0].type == TransactionType.transfer
        assert result.transactions[0].amount_cents == -10_000
        assert session.get(Account, account.id).current_balance_cents == 90_000
        assert CreditCardService(session).get(card.id).current_balance_cents == 20_000

        row, _ = service.pay(
            card.id,
            3,
            2024,
            InvoicePaymentIn(
                account_id=account.id, amount_cents=20_000, payment_date=date(2024, 4, 12)
            ),
        )
        assert row.status == InvoiceStatus.paid
        assert row.paid_cents == 30_000
        assert CreditCardService(session).get(card.id).current_balance_cents == 0

        invoices = service.list_for_card(card.id)
        assert invoices[0].status == InvoiceStatus.paid
        assert CreditCardService(session).limit_summary(card.id)["used_cents"] == 0

        april = Period("custom", date(2024, 4, 1), date(2024, 4, 30))
        assert ReportService(session).summary(april)["expense_cents"] == 0


def test_paying_unknown_invoice_fails() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, card = setup_card(session)
        with pytest.raises(ValueError, match="Invoice not found"):
            InvoiceService(session).pay(
                card.id,
                8,
                2024,
                InvoicePaymentIn(
                    account_id=account.id, amount_cents=100, payment_date=date(2024, 9, 1)
                ),
            )


def test_deleting_a_payment_reopens_the_invoice() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, card = setup_card(session)
        row, result = InvoiceService(session).pay(
            card.id,
            3,
            2024,
            InvoicePaymentIn(
                account_id=account.id, amount_cents=30_000, payment_date=date(2024, 4, 10)
            ),
        )
        payment = result.transactions[0]
        assert payment.paid_invoice_id == row.id
        assert CreditCardService(session).get(card.id).current_balance_cents == 0

        deleted = TransactionService(session).delete(payment.id)

        assert card.id in [c.id for c in deleted.credit_cards]
        assert session.get(Account, account.id).current_balance_cents == 100_000
        assert CreditCardService(session).get(card.id).current_balance_cents == 30_000
        reopened = session.get(CreditCardInvoice, row.id)
        assert reopened.paid_cents == 0
        assert reopened.status == InvoiceStatus.open
        assert reopened.payment_date is None
        assert CreditCardService(session).limit_summary(card.id)["used_cents"] == 30_000


def test_invoice_payments_cannot_be_edited() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, card = setup_card(session)
        _, result = InvoiceService(session).pay(
            card.id,
            3,
            2024,
            InvoicePaymentIn(
                account_id=account.id, amount_cents=10_000, payment_date=date(2024, 4, 10)
            ),
        )
        payment = result.transactions[0]
        with pytest.raises(ValueError, match="cannot be edited"):
            TransactionService(session).update(
                payment.id,
                TransactionIn(
                    description="Pagamento",
                    amount_cents=-1_000,
                    type=TransactionType.transfer,
                    date=date(2024, 4, 10),
                    account_id=account.id,
                ),
            )
        assert session.get(Account, account.id).current_balance_cents == 90_000


def test_payment_larger_than_outstanding_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, card = setup_card(session)
        service = InvoiceService(session)
        service.pay(
            card.id,
            3,
            2024,
            InvoicePaymentIn(
                account_id=account.id, amount_cents=25_000, payment_date=date(2024, 4, 10)
            ),
        )
        with pytest.raises(ValueError, match="exceeds the outstanding"):
            service.pay(
                card.id,
                3,
                2024,
                InvoicePaymentIn(
                    account_id=account.id,
                    amount_cents=5_001,
                    payment_date=date(2024, 4, 11),
                ),
            )
        assert session.get(Account, account.id).current_balance_cents == 75_000
        assert service.get_persisted(card.id, 3, 2024).paid_cents == 25_000
