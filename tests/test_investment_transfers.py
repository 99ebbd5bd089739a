from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import Account, AccountType, InvestmentAction, Transaction, TransactionType
from periods import Period
from schemas import AccountIn, InvestmentTransferIn, TransactionIn
from services import (
    AccountService,
    InsufficientFundsError,
    InvestmentTransferService,
    ReportService,
    TransactionService,
)


MARCH = Period("custom", date(2024, 3, 1), date(2024, 3, 31))


def setup_accounts(session: Session):
    accounts = AccountService(session)
    bank = accounts.create(AccountIn(name="Banco", initial_balance_cents=100_000))
    broker = accounts.create(
        AccountIn(name="Corretora", type=AccountType.investment, initial_balance_cents=0)
    )
    return bank, broker


def transfer(source: Account, target: Account, amount: int) -> InvestmentTransferIn:
    return InvestmentTransferIn(
        from_account_id=source.id,
        to_account_id=target.id,
        amount_cents=amount,
        date=date(2024, 3, 15),
    )


def test_contribution_creates_linked_pair() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bank, broker = setup_accounts(session)
        result = InvestmentTransferService(session).transfer(
            transfer(bank, broker, 30_000)
        )

        legs = result.transactions
        assert len(legs) == 2
        assert legs[0].investment_group_id == legs[1].investment_group_id
        assert {leg.investment_action for leg in legs} == {InvestmentAction.aporte}
        assert sorted(leg.amount_cents for leg in legs) == [-30_000, 30_000]
        assert session.get(Account, bank.id).current_balance_cents == 70_000
        assert session.get(Account, broker.id).current_balance_cents == 30_000


def test_redemption_and_undo_restore_balances() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bank, broker = setup_accounts(session)
        service = InvestmentTransferService(session)
        service.transfer(transfer(bank, broker, 30_000))
        back = service.transfer(transfer(broker, bank, 10_000))

        assert back.transactions[0].investment_action == InvestmentAction.resgate
        assert session.get(Account, bank.id).current_balance_cents == 80_000

        service.undo(back.transactions[0].investment_group_id)
        assert session.get(Account, bank.id).current_balance_cents == 70_000
        assert session.get(Account, broker.id).current_balance_cents == 30_000


def test_deleting_one_leg_removes_the_pair() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bank, broker = setup_accounts(session)
        legs = InvestmentTransferService(session).transfer(
            transfer(bank, broker, 30_000)
        ).transactions

        result = TransactionService(session).delete(legs[0].id)

        assert sorted(result.removed_transaction_ids) == sorted(leg.id for leg in legs)
        assert session.scalar(select(func.count()).select_from(Transaction)) == 0
        assert session.get(Account, bank.id).current_balance_cents == 100_000
        assert session.get(Account, broker.id).current_balance_cents == 0


def test_grouped_transactions_cannot_be_edited() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bank, broker = setup_accounts(session)
        legs = InvestmentTransferService(session).transfer(
            transfer(bank, broker, 30_000)
        ).transactions
        with pytest.raises(ValueError):
            TransactionService(session).update(
                legs[0].id,
                TransactionIn(
                    description="x",
                    amount_cents=1,
                    type=TransactionType.expense,
                    date=date(2024, 3, 15),
                    account_id=bank.id,
                ),
            )


def test_transfer_needs_funds_and_one_investment_side() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bank, broker = setup_accounts(session)
        other = AccountService(session).create(
            AccountIn(name="Poupança", type=AccountType.savings, initial_balance_cents=0)
        )
        service = InvestmentTransferService(session)

        with pytest.raises(InsufficientFundsError):
            service.transfer(transfer(bank, broker, 100_001))
        with pytest.raises(ValueError):
            service.transfer(transfer(bank, other, 1_000))
        assert session.get(Account, bank.id).current_balance_cents == 100_000


def test_lists_and_reports_hide_investment_movements() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bank, broker = setup_accounts(session)
        InvestmentTransferService(session).transfer(transfer(bank, broker, 30_000))
        TransactionService(session).create(
            TransactionIn(
                description="Feira",
                amount_cents=5_000,
                type=TransactionType.expense,
                date=date(2024, 3, 20),
                account_id=bank.id,
            )
        )

        listed = TransactionService(session).list(MARCH)
        assert [t.account_id for t in listed if t.investment_group_id] == [bank.id]

        summary = ReportService(session).summary(MARCH)
        assert summary["expense_cents"] == 5_000
        assert summary["income_cents"] == 0
        assert summary["net_cents"] == -5_000
