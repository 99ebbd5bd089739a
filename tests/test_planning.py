from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import Budget, GoalStatus, InvestmentType, TransactionType
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    GoalIn,
    InvestmentIn,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    GoalService,
    InvestmentService,
    TransactionService,
)


def test_budget_progress_and_upsert() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        groceries = CategoryService(session).create(
            CategoryIn(name="Mercado", type=TransactionType.expense)
        )
        account = AccountService(session).create(
            AccountIn(name="Conta", initial_balance_cents=100_000)
        )
        TransactionService(session).create(
            TransactionIn(
                description="Compra do mês",
                amount_cents=20_000,
                type=TransactionType.expense,
                date=date(2024, 3, 10),
                account_id=account.id,
                category_id=groceries.id,
            )
        )

        budgets = BudgetService(session)
        budgets.upsert(
            BudgetIn(category_id=groceries.id, year=2024, month=3, planned_cents=50_000)
        )
        budgets.upsert(
            BudgetIn(category_id=groceries.id, year=2024, month=3, planned_cents=15_000)
        )

        assert session.scalar(select(func.count()).select_from(Budget)) == 1
        progress = budgets.progress_for_month(2024, 3)
        assert progress[0]["spent_cents"] == 20_000
        assert progress[0]["remaining_cents"] == -5_000
        assert progress[0]["over_budget"] is True

        assert budgets.progress_for_month(2024, 4) == []


def test_budgets_only_for_expense_categories() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        salary = CategoryService(session).create(
            CategoryIn(name="Salário", type=TransactionType.income)
        )
        with pytest.raises(ValueError):
            BudgetService(session).upsert(
                BudgetIn(category_id=salary.id, year=2024, month=3, planned_cents=1)
            )


def test_goal_completes_when_target_is_reached() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        goals = GoalService(session)
        trip = goals.create(GoalIn(title="Viagem", target_cents=10_000))

        goals.contribute(trip.id, 4_000)
        assert GoalService.progress_percent(goals.get(trip.id)) == 40.0

        done = goals.contribute(trip.id, 6_000)
        assert done.status == GoalStatus.completed
        with pytest.raises(ValueError):
            goals.contribute(trip.id, 1)


def test_portfolio_summary() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        investments = InvestmentService(session)
        investments.create(
            InvestmentIn(
                symbol="petr4",
                name="Petrobras",
                type=InvestmentType.stock,
                quantity=Decimal("10"),
                average_price_cents=1_000,
                current_price_cents=1_500,
            )
        )
        summary = investments.portfolio_summary()

        assert summary["positions"][0]["investment"].symbol == "PETR4"
        assert summary["total_value_cents"] == 15_000
        assert summary["total_cost_cents"] == 10_000
        assert summary["total_profit_cents"] == 5_000
