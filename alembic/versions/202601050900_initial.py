"""initial schema

Revision ID: 202601050900
Revises:
Create Date: 2026-01-05 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601050900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("income", "expense", "transfer", name="transactiontype")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("bank", "savings", "investment", name="accounttype"),
            nullable=False,
        ),
        sa.Column("initial_balance_cents", sa.Integer(), nullable=False),
        sa.Column("current_balance_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user_active", "accounts", ["user_id", "is_active"])

    op.create_table(
        "credit_cards",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "card_type",
            sa.Enum("visa", "mastercard", "elo", "amex", name="cardtype"),
            nullable=False,
        ),
        sa.Column("limit_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_balance_cents", sa.Integer(), nullable=False),
        sa.Column("due_day", sa.Integer(), nullable=False),
        sa.Column("closing_day", sa.Integer(), nullable=False),
        sa.Column("best_purchase_day", sa.Integer()),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_card_due_day"),
        sa.CheckConstraint("closing_day BETWEEN 1 AND 31", name="ck_card_closing_day"),
        sa.CheckConstraint("limit_cents >= 0", name="ck_card_limit_positive"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("color", sa.String(length=7)),
        sa.Column("icon", sa.String(length=40)),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("archived_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_category_user_type_name"
        ),
    )

    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("phone", sa.String(length=30)),
        sa.Column("email", sa.String(length=200)),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("credit_card_id", sa.Integer(), sa.ForeignKey("credit_cards.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("contact_id", sa.Integer(), sa.ForeignKey("contacts.id")),
        sa.Column(
            "is_installment", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("installment_number", sa.Integer()),
        sa.Column("installment_count", sa.Integer()),
        sa.Column("notes", sa.Text()),
        sa.Column(
            "investment_action",
            sa.Enum("aporte", "resgate", name="investmentaction"),
        ),
        sa.Column("investment_group_id", sa.String(length=36)),
        *_timestamps(),
        sa.CheckConstraint(
            "account_id IS NULL OR credit_card_id IS NULL", name="ck_txn_single_owner"
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index(
        "ix_transactions_card_date", "transactions", ["credit_card_id", "date"]
    )
    op.create_index(
        "ix_transactions_investment_group", "transactions", ["investment_group_id"]
    )

    op.create_table(
        "credit_card_invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "credit_card_id",
            sa.Integer(),
            sa.ForeignKey("credit_cards.id"),
            nullable=False,
        ),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("open", "closed", "paid", "partial", name="invoicestatus"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("due_date", sa.Date()),
        sa.Column("payment_date", sa.Date()),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint(
            "credit_card_id", "month", "year", name="uq_invoice_card_month_year"
        ),
        sa.CheckConstraint("month BETWEEN 0 AND 11", name="ck_invoice_month"),
        sa.CheckConstraint("paid_cents >= 0", name="ck_invoice_paid_positive"),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("planned_cents", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120)),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("planned_cents >= 0", name="ck_budget_amount_positive"),
        sa.UniqueConstraint(
            "user_id",
            "category_id",
            "year",
            "month",
            name="uq_budget_user_category_month",
        ),
    )
    op.create_index("ix_budget_user_month", "budgets", ["user_id", "year", "month"])

    op.create_table(
        "investments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("symbol", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "type",
            sa.Enum("stock", "reit", "crypto", "bond", "fund", name="investmenttype"),
            nullable=False,
        ),
        sa.Column("quantity", sa.Numeric(18, 8), nullable=False),
        sa.Column("average_price_cents", sa.Integer(), nullable=False),
        sa.Column("current_price_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        *_timestamps(),
        sa.CheckConstraint("quantity >= 0", name="ck_investment_quantity_positive"),
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("target_cents", sa.Integer(), nullable=False),
        sa.Column("current_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("target_date", sa.Date()),
        sa.Column(
            "status",
            sa.Enum("active", "completed", "paused", name="goalstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        *_timestamps(),
        sa.CheckConstraint("target_cents > 0", name="ck_goal_target_positive"),
    )

    op.create_table(
        "whatsapp_integrations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("phone_number", sa.String(length=30), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "pending_selections",
        sa.Column("phone_number", sa.String(length=30), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("extraction_json", sa.Text(), nullable=False),
        sa.Column("options_json", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_pending_selection_expires", "pending_selections", ["expires_at"]
    )


def downgrade():
    op.drop_index("ix_pending_selection_expires", table_name="pending_selections")
    op.drop_table("pending_selections")
    op.drop_table("whatsapp_integrations")
    op.drop_table("goals")
    op.drop_table("investments")
    op.drop_index("ix_budget_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("credit_card_invoices")
    op.drop_index("ix_transactions_investment_group", table_name="transactions")
    op.drop_index("ix_transactions_card_date", table_name="transactions")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("contacts")
    op.drop_table("categories")
    op.drop_table("credit_cards")
    op.drop_table("accounts")
