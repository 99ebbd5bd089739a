import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountType(str, Enum):
    bank = "bank"
    savings = "savings"
    investment = "investment"


class CardType(str, Enum):
    visa = "visa"
    mastercard = "mastercard"
    elo = "elo"
    amex = "amex"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class InvoiceStatus(str, Enum):
    open = "open"
    closed = "closed"
    paid = "paid"
    partial = "partial"


class InvestmentAction(str, Enum):
    aporte = "aporte"
    resgate = "resgate"


class InvestmentType(str, Enum):
    stock = "stock"
    reit = "reit"
    crypto = "crypto"
    bond = "bond"
    fund = "fund"


class GoalStatus(str, Enum):
    active = "active"
    completed = "completed"
    paused = "paused"


class TimestampMixin:
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (Index("ix_accounts_user_active", "user_id", "is_active"),)


class CreditCard(Base, TimestampMixin):
    __tablename__ = "credit_cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    card_type: Mapped[CardType] = mapped_column(SAEnum(CardType), nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    due_day: Mapped[int] = mapped_column(Integer, nullable=False)
    closing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    best_purchase_day: Mapped[Optional[int]] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="credit_card"
    )
    invoices: Mapped[list["CreditCardInvoice"]] = relationship(
        "CreditCardInvoice", back_populates="credit_card", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_card_due_day"),
        CheckConstraint("closing_day BETWEEN 1 AND 31", name="ck_card_closing_day"),
        CheckConstraint("limit_cents >= 0", name="ck_card_limit_positive"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    color: Mapped[Optional[str]] = mapped_column(String(7))
    icon: Mapped[Optional[str]] = mapped_column(String(40))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    archived_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Contact(Base, TimestampMixin):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(30))
    email: Mapped[Optional[str]] = mapped_column(String(200))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="contact"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    credit_card_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("credit_cards.id")
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    contact_id: Mapped[Optional[int]] = mapped_column(ForeignKey("contacts.id"))
    is_installment: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    installment_number: Mapped[Optional[int]] = mapped_column(Integer)
    installment_count: Mapped[Optional[int]] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    investment_action: Mapped[Optional[InvestmentAction]] = mapped_column(
        SAEnum(InvestmentAction)
    )
    investment_group_id: Mapped[Optional[str]] = mapped_column(String(36))
    # Set on the account debit that settles a card invoice.
    paid_invoice_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("credit_card_invoices.id")
    )

    account: Mapped[Optional["Account"]] = relationship(
        "Account", back_populates="transactions"
    )
    credit_card: Mapped[Optional["CreditCard"]] = relationship(
        "CreditCard", back_populates="transactions"
    )
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    contact: Mapped[Optional["Contact"]] = relationship(
        "Contact", back_populates="transactions"
    )

    __table_args__ = (
        CheckConstraint(
            "account_id IS NULL OR credit_card_id IS NULL",
            name="ck_txn_single_owner",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account", "account_id"),
        Index("ix_transactions_card_date", "credit_card_id", "date"),
        Index("ix_transactions_investment_group", "investment_group_id"),
        Index("ix_transactions_paid_invoice", "paid_invoice_id"),
    )


class CreditCardInvoice(Base, TimestampMixin):
    __tablename__ = "credit_card_invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    credit_card_id: Mapped[int] = mapped_column(
        ForeignKey("credit_cards.id"), nullable=False
    )
    # zero-based: January == 0
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[InvoiceStatus] = mapped_column(
        SAEnum(InvoiceStatus), nullable=False, default=InvoiceStatus.open
    )
    due_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    payment_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    credit_card: Mapped["CreditCard"] = relationship(
        "CreditCard", back_populates="invoices"
    )

    __table_args__ = (
        UniqueConstraint(
            "credit_card_id", "month", "year", name="uq_invoice_card_month_year"
        ),
        CheckConstraint("month BETWEEN 0 AND 11", name="ck_invoice_month"),
        CheckConstraint("paid_cents >= 0", name="ck_invoice_paid_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    planned_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(120))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        CheckConstraint("planned_cents >= 0", name="ck_budget_amount_positive"),
        UniqueConstraint(
            "user_id",
            "category_id",
            "year",
            "month",
            name="uq_budget_user_category_month",
        ),
        Index("ix_budget_user_month", "user_id", "year", "month"),
    )


class Investment(Base, TimestampMixin):
    __tablename__ = "investments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[InvestmentType] = mapped_column(
        SAEnum(InvestmentType), nullable=False
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    average_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_investment_quantity_positive"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    title: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    target_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    status: Mapped[GoalStatus] = mapped_column(
        SAEnum(GoalStatus), nullable=False, default=GoalStatus.active
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")

    __table_args__ = (
        CheckConstraint("target_cents > 0", name="ck_goal_target_positive"),
    )


class WhatsAppIntegration(Base, TimestampMixin):
    __tablename__ = "whatsapp_integrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    phone_number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PendingSelection(Base):
    __tablename__ = "pending_selections"

    phone_number: Mapped[str] = mapped_column(String(30), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    extraction_json: Mapped[str] = mapped_column(Text, nullable=False)
    options_json: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("ix_pending_selection_expires", "expires_at"),)
