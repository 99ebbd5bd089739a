import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import (
    AccountType,
    CardType,
    GoalStatus,
    InvestmentAction,
    InvestmentType,
    InvoiceStatus,
    TransactionType,
)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.bank
    initial_balance_cents: int = 0
    currency: str = Field(default="BRL", min_length=3, max_length=3)


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class CreditCardIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    card_type: CardType = CardType.mastercard
    limit_cents: int = Field(..., ge=0)
    due_day: int = Field(..., ge=1, le=31)
    closing_day: int = Field(..., ge=1, le=31)
    best_purchase_day: Optional[int] = Field(default=None, ge=1, le=31)
    currency: str = Field(default="BRL", min_length=3, max_length=3)


class TransactionIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int
    type: TransactionType
    date: dt.date
    account_id: Optional[int] = None
    credit_card_id: Optional[int] = None
    category_id: Optional[int] = None
    contact_id: Optional[int] = None
    notes: Optional[str] = None
    installment_count: int = Field(default=1, ge=1, le=72)

    @model_validator(mode="after")
    def _single_owner(self) -> "TransactionIn":
        if self.account_id is not None and self.credit_card_id is not None:
            raise ValueError("Choose an account or a credit card, not both")
        if self.installment_count > 1 and self.credit_card_id is None:
            raise ValueError("Installments are only available for credit card purchases")
        return self


class InvoiceUpsertIn(BaseModel):
    credit_card_id: int
    month: int = Field(..., ge=0, le=11)
    year: int = Field(..., ge=1970, le=3000)
    total_cents: int = Field(..., ge=0)
    paid_cents: int = Field(default=0, ge=0)
    status: Optional[InvoiceStatus] = None
    due_date: Optional[date] = None
    payment_date: Optional[date] = None
    notes: Optional[str] = None


class InvoicePaymentIn(BaseModel):
    account_id: int
    amount_cents: int = Field(..., gt=0)
    payment_date: date


class InvestmentTransferIn(BaseModel):
    from_account_id: int
    to_account_id: int
    amount_cents: int = Field(..., gt=0)
    date: dt.date
    description: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _distinct_accounts(self) -> "InvestmentTransferIn":
        if self.from_account_id == self.to_account_id:
            raise ValueError("Source and destination accounts must differ")
        return self


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, max_length=7)
    icon: Optional[str] = Field(default=None, max_length=40)
    order: int = 0


class ContactIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    phone: Optional[str] = Field(default=None, max_length=30)
    email: Optional[str] = Field(default=None, max_length=200)


class ContactChargeIn(BaseModel):
    credit_card_id: int
    month_key: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}$")


class BudgetIn(BaseModel):
    category_id: int
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    planned_cents: int = Field(..., ge=0)
    name: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = None


class GoalIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    target_cents: int = Field(..., gt=0)
    current_cents: int = Field(default=0, ge=0)
    target_date: Optional[date] = None
    status: GoalStatus = GoalStatus.active
    currency: str = Field(default="BRL", min_length=3, max_length=3)


class InvestmentIn(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=120)
    type: InvestmentType
    quantity: Decimal = Field(..., ge=0)
    average_price_cents: int = Field(..., ge=0)
    current_price_cents: int = Field(..., ge=0)
    currency: str = Field(default="BRL", min_length=3, max_length=3)


class CSVRow(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int
    description: str
    category: Optional[str]
    notes: Optional[str]


class ExtractedTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount_cents: int = Field(..., gt=0)
    type: Literal["income", "expense"]
    category: Optional[str] = Field(default=None, max_length=100)
    description: str = Field(..., min_length=1, max_length=200)


class WhatsAppText(BaseModel):
    body: str = ""


class WhatsAppMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    from_: str = Field(..., alias="from")
    text: Optional[WhatsAppText] = None


class WhatsAppValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages: list[WhatsAppMessage] = Field(default_factory=list)


class WhatsAppChange(BaseModel):
    model_config = ConfigDict(extra="ignore")

    field: str
    value: WhatsAppValue = Field(default_factory=WhatsAppValue)


class WhatsAppEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    changes: list[WhatsAppChange] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: str
    entry: list[WhatsAppEntry] = Field(default_factory=list)

    def text_messages(self) -> list[tuple[str, str]]:
        if self.object != "whatsapp_business_account":
            return []
        found: list[tuple[str, str]] = []
        for entry in self.entry:
            for change in entry.changes:
                if change.field != "messages":
                    continue
                for message in change.value.messages:
                    if message.text is None:
                        continue
                    found.append((message.from_, message.text.body))
        return found


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    initial_balance_cents: int
    current_balance_cents: int
    currency: str
    is_active: bool
    version: int


class CreditCardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    card_type: CardType
    limit_cents: int
    current_balance_cents: int
    due_day: int
    closing_day: int
    best_purchase_day: Optional[int]
    currency: str
    is_active: bool
    version: int


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: TransactionType
    color: Optional[str]
    icon: Optional[str]
    order: int
    archived_at: Optional[dt.datetime]


class ContactOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    phone: Optional[str]
    email: Optional[str]


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    amount_cents: int
    type: TransactionType
    date: dt.date
    currency: str
    account_id: Optional[int]
    credit_card_id: Optional[int]
    category_id: Optional[int]
    contact_id: Optional[int]
    is_installment: bool
    installment_number: Optional[int]
    installment_count: Optional[int]
    notes: Optional[str]
    investment_action: Optional[InvestmentAction]
    investment_group_id: Optional[str]
    paid_invoice_id: Optional[int] = None


class MonthlyInvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    month: int
    year: int
    key: str
    due_date: dt.date
    closing_date: dt.date
    total_cents: int
    paid_cents: int
    outstanding_cents: int
    status: InvoiceStatus
    transactions: list[TransactionOut] = Field(default_factory=list)


class CreditCardInvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    credit_card_id: int
    month: int
    year: int
    total_cents: int
    paid_cents: int
    status: InvoiceStatus
    due_date: Optional[dt.date]
    payment_date: Optional[dt.date]
    notes: Optional[str]


class MutationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transactions: list[TransactionOut] = Field(default_factory=list)
    accounts: list[AccountOut] = Field(default_factory=list)
    credit_cards: list[CreditCardOut] = Field(default_factory=list)
    removed_transaction_ids: list[int] = Field(default_factory=list)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    year: int
    month: int
    planned_cents: int
    name: Optional[str]
    notes: Optional[str]


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str]
    target_cents: int
    current_cents: int
    target_date: Optional[dt.date]
    status: GoalStatus
    currency: str


class InvestmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    symbol: str
    name: str
    type: InvestmentType
    quantity: Decimal
    average_price_cents: int
    current_price_cents: int
    currency: str


class GoalContributionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)


class CategoryRenameIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
