from __future__ import annotations

import logging
import re
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from billing import (
    InvoicePeriod,
    current_invoice_period,
    due_date,
    shift_months,
)
from config import get_settings
from csv_utils import export_transactions, format_brl, parse_csv
from invoices import (
    ALL_CONTACTS,
    PRIMARY_USER,
    ContactFilter,
    MonthlyInvoice,
    aggregate_invoices,
    derive_status,
    filter_transactions,
    used_limit_cents,
)
from models import (
    Account,
    AccountType,
    Budget,
    Category,
    Contact,
    CreditCard,
    CreditCardInvoice,
    Goal,
    GoalStatus,
    Investment,
    InvestmentAction,
    Transaction,
    TransactionType,
)
from periods import Period
from reconciliation import (
    AccountOwner,
    BalanceDelta,
    CardOwner,
    Ownership,
    deltas_for_create,
    deltas_for_delete,
    deltas_for_update,
    ownership_for,
    signed_amount,
)
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    CategoryIn,
    ContactIn,
    CreditCardIn,
    GoalIn,
    InvestmentIn,
    InvestmentTransferIn,
    InvoicePaymentIn,
    InvoiceUpsertIn,
    TransactionIn,
)


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def local_today() -> date:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).date()


@contextmanager
def atomic(session: Session) -> Iterator[None]:
    try:
        yield
        session.commit()
    except Exception:
        session.rollback()
        raise


class InsufficientFundsError(ValueError):
    pass


class CreditLimitExceededError(ValueError):
    pass


class CategoryAmbiguousError(ValueError):
    pass


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    account_id: Optional[int] = None
    credit_card_id: Optional[int] = None
    category_id: Optional[int] = None
    contact: ContactFilter = ALL_CONTACTS
    query: Optional[str] = None


@dataclass
class MutationResult:
    """Rows touched by a mutation, so callers refresh only what changed."""

    transactions: list[Transaction] = field(default_factory=list)
    accounts: list[Account] = field(default_factory=list)
    credit_cards: list[CreditCard] = field(default_factory=list)
    removed_transaction_ids: list[int] = field(default_factory=list)


def _investment_account_ids(user_id: int):
    return select(Account.id).where(
        Account.user_id == user_id, Account.type == AccountType.investment
    )


def _without_investment_legs(stmt, user_id: int):
    return stmt.where(
        or_(
            Transaction.investment_group_id.is_(None),
            Transaction.account_id.not_in(_investment_account_ids(user_id)),
        )
    )


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_inactive: bool = False) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        if not include_inactive:
            stmt = stmt.where(Account.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            initial_balance_cents=data.initial_balance_cents,
            current_balance_cents=data.initial_balance_cents,
            currency=data.currency.upper(),
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        if data.name is not None:
            account.name = data.name.strip()
        if data.type is not None:
            account.type = data.type
        if data.currency is not None:
            account.currency = data.currency.upper()
        self.session.commit()
        self.session.refresh(account)
        return account

    def deactivate(self, account_id: int) -> None:
        account = self.get(account_id)
        account.is_active = False
        self.session.commit()

    def real_balance(self, account_id: int, *, exclude_txn_id: Optional[int] = None) -> int:
        """Initial balance plus the net of the stored transactions."""
        account = self.get(account_id)
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.account_id == account.id
        )
        if exclude_txn_id is not None:
            stmt = stmt.where(Transaction.id != exclude_txn_id)
        net = int(self.session.execute(stmt).scalar_one() or 0)
        return account.initial_balance_cents + net

    def total_balance(self) -> int:
        stmt = select(func.coalesce(func.sum(Account.current_balance_cents), 0)).where(
            Account.user_id == self.user_id, Account.is_active.is_(True)
        )
        return int(self.session.execute(stmt).scalar_one() or 0)


class CreditCardService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_inactive: bool = False) -> list[CreditCard]:
        stmt = (
            select(CreditCard)
            .where(CreditCard.user_id == self.user_id)
            .order_by(CreditCard.created_at.desc(), CreditCard.id.desc())
        )
        if not include_inactive:
            stmt = stmt.where(CreditCard.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, card_id: int) -> CreditCard:
        card = self.session.get(CreditCard, card_id)
        if not card or card.user_id != self.user_id:
            raise ValueError("Credit card not found")
        return card

    def create(self, data: CreditCardIn) -> CreditCard:
        card = CreditCard(
            user_id=self.user_id,
            name=data.name.strip(),
            card_type=data.card_type,
            limit_cents=data.limit_cents,
            current_balance_cents=0,
            due_day=data.due_day,
            closing_day=data.closing_day,
            best_purchase_day=data.best_purchase_day,
            currency=data.currency.upper(),
        )
        self.session.add(card)
        self.session.commit()
        self.session.refresh(card)
        return card

    def update(self, card_id: int, data: CreditCardIn) -> CreditCard:
        card = self.get(card_id)
        card.name = data.name.strip()
        card.card_type = data.card_type
        card.limit_cents = data.limit_cents
        card.due_day = data.due_day
        card.closing_day = data.closing_day
        card.best_purchase_day = data.best_purchase_day
        card.currency = data.currency.upper()
        self.session.commit()
        self.session.refresh(card)
        return card

    def deactivate(self, card_id: int) -> None:
        card = self.get(card_id)
        card.is_active = False
        self.session.commit()

    def limit_summary(self, card_id: int) -> dict[str, int]:
        card = self.get(card_id)
        invoices = InvoiceService(self.session, self.user_id).list_for_card(card.id)
        used = used_limit_cents(invoices)
        return {
            "limit_cents": card.limit_cents,
            "current_balance_cents": card.current_balance_cents,
            "used_cents": used,
            "available_cents": max(card.limit_cents - used, 0),
        }


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.is_default.desc(), Category.order, Category.name)
        )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        category = self._insert(data)
        self.session.commit()
        self.session.refresh(category)
        return category

    def _insert(self, data: CategoryIn) -> Category:
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            Category.type == data.type,
            func.lower(Category.name) == data.name.strip().lower(),
        )
        if self.session.scalar(stmt):
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
            icon=data.icon,
            order=data.order,
        )
        self.session.add(category)
        self.session.flush()
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        category.name = name.strip()
        self.session.commit()
        return category

    def archive(self, category_id: int) -> None:
        category = self.get(category_id)
        category.archived_at = datetime.utcnow()
        self.session.commit()

    def restore(self, category_id: int) -> None:
        category = self.get(category_id)
        category.archived_at = None
        self.session.commit()

    def resolve(self, name: str, txn_type: TransactionType) -> Category:
        """Find a category by name, tolerating one typo, creating it if absent."""
        clean = name.strip()
        if not clean:
            raise ValueError("Category name cannot be empty")
        input_lower = clean.lower()
        exact = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == txn_type,
                func.lower(Category.name) == input_lower,
            )
        )
        if exact:
            if exact.archived_at is not None:
                exact.archived_at = None
                self.session.flush()
            return exact

        candidates = self.session.scalars(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == txn_type,
                Category.archived_at.is_(None),
            )
        ).all()
        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in candidates:
            dist = int(Levenshtein.distance(input_lower, category.name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted({c.name for c in best}))
                raise CategoryAmbiguousError(
                    f"Category '{clean}' is ambiguous; matches: {options}"
                )
            return best[0]

        return self._insert(CategoryIn(name=clean, type=txn_type, order=0))


class ContactService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Contact]:
        stmt = (
            select(Contact)
            .where(Contact.user_id == self.user_id)
            .order_by(Contact.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, contact_id: int) -> Contact:
        contact = self.session.get(Contact, contact_id)
        if not contact or contact.user_id != self.user_id:
            raise ValueError("Contact not found")
        return contact

    def create(self, data: ContactIn) -> Contact:
        contact = Contact(
            user_id=self.user_id,
            name=data.name.strip(),
            phone=data.phone,
            email=data.email,
        )
        self.session.add(contact)
        self.session.commit()
        self.session.refresh(contact)
        return contact

    def update(self, contact_id: int, data: ContactIn) -> Contact:
        contact = self.get(contact_id)
        contact.name = data.name.strip()
        contact.phone = data.phone
        contact.email = data.email
        self.session.commit()
        self.session.refresh(contact)
        return contact

    def delete(self, contact_id: int) -> None:
        contact = self.get(contact_id)
        # Charges fall back to the card holder.
        self.session.execute(
            update(Transaction)
            .where(Transaction.contact_id == contact.id)
            .values(contact_id=None)
        )
        self.session.delete(contact)
        self.session.commit()

    def charge_message(
        self, card_id: int, contact_id: int, month_key: Optional[str] = None
    ) -> tuple[str, str, int]:
        """Build the WhatsApp charge sent to a contact for their card purchases.

        Returns ``(phone, body, total_cents)``; ``month_key`` limits the
        charges to one invoice.
        """
        contact = self.get(contact_id)
        digits = re.sub(r"\D", "", contact.phone or "")
        if not digits:
            raise ValueError("Contact has no phone number")
        phone = digits if digits.startswith("55") else f"55{digits}"

        card = CreditCardService(self.session, self.user_id).get(card_id)
        charges = TransactionService(self.session, self.user_id).for_card(card.id)
        selected = filter_transactions(
            charges, card.closing_day, month_key=month_key, contact=contact.id
        )
        if not selected:
            raise ValueError("No charges for this contact")
        selected.sort(key=lambda t: (t.date, t.id))

        total = sum(abs(t.amount_cents) for t in selected)
        lines = [
            f"{i}. {t.description} - {format_brl(abs(t.amount_cents))} ({t.date:%d/%m/%Y})"
            for i, t in enumerate(selected, start=1)
        ]
        body = (
            f"Olá {contact.name}! 👋\n\n"
            "Aqui está o resumo das suas compras:\n\n"
            + "\n".join(lines)
            + f"\n\n💰 *Total: {format_brl(total)}*\n\n"
            "Por favor, realize o pagamento quando possível. Obrigado!"
        )
        return phone, body, total

    def send_charge(
        self, card_id: int, contact_id: int, client, month_key: Optional[str] = None
    ) -> dict[str, object]:
        phone, body, total = self.charge_message(card_id, contact_id, month_key)
        client.send_text(phone, body)
        logger.info(
            "contact_charge_sent: contact=%s card=%s total_cents=%s",
            contact_id,
            card_id,
            total,
        )
        return {"phone": phone, "message": body, "total_cents": total}


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)
        self.cards = CreditCardService(session, self.user_id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.account),
                joinedload(Transaction.credit_card),
            )
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def list(
        self,
        period: Period,
        filters: Optional[TransactionFilters] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.account),
                joinedload(Transaction.credit_card),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        stmt = _without_investment_legs(stmt, self.user_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.credit_card_id:
            stmt = stmt.where(Transaction.credit_card_id == filters.credit_card_id)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.contact == PRIMARY_USER:
            stmt = stmt.where(Transaction.contact_id.is_(None))
        elif filters.contact not in (None, ALL_CONTACTS):
            stmt = stmt.where(Transaction.contact_id == int(filters.contact))
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        return self.session.scalars(stmt).unique().all()

    def for_card(self, card_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.credit_card_id == card_id,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def create(self, data: TransactionIn) -> MutationResult:
        with atomic(self.session):
            result = self._create(data)
        logger.info(
            "transaction_created: ids=%s owner_accounts=%s owner_cards=%s",
            [t.id for t in result.transactions],
            [a.id for a in result.accounts],
            [c.id for c in result.credit_cards],
        )
        return result

    def update(self, transaction_id: int, data: TransactionIn) -> MutationResult:
        with atomic(self.session):
            result = self._update(transaction_id, data)
        logger.info("transaction_updated: id=%s", transaction_id)
        return result

    def delete(self, transaction_id: int) -> MutationResult:
        txn = self.get(transaction_id)
        if txn.investment_group_id:
            return InvestmentTransferService(self.session, self.user_id).undo(
                txn.investment_group_id
            )
        with atomic(self.session):
            owner = ownership_for(txn.account_id, txn.credit_card_id)
            deltas = deltas_for_delete(owner, txn.amount_cents)
            result = self.apply_deltas(deltas)
            if txn.paid_invoice_id is not None:
                card = InvoiceService(self.session, self.user_id).reverse_payment(txn)
                if card not in result.credit_cards:
                    result.credit_cards.append(card)
            self.session.delete(txn)
            self.session.flush()
        result.removed_transaction_ids.append(transaction_id)
        logger.info("transaction_deleted: id=%s", transaction_id)
        return result

    def _validate_refs(self, data: TransactionIn) -> None:
        if data.category_id is not None:
            category = self.session.get(Category, data.category_id)
            if not category or category.user_id != self.user_id:
                raise ValueError("Category not found")
            if category.type != data.type:
                raise ValueError("Category type mismatch")
        if data.contact_id is not None:
            ContactService(self.session, self.user_id).get(data.contact_id)
        if data.account_id is not None:
            if not self.accounts.get(data.account_id).is_active:
                raise ValueError("Account is inactive")
        if data.credit_card_id is not None:
            if not self.cards.get(data.credit_card_id).is_active:
                raise ValueError("Credit card is inactive")

    def check_funds(
        self,
        owner: Optional[Ownership],
        amount_cents: int,
        *,
        replacing: Optional[Transaction] = None,
    ) -> None:
        """Reject an account debit larger than the real balance, or a card
        charge beyond the available limit."""
        if isinstance(owner, AccountOwner) and amount_cents < 0:
            exclude = (
                replacing.id
                if replacing is not None and replacing.account_id == owner.account_id
                else None
            )
            available = self.accounts.real_balance(
                owner.account_id, exclude_txn_id=exclude
            )
            if available < -amount_cents:
                raise InsufficientFundsError("Saldo insuficiente na conta selecionada")
        elif isinstance(owner, CardOwner):
            card = self.cards.get(owner.credit_card_id)
            if card.limit_cents <= 0:
                return
            skip = replacing.id if replacing is not None else None
            charges = [t for t in self.for_card(card.id) if t.id != skip]
            persisted = InvoiceService(self.session, self.user_id).persisted_for_card(
                card.id
            )
            used = used_limit_cents(
                aggregate_invoices(charges, card.closing_day, card.due_day, persisted)
            )
            if used + abs(amount_cents) > card.limit_cents:
                raise CreditLimitExceededError("Limite do cartão insuficiente")

    def apply_deltas(self, deltas: list[BalanceDelta]) -> MutationResult:
        result = MutationResult()
        for delta in deltas:
            if isinstance(delta.owner, AccountOwner):
                account = self.accounts.get(delta.owner.account_id)
                account.current_balance_cents += delta.delta_cents
                if account not in result.accounts:
                    result.accounts.append(account)
            else:
                card = self.cards.get(delta.owner.credit_card_id)
                # The amount owed on a card never goes below zero.
                card.current_balance_cents = max(
                    card.current_balance_cents + delta.delta_cents, 0
                )
                if card not in result.credit_cards:
                    result.credit_cards.append(card)
        self.session.flush()
        return result

    def _create(self, data: TransactionIn) -> MutationResult:
        self._validate_refs(data)
        owner = ownership_for(data.account_id, data.credit_card_id)
        amount = signed_amount(data.type, data.amount_cents)
        if amount == 0:
            raise ValueError("Amount must be non-zero")
        self.check_funds(owner, amount)

        currency = get_settings().default_currency
        if data.account_id is not None:
            currency = self.accounts.get(data.account_id).currency
        elif data.credit_card_id is not None:
            currency = self.cards.get(data.credit_card_id).currency

        rows: list[Transaction] = []
        for number, (part, when) in enumerate(
            _split_installments(amount, data.date, data.installment_count), start=1
        ):
            txn = Transaction(
                user_id=self.user_id,
                description=data.description.strip(),
                amount_cents=part,
                type=data.type,
                date=when,
                currency=currency,
                account_id=data.account_id,
                credit_card_id=data.credit_card_id,
                category_id=data.category_id,
                contact_id=data.contact_id,
                notes=data.notes,
            )
            if data.installment_count > 1:
                txn.is_installment = True
                txn.installment_number = number
                txn.installment_count = data.installment_count
                txn.description = (
                    f"{data.description.strip()} ({number}/{data.installment_count})"
                )
            rows.append(txn)

        self.session.add_all(rows)
        deltas: list[BalanceDelta] = []
        for txn in rows:
            deltas.extend(deltas_for_create(owner, txn.amount_cents))
        result = self.apply_deltas(deltas)
        result.transactions = rows
        return result

    def _update(self, transaction_id: int, data: TransactionIn) -> MutationResult:
        txn = self.get(transaction_id)
        if txn.investment_group_id:
            raise ValueError("Investment transfers cannot be edited; undo them instead")
        if txn.paid_invoice_id is not None:
            raise ValueError("Invoice payments cannot be edited; delete them instead")
        if txn.is_installment and data.credit_card_id is None:
            raise ValueError("Installment purchases must stay on a credit card")
        if data.installment_count > 1:
            raise ValueError("Installments can only be set when creating a purchase")
        self._validate_refs(data)

        old_owner = ownership_for(txn.account_id, txn.credit_card_id)
        old_amount = txn.amount_cents
        new_owner = ownership_for(data.account_id, data.credit_card_id)
        new_amount = signed_amount(data.type, data.amount_cents)
        if new_amount == 0:
            raise ValueError("Amount must be non-zero")
        self.check_funds(new_owner, new_amount, replacing=txn)

        deltas = deltas_for_update(old_owner, old_amount, new_owner, new_amount)

        txn.description = data.description.strip()
        txn.amount_cents = new_amount
        txn.type = data.type
        txn.date = data.date
        txn.account_id = data.account_id
        txn.credit_card_id = data.credit_card_id
        txn.category_id = data.category_id
        txn.contact_id = data.contact_id
        txn.notes = data.notes

        result = self.apply_deltas(deltas)
        result.transactions = [txn]
        return result


def _split_installments(
    amount_cents: int, first_date: date, count: int
) -> list[tuple[int, date]]:
    sign = -1 if amount_cents < 0 else 1
    total = abs(amount_cents)
    base = total // count
    remainder = total - base * count
    parts = []
    for i in range(count):
        part = base + (remainder if i == 0 else 0)
        parts.append((sign * part, shift_months(first_date, i)))
    return parts


class InvoiceService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.cards = CreditCardService(session, self.user_id)

    def persisted_for_card(self, card_id: int) -> list[CreditCardInvoice]:
        stmt = (
            select(CreditCardInvoice)
            .where(
                CreditCardInvoice.user_id == self.user_id,
                CreditCardInvoice.credit_card_id == card_id,
            )
            .order_by(CreditCardInvoice.year.desc(), CreditCardInvoice.month.desc())
        )
        return self.session.scalars(stmt).all()

    def list_for_card(
        self,
        card_id: int,
        *,
        month_key: Optional[str] = None,
        contact: ContactFilter = ALL_CONTACTS,
    ) -> list[MonthlyInvoice]:
        card = self.cards.get(card_id)
        charges = TransactionService(self.session, self.user_id).for_card(card.id)
        selected = filter_transactions(
            charges, card.closing_day, month_key=month_key, contact=contact
        )
        return aggregate_invoices(
            selected, card.closing_day, card.due_day, self.persisted_for_card(card.id)
        )

    def current(self, card_id: int, today: Optional[date] = None) -> MonthlyInvoice:
        card = self.cards.get(card_id)
        period = current_invoice_period(today or local_today(), card.closing_day)
        for invoice in self.list_for_card(card.id):
            if invoice.period == period:
                return invoice
        return MonthlyInvoice(
            month=period.month,
            year=period.year,
            due_date=due_date(period, card.due_day),
            closing_date=period.day(card.closing_day),
        )

    def get_persisted(
        self, card_id: int, month: int, year: int
    ) -> Optional[CreditCardInvoice]:
        stmt = select(CreditCardInvoice).where(
            CreditCardInvoice.user_id == self.user_id,
            CreditCardInvoice.credit_card_id == card_id,
            CreditCardInvoice.month == month,
            CreditCardInvoice.year == year,
        )
        return self.session.scalar(stmt)

    def upsert(self, data: InvoiceUpsertIn) -> CreditCardInvoice:
        with atomic(self.session):
            row = self._upsert_row(data)
        self.session.refresh(row)
        return row

    def _upsert_row(self, data: InvoiceUpsertIn) -> CreditCardInvoice:
        card = self.cards.get(data.credit_card_id)
        status = data.status or derive_status(data.total_cents, data.paid_cents)
        period = InvoicePeriod(data.year, data.month)
        existing = self.get_persisted(card.id, data.month, data.year)
        if existing:
            existing.total_cents = data.total_cents
            existing.paid_cents = data.paid_cents
            existing.status = status
            if data.due_date is not None:
                existing.due_date = data.due_date
            if data.payment_date is not None:
                existing.payment_date = data.payment_date
            if data.notes is not None:
                existing.notes = data.notes
            self.session.flush()
            return existing

        row = CreditCardInvoice(
            user_id=self.user_id,
            credit_card_id=card.id,
            month=data.month,
            year=data.year,
            total_cents=data.total_cents,
            paid_cents=data.paid_cents,
            status=status,
            due_date=data.due_date or due_date(period, card.due_day),
            payment_date=data.payment_date,
            notes=data.notes,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def pay(
        self, card_id: int, month: int, year: int, payment: InvoicePaymentIn
    ) -> tuple[CreditCardInvoice, MutationResult]:
        card = self.cards.get(card_id)
        period = InvoicePeriod(year, month)
        persisted = self.get_persisted(card.id, month, year)
        invoice = next(
            (i for i in self.list_for_card(card.id) if i.period == period), None
        )
        if invoice is None and persisted is None:
            raise ValueError("Invoice not found")
        total = invoice.total_cents if invoice is not None else persisted.total_cents
        already_paid = persisted.paid_cents if persisted is not None else 0
        if payment.amount_cents > max(total - already_paid, 0):
            raise ValueError("Payment exceeds the outstanding invoice amount")

        txns = TransactionService(self.session, self.user_id)
        with atomic(self.session):
            # A transfer leaves income/expense totals alone: the charges
            # themselves were already counted as expenses.
            result = txns._create(
                TransactionIn(
                    description=f"Pagamento Fatura {card.name}",
                    amount_cents=-payment.amount_cents,
                    type=TransactionType.transfer,
                    date=payment.payment_date,
                    account_id=payment.account_id,
                    notes=f"Fatura {period.label}",
                )
            )
            paid_total = already_paid + payment.amount_cents
            row = self._upsert_row(
                InvoiceUpsertIn(
                    credit_card_id=card.id,
                    month=month,
                    year=year,
                    total_cents=total,
                    paid_cents=paid_total,
                    status=derive_status(total, paid_total),
                    payment_date=payment.payment_date,
                )
            )
            result.transactions[0].paid_invoice_id = row.id
            card.current_balance_cents = max(
                card.current_balance_cents - payment.amount_cents, 0
            )
            if card not in result.credit_cards:
                result.credit_cards.append(card)
            self.session.flush()
        logger.info(
            "invoice_paid: card=%s period=%s amount_cents=%s status=%s",
            card.id,
            period.key,
            payment.amount_cents,
            row.status.value,
        )
        return row, result

    def reverse_payment(self, payment: Transaction) -> CreditCard:
        """Take a deleted payment back out of its invoice and the card balance."""
        row = self.session.get(CreditCardInvoice, payment.paid_invoice_id)
        if row is None or row.user_id != self.user_id:
            raise ValueError("Invoice not found")
        card = self.cards.get(row.credit_card_id)
        period = InvoicePeriod(row.year, row.month)
        invoice = next(
            (i for i in self.list_for_card(card.id) if i.period == period), None
        )
        total = invoice.total_cents if invoice is not None else row.total_cents

        row.paid_cents = max(row.paid_cents - abs(payment.amount_cents), 0)
        row.total_cents = total
        row.status = derive_status(total, row.paid_cents)
        if row.paid_cents == 0:
            row.payment_date = None
        card.current_balance_cents += abs(payment.amount_cents)
        self.session.flush()
        logger.info(
            "invoice_payment_reversed: card=%s period=%s amount_cents=%s",
            card.id,
            period.key,
            abs(payment.amount_cents),
        )
        return card


class InvestmentTransferService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def transfer(self, data: InvestmentTransferIn) -> MutationResult:
        txns = TransactionService(self.session, self.user_id)
        source = txns.accounts.get(data.from_account_id)
        target = txns.accounts.get(data.to_account_id)
        if not source.is_active or not target.is_active:
            raise ValueError("Account is inactive")
        source_is_investment = source.type == AccountType.investment
        target_is_investment = target.type == AccountType.investment
        if target_is_investment and not source_is_investment:
            action = InvestmentAction.aporte
            description = data.description or f"Aporte em {target.name}"
        elif source_is_investment and not target_is_investment:
            action = InvestmentAction.resgate
            description = data.description or f"Resgate de {source.name}"
        else:
            raise ValueError("Exactly one side of the transfer must be an investment account")

        txns.check_funds(AccountOwner(source.id), -data.amount_cents)

        group_id = str(uuid.uuid4())
        legs = [
            Transaction(
                user_id=self.user_id,
                description=description,
                amount_cents=amount,
                type=TransactionType.transfer,
                date=data.date,
                currency=account.currency,
                account_id=account.id,
                investment_action=action,
                investment_group_id=group_id,
            )
            for account, amount in (
                (source, -data.amount_cents),
                (target, data.amount_cents),
            )
        ]
        with atomic(self.session):
            self.session.add_all(legs)
            deltas: list[BalanceDelta] = []
            for leg in legs:
                deltas.extend(
                    deltas_for_create(AccountOwner(leg.account_id), leg.amount_cents)
                )
            result = txns.apply_deltas(deltas)
            result.transactions = legs
        logger.info(
            "investment_transfer: action=%s group=%s amount_cents=%s",
            action.value,
            group_id,
            data.amount_cents,
        )
        return result

    def legs(self, group_id: str) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.investment_group_id == group_id,
            )
            .order_by(Transaction.id)
        )
        return self.session.scalars(stmt).all()

    def undo(self, group_id: str) -> MutationResult:
        legs = self.legs(group_id)
        if not legs:
            raise ValueError("Investment transfer not found")
        txns = TransactionService(self.session, self.user_id)
        with atomic(self.session):
            deltas: list[BalanceDelta] = []
            for leg in legs:
                deltas.extend(
                    deltas_for_delete(
                        ownership_for(leg.account_id, leg.credit_card_id),
                        leg.amount_cents,
                    )
                )
            result = txns.apply_deltas(deltas)
            result.removed_transaction_ids = [leg.id for leg in legs]
            for leg in legs:
                self.session.delete(leg)
            self.session.flush()
        return result


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    @staticmethod
    def _month_start(year: int, month: int) -> date:
        return date(year, month, 1)

    @staticmethod
    def _month_end(year: int, month: int) -> date:
        if month == 12:
            return date(year + 1, 1, 1) - date.resolution
        return date(year, month + 1, 1) - date.resolution

    def list_for_month(self, year: int, month: int) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(
                Budget.user_id == self.user_id,
                Budget.year == year,
                Budget.month == month,
            )
            .order_by(Budget.created_at.asc(), Budget.id.asc())
        )
        return self.session.scalars(stmt).all()

    def upsert(self, data: BudgetIn) -> Budget:
        category = self.session.get(Category, data.category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        if category.type != TransactionType.expense:
            raise ValueError("Budgets can only be set for expense categories")

        stmt = select(Budget).where(
            Budget.user_id == self.user_id,
            Budget.category_id == data.category_id,
            Budget.year == data.year,
            Budget.month == data.month,
        )
        existing = self.session.scalar(stmt)
        if existing:
            existing.planned_cents = data.planned_cents
            existing.name = data.name
            existing.notes = data.notes
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            year=data.year,
            month=data.month,
            planned_cents=data.planned_cents,
            name=data.name,
            notes=data.notes,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        self.session.delete(budget)
        self.session.commit()

    def spent_by_category_for_month(self, year: int, month: int) -> dict[int, int]:
        stmt = (
            select(
                Transaction.category_id,
                func.coalesce(func.sum(-Transaction.amount_cents), 0),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.category_id.isnot(None),
                Transaction.investment_group_id.is_(None),
                Transaction.date.between(
                    self._month_start(year, month), self._month_end(year, month)
                ),
            )
            .group_by(Transaction.category_id)
        )
        return {row[0]: int(row[1]) for row in self.session.execute(stmt).all()}

    def progress_for_month(self, year: int, month: int) -> list[dict[str, object]]:
        spent = self.spent_by_category_for_month(year, month)
        progress = []
        for budget in self.list_for_month(year, month):
            used = spent.get(budget.category_id, 0)
            percent = (used / budget.planned_cents * 100) if budget.planned_cents else 0.0
            progress.append(
                {
                    "budget": budget,
                    "spent_cents": used,
                    "remaining_cents": budget.planned_cents - used,
                    "percent": round(percent, 1),
                    "over_budget": used > budget.planned_cents,
                }
            )
        return progress


class GoalService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, status: Optional[GoalStatus] = None) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.created_at.desc(), Goal.id.desc())
        )
        if status is not None:
            stmt = stmt.where(Goal.status == status)
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise ValueError("Goal not found")
        return goal

    def create(self, data: GoalIn) -> Goal:
        goal = Goal(user_id=self.user_id, **data.model_dump())
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: GoalIn) -> Goal:
        goal = self.get(goal_id)
        for key, value in data.model_dump().items():
            setattr(goal, key, value)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()

    def contribute(self, goal_id: int, amount_cents: int) -> Goal:
        if amount_cents <= 0:
            raise ValueError("Contribution must be positive")
        goal = self.get(goal_id)
        if goal.status != GoalStatus.active:
            raise ValueError("Only active goals accept contributions")
        goal.current_cents += amount_cents
        if goal.current_cents >= goal.target_cents:
            goal.status = GoalStatus.completed
        self.session.commit()
        self.session.refresh(goal)
        return goal

    @staticmethod
    def progress_percent(goal: Goal) -> float:
        return round(goal.current_cents / goal.target_cents * 100, 1)


class InvestmentService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Investment]:
        stmt = (
            select(Investment)
            .where(Investment.user_id == self.user_id)
            .order_by(Investment.created_at.desc(), Investment.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, investment_id: int) -> Investment:
        investment = self.session.get(Investment, investment_id)
        if not investment or investment.user_id != self.user_id:
            raise ValueError("Investment not found")
        return investment

    def create(self, data: InvestmentIn) -> Investment:
        payload = data.model_dump()
        payload["symbol"] = payload["symbol"].upper()
        investment = Investment(user_id=self.user_id, **payload)
        self.session.add(investment)
        self.session.commit()
        self.session.refresh(investment)
        return investment

    def update(self, investment_id: int, data: InvestmentIn) -> Investment:
        investment = self.get(investment_id)
        for key, value in data.model_dump().items():
            setattr(investment, key, value)
        investment.symbol = investment.symbol.upper()
        self.session.commit()
        self.session.refresh(investment)
        return investment

    def delete(self, investment_id: int) -> None:
        investment = self.get(investment_id)
        self.session.delete(investment)
        self.session.commit()

    @staticmethod
    def _value(quantity: Decimal, price_cents: int) -> int:
        return int(
            (Decimal(quantity) * price_cents).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )

    def portfolio_summary(self) -> dict[str, object]:
        positions = []
        total_value = 0
        total_cost = 0
        for inv in self.list_all():
            value = self._value(inv.quantity, inv.current_price_cents)
            cost = self._value(inv.quantity, inv.average_price_cents)
            total_value += value
            total_cost += cost
            positions.append(
                {
                    "investment": inv,
                    "value_cents": value,
                    "cost_cents": cost,
                    "profit_cents": value - cost,
                }
            )
        return {
            "positions": positions,
            "total_value_cents": total_value,
            "total_cost_cents": total_cost,
            "total_profit_cents": total_value - total_cost,
        }


class ReportService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def transactions(
        self, period: Period, filters: Optional[TransactionFilters] = None
    ) -> list[Transaction]:
        return TransactionService(self.session, self.user_id).list(
            period, filters, limit=None
        )

    def summary(
        self, period: Period, filters: Optional[TransactionFilters] = None
    ) -> dict[str, object]:
        income = 0
        expenses = 0
        by_category: dict[tuple[str, str], int] = {}
        for txn in self.transactions(period, filters):
            # Paired investment movements are money moving, not earning or spending.
            if txn.investment_group_id:
                continue
            if txn.type == TransactionType.income:
                income += abs(txn.amount_cents)
            elif txn.type == TransactionType.expense:
                expenses += abs(txn.amount_cents)
            else:
                continue
            name = txn.category.name if txn.category else "Sem categoria"
            key = (name, txn.type.value)
            by_category[key] = by_category.get(key, 0) + abs(txn.amount_cents)
        return {
            "start": period.start,
            "end": period.end,
            "income_cents": income,
            "expense_cents": expenses,
            "net_cents": income - expenses,
            "by_category": [
                {"name": name, "type": txn_type, "total_cents": total}
                for (name, txn_type), total in sorted(
                    by_category.items(), key=lambda item: -item[1]
                )
            ],
        }

    def expenses_on(self, day: date) -> int:
        stmt = select(
            func.coalesce(func.sum(-Transaction.amount_cents), 0)
        ).where(
            Transaction.user_id == self.user_id,
            Transaction.type == TransactionType.expense,
            Transaction.investment_group_id.is_(None),
            Transaction.date == day,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)


class CSVService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def preview(self, content: str) -> tuple[list[dict[str, object]], list[str]]:
        rows, errors = parse_csv(content)
        return [row.model_dump() for row in rows], errors

    def commit(
        self,
        content: str,
        *,
        account_id: Optional[int] = None,
        credit_card_id: Optional[int] = None,
    ) -> int:
        rows, errors = parse_csv(content)
        if errors:
            raise ValueError("; ".join(errors))
        txns = TransactionService(self.session, self.user_id)
        categories = CategoryService(self.session, self.user_id)
        with atomic(self.session):
            for idx, row in enumerate(rows, start=1):
                category_id = None
                if row.category:
                    category_id = categories.resolve(row.category, row.type).id
                try:
                    txns._create(
                        TransactionIn(
                            description=row.description,
                            amount_cents=row.amount_cents,
                            type=row.type,
                            date=row.date,
                            account_id=account_id,
                            credit_card_id=credit_card_id,
                            category_id=category_id,
                            notes=row.notes,
                        )
                    )
                except ValueError as exc:
                    raise ValueError(f"Row {idx}: {exc}") from exc
        logger.info("csv_import: rows=%s", len(rows))
        return len(rows)

    def export(self, transactions: list[Transaction]) -> str:
        return export_transactions(transactions)
