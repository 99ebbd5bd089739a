"""Running-balance bookkeeping for accounts and credit cards.

Accounts track the signed sum of their transactions on top of the initial
balance. Cards track the magnitude of their charges.
"""

from dataclasses import dataclass
from typing import Optional, Union

from models import TransactionType


@dataclass(frozen=True)
class AccountOwner:
    account_id: int


@dataclass(frozen=True)
class CardOwner:
    credit_card_id: int


Ownership = Union[AccountOwner, CardOwner]


@dataclass(frozen=True)
class BalanceDelta:
    owner: Ownership
    delta_cents: int


def ownership_for(
    account_id: Optional[int], credit_card_id: Optional[int]
) -> Optional[Ownership]:
    if account_id is not None and credit_card_id is not None:
        raise ValueError("A transaction belongs to an account or a credit card, not both")
    if account_id is not None:
        return AccountOwner(account_id)
    if credit_card_id is not None:
        return CardOwner(credit_card_id)
    return None


def signed_amount(txn_type: TransactionType, amount_cents: int) -> int:
    if txn_type == TransactionType.expense:
        return -abs(amount_cents)
    if txn_type == TransactionType.income:
        return abs(amount_cents)
    return amount_cents


def balance_effect(owner: Ownership, amount_cents: int) -> int:
    if isinstance(owner, CardOwner):
        return abs(amount_cents)
    return amount_cents


def deltas_for_create(
    owner: Optional[Ownership], amount_cents: int
) -> list[BalanceDelta]:
    if owner is None:
        return []
    return [BalanceDelta(owner, balance_effect(owner, amount_cents))]


def deltas_for_delete(
    owner: Optional[Ownership], amount_cents: int
) -> list[BalanceDelta]:
    if owner is None:
        return []
    return [BalanceDelta(owner, -balance_effect(owner, amount_cents))]


def deltas_for_update(
    old_owner: Optional[Ownership],
    old_amount_cents: int,
    new_owner: Optional[Ownership],
    new_amount_cents: int,
) -> list[BalanceDelta]:
    # Reversal targets the old owner, application the new one; order matters.
    return deltas_for_delete(old_owner, old_amount_cents) + deltas_for_create(
        new_owner, new_amount_cents
    )


def net_by_owner(deltas: list[BalanceDelta]) -> dict[Ownership, int]:
    totals: dict[Ownership, int] = {}
    for delta in deltas:
        totals[delta.owner] = totals.get(delta.owner, 0) + delta.delta_cents
    return totals
