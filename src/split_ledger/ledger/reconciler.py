"""Settlement validation and reversal.

A settlement must reduce an existing debt: it has to go from the debtor to
the creditor and may not exceed what is outstanding. ``balance`` arguments
throughout this module mean "what ``from_person`` currently owes
``to_person``", i.e. ``engine.pairwise_balance(to_person, from_person)``.
"""

import logging
import uuid
from datetime import datetime
from uuid import UUID

from ..exceptions import (
    AmountExceedsBalance,
    DegenerateTransaction,
    InvalidDirection,
    Result,
)
from ..models import Settlement
from ..money import Money

logger = logging.getLogger(__name__)


def propose_settlement(
    from_person: UUID,
    to_person: UUID,
    amount: Money,
    balance: Money,
    *,
    date: datetime,
    note: str | None = None,
    group_id: UUID | None = None,
) -> Result[Settlement]:
    """
    Validate a settlement before it is handed to the record store.

    An amount within one minor unit of the outstanding balance is treated as
    a full settlement and clamped to the balance, so applying it lands on
    exactly zero.

    Args:
        from_person: Person paying
        to_person: Person being paid
        amount: Amount being paid
        balance: What from_person currently owes to_person
        date: When the payment happened
        note: Optional note
        group_id: Group thread the settlement was made from, if any

    Returns:
        Result holding the settlement, or InvalidDirection /
        AmountExceedsBalance / DegenerateTransaction
    """
    if from_person == to_person:
        return Result.failure(
            InvalidDirection(
                from_person, to_person, "Cannot settle with yourself"
            )
        )

    if balance.is_zero_within_epsilon():
        return Result.failure(
            AmountExceedsBalance(
                amount, Money.zero(), f"Nothing is owed; cannot settle {amount}"
            )
        )

    if balance.is_negative():
        return Result.failure(InvalidDirection(from_person, to_person))

    if not amount.is_positive():
        return Result.failure(
            DegenerateTransaction(None, "Settlement amount must be greater than zero")
        )

    if amount.equals_within_epsilon(balance):
        return full_settlement(
            from_person, to_person, balance, date=date, note=note, group_id=group_id
        )

    if amount > balance:
        return Result.failure(AmountExceedsBalance(amount, balance))

    return Result.success(
        Settlement(
            from_person=from_person,
            to_person=to_person,
            amount=amount,
            date=date,
            is_full_settlement=False,
            note=note,
            group_id=group_id,
        )
    )


def full_settlement(
    from_person: UUID,
    to_person: UUID,
    balance: Money,
    *,
    date: datetime,
    note: str | None = None,
    group_id: UUID | None = None,
) -> Result[Settlement]:
    """
    Build the settlement that clears the outstanding balance exactly.

    Running it again once the debt is cleared fails with
    AmountExceedsBalance, since nothing is left to pay.
    """
    if from_person == to_person:
        return Result.failure(
            InvalidDirection(from_person, to_person, "Cannot settle with yourself")
        )
    if balance.is_zero_within_epsilon():
        return Result.failure(
            AmountExceedsBalance(
                balance, Money.zero(), "Balance is already settled"
            )
        )
    if balance.is_negative():
        return Result.failure(InvalidDirection(from_person, to_person))

    return Result.success(
        Settlement(
            from_person=from_person,
            to_person=to_person,
            amount=balance,
            date=date,
            is_full_settlement=True,
            note=note,
            group_id=group_id,
        )
    )


def reversal_id(settlement_id: UUID) -> UUID:
    """
    Deterministic id for the reversal of a settlement.

    Reversing the same settlement twice yields the same id, so a retried
    undo cannot double-apply.
    """
    return uuid.uuid5(settlement_id, "reversal")


def reverse(settlement: Settlement, date: datetime | None = None) -> Settlement:
    """
    Build the equal-and-opposite record that cancels a settlement.

    The reversal is not subject to direction rules: it only ever undoes a
    payment that was already accepted.
    """
    reversed_settlement = Settlement(
        id=reversal_id(settlement.id),
        from_person=settlement.to_person,
        to_person=settlement.from_person,
        amount=settlement.amount,
        date=date or settlement.date,
        is_full_settlement=False,
        note=settlement.note,
        group_id=settlement.group_id,
        reversal_of=settlement.id,
    )
    logger.debug(f"Reversal {reversed_settlement.id} built for settlement {settlement.id}")
    return reversed_settlement
