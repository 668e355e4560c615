"""Split and payer-share construction for shared expenses.

Turns a transaction's ``SplitMethod`` into per-person ``Split`` records whose
amounts always add up to the transaction total, and checks that committed
splits and payer shares still reconcile.
"""

import logging
from decimal import Decimal
from fractions import Fraction
from typing import Mapping, Sequence, assert_never
from uuid import UUID

from ..exceptions import (
    DegenerateTransaction,
    InvalidTransaction,
    LedgerError,
    Result,
    UnknownEntityReference,
)
from ..models import (
    AdjustmentSplit,
    EqualSplit,
    ExactSplit,
    PayerShare,
    PercentageSplit,
    Person,
    SharesSplit,
    Split,
    Transaction,
)
from ..money import MINOR_UNITS_PER_MAJOR, Money

logger = logging.getLogger(__name__)

PERCENTAGE_TOLERANCE = Decimal("0.01")


def reconciliation_tolerance(part_count: int) -> Money:
    """
    Allowed drift between a total and the sum of its parts.

    Allocating a total into N parts can drift by up to N-1 minor units;
    a single part still gets one minor unit of slack.
    """
    return Money.from_minor_units(max(1, part_count - 1))


def _fraction_to_decimal(value: Fraction) -> Decimal:
    return Decimal(value.numerator) / Decimal(value.denominator)


def _ordered_participants(participants: Sequence[Person]) -> list[Person]:
    # Stable order decides who receives leftover pennies
    return sorted(participants, key=lambda p: (p.display_name.casefold(), str(p.id)))


def _check_keys(
    transaction: Transaction, keys: Sequence[UUID], participant_ids: set[UUID]
) -> LedgerError | None:
    for person_id in keys:
        if person_id not in participant_ids:
            return UnknownEntityReference(
                "person",
                person_id,
                referenced_by=transaction.id,
                message=(
                    f"Split method of '{transaction.title}' references {person_id}, "
                    f"who is not a participant"
                ),
            )
    return None


def compute_splits(
    transaction: Transaction, participants: Sequence[Person]
) -> Result[list[Split]]:
    """
    Compute the splits for a transaction from its split method.

    Every participant gets exactly one split (possibly zero for weighted
    methods). Rounding residue is distributed by largest remainder, ties going
    to participants in display-name order, so the splits always sum to the
    transaction amount exactly (``ExactSplit`` amounts are taken as given and
    only checked).

    Args:
        transaction: The transaction being split
        participants: People sharing the cost

    Returns:
        Result holding the splits, or the reason they can't be built
    """
    if not transaction.amount.is_positive():
        return Result.failure(
            DegenerateTransaction(
                transaction.id, f"Transaction '{transaction.title}' has no amount"
            )
        )
    if not participants:
        return Result.failure(
            DegenerateTransaction(
                transaction.id, f"Transaction '{transaction.title}' has no participants"
            )
        )

    ordered = _ordered_participants(participants)
    participant_ids = {p.id for p in ordered}
    if len(participant_ids) != len(ordered):
        return Result.failure(
            InvalidTransaction(
                transaction.id,
                f"Transaction '{transaction.title}' lists a participant twice",
            )
        )

    amount = transaction.amount
    total_major = Fraction(amount.minor_units, MINOR_UNITS_PER_MAJOR)
    method = transaction.split_method

    amounts: list[Money]
    raws: list[Decimal | None]

    match method:
        case EqualSplit():
            amounts = amount.allocate([1] * len(ordered))
            raw = _fraction_to_decimal(total_major / len(ordered))
            raws = [raw] * len(ordered)

        case PercentageSplit(weights=weights):
            error = _check_keys(transaction, list(weights), participant_ids)
            if error:
                return Result.failure(error)
            percents = [weights.get(p.id, Decimal("0")) for p in ordered]
            if any(pct < 0 for pct in percents):
                return Result.failure(
                    InvalidTransaction(transaction.id, "Percentages cannot be negative")
                )
            total_percent = sum(percents, Decimal("0"))
            if abs(total_percent - 100) >= PERCENTAGE_TOLERANCE:
                return Result.failure(
                    InvalidTransaction(
                        transaction.id,
                        f"Percentages must add up to 100% (got {total_percent}%)",
                    )
                )
            amounts = amount.allocate(percents)
            raws = [
                _fraction_to_decimal(total_major * Fraction(pct) / 100)
                for pct in percents
            ]

        case ExactSplit(amounts=exact):
            error = _check_keys(transaction, list(exact), participant_ids)
            if error:
                return Result.failure(error)
            amounts = [exact.get(p.id, Money.zero()) for p in ordered]
            if any(a.is_negative() for a in amounts):
                return Result.failure(
                    InvalidTransaction(transaction.id, "Split amounts cannot be negative")
                )
            total = sum(amounts, Money.zero())
            if not total.equals_within_epsilon(
                amount, reconciliation_tolerance(len(amounts))
            ):
                return Result.failure(
                    InvalidTransaction(
                        transaction.id,
                        f"Amounts must equal the total: {total} != {amount}",
                    )
                )
            raws = [a.to_decimal() for a in amounts]

        case SharesSplit(shares=shares):
            error = _check_keys(transaction, list(shares), participant_ids)
            if error:
                return Result.failure(error)
            counts = [shares.get(p.id, Decimal("0")) for p in ordered]
            if any(c < 0 for c in counts):
                return Result.failure(
                    InvalidTransaction(transaction.id, "Shares cannot be negative")
                )
            total_shares = sum(counts, Decimal("0"))
            if total_shares <= 0:
                return Result.failure(
                    InvalidTransaction(
                        transaction.id, "Enter shares for at least one person"
                    )
                )
            amounts = amount.allocate(counts)
            raws = [
                _fraction_to_decimal(total_major * Fraction(c) / Fraction(total_shares))
                for c in counts
            ]

        case AdjustmentSplit(adjustments=adjustments):
            error = _check_keys(transaction, list(adjustments), participant_ids)
            if error:
                return Result.failure(error)
            adjust = [adjustments.get(p.id, Money.zero()) for p in ordered]
            total_adjust = sum(adjust, Money.zero())
            if total_adjust > amount:
                return Result.failure(
                    InvalidTransaction(
                        transaction.id, "Adjustments cannot exceed the total amount"
                    )
                )
            base = (amount - total_adjust).allocate([1] * len(ordered))
            amounts = [b + a for b, a in zip(base, adjust, strict=True)]
            if any(a.is_negative() for a in amounts):
                return Result.failure(
                    InvalidTransaction(
                        transaction.id, "An adjustment leaves a participant owing less than zero"
                    )
                )
            raws = [a.to_decimal() for a in adjust]

        case _:
            assert_never(method)

    splits = [
        Split(
            transaction_id=transaction.id,
            owed_by=person.id,
            amount=split_amount,
            raw_amount=raw,
        )
        for person, split_amount, raw in zip(ordered, amounts, raws, strict=True)
    ]

    logger.debug(
        f"Computed {len(splits)} {method.kind} splits for '{transaction.title}' "
        f"({amount})"
    )
    return Result.success(splits)


def single_payer(transaction: Transaction, person_id: UUID) -> list[PayerShare]:
    """One person paid the whole amount."""
    return [
        PayerShare(
            transaction_id=transaction.id,
            person_id=person_id,
            amount_paid=transaction.amount,
        )
    ]


def compute_payer_shares(
    transaction: Transaction, contributions: Mapping[UUID, Money]
) -> Result[list[PayerShare]]:
    """
    Build payer shares for a (possibly multi-payer) transaction.

    Args:
        transaction: The transaction being paid
        contributions: Amount paid per person

    Returns:
        Result holding payer shares ordered by person id
    """
    paying = {pid: amt for pid, amt in contributions.items() if not amt.is_zero_within_epsilon()}
    if not paying:
        return Result.failure(
            DegenerateTransaction(
                transaction.id, f"Transaction '{transaction.title}' has no payer"
            )
        )
    if any(amt.is_negative() for amt in paying.values()):
        return Result.failure(
            InvalidTransaction(transaction.id, "Paid amounts cannot be negative")
        )
    total = sum(paying.values(), Money.zero())
    if not total.equals_within_epsilon(
        transaction.amount, reconciliation_tolerance(len(paying))
    ):
        return Result.failure(
            InvalidTransaction(
                transaction.id,
                f"Paid-by amounts must equal the total: {total} != {transaction.amount}",
            )
        )
    return Result.success(
        [
            PayerShare(transaction_id=transaction.id, person_id=pid, amount_paid=amt)
            for pid, amt in sorted(paying.items(), key=lambda item: str(item[0]))
        ]
    )


def check_transaction(
    transaction: Transaction,
    splits: Sequence[Split],
    payer_shares: Sequence[PayerShare],
    known_person_ids: set[UUID] | frozenset[UUID],
    known_group_ids: set[UUID] | frozenset[UUID],
) -> list[LedgerError]:
    """
    Check one committed transaction against the ledger invariants.

    Nothing is corrected: every problem is reported so the caller can surface
    the underlying data bug.

    Returns:
        Errors found, empty if the transaction is sound
    """
    errors: list[LedgerError] = []

    if not transaction.amount.is_positive():
        errors.append(
            DegenerateTransaction(
                transaction.id,
                f"Transaction '{transaction.title}' has non-positive amount "
                f"{transaction.amount}",
            )
        )
    if not splits:
        errors.append(
            DegenerateTransaction(
                transaction.id, f"Transaction '{transaction.title}' has no splits"
            )
        )
    if not payer_shares:
        errors.append(
            DegenerateTransaction(
                transaction.id, f"Transaction '{transaction.title}' has no payers"
            )
        )

    if transaction.group_id is not None and transaction.group_id not in known_group_ids:
        errors.append(
            UnknownEntityReference("group", transaction.group_id, transaction.id)
        )

    for split in splits:
        if split.owed_by not in known_person_ids:
            errors.append(UnknownEntityReference("person", split.owed_by, transaction.id))
    for payer in payer_shares:
        if payer.person_id not in known_person_ids:
            errors.append(
                UnknownEntityReference("person", payer.person_id, transaction.id)
            )

    owed_by = [s.owed_by for s in splits]
    if len(set(owed_by)) != len(owed_by):
        errors.append(
            InvalidTransaction(
                transaction.id,
                f"Transaction '{transaction.title}' has more than one split per person",
            )
        )

    if any(s.amount.is_negative() for s in splits) or any(
        p.amount_paid.is_negative() for p in payer_shares
    ):
        errors.append(
            InvalidTransaction(
                transaction.id,
                f"Transaction '{transaction.title}' has a negative split or payment",
            )
        )

    if splits:
        split_total = sum((s.amount for s in splits), Money.zero())
        if not split_total.equals_within_epsilon(
            transaction.amount, reconciliation_tolerance(len(splits))
        ):
            errors.append(
                InvalidTransaction(
                    transaction.id,
                    f"Splits of '{transaction.title}' total {split_total}, "
                    f"expected {transaction.amount}",
                )
            )
    if payer_shares:
        paid_total = sum((p.amount_paid for p in payer_shares), Money.zero())
        if not paid_total.equals_within_epsilon(
            transaction.amount, reconciliation_tolerance(len(payer_shares))
        ):
            errors.append(
                InvalidTransaction(
                    transaction.id,
                    f"Payments for '{transaction.title}' total {paid_total}, "
                    f"expected {transaction.amount}",
                )
            )

    return errors
