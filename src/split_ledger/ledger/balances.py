"""Balance computation over a ledger snapshot.

This module is pure: ``BalanceEngine`` reads a validated ``Snapshot`` once,
pre-computes who owes whom, and answers balance queries without touching any
shared state. Identical snapshots always produce identical answers.

Algorithm (per transaction):
1. Net position of each person = amount paid - amount owed
2. People with a positive net are creditors, negative are debtors
3. Each debtor's debt is divided among creditors in proportion to their
   credit, rounded to minor units so debtor and creditor totals stay exact
4. Settlements are added on top, signed by direction
"""

import logging
from collections import defaultdict
from typing import Mapping
from uuid import UUID

from ..exceptions import (
    DegenerateTransaction,
    InvalidDirection,
    LedgerError,
    Result,
    UnknownEntityReference,
)
from ..models import PayerShare, Person, Snapshot, Split, Transaction
from ..money import Money
from .splits import check_transaction

logger = logging.getLogger(__name__)

PairKey = tuple[UUID, UUID]  # (debtor, creditor) or (payer, payee)


def transaction_net_positions(
    splits: list[Split] | tuple[Split, ...],
    payer_shares: list[PayerShare] | tuple[PayerShare, ...],
) -> dict[UUID, int]:
    """
    Net position per person for one transaction, in minor units.

    Positive = paid more than their share, negative = owes. Self-splits
    simply cancel against the person's own payment.
    """
    net: dict[UUID, int] = defaultdict(int)
    for payer in payer_shares:
        net[payer.person_id] += payer.amount_paid.minor_units
    for split in splits:
        net[split.owed_by] -= split.amount.minor_units
    return dict(net)


def allocate_debts(net_positions: Mapping[UUID, int]) -> dict[PairKey, int]:
    """
    Divide every debtor's debt among the creditors of one transaction.

    Each cell starts at the floor of debt * credit / total. Leftover minor
    units then go to the cells with the largest remainders, skipping any
    debtor or creditor whose total is already reached, so every debtor's row
    and every creditor's column sums exactly. Ties are broken by id.

    If payments and splits differ by a reconciliation penny, the larger side
    is scaled down to the smaller one first.

    Args:
        net_positions: Net position per person in minor units

    Returns:
        Mapping of (debtor, creditor) to the minor units owed
    """
    creditors = sorted((pid for pid, n in net_positions.items() if n > 0), key=str)
    debtors = sorted((pid for pid, n in net_positions.items() if n < 0), key=str)
    if not creditors or not debtors:
        return {}

    row_totals = [-net_positions[d] for d in debtors]
    col_totals = [net_positions[c] for c in creditors]
    total = min(sum(row_totals), sum(col_totals))
    if sum(row_totals) > total:
        row_totals = [m.minor_units for m in Money.from_minor_units(total).allocate(row_totals)]
    if sum(col_totals) > total:
        col_totals = [m.minor_units for m in Money.from_minor_units(total).allocate(col_totals)]

    row_left = list(row_totals)
    col_left = list(col_totals)
    cells: dict[tuple[int, int], int] = {}
    remainders = []
    for i, debt in enumerate(row_totals):
        for j, credit in enumerate(col_totals):
            share, remainder = divmod(debt * credit, total)
            cells[(i, j)] = share
            row_left[i] -= share
            col_left[j] -= share
            if remainder:
                remainders.append((-remainder, i, j))

    for _, i, j in sorted(remainders):
        if row_left[i] > 0 and col_left[j] > 0:
            cells[(i, j)] += 1
            row_left[i] -= 1
            col_left[j] -= 1

    # Greedy pass can strand a unit where the best cell was already used
    for i in range(len(debtors)):
        for j in range(len(creditors)):
            extra = min(row_left[i], col_left[j])
            if extra > 0:
                cells[(i, j)] += extra
                row_left[i] -= extra
                col_left[j] -= extra

    return {
        (debtors[i], creditors[j]): amount
        for (i, j), amount in cells.items()
        if amount
    }


def validate_snapshot(snapshot: Snapshot) -> list[LedgerError]:
    """
    Check a snapshot for dangling references and unreconciled transactions.

    Returns:
        Every problem found, in a stable order; empty if the snapshot is sound
    """
    errors: list[LedgerError] = []
    person_ids = frozenset(p.id for p in snapshot.persons)
    group_ids = frozenset(g.id for g in snapshot.groups)
    transaction_ids = frozenset(t.id for t in snapshot.transactions)

    if snapshot.current_user_id not in person_ids:
        errors.append(UnknownEntityReference("person", snapshot.current_user_id))

    for group in snapshot.groups:
        for member_id in sorted(group.member_ids, key=str):
            if member_id not in person_ids:
                errors.append(UnknownEntityReference("person", member_id, group.id))

    splits_by_txn: dict[UUID, list[Split]] = defaultdict(list)
    for split in snapshot.splits:
        if split.transaction_id not in transaction_ids:
            errors.append(UnknownEntityReference("transaction", split.transaction_id))
            continue
        splits_by_txn[split.transaction_id].append(split)

    payers_by_txn: dict[UUID, list[PayerShare]] = defaultdict(list)
    for payer in snapshot.payer_shares:
        if payer.transaction_id not in transaction_ids:
            errors.append(UnknownEntityReference("transaction", payer.transaction_id))
            continue
        payers_by_txn[payer.transaction_id].append(payer)

    for txn in snapshot.transactions:
        errors.extend(
            check_transaction(
                txn,
                splits_by_txn.get(txn.id, []),
                payers_by_txn.get(txn.id, []),
                person_ids,
                group_ids,
            )
        )

    for settlement in snapshot.settlements:
        for person_id in (settlement.from_person, settlement.to_person):
            if person_id not in person_ids:
                errors.append(UnknownEntityReference("person", person_id, settlement.id))
        if settlement.group_id is not None and settlement.group_id not in group_ids:
            errors.append(
                UnknownEntityReference("group", settlement.group_id, settlement.id)
            )
        if settlement.from_person == settlement.to_person:
            errors.append(
                InvalidDirection(
                    settlement.from_person,
                    settlement.to_person,
                    f"Settlement {settlement.id} is from a person to themselves",
                )
            )
        if not settlement.amount.is_positive():
            errors.append(
                DegenerateTransaction(
                    settlement.id,
                    f"Settlement {settlement.id} has non-positive amount "
                    f"{settlement.amount}",
                )
            )

    for reminder in snapshot.reminders:
        if reminder.to_person not in person_ids:
            errors.append(UnknownEntityReference("person", reminder.to_person, reminder.id))

    for message in snapshot.messages:
        if message.person_id is not None and message.person_id not in person_ids:
            errors.append(UnknownEntityReference("person", message.person_id, message.id))
        if message.group_id is not None and message.group_id not in group_ids:
            errors.append(UnknownEntityReference("group", message.group_id, message.id))
        if (
            message.transaction_id is not None
            and message.transaction_id not in transaction_ids
        ):
            errors.append(
                UnknownEntityReference("transaction", message.transaction_id, message.id)
            )

    return errors


class BalanceEngine:
    """Answers balance queries for one immutable snapshot.

    Build it with ``BalanceEngine.create`` so the snapshot is validated first.
    """

    def __init__(self, snapshot: Snapshot):
        """Pre-compute debts and settlement totals for the snapshot."""
        self.snapshot = snapshot
        self._persons = snapshot.persons_by_id()
        self._groups = snapshot.groups_by_id()

        self._owes: dict[PairKey, int] = defaultdict(int)
        self._group_owes: dict[UUID, dict[PairKey, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._paid: dict[PairKey, int] = defaultdict(int)
        self._group_paid: dict[UUID, dict[PairKey, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._net: dict[UUID, int] = defaultdict(int)
        self._transaction_owes: dict[UUID, dict[PairKey, int]] = {}
        self._counterparties: dict[UUID, set[UUID]] = defaultdict(set)
        self._group_participants: dict[UUID, set[UUID]] = defaultdict(set)

        splits_by_txn: dict[UUID, list[Split]] = defaultdict(list)
        for split in snapshot.splits:
            splits_by_txn[split.transaction_id].append(split)
        payers_by_txn: dict[UUID, list[PayerShare]] = defaultdict(list)
        for payer in snapshot.payer_shares:
            payers_by_txn[payer.transaction_id].append(payer)

        for txn in snapshot.transactions:
            self._add_transaction(
                txn, splits_by_txn.get(txn.id, []), payers_by_txn.get(txn.id, [])
            )

        for settlement in snapshot.settlements:
            key = (settlement.from_person, settlement.to_person)
            amount = settlement.amount.minor_units
            self._paid[key] += amount
            if settlement.group_id is not None:
                self._group_paid[settlement.group_id][key] += amount
                self._group_participants[settlement.group_id].update(key)
            self._net[settlement.from_person] += amount
            self._net[settlement.to_person] -= amount
            self._counterparties[settlement.from_person].add(settlement.to_person)
            self._counterparties[settlement.to_person].add(settlement.from_person)

        for group in snapshot.groups:
            self._group_participants[group.id].update(group.member_ids)

        logger.debug(
            f"Built balance engine: {len(snapshot.transactions)} transactions, "
            f"{len(snapshot.settlements)} settlements"
        )

    def _add_transaction(
        self, txn: Transaction, splits: list[Split], payers: list[PayerShare]
    ) -> None:
        net = transaction_net_positions(splits, payers)
        owes = allocate_debts(net)
        self._transaction_owes[txn.id] = owes

        for person_id, position in net.items():
            self._net[person_id] += position

        participants = set(net)
        for person_id in participants:
            self._counterparties[person_id].update(participants - {person_id})

        for key, amount in owes.items():
            self._owes[key] += amount
            if txn.group_id is not None:
                self._group_owes[txn.group_id][key] += amount

        if txn.group_id is not None:
            self._group_participants[txn.group_id].update(participants)

    @classmethod
    def create(cls, snapshot: Snapshot) -> Result["BalanceEngine"]:
        """
        Validate a snapshot and build an engine for it.

        Returns:
            Result holding the engine, or the first integrity error found
        """
        errors = validate_snapshot(snapshot)
        if errors:
            return Result.failure(errors[0])
        return Result.success(cls(snapshot))

    # ------------------------------------------------------------------
    # Pairwise & person balances
    # ------------------------------------------------------------------

    def pairwise_balance(self, person_a: UUID, person_b: UUID) -> Money:
        """
        Net amount B owes A (positive) or A owes B (negative).

        Covers every shared transaction, group or not, and every settlement
        between the two.
        """
        if person_a == person_b:
            return Money.zero()
        owed = self._owes.get((person_b, person_a), 0) - self._owes.get(
            (person_a, person_b), 0
        )
        settled = self._paid.get((person_a, person_b), 0) - self._paid.get(
            (person_b, person_a), 0
        )
        return Money.from_minor_units(owed + settled)

    def transaction_balance(
        self, transaction_id: UUID, person_a: UUID, person_b: UUID
    ) -> Money:
        """Pairwise balance produced by a single transaction."""
        owes = self._transaction_owes.get(transaction_id, {})
        return Money.from_minor_units(
            owes.get((person_b, person_a), 0) - owes.get((person_a, person_b), 0)
        )

    def counterparties(self, person_id: UUID) -> list[UUID]:
        """People sharing any transaction or settlement with ``person_id``."""
        return sorted(self._counterparties.get(person_id, set()), key=str)

    def person_balance(self, person_id: UUID) -> Money:
        """Sum of pairwise balances against everyone with shared history."""
        return sum(
            (self.pairwise_balance(person_id, other) for other in self.counterparties(person_id)),
            Money.zero(),
        )

    def net_position(self, person_id: UUID) -> Money:
        """
        Whole-ledger net position: everything paid minus everything owed,
        plus settlements sent minus settlements received.

        Equals ``person_balance`` exactly whenever every transaction
        reconciles to the penny.
        """
        return Money.from_minor_units(self._net.get(person_id, 0))

    def person_balances(
        self, current_user_id: UUID, include_archived: bool = False
    ) -> list[tuple[Person, Money]]:
        """
        Balance with every counterparty of the current user.

        Archived people are left out unless asked for; their history still
        counts towards ``person_balance``.
        """
        rows = []
        for other_id in self.counterparties(current_user_id):
            person = self._persons.get(other_id)
            if person is None or (person.archived and not include_archived):
                continue
            rows.append((person, self.pairwise_balance(current_user_id, other_id)))
        return sorted(rows, key=lambda row: _person_sort_key(row[0]))

    def people_who_owe(self, current_user_id: UUID) -> list[tuple[Person, Money]]:
        """Active people with a positive balance towards the current user, largest first."""
        rows = [row for row in self.person_balances(current_user_id) if row[1].is_positive()]
        return sorted(rows, key=lambda row: (-abs(row[1]).minor_units, _person_sort_key(row[0])))

    def people_owed_by(self, current_user_id: UUID) -> list[tuple[Person, Money]]:
        """Active people the current user owes, largest debt first."""
        rows = [row for row in self.person_balances(current_user_id) if row[1].is_negative()]
        return sorted(rows, key=lambda row: (-abs(row[1]).minor_units, _person_sort_key(row[0])))

    # ------------------------------------------------------------------
    # Group balances
    # ------------------------------------------------------------------

    def group_participants(self, group_id: UUID) -> list[UUID]:
        """Members plus anyone who appears in the group's transactions or settlements."""
        return sorted(self._group_participants.get(group_id, set()), key=str)

    def pairwise_balance_within_group(
        self, group_id: UUID, person_a: UUID, person_b: UUID
    ) -> Money:
        """Pairwise balance restricted to one group's transactions and group-tagged settlements."""
        if person_a == person_b:
            return Money.zero()
        owes = self._group_owes.get(group_id, {})
        paid = self._group_paid.get(group_id, {})
        owed = owes.get((person_b, person_a), 0) - owes.get((person_a, person_b), 0)
        settled = paid.get((person_a, person_b), 0) - paid.get((person_b, person_a), 0)
        return Money.from_minor_units(owed + settled)

    def group_balance(self, group_id: UUID, current_user_id: UUID) -> Money:
        """Net position of the current user within one group."""
        return sum(
            (
                self.pairwise_balance_within_group(group_id, current_user_id, other)
                for other in self.group_participants(group_id)
                if other != current_user_id
            ),
            Money.zero(),
        )

    def member_balances(
        self, group_id: UUID, current_user_id: UUID
    ) -> list[tuple[Person, Money]]:
        """Each group participant's balance against the current user, by name."""
        rows = []
        for other_id in self.group_participants(group_id):
            if other_id == current_user_id:
                continue
            person = self._persons.get(other_id)
            if person is None:
                continue
            rows.append(
                (
                    person,
                    self.pairwise_balance_within_group(group_id, current_user_id, other_id),
                )
            )
        return sorted(rows, key=lambda row: _person_sort_key(row[0]))

    def members_who_owe_current_user(
        self, group_id: UUID, current_user_id: UUID
    ) -> list[tuple[Person, Money]]:
        return [
            row
            for row in self.member_balances(group_id, current_user_id)
            if row[1].is_positive()
        ]

    def members_current_user_owes(
        self, group_id: UUID, current_user_id: UUID
    ) -> list[tuple[Person, Money]]:
        return [
            row
            for row in self.member_balances(group_id, current_user_id)
            if row[1].is_negative()
        ]

    def has_unsettled_members(self, group_id: UUID, current_user_id: UUID) -> bool:
        """True if any member balance is non-zero, even when the group nets to zero."""
        return any(
            not balance.is_zero_within_epsilon()
            for _, balance in self.member_balances(group_id, current_user_id)
        )


def _person_sort_key(person: Person) -> tuple[str, str]:
    return (person.display_name.casefold(), str(person.id))
