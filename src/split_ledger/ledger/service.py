"""Service layer that composes the record store, balance engine, reconciler and feed.

This is the boundary the presentation layer talks to. Reads go through a
cached snapshot + engine pair that is dropped whenever the store announces a
commit, so results are never staler than the last commit. Every operation
returns a ``Result`` instead of raising ledger errors.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from typing import Mapping, Protocol, Sequence
from uuid import UUID

from ..exceptions import (
    InvalidDirection,
    LedgerError,
    RecordNotFoundError,
    Result,
    UnknownEntityReference,
)
from ..models import (
    EqualSplit,
    LedgerScope,
    Message,
    MutationKind,
    Person,
    Reminder,
    Settlement,
    Snapshot,
    SplitMethod,
    Transaction,
)
from ..money import Money
from ..store import LedgerStore
from .balances import BalanceEngine
from .feed import Feed, build_feed
from .reconciler import full_settlement, propose_settlement, reverse
from .splits import compute_payer_shares, compute_splits

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    """Supplies the id of the person using the app."""

    @property
    def current_user_id(self) -> UUID: ...


@dataclass(frozen=True)
class StaticIdentity:
    """Identity provider with a fixed current user."""

    current_user_id: UUID


@dataclass(frozen=True)
class _CacheEntry:
    snapshot: Snapshot
    engine: Result[BalanceEngine]


class LedgerService:
    """Balance, feed and settlement operations for one ledger."""

    def __init__(
        self,
        store: LedgerStore,
        identity: IdentityProvider | None = None,
        tz: tzinfo = UTC,
    ):
        """Initialize the service and subscribe to store commits."""
        self.store = store
        self.identity = identity or StaticIdentity(store.current_user_id)
        self.tz = tz
        self._lock = threading.Lock()
        self._cache: _CacheEntry | None = None
        self._unsubscribe = store.subscribe(self.on_committed)

    def close(self) -> None:
        """Stop listening to the store."""
        self._unsubscribe()

    @property
    def current_user_id(self) -> UUID:
        return self.identity.current_user_id

    # ========================================================================
    # Cache
    # ========================================================================

    def on_committed(self, kind: MutationKind) -> None:
        """Drop cached results after any committed write."""
        with self._lock:
            self._cache = None
        logger.debug(f"Cache invalidated after {kind.value} commit")

    def _current(self) -> _CacheEntry:
        with self._lock:
            if self._cache is None:
                snapshot = self.store.snapshot()
                engine = BalanceEngine.create(snapshot)
                if not engine.ok:
                    logger.warning(f"Ledger snapshot failed validation: {engine.error}")
                self._cache = _CacheEntry(snapshot=snapshot, engine=engine)
                logger.debug("Rebuilt balance engine from fresh snapshot")
            return self._cache

    def snapshot(self) -> Snapshot:
        return self._current().snapshot

    def engine(self) -> Result[BalanceEngine]:
        return self._current().engine

    # ========================================================================
    # Balances
    # ========================================================================

    def pairwise_balance(self, person_a: UUID, person_b: UUID) -> Result[Money]:
        """What person_b owes person_a (negative: what person_a owes person_b)."""
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        return Result.success(engine.unwrap().pairwise_balance(person_a, person_b))

    def balance_with(
        self, person_id: UUID, group_id: UUID | None = None
    ) -> Result[Money]:
        """What a person owes the current user, overall or within one group."""
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        return Result.success(
            self._owed(engine.unwrap(), person_id, self.current_user_id, group_id)
        )

    def person_balance(self, person_id: UUID) -> Result[Money]:
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        return Result.success(engine.unwrap().person_balance(person_id))

    def group_balance(self, group_id: UUID) -> Result[Money]:
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        return Result.success(engine.unwrap().group_balance(group_id, self.current_user_id))

    def member_balances(self, group_id: UUID) -> Result[list[tuple[Person, Money]]]:
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        return Result.success(
            engine.unwrap().member_balances(group_id, self.current_user_id)
        )

    def members_who_owe_current_user(
        self, group_id: UUID
    ) -> Result[list[tuple[Person, Money]]]:
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        return Result.success(
            engine.unwrap().members_who_owe_current_user(group_id, self.current_user_id)
        )

    def members_current_user_owes(
        self, group_id: UUID
    ) -> Result[list[tuple[Person, Money]]]:
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        return Result.success(
            engine.unwrap().members_current_user_owes(group_id, self.current_user_id)
        )

    def person_balances(
        self, include_archived: bool = False
    ) -> Result[list[tuple[Person, Money]]]:
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        return Result.success(
            engine.unwrap().person_balances(self.current_user_id, include_archived)
        )

    def people_who_owe_you(self) -> Result[list[tuple[Person, Money]]]:
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        return Result.success(engine.unwrap().people_who_owe(self.current_user_id))

    def people_you_owe(self) -> Result[list[tuple[Person, Money]]]:
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        return Result.success(engine.unwrap().people_owed_by(self.current_user_id))

    # ========================================================================
    # Feed
    # ========================================================================

    def build_feed(self, scope: LedgerScope) -> Feed:
        """Day-grouped activity feed for a person, group or the whole ledger."""
        return build_feed(self.snapshot(), scope, self.current_user_id, self.tz)

    # ========================================================================
    # Expenses
    # ========================================================================

    def add_expense(
        self,
        title: str,
        amount: Money,
        paid_by: Mapping[UUID, Money] | UUID,
        participants: Sequence[UUID],
        *,
        split_method: SplitMethod | None = None,
        date: datetime | None = None,
        group_id: UUID | None = None,
        note: str | None = None,
    ) -> Result[Transaction]:
        """
        Record a shared expense with its splits and payers in one commit.

        Args:
            title: What the expense was for
            amount: Total amount
            paid_by: The single payer, or amount paid per person
            participants: People sharing the cost
            split_method: How to split (equal by default)
            date: When it happened (now by default)
            group_id: Group the expense belongs to, if any
            note: Optional note

        Returns:
            Result holding the committed transaction
        """
        try:
            people = [self.store.get_person(pid) for pid in participants]
        except RecordNotFoundError as e:
            return Result.failure(UnknownEntityReference("person", e.key))

        transaction = Transaction(
            title=title.strip(),
            amount=amount,
            date=date or datetime.now(UTC),
            split_method=split_method or EqualSplit(),
            group_id=group_id,
            note=note,
            created_by=self.current_user_id,
        )

        splits = compute_splits(transaction, people)
        if not splits.ok:
            return Result.failure(splits.error)

        contributions = {paid_by: amount} if isinstance(paid_by, UUID) else paid_by
        payers = compute_payer_shares(transaction, contributions)
        if not payers.ok:
            return Result.failure(payers.error)

        try:
            stored = self.store.add_transaction(
                transaction, splits.unwrap(), payers.unwrap()
            )
        except LedgerError as e:
            return Result.failure(e)
        return Result.success(stored)

    def delete_transaction(self, transaction_id: UUID) -> Result[Transaction]:
        """Delete a transaction together with its splits and payers."""
        try:
            return Result.success(self.store.delete_transaction(transaction_id))
        except RecordNotFoundError:
            return Result.failure(UnknownEntityReference("transaction", transaction_id))

    # ========================================================================
    # Settlements
    # ========================================================================

    def _owed(
        self, engine: BalanceEngine, debtor: UUID, creditor: UUID, group_id: UUID | None
    ) -> Money:
        if group_id is not None:
            return engine.pairwise_balance_within_group(group_id, creditor, debtor)
        return engine.pairwise_balance(creditor, debtor)

    def propose_settlement(
        self,
        from_person: UUID,
        to_person: UUID,
        amount: Money,
        *,
        date: datetime | None = None,
        note: str | None = None,
        group_id: UUID | None = None,
    ) -> Result[Settlement]:
        """
        Validate a settlement against the current balance without committing it.

        With ``group_id`` the balance checked is the one within that group,
        and the pair's overall balance has to cover the amount as well.
        """
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        balance = self._owed(engine.unwrap(), from_person, to_person, group_id)
        return self._within_overall_balance(
            engine.unwrap(),
            propose_settlement(
                from_person,
                to_person,
                amount,
                balance,
                date=date or datetime.now(UTC),
                note=note,
                group_id=group_id,
            ),
        )

    def _within_overall_balance(
        self, engine: BalanceEngine, proposed: Result[Settlement]
    ) -> Result[Settlement]:
        """
        Check a group settlement against the overall balance of the pair.

        Group-tagged settlements count towards the overall pairwise balance
        too, so they must not push it past zero either.
        """
        if not proposed.ok or proposed.unwrap().group_id is None:
            return proposed
        settlement = proposed.unwrap()
        overall = propose_settlement(
            settlement.from_person,
            settlement.to_person,
            settlement.amount,
            engine.pairwise_balance(settlement.to_person, settlement.from_person),
            date=settlement.date,
        )
        if not overall.ok:
            logger.info(
                f"Group settlement of {settlement.amount} rejected by overall balance: "
                f"{overall.error}"
            )
            return Result.failure(overall.error)
        return proposed

    def _commit_settlement(self, proposed: Result[Settlement]) -> Result[Settlement]:
        if not proposed.ok:
            return proposed
        try:
            stored = self.store.add_settlement(proposed.unwrap())
        except LedgerError as e:
            return Result.failure(e)
        logger.info(
            f"Recorded settlement of {stored.amount}"
            + (" (full)" if stored.is_full_settlement else "")
        )
        return Result.success(stored)

    def record_settlement(
        self,
        from_person: UUID,
        to_person: UUID,
        amount: Money,
        *,
        date: datetime | None = None,
        note: str | None = None,
        group_id: UUID | None = None,
    ) -> Result[Settlement]:
        """Validate and commit a settlement."""
        return self._commit_settlement(
            self.propose_settlement(
                from_person, to_person, amount, date=date, note=note, group_id=group_id
            )
        )

    def settle_up(
        self,
        person_id: UUID,
        *,
        group_id: UUID | None = None,
        date: datetime | None = None,
        note: str | None = None,
    ) -> Result[Settlement]:
        """
        Clear the whole balance between the current user and a person.

        The direction follows the debt: whoever owes pays.
        """
        engine_result = self.engine()
        if not engine_result.ok:
            return Result.failure(engine_result.error)
        engine = engine_result.unwrap()

        me = self.current_user_id
        if group_id is not None:
            balance = engine.pairwise_balance_within_group(group_id, me, person_id)
        else:
            balance = engine.pairwise_balance(me, person_id)
        from_person, to_person = (person_id, me) if balance.is_positive() else (me, person_id)

        return self._commit_settlement(
            self._within_overall_balance(
                engine,
                full_settlement(
                    from_person,
                    to_person,
                    self._owed(engine, from_person, to_person, group_id),
                    date=date or datetime.now(UTC),
                    note=note,
                    group_id=group_id,
                ),
            )
        )

    def reverse_settlement(self, settlement_id: UUID) -> Result[Settlement]:
        """Undo a settlement by committing its equal-and-opposite reversal."""
        try:
            settlement = self.store.get_settlement(settlement_id)
        except RecordNotFoundError:
            return Result.failure(UnknownEntityReference("settlement", settlement_id))
        return self._commit_settlement(
            Result.success(reverse(settlement, date=datetime.now(UTC)))
        )

    def undo_settlement(self, settlement_id: UUID) -> Result[Settlement]:
        """Undo a settlement by deleting it."""
        try:
            return Result.success(self.store.delete_settlement(settlement_id))
        except RecordNotFoundError:
            return Result.failure(UnknownEntityReference("settlement", settlement_id))

    # ========================================================================
    # Reminders & messages
    # ========================================================================

    def send_reminder(
        self,
        person_id: UUID,
        *,
        group_id: UUID | None = None,
        message: str | None = None,
    ) -> Result[Reminder]:
        """Remind a person of what they owe the current user."""
        engine = self.engine()
        if not engine.ok:
            return Result.failure(engine.error)
        owed = self._owed(engine.unwrap(), person_id, self.current_user_id, group_id)
        if not owed.is_positive():
            return Result.failure(
                InvalidDirection(
                    person_id,
                    self.current_user_id,
                    "Reminders can only be sent to people who owe you",
                )
            )
        try:
            reminder = self.store.add_reminder(
                Reminder(
                    to_person=person_id,
                    amount=owed,
                    created_date=datetime.now(UTC),
                    message=message,
                    group_id=group_id,
                )
            )
        except LedgerError as e:
            return Result.failure(e)
        return Result.success(reminder)

    def post_message(
        self,
        content: str,
        *,
        person_id: UUID | None = None,
        group_id: UUID | None = None,
        from_current_user: bool = True,
        timestamp: datetime | None = None,
    ) -> Result[Message]:
        """Add a chat message to a person or group thread."""
        try:
            message = self.store.add_message(
                Message(
                    content=content,
                    timestamp=timestamp or datetime.now(UTC),
                    from_current_user=from_current_user,
                    person_id=person_id,
                    group_id=group_id,
                )
            )
        except LedgerError as e:
            return Result.failure(e)
        return Result.success(message)
