"""In-memory record store and JSON ledger documents for Split Ledger."""

import logging
import threading
from pathlib import Path
from typing import Callable, Sequence
from uuid import UUID

from pydantic import ValidationError

from .exceptions import (
    DegenerateTransaction,
    DuplicateRecordError,
    InvalidDirection,
    LedgerFileError,
    RecordNotFoundError,
    UnknownEntityReference,
)
from .ledger.splits import check_transaction
from .models import (
    AllScope,
    Group,
    GroupScope,
    LedgerScope,
    Message,
    MutationKind,
    PayerShare,
    Person,
    PersonScope,
    Reminder,
    Settlement,
    Snapshot,
    Split,
    Transaction,
)

logger = logging.getLogger(__name__)

CommitListener = Callable[[MutationKind], None]


class LedgerDocument(Snapshot):
    """On-disk form of a ledger: a full snapshot plus a format version."""

    version: int = 1


class LedgerStore:
    """Arena-style record store keyed by id.

    Every write is one atomic commit: it is checked, applied under the writer
    lock, stamped with a creation sequence number, and only then announced to
    subscribers. Failed writes leave the store untouched.
    """

    def __init__(self, current_user: Person):
        """Initialize an empty ledger owned by ``current_user``."""
        self._lock = threading.Lock()
        self._listeners: list[CommitListener] = []
        self._sequence = 0

        self.current_user_id = current_user.id
        self._persons: dict[UUID, Person] = {current_user.id: current_user}
        self._groups: dict[UUID, Group] = {}
        self._transactions: dict[UUID, Transaction] = {}
        self._splits: dict[UUID, tuple[Split, ...]] = {}
        self._payer_shares: dict[UUID, tuple[PayerShare, ...]] = {}
        self._settlements: dict[UUID, Settlement] = {}
        self._reminders: dict[UUID, Reminder] = {}
        self._messages: dict[UUID, Message] = {}

    # ========================================================================
    # Subscriptions
    # ========================================================================

    def subscribe(self, listener: CommitListener) -> Callable[[], None]:
        """
        Register a commit listener.

        Returns:
            A callable that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: MutationKind) -> None:
        for listener in list(self._listeners):
            listener(kind)

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    # ========================================================================
    # People & groups
    # ========================================================================

    def add_person(self, person: Person) -> Person:
        """Add a person to the ledger."""
        with self._lock:
            if person.id in self._persons:
                raise DuplicateRecordError("person", person.id)
            self._persons[person.id] = person
        logger.info(f"Added person '{person.display_name}'")
        self._notify(MutationKind.PERSON)
        return person

    def archive_person(self, person_id: UUID) -> Person:
        """Hide a person from active listings; their history stays in the ledger."""
        with self._lock:
            person = self._persons.get(person_id)
            if person is None:
                raise RecordNotFoundError("person", person_id)
            archived = person.model_copy(update={"archived": True})
            self._persons[person_id] = archived
        logger.info(f"Archived person '{archived.display_name}'")
        self._notify(MutationKind.PERSON)
        return archived

    def add_group(self, group: Group) -> Group:
        """Add a group; the current user is always made a member."""
        with self._lock:
            if group.id in self._groups:
                raise DuplicateRecordError("group", group.id)
            for member_id in group.member_ids:
                if member_id not in self._persons:
                    raise UnknownEntityReference("person", member_id, group.id)
            stored = group.model_copy(
                update={"member_ids": group.member_ids | {self.current_user_id}}
            )
            self._groups[stored.id] = stored
        logger.info(f"Added group '{stored.name}' with {len(stored.member_ids)} members")
        self._notify(MutationKind.GROUP)
        return stored

    # ========================================================================
    # Transactions
    # ========================================================================

    def add_transaction(
        self,
        transaction: Transaction,
        splits: Sequence[Split],
        payer_shares: Sequence[PayerShare],
    ) -> Transaction:
        """
        Commit a transaction together with all its splits and payer shares.

        Raises:
            DuplicateRecordError: If the transaction id already exists
            UnknownEntityReference / InvalidTransaction / DegenerateTransaction:
                If the unit does not reconcile; nothing is written
        """
        with self._lock:
            if transaction.id in self._transactions:
                raise DuplicateRecordError("transaction", transaction.id)
            for record in (*splits, *payer_shares):
                if record.transaction_id != transaction.id:
                    raise UnknownEntityReference(
                        "transaction", record.transaction_id, transaction.id
                    )
            errors = check_transaction(
                transaction,
                splits,
                payer_shares,
                frozenset(self._persons),
                frozenset(self._groups),
            )
            if errors:
                raise errors[0]

            stored = transaction.model_copy(update={"sequence": self._next_sequence()})
            self._transactions[stored.id] = stored
            self._splits[stored.id] = tuple(splits)
            self._payer_shares[stored.id] = tuple(payer_shares)
        logger.info(
            f"Committed transaction '{stored.title}' ({stored.amount}) with "
            f"{len(splits)} splits and {len(payer_shares)} payers"
        )
        self._notify(MutationKind.TRANSACTION)
        return stored

    def delete_transaction(self, transaction_id: UUID) -> Transaction:
        """Delete a transaction, its splits, payer shares and comments."""
        with self._lock:
            transaction = self._transactions.pop(transaction_id, None)
            if transaction is None:
                raise RecordNotFoundError("transaction", transaction_id)
            self._splits.pop(transaction_id, None)
            self._payer_shares.pop(transaction_id, None)
            comment_ids = [
                m.id for m in self._messages.values() if m.transaction_id == transaction_id
            ]
            for message_id in comment_ids:
                del self._messages[message_id]
        logger.info(f"Deleted transaction '{transaction.title}'")
        self._notify(MutationKind.TRANSACTION_DELETED)
        return transaction

    # ========================================================================
    # Settlements
    # ========================================================================

    def add_settlement(self, settlement: Settlement) -> Settlement:
        """
        Commit a settlement.

        Only referential checks happen here; whether the amount and direction
        make sense against current balances is the reconciler's job.
        """
        with self._lock:
            if settlement.id in self._settlements:
                raise DuplicateRecordError("settlement", settlement.id)
            for person_id in (settlement.from_person, settlement.to_person):
                if person_id not in self._persons:
                    raise UnknownEntityReference("person", person_id, settlement.id)
            if settlement.group_id is not None and settlement.group_id not in self._groups:
                raise UnknownEntityReference("group", settlement.group_id, settlement.id)
            if settlement.from_person == settlement.to_person:
                raise InvalidDirection(
                    settlement.from_person, settlement.to_person, "Cannot settle with yourself"
                )
            if not settlement.amount.is_positive():
                raise DegenerateTransaction(
                    settlement.id, "Settlement amount must be greater than zero"
                )
            stored = settlement.model_copy(update={"sequence": self._next_sequence()})
            self._settlements[stored.id] = stored
        logger.info(f"Committed settlement {stored.id} ({stored.amount})")
        self._notify(MutationKind.SETTLEMENT)
        return stored

    def delete_settlement(self, settlement_id: UUID) -> Settlement:
        """Remove a settlement (undo by deletion)."""
        with self._lock:
            settlement = self._settlements.pop(settlement_id, None)
            if settlement is None:
                raise RecordNotFoundError("settlement", settlement_id)
        logger.info(f"Deleted settlement {settlement_id}")
        self._notify(MutationKind.SETTLEMENT_DELETED)
        return settlement

    # ========================================================================
    # Reminders & messages
    # ========================================================================

    def add_reminder(self, reminder: Reminder) -> Reminder:
        with self._lock:
            if reminder.to_person not in self._persons:
                raise UnknownEntityReference("person", reminder.to_person, reminder.id)
            if reminder.group_id is not None and reminder.group_id not in self._groups:
                raise UnknownEntityReference("group", reminder.group_id, reminder.id)
            stored = reminder.model_copy(update={"sequence": self._next_sequence()})
            self._reminders[stored.id] = stored
        self._notify(MutationKind.REMINDER)
        return stored

    def add_message(self, message: Message) -> Message:
        with self._lock:
            if message.person_id is not None and message.person_id not in self._persons:
                raise UnknownEntityReference("person", message.person_id, message.id)
            if message.group_id is not None and message.group_id not in self._groups:
                raise UnknownEntityReference("group", message.group_id, message.id)
            if (
                message.transaction_id is not None
                and message.transaction_id not in self._transactions
            ):
                raise UnknownEntityReference(
                    "transaction", message.transaction_id, message.id
                )
            stored = message.model_copy(update={"sequence": self._next_sequence()})
            self._messages[stored.id] = stored
        self._notify(MutationKind.MESSAGE)
        return stored

    # ========================================================================
    # Reads
    # ========================================================================

    def get_person(self, person_id: UUID) -> Person:
        person = self._persons.get(person_id)
        if person is None:
            raise RecordNotFoundError("person", person_id)
        return person

    def get_group(self, group_id: UUID) -> Group:
        group = self._groups.get(group_id)
        if group is None:
            raise RecordNotFoundError("group", group_id)
        return group

    def get_settlement(self, settlement_id: UUID) -> Settlement:
        settlement = self._settlements.get(settlement_id)
        if settlement is None:
            raise RecordNotFoundError("settlement", settlement_id)
        return settlement

    def find_person(self, name: str) -> Person:
        """Look up a person by display name (case-insensitive)."""
        wanted = name.strip().casefold()
        for person in self._persons.values():
            if person.display_name.casefold() == wanted:
                return person
        raise RecordNotFoundError("person", name)

    def find_group(self, name: str) -> Group:
        """Look up a group by name (case-insensitive)."""
        wanted = name.strip().casefold()
        for group in self._groups.values():
            if group.name.casefold() == wanted:
                return group
        raise RecordNotFoundError("group", name)

    def snapshot(self, scope: LedgerScope | None = None) -> Snapshot:
        """
        Take a read-consistent snapshot.

        People and groups are always included in full so references resolve;
        financial records are limited to the scope.
        """
        scope = scope or AllScope()
        with self._lock:
            transactions = list(self._transactions.values())
            settlements = list(self._settlements.values())
            reminders = list(self._reminders.values())
            messages = list(self._messages.values())

            if isinstance(scope, PersonScope):
                person_id = scope.person_id
                transactions = [
                    t
                    for t in transactions
                    if any(s.owed_by == person_id for s in self._splits[t.id])
                    or any(p.person_id == person_id for p in self._payer_shares[t.id])
                ]
                settlements = [
                    s for s in settlements if person_id in (s.from_person, s.to_person)
                ]
                reminders = [r for r in reminders if r.to_person == person_id]
                kept = {t.id for t in transactions}
                messages = [
                    m
                    for m in messages
                    if m.person_id == person_id or m.transaction_id in kept
                ]
            elif isinstance(scope, GroupScope):
                group_id = scope.group_id
                transactions = [t for t in transactions if t.group_id == group_id]
                settlements = [s for s in settlements if s.group_id == group_id]
                reminders = [r for r in reminders if r.group_id == group_id]
                kept = {t.id for t in transactions}
                messages = [
                    m for m in messages if m.group_id == group_id or m.transaction_id in kept
                ]

            return Snapshot(
                current_user_id=self.current_user_id,
                persons=tuple(self._persons.values()),
                groups=tuple(self._groups.values()),
                transactions=tuple(transactions),
                splits=tuple(s for t in transactions for s in self._splits[t.id]),
                payer_shares=tuple(
                    p for t in transactions for p in self._payer_shares[t.id]
                ),
                settlements=tuple(settlements),
                reminders=tuple(reminders),
                messages=tuple(messages),
            )

    # ========================================================================
    # Documents
    # ========================================================================

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "LedgerStore":
        """
        Rebuild a store from a snapshot without re-checking it.

        Records without a sequence number get one in document order. Integrity
        problems are left for the balance engine to report.
        """
        persons = snapshot.persons_by_id()
        current_user = persons.get(snapshot.current_user_id)
        if current_user is None:
            raise UnknownEntityReference("person", snapshot.current_user_id)

        store = cls(current_user)
        store._persons = dict(persons)
        store._groups = snapshot.groups_by_id()
        store._sequence = max(
            (
                record.sequence
                for record in (
                    *snapshot.transactions,
                    *snapshot.settlements,
                    *snapshot.reminders,
                    *snapshot.messages,
                )
            ),
            default=0,
        )

        def stamp(record):
            if record.sequence:
                return record
            return record.model_copy(update={"sequence": store._next_sequence()})

        for txn in snapshot.transactions:
            stored = stamp(txn)
            store._transactions[stored.id] = stored
            store._splits[stored.id] = ()
            store._payer_shares[stored.id] = ()
        for split in snapshot.splits:
            store._splits[split.transaction_id] = (
                *store._splits.get(split.transaction_id, ()),
                split,
            )
        for payer in snapshot.payer_shares:
            store._payer_shares[payer.transaction_id] = (
                *store._payer_shares.get(payer.transaction_id, ()),
                payer,
            )
        for settlement in snapshot.settlements:
            stored = stamp(settlement)
            store._settlements[stored.id] = stored
        for reminder in snapshot.reminders:
            stored = stamp(reminder)
            store._reminders[stored.id] = stored
        for message in snapshot.messages:
            stored = stamp(message)
            store._messages[stored.id] = stored
        return store


def load_ledger(path: Path) -> LedgerStore:
    """Load a ledger document from a JSON file."""
    try:
        document = LedgerDocument.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise LedgerFileError(f"Ledger file not found: {path}") from e
    except ValidationError as e:
        raise LedgerFileError(f"Ledger file {path} is not a valid ledger:\n{e}") from e
    logger.info(f"Loaded ledger from {path}")
    return LedgerStore.from_snapshot(document)


def save_ledger(store: LedgerStore, path: Path) -> None:
    """Write the whole ledger to a JSON file."""
    snapshot = store.snapshot()
    document = LedgerDocument(**{
        field: getattr(snapshot, field) for field in Snapshot.model_fields
    })
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(document.model_dump_json(indent=2), encoding="utf-8")
    logger.info(f"Saved ledger to {path}")
