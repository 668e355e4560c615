"""Tests for the record store and ledger documents."""

from datetime import UTC, datetime
from uuid import uuid4

import pytest

from split_ledger.exceptions import (
    DegenerateTransaction,
    DuplicateRecordError,
    InvalidDirection,
    InvalidTransaction,
    LedgerFileError,
    RecordNotFoundError,
    UnknownEntityReference,
)
from split_ledger.ledger.splits import compute_splits, single_payer
from split_ledger.models import (
    Group,
    GroupScope,
    Message,
    MutationKind,
    Person,
    PersonScope,
    Settlement,
    Split,
    Transaction,
)
from split_ledger.money import Money
from split_ledger.store import LedgerStore, load_ledger, save_ledger

WHEN = datetime(2025, 4, 1, 18, 0, tzinfo=UTC)


@pytest.fixture
def me():
    return Person(display_name="Me")


@pytest.fixture
def bob():
    return Person(display_name="Bob")


@pytest.fixture
def store(me, bob):
    """Create a store with the current user and Bob."""
    ledger = LedgerStore(me)
    ledger.add_person(bob)
    return ledger


def add_dinner(store: LedgerStore, payer: Person, *people: Person, **kwargs) -> Transaction:
    txn = Transaction(title="Dinner", amount=Money.of("40.00"), date=WHEN, **kwargs)
    return store.add_transaction(
        txn, compute_splits(txn, list(people)).unwrap(), single_payer(txn, payer.id)
    )


class TestTransactions:
    """Atomic transaction commits."""

    def test_commit_stamps_sequence(self, store, me, bob):
        first = add_dinner(store, me, me, bob)
        second = add_dinner(store, bob, me, bob)

        assert 0 < first.sequence < second.sequence

    def test_snapshot_contains_unit(self, store, me, bob):
        txn = add_dinner(store, me, me, bob)

        snapshot = store.snapshot()

        assert snapshot.transactions == (txn,)
        assert {s.owed_by for s in snapshot.splits} == {me.id, bob.id}
        assert [p.person_id for p in snapshot.payer_shares] == [me.id]

    def test_unreconciled_unit_is_rejected_whole(self, store, me, bob):
        txn = Transaction(title="Dinner", amount=Money.of("40.00"), date=WHEN)
        splits = [
            Split(transaction_id=txn.id, owed_by=me.id, amount=Money.of("20.00")),
            Split(transaction_id=txn.id, owed_by=bob.id, amount=Money.of("10.00")),
        ]

        with pytest.raises(InvalidTransaction):
            store.add_transaction(txn, splits, single_payer(txn, me.id))

        snapshot = store.snapshot()
        assert snapshot.transactions == ()
        assert snapshot.splits == ()

    def test_unknown_participant(self, store, me):
        stranger = Person(display_name="Stranger")

        with pytest.raises(UnknownEntityReference):
            add_dinner(store, me, me, stranger)

    def test_records_must_reference_transaction(self, store, me, bob):
        txn = Transaction(title="Dinner", amount=Money.of("40.00"), date=WHEN)
        other = Transaction(title="Other", amount=Money.of("40.00"), date=WHEN)

        with pytest.raises(UnknownEntityReference):
            store.add_transaction(
                txn, compute_splits(other, [me, bob]).unwrap(), single_payer(txn, me.id)
            )

    def test_duplicate_id(self, store, me, bob):
        txn = add_dinner(store, me, me, bob)

        with pytest.raises(DuplicateRecordError):
            add_dinner(store, me, me, bob, id=txn.id)

    def test_delete_cascades(self, store, me, bob):
        txn = add_dinner(store, me, me, bob)
        store.add_message(
            Message(content="yum", timestamp=WHEN, person_id=bob.id, transaction_id=txn.id)
        )
        store.add_message(Message(content="hey", timestamp=WHEN, person_id=bob.id))

        store.delete_transaction(txn.id)

        snapshot = store.snapshot()
        assert snapshot.transactions == ()
        assert snapshot.splits == ()
        assert snapshot.payer_shares == ()
        assert [m.content for m in snapshot.messages] == ["hey"]

    def test_delete_missing(self, store):
        with pytest.raises(RecordNotFoundError):
            store.delete_transaction(uuid4())


class TestSettlements:
    """Referential checks on settlements."""

    def test_commit_and_delete(self, store, me, bob):
        settlement = store.add_settlement(
            Settlement(from_person=bob.id, to_person=me.id, amount=Money.of("5.00"), date=WHEN)
        )

        assert store.get_settlement(settlement.id) == settlement
        store.delete_settlement(settlement.id)
        with pytest.raises(RecordNotFoundError):
            store.get_settlement(settlement.id)

    def test_self_settlement(self, store, me):
        with pytest.raises(InvalidDirection):
            store.add_settlement(
                Settlement(from_person=me.id, to_person=me.id, amount=Money.of("5.00"), date=WHEN)
            )

    def test_zero_amount(self, store, me, bob):
        with pytest.raises(DegenerateTransaction):
            store.add_settlement(
                Settlement(from_person=bob.id, to_person=me.id, amount=Money.zero(), date=WHEN)
            )

    def test_unknown_group(self, store, me, bob):
        with pytest.raises(UnknownEntityReference):
            store.add_settlement(
                Settlement(
                    from_person=bob.id,
                    to_person=me.id,
                    amount=Money.of("5.00"),
                    date=WHEN,
                    group_id=uuid4(),
                )
            )


class TestPeopleAndGroups:
    """People, groups and lookups."""

    def test_group_always_includes_current_user(self, store, me, bob):
        group = store.add_group(Group(name="Flat", member_ids=frozenset({bob.id})))

        assert group.member_ids == {me.id, bob.id}

    def test_group_with_unknown_member(self, store):
        with pytest.raises(UnknownEntityReference):
            store.add_group(Group(name="Ghosts", member_ids=frozenset({uuid4()})))

    def test_archive(self, store, bob):
        archived = store.archive_person(bob.id)

        assert archived.archived
        assert store.get_person(bob.id).archived

    def test_find_is_case_insensitive(self, store, bob):
        store.add_group(Group(name="Flat"))

        assert store.find_person("  BOB ") == bob
        assert store.find_group("flat").name == "Flat"
        with pytest.raises(RecordNotFoundError):
            store.find_person("nobody")

    def test_duplicate_person(self, store, bob):
        with pytest.raises(DuplicateRecordError):
            store.add_person(bob)


class TestNotifications:
    """Commit listeners."""

    def test_listener_sees_each_commit(self, store, me, bob):
        seen = []
        store.subscribe(seen.append)

        txn = add_dinner(store, me, me, bob)
        store.delete_transaction(txn.id)

        assert seen == [MutationKind.TRANSACTION, MutationKind.TRANSACTION_DELETED]

    def test_failed_write_is_silent(self, store, me):
        seen = []
        store.subscribe(seen.append)

        with pytest.raises(InvalidDirection):
            store.add_settlement(
                Settlement(from_person=me.id, to_person=me.id, amount=Money.of("1.00"), date=WHEN)
            )

        assert seen == []

    def test_unsubscribe(self, store):
        seen = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()

        store.add_person(Person(display_name="Zed"))

        assert seen == []


class TestScopedSnapshots:
    """Snapshots limited to a person or group."""

    def test_person_scope(self, store, me, bob):
        carol = store.add_person(Person(display_name="Carol"))
        with_bob = add_dinner(store, me, me, bob)
        add_dinner(store, me, me, carol)

        snapshot = store.snapshot(PersonScope(person_id=bob.id))

        assert snapshot.transactions == (with_bob,)
        assert len(snapshot.persons) == 3

    def test_group_scope(self, store, me, bob):
        group = store.add_group(Group(name="Flat", member_ids=frozenset({bob.id})))
        in_group = add_dinner(store, me, me, bob, group_id=group.id)
        add_dinner(store, me, me, bob)

        snapshot = store.snapshot(GroupScope(group_id=group.id))

        assert snapshot.transactions == (in_group,)


class TestDocuments:
    """Saving and loading ledger files."""

    def test_round_trip(self, store, me, bob, tmp_path):
        add_dinner(store, me, me, bob)
        store.add_settlement(
            Settlement(from_person=bob.id, to_person=me.id, amount=Money.of("5.00"), date=WHEN)
        )
        path = tmp_path / "nested" / "ledger.json"

        save_ledger(store, path)
        loaded = load_ledger(path)

        assert loaded.current_user_id == me.id
        assert loaded.snapshot() == store.snapshot()

    def test_loaded_store_continues_sequence(self, store, me, bob, tmp_path):
        first = add_dinner(store, me, me, bob)
        path = tmp_path / "ledger.json"
        save_ledger(store, path)

        loaded = load_ledger(path)
        second = add_dinner(loaded, me, me, bob)

        assert second.sequence > first.sequence

    def test_missing_file(self, tmp_path):
        with pytest.raises(LedgerFileError):
            load_ledger(tmp_path / "nope.json")

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "ledger.json"
        path.write_text('{"current_user_id": "not-a-uuid"}')

        with pytest.raises(LedgerFileError):
            load_ledger(path)
