"""Tests for the balance engine."""

from datetime import UTC, datetime
from uuid import UUID, uuid4

import pytest

from split_ledger.exceptions import (
    DegenerateTransaction,
    InvalidDirection,
    UnknownEntityReference,
)
from split_ledger.ledger.balances import (
    BalanceEngine,
    allocate_debts,
    transaction_net_positions,
    validate_snapshot,
)
from split_ledger.ledger.splits import compute_payer_shares, compute_splits
from split_ledger.models import (
    Group,
    PayerShare,
    Person,
    Settlement,
    Snapshot,
    Split,
    Transaction,
)
from split_ledger.money import Money

WHEN = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

Expense = tuple[Transaction, list[Split], list[PayerShare]]


def make_expense(
    amount: str,
    paid_by: dict[UUID, str],
    owed_by: list[Person],
    group_id: UUID | None = None,
    title: str = "Expense",
) -> Expense:
    """Create an equally split expense with its splits and payer shares."""
    txn = Transaction(title=title, amount=Money.of(amount), date=WHEN, group_id=group_id)
    splits = compute_splits(txn, owed_by).unwrap()
    payers = compute_payer_shares(
        txn, {pid: Money.of(paid) for pid, paid in paid_by.items()}
    ).unwrap()
    return txn, splits, payers


def make_settlement(
    from_person: Person, to_person: Person, amount: str, group_id: UUID | None = None
) -> Settlement:
    return Settlement(
        from_person=from_person.id,
        to_person=to_person.id,
        amount=Money.of(amount),
        date=WHEN,
        group_id=group_id,
    )


def make_snapshot(
    current_user: Person,
    people: list[Person],
    expenses: list[Expense] = (),
    settlements: list[Settlement] = (),
    groups: list[Group] = (),
) -> Snapshot:
    return Snapshot(
        current_user_id=current_user.id,
        persons=tuple(people),
        groups=tuple(groups),
        transactions=tuple(txn for txn, _, _ in expenses),
        splits=tuple(s for _, splits, _ in expenses for s in splits),
        payer_shares=tuple(p for _, _, payers in expenses for p in payers),
        settlements=tuple(settlements),
    )


@pytest.fixture
def alice():
    return Person(display_name="Alice")


@pytest.fixture
def bob():
    return Person(display_name="Bob")


@pytest.fixture
def carol():
    return Person(display_name="Carol")


@pytest.fixture
def dana():
    return Person(display_name="Dana")


@pytest.fixture
def people(alice, bob, carol, dana):
    return [alice, bob, carol, dana]


class TestDebtAllocation:
    """Per-transaction net positions and debt allocation."""

    def test_net_positions(self, alice, bob, carol):
        _, splits, payers = make_expense("90.00", {alice.id: "90.00"}, [alice, bob, carol])

        net = transaction_net_positions(splits, payers)

        assert net == {alice.id: 6000, bob.id: -3000, carol.id: -3000}

    def test_debt_split_in_proportion_to_credit(self):
        a, b, c = uuid4(), uuid4(), uuid4()

        owes = allocate_debts({a: 100, b: 200, c: -300})

        assert owes == {(c, a): 100, (c, b): 200}

    def test_rows_and_columns_sum_exactly(self):
        """Two one-cent debts to two one-cent creditors: one penny each way."""
        a, b, c, d = uuid4(), uuid4(), uuid4(), uuid4()

        owes = allocate_debts({a: 1, b: 1, c: -1, d: -1})

        for debtor in (c, d):
            assert sum(v for (who, _), v in owes.items() if who == debtor) == 1
        for creditor in (a, b):
            assert sum(v for (_, to), v in owes.items() if to == creditor) == 1
        first_debtor, second_debtor = sorted((c, d), key=str)
        first_creditor, second_creditor = sorted((a, b), key=str)
        assert owes == {(first_debtor, first_creditor): 1, (second_debtor, second_creditor): 1}

    def test_small_creditor_is_not_rounded_away(self):
        """Three one-cent debts to creditors of two cents and one cent."""
        a, b = uuid4(), uuid4()
        debtors = [uuid4(), uuid4(), uuid4()]

        owes = allocate_debts({a: 2, b: 1, **{d: -1 for d in debtors}})

        assert sum(v for (_, to), v in owes.items() if to == a) == 2
        assert sum(v for (_, to), v in owes.items() if to == b) == 1
        for debtor in debtors:
            assert sum(v for (who, _), v in owes.items() if who == debtor) == 1

    def test_unreconciled_penny_scales_larger_side(self):
        a, c, d = uuid4(), uuid4(), uuid4()

        owes = allocate_debts({a: 3, c: -1, d: -1})

        assert sum(owes.values()) == 2
        assert owes == {(c, a): 1, (d, a): 1}

    def test_no_creditors(self):
        assert allocate_debts({uuid4(): 0}) == {}


class TestScenarios:
    """End-to-end balance scenarios."""

    def test_equal_three_way_dinner(self, alice, bob, carol, people):
        """Alice pays 90.00 for dinner with Bob and Carol."""
        expense = make_expense("90.00", {alice.id: "90.00"}, [alice, bob, carol])
        engine = BalanceEngine.create(make_snapshot(alice, people, [expense])).unwrap()

        assert [s.amount for s in expense[1]] == [Money.of("30.00")] * 3
        assert engine.pairwise_balance(alice.id, bob.id) == Money.of("30.00")
        assert engine.pairwise_balance(alice.id, carol.id) == Money.of("30.00")
        assert engine.pairwise_balance(bob.id, carol.id) == Money.zero()
        assert engine.person_balance(alice.id) == Money.of("60.00")
        assert engine.person_balance(bob.id) == Money.of("-30.00")

    def test_full_settlement_clears_pair(self, alice, bob, carol, people):
        """Bob settles his 30.00 with Alice."""
        expense = make_expense("90.00", {alice.id: "90.00"}, [alice, bob, carol])
        snapshot = make_snapshot(
            alice, people, [expense], [make_settlement(bob, alice, "30.00")]
        )
        engine = BalanceEngine.create(snapshot).unwrap()

        assert engine.pairwise_balance(alice.id, bob.id) == Money.zero()
        assert engine.pairwise_balance(alice.id, carol.id) == Money.of("30.00")
        assert engine.person_balance(alice.id) == Money.of("30.00")

    def test_joint_payers_group_expense(self, alice, bob, carol, dana, people):
        """Alice (60) and Bob (40) pay 100.00 split four ways in a group."""
        group = Group(name="Cabin", member_ids=frozenset(p.id for p in people))
        expense = make_expense(
            "100.00",
            {alice.id: "60.00", bob.id: "40.00"},
            people,
            group_id=group.id,
        )
        engine = BalanceEngine.create(
            make_snapshot(alice, people, [expense], groups=[group])
        ).unwrap()

        # Carol's and Dana's 25.00 goes 35:15 to Alice and Bob
        assert engine.pairwise_balance(alice.id, carol.id) == Money.of("17.50")
        assert engine.pairwise_balance(bob.id, carol.id) == Money.of("7.50")
        assert engine.pairwise_balance(alice.id, dana.id) == Money.of("17.50")
        assert engine.pairwise_balance(alice.id, bob.id) == Money.zero()
        assert engine.group_balance(group.id, alice.id) == Money.of("35.00")
        assert engine.group_balance(group.id, bob.id) == Money.of("15.00")

    def test_group_settlement_reduces_group_balance(self, alice, bob, carol, dana, people):
        group = Group(name="Cabin", member_ids=frozenset(p.id for p in people))
        expense = make_expense(
            "100.00", {alice.id: "60.00", bob.id: "40.00"}, people, group_id=group.id
        )
        snapshot = make_snapshot(
            alice,
            people,
            [expense],
            [make_settlement(carol, alice, "17.50", group_id=group.id)],
            [group],
        )
        engine = BalanceEngine.create(snapshot).unwrap()

        assert engine.group_balance(group.id, alice.id) == Money.of("17.50")


class TestInvariants:
    """Symmetry and aggregate consistency."""

    @pytest.fixture
    def engine(self, alice, bob, carol, dana, people):
        expenses = [
            make_expense("100.00", {alice.id: "100.00"}, [alice, bob, carol]),
            make_expense("10.00", {bob.id: "7.00", carol.id: "3.00"}, people),
            make_expense("33.33", {dana.id: "33.33"}, [alice, dana, carol]),
        ]
        settlements = [make_settlement(bob, alice, "12.34")]
        return BalanceEngine.create(
            make_snapshot(alice, people, expenses, settlements)
        ).unwrap()

    def test_pairwise_is_antisymmetric(self, engine, people):
        for a in people:
            for b in people:
                assert engine.pairwise_balance(a.id, b.id) == -engine.pairwise_balance(
                    b.id, a.id
                )

    def test_self_balance_is_zero(self, engine, alice):
        assert engine.pairwise_balance(alice.id, alice.id) == Money.zero()

    def test_person_balances_sum_to_zero(self, engine, people):
        assert sum(engine.person_balance(p.id) for p in people) == Money.zero()

    def test_person_balance_equals_net_position(self, engine, people):
        for p in people:
            assert engine.person_balance(p.id) == engine.net_position(p.id)

    def test_penny_creditor_keeps_credit(self):
        """0.03 paid as 0.02 + 0.01, owed 0.01 each by three others."""
        a, b, c, d, e = (Person(display_name=n) for n in "ABCDE")
        expense = make_expense("0.03", {a.id: "0.02", b.id: "0.01"}, [c, d, e])
        engine = BalanceEngine.create(make_snapshot(a, [a, b, c, d, e], [expense])).unwrap()

        assert engine.person_balance(a.id) == Money.of("0.02")
        assert engine.person_balance(b.id) == Money.of("0.01")
        for p in (a, b, c, d, e):
            assert engine.person_balance(p.id) == engine.net_position(p.id)

    def test_snapshot_order_does_not_matter(self, alice, bob, carol, dana, people):
        expenses = [
            make_expense("0.05", {alice.id: "0.03", bob.id: "0.02"}, [carol, dana]),
            make_expense("10.01", {carol.id: "10.01"}, people),
        ]
        forward = BalanceEngine(make_snapshot(alice, people, expenses))
        backward = BalanceEngine(
            make_snapshot(alice, list(reversed(people)), list(reversed(expenses)))
        )

        for a in people:
            for b in people:
                assert forward.pairwise_balance(a.id, b.id) == backward.pairwise_balance(
                    a.id, b.id
                )

    def test_self_split_has_no_effect(self, alice, people):
        expense = make_expense("10.00", {alice.id: "10.00"}, [alice])
        engine = BalanceEngine(make_snapshot(alice, people, [expense]))

        assert engine.person_balance(alice.id) == Money.zero()
        assert engine.counterparties(alice.id) == []


class TestListings:
    """Per-person and per-member listings."""

    def test_people_who_owe_largest_first(self, alice, bob, carol, people):
        expenses = [
            make_expense("20.00", {alice.id: "20.00"}, [alice, bob]),
            make_expense("60.00", {alice.id: "60.00"}, [alice, carol]),
        ]
        engine = BalanceEngine(make_snapshot(alice, people, expenses))

        rows = engine.people_who_owe(alice.id)

        assert [(p.display_name, str(b)) for p, b in rows] == [
            ("Carol", "30.00"),
            ("Bob", "10.00"),
        ]
        assert engine.people_owed_by(alice.id) == []
        assert [p.display_name for p, _ in engine.people_owed_by(bob.id)] == ["Alice"]

    def test_archived_people_hidden(self, alice, bob, carol):
        archived_bob = bob.model_copy(update={"archived": True})
        people = [alice, archived_bob, carol]
        expense = make_expense("90.00", {alice.id: "90.00"}, [alice, bob, carol])
        engine = BalanceEngine(make_snapshot(alice, people, [expense]))

        assert [p.display_name for p, _ in engine.person_balances(alice.id)] == ["Carol"]
        assert len(engine.person_balances(alice.id, include_archived=True)) == 2
        # History still counts
        assert engine.person_balance(alice.id) == Money.of("60.00")

    def test_group_nets_to_zero_with_open_members(self, alice, bob, carol, people):
        group = Group(name="House", member_ids=frozenset({alice.id, bob.id, carol.id}))
        expenses = [
            make_expense("20.00", {alice.id: "20.00"}, [bob], group_id=group.id),
            make_expense("20.00", {carol.id: "20.00"}, [alice], group_id=group.id),
        ]
        engine = BalanceEngine(make_snapshot(alice, people, expenses, groups=[group]))

        assert engine.group_balance(group.id, alice.id) == Money.zero()
        assert engine.has_unsettled_members(group.id, alice.id)
        assert [
            (p.display_name, str(b)) for p, b in engine.member_balances(group.id, alice.id)
        ] == [("Bob", "20.00"), ("Carol", "-20.00")]
        assert [p.display_name for p, _ in engine.members_who_owe_current_user(
            group.id, alice.id
        )] == ["Bob"]
        assert [p.display_name for p, _ in engine.members_current_user_owes(
            group.id, alice.id
        )] == ["Carol"]

    def test_former_member_still_counted(self, alice, bob, dana, people):
        """Dana left the group but her share of its expenses still counts."""
        group = Group(name="Trip", member_ids=frozenset({alice.id, bob.id}))
        expense = make_expense(
            "30.00", {alice.id: "30.00"}, [alice, bob, dana], group_id=group.id
        )
        engine = BalanceEngine(make_snapshot(alice, people, [expense], groups=[group]))

        assert dana.id in engine.group_participants(group.id)
        assert engine.group_balance(group.id, alice.id) == Money.of("20.00")

    def test_untagged_settlement_leaves_group_balance(self, alice, bob, people):
        group = Group(name="Trip", member_ids=frozenset({alice.id, bob.id}))
        expense = make_expense(
            "30.00", {alice.id: "30.00"}, [alice, bob], group_id=group.id
        )
        engine = BalanceEngine(
            make_snapshot(
                alice, people, [expense], [make_settlement(bob, alice, "15.00")], [group]
            )
        )

        assert engine.pairwise_balance(alice.id, bob.id) == Money.zero()
        assert engine.group_balance(group.id, alice.id) == Money.of("15.00")


class TestIntegrity:
    """Snapshots that fail validation."""

    def test_valid_snapshot(self, alice, bob, people):
        expense = make_expense("10.00", {alice.id: "10.00"}, [alice, bob])

        assert validate_snapshot(make_snapshot(alice, people, [expense])) == []

    def test_unknown_person_in_split(self, alice, bob):
        expense = make_expense("10.00", {alice.id: "10.00"}, [alice, bob])

        result = BalanceEngine.create(make_snapshot(alice, [alice], [expense]))

        assert isinstance(result.error, UnknownEntityReference)
        assert result.error.entity_id == bob.id

    def test_transaction_without_payers(self, alice, bob, people):
        txn, splits, _ = make_expense("10.00", {alice.id: "10.00"}, [alice, bob])

        result = BalanceEngine.create(make_snapshot(alice, people, [(txn, splits, [])]))

        assert isinstance(result.error, DegenerateTransaction)

    def test_self_settlement(self, alice, people):
        result = BalanceEngine.create(
            make_snapshot(alice, people, settlements=[make_settlement(alice, alice, "1.00")])
        )

        assert isinstance(result.error, InvalidDirection)

    def test_unknown_current_user(self, alice, bob):
        result = BalanceEngine.create(make_snapshot(alice, [bob]))

        assert isinstance(result.error, UnknownEntityReference)

    def test_dangling_split(self, alice, bob, people):
        _, splits, _ = make_expense("10.00", {alice.id: "10.00"}, [alice, bob])
        snapshot = make_snapshot(alice, people).model_copy(update={"splits": tuple(splits)})

        errors = validate_snapshot(snapshot)

        assert errors
        assert all(e.entity_kind == "transaction" for e in errors)
