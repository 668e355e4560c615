"""Conversation feed: one timeline of transactions, settlements, reminders and messages."""

from collections import defaultdict
from datetime import UTC, date, datetime, timedelta, tzinfo
from itertools import groupby
from typing import Annotated, Iterable, Iterator, Literal, Mapping
from uuid import UUID

from pydantic import Field

from ..models import (
    AllScope,
    GroupScope,
    LedgerModel,
    LedgerScope,
    Message,
    PayerShare,
    Person,
    PersonScope,
    Reminder,
    Settlement,
    Snapshot,
    Split,
    Transaction,
)

# Same-timestamp, same-sequence tie-break between item kinds
_KIND_RANK = {"transaction": 0, "settlement": 1, "reminder": 2, "message": 3}


# ============================================================================
# Feed Items
# ============================================================================


class TransactionItem(LedgerModel):
    kind: Literal["transaction"] = "transaction"
    transaction: Transaction
    splits: tuple[Split, ...] = ()
    payer_shares: tuple[PayerShare, ...] = ()

    @property
    def item_id(self) -> UUID:
        return self.transaction.id

    @property
    def timestamp(self) -> datetime:
        return self.transaction.date

    @property
    def sequence(self) -> int:
        return self.transaction.sequence


class SettlementItem(LedgerModel):
    kind: Literal["settlement"] = "settlement"
    settlement: Settlement

    @property
    def item_id(self) -> UUID:
        return self.settlement.id

    @property
    def timestamp(self) -> datetime:
        return self.settlement.date

    @property
    def sequence(self) -> int:
        return self.settlement.sequence


class ReminderItem(LedgerModel):
    kind: Literal["reminder"] = "reminder"
    reminder: Reminder

    @property
    def item_id(self) -> UUID:
        return self.reminder.id

    @property
    def timestamp(self) -> datetime:
        return self.reminder.created_date

    @property
    def sequence(self) -> int:
        return self.reminder.sequence


class MessageItem(LedgerModel):
    kind: Literal["message"] = "message"
    message: Message

    @property
    def item_id(self) -> UUID:
        return self.message.id

    @property
    def timestamp(self) -> datetime:
        return self.message.timestamp

    @property
    def sequence(self) -> int:
        return self.message.sequence


FeedItem = Annotated[
    TransactionItem | SettlementItem | ReminderItem | MessageItem,
    Field(discriminator="kind"),
]


class FeedDay(LedgerModel):
    """A contiguous run of feed items on one calendar day."""

    day: date
    items: tuple[FeedItem, ...]


class Feed(LedgerModel):
    """The ordered, day-grouped feed for one thread."""

    scope: LedgerScope
    days: tuple[FeedDay, ...] = ()

    def items(self) -> Iterator[FeedItem]:
        for feed_day in self.days:
            yield from feed_day.items

    @property
    def item_count(self) -> int:
        return sum(len(feed_day.items) for feed_day in self.days)


# ============================================================================
# Building
# ============================================================================


def local_time(timestamp: datetime, tz: tzinfo = UTC) -> datetime:
    """Express a timestamp in ``tz``; naive timestamps are taken as already local."""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=tz)
    return timestamp.astimezone(tz)


def _sort_key(item: FeedItem, tz: tzinfo) -> tuple[datetime, int, int, str]:
    return (
        local_time(item.timestamp, tz),
        item.sequence,
        _KIND_RANK[item.kind],
        str(item.item_id),
    )


def _select_items(
    snapshot: Snapshot, scope: LedgerScope, current_user_id: UUID
) -> list[FeedItem]:
    splits_by_txn: dict[UUID, list[Split]] = defaultdict(list)
    for split in snapshot.splits:
        splits_by_txn[split.transaction_id].append(split)
    payers_by_txn: dict[UUID, list[PayerShare]] = defaultdict(list)
    for payer in snapshot.payer_shares:
        payers_by_txn[payer.transaction_id].append(payer)

    def transaction_item(txn: Transaction) -> TransactionItem:
        return TransactionItem(
            transaction=txn,
            splits=tuple(splits_by_txn.get(txn.id, ())),
            payer_shares=tuple(payers_by_txn.get(txn.id, ())),
        )

    def participants(txn: Transaction) -> set[UUID]:
        return {s.owed_by for s in splits_by_txn.get(txn.id, ())} | {
            p.person_id for p in payers_by_txn.get(txn.id, ())
        }

    items: list[FeedItem] = []

    if isinstance(scope, PersonScope):
        pair = {current_user_id, scope.person_id}
        if len(pair) < 2:
            return items
        items.extend(
            transaction_item(t)
            for t in snapshot.transactions
            if pair <= participants(t)
        )
        items.extend(
            SettlementItem(settlement=s)
            for s in snapshot.settlements
            if {s.from_person, s.to_person} == pair
        )
        items.extend(
            ReminderItem(reminder=r)
            for r in snapshot.reminders
            if r.to_person == scope.person_id and r.group_id is None
        )
        items.extend(
            MessageItem(message=m)
            for m in snapshot.messages
            if m.person_id == scope.person_id and m.transaction_id is None
        )

    elif isinstance(scope, GroupScope):
        items.extend(
            transaction_item(t)
            for t in snapshot.transactions
            if t.group_id == scope.group_id
        )
        items.extend(
            SettlementItem(settlement=s)
            for s in snapshot.settlements
            if s.group_id == scope.group_id
        )
        items.extend(
            ReminderItem(reminder=r)
            for r in snapshot.reminders
            if r.group_id == scope.group_id
        )
        items.extend(
            MessageItem(message=m)
            for m in snapshot.messages
            if m.group_id == scope.group_id and m.transaction_id is None
        )

    elif isinstance(scope, AllScope):
        items.extend(transaction_item(t) for t in snapshot.transactions)
        items.extend(SettlementItem(settlement=s) for s in snapshot.settlements)
        items.extend(ReminderItem(reminder=r) for r in snapshot.reminders)
        items.extend(
            MessageItem(message=m) for m in snapshot.messages if m.transaction_id is None
        )

    return items


def iter_feed_items(
    snapshot: Snapshot,
    scope: LedgerScope,
    current_user_id: UUID,
    tz: tzinfo = UTC,
) -> Iterator[FeedItem]:
    """
    Yield a thread's feed items, oldest first.

    The thread's items are selected and sorted up front; only the hand-off to
    the caller is incremental. Ties on timestamp are broken by creation sequence, then item kind, then
    id, so the order never depends on snapshot order.
    """
    items = _select_items(snapshot, scope, current_user_id)
    yield from sorted(items, key=lambda item: _sort_key(item, tz))


def group_by_day(items: Iterable[FeedItem], tz: tzinfo = UTC) -> Iterator[FeedDay]:
    """Lazily group ordered feed items into calendar-day runs."""
    for day, day_items in groupby(items, key=lambda item: local_time(item.timestamp, tz).date()):
        yield FeedDay(day=day, items=tuple(day_items))


def build_feed(
    snapshot: Snapshot,
    scope: LedgerScope,
    current_user_id: UUID,
    tz: tzinfo = UTC,
) -> Feed:
    """
    Build the day-grouped feed for a person, group or the whole ledger.

    Read-only: the snapshot is never modified, and the same snapshot always
    yields the same feed.
    """
    days = group_by_day(iter_feed_items(snapshot, scope, current_user_id, tz), tz)
    return Feed(scope=scope, days=tuple(days))


def day_label(day: date, today: date) -> str:
    """Header text for a day run: Today, Yesterday, weekday, or a medium date."""
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    if day.isocalendar()[:2] == today.isocalendar()[:2]:
        return day.strftime("%A")
    return f"{day.strftime('%b')} {day.day}, {day.year}"


def describe_item(
    item: FeedItem, persons: Mapping[UUID, Person], current_user_id: UUID
) -> str:
    """One-line summary of a feed item, naming the current user "You"."""

    def name(person_id: UUID) -> str:
        if person_id == current_user_id:
            return "You"
        person = persons.get(person_id)
        return person.display_name if person else str(person_id)

    if isinstance(item, TransactionItem):
        payers = ", ".join(name(p.person_id) for p in item.payer_shares) or "nobody"
        return f"{item.transaction.title}: {item.transaction.amount} paid by {payers}"
    if isinstance(item, SettlementItem):
        s = item.settlement
        label = "Reversed payment" if s.reversal_of else "Payment"
        suffix = " (settled up)" if s.is_full_settlement else ""
        return f"{label}: {name(s.from_person)} paid {name(s.to_person)} {s.amount}{suffix}"
    if isinstance(item, ReminderItem):
        r = item.reminder
        return f"Reminder to {name(r.to_person)} for {r.amount}" + (
            f": {r.message}" if r.message else ""
        )
    m = item.message
    author = "You" if m.from_current_user else (name(m.person_id) if m.person_id else "Them")
    return f"{author}: {m.content}"
