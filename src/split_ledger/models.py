"""Pydantic domain models for Split Ledger."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from .money import Money


class LedgerModel(BaseModel):
    """Base for committed ledger records; immutable once built."""

    model_config = ConfigDict(frozen=True)


# ============================================================================
# People & Groups
# ============================================================================


class Person(LedgerModel):
    """A participant in the ledger, including the current user."""

    id: UUID = Field(default_factory=uuid4)
    display_name: str
    color_tag: str | None = None
    phone_number: str | None = None
    archived: bool = False


class Group(LedgerModel):
    """A named set of people sharing expenses."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    color_tag: str | None = None
    member_ids: frozenset[UUID] = frozenset()
    created_at: datetime | None = None


# ============================================================================
# Split Methods
# ============================================================================


class EqualSplit(LedgerModel):
    """Split evenly among all participants."""

    kind: Literal["equal"] = "equal"


class PercentageSplit(LedgerModel):
    """Each participant owes a percentage of the total (weights sum to 100)."""

    kind: Literal["percentage"] = "percentage"
    weights: dict[UUID, Decimal]


class ExactSplit(LedgerModel):
    """Each participant owes a specific amount."""

    kind: Literal["exact"] = "exact"
    amounts: dict[UUID, Money]


class SharesSplit(LedgerModel):
    """Split in proportion to a number of shares per participant."""

    kind: Literal["shares"] = "shares"
    shares: dict[UUID, Decimal]


class AdjustmentSplit(LedgerModel):
    """Equal split of the remainder after per-participant adjustments."""

    kind: Literal["adjustment"] = "adjustment"
    adjustments: dict[UUID, Money]


SplitMethod = Annotated[
    EqualSplit | PercentageSplit | ExactSplit | SharesSplit | AdjustmentSplit,
    Field(discriminator="kind"),
]


# ============================================================================
# Financial Records
# ============================================================================


class Transaction(LedgerModel):
    """One shared expense.

    Splits and payer shares live in their own records and reference the
    transaction by id; all three are committed and deleted together.
    """

    id: UUID = Field(default_factory=uuid4)
    title: str
    amount: Money
    date: datetime
    split_method: SplitMethod = Field(default_factory=EqualSplit)
    group_id: UUID | None = None  # None = person-to-person
    note: str | None = None
    created_by: UUID | None = None
    sequence: int = 0  # assigned by the store at commit time


class PayerShare(LedgerModel):
    """The portion of a transaction actually paid by one person."""

    transaction_id: UUID
    person_id: UUID
    amount_paid: Money


class Split(LedgerModel):
    """One participant's owed portion of a transaction."""

    transaction_id: UUID
    owed_by: UUID
    amount: Money
    raw_amount: Decimal | None = None  # exact share before rounding to minor units


class Settlement(LedgerModel):
    """A recorded payment from one person to another."""

    id: UUID = Field(default_factory=uuid4)
    from_person: UUID
    to_person: UUID
    amount: Money
    date: datetime
    is_full_settlement: bool = False
    note: str | None = None
    group_id: UUID | None = None  # set when settled from a group thread
    reversal_of: UUID | None = None
    sequence: int = 0


class Reminder(LedgerModel):
    """A nudge sent to a debtor. Never affects balances."""

    id: UUID = Field(default_factory=uuid4)
    to_person: UUID
    amount: Money
    created_date: datetime
    message: str | None = None
    is_read: bool = False
    is_cleared: bool = False
    group_id: UUID | None = None
    sequence: int = 0


class Message(LedgerModel):
    """A free-text chat entry in a person or group thread."""

    id: UUID = Field(default_factory=uuid4)
    content: str
    timestamp: datetime
    from_current_user: bool = True
    person_id: UUID | None = None
    group_id: UUID | None = None
    transaction_id: UUID | None = None  # comment on a transaction, not a thread entry
    is_edited: bool = False
    sequence: int = 0


# ============================================================================
# Snapshot & Scopes
# ============================================================================


class Snapshot(LedgerModel):
    """A read-consistent view of the entity graph handed to the engine."""

    current_user_id: UUID
    persons: tuple[Person, ...] = ()
    groups: tuple[Group, ...] = ()
    transactions: tuple[Transaction, ...] = ()
    splits: tuple[Split, ...] = ()
    payer_shares: tuple[PayerShare, ...] = ()
    settlements: tuple[Settlement, ...] = ()
    reminders: tuple[Reminder, ...] = ()
    messages: tuple[Message, ...] = ()

    def persons_by_id(self) -> dict[UUID, Person]:
        return {p.id: p for p in self.persons}

    def groups_by_id(self) -> dict[UUID, Group]:
        return {g.id: g for g in self.groups}


class AllScope(LedgerModel):
    """The whole ledger."""

    kind: Literal["all"] = "all"


class PersonScope(LedgerModel):
    """Everything shared between the current user and one person."""

    kind: Literal["person"] = "person"
    person_id: UUID


class GroupScope(LedgerModel):
    """Everything recorded in one group."""

    kind: Literal["group"] = "group"
    group_id: UUID


LedgerScope = Annotated[
    AllScope | PersonScope | GroupScope, Field(discriminator="kind")
]


class MutationKind(str, Enum):
    """Kind of committed write reported to commit listeners."""

    PERSON = "person"
    GROUP = "group"
    TRANSACTION = "transaction"
    TRANSACTION_DELETED = "transaction_deleted"
    SETTLEMENT = "settlement"
    SETTLEMENT_DELETED = "settlement_deleted"
    REMINDER = "reminder"
    MESSAGE = "message"
