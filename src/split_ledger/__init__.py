"""Split Ledger - Balance and settlement engine for shared expenses."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .exceptions import (
    AmountExceedsBalance,
    DegenerateTransaction,
    InvalidDirection,
    InvalidTransaction,
    LedgerError,
    Result,
    SplitLedgerError,
    UnknownEntityReference,
)
from .ledger.balances import BalanceEngine
from .ledger.feed import Feed, build_feed
from .ledger.service import LedgerService, StaticIdentity
from .models import (
    AllScope,
    Group,
    GroupScope,
    Person,
    PersonScope,
    Settlement,
    Snapshot,
    Transaction,
)
from .money import Money
from .store import LedgerStore, load_ledger, save_ledger

__all__ = [
    "Settings",
    "load_settings",
    "AmountExceedsBalance",
    "DegenerateTransaction",
    "InvalidDirection",
    "InvalidTransaction",
    "LedgerError",
    "Result",
    "SplitLedgerError",
    "UnknownEntityReference",
    "BalanceEngine",
    "Feed",
    "build_feed",
    "LedgerService",
    "StaticIdentity",
    "AllScope",
    "Group",
    "GroupScope",
    "Person",
    "PersonScope",
    "Settlement",
    "Snapshot",
    "Transaction",
    "Money",
    "LedgerStore",
    "load_ledger",
    "save_ledger",
]
