"""Custom exceptions and result carrier for Split Ledger."""

from dataclasses import dataclass
from typing import Generic, TypeVar
from uuid import UUID

T = TypeVar("T")


class SplitLedgerError(Exception):
    """Base exception for all Split Ledger errors."""

    pass


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class LedgerFileError(SplitLedgerError):
    """Raised when a ledger document cannot be read or written."""

    pass


class RecordNotFoundError(SplitLedgerError):
    """Raised when a lookup or delete names a record the store doesn't have."""

    def __init__(self, entity_kind: str, key: object):
        self.entity_kind = entity_kind
        self.key = key
        super().__init__(f"No {entity_kind} found for {key!r}")


# ============================================================================
# Engine-level errors
# ============================================================================


class LedgerError(SplitLedgerError):
    """Base class for ledger integrity and settlement errors.

    Engine operations hand these back inside a ``Result`` instead of raising
    them, so the caller decides whether to show, retry or block.
    """

    pass


class DuplicateRecordError(LedgerError):
    """Raised when committing a record whose id already exists in the store."""

    def __init__(self, entity_kind: str, entity_id: UUID, message: str | None = None):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        super().__init__(
            message or f"{entity_kind.capitalize()} {entity_id} has already been recorded"
        )


class InvalidTransaction(LedgerError):
    """Splits or payer shares do not reconcile to the transaction total."""

    def __init__(self, transaction_id: UUID | None, message: str):
        self.transaction_id = transaction_id
        super().__init__(message)


class DegenerateTransaction(LedgerError):
    """Zero-amount or zero-participant transaction (or settlement)."""

    def __init__(self, entity_id: UUID | None, message: str):
        self.entity_id = entity_id
        super().__init__(message)


class UnknownEntityReference(LedgerError):
    """A record points at a person, group or transaction missing from the snapshot."""

    def __init__(
        self,
        entity_kind: str,
        entity_id: UUID,
        referenced_by: UUID | None = None,
        message: str | None = None,
    ):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        self.referenced_by = referenced_by
        super().__init__(
            message
            or f"Unknown {entity_kind} {entity_id}"
            + (f" referenced by {referenced_by}" if referenced_by else "")
        )


class SettlementError(LedgerError):
    """Base class for rejected settlement proposals."""

    pass


class InvalidDirection(SettlementError):
    """Settlement would increase or reverse the debt instead of reducing it."""

    def __init__(self, from_person: UUID, to_person: UUID, message: str | None = None):
        self.from_person = from_person
        self.to_person = to_person
        super().__init__(
            message
            or f"Settlement from {from_person} to {to_person} does not reduce an "
            f"existing debt"
        )


class AmountExceedsBalance(SettlementError):
    """Settlement amount is larger than the outstanding debt."""

    def __init__(self, amount: object, outstanding: object, message: str | None = None):
        self.amount = amount
        self.outstanding = outstanding
        super().__init__(
            message
            or f"Settlement amount {amount} exceeds outstanding balance {outstanding}"
        )


# ============================================================================
# Result carrier
# ============================================================================


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of an engine operation: either a value or a typed error."""

    value: T | None = None
    error: LedgerError | None = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: LedgerError) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, raising the carried error if there is one."""
        if self.error is not None:
            raise self.error
        assert self.value is not None
        return self.value
