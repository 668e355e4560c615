"""Fixed-precision money type used by every ledger calculation."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from fractions import Fraction
from functools import total_ordering
from typing import Any, Sequence

from pydantic import GetCoreSchemaHandler
from pydantic_core import core_schema

MINOR_UNIT_EXPONENT = 2
MINOR_UNITS_PER_MAJOR = 10**MINOR_UNIT_EXPONENT
EPSILON_MINOR_UNITS = 1  # one cent

_QUANTUM = Decimal(1).scaleb(-MINOR_UNIT_EXPONENT)


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a Decimal amount in major units to integer minor units.
    Uses ROUND_HALF_UP for consistency.

    Args:
        amount: Amount as Decimal (e.g. Decimal("12.345"))

    Returns:
        Amount in minor units (integer)
    """
    minor = amount * MINOR_UNITS_PER_MAJOR
    return int(minor.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@total_ordering
class Money:
    """An immutable amount of the ledger's single active currency.

    Stored as integer minor units. Floats are never accepted.
    """

    __slots__ = ("_minor",)

    def __init__(self, minor_units: int = 0):
        if isinstance(minor_units, bool) or not isinstance(minor_units, int):
            raise TypeError(f"Money needs integer minor units, got {minor_units!r}")
        object.__setattr__(self, "_minor", minor_units)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Money is immutable")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def zero(cls) -> "Money":
        return cls(0)

    @classmethod
    def from_minor_units(cls, minor_units: int) -> "Money":
        return cls(minor_units)

    @classmethod
    def of(cls, value: "Money | Decimal | str | int") -> "Money":
        """
        Build Money from a decimal string, Decimal, whole int or Money.

        Raises:
            ValueError: For floats, booleans or unparseable strings
        """
        if isinstance(value, Money):
            return value
        if isinstance(value, bool) or isinstance(value, float):
            raise ValueError(
                f"Money cannot be built from {type(value).__name__} {value!r}; "
                f"use a decimal string"
            )
        if isinstance(value, int):
            return cls(value * MINOR_UNITS_PER_MAJOR)
        if isinstance(value, str):
            try:
                value = Decimal(value.strip())
            except InvalidOperation as e:
                raise ValueError(f"Invalid money amount: {value!r}") from e
        if isinstance(value, Decimal):
            if not value.is_finite():
                raise ValueError(f"Invalid money amount: {value!r}")
            return cls(to_minor_units(value))
        raise ValueError(f"Unsupported money value: {value!r}")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def minor_units(self) -> int:
        return self._minor

    def to_decimal(self) -> Decimal:
        return (Decimal(self._minor) / MINOR_UNITS_PER_MAJOR).quantize(_QUANTUM)

    # ------------------------------------------------------------------
    # Arithmetic (exact, no rounding)
    # ------------------------------------------------------------------

    def add(self, other: "Money") -> "Money":
        return Money(self._minor + other._minor)

    def subtract(self, other: "Money") -> "Money":
        return Money(self._minor - other._minor)

    def negate(self) -> "Money":
        return Money(-self._minor)

    def __add__(self, other: object) -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return self.add(other)

    def __radd__(self, other: object) -> "Money":
        # Lets sum() start from the int 0
        if other == 0:
            return self
        return NotImplemented

    def __sub__(self, other: object) -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return self.subtract(other)

    def __neg__(self) -> "Money":
        return self.negate()

    def __abs__(self) -> "Money":
        return Money(abs(self._minor))

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def equals_within_epsilon(self, other: "Money", epsilon: "Money | None" = None) -> bool:
        """True if the two amounts differ by at most ``epsilon`` (one minor unit)."""
        tolerance = EPSILON_MINOR_UNITS if epsilon is None else epsilon._minor
        return abs(self._minor - other._minor) <= tolerance

    def is_zero_within_epsilon(self) -> bool:
        """Canonical "settled up" test: anything under one minor unit is zero."""
        return abs(self._minor) < EPSILON_MINOR_UNITS

    def is_positive(self) -> bool:
        return self._minor >= EPSILON_MINOR_UNITS

    def is_negative(self) -> bool:
        return self._minor <= -EPSILON_MINOR_UNITS

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self._minor == other._minor

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self._minor < other._minor

    def __hash__(self) -> int:
        return hash(("Money", self._minor))

    def __bool__(self) -> bool:
        return self._minor != 0

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(self, weights: Sequence[int | Decimal | Fraction]) -> list["Money"]:
        """
        Split this amount into parts proportional to ``weights``.

        Uses largest-remainder rounding so the parts always sum exactly to
        this amount. Ties on the remainder go to the earlier weight.

        Args:
            weights: Non-negative weights, at least one positive

        Returns:
            One Money per weight, in the same order

        Raises:
            ValueError: If weights are empty, negative or all zero
        """
        exact_weights = [Fraction(w) for w in weights]
        if not exact_weights:
            raise ValueError("Cannot allocate across zero weights")
        if any(w < 0 for w in exact_weights):
            raise ValueError("Allocation weights must be non-negative")
        total_weight = sum(exact_weights)
        if total_weight <= 0:
            raise ValueError("Allocation weights must not all be zero")

        sign = -1 if self._minor < 0 else 1
        magnitude = abs(self._minor)

        shares = [magnitude * w / total_weight for w in exact_weights]
        floors = [int(share) for share in shares]
        leftover = magnitude - sum(floors)

        # Hand out leftover minor units by largest fractional remainder
        order = sorted(
            range(len(shares)),
            key=lambda i: (-(shares[i] - floors[i]), i),
        )
        for i in order[:leftover]:
            floors[i] += 1

        return [Money(sign * part) for part in floors]

    # ------------------------------------------------------------------
    # Display / serialisation
    # ------------------------------------------------------------------

    def __str__(self) -> str:
        return str(self.to_decimal())

    def __repr__(self) -> str:
        return f"Money('{self}')"

    @classmethod
    def _validate(cls, value: Any) -> "Money":
        return cls.of(value)

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls._validate,
            serialization=core_schema.plain_serializer_function_ser_schema(str),
        )
