from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from errors import ValidationFailed

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: object, *, exact: bool = False) -> Decimal:
    """Parse a money amount into a 2-place Decimal.

    Floats go through ``str`` so ``19.99`` stays ``19.99``. Booleans, NaN and
    infinities are rejected. With ``exact`` an amount that would need rounding
    (``10.005``) is rejected instead of rounded.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationFailed("Amount must be a number")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        try:
            amount = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValidationFailed("Amount must be a number") from exc
    else:
        raise ValidationFailed("Amount must be a number")
    if not amount.is_finite():
        raise ValidationFailed("Amount must be a finite number")
    rounded = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    if exact and rounded != amount:
        raise ValidationFailed(
            "Amount cannot have more than 2 decimal places", field="amount"
        )
    return rounded


def to_cents(value: object) -> int:
    return int(to_decimal(value) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_decimal(self.amount))
        object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def from_cents(cls, cents: int, currency: str) -> "Money":
        return cls(from_cents(cents), currency)

    @property
    def cents(self) -> int:
        return int(self.amount * 100)

    def is_positive(self) -> bool:
        return self.amount > ZERO

    def _check_currency(self, other: "Money") -> None:
        if other.currency != self.currency:
            raise ValidationFailed(
                f"Currency mismatch: {self.currency} and {other.currency}"
            )

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    def __str__(self) -> str:
        return f"{self.amount:.2f} {self.currency}"


def percentage(part: Decimal, total: Decimal) -> Decimal:
    if total == 0:
        return ZERO
    return (part / total * 100).quantize(CENT, rounding=ROUND_HALF_UP)
