"""
Values -- Immutable, self-validating domain value objects.

Responsibility:
    Provides the value types shared by engines and modules: Currency,
    Money, and the RoundingMode selected by an SSP policy. These replace
    primitive types (Decimal, str) wherever monetary data appears.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    No outward dependencies except ssp_kernel.domain.currency.

Invariants enforced:
    - Monetary amounts are Decimal, never float.
    - Currency codes are validated at construction time.
    - Rounding precision is derived from the currency's minor unit.

Failure modes:
    - ValueError on construction with invalid amounts or currencies.
    - ValueError when arithmetic mixes different currencies.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

from ssp_kernel.domain.currency import CurrencyRegistry


class RoundingMode(str, Enum):
    """Rounding rule applied when quantizing to the currency minor unit."""

    HALF_UP = "HALF_UP"
    BANKERS = "BANKERS"

    @property
    def decimal_rounding(self) -> str:
        """The decimal module constant implementing this mode."""
        match self:
            case RoundingMode.HALF_UP:
                return ROUND_HALF_UP
            case RoundingMode.BANKERS:
                return ROUND_HALF_EVEN


@dataclass(frozen=True, slots=True)
class Currency:
    """
    ISO 4217 currency code value object.

    Contract:
        Wraps a three-letter ISO 4217 code. Validated and normalized
        (uppercased) on construction. Invalid codes are rejected immediately.

    Guarantees:
        - Immutable and hashable.
        - code is always a valid ISO 4217 code per CurrencyRegistry.
    """

    code: str

    def __post_init__(self) -> None:
        normalized = self.code.upper().strip() if self.code else ""
        if not CurrencyRegistry.is_valid(normalized):
            raise ValueError(f"Invalid ISO 4217 currency code: {self.code}")
        object.__setattr__(self, "code", normalized)

    @property
    def decimal_places(self) -> int:
        return CurrencyRegistry.get_decimal_places(self.code)

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01 for USD."""
        return CurrencyRegistry.get_minor_unit(self.code)

    def quantize(self, amount: Decimal, rounding: RoundingMode) -> Decimal:
        """Round amount to this currency's minor unit."""
        return amount.quantize(self.minor_unit, rounding=rounding.decimal_rounding)

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"Currency({self.code!r})"


@dataclass(frozen=True, slots=True)
class Money:
    """
    Monetary amount value object.

    Contract:
        Pairs a Decimal amount with its Currency. They are never separated.

    Guarantees:
        - amount is always a Decimal (never float).
        - Arithmetic operations enforce the same-currency constraint.

    Non-goals:
        - Does NOT perform currency conversion.
        - Does NOT auto-round -- callers must explicitly call .round().
    """

    amount: Decimal
    currency: Currency

    def __post_init__(self) -> None:
        # INVARIANT: amount must be Decimal, never float
        if isinstance(self.amount, float):
            raise ValueError(f"Money amount must not be float: {self.amount!r}")
        if not isinstance(self.amount, Decimal):
            try:
                object.__setattr__(self, "amount", Decimal(str(self.amount)))
            except (InvalidOperation, ValueError) as e:
                raise ValueError(f"Invalid amount: {self.amount}") from e
        if not self.amount.is_finite():
            raise ValueError(f"Money amount must be finite: {self.amount}")

        if isinstance(self.currency, str):
            object.__setattr__(self, "currency", Currency(self.currency))
        elif not isinstance(self.currency, Currency):
            raise TypeError(
                f"currency must be Currency or str, got {type(self.currency)}"
            )

    @classmethod
    def of(cls, amount: Decimal | str | int, currency: str | Currency) -> Money:
        """
        Factory method for creating Money.

        Raises:
            ValueError: If amount cannot be converted or currency is invalid.
        """
        if isinstance(amount, (str, int)):
            amount = Decimal(str(amount))
        if isinstance(currency, str):
            currency = Currency(currency)
        return cls(amount=amount, currency=currency)

    @classmethod
    def zero(cls, currency: str | Currency) -> Money:
        if isinstance(currency, str):
            currency = Currency(currency)
        return cls(amount=Decimal("0"), currency=currency)

    @property
    def is_zero(self) -> bool:
        return self.amount == Decimal("0")

    @property
    def is_negative(self) -> bool:
        return self.amount < Decimal("0")

    def round(self, rounding: RoundingMode = RoundingMode.HALF_UP) -> Money:
        """Return a new Money rounded to the currency minor unit."""
        return Money(
            amount=self.currency.quantize(self.amount, rounding),
            currency=self.currency,
        )

    def _check_currency(self, other: Money, op: str) -> None:
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot {op} Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "add")
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "subtract")
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def __mul__(self, factor: Decimal | int | str) -> Money:
        if isinstance(factor, (int, str)):
            factor = Decimal(str(factor))
        if not isinstance(factor, Decimal):
            return NotImplemented
        return Money(amount=self.amount * factor, currency=self.currency)

    def __rmul__(self, factor: Decimal | int | str) -> Money:
        return self.__mul__(factor)

    def __lt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __str__(self) -> str:
        return f"{self.amount} {self.currency.code}"

    def __repr__(self) -> str:
        return f"Money({self.amount!r}, {self.currency.code!r})"
