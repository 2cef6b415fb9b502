"""
Tests for kernel value objects: Currency, Money, RoundingMode, the
validation helpers and DeterministicClock.
"""

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal

import pytest

from ssp_kernel.domain.clock import DeterministicClock
from ssp_kernel.domain.currency import CurrencyRegistry
from ssp_kernel.domain.validation import require_ratio, to_decimal
from ssp_kernel.domain.values import Currency, Money, RoundingMode


class TestCurrency:
    def test_normalized(self):
        assert Currency(" usd ").code == "USD"

    @pytest.mark.parametrize("code", ["", "XXX", "US", "DOLLAR"])
    def test_invalid_code(self, code):
        with pytest.raises(ValueError):
            Currency(code)

    @pytest.mark.parametrize(
        "code,minor_unit",
        [("USD", Decimal("0.01")), ("JPY", Decimal("1")), ("KWD", Decimal("0.001"))],
    )
    def test_minor_unit(self, code, minor_unit):
        assert Currency(code).minor_unit == minor_unit

    def test_quantize_uses_rounding_mode(self):
        usd = Currency("USD")
        assert usd.quantize(Decimal("0.125"), RoundingMode.HALF_UP) == Decimal("0.13")
        assert usd.quantize(Decimal("0.125"), RoundingMode.BANKERS) == Decimal("0.12")

    def test_registry_validate(self):
        assert CurrencyRegistry.validate("eur") == "EUR"
        with pytest.raises(ValueError):
            CurrencyRegistry.validate("EURO")


class TestRoundingMode:
    def test_decimal_constants(self):
        assert RoundingMode.HALF_UP.decimal_rounding == ROUND_HALF_UP
        assert RoundingMode.BANKERS.decimal_rounding == ROUND_HALF_EVEN

    def test_from_string(self):
        assert RoundingMode("BANKERS") is RoundingMode.BANKERS


class TestMoney:
    def test_of_converts_strings(self):
        money = Money.of("10.50", "usd")
        assert money.amount == Decimal("10.50")
        assert money.currency == Currency("USD")

    def test_float_rejected(self):
        with pytest.raises(ValueError):
            Money(10.5, Currency("USD"))

    def test_non_finite_rejected(self):
        with pytest.raises(ValueError):
            Money.of(Decimal("Infinity"), "USD")

    def test_arithmetic(self):
        a = Money.of("10.00", "USD")
        b = Money.of("2.50", "USD")
        assert (a + b).amount == Decimal("12.50")
        assert (a - b).amount == Decimal("7.50")
        assert (a * Decimal("0.1")).amount == Decimal("1.000")
        assert b < a

    def test_mixed_currency_rejected(self):
        with pytest.raises(ValueError, match="different currencies"):
            Money.of("1", "USD") + Money.of("1", "EUR")

    def test_round(self):
        assert Money.of("2.345", "USD").round().amount == Decimal("2.35")
        assert Money.of("2.345", "USD").round(RoundingMode.BANKERS).amount == Decimal("2.34")

    def test_zero_and_sign(self):
        assert Money.zero("USD").is_zero
        assert Money.of("-1", "USD").is_negative


class TestValidation:
    def test_to_decimal(self):
        assert to_decimal("0.10") == Decimal("0.10")
        assert to_decimal(3) == Decimal("3")

    @pytest.mark.parametrize("value", [0.1, True, "abc", None, "NaN"])
    def test_to_decimal_rejects(self, value):
        with pytest.raises(ValueError):
            to_decimal(value)

    def test_require_ratio(self):
        require_ratio(Decimal("0.5"), "pct")
        with pytest.raises(ValueError):
            require_ratio(Decimal("1.5"), "pct")


class TestDeterministicClock:
    def test_fixed_until_advanced(self):
        clock = DeterministicClock(datetime(2024, 3, 1, 23, 0, tzinfo=timezone.utc))
        assert clock.now() == clock.now()
        clock.advance(3600)
        assert clock.today() == date(2024, 3, 2)

    def test_advance_days_and_set_time(self):
        clock = DeterministicClock(datetime(2024, 3, 1, tzinfo=timezone.utc))
        clock.advance_days(10)
        assert clock.today() == date(2024, 3, 11)
        clock.set_time(datetime(2025, 1, 1, tzinfo=timezone.utc))
        assert clock.today() == date(2025, 1, 1)
