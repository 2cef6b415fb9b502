"""Currency -- ISO 4217 registry and minor-unit precision."""

from dataclasses import dataclass
from decimal import Decimal
from typing import ClassVar


@dataclass(frozen=True)
class CurrencyInfo:
    """Information about a single ISO 4217 currency."""

    code: str
    decimal_places: int
    name: str

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount in this currency."""
        if self.decimal_places == 0:
            return Decimal("1")
        return Decimal("0." + "0" * (self.decimal_places - 1) + "1")

    @property
    def quantize_string(self) -> str:
        """String for Decimal.quantize() to round to this currency's precision."""
        if self.decimal_places == 0:
            return "1"
        return "0." + "0" * self.decimal_places


class CurrencyRegistry:
    """Registry of ISO 4217 currencies with decimal places."""

    _CURRENCIES: ClassVar[dict[str, CurrencyInfo]] = {
        # Major currencies
        "USD": CurrencyInfo("USD", 2, "US Dollar"),
        "EUR": CurrencyInfo("EUR", 2, "Euro"),
        "GBP": CurrencyInfo("GBP", 2, "Pound Sterling"),
        "JPY": CurrencyInfo("JPY", 0, "Japanese Yen"),
        "CHF": CurrencyInfo("CHF", 2, "Swiss Franc"),
        "CAD": CurrencyInfo("CAD", 2, "Canadian Dollar"),
        "AUD": CurrencyInfo("AUD", 2, "Australian Dollar"),
        "NZD": CurrencyInfo("NZD", 2, "New Zealand Dollar"),
        "CNY": CurrencyInfo("CNY", 2, "Chinese Yuan"),
        "HKD": CurrencyInfo("HKD", 2, "Hong Kong Dollar"),
        "SGD": CurrencyInfo("SGD", 2, "Singapore Dollar"),
        "INR": CurrencyInfo("INR", 2, "Indian Rupee"),
        "BRL": CurrencyInfo("BRL", 2, "Brazilian Real"),
        "MXN": CurrencyInfo("MXN", 2, "Mexican Peso"),
        "ZAR": CurrencyInfo("ZAR", 2, "South African Rand"),
        "SEK": CurrencyInfo("SEK", 2, "Swedish Krona"),
        "NOK": CurrencyInfo("NOK", 2, "Norwegian Krone"),
        "DKK": CurrencyInfo("DKK", 2, "Danish Krone"),
        "PLN": CurrencyInfo("PLN", 2, "Polish Zloty"),
        "AED": CurrencyInfo("AED", 2, "UAE Dirham"),
        "MYR": CurrencyInfo("MYR", 2, "Malaysian Ringgit"),
        "THB": CurrencyInfo("THB", 2, "Thai Baht"),
        "IDR": CurrencyInfo("IDR", 2, "Indonesian Rupiah"),
        "PHP": CurrencyInfo("PHP", 2, "Philippine Peso"),
        # Zero decimal currencies
        "KRW": CurrencyInfo("KRW", 0, "South Korean Won"),
        "VND": CurrencyInfo("VND", 0, "Vietnamese Dong"),
        "CLP": CurrencyInfo("CLP", 0, "Chilean Peso"),
        "ISK": CurrencyInfo("ISK", 0, "Icelandic Krona"),
        # Three decimal currencies
        "BHD": CurrencyInfo("BHD", 3, "Bahraini Dinar"),
        "KWD": CurrencyInfo("KWD", 3, "Kuwaiti Dinar"),
        "OMR": CurrencyInfo("OMR", 3, "Omani Rial"),
        "JOD": CurrencyInfo("JOD", 3, "Jordanian Dinar"),
        "TND": CurrencyInfo("TND", 3, "Tunisian Dinar"),
    }

    # Default decimal places for currencies missing from the table
    DEFAULT_DECIMAL_PLACES: ClassVar[int] = 2

    @classmethod
    def is_valid(cls, code: str) -> bool:
        """Check if a currency code is a known ISO 4217 code."""
        if not code or not isinstance(code, str):
            return False
        return code.upper().strip() in cls._CURRENCIES

    @classmethod
    def get_info(cls, code: str) -> CurrencyInfo | None:
        if not code or not isinstance(code, str):
            return None
        return cls._CURRENCIES.get(code.upper().strip())

    @classmethod
    def get_decimal_places(cls, code: str) -> int:
        info = cls.get_info(code)
        return info.decimal_places if info else cls.DEFAULT_DECIMAL_PLACES

    @classmethod
    def get_minor_unit(cls, code: str) -> Decimal:
        info = cls.get_info(code)
        if info:
            return info.minor_unit
        return Decimal(1).scaleb(-cls.DEFAULT_DECIMAL_PLACES)

    @classmethod
    def validate(cls, code: str) -> str:
        """Validate and normalize a currency code."""
        if not code or not isinstance(code, str):
            raise ValueError(f"Invalid currency code: {code!r}")

        normalized = code.upper().strip()

        if len(normalized) != 3:
            raise ValueError(f"Currency code must be 3 characters: {code!r}")

        if normalized not in cls._CURRENCIES:
            raise ValueError(f"Invalid ISO 4217 currency code: {code!r}")

        return normalized

    @classmethod
    def all_codes(cls) -> frozenset[str]:
        return frozenset(cls._CURRENCIES.keys())
