"""Currency -- ISO 4217 registry used to validate event currencies."""

from dataclasses import dataclass
from typing import ClassVar

from mda_kernel.utils.rounding import MONEY_DECIMAL_PLACES


@dataclass(frozen=True)
class CurrencyInfo:
    """Information about a single ISO 4217 currency."""

    code: str
    decimal_places: int
    name: str


class CurrencyRegistry:
    """Registry of the ISO 4217 currencies the engine accepts."""

    _CURRENCIES: ClassVar[dict[str, CurrencyInfo]] = {
        # Gulf and regional
        "AED": CurrencyInfo("AED", 2, "UAE Dirham"),
        "SAR": CurrencyInfo("SAR", 2, "Saudi Riyal"),
        "QAR": CurrencyInfo("QAR", 2, "Qatari Riyal"),
        "BHD": CurrencyInfo("BHD", 3, "Bahraini Dinar"),
        "KWD": CurrencyInfo("KWD", 3, "Kuwaiti Dinar"),
        "OMR": CurrencyInfo("OMR", 3, "Omani Rial"),
        "EGP": CurrencyInfo("EGP", 2, "Egyptian Pound"),
        "JOD": CurrencyInfo("JOD", 3, "Jordanian Dinar"),
        "LBP": CurrencyInfo("LBP", 2, "Lebanese Pound"),
        "INR": CurrencyInfo("INR", 2, "Indian Rupee"),
        "PKR": CurrencyInfo("PKR", 2, "Pakistani Rupee"),
        # Major
        "USD": CurrencyInfo("USD", 2, "US Dollar"),
        "EUR": CurrencyInfo("EUR", 2, "Euro"),
        "GBP": CurrencyInfo("GBP", 2, "Pound Sterling"),
        "CHF": CurrencyInfo("CHF", 2, "Swiss Franc"),
        "CAD": CurrencyInfo("CAD", 2, "Canadian Dollar"),
        "AUD": CurrencyInfo("AUD", 2, "Australian Dollar"),
        "NZD": CurrencyInfo("NZD", 2, "New Zealand Dollar"),
        "SGD": CurrencyInfo("SGD", 2, "Singapore Dollar"),
        "HKD": CurrencyInfo("HKD", 2, "Hong Kong Dollar"),
        "CNY": CurrencyInfo("CNY", 2, "Yuan Renminbi"),
        "JPY": CurrencyInfo("JPY", 0, "Japanese Yen"),
        "KRW": CurrencyInfo("KRW", 0, "South Korean Won"),
        "SEK": CurrencyInfo("SEK", 2, "Swedish Krona"),
        "NOK": CurrencyInfo("NOK", 2, "Norwegian Krone"),
        "DKK": CurrencyInfo("DKK", 2, "Danish Krone"),
        "ZAR": CurrencyInfo("ZAR", 2, "South African Rand"),
        "TRY": CurrencyInfo("TRY", 2, "Turkish Lira"),
    }

    @classmethod
    def is_valid(cls, code: str) -> bool:
        if not code or not isinstance(code, str):
            return False
        return code in cls._CURRENCIES

    @classmethod
    def get_info(cls, code: str) -> CurrencyInfo | None:
        if not code or not isinstance(code, str):
            return None
        return cls._CURRENCIES.get(code.upper().strip())

    @classmethod
    def validate(cls, code: str) -> str:
        """Validate a currency code; returns it unchanged."""
        if not code or not isinstance(code, str):
            raise ValueError(f"Invalid currency code: {code!r}")
        if len(code) != 3 or not code.isalpha() or not code.isupper():
            raise ValueError(f"Currency code must be three upper-case letters: {code!r}")
        if code not in cls._CURRENCIES:
            raise ValueError(f"Unknown ISO 4217 currency code: {code!r}")
        return code

    @classmethod
    def all_codes(cls) -> frozenset[str]:
        return frozenset(cls._CURRENCIES)

    @classmethod
    def posting_places(cls, code: str) -> int:
        """
        Decimal places posted amounts carry in *code*.

        The currency's minor units, capped at the two places the ledger
        stores; unknown codes get two.
        """
        info = cls.get_info(code)
        if info is None:
            return MONEY_DECIMAL_PLACES
        return min(info.decimal_places, MONEY_DECIMAL_PLACES)
