"""
Money Helpers Module

ISO 4217 currency codes with their minor-unit precision and Decimal helpers
for amounts. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal("0.00")
CENT = Decimal("0.01")

AmountLike = Union[Decimal, str, int]


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    CAD = ("CAD", 2)
    CHF = ("CHF", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal('0.01')"""
        return Decimal(1).scaleb(-self.precision)

    @classmethod
    def from_code(cls, code: str) -> "Currency":
        """Look up a currency by its ISO code"""
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency code: {code}") from None


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert a value to Decimal without passing through float.

    Raises:
        ValueError: If the value is a float or is not numeric
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise ValueError("Monetary values must not be floats")
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal") from None


def quantize(value: Decimal, places: Decimal = CENT) -> Decimal:
    """Round half-up to the given quantum (two decimals by default)"""
    return value.quantize(places, rounding=ROUND_HALF_UP)


def has_excess_precision(value: Decimal, currency: Currency) -> bool:
    """True when the value cannot be represented exactly in the currency"""
    return value != value.quantize(currency.quantum, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal, currency: Currency) -> str:
    """Format for display and log lines"""
    return f"{currency.code} {value:,.{currency.precision}f}"
