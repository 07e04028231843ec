"""
Currency and Money Module

Handles ISO 4217 currency codes and proper Decimal precision for savings,
loan and interest arithmetic. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Union

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    EUR = ("EUR", 2)  # Euro, reference currency of the cooperative
    USD = ("USD", 2)  # US Dollar
    GBP = ("GBP", 2)  # British Pound
    KES = ("KES", 2)  # Kenyan Shilling
    UGX = ("UGX", 0)  # Ugandan Shilling, no minor unit

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit"""
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __truediv__(self, divisor: Decimal) -> 'Money':
        if not isinstance(divisor, Decimal):
            divisor = Decimal(str(divisor))
        return Money(self.amount / divisor, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        else:
            return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def to_money(value: Union[Money, Decimal, int, str], currency: Currency) -> Money:
    """Accept Money or a plain number and return Money in the given currency"""
    if isinstance(value, Money):
        if value.currency != currency:
            raise ValueError(f"Expected {currency.code}, got {value.currency.code}")
        return value
    if isinstance(value, float):
        raise TypeError("Monetary amounts must not be floats")
    try:
        return Money(Decimal(str(value)), currency)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to {currency.code}")


def sum_money(values: Iterable[Money], currency: Currency) -> Money:
    """Sum Money values, returning zero in the given currency for an empty iterable"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


def allocate(total: Money, weights: List[Decimal]) -> List[Money]:
    """
    Split a Money amount proportionally to weights.

    Each part is rounded to currency precision; the rounding residue is added
    to the part with the largest weight so the parts always sum to the total.

    Args:
        total: Amount to split
        weights: Non-negative weights, at least one positive

    Returns:
        One Money part per weight, in the same order
    """
    if not weights:
        return []
    weight_sum = sum(weights, Decimal('0'))
    if weight_sum <= Decimal('0'):
        raise ValueError("At least one allocation weight must be positive")

    parts = [Money(total.amount * weight / weight_sum, total.currency) for weight in weights]
    residue = total - sum_money(parts, total.currency)
    if not residue.is_zero():
        largest = max(range(len(weights)), key=lambda i: weights[i])
        parts[largest] = parts[largest] + residue
    return parts
