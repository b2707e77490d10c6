"""Money helpers: all amounts are Decimals with two fraction digits"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from settlement_gateway.domain.exceptions import ValidationError

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Union[Decimal, int, str]) -> Decimal:
    """Quantize to cents, rounding half up. Floats are refused to avoid binary drift."""
    if isinstance(value, float):
        raise ValidationError("Money amounts must not be floats")
    try:
        return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid money amount: {value!r}") from e


def require_positive(value: Decimal, label: str = "amount") -> Decimal:
    amount = to_money(value)
    if amount <= ZERO:
        raise ValidationError(f"{label} must be greater than zero")
    return amount
