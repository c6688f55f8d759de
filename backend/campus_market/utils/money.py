from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from campus_market.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value, default: Decimal | None = None) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        if default is None:
            raise InvalidOperation(f"not a number: {value!r}")
        return default
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        if default is None:
            raise
        return default


def round2(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_float(value) -> float:
    return float(round2(value if value is not None else ZERO))


def parse_amount(raw, field_name: str, *, minimum: Decimal | None = None, required: bool = True) -> Decimal | None:
    """Parse a request amount (decimal string or number) into a positive Decimal."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if required:
            raise ValidationError(f"{field_name} is required")
        return None
    try:
        amount = to_decimal(raw)
    except InvalidOperation:
        raise ValidationError(f"{field_name} must be a valid amount")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field_name} must be greater than zero")
    amount = round2(amount)
    if minimum is not None and amount < minimum:
        raise ValidationError(f"Minimum {field_name} is ₦{minimum:,.0f}")
    return amount
