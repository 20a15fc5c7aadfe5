"""Money helpers for the storefront ledger.

Storage unit: ``Numeric(12, 2)`` columns mapped to ``Decimal``.
Arithmetic unit: ``Decimal`` quantized to cents (half-up).
Gateway unit: integer cents for processors that want minor units.

Conversion chain
----------------
Dollars × 100 → Cents
Cents ÷ 100 → Dollars
"""

from __future__ import annotations

import math
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

# ─── constants ───────────────────────────────────────────────────────────────

CENTS_PER_DOLLAR: int = 100
CENT = Decimal("0.01")
ZERO = Decimal("0.00")


# ─── coercion ────────────────────────────────────────────────────────────────


def to_decimal(value: Any) -> Decimal:
    """Coerce anything numeric-looking to Decimal. Non-finite or junk → 0."""
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal(0)
    if isinstance(value, bool) or value is None:
        return Decimal(0)
    if isinstance(value, float):
        if not math.isfinite(value):
            return Decimal(0)
        return Decimal(str(value))
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return Decimal(0)
    return parsed if parsed.is_finite() else Decimal(0)


def quantize(value: Any) -> Decimal:
    """Round to cents, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_money(value: Any) -> Decimal:
    """Monetary input as a non-negative amount in cents. Negatives → 0."""
    amount = quantize(value)
    return amount if amount > 0 else ZERO


def floor_int(value: Any) -> int:
    """Floor to a whole number (points maths)."""
    return int(to_decimal(value).to_integral_value(rounding=ROUND_FLOOR))


# ─── conversion helpers ───────────────────────────────────────────────────────


def dollars_to_cents(dollars: Any) -> int:
    """Convert dollars to integer cents (round half-up)."""
    return int((quantize(dollars) * CENTS_PER_DOLLAR).to_integral_value())


def cents_to_dollars(cents: int) -> Decimal:
    """Convert integer cents to dollars."""
    return quantize(Decimal(cents) / CENTS_PER_DOLLAR)


def format_money(amount: Any) -> str:
    """Render an amount the way customer-facing messages show it ($12.50)."""
    return f"${quantize(amount):.2f}"
