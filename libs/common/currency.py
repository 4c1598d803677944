"""Currency helpers for the registration engine.

Internal storage unit for anything that is charged: integer **minor units**
(halalas for SAR, kobo for NGN, cents for USD).
API / promo rule unit: ``Decimal`` major units (e.g. ``Decimal("900.00")``).

All conversions round with ROUND_HALF_EVEN so that the amount quoted by promo
validation and the amount reconciled against the gateway are the same number.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal

# ─── constants ───────────────────────────────────────────────────────────────

# ISO 4217 minor unit exponents for the currencies we bill in.
MINOR_UNIT_EXPONENTS: dict[str, int] = {
    "SAR": 2,
    "AED": 2,
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "NGN": 2,
    "KWD": 3,
    "BHD": 3,
    "OMR": 3,
    "JPY": 0,
}
DEFAULT_EXPONENT = 2


# ─── conversion helpers ───────────────────────────────────────────────────────


def minor_unit_exponent(currency: str) -> int:
    return MINOR_UNIT_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)


def minor_unit_quantum(currency: str) -> Decimal:
    """Smallest representable major-unit step, e.g. ``Decimal("0.01")``."""
    return Decimal(1).scaleb(-minor_unit_exponent(currency))


def quantize_amount(amount: Decimal, currency: str) -> Decimal:
    """Round a major-unit amount to the currency's minor unit (half-even)."""
    return Decimal(amount).quantize(
        minor_unit_quantum(currency), rounding=ROUND_HALF_EVEN
    )


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to integer minor units. 900.00 SAR → 90000."""
    quantized = quantize_amount(amount, currency)
    return int(quantized.scaleb(minor_unit_exponent(currency)))


def from_minor_units(amount: int, currency: str) -> Decimal:
    """Convert integer minor units to a major-unit Decimal. 90000 → 900.00."""
    return quantize_amount(
        Decimal(amount).scaleb(-minor_unit_exponent(currency)), currency
    )
