"""Promo code evaluation.

``evaluate_promo_code`` is pure: it never touches the database and never
consumes a use. The usage counter is bumped by the state machine when a
registration is confirmed.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from libs.common.currency import quantize_amount
from libs.common.datetime_utils import ensure_utc, utc_now
from libs.common.logging import get_logger
from services.registration_service.models import DiscountType, PromoCode
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class PromoRejectionReason(str, enum.Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    PROGRAM_MISMATCH = "program_mismatch"
    BELOW_MINIMUM_PURCHASE = "below_minimum_purchase"


@dataclass(frozen=True)
class PromoQuote:
    promo_code_id: uuid.UUID
    code: str
    discount_amount: Decimal
    final_price: Decimal


@dataclass(frozen=True)
class PromoRejection:
    reason: PromoRejectionReason


PromoResult = Union[PromoQuote, PromoRejection]


def normalize_code(code: str) -> str:
    return code.strip().upper()


def evaluate_promo_code(
    promo: Optional[PromoCode],
    base_price: Decimal,
    *,
    currency: str,
    program_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> PromoResult:
    """Apply the promo rules in order, stopping at the first failure.

    1. code exists and is active
    2. inside the validity window
    3. ``current_uses < max_uses``
    4. program scope matches (a scoped code needs a matching program)
    5. ``base_price >= min_purchase``

    Amounts are major-unit decimals; the result is rounded half-even to the
    currency's minor unit.
    """
    if promo is None:
        return PromoRejection(PromoRejectionReason.NOT_FOUND)
    if not promo.is_active:
        return PromoRejection(PromoRejectionReason.INACTIVE)

    now = ensure_utc(now) or utc_now()
    valid_from = ensure_utc(promo.valid_from)
    valid_until = ensure_utc(promo.valid_until)
    if valid_from is not None and now < valid_from:
        return PromoRejection(PromoRejectionReason.NOT_YET_VALID)
    if valid_until is not None and now > valid_until:
        return PromoRejection(PromoRejectionReason.EXPIRED)

    if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
        return PromoRejection(PromoRejectionReason.USAGE_LIMIT_REACHED)

    if promo.program_id is not None and promo.program_id != program_id:
        return PromoRejection(PromoRejectionReason.PROGRAM_MISMATCH)

    base_price = Decimal(base_price)
    if promo.min_purchase is not None and base_price < Decimal(promo.min_purchase):
        return PromoRejection(PromoRejectionReason.BELOW_MINIMUM_PURCHASE)

    value = Decimal(promo.value)
    if promo.discount_type == DiscountType.PERCENTAGE:
        discount = base_price * value / Decimal(100)
        if promo.max_discount is not None:
            discount = min(discount, Decimal(promo.max_discount))
    else:
        discount = value

    # Never below zero
    discount = quantize_amount(min(max(discount, Decimal(0)), base_price), currency)
    final_price = quantize_amount(base_price - discount, currency)

    return PromoQuote(
        promo_code_id=promo.id,
        code=promo.code,
        discount_amount=discount,
        final_price=final_price,
    )


async def get_promo_code(db: AsyncSession, code: str) -> Optional[PromoCode]:
    result = await db.execute(
        select(PromoCode).where(PromoCode.code == normalize_code(code))
    )
    return result.scalar_one_or_none()


async def validate_promo_code(
    db: AsyncSession,
    code: str,
    base_price: Decimal,
    *,
    currency: str,
    program_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> PromoResult:
    """Load a code (case-insensitively) and evaluate it. Read-only."""
    promo = await get_promo_code(db, code)
    result = evaluate_promo_code(
        promo,
        base_price,
        currency=currency,
        program_id=program_id,
        now=now,
    )
    if isinstance(result, PromoRejection):
        logger.info(
            "Promo code %s rejected: %s", normalize_code(code), result.reason.value
        )
    return result
