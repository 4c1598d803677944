"""
Model factories for creating valid test data.

Every factory produces a valid, insertable SQLAlchemy model instance.
Override any field via kwargs.

Usage:
    cohort = CohortFactory.create(capacity=1)
    db_session.add(cohort)
    await db_session.commit()
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _uuid() -> uuid.UUID:
    return uuid.uuid4()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _unique_code(prefix: str = "PROMO") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:6].upper()}"


# ---------------------------------------------------------------------------
# Cohorts
# ---------------------------------------------------------------------------


class CohortFactory:
    @staticmethod
    def create(**overrides):
        from services.registration_service.models import Cohort, CohortAdminStatus

        now = _now()
        defaults = {
            "id": _uuid(),
            "program_id": _uuid(),
            "name": "Data Analysis Bootcamp",
            "capacity": 10,
            "enrolled_count": 0,
            "price_amount": 100000,  # 1000.00 SAR
            "currency": "SAR",
            "registration_opens_at": now - timedelta(days=1),
            "registration_closes_at": now + timedelta(days=7),
            "start_date": now + timedelta(days=14),
            "end_date": now + timedelta(days=60),
            "admin_status": CohortAdminStatus.SCHEDULED,
        }
        defaults.update(overrides)
        return Cohort(**defaults)


# ---------------------------------------------------------------------------
# Promo codes
# ---------------------------------------------------------------------------


class PromoCodeFactory:
    @staticmethod
    def create(**overrides):
        from services.registration_service.models import DiscountType, PromoCode

        defaults = {
            "id": _uuid(),
            "code": _unique_code(),
            "description": "Test promo",
            "discount_type": DiscountType.PERCENTAGE,
            "value": Decimal("10"),
            "max_discount": None,
            "min_purchase": None,
            "program_id": None,
            "valid_from": None,
            "valid_until": None,
            "max_uses": None,
            "current_uses": 0,
            "is_active": True,
        }
        defaults.update(overrides)
        return PromoCode(**defaults)
