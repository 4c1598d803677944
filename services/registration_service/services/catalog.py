"""Local cohort read-model.

Cohorts are owned by the catalog; this service keeps a mirror that the
catalog pushes through the internal router. Only the capacity ledger writes
``enrolled_count``.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import ensure_utc, utc_now
from libs.common.logging import get_logger
from services.registration_service.models import (
    Cohort,
    CohortAdminStatus,
    CohortStatus,
)
from services.registration_service.services.errors import (
    CohortNotFoundError,
    InvalidCohortError,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Statuses in which a registration attempt reaches the capacity ledger.
REGISTRABLE_STATUSES = frozenset({CohortStatus.OPEN, CohortStatus.FULL})


def derive_cohort_status(cohort: Cohort, now: Optional[datetime] = None) -> CohortStatus:
    now = ensure_utc(now) or utc_now()
    if cohort.admin_status == CohortAdminStatus.CANCELLED:
        return CohortStatus.CANCELLED
    if now >= ensure_utc(cohort.end_date):
        return CohortStatus.COMPLETED
    if now >= ensure_utc(cohort.start_date):
        return CohortStatus.IN_PROGRESS
    opens_at = ensure_utc(cohort.registration_opens_at)
    closes_at = ensure_utc(cohort.registration_closes_at)
    if opens_at <= now < closes_at:
        if cohort.enrolled_count >= cohort.capacity:
            return CohortStatus.FULL
        return CohortStatus.OPEN
    return CohortStatus.UPCOMING


@dataclass(frozen=True)
class CohortSnapshot:
    cohort_id: uuid.UUID
    program_id: uuid.UUID
    capacity: int
    enrolled_count: int
    seats_available: int
    status: CohortStatus


def snapshot(cohort: Cohort, now: Optional[datetime] = None) -> CohortSnapshot:
    return CohortSnapshot(
        cohort_id=cohort.id,
        program_id=cohort.program_id,
        capacity=cohort.capacity,
        enrolled_count=cohort.enrolled_count,
        seats_available=max(cohort.capacity - cohort.enrolled_count, 0),
        status=derive_cohort_status(cohort, now),
    )


async def get_cohort(db: AsyncSession, cohort_id: uuid.UUID) -> Optional[Cohort]:
    # populate_existing: enrolled_count is moved by bulk UPDATEs that bypass
    # the identity map.
    result = await db.execute(
        select(Cohort)
        .where(Cohort.id == cohort_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_cohort(db: AsyncSession, cohort_id: uuid.UUID) -> Cohort:
    cohort = await get_cohort(db, cohort_id)
    if cohort is None:
        raise CohortNotFoundError(cohort_id)
    return cohort


async def upsert_cohort(db: AsyncSession, cohort_id: uuid.UUID, **fields) -> tuple[Cohort, int]:
    """Create or update the mirror row.

    Returns ``(cohort, seats_added)``; ``seats_added`` is how many seats the
    capacity grew by, so that many waiting learners can be promoted.
    """
    cohort = await get_cohort(db, cohort_id)
    capacity = fields.get("capacity")

    if cohort is None:
        cohort = Cohort(id=cohort_id, enrolled_count=0, **fields)
        db.add(cohort)
        seats_added = 0
    else:
        if capacity is not None and capacity < cohort.enrolled_count:
            raise InvalidCohortError(
                f"Capacity {capacity} is below the {cohort.enrolled_count} seats already held"
            )
        seats_added = max(capacity - cohort.capacity, 0) if capacity is not None else 0
        for field, value in fields.items():
            setattr(cohort, field, value)

    if ensure_utc(cohort.registration_closes_at) <= ensure_utc(
        cohort.registration_opens_at
    ):
        raise InvalidCohortError("Registration window closes before it opens")
    if ensure_utc(cohort.end_date) <= ensure_utc(cohort.start_date):
        raise InvalidCohortError("Cohort ends before it starts")

    await db.commit()
    await db.refresh(cohort)
    logger.info(
        "Upserted cohort %s (capacity=%d, enrolled=%d)",
        cohort.id,
        cohort.capacity,
        cohort.enrolled_count,
    )
    return cohort, seats_added


async def cancel_cohort(db: AsyncSession, cohort_id: uuid.UUID) -> Cohort:
    """Administrative cancellation. Existing registrations are left for staff."""
    cohort = await require_cohort(db, cohort_id)
    cohort.admin_status = CohortAdminStatus.CANCELLED
    await db.commit()
    await db.refresh(cohort)
    logger.info("Cohort %s cancelled", cohort.id)
    return cohort
