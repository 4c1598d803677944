"""Capacity ledger: the only writer of ``Cohort.enrolled_count``.

Every change is a single conditional UPDATE evaluated by the database, so
two concurrent reservations for the last seat can never both succeed. Each
successful reservation produces a ``SeatHold`` row; releasing is a CAS on
that row, which makes release idempotent per seat.

Callers own the transaction: nothing here commits.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.registration_service.models import (
    Cohort,
    SeatHold,
    SeatHolderKind,
    SeatHoldStatus,
)
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class ReservationOutcome(str, enum.Enum):
    RESERVED = "reserved"
    FULL = "full"


@dataclass(frozen=True)
class Reservation:
    outcome: ReservationOutcome
    hold_id: Optional[uuid.UUID] = None

    @property
    def reserved(self) -> bool:
        return self.outcome == ReservationOutcome.RESERVED


async def try_reserve(
    db: AsyncSession,
    cohort_id: uuid.UUID,
    holder_kind: SeatHolderKind = SeatHolderKind.REGISTRATION,
) -> Reservation:
    """Take one seat if one is free. ``FULL`` is a normal outcome."""
    result = await db.execute(
        update(Cohort)
        .where(Cohort.id == cohort_id, Cohort.enrolled_count < Cohort.capacity)
        .values(enrolled_count=Cohort.enrolled_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info("Cohort %s full, reservation refused", cohort_id)
        return Reservation(ReservationOutcome.FULL)

    hold = SeatHold(
        cohort_id=cohort_id,
        holder_kind=holder_kind,
        status=SeatHoldStatus.HELD,
    )
    db.add(hold)
    await db.flush()
    logger.info("Reserved seat %s in cohort %s (%s)", hold.id, cohort_id, holder_kind.value)
    return Reservation(ReservationOutcome.RESERVED, hold.id)


async def release(db: AsyncSession, hold_id: Optional[uuid.UUID]) -> bool:
    """Give a held seat back. Returns False if it was already released."""
    if hold_id is None:
        return False

    cohort_id = (
        await db.execute(select(SeatHold.cohort_id).where(SeatHold.id == hold_id))
    ).scalar_one_or_none()
    if cohort_id is None:
        logger.warning("Release requested for unknown seat hold %s", hold_id)
        return False

    result = await db.execute(
        update(SeatHold)
        .where(SeatHold.id == hold_id, SeatHold.status == SeatHoldStatus.HELD)
        .values(status=SeatHoldStatus.RELEASED, released_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info("Seat hold %s already released", hold_id)
        return False

    decremented = await db.execute(
        update(Cohort)
        .where(Cohort.id == cohort_id, Cohort.enrolled_count > 0)
        .values(enrolled_count=Cohort.enrolled_count - 1)
        .execution_options(synchronize_session=False)
    )
    if decremented.rowcount != 1:
        # Ledger and holds disagree; never drive the counter negative.
        logger.error(
            "Seat hold %s released but cohort %s counter already at zero",
            hold_id,
            cohort_id,
        )
    else:
        logger.info("Released seat %s in cohort %s", hold_id, cohort_id)
    return True


async def transfer_hold(
    db: AsyncSession, hold_id: uuid.UUID, holder_kind: SeatHolderKind
) -> bool:
    """Re-label a live hold, e.g. a waitlist offer claimed by a registration."""
    result = await db.execute(
        update(SeatHold)
        .where(SeatHold.id == hold_id, SeatHold.status == SeatHoldStatus.HELD)
        .values(holder_kind=holder_kind)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def count_held(db: AsyncSession, cohort_id: uuid.UUID) -> int:
    """Number of live holds; equals ``enrolled_count`` when the ledger is consistent."""
    result = await db.execute(
        select(func.count())
        .select_from(SeatHold)
        .where(SeatHold.cohort_id == cohort_id, SeatHold.status == SeatHoldStatus.HELD)
    )
    return result.scalar_one()
