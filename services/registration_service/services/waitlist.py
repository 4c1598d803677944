"""Per-cohort FIFO waitlist.

Order is ``(enqueued_at, sequence)``; ``sequence`` is assigned by the
database at insert so ties on the timestamp are still strictly ordered.
Status changes are conditional UPDATEs, the same discipline as registrations.
Callers own the transaction.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.registration_service.models import (
    ACTIVE_WAITLIST_STATUSES,
    SeatHolderKind,
    WaitlistEntry,
    WaitlistStatus,
)
from services.registration_service.services import capacity, catalog
from services.registration_service.services.errors import NotOnWaitlistError
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)
settings = get_settings()


def _queue_order():
    return (WaitlistEntry.enqueued_at.asc(), WaitlistEntry.sequence.asc())


async def get_active_entry(
    db: AsyncSession, cohort_id: uuid.UUID, learner_id: str
) -> Optional[WaitlistEntry]:
    result = await db.execute(
        select(WaitlistEntry)
        .where(
            WaitlistEntry.cohort_id == cohort_id,
            WaitlistEntry.learner_id == learner_id,
            WaitlistEntry.status.in_(ACTIVE_WAITLIST_STATUSES),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def has_waiting(db: AsyncSession, cohort_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(WaitlistEntry.sequence)
        .where(
            WaitlistEntry.cohort_id == cohort_id,
            WaitlistEntry.status == WaitlistStatus.WAITING,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _position_of_entry(db: AsyncSession, entry: WaitlistEntry) -> int:
    if entry.status == WaitlistStatus.OFFERED:
        return 0
    ahead = await db.execute(
        select(func.count())
        .select_from(WaitlistEntry)
        .where(
            WaitlistEntry.cohort_id == entry.cohort_id,
            WaitlistEntry.status == WaitlistStatus.WAITING,
            or_(
                WaitlistEntry.enqueued_at < entry.enqueued_at,
                and_(
                    WaitlistEntry.enqueued_at == entry.enqueued_at,
                    WaitlistEntry.sequence < entry.sequence,
                ),
            ),
        )
    )
    return ahead.scalar_one() + 1


async def position_of(db: AsyncSession, cohort_id: uuid.UUID, learner_id: str) -> int:
    """1-based position among waiting learners; 0 while holding an offer."""
    entry = await get_active_entry(db, cohort_id, learner_id)
    if entry is None:
        raise NotOnWaitlistError()
    return await _position_of_entry(db, entry)


async def list_entries(
    db: AsyncSession, learner_id: str
) -> list[tuple[WaitlistEntry, int]]:
    """The learner's active entries across cohorts, oldest first, with positions."""
    result = await db.execute(
        select(WaitlistEntry)
        .where(
            WaitlistEntry.learner_id == learner_id,
            WaitlistEntry.status.in_(ACTIVE_WAITLIST_STATUSES),
        )
        .order_by(WaitlistEntry.enqueued_at.asc(), WaitlistEntry.sequence.asc())
        .execution_options(populate_existing=True)
    )
    return [
        (entry, await _position_of_entry(db, entry)) for entry in result.scalars().all()
    ]


async def enqueue(db: AsyncSession, cohort_id: uuid.UUID, learner_id: str) -> int:
    """Add the learner to the tail. Idempotent: returns the existing position."""
    entry = await get_active_entry(db, cohort_id, learner_id)
    if entry is None:
        entry = WaitlistEntry(
            cohort_id=cohort_id,
            learner_id=learner_id,
            status=WaitlistStatus.WAITING,
            enqueued_at=utc_now(),
        )
        db.add(entry)
        await db.flush()
        logger.info(
            "Learner %s joined waitlist for cohort %s (#%d)",
            learner_id,
            cohort_id,
            entry.sequence,
        )
    return await _position_of_entry(db, entry)


async def peek_next(db: AsyncSession, cohort_id: uuid.UUID) -> Optional[str]:
    head = await _head(db, cohort_id)
    return head.learner_id if head else None


async def _head(db: AsyncSession, cohort_id: uuid.UUID) -> Optional[WaitlistEntry]:
    result = await db.execute(
        select(WaitlistEntry)
        .where(
            WaitlistEntry.cohort_id == cohort_id,
            WaitlistEntry.status == WaitlistStatus.WAITING,
        )
        .order_by(*_queue_order())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def dequeue(db: AsyncSession, cohort_id: uuid.UUID, learner_id: str) -> bool:
    """Remove a learner from the queue.

    A waiting entry is deleted. An offered entry is expired and its seat
    released; returns True in that case so the caller schedules the next
    promotion after commit.
    """
    entry = await get_active_entry(db, cohort_id, learner_id)
    if entry is None:
        raise NotOnWaitlistError()

    if entry.status == WaitlistStatus.WAITING:
        result = await db.execute(
            delete(WaitlistEntry)
            .where(
                WaitlistEntry.sequence == entry.sequence,
                WaitlistEntry.status == WaitlistStatus.WAITING,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info("Learner %s left waitlist for cohort %s", learner_id, cohort_id)
            return False
        # Promoted between the read and the delete; fall through to the offer path.

    return await _expire_entry(db, entry.sequence, entry.seat_hold_id, now=None)


async def _expire_entry(
    db: AsyncSession,
    sequence: int,
    seat_hold_id: Optional[uuid.UUID],
    now: Optional[datetime],
) -> bool:
    """CAS offered -> expired. ``now`` set means only a lapsed offer may expire."""
    conditions = [
        WaitlistEntry.sequence == sequence,
        WaitlistEntry.status == WaitlistStatus.OFFERED,
    ]
    if now is not None:
        conditions.append(WaitlistEntry.offer_expires_at <= now)

    if seat_hold_id is None:
        seat_hold_id = (
            await db.execute(
                select(WaitlistEntry.seat_hold_id).where(WaitlistEntry.sequence == sequence)
            )
        ).scalar_one_or_none()

    result = await db.execute(
        update(WaitlistEntry)
        .where(*conditions)
        .values(status=WaitlistStatus.EXPIRED, expired_at=now or utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    return await capacity.release(db, seat_hold_id)


async def expire_offer(db: AsyncSession, entry: WaitlistEntry, now: Optional[datetime] = None) -> bool:
    """Expire a lapsed offer and release its seat.

    Returns True when a seat went back to the ledger, i.e. the next promotion
    must be scheduled.
    """
    now = now or utc_now()
    released = await _expire_entry(db, entry.sequence, entry.seat_hold_id, now=now)
    if released:
        logger.info(
            "Waitlist offer #%d for learner %s in cohort %s expired",
            entry.sequence,
            entry.learner_id,
            entry.cohort_id,
        )
    return released


async def lapsed_offers(
    db: AsyncSession, now: Optional[datetime] = None, limit: int = 200
) -> list[WaitlistEntry]:
    now = now or utc_now()
    result = await db.execute(
        select(WaitlistEntry)
        .where(
            WaitlistEntry.status == WaitlistStatus.OFFERED,
            WaitlistEntry.offer_expires_at <= now,
        )
        .order_by(WaitlistEntry.offer_expires_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def promote_next(
    db: AsyncSession, cohort_id: uuid.UUID, now: Optional[datetime] = None
) -> Optional[WaitlistEntry]:
    """Offer a freed seat to the head of the queue.

    Reserves on the learner's behalf, then CAS waiting -> offered. Losing the
    CAS (the learner left or was promoted by another worker) gives the seat
    back and tries the new head. Returns the offered entry, or None when the
    queue is empty or no seat is free.
    """
    now = now or utc_now()
    cohort = await catalog.get_cohort(db, cohort_id)
    if cohort is None or catalog.derive_cohort_status(cohort, now) not in catalog.REGISTRABLE_STATUSES:
        return None

    while True:
        head = await _head(db, cohort_id)
        if head is None:
            return None

        reservation = await capacity.try_reserve(
            db, cohort_id, SeatHolderKind.WAITLIST_OFFER
        )
        if not reservation.reserved:
            return None

        expires_at = now + timedelta(hours=settings.WAITLIST_OFFER_HOURS)
        result = await db.execute(
            update(WaitlistEntry)
            .where(
                WaitlistEntry.sequence == head.sequence,
                WaitlistEntry.status == WaitlistStatus.WAITING,
            )
            .values(
                status=WaitlistStatus.OFFERED,
                offered_at=now,
                offer_expires_at=expires_at,
                seat_hold_id=reservation.hold_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await db.refresh(head)
            logger.info(
                "Offered seat in cohort %s to learner %s (#%d) until %s",
                cohort_id,
                head.learner_id,
                head.sequence,
                expires_at.isoformat(),
            )
            return head

        logger.info("Waitlist head #%d changed under us, retrying", head.sequence)
        await capacity.release(db, reservation.hold_id)


@dataclass(frozen=True)
class OfferClaim:
    hold_id: Optional[uuid.UUID] = None
    lapsed: bool = False

    @property
    def claimed(self) -> bool:
        return self.hold_id is not None


async def claim_offer(
    db: AsyncSession,
    cohort_id: uuid.UUID,
    learner_id: str,
    registration_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> OfferClaim:
    """Convert a live offer into the seat for ``registration_id``.

    A lapsed offer is expired on the spot and reported with ``lapsed=True``
    so the caller can schedule the next promotion.
    """
    now = now or utc_now()
    entry = await get_active_entry(db, cohort_id, learner_id)
    if entry is None or entry.status != WaitlistStatus.OFFERED:
        return OfferClaim()

    if entry.offer_expires_at is not None and entry.offer_expires_at <= now:
        released = await expire_offer(db, entry, now)
        return OfferClaim(lapsed=released)

    result = await db.execute(
        update(WaitlistEntry)
        .where(
            WaitlistEntry.sequence == entry.sequence,
            WaitlistEntry.status == WaitlistStatus.OFFERED,
            WaitlistEntry.offer_expires_at > now,
        )
        .values(
            status=WaitlistStatus.CONVERTED,
            converted_registration_id=registration_id,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return OfferClaim()

    await capacity.transfer_hold(db, entry.seat_hold_id, SeatHolderKind.REGISTRATION)
    logger.info(
        "Learner %s claimed waitlist offer #%d in cohort %s",
        learner_id,
        entry.sequence,
        cohort_id,
    )
    return OfferClaim(hold_id=entry.seat_hold_id)
