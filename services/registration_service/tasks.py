"""Background jobs for the registration engine.

Each job opens its own session. Storage errors propagate so the worker
wrapper can retry with backoff; gateway events keep their own attempt
counter instead.
"""

from __future__ import annotations

import uuid
from typing import Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.registration_service.models import (
    Cohort,
    CohortAdminStatus,
    WaitlistEntry,
    WaitlistStatus,
)
from services.registration_service.services import (
    collaborators,
    followups,
    reconciliation,
    state_machine,
    waitlist,
)
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError

logger = get_logger(__name__)
settings = get_settings()


async def promote_waitlist(cohort_id: str) -> Optional[int]:
    """Offer one freed seat to the head of a cohort's queue.

    Returns the offered entry's sequence, or None.
    """
    async with AsyncSessionLocal() as db:
        try:
            entry = await waitlist.promote_next(db, uuid.UUID(cohort_id))
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    if entry is None:
        logger.info("No waitlist promotion for cohort %s", cohort_id)
        return None

    await collaborators.notify(
        entry.learner_id,
        "waitlist_offer",
        {
            "cohort_id": cohort_id,
            "offer_expires_at": entry.offer_expires_at.isoformat(),
        },
    )
    return entry.sequence


async def call_collaborator(action: str, arguments: dict) -> None:
    """Deliver one queued notification, audit fact or enrollment dispatch."""
    if action not in followups.COLLABORATOR_ACTIONS:
        logger.error("Dropping unknown collaborator action %r", action)
        return
    await getattr(collaborators, action)(**arguments)


async def process_gateway_event(event_id: str) -> None:
    """Apply one recorded gateway event; failures are counted on the event.

    Any error counts as a failed attempt so the event backs off and is
    eventually marked failed and alerted instead of being retried forever.
    """
    parsed = uuid.UUID(event_id)
    async with AsyncSessionLocal() as db:
        try:
            await reconciliation.process_gateway_event(db, parsed)
        except DBAPIError as exc:
            await db.rollback()
            await reconciliation.record_processing_failure(db, parsed, str(exc))
        except Exception as exc:
            await db.rollback()
            logger.exception("Unexpected error processing gateway event %s", event_id)
            await reconciliation.record_processing_failure(
                db, parsed, f"{type(exc).__name__}: {exc}"
            )


async def retry_pending_gateway_events() -> int:
    """Pick up events whose processing never ran or is due for another attempt."""
    async with AsyncSessionLocal() as db:
        due = await reconciliation.due_event_ids(db, utc_now(), settings.SWEEP_BATCH_SIZE)

    for event_id in due:
        await process_gateway_event(str(event_id))

    if due:
        logger.info("Retried %d pending gateway events", len(due))
    return len(due)


async def expire_stale_registrations() -> int:
    async with AsyncSessionLocal() as db:
        return await state_machine.expire_stale_registrations(
            db, utc_now(), settings.SWEEP_BATCH_SIZE
        )


async def expire_waitlist_offers() -> int:
    """Expire lapsed offers; each freed seat schedules one promotion."""
    expired = 0
    async with AsyncSessionLocal() as db:
        now = utc_now()
        for entry in await waitlist.lapsed_offers(db, now, settings.SWEEP_BATCH_SIZE):
            try:
                released = await waitlist.expire_offer(db, entry, now)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
            if released:
                expired += 1
                await followups.schedule_waitlist_promotion(entry.cohort_id)

    if expired:
        logger.info("Expired %d lapsed waitlist offers", expired)
    return expired


async def fill_open_seats() -> int:
    """Schedule promotions for cohorts with free seats and a waiting queue.

    Heals promotions that could not be enqueued when the seat was released.
    """
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(Cohort.id, Cohort.capacity - Cohort.enrolled_count)
            .where(
                Cohort.admin_status == CohortAdminStatus.SCHEDULED,
                Cohort.enrolled_count < Cohort.capacity,
                Cohort.registration_closes_at > utc_now(),
                Cohort.id.in_(
                    select(WaitlistEntry.cohort_id).where(
                        WaitlistEntry.status == WaitlistStatus.WAITING
                    )
                ),
            )
        )
        rows = list(result.all())

    scheduled = 0
    for cohort_id, free_seats in rows:
        for _ in range(free_seats):
            if await followups.schedule_waitlist_promotion(cohort_id):
                scheduled += 1
    return scheduled
