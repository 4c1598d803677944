"""Registration lifecycle.

This module is the only writer of ``Registration.status``. Every transition
is one conditional UPDATE on ``(id, expected status)``; whoever loses the race
gets ``applied=False`` back and nothing else happens. Side effects that must
be atomic with the status change (transition log, seat release, promo usage)
share its transaction. Everything else runs after the commit:

    outcome = await apply_transition(db, ...)
    await db.commit()
    await run_follow_ups(outcome)

``transition`` wraps those three steps.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.registration_service.models import (
    PromoCode,
    PromoCodeUsage,
    Registration,
    RegistrationStatus,
    RegistrationTransition,
)
from services.registration_service.services import capacity, followups
from services.registration_service.services.errors import (
    InvalidTransitionError,
    RegistrationNotFoundError,
    StorageUnavailableError,
)
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[RegistrationStatus, frozenset[RegistrationStatus]] = {
    RegistrationStatus.PENDING_PAYMENT: frozenset(
        {
            RegistrationStatus.CONFIRMED,
            RegistrationStatus.CANCELLED,
            RegistrationStatus.EXPIRED,
        }
    ),
    RegistrationStatus.CONFIRMED: frozenset({RegistrationStatus.REFUNDED}),
}

SEAT_RELEASING_STATUSES = frozenset(
    {
        RegistrationStatus.CANCELLED,
        RegistrationStatus.EXPIRED,
        RegistrationStatus.REFUNDED,
    }
)

TERMINAL_STATUSES = frozenset(
    {
        RegistrationStatus.CANCELLED,
        RegistrationStatus.EXPIRED,
        RegistrationStatus.REFUNDED,
    }
)

_TIMESTAMP_FIELDS = {
    RegistrationStatus.CONFIRMED: "confirmed_at",
    RegistrationStatus.CANCELLED: "cancelled_at",
    RegistrationStatus.EXPIRED: "expired_at",
    RegistrationStatus.REFUNDED: "refunded_at",
}

_NOTIFICATION_TEMPLATES = {
    RegistrationStatus.CONFIRMED: "registration_confirmed",
    RegistrationStatus.CANCELLED: "registration_cancelled",
    RegistrationStatus.EXPIRED: "registration_expired",
    RegistrationStatus.REFUNDED: "registration_refunded",
}


def is_allowed(from_status: RegistrationStatus, to_status: RegistrationStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


@dataclass
class TransitionOutcome:
    applied: bool
    registration_id: uuid.UUID
    from_status: RegistrationStatus
    to_status: RegistrationStatus
    current_status: Optional[RegistrationStatus] = None
    actor: str = "system"
    reason: Optional[str] = None
    learner_id: Optional[str] = None
    cohort_id: Optional[uuid.UUID] = None
    amount_due: int = 0
    currency: Optional[str] = None
    seat_released: bool = False
    occurred_at: Optional[datetime] = None


async def get_registration(
    db: AsyncSession, registration_id: uuid.UUID
) -> Optional[Registration]:
    result = await db.execute(
        select(Registration)
        .where(Registration.id == registration_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def apply_transition(
    db: AsyncSession,
    registration_id: uuid.UUID,
    expected: RegistrationStatus,
    target: RegistrationStatus,
    *,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionOutcome:
    """CAS ``expected -> target`` plus the in-transaction side effects. No commit."""
    if not is_allowed(expected, target):
        raise InvalidTransitionError(expected.value, target.value)

    now = now or utc_now()
    values = {"status": target, _TIMESTAMP_FIELDS[target]: now, "updated_at": now}
    if target in SEAT_RELEASING_STATUSES and reason:
        values["cancellation_reason"] = reason

    result = await db.execute(
        update(Registration)
        .where(Registration.id == registration_id, Registration.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        current = (
            await db.execute(
                select(Registration.status).where(Registration.id == registration_id)
            )
        ).scalar_one_or_none()
        if current is None:
            raise RegistrationNotFoundError(registration_id)
        logger.info(
            "Transition %s -> %s for registration %s lost (now %s)",
            expected.value,
            target.value,
            registration_id,
            current.value,
        )
        return TransitionOutcome(
            applied=False,
            registration_id=registration_id,
            from_status=expected,
            to_status=target,
            current_status=current,
            actor=actor,
            reason=reason,
        )

    registration = await get_registration(db, registration_id)

    db.add(
        RegistrationTransition(
            registration_id=registration_id,
            from_status=expected,
            to_status=target,
            actor=actor,
            reason=reason,
            occurred_at=now,
        )
    )

    seat_released = False
    if target in SEAT_RELEASING_STATUSES:
        seat_released = await capacity.release(db, registration.seat_hold_id)

    if target == RegistrationStatus.CONFIRMED and registration.promo_code_id:
        await db.execute(
            update(PromoCode)
            .where(PromoCode.id == registration.promo_code_id)
            .values(current_uses=PromoCode.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        db.add(
            PromoCodeUsage(
                promo_code_id=registration.promo_code_id,
                registration_id=registration_id,
                discount_amount=registration.discount_amount,
            )
        )

    await db.flush()
    logger.info(
        "Registration %s: %s -> %s by %s",
        registration_id,
        expected.value,
        target.value,
        actor,
    )
    return TransitionOutcome(
        applied=True,
        registration_id=registration_id,
        from_status=expected,
        to_status=target,
        current_status=target,
        actor=actor,
        reason=reason,
        learner_id=registration.learner_id,
        cohort_id=registration.cohort_id,
        amount_due=registration.amount_due,
        currency=registration.currency,
        seat_released=seat_released,
        occurred_at=now,
    )


async def run_follow_ups(outcome: TransitionOutcome) -> None:
    """Post-commit effects of an applied transition, queued for the worker."""
    if not outcome.applied:
        return

    if outcome.seat_released:
        await followups.schedule_waitlist_promotion(outcome.cohort_id)

    await followups.schedule_collaborator_call(
        "record_audit",
        fact={
            "action": f"registration.{outcome.to_status.value}",
            "registration_id": str(outcome.registration_id),
            "learner_id": outcome.learner_id,
            "cohort_id": str(outcome.cohort_id),
            "from_status": outcome.from_status.value,
            "to_status": outcome.to_status.value,
            "actor": outcome.actor,
            "reason": outcome.reason,
            "occurred_at": outcome.occurred_at.isoformat() if outcome.occurred_at else None,
        },
    )
    await followups.schedule_collaborator_call(
        "notify",
        learner_id=outcome.learner_id,
        template_kind=_NOTIFICATION_TEMPLATES[outcome.to_status],
        payload={
            "registration_id": str(outcome.registration_id),
            "cohort_id": str(outcome.cohort_id),
            "amount_due": outcome.amount_due,
            "currency": outcome.currency,
        },
    )
    if outcome.to_status == RegistrationStatus.CONFIRMED:
        await followups.schedule_collaborator_call(
            "dispatch_enrollment_confirmed",
            registration_id=str(outcome.registration_id),
            learner_id=outcome.learner_id,
            cohort_id=str(outcome.cohort_id),
        )


async def transition(
    db: AsyncSession,
    registration_id: uuid.UUID,
    expected: RegistrationStatus,
    target: RegistrationStatus,
    *,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionOutcome:
    """Apply, commit, then run follow-ups.

    Storage failures roll back and surface as ``StorageUnavailableError`` so
    the caller sees a retryable error instead of a half-applied transition.
    """
    try:
        outcome = await apply_transition(
            db, registration_id, expected, target, actor=actor, reason=reason, now=now
        )
        await db.commit()
    except DBAPIError as exc:
        await db.rollback()
        logger.warning(
            "Storage failure applying %s -> %s to %s: %s",
            expected.value,
            target.value,
            registration_id,
            exc,
        )
        raise StorageUnavailableError() from exc
    except Exception:
        await db.rollback()
        raise

    await run_follow_ups(outcome)
    return outcome


async def expire_stale_registrations(
    db: AsyncSession, now: Optional[datetime] = None, limit: int = 200
) -> int:
    """Expire pending registrations whose hold window has passed.

    Uses the same CAS as every other transition, so a Paid event that lands
    first simply wins.
    """
    now = now or utc_now()
    result = await db.execute(
        select(Registration.id)
        .where(
            Registration.status == RegistrationStatus.PENDING_PAYMENT,
            Registration.expires_at <= now,
        )
        .order_by(Registration.expires_at.asc())
        .limit(limit)
    )
    stale_ids = list(result.scalars().all())

    expired = 0
    for registration_id in stale_ids:
        outcome = await transition(
            db,
            registration_id,
            RegistrationStatus.PENDING_PAYMENT,
            RegistrationStatus.EXPIRED,
            actor="system:expiry-sweep",
            reason="Payment not received within the hold window",
            now=now,
        )
        if outcome.applied:
            expired += 1

    if stale_ids:
        logger.info("Expiry sweep: %d/%d stale registrations expired", expired, len(stale_ids))
    return expired
