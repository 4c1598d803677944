"""Registration orchestrator: the public entry points of the engine.

Sequencing for ``register``:

    cohort lookup -> window check -> active registration check
    -> promo validation -> seat (offer claim or capacity reservation)
    -> Registration + Payment rows

The seat reservation (or offer claim), the Registration and the Payment share
one transaction. Any failure, including cancellation of the request, rolls
all of them back, so the ledger never keeps a reservation nobody owns.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from libs.common.config import get_settings
from libs.common.currency import from_minor_units, to_minor_units
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.registration_service.models import (
    ACTIVE_REGISTRATION_STATUSES,
    Cohort,
    CohortStatus,
    Payment,
    PaymentStatus,
    Registration,
    RegistrationStatus,
)
from services.registration_service.services import (
    capacity,
    catalog,
    followups,
    promo,
    state_machine,
    waitlist,
)
from services.registration_service.services.errors import (
    AlreadyRegisteredError,
    AlreadyTerminalError,
    CohortFullError,
    CohortNotFullError,
    ForbiddenError,
    InvalidPromoCodeError,
    RegistrationNotFoundError,
    RegistrationWindowClosedError,
    StorageUnavailableError,
)
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)
settings = get_settings()


@dataclass(frozen=True)
class RegistrationReceipt:
    registration_id: uuid.UUID
    cohort_id: uuid.UUID
    status: RegistrationStatus
    base_amount: int
    discount_amount: int
    amount_due: int
    currency: str
    expires_at: Optional[datetime]
    payment_reference: str
    promo_code: Optional[str] = None


@dataclass(frozen=True)
class _PriceQuote:
    base_amount: int
    discount_amount: int
    promo_code_id: Optional[uuid.UUID] = None
    promo_code: Optional[str] = None

    @property
    def amount_due(self) -> int:
        return self.base_amount - self.discount_amount


async def get_active_registration(
    db: AsyncSession, learner_id: str, cohort_id: uuid.UUID
) -> Optional[Registration]:
    result = await db.execute(
        select(Registration).where(
            Registration.learner_id == learner_id,
            Registration.cohort_id == cohort_id,
            Registration.status.in_(ACTIVE_REGISTRATION_STATUSES),
        )
    )
    return result.scalars().first()


async def _quote(
    db: AsyncSession, cohort: Cohort, promo_code: Optional[str], now: datetime
) -> _PriceQuote:
    if not promo_code or not promo_code.strip():
        return _PriceQuote(base_amount=cohort.price_amount, discount_amount=0)

    base_price = from_minor_units(cohort.price_amount, cohort.currency)
    result = await promo.validate_promo_code(
        db,
        promo_code,
        base_price,
        currency=cohort.currency,
        program_id=cohort.program_id,
        now=now,
    )
    if isinstance(result, promo.PromoRejection):
        raise InvalidPromoCodeError(result.reason.value)

    return _PriceQuote(
        base_amount=cohort.price_amount,
        discount_amount=to_minor_units(result.discount_amount, cohort.currency),
        promo_code_id=result.promo_code_id,
        promo_code=result.code,
    )


async def _enqueue_and_refuse(
    db: AsyncSession, cohort: Cohort, learner_id: str, promotion_needed: bool
) -> None:
    """Put the learner on the waitlist, commit, and raise ``CohortFullError``."""
    try:
        position = await waitlist.enqueue(db, cohort.id, learner_id)
        await db.commit()
    except IntegrityError:
        # Same learner enqueued concurrently.
        await db.rollback()
        position = await waitlist.position_of(db, cohort.id, learner_id)

    # Free seats behind a non-empty queue belong to the queue.
    refreshed = await catalog.get_cohort(db, cohort.id)
    if refreshed is not None and refreshed.enrolled_count < refreshed.capacity:
        promotion_needed = True
    if promotion_needed:
        await followups.schedule_waitlist_promotion(cohort.id)

    logger.info(
        "Cohort %s full for learner %s; waitlisted at position %d",
        cohort.id,
        learner_id,
        position,
    )
    raise CohortFullError(waitlist_position=position)


@dataclass(frozen=True)
class _Seat:
    hold_id: uuid.UUID
    promotion_needed: bool = False


async def _secure_seat(
    db: AsyncSession,
    cohort: Cohort,
    cohort_status: CohortStatus,
    learner_id: str,
    registration_id: uuid.UUID,
    now: datetime,
) -> _Seat:
    """Claim a live offer or reserve a seat, uncommitted, or raise ``CohortFullError``."""
    claim = await waitlist.claim_offer(db, cohort.id, learner_id, registration_id, now)
    if claim.claimed:
        return _Seat(claim.hold_id)

    promotion_needed = claim.lapsed
    if cohort_status == CohortStatus.FULL or await waitlist.has_waiting(db, cohort.id):
        await _enqueue_and_refuse(db, cohort, learner_id, promotion_needed)

    reservation = await capacity.try_reserve(db, cohort.id)
    if not reservation.reserved:
        await _enqueue_and_refuse(db, cohort, learner_id, promotion_needed)
    return _Seat(reservation.hold_id, promotion_needed)


async def _confirm_free_registration(
    db: AsyncSession, registration_id: uuid.UUID, payment_id: uuid.UUID, now: datetime
) -> state_machine.TransitionOutcome:
    await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
        .values(status=PaymentStatus.COMPLETED, paid_at=now)
        .execution_options(synchronize_session=False)
    )
    outcome = await state_machine.apply_transition(
        db,
        registration_id,
        RegistrationStatus.PENDING_PAYMENT,
        RegistrationStatus.CONFIRMED,
        actor="system",
        reason="Nothing to pay",
        now=now,
    )
    await db.commit()
    await state_machine.run_follow_ups(outcome)
    return outcome


async def register(
    db: AsyncSession,
    learner_id: str,
    cohort_id: uuid.UUID,
    promo_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RegistrationReceipt:
    """Reserve a seat and open a pending-payment registration.

    Raises ``CohortNotFoundError``, ``RegistrationWindowClosedError``,
    ``AlreadyRegisteredError``, ``InvalidPromoCodeError`` or
    ``CohortFullError`` (after enqueueing the learner on the waitlist).
    """
    now = now or utc_now()

    cohort = await catalog.require_cohort(db, cohort_id)
    cohort_status = catalog.derive_cohort_status(cohort, now)
    if cohort_status not in catalog.REGISTRABLE_STATUSES:
        raise RegistrationWindowClosedError(cohort_status.value)

    if await get_active_registration(db, learner_id, cohort_id) is not None:
        raise AlreadyRegisteredError()

    quote = await _quote(db, cohort, promo_code, now)
    currency = cohort.currency

    registration_id = uuid.uuid4()
    expires_at = now + timedelta(minutes=settings.REGISTRATION_HOLD_MINUTES)
    try:
        seat = await _secure_seat(
            db, cohort, cohort_status, learner_id, registration_id, now
        )
        registration = Registration(
            id=registration_id,
            learner_id=learner_id,
            cohort_id=cohort_id,
            status=RegistrationStatus.PENDING_PAYMENT,
            base_amount=quote.base_amount,
            discount_amount=quote.discount_amount,
            amount_due=quote.amount_due,
            currency=currency,
            promo_code_id=quote.promo_code_id,
            promo_code=quote.promo_code,
            seat_hold_id=seat.hold_id,
            created_at=now,
            expires_at=expires_at,
        )
        payment = Payment(
            registration_id=registration_id,
            provider_reference=Payment.generate_reference(),
            amount=quote.amount_due,
            currency=currency,
            status=PaymentStatus.PENDING,
        )
        db.add(registration)
        await db.flush()
        db.add(payment)
        await db.commit()
    except CohortFullError:
        raise
    except IntegrityError as exc:
        await db.rollback()
        raise AlreadyRegisteredError() from exc
    except DBAPIError as exc:
        await db.rollback()
        logger.warning("Registration write failed for cohort %s: %s", cohort_id, exc)
        raise StorageUnavailableError() from exc
    except BaseException:
        await db.rollback()
        raise

    if seat.promotion_needed:
        await followups.schedule_waitlist_promotion(cohort_id)

    logger.info(
        "Registration %s opened for learner %s in cohort %s (due %d %s)",
        registration_id,
        learner_id,
        cohort_id,
        quote.amount_due,
        currency,
    )
    await followups.schedule_collaborator_call(
        "record_audit",
        fact={
            "action": "registration.pending_payment",
            "registration_id": str(registration_id),
            "learner_id": learner_id,
            "cohort_id": str(cohort_id),
            "actor": learner_id,
            "occurred_at": now.isoformat(),
        },
    )

    status = RegistrationStatus.PENDING_PAYMENT
    if quote.amount_due == 0:
        outcome = await _confirm_free_registration(db, registration_id, payment.id, now)
        if outcome.applied:
            status = RegistrationStatus.CONFIRMED
    else:
        await followups.schedule_collaborator_call(
            "notify",
            learner_id=learner_id,
            template_kind="registration_pending_payment",
            payload={
                "registration_id": str(registration_id),
                "amount_due": quote.amount_due,
                "currency": currency,
                "payment_reference": payment.provider_reference,
                "expires_at": expires_at.isoformat(),
            },
        )

    return RegistrationReceipt(
        registration_id=registration_id,
        cohort_id=cohort_id,
        status=status,
        base_amount=quote.base_amount,
        discount_amount=quote.discount_amount,
        amount_due=quote.amount_due,
        currency=currency,
        expires_at=expires_at if status == RegistrationStatus.PENDING_PAYMENT else None,
        payment_reference=payment.provider_reference,
        promo_code=quote.promo_code,
    )


async def get_registration_for(
    db: AsyncSession, registration_id: uuid.UUID, *, actor_id: str, is_staff: bool = False
) -> Registration:
    registration = await state_machine.get_registration(db, registration_id)
    if registration is None:
        raise RegistrationNotFoundError(registration_id)
    if registration.learner_id != actor_id and not is_staff:
        raise ForbiddenError()
    return registration


async def get_payment_for(db: AsyncSession, registration_id: uuid.UUID) -> Optional[Payment]:
    result = await db.execute(
        select(Payment).where(Payment.registration_id == registration_id)
    )
    return result.scalar_one_or_none()


async def cancel_registration(
    db: AsyncSession,
    registration_id: uuid.UUID,
    *,
    actor_id: str,
    is_staff: bool = False,
    reason: Optional[str] = None,
) -> Registration:
    """Cancel a pending registration or refund a confirmed one.

    A lost race is re-evaluated once against the new status.
    """
    registration = await get_registration_for(
        db, registration_id, actor_id=actor_id, is_staff=is_staff
    )
    actor = f"staff:{actor_id}" if is_staff and registration.learner_id != actor_id else actor_id

    for _ in range(2):
        current = registration.status
        if current == RegistrationStatus.PENDING_PAYMENT:
            target = RegistrationStatus.CANCELLED
        elif current == RegistrationStatus.CONFIRMED:
            target = RegistrationStatus.REFUNDED
        else:
            raise AlreadyTerminalError(current.value)

        outcome = await state_machine.transition(
            db,
            registration_id,
            current,
            target,
            actor=actor,
            reason=reason or "Cancelled by request",
        )
        registration = await state_machine.get_registration(db, registration_id)
        if outcome.applied:
            return registration

    raise AlreadyTerminalError(registration.status.value)


async def list_registrations(db: AsyncSession, learner_id: str) -> list[Registration]:
    result = await db.execute(
        select(Registration)
        .where(Registration.learner_id == learner_id)
        .order_by(Registration.created_at.desc())
    )
    return list(result.scalars().all())


async def waitlist_position(db: AsyncSession, learner_id: str, cohort_id: uuid.UUID) -> int:
    return await waitlist.position_of(db, cohort_id, learner_id)


async def join_waitlist(
    db: AsyncSession, learner_id: str, cohort_id: uuid.UUID, now: Optional[datetime] = None
) -> int:
    """Explicit waitlist join; only allowed while seats are unavailable."""
    cohort = await catalog.require_cohort(db, cohort_id)
    cohort_status = catalog.derive_cohort_status(cohort, now)
    if cohort_status not in catalog.REGISTRABLE_STATUSES:
        raise RegistrationWindowClosedError(cohort_status.value)
    if await get_active_registration(db, learner_id, cohort_id) is not None:
        raise AlreadyRegisteredError()
    if cohort_status != CohortStatus.FULL and not await waitlist.has_waiting(db, cohort_id):
        raise CohortNotFullError()

    try:
        position = await waitlist.enqueue(db, cohort_id, learner_id)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        position = await waitlist.position_of(db, cohort_id, learner_id)
    return position


async def leave_waitlist(db: AsyncSession, learner_id: str, cohort_id: uuid.UUID) -> None:
    released = await waitlist.dequeue(db, cohort_id, learner_id)
    await db.commit()
    if released:
        await followups.schedule_waitlist_promotion(cohort_id)
