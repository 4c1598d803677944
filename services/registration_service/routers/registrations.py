"""Learner-facing registration endpoints."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.currency import from_minor_units
from libs.common.logging import get_logger
from libs.common.rate_limit import limiter
from libs.db.session import get_async_db
from services.registration_service.models import WaitlistEntry, WaitlistStatus
from services.registration_service.schemas import (
    CancelRegistrationRequest,
    CohortAvailabilityResponse,
    RegistrationCreate,
    RegistrationReceiptResponse,
    RegistrationResponse,
)
from services.registration_service.services import catalog, orchestrator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/registrations", tags=["registrations"])
settings = get_settings()
logger = get_logger(__name__)


async def get_request_user(
    request: Request, current_user: AuthUser = Depends(get_current_user)
) -> AuthUser:
    """Authenticated caller, also bound to ``request.state`` for rate-limit keys."""
    request.state.user = current_user
    return current_user


@router.post(
    "",
    response_model=RegistrationReceiptResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.REGISTRATION_RATE_LIMIT)
async def create_registration(
    request: Request,
    payload: RegistrationCreate,
    current_user: AuthUser = Depends(get_request_user),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Reserve a seat and open a pending-payment registration.

    A full cohort answers 409 ``COHORT_FULL`` with the learner's new
    waitlist position.
    """
    receipt = await orchestrator.register(
        db,
        learner_id=current_user.user_id,
        cohort_id=payload.cohort_id,
        promo_code=payload.promo_code,
    )
    currency = receipt.currency
    return RegistrationReceiptResponse(
        registration_id=receipt.registration_id,
        cohort_id=receipt.cohort_id,
        status=receipt.status,
        currency=currency,
        base_amount=from_minor_units(receipt.base_amount, currency),
        discount_amount=from_minor_units(receipt.discount_amount, currency),
        amount_due=from_minor_units(receipt.amount_due, currency),
        expires_at=receipt.expires_at,
        payment_reference=receipt.payment_reference,
        promo_code=receipt.promo_code,
    )


@router.get("/me", response_model=list[RegistrationResponse])
async def list_my_registrations(
    current_user: AuthUser = Depends(get_request_user),
    db: AsyncSession = Depends(get_async_db),
):
    registrations = await orchestrator.list_registrations(db, current_user.user_id)
    return [RegistrationResponse.from_registration(r) for r in registrations]


@router.get(
    "/cohorts/{cohort_id}/availability", response_model=CohortAvailabilityResponse
)
async def get_cohort_availability(
    cohort_id: uuid.UUID,
    current_user: AuthUser = Depends(get_request_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Capacity snapshot with the derived cohort status."""
    cohort = await catalog.require_cohort(db, cohort_id)
    snap = catalog.snapshot(cohort)
    waiting = await db.execute(
        select(func.count())
        .select_from(WaitlistEntry)
        .where(
            WaitlistEntry.cohort_id == cohort_id,
            WaitlistEntry.status == WaitlistStatus.WAITING,
        )
    )
    return CohortAvailabilityResponse(
        cohort_id=snap.cohort_id,
        program_id=snap.program_id,
        status=snap.status,
        capacity=snap.capacity,
        enrolled_count=snap.enrolled_count,
        seats_available=snap.seats_available,
        waitlist_length=waiting.scalar_one(),
    )


@router.get("/{registration_id}", response_model=RegistrationResponse)
async def get_registration(
    registration_id: uuid.UUID,
    current_user: AuthUser = Depends(get_request_user),
    db: AsyncSession = Depends(get_async_db),
):
    registration = await orchestrator.get_registration_for(
        db,
        registration_id,
        actor_id=current_user.user_id,
        is_staff=current_user.is_staff,
    )
    payment = await orchestrator.get_payment_for(db, registration_id)
    return RegistrationResponse.from_registration(
        registration,
        payment_reference=payment.provider_reference if payment else None,
        payment_status=payment.status if payment else None,
    )


@router.post("/{registration_id}/cancel", response_model=RegistrationResponse)
async def cancel_registration(
    registration_id: uuid.UUID,
    payload: Optional[CancelRegistrationRequest] = None,
    current_user: AuthUser = Depends(get_request_user),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Cancel a pending registration, or refund a confirmed one.

    Only the learner who owns the registration or staff may do this.
    """
    registration = await orchestrator.cancel_registration(
        db,
        registration_id,
        actor_id=current_user.user_id,
        is_staff=current_user.is_staff,
        reason=payload.reason if payload else None,
    )
    return RegistrationResponse.from_registration(registration)
