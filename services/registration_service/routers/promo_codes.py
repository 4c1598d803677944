"""Promo code preview and admin management."""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from libs.auth.dependencies import require_staff
from libs.auth.models import AuthUser
from libs.common.currency import from_minor_units
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.registration_service.models import PromoCode
from services.registration_service.routers.registrations import get_request_user
from services.registration_service.schemas import (
    PromoCodeCreate,
    PromoCodeResponse,
    PromoCodeUpdate,
    PromoCodeValidateRequest,
    PromoCodeValidateResponse,
)
from services.registration_service.services import catalog, promo
from services.registration_service.services.errors import (
    PromoCodeExistsError,
    PromoCodeNotFoundError,
)
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/registrations", tags=["promo-codes"])
logger = get_logger(__name__)


@router.post("/promo-codes/validate", response_model=PromoCodeValidateResponse)
async def validate_promo_code(
    payload: PromoCodeValidateRequest,
    current_user: AuthUser = Depends(get_request_user),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Preview a code against a cohort's price. Never consumes a use.
    """
    cohort = await catalog.require_cohort(db, payload.cohort_id)
    base_price = from_minor_units(cohort.price_amount, cohort.currency)
    result = await promo.validate_promo_code(
        db,
        payload.code,
        base_price,
        currency=cohort.currency,
        program_id=cohort.program_id,
    )
    code = promo.normalize_code(payload.code)

    if isinstance(result, promo.PromoRejection):
        return PromoCodeValidateResponse(
            valid=False,
            code=code,
            currency=cohort.currency,
            base_price=base_price,
            final_price=base_price,
            reason=result.reason.value,
        )

    return PromoCodeValidateResponse(
        valid=True,
        code=result.code,
        currency=cohort.currency,
        base_price=base_price,
        discount_amount=result.discount_amount,
        final_price=result.final_price,
    )


# ===== ADMIN =====


async def _get_by_id_or_code(db: AsyncSession, promo_id: str) -> PromoCode:
    try:
        query = select(PromoCode).where(PromoCode.id == uuid.UUID(promo_id))
    except ValueError:
        query = select(PromoCode).where(PromoCode.code == promo.normalize_code(promo_id))
    promo_code = (await db.execute(query)).scalar_one_or_none()
    if promo_code is None:
        raise PromoCodeNotFoundError()
    return promo_code


@router.post(
    "/admin/promo-codes",
    response_model=PromoCodeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_promo_code(
    payload: PromoCodeCreate,
    current_user: AuthUser = Depends(require_staff),
    db: AsyncSession = Depends(get_async_db),
):
    existing = await promo.get_promo_code(db, payload.code)
    if existing is not None:
        raise PromoCodeExistsError(payload.code)

    promo_code = PromoCode(**payload.model_dump())
    db.add(promo_code)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise PromoCodeExistsError(payload.code)
    await db.refresh(promo_code)
    logger.info("Promo code %s created by %s", promo_code.code, current_user.user_id)
    return promo_code


@router.get("/admin/promo-codes", response_model=List[PromoCodeResponse])
async def list_promo_codes(
    active_only: bool = Query(False),
    program_id: Optional[uuid.UUID] = Query(None),
    current_user: AuthUser = Depends(require_staff),
    db: AsyncSession = Depends(get_async_db),
):
    query = select(PromoCode).order_by(PromoCode.created_at.desc())
    if active_only:
        query = query.where(PromoCode.is_active.is_(True))
    if program_id is not None:
        query = query.where(PromoCode.program_id == program_id)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/admin/promo-codes/{promo_id}", response_model=PromoCodeResponse)
async def get_promo_code(
    promo_id: str,
    current_user: AuthUser = Depends(require_staff),
    db: AsyncSession = Depends(get_async_db),
):
    """Look up by id or by code."""
    return await _get_by_id_or_code(db, promo_id)


@router.patch("/admin/promo-codes/{promo_id}", response_model=PromoCodeResponse)
async def update_promo_code(
    promo_id: str,
    payload: PromoCodeUpdate,
    current_user: AuthUser = Depends(require_staff),
    db: AsyncSession = Depends(get_async_db),
):
    promo_code = await _get_by_id_or_code(db, promo_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(promo_code, field, value)
    await db.commit()
    await db.refresh(promo_code)
    return promo_code
