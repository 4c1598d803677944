"""Waitlist endpoints for learners."""

import uuid

from fastapi import APIRouter, Depends, status
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.registration_service.routers.registrations import get_request_user
from services.registration_service.schemas import WaitlistPositionResponse
from services.registration_service.services import orchestrator, waitlist
from services.registration_service.services.errors import NotOnWaitlistError
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/registrations/waitlist", tags=["waitlist"])


async def _position_response(
    db: AsyncSession, cohort_id: uuid.UUID, learner_id: str
) -> WaitlistPositionResponse:
    entry = await waitlist.get_active_entry(db, cohort_id, learner_id)
    if entry is None:
        raise NotOnWaitlistError()
    position = await orchestrator.waitlist_position(db, learner_id, cohort_id)
    return WaitlistPositionResponse(
        cohort_id=cohort_id,
        position=position,
        status=entry.status,
        offer_expires_at=entry.offer_expires_at,
        enqueued_at=entry.enqueued_at,
    )


@router.get("/me", response_model=list[WaitlistPositionResponse])
async def list_my_waitlist_entries(
    current_user: AuthUser = Depends(get_request_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Every queue the caller is on, oldest first."""
    entries = await waitlist.list_entries(db, current_user.user_id)
    return [
        WaitlistPositionResponse(
            cohort_id=entry.cohort_id,
            position=position,
            status=entry.status,
            offer_expires_at=entry.offer_expires_at,
            enqueued_at=entry.enqueued_at,
        )
        for entry, position in entries
    ]


@router.get("/{cohort_id}/position", response_model=WaitlistPositionResponse)
async def get_waitlist_position(
    cohort_id: uuid.UUID,
    current_user: AuthUser = Depends(get_request_user),
    db: AsyncSession = Depends(get_async_db),
):
    """1-based queue position; 0 means a seat offer is waiting to be claimed."""
    return await _position_response(db, cohort_id, current_user.user_id)


@router.post(
    "/{cohort_id}",
    response_model=WaitlistPositionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def join_waitlist(
    cohort_id: uuid.UUID,
    current_user: AuthUser = Depends(get_request_user),
    db: AsyncSession = Depends(get_async_db),
):
    await orchestrator.join_waitlist(db, current_user.user_id, cohort_id)
    return await _position_response(db, cohort_id, current_user.user_id)


@router.delete("/{cohort_id}", status_code=status.HTTP_204_NO_CONTENT)
async def leave_waitlist(
    cohort_id: uuid.UUID,
    current_user: AuthUser = Depends(get_request_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Leave the queue. An open offer is given up and its seat re-offered."""
    await orchestrator.leave_waitlist(db, current_user.user_id, cohort_id)
