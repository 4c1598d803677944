"""Internal service-to-service endpoints.

Authenticated with service-role JWT. Not exposed through the public gateway.
"""

import uuid

from fastapi import APIRouter, Depends
from libs.auth.dependencies import require_service_role, require_staff
from libs.auth.models import AuthUser
from libs.common.currency import to_minor_units
from libs.db.session import get_async_db
from services.registration_service.schemas import CohortResponse, CohortUpsert
from services.registration_service.services import catalog, followups
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/registrations/internal", tags=["internal"])


@router.put("/cohorts/{cohort_id}", response_model=CohortResponse)
async def upsert_cohort(
    cohort_id: uuid.UUID,
    payload: CohortUpsert,
    _service: AuthUser = Depends(require_service_role),
    db: AsyncSession = Depends(get_async_db),
):
    """Mirror a catalog cohort. Capacity may not drop below the seats held."""
    fields = payload.model_dump(exclude={"price"})
    fields["price_amount"] = to_minor_units(payload.price, payload.currency)
    cohort, seats_added = await catalog.upsert_cohort(db, cohort_id, **fields)
    for _ in range(seats_added):
        await followups.schedule_waitlist_promotion(cohort.id)
    return cohort


@router.post("/cohorts/{cohort_id}/cancel", response_model=CohortResponse)
async def cancel_cohort(
    cohort_id: uuid.UUID,
    _staff: AuthUser = Depends(require_staff),
    db: AsyncSession = Depends(get_async_db),
):
    return await catalog.cancel_cohort(db, cohort_id)
