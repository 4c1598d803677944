"""Routers package."""

from services.registration_service.routers.internal import router as internal_router
from services.registration_service.routers.promo_codes import (
    router as promo_codes_router,
)
from services.registration_service.routers.registrations import (
    router as registrations_router,
)
from services.registration_service.routers.waitlist import router as waitlist_router
from services.registration_service.routers.webhooks import router as webhooks_router

__all__ = [
    "internal_router",
    "promo_codes_router",
    "registrations_router",
    "waitlist_router",
    "webhooks_router",
]
