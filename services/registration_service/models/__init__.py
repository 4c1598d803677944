"""Registration Service models package."""

from services.registration_service.models.core import (
    Cohort,
    GatewayEvent,
    Payment,
    PromoCode,
    PromoCodeUsage,
    Registration,
    RegistrationTransition,
    SeatHold,
    WaitlistEntry,
)
from services.registration_service.models.enums import (
    ACTIVE_REGISTRATION_STATUSES,
    ACTIVE_WAITLIST_STATUSES,
    CohortAdminStatus,
    CohortStatus,
    DiscountType,
    GatewayEventStatus,
    GatewayEventType,
    PaymentStatus,
    ReconciliationAnomaly,
    RegistrationStatus,
    SeatHolderKind,
    SeatHoldStatus,
    WaitlistStatus,
)

ALL_MODELS = (
    Cohort,
    SeatHold,
    Registration,
    RegistrationTransition,
    Payment,
    PromoCode,
    PromoCodeUsage,
    WaitlistEntry,
    GatewayEvent,
)

__all__ = [
    "ALL_MODELS",
    "ACTIVE_REGISTRATION_STATUSES",
    "ACTIVE_WAITLIST_STATUSES",
    "Cohort",
    "CohortAdminStatus",
    "CohortStatus",
    "DiscountType",
    "GatewayEvent",
    "GatewayEventStatus",
    "GatewayEventType",
    "Payment",
    "PaymentStatus",
    "PromoCode",
    "PromoCodeUsage",
    "ReconciliationAnomaly",
    "Registration",
    "RegistrationStatus",
    "RegistrationTransition",
    "SeatHold",
    "SeatHolderKind",
    "SeatHoldStatus",
    "WaitlistEntry",
    "WaitlistStatus",
]
