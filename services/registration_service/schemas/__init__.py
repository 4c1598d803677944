"""Registration Service schemas package."""

from services.registration_service.schemas.main import (
    CancelRegistrationRequest,
    CohortAvailabilityResponse,
    CohortResponse,
    CohortUpsert,
    PromoCodeCreate,
    PromoCodeResponse,
    PromoCodeUpdate,
    PromoCodeValidateRequest,
    PromoCodeValidateResponse,
    RegistrationCreate,
    RegistrationReceiptResponse,
    RegistrationResponse,
    WaitlistPositionResponse,
    WebhookAck,
)

__all__ = [
    "CancelRegistrationRequest",
    "CohortAvailabilityResponse",
    "CohortResponse",
    "CohortUpsert",
    "PromoCodeCreate",
    "PromoCodeResponse",
    "PromoCodeUpdate",
    "PromoCodeValidateRequest",
    "PromoCodeValidateResponse",
    "RegistrationCreate",
    "RegistrationReceiptResponse",
    "RegistrationResponse",
    "WaitlistPositionResponse",
    "WebhookAck",
]
