import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.currency import from_minor_units
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from services.registration_service.models import (
    CohortAdminStatus,
    CohortStatus,
    DiscountType,
    PaymentStatus,
    Registration,
    RegistrationStatus,
    WaitlistStatus,
)

# ===== REGISTRATIONS =====


class RegistrationCreate(BaseModel):
    cohort_id: uuid.UUID
    promo_code: Optional[str] = Field(default=None, max_length=50)


class RegistrationReceiptResponse(BaseModel):
    registration_id: uuid.UUID
    cohort_id: uuid.UUID
    status: RegistrationStatus
    currency: str
    # Major units, rounded to the currency's minor unit
    base_amount: Decimal
    discount_amount: Decimal
    amount_due: Decimal
    expires_at: Optional[datetime] = None
    payment_reference: str
    promo_code: Optional[str] = None


class RegistrationResponse(BaseModel):
    id: uuid.UUID
    learner_id: str
    cohort_id: uuid.UUID
    status: RegistrationStatus
    currency: str
    base_amount: Decimal
    discount_amount: Decimal
    amount_due: Decimal
    promo_code: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    @classmethod
    def from_registration(
        cls,
        registration: Registration,
        payment_reference: Optional[str] = None,
        payment_status: Optional[PaymentStatus] = None,
    ) -> "RegistrationResponse":
        currency = registration.currency
        return cls(
            id=registration.id,
            learner_id=registration.learner_id,
            cohort_id=registration.cohort_id,
            status=registration.status,
            currency=currency,
            base_amount=from_minor_units(registration.base_amount, currency),
            discount_amount=from_minor_units(registration.discount_amount, currency),
            amount_due=from_minor_units(registration.amount_due, currency),
            promo_code=registration.promo_code,
            payment_reference=payment_reference,
            payment_status=payment_status,
            created_at=registration.created_at,
            expires_at=registration.expires_at,
            confirmed_at=registration.confirmed_at,
            cancelled_at=registration.cancelled_at,
            expired_at=registration.expired_at,
            refunded_at=registration.refunded_at,
            cancellation_reason=registration.cancellation_reason,
        )


class CancelRegistrationRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


# ===== COHORTS =====


class CohortAvailabilityResponse(BaseModel):
    cohort_id: uuid.UUID
    program_id: uuid.UUID
    status: CohortStatus
    capacity: int
    enrolled_count: int
    seats_available: int
    waitlist_length: int = 0


class CohortUpsert(BaseModel):
    """Catalog push. ``price`` is in major units."""

    program_id: uuid.UUID
    name: str = Field(..., min_length=1, max_length=255)
    capacity: int = Field(..., ge=0)
    price: Decimal = Field(..., ge=0)
    currency: str = Field(default="SAR", min_length=3, max_length=8)
    registration_opens_at: datetime
    registration_closes_at: datetime
    start_date: datetime
    end_date: datetime

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class CohortResponse(BaseModel):
    id: uuid.UUID
    program_id: uuid.UUID
    name: str
    capacity: int
    enrolled_count: int
    price_amount: int
    currency: str
    registration_opens_at: datetime
    registration_closes_at: datetime
    start_date: datetime
    end_date: datetime
    admin_status: CohortAdminStatus

    model_config = ConfigDict(from_attributes=True)


# ===== WAITLIST =====


class WaitlistPositionResponse(BaseModel):
    cohort_id: uuid.UUID
    position: int  # 0 while a seat offer is open
    status: WaitlistStatus
    offer_expires_at: Optional[datetime] = None
    enqueued_at: Optional[datetime] = None


# ===== PROMO CODES =====


class PromoCodeValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    cohort_id: uuid.UUID


class PromoCodeValidateResponse(BaseModel):
    valid: bool
    code: str
    currency: str
    base_price: Decimal
    discount_amount: Decimal = Decimal("0")
    final_price: Decimal
    reason: Optional[str] = None


class PromoCodeBase(BaseModel):
    description: Optional[str] = Field(default=None, max_length=255)
    discount_type: DiscountType
    value: Decimal = Field(..., gt=0)
    max_discount: Optional[Decimal] = Field(default=None, ge=0)
    min_purchase: Optional[Decimal] = Field(default=None, ge=0)
    program_id: Optional[uuid.UUID] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_uses: Optional[int] = Field(default=None, ge=1)
    is_active: bool = True


class PromoCodeCreate(PromoCodeBase):
    code: str = Field(..., min_length=2, max_length=50)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_percentage(self):
        if self.discount_type == DiscountType.PERCENTAGE and self.value > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        return self


class PromoCodeUpdate(BaseModel):
    description: Optional[str] = Field(default=None, max_length=255)
    value: Optional[Decimal] = Field(default=None, gt=0)
    max_discount: Optional[Decimal] = Field(default=None, ge=0)
    min_purchase: Optional[Decimal] = Field(default=None, ge=0)
    program_id: Optional[uuid.UUID] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_uses: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None


class PromoCodeResponse(PromoCodeBase):
    id: uuid.UUID
    code: str
    current_uses: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ===== WEBHOOKS =====


class WebhookAck(BaseModel):
    received: bool = True
