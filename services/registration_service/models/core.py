import random
import string
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from libs.db.types import UTCDateTime
from services.registration_service.models.enums import (
    ACTIVE_REGISTRATION_STATUSES,
    ACTIVE_WAITLIST_STATUSES,
    CohortAdminStatus,
    DiscountType,
    GatewayEventStatus,
    GatewayEventType,
    PaymentStatus,
    RegistrationStatus,
    SeatHolderKind,
    SeatHoldStatus,
    WaitlistStatus,
    enum_values,
)
from sqlalchemy import JSON, BigInteger, Boolean, CheckConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column


def _status_in(statuses) -> str:
    values = ", ".join(f"'{status.value}'" for status in statuses)
    return f"status IN ({values})"


def _enum(enum_cls, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=enum_values,
        validate_strings=True,
    )


# ============================================================================
# COHORT & CAPACITY
# ============================================================================


class Cohort(Base):
    """Local mirror of a catalog cohort plus the authoritative seat counter.

    ``enrolled_count`` is written only by the capacity ledger.
    """

    __tablename__ = "cohorts"
    __table_args__ = (
        CheckConstraint(
            "enrolled_count >= 0 AND enrolled_count <= capacity",
            name="enrolled_within_capacity",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    program_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)

    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    enrolled_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )

    # Price in minor units (halalas for SAR)
    price_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="SAR", nullable=False)

    registration_opens_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False
    )
    registration_closes_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False
    )
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    admin_status: Mapped[CohortAdminStatus] = mapped_column(
        _enum(CohortAdminStatus, "cohort_admin_status_enum"),
        default=CohortAdminStatus.SCHEDULED,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<Cohort {self.name} {self.enrolled_count}/{self.capacity}>"


class SeatHold(Base):
    """One reserved seat. Released at most once."""

    __tablename__ = "seat_holds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    cohort_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cohorts.id"), index=True, nullable=False
    )
    holder_kind: Mapped[SeatHolderKind] = mapped_column(
        _enum(SeatHolderKind, "seat_holder_kind_enum"), nullable=False
    )
    status: Mapped[SeatHoldStatus] = mapped_column(
        _enum(SeatHoldStatus, "seat_hold_status_enum"),
        default=SeatHoldStatus.HELD,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    released_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    def __repr__(self):
        return f"<SeatHold {self.id} {self.status.value}>"


# ============================================================================
# REGISTRATION & PAYMENT
# ============================================================================


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        Index(
            "uq_registrations_active_learner_cohort",
            "learner_id",
            "cohort_id",
            unique=True,
            postgresql_where=text(_status_in(ACTIVE_REGISTRATION_STATUSES)),
            sqlite_where=text(_status_in(ACTIVE_REGISTRATION_STATUSES)),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    learner_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    cohort_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cohorts.id"), index=True, nullable=False
    )

    status: Mapped[RegistrationStatus] = mapped_column(
        _enum(RegistrationStatus, "registration_status_enum"),
        default=RegistrationStatus.PENDING_PAYMENT,
        nullable=False,
    )

    # Amounts in minor units
    base_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    amount_due: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)

    promo_code_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("promo_codes.id"), nullable=True
    )
    promo_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    seat_hold_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("seat_holds.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, index=True, nullable=True
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    expired_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<Registration {self.id} {self.status.value}>"


class RegistrationTransition(Base):
    """Append-only log of every applied registration transition."""

    __tablename__ = "registration_transitions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    registration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("registrations.id"), index=True, nullable=False
    )
    from_status: Mapped[RegistrationStatus] = mapped_column(
        _enum(RegistrationStatus, "registration_status_enum"), nullable=False
    )
    to_status: Mapped[RegistrationStatus] = mapped_column(
        _enum(RegistrationStatus, "registration_status_enum"), nullable=False
    )
    actor: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    registration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("registrations.id"), unique=True, nullable=False
    )

    # Reference we hand to the gateway; every webhook echoes it back.
    provider_reference: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False
    )
    provider_payment_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )

    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # minor units
    currency: Mapped[str] = mapped_column(String(8), nullable=False)

    status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status_enum"),
        default=PaymentStatus.PENDING,
        nullable=False,
    )

    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now
    )

    @staticmethod
    def generate_reference() -> str:
        suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=12))
        return f"REG-{suffix}"

    def __repr__(self):
        return f"<Payment {self.provider_reference} {self.status.value}>"


# ============================================================================
# PROMO CODES
# ============================================================================


class PromoCode(Base):
    """Discount rule. Values are major-unit decimals."""

    __tablename__ = "promo_codes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(
        String(50), unique=True, index=True, nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    discount_type: Mapped[DiscountType] = mapped_column(
        _enum(DiscountType, "discount_type_enum"), nullable=False
    )
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    max_discount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    min_purchase: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )

    # Scope: None = any program
    program_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    valid_from: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    valid_until: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<PromoCode {self.code}>"


class PromoCodeUsage(Base):
    __tablename__ = "promo_code_usages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    promo_code_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("promo_codes.id"), index=True, nullable=False
    )
    registration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("registrations.id"), unique=True, nullable=False
    )
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


# ============================================================================
# WAITLIST
# ============================================================================


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"
    __table_args__ = (
        Index(
            "uq_waitlist_entries_active_learner_cohort",
            "learner_id",
            "cohort_id",
            unique=True,
            postgresql_where=text(_status_in(ACTIVE_WAITLIST_STATUSES)),
            sqlite_where=text(_status_in(ACTIVE_WAITLIST_STATUSES)),
        ),
        Index("ix_waitlist_entries_queue", "cohort_id", "status", "sequence"),
    )

    # Monotonic FIFO tie-break, assigned by the database at insert time.
    sequence: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    learner_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    cohort_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cohorts.id"), nullable=False
    )

    status: Mapped[WaitlistStatus] = mapped_column(
        _enum(WaitlistStatus, "waitlist_status_enum"),
        default=WaitlistStatus.WAITING,
        nullable=False,
    )

    enqueued_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    offered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    offer_expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, index=True, nullable=True
    )
    seat_hold_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("seat_holds.id"), nullable=True
    )
    converted_registration_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, nullable=True
    )
    expired_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<WaitlistEntry #{self.sequence} {self.learner_id} {self.status.value}>"


# ============================================================================
# GATEWAY EVENTS
# ============================================================================


class GatewayEvent(Base):
    """Durable intake for payment-gateway webhooks.

    Rows are never deleted; processing only moves ``status`` forward.
    """

    __tablename__ = "gateway_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    idempotency_key: Mapped[str] = mapped_column(
        String(128), unique=True, nullable=False
    )
    event_type: Mapped[GatewayEventType] = mapped_column(
        _enum(GatewayEventType, "gateway_event_type_enum"), nullable=False
    )
    provider_reference: Mapped[str] = mapped_column(
        String(64), index=True, nullable=False
    )
    provider_payment_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )
    amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[GatewayEventStatus] = mapped_column(
        _enum(GatewayEventStatus, "gateway_event_status_enum"),
        default=GatewayEventStatus.RECEIVED,
        nullable=False,
    )
    anomaly: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, index=True, nullable=True
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    def __repr__(self):
        return f"<GatewayEvent {self.event_type.value} {self.provider_reference}>"
