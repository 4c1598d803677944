"""Enum definitions for registration service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class CohortAdminStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"


class CohortStatus(str, enum.Enum):
    """Derived cohort status; never persisted."""

    UPCOMING = "upcoming"
    OPEN = "open"
    FULL = "full"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SeatHolderKind(str, enum.Enum):
    REGISTRATION = "registration"
    WAITLIST_OFFER = "waitlist_offer"


class SeatHoldStatus(str, enum.Enum):
    HELD = "held"
    RELEASED = "released"


class RegistrationStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


# Statuses that occupy the (learner, cohort) slot.
ACTIVE_REGISTRATION_STATUSES = (
    RegistrationStatus.PENDING_PAYMENT,
    RegistrationStatus.CONFIRMED,
)


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class WaitlistStatus(str, enum.Enum):
    WAITING = "waiting"
    OFFERED = "offered"
    EXPIRED = "expired"
    CONVERTED = "converted"


ACTIVE_WAITLIST_STATUSES = (WaitlistStatus.WAITING, WaitlistStatus.OFFERED)


class GatewayEventType(str, enum.Enum):
    CREATED = "created"
    PAID = "paid"
    FAILED = "failed"
    REFUND_ISSUED = "refund_issued"


class GatewayEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    ANOMALY = "anomaly"
    FAILED = "failed"


class ReconciliationAnomaly(str, enum.Enum):
    UNKNOWN_REFERENCE = "unknown_reference"
    AMOUNT_MISMATCH = "amount_mismatch"
    PAYMENT_FOR_INACTIVE_REGISTRATION = "payment_for_inactive_registration"
    REFUND_WITHOUT_PAYMENT = "refund_without_payment"
