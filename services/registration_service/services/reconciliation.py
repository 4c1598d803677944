"""Payment reconciliation.

Gateway webhooks are first written to ``gateway_events`` (durable intake,
deduplicated by idempotency key) and acknowledged. A worker then maps each
event onto Payment and Registration state. The mapping is order-independent:
every write is a CAS, and duplicates or late arrivals land on a terminal
state and become no-ops.

Anything the engine cannot explain (unknown reference, wrong amount, money
for a registration that is no longer pending, refund whose payment
never arrives) is an anomaly: recorded on the event, logged at ERROR and sent to alerting.
"""

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from libs.common.arq_config import backoff_seconds
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.registration_service.models import (
    GatewayEvent,
    GatewayEventStatus,
    GatewayEventType,
    Payment,
    PaymentStatus,
    ReconciliationAnomaly,
    RegistrationStatus,
)
from services.registration_service.services import collaborators, state_machine
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)
settings = get_settings()

GATEWAY_EVENT_TYPES: dict[str, GatewayEventType] = {
    "payment.created": GatewayEventType.CREATED,
    "payment.paid": GatewayEventType.PAID,
    "charge.success": GatewayEventType.PAID,
    "payment.failed": GatewayEventType.FAILED,
    "charge.failed": GatewayEventType.FAILED,
    "payment.refunded": GatewayEventType.REFUND_ISSUED,
    "refund.processed": GatewayEventType.REFUND_ISSUED,
}

# Freshly received events are queued straight away; the retry sweep only
# picks them up once they have had a chance to run.
_INTAKE_GRACE = timedelta(seconds=30)


@dataclass
class ReconciliationResult:
    status: GatewayEventStatus
    anomaly: Optional[ReconciliationAnomaly] = None
    detail: Optional[str] = None
    transition: Optional[state_machine.TransitionOutcome] = None


def _processed(detail: str, transition=None) -> ReconciliationResult:
    return ReconciliationResult(GatewayEventStatus.PROCESSED, detail=detail, transition=transition)


def _deferred(detail: str) -> ReconciliationResult:
    return ReconciliationResult(GatewayEventStatus.RECEIVED, detail=detail)


def _anomaly(
    anomaly: ReconciliationAnomaly, detail: str, transition=None
) -> ReconciliationResult:
    return ReconciliationResult(
        GatewayEventStatus.ANOMALY, anomaly=anomaly, detail=detail, transition=transition
    )


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


def idempotency_key_for(event_name: str, data: dict[str, Any], raw_body: bytes) -> str:
    provider_event_id = data.get("id")
    if provider_event_id not in (None, ""):
        return f"{event_name}:{provider_event_id}"
    return "sha256:" + hashlib.sha256(raw_body).hexdigest()


def _parse_amount(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def get_event_by_key(db: AsyncSession, key: str) -> Optional[GatewayEvent]:
    result = await db.execute(
        select(GatewayEvent).where(GatewayEvent.idempotency_key == key)
    )
    return result.scalar_one_or_none()


async def record_gateway_event(
    db: AsyncSession, payload: dict[str, Any], raw_body: bytes
) -> tuple[Optional[GatewayEvent], bool]:
    """Durably store a webhook. Returns ``(event, created)``.

    Unsupported event names return ``(None, False)``. A redelivery returns the
    existing row with ``created=False``.
    """
    event_name = str(payload.get("event") or "")
    event_type = GATEWAY_EVENT_TYPES.get(event_name)
    if event_type is None:
        logger.info("Ignoring unsupported gateway event %r", event_name)
        return None, False

    data = payload.get("data") or {}
    if not isinstance(data, dict):
        data = {}
    key = idempotency_key_for(event_name, data, raw_body)

    existing = await get_event_by_key(db, key)
    if existing is not None:
        logger.info("Duplicate gateway event %s acknowledged", key)
        return existing, False

    currency = data.get("currency")
    event = GatewayEvent(
        idempotency_key=key,
        event_type=event_type,
        provider_reference=str(data.get("reference") or ""),
        provider_payment_id=(
            str(data["provider_payment_id"]) if data.get("provider_payment_id") else None
        ),
        amount=_parse_amount(data.get("amount")),
        currency=str(currency).upper() if currency else None,
        payload=payload,
        status=GatewayEventStatus.RECEIVED,
        attempts=0,
    )
    db.add(event)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent redelivery won the insert.
        await db.rollback()
        existing = await get_event_by_key(db, key)
        logger.info("Duplicate gateway event %s acknowledged", key)
        return existing, False

    await db.refresh(event)
    logger.info(
        "Recorded gateway event %s (%s) for %s",
        event.id,
        event_type.value,
        event.provider_reference,
    )
    return event, True


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


async def _get_payment(db: AsyncSession, reference: str) -> Optional[Payment]:
    if not reference:
        return None
    result = await db.execute(
        select(Payment)
        .where(Payment.provider_reference == reference)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _on_created(db: AsyncSession, event: GatewayEvent, payment: Payment):
    if event.provider_payment_id and payment.provider_payment_id is None:
        await db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.provider_payment_id.is_(None))
            .values(provider_payment_id=event.provider_payment_id)
            .execution_options(synchronize_session=False)
        )
        return _processed("provider payment id recorded")
    return _processed("no-op")


async def _on_paid(db: AsyncSession, event: GatewayEvent, payment: Payment, now: datetime):
    if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
        return _processed(f"payment already {payment.status.value}")

    currency_mismatch = event.currency is not None and event.currency != payment.currency
    if event.amount != payment.amount or currency_mismatch:
        return _anomaly(
            ReconciliationAnomaly.AMOUNT_MISMATCH,
            f"expected {payment.amount} {payment.currency}, "
            f"got {event.amount} {event.currency or payment.currency}",
        )

    values = {"status": PaymentStatus.COMPLETED, "paid_at": now}
    if event.provider_payment_id:
        values["provider_payment_id"] = event.provider_payment_id
    result = await db.execute(
        update(Payment)
        .where(
            Payment.id == payment.id,
            Payment.status.in_((PaymentStatus.PENDING, PaymentStatus.FAILED)),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return _processed("payment completed concurrently")

    # A refund that arrived first can now be applied.
    await db.execute(
        update(GatewayEvent)
        .where(
            GatewayEvent.provider_reference == payment.provider_reference,
            GatewayEvent.event_type == GatewayEventType.REFUND_ISSUED,
            GatewayEvent.status == GatewayEventStatus.RECEIVED,
        )
        .values(next_attempt_at=now)
        .execution_options(synchronize_session=False)
    )

    outcome = await state_machine.apply_transition(
        db,
        payment.registration_id,
        RegistrationStatus.PENDING_PAYMENT,
        RegistrationStatus.CONFIRMED,
        actor="gateway",
        reason=f"Payment {payment.provider_reference} completed",
        now=now,
    )
    if outcome.applied or outcome.current_status == RegistrationStatus.CONFIRMED:
        return _processed("registration confirmed", outcome)

    # Money arrived after the hold lapsed or the learner cancelled.
    return _anomaly(
        ReconciliationAnomaly.PAYMENT_FOR_INACTIVE_REGISTRATION,
        f"registration is {outcome.current_status.value}; refund required",
    )


async def _on_failed(db: AsyncSession, event: GatewayEvent, payment: Payment, now: datetime):
    data = (event.payload or {}).get("data") or {}
    reason = data.get("gateway_response") or data.get("reason") or "Payment failed"
    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
        .values(status=PaymentStatus.FAILED, failed_at=now, failure_reason=str(reason))
        .execution_options(synchronize_session=False)
    )
    # The registration keeps its hold; the learner may retry until expiry.
    if result.rowcount == 1:
        return _processed("payment failed")
    return _processed(f"payment already {payment.status.value}")


async def _on_refund(db: AsyncSession, event: GatewayEvent, payment: Payment, now: datetime):
    if payment.status == PaymentStatus.REFUNDED:
        return _processed("payment already refunded")
    if payment.status != PaymentStatus.COMPLETED:
        # The Paid event may still be in flight; wait for it before giving up.
        waiting_for_payment = payment.status in (PaymentStatus.PENDING, PaymentStatus.FAILED)
        if waiting_for_payment and event.attempts < settings.GATEWAY_EVENT_MAX_ATTEMPTS:
            return _deferred(f"refund ahead of payment in status {payment.status.value}")
        return _anomaly(
            ReconciliationAnomaly.REFUND_WITHOUT_PAYMENT,
            f"refund for payment in status {payment.status.value}",
        )

    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == PaymentStatus.COMPLETED)
        .values(status=PaymentStatus.REFUNDED, refunded_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return _processed("payment refunded concurrently")

    outcome = await state_machine.apply_transition(
        db,
        payment.registration_id,
        RegistrationStatus.CONFIRMED,
        RegistrationStatus.REFUNDED,
        actor="gateway",
        reason=f"Refund issued for {payment.provider_reference}",
        now=now,
    )
    return _processed("payment refunded", outcome)


async def on_gateway_event(
    db: AsyncSession, event: GatewayEvent, now: Optional[datetime] = None
) -> ReconciliationResult:
    """Map one event onto Payment/Registration state. No commit."""
    now = now or utc_now()
    payment = await _get_payment(db, event.provider_reference)
    if payment is None:
        return _anomaly(
            ReconciliationAnomaly.UNKNOWN_REFERENCE,
            f"no payment with reference {event.provider_reference!r}",
        )

    if event.event_type == GatewayEventType.CREATED:
        return await _on_created(db, event, payment)
    if event.event_type == GatewayEventType.PAID:
        return await _on_paid(db, event, payment, now)
    if event.event_type == GatewayEventType.FAILED:
        return await _on_failed(db, event, payment, now)
    return await _on_refund(db, event, payment, now)


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


async def process_gateway_event(
    db: AsyncSession, event_id: uuid.UUID, now: Optional[datetime] = None
) -> Optional[ReconciliationResult]:
    """Claim a received event, apply it and commit.

    Returns None when the event is unknown or already handled. Storage errors
    propagate after rollback; the caller records the failed attempt.
    """
    now = now or utc_now()

    # Claim first so two workers never apply the same event.
    claimed = await db.execute(
        update(GatewayEvent)
        .where(
            GatewayEvent.id == event_id,
            GatewayEvent.status == GatewayEventStatus.RECEIVED,
        )
        .values(
            status=GatewayEventStatus.PROCESSED,
            attempts=GatewayEvent.attempts + 1,
            processed_at=now,
            next_attempt_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await db.rollback()
        logger.info("Gateway event %s already handled or unknown", event_id)
        return None

    try:
        event = (
            await db.execute(
                select(GatewayEvent)
                .where(GatewayEvent.id == event_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        result = await on_gateway_event(db, event, now)

        if result.status == GatewayEventStatus.ANOMALY:
            await db.execute(
                update(GatewayEvent)
                .where(GatewayEvent.id == event_id)
                .values(
                    status=GatewayEventStatus.ANOMALY,
                    anomaly=result.anomaly.value,
                    last_error=result.detail,
                )
                .execution_options(synchronize_session=False)
            )
        elif result.status == GatewayEventStatus.RECEIVED:
            delay = backoff_seconds(
                event.attempts,
                settings.GATEWAY_EVENT_RETRY_BASE_SECONDS,
                settings.GATEWAY_EVENT_RETRY_MAX_SECONDS,
            )
            await db.execute(
                update(GatewayEvent)
                .where(GatewayEvent.id == event_id)
                .values(
                    status=GatewayEventStatus.RECEIVED,
                    processed_at=None,
                    next_attempt_at=now + timedelta(seconds=delay),
                    last_error=result.detail,
                )
                .execution_options(synchronize_session=False)
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if result.transition is not None:
        await state_machine.run_follow_ups(result.transition)

    if result.status == GatewayEventStatus.ANOMALY:
        logger.error(
            "Reconciliation anomaly %s on event %s (%s): %s",
            result.anomaly.value,
            event_id,
            event.provider_reference,
            result.detail,
            extra={
                "extra_fields": {
                    "anomaly": result.anomaly.value,
                    "gateway_event_id": str(event_id),
                    "provider_reference": event.provider_reference,
                }
            },
        )
        await collaborators.raise_alert(
            f"reconciliation.{result.anomaly.value}",
            {
                "gateway_event_id": str(event_id),
                "event_type": event.event_type.value,
                "provider_reference": event.provider_reference,
                "amount": event.amount,
                "currency": event.currency,
                "detail": result.detail,
            },
        )
    elif result.status == GatewayEventStatus.RECEIVED:
        logger.info("Gateway event %s deferred: %s", event_id, result.detail)
    else:
        logger.info(
            "Gateway event %s processed: %s", event_id, result.detail
        )
    return result


async def record_processing_failure(
    db: AsyncSession,
    event_id: uuid.UUID,
    error: str,
    now: Optional[datetime] = None,
) -> Optional[GatewayEvent]:
    """Count a failed attempt and schedule the next one, or give up."""
    now = now or utc_now()
    event = (
        await db.execute(
            select(GatewayEvent)
            .where(GatewayEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if event is None or event.status != GatewayEventStatus.RECEIVED:
        return event

    event.attempts += 1
    event.last_error = error[:2000]
    gave_up = event.attempts >= settings.GATEWAY_EVENT_MAX_ATTEMPTS
    if gave_up:
        event.status = GatewayEventStatus.FAILED
        event.next_attempt_at = None
    else:
        delay = backoff_seconds(
            event.attempts,
            settings.GATEWAY_EVENT_RETRY_BASE_SECONDS,
            settings.GATEWAY_EVENT_RETRY_MAX_SECONDS,
        )
        event.next_attempt_at = now + timedelta(seconds=delay)
    await db.commit()

    if gave_up:
        logger.error(
            "Gateway event %s failed after %d attempts: %s",
            event_id,
            event.attempts,
            error,
        )
        await collaborators.raise_alert(
            "reconciliation.processing_failed",
            {
                "gateway_event_id": str(event_id),
                "provider_reference": event.provider_reference,
                "attempts": event.attempts,
                "error": error,
            },
        )
    else:
        logger.warning(
            "Gateway event %s attempt %d failed, retrying at %s: %s",
            event_id,
            event.attempts,
            event.next_attempt_at.isoformat(),
            error,
        )
    return event


async def due_event_ids(
    db: AsyncSession, now: Optional[datetime] = None, limit: int = 200
) -> list[uuid.UUID]:
    """Received events whose next attempt is due."""
    now = now or utc_now()
    result = await db.execute(
        select(GatewayEvent.id)
        .where(
            GatewayEvent.status == GatewayEventStatus.RECEIVED,
            or_(
                GatewayEvent.next_attempt_at <= now,
                (GatewayEvent.next_attempt_at.is_(None))
                & (GatewayEvent.received_at <= now - _INTAKE_GRACE),
            ),
        )
        .order_by(GatewayEvent.received_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())
