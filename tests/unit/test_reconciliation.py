"""Unit tests for gateway event intake and payment reconciliation."""

import json
import uuid
from datetime import timedelta

import pytest
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from services.registration_service.models import (
    Cohort,
    GatewayEvent,
    GatewayEventStatus,
    Payment,
    PaymentStatus,
    ReconciliationAnomaly,
    RegistrationStatus,
    RegistrationTransition,
)
from services.registration_service.services import (
    orchestrator,
    reconciliation,
    state_machine,
)
from sqlalchemy import func, select, update
from tests.factories import CohortFactory

settings = get_settings()


async def _seed_cohort(db, **overrides) -> Cohort:
    cohort = CohortFactory.create(**overrides)
    db.add(cohort)
    await db.commit()
    return cohort


async def _deliver(db, event_name, reference, amount, currency="SAR", event_id=None, **extra):
    data = {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "reference": reference,
        "amount": amount,
        "currency": currency,
        **extra,
    }
    payload = {"event": event_name, "data": data}
    return await reconciliation.record_gateway_event(
        db, payload, json.dumps(payload).encode("utf-8")
    )


async def _registered(db, capacity=1, now=None):
    cohort = await _seed_cohort(db, capacity=capacity)
    receipt = await orchestrator.register(db, "learner-1", cohort.id, now=now)
    return cohort, receipt


async def _enrolled(db, cohort_id) -> int:
    return (
        await db.execute(select(Cohort.enrolled_count).where(Cohort.id == cohort_id))
    ).scalar_one()


async def _payment(db, reference) -> Payment:
    return (
        await db.execute(
            select(Payment)
            .where(Payment.provider_reference == reference)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


async def _transition_count(db, registration_id) -> int:
    return (
        await db.execute(
            select(func.count())
            .select_from(RegistrationTransition)
            .where(RegistrationTransition.registration_id == registration_id)
        )
    ).scalar_one()


def _alerts(calls) -> list[dict]:
    return [c["json"] for c in calls if c["path"] == "/internal/alerts"]


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_record_is_deduplicated_by_provider_event_id(db_session):
    first, created = await _deliver(db_session, "payment.paid", "REG-X", 100, event_id="evt_1")
    again, created_again = await _deliver(
        db_session, "payment.paid", "REG-X", 100, event_id="evt_1"
    )

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert first.idempotency_key == "payment.paid:evt_1"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unsupported_event_is_ignored(db_session):
    event, created = await _deliver(db_session, "subscription.create", "REG-X", 100)

    assert event is None
    assert created is False


@pytest.mark.unit
def test_idempotency_key_falls_back_to_body_hash():
    key = reconciliation.idempotency_key_for("payment.paid", {}, b'{"event":"payment.paid"}')

    assert key.startswith("sha256:")
    assert key == reconciliation.idempotency_key_for(
        "payment.paid", {"id": ""}, b'{"event":"payment.paid"}'
    )


# ---------------------------------------------------------------------------
# Paid
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_paid_confirms_registration(db_session, collaborator_calls):
    cohort, receipt = await _registered(db_session)
    event, _ = await _deliver(
        db_session,
        "charge.success",
        receipt.payment_reference,
        receipt.amount_due,
        provider_payment_id="pay_123",
    )

    result = await reconciliation.process_gateway_event(db_session, event.id)

    assert result.status == GatewayEventStatus.PROCESSED
    payment = await _payment(db_session, receipt.payment_reference)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.provider_payment_id == "pay_123"
    registration = await state_machine.get_registration(db_session, receipt.registration_id)
    assert registration.status == RegistrationStatus.CONFIRMED
    assert await _enrolled(db_session, cohort.id) == 1
    assert "/internal/lms/enrollments" in [c["path"] for c in collaborator_calls]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_duplicate_paid_has_no_second_effect(db_session, collaborator_calls):
    """Redelivery and a second Paid event for the same payment are both no-ops."""
    cohort, receipt = await _registered(db_session)
    cohort_id = cohort.id
    event, _ = await _deliver(
        db_session, "payment.paid", receipt.payment_reference, receipt.amount_due
    )
    await reconciliation.process_gateway_event(db_session, event.id)
    collaborator_calls.clear()

    # Same event redelivered
    redelivered, created = await _deliver(
        db_session,
        "payment.paid",
        receipt.payment_reference,
        receipt.amount_due,
        event_id=event.payload["data"]["id"],
    )
    assert created is False
    assert await reconciliation.process_gateway_event(db_session, redelivered.id) is None

    # A distinct event reporting the same payment
    second, _ = await _deliver(
        db_session, "charge.success", receipt.payment_reference, receipt.amount_due
    )
    result = await reconciliation.process_gateway_event(db_session, second.id)

    assert result.status == GatewayEventStatus.PROCESSED
    assert result.transition is None
    assert await _enrolled(db_session, cohort_id) == 1
    assert await _transition_count(db_session, receipt.registration_id) == 1
    assert collaborator_calls == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_amount_mismatch_is_an_anomaly(db_session, collaborator_calls):
    _, receipt = await _registered(db_session)
    event, _ = await _deliver(
        db_session, "payment.paid", receipt.payment_reference, receipt.amount_due - 1
    )

    result = await reconciliation.process_gateway_event(db_session, event.id)

    assert result.status == GatewayEventStatus.ANOMALY
    assert result.anomaly == ReconciliationAnomaly.AMOUNT_MISMATCH
    payment = await _payment(db_session, receipt.payment_reference)
    assert payment.status == PaymentStatus.PENDING
    registration = await state_machine.get_registration(db_session, receipt.registration_id)
    assert registration.status == RegistrationStatus.PENDING_PAYMENT

    stored = (
        await db_session.execute(
            select(GatewayEvent)
            .where(GatewayEvent.id == event.id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert stored.status == GatewayEventStatus.ANOMALY
    assert stored.anomaly == ReconciliationAnomaly.AMOUNT_MISMATCH.value
    assert [a["kind"] for a in _alerts(collaborator_calls)] == [
        "reconciliation.amount_mismatch"
    ]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_currency_mismatch_is_an_anomaly(db_session):
    _, receipt = await _registered(db_session)
    event, _ = await _deliver(
        db_session, "payment.paid", receipt.payment_reference, receipt.amount_due, currency="USD"
    )

    result = await reconciliation.process_gateway_event(db_session, event.id)

    assert result.anomaly == ReconciliationAnomaly.AMOUNT_MISMATCH


@pytest.mark.asyncio
@pytest.mark.unit
async def test_payment_after_expiry_is_an_anomaly(db_session, collaborator_calls):
    """The seat is gone; the money must be flagged for refund, not silently kept."""
    past = utc_now() - timedelta(hours=1)
    cohort, receipt = await _registered(db_session, now=past)
    assert await state_machine.expire_stale_registrations(db_session) == 1

    event, _ = await _deliver(
        db_session, "payment.paid", receipt.payment_reference, receipt.amount_due
    )
    result = await reconciliation.process_gateway_event(db_session, event.id)

    assert result.status == GatewayEventStatus.ANOMALY
    assert result.anomaly == ReconciliationAnomaly.PAYMENT_FOR_INACTIVE_REGISTRATION
    registration = await state_machine.get_registration(db_session, receipt.registration_id)
    assert registration.status == RegistrationStatus.EXPIRED
    assert await _enrolled(db_session, cohort.id) == 0
    assert _alerts(collaborator_calls)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unknown_reference_is_an_anomaly(db_session):
    event, _ = await _deliver(db_session, "payment.paid", "REG-DOESNOTEXIST", 100)

    result = await reconciliation.process_gateway_event(db_session, event.id)

    assert result.anomaly == ReconciliationAnomaly.UNKNOWN_REFERENCE


# ---------------------------------------------------------------------------
# Failed / created
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_payment_keeps_hold_and_can_still_be_paid(db_session):
    cohort, receipt = await _registered(db_session)
    failed, _ = await _deliver(
        db_session,
        "charge.failed",
        receipt.payment_reference,
        receipt.amount_due,
        gateway_response="Declined",
    )
    await reconciliation.process_gateway_event(db_session, failed.id)

    payment = await _payment(db_session, receipt.payment_reference)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Declined"
    assert await _enrolled(db_session, cohort.id) == 1

    paid, _ = await _deliver(
        db_session, "payment.paid", receipt.payment_reference, receipt.amount_due
    )
    await reconciliation.process_gateway_event(db_session, paid.id)

    registration = await state_machine.get_registration(db_session, receipt.registration_id)
    assert registration.status == RegistrationStatus.CONFIRMED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_created_event_records_provider_payment_id(db_session):
    _, receipt = await _registered(db_session)
    event, _ = await _deliver(
        db_session,
        "payment.created",
        receipt.payment_reference,
        receipt.amount_due,
        provider_payment_id="pay_999",
    )

    result = await reconciliation.process_gateway_event(db_session, event.id)

    assert result.status == GatewayEventStatus.PROCESSED
    payment = await _payment(db_session, receipt.payment_reference)
    assert payment.provider_payment_id == "pay_999"
    assert payment.status == PaymentStatus.PENDING


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refund_releases_seat_once(db_session, enqueued_jobs):
    cohort, receipt = await _registered(db_session)
    paid, _ = await _deliver(
        db_session, "payment.paid", receipt.payment_reference, receipt.amount_due
    )
    await reconciliation.process_gateway_event(db_session, paid.id)
    enqueued_jobs.clear()

    refund, _ = await _deliver(
        db_session, "refund.processed", receipt.payment_reference, receipt.amount_due
    )
    result = await reconciliation.process_gateway_event(db_session, refund.id)

    assert result.status == GatewayEventStatus.PROCESSED
    payment = await _payment(db_session, receipt.payment_reference)
    assert payment.status == PaymentStatus.REFUNDED
    registration = await state_machine.get_registration(db_session, receipt.registration_id)
    assert registration.status == RegistrationStatus.REFUNDED
    assert await _enrolled(db_session, cohort.id) == 0

    # A second refund notice changes nothing.
    again, _ = await _deliver(
        db_session, "payment.refunded", receipt.payment_reference, receipt.amount_due
    )
    await reconciliation.process_gateway_event(db_session, again.id)

    assert await _enrolled(db_session, cohort.id) == 0
    assert [f for f, _, _ in enqueued_jobs] == ["task_promote_waitlist"]


async def _stored_event(db, event_id) -> GatewayEvent:
    return (
        await db.execute(
            select(GatewayEvent)
            .where(GatewayEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refund_ahead_of_payment_waits_for_it(db_session, collaborator_calls):
    """Gateways do not promise order; a refund seen first is applied once Paid lands."""
    cohort, receipt = await _registered(db_session)
    cohort_id = cohort.id
    refund, _ = await _deliver(
        db_session, "refund.processed", receipt.payment_reference, receipt.amount_due
    )

    deferred = await reconciliation.process_gateway_event(db_session, refund.id)

    assert deferred.status == GatewayEventStatus.RECEIVED
    waiting = await _stored_event(db_session, refund.id)
    assert waiting.status == GatewayEventStatus.RECEIVED
    assert waiting.attempts == 1
    assert waiting.next_attempt_at > utc_now()
    payment = await _payment(db_session, receipt.payment_reference)
    assert payment.status == PaymentStatus.PENDING
    assert _alerts(collaborator_calls) == []

    paid, _ = await _deliver(
        db_session, "payment.paid", receipt.payment_reference, receipt.amount_due
    )
    await reconciliation.process_gateway_event(db_session, paid.id)

    # Paid brings the waiting refund forward for the retry sweep.
    assert refund.id in await reconciliation.due_event_ids(db_session, utc_now())
    result = await reconciliation.process_gateway_event(db_session, refund.id)

    assert result.status == GatewayEventStatus.PROCESSED
    payment = await _payment(db_session, receipt.payment_reference)
    assert payment.status == PaymentStatus.REFUNDED
    registration = await state_machine.get_registration(db_session, receipt.registration_id)
    assert registration.status == RegistrationStatus.REFUNDED
    assert await _enrolled(db_session, cohort_id) == 0
    assert _alerts(collaborator_calls) == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refund_without_payment_becomes_anomaly_on_last_attempt(
    db_session, collaborator_calls
):
    _, receipt = await _registered(db_session)
    event, _ = await _deliver(
        db_session, "refund.processed", receipt.payment_reference, receipt.amount_due
    )
    await db_session.execute(
        update(GatewayEvent)
        .where(GatewayEvent.id == event.id)
        .values(attempts=settings.GATEWAY_EVENT_MAX_ATTEMPTS - 1)
    )
    await db_session.commit()

    result = await reconciliation.process_gateway_event(db_session, event.id)

    assert result.anomaly == ReconciliationAnomaly.REFUND_WITHOUT_PAYMENT
    stored = await _stored_event(db_session, event.id)
    assert stored.status == GatewayEventStatus.ANOMALY
    assert [a["kind"] for a in _alerts(collaborator_calls)] == [
        "reconciliation.refund_without_payment"
    ]



@pytest.mark.asyncio
@pytest.mark.unit
async def test_refund_after_learner_cancelled_confirmed_registration(db_session):
    """Cancelling a confirmed seat refunds the registration; the gateway refund then lands."""
    cohort, receipt = await _registered(db_session)
    paid, _ = await _deliver(
        db_session, "payment.paid", receipt.payment_reference, receipt.amount_due
    )
    await reconciliation.process_gateway_event(db_session, paid.id)
    await orchestrator.cancel_registration(
        db_session, receipt.registration_id, actor_id="learner-1"
    )

    refund, _ = await _deliver(
        db_session, "refund.processed", receipt.payment_reference, receipt.amount_due
    )
    result = await reconciliation.process_gateway_event(db_session, refund.id)

    assert result.status == GatewayEventStatus.PROCESSED
    payment = await _payment(db_session, receipt.payment_reference)
    assert payment.status == PaymentStatus.REFUNDED
    assert await _enrolled(db_session, cohort.id) == 0
    assert await _transition_count(db_session, receipt.registration_id) == 2


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_processing_failure_backs_off_then_gives_up(db_session, collaborator_calls):
    event, _ = await _deliver(db_session, "payment.paid", "REG-ANY", 100)
    now = utc_now()

    first = await reconciliation.record_processing_failure(
        db_session, event.id, "connection reset", now
    )
    assert first.attempts == 1
    assert first.status == GatewayEventStatus.RECEIVED
    assert first.next_attempt_at == now + timedelta(
        seconds=settings.GATEWAY_EVENT_RETRY_BASE_SECONDS
    )

    second = await reconciliation.record_processing_failure(
        db_session, event.id, "connection reset", now
    )
    assert second.next_attempt_at == now + timedelta(
        seconds=2 * settings.GATEWAY_EVENT_RETRY_BASE_SECONDS
    )

    for _ in range(settings.GATEWAY_EVENT_MAX_ATTEMPTS - 2):
        last = await reconciliation.record_processing_failure(
            db_session, event.id, "connection reset", now
        )

    assert last.status == GatewayEventStatus.FAILED
    assert last.next_attempt_at is None
    assert [a["kind"] for a in _alerts(collaborator_calls)] == [
        "reconciliation.processing_failed"
    ]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_due_events_respect_intake_grace_and_backoff(db_session):
    fresh, _ = await _deliver(db_session, "payment.paid", "REG-A", 100)
    retried, _ = await _deliver(db_session, "payment.paid", "REG-B", 100)
    now = utc_now()
    await reconciliation.record_processing_failure(db_session, retried.id, "boom", now)

    assert await reconciliation.due_event_ids(db_session, now) == []

    later = now + timedelta(minutes=1)
    due = await reconciliation.due_event_ids(db_session, later)

    assert set(due) == {fresh.id, retried.id}
