"""Unit tests for the capacity ledger (reserve / release / transfer)."""

import asyncio
import uuid

import pytest
from services.registration_service.models import (
    Cohort,
    SeatHold,
    SeatHolderKind,
    SeatHoldStatus,
)
from services.registration_service.services import capacity
from services.registration_service.services.capacity import ReservationOutcome
from sqlalchemy import select
from tests.factories import CohortFactory


async def _seed_cohort(db, **overrides) -> Cohort:
    cohort = CohortFactory.create(**overrides)
    db.add(cohort)
    await db.commit()
    return cohort


async def _enrolled(session_factory, cohort_id) -> int:
    async with session_factory() as db:
        return (
            await db.execute(select(Cohort.enrolled_count).where(Cohort.id == cohort_id))
        ).scalar_one()


# ---------------------------------------------------------------------------
# try_reserve
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reserve_takes_a_seat_and_creates_hold(db_session, session_factory):
    cohort = await _seed_cohort(db_session, capacity=2)

    reservation = await capacity.try_reserve(db_session, cohort.id)
    await db_session.commit()

    assert reservation.reserved
    assert reservation.hold_id is not None
    assert await _enrolled(session_factory, cohort.id) == 1

    hold = (
        await db_session.execute(select(SeatHold).where(SeatHold.id == reservation.hold_id))
    ).scalar_one()
    assert hold.status == SeatHoldStatus.HELD
    assert hold.holder_kind == SeatHolderKind.REGISTRATION


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reserve_on_full_cohort_returns_full(db_session, session_factory):
    cohort = await _seed_cohort(db_session, capacity=1, enrolled_count=1)

    reservation = await capacity.try_reserve(db_session, cohort.id)
    await db_session.commit()

    assert reservation.outcome == ReservationOutcome.FULL
    assert reservation.hold_id is None
    assert await _enrolled(session_factory, cohort.id) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_zero_capacity_cohort_is_always_full(db_session):
    cohort = await _seed_cohort(db_session, capacity=0)

    reservation = await capacity.try_reserve(db_session, cohort.id)

    assert not reservation.reserved


@pytest.mark.asyncio
@pytest.mark.unit
async def test_concurrent_reservations_for_last_seat(session_factory):
    """Two sessions race for one seat: exactly one wins."""
    async with session_factory() as db:
        cohort = await _seed_cohort(db, capacity=1)

    async def _attempt():
        async with session_factory() as db:
            reservation = await capacity.try_reserve(db, cohort.id)
            await db.commit()
            return reservation

    first, second = await asyncio.gather(_attempt(), _attempt())

    outcomes = sorted([first.outcome, second.outcome], key=lambda o: o.value)
    assert outcomes == [ReservationOutcome.FULL, ReservationOutcome.RESERVED]
    assert await _enrolled(session_factory, cohort.id) == 1

    async with session_factory() as db:
        assert await capacity.count_held(db, cohort.id) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_many_concurrent_reservations_never_exceed_capacity(session_factory):
    async with session_factory() as db:
        cohort = await _seed_cohort(db, capacity=3)

    async def _attempt():
        async with session_factory() as db:
            reservation = await capacity.try_reserve(db, cohort.id)
            await db.commit()
            return reservation.reserved

    results = await asyncio.gather(*[_attempt() for _ in range(6)])

    assert sum(results) == 3
    assert await _enrolled(session_factory, cohort.id) == 3


# ---------------------------------------------------------------------------
# release
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_release_is_idempotent_per_hold(db_session, session_factory):
    """Releasing the same hold twice gives back exactly one seat."""
    cohort = await _seed_cohort(db_session, capacity=2)
    other = await capacity.try_reserve(db_session, cohort.id)
    reservation = await capacity.try_reserve(db_session, cohort.id)
    await db_session.commit()
    assert await _enrolled(session_factory, cohort.id) == 2

    assert await capacity.release(db_session, reservation.hold_id) is True
    await db_session.commit()
    assert await capacity.release(db_session, reservation.hold_id) is False
    await db_session.commit()

    assert await _enrolled(session_factory, cohort.id) == 1
    assert other.reserved


@pytest.mark.asyncio
@pytest.mark.unit
async def test_release_unknown_or_missing_hold(db_session):
    assert await capacity.release(db_session, None) is False
    assert await capacity.release(db_session, uuid.uuid4()) is False


@pytest.mark.asyncio
@pytest.mark.unit
async def test_release_never_drives_counter_negative(db_session, session_factory):
    """A hold whose seat was already zeroed out does not underflow the ledger."""
    cohort = await _seed_cohort(db_session, capacity=1)
    hold = SeatHold(
        cohort_id=cohort.id,
        holder_kind=SeatHolderKind.REGISTRATION,
        status=SeatHoldStatus.HELD,
    )
    db_session.add(hold)
    await db_session.commit()

    assert await capacity.release(db_session, hold.id) is True
    await db_session.commit()

    assert await _enrolled(session_factory, cohort.id) == 0


# ---------------------------------------------------------------------------
# transfer_hold
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_transfer_hold_relabels_live_hold_only(db_session):
    cohort = await _seed_cohort(db_session, capacity=1)
    reservation = await capacity.try_reserve(
        db_session, cohort.id, SeatHolderKind.WAITLIST_OFFER
    )
    await db_session.commit()

    assert await capacity.transfer_hold(
        db_session, reservation.hold_id, SeatHolderKind.REGISTRATION
    )
    await capacity.release(db_session, reservation.hold_id)
    await db_session.commit()

    assert not await capacity.transfer_hold(
        db_session, reservation.hold_id, SeatHolderKind.WAITLIST_OFFER
    )

    hold = (
        await db_session.execute(
            select(SeatHold)
            .where(SeatHold.id == reservation.hold_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert hold.holder_kind == SeatHolderKind.REGISTRATION
    assert hold.status == SeatHoldStatus.RELEASED
