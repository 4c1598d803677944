"""Unit tests for the arq worker wrappers."""

import pytest
from arq import Retry
from services.registration_service import tasks, worker
from sqlalchemy.exc import OperationalError


@pytest.mark.unit
def test_worker_registers_every_job():
    names = {f.__name__ for f in worker.WorkerSettings.functions}

    assert names == {
        "task_promote_waitlist",
        "task_process_gateway_event",
        "task_expire_stale_registrations",
        "task_expire_waitlist_offers",
        "task_retry_pending_gateway_events",
        "task_fill_open_seats",
        "task_call_collaborator",
    }
    assert len(worker.WorkerSettings.cron_jobs) == 4


@pytest.mark.unit
def test_retry_backs_off_exponentially():
    assert worker._retry({"job_try": 1}, "job", Exception("x")).defer_score == 5000
    assert worker._retry({"job_try": 3}, "job", Exception("x")).defer_score == 20000
    assert worker._retry({"job_try": 20}, "job", Exception("x")).defer_score == 300000


@pytest.mark.asyncio
@pytest.mark.unit
async def test_storage_failure_becomes_retry(monkeypatch):
    async def _broken(cohort_id):
        raise OperationalError("UPDATE cohorts", {}, Exception("server closed the connection"))

    monkeypatch.setattr(tasks, "promote_waitlist", _broken)

    with pytest.raises(Retry):
        await worker.task_promote_waitlist({"job_try": 2}, "cohort-id")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_collaborator_job_delivers_the_call(collaborator_calls):
    await worker.task_call_collaborator(
        {"job_try": 1},
        "notify",
        {"learner_id": "learner-1", "template_kind": "registration_confirmed", "payload": {}},
    )

    assert [c["path"] for c in collaborator_calls] == ["/internal/communications/notify"]
    assert collaborator_calls[0]["json"]["template"] == "registration_confirmed"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_collaborator_job_ignores_unknown_actions(collaborator_calls):
    await worker.task_call_collaborator({"job_try": 1}, "raise_alert", {"kind": "x"})

    assert collaborator_calls == []
