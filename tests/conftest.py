import httpx
import pytest
from services.registration_service import tasks
from services.registration_service.services import collaborators, followups


@pytest.fixture(autouse=True)
def enqueued_jobs(monkeypatch) -> list:
    """
    Every job handed to arq, as ``(function, args, kwargs)``.
    Replaces the Redis pool so no test needs a broker. Collaborator calls
    are delivered straight away, the way the worker would, and land in
    ``collaborator_calls`` instead of this list.
    """
    jobs = []

    async def _fake_enqueue(function, *args, **kwargs):
        if function == "task_call_collaborator":
            await tasks.call_collaborator(*args)
            return True
        jobs.append((function, args, kwargs))
        return True

    monkeypatch.setattr(followups, "enqueue_job", _fake_enqueue)
    return jobs


@pytest.fixture
def queued_collaborator_calls(monkeypatch) -> list:
    """Collaborator jobs left on the queue, as ``(action, arguments)``."""
    queued = []

    async def _record_only(function, *args, **kwargs):
        if function == "task_call_collaborator":
            queued.append(args)
        return True

    monkeypatch.setattr(followups, "enqueue_job", _record_only)
    return queued


@pytest.fixture(autouse=True)
def collaborator_calls(monkeypatch) -> list:
    """Every internal POST to a collaborator service, as ``{"path", "json"}``."""
    calls = []

    async def _fake_post(*, service_url, path, calling_service, json=None, timeout=None):
        calls.append({"path": path, "json": json})
        return httpx.Response(
            202, request=httpx.Request("POST", f"{service_url}{path}")
        )

    monkeypatch.setattr(collaborators, "internal_post", _fake_post)
    return calls


@pytest.fixture
def task_sessions(monkeypatch, session_factory):
    """Point background jobs at the test database."""
    monkeypatch.setattr(tasks, "AsyncSessionLocal", session_factory)
    return session_factory
