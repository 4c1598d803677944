"""Deferred work handed to the arq worker after a commit."""

import uuid
from typing import Any

from libs.common.arq_config import enqueue_job
from libs.common.logging import get_logger

logger = get_logger(__name__)

# Collaborator calls the worker is allowed to make on our behalf.
COLLABORATOR_ACTIONS = frozenset({"notify", "record_audit", "dispatch_enrollment_confirmed"})


async def schedule_waitlist_promotion(cohort_id: uuid.UUID) -> bool:
    """One job promotes one learner; a second free seat gets its own job."""
    queued = await enqueue_job("task_promote_waitlist", str(cohort_id))
    if queued:
        logger.info("Scheduled waitlist promotion for cohort %s", cohort_id)
    return queued


async def schedule_gateway_event(event_id: uuid.UUID) -> bool:
    # Deduplicated by job id; the retry cron picks up anything not queued.
    return await enqueue_job(
        "task_process_gateway_event",
        str(event_id),
        _job_id=f"gateway-event:{event_id}",
    )


async def schedule_collaborator_call(action: str, **arguments: Any) -> bool:
    """Queue a notification, audit fact or enrollment dispatch for the worker.

    Requests never wait on collaborator latency. A call that cannot be queued
    is dropped with a warning.
    """
    if action not in COLLABORATOR_ACTIONS:
        raise ValueError(f"Unknown collaborator action {action!r}")
    queued = await enqueue_job("task_call_collaborator", action, arguments)
    if not queued:
        logger.warning("Dropped collaborator call %s: queue unavailable", action)
    return queued
