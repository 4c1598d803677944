"""ARQ worker for registration sweeps, waitlist promotion and reconciliation."""

from arq import Retry, cron
from libs.common.arq_config import backoff_seconds, get_redis_settings
from libs.common.logging import configure_logging, get_logger, job_context
from services.registration_service.services.errors import StorageUnavailableError
from sqlalchemy.exc import DBAPIError

configure_logging()
logger = get_logger(__name__)

# Storage-failure retry policy for promotion and sweeps.
RETRY_BASE_SECONDS = 5
RETRY_MAX_SECONDS = 300


def _retry(ctx: dict, name: str, exc: Exception) -> Retry:
    attempt = ctx.get("job_try", 1)
    defer = backoff_seconds(attempt, RETRY_BASE_SECONDS, RETRY_MAX_SECONDS)
    logger.warning("%s failed on try %d, retrying in %ds: %s", name, attempt, defer, exc)
    return Retry(defer=defer)


async def task_promote_waitlist(ctx: dict, cohort_id: str):
    from services.registration_service.tasks import promote_waitlist

    with job_context("promote_waitlist", ctx.get("job_id")):
        logger.info("Running: promote_waitlist(%s)", cohort_id)
        try:
            return await promote_waitlist(cohort_id)
        except (DBAPIError, StorageUnavailableError) as exc:
            raise _retry(ctx, "promote_waitlist", exc) from exc


async def task_process_gateway_event(ctx: dict, event_id: str):
    from services.registration_service.tasks import process_gateway_event

    with job_context("process_gateway_event", ctx.get("job_id")):
        logger.info("Running: process_gateway_event(%s)", event_id)
        try:
            await process_gateway_event(event_id)
        except DBAPIError as exc:
            raise _retry(ctx, "process_gateway_event", exc) from exc


async def task_expire_stale_registrations(ctx: dict):
    from services.registration_service.tasks import expire_stale_registrations

    with job_context("expire_stale_registrations", ctx.get("job_id")):
        logger.info("Running: expire_stale_registrations")
        try:
            return await expire_stale_registrations()
        except (DBAPIError, StorageUnavailableError) as exc:
            raise _retry(ctx, "expire_stale_registrations", exc) from exc


async def task_expire_waitlist_offers(ctx: dict):
    from services.registration_service.tasks import expire_waitlist_offers

    with job_context("expire_waitlist_offers", ctx.get("job_id")):
        logger.info("Running: expire_waitlist_offers")
        try:
            return await expire_waitlist_offers()
        except DBAPIError as exc:
            raise _retry(ctx, "expire_waitlist_offers", exc) from exc


async def task_retry_pending_gateway_events(ctx: dict):
    from services.registration_service.tasks import retry_pending_gateway_events

    with job_context("retry_pending_gateway_events", ctx.get("job_id")):
        logger.info("Running: retry_pending_gateway_events")
        try:
            return await retry_pending_gateway_events()
        except DBAPIError as exc:
            raise _retry(ctx, "retry_pending_gateway_events", exc) from exc


async def task_fill_open_seats(ctx: dict):
    from services.registration_service.tasks import fill_open_seats

    with job_context("fill_open_seats", ctx.get("job_id")):
        logger.info("Running: fill_open_seats")
        return await fill_open_seats()


async def task_call_collaborator(ctx: dict, action: str, arguments: dict):
    from services.registration_service.tasks import call_collaborator

    with job_context("call_collaborator", ctx.get("job_id")):
        logger.info("Running: call_collaborator(%s)", action)
        await call_collaborator(action, arguments)


class WorkerSettings:
    redis_settings = get_redis_settings()
    max_tries = 6

    functions = [
        task_promote_waitlist,
        task_process_gateway_event,
        task_expire_stale_registrations,
        task_expire_waitlist_offers,
        task_retry_pending_gateway_events,
        task_fill_open_seats,
        task_call_collaborator,
    ]

    cron_jobs = [
        cron(
            task_expire_stale_registrations,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
            run_at_startup=True,
        ),
        cron(
            task_expire_waitlist_offers,
            minute={2, 17, 32, 47},
            run_at_startup=True,
        ),
        cron(task_retry_pending_gateway_events, second={30}),
        cron(task_fill_open_seats, minute={7}),
    ]
