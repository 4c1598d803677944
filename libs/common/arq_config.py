"""ARQ (Async Redis Queue) configuration utilities.

Provides helpers for parsing Redis connection settings from the application
config into ARQ-compatible RedisSettings, a lazily created shared pool for
enqueueing follow-up jobs from request handlers, and the backoff policy used
by retried jobs.
"""

from typing import Any, Optional
from urllib.parse import urlparse

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from redis.exceptions import RedisError

from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)

_pool: Optional[ArqRedis] = None


def get_redis_settings() -> RedisSettings:
    """Parse REDIS_URL from application settings into ARQ RedisSettings."""
    settings = get_settings()
    parsed = urlparse(settings.REDIS_URL)

    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        database=int(parsed.path.lstrip("/") or "0"),
        password=parsed.password,
        conn_timeout=2,
        conn_retries=1,
    )


async def get_arq_pool() -> ArqRedis:
    global _pool
    if _pool is None:
        _pool = await create_pool(get_redis_settings())
    return _pool


async def close_arq_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def enqueue_job(function: str, *args: Any, **kwargs: Any) -> bool:
    """Enqueue a job by function name.

    Returns False instead of raising when Redis is unreachable: every job we
    enqueue also has a cron sweep that picks up the same work.
    """
    try:
        pool = await get_arq_pool()
        job = await pool.enqueue_job(function, *args, **kwargs)
    except (RedisError, OSError) as exc:
        logger.warning("Could not enqueue %s%r: %s", function, args, exc)
        return False
    if job is None:
        # Same _job_id already queued.
        logger.debug("Job %s%r already queued", function, args)
    return True


def backoff_seconds(attempt: int, base: int, cap: int) -> int:
    """Exponential backoff: base, 2*base, 4*base … capped at ``cap``."""
    attempt = max(attempt, 1)
    return min(cap, base * (2 ** (attempt - 1)))
