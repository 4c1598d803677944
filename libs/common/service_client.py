"""Outbound HTTP to collaborator services.

Notifications, audit facts, LMS enrollment, certificate registration and
operational alerts all leave the registration service through
``internal_post``. Every call is signed with a short-lived service-role JWT
and carries the inbound request ID so the downstream logs can be joined.
"""

from __future__ import annotations

import time
from typing import Any

import httpx
from libs.auth.dependencies import _service_role_jwt
from libs.common.logging import get_logger, get_request_id

logger = get_logger(__name__)

COLLABORATOR_TIMEOUT = 3.0


def build_service_headers(calling_service: str) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {_service_role_jwt(calling_service)}",
        "X-Caller-Service": calling_service,
    }
    request_id = get_request_id()
    if request_id:
        headers["X-Request-ID"] = request_id
    return headers


async def internal_post(
    *,
    service_url: str,
    path: str,
    calling_service: str,
    json: Any = None,
    timeout: float = COLLABORATOR_TIMEOUT,
) -> httpx.Response:
    """POST a JSON body to a collaborator and return its raw response.

    Status codes are not interpreted here; callers decide what a 4xx/5xx
    means for them. Transport failures surface as ``httpx.HTTPError``.
    """
    started = time.perf_counter()
    async with httpx.AsyncClient(
        base_url=service_url.rstrip("/"), timeout=timeout
    ) as client:
        response = await client.post(
            path, json=json, headers=build_service_headers(calling_service)
        )
    logger.debug(
        "POST %s%s -> %d in %.1fms",
        service_url,
        path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response
