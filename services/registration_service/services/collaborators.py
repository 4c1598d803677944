"""Calls out to collaborator services.

All of these are best-effort: a failure is logged and swallowed so that a
committed transition is never undone by a downstream outage.
"""

from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.service_client import internal_post

logger = get_logger(__name__)
settings = get_settings()


async def _post(service_url: str, path: str, payload: dict[str, Any], label: str) -> bool:
    try:
        resp = await internal_post(
            service_url=service_url,
            path=path,
            calling_service=settings.SERVICE_NAME,
            json=payload,
            timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as exc:
        logger.warning("%s request failed: %s", label, exc)
        return False

    if resp.status_code >= 400:
        logger.warning(
            "%s failed (http %d): %s", label, resp.status_code, resp.text
        )
        return False
    return True


async def notify(learner_id: str, template_kind: str, payload: dict[str, Any]) -> bool:
    return await _post(
        settings.COMMUNICATIONS_SERVICE_URL,
        "/internal/communications/notify",
        {"learner_id": learner_id, "template": template_kind, "data": payload},
        f"Notification {template_kind} for {learner_id}",
    )


async def record_audit(fact: dict[str, Any]) -> bool:
    return await _post(
        settings.AUDIT_SERVICE_URL,
        "/internal/audit/events",
        fact,
        f"Audit {fact.get('action')}",
    )


async def dispatch_enrollment_confirmed(
    *,
    registration_id: str,
    learner_id: str,
    cohort_id: str,
) -> None:
    """Tell the LMS and the certificate service about a confirmed seat."""
    payload = {
        "registration_id": registration_id,
        "learner_id": learner_id,
        "cohort_id": cohort_id,
    }
    await _post(
        settings.LMS_SERVICE_URL,
        "/internal/lms/enrollments",
        payload,
        f"LMS enrollment for {registration_id}",
    )
    await _post(
        settings.CERTIFICATE_SERVICE_URL,
        "/internal/certificates/enrollments",
        payload,
        f"Certificate registration for {registration_id}",
    )


async def raise_alert(kind: str, details: Optional[dict[str, Any]] = None) -> bool:
    """Operational alert for money the engine cannot explain."""
    return await _post(
        settings.ALERTS_SERVICE_URL,
        "/internal/alerts",
        {"source": settings.SERVICE_NAME, "kind": kind, "details": details or {}},
        f"Alert {kind}",
    )
