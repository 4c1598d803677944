"""Payment gateway webhook intake."""

import hashlib
import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.registration_service.schemas import WebhookAck
from services.registration_service.services import followups, reconciliation
from services.registration_service.services.errors import StorageUnavailableError
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/registrations/webhooks", tags=["webhooks"])
settings = get_settings()
logger = get_logger(__name__)

SIGNATURE_HEADER = "x-gateway-signature"


def verify_gateway_signature(raw_body: bytes, signature: str) -> bool:
    """HMAC-SHA512 of the raw body with the shared webhook secret."""
    expected = hmac.new(
        settings.GATEWAY_WEBHOOK_SECRET.encode("utf-8"),
        raw_body,
        hashlib.sha512,
    ).hexdigest()
    return hmac.compare_digest(expected, signature)


@router.post("/gateway", response_model=WebhookAck)
async def gateway_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
):
    """
    Gateway webhook endpoint (no auth; verified by x-gateway-signature).

    Acknowledges as soon as the event is durably recorded. Processing runs
    in the worker so the gateway never retries because of our internal
    failures.
    """
    raw = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature or not verify_gateway_signature(raw, signature):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )

    try:
        payload = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payload"
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payload"
        )

    try:
        event, created = await reconciliation.record_gateway_event(db, payload, raw)
    except DBAPIError as exc:
        # Not durably recorded: let the gateway redeliver.
        await db.rollback()
        logger.error("Could not record gateway event: %s", exc)
        raise StorageUnavailableError() from exc

    if event is not None and created:
        await followups.schedule_gateway_event(event.id)

    return WebhookAck(received=True)
