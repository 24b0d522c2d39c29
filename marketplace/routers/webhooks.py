"""Payment processor webhook endpoint."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.database import get_db
from marketplace.errors import ExternalServiceError
from marketplace.services import payment_events
from marketplace.services.gateway import PaymentGateway, get_gateway
from marketplace.services.secrets import get_webhook_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments")
async def receive_payment_event(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict:
    """Verify and apply a processor event.

    Not rate limited: the processor retries on any non-2xx response, so
    throttling would only delay funding confirmation.
    """
    signature = request.headers.get("Stripe-Signature")
    if not signature:
        raise HTTPException(status_code=400, detail="Missing signature header")
    raw_body = await request.body()

    try:
        event = gateway.verify_webhook(raw_body, signature, get_webhook_secret())
    except ExternalServiceError as exc:
        logger.warning("Rejected payment webhook: %s", exc.detail)
        raise HTTPException(status_code=400, detail=exc.detail)

    record, duplicate = await payment_events.handle_event(db, event)
    return {
        "received": True,
        "event_id": record.event_id,
        "status": record.status.value,
        "duplicate": duplicate,
    }
