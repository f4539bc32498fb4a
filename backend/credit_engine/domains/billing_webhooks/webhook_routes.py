# Canonical webhook route for billing processor events.
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from ...components.billing_events.gateway import WebhookGateway
from ...deps import get_webhook_gateway
from ...platform.config import settings
from ...schemas.subscription import WebhookAck

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request, gateway: WebhookGateway = Depends(get_webhook_gateway)):
    """Verify, dedup and apply a Stripe event.

    Any 2xx tells Stripe to stop redelivering; an unhandled error returns 500
    so the same event is delivered again and reprocessed.
    """
    if settings.MVP_DISABLE_STRIPE:
        raise HTTPException(status_code=503, detail="Stripe integration is disabled for MVP")
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Stripe webhook secret is not configured")
    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature", "")

    result = await run_in_threadpool(gateway.ingest, payload, sig_header)
    return WebhookAck(
        status="duplicate" if result.duplicate else "received",
        event_id=result.event_id,
        outcome=result.outcome,
    )
