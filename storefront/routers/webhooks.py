import logging

import stripe
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storefront.core import stripe_client
from storefront.core.config import settings
from storefront.db.session import get_db
from storefront.services.reconciliation import handle_event

logger = logging.getLogger("storefront.webhooks")

router = APIRouter(prefix="/api/payments/stripe", tags=["webhooks"])


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    secret = settings.active_webhook_secret
    if not secret:
        logger.error("webhook secret missing mode=%s", settings.stripe_mode)
        return JSONResponse(status_code=500, content={"received": False})

    # 1) raw payload: the signature covers the exact bytes
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        return JSONResponse(
            status_code=400,
            content={"received": False, "message": "Signature Stripe manquante."},
        )

    # 2) verify signature
    try:
        event = stripe_client.verify_webhook(payload, sig_header, secret)
    except (stripe.SignatureVerificationError, ValueError):
        logger.warning(
            "webhook signature rejected secret_source=%s", settings.active_webhook_secret_source
        )
        return JSONResponse(
            status_code=400,
            content={"received": False, "message": "Signature Stripe invalide."},
        )

    logger.info("webhook received event_id=%s type=%s", event["id"], event["type"])

    # 3) reconcile
    reply = handle_event(db, event)
    return JSONResponse(status_code=reply.status_code, content=reply.body)
