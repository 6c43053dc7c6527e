import logging
import uuid

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Response
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.core import stripe_client
from storefront.core.admin import require_admin
from storefront.core.deps import get_current_user
from storefront.db.session import get_db
from storefront.models.order import Order, OrderStatus
from storefront.models.user import User
from storefront.models.webhook_event import WebhookEventLog
from storefront.schemas.checkout import (
    CheckoutSessionIn,
    CheckoutUrlOut,
    ConfirmationDownloadOut,
    ConfirmationOrderOut,
    ConfirmationOut,
)
from storefront.schemas.webhook import WebhookEventLogOut, WebhookEventsOut
from storefront.services.checkout import create_download_checkout
from storefront.services.download_links import first_active_link

logger = logging.getLogger("storefront.payments")

router = APIRouter(prefix="/api/payments", tags=["payments"])

DEBUG_EVENTS_LIMIT = 20


@router.post("/checkout-sessions", response_model=CheckoutUrlOut, status_code=201)
def create_checkout_session(
    payload: CheckoutSessionIn,
    response: Response,
    idempotency_key: str | None = Header(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    result = create_download_checkout(db, user, payload, idempotency_key)
    response.status_code = result.status_code
    return CheckoutUrlOut(url=result.url)


def _find_user_order(
    db: Session, user: User, session_id: str | None, order_id: str | None
) -> Order | None:
    if order_id:
        try:
            oid = uuid.UUID(order_id)
        except ValueError:
            oid = None
        if oid:
            order = db.scalar(select(Order).where(Order.id == oid, Order.user_id == user.id))
            if order:
                return order
    if session_id:
        return db.scalar(
            select(Order).where(Order.stripe_session_id == session_id, Order.user_id == user.id)
        )
    return None


@router.get("/checkout/confirmation", response_model=ConfirmationOut)
def checkout_confirmation(
    session_id: str | None = None,
    order_id: str | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if not session_id and not order_id:
        raise HTTPException(status_code=400, detail="session_id ou order_id requis.")

    order = _find_user_order(db, user, session_id, order_id)

    # the webhook may not have landed yet: the client keeps polling
    if order is None:
        return JSONResponse(
            status_code=202, content={"message": "Commande en cours de traitement."}
        )
    if order.status != OrderStatus.PAID:
        return JSONResponse(
            status_code=202,
            content={
                "message": "Paiement en cours de confirmation.",
                "status": order.status.value,
            },
        )

    first_item = order.items[0] if order.items else None
    active = first_active_link(order)
    download = None
    if active:
        item, link = active
        download = ConfirmationDownloadOut(token=link.token, product_name=item.product_name_snapshot)

    return ConfirmationOut(
        status=order.status.value,
        order=ConfirmationOrderOut(
            id=str(order.id),
            order_number=order.order_number,
            paid_at=order.paid_at,
            currency=order.currency,
            total_paid=order.total_paid,
            first_product_name=first_item.product_name_snapshot if first_item else "",
        ),
        order_download_token=order.download_token,
        download=download,
    )


@router.get("/stripe/debug-last-events", response_model=WebhookEventsOut)
def debug_last_events(
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    rows = db.scalars(
        select(WebhookEventLog)
        .order_by(WebhookEventLog.created_at.desc())
        .limit(DEBUG_EVENTS_LIMIT)
    ).all()
    return WebhookEventsOut(events=[WebhookEventLogOut.model_validate(r) for r in rows])


@router.get("/stripe/session/{session_id}")
def debug_stripe_session(
    session_id: str,
    _admin: User = Depends(require_admin),
):
    try:
        session = stripe_client.retrieve_checkout_session(session_id)
    except stripe.StripeError:
        logger.warning("stripe session lookup failed session_id=%s", session_id, exc_info=True)
        raise HTTPException(status_code=404, detail="Session Stripe introuvable.")

    metadata = getattr(session, "metadata", None)
    return {
        "id": session.id,
        "status": getattr(session, "status", None),
        "paymentStatus": getattr(session, "payment_status", None),
        "amountTotal": getattr(session, "amount_total", None),
        "currency": getattr(session, "currency", None),
        "clientReferenceId": getattr(session, "client_reference_id", None),
        "paymentIntentId": stripe_client.extract_payment_intent_id(
            getattr(session, "payment_intent", None)
        ),
        "metadata": {k: metadata[k] for k in metadata.keys()} if metadata else {},
    }
