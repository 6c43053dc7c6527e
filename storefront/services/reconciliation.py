"""
Stripe event reconciliation.

Every verified event gets a row in webhook_event_logs before any work is done,
so a crash mid-way still leaves something to inspect. checkout.session.completed
moves the matching order to PAID and runs its side effects once; redelivered
events are answered without touching anything.
"""
import enum
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.core import stripe_client
from storefront.core.clock import utcnow
from storefront.core.security import new_download_token
from storefront.models.invoice import Invoice
from storefront.models.order import InvalidOrderTransition, Order, OrderStatus
from storefront.models.webhook_event import WebhookEventLog, WebhookEventStatus
from storefront.services import notifications
from storefront.services.cart import InvalidBinaryError, InvalidProductsError, compute_cart_totals
from storefront.services.download_links import generate_download_links_for_order
from storefront.services.invoices import create_invoice_for_order, publish_invoice_pdf
from storefront.services.promo import increment_promo_usage

logger = logging.getLogger("storefront.webhooks")

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"


class Outcome(str, enum.Enum):
    PROCESSED = "PROCESSED"
    ERROR = "ERROR"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class ReconciliationResult:
    status: Outcome
    message: str
    order_id: str | None = None
    idempotent: bool = False
    # set only when this event moved the order to PAID
    order: Order | None = None
    invoice: Invoice | None = None


@dataclass
class WebhookReply:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def upsert_webhook_log(
    db: Session,
    event_id: str,
    event_type: str,
    status: WebhookEventStatus,
    **fields: Any,
) -> WebhookEventLog:
    """
    Insert or update the log row for event_id and commit. Fields passed as None
    leave the stored value alone.
    """
    values = {k: v for k, v in fields.items() if v is not None}
    log = db.scalar(select(WebhookEventLog).where(WebhookEventLog.event_id == event_id))

    if log is None:
        log = WebhookEventLog(event_id=event_id, type=event_type, status=status, **values)
        db.add(log)
        try:
            db.commit()
            return log
        except IntegrityError:
            # a concurrent delivery inserted it first
            db.rollback()
            log = db.scalar(
                select(WebhookEventLog).where(WebhookEventLog.event_id == event_id)
            )

    log.type = event_type
    log.status = status
    for key, value in values.items():
        setattr(log, key, value)
    db.commit()
    return log


def _as_uuid(value: Any) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _order_by_id(db: Session, raw_id: Any) -> Order | None:
    order_id = _as_uuid(raw_id)
    return db.get(Order, order_id) if order_id else None


def _by_metadata_order_id(db: Session, session: dict[str, Any]) -> Order | None:
    return _order_by_id(db, (session.get("metadata") or {}).get("orderId"))


def _by_client_reference_id(db: Session, session: dict[str, Any]) -> Order | None:
    return _order_by_id(db, session.get("client_reference_id"))


def _by_stripe_session_id(db: Session, session: dict[str, Any]) -> Order | None:
    session_id = session.get("id")
    if not session_id:
        return None
    return db.scalar(select(Order).where(Order.stripe_session_id == session_id))


OrderResolver = Callable[[Session, dict[str, Any]], Order | None]

# most reliable first
ORDER_RESOLVERS: tuple[OrderResolver, ...] = (
    _by_metadata_order_id,
    _by_client_reference_id,
    _by_stripe_session_id,
)


def resolve_order(db: Session, session: dict[str, Any]) -> Order | None:
    for resolver in ORDER_RESOLVERS:
        order = resolver(db, session)
        if order is not None:
            logger.info("order %s resolved via %s", order.id, resolver.__name__.lstrip("_"))
            return order
    return None


def _lines_for(order: Order, metadata: dict[str, Any]) -> list[dict[str, Any]]:
    """Cart lines from the session metadata, or from the stored order items."""
    raw = metadata.get("items")
    if raw:
        lines = json.loads(raw)
        if not isinstance(lines, list):
            raise ValueError("items metadata is not a list")
        return lines

    return [
        {
            "productId": str(item.product_id),
            "quantity": item.quantity,
            "binaryId": str(item.binary_id) if item.binary_id else None,
            "platform": item.platform.value if item.platform else None,
        }
        for item in order.items
    ]


def _address_from(details: dict[str, Any]) -> str | None:
    address = details.get("address") or {}
    parts = [
        address.get("line1"),
        address.get("line2"),
        " ".join(p for p in (address.get("postal_code"), address.get("city")) if p),
        address.get("country"),
    ]
    text = ", ".join(p for p in parts if p)
    return text or None


def _fill_billing(order: Order, session: dict[str, Any], metadata: dict[str, Any]) -> None:
    # first write wins
    details = session.get("customer_details") or {}
    order.billing_name_snapshot = (
        order.billing_name_snapshot or metadata.get("billingName") or details.get("name")
    )
    order.billing_email_snapshot = (
        order.billing_email_snapshot
        or metadata.get("billingEmail")
        or details.get("email")
        or session.get("customer_email")
    )
    order.billing_address_snapshot = (
        order.billing_address_snapshot
        or metadata.get("billingAddress")
        or _address_from(details)
    )


def process_checkout_completed(db: Session, event: dict[str, Any]) -> ReconciliationResult:
    event_id = event["id"]
    session = event["data"]["object"]
    metadata = session.get("metadata") or {}

    order = resolve_order(db, session)
    if order is None:
        logger.error(
            "no order for session event_id=%s session_id=%s", event_id, session.get("id")
        )
        return ReconciliationResult(Outcome.NOT_FOUND, "Order introuvable")

    order_id = str(order.id)
    if order.stripe_event_id == event_id or order.status == OrderStatus.PAID:
        logger.info("order already paid event_id=%s order_id=%s", event_id, order_id)
        return ReconciliationResult(
            Outcome.PROCESSED, "événement déjà traité", order_id, idempotent=True
        )

    try:
        lines = _lines_for(order, metadata)
    except ValueError:
        return ReconciliationResult(Outcome.ERROR, "items invalides", order_id)
    if not lines:
        return ReconciliationResult(Outcome.ERROR, "aucun produit", order_id)

    try:
        compute_cart_totals(db, lines)
    except InvalidProductsError:
        return ReconciliationResult(Outcome.ERROR, "produits invalides", order_id)
    except InvalidBinaryError:
        return ReconciliationResult(Outcome.ERROR, "binaire invalide", order_id)

    owner = order.user
    if owner is None:
        return ReconciliationResult(Outcome.ERROR, "utilisateur manquant", order_id)
    metadata_user = metadata.get("userId")
    if metadata_user and metadata_user != str(order.user_id):
        logger.warning(
            "metadata user differs from order owner order_id=%s metadata_user=%s owner=%s",
            order_id,
            metadata_user,
            order.user_id,
        )

    try:
        order.set_status(OrderStatus.PAID)
    except InvalidOrderTransition as exc:
        return ReconciliationResult(Outcome.ERROR, str(exc), order_id)

    order.paid_at = order.paid_at or utcnow()
    order.stripe_session_id = session.get("id") or order.stripe_session_id
    order.stripe_payment_intent_id = (
        stripe_client.extract_payment_intent_id(session.get("payment_intent"))
        or order.stripe_payment_intent_id
    )
    order.stripe_event_id = event_id
    amount_total = session.get("amount_total")
    if isinstance(amount_total, int):
        order.total_paid = amount_total
    order.currency = (session.get("currency") or order.currency).upper()
    _fill_billing(order, session, metadata)
    order.download_token = order.download_token or new_download_token()
    db.flush()

    generate_download_links_for_order(db, order)
    invoice = create_invoice_for_order(
        db,
        order,
        owner,
        billing_email=order.billing_email_snapshot,
        billing_name=order.billing_name_snapshot,
        billing_address=order.billing_address_snapshot,
    )
    if order.promo_code_id and order.discount_amount > 0:
        increment_promo_usage(db, order.promo_code_id)

    logger.info("order paid event_id=%s order_id=%s", event_id, order_id)
    return ReconciliationResult(
        Outcome.PROCESSED, "Commande validée", order_id, order=order, invoice=invoice
    )


def _object_ids(event_type: str, obj: dict[str, Any]) -> tuple[str | None, str | None]:
    """(session id, payment intent id) carried by the event object."""
    if event_type.startswith("checkout.session."):
        return obj.get("id"), stripe_client.extract_payment_intent_id(obj.get("payment_intent"))
    if event_type.startswith("payment_intent."):
        return None, obj.get("id")
    return None, None


def handle_event(db: Session, event: dict[str, Any]) -> WebhookReply:
    event_id = event["id"]
    event_type = event["type"]
    obj = (event.get("data") or {}).get("object") or {}

    existing = db.scalar(select(WebhookEventLog).where(WebhookEventLog.event_id == event_id))
    if existing is not None and existing.status == WebhookEventStatus.PROCESSED:
        logger.info("duplicate event skipped event_id=%s type=%s", event_id, event_type)
        return WebhookReply(200, {"received": True, "idempotent": True})

    session_id, payment_intent_id = _object_ids(event_type, obj)
    upsert_webhook_log(
        db,
        event_id,
        event_type,
        WebhookEventStatus.RECEIVED,
        session_id=session_id,
        payment_intent_id=payment_intent_id,
    )

    try:
        if event_type == CHECKOUT_COMPLETED:
            result = process_checkout_completed(db, event)
        elif event_type == PAYMENT_INTENT_SUCCEEDED:
            result = ReconciliationResult(
                Outcome.PROCESSED, "payment_intent.succeeded reçu (aucune action requise)"
            )
        else:
            result = ReconciliationResult(Outcome.PROCESSED, "Type d'événement ignoré")
    except Exception as exc:
        db.rollback()
        logger.exception("event processing failed event_id=%s type=%s", event_id, event_type)
        upsert_webhook_log(
            db,
            event_id,
            event_type,
            WebhookEventStatus.ERROR,
            message=str(exc)[:2000] or exc.__class__.__name__,
            raw_payload=obj,
        )
        return WebhookReply(400, {"received": False})

    failed = result.status != Outcome.PROCESSED
    if failed:
        db.rollback()
    upsert_webhook_log(
        db,
        event_id,
        event_type,
        WebhookEventStatus.ERROR if failed else WebhookEventStatus.PROCESSED,
        order_id=result.order_id,
        message=result.message,
        raw_payload=obj if failed else None,
    )

    if result.order is not None:
        notifications.send_order_confirmation_email(result.order)
        if result.invoice is not None:
            publish_invoice_pdf(result.invoice)
            notifications.send_invoice_available_email(result.invoice)

    logger.info(
        "event handled event_id=%s type=%s outcome=%s", event_id, event_type, result.status.value
    )
    body: dict[str, Any] = {"received": True}
    if result.idempotent:
        body["idempotent"] = True
    return WebhookReply(200, body)
