"""
Checkout for downloadable products.

A priced cart becomes an Order. When a promo code covers the whole amount the
order is settled on the spot (links, invoice, emails); otherwise the order stays
PENDING and the buyer is sent to a Stripe-hosted checkout page. The webhook
reconciler finishes the job once Stripe reports the payment.
"""
import json
import logging
import re
import uuid
from dataclasses import dataclass

import stripe
from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.core import stripe_client
from storefront.core.clock import utcnow
from storefront.core.config import settings
from storefront.core.errors import BadRequestError, ConflictError, UpstreamError
from storefront.core.security import new_download_token
from storefront.models.order import Order, OrderItem, OrderStatus, OrderType
from storefront.models.promo_code import PromoCode
from storefront.models.user import User
from storefront.schemas.checkout import BillingIn, CheckoutSessionIn
from storefront.services import notifications
from storefront.services.cart import CartComputation, CartError, compute_cart_totals
from storefront.services.download_links import generate_download_links_for_order
from storefront.services.invoices import create_invoice_for_order, publish_invoice_pdf
from storefront.services.order_numbers import generate_order_number
from storefront.services.promo import increment_promo_usage, validate_promo_code_for_total

logger = logging.getLogger("storefront.checkout")

SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"
SESSION_PARAM_RE = re.compile(r"[?&]session_id=\{CHECKOUT_SESSION_ID\}")

STRIPE_METADATA_VALUE_MAX = 500

MSG_EMPTY_CART = "La liste des produits est vide ou invalide."
MSG_TERMS = (
    "Merci d'accepter les conditions d'utilisation et le contrat de licence avant de payer."
)
MSG_INVALID_PRODUCTS = (
    "Certains produits demandés sont introuvables ou ne sont plus disponibles."
)
MSG_PRICING_FAILED = "Impossible de calculer le panier pour le paiement."
MSG_INVALID_PROMO = "Ce code promo est invalide, expiré ou n'est plus disponible."
MSG_STRIPE_FAILED = "Erreur lors de la création de la session de paiement Stripe."
MSG_ALREADY_PROCESSED = "Cette commande a déjà été traitée."


@dataclass
class Billing:
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    address1: str = ""
    address2: str = ""
    postal_code: str = ""
    city: str = ""
    country: str = "France"
    email: str = ""
    vat_number: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def address(self) -> str:
        parts = [
            self.address1,
            self.address2,
            f"{self.postal_code} {self.city}".strip(),
            self.country,
        ]
        return ", ".join(p for p in parts if p)


@dataclass
class CheckoutResult:
    url: str
    status_code: int = 201


def _clean(value: str | None) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_billing(raw: BillingIn | None) -> Billing:
    raw = raw or BillingIn()
    return Billing(
        first_name=_clean(raw.first_name),
        last_name=_clean(raw.last_name),
        company=_clean(raw.company),
        address1=_clean(raw.address1),
        address2=_clean(raw.address2),
        postal_code=_clean(raw.postal_code),
        city=_clean(raw.city),
        country=_clean(raw.country) or "France",
        email=_clean(raw.email),
        vat_number=_clean(raw.vat_number),
    )


def billing_validation_error(billing: Billing) -> str | None:
    if not billing.first_name or not billing.last_name:
        return "Le nom et le prénom sont requis."
    if not (billing.address1 and billing.postal_code and billing.city and billing.country):
        return "L'adresse de facturation est incomplète."
    if not billing.email:
        return "L'email de facturation est requis."
    try:
        validate_email(billing.email, check_deliverability=False)
    except EmailNotValidError:
        return "L'email de facturation n'est pas valide."
    return None


def _success_base() -> str:
    return settings.STRIPE_SUCCESS_URL or f"{settings.frontend_base_url}/checkout/success"


def _cancel_url() -> str:
    return settings.STRIPE_CANCEL_URL or f"{settings.frontend_base_url}/panier"


def build_success_url(base: str) -> str:
    if SESSION_PLACEHOLDER in base:
        return base
    sep = "&" if "?" in base else "?"
    return f"{base}{sep}session_id={SESSION_PLACEHOLDER}"


def build_free_order_success_url(base: str, order_id: uuid.UUID) -> str:
    cleaned = SESSION_PARAM_RE.sub("", base)
    sep = "&" if "?" in cleaned else "?"
    return f"{cleaned}{sep}order_id={order_id}"


def _build_order(
    db: Session,
    user: User,
    cart: CartComputation,
    promo: PromoCode | None,
    discount_cents: int,
    billing: Billing,
    payload: CheckoutSessionIn,
    checkout_key: str | None,
) -> Order:
    payable = cart.total_cents - discount_cents
    if payable <= 0:
        first = cart.products[cart.items[0].product_id]
        currency = (first.currency or settings.CURRENCY).upper()
    else:
        currency = settings.CURRENCY.upper()

    order = Order(
        user_id=user.id,
        order_number=generate_order_number(db, OrderType.DOWNLOADABLE),
        order_type=OrderType.DOWNLOADABLE,
        status=OrderStatus.PENDING,
        total_before_discount=cart.total_cents,
        discount_amount=max(discount_cents, 0),
        total_paid=max(payable, 0),
        currency=currency,
        promo_code_id=promo.id if promo else None,
        billing_name_snapshot=billing.full_name,
        billing_email_snapshot=billing.email,
        billing_address_snapshot=billing.address or None,
        accepted_terms=payload.accepted_terms,
        accepted_license=payload.accepted_license,
        checkout_key=checkout_key,
    )
    for position, line in enumerate(cart.items):
        product = cart.products[line.product_id]
        order.items.append(
            OrderItem(
                position=position,
                product_id=product.id,
                product_name_snapshot=product.name,
                price_cents=product.price_cents,
                quantity=line.quantity,
                line_total=product.price_cents * line.quantity,
                binary_id=uuid.UUID(line.binary_id) if line.binary_id else None,
                platform=line.platform,
            )
        )
    db.add(order)
    return order


def _settle_free_order(
    db: Session, user: User, order: Order, promo: PromoCode | None, billing: Billing
) -> CheckoutResult:
    order.set_status(OrderStatus.PAID)
    order.paid_at = utcnow()
    order.download_token = new_download_token()
    db.flush()

    generate_download_links_for_order(db, order)
    invoice = create_invoice_for_order(
        db,
        order,
        user,
        billing_email=billing.email,
        billing_name=billing.full_name,
        billing_address=billing.address,
    )
    if promo and order.discount_amount > 0:
        increment_promo_usage(db, promo.id)
    db.commit()

    logger.info("free order settled order_id=%s number=%s", order.id, order.order_number)
    publish_invoice_pdf(invoice)

    notifications.send_order_confirmation_email(order)
    notifications.send_invoice_available_email(invoice)

    return CheckoutResult(build_free_order_success_url(_success_base(), order.id), 201)


def build_session_metadata(
    order: Order, promo: PromoCode | None, billing: Billing | None = None
) -> dict[str, str]:
    """Everything the webhook needs to finalize the order, as Stripe metadata strings."""
    metadata = {
        "userId": str(order.user_id),
        "orderId": str(order.id),
        "environment": settings.ENV,
    }
    items = json.dumps(
        [
            {
                "productId": str(it.product_id),
                "quantity": it.quantity,
                "binaryId": str(it.binary_id) if it.binary_id else "",
                "platform": it.platform.value if it.platform else "",
            }
            for it in order.items
        ],
        separators=(",", ":"),
    )
    # Stripe caps metadata values; the webhook falls back to the stored items
    if order.items and len(items) <= STRIPE_METADATA_VALUE_MAX:
        metadata["items"] = items
    if promo:
        metadata["promoCodeId"] = str(promo.id)
        metadata["promoCode"] = promo.code
    metadata["promoDiscountCents"] = str(order.discount_amount)
    metadata["billingName"] = order.billing_name_snapshot or ""
    metadata["billingEmail"] = order.billing_email_snapshot or ""
    metadata["billingCompany"] = billing.company if billing else ""
    metadata["billingAddress"] = order.billing_address_snapshot or ""
    metadata["billingVatNumber"] = billing.vat_number if billing else ""
    metadata["acceptedTerms"] = "true" if order.accepted_terms else "false"
    metadata["acceptedLicense"] = "true" if order.accepted_license else "false"
    return metadata


def _reuse_open_session(order: Order) -> CheckoutResult | None:
    if not order.stripe_session_id:
        return None
    try:
        existing = stripe_client.retrieve_checkout_session(order.stripe_session_id)
    except stripe.StripeError:
        logger.warning(
            "could not retrieve existing session session_id=%s order_id=%s",
            order.stripe_session_id,
            order.id,
            exc_info=True,
        )
        return None

    url = getattr(existing, "url", None)
    if not url:
        return None
    logger.info("reusing checkout session session_id=%s order_id=%s", existing.id, order.id)
    return CheckoutResult(url, 200)


def _open_checkout_session(
    db: Session, order: Order, metadata: dict[str, str]
) -> CheckoutResult:
    if not stripe_client.stripe_configured():
        logger.error("STRIPE_SECRET_KEY missing, cannot open session order_id=%s", order.id)
        raise UpstreamError(MSG_STRIPE_FAILED)

    reused = _reuse_open_session(order)
    if reused:
        return reused

    try:
        session = stripe_client.create_checkout_session(
            mode="payment",
            line_items=[
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": order.currency.lower(),
                        "unit_amount": order.total_paid,
                        "product_data": {"name": "Commande de logiciels téléchargeables"},
                    },
                }
            ],
            success_url=build_success_url(_success_base()),
            cancel_url=_cancel_url(),
            customer_email=order.billing_email_snapshot,
            client_reference_id=str(order.id),
            metadata=metadata,
        )
    except stripe.StripeError as exc:
        logger.exception("checkout session creation failed order_id=%s", order.id)
        raise UpstreamError(getattr(exc, "user_message", None) or MSG_STRIPE_FAILED)

    order.stripe_session_id = session.id
    order.stripe_payment_intent_id = stripe_client.extract_payment_intent_id(
        getattr(session, "payment_intent", None)
    )
    db.commit()

    logger.info("checkout session created session_id=%s order_id=%s", session.id, order.id)
    return CheckoutResult(session.url, 201)


def _order_for_key(db: Session, user: User, checkout_key: str) -> Order | None:
    return db.scalar(
        select(Order).where(Order.user_id == user.id, Order.checkout_key == checkout_key)
    )


def _resume_checkout(db: Session, order: Order) -> CheckoutResult:
    if order.status != OrderStatus.PENDING:
        raise ConflictError(MSG_ALREADY_PROCESSED)
    logger.info("checkout retried with same key order_id=%s", order.id)
    return _open_checkout_session(db, order, build_session_metadata(order, order.promo_code))


def create_download_checkout(
    db: Session,
    user: User,
    payload: CheckoutSessionIn,
    idempotency_key: str | None = None,
) -> CheckoutResult:
    if not payload.items:
        raise BadRequestError(MSG_EMPTY_CART)

    billing = normalize_billing(payload.billing)
    error = billing_validation_error(billing)
    if error:
        raise BadRequestError(error)

    if not payload.accepted_terms or not payload.accepted_license:
        raise BadRequestError(MSG_TERMS)

    checkout_key = _clean(idempotency_key)[:120] or None
    if checkout_key:
        existing = _order_for_key(db, user, checkout_key)
        if existing:
            return _resume_checkout(db, existing)

    try:
        cart = compute_cart_totals(db, payload.items)
    except CartError:
        raise BadRequestError(MSG_INVALID_PRODUCTS)
    except SQLAlchemyError:
        logger.exception("cart pricing failed user_id=%s", user.id)
        raise UpstreamError(MSG_PRICING_FAILED)

    promo: PromoCode | None = None
    discount = 0
    if payload.promo_code and payload.promo_code.strip():
        applied = validate_promo_code_for_total(
            db, payload.promo_code, cart.total_cents, cart.totals_by_category
        )
        if not applied:
            raise BadRequestError(MSG_INVALID_PROMO)
        promo, discount = applied

    order = _build_order(db, user, cart, promo, discount, billing, payload, checkout_key)

    try:
        if cart.total_cents - discount <= 0:
            return _settle_free_order(db, user, order, promo, billing)
        db.commit()
    except IntegrityError:
        # a concurrent request with the same key committed first
        db.rollback()
        existing = _order_for_key(db, user, checkout_key) if checkout_key else None
        if existing is None:
            raise
        return _resume_checkout(db, existing)

    logger.info(
        "pending order created order_id=%s number=%s payable=%s",
        order.id,
        order.order_number,
        order.total_paid,
    )
    return _open_checkout_session(db, order, build_session_metadata(order, promo, billing))
