from typing import Any

import stripe
from storefront.core.config import settings

stripe.api_key = settings.STRIPE_SECRET_KEY


def stripe_configured() -> bool:
    return bool(settings.STRIPE_SECRET_KEY)


def create_checkout_session(**params: Any):
    return stripe.checkout.Session.create(**params)


def retrieve_checkout_session(session_id: str):
    return stripe.checkout.Session.retrieve(session_id)


def verify_webhook(payload: bytes, sig_header: str, secret: str) -> dict[str, Any]:
    """
    Check the Stripe-Signature header against the exact bytes Stripe sent and
    return the decoded event. Raises stripe.SignatureVerificationError or
    ValueError.
    """
    event = stripe.Webhook.construct_event(payload, sig_header, secret).to_dict()
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise ValueError("malformed event")
    return event


def extract_payment_intent_id(value: Any) -> str | None:
    """payment_intent is either an id or an expanded object."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        pid = value.get("id")
        return pid if isinstance(pid, str) else None
    pid = getattr(value, "id", None)
    return pid if isinstance(pid, str) else None
