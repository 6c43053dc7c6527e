"""POST /api/payments/checkout-sessions"""
import json

import pytest
import stripe
from sqlalchemy import select

from conftest import auth_headers, billing_payload, checkout_payload
from storefront.models.download_link import DownloadLink, DownloadLinkStatus
from storefront.models.invoice import Invoice
from storefront.models.order import Order, OrderStatus
from storefront.models.product import DownloadPlatform
from storefront.models.promo_code import DiscountType
from storefront.services import checkout

URL = "/api/payments/checkout-sessions"


def test_requires_authentication(client, make_product):
    product = make_product()

    resp = client.post(URL, json=checkout_payload([product]))

    assert resp.status_code == 401
    assert resp.json() == {"message": "Utilisateur non authentifié."}


def test_fully_discounted_order_is_paid_without_stripe(
    client, db_session, user, make_product, make_promo, fake_stripe, sent_emails, storage_dirs
):
    product = make_product(price_cents=5000)
    promo = make_promo("OFFERT", DiscountType.AMOUNT, 5000)

    resp = client.post(
        URL,
        json=checkout_payload([product], promoCode="offert"),
        headers=auth_headers(user),
    )

    assert resp.status_code == 201
    order = db_session.scalar(select(Order).where(Order.user_id == user.id))
    assert resp.json() == {"url": f"https://shop.example/checkout/success?order_id={order.id}"}

    assert order.status == OrderStatus.PAID
    assert order.total_before_discount == 5000
    assert order.discount_amount == 5000
    assert order.total_paid == 0
    assert order.paid_at is not None
    assert order.download_token
    assert order.order_number.startswith("PT")

    assert fake_stripe.created == []

    invoice = db_session.scalar(select(Invoice).where(Invoice.order_id == order.id))
    assert invoice is not None
    assert invoice.total_ttc == 0
    assert (storage_dirs.invoices / invoice.pdf_path).is_file()

    links = db_session.scalars(select(DownloadLink)).all()
    assert len(links) == 1
    assert links[0].status == DownloadLinkStatus.ACTIVE

    db_session.refresh(promo)
    assert promo.current_uses == 1

    subjects = [m["subject"] for m in sent_emails]
    assert subjects == [
        f"Confirmation de votre commande {order.order_number}",
        f"Votre facture {invoice.invoice_number}",
    ]


def test_paid_order_opens_stripe_session(
    client, db_session, user, make_product, make_promo, fake_stripe, sent_emails
):
    product = make_product(price_cents=5000, platforms=(DownloadPlatform.WINDOWS,))
    make_promo("MOINS10", DiscountType.AMOUNT, 1000)

    resp = client.post(
        URL,
        json=checkout_payload([product], promoCode="MOINS10"),
        headers=auth_headers(user),
    )

    assert resp.status_code == 201
    assert resp.json() == {"url": "https://checkout.stripe.com/c/pay/cs_test_1"}

    order = db_session.scalar(select(Order).where(Order.user_id == user.id))
    assert order.status == OrderStatus.PENDING
    assert order.total_paid == 4000
    assert order.stripe_session_id == "cs_test_1"
    assert order.items[0].binary_id == product.binaries[0].id

    params = fake_stripe.created[0]
    assert params["mode"] == "payment"
    assert params["client_reference_id"] == str(order.id)
    assert params["customer_email"] == "jeanne@example.com"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 4000
    assert params["success_url"] == (
        "https://shop.example/checkout/success?session_id={CHECKOUT_SESSION_ID}"
    )

    metadata = params["metadata"]
    assert metadata["orderId"] == str(order.id)
    assert metadata["userId"] == str(user.id)
    assert metadata["promoCode"] == "MOINS10"
    assert metadata["promoDiscountCents"] == "1000"
    assert metadata["acceptedTerms"] == "true"
    assert json.loads(metadata["items"]) == [
        {
            "productId": str(product.id),
            "quantity": 1,
            "binaryId": str(product.binaries[0].id),
            "platform": "WINDOWS",
        }
    ]

    # nothing is settled until the webhook arrives
    assert db_session.scalars(select(Invoice)).all() == []
    assert db_session.scalars(select(DownloadLink)).all() == []
    assert sent_emails == []


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"items": []}, "La liste des produits est vide ou invalide."),
        ({"billing": billing_payload(firstName="")}, "Le nom et le prénom sont requis."),
        ({"billing": billing_payload(city="  ")}, "L'adresse de facturation est incomplète."),
        ({"billing": billing_payload(email="")}, "L'email de facturation est requis."),
        ({"billing": billing_payload(email="pas-un-email")}, "L'email de facturation n'est pas valide."),
        (
            {"billing": billing_payload(email="jeanne..martin@example.com")},
            "L'email de facturation n'est pas valide.",
        ),
        (
            {"acceptedLicense": False},
            "Merci d'accepter les conditions d'utilisation et le contrat de licence avant de payer.",
        ),
        (
            {"promoCode": "INCONNU"},
            "Ce code promo est invalide, expiré ou n'est plus disponible.",
        ),
    ],
)
def test_validation_errors(client, db_session, user, make_product, fake_stripe, overrides, message):
    product = make_product()

    resp = client.post(URL, json=checkout_payload([product], **overrides), headers=auth_headers(user))

    assert resp.status_code == 400
    assert resp.json() == {"message": message}
    assert db_session.scalars(select(Order)).all() == []
    assert fake_stripe.created == []


def test_country_defaults_to_france(client, db_session, user, make_product, fake_stripe):
    product = make_product()
    billing = billing_payload()
    billing.pop("country")

    resp = client.post(URL, json=checkout_payload([product], billing=billing), headers=auth_headers(user))

    assert resp.status_code == 201
    order = db_session.scalar(select(Order))
    assert order.billing_address_snapshot.endswith("France")


def test_unavailable_product_is_rejected(client, user, make_product, fake_stripe):
    retired = make_product(is_active=False)

    resp = client.post(URL, json=checkout_payload([retired]), headers=auth_headers(user))

    assert resp.status_code == 400
    assert resp.json() == {
        "message": "Certains produits demandés sont introuvables ou ne sont plus disponibles."
    }


def test_stripe_failure_is_a_server_error(client, user, make_product, fake_stripe):
    product = make_product()
    fake_stripe.fail_with = stripe.APIConnectionError("network down")

    resp = client.post(URL, json=checkout_payload([product]), headers=auth_headers(user))

    assert resp.status_code == 500
    assert resp.json() == {"message": "Erreur lors de la création de la session de paiement Stripe."}


def test_retry_with_idempotency_key_reuses_session(client, db_session, user, make_product, fake_stripe):
    product = make_product()
    headers = {**auth_headers(user), "Idempotency-Key": "panier-42"}

    first = client.post(URL, json=checkout_payload([product]), headers=headers)
    second = client.post(URL, json=checkout_payload([product]), headers=headers)

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json() == first.json()
    assert len(fake_stripe.created) == 1
    assert len(db_session.scalars(select(Order)).all()) == 1


def test_key_taken_by_a_concurrent_request_resumes_its_order(
    client, db_session, user, make_product, fake_stripe, monkeypatch
):
    product = make_product()
    headers = {**auth_headers(user), "Idempotency-Key": "panier-45"}
    first = client.post(URL, json=checkout_payload([product]), headers=headers)

    # the second request looks the key up before the first one has committed
    lookup = checkout._order_for_key
    calls = []

    def late_lookup(db, owner, key):
        calls.append(key)
        return None if len(calls) == 1 else lookup(db, owner, key)

    monkeypatch.setattr(checkout, "_order_for_key", late_lookup)

    second = client.post(URL, json=checkout_payload([product]), headers=headers)

    assert second.status_code == 200
    assert second.json() == first.json()
    assert calls == ["panier-45", "panier-45"]
    assert len(fake_stripe.created) == 1
    assert len(db_session.scalars(select(Order)).all()) == 1


def test_new_session_when_previous_one_is_gone(client, db_session, user, make_product, fake_stripe):
    product = make_product()
    headers = {**auth_headers(user), "Idempotency-Key": "panier-43"}

    client.post(URL, json=checkout_payload([product]), headers=headers)
    # expired sessions come back without a url
    fake_stripe.sessions["cs_test_1"].url = None

    resp = client.post(URL, json=checkout_payload([product]), headers=headers)

    assert resp.status_code == 201
    assert resp.json() == {"url": "https://checkout.stripe.com/c/pay/cs_test_2"}
    order = db_session.scalar(select(Order))
    assert order.stripe_session_id == "cs_test_2"


def test_retry_after_payment_conflicts(client, db_session, user, make_product, fake_stripe):
    product = make_product()
    headers = {**auth_headers(user), "Idempotency-Key": "panier-44"}
    client.post(URL, json=checkout_payload([product]), headers=headers)

    order = db_session.scalar(select(Order))
    order.status = OrderStatus.PAID
    db_session.commit()

    resp = client.post(URL, json=checkout_payload([product]), headers=headers)

    assert resp.status_code == 409
    assert len(fake_stripe.created) == 1


def test_without_key_each_request_is_a_new_order(client, db_session, user, make_product, fake_stripe):
    product = make_product()

    client.post(URL, json=checkout_payload([product]), headers=auth_headers(user))
    client.post(URL, json=checkout_payload([product]), headers=auth_headers(user))

    assert len(db_session.scalars(select(Order)).all()) == 2
    assert len(fake_stripe.created) == 2
