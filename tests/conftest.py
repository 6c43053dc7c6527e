"""
Pytest configuration and fixtures

Provides fixtures for:
- Database sessions (SQLite in memory)
- The FastAPI test client wired to that session
- Fake Stripe and mail provider
- Test data factories
"""
# settings are read at import time: configure before importing the app
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-testing-only")
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SUCCESS_URL"] = "https://shop.example/checkout/success"
os.environ["STRIPE_CANCEL_URL"] = "https://shop.example/panier"
os.environ["EMAIL_SEND_ENABLED"] = "false"
os.environ["ADMIN_EMAIL"] = "admin@example.com"

import hashlib
import hmac
import json
import time
import uuid
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.core import stripe_client
from storefront.core.config import settings
from storefront.core.security import hash_password, make_access_token
from storefront.db.base import Base
from storefront.db.session import get_db
from storefront.main import app
from storefront.models.order import Order, OrderItem, OrderStatus, OrderType
from storefront.models.product import DownloadPlatform, DownloadableProduct, ProductBinary
from storefront.models.promo_code import DiscountType, PromoCode
from storefront.models.user import User, UserRole
from storefront.services import mailer

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope="function")
def client(db_session: Session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def storage_dirs(tmp_path, monkeypatch):
    invoices = tmp_path / "invoices"
    downloads = tmp_path / "downloads"
    downloads.mkdir()
    monkeypatch.setattr(settings, "INVOICE_STORAGE_DIR", str(invoices))
    monkeypatch.setattr(settings, "DOWNLOADS_STORAGE_DIR", str(downloads))
    return SimpleNamespace(invoices=invoices, downloads=downloads)


# ============================================================================
# Fake external services
# ============================================================================


@pytest.fixture
def sent_emails(monkeypatch):
    sent: list[dict] = []

    def fake_send(to, subject, html, text=None, reply_to=None):
        sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return True

    monkeypatch.setattr(mailer, "send_email", fake_send)
    return sent


class FakeStripe:
    def __init__(self):
        self.created: list[dict] = []
        self.sessions: dict[str, SimpleNamespace] = {}
        self.fail_with: Exception | None = None

    def create_checkout_session(self, **params):
        if self.fail_with:
            raise self.fail_with
        session_id = f"cs_test_{len(self.created) + 1}"
        session = SimpleNamespace(
            id=session_id,
            url=f"https://checkout.stripe.com/c/pay/{session_id}",
            payment_intent=None,
            status="open",
            payment_status="unpaid",
            amount_total=params["line_items"][0]["price_data"]["unit_amount"],
            currency=params["line_items"][0]["price_data"]["currency"],
            client_reference_id=params.get("client_reference_id"),
            metadata=params.get("metadata") or {},
        )
        self.created.append(params)
        self.sessions[session_id] = session
        return session

    def retrieve_checkout_session(self, session_id):
        return self.sessions[session_id]


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(stripe_client, "create_checkout_session", fake.create_checkout_session)
    monkeypatch.setattr(stripe_client, "retrieve_checkout_session", fake.retrieve_checkout_session)
    return fake


# ============================================================================
# Factories
# ============================================================================


@pytest.fixture
def make_user(db_session: Session):
    def _make(email: str | None = None, role: UserRole = UserRole.USER, password: str = "password123"):
        user = User(
            email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
            password_hash=hash_password(password),
            first_name="Jeanne",
            last_name="Martin",
            role=role,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def user(make_user) -> User:
    return make_user()


@pytest.fixture
def make_product(db_session: Session, storage_dirs):
    def _make(
        name: str = "ComptaMatch Pro",
        price_cents: int = 5000,
        category_id: str | None = None,
        is_active: bool = True,
        platforms: tuple[DownloadPlatform, ...] = (),
    ):
        product = DownloadableProduct(
            name=name,
            price_cents=price_cents,
            currency="EUR",
            category_id=category_id,
            is_active=is_active,
            file_name=f"{name.lower().replace(' ', '-')}.zip",
            storage_path=f"{uuid.uuid4().hex}.zip",
        )
        (storage_dirs.downloads / product.storage_path).write_bytes(b"installer")
        for platform in platforms:
            suffix = "exe" if platform == DownloadPlatform.WINDOWS else "dmg"
            binary_path = f"{uuid.uuid4().hex}.{suffix}"
            (storage_dirs.downloads / binary_path).write_bytes(b"binary")
            product.binaries.append(
                ProductBinary(
                    platform=platform,
                    file_name=f"setup.{suffix}",
                    storage_path=binary_path,
                )
            )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture
def make_promo(db_session: Session):
    def _make(
        code: str = "BIENVENUE",
        discount_type: DiscountType = DiscountType.AMOUNT,
        discount_value: int = 1000,
        **fields,
    ):
        promo = PromoCode(
            code=code,
            discount_type=discount_type,
            discount_value=discount_value,
            **fields,
        )
        db_session.add(promo)
        db_session.commit()
        return promo

    return _make


@pytest.fixture
def make_pending_order(db_session: Session):
    """A PENDING order as the checkout leaves it before Stripe reports back."""

    def _make(user: User, products, promo: PromoCode | None = None, discount: int = 0, session_id=None):
        total = sum(p.price_cents for p in products)
        order = Order(
            user_id=user.id,
            order_number=f"PT{uuid.uuid4().int % 10**10:010d}",
            order_type=OrderType.DOWNLOADABLE,
            status=OrderStatus.PENDING,
            total_before_discount=total,
            discount_amount=discount,
            total_paid=total - discount,
            currency="EUR",
            promo_code_id=promo.id if promo else None,
            billing_name_snapshot="Jeanne Martin",
            billing_email_snapshot=user.email,
            billing_address_snapshot="1 rue de la Paix, 75002 Paris, France",
            accepted_terms=True,
            accepted_license=True,
            stripe_session_id=session_id,
        )
        for position, product in enumerate(products):
            order.items.append(
                OrderItem(
                    position=position,
                    product_id=product.id,
                    product_name_snapshot=product.name,
                    price_cents=product.price_cents,
                    quantity=1,
                    line_total=product.price_cents,
                )
            )
        db_session.add(order)
        db_session.commit()
        return order

    return _make


# ============================================================================
# Helpers
# ============================================================================


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_access_token(str(user.id), user.role.value)}"}


def billing_payload(**overrides) -> dict:
    billing = {
        "firstName": "Jeanne",
        "lastName": "Martin",
        "address1": "1 rue de la Paix",
        "postalCode": "75002",
        "city": "Paris",
        "country": "France",
        "email": "jeanne@example.com",
    }
    billing.update(overrides)
    return billing


def checkout_payload(products, **overrides) -> dict:
    payload = {
        "items": [{"productId": str(p.id), "quantity": 1} for p in products],
        "billing": billing_payload(),
        "acceptedTerms": True,
        "acceptedLicense": True,
    }
    payload.update(overrides)
    return payload


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={signature}"


def checkout_completed_event(
    event_id: str,
    session_id: str,
    metadata: dict | None = None,
    client_reference_id: str | None = None,
    amount_total: int = 5000,
    currency: str = "eur",
) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "mode": "payment",
                "payment_status": "paid",
                "amount_total": amount_total,
                "currency": currency,
                "payment_intent": "pi_test_123",
                "client_reference_id": client_reference_id,
                "customer_details": {"email": "jeanne@example.com", "name": "Jeanne Martin"},
                "metadata": metadata or {},
            }
        },
    }


def post_event(client: TestClient, event: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(event)
    return client.post(
        "/api/payments/stripe/webhook",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, secret), "Content-Type": "application/json"},
    )
