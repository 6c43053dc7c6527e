import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.db.base import Base
from storefront.models.product import DownloadPlatform, DownloadableProduct, ProductBinary
from storefront.models.promo_code import PromoCode
from storefront.models.user import User


class OrderType(str, enum.Enum):
    DOWNLOADABLE = "DOWNLOADABLE"
    SUBSCRIPTION = "SUBSCRIPTION"


class SubscriptionBrand(str, enum.Enum):
    CP = "CP"
    CA = "CA"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"


class InvalidOrderTransition(Exception):
    def __init__(self, current: OrderStatus, target: OrderStatus):
        super().__init__(f"illegal order transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELED}
    ),
    # a late checkout.session.completed may still settle a failed attempt
    OrderStatus.FAILED: frozenset({OrderStatus.PAID, OrderStatus.CANCELED}),
    OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def transition(current: OrderStatus, target: OrderStatus) -> bool:
    """
    Returns True when the status must change, False when the order is already
    in the target state. Raises InvalidOrderTransition otherwise.
    """
    if current == target:
        return False
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidOrderTransition(current, target)
    return True


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("user_id", "checkout_key", name="uq_orders_user_checkout_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    order_number: Mapped[str | None] = mapped_column(
        String(16), unique=True, index=True, nullable=True
    )
    order_type: Mapped[OrderType] = mapped_column(
        SQLEnum(OrderType, native_enum=False, length=16),
        nullable=False,
        default=OrderType.DOWNLOADABLE,
    )
    subscription_brand: Mapped[SubscriptionBrand | None] = mapped_column(
        SQLEnum(SubscriptionBrand, native_enum=False, length=8), nullable=True
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, native_enum=False, length=16),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )

    total_before_discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="EUR")

    # grants access to every download of the order from the confirmation page
    download_token: Mapped[str | None] = mapped_column(
        String(64), unique=True, nullable=True
    )

    promo_code_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("promo_codes.id", ondelete="SET NULL"), nullable=True
    )

    billing_name_snapshot: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_email_snapshot: Mapped[str | None] = mapped_column(String(320), nullable=True)
    billing_address_snapshot: Mapped[str | None] = mapped_column(String(500), nullable=True)

    accepted_terms: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    accepted_license: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    stripe_session_id: Mapped[str | None] = mapped_column(
        String(255), index=True, nullable=True
    )
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # last Stripe event applied to this order
    stripe_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Idempotency-Key of the checkout request that created the order
    checkout_key: Mapped[str | None] = mapped_column(String(120), nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship()
    promo_code: Mapped[PromoCode | None] = relationship()
    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.position"
    )
    invoice: Mapped[Optional["Invoice"]] = relationship(  # noqa: F821
        back_populates="order", uselist=False
    )

    def set_status(self, target: OrderStatus) -> bool:
        changed = transition(self.status, target)
        if changed:
            self.status = target
        return changed


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("downloadable_products.id"), index=True
    )
    product_name_snapshot: Mapped[str] = mapped_column(String(200), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    line_total: Mapped[int] = mapped_column(Integer, nullable=False)

    binary_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("product_binaries.id", ondelete="SET NULL"), nullable=True
    )
    platform: Mapped[DownloadPlatform | None] = mapped_column(
        SQLEnum(DownloadPlatform, native_enum=False, length=16), nullable=True
    )

    order: Mapped[Order] = relationship(back_populates="items")
    product: Mapped[DownloadableProduct] = relationship()
    binary: Mapped[ProductBinary | None] = relationship()
    download_links: Mapped[list["DownloadLink"]] = relationship(  # noqa: F821
        back_populates="order_item", order_by="DownloadLink.created_at"
    )
