import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Enum as SQLEnum, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from storefront.db.base import Base


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "RECEIVED"
    PROCESSED = "PROCESSED"
    ERROR = "ERROR"


class WebhookEventLog(Base):
    __tablename__ = "webhook_event_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Stripe event id like "evt_..."
    event_id: Mapped[str] = mapped_column(
        String(120), unique=True, index=True, nullable=False
    )
    type: Mapped[str] = mapped_column(String(120), nullable=False)

    status: Mapped[WebhookEventStatus] = mapped_column(
        SQLEnum(WebhookEventStatus, native_enum=False, length=16),
        nullable=False,
        default=WebhookEventStatus.RECEIVED,
    )

    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # not a foreign key: the event may point at an order we cannot find
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
