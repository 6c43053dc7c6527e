import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum as SQLEnum, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from storefront.db.base import Base


class DiscountType(str, enum.Enum):
    PERCENT = "PERCENT"
    AMOUNT = "AMOUNT"


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # stored upper-case
    code: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)

    discount_type: Mapped[DiscountType] = mapped_column(
        SQLEnum(DiscountType, native_enum=False, length=16), nullable=False
    )
    # percent (0-100) or cents, depending on discount_type
    discount_value: Mapped[int] = mapped_column(Integer, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    category_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
