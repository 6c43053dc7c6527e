import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.db.base import Base


class DownloadPlatform(str, enum.Enum):
    WINDOWS = "WINDOWS"
    MACOS = "MACOS"

    @classmethod
    def parse(cls, value) -> "DownloadPlatform | None":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class DownloadableProduct(Base):
    __tablename__ = "downloadable_products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(200), unique=True, nullable=True)

    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="EUR")

    # free-form key; promo codes can be restricted to one category
    category_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # used when the product ships a single file without per-platform binaries
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    storage_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    binaries: Mapped[list["ProductBinary"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", order_by="ProductBinary.created_at"
    )


class ProductBinary(Base):
    __tablename__ = "product_binaries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("downloadable_products.id", ondelete="CASCADE"), index=True
    )
    platform: Mapped[DownloadPlatform] = mapped_column(
        SQLEnum(DownloadPlatform, native_enum=False, length=16), nullable=False
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(500), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    product: Mapped[DownloadableProduct] = relationship(back_populates="binaries")
