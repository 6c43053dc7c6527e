import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum as SQLEnum, ForeignKey, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.db.base import Base
from storefront.models.order import OrderItem


class DownloadLinkStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    USED = "USED"
    EXPIRED = "EXPIRED"


class DownloadLink(Base):
    """
    One link per order item. The first download opens a one-hour window;
    the link is USED once download_count reaches max_downloads.
    """

    __tablename__ = "download_links"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    order_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("order_items.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("downloadable_products.id"), index=True
    )

    token: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)

    status: Mapped[DownloadLinkStatus] = mapped_column(
        SQLEnum(DownloadLinkStatus, native_enum=False, length=16),
        nullable=False,
        default=DownloadLinkStatus.ACTIVE,
    )
    max_downloads: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_downloaded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_downloaded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    order_item: Mapped[OrderItem] = relationship(back_populates="download_links")
