import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.db.base import Base
from storefront.models.order import Order


class Invoice(Base):
    """One invoice per paid order. Seller details are frozen at issue time."""

    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), unique=True, index=True
    )

    # YYYY-NNNN
    invoice_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    issue_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    billing_name: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_email: Mapped[str] = mapped_column(String(320), nullable=False)
    billing_address: Mapped[str | None] = mapped_column(String(500), nullable=True)

    total_ht: Mapped[int] = mapped_column(Integer, nullable=False)
    total_tva: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_ttc: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)

    # relative to INVOICE_STORAGE_DIR
    pdf_path: Mapped[str] = mapped_column(String(255), nullable=False)

    seller_name: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    seller_siret: Mapped[str | None] = mapped_column(String(32), nullable=True)
    seller_vat_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    seller_vat_mention: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    order: Mapped[Order] = relationship(back_populates="invoice")
