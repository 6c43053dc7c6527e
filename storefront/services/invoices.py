import logging
import uuid
from pathlib import Path

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from storefront.core.clock import utcnow
from storefront.core.config import settings
from storefront.models.invoice import Invoice
from storefront.models.order import Order
from storefront.models.user import User
from storefront.services.invoice_pdf import render_invoice_pdf

logger = logging.getLogger("storefront.invoices")


def generate_invoice_number(db: Session) -> str:
    prefix = f"{utcnow().year}-"
    # longer suffix first: "2026-10000" sorts below "2026-9999" as text
    last = db.scalar(
        select(Invoice.invoice_number)
        .where(Invoice.invoice_number.startswith(prefix))
        .order_by(func.length(Invoice.invoice_number).desc(), Invoice.invoice_number.desc())
        .limit(1)
    )
    last_sequence = int(last.split("-")[1]) if last else 0
    return f"{prefix}{last_sequence + 1:04d}"


def invoice_file(invoice: Invoice) -> Path:
    return Path(settings.INVOICE_STORAGE_DIR) / invoice.pdf_path


def write_invoice_pdf(invoice: Invoice) -> Path:
    """Render the PDF, replacing whatever file is at its path."""
    path = render_invoice_pdf(invoice, invoice_file(invoice))
    logger.info("invoice pdf rendered invoice=%s", invoice.invoice_number)
    return path


def ensure_invoice_pdf(invoice: Invoice) -> Path:
    """Render the PDF on first use, or again if the file went missing."""
    path = invoice_file(invoice)
    if not path.is_file():
        write_invoice_pdf(invoice)
    return path


def publish_invoice_pdf(invoice: Invoice) -> Path | None:
    """
    Write the PDF of a committed invoice. A failure is logged only: the download
    route renders missing files on demand.
    """
    try:
        return write_invoice_pdf(invoice)
    except Exception:
        logger.exception("invoice pdf rendering failed invoice=%s", invoice.invoice_number)
        return None


def create_invoice_for_order(
    db: Session,
    order: Order,
    user: User,
    billing_email: str | None = None,
    billing_name: str | None = None,
    billing_address: str | None = None,
) -> Invoice:
    """
    Add the order's invoice to the session. No file is written here: the caller
    publishes the PDF once the transaction has committed.
    """
    if order.invoice is not None:
        return order.invoice

    invoice_id = uuid.uuid4()
    invoice_number = generate_invoice_number(db)
    invoice = Invoice(
        id=invoice_id,
        order_id=order.id,
        invoice_number=invoice_number,
        issue_date=order.paid_at or utcnow(),
        billing_name=billing_name or user.display_name,
        billing_email=billing_email or user.email,
        billing_address=billing_address or None,
        # seller is VAT-exempt (art. 293 B): HT == TTC
        total_ht=order.total_paid,
        total_tva=0,
        total_ttc=order.total_paid,
        currency=order.currency,
        # numbers are reused after a rollback, ids are not
        pdf_path=f"{invoice_number}-{invoice_id.hex}.pdf",
        seller_name=settings.SELLER_NAME,
        seller_address=settings.SELLER_ADDRESS,
        seller_siret=settings.SELLER_SIRET,
        seller_vat_number=settings.SELLER_VAT_NUMBER,
        seller_vat_mention=settings.SELLER_VAT_MENTION,
    )
    order.invoice = invoice
    db.flush()

    logger.info("invoice created order_id=%s invoice=%s", order.id, invoice_number)
    return invoice
