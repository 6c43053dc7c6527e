import uuid

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from storefront.core.deps import get_current_user
from storefront.db.session import get_db
from storefront.models.invoice import Invoice
from storefront.models.user import User
from storefront.services.invoices import ensure_invoice_pdf

router = APIRouter(prefix="/api/invoices", tags=["invoices"])


@router.get("/{invoice_id}/download")
def download_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    invoice = db.get(Invoice, invoice_id)
    # other users' invoices look missing
    if not invoice or invoice.order.user_id != user.id:
        raise HTTPException(status_code=404, detail="Facture introuvable.")

    path = ensure_invoice_pdf(invoice)
    return FileResponse(
        path,
        filename=f"facture-{invoice.invoice_number}.pdf",
        media_type="application/pdf",
    )
