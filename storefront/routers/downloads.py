import uuid

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from storefront.core.admin import require_admin
from storefront.core.deps import get_current_user
from storefront.db.session import get_db
from storefront.models.user import User
from storefront.services.download_links import (
    consume_download,
    get_link_by_token,
    regenerate_download_link,
)
from storefront.services.notifications import download_url

router = APIRouter(prefix="/api/downloads", tags=["downloads"])


@router.post("/admin/order-items/{item_id}/regenerate", status_code=201)
def regenerate(
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    link = regenerate_download_link(db, item_id)
    return {"token": link.token, "url": download_url(link.token)}


@router.get("/{token}")
def download(token: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    link = get_link_by_token(db, token)
    if not link:
        raise HTTPException(status_code=404, detail="Lien de téléchargement introuvable.")

    path, file_name = consume_download(db, link, user.id)
    return FileResponse(path, filename=file_name, media_type="application/octet-stream")
