import logging
import uuid
from datetime import timedelta
from pathlib import Path

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from storefront.core.clock import as_utc, utcnow
from storefront.core.config import settings
from storefront.core.errors import AppError, NotFoundError
from storefront.core.security import new_download_token
from storefront.models.download_link import DownloadLink, DownloadLinkStatus
from storefront.models.order import Order, OrderItem, OrderStatus

logger = logging.getLogger("storefront.downloads")

DOWNLOAD_WINDOW = timedelta(hours=1)


def _new_link(item: OrderItem, user_id: uuid.UUID) -> DownloadLink:
    return DownloadLink(
        order_item_id=item.id,
        user_id=user_id,
        product_id=item.product_id,
        token=new_download_token(),
        status=DownloadLinkStatus.ACTIVE,
        max_downloads=1,
        download_count=0,
    )


def generate_download_links_for_order(db: Session, order: Order) -> list[DownloadLink]:
    """Create one ACTIVE link per item that does not already have one."""
    created: list[DownloadLink] = []
    for item in order.items:
        if any(link.status == DownloadLinkStatus.ACTIVE for link in item.download_links):
            continue
        link = _new_link(item, order.user_id)
        item.download_links.append(link)
        created.append(link)

    if created:
        db.flush()
        logger.info("download links created order_id=%s count=%s", order.id, len(created))
    return created


def regenerate_download_link(db: Session, order_item_id: uuid.UUID) -> DownloadLink:
    item = db.get(OrderItem, order_item_id)
    if not item:
        raise NotFoundError("Article de commande introuvable.")

    db.execute(
        update(DownloadLink)
        .where(
            DownloadLink.order_item_id == order_item_id,
            DownloadLink.status == DownloadLinkStatus.ACTIVE,
        )
        .values(status=DownloadLinkStatus.EXPIRED)
        .execution_options(synchronize_session="fetch")
    )
    link = _new_link(item, item.order.user_id)
    db.add(link)
    db.commit()
    return link


def first_active_link(order: Order) -> tuple[OrderItem, DownloadLink] | None:
    for item in order.items:
        for link in item.download_links:
            if link.status == DownloadLinkStatus.ACTIVE:
                return item, link
    return None


def get_link_by_token(db: Session, token: str) -> DownloadLink | None:
    return db.scalar(select(DownloadLink).where(DownloadLink.token == token))


def _resolve_file(item: OrderItem) -> tuple[Path, str]:
    binary = item.binary or (item.product.binaries[0] if item.product.binaries else None)
    file_name = binary.file_name if binary else item.product.file_name
    storage_path = binary.storage_path if binary else item.product.storage_path

    if not storage_path or not file_name:
        raise AppError(
            "Le fichier associé à ce produit n'est pas disponible sur le serveur.", 500
        )

    path = Path(storage_path)
    if not path.is_absolute():
        path = Path(settings.DOWNLOADS_STORAGE_DIR) / path
    if not path.is_file():
        raise AppError("Le fichier à télécharger est introuvable sur le serveur.", 500)
    return path, file_name


def consume_download(db: Session, link: DownloadLink, user_id: uuid.UUID) -> tuple[Path, str]:
    """
    Count one download against the link and return (path, file name).
    The first download starts a one-hour window.
    """
    item = link.order_item
    if item.order.user_id != user_id:
        raise AppError("Vous n'avez pas accès à ce téléchargement.", 403)
    if item.order.status != OrderStatus.PAID:
        raise AppError("La commande n'est pas finalisée.", 403)
    if link.status != DownloadLinkStatus.ACTIVE:
        raise AppError("Ce lien n'est plus actif.", 410)

    now = utcnow()
    expires_at = as_utc(link.expires_at)

    if expires_at and now > expires_at:
        link.status = DownloadLinkStatus.EXPIRED
        db.commit()
        raise AppError("Le lien de téléchargement a expiré.", 410)

    if link.download_count >= link.max_downloads:
        link.status = DownloadLinkStatus.USED
        db.commit()
        raise AppError("Le lien de téléchargement a déjà été utilisé.", 410)

    path, file_name = _resolve_file(item)

    link.download_count += 1
    link.first_downloaded_at = link.first_downloaded_at or now
    link.last_downloaded_at = now
    link.expires_at = expires_at or now + DOWNLOAD_WINDOW
    if link.download_count >= link.max_downloads:
        link.status = DownloadLinkStatus.USED
    db.commit()

    logger.info("download served link_id=%s count=%s", link.id, link.download_count)
    return path, file_name
