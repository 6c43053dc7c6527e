import uuid

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from storefront.core.clock import as_utc, utcnow
from storefront.models.promo_code import DiscountType, PromoCode
from storefront.services.cart import category_key


def _usable(promo: PromoCode) -> bool:
    if not promo.is_active:
        return False
    now = utcnow()
    starts_at = as_utc(promo.starts_at)
    ends_at = as_utc(promo.ends_at)
    if starts_at and starts_at > now:
        return False
    if ends_at and ends_at < now:
        return False
    if promo.max_uses and promo.max_uses > 0 and promo.current_uses >= promo.max_uses:
        return False
    return True


def validate_promo_code_for_total(
    db: Session,
    raw_code: str | None,
    total_cents: int,
    category_totals: dict[str, int] | None = None,
) -> tuple[PromoCode, int] | None:
    """
    Returns (promo, discount_cents) or None when the code cannot be applied.
    A category-restricted code only discounts that category's share of the cart.
    """
    if not raw_code or not raw_code.strip() or total_cents <= 0:
        return None

    code = raw_code.strip().upper()
    promo = db.scalar(select(PromoCode).where(PromoCode.code == code))
    if not promo or not _usable(promo):
        return None

    base = total_cents
    if promo.category_id:
        base = (category_totals or {}).get(category_key(promo.category_id), 0)

    if promo.discount_type == DiscountType.PERCENT:
        discount = (base * promo.discount_value) // 100
    else:
        discount = min(promo.discount_value, base)

    if discount <= 0:
        return None

    return promo, min(discount, total_cents)


def increment_promo_usage(db: Session, promo_id: uuid.UUID) -> None:
    db.execute(
        update(PromoCode)
        .where(PromoCode.id == promo_id)
        .values(current_uses=PromoCode.current_uses + 1)
        .execution_options(synchronize_session="fetch")
    )
