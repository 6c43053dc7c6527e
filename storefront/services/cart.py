import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from storefront.models.product import DownloadPlatform, DownloadableProduct


class CartError(Exception):
    pass


class InvalidProductsError(CartError):
    pass


class InvalidBinaryError(CartError):
    pass


@dataclass
class CartLine:
    product_id: str
    quantity: int
    binary_id: str | None = None
    platform: DownloadPlatform | None = None


@dataclass
class CartComputation:
    total_cents: int
    totals_by_category: dict[str, int]
    items: list[CartLine]
    products: dict[str, DownloadableProduct] = field(default_factory=dict)


def category_key(category_id: str | None) -> str:
    return f"category:{category_id or 'none'}"


def _field(raw: Any, *names: str):
    for name in names:
        value = raw.get(name) if isinstance(raw, dict) else getattr(raw, name, None)
        if value is not None:
            return value
    return None


def normalize_line(raw: Any) -> CartLine:
    """Accepts a dict (camelCase or snake_case) or a CartItemIn-like object."""
    try:
        quantity = int(_field(raw, "quantity") or 1)
    except (TypeError, ValueError):
        quantity = 1
    binary_id = _field(raw, "binary_id", "binaryId")
    return CartLine(
        product_id=str(_field(raw, "product_id", "productId")),
        quantity=quantity if quantity > 0 else 1,
        binary_id=str(binary_id) if binary_id else None,
        platform=DownloadPlatform.parse(_field(raw, "platform")),
    )


def _as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(value)
    except (TypeError, ValueError):
        return None


def load_active_products(
    db: Session, product_ids: Iterable[str]
) -> dict[str, DownloadableProduct]:
    ids = {u for u in (_as_uuid(p) for p in product_ids) if u is not None}
    if not ids:
        return {}
    rows = db.scalars(
        select(DownloadableProduct)
        .where(DownloadableProduct.id.in_(ids), DownloadableProduct.is_active.is_(True))
        .options(selectinload(DownloadableProduct.binaries))
    ).all()
    return {str(p.id): p for p in rows}


def select_binary(line: CartLine, product: DownloadableProduct) -> CartLine:
    """Pin the line to one binary: explicit id, then platform, then the first one."""
    if not product.binaries:
        return CartLine(line.product_id, line.quantity, None, line.platform)

    if line.binary_id:
        chosen = next((b for b in product.binaries if str(b.id) == line.binary_id), None)
        if chosen is None:
            raise InvalidBinaryError(line.binary_id)
    elif line.platform:
        chosen = next((b for b in product.binaries if b.platform == line.platform), None)
        if chosen is None:
            raise InvalidBinaryError(line.platform.value)
    else:
        chosen = product.binaries[0]

    return CartLine(line.product_id, line.quantity, str(chosen.id), chosen.platform)


def compute_cart_totals(db: Session, items: Iterable[Any]) -> CartComputation:
    lines = [normalize_line(raw) for raw in items]
    products = load_active_products(db, (ln.product_id for ln in lines))

    if any(ln.product_id not in products for ln in lines):
        raise InvalidProductsError("INVALID_PRODUCTS")

    lines = [select_binary(ln, products[ln.product_id]) for ln in lines]

    totals: dict[str, int] = {}
    for ln in lines:
        product = products[ln.product_id]
        key = category_key(product.category_id)
        totals[key] = totals.get(key, 0) + product.price_cents * ln.quantity

    return CartComputation(
        total_cents=sum(totals.values()),
        totals_by_category=totals,
        items=lines,
        products=products,
    )
