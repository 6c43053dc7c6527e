import re
import secrets

from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.models.order import Order, OrderType, SubscriptionBrand

ORDER_NUMBER_PATTERN = re.compile(r"^(PT|CP|CA)\d{10}$")

SUFFIX_DIGITS = 10


class OrderNumberExhausted(RuntimeError):
    pass


def _prefix(order_type: OrderType, subscription_brand: SubscriptionBrand | None) -> str:
    if order_type == OrderType.DOWNLOADABLE:
        return "PT"
    if not subscription_brand:
        raise ValueError("Subscription brand is required for subscription orders")
    return "CA" if subscription_brand == SubscriptionBrand.CA else "CP"


def _numeric_suffix() -> str:
    return str(secrets.randbelow(10**SUFFIX_DIGITS)).zfill(SUFFIX_DIGITS)


def is_order_number_valid(order_number: str | None) -> bool:
    if not order_number:
        return False
    return bool(ORDER_NUMBER_PATTERN.match(order_number.strip()))


def generate_order_number(
    db: Session,
    order_type: OrderType,
    subscription_brand: SubscriptionBrand | None = None,
    max_attempts: int = 10,
) -> str:
    """
    Draw PT/CP/CA + 10 random digits until one is free. The unique index on
    orders.order_number still has the last word if two requests race.
    """
    prefix = _prefix(order_type, subscription_brand)

    for _ in range(max_attempts):
        candidate = f"{prefix}{_numeric_suffix()}"
        taken = db.scalar(select(Order.id).where(Order.order_number == candidate))
        if taken is None:
            return candidate

    raise OrderNumberExhausted(
        "Unable to generate a unique order number after multiple attempts"
    )
