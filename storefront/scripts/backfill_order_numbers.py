"""
Give every order without a well-formed order number a fresh one.

    storefront-backfill-order-numbers [--dry-run]
"""
import argparse
import logging
import sys

from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.logging import configure_logging
from storefront.db.session import SessionLocal
from storefront.models.order import Order, OrderType, SubscriptionBrand
from storefront.services.order_numbers import generate_order_number, is_order_number_valid

logger = logging.getLogger("storefront.scripts.backfill")


def backfill_order_numbers(db: Session, dry_run: bool = False) -> int:
    updated = 0
    for order in db.scalars(select(Order).order_by(Order.created_at)).all():
        if is_order_number_valid(order.order_number):
            continue

        order_type = order.order_type or OrderType.DOWNLOADABLE
        brand = None
        if order_type == OrderType.SUBSCRIPTION:
            brand = order.subscription_brand or SubscriptionBrand.CP

        number = generate_order_number(db, order_type, brand)
        logger.info("order %s -> %s", order.id, number)
        if not dry_run:
            order.order_number = number
            order.order_type = order_type
            order.subscription_brand = brand
            # flush so the next collision check sees this number
            db.flush()
        updated += 1

    if dry_run:
        db.rollback()
    else:
        db.commit()
    return updated


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="report without writing")
    args = parser.parse_args(argv)

    configure_logging(settings.LOG_LEVEL)
    db = SessionLocal()
    try:
        count = backfill_order_numbers(db, dry_run=args.dry_run)
    except Exception:
        logger.exception("order number backfill failed")
        return 1
    finally:
        db.close()

    logger.info("backfill complete, %s order(s) %s", count, "to update" if args.dry_run else "updated")
    return 0


if __name__ == "__main__":
    sys.exit(main())
