"""Cart pricing and promo-code rules."""
from datetime import timedelta

import pytest

from storefront.core.clock import utcnow
from storefront.models.product import DownloadPlatform
from storefront.models.promo_code import DiscountType
from storefront.services.cart import (
    InvalidBinaryError,
    InvalidProductsError,
    category_key,
    compute_cart_totals,
)
from storefront.services.promo import increment_promo_usage, validate_promo_code_for_total


# ---------------------------------------------------------------------------
# cart
# ---------------------------------------------------------------------------


def test_totals_by_category(db_session, make_product):
    a = make_product("Compta", 3000, category_id="logiciels")
    b = make_product("Paie", 2000, category_id="logiciels")
    c = make_product("Guide", 1500)

    cart = compute_cart_totals(
        db_session,
        [
            {"productId": str(a.id), "quantity": 2},
            {"product_id": str(b.id)},
            {"productId": str(c.id), "quantity": 0},
        ],
    )

    assert cart.total_cents == 3000 * 2 + 2000 + 1500
    assert cart.totals_by_category == {
        category_key("logiciels"): 8000,
        category_key(None): 1500,
    }
    # quantity below 1 is bumped to 1
    assert cart.items[2].quantity == 1


def test_inactive_or_unknown_product_is_rejected(db_session, make_product):
    active = make_product("Actif")
    inactive = make_product("Retiré", is_active=False)

    with pytest.raises(InvalidProductsError):
        compute_cart_totals(db_session, [{"productId": str(active.id)}, {"productId": str(inactive.id)}])

    with pytest.raises(InvalidProductsError):
        compute_cart_totals(db_session, [{"productId": "not-a-uuid"}])


def test_binary_selection(db_session, make_product):
    product = make_product(platforms=(DownloadPlatform.WINDOWS, DownloadPlatform.MACOS))
    windows, mac = product.binaries

    by_platform = compute_cart_totals(db_session, [{"productId": str(product.id), "platform": "macos"}])
    assert by_platform.items[0].binary_id == str(mac.id)
    assert by_platform.items[0].platform == DownloadPlatform.MACOS

    by_id = compute_cart_totals(db_session, [{"productId": str(product.id), "binaryId": str(windows.id)}])
    assert by_id.items[0].binary_id == str(windows.id)

    default = compute_cart_totals(db_session, [{"productId": str(product.id)}])
    assert default.items[0].binary_id == str(windows.id)


def test_unknown_binary_is_rejected(db_session, make_product):
    product = make_product(platforms=(DownloadPlatform.WINDOWS,))

    with pytest.raises(InvalidBinaryError):
        compute_cart_totals(db_session, [{"productId": str(product.id), "platform": "MACOS"}])


# ---------------------------------------------------------------------------
# promo codes
# ---------------------------------------------------------------------------


def test_amount_and_percent_discounts(db_session, make_promo):
    make_promo("MOINS10", DiscountType.AMOUNT, 1000)
    make_promo("QUART", DiscountType.PERCENT, 25)

    promo, discount = validate_promo_code_for_total(db_session, " moins10 ", 5000)
    assert promo.code == "MOINS10"
    assert discount == 1000

    _, discount = validate_promo_code_for_total(db_session, "QUART", 3333)
    assert discount == 833


def test_discount_is_capped_at_cart_total(db_session, make_promo):
    make_promo("GROS", DiscountType.AMOUNT, 9000)

    _, discount = validate_promo_code_for_total(db_session, "GROS", 5000)
    assert discount == 5000


def test_category_restricted_code_uses_category_share(db_session, make_promo):
    make_promo("LOGI50", DiscountType.PERCENT, 50, category_id="logiciels")
    totals = {category_key("logiciels"): 4000, category_key(None): 6000}

    _, discount = validate_promo_code_for_total(db_session, "LOGI50", 10000, totals)
    assert discount == 2000

    assert validate_promo_code_for_total(db_session, "LOGI50", 6000, {category_key(None): 6000}) is None


@pytest.mark.parametrize(
    "fields",
    [
        {"is_active": False},
        {"ends_at": utcnow() - timedelta(days=1)},
        {"starts_at": utcnow() + timedelta(days=1)},
        {"max_uses": 3, "current_uses": 3},
    ],
)
def test_unusable_codes(db_session, make_promo, fields):
    make_promo("NOPE", DiscountType.AMOUNT, 500, **fields)

    assert validate_promo_code_for_total(db_session, "NOPE", 5000) is None


def test_unknown_or_blank_code(db_session):
    assert validate_promo_code_for_total(db_session, "INCONNU", 5000) is None
    assert validate_promo_code_for_total(db_session, "   ", 5000) is None


def test_increment_promo_usage(db_session, make_promo):
    promo = make_promo("COMPTE", DiscountType.AMOUNT, 100)

    increment_promo_usage(db_session, promo.id)
    increment_promo_usage(db_session, promo.id)
    db_session.commit()

    db_session.refresh(promo)
    assert promo.current_uses == 2
