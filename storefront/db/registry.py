# Importing this module registers every mapped class on Base.metadata.
from storefront.models import (  # noqa: F401
    download_link,
    invoice,
    order,
    product,
    promo_code,
    user,
    webhook_event,
)
