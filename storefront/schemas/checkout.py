from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItemIn(CamelModel):
    product_id: str
    quantity: int | None = None
    binary_id: str | None = None
    platform: str | None = None


class BillingIn(CamelModel):
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    address1: str | None = None
    address2: str | None = None
    postal_code: str | None = None
    city: str | None = None
    country: str | None = None
    email: str | None = None
    vat_number: str | None = None


class CheckoutSessionIn(CamelModel):
    items: list[CartItemIn] = []
    promo_code: str | None = None
    billing: BillingIn | None = None
    accepted_terms: bool = False
    accepted_license: bool = False


class CheckoutUrlOut(BaseModel):
    url: str


class ConfirmationOrderOut(CamelModel):
    id: str
    order_number: str | None
    paid_at: datetime | None
    currency: str
    total_paid: int
    first_product_name: str


class ConfirmationDownloadOut(CamelModel):
    token: str
    product_name: str


class ConfirmationOut(CamelModel):
    status: str
    order: ConfirmationOrderOut
    order_download_token: str | None
    download: ConfirmationDownloadOut | None
