from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from storefront.models.webhook_event import WebhookEventStatus


class WebhookEventLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    type: str
    status: WebhookEventStatus
    session_id: str | None
    payment_intent_id: str | None
    order_id: str | None
    message: str | None
    raw_payload: dict[str, Any] | None
    created_at: datetime | None


class WebhookEventsOut(BaseModel):
    events: list[WebhookEventLogOut]
