"""Request and response schemas for the HTTP surface."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt


class OrderCreateRequest(BaseModel):
    buyer_id: str = Field(min_length=1)
    seller_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    amount: StrictInt
    currency: str = Field(min_length=3, max_length=3)


class OrderTransitionRequest(BaseModel):
    """Fulfilment update; payment-driven states are set by the coordinators."""

    status: str
    expected_version: StrictInt
    reason: str = "status_update"


class OrderCancelRequest(BaseModel):
    user_id: str = Field(min_length=1)
    expected_version: StrictInt | None = None


class PaymentCreateRequest(BaseModel):
    order_id: str = Field(min_length=1)
    amount: StrictInt
    currency: str = Field(min_length=3, max_length=3)
    metadata: dict[str, str] | None = None


class PaymentConfirmRequest(BaseModel):
    client_secret: str | None = None


class RefundCreateRequest(BaseModel):
    authorization_id: str = Field(min_length=1)
    amount: StrictInt | None = None
    reason: str | None = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    buyer_id: str
    seller_id: str
    product_id: str
    amount: int
    currency: str
    status: str
    authorization_id: str | None
    version: int
    created_at: datetime | None
    updated_at: datetime | None


class TimelineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: str | None
    to_status: str
    version: int
    reason: str | None
    event_id: str | None
    created_at: datetime | None


class AuthorizationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    amount: int
    currency: str
    status: str
    captured_amount: int | None
    client_secret: str | None
    created_at: datetime | None
    updated_at: datetime | None


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    authorization_id: str
    amount: int
    currency: str
    reason: str | None
    status: str
    gateway_refund_id: str | None
    created_at: datetime | None
    updated_at: datetime | None


def page_payload(page, schema: type[BaseModel]) -> dict[str, Any]:
    """Serialise a `Page` of ORM rows with `schema`."""

    return {
        "items": [schema.model_validate(item).model_dump(mode="json") for item in page.items],
        "page": page.page,
        "limit": page.limit,
        "total": page.total,
        "total_pages": page.total_pages,
    }
