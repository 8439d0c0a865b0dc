"""API request/response schemas for merchant API endpoints.

All JSON bodies use camelCase keys; amounts are serialized as canonical decimal
strings so merchants can compare them exactly.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel


def format_amount(value: Decimal) -> str:
    """Render a decimal without exponent or trailing zeros (`100.500` -> `100.5`)."""

    return format(value.normalize(), "f")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AmountModel(CamelModel):
    amount: Decimal

    @field_serializer("amount")
    def _serialize_amount(self, value: Decimal) -> str:
        return format_amount(value)


class ApiKeyRequest(CamelModel):
    """Payload accepted by `POST /generate-api-key`."""

    wallet_address: str | None = None
    merchant_name: str | None = None


class PaymentLinkCreateRequest(CamelModel):
    """Payload accepted by `POST /create-payment-link`."""

    amount: Decimal | None = None
    currency: str | None = None
    description: str | None = None
    order_id: str | None = None
    expires_in: int | None = None
    webhook_url: str | None = None
    redirect_url: str | None = None
    metadata: dict[str, Any] | None = None


class VerifyPaymentRequest(CamelModel):
    """Payload sent by the on-chain verifier to `POST /verify-payment`."""

    payment_link_id: str
    transaction_hash: str | None = None
    paid_amount: Decimal
    paid_currency: str | None = None


class PaymentLinkView(AmountModel):
    """Public projection returned right after creation."""

    id: str
    payment_url: str
    qr_code: str
    currency: str
    description: str
    order_id: str
    status: str
    expires_at: datetime
    created_at: datetime
    redirect_url: str | None = None


class PaymentStatusView(AmountModel):
    """Status projection served by the public `GET /payment/{id}`."""

    id: str
    status: str
    currency: str
    description: str
    order_id: str
    expires_at: datetime
    created_at: datetime
    paid_at: datetime | None = None
    transaction_hash: str | None = None
    redirect_url: str | None = None


class PaymentLinkSummary(AmountModel):
    id: str
    currency: str
    status: str
    description: str
    order_id: str
    created_at: datetime
    expires_at: datetime
    paid_at: datetime | None = None


class Pagination(CamelModel):
    total: int
    limit: int
    offset: int


class PaymentLinkPage(CamelModel):
    data: list[PaymentLinkSummary]
    pagination: Pagination


class VerifiedPaymentView(CamelModel):
    id: str
    status: str
    paid_at: datetime | None = None
    transaction_hash: str | None = None
    redirect_url: str | None = None


class ApiKeyIssuedResponse(CamelModel):
    success: bool = True
    api_key: str
    merchant_id: str
    webhook_secret: str
    message: str


class ApiKeyRegeneratedResponse(CamelModel):
    success: bool = True
    api_key: str
    merchant_id: str
    message: str


class WebhookSecretRotatedResponse(CamelModel):
    success: bool = True
    webhook_secret: str
    message: str


class CreatePaymentLinkResponse(CamelModel):
    success: bool = True
    payment_link: PaymentLinkView


class VerifyPaymentResponse(CamelModel):
    success: bool = True
    message: str
    payment_link: VerifiedPaymentView


class CancelPaymentLinkResponse(CamelModel):
    success: bool = True
    message: str


class WebhookDeliveryView(CamelModel):
    id: str
    payment_link_id: str
    event: str
    target_url: str
    payload: dict[str, Any]
    status: str
    attempts: int
    next_attempt_at: datetime
    last_error: str | None = None
    last_status_code: int | None = None
    created_at: datetime
    delivered_at: datetime | None = None


class WebhookDeliveryPage(CamelModel):
    data: list[WebhookDeliveryView]
    pagination: Pagination


class WebhookRetryResponse(CamelModel):
    success: bool = True
    message: str
    delivery: WebhookDeliveryView
