"""Merchant API database models.

This DB is the source of truth for merchants, payment link state, the
transition timeline and the webhook delivery outbox.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from linkpay.common.db import Base, JSONType
from linkpay.common.timeutils import utcnow


class Merchant(Base):
    """Merchant identity plus its webhook signing secret."""

    __tablename__ = "merchants"

    merchant_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    wallet_address: Mapped[str] = mapped_column(String)
    merchant_name: Mapped[str] = mapped_column(String)
    webhook_secret: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    secret_rotated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MerchantApiKey(Base):
    """Hashed API key; the plaintext is only ever returned at issuance."""

    __tablename__ = "merchant_api_keys"

    key_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(ForeignKey("merchants.merchant_id"), index=True)
    key_prefix: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PaymentLink(Base):
    """Current state of one payment link. Rows are never deleted."""

    __tablename__ = "payment_links"
    __table_args__ = (Index("ix_payment_links_merchant_created", "merchant_id", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    merchant_id: Mapped[str] = mapped_column(ForeignKey("merchants.merchant_id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 18))
    currency: Mapped[str] = mapped_column(String(8))
    description: Mapped[str] = mapped_column(String, default="")
    order_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_url: Mapped[str] = mapped_column(String)
    qr_code: Mapped[str] = mapped_column(String)
    webhook_url: Mapped[str | None] = mapped_column(String, nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transaction_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    paid_amount: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)


class PaymentLinkTransition(Base):
    """Immutable audit trail of every state transition."""

    __tablename__ = "payment_link_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_link_id: Mapped[str] = mapped_column(ForeignKey("payment_links.id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class WebhookDelivery(Base):
    """Signed webhook waiting for (or done with) delivery to a merchant URL."""

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("payment_link_id", "event", name="uq_webhook_delivery_link_event"),
        Index("ix_webhook_deliveries_status_next_attempt", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_link_id: Mapped[str] = mapped_column(ForeignKey("payment_links.id"), index=True)
    merchant_id: Mapped[str] = mapped_column(String, index=True)
    event: Mapped[str] = mapped_column(String)
    target_url: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    signature: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)
    last_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
