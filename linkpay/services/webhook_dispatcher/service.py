"""Webhook outbox: event payloads, enqueueing and the delivery worker.

Deliveries are at-least-once. A row is enqueued in the same transaction as the
payment link transition, claimed by a worker, POSTed to the merchant URL and
either marked delivered, rescheduled with exponential backoff, or moved to the
dead-letter set after the attempt budget is spent.
"""

import asyncio
import json
from time import perf_counter
from typing import Any

import httpx
from sqlalchemy import func, select

from linkpay.common.config import Settings
from linkpay.common.errors import NotFoundError, OwnershipError, StateConflictError, ValidationError
from linkpay.common.logging import logger, payment_link_id_ctx
from linkpay.common.metrics import (
    dlq_published_total,
    retries_total,
    webhook_deliveries_total,
    webhook_delivery_seconds,
)
from linkpay.common.outbox import (
    DEAD,
    DELIVERY_STATUSES,
    PENDING,
    claim_outbox_batch,
    mark_outbox_delivered,
    record_outbox_failure,
    requeue_dead_delivery,
    update_outbox_backlog_metrics,
)
from linkpay.common.signing import sign
from linkpay.common.timeutils import Clock, as_utc, isoformat, utcnow
from linkpay.services.merchant_api.models import PaymentLink, WebhookDelivery
from linkpay.services.merchant_api.schemas import (
    Pagination,
    WebhookDeliveryPage,
    WebhookDeliveryView,
    format_amount,
)

SIGNATURE_HEADER = "X-PM-Signature"
EVENT_HEADER = "X-PM-Event"
DELIVERY_HEADER = "X-PM-Delivery"


def build_event_payload(link: PaymentLink, event: str) -> dict[str, Any]:
    """Event fields a merchant receives (and signs over), without `None` values."""

    fields: dict[str, Any] = {
        "event": event,
        "paymentLinkId": link.id,
        "merchantId": link.merchant_id,
        "amount": format_amount(link.amount),
        "currency": link.currency,
        "orderId": link.order_id,
        "transactionHash": link.transaction_hash,
        "paidAt": isoformat(link.paid_at),
        "metadata": link.metadata_ or None,
    }
    return {key: value for key, value in fields.items() if value is not None}


def enqueue_webhook(db, link: PaymentLink, event: str, secret: str, now) -> WebhookDelivery:
    """Add a signed delivery row to the caller's transaction."""

    fields = build_event_payload(link, event)
    signature = sign(fields, secret)
    delivery = WebhookDelivery(
        payment_link_id=link.id,
        merchant_id=link.merchant_id,
        event=event,
        target_url=link.webhook_url,
        payload={**fields, "signature": signature},
        signature=signature,
        status=PENDING,
        attempts=0,
        next_attempt_at=now,
        created_at=now,
    )
    db.add(delivery)
    return delivery


def _delivery_view(delivery: WebhookDelivery) -> WebhookDeliveryView:
    return WebhookDeliveryView(
        id=delivery.id,
        payment_link_id=delivery.payment_link_id,
        event=delivery.event,
        target_url=delivery.target_url,
        payload=delivery.payload,
        status=delivery.status,
        attempts=delivery.attempts,
        next_attempt_at=as_utc(delivery.next_attempt_at),
        last_error=delivery.last_error,
        last_status_code=delivery.last_status_code,
        created_at=as_utc(delivery.created_at),
        delivered_at=as_utc(delivery.delivered_at) if delivery.delivered_at else None,
    )


class WebhookDispatcher:
    """Delivers outbox rows to merchant webhook URLs."""

    def __init__(
        self,
        session_factory,
        settings: Settings,
        clock: Clock = utcnow,
        transport: httpx.AsyncBaseTransport | None = None,
        service_name: str = "webhook-dispatcher",
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.transport = transport
        self.service_name = service_name

    async def _deliver_one(self, client: httpx.AsyncClient, row: dict) -> str:
        """POST one claimed delivery and record the outcome. Returns the new status."""

        payment_link_id_ctx.set(row["payment_link_id"])
        body = json.dumps(row["payload"], sort_keys=True, separators=(",", ":"))
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: row["signature"],
            EVENT_HEADER: row["event"],
            DELIVERY_HEADER: row["id"],
        }
        status_code: int | None = None
        error: str | None = None
        start = perf_counter()
        try:
            resp = await client.post(row["target_url"], content=body, headers=headers)
            status_code = resp.status_code
            if not 200 <= status_code < 300:
                error = f"HTTP {status_code}: {resp.text[:200]}"
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
        finally:
            webhook_delivery_seconds.labels(service=self.service_name, event=row["event"]).observe(
                max(0.0, perf_counter() - start)
            )

        now = self.clock()
        with self.session_factory() as db:
            if error is None:
                mark_outbox_delivered(db, WebhookDelivery, row["id"], now, status_code)
                new_status = "DELIVERED"
            else:
                new_status = record_outbox_failure(
                    db,
                    WebhookDelivery,
                    row["id"],
                    attempts=row["attempts"],
                    error=error,
                    status_code=status_code,
                    now=now,
                    max_attempts=self.settings.webhook_max_attempts,
                    backoff_base_seconds=self.settings.webhook_backoff_base_seconds,
                    backoff_max_seconds=self.settings.webhook_backoff_max_seconds,
                )
            db.commit()

        webhook_deliveries_total.labels(service=self.service_name, event=row["event"], outcome=new_status).inc()
        if new_status == "DELIVERED":
            logger.info(
                "webhook delivered id=%s link=%s event=%s status_code=%s",
                row["id"],
                row["payment_link_id"],
                row["event"],
                status_code,
            )
        elif new_status == DEAD:
            dlq_published_total.labels(service=self.service_name, event=row["event"]).inc()
            logger.error(
                "webhook dead-lettered id=%s link=%s event=%s attempts=%s error=%s",
                row["id"],
                row["payment_link_id"],
                row["event"],
                row["attempts"] + 1,
                error,
            )
        else:
            retries_total.labels(service=self.service_name, dependency="merchant_webhook").inc()
            logger.warning(
                "webhook delivery failed id=%s link=%s event=%s attempt=%s error=%s",
                row["id"],
                row["payment_link_id"],
                row["event"],
                row["attempts"] + 1,
                error,
            )
        return new_status

    async def deliver_due(self) -> int:
        """Run one claim-and-deliver pass. Returns how many rows were attempted."""

        now = self.clock()
        with self.session_factory() as db:
            rows = claim_outbox_batch(
                db,
                WebhookDelivery,
                now,
                limit=self.settings.webhook_batch_size,
                processing_timeout_seconds=self.settings.webhook_processing_timeout_seconds,
            )
            db.commit()
        if rows:
            async with httpx.AsyncClient(
                timeout=self.settings.webhook_timeout_seconds,
                transport=self.transport,
            ) as client:
                await asyncio.gather(*(self._deliver_one(client, row) for row in rows))
        with self.session_factory() as db:
            update_outbox_backlog_metrics(db, WebhookDelivery, self.service_name, self.clock())
        return len(rows)

    async def run_forever(self) -> None:
        """Continuously deliver due webhooks; sleeps only when the queue is idle."""

        logger.info("webhook dispatcher started")
        while True:
            try:
                attempted = await self.deliver_due()
            except Exception as exc:
                logger.exception("webhook dispatcher pass failed: %s", exc)
                attempted = 0
            if not attempted:
                await asyncio.sleep(self.settings.webhook_poll_interval_seconds)

    def list_deliveries(self, merchant_id: str, status: str | None, limit: int, offset: int) -> WebhookDeliveryPage:
        """One merchant's deliveries, newest first (dead-letter inspection)."""

        if status is not None and status not in DELIVERY_STATUSES:
            raise ValidationError(
                f"Invalid status. Valid options: {', '.join(DELIVERY_STATUSES)}", details={"field": "status"}
            )
        filters = [WebhookDelivery.merchant_id == merchant_id]
        if status is not None:
            filters.append(WebhookDelivery.status == status)
        with self.session_factory() as db:
            total = db.execute(select(func.count()).select_from(WebhookDelivery).where(*filters)).scalar_one()
            rows = (
                db.execute(
                    select(WebhookDelivery)
                    .where(*filters)
                    .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
                .scalars()
                .all()
            )
            return WebhookDeliveryPage(
                data=[_delivery_view(row) for row in rows],
                pagination=Pagination(total=total, limit=limit, offset=offset),
            )

    def retry_delivery(self, delivery_id: str, merchant_id: str) -> WebhookDeliveryView:
        """Requeue a dead-lettered delivery owned by the merchant."""

        with self.session_factory() as db:
            delivery = db.get(WebhookDelivery, delivery_id)
            if delivery is None:
                raise NotFoundError("Webhook delivery not found", details={"deliveryId": delivery_id})
            if delivery.merchant_id != merchant_id:
                raise OwnershipError("Webhook delivery belongs to another merchant")
            if not requeue_dead_delivery(db, WebhookDelivery, delivery_id, self.clock()):
                raise StateConflictError(
                    f"Cannot retry {delivery.status} delivery", current_status=delivery.status
                )
            db.commit()
            db.refresh(delivery)
            logger.info("webhook delivery requeued id=%s link=%s", delivery.id, delivery.payment_link_id)
            return _delivery_view(delivery)
