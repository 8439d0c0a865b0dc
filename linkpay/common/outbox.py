"""Reusable helpers for the webhook delivery outbox.

Rows are written in the same transaction as the payment link state change and
then claimed, delivered and retried by the dispatcher worker. The helpers are
model-agnostic so tests and scripts can share the same claim/requeue/mark logic.
"""

from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update

from linkpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total
from linkpay.common.timeutils import as_utc

PENDING = "PENDING"
PROCESSING = "PROCESSING"
DELIVERED = "DELIVERED"
DEAD = "DEAD"

DELIVERY_STATUSES = (PENDING, PROCESSING, DELIVERED, DEAD)


def backoff_delay(attempts: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff after `attempts` failures: base, 2*base, 4*base ... capped."""

    return min(max_seconds, base_seconds * (2 ** max(0, attempts - 1)))


def claim_outbox_batch(
    db,
    outbox_model,
    now: datetime,
    limit: int = 50,
    processing_timeout_seconds: int = 60,
) -> list[dict]:
    """Atomically claim due rows (and stale claims) for delivery."""

    table = outbox_model.__table__
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                (table.c.status == PENDING) & (table.c.next_attempt_at <= now),
                (table.c.status == PROCESSING)
                & (table.c.claimed_at.is_not(None))
                & (table.c.claimed_at < stale_before),
            )
        )
        .order_by(table.c.next_attempt_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(claim_ids))
        .values(status=PROCESSING, claimed_at=now)
        .returning(
            table.c.id,
            table.c.payment_link_id,
            table.c.event,
            table.c.target_url,
            table.c.payload,
            table.c.signature,
            table.c.attempts,
        )
    ).all()
    return [
        {
            "id": row.id,
            "payment_link_id": row.payment_link_id,
            "event": row.event,
            "target_url": row.target_url,
            "payload": row.payload,
            "signature": row.signature,
            "attempts": row.attempts,
        }
        for row in rows
    ]


def mark_outbox_delivered(db, outbox_model, delivery_id: str, now: datetime, status_code: int) -> None:
    """Mark one claimed row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == delivery_id, table.c.status == PROCESSING)
        .values(
            status=DELIVERED,
            attempts=table.c.attempts + 1,
            last_status_code=status_code,
            last_error=None,
            delivered_at=now,
        )
    )


def record_outbox_failure(
    db,
    outbox_model,
    delivery_id: str,
    attempts: int,
    error: str,
    status_code: int | None,
    now: datetime,
    max_attempts: int,
    backoff_base_seconds: float,
    backoff_max_seconds: float,
) -> str:
    """Record a failed attempt and either reschedule or dead-letter the row.

    `attempts` is the count before this failure. Returns the new status.
    """

    table = outbox_model.__table__
    attempts += 1
    values = {
        "attempts": attempts,
        "last_error": error[:500],
        "last_status_code": status_code,
        "claimed_at": None,
    }
    if attempts >= max_attempts:
        values["status"] = DEAD
    else:
        values["status"] = PENDING
        values["next_attempt_at"] = now + timedelta(
            seconds=backoff_delay(attempts, backoff_base_seconds, backoff_max_seconds)
        )
    db.execute(update(table).where(table.c.id == delivery_id, table.c.status == PROCESSING).values(**values))
    return values["status"]


def requeue_dead_delivery(db, outbox_model, delivery_id: str, now: datetime) -> bool:
    """Return a dead-lettered row to `PENDING` with a fresh attempt budget."""

    table = outbox_model.__table__
    result = db.execute(
        update(table)
        .where(table.c.id == delivery_id, table.c.status == DEAD)
        .values(status=PENDING, attempts=0, next_attempt_at=now, claimed_at=None)
    )
    return result.rowcount == 1


def update_outbox_backlog_metrics(db, outbox_model, service_name: str, now: datetime) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    pending_statuses = (PENDING, PROCESSING)
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        age_seconds = max(0.0, (now - as_utc(oldest_pending)).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
