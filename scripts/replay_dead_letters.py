"""Requeue dead-lettered webhook deliveries.

Replay keeps the original signed payload and delivery id, so merchant-side
dedupe by `(paymentLinkId, event)` still applies.
"""

import argparse

from sqlalchemy import select

from linkpay.common.config import settings
from linkpay.common.db import make_engine, make_session_factory
from linkpay.common.outbox import DEAD, requeue_dead_delivery
from linkpay.common.timeutils import utcnow
from linkpay.services.merchant_api.models import WebhookDelivery


def replay(
    session_factory,
    delivery_id: str | None,
    payment_link_id: str | None,
    replay_all: bool,
    dry_run: bool,
) -> int:
    """Find matching dead letters and requeue them (or dry-run). Returns an exit code."""

    if not delivery_id and not payment_link_id and not replay_all:
        raise ValueError("Provide --delivery-id, --payment-link-id or --all")

    with session_factory() as db:
        query = select(WebhookDelivery).where(WebhookDelivery.status == DEAD)
        if delivery_id:
            query = query.where(WebhookDelivery.id == delivery_id)
        if payment_link_id:
            query = query.where(WebhookDelivery.payment_link_id == payment_link_id)
        matches = db.execute(query.order_by(WebhookDelivery.created_at)).scalars().all()
        if not matches:
            print("No matching dead-lettered deliveries found.")
            return 1

        for delivery in matches:
            print(
                f"Matched delivery id={delivery.id} link={delivery.payment_link_id} "
                f"event={delivery.event} attempts={delivery.attempts} last_error={delivery.last_error}"
            )
        if dry_run:
            print("Dry run only; nothing requeued.")
            return 0

        requeued = sum(requeue_dead_delivery(db, WebhookDelivery, delivery.id, utcnow()) for delivery in matches)
        db.commit()
    print(f"Requeued {requeued} deliveries.")
    return 0


def main() -> None:
    """CLI entrypoint for dead-letter replay."""

    parser = argparse.ArgumentParser(description="Requeue dead-lettered webhook deliveries.")
    parser.add_argument("--database-url", default=settings.database_url)
    parser.add_argument("--delivery-id", default=None)
    parser.add_argument("--payment-link-id", default=None)
    parser.add_argument("--all", dest="replay_all", action="store_true")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    session_factory = make_session_factory(make_engine(args.database_url))
    rc = replay(
        session_factory,
        delivery_id=args.delivery_id,
        payment_link_id=args.payment_link_id,
        replay_all=args.replay_all,
        dry_run=args.dry_run,
    )
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
