"""Payment link store.

Owns the payment link state machine. Every transition is a compare-and-swap on
`(id, status, state_version)` and writes its webhook outbox row in the same
transaction, so a link reaches at most one terminal state and each transition
produces at most one notification.
"""

from datetime import timedelta
from decimal import Decimal
from urllib.parse import quote, urlparse
from uuid import uuid4

from sqlalchemy import func, select, update

from linkpay.common.config import Settings
from linkpay.common.errors import NotFoundError, OwnershipError, StateConflictError, ValidationError
from linkpay.common.logging import logger, payment_link_id_ctx
from linkpay.common.metrics import (
    payment_link_transitions_total,
    payment_links_created_total,
    state_conflicts_total,
)
from linkpay.common.state_machine import (
    ALLOWED_TRANSITIONS,
    CANCELLED,
    EXPIRED,
    PAID,
    PENDING,
    TRANSITION_EVENTS,
    validate_transition,
)
from linkpay.common.timeutils import Clock, as_utc, utcnow
from linkpay.services.merchant_api.models import PaymentLink, PaymentLinkTransition
from linkpay.services.merchant_api.registry import MerchantRegistry
from linkpay.services.merchant_api.schemas import (
    Pagination,
    PaymentLinkCreateRequest,
    PaymentLinkPage,
    PaymentLinkSummary,
    PaymentLinkView,
    PaymentStatusView,
    VerifiedPaymentView,
)
from linkpay.services.webhook_dispatcher.service import enqueue_webhook

SUPPORTED_CURRENCIES = ("PM", "USDT", "USDC", "BNB", "PYUSD")
AMOUNT_MAX_DECIMALS = 18
# Numeric(38, 18) leaves 20 digits before the point.
AMOUNT_MAX_INTEGER_DIGITS = 20


def _validate_callback_url(name: str, value: str | None) -> str | None:
    if value is None or value == "":
        return None
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"{name} must be an absolute http(s) URL", details={"field": name})
    return value


def _link_view(link: PaymentLink) -> PaymentLinkView:
    return PaymentLinkView(
        id=link.id,
        payment_url=link.payment_url,
        qr_code=link.qr_code,
        amount=link.amount,
        currency=link.currency,
        description=link.description,
        order_id=link.order_id,
        status=link.status,
        expires_at=as_utc(link.expires_at),
        created_at=as_utc(link.created_at),
        redirect_url=link.redirect_url,
    )


def _status_view(link: PaymentLink) -> PaymentStatusView:
    return PaymentStatusView(
        id=link.id,
        status=link.status,
        amount=link.amount,
        currency=link.currency,
        description=link.description,
        order_id=link.order_id,
        expires_at=as_utc(link.expires_at),
        created_at=as_utc(link.created_at),
        paid_at=as_utc(link.paid_at) if link.paid_at else None,
        transaction_hash=link.transaction_hash,
        redirect_url=link.redirect_url,
    )


def _summary(link: PaymentLink) -> PaymentLinkSummary:
    return PaymentLinkSummary(
        id=link.id,
        amount=link.amount,
        currency=link.currency,
        status=link.status,
        description=link.description,
        order_id=link.order_id,
        created_at=as_utc(link.created_at),
        expires_at=as_utc(link.expires_at),
        paid_at=as_utc(link.paid_at) if link.paid_at else None,
    )


class PaymentLinkService:
    """Create, read, list, cancel and verify payment links."""

    def __init__(
        self,
        session_factory,
        registry: MerchantRegistry,
        settings: Settings,
        clock: Clock = utcnow,
        service_name: str = "merchant-api",
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.settings = settings
        self.clock = clock
        self.service_name = service_name

    def _transition(
        self,
        db,
        link: PaymentLink,
        new_status: str,
        reason: str,
        conflict_message: str,
        extra_values: dict | None = None,
    ) -> None:
        """Apply one validated transition with optimistic concurrency.

        The write is guarded by `(id, status, state_version)`; when another
        writer got there first the session is rolled back and a
        `StateConflictError` naming the winner's status is raised. The caller
        commits on success.
        """

        validate_transition(link.status, new_status)
        from_status = link.status
        current_version = link.state_version
        now = self.clock()
        table = PaymentLink.__table__

        values = {"status": new_status, "state_version": current_version + 1, "updated_at": now}
        values.update(extra_values or {})
        result = db.execute(
            update(table)
            .where(
                table.c.id == link.id,
                table.c.status == from_status,
                table.c.state_version == current_version,
            )
            .values(**values)
        )
        if result.rowcount != 1:
            db.rollback()
            current = db.execute(select(table.c.status).where(table.c.id == link.id)).scalar_one()
            state_conflicts_total.labels(service=self.service_name, operation=reason).inc()
            raise StateConflictError(conflict_message.format(status=current), current_status=current)

        db.refresh(link)
        db.add(
            PaymentLinkTransition(
                payment_link_id=link.id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
                created_at=now,
            )
        )
        event = TRANSITION_EVENTS.get(new_status)
        if event is not None and link.webhook_url:
            secret = self.registry.webhook_secret(db, link.merchant_id)
            enqueue_webhook(db, link, event, secret, now)
        payment_link_transitions_total.labels(service=self.service_name, to_state=new_status).inc()
        logger.info(
            "payment_link_transition id=%s from=%s to=%s reason=%s",
            link.id,
            from_status,
            new_status,
            reason,
        )

    def _expire_if_overdue(self, db, link: PaymentLink) -> None:
        """Lazy expiry: a pending link read past its deadline becomes expired."""

        if link.status != PENDING or self.clock() <= as_utc(link.expires_at):
            return
        try:
            self._transition(
                db,
                link,
                EXPIRED,
                reason="deadline_passed",
                conflict_message="Payment already {status}",
            )
            db.commit()
        except StateConflictError:
            # Someone else moved it first; the rolled-back instance reloads on access.
            logger.info("lazy expiry lost race id=%s", link.id)

    def _load(self, db, link_id: str) -> PaymentLink:
        link = db.get(PaymentLink, link_id)
        if link is None:
            raise NotFoundError("Payment link not found", details={"paymentLinkId": link_id})
        return link

    def create(self, merchant_id: str, req: PaymentLinkCreateRequest) -> PaymentLinkView:
        """Validate the request and persist a new `pending` link."""

        amount = req.amount
        if amount is None or not amount.is_finite() or amount <= 0:
            raise ValidationError("Valid amount is required", details={"field": "amount"})
        if -amount.as_tuple().exponent > AMOUNT_MAX_DECIMALS:
            raise ValidationError(
                f"amount supports at most {AMOUNT_MAX_DECIMALS} decimal places", details={"field": "amount"}
            )
        if amount.adjusted() >= AMOUNT_MAX_INTEGER_DIGITS:
            raise ValidationError(
                f"amount supports at most {AMOUNT_MAX_INTEGER_DIGITS} integer digits", details={"field": "amount"}
            )
        currency = (req.currency or "").strip().upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise ValidationError(
                f"Invalid currency. Valid options: {', '.join(SUPPORTED_CURRENCIES)}",
                details={"field": "currency"},
            )
        expires_in = req.expires_in if req.expires_in is not None else self.settings.default_expires_in_seconds
        if expires_in <= 0 or expires_in > self.settings.max_expires_in_seconds:
            raise ValidationError(
                f"expiresIn must be between 1 and {self.settings.max_expires_in_seconds} seconds",
                details={"field": "expiresIn"},
            )
        webhook_url = _validate_callback_url("webhookUrl", req.webhook_url)
        redirect_url = _validate_callback_url("redirectUrl", req.redirect_url)

        now = self.clock()
        link_id = str(uuid4())
        payment_link_id_ctx.set(link_id)
        payment_url = f"{self.settings.site_url.rstrip('/')}/pay/{link_id}"
        link = PaymentLink(
            id=link_id,
            merchant_id=merchant_id,
            amount=amount,
            currency=currency,
            description=req.description or "",
            order_id=req.order_id or str(uuid4()),
            status=PENDING,
            state_version=0,
            payment_url=payment_url,
            qr_code=f"{self.settings.qr_service_url}{quote(payment_url, safe='')}",
            webhook_url=webhook_url,
            redirect_url=redirect_url,
            metadata_=req.metadata or {},
            expires_at=now + timedelta(seconds=expires_in),
            created_at=now,
            updated_at=now,
        )
        with self.session_factory() as db:
            db.add(link)
            db.flush()
            db.add(
                PaymentLinkTransition(
                    payment_link_id=link.id,
                    from_state=None,
                    to_state=PENDING,
                    reason="payment_link_created",
                    created_at=now,
                )
            )
            db.commit()

        payment_links_created_total.labels(service=self.service_name, currency=currency).inc()
        logger.info("payment_link_created id=%s amount=%s currency=%s", link.id, amount, currency)
        return _link_view(link)

    def get(self, link_id: str) -> PaymentStatusView:
        """Public status read; flips overdue pending links to expired."""

        payment_link_id_ctx.set(link_id)
        with self.session_factory() as db:
            link = self._load(db, link_id)
            self._expire_if_overdue(db, link)
            return _status_view(link)

    def list_links(self, merchant_id: str, status: str | None, limit: int, offset: int) -> PaymentLinkPage:
        """List one merchant's links, newest first."""

        if status is not None and status not in ALLOWED_TRANSITIONS:
            raise ValidationError(
                f"Invalid status. Valid options: {', '.join(ALLOWED_TRANSITIONS)}", details={"field": "status"}
            )
        with self.session_factory() as db:
            overdue = (
                db.execute(
                    select(PaymentLink).where(
                        PaymentLink.merchant_id == merchant_id,
                        PaymentLink.status == PENDING,
                        PaymentLink.expires_at < self.clock(),
                    )
                )
                .scalars()
                .all()
            )
            for link in overdue:
                self._expire_if_overdue(db, link)

            filters = [PaymentLink.merchant_id == merchant_id]
            if status is not None:
                filters.append(PaymentLink.status == status)
            total = db.execute(select(func.count()).select_from(PaymentLink).where(*filters)).scalar_one()
            links = (
                db.execute(
                    select(PaymentLink)
                    .where(*filters)
                    .order_by(PaymentLink.created_at.desc(), PaymentLink.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
                .scalars()
                .all()
            )
            return PaymentLinkPage(
                data=[_summary(link) for link in links],
                pagination=Pagination(total=total, limit=limit, offset=offset),
            )

    def cancel(self, link_id: str, merchant_id: str) -> None:
        """Owner-only cancel of a pending link."""

        payment_link_id_ctx.set(link_id)
        with self.session_factory() as db:
            link = self._load(db, link_id)
            if link.merchant_id != merchant_id:
                raise OwnershipError("Payment link belongs to another merchant")
            self._expire_if_overdue(db, link)
            conflict_message = "Cannot cancel {status} payment"
            if link.status != PENDING:
                state_conflicts_total.labels(service=self.service_name, operation="cancel").inc()
                raise StateConflictError(conflict_message.format(status=link.status), current_status=link.status)
            self._transition(db, link, CANCELLED, reason="cancelled_by_merchant", conflict_message=conflict_message)
            db.commit()

    def verify(
        self,
        link_id: str,
        transaction_hash: str | None,
        paid_amount: Decimal,
        paid_currency: str | None,
    ) -> VerifiedPaymentView:
        """Confirm an on-chain payment reported by the trusted verifier.

        An omitted `paid_currency` is taken to be the link's own currency; a
        different currency is rejected, never converted.
        """

        payment_link_id_ctx.set(link_id)
        transaction_hash = (transaction_hash or "").strip()
        if not transaction_hash:
            raise ValidationError("transactionHash required", details={"field": "transactionHash"})
        if paid_amount.is_finite() and paid_amount.adjusted() >= AMOUNT_MAX_INTEGER_DIGITS:
            raise ValidationError(
                f"paidAmount supports at most {AMOUNT_MAX_INTEGER_DIGITS} integer digits",
                details={"field": "paidAmount"},
            )

        with self.session_factory() as db:
            link = self._load(db, link_id)
            self._expire_if_overdue(db, link)
            conflict_message = "Payment already {status}"
            if link.status != PENDING:
                state_conflicts_total.labels(service=self.service_name, operation="verify").inc()
                raise StateConflictError(conflict_message.format(status=link.status), current_status=link.status)

            if paid_currency is not None and paid_currency.strip().upper() != link.currency:
                raise ValidationError(
                    f"Payment currency {paid_currency} does not match requested {link.currency}",
                    kind="currency_mismatch",
                    details={"expected": link.currency, "received": paid_currency},
                )
            if not paid_amount.is_finite() or paid_amount < link.amount:
                raise ValidationError("Insufficient payment amount", kind="insufficient_payment")

            self._transition(
                db,
                link,
                PAID,
                reason="payment_verified",
                conflict_message=conflict_message,
                extra_values={
                    "paid_at": self.clock(),
                    "transaction_hash": transaction_hash,
                    "paid_amount": paid_amount,
                },
            )
            db.commit()

        logger.info("payment_verified id=%s tx=%s", link.id, transaction_hash)
        return VerifiedPaymentView(
            id=link.id,
            status=link.status,
            paid_at=as_utc(link.paid_at),
            transaction_hash=link.transaction_hash,
            redirect_url=link.redirect_url,
        )
