"""HTTP surface for merchants, payment links and webhook deliveries.

Run with `uvicorn linkpay.services.merchant_api.main:create_app --factory`.
Collaborators (session factory, rate limiter, clock, webhook transport) are
injected so tests can build the app against an in-memory database.
"""

import asyncio
import hmac
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

import httpx
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from linkpay.common.config import Settings, settings as default_settings
from linkpay.common.db import make_engine, make_session_factory
from linkpay.common.errors import AuthError, InternalError, LinkPayError
from linkpay.common.logging import configure_logging, logger, merchant_id_ctx, trace_id_ctx
from linkpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from linkpay.common.ratelimit import TokenBucketLimiter
from linkpay.common.startup import log_startup_config
from linkpay.common.timeutils import Clock, utcnow
from linkpay.common.tracing import instrument_app, setup_tracing
from linkpay.services.merchant_api.docs import API_DOCS
from linkpay.services.merchant_api.registry import ONE_TIME_DISCLOSURE, MerchantRegistry
from linkpay.services.merchant_api.schemas import (
    ApiKeyIssuedResponse,
    ApiKeyRegeneratedResponse,
    ApiKeyRequest,
    CancelPaymentLinkResponse,
    CreatePaymentLinkResponse,
    PaymentLinkCreateRequest,
    PaymentLinkPage,
    PaymentStatusView,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookDeliveryPage,
    WebhookRetryResponse,
    WebhookSecretRotatedResponse,
)
from linkpay.services.merchant_api.service import PaymentLinkService
from linkpay.services.webhook_dispatcher.service import WebhookDispatcher

HTTP_ERROR_KINDS = {404: "not_found", 405: "validation_error"}


def _error_response(error: LinkPayError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_envelope())


def _register_error_handlers(app: FastAPI) -> None:
    """Render every failure through the `{"error": {kind, message, details}}` envelope."""

    @app.exception_handler(LinkPayError)
    async def linkpay_error_handler(_: Request, exc: LinkPayError):
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": str(err.get("msg", "")), "type": err.get("type")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": {"kind": "validation_error", "message": "Invalid request", "details": {"errors": errors}}},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(_: Request, exc: StarletteHTTPException):
        kind = HTTP_ERROR_KINDS.get(exc.status_code, "http_error")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"kind": kind, "message": str(exc.detail)}},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error route=%s: %s", request.url.path, exc)
        return _error_response(InternalError("Internal server error"))


def create_app(
    settings: Settings | None = None,
    session_factory=None,
    rate_limiter: TokenBucketLimiter | None = None,
    clock: Clock = utcnow,
    webhook_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the merchant API with its registry, link store and dispatcher."""

    settings = settings or default_settings
    configure_logging(settings.service_name, settings.log_level)
    log_startup_config(
        settings, ["database_url", "redis_url", "site_url", "run_webhook_worker", "verifier_token"]
    )
    if session_factory is None:
        session_factory = make_session_factory(make_engine(settings.database_url))
    if rate_limiter is None:
        rate_limiter = TokenBucketLimiter.from_url(settings.redis_url, settings.rate_limit_per_minute)

    registry = MerchantRegistry(session_factory, clock=clock)
    links = PaymentLinkService(session_factory, registry, settings, clock=clock, service_name=settings.service_name)
    dispatcher = WebhookDispatcher(
        session_factory,
        settings,
        clock=clock,
        transport=webhook_transport,
        service_name=settings.service_name,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the webhook delivery worker alongside the API when enabled."""

        worker_task = None
        if settings.run_webhook_worker:
            worker_task = asyncio.create_task(dispatcher.run_forever())
        yield
        if worker_task is not None:
            worker_task.cancel()
            try:
                await worker_task
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="LinkPay Merchant API", docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.registry = registry
    app.state.links = links
    app.state.dispatcher = dispatcher
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint):
        instrument_app(app)
    _register_error_handlers(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count/latency and bind a correlation id for logs."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        trace_token = trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["x-correlation-id"] = trace_id_ctx.get()
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            trace_id_ctx.reset(trace_token)
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    async def current_merchant(x_api_key: str | None = Header(default=None)) -> str:
        """Auth gate for protected routes.

        Async so the merchant id is bound in the request context that the
        route handler inherits.
        """

        merchant_id = registry.authenticate(x_api_key)
        merchant_id_ctx.set(merchant_id)
        return merchant_id

    def enforce_rate_limit(scope: str, identity: str) -> None:
        if rate_limiter is not None:
            rate_limiter.enforce(scope, identity)

    @app.post("/generate-api-key", response_model=ApiKeyIssuedResponse)
    def generate_api_key(req: ApiKeyRequest, request: Request):
        """Issue an API key and webhook secret; both are shown only once."""

        enforce_rate_limit("generate-api-key", request.client.host if request.client else "unknown")
        issued = registry.issue_api_key(req.wallet_address, req.merchant_name)
        return ApiKeyIssuedResponse(
            api_key=issued.api_key,
            merchant_id=issued.merchant_id,
            webhook_secret=issued.webhook_secret,
            message=ONE_TIME_DISCLOSURE,
        )

    @app.post("/regenerate-api-key", response_model=ApiKeyRegeneratedResponse)
    def regenerate_api_key(merchant_id: str = Depends(current_merchant)):
        api_key = registry.regenerate_api_key(merchant_id)
        return ApiKeyRegeneratedResponse(api_key=api_key, merchant_id=merchant_id, message=ONE_TIME_DISCLOSURE)

    @app.post("/rotate-webhook-secret", response_model=WebhookSecretRotatedResponse)
    def rotate_webhook_secret(merchant_id: str = Depends(current_merchant)):
        secret = registry.rotate_webhook_secret(merchant_id)
        return WebhookSecretRotatedResponse(
            webhook_secret=secret,
            message="Webhooks enqueued from now on are signed with the new secret.",
        )

    @app.post("/create-payment-link", response_model=CreatePaymentLinkResponse)
    def create_payment_link(req: PaymentLinkCreateRequest, merchant_id: str = Depends(current_merchant)):
        enforce_rate_limit("create-payment-link", merchant_id)
        return CreatePaymentLinkResponse(payment_link=links.create(merchant_id, req))

    @app.get("/payment/{payment_link_id}", response_model=PaymentStatusView)
    def get_payment(payment_link_id: str):
        """Public status read; also applies lazy expiry."""

        return links.get(payment_link_id)

    @app.post("/verify-payment", response_model=VerifyPaymentResponse)
    def verify_payment(req: VerifyPaymentRequest, x_verifier_token: str | None = Header(default=None)):
        """Called by the on-chain verifier once a payment is confirmed."""

        if settings.verifier_token and not hmac.compare_digest(
            (x_verifier_token or "").encode("utf-8"), settings.verifier_token.encode("utf-8")
        ):
            raise AuthError("Invalid verifier token", kind="invalid_verifier_token")
        verified = links.verify(req.payment_link_id, req.transaction_hash, req.paid_amount, req.paid_currency)
        return VerifyPaymentResponse(message="Payment verified successfully", payment_link=verified)

    @app.get("/payment-links", response_model=PaymentLinkPage)
    def list_payment_links(
        status: str | None = Query(default=None),
        limit: int = Query(default=50, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        merchant_id: str = Depends(current_merchant),
    ):
        return links.list_links(merchant_id, status, limit, offset)

    @app.post("/cancel/{payment_link_id}", response_model=CancelPaymentLinkResponse)
    def cancel_payment_link(payment_link_id: str, merchant_id: str = Depends(current_merchant)):
        links.cancel(payment_link_id, merchant_id)
        return CancelPaymentLinkResponse(message="Payment link cancelled")

    @app.get("/webhook-deliveries", response_model=WebhookDeliveryPage)
    def list_webhook_deliveries(
        status: str | None = Query(default=None),
        limit: int = Query(default=50, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        merchant_id: str = Depends(current_merchant),
    ):
        return dispatcher.list_deliveries(merchant_id, status, limit, offset)

    @app.post("/webhook-deliveries/{delivery_id}/retry", response_model=WebhookRetryResponse)
    def retry_webhook_delivery(delivery_id: str, merchant_id: str = Depends(current_merchant)):
        delivery = dispatcher.retry_delivery(delivery_id, merchant_id)
        return WebhookRetryResponse(message="Webhook delivery requeued", delivery=delivery)

    @app.get("/docs")
    def docs(request: Request):
        """Static machine-readable API description."""

        return {**API_DOCS, "baseUrl": str(request.base_url).rstrip("/")}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
