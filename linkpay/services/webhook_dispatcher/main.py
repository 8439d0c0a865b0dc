"""Standalone webhook dispatcher process with health/metrics endpoints.

Use this when the API runs with `RUN_WEBHOOK_WORKER=false`; any number of
dispatcher replicas can share the outbox because claims skip locked rows.
Run with `uvicorn linkpay.services.webhook_dispatcher.main:create_app --factory`.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from linkpay.common.config import Settings, settings as default_settings
from linkpay.common.db import make_engine, make_session_factory
from linkpay.common.logging import configure_logging
from linkpay.common.metrics import metrics_response
from linkpay.common.startup import log_startup_config
from linkpay.common.tracing import instrument_app, setup_tracing
from linkpay.services.webhook_dispatcher.service import WebhookDispatcher


def create_app(settings: Settings | None = None, session_factory=None) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.service_name, settings.log_level)
    log_startup_config(settings, ["database_url", "webhook_max_attempts", "webhook_timeout_seconds"])
    if session_factory is None:
        session_factory = make_session_factory(make_engine(settings.database_url))
    dispatcher = WebhookDispatcher(session_factory, settings, service_name=settings.service_name)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run the delivery loop with FastAPI application lifecycle."""

        worker_task = asyncio.create_task(dispatcher.run_forever())
        app.state.worker_task = worker_task
        yield
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass

    app = FastAPI(title="LinkPay Webhook Dispatcher", lifespan=lifespan)
    app.state.dispatcher = dispatcher
    if setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint):
        instrument_app(app)

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app
