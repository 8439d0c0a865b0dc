"""Shared fixtures: in-memory database, controllable clock and a fake merchant endpoint."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from linkpay.common.config import Settings
from linkpay.common.db import Base, make_engine, make_session_factory
from linkpay.services.merchant_api import models  # noqa: F401  (registers tables)
from linkpay.services.merchant_api.main import create_app
from linkpay.services.merchant_api.registry import MerchantRegistry
from linkpay.services.merchant_api.schemas import PaymentLinkCreateRequest
from linkpay.services.merchant_api.service import PaymentLinkService
from linkpay.services.webhook_dispatcher.service import WebhookDispatcher


class FakeClock:
    """Injectable UTC clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class WebhookReceiver:
    """Stands in for merchant back-ends behind `httpx.MockTransport`."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_codes: list[int] = []
        self.fail_with_connect_error = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with_connect_error:
            raise httpx.ConnectError("connection refused", request=request)
        status = self.status_codes.pop(0) if self.status_codes else 200
        return httpx.Response(status, text="ok" if status < 300 else "nope")


@pytest.fixture()
def settings():
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        redis_url="",
        otel_exporter_otlp_endpoint="",
        run_webhook_worker=False,
        site_url="https://pay.example.test",
        webhook_max_attempts=3,
        webhook_backoff_base_seconds=2,
        webhook_backoff_max_seconds=60,
    )


@pytest.fixture()
def session_factory(settings):
    engine = make_engine(settings.database_url)
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def receiver():
    return WebhookReceiver()


@pytest.fixture()
def registry(session_factory, clock):
    return MerchantRegistry(session_factory, clock=clock)


@pytest.fixture()
def links(session_factory, registry, settings, clock):
    return PaymentLinkService(session_factory, registry, settings, clock=clock)


@pytest.fixture()
def dispatcher(session_factory, settings, clock, receiver):
    return WebhookDispatcher(session_factory, settings, clock=clock, transport=httpx.MockTransport(receiver))


@pytest.fixture()
def merchant(registry):
    return registry.issue_api_key("0xMerchantWallet", "Coffee Shop")


@pytest.fixture()
def make_link(links, merchant):
    def _make(merchant_id=None, **overrides):
        body = {"amount": Decimal("100"), "currency": "PM", "webhook_url": "https://merchant.example/hooks"}
        body.update(overrides)
        return links.create(merchant_id or merchant.merchant_id, PaymentLinkCreateRequest(**body))

    return _make


@pytest.fixture()
def client(settings, session_factory, clock, receiver):
    app = create_app(
        settings,
        session_factory=session_factory,
        clock=clock,
        webhook_transport=httpx.MockTransport(receiver),
    )
    return TestClient(app)


@pytest.fixture()
def api_merchant(client):
    """Issue a key over HTTP; returns the response body."""

    resp = client.post("/generate-api-key", json={"walletAddress": "0xAAA", "merchantName": "Store A"})
    assert resp.status_code == 200
    return resp.json()


class FakeRedis:
    """Implements only the hash commands the rate limiter uses."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}

    def hmget(self, key, *fields):
        stored = self.hashes.get(key, {})
        return [stored.get(field) for field in fields]

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, key, seconds):
        return True


@pytest.fixture()
def fake_redis():
    return FakeRedis()
