"""HTTP surface: routing, auth gate, error envelope and end-to-end scenarios."""

import asyncio
import json
import logging
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from linkpay.common.logging import logger, merchant_id_ctx, payment_link_id_ctx
from linkpay.common.ratelimit import TokenBucketLimiter
from linkpay.common.signing import verify_signature
from linkpay.services.merchant_api.main import create_app



def _create(client, api_key, **body):
    payload = {"amount": 100, "currency": "PM", "webhookUrl": "https://merchant.example/hooks"}
    payload.update(body)
    resp = client.post("/create-payment-link", json=payload, headers={"x-api-key": api_key})
    assert resp.status_code == 200, resp.text
    return resp.json()["paymentLink"]


def _issue(client, name):
    return client.post("/generate-api-key", json={"walletAddress": f"0x{name}", "merchantName": name}).json()


def test_generate_api_key_discloses_once(client, api_merchant):
    assert api_merchant["success"] is True
    assert api_merchant["apiKey"].startswith("pm_live_")
    assert api_merchant["merchantId"]
    assert api_merchant["webhookSecret"]
    assert "only be shown once" in api_merchant["message"]


def test_generate_api_key_validates_input(client):
    resp = client.post("/generate-api-key", json={"walletAddress": "0xabc"})
    assert resp.status_code == 400
    assert resp.json()["error"]["kind"] == "validation_error"


def test_protected_routes_distinguish_missing_and_invalid_keys(client):
    missing = client.get("/payment-links")
    assert missing.status_code == 401
    assert missing.json()["error"]["kind"] == "unauthorized"

    invalid = client.post("/cancel/abc", headers={"x-api-key": "pm_live_wrong"})
    assert invalid.status_code == 401
    assert invalid.json()["error"]["kind"] == "invalid_api_key"


def test_create_returns_public_projection(client, api_merchant, clock):
    link = _create(client, api_merchant["apiKey"], description="Latte", orderId="o-1", metadata={"table": 4})
    assert link["status"] == "pending"
    assert link["amount"] == "100"
    assert link["currency"] == "PM"
    assert link["orderId"] == "o-1"
    assert link["paymentUrl"].endswith(f"/pay/{link['id']}")
    assert link["qrCode"].startswith("https://api.qrserver.com/")
    created = datetime.fromisoformat(link["createdAt"].replace("Z", "+00:00"))
    expires = datetime.fromisoformat(link["expiresAt"].replace("Z", "+00:00"))
    assert (expires - created).total_seconds() == 3600
    assert "merchantId" not in link
    assert "webhookUrl" not in link
    assert "metadata" not in link


def test_create_rejects_bad_currency_and_amount(client, api_merchant):
    headers = {"x-api-key": api_merchant["apiKey"]}
    bad_currency = client.post("/create-payment-link", json={"amount": 1, "currency": "EUR"}, headers=headers)
    assert bad_currency.status_code == 400
    assert "Valid options" in bad_currency.json()["error"]["message"]
    bad_amount = client.post("/create-payment-link", json={"amount": -1, "currency": "PM"}, headers=headers)
    assert bad_amount.status_code == 400
    not_a_number = client.post("/create-payment-link", json={"amount": "lots", "currency": "PM"}, headers=headers)
    assert not_a_number.status_code == 400
    assert not_a_number.json()["error"]["kind"] == "validation_error"


def test_scenario_lazy_expiry_dispatches_one_webhook(client, api_merchant, clock, receiver):
    link = _create(client, api_merchant["apiKey"], expiresIn=60)
    assert client.get(f"/payment/{link['id']}").json()["status"] == "pending"

    clock.advance(61)
    assert client.get(f"/payment/{link['id']}").json()["status"] == "expired"
    assert client.get(f"/payment/{link['id']}").json()["status"] == "expired"

    asyncio.run(client.app.state.dispatcher.deliver_due())
    assert [r.headers["X-PM-Event"] for r in receiver.requests] == ["payment.expired"]


def test_scenario_verify_then_read(client, api_merchant, receiver):
    link = _create(client, api_merchant["apiKey"], redirectUrl="https://shop.example/thanks")
    resp = client.post(
        "/verify-payment",
        json={"paymentLinkId": link["id"], "transactionHash": "0xabc", "paidAmount": 100},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["paymentLink"]["status"] == "paid"
    assert body["paymentLink"]["redirectUrl"] == "https://shop.example/thanks"

    status = client.get(f"/payment/{link['id']}").json()
    assert status["transactionHash"] == "0xabc"
    assert status["paidAt"] is not None

    asyncio.run(client.app.state.dispatcher.deliver_due())
    request = receiver.requests[0]
    delivered = json.loads(request.content)
    assert delivered["event"] == "payment.completed"
    assert verify_signature(delivered, api_merchant["webhookSecret"], request.headers["X-PM-Signature"])


def test_scenario_insufficient_amount(client, api_merchant):
    link = _create(client, api_merchant["apiKey"], amount=50)
    resp = client.post(
        "/verify-payment",
        json={"paymentLinkId": link["id"], "transactionHash": "0xabc", "paidAmount": 40, "paidCurrency": "PM"},
    )
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["kind"] == "insufficient_payment"
    assert error["message"].lower() == "insufficient payment amount"
    assert client.get(f"/payment/{link['id']}").json()["status"] == "pending"


def test_scenario_cross_merchant_cancel_forbidden(client, api_merchant):
    other = _issue(client, "StoreB")
    link = _create(client, other["apiKey"])
    resp = client.post(f"/cancel/{link['id']}", headers={"x-api-key": api_merchant["apiKey"]})
    assert resp.status_code == 403
    assert resp.json()["error"]["kind"] == "forbidden"
    assert client.get(f"/payment/{link['id']}").json()["status"] == "pending"


def test_scenario_second_verify_conflicts_without_second_webhook(client, api_merchant, receiver):
    link = _create(client, api_merchant["apiKey"])
    body = {"paymentLinkId": link["id"], "transactionHash": "0xabc", "paidAmount": 100, "paidCurrency": "PM"}
    assert client.post("/verify-payment", json=body).status_code == 200

    again = client.post("/verify-payment", json={**body, "transactionHash": "0xdef"})
    assert again.status_code == 400
    error = again.json()["error"]
    assert error["kind"] == "state_conflict"
    assert error["message"] == "Payment already paid"
    assert error["details"] == {"currentStatus": "paid"}

    asyncio.run(client.app.state.dispatcher.deliver_due())
    assert len(receiver.requests) == 1


def test_verify_unknown_link_is_not_found(client):
    resp = client.post(
        "/verify-payment", json={"paymentLinkId": "nope", "transactionHash": "0x1", "paidAmount": 1}
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["kind"] == "not_found"


def test_cancel_flow(client, api_merchant):
    headers = {"x-api-key": api_merchant["apiKey"]}
    link = _create(client, api_merchant["apiKey"])
    resp = client.post(f"/cancel/{link['id']}", headers=headers)
    assert resp.json() == {"success": True, "message": "Payment link cancelled"}

    again = client.post(f"/cancel/{link['id']}", headers=headers)
    assert again.status_code == 400
    assert again.json()["error"]["message"] == "Cannot cancel cancelled payment"
    assert client.post("/cancel/missing", headers=headers).status_code == 404


def test_list_is_tenant_scoped(client, api_merchant, clock):
    other = _issue(client, "StoreB")
    mine = []
    for _ in range(3):
        mine.append(_create(client, api_merchant["apiKey"])["id"])
        _create(client, other["apiKey"])
        clock.advance(1)

    resp = client.get("/payment-links", params={"limit": 2}, headers={"x-api-key": api_merchant["apiKey"]})
    body = resp.json()
    assert body["pagination"] == {"total": 3, "limit": 2, "offset": 0}
    assert [item["id"] for item in body["data"]] == [mine[2], mine[1]]

    everything = client.get("/payment-links", headers={"x-api-key": api_merchant["apiKey"]}).json()
    assert {item["id"] for item in everything["data"]} == set(mine)


def test_list_rejects_bad_query(client, api_merchant):
    headers = {"x-api-key": api_merchant["apiKey"]}
    assert client.get("/payment-links", params={"limit": 0}, headers=headers).status_code == 400
    bad_status = client.get("/payment-links", params={"status": "refunded"}, headers=headers)
    assert bad_status.status_code == 400
    assert bad_status.json()["error"]["kind"] == "validation_error"


def test_regenerate_key_revokes_old_key(client, api_merchant):
    resp = client.post("/regenerate-api-key", headers={"x-api-key": api_merchant["apiKey"]})
    new_key = resp.json()["apiKey"]
    assert resp.json()["merchantId"] == api_merchant["merchantId"]
    old = client.get("/payment-links", headers={"x-api-key": api_merchant["apiKey"]})
    assert old.json()["error"]["kind"] == "invalid_api_key"
    assert client.get("/payment-links", headers={"x-api-key": new_key}).status_code == 200


def test_dead_letter_inspection_and_retry(client, api_merchant, receiver, clock):
    headers = {"x-api-key": api_merchant["apiKey"]}
    link = _create(client, api_merchant["apiKey"])
    client.post(f"/cancel/{link['id']}", headers=headers)
    receiver.status_codes = [500, 500, 500]
    for _ in range(3):
        asyncio.run(client.app.state.dispatcher.deliver_due())
        clock.advance(60)

    dead = client.get("/webhook-deliveries", params={"status": "DEAD"}, headers=headers).json()
    assert dead["pagination"]["total"] == 1
    delivery = dead["data"][0]
    assert delivery["event"] == "payment.cancelled"
    assert delivery["attempts"] == 3

    retried = client.post(f"/webhook-deliveries/{delivery['id']}/retry", headers=headers)
    assert retried.status_code == 200
    assert retried.json()["delivery"]["status"] == "PENDING"


def test_verifier_token_guards_verify_when_configured(settings, session_factory, clock):
    settings.verifier_token = "verifier-secret"
    client = TestClient(create_app(settings, session_factory=session_factory, clock=clock))
    merchant = _issue(client, "Guarded")
    link = _create(client, merchant["apiKey"])
    body = {"paymentLinkId": link["id"], "transactionHash": "0xabc", "paidAmount": 100}

    denied = client.post("/verify-payment", json=body)
    assert denied.status_code == 401
    assert denied.json()["error"]["kind"] == "invalid_verifier_token"
    allowed = client.post("/verify-payment", json=body, headers={"x-verifier-token": "verifier-secret"})
    assert allowed.status_code == 200


def test_key_issuance_is_rate_limited(settings, session_factory, clock, fake_redis):
    limiter = TokenBucketLimiter(fake_redis, limit_per_minute=1)
    client = TestClient(create_app(settings, session_factory=session_factory, clock=clock, rate_limiter=limiter))
    assert client.post("/generate-api-key", json={"walletAddress": "0x1", "merchantName": "a"}).status_code == 200
    resp = client.post("/generate-api-key", json={"walletAddress": "0x1", "merchantName": "a"})
    assert resp.status_code == 429
    assert resp.json()["error"]["kind"] == "rate_limited"


def test_docs_health_metrics_and_unknown_routes(client):
    docs = client.get("/docs").json()
    assert docs["authentication"]["header"] == "x-api-key"
    assert {"POST /create-payment-link", "GET /payment/:id"} <= {
        f"{e['method']} {e['path']}" for e in docs["endpoints"]
    }
    assert client.get("/health").json() == {"ok": True}
    assert "http_requests_total" in client.get("/metrics").text

    missing = client.get("/nope")
    assert missing.status_code == 404
    assert missing.json()["error"]["kind"] == "not_found"


def test_cors_is_permissive(client):
    resp = client.options(
        "/create-payment-link",
        headers={"Origin": "https://shop.example", "Access-Control-Request-Method": "POST"},
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] in ("*", "https://shop.example")


def test_wrong_method_uses_error_envelope(client):
    resp = client.delete("/create-payment-link")
    assert resp.status_code == 405
    assert resp.json()["error"]["kind"] == "validation_error"


def test_amounts_beyond_column_range_are_rejected(client, api_merchant):
    headers = {"x-api-key": api_merchant["apiKey"]}
    huge = client.post("/create-payment-link", json={"amount": "1e25", "currency": "PM"}, headers=headers)
    assert huge.status_code == 400
    assert huge.json()["error"]["kind"] == "validation_error"
    assert huge.json()["error"]["details"] == {"field": "amount"}

    link = _create(client, api_merchant["apiKey"])
    resp = client.post(
        "/verify-payment",
        json={"paymentLinkId": link["id"], "transactionHash": "0xabc", "paidAmount": "1e25"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["details"] == {"field": "paidAmount"}
    assert client.get(f"/payment/{link['id']}").json()["status"] == "pending"


class ContextRecorder(logging.Handler):
    """Captures the merchant/link context vars as they are when a record is emitted."""

    def __init__(self) -> None:
        super().__init__()
        self.records: list[tuple[str, str, str]] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append((record.getMessage(), merchant_id_ctx.get(), payment_link_id_ctx.get()))

    def context_at(self, prefix: str) -> tuple[str, str]:
        for message, merchant_id, link_id in self.records:
            if message.startswith(prefix):
                return merchant_id, link_id
        raise AssertionError(f"no log record starting with {prefix!r}")


@pytest.fixture()
def log_context():
    recorder = ContextRecorder()
    previous_level = logger.level
    logger.addHandler(recorder)
    logger.setLevel(logging.INFO)
    yield recorder
    logger.removeHandler(recorder)
    logger.setLevel(previous_level)


def test_log_records_carry_merchant_and_link_context(client, api_merchant, log_context):
    link = _create(client, api_merchant["apiKey"])
    client.post(
        "/verify-payment",
        json={"paymentLinkId": link["id"], "transactionHash": "0xabc", "paidAmount": 100},
    )
    asyncio.run(client.app.state.dispatcher.deliver_due())

    assert log_context.context_at("payment_link_created") == (api_merchant["merchantId"], link["id"])
    assert log_context.context_at("payment_verified")[1] == link["id"]
    assert log_context.context_at("webhook delivered")[1] == link["id"]
