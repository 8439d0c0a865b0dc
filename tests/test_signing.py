"""Webhook signature determinism and receiver-side verification."""

import hashlib
import hmac
import json

from linkpay.common.signing import canonical_json, sign, verify_signature


def test_canonical_json_is_order_independent_and_drops_none():
    a = {"event": "payment.completed", "amount": "100", "paidAt": None}
    b = {"amount": "100", "event": "payment.completed"}
    assert canonical_json(a) == canonical_json(b) == '{"amount":"100","event":"payment.completed"}'


def test_sign_is_deterministic_lowercase_hex():
    fields = {"event": "payment.expired", "paymentLinkId": "abc", "metadata": {"b": 1, "a": 2}}
    first = sign(fields, "secret")
    assert first == sign(dict(reversed(list(fields.items()))), "secret")
    assert len(first) == 64
    assert first == first.lower()


def test_receiver_can_recompute_signature():
    fields = {"event": "payment.completed", "paymentLinkId": "abc", "amount": "100"}
    signature = sign(fields, "whsec_x")
    expected = hmac.new(
        b"whsec_x",
        json.dumps(fields, sort_keys=True, separators=(",", ":")).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    assert signature == expected


def test_verify_signature_ignores_signature_field_and_rejects_tampering():
    fields = {"event": "payment.completed", "amount": "100"}
    signature = sign(fields, "k")
    delivered = {**fields, "signature": signature}
    assert verify_signature(delivered, "k", signature)
    assert not verify_signature({**delivered, "amount": "1000"}, "k", signature)
    assert not verify_signature(delivered, "other", signature)
