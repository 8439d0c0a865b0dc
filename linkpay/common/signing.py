"""HMAC-SHA256 signatures for outbound webhook payloads.

Receivers recompute the signature over the same canonical encoding: keys
sorted, compact separators, `None` values and the `signature` key dropped.
"""

import hashlib
import hmac
import json
from typing import Any


def canonical_json(fields: dict[str, Any]) -> str:
    """Encode event fields deterministically."""

    cleaned = {key: value for key, value in fields.items() if value is not None and key != "signature"}
    return json.dumps(cleaned, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign(fields: dict[str, Any], secret: str) -> str:
    """Return the lowercase hex HMAC-SHA256 of the canonical payload."""

    mac = hmac.new(
        key=secret.encode("utf-8"),
        msg=canonical_json(fields).encode("utf-8"),
        digestmod=hashlib.sha256,
    )
    return mac.hexdigest()


def verify_signature(fields: dict[str, Any], secret: str, signature: str) -> bool:
    """Constant-time check of a delivered signature."""

    return hmac.compare_digest(sign(fields, secret), signature.lower())
