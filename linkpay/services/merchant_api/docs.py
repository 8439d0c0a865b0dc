"""Static machine-readable description served by `GET /docs`."""

from linkpay.services.merchant_api.service import SUPPORTED_CURRENCIES

_CURRENCIES = " | ".join(SUPPORTED_CURRENCIES)

API_DOCS = {
    "name": "PM Merchant Payment API",
    "version": "1.0.0",
    "description": "API for creating and managing payment links with webhook notifications",
    "authentication": {
        "type": "API Key",
        "header": "x-api-key",
        "description": "Include your API key in the x-api-key header",
    },
    "errors": {
        "envelope": {"error": {"kind": "string", "message": "string", "details": "object | undefined"}},
        "kinds": {
            "validation_error": 400,
            "insufficient_payment": 400,
            "currency_mismatch": 400,
            "state_conflict": 400,
            "unauthorized": 401,
            "invalid_api_key": 401,
            "invalid_verifier_token": 401,
            "forbidden": 403,
            "not_found": 404,
            "rate_limited": 429,
            "internal_error": 500,
        },
    },
    "endpoints": [
        {
            "method": "POST",
            "path": "/generate-api-key",
            "description": "Generate a new API key and webhook secret for your merchant account",
            "body": {"walletAddress": "string", "merchantName": "string"},
            "authentication": False,
        },
        {
            "method": "POST",
            "path": "/regenerate-api-key",
            "description": "Issue a new API key; previous keys stop working",
        },
        {
            "method": "POST",
            "path": "/rotate-webhook-secret",
            "description": "Replace the secret used to sign future webhooks",
        },
        {
            "method": "POST",
            "path": "/create-payment-link",
            "description": "Create a new payment link",
            "body": {
                "amount": "number (required)",
                "currency": f"{_CURRENCIES} (required)",
                "description": "string (optional)",
                "orderId": "string (optional)",
                "expiresIn": "number - seconds (optional, default: 3600)",
                "webhookUrl": "string - URL for payment notifications (optional)",
                "redirectUrl": "string - URL to redirect after payment (optional)",
                "metadata": "object (optional)",
            },
        },
        {
            "method": "GET",
            "path": "/payment/:id",
            "description": "Get payment link status",
            "authentication": False,
        },
        {
            "method": "POST",
            "path": "/verify-payment",
            "description": "Confirm an on-chain payment (called by the payment verifier)",
            "body": {
                "paymentLinkId": "string",
                "transactionHash": "string",
                "paidAmount": "number",
                "paidCurrency": f"{_CURRENCIES} (optional, must match the link currency)",
            },
            "authentication": False,
        },
        {
            "method": "GET",
            "path": "/payment-links",
            "description": "List your payment links, newest first",
            "queryParams": {
                "status": "pending | paid | expired | cancelled",
                "limit": "number (1-100, default 50)",
                "offset": "number",
            },
        },
        {
            "method": "POST",
            "path": "/cancel/:id",
            "description": "Cancel a pending payment link",
        },
        {
            "method": "GET",
            "path": "/webhook-deliveries",
            "description": "List webhook deliveries",
            "queryParams": {"status": "PENDING | PROCESSING | DELIVERED | DEAD", "limit": "number", "offset": "number"},
        },
        {
            "method": "POST",
            "path": "/webhook-deliveries/:id/retry",
            "description": "Requeue a dead-lettered webhook delivery",
        },
    ],
    "webhookEvents": [
        {"event": "payment.completed", "description": "Sent when payment is confirmed on-chain"},
        {"event": "payment.expired", "description": "Sent when payment link expires"},
        {"event": "payment.cancelled", "description": "Sent when payment is cancelled"},
    ],
    "webhookHeaders": {
        "X-PM-Signature": "hex HMAC-SHA256 of the canonical payload",
        "X-PM-Event": "event name",
        "X-PM-Delivery": "delivery id (stable across retries)",
    },
    "webhookPayload": {
        "event": "string",
        "paymentLinkId": "string",
        "merchantId": "string",
        "amount": "string (decimal)",
        "currency": "string",
        "orderId": "string | undefined",
        "transactionHash": "string | undefined",
        "paidAt": "string | undefined",
        "metadata": "object | undefined",
        "signature": "string - HMAC-SHA256 signature",
    },
    "signature": {
        "algorithm": "HMAC-SHA256, lowercase hex",
        "secret": "per-merchant webhookSecret returned by /generate-api-key",
        "canonicalization": "payload without `signature`, keys sorted, no whitespace, UTF-8",
    },
    "delivery": "at-least-once with exponential backoff; deduplicate by (paymentLinkId, event)",
}
