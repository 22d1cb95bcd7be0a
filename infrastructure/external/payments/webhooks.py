"""
Webhook signature handling shared by gateway adapters.

Signature format: ``sha256=<hex HMAC-SHA256 of the raw body>``.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Optional

from application.dtos.payments import WebhookEvent
from domain.payment.exceptions import WebhookSignatureError


SIGNATURE_HEADER = "x-payment-signature"


def sign_payload(secret: Optional[str], body: bytes) -> str:
    if not secret:
        raise WebhookSignatureError("Missing PAYMENT__GATEWAY__WEBHOOK_SECRET")
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def parse_signed_webhook(secret: Optional[str], headers: dict[str, Any], body: bytes) -> WebhookEvent:
    lower = {str(k).lower(): v for k, v in headers.items()}
    signature = lower.get(SIGNATURE_HEADER)
    if not signature:
        raise WebhookSignatureError("Missing X-Payment-Signature header")
    if not hmac.compare_digest(sign_payload(secret, body), str(signature)):
        raise WebhookSignatureError("Invalid webhook signature")
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookSignatureError("Malformed webhook body") from exc
    if not isinstance(payload, dict):
        raise WebhookSignatureError("Malformed webhook body")
    return WebhookEvent(
        id=str(payload.get("id", "")),
        type=str(payload.get("type", "")),
        data=payload.get("data") or {},
        raw_headers=headers,
        raw_body=body,
    )
