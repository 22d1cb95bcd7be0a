"""
Payment specific codes and gateway status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Checkout flow errors (2x1xx)
    CHECKOUT_VALIDATION = 20110
    INTENT_CREATION_FAILED = 20111
    INTENT_EXPIRED = 20112
    SUBMISSION_DECLINED = 20113
    SUBMISSION_IN_FLIGHT = 20114
    PAYMENT_NOT_FOUND = 20115
    REFUND_REJECTED = 20116
    INVALID_TRANSITION = 20117

    # Gateway/Network errors (6xxxx)
    GATEWAY_ERROR = 60000
    GATEWAY_UNAVAILABLE = 60001
    SIGNATURE_ERROR = 60002
    POLLING_FAILED = 60003


# Intent status -> record status, used when a payment is tracked by its intent
INTENT_STATUS_TO_RECORD = {
    "requires_payment_method": "pending",
    "requires_confirmation": "pending",
    "processing": "processing",
    "succeeded": "completed",
    "canceled": "cancelled",
}

# Decline codes meaning the method itself was rejected; retrying verbatim is pointless
METHOD_REJECTION_CODES = frozenset({
    "invalid_number",
    "incorrect_number",
    "invalid_card",
    "invalid_expiry_month",
    "invalid_expiry_year",
    "expired_card",
    "invalid_cvc",
    "incorrect_cvc",
    "invalid_payment_method",
    "payment_method_rejected",
})
