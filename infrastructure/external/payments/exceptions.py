"""
Transport-level gateway errors.

Raised inside the HTTP adapter only; callers see domain.payment.exceptions
after translation.
"""
from __future__ import annotations

from typing import Any, Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class GatewayHTTPError(BusinessException):
    """Non-2xx response from the payment backend."""

    def __init__(self, message: str, *, status_code: int, body: Any = None, details: Optional[dict] = None):
        self.status_code = status_code
        self.body = body
        full_details = {"status_code": status_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.GATEWAY_ERROR,
            message=message,
            error_type="GatewayHTTPError",
            details=full_details,
        )


class RetryableGatewayError(GatewayHTTPError):
    """429/5xx response; retried with backoff on idempotent calls."""

    def __init__(self, message: str, *, status_code: int, body: Any = None, retry_after: Optional[float] = None):
        super().__init__(message, status_code=status_code, body=body, details={"retry_after": retry_after})
        self.retry_after = retry_after
        self.error_type = "RetryableGatewayError"
