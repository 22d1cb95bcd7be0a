"""
Checkout error taxonomy.

Every error carries a PaymentCode and derives from BusinessException so
adapters and callers can branch on type while still reading code/message.
"""
from __future__ import annotations

from typing import Optional, Sequence

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import METHOD_REJECTION_CODES, PaymentCode


class CheckoutValidationError(BusinessException):
    """Field-scoped validation failure; blocks a transition, never reaches the gateway."""

    def __init__(self, errors: dict[str, str], *, step: Optional[str] = None):
        self.errors = dict(errors)
        self.step = step
        first = next(iter(self.errors), None)
        super().__init__(
            code=PaymentCode.CHECKOUT_VALIDATION,
            message="Please correct the errors below",
            error_type="CheckoutValidationError",
            details={"errors": self.errors, "step": step},
            field=first,
        )


class IntentCreationError(BusinessException):
    """Gateway refused to create a payment intent (unsupported currency, ...)."""

    def __init__(self, message: str = "Failed to create payment intent", *, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.INTENT_CREATION_FAILED,
            message=message,
            error_type="IntentCreationError",
            details=details,
        )


class ExpiredIntentError(IntentCreationError):
    """The intent referenced by a submission has expired; a fresh one is required."""

    def __init__(self, intent_id: str, message: str = "Payment intent expired"):
        super().__init__(message, details={"intent_id": intent_id})
        self.code = PaymentCode.INTENT_EXPIRED
        self.error_type = "ExpiredIntentError"
        self.intent_id = intent_id


class SubmissionError(BusinessException):
    """Gateway declined the charge."""

    def __init__(
        self,
        message: str = "Payment processing failed",
        *,
        validation_errors: Optional[Sequence[dict]] = None,
        decline_code: Optional[str] = None,
        method_rejected: Optional[bool] = None,
        details: Optional[dict] = None,
    ):
        self.validation_errors = [dict(e) for e in (validation_errors or [])]
        self.decline_code = decline_code
        if method_rejected is None:
            method_rejected = is_method_rejection(decline_code, self.validation_errors)
        self.method_rejected = method_rejected
        full_details = {"decline_code": decline_code, "method_rejected": method_rejected}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SUBMISSION_DECLINED,
            message=message,
            error_type="SubmissionError",
            details=full_details,
        )

    @property
    def field_errors(self) -> dict[str, str]:
        return {
            str(e["field"]): str(e.get("message") or "Invalid value")
            for e in self.validation_errors
            if e.get("field")
        }


class PollingError(BusinessException):
    """Transient failure fetching payment status; never terminal on its own."""

    def __init__(self, message: str, *, payment_id: Optional[str] = None, attempt: int = 0):
        self.payment_id = payment_id
        self.attempt = attempt
        super().__init__(
            code=PaymentCode.POLLING_FAILED,
            message=message,
            error_type="PollingError",
            details={"payment_id": payment_id, "attempt": attempt},
        )


class ConcurrencyError(BusinessException):
    """A submit was attempted while another one is still in flight."""

    def __init__(self, step: str):
        super().__init__(
            code=PaymentCode.SUBMISSION_IN_FLIGHT,
            message="A submission is already in progress",
            error_type="ConcurrencyError",
            details={"step": step},
        )


class GatewayUnavailableError(BusinessException):
    """Network/timeout failure talking to the payment gateway."""

    def __init__(self, message: str = "Payment gateway unavailable", *, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.GATEWAY_UNAVAILABLE,
            message=message,
            error_type="GatewayUnavailableError",
            details=details,
        )


class PaymentNotFoundError(BusinessException):
    def __init__(self, identifier: str, *, kind: str = "payment"):
        super().__init__(
            code=PaymentCode.PAYMENT_NOT_FOUND,
            message=f"{kind.capitalize()} not found: {identifier}",
            error_type="PaymentNotFound",
            details={"id": identifier, "kind": kind},
        )


class RefundRejectedError(BusinessException):
    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.REFUND_REJECTED,
            message=message,
            error_type="RefundRejected",
            details=details,
        )


class WebhookSignatureError(BusinessException):
    def __init__(self, message: str):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="WebhookSignatureError",
        )


def is_method_rejection(decline_code: Optional[str], validation_errors: Sequence[dict] = ()) -> bool:
    """Whether a decline means the payment method itself is unusable."""
    if decline_code and decline_code.lower() in METHOD_REJECTION_CODES:
        return True
    for err in validation_errors:
        code = str(err.get("code") or "").lower()
        field = str(err.get("field") or "")
        if code in METHOD_REJECTION_CODES or field.startswith("paymentMethod") or field.startswith("card"):
            return True
    return False


class InvalidTransitionError(BusinessException):
    """The requested action is not available in the current checkout step."""

    def __init__(self, action: str, step: str):
        super().__init__(
            code=PaymentCode.INVALID_TRANSITION,
            message=f"Cannot {action} while {step}",
            error_type="InvalidTransitionError",
            details={"action": action, "step": step},
        )
