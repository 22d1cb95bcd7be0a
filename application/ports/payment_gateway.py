"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
The gateway owns payment records, intents and saved methods; the checkout
core only reads them.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    ConfirmPayment,
    CreateIntent,
    CreatePaymentMethod,
    ProcessingResult,
    ProcessPayment,
    RefundRequest,
    UpdatePaymentMethod,
    WebhookEvent,
)
from domain.payment.entity import PaymentIntent, PaymentMethod, PaymentRecord, PaymentRefund


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the booking payment backend.

    Implementations should be async and side-effect free beyond IO.
    Failures are raised as domain.payment.exceptions types.
    """

    provider: str

    async def create_intent(self, req: CreateIntent) -> PaymentIntent: ...

    async def get_intent(self, intent_id: str) -> PaymentIntent: ...

    async def process_payment(self, req: ProcessPayment) -> ProcessingResult: ...

    async def confirm_payment(self, req: ConfirmPayment) -> ProcessingResult: ...

    async def get_payment(self, payment_id: str) -> PaymentRecord: ...

    async def process_refund(self, payment_id: str, req: RefundRequest) -> PaymentRefund: ...

    async def get_payment_methods(self, customer_id: Optional[str] = None) -> list[PaymentMethod]: ...

    async def create_payment_method(self, req: CreatePaymentMethod) -> PaymentMethod: ...

    async def update_payment_method(self, method_id: str, req: UpdatePaymentMethod) -> PaymentMethod: ...

    async def delete_payment_method(self, method_id: str) -> None: ...

    async def set_default_payment_method(self, method_id: str) -> PaymentMethod: ...

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent: ...
