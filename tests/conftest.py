"""Pytest bootstrap configuration.

Shared stub gateway and fixtures for checkout tests. Environment overrides
are applied before any module reads application settings.
"""
import asyncio
import os
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

# Console logs in tests; short polling so loops finish quickly
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("PAYMENT__CHECKOUT__POLL_INTERVAL_SECONDS", "0.01")

from application.dtos.payments import (  # noqa: E402
    ConfirmPayment,
    CreateIntent,
    CreatePaymentMethod,
    ProcessingResult,
    ProcessPayment,
    RefundRequest,
    UpdatePaymentMethod,
    WebhookEvent,
)
from domain.payment.entity import (  # noqa: E402
    Address,
    CurrencyCode,
    IntentStatus,
    PaymentIntent,
    PaymentMethod,
    PaymentMethodType,
    PaymentRecord,
    PaymentRefund,
    PaymentRequest,
    PaymentStatus,
    RefundStatus,
)
from domain.payment.exceptions import PaymentNotFoundError  # noqa: E402


class StubGateway:
    """Scriptable gateway: queue results/exceptions per operation and count calls."""

    provider = "stub"

    def __init__(self) -> None:
        self.calls: Counter = Counter()
        self.requests: dict[str, list[Any]] = {}
        self.intent_error: Optional[Exception] = None
        self.intent_ttl = timedelta(minutes=15)
        self.process_results: list[Any] = []
        self.payment_statuses: list[Any] = []
        self.intent_statuses: list[Any] = []
        # When set, process_payment waits on it before answering
        self.process_gate: Optional[asyncio.Event] = None
        self.methods: list[PaymentMethod] = []
        self._intent_seq = 0
        self._last_status = PaymentStatus.PENDING

    def _record(self, op: str, req: Any) -> None:
        self.calls[op] += 1
        self.requests.setdefault(op, []).append(req)

    async def create_intent(self, req: CreateIntent) -> PaymentIntent:
        self._record("create_intent", req)
        if self.intent_error is not None:
            raise self.intent_error
        self._intent_seq += 1
        now = datetime.now(timezone.utc)
        return PaymentIntent(
            id=f"pi_{self._intent_seq}",
            client_secret=f"secret_{self._intent_seq}",
            amount=req.amount,
            currency=req.currency,
            status=IntentStatus.REQUIRES_PAYMENT_METHOD,
            allowed_method_types=tuple(req.payment_method_types),
            created_at=now,
            expires_at=now + self.intent_ttl,
        )

    async def get_intent(self, intent_id: str) -> PaymentIntent:
        self._record("get_intent", intent_id)
        item = self.intent_statuses.pop(0) if self.intent_statuses else IntentStatus.PROCESSING
        if isinstance(item, Exception):
            raise item
        return PaymentIntent(
            id=intent_id,
            client_secret="secret",
            amount=1000,
            currency=CurrencyCode.USD,
            status=IntentStatus(item),
        )

    async def process_payment(self, req: ProcessPayment) -> ProcessingResult:
        self._record("process_payment", req)
        if self.process_gate is not None:
            await self.process_gate.wait()
        item = self.process_results.pop(0) if self.process_results else ProcessingResult(
            success=True, payment_id="pay_1", gateway_transaction_id="txn_1"
        )
        if isinstance(item, Exception):
            raise item
        return item

    async def confirm_payment(self, req: ConfirmPayment) -> ProcessingResult:
        self._record("confirm_payment", req)
        return ProcessingResult(success=True, payment_id="pay_1", status=PaymentStatus.COMPLETED)

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        self._record("get_payment", payment_id)
        if self.payment_statuses:
            item = self.payment_statuses.pop(0)
            if isinstance(item, Exception):
                raise item
            self._last_status = PaymentStatus(item)
        if payment_id == "missing":
            raise PaymentNotFoundError(payment_id)
        return PaymentRecord(id=payment_id, amount=1000, currency=CurrencyCode.USD, status=self._last_status)

    async def process_refund(self, payment_id: str, req: RefundRequest) -> PaymentRefund:
        self._record("process_refund", req)
        return PaymentRefund(
            id="re_1",
            amount=req.amount or 1000,
            currency=CurrencyCode.USD,
            reason=req.reason,
            status=RefundStatus.PENDING,
        )

    async def get_payment_methods(self, customer_id: Optional[str] = None) -> list[PaymentMethod]:
        self._record("get_payment_methods", customer_id)
        return list(self.methods)

    async def create_payment_method(self, req: CreatePaymentMethod) -> PaymentMethod:
        self._record("create_payment_method", req)
        return PaymentMethod(id="pm_new", type=req.type, customer_id=req.customer_id)

    async def update_payment_method(self, method_id: str, req: UpdatePaymentMethod) -> PaymentMethod:
        self._record("update_payment_method", req)
        return PaymentMethod(id=method_id, type=PaymentMethodType.CREDIT_CARD, cardholder_name=req.cardholder_name)

    async def delete_payment_method(self, method_id: str) -> None:
        self._record("delete_payment_method", method_id)

    async def set_default_payment_method(self, method_id: str) -> PaymentMethod:
        self._record("set_default_payment_method", method_id)
        return PaymentMethod(id=method_id, type=PaymentMethodType.CREDIT_CARD, is_default=True)

    def parse_webhook(self, headers: dict, body: bytes) -> WebhookEvent:
        return WebhookEvent(id="evt_1", type="payment.completed", data={})


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def payment_request() -> PaymentRequest:
    return PaymentRequest(
        amount=1000,
        currency=CurrencyCode.USD,
        booking_id="bk_1",
        description="Haircut appointment",
    )


@pytest.fixture
def card() -> PaymentMethod:
    return PaymentMethod(
        id="pm_1",
        type=PaymentMethodType.CREDIT_CARD,
        is_default=True,
        last4="4242",
        brand="Visa",
    )


@pytest.fixture
def address() -> Address:
    return Address(
        line1="1 Main St",
        city="Springfield",
        state="IL",
        postal_code="62701",
        country="US",
    )
