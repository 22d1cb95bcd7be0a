"""
In-memory payment gateway.

Single-process only. Useful for local dev and tests: status sequences can be
scripted per payment, declines configured per method, intents expire after a
TTL, and default-method uniqueness is enforced like the real backend.
"""
from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

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
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import (
    IntentStatus,
    PaymentIntent,
    PaymentMethod,
    PaymentRecord,
    PaymentRefund,
    PaymentStatus,
    RefundStatus,
)
from domain.payment.exceptions import (
    ExpiredIntentError,
    GatewayUnavailableError,
    IntentCreationError,
    PaymentNotFoundError,
    RefundRejectedError,
    SubmissionError,
)
from infrastructure.external.payments.webhooks import parse_signed_webhook, sign_payload


logger = get_logger(__name__)

_RECORD_TO_INTENT = {
    PaymentStatus.PENDING: IntentStatus.REQUIRES_CONFIRMATION,
    PaymentStatus.PROCESSING: IntentStatus.PROCESSING,
    PaymentStatus.COMPLETED: IntentStatus.SUCCEEDED,
    PaymentStatus.CANCELLED: IntentStatus.CANCELED,
    PaymentStatus.FAILED: IntentStatus.REQUIRES_PAYMENT_METHOD,
}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class InMemoryPaymentGateway:
    provider = "inmemory"

    def __init__(
        self,
        *,
        intent_ttl_seconds: float = 900.0,
        status_script: Iterable[PaymentStatus | str] = (),
        methods: Iterable[PaymentMethod] = (),
        webhook_secret: Optional[str] = None,
        latency: float = 0.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.intent_ttl = timedelta(seconds=intent_ttl_seconds)
        # Statuses reported by successive get_payment calls; empty means settle synchronously
        self.status_script = [PaymentStatus(s) for s in status_script]
        self.webhook_secret = webhook_secret
        self.latency = latency
        self._clock = clock

        self.intents: dict[str, PaymentIntent] = {}
        self.payments: dict[str, PaymentRecord] = {}
        self.methods: dict[str, PaymentMethod] = {m.id: m for m in methods}
        self.calls: Counter[str] = Counter()
        self._scripts: dict[str, list[PaymentStatus]] = {}
        # payment id -> intent id it was charged against
        self._payment_intents: dict[str, str] = {}
        self._declines: dict[str, tuple[str, str]] = {}
        self._intent_failure: Optional[str] = None
        self._unavailable = 0
        self._keys: dict[str, Any] = {}

    # ---- scripting ----

    def decline(self, method_id: str, *, code: str = "card_declined", message: str = "Your card was declined") -> None:
        self._declines[method_id] = (code, message)

    def fail_intent_creation(self, message: Optional[str] = "Unsupported currency") -> None:
        self._intent_failure = message

    def expire_intent(self, intent_id: str) -> None:
        intent = self.intents[intent_id]
        self.intents[intent_id] = replace(intent, expires_at=self._clock() - timedelta(seconds=1))

    def script(self, payment_id: str, statuses: Iterable[PaymentStatus | str]) -> None:
        self._scripts[payment_id] = [PaymentStatus(s) for s in statuses]

    def go_offline(self, calls: int = 1) -> None:
        """接下来 calls 次调用抛出 GatewayUnavailableError"""
        self._unavailable = calls

    async def _enter(self, op: str) -> None:
        self.calls[op] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._unavailable > 0:
            self._unavailable -= 1
            raise GatewayUnavailableError("Payment gateway unavailable", details={"operation": op})

    # ---- intents ----

    async def create_intent(self, req: CreateIntent) -> PaymentIntent:
        await self._enter("create_intent")
        if req.idempotency_key and req.idempotency_key in self._keys:
            return self._keys[req.idempotency_key]
        if self._intent_failure:
            raise IntentCreationError(self._intent_failure, details={"currency": req.currency.value})
        now = self._clock()
        intent = PaymentIntent(
            id=_new_id("pi"),
            client_secret=_new_id("secret"),
            amount=req.amount,
            currency=req.currency,
            status=IntentStatus.REQUIRES_PAYMENT_METHOD,
            allowed_method_types=tuple(req.payment_method_types),
            created_at=now,
            expires_at=now + self.intent_ttl,
        )
        self.intents[intent.id] = intent
        if req.idempotency_key:
            self._keys[req.idempotency_key] = intent
        logger.info("inmemory_intent_created", intent_id=intent.id, amount=intent.amount)
        return intent

    async def get_intent(self, intent_id: str) -> PaymentIntent:
        await self._enter("get_intent")
        try:
            return self.intents[intent_id]
        except KeyError:
            raise PaymentNotFoundError(intent_id, kind="payment intent") from None

    # ---- payments ----

    async def process_payment(self, req: ProcessPayment) -> ProcessingResult:
        await self._enter("process_payment")
        if req.idempotency_key and req.idempotency_key in self._keys:
            return self._keys[req.idempotency_key]

        intent = self.intents.get(req.payment_intent_id or "")
        if intent is None:
            raise SubmissionError("Unknown payment intent", decline_code="invalid_request")
        if intent.is_expired(self._clock()):
            raise ExpiredIntentError(intent.id)

        method = self.methods.get(req.payment_method_id or "")
        decline = self._declines.get(req.payment_method_id or "")
        if decline is not None:
            code, message = decline
            raise SubmissionError(message, decline_code=code)

        now = self._clock()
        payment_id = _new_id("pay")
        script = list(self.status_script)
        status = script[0] if script else PaymentStatus.COMPLETED
        if script:
            self._scripts[payment_id] = script
        record = PaymentRecord(
            id=payment_id,
            amount=req.amount,
            currency=req.currency,
            status=status,
            payment_method=method,
            gateway_transaction_id=_new_id("txn"),
            booking_id=req.booking_id,
            description=req.description,
            created_at=now,
            updated_at=now,
            paid_at=now if status == PaymentStatus.COMPLETED else None,
        )
        self.payments[payment_id] = record
        self._payment_intents[payment_id] = intent.id
        self.intents[intent.id] = replace(intent, status=_RECORD_TO_INTENT.get(status, intent.status))
        if req.save_payment_method and method is not None and req.set_as_default:
            self._make_default(method.id)

        result = ProcessingResult(
            success=True,
            payment_id=payment_id,
            gateway_transaction_id=record.gateway_transaction_id,
            status=status,
        )
        if req.idempotency_key:
            self._keys[req.idempotency_key] = result
        logger.info("inmemory_payment_processed", payment_id=payment_id, status=status.value)
        return result

    async def confirm_payment(self, req: ConfirmPayment) -> ProcessingResult:
        await self._enter("confirm_payment")
        intent = self.intents.get(req.payment_intent_id)
        if intent is None:
            raise PaymentNotFoundError(req.payment_intent_id, kind="payment intent")
        if intent.is_expired(self._clock()):
            raise ExpiredIntentError(intent.id)
        self.intents[intent.id] = replace(intent, status=IntentStatus.SUCCEEDED)
        for record in self.payments.values():
            if self._payment_intents.get(record.id) != intent.id:
                continue
            if record.status == PaymentStatus.PENDING:
                self._scripts.pop(record.id, None)
                self.payments[record.id] = replace(record, status=PaymentStatus.COMPLETED, paid_at=self._clock())
                return ProcessingResult(success=True, payment_id=record.id, status=PaymentStatus.COMPLETED)
        return ProcessingResult(success=True, status=PaymentStatus.COMPLETED)

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        await self._enter("get_payment")
        record = self.payments.get(payment_id)
        if record is None:
            raise PaymentNotFoundError(payment_id)
        script = self._scripts.get(payment_id)
        if script:
            status = script.pop(0)
            now = self._clock()
            record = replace(
                record,
                status=status,
                updated_at=now,
                paid_at=now if status == PaymentStatus.COMPLETED else record.paid_at,
            )
            self.payments[payment_id] = record
        return record

    async def process_refund(self, payment_id: str, req: RefundRequest) -> PaymentRefund:
        await self._enter("process_refund")
        record = self.payments.get(payment_id)
        if record is None:
            raise PaymentNotFoundError(payment_id)
        refundable = record.refundable_amount()
        amount = req.amount if req.amount is not None else refundable
        if refundable <= 0 or amount > refundable:
            raise RefundRejectedError(
                "Refund amount exceeds the refundable amount",
                details={"payment_id": payment_id, "requested": amount, "refundable": refundable},
            )
        already = record.amount - refundable
        refund = PaymentRefund(
            id=_new_id("re"),
            amount=already + amount,
            currency=record.currency,
            reason=req.reason,
            status=RefundStatus.COMPLETED,
            refunded_at=self._clock(),
            gateway_refund_id=_new_id("gre"),
            notes=req.notes,
        )
        status = PaymentStatus.REFUNDED if refund.amount >= record.amount else PaymentStatus.PARTIALLY_REFUNDED
        self.payments[payment_id] = replace(record, status=status, refund=refund)
        return replace(refund, amount=amount)

    # ---- saved methods ----

    def _make_default(self, method_id: str) -> PaymentMethod:
        target = self.methods[method_id]
        for mid, method in list(self.methods.items()):
            if method.is_default and mid != method_id and method.customer_id == target.customer_id:
                self.methods[mid] = replace(method, is_default=False)
        self.methods[method_id] = replace(target, is_default=True)
        return self.methods[method_id]

    def _method(self, method_id: str) -> PaymentMethod:
        try:
            return self.methods[method_id]
        except KeyError:
            raise PaymentNotFoundError(method_id, kind="payment method") from None

    async def get_payment_methods(self, customer_id: Optional[str] = None) -> list[PaymentMethod]:
        await self._enter("get_payment_methods")
        return [m for m in self.methods.values() if customer_id is None or m.customer_id == customer_id]

    async def create_payment_method(self, req: CreatePaymentMethod) -> PaymentMethod:
        await self._enter("create_payment_method")
        if not req.gateway_payment_method_id:
            raise DomainValidationException("Payment method token is required", field="gatewayPaymentMethodId")
        method = PaymentMethod(
            id=_new_id("pm"),
            type=req.type,
            customer_id=req.customer_id,
            gateway_payment_method_id=req.gateway_payment_method_id,
            billing_address=req.billing_address.to_entity() if req.billing_address else None,
        )
        self.methods[method.id] = method
        if req.is_default:
            method = self._make_default(method.id)
        return method

    async def update_payment_method(self, method_id: str, req: UpdatePaymentMethod) -> PaymentMethod:
        await self._enter("update_payment_method")
        method = self._method(method_id)
        changes = req.model_dump(exclude_none=True, exclude={"billing_address"})
        if req.billing_address is not None:
            changes["billing_address"] = req.billing_address.to_entity()
        self.methods[method_id] = replace(method, **changes)
        return self.methods[method_id]

    async def delete_payment_method(self, method_id: str) -> None:
        await self._enter("delete_payment_method")
        self._method(method_id)
        del self.methods[method_id]

    async def set_default_payment_method(self, method_id: str) -> PaymentMethod:
        await self._enter("set_default_payment_method")
        self._method(method_id)
        return self._make_default(method_id)

    # ---- webhooks ----

    def sign(self, body: bytes) -> str:
        return sign_payload(self.webhook_secret, body)

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        return parse_signed_webhook(self.webhook_secret, headers, body)
