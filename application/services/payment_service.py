"""
Application service orchestrating payment use-cases.

This class depends only on the application PaymentGateway port and DTOs.
Gateway implementations are provided by infrastructure and must be injected
from the composition root, keeping dependencies one-way.
"""
from __future__ import annotations

import hashlib
from typing import Iterable, Optional

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
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from domain.payment.entity import (
    PaymentIntent,
    PaymentMethod,
    PaymentMethodType,
    PaymentRecord,
    PaymentRefund,
    pick_default_method,
)
from domain.payment.exceptions import RefundRejectedError


logger = get_logger(__name__)


def _pick_meta(meta: dict | None) -> str:
    if not meta:
        return ""
    # project-specific stable subset to avoid high cardinality
    keys = [k for k in ("idempotency_hint", "customer_id", "booking_id") if k in meta]
    return "|".join(f"{k}={meta[k]}" for k in keys)


def _ensure_idempotency_key(
    req: CreateIntent | ProcessPayment | RefundRequest,
    *,
    payment_id: Optional[str] = None,
) -> None:
    if getattr(req, "idempotency_key", None):
        return
    # Stable, reproducible key derived from business identifiers (no timestamp)
    if isinstance(req, CreateIntent):
        types = ",".join(t.value for t in req.payment_method_types)
        base = f"intent|{req.booking_id or ''}|{req.amount}|{req.currency.value}|{types}|{_pick_meta(req.metadata)}"
    elif isinstance(req, ProcessPayment):
        base = (
            f"process|{req.payment_intent_id or ''}|{req.booking_id or ''}|{req.amount}|"
            f"{req.currency.value}|{req.payment_method_id or ''}|{_pick_meta(req.metadata)}"
        )
    else:
        base = f"refund|{payment_id or ''}|{req.amount or 'full'}|{req.reason.value}"
    req.idempotency_key = hashlib.sha256(base.encode("utf-8")).hexdigest()


class PaymentService:
    def __init__(self, gateway: PaymentGateway) -> None:
        self.gateway = gateway

    async def create_intent(self, req: CreateIntent) -> PaymentIntent:
        _ensure_idempotency_key(req)
        logger.info(
            "payment_intent_create_request",
            booking_id=req.booking_id,
            amount=req.amount,
            currency=req.currency.value,
            provider=self.gateway.provider,
            idempotency_key=req.idempotency_key,
        )
        intent = await self.gateway.create_intent(req)
        logger.info(
            "payment_intent_create_response",
            intent_id=intent.id,
            status=intent.status.value,
            expires_at=intent.expires_at.isoformat() if intent.expires_at else None,
        )
        return intent

    async def get_intent(self, intent_id: str) -> PaymentIntent:
        logger.info("payment_intent_query_request", intent_id=intent_id, provider=self.gateway.provider)
        return await self.gateway.get_intent(intent_id)

    async def process_payment(self, req: ProcessPayment) -> ProcessingResult:
        _ensure_idempotency_key(req)
        logger.info(
            "payment_process_request",
            intent_id=req.payment_intent_id,
            payment_method_id=req.payment_method_id,
            amount=req.amount,
            currency=req.currency.value,
            idempotency_key=req.idempotency_key,
        )
        result = await self.gateway.process_payment(req)
        logger.info(
            "payment_process_response",
            intent_id=req.payment_intent_id,
            success=result.success,
            payment_id=result.payment_id,
            status=result.status.value if result.status else None,
        )
        return result

    async def confirm_payment(self, req: ConfirmPayment) -> ProcessingResult:
        logger.info("payment_confirm_request", intent_id=req.payment_intent_id)
        return await self.gateway.confirm_payment(req)

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        logger.info("payment_query_request", payment_id=payment_id, provider=self.gateway.provider)
        return await self.gateway.get_payment(payment_id)

    async def refund(
        self,
        payment_id: str,
        req: RefundRequest,
        *,
        payment: Optional[PaymentRecord] = None,
    ) -> PaymentRefund:
        """退款；已知原支付记录时先校验可退金额"""
        if payment is not None:
            refundable = payment.refundable_amount()
            requested = req.amount if req.amount is not None else refundable
            if refundable <= 0 or requested > refundable:
                raise RefundRejectedError(
                    "Refund amount exceeds the refundable amount",
                    details={"payment_id": payment_id, "requested": requested, "refundable": refundable},
                )
        _ensure_idempotency_key(req, payment_id=payment_id)
        logger.info(
            "payment_refund_request",
            payment_id=payment_id,
            amount=req.amount,
            reason=req.reason.value,
            idempotency_key=req.idempotency_key,
        )
        refund = await self.gateway.process_refund(payment_id, req)
        logger.info("payment_refund_response", payment_id=payment_id, refund_id=refund.id, status=refund.status.value)
        return refund

    async def list_payment_methods(
        self,
        customer_id: Optional[str] = None,
        allowed_types: Iterable[PaymentMethodType | str] = (),
    ) -> list[PaymentMethod]:
        methods = await self.gateway.get_payment_methods(customer_id)
        allowed = {PaymentMethodType(t) for t in allowed_types}
        if allowed:
            methods = [m for m in methods if m.type in allowed]
        logger.info("payment_methods_listed", customer_id=customer_id, count=len(methods))
        return methods

    async def create_payment_method(self, req: CreatePaymentMethod) -> PaymentMethod:
        method = await self.gateway.create_payment_method(req)
        logger.info("payment_method_created", method_id=method.id, type=method.type.value, is_default=method.is_default)
        return method

    async def update_payment_method(self, method_id: str, req: UpdatePaymentMethod) -> PaymentMethod:
        method = await self.gateway.update_payment_method(method_id, req)
        logger.info("payment_method_updated", method_id=method_id)
        return method

    async def delete_payment_method(self, method_id: str) -> None:
        await self.gateway.delete_payment_method(method_id)
        logger.info("payment_method_deleted", method_id=method_id)

    async def set_default_payment_method(self, method_id: str) -> PaymentMethod:
        method = await self.gateway.set_default_payment_method(method_id)
        logger.info("payment_method_default_set", method_id=method_id)
        return method

    @staticmethod
    def default_payment_method(
        methods: Iterable[PaymentMethod],
        allowed_types: Iterable[PaymentMethodType | str] = (),
    ) -> Optional[PaymentMethod]:
        return pick_default_method(methods, allowed_types)

    def handle_webhook(self, headers: dict, body: bytes) -> WebhookEvent:
        event = self.gateway.parse_webhook(headers, body)
        logger.info("payment_webhook_parsed", provider=self.gateway.provider, event_type=event.type, event_id=event.id)
        return event

    async def aclose(self) -> None:
        # Best-effort close underlying resources
        close = getattr(self.gateway, "aclose", None)
        if callable(close):
            await close()
