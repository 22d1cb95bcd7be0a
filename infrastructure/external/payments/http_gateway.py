"""
HTTP adapter for the booking payment backend (httpx + tenacity).

Idempotent calls (reads, keyed writes, PUT/DELETE) are retried on transport
errors and 429/5xx; all failures are translated into the checkout error
taxonomy before leaving this module.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
from pydantic import ValidationError

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
from core.settings import payment_settings
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import PaymentIntent, PaymentMethod, PaymentRecord, PaymentRefund
from domain.payment.exceptions import (
    ExpiredIntentError,
    GatewayUnavailableError,
    IntentCreationError,
    PaymentNotFoundError,
    SubmissionError,
)
from infrastructure.external.payments.base import RETRY_STATUS_CODES, BasePaymentClient
from infrastructure.external.payments.exceptions import GatewayHTTPError, RetryableGatewayError
from infrastructure.external.payments.wire import (
    PaymentIntentWire,
    PaymentMethodWire,
    PaymentWire,
    ProcessingResultWire,
    RefundWire,
    camelize,
)
from infrastructure.external.payments.webhooks import parse_signed_webhook, sign_payload


EXPIRED_INTENT_CODES = {"intent_expired", "payment_intent_expired"}


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        return body.get("message") or body.get("error") or body.get("detail") or default
    return default


def _error_code(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        code = body.get("code") or body.get("declineCode")
        return str(code) if code else None
    return None


class HttpPaymentGateway(BasePaymentClient):
    provider = "http"

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry, transport=transport)
        cfg = payment_settings.gateway
        self.base_url = (base_url or cfg.base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else cfg.api_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else cfg.webhook_secret

    def _build_client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeouts,
            headers=headers,
            transport=self._transport,
        )

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None

        async def _once() -> Any:
            resp = await self.client.request(method, path, json=json_body, params=params, headers=headers)
            body: Any = None
            if resp.content:
                try:
                    body = resp.json()
                except ValueError:
                    body = resp.text
            if resp.status_code in RETRY_STATUS_CODES:
                retry_after = resp.headers.get("retry-after")
                raise RetryableGatewayError(
                    _error_message(body, f"Transient gateway error with status {resp.status_code}"),
                    status_code=resp.status_code,
                    body=body,
                    retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                )
            if resp.status_code >= 400:
                raise GatewayHTTPError(
                    _error_message(body, f"Gateway request failed with status {resp.status_code}"),
                    status_code=resp.status_code,
                    body=body,
                )
            return body

        idempotent = method in {"GET", "PUT", "DELETE"} or idempotency_key is not None
        self._log("payment_gateway_request", method=method, path=path, idempotency_key=idempotency_key)
        try:
            if idempotent:
                return await self._retry(_once)
            return await _once()
        except RetryableGatewayError as exc:
            raise GatewayUnavailableError(exc.message, details={"status_code": exc.status_code, "path": path}) from exc
        except httpx.TimeoutException as exc:
            raise GatewayUnavailableError("Payment gateway timed out", details={"path": path}) from exc
        except httpx.TransportError as exc:
            raise GatewayUnavailableError(f"Network error: {exc}", details={"path": path}) from exc

    @staticmethod
    def _parse(model, body: Any, what: str):
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            raise GatewayUnavailableError(f"Malformed {what} response", details={"errors": exc.errors()}) from exc

    # ---- intents ----

    async def create_intent(self, req: CreateIntent) -> PaymentIntent:
        payload = camelize(req.model_dump(mode="json", exclude_none=True, exclude={"idempotency_key"}))
        try:
            body = await self._send("POST", "/payment-intents", json_body=payload, idempotency_key=req.idempotency_key)
        except GatewayHTTPError as exc:
            raise IntentCreationError(exc.message, details={"status_code": exc.status_code}) from exc
        intent = self._parse(PaymentIntentWire, body, "payment intent").to_entity()
        self._log("payment_intent_created", intent_id=intent.id, status=intent.status.value)
        return intent

    async def get_intent(self, intent_id: str) -> PaymentIntent:
        try:
            body = await self._send("GET", f"/payment-intents/{intent_id}")
        except GatewayHTTPError as exc:
            if exc.status_code == 404:
                raise PaymentNotFoundError(intent_id, kind="payment intent") from exc
            raise GatewayUnavailableError(exc.message, details={"status_code": exc.status_code}) from exc
        return self._parse(PaymentIntentWire, body, "payment intent").to_entity()

    # ---- payments ----

    def _submission_error(self, exc: GatewayHTTPError, intent_id: Optional[str]) -> Exception:
        code = _error_code(exc.body)
        if exc.status_code == 410 or (code and code.lower() in EXPIRED_INTENT_CODES):
            return ExpiredIntentError(intent_id or "", exc.message)
        errors = []
        if isinstance(exc.body, dict):
            errors = [
                {"field": e.get("field"), "message": e.get("message"), "code": e.get("code")}
                for e in exc.body.get("validationErrors") or []
                if isinstance(e, dict)
            ]
        return SubmissionError(exc.message, validation_errors=errors, decline_code=code)

    def _result(self, body: Any) -> ProcessingResult:
        wire = self._parse(ProcessingResultWire, body, "processing result")
        return ProcessingResult.model_validate(wire.model_dump())

    async def process_payment(self, req: ProcessPayment) -> ProcessingResult:
        payload = camelize(req.model_dump(mode="json", exclude_none=True, exclude={"idempotency_key"}))
        try:
            body = await self._send("POST", "/process", json_body=payload, idempotency_key=req.idempotency_key)
        except GatewayHTTPError as exc:
            raise self._submission_error(exc, req.payment_intent_id) from exc
        result = self._result(body)
        self._log("payment_processed", intent_id=req.payment_intent_id, success=result.success, payment_id=result.payment_id)
        return result

    async def confirm_payment(self, req: ConfirmPayment) -> ProcessingResult:
        payload = camelize(req.model_dump(mode="json", exclude_none=True))
        try:
            body = await self._send("POST", "/confirm", json_body=payload)
        except GatewayHTTPError as exc:
            raise self._submission_error(exc, req.payment_intent_id) from exc
        return self._result(body)

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        try:
            body = await self._send("GET", f"/{payment_id}")
        except GatewayHTTPError as exc:
            if exc.status_code == 404:
                raise PaymentNotFoundError(payment_id) from exc
            raise GatewayUnavailableError(exc.message, details={"status_code": exc.status_code}) from exc
        return self._parse(PaymentWire, body, "payment").to_entity()

    async def process_refund(self, payment_id: str, req: RefundRequest) -> PaymentRefund:
        payload = camelize(req.model_dump(mode="json", exclude_none=True, exclude={"idempotency_key"}))
        try:
            body = await self._send("POST", f"/{payment_id}/refund", json_body=payload, idempotency_key=req.idempotency_key)
        except GatewayHTTPError as exc:
            if exc.status_code == 404:
                raise PaymentNotFoundError(payment_id) from exc
            raise SubmissionError(exc.message, decline_code=_error_code(exc.body)) from exc
        return self._parse(RefundWire, body, "refund").to_entity()

    # ---- saved methods ----

    def _method_error(self, exc: GatewayHTTPError, method_id: Optional[str]) -> Exception:
        if exc.status_code == 404 and method_id:
            return PaymentNotFoundError(method_id, kind="payment method")
        return DomainValidationException(exc.message, details={"status_code": exc.status_code})

    async def get_payment_methods(self, customer_id: Optional[str] = None) -> list[PaymentMethod]:
        params = {"customerId": customer_id} if customer_id else None
        try:
            body = await self._send("GET", "/payment-methods", params=params)
        except GatewayHTTPError as exc:
            raise self._method_error(exc, None) from exc
        return [self._parse(PaymentMethodWire, item, "payment method").to_entity() for item in body or []]

    async def create_payment_method(self, req: CreatePaymentMethod) -> PaymentMethod:
        payload = camelize(req.model_dump(mode="json", exclude_none=True))
        try:
            body = await self._send("POST", "/payment-methods", json_body=payload)
        except GatewayHTTPError as exc:
            raise self._method_error(exc, None) from exc
        return self._parse(PaymentMethodWire, body, "payment method").to_entity()

    async def update_payment_method(self, method_id: str, req: UpdatePaymentMethod) -> PaymentMethod:
        payload = camelize(req.model_dump(mode="json", exclude_none=True))
        try:
            body = await self._send("PUT", f"/payment-methods/{method_id}", json_body=payload)
        except GatewayHTTPError as exc:
            raise self._method_error(exc, method_id) from exc
        return self._parse(PaymentMethodWire, body, "payment method").to_entity()

    async def delete_payment_method(self, method_id: str) -> None:
        try:
            await self._send("DELETE", f"/payment-methods/{method_id}")
        except GatewayHTTPError as exc:
            raise self._method_error(exc, method_id) from exc

    async def set_default_payment_method(self, method_id: str) -> PaymentMethod:
        try:
            body = await self._send("PUT", f"/payment-methods/{method_id}/default")
        except GatewayHTTPError as exc:
            raise self._method_error(exc, method_id) from exc
        return self._parse(PaymentMethodWire, body, "payment method").to_entity()

    # ---- webhooks ----

    def sign(self, body: bytes) -> str:
        return sign_payload(self.webhook_secret, body)

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        return parse_signed_webhook(self.webhook_secret, headers, body)
