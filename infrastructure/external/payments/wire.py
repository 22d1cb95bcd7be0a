"""
camelCase wire models for the payment backend REST API.

Responses are parsed into these models and mapped onto domain entities;
request DTOs are serialized with camelCase keys.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from domain.payment.entity import (
    Address,
    CurrencyCode,
    IntentStatus,
    PaymentIntent,
    PaymentMethod,
    PaymentMethodType,
    PaymentRecord,
    PaymentRefund,
    PaymentStatus,
    RefundReason,
    RefundStatus,
)


# Free-form maps passed through untouched
OPAQUE_KEYS = frozenset({"metadata", "gateway_response"})


def camelize(value: Any) -> Any:
    """递归地将字典键转换为 camelCase（metadata 等自由字段保持原样）"""
    if isinstance(value, dict):
        return {to_camel(k): v if k in OPAQUE_KEYS else camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [camelize(v) for v in value]
    return value


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class AddressWire(WireModel):
    line1: str = ""
    line2: Optional[str] = None
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""

    def to_entity(self) -> Address:
        return Address(
            line1=self.line1,
            line2=self.line2,
            city=self.city,
            state=self.state,
            postal_code=self.postal_code,
            country=self.country,
        )


class PaymentMethodWire(WireModel):
    id: str
    type: PaymentMethodType
    is_default: bool = False
    last4: Optional[str] = None
    brand: Optional[str] = None
    billing_address: Optional[AddressWire] = None
    customer_id: Optional[str] = None
    gateway_payment_method_id: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    cardholder_name: Optional[str] = None

    def to_entity(self) -> PaymentMethod:
        return PaymentMethod(
            id=self.id,
            type=self.type,
            is_default=self.is_default,
            last4=self.last4,
            brand=self.brand,
            billing_address=self.billing_address.to_entity() if self.billing_address else None,
            customer_id=self.customer_id,
            gateway_payment_method_id=self.gateway_payment_method_id,
            expiry_month=self.expiry_month,
            expiry_year=self.expiry_year,
            cardholder_name=self.cardholder_name,
        )


class PaymentIntentWire(WireModel):
    id: str
    client_secret: str
    amount: int
    currency: CurrencyCode
    status: IntentStatus
    payment_method_types: list[PaymentMethodType] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def to_entity(self) -> PaymentIntent:
        return PaymentIntent(
            id=self.id,
            client_secret=self.client_secret,
            amount=self.amount,
            currency=self.currency,
            status=self.status,
            allowed_method_types=tuple(self.payment_method_types),
            created_at=self.created_at,
            expires_at=self.expires_at,
        )


class RefundWire(WireModel):
    id: str
    amount: int
    currency: CurrencyCode
    reason: RefundReason = RefundReason.OTHER
    status: RefundStatus
    refunded_at: Optional[datetime] = None
    gateway_refund_id: Optional[str] = None
    notes: Optional[str] = None

    def to_entity(self) -> PaymentRefund:
        return PaymentRefund(
            id=self.id,
            amount=self.amount,
            currency=self.currency,
            reason=self.reason,
            status=self.status,
            refunded_at=self.refunded_at,
            gateway_refund_id=self.gateway_refund_id,
            notes=self.notes,
        )


class PaymentWire(WireModel):
    id: str
    amount: int
    currency: CurrencyCode
    status: PaymentStatus
    payment_method: Optional[PaymentMethodWire] = None
    gateway_transaction_id: Optional[str] = None
    refund: Optional[RefundWire] = None
    booking_id: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    def to_entity(self) -> PaymentRecord:
        return PaymentRecord(
            id=self.id,
            amount=self.amount,
            currency=self.currency,
            status=self.status,
            payment_method=self.payment_method.to_entity() if self.payment_method else None,
            gateway_transaction_id=self.gateway_transaction_id,
            refund=self.refund.to_entity() if self.refund else None,
            booking_id=self.booking_id,
            description=self.description,
            created_at=self.created_at,
            updated_at=self.updated_at,
            paid_at=self.paid_at,
        )


class FieldErrorWire(WireModel):
    field: str
    message: str
    code: Optional[str] = None


class ProcessingResultWire(WireModel):
    success: bool
    payment_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    error: Optional[str] = None
    decline_code: Optional[str] = None
    validation_errors: list[FieldErrorWire] = Field(default_factory=list)
    gateway_response: Optional[dict[str, Any]] = None
