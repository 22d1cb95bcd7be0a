"""
Payment DTOs (Pydantic v2) used at the gateway boundary.

Amounts are integers in the currency's minor unit.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from domain.payment.entity import (
    Address,
    CurrencyCode,
    PaymentMethodType,
    PaymentStatus,
    RefundReason,
)


def _upper_currency(v: Any) -> Any:
    if isinstance(v, str):
        u = v.upper()
        if len(u) != 3 or not u.isalpha():
            raise ValueError("currency must be ISO-4217 alpha-3")
        return u
    return v


class BillingAddress(BaseModel):
    line1: str
    city: str
    state: str
    postal_code: str
    country: str
    line2: Optional[str] = None

    @classmethod
    def from_entity(cls, address: Address) -> "BillingAddress":
        return cls(
            line1=address.line1,
            line2=address.line2,
            city=address.city,
            state=address.state,
            postal_code=address.postal_code,
            country=address.country,
        )

    def to_entity(self) -> Address:
        return Address(
            line1=self.line1,
            line2=self.line2,
            city=self.city,
            state=self.state,
            postal_code=self.postal_code,
            country=self.country,
        )


class CreateIntent(BaseModel):
    amount: int = Field(gt=0)
    currency: CurrencyCode
    payment_method_types: list[PaymentMethodType] = Field(default_factory=list)
    metadata: Optional[dict[str, Any]] = None
    description: Optional[str] = None
    booking_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_and_validate_currency(cls, v: Any) -> Any:
        return _upper_currency(v)


class ProcessPayment(BaseModel):
    amount: int = Field(gt=0)
    currency: CurrencyCode
    payment_intent_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    booking_id: Optional[str] = None
    description: Optional[str] = None
    billing_address: Optional[BillingAddress] = None
    save_payment_method: bool = False
    set_as_default: bool = False
    metadata: Optional[dict[str, Any]] = None
    idempotency_key: Optional[str] = None

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_and_validate_currency(cls, v: Any) -> Any:
        return _upper_currency(v)


class ConfirmPayment(BaseModel):
    payment_intent_id: str
    payment_method_id: Optional[str] = None
    return_url: Optional[str] = None


class FieldError(BaseModel):
    field: str
    message: str
    code: Optional[str] = None


class ProcessingResult(BaseModel):
    success: bool
    payment_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    error: Optional[str] = None
    decline_code: Optional[str] = None
    validation_errors: list[FieldError] = Field(default_factory=list)
    gateway_response: Optional[dict[str, Any]] = None


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)  # None means full refund
    reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None


class CreatePaymentMethod(BaseModel):
    customer_id: str
    type: PaymentMethodType
    gateway_payment_method_id: str  # pre-tokenized by the gateway SDK
    billing_address: Optional[BillingAddress] = None
    is_default: bool = False


class UpdatePaymentMethod(BaseModel):
    billing_address: Optional[BillingAddress] = None
    expiry_month: Optional[int] = Field(default=None, ge=1, le=12)
    expiry_year: Optional[int] = None
    cardholder_name: Optional[str] = None


class WebhookEvent(BaseModel):
    id: str
    type: str
    data: dict[str, Any]
    # raw fields for traceability (optional)
    raw_headers: Optional[dict[str, Any]] = None
    raw_body: Optional[bytes] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)
