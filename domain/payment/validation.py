"""
支付表单校验规则 - 基于 domain.common.validation 的声明式配置

错误键与前端表单字段保持一致（billingCity 等），便于直接回显。
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

from domain.common.validation import (
    FieldValidation,
    FormValidationResult,
    ValidationRule,
    required,
    validate_form,
)
from domain.payment.entity import Address, CurrencyCode


BILLING_FIELDS: tuple[FieldValidation, ...] = (
    FieldValidation("billingLine1", "Street address", (required("Street address"), ValidationRule(max_length=200))),
    FieldValidation("billingCity", "City", (required("City"), ValidationRule(max_length=100))),
    FieldValidation("billingState", "State", (required("State"), ValidationRule(max_length=100))),
    FieldValidation("billingPostalCode", "Postal code", (required("Postal code"), ValidationRule(max_length=20))),
    FieldValidation(
        "billingCountry",
        "Country",
        (
            required("Country"),
            ValidationRule(pattern=r"^[A-Za-z][A-Za-z .'-]+$", message="Please enter a valid country"),
        ),
    ),
)

# Address attribute -> form error key
BILLING_FIELD_KEYS = {
    "line1": "billingLine1",
    "city": "billingCity",
    "state": "billingState",
    "postal_code": "billingPostalCode",
    "country": "billingCountry",
}


def _positive_amount(value: str, _form: Mapping[str, Any]) -> bool | str:
    try:
        return int(value) > 0 or "Payment amount must be greater than 0"
    except ValueError:
        return "Payment amount must be greater than 0"


def _known_currency(value: str, _form: Mapping[str, Any]) -> bool | str:
    return value.upper() in CurrencyCode.__members__ or "Unsupported currency"


AMOUNT_FIELDS: tuple[FieldValidation, ...] = (
    FieldValidation(
        "amount",
        "Amount",
        (ValidationRule(required=True, message="Payment amount must be greater than 0"), ValidationRule(custom=_positive_amount)),
    ),
    FieldValidation(
        "currency",
        "Currency",
        (required("Currency"), ValidationRule(custom=_known_currency)),
    ),
)

METHOD_FIELDS: tuple[FieldValidation, ...] = (
    FieldValidation(
        "paymentMethod",
        "Payment method",
        (ValidationRule(required=True, message="Please select a payment method"),),
    ),
)


def billing_form_data(address: Optional[Address]) -> dict[str, str]:
    address = address or Address()
    return {key: getattr(address, attr) or "" for attr, key in BILLING_FIELD_KEYS.items()}


def validate_billing_address(address: Optional[Address]) -> FormValidationResult:
    return validate_form(billing_form_data(address), BILLING_FIELDS)


def validate_method_selection(
    payment_method_id: Optional[str],
    *,
    add_new_method: bool = False,
    selection_required: bool = True,
) -> FormValidationResult:
    if not selection_required or add_new_method:
        return FormValidationResult(is_valid=True)
    return validate_form({"paymentMethod": payment_method_id or ""}, METHOD_FIELDS)


def validate_amount(amount: Any, currency: Any) -> FormValidationResult:
    value = getattr(currency, "value", currency)
    return validate_form({"amount": amount, "currency": value}, AMOUNT_FIELDS)


def validate_checkout_step(
    step: str,
    *,
    payment_method_id: Optional[str] = None,
    add_new_method: bool = False,
    billing_address: Optional[Address] = None,
    selection_required: bool = True,
) -> FormValidationResult:
    """按结账步骤选择规则集；没有输入的步骤总是通过"""
    if step == "selecting_method":
        return validate_method_selection(
            payment_method_id,
            add_new_method=add_new_method,
            selection_required=selection_required,
        )
    if step == "collecting_billing":
        return validate_billing_address(billing_address)
    return FormValidationResult(is_valid=True)
