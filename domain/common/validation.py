"""
Declarative field validation.

Pure functions only: a field value is checked against an ordered list of
rules and the first failing rule wins. Whole-form validation always visits
every field so all errors can be shown together.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Pattern, Sequence, Union

# custom(value, form_data) -> True when valid, otherwise False or an error message
CustomCheck = Callable[[str, Mapping[str, Any]], Union[bool, str]]


@dataclass(frozen=True)
class ValidationRule:
    required: bool = False
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[Union[str, Pattern[str]]] = None
    custom: Optional[CustomCheck] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class FieldValidation:
    name: str
    label: str
    rules: Sequence[ValidationRule] = ()


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class FormValidationResult:
    is_valid: bool
    errors: dict[str, str] = field(default_factory=dict)


VALID = ValidationResult(is_valid=True)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else ""
    return str(value)


def _failed(rule: ValidationRule, default: str) -> ValidationResult:
    return ValidationResult(is_valid=False, message=rule.message or default)


def validate_field(
    value: Any,
    rules: Sequence[ValidationRule],
    form_data: Optional[Mapping[str, Any]] = None,
) -> ValidationResult:
    """Return the first failing rule's message, or VALID."""
    text = _as_text(value)
    blank = not text.strip()
    context: Mapping[str, Any] = form_data or {}

    for rule in rules:
        if rule.required and blank:
            return _failed(rule, "This field is required")

        # Optional and empty: remaining checks do not apply
        if blank:
            continue

        if rule.min_length is not None and len(text) < rule.min_length:
            return _failed(rule, f"Must be at least {rule.min_length} characters")

        if rule.max_length is not None and len(text) > rule.max_length:
            return _failed(rule, f"Must be less than {rule.max_length} characters")

        if rule.pattern is not None and not re.search(rule.pattern, text):
            return _failed(rule, "Invalid format")

        if rule.custom is not None:
            outcome = rule.custom(text, context)
            if outcome is not True:
                if isinstance(outcome, str) and outcome:
                    return ValidationResult(is_valid=False, message=outcome)
                return _failed(rule, "Invalid value")

    return VALID


def validate_form(
    form_data: Mapping[str, Any],
    fields: Sequence[FieldValidation],
) -> FormValidationResult:
    """Validate every configured field; errors are keyed by field name."""
    errors: dict[str, str] = {}
    for config in fields:
        result = validate_field(form_data.get(config.name), config.rules, form_data)
        if not result.is_valid and result.message:
            errors[config.name] = result.message
    return FormValidationResult(is_valid=not errors, errors=errors)


def clear_field_error(field_name: str, errors: Mapping[str, str]) -> dict[str, str]:
    return {k: v for k, v in errors.items() if k != field_name}


def error_summary(errors: Mapping[str, str]) -> str:
    messages = list(errors.values())
    if not messages:
        return ""
    if len(messages) == 1:
        return f"Error: {messages[0]}"
    return "Errors: " + ", ".join(messages)


def required(label: str) -> ValidationRule:
    return ValidationRule(required=True, message=f"{label} is required")
