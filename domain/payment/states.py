"""
Checkout submission states.

Each variant is a frozen dataclass that carries exactly the data valid for its
step; the draft travels through every variant so entered data survives
failures and retries.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Union

from domain.payment.entity import Address, PaymentIntent, PaymentRecord, PaymentStatus


class CheckoutStep(str, Enum):
    SELECTING_METHOD = "selecting_method"
    COLLECTING_BILLING = "collecting_billing"
    CREATING_INTENT = "creating_intent"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CheckoutDraft:
    """用户已输入的结账数据"""
    payment_method_id: Optional[str] = None
    add_new_method: bool = False
    billing_address: Address = field(default_factory=Address)
    save_payment_method: bool = False
    set_as_default: bool = False

    def with_changes(self, **changes) -> "CheckoutDraft":
        return replace(self, **changes)


@dataclass(frozen=True)
class SelectingMethod:
    draft: CheckoutDraft
    errors: dict[str, str] = field(default_factory=dict)
    step = CheckoutStep.SELECTING_METHOD
    is_terminal = False


@dataclass(frozen=True)
class CollectingBilling:
    draft: CheckoutDraft
    errors: dict[str, str] = field(default_factory=dict)
    step = CheckoutStep.COLLECTING_BILLING
    is_terminal = False


@dataclass(frozen=True)
class CreatingIntent:
    draft: CheckoutDraft
    step = CheckoutStep.CREATING_INTENT
    is_terminal = False


@dataclass(frozen=True)
class Submitting:
    draft: CheckoutDraft
    intent: PaymentIntent
    step = CheckoutStep.SUBMITTING
    is_terminal = False


@dataclass(frozen=True)
class Confirming:
    draft: CheckoutDraft
    intent: PaymentIntent
    payment_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    step = CheckoutStep.CONFIRMING
    is_terminal = False


@dataclass(frozen=True)
class Succeeded:
    draft: CheckoutDraft
    record: PaymentRecord
    step = CheckoutStep.SUCCEEDED
    is_terminal = True


@dataclass(frozen=True)
class Failed:
    """
    失败状态

    failed_step 记录失败发生的步骤；resumable 表示在确认阶段放弃了轮询，
    重试协调器据此决定恢复轮询还是重新提交。
    """
    draft: CheckoutDraft
    failed_step: CheckoutStep
    message: str
    reason: Optional[str] = None
    errors: dict[str, str] = field(default_factory=dict)
    method_rejected: bool = False
    payment_id: Optional[str] = None
    resumable: bool = False  # status tracking gave up; polling can resume
    step = CheckoutStep.FAILED
    is_terminal = True


@dataclass(frozen=True)
class Cancelled:
    draft: CheckoutDraft
    cancelled_from: CheckoutStep
    step = CheckoutStep.CANCELLED
    is_terminal = True


SubmissionState = Union[
    SelectingMethod,
    CollectingBilling,
    CreatingIntent,
    Submitting,
    Confirming,
    Succeeded,
    Failed,
    Cancelled,
]
