"""
支付状态追踪 - 进度百分比与步骤视图（派生数据，不持久化）
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from domain.payment.entity import PaymentStatus


# Fixed mapping, not configurable
PROGRESS_BY_STATUS = {
    PaymentStatus.PENDING: 10,
    PaymentStatus.PROCESSING: 50,
    PaymentStatus.COMPLETED: 100,
    PaymentStatus.REFUNDED: 100,
    PaymentStatus.PARTIALLY_REFUNDED: 75,
    PaymentStatus.FAILED: 0,
    PaymentStatus.CANCELLED: 0,
}

_STEP_ORDER = (
    (PaymentStatus.PENDING, "Payment Initiated"),
    (PaymentStatus.PROCESSING, "Processing Payment"),
    (PaymentStatus.COMPLETED, "Payment Completed"),
)

# Human-readable reasons reported for failed terminal statuses
ERROR_REASONS = {
    PaymentStatus.FAILED: "Payment failed",
    PaymentStatus.CANCELLED: "Payment cancelled",
}


@dataclass(frozen=True)
class StatusStep:
    status: PaymentStatus
    label: str
    completed: bool
    current: bool
    timestamp: Optional[datetime] = None


def calculate_progress(status: Optional[PaymentStatus]) -> int:
    if status is None:
        return 0
    return PROGRESS_BY_STATUS.get(PaymentStatus(status), 0)


def build_status_steps(status: Optional[PaymentStatus], now: Optional[datetime] = None) -> list[StatusStep]:
    """
    派生步骤视图：当前步骤之前的均为已完成，当前步骤标记 current。

    不在主流程上的状态（failed/cancelled/refunded...）不点亮任何步骤，
    refunded/partially_refunded 视为已走完整个流程。
    """
    now = now or datetime.now(timezone.utc)
    order = [s for s, _ in _STEP_ORDER]
    if status in order:
        current_index = order.index(status)
    elif status in (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED):
        current_index = len(order)
    else:
        current_index = -1

    return [
        StatusStep(
            status=step_status,
            label=label,
            completed=index < current_index,
            current=index == current_index,
            timestamp=now if 0 <= current_index and index <= current_index else None,
        )
        for index, (step_status, label) in enumerate(_STEP_ORDER)
    ]
