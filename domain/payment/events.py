"""
Checkout domain events.

Dataclass events record checkout lifecycle facts for downstream handling
(analytics, receipts). Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class PaymentEvent:
    intent_id: Optional[str] = None
    payment_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PaymentSubmitted(PaymentEvent):
    attempt: int = 0


@dataclass
class PaymentSucceeded(PaymentEvent):
    amount: int = 0
    currency: str = ""


@dataclass
class PaymentFailed(PaymentEvent):
    step: str = ""
    reason: Optional[str] = None


@dataclass
class PaymentCanceled(PaymentEvent):
    step: str = ""


@dataclass
class SubmissionRetried(PaymentEvent):
    attempt: int = 0
    restart_step: str = ""


@dataclass
class PaymentStatusChanged(PaymentEvent):
    status: str = ""
    previous: Optional[str] = None
