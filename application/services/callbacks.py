"""
Checkout callbacks.

Callers subscribe with plain functions or coroutines; the core never performs
presentation side effects itself.
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from domain.payment.entity import PaymentRecord, PaymentStatus

Callback = Callable[..., Union[None, Awaitable[None]]]


async def emit(callback: Optional[Callback], *args: Any) -> None:
    """Invoke a sync or async callback; missing callbacks are ignored."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


@dataclass
class PaymentCallbacks:
    on_status_change: Optional[Callable[[PaymentStatus, PaymentRecord], Any]] = None
    on_payment_success: Optional[Callable[[PaymentRecord], Any]] = None
    on_payment_error: Optional[Callable[[str], Any]] = None
    on_polling_error: Optional[Callable[[Exception], Any]] = None
    on_retry: Optional[Callable[[int], Any]] = None
