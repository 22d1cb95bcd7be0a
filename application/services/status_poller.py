"""
Payment status poller.

Fetches the gateway's payment record on a fixed interval until a terminal
status is reached, emitting status/success/error callbacks. Each poll runs as
one asyncio task guarded by a cancellation flag: the flag is checked before
every fetch, after every fetch and before every reschedule, and the wait
between fetches is interrupted as soon as ``stop()`` is called.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional, Union

from application.ports.payment_gateway import PaymentGateway
from application.services.callbacks import PaymentCallbacks, emit
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.payment.entity import PaymentIntent, PaymentRecord, PaymentStatus
from domain.payment.exceptions import PollingError
from domain.payment.tracking import (
    ERROR_REASONS,
    StatusStep,
    build_status_steps,
    calculate_progress,
)
from shared.codes.payment_codes import INTENT_STATUS_TO_RECORD


logger = get_logger(__name__)


def intent_to_record(intent: PaymentIntent) -> PaymentRecord:
    """将网关意图状态映射为支付记录状态"""
    status = INTENT_STATUS_TO_RECORD.get(getattr(intent.status, "value", intent.status), "pending")
    return PaymentRecord(
        id=intent.id,
        amount=intent.amount,
        currency=intent.currency,
        status=PaymentStatus(status),
        created_at=intent.created_at,
    )


class PollHandle:
    """Handle over one running poll; ``stop()`` is safe from any state."""

    def __init__(
        self,
        gateway: PaymentGateway,
        *,
        payment_id: Optional[str],
        intent_id: Optional[str],
        initial_record: Optional[PaymentRecord],
        interval: float,
        callbacks: PaymentCallbacks,
    ) -> None:
        self._gateway = gateway
        self.payment_id = payment_id
        self.intent_id = intent_id
        self._initial_record = initial_record
        self._interval = interval
        self._callbacks = callbacks

        self.status: Optional[PaymentStatus] = None
        self.record: Optional[PaymentRecord] = None
        self.last_error: Optional[PollingError] = None
        self.fetch_count = 0
        self.error_count = 0
        self.updated_at: Optional[datetime] = None

        self._stopped = False
        self._done = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def progress(self) -> int:
        return calculate_progress(self.status)

    @property
    def steps(self) -> list[StatusStep]:
        return build_status_steps(self.status, self.updated_at)

    @property
    def done(self) -> bool:
        """已到达终态"""
        return self._done

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def _begin(self) -> "PollHandle":
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    async def wait(self) -> None:
        """等待轮询结束（终态或 stop）"""
        if self._task is not None:
            await asyncio.wait({self._task})

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # A callback may stop its own poll; the flag alone ends the loop then
        if self._task is not None and not self._task.done() and self._task is not current:
            self._task.cancel()
        logger.info("payment_poll_stopped", payment_id=self.payment_id, intent_id=self.intent_id)

    async def _fetch(self) -> PaymentRecord:
        if self.payment_id:
            return await self._gateway.get_payment(self.payment_id)
        intent = await self._gateway.get_intent(self.intent_id)
        return intent_to_record(intent)

    async def _run(self) -> None:
        if self._initial_record is not None:
            await self._observe(self._initial_record)
            if self._done or self._stopped:
                return
        if not self.payment_id and not self.intent_id:
            return

        while not self._stopped:
            self.fetch_count += 1
            try:
                record = await self._fetch()
            except Exception as exc:
                if self._stopped:
                    return
                await self._report_error(exc)
            else:
                if self._stopped:
                    return
                self.last_error = None
                await self._observe(record)
                if self._done:
                    return

            if self._stopped:
                return
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    async def _observe(self, record: PaymentRecord) -> None:
        self.record = record
        previous = self.status
        if record.status == previous:
            return

        self.status = record.status
        self.updated_at = record.updated_at or datetime.now(timezone.utc)
        logger.info(
            "payment_status_changed",
            payment_id=record.id,
            previous=previous.value if previous else None,
            status=record.status.value,
            progress=self.progress,
        )
        if record.is_terminal:
            self._done = True

        await self._notify(self._callbacks.on_status_change, record.status, record)
        if self._stopped:
            return
        if record.status == PaymentStatus.COMPLETED:
            await self._notify(self._callbacks.on_payment_success, record)
        elif record.status in ERROR_REASONS:
            await self._notify(self._callbacks.on_payment_error, ERROR_REASONS[record.status])

    async def _notify(self, callback, *args) -> None:
        """调用方回调抛出的异常只记录日志，不中断轮询任务"""
        try:
            await emit(callback, *args)
        except Exception:
            logger.exception(
                "payment_poll_callback_failed",
                payment_id=self.payment_id,
                intent_id=self.intent_id,
                callback=getattr(callback, "__name__", repr(callback)),
            )

    async def _report_error(self, exc: Exception) -> None:
        self.error_count += 1
        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        error = PollingError(
            f"Failed to fetch payment status: {message}",
            payment_id=self.payment_id or self.intent_id,
            attempt=self.error_count,
        )
        self.last_error = error
        logger.warning(
            "payment_poll_failed",
            payment_id=self.payment_id,
            intent_id=self.intent_id,
            attempt=self.error_count,
            error=message,
        )
        await self._notify(self._callbacks.on_polling_error, error)


class StatusPoller:
    """Starts poll handles against one gateway with shared callbacks."""

    def __init__(
        self,
        gateway: PaymentGateway,
        *,
        interval: Optional[float] = None,
        callbacks: Optional[PaymentCallbacks] = None,
    ) -> None:
        self.gateway = gateway
        self.interval = payment_settings.checkout.poll_interval_seconds if interval is None else interval
        self.callbacks = callbacks or PaymentCallbacks()

    def start(
        self,
        payment_id: Optional[str] = None,
        intent: Union[PaymentIntent, str, None] = None,
        initial_record: Optional[PaymentRecord] = None,
    ) -> PollHandle:
        """开始轮询；需在事件循环中调用"""
        intent_id = getattr(intent, "id", intent)
        if not payment_id and not intent_id and initial_record is None:
            raise ValueError("payment_id, intent or initial_record is required")

        logger.info(
            "payment_poll_started",
            payment_id=payment_id,
            intent_id=intent_id,
            interval=self.interval,
        )
        handle = PollHandle(
            self.gateway,
            payment_id=payment_id,
            intent_id=intent_id,
            initial_record=initial_record,
            interval=self.interval,
            callbacks=self.callbacks,
        )
        return handle._begin()
