"""
Retry coordinator for failed checkouts.

Decides how a failed checkout recovers:
- the payment method was rejected: back to method selection, no auto submit
- tracking was abandoned while confirming: resume polling the same payment
- anything else: fresh intent and a new submission (never method selection)

The retry cap and backoff come from a caller-supplied ``RetryPolicy``; the
default policy allows unlimited immediate retries.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from application.services.callbacks import emit
from application.services.checkout_service import CheckoutStateMachine
from application.services.status_poller import PollHandle
from core.logging_config import get_logger
from domain.payment.exceptions import InvalidTransitionError
from domain.payment.states import CheckoutStep, Failed, SubmissionState


logger = get_logger(__name__)


@dataclass(slots=True)
class RetryDecision:
    allowed: bool
    delay: float
    restart_step: Optional[CheckoutStep]


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: Optional[int] = None
    backoff_seconds: float = 0.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 30.0

    def delay_for(self, attempt: int) -> float:
        if self.backoff_seconds <= 0:
            return 0.0
        delay = self.backoff_seconds * self.backoff_multiplier ** max(attempt - 1, 0)
        return min(delay, self.max_backoff_seconds)

    def decide(self, failure: Failed, attempt_count: int) -> RetryDecision:
        if self.max_attempts is not None and attempt_count >= self.max_attempts:
            return RetryDecision(allowed=False, delay=0.0, restart_step=None)
        if failure.resumable:
            step = CheckoutStep.CONFIRMING
        elif failure.method_rejected:
            step = CheckoutStep.SELECTING_METHOD
        else:
            step = CheckoutStep.CREATING_INTENT
        return RetryDecision(allowed=True, delay=self.delay_for(attempt_count), restart_step=step)


class RetryCoordinator:
    def __init__(
        self,
        machine: CheckoutStateMachine,
        *,
        policy: Optional[RetryPolicy] = None,
        on_retry: Optional[Callable[[int], object]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.machine = machine
        self.policy = policy or RetryPolicy()
        self.on_retry = on_retry or machine.callbacks.on_retry
        self._sleep = sleep

    @property
    def attempt_count(self) -> int:
        return self.machine.attempt_count

    @property
    def draft(self):
        return self.machine.draft

    def decision(self) -> RetryDecision:
        state = self.machine.state
        if not isinstance(state, Failed) or self.machine.in_flight:
            return RetryDecision(allowed=False, delay=0.0, restart_step=None)
        return self.policy.decide(state, self.attempt_count)

    @property
    def can_retry(self) -> bool:
        return self.decision().allowed

    async def retry(self) -> SubmissionState:
        state = self.machine.state
        if not isinstance(state, Failed):
            raise InvalidTransitionError("retry", state.step.value)

        decision = self.decision()
        if not decision.allowed:
            logger.info(
                "checkout_retry_refused",
                checkout_id=self.machine.checkout_id,
                attempt=self.attempt_count,
                max_attempts=self.policy.max_attempts,
            )
            return state

        logger.info(
            "checkout_retry",
            checkout_id=self.machine.checkout_id,
            attempt=self.attempt_count,
            restart_step=decision.restart_step.value,
            delay=decision.delay,
        )
        await emit(self.on_retry, self.attempt_count)
        if decision.delay > 0:
            await self._sleep(decision.delay)
            # Caller may have acted on the machine while we slept
            if self.machine.state is not state:
                return self.machine.state

        if decision.restart_step == CheckoutStep.CONFIRMING:
            self.machine.resume_tracking()
            return self.machine.state
        if decision.restart_step == CheckoutStep.SELECTING_METHOD:
            return self.machine.reset_to_method_selection()
        self.machine.restart_from_intent()
        return await self.machine.submit()

    async def resume_polling(self, interval: Optional[float] = None) -> PollHandle:
        """恢复对同一笔支付的轮询（确认阶段放弃等待后）"""
        await emit(self.on_retry, self.attempt_count)
        logger.info("checkout_resume_polling", checkout_id=self.machine.checkout_id, attempt=self.attempt_count)
        return self.machine.resume_tracking(interval)
