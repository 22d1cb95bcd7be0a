"""
Checkout submission state machine.

Drives one checkout from method selection to a terminal outcome:

    SelectingMethod -> CollectingBilling -> CreatingIntent -> Submitting
        -> Confirming -> Succeeded | Failed

``Cancelled`` is reachable from every non-terminal step. Submissions are
single-flight, and a cancellation discards the outcome of any gateway call
still in flight, so no callback fires for a cancelled checkout.
"""
from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from application.dtos.payments import BillingAddress, CreateIntent, ProcessingResult, ProcessPayment
from application.ports.payment_gateway import PaymentGateway
from application.services.callbacks import PaymentCallbacks, emit
from application.services.payment_service import PaymentService
from application.services.status_poller import PollHandle, StatusPoller
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import BusinessException
from domain.common.validation import clear_field_error
from domain.payment.entity import (
    Address,
    PaymentIntent,
    PaymentMethod,
    PaymentMethodType,
    PaymentRecord,
    PaymentRequest,
    PaymentStatus,
    pick_default_method,
)
from domain.payment.events import (
    PaymentCanceled,
    PaymentEvent,
    PaymentFailed,
    PaymentStatusChanged,
    PaymentSubmitted,
    PaymentSucceeded,
    SubmissionRetried,
)
from domain.payment.exceptions import (
    CheckoutValidationError,
    ConcurrencyError,
    ExpiredIntentError,
    InvalidTransitionError,
    SubmissionError,
    is_method_rejection,
)
from domain.payment.states import (
    Cancelled,
    CheckoutDraft,
    CheckoutStep,
    CollectingBilling,
    Confirming,
    CreatingIntent,
    Failed,
    SelectingMethod,
    Submitting,
    SubmissionState,
    Succeeded,
)
from domain.payment.tracking import ERROR_REASONS
from domain.payment.validation import BILLING_FIELD_KEYS, validate_checkout_step


logger = get_logger(__name__)

_EXPIRED = object()

_EDITABLE = (SelectingMethod, CollectingBilling, CreatingIntent, Failed)

_GATEWAY_UNAVAILABLE = "Unable to reach the payment gateway, please try again"

_SETTLED_AFTER_CAPTURE = (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED)


class CheckoutStateMachine:
    """一次结账的提交状态机（单事件循环内使用）"""

    def __init__(
        self,
        gateway: PaymentGateway,
        request: PaymentRequest,
        *,
        saved_methods: Iterable[PaymentMethod] = (),
        callbacks: Optional[PaymentCallbacks] = None,
        require_billing_address: Optional[bool] = None,
        require_method_selection: Optional[bool] = None,
        allowed_method_types: Optional[Sequence[PaymentMethodType | str]] = None,
        intent_refresh_limit: Optional[int] = None,
        poll_interval: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        checkout = payment_settings.checkout
        self.gateway = gateway
        self.service = PaymentService(gateway)
        self.request = request
        self.saved_methods = list(saved_methods)
        self.callbacks = callbacks or PaymentCallbacks()
        self.require_billing_address = (
            checkout.require_billing_address if require_billing_address is None else require_billing_address
        )
        self.require_method_selection = (
            checkout.require_method_selection if require_method_selection is None else require_method_selection
        )
        self.allowed_method_types = [
            PaymentMethodType(t)
            for t in (checkout.allowed_method_types if allowed_method_types is None else allowed_method_types)
        ]
        self.intent_refresh_limit = (
            checkout.intent_refresh_limit if intent_refresh_limit is None else intent_refresh_limit
        )
        self.poll_interval = checkout.poll_interval_seconds if poll_interval is None else poll_interval
        self._clock = clock

        self.checkout_id = uuid.uuid4().hex
        self.intent: Optional[PaymentIntent] = None
        self.events: list[PaymentEvent] = []
        self._state: SubmissionState = SelectingMethod(CheckoutDraft())
        self._initial_state = self._state
        self._attempt_count = 0
        self._intent_seq = 0
        self._in_flight = False
        # Cancellation token: bumped on cancel, checked after every await
        self._generation = 0
        self._poll: Optional[PollHandle] = None

    # ---- read side ----

    @property
    def state(self) -> SubmissionState:
        return self._state

    @property
    def step(self) -> CheckoutStep:
        return self._state.step

    @property
    def attempt_count(self) -> int:
        return self._attempt_count

    @property
    def draft(self) -> CheckoutDraft:
        return self._state.draft

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def poll(self) -> Optional[PollHandle]:
        return self._poll

    def clear_events(self) -> None:
        self.events.clear()

    def default_method(self) -> Optional[PaymentMethod]:
        return pick_default_method(self.saved_methods, self.allowed_method_types)

    # ---- input steps ----

    def start(self) -> SubmissionState:
        """进入结账流程（每台状态机只能调用一次）"""
        if self._in_flight or self._state is not self._initial_state:
            raise InvalidTransitionError("start checkout", self.step.value)
        default = self.default_method()
        draft = CheckoutDraft(payment_method_id=default.id if default else None)
        if default is not None and not self.require_billing_address:
            self._state = CreatingIntent(draft)
        else:
            self._state = SelectingMethod(draft)
        logger.info(
            "checkout_started",
            checkout_id=self.checkout_id,
            booking_id=self.request.booking_id,
            step=self.step.value,
            default_method_id=draft.payment_method_id,
        )
        return self._state

    def select_method(self, method_id: str) -> SubmissionState:
        return self._edit({"payment_method_id": method_id, "add_new_method": False}, clears=("paymentMethod",))

    def choose_new_method(self) -> SubmissionState:
        return self._edit({"payment_method_id": None, "add_new_method": True}, clears=("paymentMethod",))

    def update_billing(self, field: str, value: str) -> SubmissionState:
        """更新单个账单字段；field 可以是属性名（city）或表单键（billingCity）"""
        attr = {key: name for name, key in BILLING_FIELD_KEYS.items()}.get(field, field)
        address = self.draft.billing_address.with_field(attr, value)
        key = BILLING_FIELD_KEYS.get(attr, field)
        return self._edit({"billing_address": address}, clears=(key,))

    def set_billing_address(self, address: Address) -> SubmissionState:
        return self._edit({"billing_address": address}, clears=tuple(BILLING_FIELD_KEYS.values()))

    def set_save_payment_method(self, flag: bool) -> SubmissionState:
        return self._edit({"save_payment_method": bool(flag)})

    def set_as_default(self, flag: bool) -> SubmissionState:
        return self._edit({"set_as_default": bool(flag)})

    def _edit(self, changes: dict, clears: Sequence[str] = ()) -> SubmissionState:
        state = self._state
        if self._in_flight or not isinstance(state, _EDITABLE):
            logger.warning("checkout_edit_ignored", checkout_id=self.checkout_id, step=state.step.value)
            return state
        updated = replace(state, draft=state.draft.with_changes(**changes))
        if hasattr(updated, "errors"):
            errors = updated.errors
            for key in clears:
                errors = clear_field_error(key, errors)
            updated = replace(updated, errors=errors)
        self._state = updated
        return self._state

    def _needs_billing(self, draft: CheckoutDraft) -> bool:
        return self.require_billing_address or draft.add_new_method

    def advance(self) -> SubmissionState:
        """校验当前输入步骤，通过则进入下一步；校验错误保留在当前步骤"""
        state = self._state
        if not isinstance(state, (SelectingMethod, CollectingBilling)):
            return state

        result = validate_checkout_step(
            state.step.value,
            payment_method_id=state.draft.payment_method_id,
            add_new_method=state.draft.add_new_method,
            billing_address=state.draft.billing_address,
            selection_required=self.require_method_selection,
        )
        if not result.is_valid:
            error = CheckoutValidationError(result.errors, step=state.step.value)
            logger.info(
                "checkout_validation_failed",
                checkout_id=self.checkout_id,
                step=error.step,
                fields=sorted(error.errors),
            )
            self._state = replace(state, errors=error.errors)
            return self._state

        if isinstance(state, SelectingMethod) and self._needs_billing(state.draft):
            self._state = CollectingBilling(state.draft)
        else:
            self._state = CreatingIntent(state.draft)
        logger.info("checkout_step_advanced", checkout_id=self.checkout_id, step=self.step.value)
        return self._state

    # ---- submission ----

    async def submit(self) -> SubmissionState:
        """
        提交支付（单飞）

        依次完成剩余输入步骤的校验、创建支付意图、向网关提交。
        提交进行中再次调用不会产生第二次网关请求，直接返回当前状态。
        """
        if self._in_flight:
            error = ConcurrencyError(self.step.value)
            logger.warning("checkout_submit_ignored", checkout_id=self.checkout_id, **error.to_dict())
            return self._state
        if not isinstance(self._state, (SelectingMethod, CollectingBilling, CreatingIntent)):
            return self._state

        self._in_flight = True
        run = self._generation
        try:
            await self._submit(run)
        finally:
            self._in_flight = False
        return self._state

    def _cancelled_since(self, run: int) -> bool:
        return run != self._generation

    async def _submit(self, run: int) -> None:
        while isinstance(self._state, (SelectingMethod, CollectingBilling)):
            self.advance()
            if getattr(self._state, "errors", None):
                return

        refreshes = 0
        while True:
            intent = await self._create_intent(run)
            if intent is None:
                return
            outcome = await self._process(run, intent)
            if outcome is not _EXPIRED:
                return

            draft = self._state.draft
            if refreshes >= self.intent_refresh_limit:
                await self._fail(
                    CheckoutStep.SUBMITTING,
                    "Payment session expired, please try again",
                    reason="ExpiredIntentError",
                )
                return
            refreshes += 1
            logger.info(
                "checkout_intent_refresh",
                checkout_id=self.checkout_id,
                expired_intent_id=intent.id,
                refresh=refreshes,
            )
            self.intent = None
            self._state = CreatingIntent(draft)

    async def _create_intent(self, run: int) -> Optional[PaymentIntent]:
        draft = self._state.draft
        self._intent_seq += 1
        metadata = dict(self.request.metadata)
        metadata["idempotency_hint"] = f"{self.checkout_id}:{self._intent_seq}"
        if self.request.booking_id:
            metadata.setdefault("booking_id", self.request.booking_id)
        req = CreateIntent(
            amount=self.request.amount,
            currency=self.request.currency,
            payment_method_types=self.allowed_method_types,
            metadata=metadata,
            description=self.request.description,
            booking_id=self.request.booking_id,
        )
        try:
            intent = await self.service.create_intent(req)
        except BusinessException as exc:
            if self._cancelled_since(run):
                return None
            await self._fail(CheckoutStep.CREATING_INTENT, exc.message, reason=exc.error_type)
            return None
        except Exception as exc:
            if self._cancelled_since(run):
                return None
            logger.exception(
                "checkout_gateway_error",
                checkout_id=self.checkout_id,
                step=CheckoutStep.CREATING_INTENT.value,
            )
            await self._fail(CheckoutStep.CREATING_INTENT, _GATEWAY_UNAVAILABLE, reason=exc.__class__.__name__)
            return None

        if self._cancelled_since(run):
            return None
        self.intent = intent
        self._state = Submitting(draft, intent)
        logger.info("checkout_intent_created", checkout_id=self.checkout_id, intent_id=intent.id)
        return intent

    def _process_request(self, draft: CheckoutDraft, intent: PaymentIntent) -> ProcessPayment:
        billing = None
        if self._needs_billing(draft):
            billing = BillingAddress.from_entity(draft.billing_address)
        return ProcessPayment(
            amount=self.request.amount,
            currency=self.request.currency,
            payment_intent_id=intent.id,
            payment_method_id=draft.payment_method_id,
            booking_id=self.request.booking_id,
            description=self.request.description,
            billing_address=billing,
            save_payment_method=draft.save_payment_method or self.request.save_payment_method,
            set_as_default=draft.set_as_default,
            metadata=dict(self.request.metadata) or None,
        )

    async def _process(self, run: int, intent: PaymentIntent):
        draft = self._state.draft
        if intent.is_expired(self._clock()):
            return _EXPIRED

        req = self._process_request(draft, intent)
        try:
            result = await self.service.process_payment(req)
        except ExpiredIntentError:
            if self._cancelled_since(run):
                return None
            return _EXPIRED
        except SubmissionError as exc:
            self._attempt_count += 1
            if self._cancelled_since(run):
                return None
            self.events.append(PaymentSubmitted(intent_id=intent.id, attempt=self._attempt_count))
            await self._fail(
                CheckoutStep.SUBMITTING,
                exc.message,
                reason=exc.decline_code or exc.error_type,
                errors=exc.field_errors,
                method_rejected=exc.method_rejected,
            )
            return None
        except BusinessException as exc:
            self._attempt_count += 1
            if self._cancelled_since(run):
                return None
            self.events.append(PaymentSubmitted(intent_id=intent.id, attempt=self._attempt_count))
            await self._fail(CheckoutStep.SUBMITTING, exc.message, reason=exc.error_type)
            return None
        except Exception as exc:
            self._attempt_count += 1
            if self._cancelled_since(run):
                return None
            logger.exception(
                "checkout_gateway_error",
                checkout_id=self.checkout_id,
                step=CheckoutStep.SUBMITTING.value,
            )
            self.events.append(PaymentSubmitted(intent_id=intent.id, attempt=self._attempt_count))
            await self._fail(CheckoutStep.SUBMITTING, _GATEWAY_UNAVAILABLE, reason=exc.__class__.__name__)
            return None

        self._attempt_count += 1
        if self._cancelled_since(run):
            return None
        self.events.append(
            PaymentSubmitted(intent_id=intent.id, payment_id=result.payment_id, attempt=self._attempt_count)
        )
        await self._apply_result(draft, intent, result)
        return None

    async def _apply_result(self, draft: CheckoutDraft, intent: PaymentIntent, result: ProcessingResult) -> None:
        if not result.success:
            errors = [e.model_dump() for e in result.validation_errors]
            await self._fail(
                CheckoutStep.SUBMITTING,
                result.error or "Payment processing failed",
                reason=result.decline_code,
                errors={e["field"]: e["message"] for e in errors},
                method_rejected=is_method_rejection(result.decline_code, errors),
            )
            return

        status = result.status
        if status is None or status == PaymentStatus.COMPLETED:
            now = self._clock()
            record = PaymentRecord(
                id=result.payment_id or intent.id,
                amount=self.request.amount,
                currency=self.request.currency,
                status=PaymentStatus.COMPLETED,
                payment_method=self._selected_method(draft),
                gateway_transaction_id=result.gateway_transaction_id,
                booking_id=self.request.booking_id,
                description=self.request.description,
                created_at=now,
                updated_at=now,
                paid_at=now,
            )
            await self._succeed(record)
        elif status in ERROR_REASONS:
            await self._fail(
                CheckoutStep.SUBMITTING,
                result.error or ERROR_REASONS[status],
                reason=status.value,
                payment_id=result.payment_id,
            )
        else:
            self._state = Confirming(
                draft,
                intent,
                payment_id=result.payment_id,
                gateway_transaction_id=result.gateway_transaction_id,
                status=status,
            )
            logger.info(
                "checkout_awaiting_confirmation",
                checkout_id=self.checkout_id,
                payment_id=result.payment_id,
                status=status.value,
            )

    def _selected_method(self, draft: CheckoutDraft) -> Optional[PaymentMethod]:
        for method in self.saved_methods:
            if method.id == draft.payment_method_id:
                return method
        return None

    async def _succeed(self, record: PaymentRecord) -> None:
        self._state = Succeeded(self._state.draft, record)
        self.events.append(
            PaymentSucceeded(
                intent_id=self.intent.id if self.intent else None,
                payment_id=record.id,
                amount=record.amount,
                currency=record.currency.value,
            )
        )
        logger.info("checkout_succeeded", checkout_id=self.checkout_id, payment_id=record.id)
        await emit(self.callbacks.on_payment_success, record)

    async def _fail(
        self,
        step: CheckoutStep,
        message: str,
        *,
        reason: Optional[str] = None,
        errors: Optional[dict[str, str]] = None,
        method_rejected: bool = False,
        payment_id: Optional[str] = None,
        resumable: bool = False,
    ) -> None:
        self._state = Failed(
            draft=self._state.draft,
            failed_step=step,
            message=message,
            reason=reason,
            errors=dict(errors or {}),
            method_rejected=method_rejected,
            payment_id=payment_id,
            resumable=resumable,
        )
        self.events.append(
            PaymentFailed(
                intent_id=self.intent.id if self.intent else None,
                payment_id=payment_id,
                step=step.value,
                reason=reason,
            )
        )
        logger.warning(
            "checkout_failed",
            checkout_id=self.checkout_id,
            step=step.value,
            reason=reason,
            error=message,
            attempt=self._attempt_count,
        )
        await emit(self.callbacks.on_payment_error, message)

    # ---- cancellation & recovery ----

    def cancel(self) -> bool:
        """取消结账；终态（含 Succeeded）下返回 False 且不做任何事"""
        state = self._state
        if state.is_terminal:
            return False
        self._generation += 1
        self._stop_poll()
        self._state = Cancelled(state.draft, cancelled_from=state.step)
        self.events.append(
            PaymentCanceled(
                intent_id=self.intent.id if self.intent else None,
                payment_id=getattr(state, "payment_id", None),
                step=state.step.value,
            )
        )
        logger.info("checkout_cancelled", checkout_id=self.checkout_id, step=state.step.value)
        return True

    def _require_failed(self, action: str) -> Failed:
        state = self._state
        if self._in_flight or not isinstance(state, Failed):
            raise InvalidTransitionError(action, state.step.value)
        return state

    def restart_from_intent(self) -> SubmissionState:
        """失败后从创建意图重新开始（保留草稿，旧意图不复用）"""
        failed = self._require_failed("restart from intent")
        self.intent = None
        self._state = CreatingIntent(failed.draft)
        self.events.append(
            SubmissionRetried(attempt=self._attempt_count, restart_step=CheckoutStep.CREATING_INTENT.value)
        )
        logger.info("checkout_restarted", checkout_id=self.checkout_id, attempt=self._attempt_count)
        return self._state

    def reset_to_method_selection(self) -> SubmissionState:
        """支付方式被拒后回到方式选择（保留草稿，由调用方重新选择）"""
        failed = self._require_failed("reset to method selection")
        errors = {"paymentMethod": failed.message} if failed.method_rejected else {}
        self.intent = None
        self._state = SelectingMethod(failed.draft, errors=errors)
        self.events.append(
            SubmissionRetried(attempt=self._attempt_count, restart_step=CheckoutStep.SELECTING_METHOD.value)
        )
        logger.info("checkout_reset_to_method_selection", checkout_id=self.checkout_id)
        return self._state

    # ---- confirmation tracking ----

    def track(self, interval: Optional[float] = None) -> PollHandle:
        """在 Confirming 阶段启动状态轮询，轮询终态驱动 Succeeded / Failed"""
        state = self._state
        if not isinstance(state, Confirming):
            raise InvalidTransitionError("track payment", state.step.value)
        self._stop_poll()

        run = self._generation
        poller = StatusPoller(
            self.gateway,
            interval=self.poll_interval if interval is None else interval,
            callbacks=PaymentCallbacks(
                on_status_change=lambda status, record: self._on_tracked_status(run, status, record),
                on_payment_success=lambda record: self._on_tracked_success(run, record),
                on_payment_error=lambda message: self._on_tracked_error(run, message),
                on_polling_error=lambda error: self._on_tracked_polling_error(run, error),
            ),
        )
        if state.payment_id:
            self._poll = poller.start(payment_id=state.payment_id)
        else:
            self._poll = poller.start(intent=state.intent)
        return self._poll

    def stop_tracking(self) -> SubmissionState:
        """停止轮询，状态保持不变（可稍后 track() 继续）"""
        self._stop_poll()
        return self._state

    async def abandon_tracking(self, message: str = "Unable to confirm payment status") -> SubmissionState:
        """
        调用方放弃等待确认结果。

        停止轮询并进入可恢复轮询的 Failed 状态，通过 on_payment_error 上报一次。
        """
        self._stop_poll()
        state = self._state
        if not isinstance(state, Confirming):
            return state
        await self._fail(
            CheckoutStep.CONFIRMING,
            message,
            reason="PollingError",
            payment_id=state.payment_id,
            resumable=True,
        )
        return self._state

    def resume_tracking(self, interval: Optional[float] = None) -> PollHandle:
        """从放弃轮询的 Failed 状态恢复为 Confirming 并重新开始轮询同一笔支付"""
        failed = self._require_failed("resume tracking")
        if not failed.resumable or self.intent is None:
            raise InvalidTransitionError("resume tracking", failed.failed_step.value)
        self._state = Confirming(failed.draft, self.intent, payment_id=failed.payment_id)
        self.events.append(
            SubmissionRetried(
                payment_id=failed.payment_id,
                attempt=self._attempt_count,
                restart_step=CheckoutStep.CONFIRMING.value,
            )
        )
        return self.track(interval)

    def _stop_poll(self) -> None:
        if self._poll is not None:
            self._poll.stop()
            self._poll = None

    async def _on_tracked_status(self, run: int, status: PaymentStatus, record: PaymentRecord) -> None:
        state = self._state
        if self._cancelled_since(run) or not isinstance(state, Confirming):
            return
        self._state = replace(state, status=status)
        self.events.append(
            PaymentStatusChanged(
                intent_id=state.intent.id,
                payment_id=record.id,
                status=status.value,
                previous=state.status.value if state.status else None,
            )
        )
        await emit(self.callbacks.on_status_change, status, record)
        # A refunded status implies the charge was captured
        if status not in _SETTLED_AFTER_CAPTURE:
            return
        if self._cancelled_since(run) or not isinstance(self._state, Confirming):
            return
        await self._succeed(record)

    async def _on_tracked_success(self, run: int, record: PaymentRecord) -> None:
        if self._cancelled_since(run) or not isinstance(self._state, Confirming):
            return
        await self._succeed(record)

    async def _on_tracked_error(self, run: int, message: str) -> None:
        state = self._state
        if self._cancelled_since(run) or not isinstance(state, Confirming):
            return
        await self._fail(
            CheckoutStep.CONFIRMING,
            message,
            reason=state.status.value if state.status else None,
            payment_id=state.payment_id,
        )

    async def _on_tracked_polling_error(self, run: int, error: Exception) -> None:
        if self._cancelled_since(run):
            return
        await emit(self.callbacks.on_polling_error, error)
