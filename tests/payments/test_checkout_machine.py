import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from application.dtos.payments import FieldError, ProcessingResult
from application.services.callbacks import PaymentCallbacks
from application.services.checkout_service import CheckoutStateMachine
from domain.payment.entity import PaymentStatus
from domain.payment.events import PaymentCanceled, PaymentSubmitted, PaymentSucceeded
from domain.payment.exceptions import (
    ExpiredIntentError,
    GatewayUnavailableError,
    IntentCreationError,
    InvalidTransitionError,
    SubmissionError,
)
from domain.payment.states import (
    Cancelled,
    CheckoutStep,
    CollectingBilling,
    Confirming,
    CreatingIntent,
    Failed,
    SelectingMethod,
    Submitting,
    Succeeded,
)


class Recorder:
    def __init__(self):
        self.successes = []
        self.errors = []
        self.statuses = []
        self.polling_errors = []

    def callbacks(self) -> PaymentCallbacks:
        return PaymentCallbacks(
            on_status_change=lambda status, record: self.statuses.append(status),
            on_payment_success=self.successes.append,
            on_payment_error=self.errors.append,
            on_polling_error=self.polling_errors.append,
        )


def make_machine(gateway, request, recorder=None, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    return CheckoutStateMachine(
        gateway,
        request,
        callbacks=recorder.callbacks() if recorder else None,
        **kwargs,
    )


def test_start_without_default_selects_method(gateway, payment_request):
    machine = make_machine(gateway, payment_request)
    state = machine.start()
    assert isinstance(state, SelectingMethod)
    assert state.draft.payment_method_id is None


def test_start_with_default_skips_to_intent(gateway, payment_request, card):
    machine = make_machine(gateway, payment_request, saved_methods=[card])
    state = machine.start()
    assert isinstance(state, CreatingIntent)
    assert state.draft.payment_method_id == "pm_1"


def test_start_with_default_and_required_billing_preselects(gateway, payment_request, card):
    machine = make_machine(gateway, payment_request, saved_methods=[card], require_billing_address=True)
    state = machine.start()
    assert isinstance(state, SelectingMethod)
    assert state.draft.payment_method_id == "pm_1"


@pytest.mark.asyncio
async def test_start_while_submitting_is_rejected(gateway, payment_request, card):
    gateway.process_gate = asyncio.Event()
    machine = make_machine(gateway, payment_request, saved_methods=[card])
    machine.start()

    task = asyncio.create_task(machine.submit())
    while gateway.calls["process_payment"] == 0:
        await asyncio.sleep(0)

    with pytest.raises(InvalidTransitionError):
        machine.start()
    assert isinstance(machine.state, Submitting)
    assert machine.in_flight

    gateway.process_gate.set()
    assert isinstance(await task, Succeeded)
    assert gateway.calls["process_payment"] == 1


@pytest.mark.asyncio
async def test_start_after_success_is_rejected(gateway, payment_request, card):
    rec = Recorder()
    machine = make_machine(gateway, payment_request, rec, saved_methods=[card])
    machine.start()
    await machine.submit()

    with pytest.raises(InvalidTransitionError):
        machine.start()
    # Nothing to resubmit from a terminal state
    assert isinstance(await machine.submit(), Succeeded)
    assert gateway.calls["process_payment"] == 1
    assert len(rec.successes) == 1


def test_advance_without_method_keeps_error_in_step(gateway, payment_request):
    machine = make_machine(gateway, payment_request)
    machine.start()
    state = machine.advance()
    assert isinstance(state, SelectingMethod)
    assert state.errors == {"paymentMethod": "Please select a payment method"}

    state = machine.select_method("pm_1")
    assert state.errors == {}
    assert isinstance(machine.advance(), CreatingIntent)


def test_new_method_requires_billing(gateway, payment_request, address):
    machine = make_machine(gateway, payment_request)
    machine.start()
    machine.choose_new_method()
    assert isinstance(machine.advance(), CollectingBilling)

    state = machine.advance()
    assert isinstance(state, CollectingBilling)
    assert len(state.errors) == 5

    machine.set_billing_address(address)
    assert machine.state.errors == {}
    assert isinstance(machine.advance(), CreatingIntent)


def test_update_billing_clears_only_that_field(gateway, payment_request):
    machine = make_machine(gateway, payment_request, require_billing_address=True)
    machine.start()
    machine.select_method("pm_1")
    machine.advance()
    machine.advance()
    assert "billingCity" in machine.state.errors

    machine.update_billing("billingCity", "Springfield")
    assert "billingCity" not in machine.state.errors
    assert "billingState" in machine.state.errors
    machine.update_billing("state", "IL")
    assert "billingState" not in machine.state.errors
    assert machine.draft.billing_address.city == "Springfield"


@pytest.mark.asyncio
async def test_valid_submission_reaches_submitting(gateway, payment_request, address):
    seen = []

    async def gated(req):
        seen.append(machine.state)
        return ProcessingResult(success=True, payment_id="pay_1")

    machine = make_machine(gateway, payment_request, require_billing_address=True)
    gateway.process_payment = gated
    machine.start()
    machine.select_method("pm_1")
    machine.set_billing_address(address)
    await machine.submit()

    assert isinstance(seen[0], Submitting)
    assert seen[0].intent.id == "pi_1"


@pytest.mark.asyncio
async def test_synchronous_success_emits_one_success(gateway, payment_request):
    rec = Recorder()
    gateway.process_results = [ProcessingResult(success=True, payment_id="pay_1", gateway_transaction_id="txn_1")]
    machine = make_machine(gateway, payment_request, rec)
    machine.start()
    machine.select_method("pm_1")

    state = await machine.submit()

    assert isinstance(state, Succeeded)
    assert state.record.id == "pay_1"
    assert state.record.status == PaymentStatus.COMPLETED
    assert state.record.amount == 1000
    assert [r.id for r in rec.successes] == ["pay_1"]
    assert rec.errors == []
    assert machine.attempt_count == 1
    assert any(isinstance(e, PaymentSucceeded) for e in machine.events)


@pytest.mark.asyncio
async def test_missing_billing_city_never_calls_gateway(gateway, payment_request, address):
    rec = Recorder()
    machine = make_machine(gateway, payment_request, rec, require_billing_address=True)
    machine.start()
    machine.select_method("pm_1")
    machine.set_billing_address(address)
    machine.update_billing("city", "")

    state = await machine.submit()

    assert isinstance(state, CollectingBilling)
    assert state.errors == {"billingCity": "City is required"}
    assert gateway.calls["create_intent"] == 0
    assert gateway.calls["process_payment"] == 0
    assert rec.errors == []


@pytest.mark.asyncio
async def test_billing_forwarded_only_when_required(gateway, payment_request, address):
    machine = make_machine(gateway, payment_request)
    machine.start()
    machine.select_method("pm_1")
    machine.set_billing_address(address)
    await machine.submit()
    assert gateway.requests["process_payment"][0].billing_address is None

    other = make_machine(gateway, payment_request, require_billing_address=True)
    other.start()
    other.select_method("pm_1")
    other.set_billing_address(address)
    other.set_save_payment_method(True)
    await other.submit()
    sent = gateway.requests["process_payment"][1]
    assert sent.billing_address.city == "Springfield"
    assert sent.save_payment_method is True
    assert sent.set_as_default is False


@pytest.mark.asyncio
async def test_intent_failure_does_not_count_attempt(gateway, payment_request):
    rec = Recorder()
    gateway.intent_error = IntentCreationError("Unsupported currency")
    machine = make_machine(gateway, payment_request, rec)
    machine.start()
    machine.select_method("pm_1")

    state = await machine.submit()

    assert isinstance(state, Failed)
    assert state.failed_step == CheckoutStep.CREATING_INTENT
    assert state.message == "Unsupported currency"
    assert machine.attempt_count == 0
    assert gateway.calls["process_payment"] == 0
    assert rec.errors == ["Unsupported currency"]
    assert state.draft.payment_method_id == "pm_1"


@pytest.mark.asyncio
async def test_decline_reports_one_error_and_keeps_draft(gateway, payment_request, address):
    rec = Recorder()
    gateway.process_results = [SubmissionError("Your card was declined", decline_code="card_declined")]
    machine = make_machine(gateway, payment_request, rec, require_billing_address=True)
    machine.start()
    machine.select_method("pm_1")
    machine.set_billing_address(address)

    state = await machine.submit()

    assert isinstance(state, Failed)
    assert state.failed_step == CheckoutStep.SUBMITTING
    assert state.reason == "card_declined"
    assert state.method_rejected is False
    assert rec.errors == ["Your card was declined"]
    assert rec.successes == []
    assert machine.attempt_count == 1
    assert state.draft.billing_address == address


@pytest.mark.asyncio
async def test_gateway_field_errors_are_exposed(gateway, payment_request):
    gateway.process_results = [
        ProcessingResult(
            success=False,
            error="Card number is invalid",
            decline_code="invalid_number",
            validation_errors=[FieldError(field="cardNumber", message="Card number is invalid")],
        )
    ]
    machine = make_machine(gateway, payment_request)
    machine.start()
    machine.select_method("pm_1")

    state = await machine.submit()

    assert isinstance(state, Failed)
    assert state.errors == {"cardNumber": "Card number is invalid"}
    assert state.method_rejected is True


@pytest.mark.asyncio
async def test_unavailable_gateway_fails_submission(gateway, payment_request):
    rec = Recorder()
    gateway.process_results = [GatewayUnavailableError("Payment gateway timed out")]
    machine = make_machine(gateway, payment_request, rec)
    machine.start()
    machine.select_method("pm_1")

    state = await machine.submit()

    assert isinstance(state, Failed)
    assert state.message == "Payment gateway timed out"
    assert rec.errors == ["Payment gateway timed out"]


@pytest.mark.asyncio
async def test_transport_error_fails_submission(gateway, payment_request):
    rec = Recorder()
    gateway.process_results = [ConnectionResetError()]
    machine = make_machine(gateway, payment_request, rec)
    machine.start()
    machine.select_method("pm_1")

    state = await machine.submit()

    assert isinstance(state, Failed)
    assert state.failed_step == CheckoutStep.SUBMITTING
    assert state.reason == "ConnectionResetError"
    assert not machine.in_flight
    assert machine.attempt_count == 1
    assert rec.errors == ["Unable to reach the payment gateway, please try again"]
    assert isinstance(machine.restart_from_intent(), CreatingIntent)
    assert isinstance(await machine.submit(), Succeeded)


@pytest.mark.asyncio
async def test_transport_error_creating_intent_fails(gateway, payment_request):
    rec = Recorder()
    gateway.intent_error = OSError("network unreachable")
    machine = make_machine(gateway, payment_request, rec)
    machine.start()
    machine.select_method("pm_1")

    state = await machine.submit()

    assert isinstance(state, Failed)
    assert state.failed_step == CheckoutStep.CREATING_INTENT
    assert state.reason == "OSError"
    assert machine.attempt_count == 0
    assert len(rec.errors) == 1


@pytest.mark.asyncio
async def test_second_submit_while_in_flight_is_ignored(gateway, payment_request):
    gateway.process_gate = asyncio.Event()
    machine = make_machine(gateway, payment_request)
    machine.start()
    machine.select_method("pm_1")

    first = asyncio.create_task(machine.submit())
    while gateway.calls["process_payment"] == 0:
        await asyncio.sleep(0)

    state = await machine.submit()
    assert isinstance(state, Submitting)
    assert machine.in_flight

    gateway.process_gate.set()
    final = await first
    assert isinstance(final, Succeeded)
    assert gateway.calls["process_payment"] == 1
    assert gateway.calls["create_intent"] == 1


@pytest.mark.asyncio
async def test_cancel_in_flight_discards_outcome(gateway, payment_request):
    rec = Recorder()
    gateway.process_gate = asyncio.Event()
    machine = make_machine(gateway, payment_request, rec)
    machine.start()
    machine.select_method("pm_1")

    task = asyncio.create_task(machine.submit())
    while gateway.calls["process_payment"] == 0:
        await asyncio.sleep(0)

    assert machine.cancel() is True
    gateway.process_gate.set()
    state = await task

    assert isinstance(state, Cancelled)
    assert state.cancelled_from == CheckoutStep.SUBMITTING
    assert rec.successes == []
    assert rec.errors == []
    assert any(isinstance(e, PaymentCanceled) for e in machine.events)


@pytest.mark.asyncio
async def test_cancel_after_success_is_rejected(gateway, payment_request):
    machine = make_machine(gateway, payment_request)
    machine.start()
    machine.select_method("pm_1")
    await machine.submit()

    assert machine.cancel() is False
    assert isinstance(machine.state, Succeeded)


def test_cancel_from_input_step(gateway, payment_request):
    machine = make_machine(gateway, payment_request)
    machine.start()
    assert machine.cancel() is True
    assert machine.state.cancelled_from == CheckoutStep.SELECTING_METHOD
    assert machine.cancel() is False


@pytest.mark.asyncio
async def test_expired_intent_detected_locally_is_refreshed(gateway, payment_request):
    rec = Recorder()
    ticks = []

    # First check happens an hour later, so the first intent is already expired
    def clock():
        ticks.append(1)
        skew = timedelta(hours=1) if len(ticks) == 1 else timedelta(0)
        return datetime.now(timezone.utc) + skew

    machine = make_machine(gateway, payment_request, rec, clock=clock)
    machine.start()
    machine.select_method("pm_1")

    state = await machine.submit()

    assert isinstance(state, Succeeded)
    assert gateway.calls["create_intent"] == 2
    assert gateway.calls["process_payment"] == 1
    assert gateway.requests["process_payment"][0].payment_intent_id == "pi_2"
    assert rec.errors == []


@pytest.mark.asyncio
async def test_expired_intent_reported_by_gateway_is_refreshed(gateway, payment_request):
    rec = Recorder()
    gateway.process_results = [
        ExpiredIntentError("pi_1"),
        ProcessingResult(success=True, payment_id="pay_9"),
    ]
    machine = make_machine(gateway, payment_request, rec)
    machine.start()
    machine.select_method("pm_1")

    state = await machine.submit()

    assert isinstance(state, Succeeded)
    assert state.record.id == "pay_9"
    assert [r.payment_intent_id for r in gateway.requests["process_payment"]] == ["pi_1", "pi_2"]
    assert rec.errors == []
    assert machine.attempt_count == 1


@pytest.mark.asyncio
async def test_expired_intent_refresh_is_bounded(gateway, payment_request):
    rec = Recorder()
    gateway.process_results = [ExpiredIntentError("pi_1"), ExpiredIntentError("pi_2")]
    machine = make_machine(gateway, payment_request, rec, intent_refresh_limit=1)
    machine.start()
    machine.select_method("pm_1")

    state = await machine.submit()

    assert isinstance(state, Failed)
    assert state.reason == "ExpiredIntentError"
    assert gateway.calls["create_intent"] == 2
    assert len(rec.errors) == 1


@pytest.mark.asyncio
async def test_pending_result_is_tracked_to_success(gateway, payment_request):
    rec = Recorder()
    gateway.process_results = [ProcessingResult(success=True, payment_id="pay_1", status=PaymentStatus.PENDING)]
    gateway.payment_statuses = [PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED]
    machine = make_machine(gateway, payment_request, rec)
    machine.start()
    machine.select_method("pm_1")

    state = await machine.submit()
    assert isinstance(state, Confirming)
    assert state.payment_id == "pay_1"
    assert rec.successes == []

    handle = machine.track(interval=0.01)
    await asyncio.wait_for(handle.wait(), timeout=2)

    assert isinstance(machine.state, Succeeded)
    assert rec.statuses == [PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED]
    assert len(rec.successes) == 1
    assert rec.errors == []


@pytest.mark.asyncio
async def test_tracked_failure_moves_to_failed(gateway, payment_request):
    rec = Recorder()
    gateway.process_results = [ProcessingResult(success=True, payment_id="pay_1", status=PaymentStatus.PROCESSING)]
    gateway.payment_statuses = [PaymentStatus.FAILED]
    machine = make_machine(gateway, payment_request, rec)
    machine.start()
    machine.select_method("pm_1")
    await machine.submit()

    handle = machine.track()
    await asyncio.wait_for(handle.wait(), timeout=2)

    assert isinstance(machine.state, Failed)
    assert machine.state.failed_step == CheckoutStep.CONFIRMING
    assert rec.errors == ["Payment failed"]
    assert rec.successes == []


@pytest.mark.asyncio
@pytest.mark.parametrize("final", [PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED])
async def test_refund_seen_while_tracking_counts_as_paid(gateway, payment_request, final):
    rec = Recorder()
    gateway.process_results = [ProcessingResult(success=True, payment_id="pay_1", status=PaymentStatus.PENDING)]
    gateway.payment_statuses = [PaymentStatus.PENDING, final]
    machine = make_machine(gateway, payment_request, rec)
    machine.start()
    machine.select_method("pm_1")
    await machine.submit()

    handle = machine.track()
    await asyncio.wait_for(handle.wait(), timeout=2)

    assert handle.done
    assert isinstance(machine.state, Succeeded)
    assert machine.state.record.status == final
    assert rec.statuses == [PaymentStatus.PENDING, final]
    assert len(rec.successes) == 1
    assert rec.errors == []


@pytest.mark.asyncio
async def test_cancel_while_tracking_stops_events(gateway, payment_request):
    rec = Recorder()
    gateway.process_results = [ProcessingResult(success=True, payment_id="pay_1", status=PaymentStatus.PENDING)]
    machine = make_machine(gateway, payment_request, rec, poll_interval=0.05)
    machine.start()
    machine.select_method("pm_1")
    await machine.submit()

    handle = machine.track()
    while gateway.calls["get_payment"] == 0:
        await asyncio.sleep(0)
    assert machine.cancel() is True
    gateway.payment_statuses = [PaymentStatus.COMPLETED]
    await asyncio.wait_for(handle.wait(), timeout=2)
    await asyncio.sleep(0.1)

    assert handle.stopped
    assert rec.successes == []
    assert isinstance(machine.state, Cancelled)


def test_track_requires_confirming(gateway, payment_request):
    machine = make_machine(gateway, payment_request)
    machine.start()
    with pytest.raises(InvalidTransitionError):
        machine.track()


@pytest.mark.asyncio
async def test_submitted_event_records_attempt(gateway, payment_request):
    machine = make_machine(gateway, payment_request)
    machine.start()
    machine.select_method("pm_1")
    await machine.submit()
    submitted = [e for e in machine.events if isinstance(e, PaymentSubmitted)]
    assert [e.attempt for e in submitted] == [1]
    machine.clear_events()
    assert machine.events == []
