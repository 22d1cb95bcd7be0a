import asyncio

import pytest

from application.services.callbacks import PaymentCallbacks
from application.services.status_poller import StatusPoller
from domain.payment.entity import CurrencyCode, IntentStatus, PaymentRecord, PaymentStatus
from domain.payment.exceptions import GatewayUnavailableError, PollingError


def make_poller(gateway, events, interval=0.01):
    return StatusPoller(
        gateway,
        interval=interval,
        callbacks=PaymentCallbacks(
            on_status_change=lambda status, record: events.append(("status", status)),
            on_payment_success=lambda record: events.append(("success", record.id)),
            on_payment_error=lambda message: events.append(("error", message)),
            on_polling_error=lambda error: events.append(("polling_error", error)),
        ),
    )


@pytest.mark.asyncio
async def test_polls_until_completed(gateway):
    events = []
    progress = []
    gateway.payment_statuses = [PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED]
    poller = make_poller(gateway, events)
    poller.callbacks.on_status_change = lambda status, record: progress.append(handle.progress)

    handle = poller.start(payment_id="pay_1")
    await asyncio.wait_for(handle.wait(), timeout=2)

    assert progress == [10, 50, 100]
    assert events == [("success", "pay_1")]
    assert handle.done
    assert handle.status == PaymentStatus.COMPLETED
    assert gateway.calls["get_payment"] == 3


@pytest.mark.asyncio
async def test_three_status_changes_then_success(gateway):
    events = []
    gateway.payment_statuses = [PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED]
    handle = make_poller(gateway, events).start(payment_id="pay_1")
    await asyncio.wait_for(handle.wait(), timeout=2)

    assert events == [
        ("status", PaymentStatus.PENDING),
        ("status", PaymentStatus.PROCESSING),
        ("status", PaymentStatus.COMPLETED),
        ("success", "pay_1"),
    ]
    assert [s.completed for s in handle.steps] == [True, True, False]
    assert handle.steps[-1].current


@pytest.mark.asyncio
async def test_unchanged_status_emits_once(gateway):
    events = []
    gateway.payment_statuses = [PaymentStatus.PENDING] * 3 + [PaymentStatus.COMPLETED]
    handle = make_poller(gateway, events).start(payment_id="pay_1")
    await asyncio.wait_for(handle.wait(), timeout=2)

    statuses = [e[1] for e in events if e[0] == "status"]
    assert statuses == [PaymentStatus.PENDING, PaymentStatus.COMPLETED]


@pytest.mark.asyncio
async def test_failed_and_cancelled_report_errors(gateway):
    events = []
    gateway.payment_statuses = [PaymentStatus.FAILED]
    handle = make_poller(gateway, events).start(payment_id="pay_1")
    await asyncio.wait_for(handle.wait(), timeout=2)
    assert events[-1] == ("error", "Payment failed")
    assert handle.progress == 0

    events.clear()
    gateway.payment_statuses = [PaymentStatus.CANCELLED]
    handle = make_poller(gateway, events).start(payment_id="pay_2")
    await asyncio.wait_for(handle.wait(), timeout=2)
    assert events[-1] == ("error", "Payment cancelled")


@pytest.mark.asyncio
async def test_fetch_error_is_reported_and_polling_continues(gateway):
    events = []
    gateway.payment_statuses = [
        PaymentStatus.PENDING,
        GatewayUnavailableError("Payment gateway timed out"),
        PaymentStatus.COMPLETED,
    ]
    handle = make_poller(gateway, events).start(payment_id="pay_1")
    await asyncio.wait_for(handle.wait(), timeout=2)

    kinds = [e[0] for e in events]
    assert kinds == ["status", "polling_error", "status", "success"]
    error = events[1][1]
    assert isinstance(error, PollingError)
    assert error.payment_id == "pay_1"
    assert handle.record.status == PaymentStatus.COMPLETED
    assert handle.last_error is None


@pytest.mark.asyncio
async def test_cached_record_unchanged_after_fetch_error(gateway):
    events = []
    gateway.payment_statuses = [PaymentStatus.PENDING, GatewayUnavailableError("down")] + [
        GatewayUnavailableError("down")
    ] * 50
    handle = make_poller(gateway, events).start(payment_id="pay_1")
    while gateway.calls["get_payment"] < 2:
        await asyncio.sleep(0.005)
    handle.stop()
    await handle.wait()

    assert handle.record.status == PaymentStatus.PENDING
    assert isinstance(handle.last_error, PollingError)


@pytest.mark.asyncio
async def test_stop_prevents_further_events(gateway):
    events = []
    handle = make_poller(gateway, events, interval=0.05).start(payment_id="pay_1")
    while gateway.calls["get_payment"] == 0:
        await asyncio.sleep(0)
    handle.stop()
    handle.stop()
    gateway.payment_statuses = [PaymentStatus.COMPLETED]
    await handle.wait()
    await asyncio.sleep(0.1)

    assert handle.stopped
    assert ("success", "pay_1") not in events
    assert gateway.calls["get_payment"] == 1


@pytest.mark.asyncio
async def test_stop_interrupts_wait(gateway):
    handle = make_poller(gateway, [], interval=30).start(payment_id="pay_1")
    while gateway.calls["get_payment"] == 0:
        await asyncio.sleep(0)
    handle.stop()
    await asyncio.wait_for(handle.wait(), timeout=1)
    assert not handle.active


@pytest.mark.asyncio
async def test_stop_from_callback(gateway):
    events = []
    gateway.payment_statuses = [PaymentStatus.PENDING, PaymentStatus.COMPLETED]
    poller = make_poller(gateway, events)

    def on_status(status, record):
        events.append(("status", status))
        handle.stop()

    poller.callbacks.on_status_change = on_status
    handle = poller.start(payment_id="pay_1")
    await asyncio.wait_for(handle.wait(), timeout=2)

    assert events == [("status", PaymentStatus.PENDING)]


@pytest.mark.asyncio
async def test_polls_by_intent(gateway):
    events = []
    gateway.intent_statuses = [IntentStatus.PROCESSING, IntentStatus.SUCCEEDED]
    handle = make_poller(gateway, events).start(intent="pi_1")
    await asyncio.wait_for(handle.wait(), timeout=2)

    assert events == [
        ("status", PaymentStatus.PROCESSING),
        ("status", PaymentStatus.COMPLETED),
        ("success", "pi_1"),
    ]


@pytest.mark.asyncio
async def test_initial_record_only_reports_once(gateway):
    events = []
    record = PaymentRecord(id="pay_7", amount=500, currency=CurrencyCode.EUR, status=PaymentStatus.PROCESSING)
    handle = make_poller(gateway, events).start(initial_record=record)
    await asyncio.wait_for(handle.wait(), timeout=2)

    assert events == [("status", PaymentStatus.PROCESSING)]
    assert handle.progress == 50
    assert gateway.calls["get_payment"] == 0


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited(gateway):
    seen = []

    async def on_success(record):
        await asyncio.sleep(0)
        seen.append(record.status)

    gateway.payment_statuses = [PaymentStatus.COMPLETED]
    poller = StatusPoller(gateway, interval=0.01, callbacks=PaymentCallbacks(on_payment_success=on_success))
    handle = poller.start(payment_id="pay_1")
    await asyncio.wait_for(handle.wait(), timeout=2)
    assert seen == [PaymentStatus.COMPLETED]


@pytest.mark.asyncio
async def test_raising_callback_does_not_end_polling(gateway):
    events = []

    def on_status_change(status, record):
        if status == PaymentStatus.PENDING:
            raise RuntimeError("listener broke")
        events.append(("status", status))

    gateway.payment_statuses = [PaymentStatus.PENDING, PaymentStatus.COMPLETED]
    poller = make_poller(gateway, events)
    poller.callbacks.on_status_change = on_status_change
    handle = poller.start(payment_id="pay_1")
    await asyncio.wait_for(handle.wait(), timeout=2)

    assert handle.done
    assert handle.status == PaymentStatus.COMPLETED
    assert events == [("status", PaymentStatus.COMPLETED), ("success", "pay_1")]
    assert gateway.calls["get_payment"] == 2


def test_start_requires_a_source(gateway):
    with pytest.raises(ValueError):
        StatusPoller(gateway).start()
