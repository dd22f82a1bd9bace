from __future__ import annotations

import time

import pytest
from conftest import FakeClock, RecordingSender

from backend.linkcard.models import (
    EventDraft,
    EventType,
    ProfileCreateRequest,
    WebhookCreateRequest,
    WebhookUpdateRequest,
)
from backend.linkcard.observability import MetricsRegistry
from backend.linkcard.services.dispatcher import (
    SendResult,
    WebhookDispatcher,
    post_signed_payload,
)
from backend.linkcard.services.webhooks import ATTEMPT_HEADER, verify_signature


@pytest.fixture()
def webhook(store):
    store.create_profile("owner-1", ProfileCreateRequest(username="jane"))
    return store.create_webhook(
        "owner-1",
        WebhookCreateRequest(name="CRM", url="https://hooks.example.com", events=["nfc_scan"]),
    )


def _dispatcher(store, sender, clock, **kwargs) -> WebhookDispatcher:
    return WebhookDispatcher(
        store,
        max_attempts=kwargs.pop("max_attempts", 3),
        backoff_seconds=kwargs.pop("backoff_seconds", 10),
        sender=sender,
        clock=clock,
        **kwargs,
    )


def _scan(store):
    return store.record_event(EventDraft(profile_id="owner-1", event_type=EventType.nfc_scan))


def test_transient_failure_retries_with_exponential_backoff(store, webhook) -> None:
    clock = FakeClock()
    sender = RecordingSender(503, None, 200)
    dispatcher = _dispatcher(store, sender, clock)

    assert dispatcher.enqueue_event(_scan(store)) == 1
    assert dispatcher.run_pending() == 1
    assert dispatcher.next_due_in() == 10

    clock.advance(9)
    assert dispatcher.run_pending() == 0
    clock.advance(1)
    assert dispatcher.run_pending() == 1
    assert dispatcher.next_due_in() == 20

    clock.advance(20)
    assert dispatcher.run_pending() == 1
    assert dispatcher.pending_count() == 0

    attempts = [call["headers"][ATTEMPT_HEADER] for call in sender.calls]
    assert attempts == ["1", "2", "3"]
    deliveries = store.list_webhook_deliveries("owner-1", webhook.id)
    assert [(item.attempt, item.state.value) for item in reversed(deliveries)] == [
        (1, "retrying"),
        (2, "retrying"),
        (3, "delivered"),
    ]
    assert deliveries[-1].status_code == 503
    assert deliveries[1].status_code is None
    assert deliveries[1].error == "request failed: timed out"


def test_gives_up_after_max_attempts(store, webhook) -> None:
    clock = FakeClock()
    metrics = MetricsRegistry()
    dispatcher = _dispatcher(store, RecordingSender(500), clock, metrics=metrics)

    dispatcher.enqueue_event(_scan(store))
    for _ in range(3):
        dispatcher.run_pending()
        clock.advance(1000)

    assert dispatcher.pending_count() == 0
    states = [item.state.value for item in store.list_webhook_deliveries("owner-1", webhook.id)]
    assert states == ["failed", "retrying", "retrying"]
    exported = metrics.to_prometheus()
    assert 'linkcard_webhook_deliveries_total{state="failed"} 1' in exported
    assert 'linkcard_webhook_deliveries_total{state="retrying"} 2' in exported


def test_permanent_client_error_is_not_retried(store, webhook) -> None:
    clock = FakeClock()
    sender = RecordingSender(404)
    dispatcher = _dispatcher(store, sender, clock)

    dispatcher.enqueue_event(_scan(store))
    dispatcher.run_pending()

    assert dispatcher.pending_count() == 0
    (delivery,) = store.list_webhook_deliveries("owner-1", webhook.id)
    assert delivery.state.value == "failed"
    assert delivery.error == "receiver responded with http 404"


def test_rate_limited_receiver_is_retried(store, webhook) -> None:
    dispatcher = _dispatcher(store, RecordingSender(429, 200), FakeClock())

    dispatcher.enqueue_event(_scan(store))
    dispatcher.run_pending()

    assert dispatcher.pending_count() == 1


def test_payload_is_signed_with_webhook_secret(store, webhook) -> None:
    sender = RecordingSender(200)
    dispatcher = _dispatcher(store, sender, FakeClock())

    dispatcher.enqueue_event(_scan(store))
    dispatcher.run_pending()

    (call,) = sender.calls
    verify_signature(call["headers"], call["body"], webhook.secret)
    assert call["headers"]["X-Linkcard-Event"] == "nfc_scan"


def test_only_subscribed_enabled_webhooks_receive_events(store, webhook) -> None:
    sender = RecordingSender(200)
    dispatcher = _dispatcher(store, sender, FakeClock())

    wallet = store.record_event(EventDraft(profile_id="owner-1", event_type=EventType.wallet_add))
    assert dispatcher.enqueue_event(wallet) == 0

    store.update_webhook("owner-1", webhook.id, WebhookUpdateRequest(enabled=False))
    assert dispatcher.enqueue_event(_scan(store)) == 0
    assert sender.calls == []


def test_webhook_disabled_while_queued_is_skipped(store, webhook) -> None:
    sender = RecordingSender(200)
    dispatcher = _dispatcher(store, sender, FakeClock())

    dispatcher.enqueue_event(_scan(store))
    store.update_webhook("owner-1", webhook.id, WebhookUpdateRequest(enabled=False))

    assert dispatcher.run_pending() == 1
    assert sender.calls == []
    assert store.list_webhook_deliveries("owner-1", webhook.id) == []


def test_webhook_deleted_while_queued_is_dropped(store, webhook) -> None:
    sender = RecordingSender(200)
    dispatcher = _dispatcher(store, sender, FakeClock())

    dispatcher.enqueue_event(_scan(store))
    store.delete_webhook("owner-1", webhook.id)

    dispatcher.run_pending()
    assert sender.calls == []
    assert dispatcher.pending_count() == 0


def test_crashing_sender_is_rescheduled(store, webhook) -> None:
    clock = FakeClock()
    calls: list[int] = []

    def flaky_sender(url, body, headers, timeout) -> SendResult:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return SendResult(status_code=204, response_ms=1)

    dispatcher = _dispatcher(store, flaky_sender, clock)
    dispatcher.enqueue_event(_scan(store))

    assert dispatcher.run_pending() == 1
    assert dispatcher.pending_count() == 1
    clock.advance(10)
    dispatcher.run_pending()

    delivered, crashed = store.list_webhook_deliveries("owner-1", webhook.id)
    assert (delivered.attempt, delivered.state.value) == (2, "delivered")
    assert (crashed.attempt, crashed.state.value) == (1, "retrying")
    assert crashed.status_code is None
    assert crashed.error.startswith("delivery crashed: boom")


def test_crash_on_final_attempt_is_recorded_as_failed(store, webhook) -> None:
    clock = FakeClock()
    metrics = MetricsRegistry()

    def broken_sender(url, body, headers, timeout) -> SendResult:
        raise RuntimeError("boom")

    dispatcher = _dispatcher(store, broken_sender, clock, max_attempts=2, metrics=metrics)
    dispatcher.enqueue_event(_scan(store))
    for _ in range(2):
        dispatcher.run_pending()
        clock.advance(1000)

    assert dispatcher.pending_count() == 0
    deliveries = store.list_webhook_deliveries("owner-1", webhook.id)
    assert [(item.attempt, item.state.value) for item in deliveries] == [
        (2, "failed"),
        (1, "retrying"),
    ]
    assert 'linkcard_webhook_deliveries_total{state="failed"} 1' in metrics.to_prometheus()


def test_malformed_url_is_reported_not_raised() -> None:
    result = post_signed_payload("not-a-url", b"{}", {}, 1)

    assert result.status_code is None
    assert result.delivered is False
    assert result.error.startswith("invalid webhook url")


def test_background_worker_drains_queue(store, webhook) -> None:
    sender = RecordingSender(200)
    dispatcher = WebhookDispatcher(store, sender=sender)
    dispatcher.start()
    try:
        dispatcher.enqueue_event(_scan(store))
        for _ in range(200):
            if store.list_webhook_deliveries("owner-1", webhook.id):
                break
            time.sleep(0.01)
    finally:
        dispatcher.stop()

    assert len(sender.calls) == 1
