from __future__ import annotations

import dataclasses
import json
import threading
import time

from app.models import DeploymentStatus, Subscription, WebhookEvent, WebhookEventType
from app.repositories.webhooks import InMemoryWebhooksRepository
from app.webhooks import (
    EVENT_ID_HEADER,
    EVENT_TYPE_HEADER,
    SIGNATURE_HEADER,
    WebhookDispatcher,
    generate_signing_secret,
    verify_signature,
)


def _subscription(**overrides) -> Subscription:
    params = {
        "url": "https://hooks.example.com/a",
        "event_types": [WebhookEventType.TOKEN_DEPLOYMENT_COMPLETED],
        "signing_secret": generate_signing_secret(),
        "created_by": "owner_a",
    }
    params.update(overrides)
    return Subscription(**params)


def _event(**overrides) -> WebhookEvent:
    params = {
        "event_type": WebhookEventType.TOKEN_DEPLOYMENT_COMPLETED,
        "actor": "owner_a",
        "asset_id": "1234",
        "network": "voimain-v1.0",
        "data": {"deploymentId": "dep_1"},
    }
    params.update(overrides)
    return WebhookEvent(**params)


def _dispatcher(settings, transport, repo=None):
    repo = repo or InMemoryWebhooksRepository()
    return repo, WebhookDispatcher(repository=repo, settings=settings, transport=transport)


def test_emit_delivers_signed_canonical_body(settings, transport):
    repo, dispatcher = _dispatcher(settings, transport)
    sub = repo.create_subscription(subscription=_subscription())
    event = _event()

    assert dispatcher.emit_event(event) == 1
    assert dispatcher.drain(2.0) is True
    dispatcher.shutdown()

    assert len(transport.calls) == 1
    call = transport.calls[0]
    assert call["url"] == sub.url
    assert call["timeout_s"] == settings.webhook_timeout_s
    assert call["headers"][EVENT_ID_HEADER] == event.event_id
    assert call["headers"][EVENT_TYPE_HEADER] == "TokenDeploymentCompleted"
    assert verify_signature(call["body"], sub.signing_secret, call["headers"][SIGNATURE_HEADER])
    assert json.loads(call["body"])["id"] == event.event_id

    log = repo.get_delivery_log(event_id=event.event_id, subscription_id=sub.subscription_id)
    assert len(log) == 1
    assert log[0].success is True
    assert log[0].status_code == 200
    assert log[0].error_code is None


def test_unmatched_events_schedule_nothing(settings, transport):
    repo, dispatcher = _dispatcher(settings, transport)
    repo.create_subscription(subscription=_subscription(asset_id_filter="9999"))
    repo.create_subscription(subscription=_subscription(network_filter="base-mainnet"))
    repo.create_subscription(subscription=_subscription(is_active=False))
    repo.create_subscription(subscription=_subscription(event_types=[WebhookEventType.WHITELIST_ADD]))

    assert dispatcher.emit_event(_event()) == 0
    assert dispatcher.drain(1.0) is True
    dispatcher.shutdown()
    assert transport.calls == []


def test_filters_match_when_unset_or_equal(settings, transport):
    repo, dispatcher = _dispatcher(settings, transport)
    repo.create_subscription(subscription=_subscription())
    repo.create_subscription(subscription=_subscription(asset_id_filter="1234", network_filter="voimain-v1.0"))

    assert dispatcher.emit_event(_event()) == 2
    assert dispatcher.drain(2.0) is True
    dispatcher.shutdown()
    assert len(transport.calls) == 2


def test_server_errors_are_retried_until_success(settings, make_transport):
    transport = make_transport(script=[503, 429, 200])
    repo, dispatcher = _dispatcher(settings, transport)
    sub = repo.create_subscription(subscription=_subscription())
    event = _event()

    dispatcher.emit_event(event)
    assert dispatcher.drain(2.0) is True
    dispatcher.shutdown()

    log = repo.get_delivery_log(event_id=event.event_id, subscription_id=sub.subscription_id)
    assert [x.status_code for x in log] == [503, 429, 200]
    assert [x.retry_count for x in log] == [0, 1, 2]
    assert [x.will_retry for x in log] == [True, True, False]
    assert log[0].next_retry_at is not None
    assert log[-1].success is True


def test_client_errors_are_not_retried(settings, make_transport):
    transport = make_transport(script=[400])
    repo, dispatcher = _dispatcher(settings, transport)
    sub = repo.create_subscription(subscription=_subscription())
    event = _event()

    dispatcher.emit_event(event)
    assert dispatcher.drain(2.0) is True
    dispatcher.shutdown()

    log = repo.get_delivery_log(event_id=event.event_id, subscription_id=sub.subscription_id)
    assert len(log) == 1
    assert log[0].success is False
    assert log[0].error_message == "HTTP 400"
    assert log[0].error_code == "WEBHOOK_DELIVERY_FAILED"
    assert log[0].will_retry is False


def test_timeouts_stop_after_max_retries(settings, make_transport):
    transport = make_transport(script=["timeout"] * 10)
    repo, dispatcher = _dispatcher(settings, transport)
    sub = repo.create_subscription(subscription=_subscription())
    event = _event()

    dispatcher.emit_event(event)
    assert dispatcher.drain(2.0) is True
    dispatcher.shutdown()

    log = repo.get_delivery_log(event_id=event.event_id, subscription_id=sub.subscription_id)
    assert len(log) == settings.webhook_max_retries + 1
    assert all(x.error_message == "Request timeout" for x in log)
    assert log[-1].will_retry is False


def test_transport_exception_is_contained(settings, make_transport):
    transport = make_transport(script=[ConnectionRefusedError("refused")])
    repo, dispatcher = _dispatcher(settings, transport)
    sub = repo.create_subscription(subscription=_subscription())
    event = _event()

    assert dispatcher.emit_event(event) == 1
    assert dispatcher.drain(2.0) is True
    dispatcher.shutdown()

    log = repo.get_delivery_log(event_id=event.event_id, subscription_id=sub.subscription_id)
    assert len(log) == 1
    assert "ConnectionRefusedError" in log[0].error_message
    assert log[0].will_retry is False


def test_slow_subscriber_does_not_block_emit_and_queue_is_bounded(settings, make_transport):
    release = threading.Event()
    calls = []

    def blocking_transport(*, url, body, headers, timeout_s):
        calls.append(url)
        release.wait(2.0)
        return make_transport()(url=url, body=body, headers=headers, timeout_s=timeout_s)

    bounded = dataclasses.replace(settings, webhook_max_pending=1)
    repo, dispatcher = _dispatcher(bounded, blocking_transport)
    subs = [repo.create_subscription(subscription=_subscription(url=f"https://hooks.example.com/{i}")) for i in range(3)]
    event = _event()

    scheduled = dispatcher.emit_event(event)

    assert scheduled == 1
    overflow = [
        x
        for sub in subs
        for x in repo.get_delivery_log(event_id=event.event_id, subscription_id=sub.subscription_id)
        if x.error_message == "dispatch queue full" and x.error_code == "WEBHOOK_DELIVERY_FAILED"
    ]
    assert len(overflow) == 2
    release.set()
    assert dispatcher.drain(3.0) is True
    dispatcher.shutdown()
    assert len(calls) == 1


def test_network_filter_ignores_case(settings, transport):
    repo, dispatcher = _dispatcher(settings, transport)
    repo.create_subscription(subscription=_subscription(network_filter="base-mainnet"))

    assert dispatcher.emit_event(_event(network="Base-Mainnet")) == 1
    assert dispatcher.drain(2.0) is True
    dispatcher.shutdown()
    assert len(transport.calls) == 1


def test_immediate_retry_reuses_the_freed_slot(settings, make_transport):
    transport = make_transport(script=[503, 200])
    single = dataclasses.replace(settings, webhook_max_pending=1, webhook_retry_delays_s=(0.0,))
    repo, dispatcher = _dispatcher(single, transport)
    sub = repo.create_subscription(subscription=_subscription())
    event = _event()

    assert dispatcher.emit_event(event) == 1
    assert dispatcher.drain(2.0) is True
    dispatcher.shutdown()

    assert len(transport.calls) == 2
    log = repo.get_delivery_log(event_id=event.event_id, subscription_id=sub.subscription_id)
    assert [x.status_code for x in log] == [503, 200]
    assert [x.will_retry for x in log] == [True, False]
    assert all(x.error_message != "dispatch queue full" for x in log)


def test_shutdown_accounts_for_pending_retry_timer_once(settings, make_transport):
    transport = make_transport(script=[503])
    delayed = dataclasses.replace(settings, webhook_retry_delays_s=(60.0,))
    repo, dispatcher = _dispatcher(delayed, transport)
    repo.create_subscription(subscription=_subscription())

    dispatcher.emit_event(_event())
    deadline = time.monotonic() + 2.0
    while not dispatcher._timers and time.monotonic() < deadline:
        time.sleep(0.01)
    timers = list(dispatcher._timers)
    assert len(timers) == 1

    dispatcher.shutdown()
    assert dispatcher.drain(0.5) is True
    # a timer that was already firing when shutdown ran must not release twice
    timers[0].function()
    assert dispatcher._outstanding == 0
    assert len(transport.calls) == 1


def test_lifecycle_completion_reaches_subscriber(services, transport):
    created = services.webhooks.create_subscription(
        url="https://hooks.example.com/done",
        event_types=["TokenDeploymentCompleted"],
        created_by="owner_a",
        asset_id_filter="55555",
    )
    lifecycle = services.lifecycle
    dep = lifecycle.create_deployment(token_type="ASA_FT", network="voimain-v1.0", deployed_by="owner_a")
    for status in (DeploymentStatus.SUBMITTED, DeploymentStatus.PENDING, DeploymentStatus.CONFIRMED):
        assert lifecycle.update_status(dep, status) is True
    lifecycle.update_asset_identifier(dep, "55555")
    assert lifecycle.update_status(dep, DeploymentStatus.COMPLETED) is True
    assert services.dispatcher.drain(2.0) is True

    assert len(transport.calls) == 1
    body = json.loads(transport.calls[0]["body"])
    assert body["eventType"] == "TokenDeploymentCompleted"
    assert body["assetId"] == "55555"
    assert body["data"]["deploymentId"] == dep
    history = services.webhooks.get_delivery_history(
        actor_id="owner_a",
        subscription_id=created.subscription.subscription_id,
    )
    assert history.success_count == 1
