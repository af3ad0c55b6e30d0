from __future__ import annotations

import base64

from app.models import DeliveryResult, WebhookEventType
from app.webhooks import (
    canonical_json,
    generate_signing_secret,
    is_valid_webhook_url,
    sign_payload,
    verify_signature,
)


def _create(services, owner: str = "owner_a", **overrides):
    params = {
        "url": "https://hooks.example.com/token-events",
        "event_types": ["TokenDeploymentCompleted"],
        "created_by": owner,
        "description": "ops hook",
    }
    params.update(overrides)
    return services.webhooks.create_subscription(**params)


def test_signing_secret_is_32_random_bytes():
    secret = generate_signing_secret()
    assert len(base64.b64decode(secret)) == 32
    assert secret != generate_signing_secret()


def test_signature_round_trip_and_tamper_detection():
    body = canonical_json({"b": 1, "a": "x"})
    assert body == b'{"a":"x","b":1}'
    secret = generate_signing_secret()
    signature = sign_payload(body, secret)

    assert verify_signature(body, secret, signature) is True
    assert verify_signature(body + b" ", secret, signature) is False
    assert verify_signature(body, generate_signing_secret(), signature) is False


def test_url_validation():
    assert is_valid_webhook_url("https://example.com/hook") is True
    assert is_valid_webhook_url("http://localhost:8080/x") is True
    assert is_valid_webhook_url("/relative/path") is False
    assert is_valid_webhook_url("ftp://example.com/hook") is False
    assert is_valid_webhook_url("not a url") is False


def test_create_subscription_returns_secret_once(services):
    result = _create(services)

    assert result.success is True
    data = result.as_dict()
    assert data["subscription"]["signingSecret"]
    assert data["subscription"]["eventTypes"] == ["TokenDeploymentCompleted"]

    fetched = services.webhooks.get_subscription(subscription_id=result.subscription.subscription_id, actor_id="owner_a")
    assert "signingSecret" not in fetched.as_dict()["subscription"]


def test_create_subscription_secrets_are_distinct(services):
    a = _create(services)
    b = _create(services)
    assert a.subscription.signing_secret != b.subscription.signing_secret


def test_create_subscription_rejects_bad_url_and_empty_event_types(services):
    bad_url = _create(services, url="hooks.example.com/no-scheme")
    assert bad_url.success is False
    assert bad_url.error_code == "REQ_VALIDATION_FAILED"
    assert "URL" in bad_url.error_message

    empty = _create(services, event_types=[])
    assert empty.success is False
    assert empty.error_code == "REQ_VALIDATION_FAILED"

    unknown = _create(services, event_types=["NotAnEvent"])
    assert unknown.success is False
    assert services.webhooks.list_subscriptions(actor_id="owner_a").subscriptions == []


def test_owner_scoping_not_found_before_permission(services):
    created = _create(services)
    sub_id = created.subscription.subscription_id

    missing = services.webhooks.get_subscription(subscription_id="whs_missing", actor_id="owner_b")
    assert missing.error_code == "WEBHOOK_SUBSCRIPTION_NOT_FOUND"
    assert missing.error_message == "Webhook subscription not found."

    for op in (
        lambda: services.webhooks.get_subscription(subscription_id=sub_id, actor_id="owner_b"),
        lambda: services.webhooks.update_subscription(subscription_id=sub_id, actor_id="owner_b", is_active=False),
        lambda: services.webhooks.delete_subscription(subscription_id=sub_id, actor_id="owner_b"),
    ):
        denied = op()
        assert denied.success is False
        assert denied.error_code == "WEBHOOK_PERMISSION_DENIED"

    assert services.webhooks.get_subscription(subscription_id=sub_id, actor_id="owner_a").subscription.is_active


def test_list_subscriptions_returns_only_own(services):
    _create(services, owner="owner_a")
    _create(services, owner="owner_a")
    _create(services, owner="owner_b")

    assert len(services.webhooks.list_subscriptions(actor_id="owner_a").subscriptions) == 2
    assert len(services.webhooks.list_subscriptions(actor_id="owner_b").subscriptions) == 1
    assert services.webhooks.list_subscriptions(actor_id="owner_c").subscriptions == []


def test_update_keeps_secret_and_ignores_empty_event_types(services):
    created = _create(services)
    sub_id = created.subscription.subscription_id
    secret = created.subscription.signing_secret

    updated = services.webhooks.update_subscription(
        subscription_id=sub_id,
        actor_id="owner_a",
        is_active=False,
        event_types=[],
        description="paused",
    )

    assert updated.success is True
    stored = services.webhooks_repository.get_subscription(subscription_id=sub_id)
    assert stored.is_active is False
    assert stored.description == "paused"
    assert stored.event_types == [WebhookEventType.TOKEN_DEPLOYMENT_COMPLETED]
    assert stored.signing_secret == secret
    assert stored.updated_at is not None

    retyped = services.webhooks.update_subscription(
        subscription_id=sub_id,
        actor_id="owner_a",
        event_types=["TokenDeploymentFailed", "TokenDeploymentFailed"],
    )
    assert retyped.subscription.event_types == [WebhookEventType.TOKEN_DEPLOYMENT_FAILED]


def test_delete_subscription(services):
    created = _create(services)
    sub_id = created.subscription.subscription_id

    assert services.webhooks.delete_subscription(subscription_id=sub_id, actor_id="owner_a").success is True
    again = services.webhooks.delete_subscription(subscription_id=sub_id, actor_id="owner_a")
    assert again.error_code == "WEBHOOK_SUBSCRIPTION_NOT_FOUND"


def test_delivery_history_is_owner_scoped(services):
    mine = _create(services, owner="owner_a").subscription.subscription_id
    theirs = _create(services, owner="owner_b").subscription.subscription_id
    repo = services.webhooks_repository
    repo.store_delivery_result(result=DeliveryResult(subscription_id=mine, event_id="evt_1", success=True, status_code=200))
    repo.store_delivery_result(
        result=DeliveryResult(subscription_id=mine, event_id="evt_2", status_code=503, will_retry=True)
    )
    repo.store_delivery_result(result=DeliveryResult(subscription_id=theirs, event_id="evt_1", success=True))

    history = services.webhooks.get_delivery_history(actor_id="owner_a")
    assert history.success is True
    assert history.total_count == 2
    assert history.success_count == 1
    assert history.failed_count == 1
    assert history.pending_retries == 1

    only_failed = services.webhooks.get_delivery_history(actor_id="owner_a", success=False)
    assert [x.event_id for x in only_failed.deliveries] == ["evt_2"]

    denied = services.webhooks.get_delivery_history(actor_id="owner_a", subscription_id=theirs)
    assert denied.success is False
    assert denied.error_code == "WEBHOOK_PERMISSION_DENIED"
