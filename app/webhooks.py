from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from urllib import request
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit

from app.errors import (
    REQ_VALIDATION_FAILED,
    WEBHOOK_DELIVERY_FAILED,
    WEBHOOK_PERMISSION_DENIED,
    WEBHOOK_SUBSCRIPTION_NOT_FOUND,
)
from app.models import DeliveryResult, Subscription, WebhookEvent, WebhookEventType, utcnow
from app.repositories.webhooks import DeliveryQuery, InMemoryWebhooksRepository
from app.security import redact_sensitive
from app.settings import CoreSettings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_ID_HEADER = "X-Webhook-Event-Id"
EVENT_TYPE_HEADER = "X-Webhook-Event-Type"
_RESPONSE_BODY_LIMIT = 1024


def canonical_json(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("utf-8")


def generate_signing_secret() -> str:
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    expected = sign_payload(body, secret)
    return hmac.compare_digest(expected, signature.strip())


def is_valid_webhook_url(url: str) -> bool:
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme in {"http", "https"} and bool(parts.netloc) and bool(parts.hostname)


def parse_event_types(values: Iterable[str | WebhookEventType]) -> list[WebhookEventType]:
    out: list[WebhookEventType] = []
    for value in values:
        if isinstance(value, WebhookEventType):
            item = value
        else:
            raw = str(value).strip()
            matched = [x for x in WebhookEventType if raw in {x.value, x.name}]
            if not matched:
                raise ValueError(f"unknown webhook event type: {raw}")
            item = matched[0]
        if item not in out:
            out.append(item)
    return out


class DeliveryTimeoutError(Exception):
    pass


@dataclass
class TransportResponse:
    status_code: int
    body: str = ""


Transport = Callable[..., TransportResponse]


def urllib_transport(*, url: str, body: bytes, headers: dict[str, str], timeout_s: float) -> TransportResponse:
    req = request.Request(url, data=body, method="POST", headers=headers)
    try:
        with request.urlopen(req, timeout=timeout_s) as resp:
            raw = resp.read(_RESPONSE_BODY_LIMIT).decode("utf-8", errors="replace")
            return TransportResponse(status_code=int(resp.status), body=raw)
    except HTTPError as exc:
        raw = exc.read(_RESPONSE_BODY_LIMIT).decode("utf-8", errors="replace") if exc.fp else ""
        return TransportResponse(status_code=int(exc.code), body=raw)
    except TimeoutError as exc:
        raise DeliveryTimeoutError("request timeout") from exc
    except URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise DeliveryTimeoutError("request timeout") from exc
        raise


def _should_retry_status(status_code: int) -> bool:
    return 500 <= status_code < 600 or status_code == 429


class WebhookDispatcher:
    """Fans events out to matching subscriptions on a bounded worker pool.

    ``emit_event`` returns once deliveries are scheduled. At most
    ``webhook_max_pending`` deliveries are queued or running at any time;
    anything beyond that is logged as a failed delivery instead of queued.
    """

    def __init__(
        self,
        *,
        repository: InMemoryWebhooksRepository,
        settings: CoreSettings | None = None,
        transport: Transport | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or CoreSettings()
        self._transport = transport or urllib_transport
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.webhook_max_workers,
            thread_name_prefix="webhook-delivery",
        )
        self._slots = threading.BoundedSemaphore(self.settings.webhook_max_pending)
        self._cond = threading.Condition()
        self._outstanding = 0
        self._timers: set[threading.Timer] = set()
        self._closed = False

    @staticmethod
    def matches(subscription: Subscription, event: WebhookEvent) -> bool:
        if not subscription.is_active:
            return False
        if event.event_type not in subscription.event_types:
            return False
        if subscription.asset_id_filter and subscription.asset_id_filter != (event.asset_id or None):
            return False
        if subscription.network_filter and subscription.network_filter.lower() != (event.network or "").lower():
            return False
        return True

    def select_subscriptions(self, event: WebhookEvent) -> list[Subscription]:
        return [x for x in self.repository.list_active_subscriptions() if self.matches(x, event)]

    def emit_event(self, event: WebhookEvent) -> int:
        try:
            targets = self.select_subscriptions(event)
            body = canonical_json(event.as_dict())
        except Exception:
            logger.exception("webhook_emit_failed event_id=%s", event.event_id)
            return 0
        logger.info(
            "webhook_event_emitted event_id=%s event_type=%s subscriptions=%s data=%s",
            event.event_id,
            event.event_type.value,
            len(targets),
            redact_sensitive(event.data),
        )
        scheduled = 0
        for subscription in targets:
            if self._schedule(subscription=subscription, event=event, body=body, retry_count=0):
                scheduled += 1
        return scheduled

    def _begin(self) -> None:
        with self._cond:
            self._outstanding += 1

    def _finish(self) -> None:
        with self._cond:
            self._outstanding -= 1
            if self._outstanding == 0:
                self._cond.notify_all()

    def _schedule(
        self,
        *,
        subscription: Subscription,
        event: WebhookEvent,
        body: bytes,
        retry_count: int,
    ) -> bool:
        if self._closed:
            return False
        if not self._slots.acquire(blocking=False):
            logger.warning(
                "webhook_dispatch_queue_full subscription_id=%s event_id=%s",
                subscription.subscription_id,
                event.event_id,
            )
            self.repository.store_delivery_result(
                result=DeliveryResult(
                    subscription_id=subscription.subscription_id,
                    event_id=event.event_id,
                    retry_count=retry_count,
                    error_code=WEBHOOK_DELIVERY_FAILED,
                    error_message="dispatch queue full",
                )
            )
            return False
        self._begin()
        try:
            future = self._executor.submit(
                self._deliver,
                subscription=subscription,
                event=event,
                body=body,
                retry_count=retry_count,
            )
        except RuntimeError:
            # executor already shut down
            self._slots.release()
            self._finish()
            return False
        future.add_done_callback(
            lambda done: self._on_done(done, subscription=subscription, event=event, body=body, retry_count=retry_count)
        )
        return True

    def _on_done(
        self,
        future: Future,
        *,
        subscription: Subscription,
        event: WebhookEvent,
        body: bytes,
        retry_count: int,
    ) -> None:
        # the slot is freed before any retry is queued so the retry can take it
        self._slots.release()
        try:
            exc = future.exception()
            if exc is not None:
                logger.error("webhook_worker_crashed error=%s", type(exc).__name__)
            elif future.result().will_retry:
                self._schedule_retry(
                    subscription=subscription,
                    event=event,
                    body=body,
                    retry_count=retry_count + 1,
                    delay_s=self.settings.retry_delay_s(retry_count),
                )
        finally:
            self._finish()

    def _attempt(self, *, subscription: Subscription, event: WebhookEvent, body: bytes) -> tuple[TransportResponse | None, str | None, bool]:
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, subscription.signing_secret),
            EVENT_ID_HEADER: event.event_id,
            EVENT_TYPE_HEADER: event.event_type.value,
        }
        try:
            response = self._transport(
                url=subscription.url,
                body=body,
                headers=headers,
                timeout_s=self.settings.webhook_timeout_s,
            )
        except DeliveryTimeoutError:
            return None, "Request timeout", True
        except Exception as exc:  # noqa: BLE001
            return None, f"{type(exc).__name__}: {exc}", False
        return response, None, False

    def _deliver(
        self,
        *,
        subscription: Subscription,
        event: WebhookEvent,
        body: bytes,
        retry_count: int,
    ) -> DeliveryResult:
        started = time.monotonic()
        response, error, timed_out = self._attempt(subscription=subscription, event=event, body=body)
        result = DeliveryResult(
            subscription_id=subscription.subscription_id,
            event_id=event.event_id,
            retry_count=retry_count,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
        retryable = timed_out
        if response is not None:
            result.status_code = response.status_code
            result.response_body = response.body[:_RESPONSE_BODY_LIMIT]
            result.success = 200 <= response.status_code < 300
            if not result.success:
                error = f"HTTP {response.status_code}"
                retryable = _should_retry_status(response.status_code)
        result.error_message = error
        if not result.success:
            result.error_code = WEBHOOK_DELIVERY_FAILED

        if not result.success and retryable and retry_count < self.settings.webhook_max_retries:
            delay_s = self.settings.retry_delay_s(retry_count)
            result.will_retry = True
            result.next_retry_at = utcnow() + timedelta(seconds=delay_s)
            logger.warning(
                "webhook_delivery_retry_scheduled subscription_id=%s event_id=%s attempt=%s delay_s=%s error=%s",
                subscription.subscription_id,
                event.event_id,
                retry_count + 1,
                delay_s,
                error,
            )
        elif result.success:
            logger.info(
                "webhook_delivered subscription_id=%s event_id=%s status=%s latency_ms=%s",
                subscription.subscription_id,
                event.event_id,
                result.status_code,
                result.latency_ms,
            )
        else:
            logger.warning(
                "webhook_delivery_failed subscription_id=%s event_id=%s retry_count=%s error=%s",
                subscription.subscription_id,
                event.event_id,
                retry_count,
                error,
            )

        self.repository.store_delivery_result(result=result)
        return result

    def _schedule_retry(
        self,
        *,
        subscription: Subscription,
        event: WebhookEvent,
        body: bytes,
        retry_count: int,
        delay_s: float,
    ) -> None:
        if self._closed:
            return
        if delay_s <= 0:
            self._schedule(subscription=subscription, event=event, body=body, retry_count=retry_count)
            return
        self._begin()

        def _fire() -> None:
            with self._cond:
                if timer not in self._timers:
                    # shutdown already released this timer's outstanding count
                    return
                self._timers.discard(timer)
            try:
                if not self._closed:
                    self._schedule(subscription=subscription, event=event, body=body, retry_count=retry_count)
            finally:
                self._finish()

        timer = threading.Timer(delay_s, _fire)
        timer.daemon = True
        with self._cond:
            self._timers.add(timer)
        timer.start()

    def drain(self, timeout_s: float = 5.0) -> bool:
        """Block until every scheduled delivery and pending retry has finished."""
        deadline = time.monotonic() + max(0.0, timeout_s)
        with self._cond:
            while self._outstanding > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def shutdown(self, *, wait: bool = True) -> None:
        self._closed = True
        with self._cond:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
            self._finish()
        self._executor.shutdown(wait=wait)


@dataclass
class SubscriptionResult:
    success: bool
    subscription: Subscription | None = None
    subscriptions: list[Subscription] = field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None
    include_secret: bool = False

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.subscription is not None:
            data["subscription"] = self.subscription.as_dict(include_secret=self.include_secret)
        if self.subscriptions:
            data["subscriptions"] = [x.as_dict() for x in self.subscriptions]
            data["totalCount"] = len(self.subscriptions)
        if not self.success:
            data["errorCode"] = self.error_code
            data["errorMessage"] = self.error_message
        return data


@dataclass
class DeliveryHistoryResult:
    success: bool
    deliveries: list[DeliveryResult] = field(default_factory=list)
    total_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    pending_retries: int = 0
    error_code: str | None = None
    error_message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "deliveries": [x.as_dict() for x in self.deliveries],
            "totalCount": self.total_count,
            "successCount": self.success_count,
            "failedCount": self.failed_count,
            "pendingRetries": self.pending_retries,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
        }


def _failure(code: str, message: str) -> SubscriptionResult:
    return SubscriptionResult(success=False, error_code=code, error_message=message)


class WebhookService:
    """Owner-scoped subscription management on top of the dispatcher."""

    def __init__(self, *, repository: InMemoryWebhooksRepository, dispatcher: WebhookDispatcher) -> None:
        self.repository = repository
        self.dispatcher = dispatcher

    def create_subscription(
        self,
        *,
        url: str,
        event_types: Iterable[str | WebhookEventType],
        created_by: str,
        description: str | None = None,
        asset_id_filter: str | None = None,
        network_filter: str | None = None,
    ) -> SubscriptionResult:
        if not is_valid_webhook_url(url or ""):
            return _failure(REQ_VALIDATION_FAILED, "Invalid webhook URL. Must be a valid HTTP or HTTPS URL.")
        try:
            parsed_types = parse_event_types(event_types or [])
        except ValueError as exc:
            return _failure(REQ_VALIDATION_FAILED, str(exc))
        if not parsed_types:
            return _failure(REQ_VALIDATION_FAILED, "At least one event type must be specified.")

        subscription = Subscription(
            url=url.strip(),
            event_types=parsed_types,
            signing_secret=generate_signing_secret(),
            created_by=created_by,
            description=description,
            asset_id_filter=str(asset_id_filter) if asset_id_filter not in (None, "") else None,
            network_filter=network_filter or None,
        )
        created = self.repository.create_subscription(subscription=subscription)
        logger.info(
            "webhook_subscription_created subscription_id=%s created_by=%s event_types=%s",
            created.subscription_id,
            created_by,
            len(parsed_types),
        )
        return SubscriptionResult(success=True, subscription=created, include_secret=True)

    def _owned(self, *, subscription_id: str, actor_id: str) -> SubscriptionResult:
        subscription = self.repository.get_subscription(subscription_id=subscription_id)
        if subscription is None:
            return _failure(WEBHOOK_SUBSCRIPTION_NOT_FOUND, "Webhook subscription not found.")
        if subscription.created_by != actor_id:
            logger.warning(
                "webhook_subscription_access_denied subscription_id=%s actor_id=%s",
                subscription_id,
                actor_id,
            )
            return _failure(
                WEBHOOK_PERMISSION_DENIED,
                "You do not have permission to access this webhook subscription.",
            )
        return SubscriptionResult(success=True, subscription=subscription)

    def get_subscription(self, *, subscription_id: str, actor_id: str) -> SubscriptionResult:
        return self._owned(subscription_id=subscription_id, actor_id=actor_id)

    def list_subscriptions(self, *, actor_id: str) -> SubscriptionResult:
        return SubscriptionResult(success=True, subscriptions=self.repository.list_subscriptions(created_by=actor_id))

    def update_subscription(
        self,
        *,
        subscription_id: str,
        actor_id: str,
        is_active: bool | None = None,
        event_types: Iterable[str | WebhookEventType] | None = None,
        description: str | None = None,
    ) -> SubscriptionResult:
        owned = self._owned(subscription_id=subscription_id, actor_id=actor_id)
        if not owned.success or owned.subscription is None:
            return owned
        subscription = owned.subscription
        if is_active is not None:
            subscription.is_active = is_active
        if event_types is not None:
            try:
                parsed_types = parse_event_types(event_types)
            except ValueError as exc:
                return _failure(REQ_VALIDATION_FAILED, str(exc))
            if parsed_types:
                subscription.event_types = parsed_types
        if description is not None:
            subscription.description = description
        subscription.updated_at = utcnow()
        if not self.repository.update_subscription(subscription=subscription):
            return _failure(WEBHOOK_SUBSCRIPTION_NOT_FOUND, "Webhook subscription not found.")
        logger.info("webhook_subscription_updated subscription_id=%s actor_id=%s", subscription_id, actor_id)
        return SubscriptionResult(success=True, subscription=subscription)

    def delete_subscription(self, *, subscription_id: str, actor_id: str) -> SubscriptionResult:
        owned = self._owned(subscription_id=subscription_id, actor_id=actor_id)
        if not owned.success:
            return owned
        if not self.repository.delete_subscription(subscription_id=subscription_id):
            return _failure(WEBHOOK_SUBSCRIPTION_NOT_FOUND, "Webhook subscription not found.")
        logger.info("webhook_subscription_deleted subscription_id=%s actor_id=%s", subscription_id, actor_id)
        return SubscriptionResult(success=True)

    def emit_event(self, event: WebhookEvent) -> int:
        return self.dispatcher.emit_event(event)

    def get_delivery_history(
        self,
        *,
        actor_id: str,
        subscription_id: str | None = None,
        event_id: str | None = None,
        success: bool | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> DeliveryHistoryResult:
        if subscription_id:
            owned = self._owned(subscription_id=subscription_id, actor_id=actor_id)
            if not owned.success:
                return DeliveryHistoryResult(
                    success=False,
                    error_code=owned.error_code,
                    error_message=owned.error_message,
                )
            scope = frozenset({subscription_id})
        else:
            scope = frozenset(x.subscription_id for x in self.repository.list_subscriptions(created_by=actor_id))
        query = DeliveryQuery(subscription_ids=scope, event_id=event_id, success=success)
        deliveries = self.repository.list_deliveries(query=query, page=page, page_size=page_size)
        return DeliveryHistoryResult(
            success=True,
            deliveries=deliveries,
            total_count=self.repository.count_deliveries(query=query),
            success_count=sum(1 for x in deliveries if x.success),
            failed_count=sum(1 for x in deliveries if not x.success),
            pending_retries=sum(1 for x in deliveries if x.will_retry),
        )
