from __future__ import annotations

import threading
from dataclasses import dataclass, replace

from app.models import DeliveryResult, Subscription


@dataclass(frozen=True)
class DeliveryQuery:
    subscription_ids: frozenset[str] | None = None
    event_id: str | None = None
    success: bool | None = None

    def matches(self, item: DeliveryResult) -> bool:
        if self.subscription_ids is not None and item.subscription_id not in self.subscription_ids:
            return False
        if self.event_id and item.event_id != self.event_id:
            return False
        if self.success is not None and item.success != self.success:
            return False
        return True


class InMemoryWebhooksRepository:
    """Subscriptions plus the delivery log, keyed by (event_id, subscription_id)."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscriptions: dict[str, Subscription] = {}
        self._deliveries: dict[tuple[str, str], list[DeliveryResult]] = {}

    def create_subscription(self, *, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription.subscription_id in self._subscriptions:
                raise RuntimeError(f"subscription already exists: {subscription.subscription_id}")
            self._subscriptions[subscription.subscription_id] = subscription.copy()
            return subscription.copy()

    def get_subscription(self, *, subscription_id: str) -> Subscription | None:
        with self._lock:
            row = self._subscriptions.get(subscription_id)
            return row.copy() if row is not None else None

    def list_subscriptions(self, *, created_by: str) -> list[Subscription]:
        with self._lock:
            rows = [x.copy() for x in self._subscriptions.values() if x.created_by == created_by]
        return sorted(rows, key=lambda x: x.created_at, reverse=True)

    def list_active_subscriptions(self) -> list[Subscription]:
        with self._lock:
            return [x.copy() for x in self._subscriptions.values() if x.is_active]

    def update_subscription(self, *, subscription: Subscription) -> bool:
        with self._lock:
            existing = self._subscriptions.get(subscription.subscription_id)
            if existing is None:
                return False
            # the signing secret is fixed at creation
            self._subscriptions[subscription.subscription_id] = replace(
                subscription.copy(),
                signing_secret=existing.signing_secret,
            )
            return True

    def delete_subscription(self, *, subscription_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def store_delivery_result(self, *, result: DeliveryResult) -> DeliveryResult:
        with self._lock:
            key = (result.event_id, result.subscription_id)
            self._deliveries.setdefault(key, []).append(replace(result))
            return replace(result)

    def get_delivery_log(self, *, event_id: str, subscription_id: str) -> list[DeliveryResult]:
        with self._lock:
            return [replace(x) for x in self._deliveries.get((event_id, subscription_id), [])]

    def _matching(self, query: DeliveryQuery) -> list[DeliveryResult]:
        rows = [x for attempts in self._deliveries.values() for x in attempts if query.matches(x)]
        return sorted(rows, key=lambda x: x.attempted_at, reverse=True)

    def list_deliveries(self, *, query: DeliveryQuery, page: int, page_size: int) -> list[DeliveryResult]:
        with self._lock:
            rows = self._matching(query)
        size = max(1, page_size)
        start = (max(1, page) - 1) * size
        return [replace(x) for x in rows[start : start + size]]

    def count_deliveries(self, *, query: DeliveryQuery) -> int:
        with self._lock:
            return len(self._matching(query))
