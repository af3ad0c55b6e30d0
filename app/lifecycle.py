from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Protocol

from app.keyed_locks import KeyedLocks
from app.metrics import build_deployment_metrics
from app.models import (
    Deployment,
    DeploymentError,
    DeploymentFilters,
    DeploymentStatus,
    StatusEntry,
    WebhookEvent,
    WebhookEventType,
    utcnow,
)
from app.settings import CoreSettings

logger = logging.getLogger(__name__)

S = DeploymentStatus

LEGAL_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    S.QUEUED: frozenset({S.SUBMITTED, S.FAILED}),
    S.SUBMITTED: frozenset({S.PENDING, S.FAILED}),
    S.PENDING: frozenset({S.CONFIRMED, S.FAILED}),
    S.CONFIRMED: frozenset({S.COMPLETED, S.FAILED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset({S.QUEUED}),
}

EVENT_FOR_STATUS: dict[DeploymentStatus, WebhookEventType] = {
    S.QUEUED: WebhookEventType.TOKEN_DEPLOYMENT_STARTED,
    S.SUBMITTED: WebhookEventType.TOKEN_DEPLOYMENT_STARTED,
    S.PENDING: WebhookEventType.TOKEN_DEPLOYMENT_CONFIRMING,
    S.CONFIRMED: WebhookEventType.TOKEN_DEPLOYMENT_CONFIRMING,
    S.COMPLETED: WebhookEventType.TOKEN_DEPLOYMENT_COMPLETED,
    S.FAILED: WebhookEventType.TOKEN_DEPLOYMENT_FAILED,
}

QUEUED_MESSAGE = "Deployment request queued for processing"


class EventSink(Protocol):
    def emit_event(self, event: WebhookEvent) -> int: ...


def is_valid_transition(current: DeploymentStatus, new: DeploymentStatus) -> bool:
    return new in LEGAL_TRANSITIONS.get(current, frozenset())


class DeploymentLifecycle:
    """Validates and applies status transitions for token deployments.

    Transitions for one deployment are serialized with a per-id lock and the
    append itself is a compare-and-swap on the status read under that lock,
    so two racing callers can never both apply an edge from the same
    pre-state. Webhook emission happens after the append and its failures
    never affect the transition result.
    """

    def __init__(
        self,
        *,
        repository: Any,
        dispatcher: EventSink | None = None,
        settings: CoreSettings | None = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.settings = settings or CoreSettings()
        self._locks = KeyedLocks()

    def create_deployment(
        self,
        *,
        token_type: str,
        network: str,
        deployed_by: str,
        token_name: str | None = None,
        token_symbol: str | None = None,
        deployment_id: str | None = None,
        correlation_id: str | None = None,
    ) -> str:
        deployment = Deployment(
            deployment_id=deployment_id or str(uuid.uuid4()),
            token_type=token_type,
            network=network,
            deployed_by=deployed_by,
            token_name=token_name,
            token_symbol=token_symbol,
            correlation_id=correlation_id or str(uuid.uuid4()),
        )
        initial = StatusEntry(
            deployment_id=deployment.deployment_id,
            status=DeploymentStatus.QUEUED,
            message=QUEUED_MESSAGE,
        )
        created = self.repository.create(deployment=deployment, initial_entry=initial)
        logger.info(
            "deployment_created deployment_id=%s token_type=%s network=%s deployed_by=%s",
            created.deployment_id,
            created.token_type,
            created.network,
            created.deployed_by,
        )
        self._emit(deployment=created, status=DeploymentStatus.QUEUED, message=QUEUED_MESSAGE)
        return created.deployment_id

    def update_status(
        self,
        deployment_id: str,
        new_status: DeploymentStatus | str,
        message: str | None = None,
        *,
        transaction_hash: str | None = None,
        confirmed_round: int | None = None,
        error_message: str | None = None,
        reason_code: str | None = None,
        actor_address: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        target = DeploymentStatus.parse(new_status)
        with self._locks.hold(deployment_id):
            deployment = self.repository.get(deployment_id=deployment_id)
            if deployment is None:
                logger.warning("deployment_not_found deployment_id=%s", deployment_id)
                return False
            current = deployment.current_status
            if current == target:
                logger.debug("deployment_status_unchanged deployment_id=%s status=%s", deployment_id, target.value)
                return True
            if not is_valid_transition(current, target):
                logger.warning(
                    "deployment_transition_rejected deployment_id=%s from=%s to=%s",
                    deployment_id,
                    current.value,
                    target.value,
                )
                return False
            entry = StatusEntry(
                deployment_id=deployment_id,
                status=target,
                message=message or f"Status changed to {target.value}",
                transaction_hash=transaction_hash,
                confirmed_round=confirmed_round,
                error_message=error_message,
                reason_code=reason_code,
                actor_address=actor_address,
                metadata=dict(metadata or {}),
            )
            updated = self.repository.append_status_entry(
                deployment_id=deployment_id,
                entry=entry,
                expected_status=current,
            )
            if updated is None:
                # status changed underneath us through another process
                logger.warning("deployment_transition_conflict deployment_id=%s from=%s", deployment_id, current.value)
                return False
        logger.info(
            "deployment_status_updated deployment_id=%s from=%s to=%s",
            deployment_id,
            current.value,
            target.value,
        )
        self._emit(deployment=updated, status=target, message=entry.message, entry=entry)
        return True

    def mark_failed(self, deployment_id: str, error_message: str, is_retryable: bool = False) -> bool:
        message = "Deployment failed - retry possible" if is_retryable else "Deployment failed"
        return self.update_status(
            deployment_id,
            DeploymentStatus.FAILED,
            message,
            error_message=error_message,
            metadata={"isRetryable": is_retryable},
        )

    def mark_failed_with_error(self, deployment_id: str, error: DeploymentError) -> bool:
        applied = self.update_status(
            deployment_id,
            DeploymentStatus.FAILED,
            error.user_message,
            error_message=error.technical_message,
            reason_code=error.error_code,
            metadata=error.metadata(),
        )
        if applied:
            logger.warning(
                "deployment_failed deployment_id=%s category=%s code=%s retryable=%s",
                deployment_id,
                error.category.value,
                error.error_code,
                error.is_retryable,
            )
        return applied

    def update_asset_identifier(self, deployment_id: str, asset_identifier: str) -> bool:
        with self._locks.hold(deployment_id):
            deployment = self.repository.get(deployment_id=deployment_id)
            if deployment is None:
                logger.warning("deployment_not_found deployment_id=%s", deployment_id)
                return False
            deployment.asset_identifier = asset_identifier
            if self.repository.update(deployment=deployment) is None:
                return False
        logger.info("deployment_asset_identifier_set deployment_id=%s asset_identifier=%s", deployment_id, asset_identifier)
        return True

    def get_deployment(self, deployment_id: str) -> Deployment | None:
        return self.repository.get(deployment_id=deployment_id)

    def get_status_history(self, deployment_id: str) -> list[StatusEntry]:
        return self.repository.get_history(deployment_id=deployment_id)

    def normalize_paging(self, page: int | None, page_size: int | None) -> tuple[int, int]:
        page_value = page if page is not None and page >= 1 else 1
        size = page_size if page_size is not None and page_size >= 1 else self.settings.list_default_page_size
        return page_value, min(size, self.settings.list_max_page_size)

    def list_deployments(
        self,
        *,
        filters: DeploymentFilters | None = None,
        page: int | None = 1,
        page_size: int | None = None,
    ) -> dict[str, Any]:
        filters = filters or DeploymentFilters()
        page_value, size = self.normalize_paging(page, page_size)
        total = self.repository.count(filters=filters)
        items = self.repository.list(filters=filters, page=page_value, page_size=size)
        return {
            "deployments": items,
            "totalCount": total,
            "page": page_value,
            "pageSize": size,
            "totalPages": math.ceil(total / size) if total else 0,
        }

    def count_deployments(self, *, filters: DeploymentFilters | None = None) -> int:
        return self.repository.count(filters=filters or DeploymentFilters())

    def get_deployment_metrics(
        self,
        *,
        network: str | None = None,
        token_type: str | None = None,
        deployed_by: str | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> dict[str, Any]:
        end = to_date or utcnow()
        start = from_date or end - timedelta(hours=24)
        filters = DeploymentFilters(
            network=network,
            token_type=token_type,
            deployed_by=deployed_by,
            from_date=start,
            to_date=end,
        )
        total = self.repository.count(filters=filters)
        deployments = self.repository.list(filters=filters, page=1, page_size=max(1, total)) if total else []
        histories = {x.deployment_id: self.repository.get_history(deployment_id=x.deployment_id) for x in deployments}
        metrics = build_deployment_metrics(deployments=deployments, histories=histories)
        metrics["periodStart"] = start.isoformat()
        metrics["periodEnd"] = end.isoformat()
        return metrics

    def _emit(
        self,
        *,
        deployment: Deployment,
        status: DeploymentStatus,
        message: str | None,
        entry: StatusEntry | None = None,
    ) -> None:
        if self.dispatcher is None:
            return
        data: dict[str, Any] = {
            "deploymentId": deployment.deployment_id,
            "status": status.value,
            "message": message,
            "tokenType": deployment.token_type,
            "tokenName": deployment.token_name,
            "tokenSymbol": deployment.token_symbol,
            "transactionHash": deployment.transaction_hash,
        }
        if entry is not None and entry.confirmed_round is not None:
            data["confirmedRound"] = entry.confirmed_round
        if status == DeploymentStatus.FAILED and entry is not None:
            data["errorMessage"] = entry.error_message
            data["isRetryable"] = bool(entry.metadata.get("isRetryable", False))
            if "errorCategory" in entry.metadata:
                data["errorCategory"] = entry.metadata["errorCategory"]
        event = WebhookEvent(
            event_type=EVENT_FOR_STATUS[status],
            actor=deployment.deployed_by,
            asset_id=deployment.asset_identifier,
            network=deployment.network,
            data=data,
        )
        try:
            self.dispatcher.emit_event(event)
        except Exception:
            logger.exception(
                "deployment_event_emit_failed deployment_id=%s event_type=%s",
                deployment.deployment_id,
                event.event_type.value,
            )
