from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def iso_or_none(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def parse_iso(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


class DeploymentStatus(str, Enum):
    QUEUED = "Queued"
    SUBMITTED = "Submitted"
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @classmethod
    def parse(cls, value: "str | DeploymentStatus") -> "DeploymentStatus":
        if isinstance(value, cls):
            return value
        raw = str(value).strip()
        for item in cls:
            if item.value.lower() == raw.lower() or item.name.lower() == raw.lower():
                return item
        raise ValueError(f"unknown deployment status: {value}")


class WebhookEventType(str, Enum):
    WHITELIST_ADD = "WhitelistAdd"
    WHITELIST_REMOVE = "WhitelistRemove"
    TRANSFER_DENY = "TransferDeny"
    AUDIT_EXPORT_CREATED = "AuditExportCreated"
    TOKEN_DEPLOYMENT_STARTED = "TokenDeploymentStarted"
    TOKEN_DEPLOYMENT_CONFIRMING = "TokenDeploymentConfirming"
    TOKEN_DEPLOYMENT_COMPLETED = "TokenDeploymentCompleted"
    TOKEN_DEPLOYMENT_FAILED = "TokenDeploymentFailed"


class AuditExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


class DeploymentErrorCategory(str, Enum):
    UNKNOWN = "Unknown"
    NETWORK_ERROR = "NetworkError"
    VALIDATION_ERROR = "ValidationError"
    COMPLIANCE_ERROR = "ComplianceError"
    USER_REJECTION = "UserRejection"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    TRANSACTION_FAILURE = "TransactionFailure"
    CONFIGURATION_ERROR = "ConfigurationError"
    RATE_LIMIT_EXCEEDED = "RateLimitExceeded"
    INTERNAL_ERROR = "InternalError"

    @classmethod
    def parse(cls, raw: str) -> "DeploymentErrorCategory":
        value = (raw or "").strip().lower()
        for item in cls:
            if item.value.lower() == value:
                return item
        raise ValueError(f"unknown error category: {raw}")


@dataclass(frozen=True)
class DeploymentError:
    """Structured failure: ``user_message`` goes on the status entry, ``technical_message`` on the deployment."""

    category: DeploymentErrorCategory
    error_code: str
    technical_message: str
    user_message: str
    is_retryable: bool = False
    suggested_retry_delay_s: int | None = None

    @classmethod
    def network_error(cls, technical_message: str) -> "DeploymentError":
        return cls(
            category=DeploymentErrorCategory.NETWORK_ERROR,
            error_code="BLOCKCHAIN_CONNECTION_ERROR",
            technical_message=technical_message,
            user_message="Unable to connect to the blockchain network. Please try again in a few moments.",
            is_retryable=True,
            suggested_retry_delay_s=30,
        )

    @classmethod
    def insufficient_funds(cls, required: str, available: str) -> "DeploymentError":
        return cls(
            category=DeploymentErrorCategory.INSUFFICIENT_FUNDS,
            error_code="INSUFFICIENT_FUNDS",
            technical_message=f"Insufficient funds: required {required}, available {available}",
            user_message="Insufficient funds to complete the deployment. Please add funds to your account.",
            is_retryable=True,
        )

    @classmethod
    def transaction_failure(cls, technical_message: str) -> "DeploymentError":
        return cls(
            category=DeploymentErrorCategory.TRANSACTION_FAILURE,
            error_code="TRANSACTION_FAILED",
            technical_message=technical_message,
            user_message="The transaction failed on the blockchain. Please check the transaction details and try again.",
            is_retryable=True,
            suggested_retry_delay_s=60,
        )

    def metadata(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "isRetryable": self.is_retryable,
            "errorCategory": self.category.value,
            "errorCode": self.error_code,
        }
        if self.suggested_retry_delay_s is not None:
            data["suggestedRetryDelaySeconds"] = self.suggested_retry_delay_s
        return data


@dataclass(frozen=True)
class DeploymentFilters:
    deployed_by: str | None = None
    network: str | None = None
    token_type: str | None = None
    status: DeploymentStatus | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None

    def matches(self, deployment: "Deployment") -> bool:
        if self.deployed_by and deployment.deployed_by.lower() != self.deployed_by.lower():
            return False
        if self.network and deployment.network.lower() != self.network.lower():
            return False
        if self.token_type and deployment.token_type.lower() != self.token_type.lower():
            return False
        if self.status is not None and deployment.current_status != self.status:
            return False
        if self.from_date is not None and deployment.created_at < self.from_date:
            return False
        if self.to_date is not None and deployment.created_at > self.to_date:
            return False
        return True

    def as_dict(self) -> dict[str, Any]:
        return {
            "deployedBy": self.deployed_by or None,
            "network": self.network or None,
            "tokenType": self.token_type or None,
            "status": self.status.value if self.status is not None else None,
            "fromDate": iso_or_none(self.from_date),
            "toDate": iso_or_none(self.to_date),
        }


@dataclass
class Deployment:
    deployment_id: str
    token_type: str
    network: str
    deployed_by: str
    token_name: str | None = None
    token_symbol: str | None = None
    asset_identifier: str | None = None
    transaction_hash: str | None = None
    current_status: DeploymentStatus = DeploymentStatus.QUEUED
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    error_message: str | None = None
    correlation_id: str | None = None

    def copy(self) -> "Deployment":
        return replace(self)

    def as_dict(self) -> dict[str, Any]:
        return {
            "deploymentId": self.deployment_id,
            "tokenType": self.token_type,
            "network": self.network,
            "deployedBy": self.deployed_by,
            "tokenName": self.token_name,
            "tokenSymbol": self.token_symbol,
            "assetIdentifier": self.asset_identifier,
            "transactionHash": self.transaction_hash,
            "currentStatus": self.current_status.value,
            "createdAt": iso_or_none(self.created_at),
            "updatedAt": iso_or_none(self.updated_at),
            "errorMessage": self.error_message,
            "correlationId": self.correlation_id,
        }


@dataclass
class StatusEntry:
    deployment_id: str
    status: DeploymentStatus
    timestamp: datetime = field(default_factory=utcnow)
    message: str | None = None
    transaction_hash: str | None = None
    confirmed_round: int | None = None
    error_message: str | None = None
    reason_code: str | None = None
    actor_address: str | None = None
    duration_from_previous_status_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    entry_id: str = field(default_factory=lambda: f"dse_{uuid.uuid4().hex[:16]}")
    prev_hash: str = ""
    entry_hash: str = ""

    def copy(self) -> "StatusEntry":
        return replace(self, metadata=copy.deepcopy(self.metadata))

    def hash_material(self) -> dict[str, Any]:
        item = self.as_dict()
        item.pop("prevHash", None)
        item.pop("entryHash", None)
        return item

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "deploymentId": self.deployment_id,
            "status": self.status.value,
            "timestamp": iso_or_none(self.timestamp),
            "message": self.message,
            "transactionHash": self.transaction_hash,
            "confirmedRound": self.confirmed_round,
            "errorMessage": self.error_message,
            "reasonCode": self.reason_code,
            "actorAddress": self.actor_address,
            "durationFromPreviousStatusMs": self.duration_from_previous_status_ms,
            "metadata": copy.deepcopy(self.metadata),
            "prevHash": self.prev_hash,
            "entryHash": self.entry_hash,
        }


@dataclass
class Subscription:
    url: str
    event_types: list[WebhookEventType]
    signing_secret: str
    created_by: str
    subscription_id: str = field(default_factory=lambda: f"whs_{uuid.uuid4().hex[:12]}")
    is_active: bool = True
    description: str | None = None
    asset_id_filter: str | None = None
    network_filter: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None

    def copy(self) -> "Subscription":
        return replace(self, event_types=list(self.event_types))

    def as_dict(self, *, include_secret: bool = False) -> dict[str, Any]:
        item: dict[str, Any] = {
            "id": self.subscription_id,
            "url": self.url,
            "eventTypes": [x.value for x in self.event_types],
            "isActive": self.is_active,
            "createdBy": self.created_by,
            "createdAt": iso_or_none(self.created_at),
            "updatedAt": iso_or_none(self.updated_at),
            "description": self.description,
            "assetIdFilter": self.asset_id_filter,
            "networkFilter": self.network_filter,
        }
        if include_secret:
            item["signingSecret"] = self.signing_secret
        return item


@dataclass
class WebhookEvent:
    event_type: WebhookEventType
    actor: str = ""
    asset_id: str | None = None
    network: str | None = None
    affected_address: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.event_id,
            "eventType": self.event_type.value,
            "timestamp": iso_or_none(self.timestamp),
            "assetId": self.asset_id,
            "network": self.network,
            "actor": self.actor,
            "affectedAddress": self.affected_address,
            "data": self.data,
        }


@dataclass
class DeliveryResult:
    subscription_id: str
    event_id: str
    success: bool = False
    status_code: int | None = None
    latency_ms: int = 0
    retry_count: int = 0
    error_code: str | None = None
    error_message: str | None = None
    response_body: str | None = None
    will_retry: bool = False
    next_retry_at: datetime | None = None
    attempted_at: datetime = field(default_factory=utcnow)
    delivery_id: str = field(default_factory=lambda: f"whd_{uuid.uuid4().hex[:12]}")

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.delivery_id,
            "subscriptionId": self.subscription_id,
            "eventId": self.event_id,
            "success": self.success,
            "statusCode": self.status_code,
            "latencyMs": self.latency_ms,
            "retryCount": self.retry_count,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "responseBody": self.response_body,
            "willRetry": self.will_retry,
            "nextRetryAt": iso_or_none(self.next_retry_at),
            "attemptedAt": iso_or_none(self.attempted_at),
        }
