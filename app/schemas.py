from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class CreateDeploymentRequest(BaseModel):
    token_type: str = Field(min_length=1)
    network: str = Field(min_length=1)
    deployed_by: str = Field(min_length=1)
    token_name: str | None = None
    token_symbol: str | None = None
    deployment_id: str | None = None
    correlation_id: str | None = None


class UpdateStatusRequest(BaseModel):
    status: str = Field(min_length=1)
    message: str | None = None
    transaction_hash: str | None = None
    confirmed_round: int | None = Field(default=None, ge=0)
    error_message: str | None = None
    reason_code: str | None = None
    actor_address: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MarkFailedRequest(BaseModel):
    error_message: str = Field(min_length=1)
    is_retryable: bool = False
    category: str | None = None
    error_code: str | None = None
    user_message: str | None = None
    suggested_retry_delay_seconds: int | None = Field(default=None, ge=0)


class AssetIdentifierRequest(BaseModel):
    asset_identifier: str = Field(min_length=1)


class BulkExportRequest(BaseModel):
    format: Literal["json", "csv"] = "json"
    page: int = 1
    page_size: int = 100
    deployed_by: str | None = None
    network: str | None = None
    token_type: str | None = None
    status: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None


class SubscriptionCreateRequest(BaseModel):
    url: str
    event_types: list[str] = Field(default_factory=list)
    description: str | None = None
    asset_id_filter: str | None = None
    network_filter: str | None = None


class SubscriptionUpdateRequest(BaseModel):
    is_active: bool | None = None
    event_types: list[str] | None = None
    description: str | None = None


class EmitEventRequest(BaseModel):
    event_type: str = Field(min_length=1)
    asset_id: str | None = None
    network: str | None = None
    affected_address: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
