from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from app.errors import DEPLOYMENT_NOT_FOUND, DEPLOYMENT_TRANSITION_INVALID, REQ_VALIDATION_FAILED, ApiError
from app.models import (
    DeploymentError,
    DeploymentErrorCategory,
    DeploymentFilters,
    DeploymentStatus,
    parse_iso,
)
from app.routes._deps import services_from_request, trace_id_from_request
from app.schemas import (
    AssetIdentifierRequest,
    CreateDeploymentRequest,
    MarkFailedRequest,
    UpdateStatusRequest,
    success_envelope,
)

router = APIRouter(prefix="/api/v1", tags=["deployments"])


def _parse_status(raw: str | None) -> DeploymentStatus | None:
    if raw is None or not raw.strip():
        return None
    try:
        return DeploymentStatus.parse(raw)
    except ValueError as exc:
        raise ApiError.from_code(REQ_VALIDATION_FAILED, str(exc)) from exc


def _not_found(deployment_id: str) -> ApiError:
    return ApiError.from_code(DEPLOYMENT_NOT_FOUND, f"Deployment {deployment_id} not found")


@router.post("/deployments")
def create_deployment(payload: CreateDeploymentRequest, request: Request):
    services = services_from_request(request)
    deployment_id = services.lifecycle.create_deployment(
        token_type=payload.token_type,
        network=payload.network,
        deployed_by=payload.deployed_by,
        token_name=payload.token_name,
        token_symbol=payload.token_symbol,
        deployment_id=payload.deployment_id,
        correlation_id=payload.correlation_id,
    )
    deployment = services.lifecycle.get_deployment(deployment_id)
    data = {"deploymentId": deployment_id, "deployment": deployment.as_dict() if deployment else None}
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/deployments")
def list_deployments(
    request: Request,
    deployed_by: str | None = Query(default=None),
    network: str | None = Query(default=None),
    token_type: str | None = Query(default=None),
    status: str | None = Query(default=None),
    from_date: datetime | None = Query(default=None),
    to_date: datetime | None = Query(default=None),
    page: int = Query(default=1),
    page_size: int | None = Query(default=None),
):
    filters = DeploymentFilters(
        deployed_by=deployed_by,
        network=network,
        token_type=token_type,
        status=_parse_status(status),
        from_date=parse_iso(from_date),
        to_date=parse_iso(to_date),
    )
    result = services_from_request(request).lifecycle.list_deployments(
        filters=filters,
        page=page,
        page_size=page_size,
    )
    result["deployments"] = [x.as_dict() for x in result["deployments"]]
    return success_envelope(result, trace_id_from_request(request))


@router.get("/deployments/metrics")
def deployment_metrics(
    request: Request,
    network: str | None = Query(default=None),
    token_type: str | None = Query(default=None),
    deployed_by: str | None = Query(default=None),
    from_date: datetime | None = Query(default=None),
    to_date: datetime | None = Query(default=None),
):
    data = services_from_request(request).lifecycle.get_deployment_metrics(
        network=network,
        token_type=token_type,
        deployed_by=deployed_by,
        from_date=parse_iso(from_date),
        to_date=parse_iso(to_date),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/deployments/{deployment_id}")
def get_deployment(deployment_id: str, request: Request):
    deployment = services_from_request(request).lifecycle.get_deployment(deployment_id)
    if deployment is None:
        raise _not_found(deployment_id)
    return success_envelope(deployment.as_dict(), trace_id_from_request(request))


@router.get("/deployments/{deployment_id}/history")
def get_status_history(deployment_id: str, request: Request):
    lifecycle = services_from_request(request).lifecycle
    if lifecycle.get_deployment(deployment_id) is None:
        raise _not_found(deployment_id)
    items = [x.as_dict() for x in lifecycle.get_status_history(deployment_id)]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


def _transition_response(*, request: Request, deployment_id: str, applied: bool, target: str):
    lifecycle = services_from_request(request).lifecycle
    deployment = lifecycle.get_deployment(deployment_id)
    if deployment is None:
        raise _not_found(deployment_id)
    if not applied:
        raise ApiError.from_code(
            DEPLOYMENT_TRANSITION_INVALID,
            f"invalid transition: {deployment.current_status.value} -> {target}",
        )
    return success_envelope(deployment.as_dict(), trace_id_from_request(request))


@router.post("/deployments/{deployment_id}/status")
def update_status(deployment_id: str, payload: UpdateStatusRequest, request: Request):
    target = _parse_status(payload.status)
    if target is None:
        raise ApiError.from_code(REQ_VALIDATION_FAILED, "status is required")
    applied = services_from_request(request).lifecycle.update_status(
        deployment_id,
        target,
        payload.message,
        transaction_hash=payload.transaction_hash,
        confirmed_round=payload.confirmed_round,
        error_message=payload.error_message,
        reason_code=payload.reason_code,
        actor_address=payload.actor_address,
        metadata=payload.metadata,
    )
    return _transition_response(request=request, deployment_id=deployment_id, applied=applied, target=target.value)


@router.post("/deployments/{deployment_id}/fail")
def mark_failed(deployment_id: str, payload: MarkFailedRequest, request: Request):
    lifecycle = services_from_request(request).lifecycle
    if payload.category:
        try:
            category = DeploymentErrorCategory.parse(payload.category)
        except ValueError as exc:
            raise ApiError.from_code(REQ_VALIDATION_FAILED, str(exc)) from exc
        error = DeploymentError(
            category=category,
            error_code=payload.error_code or category.value,
            technical_message=payload.error_message,
            user_message=payload.user_message or payload.error_message,
            is_retryable=payload.is_retryable,
            suggested_retry_delay_s=payload.suggested_retry_delay_seconds,
        )
        applied = lifecycle.mark_failed_with_error(deployment_id, error)
    else:
        applied = lifecycle.mark_failed(deployment_id, payload.error_message, payload.is_retryable)
    return _transition_response(
        request=request,
        deployment_id=deployment_id,
        applied=applied,
        target=DeploymentStatus.FAILED.value,
    )


@router.put("/deployments/{deployment_id}/asset-identifier")
def update_asset_identifier(deployment_id: str, payload: AssetIdentifierRequest, request: Request):
    lifecycle = services_from_request(request).lifecycle
    if not lifecycle.update_asset_identifier(deployment_id, payload.asset_identifier):
        raise _not_found(deployment_id)
    deployment = lifecycle.get_deployment(deployment_id)
    return success_envelope(deployment.as_dict() if deployment else None, trace_id_from_request(request))
