from __future__ import annotations

from fastapi import APIRouter, Header, Request, Response

from app.audit_export import AuditExportRequest
from app.errors import REQ_VALIDATION_FAILED, ApiError
from app.models import AuditExportFormat, DeploymentFilters, DeploymentStatus, parse_iso
from app.routes._deps import raise_for_failure, services_from_request, trace_id_from_request
from app.schemas import BulkExportRequest, success_envelope

router = APIRouter(prefix="/api/v1/audit", tags=["audit"])


@router.get("/deployments/{deployment_id}/json")
def export_json(deployment_id: str, request: Request):
    data = services_from_request(request).exporter.export_json(deployment_id)
    return Response(content=data, media_type="application/json")


@router.get("/deployments/{deployment_id}/csv")
def export_csv(deployment_id: str, request: Request):
    data = services_from_request(request).exporter.export_csv(deployment_id)
    return Response(
        content=data,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="deployment-{deployment_id}-audit.csv"'},
    )


@router.get("/deployments/{deployment_id}/verify")
def verify_history(deployment_id: str, request: Request):
    data = services_from_request(request).exporter.verify_history(deployment_id)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/export")
def export_bulk(
    payload: BulkExportRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    status = None
    if payload.status:
        try:
            status = DeploymentStatus.parse(payload.status)
        except ValueError as exc:
            raise ApiError.from_code(REQ_VALIDATION_FAILED, str(exc)) from exc
    export_request = AuditExportRequest(
        format=AuditExportFormat(payload.format),
        page=payload.page,
        page_size=payload.page_size,
        filters=DeploymentFilters(
            deployed_by=payload.deployed_by,
            network=payload.network,
            token_type=payload.token_type,
            status=status,
            from_date=parse_iso(payload.from_date),
            to_date=parse_iso(payload.to_date),
        ),
    )
    result = services_from_request(request).exporter.export_bulk(export_request, idempotency_key)
    raise_for_failure(success=result.success, error_code=result.error_code, error_message=result.error_message)
    return success_envelope(result.as_dict(), trace_id_from_request(request))
