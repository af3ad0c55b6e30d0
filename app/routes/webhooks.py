from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from app.errors import REQ_VALIDATION_FAILED, ApiError
from app.models import WebhookEvent
from app.routes._deps import (
    actor_id_from_request,
    raise_for_failure,
    services_from_request,
    trace_id_from_request,
)
from app.schemas import (
    EmitEventRequest,
    SubscriptionCreateRequest,
    SubscriptionUpdateRequest,
    success_envelope,
)
from app.webhooks import parse_event_types

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/subscriptions")
def create_subscription(payload: SubscriptionCreateRequest, request: Request):
    result = services_from_request(request).webhooks.create_subscription(
        url=payload.url,
        event_types=payload.event_types,
        created_by=actor_id_from_request(request),
        description=payload.description,
        asset_id_filter=payload.asset_id_filter,
        network_filter=payload.network_filter,
    )
    raise_for_failure(success=result.success, error_code=result.error_code, error_message=result.error_message)
    return JSONResponse(status_code=201, content=success_envelope(result.as_dict(), trace_id_from_request(request)))


@router.get("/subscriptions")
def list_subscriptions(request: Request):
    result = services_from_request(request).webhooks.list_subscriptions(actor_id=actor_id_from_request(request))
    items = [x.as_dict() for x in result.subscriptions]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/subscriptions/{subscription_id}")
def get_subscription(subscription_id: str, request: Request):
    result = services_from_request(request).webhooks.get_subscription(
        subscription_id=subscription_id,
        actor_id=actor_id_from_request(request),
    )
    raise_for_failure(success=result.success, error_code=result.error_code, error_message=result.error_message)
    return success_envelope(result.as_dict(), trace_id_from_request(request))


@router.put("/subscriptions/{subscription_id}")
def update_subscription(subscription_id: str, payload: SubscriptionUpdateRequest, request: Request):
    result = services_from_request(request).webhooks.update_subscription(
        subscription_id=subscription_id,
        actor_id=actor_id_from_request(request),
        is_active=payload.is_active,
        event_types=payload.event_types,
        description=payload.description,
    )
    raise_for_failure(success=result.success, error_code=result.error_code, error_message=result.error_message)
    return success_envelope(result.as_dict(), trace_id_from_request(request))


@router.delete("/subscriptions/{subscription_id}")
def delete_subscription(subscription_id: str, request: Request):
    result = services_from_request(request).webhooks.delete_subscription(
        subscription_id=subscription_id,
        actor_id=actor_id_from_request(request),
    )
    raise_for_failure(success=result.success, error_code=result.error_code, error_message=result.error_message)
    return success_envelope({"deleted": True, "subscriptionId": subscription_id}, trace_id_from_request(request))


@router.get("/deliveries")
def delivery_history(
    request: Request,
    subscription_id: str | None = Query(default=None),
    event_id: str | None = Query(default=None),
    success: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=100),
):
    result = services_from_request(request).webhooks.get_delivery_history(
        actor_id=actor_id_from_request(request),
        subscription_id=subscription_id,
        event_id=event_id,
        success=success,
        page=page,
        page_size=page_size,
    )
    raise_for_failure(success=result.success, error_code=result.error_code, error_message=result.error_message)
    return success_envelope(result.as_dict(), trace_id_from_request(request))


@router.post("/events")
def emit_event(payload: EmitEventRequest, request: Request):
    try:
        event_type = parse_event_types([payload.event_type])[0]
    except ValueError as exc:
        raise ApiError.from_code(REQ_VALIDATION_FAILED, str(exc)) from exc
    event = WebhookEvent(
        event_type=event_type,
        actor=actor_id_from_request(request),
        asset_id=payload.asset_id,
        network=payload.network,
        affected_address=payload.affected_address,
        data=payload.data,
    )
    scheduled = services_from_request(request).webhooks.emit_event(event)
    return JSONResponse(
        status_code=202,
        content=success_envelope({"eventId": event.event_id, "scheduled": scheduled}, trace_id_from_request(request)),
    )
