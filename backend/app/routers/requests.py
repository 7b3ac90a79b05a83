from typing import Optional

from fastapi import APIRouter, Header, Query

from app.auth import assert_actor_authorized, is_admin
from app.models import JobLock, RequestActorRequest, ServiceRequest, ServiceRequestCreate, ServiceRequestCreated
from app.routers.http_errors import raise_http_error
from app.services.errors import MarketplaceError
from app.services.job_lock import job_lock_manager
from app.services.notification_dispatcher import notification_dispatcher
from app.services.request_store import request_store

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=ServiceRequestCreated)
def create_request(
    payload: ServiceRequestCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        request, targets = request_store.create(
            customer_id=payload.user_id,
            vehicle_year=payload.vehicle_year,
            vehicle_make=payload.vehicle_make,
            vehicle_model=payload.vehicle_model,
            category=payload.category,
            zip_code=payload.zip,
            contact_email=payload.contact_email,
            address=payload.address,
            description=payload.description,
            urgency=payload.urgency,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    for pro in targets:
        notification_dispatcher.notify_pro("new_lead", request.id, pro.id)
    return ServiceRequestCreated(request=request, lead_count=len(targets))


@router.get("", response_model=list[ServiceRequest])
def list_requests(
    user_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return request_store.list_for_customer(customer_id=user_id, status=status)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{request_id}", response_model=ServiceRequest)
def get_request(
    request_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return request_store.get(request_id, viewer_id=user_id, is_admin=is_admin(user_id))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{request_id}/lock", response_model=JobLock)
def get_request_lock(
    request_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        request_store.get(request_id, viewer_id=user_id, is_admin=is_admin(user_id))
        return job_lock_manager.lock_view(request_id, viewer_id=user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/cancel", response_model=ServiceRequest)
def cancel_request(
    request_id: str,
    payload: RequestActorRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        return request_store.cancel(request_id, customer_id=payload.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.delete("/{request_id}", response_model=dict)
def delete_request(
    request_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        request_store.delete(request_id, customer_id=user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return {"status": "deleted", "request_id": request_id}
