from typing import Optional

from fastapi import APIRouter, Header, Query

from app.auth import assert_actor_authorized
from app.models import Lead, LeadAcceptResult, LeadActionRequest, LeadInboxItem
from app.routers.http_errors import raise_http_error
from app.services.errors import MarketplaceError
from app.services.job_lock import job_lock_manager
from app.services.lead_dispatcher import lead_dispatcher
from app.services.notification_dispatcher import notification_dispatcher

router = APIRouter(prefix="/leads", tags=["leads"])


@router.get("", response_model=list[LeadInboxItem])
def lead_inbox(
    pro_id: str = Query(...),
    include_declined: bool = Query(default=False),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=pro_id, authorization=authorization)
    try:
        return lead_dispatcher.inbox(pro_id, include_declined=include_declined)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{lead_id}/accept", response_model=LeadAcceptResult)
def accept_lead(
    lead_id: str,
    payload: LeadActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.pro_id, authorization=authorization)
    try:
        result = job_lock_manager.acquire(lead_id, payload.pro_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    if result.acquired:
        notification_dispatcher.notify_customer("lead_accepted", result.lead.request_id, payload.pro_id)
    return result


@router.post("/{lead_id}/decline", response_model=Lead)
def decline_lead(
    lead_id: str,
    payload: LeadActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.pro_id, authorization=authorization)
    try:
        return job_lock_manager.decline(lead_id, payload.pro_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
