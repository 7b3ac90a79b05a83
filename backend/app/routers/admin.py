import hmac
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from app import config
from app.auth import require_admin
from app.models import Professional, ProfessionalCreateRequest, ReferralFee, ReferralFeeMarkPaidRequest, SweepResult
from app.routers.http_errors import raise_http_error
from app.services.confirmation_timer import expiration_sweep
from app.services.errors import MarketplaceError
from app.services.lead_dispatcher import lead_dispatcher
from app.services.referral_fees import referral_fee_ledger

router = APIRouter(prefix="/admin", tags=["admin"])


def _authorize_sweep(sweep_token: Optional[str], admin_user_id: Optional[str], authorization: Optional[str]) -> None:
    if config.SWEEP_TOKEN and sweep_token:
        if hmac.compare_digest(sweep_token, config.SWEEP_TOKEN):
            return
        raise HTTPException(status_code=401, detail="Invalid sweep token")
    if not admin_user_id:
        raise HTTPException(status_code=401, detail="Sweep token or admin user required")
    require_admin(actor_user_id=admin_user_id, authorization=authorization)


@router.post("/sweep", response_model=SweepResult)
def run_sweep(
    admin_user_id: Optional[str] = Query(default=None),
    x_sweep_token: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
):
    """Entry point for the external scheduler. Idempotent."""
    _authorize_sweep(x_sweep_token, admin_user_id, authorization)
    try:
        return expiration_sweep.run()
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/referral-fees", response_model=list[ReferralFee])
def list_referral_fees(
    admin_user_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    pro_id: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    require_admin(actor_user_id=admin_user_id, authorization=authorization)
    try:
        return referral_fee_ledger.list_fees(status=status, pro_id=pro_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/referral-fees/{fee_id}/mark-paid", response_model=ReferralFee)
def mark_referral_fee_paid(
    fee_id: str,
    payload: ReferralFeeMarkPaidRequest,
    authorization: Optional[str] = Header(default=None),
):
    require_admin(actor_user_id=payload.admin_user_id, authorization=authorization)
    try:
        return referral_fee_ledger.mark_paid(
            fee_id,
            amount=payload.amount,
            payment_method=payload.payment_method,
            notes=payload.notes,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/professionals", response_model=Professional)
def register_professional(
    payload: ProfessionalCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    require_admin(actor_user_id=payload.admin_user_id, authorization=authorization)
    try:
        return lead_dispatcher.register_professional(
            pro_id=payload.pro_id,
            business_name=payload.business_name,
            email=payload.email,
            categories=payload.categories,
            service_zips=payload.service_zips,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
