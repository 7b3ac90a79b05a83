from typing import Optional

from fastapi import APIRouter, Header, Query

from app.auth import assert_actor_authorized
from app.models import (
    Appointment,
    AppointmentCancelRequest,
    AppointmentScheduleRequest,
    AppointmentStatusUpdateRequest,
)
from app.routers.http_errors import raise_http_error
from app.services.appointments import appointment_book
from app.services.errors import MarketplaceError
from app.services.notification_dispatcher import notification_dispatcher

router = APIRouter(prefix="/appointments", tags=["appointments"])


@router.get("", response_model=list[Appointment])
def list_appointments(
    user_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return appointment_book.list_for_user(user_id, status=status)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/jobs", response_model=list[Appointment])
def list_pro_jobs(
    pro_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=pro_id, authorization=authorization)
    try:
        return appointment_book.jobs_for_pro(pro_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{appointment_id}", response_model=Appointment)
def get_appointment(
    appointment_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return appointment_book.get(appointment_id, viewer_id=user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{appointment_id}/schedule", response_model=Appointment)
def schedule_appointment(
    appointment_id: str,
    payload: AppointmentScheduleRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.pro_id, authorization=authorization)
    try:
        appointment = appointment_book.schedule(
            appointment_id,
            pro_id=payload.pro_id,
            starts_at=payload.starts_at,
            notes=payload.notes,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    notification_dispatcher.notify_customer(
        "appointment_scheduled",
        appointment.request_id,
        appointment.pro_id,
        appointment_id=appointment.id,
        starts_at=appointment.starts_at,
    )
    return appointment


@router.post("/{appointment_id}/status", response_model=Appointment)
def update_appointment_status(
    appointment_id: str,
    payload: AppointmentStatusUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        appointment = appointment_book.update_status(appointment_id, actor_id=payload.actor_user_id, status=payload.status)
    except MarketplaceError as exc:
        raise_http_error(exc)
    if appointment.status == "completed":
        notification_dispatcher.notify_customer(
            "appointment_completed",
            appointment.request_id,
            appointment.pro_id,
            appointment_id=appointment.id,
        )
    return appointment


@router.post("/{appointment_id}/cancel", response_model=Appointment)
def cancel_appointment(
    appointment_id: str,
    payload: AppointmentCancelRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        appointment, _fee = appointment_book.cancel(appointment_id, actor_id=payload.actor_user_id, reason=payload.reason)
    except MarketplaceError as exc:
        raise_http_error(exc)
    data = {"appointment_id": appointment.id, "reason": payload.reason.replace("_", " ")}
    # Tell whichever side did not cancel.
    if payload.actor_user_id == appointment.customer_id:
        notification_dispatcher.notify_pro("appointment_cancelled", appointment.request_id, appointment.pro_id, **data)
    else:
        notification_dispatcher.notify_customer("appointment_cancelled", appointment.request_id, appointment.pro_id, **data)
    return appointment
