from typing import Optional

from fastapi import APIRouter, Header, Query

from app.auth import assert_actor_authorized
from app.models import (
    Quote,
    QuoteActionRequest,
    QuoteConfirmation,
    QuoteSelection,
    QuoteSelectRequest,
    QuoteSubmitRequest,
)
from app.routers.http_errors import raise_http_error
from app.services.errors import MarketplaceError
from app.services.notification_dispatcher import notification_dispatcher
from app.services.quote_ledger import quote_ledger

router = APIRouter(tags=["quotes"])


@router.post("/requests/{request_id}/quotes", response_model=Quote)
def submit_quote(
    request_id: str,
    payload: QuoteSubmitRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.pro_id, authorization=authorization)
    try:
        quote = quote_ledger.submit(
            request_id=request_id,
            pro_id=payload.pro_id,
            estimated_price=payload.estimated_price,
            description=payload.description,
            notes=payload.notes,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    notification_dispatcher.notify_customer(
        "quote_received",
        request_id,
        payload.pro_id,
        quote_id=quote.id,
        estimated_price=quote.estimated_price,
    )
    return quote


@router.get("/requests/{request_id}/quotes", response_model=list[Quote])
def list_request_quotes(
    request_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return quote_ledger.list_for_request(request_id, viewer_id=user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/quotes/{quote_id}", response_model=Quote)
def get_quote(
    quote_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return quote_ledger.get(quote_id, viewer_id=user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/quotes/{quote_id}/select", response_model=QuoteSelection)
def select_quote(
    quote_id: str,
    payload: QuoteSelectRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        selection = quote_ledger.select(quote_id, customer_id=payload.user_id, starts_at=payload.starts_at)
    except MarketplaceError as exc:
        raise_http_error(exc)
    quote = selection.quote
    notification_dispatcher.notify_pro(
        "quote_selected",
        quote.request_id,
        quote.pro_id,
        quote_id=quote.id,
        estimated_price=quote.estimated_price,
        minutes=quote.confirmation_timer_minutes,
    )
    return selection


@router.post("/quotes/{quote_id}/confirm", response_model=QuoteConfirmation)
def confirm_quote(
    quote_id: str,
    payload: QuoteActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.pro_id, authorization=authorization)
    try:
        confirmation = quote_ledger.confirm(quote_id, pro_id=payload.pro_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    notification_dispatcher.notify_customer(
        "quote_confirmed",
        confirmation.quote.request_id,
        payload.pro_id,
        appointment_id=confirmation.appointment.id,
    )
    return confirmation


@router.post("/quotes/{quote_id}/decline", response_model=Quote)
def decline_quote(
    quote_id: str,
    payload: QuoteActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.pro_id, authorization=authorization)
    try:
        return quote_ledger.decline(quote_id, pro_id=payload.pro_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/quotes/{quote_id}/revise", response_model=Quote)
def revise_quote(
    quote_id: str,
    payload: QuoteSubmitRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.pro_id, authorization=authorization)
    try:
        quote = quote_ledger.revise(
            quote_id,
            pro_id=payload.pro_id,
            estimated_price=payload.estimated_price,
            description=payload.description,
            notes=payload.notes,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    notification_dispatcher.notify_customer(
        "quote_received",
        quote.request_id,
        payload.pro_id,
        quote_id=quote.id,
        estimated_price=quote.estimated_price,
    )
    return quote
