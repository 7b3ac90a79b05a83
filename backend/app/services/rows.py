import json
import sqlite3
from datetime import datetime
from typing import Optional

from app.models import Appointment, Lead, Professional, Quote, ReferralFee, ServiceRequest
from app.services.database import parse_iso


def seconds_until(expires_at: Optional[str], now: datetime) -> Optional[int]:
    """Display-only countdown. Authoritative expiry is decided by conditional writes."""
    expires = parse_iso(expires_at)
    if expires is None:
        return None
    return max(0, int((expires - now).total_seconds()))


def professional_from_row(row: sqlite3.Row) -> Professional:
    return Professional(
        id=row["id"],
        business_name=row["business_name"],
        email=row["email"] or "",
        categories=json.loads(row["categories_json"] or "[]"),
        service_zips=json.loads(row["service_zips_json"] or "[]"),
        status=row["status"],
    )


def request_from_row(row: sqlite3.Row) -> ServiceRequest:
    return ServiceRequest(
        id=row["id"],
        customer_id=row["customer_id"],
        contact_email=row["contact_email"] or "",
        vehicle_year=int(row["vehicle_year"]),
        vehicle_make=row["vehicle_make"],
        vehicle_model=row["vehicle_model"],
        category=row["category"],
        zip=row["zip"],
        address=row["address"] or "",
        description=row["description"] or "",
        urgency=row["urgency"],
        status=row["status"],
        accepted_pro_id=row["accepted_pro_id"],
        accept_expires_at=row["accept_expires_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def lead_from_row(row: sqlite3.Row) -> Lead:
    return Lead(
        id=row["id"],
        request_id=row["request_id"],
        pro_id=row["pro_id"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def quote_from_row(row: sqlite3.Row, now: Optional[datetime] = None) -> Quote:
    seconds_remaining = None
    if now is not None and row["status"] == "pending_confirmation":
        seconds_remaining = seconds_until(row["confirmation_timer_expires_at"], now)
    return Quote(
        id=row["id"],
        request_id=row["request_id"],
        pro_id=row["pro_id"],
        estimated_price=float(row["estimated_price"]),
        description=row["description"],
        notes=row["notes"] or "",
        status=row["status"],
        confirmation_timer_minutes=int(row["confirmation_timer_minutes"]),
        confirmation_timer_expires_at=row["confirmation_timer_expires_at"],
        is_revised=bool(row["is_revised"]),
        original_quote_id=row["original_quote_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        seconds_remaining=seconds_remaining,
    )


def appointment_from_row(row: sqlite3.Row) -> Appointment:
    return Appointment(
        id=row["id"],
        request_id=row["request_id"],
        quote_id=row["quote_id"],
        pro_id=row["pro_id"],
        customer_id=row["customer_id"],
        starts_at=row["starts_at"],
        status=row["status"],
        confirmation_expires_at=row["confirmation_expires_at"],
        cancellation_reason=row["cancellation_reason"],
        notes=row["notes"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def referral_fee_from_row(row: sqlite3.Row) -> ReferralFee:
    return ReferralFee(
        id=row["id"],
        request_id=row["request_id"],
        quote_id=row["quote_id"],
        pro_id=row["pro_id"],
        amount=float(row["amount"] or 0),
        status=row["status"],
        payment_method=row["payment_method"],
        notes=row["notes"] or "",
        paid_at=row["paid_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
