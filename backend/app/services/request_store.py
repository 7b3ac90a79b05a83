import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from app import config
from app.models import Professional, ServiceRequest
from app.services.database import SERVICE_CATEGORIES, Database, database, to_iso, utc_now
from app.services.errors import InvalidTransitionError, NotFoundError, ValidationError
from app.services.job_lock import clear_lock
from app.services.lead_dispatcher import LeadDispatcher, lead_dispatcher
from app.services.rows import request_from_row

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = ("pending", "accepted", "quoted")
DELETABLE_STATUSES = ("completed", "cancelled")
URGENCIES = set(config.CONFIRMATION_TIMER_MINUTES)


@dataclass
class RequestStore:
    db: Database
    dispatcher: LeadDispatcher

    def create(
        self,
        *,
        customer_id: str,
        vehicle_year: int,
        vehicle_make: str,
        vehicle_model: str,
        category: str,
        zip_code: str,
        contact_email: str = "",
        address: str = "",
        description: str = "",
        urgency: str = config.DEFAULT_URGENCY,
    ) -> Tuple[ServiceRequest, List[Professional]]:
        make = vehicle_make.strip()
        model = vehicle_model.strip()
        cleaned_zip = zip_code.strip()
        if not customer_id.strip():
            raise ValidationError("user_id is required")
        if category not in SERVICE_CATEGORIES:
            raise ValidationError(f"Invalid category. Allowed: {', '.join(sorted(SERVICE_CATEGORIES))}")
        if not make or not model:
            raise ValidationError("Vehicle make and model are required")
        if not 1950 <= vehicle_year <= utc_now().year + 1:
            raise ValidationError("Vehicle year is out of range")
        if not cleaned_zip:
            raise ValidationError("Zip code is required")
        if urgency not in URGENCIES:
            raise ValidationError(f"Invalid urgency. Allowed: {', '.join(sorted(URGENCIES))}")

        now_iso = to_iso(utc_now())
        request_id = f"req_{uuid4().hex[:10]}"
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO service_requests (
                    id, customer_id, contact_email, vehicle_year, vehicle_make, vehicle_model, category, zip,
                    address, description, urgency, status, accepted_pro_id, accept_expires_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', NULL, NULL, ?, ?)
                """,
                (
                    request_id,
                    customer_id,
                    contact_email.strip(),
                    vehicle_year,
                    make,
                    model,
                    category,
                    cleaned_zip,
                    address.strip(),
                    description.strip(),
                    urgency,
                    now_iso,
                    now_iso,
                ),
            )
            row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
            request = request_from_row(row)
            targets = self.dispatcher.dispatch(conn, request)

        logger.info("Service request created request=%s customer=%s leads=%s", request_id, customer_id, len(targets))
        return request, targets

    def get(self, request_id: str, viewer_id: Optional[str] = None, *, is_admin: bool = False) -> ServiceRequest:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
            if not row:
                raise NotFoundError("Service request not found")
            visible = is_admin or viewer_id in {row["customer_id"], row["accepted_pro_id"]}
            if not visible and viewer_id:
                visible = bool(
                    conn.execute(
                        "SELECT 1 FROM leads WHERE request_id = ? AND pro_id = ?",
                        (request_id, viewer_id),
                    ).fetchone()
                )
        if not visible:
            raise NotFoundError("Service request not found")
        return request_from_row(row)

    def notification_context(self, request_id: str, pro_id: Optional[str] = None) -> Dict[str, Any]:
        """Fields the notification templates need about a request and, optionally, a pro."""
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
            pro_row = None
            if pro_id:
                pro_row = conn.execute(
                    "SELECT business_name, email FROM professionals WHERE id = ?",
                    (pro_id,),
                ).fetchone()
        if not row:
            raise NotFoundError("Service request not found")
        request = request_from_row(row)
        return {
            "request_id": request.id,
            "customer_id": request.customer_id,
            "contact_email": request.contact_email,
            "vehicle": request.vehicle,
            "category": SERVICE_CATEGORIES.get(request.category, request.category),
            "zip": request.zip,
            "business_name": pro_row["business_name"] if pro_row else "A professional",
            "pro_email": pro_row["email"] if pro_row else "",
        }

    def list_for_customer(self, customer_id: str, status: Optional[str] = None) -> List[ServiceRequest]:
        query = "SELECT * FROM service_requests WHERE customer_id = ?"
        params: List[str] = [customer_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"
        with self.db.read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [request_from_row(row) for row in rows]

    def cancel(self, request_id: str, customer_id: str, now: Optional[datetime] = None) -> ServiceRequest:
        now_iso = to_iso(now or utc_now())
        with self.db.transaction() as conn:
            owner = conn.execute("SELECT customer_id FROM service_requests WHERE id = ?", (request_id,)).fetchone()
            if not owner or owner["customer_id"] != customer_id:
                raise NotFoundError("Service request not found")
            cancelled = clear_lock(conn, request_id, "cancelled", now_iso, CANCELLABLE_STATUSES)
            if cancelled:
                conn.execute("UPDATE service_requests SET cancelled_at = ? WHERE id = ?", (now_iso, request_id))
            row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
            if not cancelled:
                raise InvalidTransitionError(f"A {row['status']} request can no longer be cancelled.")
        logger.info("Service request cancelled request=%s", request_id)
        return request_from_row(row)

    def delete(self, request_id: str, customer_id: str) -> None:
        """Remove a finished request and its workflow rows. Referral fees are kept."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT status, customer_id FROM service_requests WHERE id = ?",
                (request_id,),
            ).fetchone()
            if not row or row["customer_id"] != customer_id:
                raise NotFoundError("Service request not found")
            cursor = conn.execute(
                f"""
                DELETE FROM service_requests
                WHERE id = ? AND customer_id = ?
                  AND status IN ({", ".join("?" for _ in DELETABLE_STATUSES)})
                """,
                (request_id, customer_id, *DELETABLE_STATUSES),
            )
            if cursor.rowcount == 0:
                raise InvalidTransitionError("Only completed or cancelled requests can be deleted.")
            for table in ("leads", "quotes", "appointments"):
                conn.execute(f"DELETE FROM {table} WHERE request_id = ?", (request_id,))
        logger.info("Service request deleted request=%s", request_id)


request_store = RequestStore(database, lead_dispatcher)
