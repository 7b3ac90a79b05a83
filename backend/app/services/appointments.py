import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from app.models import Appointment, ReferralFee
from app.services.database import Database, database, parse_iso, to_iso, utc_now
from app.services.errors import InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from app.services.job_lock import clear_lock
from app.services.rows import appointment_from_row, referral_fee_from_row

logger = logging.getLogger(__name__)

CUSTOMER_CANCEL_REASONS = {"cancelled_by_customer", "cancelled_after_requote", "cancelled_off_platform"}
PRO_CANCEL_REASONS = {"no_show", "cancelled_off_platform"}
REFUNDABLE_REASONS = {"cancelled_by_customer", "cancelled_after_requote", "no_show"}
CANCELLABLE_STATUSES = ("scheduled", "in_progress")
JOB_STATUSES = ("scheduled", "in_progress", "completed")
STATUS_TRANSITIONS = {
    "in_progress": ("scheduled",),
    "completed": ("in_progress",),
}


@dataclass
class AppointmentBook:
    db: Database

    def get(self, appointment_id: str, viewer_id: str) -> Appointment:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
        if not row or viewer_id not in (row["pro_id"], row["customer_id"]):
            raise NotFoundError("Appointment not found")
        return appointment_from_row(row)

    def list_for_user(self, user_id: str, status: Optional[str] = None) -> List[Appointment]:
        query = "SELECT * FROM appointments WHERE (customer_id = ? OR pro_id = ?)"
        params: List[str] = [user_id, user_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY starts_at ASC"
        with self.db.read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [appointment_from_row(row) for row in rows]

    def jobs_for_pro(self, pro_id: str) -> List[Appointment]:
        """Confirmed work for a pro: scheduled, in progress and completed appointments."""
        with self.db.read() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM appointments
                WHERE pro_id = ? AND status IN ({", ".join("?" for _ in JOB_STATUSES)})
                ORDER BY starts_at ASC
                """,
                (pro_id, *JOB_STATUSES),
            ).fetchall()
        return [appointment_from_row(row) for row in rows]

    def schedule(
        self,
        appointment_id: str,
        pro_id: str,
        starts_at: str,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> Appointment:
        try:
            parsed = parse_iso(starts_at)
        except ValueError as exc:
            raise ValidationError("starts_at must be an ISO-8601 timestamp") from exc
        if parsed is None:
            raise ValidationError("starts_at is required")
        now_iso = to_iso(now or utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE appointments
                SET starts_at = ?, notes = ?, updated_at = ?
                WHERE id = ? AND pro_id = ? AND status = 'scheduled'
                """,
                (to_iso(parsed), notes.strip(), now_iso, appointment_id, pro_id),
            )
            row = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
            if not row or row["pro_id"] != pro_id:
                raise NotFoundError("Appointment not found")
            if cursor.rowcount == 0:
                raise InvalidTransitionError(f"A {row['status']} appointment can't be rescheduled.")
        logger.info("Appointment scheduled appointment=%s starts_at=%s", appointment_id, row["starts_at"])
        return appointment_from_row(row)

    def update_status(
        self,
        appointment_id: str,
        actor_id: str,
        status: str,
        now: Optional[datetime] = None,
    ) -> Appointment:
        allowed_from = STATUS_TRANSITIONS.get(status)
        if allowed_from is None:
            raise ValidationError(f"Invalid appointment status: {status}")
        now_iso = to_iso(now or utc_now())
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
            if not row or actor_id not in (row["pro_id"], row["customer_id"]):
                raise NotFoundError("Appointment not found")
            if actor_id != row["pro_id"]:
                raise PermissionDeniedError("Only the assigned professional can update this appointment.")
            cursor = conn.execute(
                f"""
                UPDATE appointments SET status = ?, updated_at = ?
                WHERE id = ? AND status IN ({", ".join("?" for _ in allowed_from)})
                """,
                (status, now_iso, appointment_id, *allowed_from),
            )
            if cursor.rowcount == 0:
                raise InvalidTransitionError(f"Can't move a {row['status']} appointment to {status}.")
            if status == "completed":
                conn.execute(
                    "UPDATE service_requests SET status = 'completed', updated_at = ? WHERE id = ? AND status = 'scheduled'",
                    (now_iso, row["request_id"]),
                )
            row = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
        logger.info("Appointment status appointment=%s status=%s", appointment_id, status)
        return appointment_from_row(row)

    def cancel(
        self,
        appointment_id: str,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Appointment, Optional[ReferralFee]]:
        """Cancel a confirmed appointment and reopen its request for another quote.

        A pending fee is cancelled; a paid fee is marked refunded when the reason is
        refundable. No payment provider is called.
        """
        now_iso = to_iso(now or utc_now())
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
            if not row or actor_id not in (row["pro_id"], row["customer_id"]):
                raise NotFoundError("Appointment not found")
            allowed = CUSTOMER_CANCEL_REASONS if actor_id == row["customer_id"] else PRO_CANCEL_REASONS
            if reason not in allowed:
                raise PermissionDeniedError(f"You can't cancel with reason '{reason}'.")
            cursor = conn.execute(
                f"""
                UPDATE appointments
                SET status = 'cancelled', cancellation_reason = ?, updated_at = ?
                WHERE id = ? AND status IN ({", ".join("?" for _ in CANCELLABLE_STATUSES)})
                """,
                (reason, now_iso, appointment_id, *CANCELLABLE_STATUSES),
            )
            if cursor.rowcount == 0:
                raise InvalidTransitionError(f"A {row['status']} appointment can't be cancelled.")

            conn.execute(
                "UPDATE referral_fees SET status = 'cancelled', updated_at = ? WHERE quote_id = ? AND status = 'pending'",
                (now_iso, row["quote_id"]),
            )
            if reason in REFUNDABLE_REASONS:
                conn.execute(
                    "UPDATE referral_fees SET status = 'refunded', updated_at = ? WHERE quote_id = ? AND status = 'paid'",
                    (now_iso, row["quote_id"]),
                )
            # The cancelled quote is closed so its pro may quote the reopened request again.
            conn.execute(
                "UPDATE quotes SET status = 'declined', updated_at = ? WHERE id = ? AND status = 'confirmed'",
                (now_iso, row["quote_id"]),
            )
            clear_lock(conn, row["request_id"], "quoted", now_iso, ("scheduled",))
            row = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
            fee_row = conn.execute("SELECT * FROM referral_fees WHERE quote_id = ?", (row["quote_id"],)).fetchone()

        logger.info("Appointment cancelled appointment=%s reason=%s", appointment_id, reason)
        return appointment_from_row(row), referral_fee_from_row(fee_row) if fee_row else None


appointment_book = AppointmentBook(database)
