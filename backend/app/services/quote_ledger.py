"""Quotes against a service request and the customer/pro selection handshake.

Quote states: submitted -> pending_confirmation -> confirmed | expired, and
submitted -> declined. Each transition is one conditional UPDATE checked by rowcount;
the dependent appointment, referral fee and request rows change in the same
transaction.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4

from app.models import Quote, QuoteConfirmation, QuoteSelection
from app.services.confirmation_timer import timer_expires_at, timer_minutes_for
from app.services.database import Database, database, parse_iso, to_iso, utc_now
from app.services.errors import InvalidTransitionError, NotFoundError, ValidationError
from app.services.job_lock import LIVE_LOCK_HELD_BY_SQL, JobLockManager, hand_over_lock, job_lock_manager
from app.services.rows import appointment_from_row, quote_from_row, referral_fee_from_row

logger = logging.getLogger(__name__)

OPEN_QUOTE_STATUSES = ("submitted", "pending_confirmation", "confirmed")
QUOTABLE_REQUEST_STATUSES = ("accepted", "quoted")
DEFAULT_APPOINTMENT_LEAD_TIME = timedelta(hours=24)

ANOTHER_PENDING_MESSAGE = "Another quote for this request is already awaiting confirmation."
EXPIRED_MESSAGE = "This quote has expired."


@dataclass
class QuoteLedger:
    db: Database
    job_locks: JobLockManager

    def submit(
        self,
        request_id: str,
        pro_id: str,
        estimated_price: float,
        description: str,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> Quote:
        now = now or utc_now()
        self._validate_quote_fields(estimated_price, description)
        with self.db.transaction() as conn:
            quote_id = self._insert_quote(
                conn,
                request_id=request_id,
                pro_id=pro_id,
                estimated_price=estimated_price,
                description=description,
                notes=notes,
                now=now,
            )
            row = conn.execute("SELECT * FROM quotes WHERE id = ?", (quote_id,)).fetchone()
        logger.info("Quote submitted quote=%s request=%s pro=%s", quote_id, request_id, pro_id)
        return quote_from_row(row, now)

    def revise(
        self,
        quote_id: str,
        pro_id: str,
        estimated_price: float,
        description: str,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> Quote:
        """Replace the pro's own submitted quote with a new one linked back to it."""
        now = now or utc_now()
        now_iso = to_iso(now)
        self._validate_quote_fields(estimated_price, description)
        with self.db.transaction() as conn:
            original = conn.execute("SELECT * FROM quotes WHERE id = ?", (quote_id,)).fetchone()
            if not original or original["pro_id"] != pro_id:
                raise NotFoundError("Quote not found")
            cursor = conn.execute(
                f"""
                UPDATE quotes
                SET status = 'declined', updated_at = ?
                WHERE id = ? AND status = 'submitted'
                  AND EXISTS (
                      SELECT 1 FROM service_requests
                      WHERE id = quotes.request_id
                        AND status IN ('accepted', 'quoted')
                        AND {LIVE_LOCK_HELD_BY_SQL}
                  )
                """,
                (now_iso, quote_id, pro_id, now_iso),
            )
            if cursor.rowcount == 0:
                if original["status"] != "submitted":
                    raise InvalidTransitionError("Only a submitted quote can be revised.")
                self.job_locks.raise_for_missing_lock(conn, original["request_id"], pro_id, now)
            new_id = self._insert_quote(
                conn,
                request_id=original["request_id"],
                pro_id=pro_id,
                estimated_price=estimated_price,
                description=description,
                notes=notes,
                now=now,
                original_quote_id=quote_id,
            )
            row = conn.execute("SELECT * FROM quotes WHERE id = ?", (new_id,)).fetchone()
        logger.info("Quote revised original=%s new=%s pro=%s", quote_id, new_id, pro_id)
        return quote_from_row(row, now)

    def decline(self, quote_id: str, pro_id: str, now: Optional[datetime] = None) -> Quote:
        now_iso = to_iso(now or utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE quotes SET status = 'declined', updated_at = ?
                WHERE id = ? AND pro_id = ? AND status = 'submitted'
                """,
                (now_iso, quote_id, pro_id),
            )
            row = conn.execute("SELECT * FROM quotes WHERE id = ?", (quote_id,)).fetchone()
            if not row or row["pro_id"] != pro_id:
                raise NotFoundError("Quote not found")
            if cursor.rowcount == 0:
                raise InvalidTransitionError(f"A {row['status']} quote can no longer be declined.")
        logger.info("Quote declined quote=%s pro=%s", quote_id, pro_id)
        return quote_from_row(row)

    def select(
        self,
        quote_id: str,
        customer_id: str,
        starts_at: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QuoteSelection:
        """Customer picks a quote; the pro then has the confirmation window to accept it."""
        now = now or utc_now()
        now_iso = to_iso(now)
        appointment_start = self._appointment_start(starts_at, now)

        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT q.*, r.customer_id, r.status AS request_status
                FROM quotes q JOIN service_requests r ON r.id = q.request_id
                WHERE q.id = ?
                """,
                (quote_id,),
            ).fetchone()
            if not row or row["customer_id"] != customer_id:
                raise NotFoundError("Quote not found")
            expires_iso = timer_expires_at(int(row["confirmation_timer_minutes"]), now)

            try:
                cursor = conn.execute(
                    f"""
                    UPDATE quotes
                    SET status = 'pending_confirmation', confirmation_timer_expires_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'submitted'
                      AND NOT EXISTS (
                          SELECT 1 FROM quotes other
                          WHERE other.request_id = quotes.request_id AND other.status = 'pending_confirmation'
                      )
                      AND EXISTS (
                          SELECT 1 FROM service_requests r
                          WHERE r.id = quotes.request_id
                            AND r.status IN ({", ".join("?" for _ in QUOTABLE_REQUEST_STATUSES)})
                      )
                    """,
                    (expires_iso, now_iso, quote_id, *QUOTABLE_REQUEST_STATUSES),
                )
            except sqlite3.IntegrityError as exc:
                raise InvalidTransitionError(ANOTHER_PENDING_MESSAGE) from exc
            if cursor.rowcount == 0:
                self._raise_for_unselectable(conn, row)

            appointment_id = f"apt_{uuid4().hex[:10]}"
            conn.execute(
                """
                INSERT INTO appointments (
                    id, request_id, quote_id, pro_id, customer_id, starts_at, status,
                    confirmation_expires_at, notes, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'pending_confirmation', ?, '', ?, ?)
                """,
                (
                    appointment_id,
                    row["request_id"],
                    quote_id,
                    row["pro_id"],
                    customer_id,
                    appointment_start,
                    expires_iso,
                    now_iso,
                    now_iso,
                ),
            )
            conn.execute(
                """
                INSERT INTO referral_fees (id, request_id, quote_id, pro_id, amount, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, 'pending', ?, ?)
                ON CONFLICT(quote_id) DO UPDATE SET status = 'pending', updated_at = excluded.updated_at
                """,
                (f"fee_{uuid4().hex[:10]}", row["request_id"], quote_id, row["pro_id"], now_iso, now_iso),
            )
            # The selected pro holds the request until the confirmation window closes; a live
            # lock held by another pro is set aside and handed back if the quote expires.
            hand_over_lock(conn, row["request_id"], row["pro_id"], expires_iso, "pending_confirmation", now_iso)

            quote_row = conn.execute("SELECT * FROM quotes WHERE id = ?", (quote_id,)).fetchone()
            appointment_row = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
            fee_row = conn.execute("SELECT * FROM referral_fees WHERE quote_id = ?", (quote_id,)).fetchone()

        logger.info("Quote selected quote=%s request=%s expires=%s", quote_id, row["request_id"], expires_iso)
        return QuoteSelection(
            quote=quote_from_row(quote_row, now),
            appointment=appointment_from_row(appointment_row),
            referral_fee=referral_fee_from_row(fee_row),
        )

    def confirm(self, quote_id: str, pro_id: str, now: Optional[datetime] = None) -> QuoteConfirmation:
        now = now or utc_now()
        now_iso = to_iso(now)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE quotes
                SET status = 'confirmed', updated_at = ?
                WHERE id = ? AND pro_id = ?
                  AND status = 'pending_confirmation'
                  AND confirmation_timer_expires_at > ?
                """,
                (now_iso, quote_id, pro_id, now_iso),
            )
            if cursor.rowcount == 0:
                row = conn.execute("SELECT pro_id, status FROM quotes WHERE id = ?", (quote_id,)).fetchone()
                if not row or row["pro_id"] != pro_id:
                    raise NotFoundError("Quote not found")
                if row["status"] in ("pending_confirmation", "expired"):
                    raise InvalidTransitionError(EXPIRED_MESSAGE)
                raise InvalidTransitionError(f"This quote is not awaiting confirmation (status: {row['status']}).")

            conn.execute(
                """
                UPDATE appointments SET status = 'scheduled', updated_at = ?
                WHERE quote_id = ? AND status = 'pending_confirmation'
                """,
                (now_iso, quote_id),
            )
            quote_row = conn.execute("SELECT * FROM quotes WHERE id = ?", (quote_id,)).fetchone()
            # Fully accepted: the holder stays, the accept window no longer applies.
            hand_over_lock(conn, quote_row["request_id"], pro_id, None, "scheduled", now_iso)
            appointment_row = conn.execute("SELECT * FROM appointments WHERE quote_id = ?", (quote_id,)).fetchone()

        logger.info("Quote confirmed quote=%s pro=%s", quote_id, pro_id)
        return QuoteConfirmation(quote=quote_from_row(quote_row, now), appointment=appointment_from_row(appointment_row))

    def get(self, quote_id: str, viewer_id: str, now: Optional[datetime] = None) -> Quote:
        with self.db.read() as conn:
            row = conn.execute(
                """
                SELECT q.*, r.customer_id FROM quotes q
                JOIN service_requests r ON r.id = q.request_id
                WHERE q.id = ?
                """,
                (quote_id,),
            ).fetchone()
        if not row or viewer_id not in (row["pro_id"], row["customer_id"]):
            raise NotFoundError("Quote not found")
        return quote_from_row(row, now or utc_now())

    def list_for_request(self, request_id: str, viewer_id: str, now: Optional[datetime] = None) -> List[Quote]:
        """The customer sees every quote; a pro sees only their own."""
        now = now or utc_now()
        with self.db.read() as conn:
            request_row = conn.execute(
                "SELECT customer_id FROM service_requests WHERE id = ?",
                (request_id,),
            ).fetchone()
            if not request_row:
                raise NotFoundError("Service request not found")
            if request_row["customer_id"] == viewer_id:
                rows = conn.execute(
                    "SELECT * FROM quotes WHERE request_id = ? ORDER BY created_at ASC",
                    (request_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM quotes WHERE request_id = ? AND pro_id = ? ORDER BY created_at ASC",
                    (request_id, viewer_id),
                ).fetchall()
        return [quote_from_row(row, now) for row in rows]

    @staticmethod
    def _validate_quote_fields(estimated_price: float, description: str) -> None:
        if estimated_price is None or estimated_price <= 0:
            raise ValidationError("Estimated price must be greater than zero")
        if not description or not description.strip():
            raise ValidationError("Description is required")

    @staticmethod
    def _appointment_start(starts_at: Optional[str], now: datetime) -> str:
        if not starts_at:
            return to_iso(now + DEFAULT_APPOINTMENT_LEAD_TIME)
        try:
            parsed = parse_iso(starts_at)
        except ValueError as exc:
            raise ValidationError("starts_at must be an ISO-8601 timestamp") from exc
        return to_iso(parsed)

    def _insert_quote(
        self,
        conn: sqlite3.Connection,
        *,
        request_id: str,
        pro_id: str,
        estimated_price: float,
        description: str,
        notes: str,
        now: datetime,
        original_quote_id: Optional[str] = None,
    ) -> str:
        now_iso = to_iso(now)
        request_row = conn.execute("SELECT urgency FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        if not request_row:
            raise NotFoundError("Service request not found")
        open_quote = conn.execute(
            f"""
            SELECT id FROM quotes
            WHERE request_id = ? AND pro_id = ? AND status IN ({", ".join("?" for _ in OPEN_QUOTE_STATUSES)})
            """,
            (request_id, pro_id, *OPEN_QUOTE_STATUSES),
        ).fetchone()
        if open_quote:
            raise InvalidTransitionError("You already have an open quote on this request. Revise it instead.")

        quote_id = f"quote_{uuid4().hex[:10]}"
        cursor = conn.execute(
            f"""
            INSERT INTO quotes (
                id, request_id, pro_id, estimated_price, description, notes, status,
                confirmation_timer_minutes, confirmation_timer_expires_at, is_revised, original_quote_id,
                created_at, updated_at
            )
            SELECT ?, id, ?, ?, ?, ?, 'submitted', ?, NULL, ?, ?, ?, ?
            FROM service_requests
            WHERE id = ?
              AND status IN ({", ".join("?" for _ in QUOTABLE_REQUEST_STATUSES)})
              AND {LIVE_LOCK_HELD_BY_SQL}
            """,
            (
                quote_id,
                pro_id,
                float(estimated_price),
                description.strip(),
                notes.strip(),
                timer_minutes_for(request_row["urgency"]),
                1 if original_quote_id else 0,
                original_quote_id,
                now_iso,
                now_iso,
                request_id,
                *QUOTABLE_REQUEST_STATUSES,
                pro_id,
                now_iso,
            ),
        )
        if cursor.rowcount == 0:
            self.job_locks.raise_for_missing_lock(conn, request_id, pro_id, now)
        conn.execute(
            "UPDATE service_requests SET status = 'quoted', updated_at = ? WHERE id = ? AND status = 'accepted'",
            (now_iso, request_id),
        )
        return quote_id

    @staticmethod
    def _raise_for_unselectable(conn: sqlite3.Connection, row: sqlite3.Row) -> None:
        status = row["status"]
        if status == "expired":
            raise InvalidTransitionError(EXPIRED_MESSAGE)
        if status == "pending_confirmation":
            raise InvalidTransitionError("This quote is already awaiting confirmation.")
        if status != "submitted":
            raise InvalidTransitionError(f"A {status} quote can no longer be selected.")
        other_pending = conn.execute(
            "SELECT 1 FROM quotes WHERE request_id = ? AND status = 'pending_confirmation'",
            (row["request_id"],),
        ).fetchone()
        if other_pending or row["request_status"] == "pending_confirmation":
            raise InvalidTransitionError(ANOTHER_PENDING_MESSAGE)
        raise InvalidTransitionError("This request is no longer accepting quote selections.")


quote_ledger = QuoteLedger(database, job_lock_manager)
