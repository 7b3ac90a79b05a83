"""Confirmation window for selected quotes and the sweep that closes lapsed ones.

The stored ``confirmation_timer_expires_at`` is the only authority. Confirmation writes
require ``expires_at > now`` and the sweep requires ``expires_at <= now``, so for a
given instant at most one of them can match a quote.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from app import config
from app.models import SweepResult
from app.services.database import Database, database, to_iso, utc_now
from app.services.errors import StorageFailureError
from app.services.job_lock import JobLockManager, job_lock_manager, return_lock
from app.services.notification_dispatcher import NotificationDispatcher, notification_dispatcher

logger = logging.getLogger(__name__)


def timer_minutes_for(urgency: Optional[str]) -> int:
    minutes = config.CONFIRMATION_TIMER_MINUTES
    return minutes.get(urgency or config.DEFAULT_URGENCY, minutes[config.DEFAULT_URGENCY])


def timer_expires_at(minutes: int, now: datetime) -> str:
    return to_iso(now + timedelta(minutes=minutes))


@dataclass
class ExpiredQuote:
    quote_id: str
    request_id: str
    pro_id: str
    customer_id: str
    contact_email: str
    pro_email: str
    business_name: str
    vehicle: str
    estimated_price: float
    appointments_expired: int


@dataclass
class ExpirationSweep:
    db: Database
    job_locks: JobLockManager
    notifier: Optional[NotificationDispatcher] = None

    def run(self, now: Optional[datetime] = None) -> SweepResult:
        """Expire every lapsed pending confirmation. Safe to run repeatedly or concurrently."""
        now = now or utc_now()
        now_iso = to_iso(now)
        with self.db.read() as conn:
            candidates = [
                row["id"]
                for row in conn.execute(
                    """
                    SELECT id FROM quotes
                    WHERE status = 'pending_confirmation'
                      AND confirmation_timer_expires_at IS NOT NULL
                      AND confirmation_timer_expires_at <= ?
                    ORDER BY confirmation_timer_expires_at ASC
                    """,
                    (now_iso,),
                ).fetchall()
            ]

        expired: List[ExpiredQuote] = []
        failed = 0
        for quote_id in candidates:
            try:
                outcome = self._expire_quote(quote_id, now_iso)
            except StorageFailureError:
                failed += 1
                logger.warning("Sweep could not expire quote=%s, will retry next run", quote_id)
                continue
            if outcome is not None:
                expired.append(outcome)

        orphans = self._expire_orphan_appointments(now_iso)
        released = self.job_locks.release_expired(now)
        attempted = self._notify(expired)

        result = SweepResult(
            expired_quotes=len(expired),
            expired_appointments=orphans + sum(item.appointments_expired for item in expired),
            released_locks=released,
            failed_quotes=failed,
            notifications_attempted=attempted,
            ran_at=now_iso,
        )
        logger.info(
            "Expiration sweep done quotes=%s appointments=%s locks=%s failed=%s notifications=%s",
            result.expired_quotes,
            result.expired_appointments,
            result.released_locks,
            result.failed_quotes,
            result.notifications_attempted,
        )
        return result

    def _expire_quote(self, quote_id: str, now_iso: str) -> Optional[ExpiredQuote]:
        # One transaction per quote: a failure here leaves other quotes' cascades intact.
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE quotes
                SET status = 'expired', updated_at = ?
                WHERE id = ?
                  AND status = 'pending_confirmation'
                  AND confirmation_timer_expires_at <= ?
                """,
                (now_iso, quote_id, now_iso),
            )
            if cursor.rowcount == 0:
                return None
            appointments = conn.execute(
                """
                UPDATE appointments
                SET status = 'expired', expired_at = ?, updated_at = ?
                WHERE quote_id = ? AND status = 'pending_confirmation'
                """,
                (now_iso, now_iso, quote_id),
            ).rowcount
            conn.execute(
                "UPDATE referral_fees SET status = 'expired', updated_at = ? WHERE quote_id = ? AND status = 'pending'",
                (now_iso, quote_id),
            )
            row = conn.execute(
                """
                SELECT q.request_id, q.pro_id, q.estimated_price,
                       r.customer_id, r.contact_email, r.vehicle_year, r.vehicle_make, r.vehicle_model,
                       p.business_name, p.email AS pro_email
                FROM quotes q
                JOIN service_requests r ON r.id = q.request_id
                LEFT JOIN professionals p ON p.id = q.pro_id
                WHERE q.id = ?
                """,
                (quote_id,),
            ).fetchone()
            # Reopen the request so the customer can select another quote.
            return_lock(conn, row["request_id"], "quoted", now_iso, "pending_confirmation")

        logger.info("Quote expired quote=%s request=%s", quote_id, row["request_id"])
        return ExpiredQuote(
            quote_id=quote_id,
            request_id=row["request_id"],
            pro_id=row["pro_id"],
            customer_id=row["customer_id"],
            contact_email=row["contact_email"] or "",
            pro_email=row["pro_email"] or "",
            business_name=row["business_name"] or "Your professional",
            vehicle=f"{row['vehicle_year']} {row['vehicle_make']} {row['vehicle_model']}",
            estimated_price=float(row["estimated_price"]),
            appointments_expired=appointments,
        )

    def _expire_orphan_appointments(self, now_iso: str) -> int:
        """Expire pending appointments whose quote is no longer awaiting confirmation."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE appointments
                SET status = 'expired', expired_at = ?, updated_at = ?
                WHERE status = 'pending_confirmation'
                  AND confirmation_expires_at IS NOT NULL
                  AND confirmation_expires_at <= ?
                  AND NOT EXISTS (
                      SELECT 1 FROM quotes q
                      WHERE q.id = appointments.quote_id AND q.status = 'pending_confirmation'
                  )
                """,
                (now_iso, now_iso, now_iso),
            )
            count = cursor.rowcount
        if count:
            logger.info("Expired %s orphaned pending appointments", count)
        return count

    def _notify(self, expired: List[ExpiredQuote]) -> int:
        if self.notifier is None:
            return 0
        attempted = 0
        for item in expired:
            data = {
                "quote_id": item.quote_id,
                "request_id": item.request_id,
                "business_name": item.business_name,
                "vehicle": item.vehicle,
                "estimated_price": item.estimated_price,
            }
            self.notifier.dispatch(item.customer_id, "quote_expired", data, email=item.contact_email or None)
            self.notifier.dispatch(item.pro_id, "quote_expired_pro", data, email=item.pro_email or None)
            attempted += 2
        return attempted


expiration_sweep = ExpirationSweep(database, job_lock_manager, notification_dispatcher)
