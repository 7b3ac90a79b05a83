"""Job lock over a service request.

A lock is the pair of columns ``accepted_pro_id`` / ``accept_expires_at`` on
``service_requests``. Every read and write of those columns goes through this module
so there is exactly one definition of "live" (holder set, and either no expiry or an
expiry still in the future). While a selected quote awaits confirmation, a lock it
displaced waits in ``held_over_pro_id`` / ``held_over_expires_at``.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Sequence

from app import config
from app.models import JobLock, Lead, LeadAcceptResult
from app.services.database import Database, database, parse_iso, to_iso, utc_now
from app.services.errors import InvalidTransitionError, LockConflictError, NotFoundError
from app.services.rows import lead_from_row, seconds_until

logger = logging.getLogger(__name__)

LOCKABLE_STATUSES = ("pending", "accepted", "quoted")

# Params: (pro_id, now_iso). Expiry of NULL means fully accepted and never matches here;
# quoting is only done inside a timed accept window.
LIVE_LOCK_HELD_BY_SQL = "accepted_pro_id = ? AND accept_expires_at IS NOT NULL AND accept_expires_at > ?"


def lock_is_live(accepted_pro_id: Optional[str], accept_expires_at: Optional[str], now: datetime) -> bool:
    if not accepted_pro_id:
        return False
    expires = parse_iso(accept_expires_at)
    return expires is None or expires > now


def lock_view(row: Mapping[str, Any], viewer_id: Optional[str], now: datetime) -> JobLock:
    holder = row["accepted_pro_id"]
    expires_at = row["accept_expires_at"]
    live = lock_is_live(holder, expires_at, now)
    return JobLock(
        request_id=row["id"],
        locked=live,
        accepted_pro_id=holder if live else None,
        accept_expires_at=expires_at if live else None,
        locked_by_other=live and holder != viewer_id,
        seconds_remaining=seconds_until(expires_at, now) if live else None,
    )


def hand_over_lock(
    conn: sqlite3.Connection,
    request_id: str,
    pro_id: str,
    until_iso: Optional[str],
    status: str,
    now_iso: str,
) -> None:
    """Give the request to ``pro_id`` and move it to ``status``, inside the caller's transaction.

    A different pro's live lock is set aside, not dropped: ``return_lock`` gives it back
    if this hand-over lapses. ``until_iso`` of None means fully accepted with no window,
    which also discards anything set aside.
    """
    conn.execute(
        """
        UPDATE service_requests
        SET held_over_pro_id = CASE
                WHEN ? IS NULL THEN NULL
                WHEN accepted_pro_id IS NOT NULL AND accepted_pro_id != ?
                     AND accept_expires_at IS NOT NULL AND accept_expires_at > ? THEN accepted_pro_id
                ELSE held_over_pro_id
            END,
            held_over_expires_at = CASE
                WHEN ? IS NULL THEN NULL
                WHEN accepted_pro_id IS NOT NULL AND accepted_pro_id != ?
                     AND accept_expires_at IS NOT NULL AND accept_expires_at > ? THEN accept_expires_at
                ELSE held_over_expires_at
            END,
            accepted_pro_id = ?,
            accept_expires_at = ?,
            status = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (
            until_iso,
            pro_id,
            now_iso,
            until_iso,
            pro_id,
            now_iso,
            pro_id,
            until_iso,
            status,
            now_iso,
            request_id,
        ),
    )


def return_lock(conn: sqlite3.Connection, request_id: str, status: str, now_iso: str, from_status: str) -> int:
    """End a hand-over: the pro set aside gets the request back if their window is still open."""
    cursor = conn.execute(
        """
        UPDATE service_requests
        SET accepted_pro_id = CASE WHEN held_over_expires_at > ? THEN held_over_pro_id END,
            accept_expires_at = CASE WHEN held_over_expires_at > ? THEN held_over_expires_at END,
            held_over_pro_id = NULL,
            held_over_expires_at = NULL,
            status = ?,
            updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (now_iso, now_iso, status, now_iso, request_id, from_status),
    )
    return cursor.rowcount


def clear_lock(
    conn: sqlite3.Connection,
    request_id: str,
    status: str,
    now_iso: str,
    from_statuses: Sequence[str],
) -> int:
    """Drop any holder and move the request to ``status`` if it is in one of ``from_statuses``."""
    cursor = conn.execute(
        f"""
        UPDATE service_requests
        SET accepted_pro_id = NULL, accept_expires_at = NULL,
            held_over_pro_id = NULL, held_over_expires_at = NULL,
            status = ?, updated_at = ?
        WHERE id = ? AND status IN ({", ".join("?" for _ in from_statuses)})
        """,
        (status, now_iso, request_id, *from_statuses),
    )
    return cursor.rowcount


@dataclass
class JobLockManager:
    db: Database
    lock_duration: timedelta = field(default_factory=lambda: timedelta(hours=config.LOCK_DURATION_HOURS))

    def acquire(self, lead_id: str, pro_id: str, now: Optional[datetime] = None) -> LeadAcceptResult:
        """Lock the lead's request for ``pro_id``. ``acquired`` is False when the caller already held it."""
        now = now or utc_now()
        now_iso = to_iso(now)
        expires_iso = to_iso(now + self.lock_duration)

        with self.db.transaction() as conn:
            lead_row = conn.execute("SELECT * FROM leads WHERE id = ?", (lead_id,)).fetchone()
            if not lead_row or lead_row["pro_id"] != pro_id:
                raise NotFoundError("Lead not found")
            if lead_row["status"] == "declined":
                raise InvalidTransitionError("This lead was declined and can no longer be accepted.")
            request_id = lead_row["request_id"]

            cursor = conn.execute(
                f"""
                UPDATE service_requests
                SET accepted_pro_id = ?,
                    accept_expires_at = ?,
                    status = CASE WHEN status = 'quoted' THEN 'quoted' ELSE 'accepted' END,
                    updated_at = ?
                WHERE id = ?
                  AND status IN ({", ".join("?" for _ in LOCKABLE_STATUSES)})
                  AND (accepted_pro_id IS NULL OR (accept_expires_at IS NOT NULL AND accept_expires_at <= ?))
                """,
                (pro_id, expires_iso, now_iso, request_id, *LOCKABLE_STATUSES, now_iso),
            )
            if cursor.rowcount == 0:
                request_row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
                if not request_row:
                    raise NotFoundError("Service request not found")
                if request_row["status"] not in LOCKABLE_STATUSES:
                    raise InvalidTransitionError("This request is no longer accepting professionals.")
                if request_row["accepted_pro_id"] != pro_id:
                    raise LockConflictError()
                # Caller already holds the live lock; the window is not extended.
                return LeadAcceptResult(
                    lead=lead_from_row(lead_row), lock=lock_view(request_row, pro_id, now), acquired=False
                )

            conn.execute(
                "UPDATE leads SET status = 'accepted', updated_at = ? WHERE id = ? AND status = 'new'",
                (now_iso, lead_id),
            )
            updated_lead = conn.execute("SELECT * FROM leads WHERE id = ?", (lead_id,)).fetchone()
            request_row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()

        logger.info("Job lock acquired request=%s pro=%s until=%s", request_id, pro_id, expires_iso)
        return LeadAcceptResult(lead=lead_from_row(updated_lead), lock=lock_view(request_row, pro_id, now))

    def decline(self, lead_id: str, pro_id: str, now: Optional[datetime] = None) -> Lead:
        now_iso = to_iso(now or utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE leads
                SET status = 'declined', updated_at = ?
                WHERE id = ? AND pro_id = ? AND status = 'new'
                """,
                (now_iso, lead_id, pro_id),
            )
            row = conn.execute("SELECT * FROM leads WHERE id = ?", (lead_id,)).fetchone()
            if not row or row["pro_id"] != pro_id:
                raise NotFoundError("Lead not found")
            if cursor.rowcount == 0:
                raise InvalidTransitionError(f"This lead was already {row['status']}.")
        logger.info("Lead declined lead=%s pro=%s", lead_id, pro_id)
        return lead_from_row(row)

    def is_locked(self, request_id: str, now: Optional[datetime] = None) -> bool:
        return self.lock_view(request_id, viewer_id=None, now=now).locked

    def lock_view(self, request_id: str, viewer_id: Optional[str], now: Optional[datetime] = None) -> JobLock:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT id, accepted_pro_id, accept_expires_at FROM service_requests WHERE id = ?",
                (request_id,),
            ).fetchone()
        if not row:
            raise NotFoundError("Service request not found")
        return lock_view(row, viewer_id, now or utc_now())

    def raise_for_missing_lock(self, conn: sqlite3.Connection, request_id: str, pro_id: str, now: datetime) -> None:
        """Explain why a write guarded by LIVE_LOCK_HELD_BY_SQL matched nothing."""
        row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            raise NotFoundError("Service request not found")
        if row["status"] not in ("accepted", "quoted"):
            raise InvalidTransitionError("This request is no longer accepting quotes.")
        if lock_is_live(row["accepted_pro_id"], row["accept_expires_at"], now) and row["accepted_pro_id"] != pro_id:
            raise LockConflictError()
        raise InvalidTransitionError("Your hold on this job has expired. Accept the lead again to quote.")

    def release_expired(self, now: Optional[datetime] = None) -> int:
        now_iso = to_iso(now or utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE service_requests
                SET accepted_pro_id = NULL,
                    accept_expires_at = NULL,
                    status = CASE WHEN status = 'accepted' THEN 'pending' ELSE status END,
                    updated_at = ?
                WHERE accept_expires_at IS NOT NULL
                  AND accept_expires_at <= ?
                  AND status IN ('accepted', 'quoted')
                """,
                (now_iso, now_iso),
            )
            released = cursor.rowcount
        if released:
            logger.info("Released %s expired job locks", released)
        return released


job_lock_manager = JobLockManager(database)
