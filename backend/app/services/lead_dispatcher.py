import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from app import config
from app.models import LeadInboxItem, Professional, ServiceRequest
from app.services.database import SERVICE_CATEGORIES, Database, database, to_iso, utc_now
from app.services.errors import ValidationError
from app.services.job_lock import lock_view
from app.services.rows import lead_from_row, professional_from_row

logger = logging.getLogger(__name__)


@dataclass
class LeadDispatcher:
    db: Database
    max_leads: int = config.MAX_LEADS_PER_REQUEST

    def register_professional(
        self,
        *,
        pro_id: str,
        business_name: str,
        email: str = "",
        categories: List[str],
        service_zips: List[str],
    ) -> Professional:
        cleaned_id = pro_id.strip()
        cleaned_name = business_name.strip()
        if not cleaned_id:
            raise ValidationError("pro_id is required")
        if not cleaned_name:
            raise ValidationError("Business name is required")
        unknown = [c for c in categories if c not in SERVICE_CATEGORIES]
        if unknown:
            raise ValidationError(f"Unknown categories: {', '.join(unknown)}")
        zips = [z.strip() for z in service_zips if z.strip()]
        if not zips:
            raise ValidationError("At least one service zip is required")

        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO professionals (id, business_name, email, categories_json, service_zips_json, status, created_at)
                VALUES (?, ?, ?, ?, ?, 'active', ?)
                ON CONFLICT(id) DO UPDATE SET
                    business_name = excluded.business_name,
                    email = excluded.email,
                    categories_json = excluded.categories_json,
                    service_zips_json = excluded.service_zips_json,
                    status = 'active'
                """,
                (cleaned_id, cleaned_name, email.strip(), json.dumps(categories), json.dumps(zips), to_iso(utc_now())),
            )
            row = conn.execute("SELECT * FROM professionals WHERE id = ?", (cleaned_id,)).fetchone()
        return professional_from_row(row)

    def _eligible_professionals(self, conn: sqlite3.Connection, request: ServiceRequest) -> List[Professional]:
        rows = conn.execute(
            "SELECT * FROM professionals WHERE status = 'active' AND id != ? ORDER BY created_at ASC, id ASC",
            (request.customer_id,),
        ).fetchall()
        serving = [p for p in map(professional_from_row, rows) if request.category in p.categories]
        local = [p for p in serving if request.zip in p.service_zips]
        return (local or serving)[: self.max_leads]

    def dispatch(self, conn: sqlite3.Connection, request: ServiceRequest) -> List[Professional]:
        """Create one lead per eligible pro. Runs inside the caller's transaction."""
        now_iso = to_iso(utc_now())
        targets = self._eligible_professionals(conn, request)
        for pro in targets:
            conn.execute(
                """
                INSERT OR IGNORE INTO leads (id, request_id, pro_id, status, created_at, updated_at)
                VALUES (?, ?, ?, 'new', ?, ?)
                """,
                (f"lead_{uuid4().hex[:10]}", request.id, pro.id, now_iso, now_iso),
            )
        if not targets:
            logger.warning("No professionals matched request=%s category=%s zip=%s", request.id, request.category, request.zip)
        return targets

    def inbox(self, pro_id: str, now: Optional[datetime] = None, include_declined: bool = False) -> List[LeadInboxItem]:
        now = now or utc_now()
        query = """
            SELECT l.*, r.id AS r_id, r.category, r.zip, r.urgency, r.status AS request_status,
                   r.vehicle_year, r.vehicle_make, r.vehicle_model,
                   r.accepted_pro_id, r.accept_expires_at
            FROM leads l
            JOIN service_requests r ON r.id = l.request_id
            WHERE l.pro_id = ?
        """
        if not include_declined:
            query += " AND l.status != 'declined'"
        query += " ORDER BY l.created_at DESC"
        with self.db.read() as conn:
            rows = conn.execute(query, (pro_id,)).fetchall()

        items: List[LeadInboxItem] = []
        for row in rows:
            lock_row = {
                "id": row["r_id"],
                "accepted_pro_id": row["accepted_pro_id"],
                "accept_expires_at": row["accept_expires_at"],
            }
            items.append(
                LeadInboxItem(
                    lead=lead_from_row(row),
                    category=row["category"],
                    vehicle=f"{row['vehicle_year']} {row['vehicle_make']} {row['vehicle_model']}",
                    zip=row["zip"],
                    urgency=row["urgency"],
                    request_status=row["request_status"],
                    lock=lock_view(lock_row, pro_id, now),
                )
            )
        return items


lead_dispatcher = LeadDispatcher(database)
