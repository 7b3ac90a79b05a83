import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from app.models import ReferralFee
from app.services.database import Database, database, to_iso, utc_now
from app.services.errors import InvalidTransitionError, NotFoundError, ValidationError
from app.services.rows import referral_fee_from_row

logger = logging.getLogger(__name__)


@dataclass
class ReferralFeeLedger:
    """Referral fees owed by pros on selected quotes.

    Amounts are entered by staff when the fee is collected; nothing computes them.
    """

    db: Database

    def list_fees(self, status: Optional[str] = None, pro_id: Optional[str] = None) -> List[ReferralFee]:
        query = "SELECT * FROM referral_fees WHERE 1 = 1"
        params: List[str] = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if pro_id:
            query += " AND pro_id = ?"
            params.append(pro_id)
        query += " ORDER BY created_at DESC"
        with self.db.read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [referral_fee_from_row(row) for row in rows]

    def get_for_quote(self, quote_id: str) -> Optional[ReferralFee]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM referral_fees WHERE quote_id = ?", (quote_id,)).fetchone()
        return referral_fee_from_row(row) if row else None

    def mark_paid(
        self,
        fee_id: str,
        amount: Optional[float] = None,
        payment_method: str = "manual",
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> ReferralFee:
        if amount is not None and amount < 0:
            raise ValidationError("Amount can't be negative")
        now_iso = to_iso(now or utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE referral_fees
                SET status = 'paid', amount = COALESCE(?, amount), payment_method = ?, notes = ?,
                    paid_at = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (amount, payment_method.strip() or "manual", notes.strip(), now_iso, now_iso, fee_id),
            )
            row = conn.execute("SELECT * FROM referral_fees WHERE id = ?", (fee_id,)).fetchone()
            if not row:
                raise NotFoundError("Referral fee not found")
            if cursor.rowcount == 0:
                raise InvalidTransitionError(f"A {row['status']} referral fee can't be marked paid.")
        logger.info("Referral fee paid fee=%s method=%s", fee_id, row["payment_method"])
        return referral_fee_from_row(row)


referral_fee_ledger = ReferralFeeLedger(database)
