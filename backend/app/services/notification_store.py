import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import uuid4

from app.models import NotificationRecord
from app.services.database import Database, database, to_iso, utc_now
from app.services.push_sender import PushSender, push_sender

logger = logging.getLogger(__name__)

INBOX_LIMIT = 100


def _record_from_row(row) -> NotificationRecord:
    return NotificationRecord(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        body=row["body"],
        category=row["category"],
        read=bool(row["read"]),
        created_at=row["created_at"],
        deep_link=row["deep_link"],
    )


@dataclass
class NotificationStore:
    """In-app inbox stored beside the workflow rows, with push fan-out per device."""

    db: Database
    sender: PushSender

    def register_device_token(self, user_id: str, device_token: str, platform: str = "android") -> bool:
        token = device_token.strip()
        if not token:
            return False
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO device_tokens (user_id, token, platform, created_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, token) DO UPDATE SET platform = excluded.platform
                """,
                (user_id, token, platform, to_iso(utc_now())),
            )
        return True

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        """Save the record, then push it. Push errors propagate after the record is saved."""
        record_id = f"ntf_{uuid4().hex[:10]}"
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO notifications (id, user_id, title, body, category, deep_link, read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (record_id, user_id, title, body, category, deep_link, to_iso(utc_now())),
            )
            row = conn.execute("SELECT * FROM notifications WHERE id = ?", (record_id,)).fetchone()
            tokens = [
                token_row["token"]
                for token_row in conn.execute("SELECT token FROM device_tokens WHERE user_id = ?", (user_id,))
            ]
        record = _record_from_row(row)

        invalid_tokens = self.sender.send(
            tokens=tokens,
            title=title,
            body=body,
            data={"notification_id": record.id, "category": category, "deep_link": deep_link or ""},
        )
        if invalid_tokens:
            with self.db.transaction() as conn:
                conn.executemany(
                    "DELETE FROM device_tokens WHERE user_id = ? AND token = ?",
                    [(user_id, token) for token in invalid_tokens],
                )
            logger.info("Dropped %s invalid device tokens for user=%s", len(invalid_tokens), user_id)
        return record

    def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        category: Optional[str] = None,
    ) -> List[NotificationRecord]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        params: List[object] = [user_id]
        if unread_only:
            query += " AND read = 0"
        if category:
            query += " AND category = ?"
            params.append(category)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(INBOX_LIMIT)
        with self.db.read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_record_from_row(row) for row in rows]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE notifications SET read = 1 WHERE id = ? AND user_id = ?",
                (notification_id, user_id),
            )
            row = conn.execute(
                "SELECT * FROM notifications WHERE id = ? AND user_id = ?",
                (notification_id, user_id),
            ).fetchone()
        return _record_from_row(row) if row else None


notification_store = NotificationStore(database, push_sender)
