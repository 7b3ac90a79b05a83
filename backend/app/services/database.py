import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Iterator, Optional

from app import config
from app.services.errors import StorageFailureError

logger = logging.getLogger(__name__)


SERVICE_CATEGORIES = {
    "oil_change": "Oil Change",
    "brakes": "Brakes",
    "diagnostics": "Diagnostics",
    "tires": "Tires",
    "battery": "Battery",
    "ac_repair": "A/C Repair",
    "engine": "Engine",
    "transmission": "Transmission",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    # Fixed precision keeps string order equal to time order in SQL comparisons.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # fromisoformat only accepts the "Z" suffix from Python 3.11 on.
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Database:
    db_path: str
    busy_timeout_seconds: int = config.DB_BUSY_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()
        self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_seconds, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block as one write transaction.

        ``BEGIN IMMEDIATE`` takes SQLite's write lock up front, so every conditional
        UPDATE inside the block sees and changes one consistent snapshot. Any sqlite
        error rolls the whole block back and surfaces as StorageFailureError.
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                logger.exception("Store write failed")
                raise StorageFailureError() from exc
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
            except sqlite3.Error as exc:
                logger.exception("Store read failed")
                raise StorageFailureError() from exc
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS professionals (
                        id TEXT PRIMARY KEY,
                        business_name TEXT NOT NULL,
                        email TEXT NOT NULL DEFAULT '',
                        categories_json TEXT NOT NULL DEFAULT '[]',
                        service_zips_json TEXT NOT NULL DEFAULT '[]',
                        status TEXT NOT NULL DEFAULT 'active',
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_requests (
                        id TEXT PRIMARY KEY,
                        customer_id TEXT NOT NULL,
                        contact_email TEXT NOT NULL DEFAULT '',
                        vehicle_year INTEGER NOT NULL,
                        vehicle_make TEXT NOT NULL,
                        vehicle_model TEXT NOT NULL,
                        category TEXT NOT NULL,
                        zip TEXT NOT NULL,
                        address TEXT NOT NULL DEFAULT '',
                        description TEXT NOT NULL DEFAULT '',
                        urgency TEXT NOT NULL DEFAULT 'week',
                        status TEXT NOT NULL,
                        accepted_pro_id TEXT,
                        accept_expires_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS leads (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        pro_id TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'new',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        UNIQUE (request_id, pro_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS quotes (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        pro_id TEXT NOT NULL,
                        estimated_price REAL NOT NULL,
                        description TEXT NOT NULL,
                        notes TEXT NOT NULL DEFAULT '',
                        status TEXT NOT NULL,
                        confirmation_timer_minutes INTEGER NOT NULL,
                        confirmation_timer_expires_at TEXT,
                        is_revised INTEGER NOT NULL DEFAULT 0,
                        original_quote_id TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                # At most one quote per request may await confirmation.
                conn.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_quotes_one_pending_per_request
                    ON quotes (request_id) WHERE status = 'pending_confirmation'
                    """
                )
                conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_quotes_status_expiry
                    ON quotes (status, confirmation_timer_expires_at)
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS appointments (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        quote_id TEXT NOT NULL UNIQUE,
                        pro_id TEXT NOT NULL,
                        customer_id TEXT NOT NULL,
                        starts_at TEXT NOT NULL,
                        status TEXT NOT NULL,
                        confirmation_expires_at TEXT,
                        cancellation_reason TEXT,
                        notes TEXT NOT NULL DEFAULT '',
                        expired_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS referral_fees (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        quote_id TEXT NOT NULL UNIQUE,
                        pro_id TEXT NOT NULL,
                        amount REAL NOT NULL DEFAULT 0,
                        status TEXT NOT NULL,
                        payment_method TEXT,
                        notes TEXT NOT NULL DEFAULT '',
                        paid_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS notifications (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        body TEXT NOT NULL,
                        category TEXT NOT NULL DEFAULT 'system',
                        deep_link TEXT,
                        read INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications (user_id, created_at)"
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS device_tokens (
                        user_id TEXT NOT NULL,
                        token TEXT NOT NULL,
                        platform TEXT NOT NULL DEFAULT 'android',
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (user_id, token)
                    )
                    """
                )
                self._ensure_column(conn, "service_requests", "cancelled_at", "TEXT")
                self._ensure_column(conn, "service_requests", "held_over_pro_id", "TEXT")
                self._ensure_column(conn, "service_requests", "held_over_expires_at", "TEXT")
                conn.commit()
            finally:
                conn.close()

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in columns}
        if column in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _seed_if_needed(self) -> None:
        seed_professionals = [
            {
                "id": "pro_1",
                "business_name": "Precision Auto Care",
                "email": "shop@precisionauto.example",
                "categories": ["oil_change", "brakes", "diagnostics"],
                "service_zips": ["94103", "94110"],
            },
            {
                "id": "pro_2",
                "business_name": "Bay Brake & Tire",
                "email": "service@baybrake.example",
                "categories": ["brakes", "tires"],
                "service_zips": ["94103", "94107"],
            },
            {
                "id": "pro_3",
                "business_name": "Mission Diagnostics",
                "email": "hello@missiondiag.example",
                "categories": ["diagnostics", "battery", "oil_change"],
                "service_zips": ["94110"],
            },
            {
                "id": "pro_4",
                "business_name": "Sunset Mobile Mechanics",
                "email": "book@sunsetmobile.example",
                "categories": ["oil_change", "battery", "brakes"],
                "service_zips": ["94122", "94103"],
            },
        ]
        now_iso = to_iso(utc_now())
        with self._lock:
            conn = self._connect()
            try:
                for pro in seed_professionals:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO professionals (
                            id, business_name, email, categories_json, service_zips_json, status, created_at
                        ) VALUES (?, ?, ?, ?, ?, 'active', ?)
                        """,
                        (
                            pro["id"],
                            pro["business_name"],
                            pro["email"],
                            json.dumps(pro["categories"]),
                            json.dumps(pro["service_zips"]),
                            now_iso,
                        ),
                    )
                conn.commit()
            finally:
                conn.close()


database = Database(db_path=config.DB_PATH)
