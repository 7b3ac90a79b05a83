import importlib
import os
import sqlite3
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.services.database import Database, parse_iso, to_iso, utc_now
from app.services.email_sender import EmailSender
from app.services.errors import StorageFailureError
from app.services.notification_store import NotificationStore
from app.services.push_sender import PushSender


def test_auth_ttl_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "not-a-number")
    sys.modules.pop("app.auth", None)
    auth = importlib.import_module("app.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_auth_ttl_non_positive_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "0")
    sys.modules.pop("app.auth", None)
    auth = importlib.import_module("app.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_config_timer_and_lock_env_fall_back(monkeypatch):
    monkeypatch.setenv("LOCK_DURATION_HOURS", "-3")
    monkeypatch.setenv("CONFIRMATION_TIMER_MINUTES_WEEK", "soon")
    monkeypatch.setenv("CONFIRMATION_TIMER_MINUTES_MONTH", "90")
    from app import config

    reloaded = importlib.reload(config)
    try:
        assert reloaded.LOCK_DURATION_HOURS == 24
        assert reloaded.CONFIRMATION_TIMER_MINUTES["week"] == 30
        assert reloaded.CONFIRMATION_TIMER_MINUTES["month"] == 90
    finally:
        monkeypatch.undo()
        importlib.reload(config)


def test_verify_token_rejects_tampered_values():
    from app.auth import create_access_token, verify_access_token

    token, _expires = create_access_token("cust_1")
    assert verify_access_token(token) == "cust_1"
    assert verify_access_token(token + "x") is None
    assert verify_access_token("garbage") is None


def test_timestamps_sort_in_time_order():
    now = utc_now().replace(microsecond=0)
    earlier = to_iso(now)
    later = to_iso(now + timedelta(microseconds=5))
    assert earlier < later
    assert parse_iso(earlier) == now
    assert parse_iso("2030-01-01T00:00:00").tzinfo is not None
    assert parse_iso("2030-01-01T08:30:00Z") == parse_iso("2030-01-01T08:30:00+00:00")


def test_storage_errors_roll_back_and_surface(tmp_path):
    db = Database(db_path=str(tmp_path / "marketplace.sqlite3"))
    with pytest.raises(StorageFailureError):
        with db.transaction() as conn:
            conn.execute(
                "UPDATE professionals SET business_name = 'Changed' WHERE id = 'pro_1'"
            )
            conn.execute("INSERT INTO no_such_table VALUES (1)")
    with sqlite3.connect(db.db_path) as conn:
        name = conn.execute("SELECT business_name FROM professionals WHERE id = 'pro_1'").fetchone()[0]
    assert name == "Precision Auto Care"


def test_reopening_existing_database_is_safe(tmp_path):
    path = str(tmp_path / "marketplace.sqlite3")
    Database(db_path=path)
    again = Database(db_path=path)
    with again.read() as conn:
        count = conn.execute("SELECT COUNT(*) FROM professionals").fetchone()[0]
    assert count == 4


def test_email_sender_without_key_is_a_noop():
    sender = EmailSender(api_key="", from_address="DoneEZ <notifications@resend.dev>")
    assert sender.configured is False
    assert sender.send("cust@example.com", "Hello", "<p>Hi</p>") is None


def test_notification_store_ignores_blank_device_tokens(tmp_path):
    store = NotificationStore(Database(db_path=str(tmp_path / "inbox.sqlite3")), PushSender())
    assert store.register_device_token("cust_1", "   ") is False
    record = store.create(user_id="cust_1", title="Hi", body="There", category="system")
    assert store.list_for_user("cust_1", unread_only=True) == [record]
    assert store.mark_read("cust_2", record.id) is None
    assert store.mark_read("cust_1", record.id).read is True
