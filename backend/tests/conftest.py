import os
import sys
import tempfile
from datetime import timedelta
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# The app's module-level stores open their database on import.
os.environ["MARKETPLACE_DB_PATH"] = os.path.join(tempfile.mkdtemp(prefix="marketplace-tests-"), "marketplace.sqlite3")
os.environ["RESEND_API_KEY"] = ""
os.environ["FIREBASE_CREDENTIALS_PATH"] = ""
os.environ["AUTH_REQUIRED"] = "false"
os.environ["SWEEP_TOKEN"] = "test-sweep-token"
os.environ["ADMIN_USER_IDS"] = "admin_1"

from app.services.appointments import AppointmentBook  # noqa: E402
from app.services.confirmation_timer import ExpirationSweep  # noqa: E402
from app.services.database import Database, utc_now  # noqa: E402
from app.services.job_lock import JobLockManager  # noqa: E402
from app.services.lead_dispatcher import LeadDispatcher  # noqa: E402
from app.services.quote_ledger import QuoteLedger  # noqa: E402
from app.services.referral_fees import ReferralFeeLedger  # noqa: E402
from app.services.request_store import RequestStore  # noqa: E402

LOCK_WINDOW = timedelta(hours=24)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def dispatch(self, user_id, template, data, email=None):
        self.sent.append({"user_id": user_id, "template": template, "data": data, "email": email})
        return True


def build_workflow(db: Database, notifier=None) -> SimpleNamespace:
    dispatcher = LeadDispatcher(db)
    locks = JobLockManager(db)
    notifier = notifier if notifier is not None else RecordingNotifier()
    return SimpleNamespace(
        db=db,
        requests=RequestStore(db, dispatcher),
        dispatcher=dispatcher,
        locks=locks,
        quotes=QuoteLedger(db, locks),
        appointments=AppointmentBook(db),
        fees=ReferralFeeLedger(db),
        sweep=ExpirationSweep(db, locks, notifier),
        notifier=notifier,
    )


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "marketplace.sqlite3")


@pytest.fixture
def workflow(db_path):
    return build_workflow(Database(db_path=db_path))


@pytest.fixture
def now():
    return utc_now()


def create_request(wf, customer_id="cust_1", category="brakes", zip_code="94103", urgency="week"):
    request, _targets = wf.requests.create(
        customer_id=customer_id,
        vehicle_year=2018,
        vehicle_make="Honda",
        vehicle_model="Civic",
        category=category,
        zip_code=zip_code,
        contact_email=f"{customer_id}@example.com",
        urgency=urgency,
    )
    return request


def lead_id_for(wf, request_id: str, pro_id: str) -> str:
    with wf.db.read() as conn:
        row = conn.execute(
            "SELECT id FROM leads WHERE request_id = ? AND pro_id = ?",
            (request_id, pro_id),
        ).fetchone()
    assert row is not None, f"no lead for {pro_id}"
    return row["id"]


def fetch_row(wf, table: str, row_id: str, column: str = "id"):
    with wf.db.read() as conn:
        return conn.execute(f"SELECT * FROM {table} WHERE {column} = ?", (row_id,)).fetchone()


def quote_on_request(wf, request_id: str, pro_id: str, now, price: float = 300.0):
    wf.locks.acquire(lead_id_for(wf, request_id, pro_id), pro_id, now=now)
    return wf.quotes.submit(request_id, pro_id, price, f"Brake pads front axle ({pro_id})", now=now)
