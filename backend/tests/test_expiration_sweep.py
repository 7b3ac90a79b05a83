import threading
from datetime import timedelta

from app.services.confirmation_timer import ExpirationSweep, timer_minutes_for
from app.services.database import Database
from app.services.email_sender import EmailSender
from app.services.errors import InvalidTransitionError, NotificationFailure, StorageFailureError
from app.services.job_lock import JobLockManager
from app.services.notification_dispatcher import NotificationDispatcher
from app.services.notification_store import NotificationStore
from app.services.push_sender import PushSender
from app.services.quote_ledger import QuoteLedger
from conftest import LOCK_WINDOW, build_workflow, create_request, fetch_row, lead_id_for, quote_on_request

TIMER = timedelta(minutes=30)


def _selected_quote(wf, now, customer_id="cust_1"):
    request = create_request(wf, customer_id=customer_id)
    quote = quote_on_request(wf, request.id, "pro_1", now)
    selection = wf.quotes.select(quote.id, customer_id, now=now)
    return request, quote, selection


def _statuses(wf, quote_id, appointment_id, request_id):
    return (
        fetch_row(wf, "quotes", quote_id)["status"],
        fetch_row(wf, "appointments", appointment_id)["status"],
        fetch_row(wf, "referral_fees", quote_id, column="quote_id")["status"],
        fetch_row(wf, "service_requests", request_id)["status"],
    )


def test_timer_minutes_by_urgency():
    assert timer_minutes_for("immediate") == 15
    assert timer_minutes_for("week") == 30
    assert timer_minutes_for("month") == 60
    assert timer_minutes_for(None) == 30
    assert timer_minutes_for("someday") == 30


def test_sweep_before_expiry_changes_nothing(workflow, now):
    request, quote, selection = _selected_quote(workflow, now)
    result = workflow.sweep.run(now + TIMER - timedelta(seconds=1))
    assert result.expired_quotes == 0
    assert _statuses(workflow, quote.id, selection.appointment.id, request.id) == (
        "pending_confirmation",
        "pending_confirmation",
        "pending",
        "pending_confirmation",
    )
    assert workflow.notifier.sent == []


def test_sweep_expires_cascade_once_and_notifies(workflow, now):
    request, quote, selection = _selected_quote(workflow, now)

    first = workflow.sweep.run(now + TIMER + timedelta(seconds=1))
    assert first.expired_quotes == 1
    assert first.expired_appointments == 1
    assert first.failed_quotes == 0
    assert first.notifications_attempted == 2
    assert _statuses(workflow, quote.id, selection.appointment.id, request.id) == (
        "expired",
        "expired",
        "expired",
        "quoted",
    )
    request_row = fetch_row(workflow, "service_requests", request.id)
    assert request_row["accepted_pro_id"] is None
    assert fetch_row(workflow, "appointments", selection.appointment.id)["expired_at"] is not None

    templates = sorted((item["user_id"], item["template"], item["email"]) for item in workflow.notifier.sent)
    assert templates == [
        ("cust_1", "quote_expired", "cust_1@example.com"),
        ("pro_1", "quote_expired_pro", "shop@precisionauto.example"),
    ]

    second = workflow.sweep.run(now + TIMER + timedelta(seconds=2))
    assert second.expired_quotes == 0
    assert second.expired_appointments == 0
    assert second.notifications_attempted == 0
    assert len(workflow.notifier.sent) == 2


def test_confirm_before_deadline_wins_over_later_sweep(workflow, now):
    request, quote, selection = _selected_quote(workflow, now)
    workflow.quotes.confirm(quote.id, "pro_1", now=now + TIMER - timedelta(seconds=5))

    result = workflow.sweep.run(now + TIMER + timedelta(seconds=1))
    assert result.expired_quotes == 0
    assert _statuses(workflow, quote.id, selection.appointment.id, request.id) == (
        "confirmed",
        "scheduled",
        "pending",
        "scheduled",
    )


def test_confirm_and_sweep_race_never_both_apply(db_path, now):
    setup = build_workflow(Database(db_path=db_path))
    for attempt in range(5):
        request, quote, selection = _selected_quote(setup, now, customer_id=f"cust_race_{attempt}")
        deadline = now + TIMER
        barrier = threading.Barrier(2)
        outcome = {}

        def confirm():
            ledger = QuoteLedger(Database(db_path=db_path), setup.locks)
            barrier.wait()
            try:
                ledger.confirm(quote.id, "pro_1", now=deadline - timedelta(milliseconds=1))
                outcome["confirmed"] = True
            except InvalidTransitionError:
                outcome["confirmed"] = False

        def sweep():
            db = Database(db_path=db_path)
            runner = ExpirationSweep(db, JobLockManager(db))
            barrier.wait()
            outcome["expired"] = runner.run(deadline + timedelta(milliseconds=1)).expired_quotes

        threads = [threading.Thread(target=confirm), threading.Thread(target=sweep)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcome["confirmed"] != (outcome["expired"] == 1)
        quote_status, appointment_status, fee_status, _ = _statuses(setup, quote.id, selection.appointment.id, request.id)
        if outcome["confirmed"]:
            assert (quote_status, appointment_status, fee_status) == ("confirmed", "scheduled", "pending")
        else:
            assert (quote_status, appointment_status, fee_status) == ("expired", "expired", "expired")


def test_expired_request_accepts_another_selection(workflow, now):
    request = create_request(workflow)
    q1 = quote_on_request(workflow, request.id, "pro_1", now)
    later = now + LOCK_WINDOW + timedelta(minutes=1)
    q2 = quote_on_request(workflow, request.id, "pro_2", later)

    workflow.quotes.select(q1.id, "cust_1", now=later)
    workflow.sweep.run(later + TIMER)
    selection = workflow.quotes.select(q2.id, "cust_1", now=later + TIMER + timedelta(minutes=1))
    assert selection.quote.status == "pending_confirmation"
    assert fetch_row(workflow, "service_requests", request.id)["accepted_pro_id"] == "pro_2"


def test_sweep_releases_lapsed_job_locks(workflow, now):
    request = create_request(workflow)
    workflow.locks.acquire(lead_id_for(workflow, request.id, "pro_1"), "pro_1", now=now)
    result = workflow.sweep.run(now + LOCK_WINDOW)
    assert result.released_locks == 1
    assert fetch_row(workflow, "service_requests", request.id)["status"] == "pending"


def test_sweep_expires_orphaned_pending_appointments(workflow, now):
    _request, quote, selection = _selected_quote(workflow, now)
    # Quote already closed by hand while its appointment was left behind.
    with workflow.db.transaction() as conn:
        conn.execute("UPDATE quotes SET status = 'expired' WHERE id = ?", (quote.id,))

    result = workflow.sweep.run(now + TIMER)
    assert result.expired_quotes == 0
    assert result.expired_appointments == 1
    assert fetch_row(workflow, "appointments", selection.appointment.id)["status"] == "expired"


def test_one_failing_cascade_does_not_stop_the_others(workflow, now, monkeypatch):
    _r1, failing_quote, _s1 = _selected_quote(workflow, now, customer_id="cust_a")
    _r2, other_quote, _s2 = _selected_quote(workflow, now, customer_id="cust_b")
    original = workflow.sweep._expire_quote

    def flaky(quote_id, now_iso):
        if quote_id == failing_quote.id:
            raise StorageFailureError()
        return original(quote_id, now_iso)

    monkeypatch.setattr(workflow.sweep, "_expire_quote", flaky)
    result = workflow.sweep.run(now + TIMER)
    assert result.expired_quotes == 1
    assert result.failed_quotes == 1
    assert fetch_row(workflow, "quotes", failing_quote.id)["status"] == "pending_confirmation"
    assert fetch_row(workflow, "quotes", other_quote.id)["status"] == "expired"

    monkeypatch.undo()
    retry = workflow.sweep.run(now + TIMER + timedelta(minutes=1))
    assert retry.expired_quotes == 1
    assert fetch_row(workflow, "quotes", failing_quote.id)["status"] == "expired"


class _BrokenEmail(EmailSender):
    def __init__(self):
        super().__init__(api_key="re_test", from_address="test@example.com")

    def send(self, to, subject, html):
        raise NotificationFailure(f"smtp down for {to}")


def test_notification_failure_never_rolls_back_expiry(db_path, now):
    db = Database(db_path=db_path)
    inbox = NotificationStore(db, PushSender())
    notifier = NotificationDispatcher(inbox, _BrokenEmail())
    wf = build_workflow(db, notifier=notifier)
    request, quote, selection = _selected_quote(wf, now)

    result = wf.sweep.run(now + TIMER)
    assert result.expired_quotes == 1
    assert result.notifications_attempted == 2
    assert _statuses(wf, quote.id, selection.appointment.id, request.id)[0] == "expired"
    # In-app record is written before the email attempt fails.
    assert inbox.list_for_user("cust_1")[0].title == "Quote confirmation expired"


def test_dispatcher_reports_failure_without_raising(db_path):
    notifier = NotificationDispatcher(NotificationStore(Database(db_path=db_path), PushSender()), _BrokenEmail())
    data = {
        "quote_id": "quote_x",
        "request_id": "req_x",
        "business_name": "Bay Brake & Tire",
        "vehicle": "2018 Honda Civic",
        "estimated_price": 120.0,
    }
    assert notifier.dispatch("cust_1", "quote_expired", data, email="cust@example.com") is False
    assert notifier.dispatch("cust_1", "quote_expired", data) is True
    assert notifier.dispatch("cust_1", "not_a_template", data) is False


def _select_over_live_lock(wf, now, pro_2_hold=LOCK_WINDOW):
    """pro_1 quotes, lets the lock lapse, pro_2 accepts, then the customer picks pro_1's quote."""
    request = create_request(wf)
    stale = quote_on_request(wf, request.id, "pro_1", now)
    pro_2_at = now + LOCK_WINDOW + timedelta(hours=1)
    pro_2_lock = wf.locks.acquire(lead_id_for(wf, request.id, "pro_2"), "pro_2", now=pro_2_at).lock
    selected_at = pro_2_at + pro_2_hold - timedelta(minutes=10)
    wf.quotes.select(stale.id, "cust_1", now=selected_at)
    return request, stale, pro_2_lock, selected_at


def test_expired_selection_hands_lock_back_to_displaced_pro(workflow, now):
    request, _stale, pro_2_lock, selected_at = _select_over_live_lock(workflow, now, pro_2_hold=timedelta(hours=2))
    assert fetch_row(workflow, "service_requests", request.id)["accepted_pro_id"] == "pro_1"

    swept_at = selected_at + TIMER
    assert workflow.sweep.run(swept_at).expired_quotes == 1
    row = fetch_row(workflow, "service_requests", request.id)
    assert (row["status"], row["accepted_pro_id"], row["accept_expires_at"]) == (
        "quoted",
        "pro_2",
        pro_2_lock.accept_expires_at,
    )
    assert row["held_over_pro_id"] is None
    assert workflow.quotes.submit(request.id, "pro_2", 240.0, "Pads and rotors", now=swept_at).status == "submitted"


def test_displaced_lock_that_lapsed_meanwhile_is_not_restored(workflow, now):
    request, _stale, _pro_2_lock, selected_at = _select_over_live_lock(workflow, now)

    workflow.sweep.run(selected_at + TIMER)
    row = fetch_row(workflow, "service_requests", request.id)
    assert row["status"] == "quoted"
    assert row["accepted_pro_id"] is None
    assert row["accept_expires_at"] is None


def test_confirmation_discards_displaced_lock(workflow, now):
    request, stale, _pro_2_lock, selected_at = _select_over_live_lock(workflow, now, pro_2_hold=timedelta(hours=2))
    workflow.quotes.confirm(stale.id, "pro_1", now=selected_at + timedelta(minutes=1))

    workflow.sweep.run(selected_at + TIMER)
    row = fetch_row(workflow, "service_requests", request.id)
    assert (row["status"], row["accepted_pro_id"], row["accept_expires_at"]) == ("scheduled", "pro_1", None)
    assert row["held_over_pro_id"] is None
