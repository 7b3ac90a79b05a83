import threading
from datetime import timedelta

import pytest

from app.services.database import Database, to_iso
from app.services.errors import InvalidTransitionError, LockConflictError, NotFoundError, ValidationError
from app.services.quote_ledger import ANOTHER_PENDING_MESSAGE, QuoteLedger
from conftest import LOCK_WINDOW, build_workflow, create_request, fetch_row, lead_id_for, quote_on_request


def _two_quotes(wf, now):
    request = create_request(wf)
    q1 = quote_on_request(wf, request.id, "pro_1", now, price=300.0)
    later = now + LOCK_WINDOW + timedelta(minutes=1)
    q2 = quote_on_request(wf, request.id, "pro_2", later, price=280.0)
    return request, q1, q2, later


def _pending_count(wf, request_id):
    with wf.db.read() as conn:
        return conn.execute(
            "SELECT COUNT(*) AS n FROM quotes WHERE request_id = ? AND status = 'pending_confirmation'",
            (request_id,),
        ).fetchone()["n"]


def test_submit_requires_the_live_lock(workflow, now):
    request = create_request(workflow)
    workflow.locks.acquire(lead_id_for(workflow, request.id, "pro_1"), "pro_1", now=now)

    with pytest.raises(LockConflictError):
        workflow.quotes.submit(request.id, "pro_2", 250.0, "Pads and rotors", now=now)

    quote = workflow.quotes.submit(request.id, "pro_1", 300.0, "Pads and rotors", now=now)
    assert quote.status == "submitted"
    assert quote.confirmation_timer_minutes == 30
    assert quote.confirmation_timer_expires_at is None
    assert fetch_row(workflow, "service_requests", request.id)["status"] == "quoted"

    with pytest.raises(InvalidTransitionError):
        workflow.quotes.submit(request.id, "pro_1", 310.0, "Second quote", now=now)


def test_submit_after_lock_lapses_is_rejected(workflow, now):
    request = create_request(workflow)
    workflow.locks.acquire(lead_id_for(workflow, request.id, "pro_1"), "pro_1", now=now)
    with pytest.raises(InvalidTransitionError) as excinfo:
        workflow.quotes.submit(request.id, "pro_1", 300.0, "Late quote", now=now + LOCK_WINDOW)
    assert "expired" in str(excinfo.value)


def test_submit_validates_fields(workflow, now):
    request = create_request(workflow)
    workflow.locks.acquire(lead_id_for(workflow, request.id, "pro_1"), "pro_1", now=now)
    with pytest.raises(ValidationError):
        workflow.quotes.submit(request.id, "pro_1", 0, "Free?", now=now)
    with pytest.raises(ValidationError):
        workflow.quotes.submit(request.id, "pro_1", 120.0, "   ", now=now)


def test_timer_minutes_follow_request_urgency(workflow, now):
    request = create_request(workflow, urgency="immediate")
    quote = quote_on_request(workflow, request.id, "pro_1", now)
    assert quote.confirmation_timer_minutes == 15


def test_select_starts_timer_and_blocks_second_selection(workflow, now):
    request, q1, q2, later = _two_quotes(workflow, now)
    selected_at = later + timedelta(minutes=1)

    selection = workflow.quotes.select(q1.id, "cust_1", now=selected_at)
    expires_at = to_iso(selected_at + timedelta(minutes=30))
    assert selection.quote.status == "pending_confirmation"
    assert selection.quote.confirmation_timer_expires_at == expires_at
    assert selection.quote.seconds_remaining == 30 * 60
    assert selection.appointment.status == "pending_confirmation"
    assert selection.appointment.confirmation_expires_at == expires_at
    assert selection.referral_fee.status == "pending"
    assert selection.referral_fee.amount == 0.0

    request_row = fetch_row(workflow, "service_requests", request.id)
    assert request_row["status"] == "pending_confirmation"
    assert request_row["accepted_pro_id"] == "pro_1"

    with pytest.raises(InvalidTransitionError) as excinfo:
        workflow.quotes.select(q2.id, "cust_1", now=selected_at + timedelta(seconds=5))
    assert str(excinfo.value) == ANOTHER_PENDING_MESSAGE
    assert _pending_count(workflow, request.id) == 1
    assert fetch_row(workflow, "quotes", q2.id)["status"] == "submitted"


def test_select_rejects_non_owner_and_bad_start_time(workflow, now):
    request = create_request(workflow)
    quote = quote_on_request(workflow, request.id, "pro_1", now)
    with pytest.raises(NotFoundError):
        workflow.quotes.select(quote.id, "cust_other", now=now)
    with pytest.raises(ValidationError):
        workflow.quotes.select(quote.id, "cust_1", starts_at="next tuesday", now=now)
    assert fetch_row(workflow, "quotes", quote.id)["status"] == "submitted"


def test_concurrent_selection_leaves_one_quote_in_flight(db_path, now):
    setup = build_workflow(Database(db_path=db_path))
    request, q1, q2, later = _two_quotes(setup, now)
    selected_at = later + timedelta(minutes=1)
    barrier = threading.Barrier(2)
    outcomes = []

    def attempt_select(quote_id):
        ledger = QuoteLedger(Database(db_path=db_path), setup.locks)
        barrier.wait()
        try:
            ledger.select(quote_id, "cust_1", now=selected_at)
            outcomes.append("ok")
        except InvalidTransitionError:
            outcomes.append("rejected")

    threads = [threading.Thread(target=attempt_select, args=(quote_id,)) for quote_id in (q1.id, q2.id)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["ok", "rejected"]
    assert _pending_count(setup, request.id) == 1
    with setup.db.read() as conn:
        appointments = conn.execute("SELECT COUNT(*) AS n FROM appointments WHERE request_id = ?", (request.id,)).fetchone()
    assert appointments["n"] == 1


def test_confirm_inside_window_schedules_appointment(workflow, now):
    request = create_request(workflow)
    quote = quote_on_request(workflow, request.id, "pro_1", now)
    selection = workflow.quotes.select(quote.id, "cust_1", now=now)
    expires_at = now + timedelta(minutes=30)

    with pytest.raises(NotFoundError):
        workflow.quotes.confirm(quote.id, "pro_2", now=expires_at - timedelta(seconds=5))

    confirmation = workflow.quotes.confirm(quote.id, "pro_1", now=expires_at - timedelta(seconds=5))
    assert confirmation.quote.status == "confirmed"
    assert confirmation.appointment.id == selection.appointment.id
    assert confirmation.appointment.status == "scheduled"

    request_row = fetch_row(workflow, "service_requests", request.id)
    assert request_row["status"] == "scheduled"
    assert request_row["accepted_pro_id"] == "pro_1"
    assert request_row["accept_expires_at"] is None
    assert [job.id for job in workflow.appointments.jobs_for_pro("pro_1")] == [selection.appointment.id]

    with pytest.raises(InvalidTransitionError):
        workflow.quotes.confirm(quote.id, "pro_1", now=expires_at - timedelta(seconds=1))


def test_confirm_after_window_reports_expired_before_sweep(workflow, now):
    request = create_request(workflow)
    quote = quote_on_request(workflow, request.id, "pro_1", now)
    workflow.quotes.select(quote.id, "cust_1", now=now)

    with pytest.raises(InvalidTransitionError) as excinfo:
        workflow.quotes.confirm(quote.id, "pro_1", now=now + timedelta(minutes=30))
    assert str(excinfo.value) == "This quote has expired."
    assert fetch_row(workflow, "quotes", quote.id)["status"] == "pending_confirmation"


def test_revise_replaces_submitted_quote(workflow, now):
    request = create_request(workflow)
    original = quote_on_request(workflow, request.id, "pro_1", now, price=300.0)

    revised = workflow.quotes.revise(original.id, "pro_1", 260.0, "Pads only", notes="Rotors are fine", now=now)
    assert revised.is_revised is True
    assert revised.original_quote_id == original.id
    assert revised.status == "submitted"
    assert fetch_row(workflow, "quotes", original.id)["status"] == "declined"

    with pytest.raises(InvalidTransitionError):
        workflow.quotes.revise(original.id, "pro_1", 250.0, "Again", now=now)
    with pytest.raises(NotFoundError):
        workflow.quotes.revise(revised.id, "pro_2", 250.0, "Not mine", now=now)


def test_declined_quote_cannot_be_selected(workflow, now):
    request = create_request(workflow)
    quote = quote_on_request(workflow, request.id, "pro_1", now)
    assert workflow.quotes.decline(quote.id, "pro_1", now=now).status == "declined"
    with pytest.raises(InvalidTransitionError):
        workflow.quotes.decline(quote.id, "pro_1", now=now)
    with pytest.raises(InvalidTransitionError):
        workflow.quotes.select(quote.id, "cust_1", now=now)


def test_pros_only_see_their_own_quotes(workflow, now):
    request, q1, q2, _later = _two_quotes(workflow, now)
    assert {q.id for q in workflow.quotes.list_for_request(request.id, "cust_1")} == {q1.id, q2.id}
    assert [q.id for q in workflow.quotes.list_for_request(request.id, "pro_2")] == [q2.id]
    with pytest.raises(NotFoundError):
        workflow.quotes.get(q1.id, "pro_2")


def test_select_accepts_utc_z_start_time(workflow, now):
    request = create_request(workflow)
    quote = quote_on_request(workflow, request.id, "pro_1", now)
    selection = workflow.quotes.select(quote.id, "cust_1", starts_at="2030-05-01T09:30:00Z", now=now)
    assert selection.appointment.starts_at == "2030-05-01T09:30:00.000000+00:00"
