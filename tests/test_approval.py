from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from apps.fleet_backend import approval
from apps.fleet_backend.approval import approve_event, reject_event, submit_event
from apps.fleet_backend.events import (
    CORRECTION,
    END_ALLOCATION,
    REFUELING,
    START_ALLOCATION,
    EventDraft,
)
from apps.fleet_backend.models import (
    AllocationEvent,
    AuditLog,
    EventRetryQueue,
    ScheduledNotification,
    Unit,
)


def _actions(db, entity_id=None):
    stmt = select(AuditLog.action).order_by(AuditLog.id.asc())
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    return list(db.execute(stmt).scalars())


def _count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def _submit_refueling(db, days_ago):
    res = submit_event(db, EventDraft(event_type=REFUELING, unit_id="U1", event_date=days_ago(1)), "op-1")
    assert res["success"] is True
    assert res["event"]["status"] == "pending"
    return res["event"]["id"]


def test_submit_start_allocation_is_auto_approved_and_synced(db, add_unit, days_ago, now):
    add_unit("U1")
    res = submit_event(
        db,
        EventDraft(
            event_type=START_ALLOCATION,
            unit_id="U1",
            site_id="S1",
            event_date=days_ago(3),
            end_date=now + timedelta(days=30),
        ),
        "op-1",
        request_id="rid-1",
    )
    assert res["success"] is True
    assert res["event"]["status"] == "approved"
    assert res["event"]["approved_by"] == "op-1"
    assert res["followups"]["unit_sync"]["changed"] is True
    assert res["followups"]["notification"] == "created"

    db.expire_all()
    unit = db.get(Unit, "U1")
    assert unit.status == "allocated"
    assert unit.current_site_id == "S1"
    assert _actions(db, res["event"]["id"]) == ["EVENT_CREATE"]
    assert _count(db, ScheduledNotification) == 1


def test_scenario_e_invalid_submission_is_not_inserted(db, add_unit, days_ago):
    add_unit("U1")
    res = submit_event(db, EventDraft(event_type=END_ALLOCATION, unit_id="U1", event_date=days_ago(1)), "op-1")
    assert res["success"] is False
    assert res["valid"] is False
    assert res["code"] == "VALIDATION_ERROR"
    assert "no active allocation" in res["reason"]
    assert _count(db, AllocationEvent) == 0
    assert _actions(db) == ["EVENT_SUBMIT_INVALID"]


def test_refueling_waits_for_approval(db, add_unit, days_ago):
    add_unit("U1")
    event_id = _submit_refueling(db, days_ago)

    res = approve_event(db, event_id, "sup-1")
    assert res["success"] is True
    assert res["code"] == "OK"
    assert res["event"]["status"] == "approved"
    assert res["event"]["approved_by"] == "sup-1"
    assert _actions(db, event_id) == ["EVENT_CREATE", "EVENT_APPROVE"]

    audit = db.execute(select(AuditLog).where(AuditLog.action == "EVENT_APPROVE")).scalar_one()
    assert audit.details_json["before"]["status"] == "pending"
    assert audit.details_json["after"]["status"] == "approved"


def test_scenario_f_reject_after_approve_is_a_permission_error(db, add_unit, days_ago):
    add_unit("U1")
    event_id = _submit_refueling(db, days_ago)
    assert approve_event(db, event_id, "sup-1")["success"] is True

    res = reject_event(db, event_id, "sup-2", "wrong unit")
    assert res == {
        "success": False,
        "message": "EVENT_ALREADY_APPROVED",
        "code": "PERMISSION_ERROR",
        "retryable": False,
    }

    db.expire_all()
    ev = db.get(AllocationEvent, event_id)
    assert ev.status == "approved"
    assert ev.approved_by == "sup-1"
    assert ev.rejection_reason is None
    assert _actions(db, event_id)[-1] == "EVENT_ERROR"
    failed = db.execute(select(AuditLog).where(AuditLog.action == "EVENT_ERROR")).scalar_one()
    assert failed.actor_user_id == "sup-2"
    assert failed.details_json["context"]["action_type"] == "reject"
    assert _count(db, EventRetryQueue) == 0


def test_approval_is_monotonic_after_rejection(db, add_unit, days_ago):
    add_unit("U1")
    event_id = _submit_refueling(db, days_ago)
    assert reject_event(db, event_id, "sup-1", "duplicate entry")["success"] is True

    again = approve_event(db, event_id, "sup-1")
    assert again["code"] == "PERMISSION_ERROR"
    assert again["message"] == "EVENT_ALREADY_REJECTED"
    assert reject_event(db, event_id, "sup-1", "still duplicate")["message"] == "EVENT_ALREADY_REJECTED"

    db.expire_all()
    ev = db.get(AllocationEvent, event_id)
    assert ev.status == "rejected"
    assert ev.rejection_reason == "duplicate entry"


def test_auto_approved_event_cannot_be_approved_again(db, add_unit, days_ago, now):
    add_unit("U1")
    res = submit_event(
        db,
        EventDraft(event_type=START_ALLOCATION, unit_id="U1", site_id="S1", event_date=days_ago(2), end_date=now),
        "op-1",
    )
    again = approve_event(db, res["event"]["id"], "sup-1")
    assert again["code"] == "PERMISSION_ERROR"
    assert again["message"] == "EVENT_ALREADY_APPROVED"


def test_reject_requires_reason(db, add_unit, days_ago):
    add_unit("U1")
    event_id = _submit_refueling(db, days_ago)
    res = reject_event(db, event_id, "sup-1", "   ")
    assert res["code"] == "VALIDATION_ERROR"
    assert res["retryable"] is False
    db.expire_all()
    assert db.get(AllocationEvent, event_id).status == "pending"


def test_unknown_event_is_not_found(db):
    res = approve_event(db, "evt_missing", "sup-1")
    assert res["code"] == "NOT_FOUND"
    assert _actions(db, "evt_missing") == ["EVENT_ERROR"]


def test_lost_race_reports_already_processed(db, add_unit, days_ago, monkeypatch):
    add_unit("U1")
    event_id = _submit_refueling(db, days_ago)
    monkeypatch.setattr(approval, "transition_status", lambda *a, **kw: False)

    res = approve_event(db, event_id, "sup-1")
    assert res["code"] == "PERMISSION_ERROR"
    assert res["message"] == "EVENT_ALREADY_PROCESSED"


def test_connection_failure_is_audited_and_queued(db, add_unit, days_ago, monkeypatch):
    add_unit("U1")
    event_id = _submit_refueling(db, days_ago)

    def _boom(*a, **kw):
        raise OperationalError("UPDATE allocation_events", {}, Exception("server closed the connection"))

    monkeypatch.setattr(approval, "transition_status", _boom)
    res = approve_event(db, event_id, "sup-1", request_id="rid-9")
    assert res["success"] is False
    assert res["code"] == "CONNECTION_ERROR"
    assert res["retryable"] is True

    db.expire_all()
    assert db.get(AllocationEvent, event_id).status == "pending"
    item = db.execute(select(EventRetryQueue)).scalar_one()
    assert item.event_id == event_id
    assert item.action_type == "approve"
    assert item.actor_id == "sup-1"
    assert item.status == "pending"
    assert item.max_retries == 3
    audit = db.execute(select(AuditLog).where(AuditLog.action == "EVENT_ERROR")).scalar_one()
    assert audit.request_id == "rid-9"


def test_unexpected_failure_is_retryable(db, add_unit, days_ago, monkeypatch):
    add_unit("U1")
    event_id = _submit_refueling(db, days_ago)

    def _boom(*a, **kw):
        raise RuntimeError("disk full")

    monkeypatch.setattr(approval, "transition_status", _boom)
    res = reject_event(db, event_id, "sup-1", "not needed")
    assert res["code"] == "UNEXPECTED_ERROR"
    assert res["retryable"] is True
    item = db.execute(select(EventRetryQueue)).scalar_one()
    assert item.action_type == "reject"
    assert item.reason == "not needed"


def test_post_approval_failure_keeps_approval(db, add_unit, days_ago, monkeypatch):
    add_unit("U1")
    event_id = _submit_refueling(db, days_ago)

    def _boom(*a, **kw):
        raise RuntimeError("sync crashed")

    monkeypatch.setattr(approval, "sync_unit", _boom)
    res = approve_event(db, event_id, "sup-1")
    assert res["success"] is True
    assert res["followups"]["unit_sync"]["success"] is False

    db.expire_all()
    assert db.get(AllocationEvent, event_id).status == "approved"
    assert "POST_APPROVAL_FAILED" in _actions(db, event_id)


def test_end_date_correction_moves_notification(db, add_unit, days_ago, now):
    add_unit("U1", unit_number="EX-204")
    first_end = now + timedelta(days=20)
    res = submit_event(
        db,
        EventDraft(event_type=START_ALLOCATION, unit_id="U1", site_id="S1", event_date=days_ago(5), end_date=first_end),
        "op-1",
    )
    start_id = res["event"]["id"]
    note = db.execute(select(ScheduledNotification)).scalar_one()
    assert note.trigger_at_utc == first_end
    assert "EX-204" in note.title

    new_end = now + timedelta(days=45)
    fix = submit_event(
        db,
        EventDraft(event_type=CORRECTION, unit_id="U1", corrects_event_id=start_id, event_date=days_ago(1), end_date=new_end),
        "op-1",
    )
    assert fix["success"] is True
    assert fix["followups"]["notification"] == "updated"

    db.expire_all()
    note = db.execute(select(ScheduledNotification)).scalar_one()
    assert note.event_id == start_id
    assert note.trigger_at_utc == new_end
