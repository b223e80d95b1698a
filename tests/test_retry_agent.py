from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from apps.fleet_backend import approval
from apps.fleet_backend.events import REFUELING
from apps.fleet_backend.models import AllocationEvent, EventRetryQueue
from apps.fleet_worker.retry_agent import process_retry_queue_once


def _queue(db, now, event_id, action_type="approve", **kw):
    item = EventRetryQueue(
        event_id=event_id,
        actor_id="sup-1",
        action_type=action_type,
        reason=kw.pop("reason", None),
        error_details={"code": "CONNECTION_ERROR"},
        status="pending",
        retry_count=kw.pop("retry_count", 0),
        max_retries=3,
        next_attempt_at_utc=kw.pop("next_attempt_at_utc", now - timedelta(minutes=1)),
        created_at_utc=now - timedelta(minutes=5),
    )
    db.add(item)
    db.commit()
    return item.id


def test_queued_approval_is_replayed(db, add_unit, add_event, days_ago, now):
    add_unit("U1")
    ev = add_event(REFUELING, days_ago(1), status="pending")
    item_id = _queue(db, now, ev.id)

    counts = process_retry_queue_once(now=now)
    assert counts == {"completed": 1, "failed": 0, "rescheduled": 0}

    db.expire_all()
    assert db.get(AllocationEvent, ev.id).status == "approved"
    item = db.get(EventRetryQueue, item_id)
    assert item.status == "completed"
    assert item.retry_count == 1


def test_queued_rejection_is_replayed(db, add_unit, add_event, days_ago, now):
    add_unit("U1")
    ev = add_event(REFUELING, days_ago(1), status="pending")
    _queue(db, now, ev.id, action_type="reject", reason="duplicate")

    assert process_retry_queue_once(now=now)["completed"] == 1
    db.expire_all()
    row = db.get(AllocationEvent, ev.id)
    assert row.status == "rejected"
    assert row.rejection_reason == "duplicate"


def test_items_not_due_are_left_alone(db, add_unit, add_event, days_ago, now):
    add_unit("U1")
    ev = add_event(REFUELING, days_ago(1), status="pending")
    _queue(db, now, ev.id, next_attempt_at_utc=now + timedelta(minutes=10))
    assert process_retry_queue_once(now=now) == {"completed": 0, "failed": 0, "rescheduled": 0}


def test_already_settled_event_completes_the_item(db, add_unit, add_event, days_ago, now):
    add_unit("U1")
    ev = add_event(REFUELING, days_ago(1), status="approved")
    item_id = _queue(db, now, ev.id)
    assert process_retry_queue_once(now=now)["completed"] == 1
    db.expire_all()
    assert db.get(EventRetryQueue, item_id).status == "completed"


def test_non_retryable_failure_marks_item_failed(db, now):
    item_id = _queue(db, now, "evt_gone")
    assert process_retry_queue_once(now=now)["failed"] == 1
    db.expire_all()
    item = db.get(EventRetryQueue, item_id)
    assert item.status == "failed"
    assert "not found" in item.last_error


def test_retryable_failure_backs_off_then_gives_up(db, add_unit, add_event, days_ago, now, monkeypatch):
    add_unit("U1")
    ev = add_event(REFUELING, days_ago(1), status="pending")
    item_id = _queue(db, now, ev.id)

    def _boom(*a, **kw):
        raise OperationalError("UPDATE allocation_events", {}, Exception("connection refused"))

    monkeypatch.setattr(approval, "transition_status", _boom)

    assert process_retry_queue_once(now=now)["rescheduled"] == 1
    db.expire_all()
    item = db.get(EventRetryQueue, item_id)
    assert item.status == "pending"
    assert item.retry_count == 1
    assert item.next_attempt_at_utc == now + timedelta(seconds=30)
    # replays never enqueue a second copy
    assert db.execute(select(func.count()).select_from(EventRetryQueue)).scalar_one() == 1

    assert process_retry_queue_once(now=now + timedelta(minutes=1))["rescheduled"] == 1
    db.expire_all()
    item = db.get(EventRetryQueue, item_id)
    assert item.retry_count == 2
    assert item.next_attempt_at_utc == now + timedelta(minutes=1, seconds=60)

    assert process_retry_queue_once(now=now + timedelta(minutes=5))["failed"] == 1
    db.expire_all()
    item = db.get(EventRetryQueue, item_id)
    assert item.status == "failed"
    assert item.retry_count == 3
    assert db.get(AllocationEvent, ev.id).status == "pending"
