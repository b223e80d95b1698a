"""Event submission and the pending -> approved/rejected lifecycle.

Only the conditional status flip is authoritative. Everything that runs
after it (denormalized write-back, notification scheduling, the change feed)
is best-effort: a failure there is logged and audited, never rolled back
into the approval.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from apps.fleet_backend.errors import (
    VALIDATION_ERROR,
    ErrorContext,
    EventNotFoundError,
    EventPermissionError,
    EventValidationError,
    handle_event_error,
)
from apps.fleet_backend.events import (
    APPROVED,
    CORRECTION,
    PENDING,
    PENDING_ON_SUBMIT,
    REJECTED,
    EventDraft,
    draft_from_row,
)
from apps.fleet_backend.models import AllocationEvent
from apps.fleet_backend.notifications import update_allocation_notification
from apps.fleet_backend.runtime import publish_change
from apps.fleet_backend.services import (
    DbEventHistory,
    _new_id,
    _now,
    audit_write,
    event_to_dict,
    load_unit_events,
    transition_status,
)
from apps.fleet_backend.state_calculator import build_correction_index
from apps.fleet_backend.sync import sync_extension, sync_unit
from apps.fleet_backend.validation import EventValidator

log = logging.getLogger("fleettrack.approval")


def submit_event(
    db,
    draft: EventDraft,
    actor_id: str,
    request_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Validate and append a new event.

    Refueling is inserted as pending and waits for a supervisor; every other
    type is approved on insert and goes straight through the post-approval hook.
    """
    now = now or _now()
    ctx = ErrorContext(actor_id=actor_id, action_type="submit")
    try:
        result = EventValidator(DbEventHistory(db)).validate(draft, now)
        if not result.valid:
            log.info("event_rejected_on_submit", extra={"event_type": draft.event_type, "unit_id": draft.unit_id})
            audit_write(
                db,
                action="EVENT_SUBMIT_INVALID",
                entity_type="unit",
                entity_id=draft.unit_id or draft.machine_type_id or "-",
                details={"event_type": draft.event_type, "reason": result.reason},
                actor_user_id=actor_id,
                request_id=request_id,
            )
            db.commit()
            return {
                "success": False,
                "valid": False,
                "reason": result.reason,
                "message": result.reason,
                "code": VALIDATION_ERROR,
                "retryable": False,
            }

        candidate = result.event
        auto_approved = candidate.event_type not in PENDING_ON_SUBMIT
        ev = AllocationEvent(
            id=_new_id("evt"),
            **candidate.model_dump(),
            status=APPROVED if auto_approved else PENDING,
            approved_by=actor_id if auto_approved else None,
            approved_at_utc=now if auto_approved else None,
            created_by=actor_id,
            created_at_utc=now,
        )
        db.add(ev)
        audit_write(
            db,
            action="EVENT_CREATE",
            entity_type="allocation_event",
            entity_id=ev.id,
            details={"after": event_to_dict(ev)},
            actor_user_id=actor_id,
            request_id=request_id,
        )
        db.commit()
    except Exception as e:
        db.rollback()
        return handle_event_error(db, e, ctx, request_id, enqueue=False)

    log.info("event_created", extra={"event_id": ev.id, "event_type": ev.event_type, "unit_id": ev.unit_id})
    followups: dict[str, Any] = {}
    if auto_approved:
        followups = run_post_approval(db, ev, actor_id, request_id, now)
    publish_change("EVENT_CREATED", {"event_id": ev.id, "event_type": ev.event_type, "status": ev.status})
    return {"success": True, "valid": True, "event": event_to_dict(ev), "followups": followups}


def _assert_pending(ev: AllocationEvent, ctx: ErrorContext) -> None:
    if ev.status == APPROVED:
        raise EventPermissionError("EVENT_ALREADY_APPROVED", ctx)
    if ev.status == REJECTED:
        raise EventPermissionError("EVENT_ALREADY_REJECTED", ctx)
    if ev.status != PENDING:
        raise EventPermissionError("EVENT_ALREADY_PROCESSED", ctx)


def _load_event(db, event_id: str, ctx: ErrorContext) -> AllocationEvent:
    ev = db.get(AllocationEvent, event_id)
    if ev is None:
        raise EventNotFoundError(f"event {event_id} not found", ctx)
    return ev


def approve_event(
    db,
    event_id: str,
    approver_id: str,
    request_id: str | None = None,
    *,
    enqueue_retry: bool = True,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or _now()
    ctx = ErrorContext(event_id=event_id, actor_id=approver_id, action_type="approve")
    try:
        ev = _load_event(db, event_id, ctx)
        _assert_pending(ev, ctx)
        before = event_to_dict(ev)

        # history may have moved on since submission
        result = EventValidator(DbEventHistory(db)).validate(draft_from_row(ev), now)
        if not result.valid:
            raise EventValidationError(result.reason or "event is no longer valid", ctx)

        if not transition_status(db, event_id, APPROVED, approver_id, now=now):
            raise EventPermissionError("EVENT_ALREADY_PROCESSED", ctx)
        db.refresh(ev)

        audit_write(
            db,
            action="EVENT_APPROVE",
            entity_type="allocation_event",
            entity_id=event_id,
            details={"before": before, "after": event_to_dict(ev)},
            actor_user_id=approver_id,
            request_id=request_id,
        )
        db.commit()
    except Exception as e:
        db.rollback()
        return handle_event_error(db, e, ctx, request_id, enqueue=enqueue_retry)

    log.info("event_approved", extra={"event_id": event_id, "actor_id": approver_id})
    followups = run_post_approval(db, ev, approver_id, request_id, now)
    publish_change("EVENT_APPROVED", {"event_id": event_id, "event_type": ev.event_type, "unit_id": ev.unit_id})
    return {
        "success": True,
        "event": event_to_dict(ev),
        "followups": followups,
        "message": "EVENT_APPROVED",
        "code": "OK",
        "retryable": False,
    }


def reject_event(
    db,
    event_id: str,
    approver_id: str,
    reason: str,
    request_id: str | None = None,
    *,
    enqueue_retry: bool = True,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or _now()
    ctx = ErrorContext(event_id=event_id, actor_id=approver_id, action_type="reject", reason=reason)
    try:
        if not (reason or "").strip():
            raise EventValidationError("rejection reason is required", ctx)
        ev = _load_event(db, event_id, ctx)
        _assert_pending(ev, ctx)
        before = event_to_dict(ev)

        if not transition_status(db, event_id, REJECTED, approver_id, rejection_reason=reason.strip(), now=now):
            raise EventPermissionError("EVENT_ALREADY_PROCESSED", ctx)
        db.refresh(ev)

        audit_write(
            db,
            action="EVENT_REJECT",
            entity_type="allocation_event",
            entity_id=event_id,
            details={"before": before, "after": event_to_dict(ev)},
            actor_user_id=approver_id,
            request_id=request_id,
        )
        db.commit()
    except Exception as e:
        db.rollback()
        return handle_event_error(db, e, ctx, request_id, enqueue=enqueue_retry)

    log.info("event_rejected", extra={"event_id": event_id, "actor_id": approver_id})
    publish_change("EVENT_REJECTED", {"event_id": event_id, "event_type": ev.event_type, "unit_id": ev.unit_id})
    return {
        "success": True,
        "event": event_to_dict(ev),
        "message": "EVENT_REJECTED",
        "code": "OK",
        "retryable": False,
    }


def _correction_root(db, ev: AllocationEvent) -> Optional[AllocationEvent]:
    seen = {ev.id}
    target = ev
    while target is not None and target.event_type == CORRECTION:
        target = db.get(AllocationEvent, target.corrects_event_id) if target.corrects_event_id else None
        if target is not None and target.id in seen:
            return None
        if target is not None:
            seen.add(target.id)
    return target


def _record_followup_failure(db, ev: AllocationEvent, step: str, error: str, actor_id: str, request_id: str | None):
    log.error("post_approval_step_failed", extra={"event_id": ev.id, "code": step, "err": error})
    try:
        audit_write(
            db,
            action="POST_APPROVAL_FAILED",
            entity_type="allocation_event",
            entity_id=ev.id,
            details={"step": step, "error": error},
            actor_user_id=actor_id,
            request_id=request_id,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.error("post_approval_audit_failed", extra={"event_id": ev.id, "err": str(e)[:300]})


def run_post_approval(
    db, ev: AllocationEvent, actor_id: str, request_id: str | None = None, now: datetime | None = None
) -> dict[str, Any]:
    """Write-back and notification scheduling after an event became approved."""
    out: dict[str, Any] = {}
    target = _correction_root(db, ev) if ev.event_type == CORRECTION else ev

    steps: list[tuple[str, Any]] = []
    if ev.unit_id:
        steps.append(("unit_sync", lambda: sync_unit(db, ev.unit_id, now)))
    extension_id = ev.extension_id or (target.extension_id if target is not None else None)
    if extension_id:
        steps.append(("extension_sync", lambda: sync_extension(db, extension_id, now)))

    for name, step in steps:
        try:
            res = step()
        except Exception as e:
            db.rollback()
            res = {"success": False, "changed": False, "error": str(e)[:300]}
        out[name] = res
        if not res.get("success"):
            _record_followup_failure(db, ev, name, res.get("error") or "sync failed", actor_id, request_id)

    if target is None:
        out["notification"] = "skipped"
        return out
    try:
        end_date = None
        if target is not ev and target.unit_id:
            overrides, _ = build_correction_index(load_unit_events(db, target.unit_id))
            end_date = overrides.get(target.id, {}).get("end_date")
        out["notification"] = update_allocation_notification(db, target, now, end_date=end_date)
        db.commit()
    except Exception as e:
        db.rollback()
        out["notification"] = "failed"
        _record_followup_failure(db, ev, "notification", str(e)[:300], actor_id, request_id)
    return out
