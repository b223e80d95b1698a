from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select

from apps.fleet_backend.events import APPROVED, EXTENSION_ATTACH, START_ALLOCATION, utcnow
from apps.fleet_backend.models import AllocationEvent, Extension, ScheduledNotification, Unit
from common_core.config import settings

log = logging.getLogger("fleettrack.notifications")

ALLOCATION_DUE = "allocation_due"


def is_notification_eligible(ev: AllocationEvent, end_date: datetime | None = None) -> bool:
    return (
        ev.event_type in (START_ALLOCATION, EXTENSION_ATTACH)
        and (end_date or ev.end_date) is not None
        and ev.status == APPROVED
    )


def _label(db, ev: AllocationEvent) -> str:
    if ev.event_type == EXTENSION_ATTACH and ev.extension_id:
        ext = db.get(Extension, ev.extension_id)
        return f"Extension {ext.unit_number if ext else ev.extension_id}"
    unit = db.get(Unit, ev.unit_id) if ev.unit_id else None
    return f"Unit {unit.unit_number if unit else ev.unit_id}"


def _trigger_at(end_date: datetime, now: datetime) -> datetime:
    if end_date > now:
        return end_date
    return now + timedelta(seconds=settings.notification_min_lead_sec)


def update_allocation_notification(
    db, ev: AllocationEvent, now: datetime | None = None, end_date: datetime | None = None
) -> str:
    """Keep the allocation_due reminder of one event in line with the event.

    `end_date` is the effective end date when a correction amended it.
    Returns "created", "updated", "deleted" or "skipped". Does not commit.
    """
    now = now or utcnow()
    end_date = end_date or ev.end_date
    existing = db.execute(
        select(ScheduledNotification).where(
            ScheduledNotification.event_id == ev.id,
            ScheduledNotification.kind == ALLOCATION_DUE,
        )
    ).scalar_one_or_none()

    if not is_notification_eligible(ev, end_date):
        if existing is None:
            return "skipped"
        db.delete(existing)
        log.info("notification_deleted", extra={"event_id": ev.id})
        return "deleted"

    label = _label(db, ev)
    title = f"{label} allocation due"
    message = f"{label} allocation ends on {end_date.date().isoformat()}"
    trigger_at = _trigger_at(end_date, now)

    if existing is None:
        db.add(
            ScheduledNotification(
                event_id=ev.id,
                kind=ALLOCATION_DUE,
                title=title,
                message=message,
                trigger_at_utc=trigger_at,
                created_at_utc=now,
            )
        )
        log.info("notification_created", extra={"event_id": ev.id})
        return "created"

    existing.title = title
    existing.message = message
    existing.trigger_at_utc = trigger_at
    existing.updated_at_utc = now
    return "updated"
