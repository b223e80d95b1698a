from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update

from apps.fleet_backend.events import (
    APPROVED,
    CORRECTION,
    EXTENSION_ATTACH,
    EXTENSION_DETACH,
    PENDING,
    EventRecord,
    iso,
    record_from_row,
    utcnow,
)
from apps.fleet_backend.models import AllocationEvent, AuditLog
from apps.fleet_backend.state_calculator import (
    EXTENSION,
    UNIT,
    DerivedState,
    derive_extension_state,
    derive_unit_state,
)


def _now() -> datetime:
    return utcnow()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:18]}"


def audit_write(
    db,
    action: str,
    entity_type: str,
    entity_id: str,
    details: dict[str, Any],
    actor_user_id: str | None,
    request_id: str | None,
) -> None:
    db.add(
        AuditLog(
            actor_user_id=actor_user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            request_id=request_id,
            details_json=details,
            created_at_utc=_now(),
        )
    )


def event_to_dict(ev: AllocationEvent) -> dict[str, Any]:
    return {
        "id": ev.id,
        "event_type": ev.event_type,
        "unit_id": ev.unit_id,
        "extension_id": ev.extension_id,
        "site_id": ev.site_id,
        "machine_type_id": ev.machine_type_id,
        "event_date": iso(ev.event_date),
        "end_date": iso(ev.end_date),
        "construction_type": ev.construction_type,
        "lot_building_number": ev.lot_building_number,
        "downtime_reason": ev.downtime_reason,
        "downtime_description": ev.downtime_description,
        "corrects_event_id": ev.corrects_event_id,
        "correction_description": ev.correction_description,
        "notes": ev.notes,
        "status": ev.status,
        "approved_by": ev.approved_by,
        "approved_at_utc": iso(ev.approved_at_utc),
        "rejection_reason": ev.rejection_reason,
        "created_by": ev.created_by,
        "created_at_utc": iso(ev.created_at_utc),
    }


def _ordered(stmt):
    return stmt.order_by(
        AllocationEvent.event_date.asc(),
        AllocationEvent.created_at_utc.asc(),
        AllocationEvent.id.asc(),
    )


def load_unit_events(db, unit_id: str) -> list[EventRecord]:
    """Approved history of a unit. Never cut by date: corrections dated later still amend earlier events."""
    rows = (
        db.execute(
            _ordered(
                select(AllocationEvent).where(
                    AllocationEvent.unit_id == unit_id, AllocationEvent.status == APPROVED
                )
            )
        )
        .scalars()
        .all()
    )
    return [record_from_row(r) for r in rows]


def load_extension_events(db, extension_id: str) -> list[EventRecord]:
    """Approved attach/detach events of an extension plus every correction chained onto them."""
    rows = list(
        db.execute(
            _ordered(
                select(AllocationEvent).where(
                    AllocationEvent.extension_id == extension_id,
                    AllocationEvent.status == APPROVED,
                    AllocationEvent.event_type.in_([EXTENSION_ATTACH, EXTENSION_DETACH]),
                )
            )
        )
        .scalars()
        .all()
    )
    known = {r.id for r in rows}
    frontier = set(known)
    while frontier:
        corrections = (
            db.execute(
                select(AllocationEvent).where(
                    AllocationEvent.event_type == CORRECTION,
                    AllocationEvent.status == APPROVED,
                    AllocationEvent.corrects_event_id.in_(sorted(frontier)),
                )
            )
            .scalars()
            .all()
        )
        frontier = {c.id for c in corrections} - known
        known |= frontier
        rows.extend(c for c in corrections if c.id in frontier)
    return [record_from_row(r) for r in rows]


def load_events_by_unit(db, unit_ids: list[str]) -> dict[str, list[EventRecord]]:
    """One query for many units; used by the listing queries."""
    out: dict[str, list[EventRecord]] = {uid: [] for uid in unit_ids}
    if not unit_ids:
        return out
    rows = (
        db.execute(
            _ordered(
                select(AllocationEvent).where(
                    AllocationEvent.unit_id.in_(unit_ids), AllocationEvent.status == APPROVED
                )
            )
        )
        .scalars()
        .all()
    )
    for r in rows:
        out[r.unit_id].append(record_from_row(r))
    return out


def get_event_record(db, event_id: str) -> Optional[EventRecord]:
    row = db.get(AllocationEvent, event_id)
    return record_from_row(row) if row is not None else None


def list_events(
    db, unit_id: str | None = None, status: str | None = None, limit: int = 100
) -> list[AllocationEvent]:
    stmt = select(AllocationEvent)
    if unit_id:
        stmt = stmt.where(AllocationEvent.unit_id == unit_id)
    if status:
        stmt = stmt.where(AllocationEvent.status == status)
    stmt = stmt.order_by(AllocationEvent.created_at_utc.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def transition_status(
    db,
    event_id: str,
    new_status: str,
    actor_id: str,
    rejection_reason: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Flip a pending event to approved/rejected. False when it was no longer pending."""
    values: dict[str, Any] = {
        "status": new_status,
        "approved_by": actor_id,
        "approved_at_utc": now or _now(),
    }
    if rejection_reason is not None:
        values["rejection_reason"] = rejection_reason
    res = db.execute(
        update(AllocationEvent)
        .where(AllocationEvent.id == event_id, AllocationEvent.status == PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


@dataclass(frozen=True)
class ActiveDowntime:
    event_id: str
    unit_id: str
    site_id: Optional[str]
    reason: Optional[str]
    started_at: Optional[datetime]

    def to_dict(self) -> dict[str, Any]:
        return {
            "downtime_event_id": self.event_id,
            "unit_id": self.unit_id,
            "site_id": self.site_id,
            "downtime_reason": self.reason,
            "downtime_start": iso(self.started_at),
        }


def active_downtime_for(unit_id: str, events: list[EventRecord], reference_time: datetime | None = None):
    state = derive_unit_state(unit_id, events, reference_time)
    if not state.is_in_downtime or not state.current_downtime_event_id:
        return None
    return ActiveDowntime(
        event_id=state.current_downtime_event_id,
        unit_id=unit_id,
        site_id=state.current_site_id,
        reason=state.downtime_reason,
        started_at=state.downtime_start,
    )


class DbEventHistory:
    """Event Log lookups handed to the validator."""

    def __init__(self, db):
        self.db = db

    def unit_events(self, unit_id: str) -> list[EventRecord]:
        return load_unit_events(self.db, unit_id)

    def extension_events(self, extension_id: str) -> list[EventRecord]:
        return load_extension_events(self.db, extension_id)

    def get_event(self, event_id: str) -> Optional[EventRecord]:
        return get_event_record(self.db, event_id)

    def active_downtime(self, unit_id: str, reference_time: datetime | None = None):
        return active_downtime_for(unit_id, self.unit_events(unit_id), reference_time)


def get_derived_state(db, entity_id: str, reference_time: datetime | None = None, kind: str = UNIT) -> DerivedState:
    """Replay an entity's approved history as of `reference_time` (default: now)."""
    if kind == EXTENSION:
        return derive_extension_state(entity_id, load_extension_events(db, entity_id), reference_time)
    return derive_unit_state(entity_id, load_unit_events(db, entity_id), reference_time)
