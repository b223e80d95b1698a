"""Replay of an entity's approved event history into its derived state.

Everything in this module is pure: no database access, no clock reads other
than the default reference time, no logging. The same events and reference
time always produce an equal `DerivedState`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from apps.fleet_backend.events import (
    APPROVED,
    CORRECTABLE_FIELDS,
    CORRECTION,
    DOWNTIME_END,
    DOWNTIME_START,
    END_ALLOCATION,
    EXTENSION_ATTACH,
    EXTENSION_DETACH,
    START_ALLOCATION,
    TRANSPORT_ARRIVAL,
    TRANSPORT_START,
    event_sort_key,
    iso,
    utcnow,
)

UNIT = "unit"
EXTENSION = "extension"

AVAILABLE = "available"
ALLOCATED = "allocated"
IN_TRANSIT = "in_transit"
MAINTENANCE = "maintenance"
EXCEEDED = "exceeded"
ATTACHED = "attached"


@dataclass(frozen=True)
class StateInconsistency:
    kind: str  # correction_cycle, foreign_correction, dangling_correction, incompatible_correction, downtime_end_mismatch
    event_id: str
    detail: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "event_id": self.event_id, "detail": self.detail}


@dataclass(frozen=True)
class AttachedExtension:
    extension_id: str
    attach_event_id: str
    attached_at: datetime


@dataclass(frozen=True)
class DerivedState:
    entity_id: str
    entity_kind: str
    reference_time: datetime
    status: str = AVAILABLE
    current_site_id: Optional[str] = None
    current_allocation_event_id: Optional[str] = None
    allocation_start: Optional[datetime] = None
    end_date: Optional[datetime] = None
    construction_type: Optional[str] = None
    lot_building_number: Optional[str] = None
    is_in_downtime: bool = False
    downtime_reason: Optional[str] = None
    current_downtime_event_id: Optional[str] = None
    downtime_start: Optional[datetime] = None
    previous_site_id: Optional[str] = None
    destination_site_id: Optional[str] = None
    attached_extensions: tuple[AttachedExtension, ...] = ()
    current_machine_id: Optional[str] = None
    attach_event_id: Optional[str] = None
    inconsistencies: tuple[StateInconsistency, ...] = field(default=())

    @property
    def has_active_allocation(self) -> bool:
        return self.current_allocation_event_id is not None

    @property
    def is_consistent(self) -> bool:
        return not self.inconsistencies

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "entity_id": self.entity_id,
            "entity_kind": self.entity_kind,
            "reference_time": iso(self.reference_time),
            "status": self.status,
            "current_site_id": self.current_site_id,
            "current_allocation_event_id": self.current_allocation_event_id,
            "allocation_start": iso(self.allocation_start),
            "end_date": iso(self.end_date),
            "construction_type": self.construction_type,
            "lot_building_number": self.lot_building_number,
            "is_in_downtime": self.is_in_downtime,
            "downtime_reason": self.downtime_reason,
            "current_downtime_event_id": self.current_downtime_event_id,
            "downtime_start": iso(self.downtime_start),
            "inconsistencies": [i.to_dict() for i in self.inconsistencies],
        }
        if self.entity_kind == UNIT:
            out["previous_site_id"] = self.previous_site_id
            out["destination_site_id"] = self.destination_site_id
            out["attached_extensions"] = [
                {
                    "extension_id": a.extension_id,
                    "attach_event_id": a.attach_event_id,
                    "attached_at": iso(a.attached_at),
                }
                for a in self.attached_extensions
            ]
        else:
            out["current_machine_id"] = self.current_machine_id
            out["attach_event_id"] = self.attach_event_id
        return out


def _resolve_correction_target(
    correction: Any, by_id: dict[str, Any]
) -> tuple[Optional[Any], Optional[StateInconsistency]]:
    """Follow a correction chain down to the non-correction event it amends."""
    seen = {correction.id}
    target_id = correction.corrects_event_id
    while True:
        target = by_id.get(target_id)
        if target is None:
            return None, StateInconsistency(
                "dangling_correction",
                correction.id,
                f"corrected event {target_id} is not part of the approved history",
            )
        if target.unit_id != correction.unit_id:
            return None, StateInconsistency(
                "foreign_correction",
                correction.id,
                f"corrected event {target_id} belongs to unit {target.unit_id}",
            )
        if target.event_type != CORRECTION:
            return target, None
        if target.id in seen:
            return None, StateInconsistency(
                "correction_cycle", correction.id, f"correction chain loops back to {target.id}"
            )
        seen.add(target.id)
        target_id = target.corrects_event_id


def build_correction_index(
    events: Iterable[Any],
) -> tuple[dict[str, dict[str, Any]], list[StateInconsistency]]:
    """Map each corrected event id to the field values that replace the originals.

    Corrections are applied in log order, field by field, so when several
    corrections amend the same event the latest value of each field wins and
    fields a later correction does not mention keep the earlier correction's
    value. A correction of a correction amends the same root event.
    """
    events = list(events)
    by_id = {ev.id: ev for ev in events}
    overrides: dict[str, dict[str, Any]] = {}
    problems: list[StateInconsistency] = []

    for ev in sorted((e for e in events if e.event_type == CORRECTION), key=event_sort_key):
        target, problem = _resolve_correction_target(ev, by_id)
        if problem is not None:
            problems.append(problem)
            continue
        fields = ev.overrides()
        allowed = CORRECTABLE_FIELDS.get(target.event_type, frozenset())
        rejected = sorted(set(fields) - allowed)
        if not fields or rejected:
            problems.append(
                StateInconsistency(
                    "incompatible_correction",
                    ev.id,
                    f"{target.event_type} {target.id} cannot take corrected fields {rejected or '[]'}",
                )
            )
            continue
        overrides.setdefault(target.id, {}).update(fields)

    return overrides, problems


def _clear_downtime(state: DerivedState) -> DerivedState:
    return replace(
        state,
        is_in_downtime=False,
        downtime_reason=None,
        current_downtime_event_id=None,
        downtime_start=None,
    )


def _fold_unit(state: DerivedState, ev: Any, problems: list[StateInconsistency]) -> DerivedState:
    t = ev.event_type

    if t == START_ALLOCATION:
        if not ev.site_id:
            return state
        state = _clear_downtime(state)
        return replace(
            state,
            status=ALLOCATED,
            current_site_id=ev.site_id,
            current_allocation_event_id=ev.id,
            allocation_start=ev.event_date,
            end_date=ev.end_date,
            construction_type=ev.construction_type,
            lot_building_number=ev.lot_building_number,
            destination_site_id=None,
        )

    if t == END_ALLOCATION:
        if not state.current_site_id:
            return state
        if ev.site_id and ev.site_id != state.current_site_id:
            return state
        state = _clear_downtime(state)
        return replace(
            state,
            status=AVAILABLE,
            current_site_id=None,
            current_allocation_event_id=None,
            allocation_start=None,
            end_date=None,
            construction_type=None,
            lot_building_number=None,
        )

    if t == DOWNTIME_START:
        status = state.status if state.status in (ALLOCATED, IN_TRANSIT) else MAINTENANCE
        return replace(
            state,
            status=status,
            is_in_downtime=True,
            downtime_reason=ev.downtime_reason,
            current_downtime_event_id=ev.id,
            downtime_start=ev.event_date,
        )

    if t == DOWNTIME_END:
        if not state.is_in_downtime:
            return state
        if ev.corrects_event_id and ev.corrects_event_id != state.current_downtime_event_id:
            problems.append(
                StateInconsistency(
                    "downtime_end_mismatch",
                    ev.id,
                    f"closes {ev.corrects_event_id} but the open downtime is {state.current_downtime_event_id}",
                )
            )
            return state
        state = _clear_downtime(state)
        if state.status == MAINTENANCE:
            state = replace(state, status=ALLOCATED if state.has_active_allocation else AVAILABLE)
        return state

    if t == EXTENSION_ATTACH:
        if not ev.extension_id or any(a.extension_id == ev.extension_id for a in state.attached_extensions):
            return state
        attached = AttachedExtension(ev.extension_id, ev.id, ev.event_date)
        return replace(state, attached_extensions=state.attached_extensions + (attached,))

    if t == EXTENSION_DETACH:
        if not ev.extension_id:
            return state
        remaining = tuple(a for a in state.attached_extensions if a.extension_id != ev.extension_id)
        return replace(state, attached_extensions=remaining)

    if t == TRANSPORT_START:
        return replace(
            state,
            status=IN_TRANSIT,
            previous_site_id=state.current_site_id,
            destination_site_id=ev.site_id,
        )

    if t == TRANSPORT_ARRIVAL:
        if not ev.site_id:
            return state
        if state.has_active_allocation:
            status = ALLOCATED
        elif state.is_in_downtime:
            status = MAINTENANCE
        else:
            status = AVAILABLE
        return replace(
            state,
            status=status,
            current_site_id=ev.site_id,
            construction_type=ev.construction_type or state.construction_type,
            lot_building_number=ev.lot_building_number or state.lot_building_number,
            destination_site_id=None,
        )

    # request_allocation, refueling: informational only
    return state


def _fold_extension(state: DerivedState, ev: Any, problems: list[StateInconsistency]) -> DerivedState:
    if ev.event_type == EXTENSION_ATTACH and ev.unit_id:
        return replace(
            state,
            status=ATTACHED,
            current_machine_id=ev.unit_id,
            attach_event_id=ev.id,
            current_site_id=ev.site_id,
            allocation_start=ev.event_date,
            end_date=ev.end_date,
            construction_type=ev.construction_type,
            lot_building_number=ev.lot_building_number,
        )
    if ev.event_type == EXTENSION_DETACH:
        return replace(
            state,
            status=AVAILABLE,
            current_machine_id=None,
            attach_event_id=None,
            current_site_id=None,
            allocation_start=None,
            end_date=None,
            construction_type=None,
            lot_building_number=None,
        )
    return state


def _belongs_to(kind: str, entity_id: str) -> Callable[[Any], bool]:
    if kind == UNIT:
        return lambda ev: ev.unit_id == entity_id
    return lambda ev: getattr(ev, "extension_id", None) == entity_id


def derive(
    entity_id: str,
    events: Iterable[Any],
    reference_time: Optional[datetime] = None,
    kind: str = UNIT,
) -> DerivedState:
    """Fold approved events up to `reference_time` (default: now) into a state snapshot.

    Events not approved, or belonging to another entity, are ignored.
    Corrections are never folded on their own; their values replace the
    corrected event's fields at the corrected event's position. Malformed
    correction chains are skipped and reported in `inconsistencies`.
    """
    ref = reference_time or utcnow()
    approved = [ev for ev in events if ev.status == APPROVED]
    overrides, problems = build_correction_index(approved)

    fold = _fold_unit if kind == UNIT else _fold_extension
    owned = _belongs_to(kind, entity_id)
    state = DerivedState(entity_id=entity_id, entity_kind=kind, reference_time=ref)

    for ev in sorted(approved, key=event_sort_key):
        if ev.event_date > ref:
            break
        if ev.event_type == CORRECTION or not owned(ev):
            continue
        if ev.id in overrides:
            ev = ev.model_copy(update=overrides[ev.id])
        state = fold(state, ev, problems)

    if state.status == ALLOCATED and state.end_date is not None and state.end_date < ref:
        state = replace(state, status=EXCEEDED)

    return replace(state, inconsistencies=tuple(problems))


def derive_unit_state(
    unit_id: str, events: Iterable[Any], reference_time: Optional[datetime] = None
) -> DerivedState:
    return derive(unit_id, events, reference_time, kind=UNIT)


def derive_extension_state(
    extension_id: str, events: Iterable[Any], reference_time: Optional[datetime] = None
) -> DerivedState:
    return derive(extension_id, events, reference_time, kind=EXTENSION)
