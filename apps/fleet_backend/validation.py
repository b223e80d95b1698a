from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from apps.fleet_backend.events import (
    APPROVED,
    CORRECTABLE_FIELDS,
    CORRECTION,
    DOWNTIME_END,
    DOWNTIME_START,
    END_ALLOCATION,
    EXTENSION_ATTACH,
    EXTENSION_DETACH,
    REFUELING,
    REQUEST_ALLOCATION,
    START_ALLOCATION,
    TRANSPORT_ARRIVAL,
    TRANSPORT_START,
    EventDraft,
    overrides_of,
    utcnow,
)
from apps.fleet_backend.state_calculator import (
    IN_TRANSIT,
    DerivedState,
    derive_extension_state,
    derive_unit_state,
)

log = logging.getLogger("fleettrack.validation")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    # the candidate as it should be inserted (downtime_end may get its target filled in)
    event: Optional[EventDraft] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"valid": self.valid}
        if self.reason:
            out["reason"] = self.reason
        return out


def _invalid(reason: str) -> ValidationResult:
    return ValidationResult(valid=False, reason=reason)


def _ok(candidate: EventDraft) -> ValidationResult:
    return ValidationResult(valid=True, event=candidate)


class EventValidator:
    """Admission rules checked against state derived from the event history.

    `history` supplies the lookups (see `services.DbEventHistory`):
    `unit_events(unit_id)`, `extension_events(extension_id)`,
    `get_event(event_id)` and `active_downtime(unit_id, reference_time)`.
    Nothing here writes.
    """

    def __init__(self, history):
        self.history = history

    def validate(self, candidate: EventDraft, now: datetime | None = None) -> ValidationResult:
        now = now or utcnow()
        # a backdated insert is judged against the timeline as it stood at its own date
        ref = min(candidate.event_date, now)

        if candidate.event_type == REQUEST_ALLOCATION:
            return self._request_allocation(candidate)
        if not candidate.unit_id:
            return _invalid("unit_id is required")

        state = derive_unit_state(candidate.unit_id, self.history.unit_events(candidate.unit_id), ref)
        if state.inconsistencies:
            log.warning(
                "validating_against_inconsistent_state",
                extra={"unit_id": candidate.unit_id, "count": len(state.inconsistencies)},
            )
        rule = self._rules[candidate.event_type]
        return rule(self, candidate, state, ref)

    def _request_allocation(self, c: EventDraft) -> ValidationResult:
        if not c.unit_id and not c.machine_type_id:
            return _invalid("request_allocation needs a unit_id or a machine_type_id")
        if not c.site_id:
            return _invalid("site_id is required for request_allocation")
        if not c.end_date:
            return _invalid("end_date is required for request_allocation")
        return _ok(c)

    def _start_allocation(self, c: EventDraft, state: DerivedState, ref: datetime) -> ValidationResult:
        if state.current_site_id:
            return _invalid(
                f"unit is already at site {state.current_site_id}; end the current allocation first"
            )
        if not c.site_id:
            return _invalid("site_id is required for start_allocation")
        if not c.end_date:
            return _invalid("end_date is required for start_allocation")
        if c.end_date < c.event_date:
            return _invalid("end_date must not be before event_date")
        return _ok(c)

    def _end_allocation(self, c: EventDraft, state: DerivedState, ref: datetime) -> ValidationResult:
        if not state.current_site_id:
            return _invalid("unit is not at a site; there is no active allocation to end")
        if c.site_id and c.site_id != state.current_site_id:
            return _invalid(f"unit is at site {state.current_site_id}, not {c.site_id}")
        return _ok(c)

    def _downtime_start(self, c: EventDraft, state: DerivedState, ref: datetime) -> ValidationResult:
        if state.is_in_downtime:
            return _invalid("unit is already in downtime; end the current downtime first")
        if not state.current_site_id:
            return _invalid("downtime can only be recorded for a unit at a site")
        if not c.downtime_reason:
            return _invalid("downtime_reason is required")
        return _ok(c)

    def _downtime_end(self, c: EventDraft, state: DerivedState, ref: datetime) -> ValidationResult:
        if not state.is_in_downtime:
            return _invalid("unit is not in downtime")
        if c.corrects_event_id:
            if c.corrects_event_id != state.current_downtime_event_id:
                return _invalid(
                    f"downtime_end must close the open downtime {state.current_downtime_event_id}"
                )
            return _ok(c)
        active = self.history.active_downtime(c.unit_id, ref)
        if active is None:
            return _invalid("no active downtime found for unit")
        return _ok(
            c.model_copy(
                update={"corrects_event_id": active.event_id, "site_id": c.site_id or active.site_id}
            )
        )

    def _extension_attach(self, c: EventDraft, state: DerivedState, ref: datetime) -> ValidationResult:
        if not c.extension_id:
            return _invalid("extension_id is required for extension_attach")
        ext = derive_extension_state(c.extension_id, self.history.extension_events(c.extension_id), ref)
        if ext.current_machine_id:
            return _invalid(
                f"extension is already attached to unit {ext.current_machine_id}; detach it first"
            )
        return _ok(c)

    def _extension_detach(self, c: EventDraft, state: DerivedState, ref: datetime) -> ValidationResult:
        if not c.extension_id:
            return _invalid("extension_id is required for extension_detach")
        ext = derive_extension_state(c.extension_id, self.history.extension_events(c.extension_id), ref)
        if not ext.current_machine_id:
            return _invalid("extension is not attached to any unit")
        if ext.current_machine_id != c.unit_id:
            return _invalid(f"extension is attached to unit {ext.current_machine_id}, not {c.unit_id}")
        return _ok(c)

    def _correction(self, c: EventDraft, state: DerivedState, ref: datetime) -> ValidationResult:
        if not c.corrects_event_id:
            return _invalid("corrects_event_id is required for correction")
        target = self.history.get_event(c.corrects_event_id)
        if target is None:
            return _invalid(f"event {c.corrects_event_id} not found")
        if target.unit_id != c.unit_id:
            return _invalid(f"event {target.id} belongs to another unit")
        if target.status != APPROVED:
            return _invalid(f"event {target.id} is {target.status}; only approved events can be corrected")

        root = target
        seen = {target.id}
        while root.event_type == CORRECTION:
            root = self.history.get_event(root.corrects_event_id)
            if root is None or root.id in seen:
                return _invalid(f"event {target.id} is part of a broken correction chain")
            seen.add(root.id)

        fields = overrides_of(c)
        if not fields:
            return _invalid("correction must change at least one field")
        rejected = sorted(set(fields) - CORRECTABLE_FIELDS.get(root.event_type, frozenset()))
        if rejected:
            return _invalid(f"{', '.join(rejected)} cannot be corrected on a {root.event_type} event")
        return _ok(c)

    def _transport_start(self, c: EventDraft, state: DerivedState, ref: datetime) -> ValidationResult:
        if not state.current_site_id:
            return _invalid("unit has no known origin site to leave from")
        if state.status == IN_TRANSIT:
            return _invalid("unit is already in transit")
        return _ok(c)

    def _transport_arrival(self, c: EventDraft, state: DerivedState, ref: datetime) -> ValidationResult:
        if state.status != IN_TRANSIT:
            return _invalid("unit must be in transit to record an arrival")
        if not c.site_id:
            return _invalid("site_id (destination) is required for transport_arrival")
        if (
            state.current_site_id == c.site_id
            and state.construction_type == c.construction_type
            and state.lot_building_number == c.lot_building_number
        ):
            return _invalid("arrival address is the same as the origin")
        return _ok(c)

    def _refueling(self, c: EventDraft, state: DerivedState, ref: datetime) -> ValidationResult:
        return _ok(c)

    _rules = {
        START_ALLOCATION: _start_allocation,
        END_ALLOCATION: _end_allocation,
        DOWNTIME_START: _downtime_start,
        DOWNTIME_END: _downtime_end,
        EXTENSION_ATTACH: _extension_attach,
        EXTENSION_DETACH: _extension_detach,
        CORRECTION: _correction,
        TRANSPORT_START: _transport_start,
        TRANSPORT_ARRIVAL: _transport_arrival,
        REFUELING: _refueling,
    }
