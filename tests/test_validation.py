import itertools
from datetime import datetime, timedelta

from apps.fleet_backend.events import (
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
    parse_record,
)
from apps.fleet_backend.services import active_downtime_for
from apps.fleet_backend.validation import EventValidator

BASE = datetime(2026, 4, 1, 7, 0, 0)
NOW = BASE + timedelta(days=60)
_seq = itertools.count(1)


def day(n: int) -> datetime:
    return BASE + timedelta(days=n - 1)


def rec(event_type, n, unit_id="U1", status="approved", **kw):
    i = next(_seq)
    return parse_record(
        {
            "id": kw.pop("id", f"v{i:05d}"),
            "event_type": event_type,
            "unit_id": unit_id,
            "event_date": day(n),
            "created_at": day(n) + timedelta(seconds=i),
            "status": status,
            **kw,
        }
    )


def draft(event_type, n, unit_id="U1", **kw):
    return EventDraft(event_type=event_type, unit_id=unit_id, event_date=day(n), **kw)


class FakeHistory:
    def __init__(self, events):
        self.events = list(events)

    def unit_events(self, unit_id):
        return [e for e in self.events if e.unit_id == unit_id]

    def extension_events(self, extension_id):
        return [e for e in self.events if getattr(e, "extension_id", None) == extension_id]

    def get_event(self, event_id):
        return next((e for e in self.events if e.id == event_id), None)

    def active_downtime(self, unit_id, reference_time=None):
        return active_downtime_for(unit_id, self.unit_events(unit_id), reference_time)


def check(events, candidate):
    return EventValidator(FakeHistory(events)).validate(candidate, now=NOW)


def allocated():
    return [rec(START_ALLOCATION, 1, site_id="S1", end_date=day(40), id="alloc")]


def test_scenario_e_end_allocation_without_allocation():
    res = check([], draft(END_ALLOCATION, 5))
    assert res.valid is False
    assert "no active allocation" in res.reason
    assert res.to_dict() == {"valid": False, "reason": res.reason}


def test_unit_id_required_except_for_requests():
    res = check([], draft(REFUELING, 2, unit_id=None))
    assert not res.valid
    assert res.reason == "unit_id is required"


def test_start_allocation_rules():
    assert not check(allocated(), draft(START_ALLOCATION, 3, site_id="S2", end_date=day(9))).valid
    assert not check([], draft(START_ALLOCATION, 3, end_date=day(9))).valid
    assert not check([], draft(START_ALLOCATION, 3, site_id="S2")).valid
    assert not check([], draft(START_ALLOCATION, 3, site_id="S2", end_date=day(1))).valid
    ok = check([], draft(START_ALLOCATION, 3, site_id="S2", end_date=day(9)))
    assert ok.valid
    assert ok.event.site_id == "S2"


def arrived_without_allocation():
    return allocated() + [
        rec(TRANSPORT_START, 2, site_id="S2"),
        rec(END_ALLOCATION, 3),
        rec(TRANSPORT_ARRIVAL, 4, site_id="S2"),
    ]


def test_start_allocation_rejected_while_unit_holds_a_site():
    res = check(arrived_without_allocation(), draft(START_ALLOCATION, 5, site_id="S3", end_date=day(9)))
    assert res.valid is False
    assert "already at site S2" in res.reason

    plain = [rec(TRANSPORT_START, 1, site_id="S1"), rec(TRANSPORT_ARRIVAL, 2, site_id="S1")]
    assert not check(plain, draft(START_ALLOCATION, 3, site_id="S1", end_date=day(9))).valid


def test_end_allocation_releases_unit_on_site_without_allocation():
    events = arrived_without_allocation()
    assert check(events, draft(END_ALLOCATION, 5)).valid
    assert check(events, draft(END_ALLOCATION, 5, site_id="S2")).valid
    assert not check(events, draft(END_ALLOCATION, 5, site_id="S1")).valid


def test_end_allocation_site_must_match():
    assert not check(allocated(), draft(END_ALLOCATION, 5, site_id="S9")).valid
    assert check(allocated(), draft(END_ALLOCATION, 5, site_id="S1")).valid
    assert check(allocated(), draft(END_ALLOCATION, 5)).valid


def test_backdated_event_is_checked_against_its_own_date():
    events = [rec(START_ALLOCATION, 5, site_id="S1", end_date=day(40))]
    assert not check(events, draft(END_ALLOCATION, 3)).valid
    assert check(events, draft(END_ALLOCATION, 6)).valid


def test_downtime_start_rules():
    assert not check([], draft(DOWNTIME_START, 2, downtime_reason="engine")).valid
    assert not check(allocated(), draft(DOWNTIME_START, 2)).valid
    in_downtime = allocated() + [rec(DOWNTIME_START, 2, downtime_reason="engine")]
    assert not check(in_downtime, draft(DOWNTIME_START, 3, downtime_reason="tyre")).valid
    assert check(allocated(), draft(DOWNTIME_START, 2, downtime_reason="engine")).valid


def test_downtime_end_resolves_open_downtime():
    events = allocated() + [rec(DOWNTIME_START, 2, downtime_reason="engine", id="ds1")]
    res = check(events, draft(DOWNTIME_END, 3))
    assert res.valid
    assert res.event.corrects_event_id == "ds1"
    assert res.event.site_id == "S1"


def test_downtime_end_rules():
    assert not check(allocated(), draft(DOWNTIME_END, 3)).valid
    events = allocated() + [rec(DOWNTIME_START, 2, downtime_reason="engine", id="ds1")]
    assert not check(events, draft(DOWNTIME_END, 3, corrects_event_id="ds0")).valid
    assert check(events, draft(DOWNTIME_END, 3, corrects_event_id="ds1")).valid


def test_extension_attach_rules():
    taken = allocated() + [rec(EXTENSION_ATTACH, 2, unit_id="U2", extension_id="X1")]
    assert not check(allocated(), draft(EXTENSION_ATTACH, 3)).valid
    res = check(taken, draft(EXTENSION_ATTACH, 3, extension_id="X1"))
    assert not res.valid
    assert "U2" in res.reason
    assert check(allocated(), draft(EXTENSION_ATTACH, 3, extension_id="X1")).valid


def test_extension_detach_rules():
    assert not check(allocated(), draft(EXTENSION_DETACH, 3, extension_id="X1")).valid
    other = allocated() + [rec(EXTENSION_ATTACH, 2, unit_id="U2", extension_id="X1")]
    assert not check(other, draft(EXTENSION_DETACH, 3, extension_id="X1")).valid
    mine = allocated() + [rec(EXTENSION_ATTACH, 2, extension_id="X1")]
    assert check(mine, draft(EXTENSION_DETACH, 3, extension_id="X1")).valid


def test_request_allocation_rules():
    assert not check([], draft(REQUEST_ALLOCATION, 1, unit_id=None, site_id="S1", end_date=day(5))).valid
    assert not check([], draft(REQUEST_ALLOCATION, 1, unit_id=None, machine_type_id="MT1", end_date=day(5))).valid
    assert not check([], draft(REQUEST_ALLOCATION, 1, unit_id=None, machine_type_id="MT1", site_id="S1")).valid
    assert check(
        [], draft(REQUEST_ALLOCATION, 1, unit_id=None, machine_type_id="MT1", site_id="S1", end_date=day(5))
    ).valid


def test_correction_rules():
    events = allocated() + [rec(START_ALLOCATION, 1, unit_id="U2", site_id="S3", id="u2alloc")]
    assert not check(events, draft(CORRECTION, 4, site_id="S2")).valid
    assert not check(events, draft(CORRECTION, 4, corrects_event_id="nope", site_id="S2")).valid
    assert not check(events, draft(CORRECTION, 4, corrects_event_id="u2alloc", site_id="S2")).valid
    assert not check(events, draft(CORRECTION, 4, corrects_event_id="alloc")).valid
    incompatible = check(events, draft(CORRECTION, 4, corrects_event_id="alloc", downtime_reason="x"))
    assert not incompatible.valid
    assert "downtime_reason" in incompatible.reason
    assert check(events, draft(CORRECTION, 4, corrects_event_id="alloc", end_date=day(50))).valid


def test_correction_of_pending_event_is_rejected():
    events = [rec(START_ALLOCATION, 1, site_id="S1", status="pending", id="p1")]
    assert not check(events, draft(CORRECTION, 2, corrects_event_id="p1", site_id="S2")).valid


def test_correction_of_correction_uses_root_type():
    events = allocated() + [rec(CORRECTION, 2, corrects_event_id="alloc", end_date=day(45), id="c1")]
    assert check(events, draft(CORRECTION, 3, corrects_event_id="c1", end_date=day(46))).valid
    assert not check(events, draft(CORRECTION, 3, corrects_event_id="c1", downtime_description="x")).valid


def test_transport_rules():
    assert not check([], draft(TRANSPORT_START, 2, site_id="S2")).valid
    assert check(allocated(), draft(TRANSPORT_START, 2, site_id="S2")).valid

    moving = allocated() + [rec(TRANSPORT_START, 2, site_id="S2")]
    assert not check(moving, draft(TRANSPORT_START, 3, site_id="S3")).valid
    assert not check(allocated(), draft(TRANSPORT_ARRIVAL, 3, site_id="S2")).valid
    assert not check(moving, draft(TRANSPORT_ARRIVAL, 3)).valid
    assert not check(moving, draft(TRANSPORT_ARRIVAL, 3, site_id="S1")).valid
    assert check(moving, draft(TRANSPORT_ARRIVAL, 3, site_id="S2")).valid


def test_refueling_only_needs_a_unit():
    assert check([], draft(REFUELING, 2)).valid
