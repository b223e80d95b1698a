from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

REQUEST_ALLOCATION = "request_allocation"
START_ALLOCATION = "start_allocation"
END_ALLOCATION = "end_allocation"
DOWNTIME_START = "downtime_start"
DOWNTIME_END = "downtime_end"
EXTENSION_ATTACH = "extension_attach"
EXTENSION_DETACH = "extension_detach"
CORRECTION = "correction"
REFUELING = "refueling"
TRANSPORT_START = "transport_start"
TRANSPORT_ARRIVAL = "transport_arrival"

EVENT_TYPES = (
    REQUEST_ALLOCATION,
    START_ALLOCATION,
    END_ALLOCATION,
    DOWNTIME_START,
    DOWNTIME_END,
    EXTENSION_ATTACH,
    EXTENSION_DETACH,
    CORRECTION,
    REFUELING,
    TRANSPORT_START,
    TRANSPORT_ARRIVAL,
)

EventTypeName = Literal[
    "request_allocation",
    "start_allocation",
    "end_allocation",
    "downtime_start",
    "downtime_end",
    "extension_attach",
    "extension_detach",
    "correction",
    "refueling",
    "transport_start",
    "transport_arrival",
]

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

# Types inserted as pending on submission; everything else is approved immediately.
PENDING_ON_SUBMIT = frozenset({REFUELING})

# Fields a correction may carry, and which of them each target type accepts.
CORRECTION_FIELDS = (
    "site_id",
    "end_date",
    "construction_type",
    "lot_building_number",
    "downtime_reason",
    "downtime_description",
)
CORRECTABLE_FIELDS: dict[str, frozenset[str]] = {
    REQUEST_ALLOCATION: frozenset({"site_id", "end_date"}),
    START_ALLOCATION: frozenset({"site_id", "end_date", "construction_type", "lot_building_number"}),
    EXTENSION_ATTACH: frozenset({"site_id", "end_date", "construction_type", "lot_building_number"}),
    END_ALLOCATION: frozenset({"site_id"}),
    DOWNTIME_START: frozenset({"downtime_reason", "downtime_description"}),
    TRANSPORT_START: frozenset({"site_id"}),
    TRANSPORT_ARRIVAL: frozenset({"site_id", "construction_type", "lot_building_number"}),
}

ConstructionType = Literal["lot", "building"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """All timestamps are stored and compared as naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def iso(value: Optional[datetime]) -> Optional[str]:
    return (value.isoformat() + "Z") if value else None


def overrides_of(obj: Any) -> dict[str, Any]:
    """Correction fields actually set on a correction record or draft."""
    return {f: getattr(obj, f) for f in CORRECTION_FIELDS if getattr(obj, f, None) is not None}


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    unit_id: Optional[str] = None
    event_date: datetime
    created_at: datetime
    status: Literal["pending", "approved", "rejected"] = APPROVED
    notes: Optional[str] = None

    @field_validator("event_date", "created_at", mode="after")
    @classmethod
    def _naive_utc(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class RequestAllocation(_EventBase):
    event_type: Literal["request_allocation"] = REQUEST_ALLOCATION
    site_id: Optional[str] = None
    machine_type_id: Optional[str] = None
    end_date: Optional[datetime] = None


class StartAllocation(_EventBase):
    event_type: Literal["start_allocation"] = START_ALLOCATION
    site_id: Optional[str] = None
    end_date: Optional[datetime] = None
    construction_type: Optional[ConstructionType] = None
    lot_building_number: Optional[str] = None


class EndAllocation(_EventBase):
    event_type: Literal["end_allocation"] = END_ALLOCATION
    site_id: Optional[str] = None


class DowntimeStart(_EventBase):
    event_type: Literal["downtime_start"] = DOWNTIME_START
    site_id: Optional[str] = None
    downtime_reason: Optional[str] = None
    downtime_description: Optional[str] = None


class DowntimeEnd(_EventBase):
    event_type: Literal["downtime_end"] = DOWNTIME_END
    site_id: Optional[str] = None
    # the downtime_start this closes
    corrects_event_id: Optional[str] = None


class ExtensionAttach(_EventBase):
    event_type: Literal["extension_attach"] = EXTENSION_ATTACH
    extension_id: Optional[str] = None
    site_id: Optional[str] = None
    end_date: Optional[datetime] = None
    construction_type: Optional[ConstructionType] = None
    lot_building_number: Optional[str] = None


class ExtensionDetach(_EventBase):
    event_type: Literal["extension_detach"] = EXTENSION_DETACH
    extension_id: Optional[str] = None


class Correction(_EventBase):
    event_type: Literal["correction"] = CORRECTION
    corrects_event_id: str
    correction_description: Optional[str] = None
    site_id: Optional[str] = None
    end_date: Optional[datetime] = None
    construction_type: Optional[ConstructionType] = None
    lot_building_number: Optional[str] = None
    downtime_reason: Optional[str] = None
    downtime_description: Optional[str] = None

    def overrides(self) -> dict[str, Any]:
        return overrides_of(self)


class Refueling(_EventBase):
    event_type: Literal["refueling"] = REFUELING
    site_id: Optional[str] = None


class TransportStart(_EventBase):
    event_type: Literal["transport_start"] = TRANSPORT_START
    # destination
    site_id: Optional[str] = None


class TransportArrival(_EventBase):
    event_type: Literal["transport_arrival"] = TRANSPORT_ARRIVAL
    site_id: Optional[str] = None
    construction_type: Optional[ConstructionType] = None
    lot_building_number: Optional[str] = None


EventRecord = Annotated[
    Union[
        RequestAllocation,
        StartAllocation,
        EndAllocation,
        DowntimeStart,
        DowntimeEnd,
        ExtensionAttach,
        ExtensionDetach,
        Correction,
        Refueling,
        TransportStart,
        TransportArrival,
    ],
    Field(discriminator="event_type"),
]

_record_adapter: TypeAdapter = TypeAdapter(EventRecord)


def parse_record(data: dict[str, Any]) -> EventRecord:
    return _record_adapter.validate_python(data)


def record_from_row(row: Any) -> EventRecord:
    """Build the typed variant for an `allocation_events` row."""
    data = {c.name: getattr(row, c.name) for c in row.__table__.columns}
    data["created_at"] = data.pop("created_at_utc")
    return parse_record(data)


def event_sort_key(ev: Any) -> tuple:
    # created_at breaks ties between identical logical timestamps; id keeps the order total
    return (ev.event_date, ev.created_at, ev.id)


class EventDraft(BaseModel):
    """A proposed event as submitted, before validation and insert."""

    model_config = ConfigDict(extra="ignore")

    event_type: EventTypeName
    unit_id: Optional[str] = Field(default=None, max_length=64)
    extension_id: Optional[str] = Field(default=None, max_length=64)
    site_id: Optional[str] = Field(default=None, max_length=64)
    machine_type_id: Optional[str] = Field(default=None, max_length=64)
    event_date: datetime
    end_date: Optional[datetime] = None
    construction_type: Optional[ConstructionType] = None
    lot_building_number: Optional[str] = Field(default=None, max_length=64)
    downtime_reason: Optional[str] = Field(default=None, max_length=128)
    downtime_description: Optional[str] = Field(default=None, max_length=2000)
    corrects_event_id: Optional[str] = Field(default=None, max_length=64)
    correction_description: Optional[str] = Field(default=None, max_length=2000)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("event_date", "end_date", mode="after")
    @classmethod
    def _naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


def draft_from_row(row: Any) -> EventDraft:
    data = {c.name: getattr(row, c.name) for c in row.__table__.columns}
    return EventDraft.model_validate(data)
