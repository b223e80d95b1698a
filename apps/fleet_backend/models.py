from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from common_core.db import Base


class Unit(Base):
    """Heavy equipment unit. `status` and `current_site_id` are a cache written by sync."""

    __tablename__ = "units"
    id = Column(String(64), primary_key=True)
    unit_number = Column(String(64), nullable=False, index=True)
    machine_type_id = Column(String(64), nullable=True, index=True)
    ownership_type = Column(String(16), nullable=False, default="owned")  # owned, rented
    supplier_id = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    status = Column(String(16), nullable=False, default="available", index=True)
    current_site_id = Column(String(64), nullable=True, index=True)
    status_synced_at_utc = Column(DateTime, nullable=True)
    created_at_utc = Column(DateTime, nullable=False)


class Extension(Base):
    """Attachment (bucket, breaker, ...). `status`/`current_machine_id` are a cache written by sync."""

    __tablename__ = "extensions"
    id = Column(String(64), primary_key=True)
    unit_number = Column(String(64), nullable=False, index=True)
    extension_type = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    status = Column(String(16), nullable=False, default="available", index=True)
    current_machine_id = Column(String(64), nullable=True, index=True)
    status_synced_at_utc = Column(DateTime, nullable=True)
    created_at_utc = Column(DateTime, nullable=False)


class AllocationEvent(Base):
    """Append-only event log. Only the lifecycle columns change after insert."""

    __tablename__ = "allocation_events"
    id = Column(String(64), primary_key=True)
    event_type = Column(String(32), nullable=False, index=True)
    unit_id = Column(String(64), nullable=True, index=True)
    extension_id = Column(String(64), nullable=True, index=True)
    site_id = Column(String(64), nullable=True, index=True)
    machine_type_id = Column(String(64), nullable=True)
    event_date = Column(DateTime, nullable=False, index=True)
    end_date = Column(DateTime, nullable=True)
    construction_type = Column(String(16), nullable=True)  # lot, building
    lot_building_number = Column(String(64), nullable=True)
    downtime_reason = Column(String(128), nullable=True)
    downtime_description = Column(Text, nullable=True)
    corrects_event_id = Column(String(64), nullable=True, index=True)
    correction_description = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="pending", index=True)
    approved_by = Column(String(64), nullable=True)
    approved_at_utc = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at_utc = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_allocation_events_unit_order", "unit_id", "event_date", "created_at_utc"),
    )


class AuditLog(Base):
    __tablename__ = "audit_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_user_id = Column(String(64), nullable=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(32), nullable=False, index=True)
    entity_id = Column(String(64), nullable=False, index=True)
    request_id = Column(String(64), nullable=True, index=True)
    details_json = Column(JSON, nullable=False)
    created_at_utc = Column(DateTime, nullable=False, index=True)


class ScheduledNotification(Base):
    __tablename__ = "scheduled_notifications"
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(32), nullable=False)  # allocation_due
    title = Column(String(256), nullable=False)
    message = Column(Text, nullable=False)
    trigger_at_utc = Column(DateTime, nullable=False, index=True)
    created_at_utc = Column(DateTime, nullable=False)
    updated_at_utc = Column(DateTime, nullable=True)

    __table_args__ = (UniqueConstraint("event_id", "kind", name="uq_scheduled_notifications_event_kind"),)


class EventRetryQueue(Base):
    __tablename__ = "event_retry_queue"
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False, index=True)
    actor_id = Column(String(64), nullable=True)
    action_type = Column(String(16), nullable=False)  # approve, reject
    reason = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default="pending", index=True)  # pending|completed|failed
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_attempt_at_utc = Column(DateTime, nullable=True, index=True)
    last_error = Column(String(300), nullable=True)
    created_at_utc = Column(DateTime, nullable=False)
    updated_at_utc = Column(DateTime, nullable=True)
