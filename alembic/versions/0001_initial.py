"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

"""

import sqlalchemy as sa

from alembic import op

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "units",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("unit_number", sa.String(length=64), nullable=False, index=True),
        sa.Column("machine_type_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("ownership_type", sa.String(length=16), nullable=False, server_default="owned"),
        sa.Column("supplier_id", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true"), index=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="available", index=True),
        sa.Column("current_site_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("status_synced_at_utc", sa.DateTime(), nullable=True),
        sa.Column("created_at_utc", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "extensions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("unit_number", sa.String(length=64), nullable=False, index=True),
        sa.Column("extension_type", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true"), index=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="available", index=True),
        sa.Column("current_machine_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("status_synced_at_utc", sa.DateTime(), nullable=True),
        sa.Column("created_at_utc", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "allocation_events",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("event_type", sa.String(length=32), nullable=False, index=True),
        sa.Column("unit_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("extension_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("site_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("machine_type_id", sa.String(length=64), nullable=True),
        sa.Column("event_date", sa.DateTime(), nullable=False, index=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("construction_type", sa.String(length=16), nullable=True),
        sa.Column("lot_building_number", sa.String(length=64), nullable=True),
        sa.Column("downtime_reason", sa.String(length=128), nullable=True),
        sa.Column("downtime_description", sa.Text(), nullable=True),
        sa.Column("corrects_event_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("correction_description", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending", index=True),
        sa.Column("approved_by", sa.String(length=64), nullable=True),
        sa.Column("approved_at_utc", sa.DateTime(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at_utc", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_allocation_events_unit_order",
        "allocation_events",
        ["unit_id", "event_date", "created_at_utc"],
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor_user_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("action", sa.String(length=64), nullable=False, index=True),
        sa.Column("entity_type", sa.String(length=32), nullable=False, index=True),
        sa.Column("entity_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("request_id", sa.String(length=64), nullable=True, index=True),
        sa.Column("details_json", sa.JSON(), nullable=False),
        sa.Column("created_at_utc", sa.DateTime(), nullable=False, index=True),
    )

    op.create_table(
        "scheduled_notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("trigger_at_utc", sa.DateTime(), nullable=False, index=True),
        sa.Column("created_at_utc", sa.DateTime(), nullable=False),
        sa.Column("updated_at_utc", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("event_id", "kind", name="uq_scheduled_notifications_event_kind"),
    )

    op.create_table(
        "event_retry_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("actor_id", sa.String(length=64), nullable=True),
        sa.Column("action_type", sa.String(length=16), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("error_details", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending", index=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_attempt_at_utc", sa.DateTime(), nullable=True, index=True),
        sa.Column("last_error", sa.String(length=300), nullable=True),
        sa.Column("created_at_utc", sa.DateTime(), nullable=False),
        sa.Column("updated_at_utc", sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("event_retry_queue")
    op.drop_table("scheduled_notifications")
    op.drop_table("audit_log")
    op.drop_index("ix_allocation_events_unit_order", table_name="allocation_events")
    op.drop_table("allocation_events")
    op.drop_table("extensions")
    op.drop_table("units")
