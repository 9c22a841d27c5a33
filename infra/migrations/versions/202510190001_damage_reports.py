"""damage reports, classification runs and events

Revision ID: 202510190001
Revises:
Create Date: 2025-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202510190001"
down_revision = None
branch_labels = None
depends_on = None

report_status = sa.Enum("DRAFT", "SUBMITTED", "APPROVED", name="reportstatus")
run_status = sa.Enum(
    "QUEUED",
    "RUNNING",
    "RETRYING",
    "SUCCEEDED",
    "FAILED",
    "SKIPPED",
    name="classificationrunstatus",
)


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("report_id", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_events_event_type", "events", ["event_type"])
    op.create_index("ix_events_ts", "events", ["ts"])
    op.create_index("ix_events_actor_id", "events", ["actor_id"])
    op.create_index("ix_events_report_id", "events", ["report_id"])

    op.create_table(
        "damage_reports",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("package_id", sa.String(length=255), nullable=False),
        sa.Column("location", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=1000), nullable=True),
        sa.Column("photo_path", sa.String(), nullable=True),
        sa.Column("status", report_status, nullable=False),
        sa.Column("ai_severity", sa.String(), nullable=True),
        sa.Column("ai_damage_type", sa.String(), nullable=True),
        sa.Column("ai_value_impact", sa.String(), nullable=True),
        sa.Column("ai_liability", sa.String(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_damage_reports_owner_id", "damage_reports", ["owner_id"])
    op.create_index("ix_damage_reports_status", "damage_reports", ["status"])
    op.create_index("ix_damage_reports_approved_by", "damage_reports", ["approved_by"])
    op.create_index("ix_damage_reports_created_at", "damage_reports", ["created_at"])
    op.create_index("ix_damage_reports_owner_created", "damage_reports", ["owner_id", "created_at"])

    op.create_table(
        "classification_runs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("report_id", sa.String(), nullable=False),
        sa.Column("status", run_status, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["report_id"], ["damage_reports.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_classification_runs_report_id", "classification_runs", ["report_id"])
    op.create_index("ix_classification_runs_status", "classification_runs", ["status"])
    op.create_index("ix_classification_runs_created_at", "classification_runs", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_classification_runs_created_at", table_name="classification_runs")
    op.drop_index("ix_classification_runs_status", table_name="classification_runs")
    op.drop_index("ix_classification_runs_report_id", table_name="classification_runs")
    op.drop_table("classification_runs")
    op.drop_index("ix_damage_reports_owner_created", table_name="damage_reports")
    op.drop_index("ix_damage_reports_created_at", table_name="damage_reports")
    op.drop_index("ix_damage_reports_approved_by", table_name="damage_reports")
    op.drop_index("ix_damage_reports_status", table_name="damage_reports")
    op.drop_index("ix_damage_reports_owner_id", table_name="damage_reports")
    op.drop_table("damage_reports")
    op.drop_index("ix_events_report_id", table_name="events")
    op.drop_index("ix_events_actor_id", table_name="events")
    op.drop_index("ix_events_ts", table_name="events")
    op.drop_index("ix_events_event_type", table_name="events")
    op.drop_table("events")
    run_status.drop(op.get_bind(), checkfirst=True)
    report_status.drop(op.get_bind(), checkfirst=True)
