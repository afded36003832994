"""Initial FlowTrack schema."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create workflows, tasks and events tables."""
    bind = op.get_bind()

    taskstatus = sa.Enum("active", "completed", name="taskstatus")
    eventtype = sa.Enum(
        "task_created",
        "stage_changed",
        "task_completed",
        "task_updated",
        name="eventtype",
    )

    taskstatus.create(bind, checkfirst=True)
    eventtype.create(bind, checkfirst=True)

    op.create_table(
        "workflows",
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workflow_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("stages", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_workflows_org_created", "workflows", ["organization_id", "created_at"]
    )

    op.create_table(
        "tasks",
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workflow_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("current_stage", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(name="taskstatus", create_type=False),
            nullable=False,
        ),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_tasks_org_status", "tasks", ["organization_id", "status"])
    op.create_index(
        "idx_tasks_org_workflow", "tasks", ["organization_id", "workflow_id", "created_at"]
    )

    op.create_table(
        "events",
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "event_type",
            postgresql.ENUM(name="eventtype", create_type=False),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workflow_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("from_stage", sa.String(length=255), nullable=True),
        sa.Column("to_stage", sa.String(length=255), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
    )
    op.create_index("idx_events_org_time", "events", ["organization_id", "timestamp"])
    op.create_index(
        "idx_events_workflow",
        "events",
        ["organization_id", "workflow_id", "event_type", "timestamp"],
    )
    op.create_index("idx_events_task", "events", ["organization_id", "task_id", "timestamp"])
    op.create_index("idx_events_type", "events", ["organization_id", "event_type", "timestamp"])


def downgrade() -> None:
    """Drop all tables and enums."""
    op.drop_index("idx_events_type", table_name="events")
    op.drop_index("idx_events_task", table_name="events")
    op.drop_index("idx_events_workflow", table_name="events")
    op.drop_index("idx_events_org_time", table_name="events")
    op.drop_table("events")

    op.drop_index("idx_tasks_org_workflow", table_name="tasks")
    op.drop_index("idx_tasks_org_status", table_name="tasks")
    op.drop_table("tasks")

    op.drop_index("idx_workflows_org_created", table_name="workflows")
    op.drop_table("workflows")

    bind = op.get_bind()
    sa.Enum(name="eventtype").drop(bind, checkfirst=True)
    sa.Enum(name="taskstatus").drop(bind, checkfirst=True)
