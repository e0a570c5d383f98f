"""job queue and notification schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "202610010900"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

job_state = sa.Enum("waiting", "active", "completed", "dead_lettered", name="job_state")
backoff_kind = sa.Enum("exponential", "fixed", name="backoff_kind")
notification_priority = sa.Enum("low", "normal", "high", "urgent", name="notification_priority")
delivery_status = sa.Enum(
    "sent", "delivered", "failed", "bounced", "simulated", name="delivery_status"
)
device_platform = sa.Enum("ios", "android", "web", name="device_platform")


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create queue store and notification tables."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("queue_name", sa.String(64), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("state", job_state, nullable=False, server_default="waiting"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("backoff_kind", backoff_kind, nullable=False, server_default="exponential"),
        sa.Column("backoff_delay_ms", sa.Integer(), nullable=False, server_default="5000"),
        sa.Column("timeout_ms", sa.Integer(), nullable=False, server_default="60000"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("claimed_by", sa.String(128), nullable=True),
        _timestamp("claimed_at", nullable=True),
        _timestamp("lease_expires_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("ready_at"),
        _timestamp("processed_at", nullable=True),
        _timestamp("finished_at", nullable=True),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_jobs"),
    )
    op.create_index(
        "ix_jobs_claim_order",
        "jobs",
        ["queue_name", "state", "priority", "ready_at", "created_at"],
    )
    op.create_index("ix_jobs_state_finished_at", "jobs", ["state", "finished_at"])
    op.create_index("ix_jobs_state_lease", "jobs", ["state", "lease_expires_at"])

    op.create_table(
        "notification_records",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("sender_id", sa.String(128), nullable=True),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("channels", sa.JSON(), nullable=False),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("priority", notification_priority, nullable=False, server_default="normal"),
        sa.Column("status", sa.String(32), nullable=False, server_default="queued"),
        _timestamp("scheduled_for", nullable=True),
        _timestamp("processed_at", nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id", name="pk_notification_records"),
    )
    op.create_index("ix_notification_records_job_id", "notification_records", ["job_id"])

    op.create_table(
        "delivery_results",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("notification_id", sa.Uuid(), nullable=True),
        sa.Column("notification_type", sa.String(64), nullable=True),
        sa.Column("channel", sa.String(32), nullable=False),
        sa.Column("recipient", sa.String(128), nullable=False),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("device_id", sa.String(255), nullable=True),
        sa.Column("status", delivery_status, nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        _timestamp("sent_at"),
        _timestamp("delivered_at", nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_delivery_results"),
    )
    op.create_index("ix_delivery_results_job_id", "delivery_results", ["job_id"])
    op.create_index(
        "ix_delivery_results_notification_id", "delivery_results", ["notification_id"]
    )
    op.create_index(
        "ix_delivery_results_channel_status", "delivery_results", ["channel", "status"]
    )
    op.create_index("ix_delivery_results_recipient", "delivery_results", ["recipient"])

    op.create_table(
        "notification_preferences",
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("preferences", sa.JSON(), nullable=False),
        sa.Column("language", sa.String(8), nullable=False, server_default="en"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("user_id", name="pk_notification_preferences"),
    )

    op.create_table(
        "device_tokens",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("device_id", sa.String(255), nullable=False),
        sa.Column("token", sa.String(512), nullable=False),
        sa.Column("platform", device_platform, nullable=False),
        sa.Column("app_version", sa.String(32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("last_used"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_device_tokens"),
        sa.UniqueConstraint("token", name="uq_device_tokens_token"),
        sa.UniqueConstraint("user_id", "device_id", name="uq_device_tokens_user_device"),
    )
    op.create_index("ix_device_tokens_user_id", "device_tokens", ["user_id"])

    op.create_table(
        "user_contacts",
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("user_id", name="pk_user_contacts"),
    )


def downgrade() -> None:
    """Drop queue store and notification tables."""
    op.drop_table("user_contacts")
    op.drop_index("ix_device_tokens_user_id", table_name="device_tokens")
    op.drop_table("device_tokens")
    op.drop_table("notification_preferences")
    op.drop_index("ix_delivery_results_recipient", table_name="delivery_results")
    op.drop_index("ix_delivery_results_channel_status", table_name="delivery_results")
    op.drop_index("ix_delivery_results_notification_id", table_name="delivery_results")
    op.drop_index("ix_delivery_results_job_id", table_name="delivery_results")
    op.drop_table("delivery_results")
    op.drop_index("ix_notification_records_job_id", table_name="notification_records")
    op.drop_table("notification_records")
    op.drop_index("ix_jobs_state_lease", table_name="jobs")
    op.drop_index("ix_jobs_state_finished_at", table_name="jobs")
    op.drop_index("ix_jobs_claim_order", table_name="jobs")
    op.drop_table("jobs")

    bind = op.get_bind()
    for enum in (device_platform, delivery_status, notification_priority, backoff_kind, job_state):
        enum.drop(bind, checkfirst=True)
