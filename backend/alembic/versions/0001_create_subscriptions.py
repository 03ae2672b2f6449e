"""create subscriptions table

Revision ID: 0001_create_subscriptions
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_create_subscriptions"
down_revision = None
branch_labels = None
depends_on = None

subscription_status = sa.Enum(
    "IDLE",
    "QUEUED",
    "RUNNING",
    "STOPPED",
    "DISABLED",
    name="subscriptionstatus",
)


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("alias", sa.String(length=255), nullable=False),
        sa.Column("schedule_type", sa.String(length=16), nullable=False, server_default="crontab"),
        sa.Column("schedule", sa.String(length=255), nullable=True),
        sa.Column("interval_schedule", sa.JSON(), nullable=True),
        sa.Column("url", sa.String(length=1024), nullable=False),
        sa.Column("branch", sa.String(length=255), nullable=True),
        sa.Column("whitelist", sa.String(length=1024), nullable=True),
        sa.Column("blacklist", sa.String(length=1024), nullable=True),
        sa.Column("dependences", sa.String(length=1024), nullable=True),
        sa.Column("extensions", sa.String(length=255), nullable=True),
        sa.Column("pull_type", sa.String(length=32), nullable=True),
        sa.Column("pull_option", sa.JSON(), nullable=True),
        sa.Column("sub_before", sa.Text(), nullable=True),
        sa.Column("sub_after", sa.Text(), nullable=True),
        sa.Column("status", subscription_status, nullable=False, server_default="IDLE"),
        sa.Column("is_disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("log_path", sa.String(length=1024), nullable=True),
        sa.Column("last_execution_at", sa.DateTime(), nullable=True),
        sa.Column("last_running_time", sa.Float(), nullable=True),
        sa.Column("last_exit_code", sa.Integer(), nullable=True),
        sa.Column("next_run_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_subscriptions_alias", "subscriptions", ["alias"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])


def downgrade() -> None:
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_alias", table_name="subscriptions")
    op.drop_table("subscriptions")
    subscription_status.drop(op.get_bind(), checkfirst=True)
