"""Initial wizard tables: progress, anonymous usage, locks, backups.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-17
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def upgrade() -> None:
    op.create_table(
        "wizard_progress",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("business_idea", sa.JSON(), nullable=True),
        sa.Column("target_audience", sa.JSON(), nullable=True),
        sa.Column("audience_analysis", sa.JSON(), nullable=True),
        sa.Column("generated_ads", sa.JSON(), nullable=True),
        sa.Column("selected_hooks", sa.JSON(), nullable=True),
        sa.Column("current_step", sa.Integer(), server_default="1", nullable=False),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        sa.Column("is_migration", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("migration_token", sa.String(64), nullable=True),
        sa.Column("last_save_attempt", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.CheckConstraint("current_step BETWEEN 1 AND 4", name="ck_wizard_progress_step"),
    )

    op.create_table(
        "anonymous_usage",
        sa.Column("session_id", sa.String(64), primary_key=True),
        sa.Column("used", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("completed", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("wizard_data", sa.JSON(), nullable=True),
        sa.Column("last_completed_step", sa.Integer(), server_default="1", nullable=False),
        sa.Column("save_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_save_attempt", sa.DateTime(), nullable=True),
        sa.Column("migrated_user_id", sa.String(64), nullable=True),
        sa.Column("migrated_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_anonymous_usage_migrated_user_id", "anonymous_usage", ["migrated_user_id"])

    op.create_table(
        "migration_locks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("lock_type", sa.String(64), nullable=False),
        sa.Column("token", sa.String(36), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "lock_type", name="uq_migration_locks_owner_type"),
    )
    op.create_index("ix_migration_locks_expires_at", "migration_locks", ["expires_at"])

    op.create_table(
        "data_backups",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("session_id", sa.String(64), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("backup_type", sa.String(32), server_default="migration", nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_data_backups_user_id", "data_backups", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_data_backups_user_id", table_name="data_backups")
    op.drop_table("data_backups")
    op.drop_index("ix_migration_locks_expires_at", table_name="migration_locks")
    op.drop_table("migration_locks")
    op.drop_index("ix_anonymous_usage_migrated_user_id", table_name="anonymous_usage")
    op.drop_table("anonymous_usage")
    op.drop_table("wizard_progress")
