"""Initial schema: SCCM migrations, Winget catalog, packaging jobs, update policies.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def _jsonb(name: str, default: str = "'[]'::jsonb", nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, postgresql.JSONB(), nullable=True)
    return sa.Column(name, postgresql.JSONB(), nullable=False, server_default=sa.text(default))


def upgrade() -> None:
    # Trigram indexes back the catalog's substring search
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    # --- SCCM migration ---

    op.create_table(
        "sccm_migrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(63), nullable=False),
        sa.Column("tenant_id", sa.String(63), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="importing"),
        sa.Column("error_message", sa.Text(), nullable=False, server_default=""),
        sa.Column("total_apps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("matched_apps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("partial_match_apps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unmatched_apps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("migrated_apps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_apps", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.Column("last_migration_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('importing', 'matching', 'ready', 'migrating', 'completed', 'error')",
            name="ck_sccm_migrations_status",
        ),
    )
    op.create_index("ix_sccm_migrations_user_tenant", "sccm_migrations", ["user_id", "tenant_id"])

    op.create_table(
        "sccm_apps",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "migration_id",
            sa.Uuid(),
            sa.ForeignKey("sccm_migrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sccm_ci_id", sa.String(255), nullable=False, server_default=""),
        sa.Column("display_name", sa.String(500), nullable=False),
        sa.Column("manufacturer", sa.String(255), nullable=True),
        sa.Column("version", sa.String(100), nullable=True),
        sa.Column("technology", sa.String(20), nullable=False, server_default="MSI"),
        sa.Column("is_deployed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("deployment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("match_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("match_confidence", sa.Float(), nullable=True),
        sa.Column("matched_winget_id", sa.String(255), nullable=True),
        sa.Column("matched_winget_name", sa.String(500), nullable=True),
        _jsonb("partial_matches"),
        _jsonb("sccm_detection_rules"),
        sa.Column("sccm_install_command", sa.Text(), nullable=True),
        sa.Column("sccm_uninstall_command", sa.Text(), nullable=True),
        sa.Column("sccm_install_behavior", sa.String(50), nullable=True),
        sa.Column("preserve_detection", sa.Boolean(), nullable=True),
        sa.Column("preserve_install_commands", sa.Boolean(), nullable=True),
        sa.Column("use_winget_defaults", sa.Boolean(), nullable=True),
        sa.Column("migration_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("migration_error", sa.Text(), nullable=False, server_default=""),
        *_timestamps(),
        sa.CheckConstraint(
            "match_status IN ('pending', 'matched', 'partial', 'unmatched', 'manual')",
            name="ck_sccm_apps_match_status",
        ),
        sa.CheckConstraint(
            "migration_status IN ('pending', 'in_progress', 'migrated', 'failed', 'excluded')",
            name="ck_sccm_apps_migration_status",
        ),
        sa.CheckConstraint(
            "match_confidence IS NULL OR (match_confidence >= 0 AND match_confidence <= 1)",
            name="ck_sccm_apps_confidence_range",
        ),
    )
    op.create_index("ix_sccm_apps_migration_match", "sccm_apps", ["migration_id", "match_status"])
    op.create_index(
        "ix_sccm_apps_migration_status", "sccm_apps", ["migration_id", "migration_status"]
    )

    op.create_table(
        "migration_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("migration_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(63), nullable=False),
        sa.Column("tenant_id", sa.String(63), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("app_id", sa.Uuid(), nullable=True),
        sa.Column("app_name", sa.String(500), nullable=True),
        _jsonb("previous_value", nullable=True),
        _jsonb("new_value", nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_migration_history_migration_id", "migration_history", ["migration_id"])

    # --- Winget catalog ---

    op.create_table(
        "catalog_packages",
        sa.Column("winget_id", sa.String(255), primary_key=True),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("publisher", sa.String(255), nullable=False, server_default=""),
        sa.Column("latest_version", sa.String(100), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=True),
        _jsonb("tags"),
        _jsonb("installers"),
        _jsonb("detection_rules", nullable=True),
        sa.Column("popularity_rank", sa.Integer(), nullable=True),
        sa.Column("winget_last_update", sa.DateTime(timezone=True), nullable=True),
    )
    op.execute(
        "CREATE INDEX ix_catalog_packages_name_trgm ON catalog_packages "
        "USING gin (lower(name) gin_trgm_ops)"
    )
    op.execute(
        "CREATE INDEX ix_catalog_packages_id_trgm ON catalog_packages "
        "USING gin (lower(winget_id) gin_trgm_ops)"
    )

    # --- Packaging & updates ---

    op.create_table(
        "packaging_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(63), nullable=False),
        sa.Column("tenant_id", sa.String(63), nullable=False),
        sa.Column("winget_id", sa.String(255), nullable=False),
        sa.Column("version", sa.String(100), nullable=False),
        sa.Column("display_name", sa.String(500), nullable=False),
        sa.Column("publisher", sa.String(255), nullable=False, server_default=""),
        sa.Column("app_source", sa.String(10), nullable=False, server_default="win32"),
        sa.Column("architecture", sa.String(20), nullable=False, server_default="x64"),
        sa.Column("installer_type", sa.String(20), nullable=False, server_default="exe"),
        sa.Column("installer_url", sa.Text(), nullable=False, server_default=""),
        sa.Column("installer_sha256", sa.String(64), nullable=False, server_default=""),
        sa.Column("install_command", sa.Text(), nullable=False, server_default=""),
        sa.Column("uninstall_command", sa.Text(), nullable=False, server_default=""),
        sa.Column("install_scope", sa.String(10), nullable=False, server_default="machine"),
        _jsonb("detection_rules"),
        _jsonb("package_config", default="'{}'::jsonb"),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("error_message", sa.Text(), nullable=False, server_default=""),
        sa.Column("update_check_result_id", sa.Uuid(), nullable=True),
        sa.Column("github_run_id", sa.String(63), nullable=True),
        sa.Column("github_run_url", sa.Text(), nullable=True),
        sa.Column("intune_app_id", sa.String(63), nullable=True),
        sa.Column("intune_app_url", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_packaging_jobs_user_status", "packaging_jobs", ["user_id", "status"])

    op.create_table(
        "upload_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(63), nullable=False),
        sa.Column("intune_tenant_id", sa.String(63), nullable=False),
        sa.Column("winget_id", sa.String(255), nullable=False),
        sa.Column("version", sa.String(100), nullable=False, server_default=""),
        sa.Column("display_name", sa.String(500), nullable=False, server_default=""),
        sa.Column(
            "packaging_job_id",
            sa.Uuid(),
            sa.ForeignKey("packaging_jobs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("intune_app_id", sa.String(63), nullable=True),
        sa.Column(
            "deployed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_upload_history_lookup",
        "upload_history",
        ["user_id", "intune_tenant_id", "winget_id"],
    )

    op.create_table(
        "update_check_results",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(63), nullable=False),
        sa.Column("tenant_id", sa.String(63), nullable=False),
        sa.Column("winget_id", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(500), nullable=False, server_default=""),
        sa.Column("current_version", sa.String(100), nullable=False, server_default=""),
        sa.Column("latest_version", sa.String(100), nullable=False, server_default=""),
        sa.Column("intune_app_id", sa.String(63), nullable=True),
        sa.Column(
            "checked_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "user_id", "tenant_id", "winget_id", name="uq_update_check_results_app"
        ),
    )

    op.create_table(
        "app_update_policies",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(63), nullable=False),
        sa.Column("tenant_id", sa.String(63), nullable=False),
        sa.Column("winget_id", sa.String(255), nullable=False),
        sa.Column("policy_type", sa.String(20), nullable=False, server_default="notify"),
        sa.Column("pinned_version", sa.String(100), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _jsonb("deployment_config", default="'{}'::jsonb"),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_auto_update_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("original_upload_history_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "tenant_id", "winget_id", name="uq_app_update_policies_app"
        ),
        sa.CheckConstraint(
            "policy_type IN ('auto_update', 'notify', 'ignore', 'pin_version')",
            name="ck_app_update_policies_type",
        ),
    )

    op.create_table(
        "auto_update_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "policy_id",
            sa.Uuid(),
            sa.ForeignKey("app_update_policies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("packaging_job_id", sa.Uuid(), nullable=True),
        sa.Column("from_version", sa.String(100), nullable=False, server_default=""),
        sa.Column("to_version", sa.String(100), nullable=False),
        sa.Column("update_type", sa.String(20), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "triggered_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_auto_update_history_policy", "auto_update_history", ["policy_id"])


def downgrade() -> None:
    op.drop_table("auto_update_history")
    op.drop_table("app_update_policies")
    op.drop_table("update_check_results")
    op.drop_table("upload_history")
    op.drop_table("packaging_jobs")
    op.execute("DROP INDEX IF EXISTS ix_catalog_packages_id_trgm")
    op.execute("DROP INDEX IF EXISTS ix_catalog_packages_name_trgm")
    op.drop_table("catalog_packages")
    op.drop_table("migration_history")
    op.drop_table("sccm_apps")
    op.drop_table("sccm_migrations")
