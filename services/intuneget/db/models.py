"""
SQLAlchemy database models for the IntuneGet migration service.

All models use:
- UUIDv7 primary keys (time-sortable), except the catalog (winget id PK)
- snake_case column names
- Plural table names
- TIMESTAMPTZ with UTC for all timestamps
- Portable Uuid/JSON column types (JSONB on PostgreSQL)
- Hard deletes (no soft delete columns)

Users and tenants are Entra ID object ids issued by the identity provider;
there is no local users table.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def generate_uuid7() -> uuid.UUID:
    """Generate a UUIDv7 (time-sortable UUID)."""
    import time

    timestamp_ms = int(time.time() * 1000)
    rand_bytes = uuid.uuid4().bytes[6:]

    uuid_bytes = (
        timestamp_ms.to_bytes(6, "big")
        + bytes([0x70 | (rand_bytes[0] & 0x0F)])  # Version 7
        + bytes([0x80 | (rand_bytes[1] & 0x3F)])  # Variant
        + rand_bytes[2:]
    )
    return uuid.UUID(bytes=uuid_bytes)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
        list[Any]: JSONType,
        uuid.UUID: sa.Uuid,
    }


# --- SCCM migration ---


class SccmMigration(Base):
    """A migration project: one imported SCCM application inventory.

    The counters are a cache over the child sccm_apps rows. They are always
    recomputed from a count query (migration_service.recompute_counters),
    never patched incrementally.
    """

    __tablename__ = "sccm_migrations"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid7)
    user_id: Mapped[str] = mapped_column(String(63), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(63), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="importing"
    )  # importing, matching, ready, migrating, completed, error
    error_message: Mapped[str] = mapped_column(Text, nullable=False, default="")

    total_apps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matched_apps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    partial_match_apps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unmatched_apps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    migrated_apps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_apps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )
    last_migration_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    apps: Mapped[list["SccmApp"]] = relationship(
        back_populates="migration",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("ix_sccm_migrations_user_tenant", "user_id", "tenant_id"),)


class SccmApp(Base):
    """One SCCM application inside a migration project.

    matched_winget_id is set exactly when match_status is matched or manual;
    partial_matches is non-empty only when match_status is partial.
    """

    __tablename__ = "sccm_apps"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid7)
    migration_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, ForeignKey("sccm_migrations.id", ondelete="CASCADE"), nullable=False
    )
    sccm_ci_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    display_name: Mapped[str] = mapped_column(String(500), nullable=False)
    manufacturer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    version: Mapped[str | None] = mapped_column(String(100), nullable=True)
    technology: Mapped[str] = mapped_column(
        String(20), nullable=False, default="MSI"
    )  # MSI, Script, AppV, MSIX, ...
    is_deployed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deployment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    match_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, matched, partial, unmatched, manual
    match_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    matched_winget_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    matched_winget_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    partial_matches: Mapped[list[Any]] = mapped_column(JSONType, default=list, nullable=False)

    sccm_detection_rules: Mapped[list[Any]] = mapped_column(
        JSONType, default=list, nullable=False
    )
    sccm_install_command: Mapped[str | None] = mapped_column(Text, nullable=True)
    sccm_uninstall_command: Mapped[str | None] = mapped_column(Text, nullable=True)
    sccm_install_behavior: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Per-app overrides; None falls back to the request options
    preserve_detection: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    preserve_install_commands: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    use_winget_defaults: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    migration_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, in_progress, migrated, failed, excluded
    migration_error: Mapped[str] = mapped_column(Text, nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    migration: Mapped["SccmMigration"] = relationship(back_populates="apps")

    __table_args__ = (
        Index("ix_sccm_apps_migration_match", "migration_id", "match_status"),
        Index("ix_sccm_apps_migration_status", "migration_id", "migration_status"),
    )


class MigrationHistory(Base):
    """Audit trail of actions taken on a migration project."""

    __tablename__ = "migration_history"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid7)
    migration_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(63), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(63), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    app_id: Mapped[uuid.UUID | None] = mapped_column(sa.Uuid, nullable=True)
    app_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    previous_value: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    new_value: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


# --- Winget catalog ---


class CatalogPackage(Base):
    """A Winget package from the synced winget-pkgs index.

    installers holds the latest version's installer entries as
    camelCase dicts (architecture, url, sha256, type, scope, productCode,
    packageFamilyName, silentArgs).
    """

    __tablename__ = "catalog_packages"

    winget_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    publisher: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    latest_version: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list[Any]] = mapped_column(JSONType, default=list, nullable=False)
    installers: Mapped[list[Any]] = mapped_column(JSONType, default=list, nullable=False)
    detection_rules: Mapped[list[Any] | None] = mapped_column(JSONType, nullable=True)
    popularity_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    winget_last_update: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


# --- Packaging & updates ---


class PackagingJob(Base):
    """A request to package one installer and deploy it to an Intune tenant."""

    __tablename__ = "packaging_jobs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid7)
    user_id: Mapped[str] = mapped_column(String(63), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(63), nullable=False)
    winget_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str] = mapped_column(String(500), nullable=False)
    publisher: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    app_source: Mapped[str] = mapped_column(String(10), nullable=False, default="win32")
    architecture: Mapped[str] = mapped_column(String(20), nullable=False, default="x64")
    installer_type: Mapped[str] = mapped_column(String(20), nullable=False, default="exe")
    installer_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    installer_sha256: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    install_command: Mapped[str] = mapped_column(Text, nullable=False, default="")
    uninstall_command: Mapped[str] = mapped_column(Text, nullable=False, default="")
    install_scope: Mapped[str] = mapped_column(String(10), nullable=False, default="machine")
    detection_rules: Mapped[list[Any]] = mapped_column(JSONType, default=list, nullable=False)
    package_config: Mapped[dict[str, Any]] = mapped_column(
        JSONType, default=dict, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="queued"
    )  # queued, packaging, uploading, completed, deployed, failed
    error_message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    update_check_result_id: Mapped[uuid.UUID | None] = mapped_column(sa.Uuid, nullable=True)
    github_run_id: Mapped[str | None] = mapped_column(String(63), nullable=True)
    github_run_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    intune_app_id: Mapped[str | None] = mapped_column(String(63), nullable=True)
    intune_app_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (Index("ix_packaging_jobs_user_status", "user_id", "status"),)


class UploadHistory(Base):
    """A completed deployment of a Winget package to an Intune tenant."""

    __tablename__ = "upload_history"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid7)
    user_id: Mapped[str] = mapped_column(String(63), nullable=False)
    intune_tenant_id: Mapped[str] = mapped_column(String(63), nullable=False)
    winget_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    display_name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    packaging_job_id: Mapped[uuid.UUID | None] = mapped_column(
        sa.Uuid, ForeignKey("packaging_jobs.id", ondelete="SET NULL"), nullable=True
    )
    intune_app_id: Mapped[str | None] = mapped_column(String(63), nullable=True)
    deployed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_upload_history_lookup", "user_id", "intune_tenant_id", "winget_id"),
    )


class UpdateCheckResult(Base):
    """Latest update check for a deployed app: installed version vs catalog version."""

    __tablename__ = "update_check_results"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid7)
    user_id: Mapped[str] = mapped_column(String(63), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(63), nullable=False)
    winget_id: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    current_version: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    latest_version: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    intune_app_id: Mapped[str | None] = mapped_column(String(63), nullable=True)
    checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "tenant_id", "winget_id", name="uq_update_check_results_app"),
    )


class AppUpdatePolicy(Base):
    """How updates for one deployed app are handled.

    deployment_config is always present: either user-authored or derived once
    from the most recent successful deployment of the app.
    """

    __tablename__ = "app_update_policies"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid7)
    user_id: Mapped[str] = mapped_column(String(63), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(63), nullable=False)
    winget_id: Mapped[str] = mapped_column(String(255), nullable=False)
    policy_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="notify"
    )  # auto_update, notify, ignore, pin_version
    pinned_version: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deployment_config: Mapped[dict[str, Any]] = mapped_column(
        JSONType, default=dict, nullable=False
    )
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_auto_update_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    original_upload_history_id: Mapped[uuid.UUID | None] = mapped_column(
        sa.Uuid, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "tenant_id", "winget_id", name="uq_app_update_policies_app"),
    )


class AutoUpdateHistory(Base):
    """One auto-update attempt for a policy."""

    __tablename__ = "auto_update_history"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid7)
    policy_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, ForeignKey("app_update_policies.id", ondelete="CASCADE"), nullable=False
    )
    packaging_job_id: Mapped[uuid.UUID | None] = mapped_column(sa.Uuid, nullable=True)
    from_version: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    to_version: Mapped[str] = mapped_column(String(100), nullable=False)
    update_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="manual"
    )  # manual, scheduled
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, packaging, deploying, completed, failed
    error_message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    triggered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
