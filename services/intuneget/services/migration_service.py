"""SCCM migration project state: import, lifecycle, manual overrides and counters.

Project counters (total/matched/partial/unmatched/migrated/failed) are a cache
over sccm_apps. Every mutation that can move an app between buckets ends with
recompute_counters(), which re-counts from the table; counters are never
incremented in place, so concurrent writers (a matching run and a manual link)
cannot make them drift.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from intuneget.db.models import SccmApp, SccmMigration
from intuneget.logging_config import get_logger
from intuneget.services.matching_service import MatchResult, MatchStatus

logger = get_logger(__name__)

# Project lifecycle. completed and error only re-open through a new
# matching run (or, for completed, another execute).
VALID_TRANSITIONS: dict[str, set[str]] = {
    "importing": {"matching", "error"},
    "matching": {"ready", "error"},
    "ready": {"matching", "migrating", "error"},
    "migrating": {"completed", "ready", "error"},
    "completed": {"matching", "migrating"},
    "error": {"matching"},
}

TERMINAL_STATES = {"completed", "error"}

MATCH_STATUSES = {"pending", "matched", "partial", "unmatched", "manual"}

# Match statuses that carry a matched_winget_id
LINKED_STATUSES = {"matched", "manual"}


def can_transition(current: str, target: str) -> bool:
    """Check if a project status transition is valid."""
    return target in VALID_TRANSITIONS.get(current, set())


@dataclass
class ImportedApp:
    """One application from an SCCM export."""

    display_name: str
    sccm_ci_id: str = ""
    manufacturer: str | None = None
    version: str | None = None
    technology: str = "MSI"
    is_deployed: bool = False
    deployment_count: int = 0
    detection_rules: list[dict[str, Any]] = field(default_factory=list)
    install_command: str | None = None
    uninstall_command: str | None = None
    install_behavior: str | None = None


# --- Projects ---


async def create_migration(
    db: AsyncSession,
    user_id: str,
    tenant_id: str,
    name: str,
    apps: list[ImportedApp],
    description: str | None = None,
) -> SccmMigration:
    """Import an SCCM inventory as a new project in 'importing' status."""
    migration = SccmMigration(
        user_id=user_id,
        tenant_id=tenant_id,
        name=name,
        description=description,
        status="importing",
    )
    db.add(migration)
    await db.flush()

    for app in apps:
        db.add(
            SccmApp(
                migration_id=migration.id,
                sccm_ci_id=app.sccm_ci_id,
                display_name=app.display_name,
                manufacturer=app.manufacturer or None,
                version=app.version or None,
                technology=app.technology,
                is_deployed=app.is_deployed,
                deployment_count=app.deployment_count,
                sccm_detection_rules=list(app.detection_rules),
                sccm_install_command=app.install_command or None,
                sccm_uninstall_command=app.uninstall_command or None,
                sccm_install_behavior=app.install_behavior or None,
                match_status="pending",
                migration_status="pending",
                partial_matches=[],
            )
        )
    await db.flush()
    await recompute_counters(db, migration.id)

    logger.info(
        "Migration imported",
        migration_id=str(migration.id),
        user_id=user_id,
        apps=len(apps),
    )
    return migration


async def get_migration(
    db: AsyncSession, migration_id: uuid.UUID, user_id: str | None = None
) -> SccmMigration | None:
    """Get a project by ID, optionally scoped to its owner."""
    stmt = select(SccmMigration).where(SccmMigration.id == migration_id)
    if user_id is not None:
        stmt = stmt.where(SccmMigration.user_id == user_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_migrations(db: AsyncSession, user_id: str) -> list[SccmMigration]:
    """List a user's projects, newest first."""
    result = await db.execute(
        select(SccmMigration)
        .where(SccmMigration.user_id == user_id)
        .order_by(SccmMigration.created_at.desc())
    )
    return list(result.scalars().all())


async def delete_migration(db: AsyncSession, migration: SccmMigration) -> None:
    """Delete a project and all of its apps.

    A matching run in progress notices the project is gone at its next wave
    boundary and stops.
    """
    migration_id = migration.id
    # Explicit child delete: not every backend enforces ON DELETE CASCADE
    await db.execute(delete(SccmApp).where(SccmApp.migration_id == migration_id))
    await db.delete(migration)
    await db.flush()
    logger.info("Migration deleted", migration_id=str(migration_id))


async def transition_migration(
    db: AsyncSession,
    migration: SccmMigration,
    target_status: str,
    error_message: str = "",
) -> SccmMigration:
    """Move a project to a new lifecycle status.

    Raises:
        ValueError: If the transition is not allowed from the current status.
    """
    if not can_transition(migration.status, target_status):
        raise ValueError(f"Invalid transition: {migration.status} -> {target_status}")

    old_status = migration.status
    migration.status = target_status
    migration.error_message = error_message if target_status == "error" else ""
    await db.flush()

    logger.info(
        "Migration transitioned",
        migration_id=str(migration.id),
        from_status=old_status,
        to_status=target_status,
    )
    return migration


async def recompute_counters(db: AsyncSession, migration_id: uuid.UUID) -> dict[str, int]:
    """Recount the project's app buckets from sccm_apps and store them."""
    match_rows = await db.execute(
        select(SccmApp.match_status, func.count())
        .where(SccmApp.migration_id == migration_id)
        .group_by(SccmApp.match_status)
    )
    by_match: dict[str, int] = {status: count for status, count in match_rows.all()}

    migration_rows = await db.execute(
        select(SccmApp.migration_status, func.count())
        .where(SccmApp.migration_id == migration_id)
        .group_by(SccmApp.migration_status)
    )
    by_migration: dict[str, int] = {status: count for status, count in migration_rows.all()}

    counters = {
        "total_apps": sum(by_match.values()),
        "matched_apps": by_match.get("matched", 0) + by_match.get("manual", 0),
        "partial_match_apps": by_match.get("partial", 0),
        "unmatched_apps": by_match.get("unmatched", 0),
        "migrated_apps": by_migration.get("migrated", 0),
        "failed_apps": by_migration.get("failed", 0),
    }
    await db.execute(
        update(SccmMigration).where(SccmMigration.id == migration_id).values(**counters)
    )
    await db.flush()

    counters["pending_apps"] = by_match.get("pending", 0)
    return counters


# --- Apps ---


async def list_apps(
    db: AsyncSession,
    migration_id: uuid.UUID,
    match_status: str | None = None,
) -> list[SccmApp]:
    """List a project's apps in id order, optionally filtered by match status."""
    stmt = select(SccmApp).where(SccmApp.migration_id == migration_id)
    if match_status is not None:
        stmt = stmt.where(SccmApp.match_status == match_status)
    result = await db.execute(stmt.order_by(SccmApp.id))
    return list(result.scalars().all())


async def get_app(
    db: AsyncSession, app_id: uuid.UUID, migration_id: uuid.UUID | None = None
) -> SccmApp | None:
    """Get an app by ID, optionally scoped to one project."""
    stmt = select(SccmApp).where(SccmApp.id == app_id)
    if migration_id is not None:
        stmt = stmt.where(SccmApp.migration_id == migration_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_apps_by_ids(
    db: AsyncSession, migration_id: uuid.UUID, app_ids: list[uuid.UUID]
) -> list[SccmApp]:
    """Fetch the project's apps among app_ids, in the order given.

    Ids that belong to another project, or to no app, are dropped.
    """
    if not app_ids:
        return []
    result = await db.execute(
        select(SccmApp).where(SccmApp.migration_id == migration_id, SccmApp.id.in_(app_ids))
    )
    found = {app.id: app for app in result.scalars().all()}
    seen: set[uuid.UUID] = set()
    ordered = []
    for app_id in app_ids:
        if app_id in found and app_id not in seen:
            seen.add(app_id)
            ordered.append(found[app_id])
    return ordered


async def link_manual(
    db: AsyncSession, app: SccmApp, package_id: str, package_name: str
) -> SccmApp:
    """Link an app to a package by hand. Manual links survive re-matching."""
    previous = app.match_status
    app.match_status = "manual"
    app.match_confidence = 1.0
    app.matched_winget_id = package_id
    app.matched_winget_name = package_name
    app.partial_matches = []
    await db.flush()
    await recompute_counters(db, app.migration_id)

    logger.info(
        "App linked manually",
        app_id=str(app.id),
        migration_id=str(app.migration_id),
        winget_id=package_id,
        previous_status=previous,
    )
    return app


async def exclude_app(db: AsyncSession, app: SccmApp) -> SccmApp:
    """Exclude an app from preview/execute. Match status is left untouched."""
    app.migration_status = "excluded"
    await db.flush()
    await recompute_counters(db, app.migration_id)

    logger.info("App excluded", app_id=str(app.id), migration_id=str(app.migration_id))
    return app


async def apply_match_result(db: AsyncSession, app_id: uuid.UUID, result: MatchResult) -> bool:
    """Persist a matching outcome for one app.

    The write is conditional on the app not being manually linked, so a link
    made while a run is in flight wins. Returns False when nothing was written.
    """
    values: dict[str, Any] = {
        "match_status": str(result.status),
        "match_confidence": result.confidence,
        "matched_winget_id": None,
        "matched_winget_name": None,
        "partial_matches": [],
    }
    match result.status:
        case MatchStatus.MATCHED:
            values["matched_winget_id"] = result.best_match.package_id
            values["matched_winget_name"] = result.best_match.name
        case MatchStatus.PARTIAL:
            values["partial_matches"] = [c.to_partial_match() for c in result.alternates]
        case MatchStatus.UNMATCHED:
            pass

    outcome = await db.execute(
        update(SccmApp)
        .where(SccmApp.id == app_id, SccmApp.match_status != "manual")
        .values(**values)
    )
    return outcome.rowcount > 0
