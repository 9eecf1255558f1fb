"""Two-phase migration of matched SCCM apps: preview, then execute.

preview() resolves a deployable configuration for each requested app and
reports what blocks it, without writing anything. execute() re-runs the same
resolution from the database and the catalog (never from client-supplied
preview output) and turns every migratable app into a cart item.

Resolution precedence, per app (per-app flags override request options):

    detection   preserved SCCM rules -> package rules -> synthesized folder rule
    commands    preserved SCCM commands -> installer-generated defaults

An app never resolves to a config with neither detection rules nor an install
command; that is reported as "Insufficient configuration data".
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from intuneget.catalog.protocol import CatalogUnavailableError, Installer, Manifest, PackageCatalog
from intuneget.config import settings
from intuneget.db.models import SccmApp, SccmMigration, utc_now
from intuneget.logging_config import get_logger
from intuneget.services import migration_service
from intuneget.services.cart import Win32CartItem, create_cart_item
from intuneget.services.detection_rules import (
    convert_sccm_detection_rules,
    folder_detection_rule,
    generate_detection_rules,
    generate_install_command,
    generate_uninstall_command,
    validate_detection_rules,
)

logger = get_logger(__name__)

SOURCE_SCCM = "sccm-preserved"
SOURCE_WINGET = "winget-default"
SOURCE_SYNTHESIZED = "synthesized"

REASON_NO_MATCH = "No package match"
REASON_APPV = "App-V packages are not supported in Intune"
REASON_ALREADY_MIGRATED = "App already migrated"
REASON_PACKAGE_NOT_FOUND = "Package not found in catalog"
REASON_NO_INSTALLER = "No compatible installer found"
REASON_CATALOG_UNAVAILABLE = "Package catalog unavailable"
REASON_INSUFFICIENT_CONFIG = "Insufficient configuration data"

APPV_TECHNOLOGIES = {"appv", "app-v", "app-v 5"}

# A manifest lookup outcome: the manifest, None (not found) or the error raised
ManifestOutcome = Manifest | None | Exception


@dataclass
class MigrationOptions:
    preserve_detection: bool = True
    preserve_install_commands: bool = True
    use_winget_defaults: bool = True


@dataclass
class MigrationPreviewItem:
    app_id: uuid.UUID
    sccm_name: str
    winget_id: str | None = None
    winget_name: str | None = None
    can_migrate: bool = False
    blocking_reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    detection_rules: list[dict[str, Any]] = field(default_factory=list)
    install_command: str = ""
    uninstall_command: str = ""
    install_scope: str = "machine"
    detection_source: str | None = None
    command_source: str | None = None


@dataclass
class PreviewResponse:
    total_apps: int
    migratable: int
    blocked: int
    warnings: list[str]
    items: list[MigrationPreviewItem]
    with_sccm_detection: int = 0
    with_sccm_commands: int = 0


@dataclass
class ExecuteResult:
    total_attempted: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    cart_items: list[Win32CartItem] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    skipped_apps: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class _Resolution:
    item: MigrationPreviewItem
    manifest: Manifest | None = None
    installer: Installer | None = None
    # Set when the catalog failed rather than answered
    fetch_error: str | None = None


# --- Resolution ---


def _effective(app_value: bool | None, default: bool) -> bool:
    return default if app_value is None else app_value


def install_scope_for(app: SccmApp, installer: Installer | None) -> str:
    """SCCM install behavior wins over the installer's declared scope."""
    match (app.sccm_install_behavior or "").lower():
        case "installforuser":
            return "user"
        case "installforsystem" | "installforsystemifresourceisdevice":
            return "machine"
    if installer is not None and installer.scope == "user":
        return "user"
    return "machine"


def resolve_app(
    app: SccmApp, outcome: ManifestOutcome, options: MigrationOptions
) -> _Resolution:
    """Build the preview item for one app from its row and manifest lookup."""
    item = MigrationPreviewItem(
        app_id=app.id,
        sccm_name=app.display_name,
        winget_id=app.matched_winget_id,
        winget_name=app.matched_winget_name,
    )
    resolution = _Resolution(item=item)

    linked = app.match_status in migration_service.LINKED_STATUSES and app.matched_winget_id
    if not linked:
        item.blocking_reasons.append(REASON_NO_MATCH)
    if (app.technology or "").lower() in APPV_TECHNOLOGIES:
        item.blocking_reasons.append(REASON_APPV)
    if app.migration_status == "migrated":
        item.blocking_reasons.append(REASON_ALREADY_MIGRATED)

    if linked:
        if isinstance(outcome, Exception):
            resolution.fetch_error = str(outcome) or type(outcome).__name__
            item.blocking_reasons.append(REASON_CATALOG_UNAVAILABLE)
        elif outcome is None:
            item.blocking_reasons.append(REASON_PACKAGE_NOT_FOUND)
        else:
            resolution.manifest = outcome
            resolution.installer = outcome.best_installer()
            if resolution.installer is None:
                item.blocking_reasons.append(REASON_NO_INSTALLER)

    if item.blocking_reasons:
        return resolution

    manifest, installer = resolution.manifest, resolution.installer
    item.winget_name = manifest.name
    item.install_scope = install_scope_for(app, installer)

    preserve_detection = _effective(app.preserve_detection, options.preserve_detection)
    preserve_commands = _effective(app.preserve_install_commands, options.preserve_install_commands)
    use_defaults = _effective(app.use_winget_defaults, options.use_winget_defaults)

    # Detection rules
    sccm_rules = convert_sccm_detection_rules(app.sccm_detection_rules)
    if preserve_detection and sccm_rules:
        item.detection_rules, item.detection_source = sccm_rules, SOURCE_SCCM
    else:
        if preserve_detection and app.sccm_detection_rules:
            item.warnings.append("SCCM detection rules could not be converted")
        if use_defaults:
            item.detection_rules = (
                list(manifest.detection_rules)
                if manifest.detection_rules
                else generate_detection_rules(installer, manifest.name, manifest.package_id, manifest.version)
            )
            item.detection_source = SOURCE_WINGET
        if not item.detection_rules and manifest.name.strip():
            item.detection_rules = [
                folder_detection_rule(manifest.name, installer.architecture, item.install_scope)
            ]
            item.detection_source = SOURCE_SYNTHESIZED
            item.warnings.append("Detection rule synthesized from package metadata; verify before deploying")

    # Commands
    if preserve_commands and app.sccm_install_command:
        item.install_command = app.sccm_install_command
        item.command_source = SOURCE_SCCM
    else:
        if preserve_commands:
            item.warnings.append("No SCCM install command; using package default")
        item.install_command = generate_install_command(installer, item.install_scope) if installer.url else ""
        item.command_source = SOURCE_WINGET

    if preserve_commands and app.sccm_uninstall_command:
        item.uninstall_command = app.sccm_uninstall_command
    else:
        item.uninstall_command = generate_uninstall_command(installer, manifest.name)

    if not item.detection_rules and not item.install_command:
        item.blocking_reasons.append(REASON_INSUFFICIENT_CONFIG)
        return resolution

    validation = validate_detection_rules(item.detection_rules)
    item.warnings.extend(validation.errors)
    item.warnings.extend(validation.warnings)

    item.can_migrate = True
    return resolution


def build_cart_item(resolution: _Resolution) -> Win32CartItem:
    """Turn a migratable resolution into a Win32 cart item."""
    item, manifest, installer = resolution.item, resolution.manifest, resolution.installer
    if not item.can_migrate or manifest is None or installer is None:
        raise ValueError(f"App {item.app_id} is not migratable")
    if not installer.url:
        raise ValueError(f"Installer for {manifest.package_id} has no download URL")

    cart_item = create_cart_item(
        manifest.package_id,
        manifest.name,
        manifest.publisher,
        manifest.version,
        installer,
        item.install_scope,
    )
    cart_item.detection_rules = item.detection_rules
    cart_item.install_command = item.install_command
    cart_item.uninstall_command = item.uninstall_command
    return cart_item


# --- Catalog access ---


async def fetch_manifests(
    catalog: PackageCatalog, package_ids: list[str], wave_size: int | None = None
) -> dict[str, ManifestOutcome]:
    """Fetch latest manifests in bounded concurrent waves.

    Every id gets an outcome; a failed lookup yields its exception instead
    of aborting the others.
    """
    size = wave_size or settings.migration.wave_size
    unique = list(dict.fromkeys(package_ids))
    outcomes: dict[str, ManifestOutcome] = {}
    for start in range(0, len(unique), size):
        wave = unique[start : start + size]
        results = await asyncio.gather(
            *(catalog.get_manifest(pid) for pid in wave), return_exceptions=True
        )
        for pid, result in zip(wave, results, strict=True):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception) and not isinstance(result, CatalogUnavailableError):
                logger.error("Manifest lookup failed", winget_id=pid, error=str(result))
            outcomes[pid] = result
    return outcomes


async def _load_apps(
    db: AsyncSession, migration: SccmMigration, app_ids: list[uuid.UUID]
) -> list[SccmApp]:
    apps = await migration_service.get_apps_by_ids(db, migration.id, app_ids)
    return [a for a in apps if a.migration_status != "excluded"]


async def _resolve_all(
    apps: list[SccmApp], options: MigrationOptions, catalog: PackageCatalog
) -> list[_Resolution]:
    linked_ids = [
        a.matched_winget_id
        for a in apps
        if a.match_status in migration_service.LINKED_STATUSES and a.matched_winget_id
    ]
    outcomes = await fetch_manifests(catalog, linked_ids)
    return [resolve_app(a, outcomes.get(a.matched_winget_id or ""), options) for a in apps]


# --- Phases ---


async def preview(
    db: AsyncSession,
    migration: SccmMigration,
    app_ids: list[uuid.UUID],
    options: MigrationOptions,
    catalog: PackageCatalog,
) -> PreviewResponse:
    """Resolve deployment configs for the given apps. Read-only."""
    apps = await _load_apps(db, migration, app_ids)
    items = [r.item for r in await _resolve_all(apps, options, catalog)]

    migratable = sum(1 for i in items if i.can_migrate)
    warnings = [f"{i.sccm_name}: {w}" for i in items for w in i.warnings]
    logger.info(
        "Migration previewed",
        migration_id=str(migration.id),
        requested=len(app_ids),
        total=len(items),
        migratable=migratable,
    )
    return PreviewResponse(
        total_apps=len(items),
        migratable=migratable,
        blocked=len(items) - migratable,
        warnings=warnings,
        items=items,
        with_sccm_detection=sum(1 for i in items if i.detection_source == SOURCE_SCCM),
        with_sccm_commands=sum(1 for i in items if i.command_source == SOURCE_SCCM),
    )


async def _unmigrated_linked_count(db: AsyncSession, migration_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(SccmApp)
        .where(
            SccmApp.migration_id == migration_id,
            SccmApp.match_status.in_(migration_service.LINKED_STATUSES),
            SccmApp.migration_status.not_in(("migrated", "excluded")),
        )
    )
    return result.scalar_one()


async def execute(
    db: AsyncSession,
    migration: SccmMigration,
    app_ids: list[uuid.UUID],
    options: MigrationOptions,
    catalog: PackageCatalog,
) -> ExecuteResult:
    """Re-resolve the given apps and turn the migratable ones into cart items.

    successful + failed + skipped == total_attempted. Apps that cannot
    migrate are skipped; apps whose catalog lookup or cart item construction
    fails are marked failed. Each app's status write is independent.

    Raises:
        ValueError: If the project cannot enter 'migrating' (e.g. matching is running).
    """
    apps = await _load_apps(db, migration, app_ids)
    await migration_service.transition_migration(db, migration, "migrating")

    result = ExecuteResult(total_attempted=len(apps))
    resolutions = await _resolve_all(apps, options, catalog)

    for app, resolution in zip(apps, resolutions, strict=True):
        item = resolution.item
        if resolution.fetch_error is not None:
            app.migration_status = "failed"
            app.migration_error = f"{REASON_CATALOG_UNAVAILABLE}: {resolution.fetch_error}"
            result.failed += 1
            result.errors.append(
                {"appId": str(app.id), "appName": app.display_name, "error": app.migration_error}
            )
            continue

        if not item.can_migrate:
            result.skipped += 1
            result.skipped_apps.append(
                {"appId": str(app.id), "appName": app.display_name, "reasons": item.blocking_reasons}
            )
            continue

        try:
            cart_item = build_cart_item(resolution)
        except Exception as e:
            logger.exception("Cart item construction failed", app_id=str(app.id))
            app.migration_status = "failed"
            app.migration_error = str(e)
            result.failed += 1
            result.errors.append({"appId": str(app.id), "appName": app.display_name, "error": str(e)})
            continue

        app.migration_status = "migrated"
        app.migration_error = ""
        result.successful += 1
        result.cart_items.append(cart_item)

    await db.flush()
    await migration_service.recompute_counters(db, migration.id)

    migration.last_migration_at = utc_now()
    remaining = await _unmigrated_linked_count(db, migration.id)
    await migration_service.transition_migration(db, migration, "completed" if remaining == 0 else "ready")

    logger.info(
        "Migration executed",
        migration_id=str(migration.id),
        attempted=result.total_attempted,
        successful=result.successful,
        failed=result.failed,
        skipped=result.skipped,
        remaining=remaining,
    )
    return result
