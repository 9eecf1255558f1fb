"""SCCM migration project endpoints.

Endpoints:
    POST   /api/sccm/migrations              import an SCCM inventory
    GET    /api/sccm/migrations              list own projects
    GET    /api/sccm/migrations/{id}         project, counters and matching progress
    GET    /api/sccm/migrations/{id}/apps    apps, optionally ?matchStatus=
    DELETE /api/sccm/migrations/{id}         delete project and apps
    POST   /api/sccm/migrations/match        start a matching run (202)
    PATCH  /api/sccm/migrations/match        link or exclude one app
"""

import uuid
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from intuneget.api.dependencies import AuthenticatedUser, get_current_user
from intuneget.catalog import get_catalog
from intuneget.catalog.protocol import CatalogUnavailableError, PackageCatalog
from intuneget.db.models import SccmApp, SccmMigration
from intuneget.db.session import get_db
from intuneget.logging_config import get_logger
from intuneget.services import audit_service, matching_orchestrator, migration_service

router = APIRouter(tags=["sccm-migrations"])
logger = get_logger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImportedAppRequest(_CamelModel):
    display_name: str = Field(min_length=1)
    ci_id: str = ""
    manufacturer: str | None = None
    version: str | None = None
    technology: str = "MSI"
    is_deployed: bool = False
    deployment_count: int = 0
    detection_rules: list[dict[str, Any]] = Field(default_factory=list)
    install_command: str | None = None
    uninstall_command: str | None = None
    install_behavior: str | None = None


class ImportMigrationRequest(_CamelModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    apps: list[ImportedAppRequest] = Field(default_factory=list)


class StartMatchingRequest(_CamelModel):
    migration_id: uuid.UUID
    force_rematch: bool = False


class AppActionRequest(_CamelModel):
    app_id: uuid.UUID
    action: Literal["link", "exclude"]
    winget_package_id: str | None = None
    winget_package_name: str | None = None


def _iso(dt) -> str | None:  # type: ignore[no-untyped-def]
    return dt.isoformat() if dt is not None else None


def _migration_json(migration: SccmMigration) -> dict:
    return {
        "id": str(migration.id),
        "name": migration.name,
        "description": migration.description,
        "tenantId": migration.tenant_id,
        "status": migration.status,
        "errorMessage": migration.error_message or None,
        "totalApps": migration.total_apps,
        "matchedApps": migration.matched_apps,
        "partialMatchApps": migration.partial_match_apps,
        "unmatchedApps": migration.unmatched_apps,
        "migratedApps": migration.migrated_apps,
        "failedApps": migration.failed_apps,
        "createdAt": _iso(migration.created_at),
        "updatedAt": _iso(migration.updated_at),
        "lastMigrationAt": _iso(migration.last_migration_at),
    }


def _app_json(app: SccmApp) -> dict:
    return {
        "id": str(app.id),
        "migrationId": str(app.migration_id),
        "sccmCiId": app.sccm_ci_id,
        "displayName": app.display_name,
        "manufacturer": app.manufacturer,
        "version": app.version,
        "technology": app.technology,
        "isDeployed": app.is_deployed,
        "deploymentCount": app.deployment_count,
        "matchStatus": app.match_status,
        "matchConfidence": app.match_confidence,
        "matchedWingetId": app.matched_winget_id,
        "matchedWingetName": app.matched_winget_name,
        "partialMatches": app.partial_matches,
        "migrationStatus": app.migration_status,
        "migrationError": app.migration_error or None,
    }


async def _get_owned_migration(
    db: AsyncSession, migration_id: uuid.UUID, user: AuthenticatedUser
) -> SccmMigration:
    migration = await migration_service.get_migration(db, migration_id, user.user_id)
    if migration is None:
        raise HTTPException(status_code=404, detail="Migration not found")
    return migration


@router.post("/sccm/migrations", status_code=201)
async def import_migration(
    body: ImportMigrationRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Import an SCCM application inventory as a new project."""
    apps = [
        migration_service.ImportedApp(
            display_name=a.display_name,
            sccm_ci_id=a.ci_id,
            manufacturer=a.manufacturer,
            version=a.version,
            technology=a.technology,
            is_deployed=a.is_deployed,
            deployment_count=a.deployment_count,
            detection_rules=a.detection_rules,
            install_command=a.install_command,
            uninstall_command=a.uninstall_command,
            install_behavior=a.install_behavior,
        )
        for a in body.apps
    ]
    migration = await migration_service.create_migration(
        db, user.user_id, user.tenant_id, body.name, apps, body.description
    )
    await db.commit()
    await audit_service.record_action(
        migration.id, user.user_id, user.tenant_id, "import", new_value={"apps": len(apps)}
    )
    return JSONResponse(content={"migration": _migration_json(migration)}, status_code=201)


@router.get("/sccm/migrations")
async def list_migrations(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """List the caller's projects."""
    migrations = await migration_service.list_migrations(db, user.user_id)
    return JSONResponse(content={"migrations": [_migration_json(m) for m in migrations]})


@router.post("/sccm/migrations/match", status_code=202)
async def start_matching(
    body: StartMatchingRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    catalog: PackageCatalog = Depends(get_catalog),
) -> JSONResponse:
    """Start a background matching run. Poll GET /sccm/migrations/{id} for progress."""
    migration = await _get_owned_migration(db, body.migration_id, user)
    try:
        await matching_orchestrator.start_matching(db, migration, catalog, body.force_rematch)
    except matching_orchestrator.MatchingInProgressError:
        raise HTTPException(status_code=409, detail="Matching already in progress") from None
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None

    await audit_service.record_action(
        migration.id,
        user.user_id,
        user.tenant_id,
        "match",
        new_value={"forceRematch": body.force_rematch},
    )
    return JSONResponse(
        content={"migrationId": str(migration.id), "status": migration.status}, status_code=202
    )


@router.patch("/sccm/migrations/match")
async def update_app_match(
    body: AppActionRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    catalog: PackageCatalog = Depends(get_catalog),
) -> JSONResponse:
    """Link an app to a package by hand, or exclude it from migration."""
    app = await migration_service.get_app(db, body.app_id)
    if app is None:
        raise HTTPException(status_code=404, detail="App not found")
    migration = await _get_owned_migration(db, app.migration_id, user)

    previous = {"matchStatus": app.match_status, "wingetId": app.matched_winget_id}
    match body.action:
        case "link":
            if not body.winget_package_id:
                raise HTTPException(status_code=400, detail="wingetPackageId is required for link")
            name = body.winget_package_name
            if not name:
                try:
                    package = await catalog.get_package(body.winget_package_id)
                except CatalogUnavailableError:
                    raise HTTPException(status_code=503, detail="Package catalog unavailable") from None
                if package is None:
                    raise HTTPException(status_code=404, detail="Package not found in catalog")
                name = package.name
            await migration_service.link_manual(db, app, body.winget_package_id, name)
        case "exclude":
            await migration_service.exclude_app(db, app)

    await db.commit()
    await audit_service.record_action(
        migration.id,
        user.user_id,
        user.tenant_id,
        body.action,
        app_id=app.id,
        app_name=app.display_name,
        previous_value=previous,
        new_value={"matchStatus": app.match_status, "wingetId": app.matched_winget_id},
    )
    return JSONResponse(content={"app": _app_json(app), "migration": _migration_json(migration)})


@router.get("/sccm/migrations/{migration_id}")
async def get_migration(
    migration_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Project status, counters and the last published matching progress."""
    migration = await _get_owned_migration(db, migration_id, user)
    progress = None
    if migration.status == "matching":
        snapshot = await matching_orchestrator.get_matching_progress(migration.id)
        if snapshot is not None:
            progress = {
                "total": snapshot.total,
                "processed": snapshot.processed,
                "matched": snapshot.matched,
                "partial": snapshot.partial,
                "unmatched": snapshot.unmatched,
                "errors": snapshot.errors,
            }
    return JSONResponse(content={"migration": _migration_json(migration), "progress": progress})


@router.get("/sccm/migrations/{migration_id}/apps")
async def list_apps(
    migration_id: uuid.UUID,
    match_status: str | None = Query(default=None, alias="matchStatus"),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """List a project's apps."""
    if match_status is not None and match_status not in migration_service.MATCH_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid matchStatus: {match_status}")
    migration = await _get_owned_migration(db, migration_id, user)
    apps = await migration_service.list_apps(db, migration.id, match_status)
    return JSONResponse(content={"apps": [_app_json(a) for a in apps]})


@router.delete("/sccm/migrations/{migration_id}", status_code=204)
async def delete_migration(
    migration_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    """Delete a project and all of its apps."""
    migration = await _get_owned_migration(db, migration_id, user)
    await migration_service.delete_migration(db, migration)
    await db.commit()
    await audit_service.record_action(migration_id, user.user_id, user.tenant_id, "delete")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
