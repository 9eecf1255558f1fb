"""Migration preview/execute endpoint.

Endpoints:
    POST /api/sccm/migrate?action=preview   resolve configs, read-only
    POST /api/sccm/migrate?action=execute   re-resolve and emit cart items
"""

import uuid
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from intuneget.api.dependencies import AuthenticatedUser, get_current_user
from intuneget.catalog import get_catalog
from intuneget.catalog.protocol import PackageCatalog
from intuneget.config import settings
from intuneget.db.session import get_db
from intuneget.logging_config import get_logger
from intuneget.services import audit_service, migration_pipeline, migration_service
from intuneget.services.cart import cart_item_to_dict

router = APIRouter(tags=["sccm-migrate"])
logger = get_logger(__name__)


class MigrationOptionsRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    preserve_detection: bool = True
    preserve_install_commands: bool = True
    use_winget_defaults: bool = True


class MigrateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    migration_id: uuid.UUID
    app_ids: list[uuid.UUID] = Field(min_length=1)
    options: MigrationOptionsRequest = Field(default_factory=MigrationOptionsRequest)


def _preview_item_json(item: migration_pipeline.MigrationPreviewItem) -> dict:
    return {
        "appId": str(item.app_id),
        "sccmName": item.sccm_name,
        "wingetId": item.winget_id,
        "wingetName": item.winget_name,
        "canMigrate": item.can_migrate,
        "blockingReasons": item.blocking_reasons,
        "warnings": item.warnings,
        "detectionRules": item.detection_rules,
        "installCommand": item.install_command,
        "uninstallCommand": item.uninstall_command,
        "installScope": item.install_scope,
        "detectionSource": item.detection_source,
        "commandSource": item.command_source,
    }


@router.post("/sccm/migrate")
async def migrate(
    body: MigrateRequest,
    action: Literal["preview", "execute"] = Query(...),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    catalog: PackageCatalog = Depends(get_catalog),
) -> JSONResponse:
    """Preview or execute the migration of the given apps."""
    limit = settings.migration.max_apps_per_request
    if len(body.app_ids) > limit:
        raise HTTPException(status_code=400, detail=f"Maximum {limit} apps per request")

    migration = await migration_service.get_migration(db, body.migration_id, user.user_id)
    if migration is None:
        raise HTTPException(status_code=404, detail="Migration not found")

    options = migration_pipeline.MigrationOptions(
        preserve_detection=body.options.preserve_detection,
        preserve_install_commands=body.options.preserve_install_commands,
        use_winget_defaults=body.options.use_winget_defaults,
    )

    if action == "preview":
        preview = await migration_pipeline.preview(db, migration, body.app_ids, options, catalog)
        return JSONResponse(
            content={
                "totalApps": preview.total_apps,
                "migratable": preview.migratable,
                "blocked": preview.blocked,
                "withSccmDetection": preview.with_sccm_detection,
                "withSccmCommands": preview.with_sccm_commands,
                "warnings": preview.warnings,
                "items": [_preview_item_json(i) for i in preview.items],
            }
        )

    try:
        result = await migration_pipeline.execute(db, migration, body.app_ids, options, catalog)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    await db.commit()

    await audit_service.record_action(
        migration.id,
        user.user_id,
        user.tenant_id,
        "execute",
        new_value={
            "attempted": result.total_attempted,
            "successful": result.successful,
            "failed": result.failed,
            "skipped": result.skipped,
        },
        success=result.failed == 0,
    )
    return JSONResponse(
        content={
            "success": result.failed == 0,
            "totalAttempted": result.total_attempted,
            "successful": result.successful,
            "failed": result.failed,
            "skipped": result.skipped,
            "cartItems": [cart_item_to_dict(c) for c in result.cart_items],
            "errors": result.errors,
            "skippedApps": result.skipped_apps,
            "migration": {
                "id": str(migration.id),
                "status": migration.status,
                "migratedApps": migration.migrated_apps,
                "failedApps": migration.failed_apps,
            },
        }
    )
