"""Manual update trigger endpoint.

Endpoints:
    POST /api/updates/trigger   {winget_id, tenant_id} or {updates: [...]}
"""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from intuneget.api.dependencies import AuthenticatedUser, get_current_user
from intuneget.catalog import get_catalog
from intuneget.catalog.protocol import PackageCatalog
from intuneget.config import settings
from intuneget.db.session import get_db
from intuneget.logging_config import get_logger
from intuneget.services import update_trigger_service

router = APIRouter(tags=["updates"])
logger = get_logger(__name__)


class UpdateTarget(BaseModel):
    winget_id: str
    tenant_id: str


class TriggerUpdateRequest(BaseModel):
    winget_id: str | None = None
    tenant_id: str | None = None
    updates: list[UpdateTarget] | None = None


def _result_json(result: update_trigger_service.ItemResult) -> dict:
    data: dict = {
        "winget_id": result.winget_id,
        "tenant_id": result.tenant_id,
        "success": result.success,
    }
    if result.error is not None:
        data["error"] = result.error
    if result.packaging_job_id is not None:
        data["packaging_job_id"] = str(result.packaging_job_id)
    return data


@router.post("/updates/trigger")
async def trigger_updates(
    body: TriggerUpdateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    catalog: PackageCatalog = Depends(get_catalog),
) -> JSONResponse:
    """Trigger updates for one app or a batch. Per-item outcomes in results."""
    if body.updates:
        targets = body.updates
    elif body.winget_id and body.tenant_id:
        targets = [UpdateTarget(winget_id=body.winget_id, tenant_id=body.tenant_id)]
    else:
        raise HTTPException(
            status_code=400, detail="Either winget_id/tenant_id or updates array is required"
        )

    limit = settings.updates.max_batch_size
    if len(targets) > limit:
        raise HTTPException(
            status_code=400, detail=f"Maximum {limit} updates can be triggered at once"
        )

    response = await update_trigger_service.trigger_updates(
        db,
        user.user_id,
        [update_trigger_service.TriggerItem(t.winget_id, t.tenant_id) for t in targets],
        catalog=catalog,
        skip_rate_limits=True,
    )
    return JSONResponse(
        content={
            "success": response.success,
            "triggered": response.triggered,
            "failed": response.failed,
            "results": [_result_json(r) for r in response.results],
        }
    )
