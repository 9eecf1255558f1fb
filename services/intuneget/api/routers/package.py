"""Packaging submission endpoint.

Endpoints:
    POST /api/package   {items: [cart item, ...], forceCreate?}
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from intuneget.api.dependencies import AuthenticatedUser, get_current_user
from intuneget.config import settings
from intuneget.db.models import PackagingJob
from intuneget.db.session import get_db
from intuneget.logging_config import get_logger
from intuneget.services import packaging_service
from intuneget.services.cart import CartItemError, cart_item_from_dict

router = APIRouter(tags=["package"])
logger = get_logger(__name__)


class PackageRequest(BaseModel):
    items: list[dict[str, Any]] = []
    forceCreate: bool = False  # noqa: N815


def _job_json(job: PackagingJob) -> dict:
    return {
        "id": str(job.id),
        "tenant_id": job.tenant_id,
        "winget_id": job.winget_id,
        "version": job.version,
        "display_name": job.display_name,
        "publisher": job.publisher,
        "status": job.status,
        "app_source": job.app_source,
        "github_run_id": job.github_run_id,
        "github_run_url": job.github_run_url,
        "intune_app_id": job.intune_app_id,
        "created_at": job.created_at.isoformat() if job.created_at else None,
    }


@router.post("/package")
async def submit_package(
    body: PackageRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Queue Win32 cart items for packaging and deploy Store items directly."""
    if not body.items:
        raise HTTPException(status_code=400, detail="No items provided for packaging")
    limit = settings.packaging.max_items_per_request
    if len(body.items) > limit:
        raise HTTPException(status_code=400, detail=f"Maximum {limit} items per batch")

    try:
        items = [cart_item_from_dict(raw) for raw in body.items]
    except CartItemError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None

    result = await packaging_service.submit_cart_items(
        db, user.user_id, user.tenant_id, items, force_create=body.forceCreate
    )
    content: dict[str, Any] = {
        "success": result.success,
        "jobs": [_job_json(j) for j in result.jobs],
        "message": result.message,
    }
    if result.errors:
        content["errors"] = result.errors
    return JSONResponse(content=content)
