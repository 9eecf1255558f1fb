"""Packaging job submission.

Win32 cart items become packaging_jobs rows. In github mode each job is
dispatched to the packaging workflow and moves to 'packaging'; in local mode
jobs stay 'queued' until a local packager claims them. Store items skip
packaging and are deployed directly through Microsoft Graph.
"""

import asyncio
import json
import re
import shlex
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from intuneget.config import PackagingMode, settings
from intuneget.db.models import PackagingJob, UploadHistory
from intuneget.logging_config import get_logger
from intuneget.services import github_service, graph_service
from intuneget.services.cart import (
    CartItem,
    StoreCartItem,
    Win32CartItem,
    cart_item_to_dict,
)
from intuneget.services.detection_rules import DEFAULT_SILENT_ARGS, MSI_TYPES

logger = get_logger(__name__)

CALLBACK_PATH = "/api/package/callback"

_MSIEXEC = re.compile(r"^\s*msiexec(?:\.exe)?\s+/[ip]\s+(?:\"[^\"]*\"|\S+)\s*", re.IGNORECASE)
_MSI_STOCK_SWITCHES = {"/qn", "/quiet", "/norestart", "/qb", "/passive"}


def callback_url() -> str:
    return settings.packaging.callback_base_url.rstrip("/") + CALLBACK_PATH


def build_app_description(description: str | None, fallback: str) -> str:
    """Intune app description: the package description, or the fallback line."""
    text = (description or "").strip()
    return text or fallback


def extract_silent_switches(install_command: str, installer_type: str) -> str:
    """Pull the installer arguments out of a full install command.

    The packaging workflow builds its own command line around the installer
    file, so only the switches are passed on. MSI stock switches are dropped
    (the workflow always adds them). Falls back to the installer type's
    default silent arguments when the command carries none.
    """
    command = (install_command or "").strip()
    if installer_type in MSI_TYPES:
        args = _MSIEXEC.sub("", command) if _MSIEXEC.match(command) else ""
        kept = [a for a in args.split() if a.lower() not in _MSI_STOCK_SWITCHES]
        return " ".join(kept)

    if command:
        if command.startswith('"'):
            _, _, rest = command[1:].partition('"')
        else:
            try:
                parts = shlex.split(command, posix=False)
            except ValueError:
                parts = command.split()
            rest = " ".join(parts[1:])
        rest = rest.strip()
        if rest:
            return rest
    return DEFAULT_SILENT_ARGS.get(installer_type, "")


async def create_packaging_job(
    db: AsyncSession,
    user_id: str,
    tenant_id: str,
    item: CartItem,
    status: str = "queued",
    update_check_result_id: uuid.UUID | None = None,
) -> PackagingJob:
    """Insert the packaging_jobs row for a cart item."""
    job = PackagingJob(
        user_id=user_id,
        tenant_id=tenant_id,
        winget_id=item.winget_id,
        version=item.version,
        display_name=item.display_name,
        publisher=item.publisher,
        app_source=item.app_source,
        package_config=cart_item_to_dict(item),
        status=status,
        update_check_result_id=update_check_result_id,
    )
    match item:
        case Win32CartItem():
            job.architecture = item.architecture
            job.installer_type = item.installer_type
            job.installer_url = item.installer_url
            job.installer_sha256 = item.installer_sha256
            job.install_command = item.install_command
            job.uninstall_command = item.uninstall_command
            job.install_scope = item.install_scope
            job.detection_rules = list(item.detection_rules)
        case StoreCartItem():
            job.installer_type = "store"
    db.add(job)
    await db.flush()
    return job


def build_workflow_inputs(
    job_id: uuid.UUID,
    tenant_id: str,
    item: Win32CartItem,
    *,
    force_create: bool = False,
) -> dict[str, Any]:
    """Input descriptor for the packaging workflow.

    Structured values (detection rules, assignments, categories) travel as
    JSON strings; empty ones are omitted.
    """
    return {
        "jobId": str(job_id),
        "tenantId": tenant_id,
        "wingetId": item.winget_id,
        "displayName": item.display_name,
        "description": build_app_description(
            item.description, f"Deployed via IntuneGet from Winget: {item.winget_id}"
        ),
        "publisher": item.publisher,
        "version": item.version,
        "architecture": item.architecture,
        "installerUrl": item.installer_url,
        "installerSha256": item.installer_sha256 or "",
        "installerType": item.installer_type,
        "silentSwitches": extract_silent_switches(item.install_command, item.installer_type),
        "uninstallCommand": item.uninstall_command,
        "callbackUrl": callback_url(),
        "detectionRules": json.dumps(item.detection_rules) if item.detection_rules else None,
        "assignments": json.dumps(item.assignments) if item.assignments else None,
        "categories": json.dumps(item.categories) if item.categories else None,
        "installScope": "user" if item.install_scope == "user" else "machine",
        "forceCreate": item.force_create or force_create,
    }


@dataclass
class SubmitResult:
    jobs: list[PackagingJob] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.jobs)

    @property
    def message(self) -> str:
        deployed = sum(1 for j in self.jobs if j.status == "deployed")
        queued = len(self.jobs) - deployed
        if self.errors:
            return f"{len(self.jobs)} job(s) processed, {len(self.errors)} failed"
        if deployed and queued:
            return f"{deployed} Store app(s) deployed, {queued} Win32 app(s) queued"
        if deployed:
            return f"{deployed} Store app(s) deployed successfully"
        return f"{queued} job(s) queued successfully"


async def _submit_store_items(
    db: AsyncSession, user_id: str, tenant_id: str, items: list[StoreCartItem], result: SubmitResult
) -> None:
    try:
        token = await graph_service.acquire_app_token(tenant_id)
    except (graph_service.GraphError, httpx.HTTPError) as e:
        for item in items:
            result.errors.append({"wingetId": item.winget_id, "error": f"Token acquisition failed: {e}"})
        return

    for item in items:
        job = await create_packaging_job(db, user_id, tenant_id, item, status="uploading")
        try:
            deployed = await graph_service.deploy_store_app(item, token)
        except Exception as e:
            logger.warning("Store app deployment failed", winget_id=item.winget_id, error=str(e))
            job.status = "failed"
            job.error_message = str(e) or "Deployment failed"
            await db.flush()
            result.errors.append({"wingetId": item.winget_id, "error": job.error_message})
            continue

        job.status = "deployed"
        job.intune_app_id = deployed.intune_app_id
        job.intune_app_url = deployed.intune_app_url
        db.add(
            UploadHistory(
                user_id=user_id,
                intune_tenant_id=tenant_id,
                winget_id=item.winget_id,
                version=item.version,
                display_name=item.display_name,
                packaging_job_id=job.id,
                intune_app_id=deployed.intune_app_id,
            )
        )
        await db.flush()
        result.jobs.append(job)


async def _submit_win32_items(
    db: AsyncSession,
    user_id: str,
    tenant_id: str,
    items: list[Win32CartItem],
    force_create: bool,
    result: SubmitResult,
) -> None:
    local_mode = settings.packaging.mode == PackagingMode.LOCAL
    if not local_mode and not github_service.is_configured():
        for item in items:
            result.errors.append(
                {"wingetId": item.winget_id, "error": "GitHub Actions packaging service not configured"}
            )
        return

    pending: list[tuple[Win32CartItem, PackagingJob]] = []
    for item in items:
        job = await create_packaging_job(db, user_id, tenant_id, item)
        if local_mode:
            result.jobs.append(job)
        else:
            pending.append((item, job))

    if not pending:
        return

    is_batch = len(pending) > 1
    outcomes = await asyncio.gather(
        *(
            github_service.dispatch_workflow(
                build_workflow_inputs(job.id, tenant_id, item, force_create=force_create),
                skip_run_capture=is_batch,
            )
            for item, job in pending
        ),
        return_exceptions=True,
    )

    for (item, job), outcome in zip(pending, outcomes, strict=True):
        if isinstance(outcome, github_service.DispatchResult):
            job.status = "packaging"
            if outcome.run_id is not None:
                job.github_run_id = str(outcome.run_id)
                job.github_run_url = outcome.run_url
            result.jobs.append(job)
        elif isinstance(outcome, Exception):
            logger.warning("Packaging dispatch failed", winget_id=item.winget_id, error=str(outcome))
            job.status = "failed"
            job.error_message = str(outcome)
            result.errors.append({"wingetId": item.winget_id, "error": str(outcome)})
        else:
            raise outcome
    await db.flush()


async def submit_cart_items(
    db: AsyncSession,
    user_id: str,
    tenant_id: str,
    items: list[CartItem],
    force_create: bool = False,
) -> SubmitResult:
    """Queue or deploy every cart item. Per-item failures land in result.errors."""
    store_items: list[StoreCartItem] = []
    win32_items: list[Win32CartItem] = []
    for item in items:
        match item:
            case StoreCartItem():
                store_items.append(item)
            case Win32CartItem():
                win32_items.append(item)

    result = SubmitResult()
    if store_items:
        await _submit_store_items(db, user_id, tenant_id, store_items, result)
    if win32_items:
        await _submit_win32_items(db, user_id, tenant_id, win32_items, force_create, result)

    logger.info(
        "Cart submitted",
        user_id=user_id,
        tenant_id=tenant_id,
        jobs=len(result.jobs),
        errors=len(result.errors),
    )
    return result
