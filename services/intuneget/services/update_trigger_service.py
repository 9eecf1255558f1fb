"""Manual update triggering for deployed apps.

For each requested (winget_id, tenant_id) the caller's update check result
is looked up, the app's update policy is found or derived from its most
recent deployment, and an auto-update is triggered against the latest
catalog version. A manual trigger temporarily forces the policy to
(auto_update, enabled); the prior values are always put back, whatever
happens to the item.

Items are processed one after another and independently: a failing item is
reported in its result and never stops the batch.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from intuneget.catalog.protocol import PackageCatalog
from intuneget.config import PackagingMode, UpdatesConfig, settings
from intuneget.db.models import (
    AppUpdatePolicy,
    AutoUpdateHistory,
    PackagingJob,
    UpdateCheckResult,
    UploadHistory,
    utc_now,
)
from intuneget.logging_config import get_logger
from intuneget.services import github_service, packaging_service
from intuneget.services.cart import Win32CartItem

logger = get_logger(__name__)

ERROR_UPDATE_NOT_FOUND = "Update not found"
ERROR_NO_PRIOR_DEPLOYMENT = (
    "No prior deployment found - please deploy manually first and enable auto-update"
)
ERROR_NO_DEPLOYMENT_CONFIG = "Could not retrieve deployment configuration"
ERROR_NO_INSTALLER_INFO = "Could not get installer information for latest version"

ASSIGNMENT_TYPES = {"allUsers", "allDevices", "group"}
ASSIGNMENT_INTENTS = {"required", "available", "uninstall"}


@dataclass
class TriggerItem:
    winget_id: str
    tenant_id: str


@dataclass
class ItemResult:
    winget_id: str
    tenant_id: str
    success: bool
    error: str | None = None
    packaging_job_id: uuid.UUID | None = None


@dataclass
class TriggerResponse:
    triggered: int = 0
    failed: int = 0
    results: list[ItemResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def add(self, result: ItemResult) -> None:
        self.results.append(result)
        if result.success:
            self.triggered += 1
        else:
            self.failed += 1


@dataclass
class InstallerInfo:
    """Latest catalog version of a package, reduced to what packaging needs."""

    winget_id: str
    display_name: str
    publisher: str
    latest_version: str
    installer_url: str
    installer_sha256: str
    installer_type: str
    architecture: str
    current_version: str = ""
    current_intune_app_id: str | None = None


@dataclass
class TriggerOutcome:
    success: bool
    packaging_job: PackagingJob | None = None
    cart_item: Win32CartItem | None = None
    history: AutoUpdateHistory | None = None
    error: str | None = None
    skip_reason: str | None = None


# --- package_config parsing ---


def parse_package_assignments(package_config: Any) -> list[dict[str, Any]]:
    """Assignments from a stored package config.

    Current shape: assignments [{type, intent, groupId?}], invalid entries
    dropped. Legacy shape: assignedGroups [{groupId, groupName?, assignmentType?}],
    read only when there is no assignments list.
    """
    if not isinstance(package_config, dict):
        return []

    assignments = package_config.get("assignments")
    if isinstance(assignments, list):
        valid = []
        for assignment in assignments:
            if not isinstance(assignment, dict):
                continue
            if assignment.get("type") not in ASSIGNMENT_TYPES:
                continue
            if assignment.get("intent") not in ASSIGNMENT_INTENTS:
                continue
            if assignment["type"] == "group":
                group_id = assignment.get("groupId")
                if not isinstance(group_id, str) or not group_id:
                    continue
            valid.append(assignment)
        return valid

    groups = package_config.get("assignedGroups")
    if not isinstance(groups, list):
        return []
    converted = []
    for group in groups:
        if not isinstance(group, dict):
            continue
        group_id = group.get("groupId")
        if not isinstance(group_id, str) or not group_id:
            continue
        entry: dict[str, Any] = {
            "type": "group",
            "groupId": group_id,
            "intent": group.get("assignmentType") or "required",
        }
        if isinstance(group.get("groupName"), str):
            entry["groupName"] = group["groupName"]
        converted.append(entry)
    return converted


def parse_package_categories(package_config: Any) -> list[dict[str, str]]:
    """Categories as [{id, displayName}], de-duplicated by id.

    Falls back to the legacy categoryIds list (id doubles as display name).
    """
    if not isinstance(package_config, dict):
        return []

    parsed: list[dict[str, str]] = []
    categories = package_config.get("categories")
    if isinstance(categories, list):
        for category in categories:
            if not isinstance(category, dict):
                continue
            category_id = category.get("id")
            name = category.get("displayName")
            if isinstance(category_id, str) and category_id and isinstance(name, str) and name:
                parsed.append({"id": category_id, "displayName": name})

    if not parsed and isinstance(package_config.get("categoryIds"), list):
        for category_id in package_config["categoryIds"]:
            if isinstance(category_id, str) and category_id:
                parsed.append({"id": category_id, "displayName": category_id})

    seen: set[str] = set()
    unique = []
    for category in parsed:
        if category["id"] not in seen:
            seen.add(category["id"])
            unique.append(category)
    return unique


def parse_assignment_migration(package_config: Any) -> dict[str, bool]:
    """Assignment carry-over flags, nested or flat."""
    if not isinstance(package_config, dict):
        return {"carryOverAssignments": False, "removeAssignmentsFromPreviousApp": False}

    nested = package_config.get("assignmentMigration")
    nested = nested if isinstance(nested, dict) else {}

    def flag(name: str) -> bool:
        value = nested.get(name)
        if value is None:
            value = package_config.get(name)
        return bool(value)

    return {
        "carryOverAssignments": flag("carryOverAssignments"),
        "removeAssignmentsFromPreviousApp": flag("removeAssignmentsFromPreviousApp"),
    }


def deployment_config_from_job(job: PackagingJob) -> dict[str, Any]:
    """Deployment config for a new policy, taken from the app's last packaging job."""
    package_config = job.package_config
    return {
        "displayName": job.display_name,
        "publisher": job.publisher or "Unknown Publisher",
        "architecture": job.architecture or "x64",
        "installerType": job.installer_type,
        "installCommand": job.install_command or "",
        "uninstallCommand": job.uninstall_command or "",
        "installScope": job.install_scope or "machine",
        "detectionRules": job.detection_rules if isinstance(job.detection_rules, list) else [],
        "assignments": parse_package_assignments(package_config),
        "categories": parse_package_categories(package_config),
        "forceCreateNewApp": True,
        "assignmentMigration": parse_assignment_migration(package_config),
    }


# --- Lookups ---


async def _get_update_result(
    db: AsyncSession, user_id: str, item: TriggerItem
) -> UpdateCheckResult | None:
    result = await db.execute(
        select(UpdateCheckResult).where(
            UpdateCheckResult.user_id == user_id,
            UpdateCheckResult.tenant_id == item.tenant_id,
            UpdateCheckResult.winget_id == item.winget_id,
        )
    )
    return result.scalar_one_or_none()


async def _get_policy(db: AsyncSession, user_id: str, item: TriggerItem) -> AppUpdatePolicy | None:
    result = await db.execute(
        select(AppUpdatePolicy).where(
            AppUpdatePolicy.user_id == user_id,
            AppUpdatePolicy.tenant_id == item.tenant_id,
            AppUpdatePolicy.winget_id == item.winget_id,
        )
    )
    return result.scalar_one_or_none()


async def _latest_upload(db: AsyncSession, user_id: str, item: TriggerItem) -> UploadHistory | None:
    result = await db.execute(
        select(UploadHistory)
        .where(
            UploadHistory.user_id == user_id,
            UploadHistory.intune_tenant_id == item.tenant_id,
            UploadHistory.winget_id == item.winget_id,
        )
        .order_by(UploadHistory.deployed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


class PolicyUnavailableError(Exception):
    """No policy exists and none can be derived for the app."""


async def get_or_create_policy(db: AsyncSession, user_id: str, item: TriggerItem) -> AppUpdatePolicy:
    """The app's policy, or a new (notify, enabled) one derived from its last deployment.

    Raises:
        PolicyUnavailableError: With the per-item error message.
    """
    policy = await _get_policy(db, user_id, item)
    if policy is not None:
        return policy

    upload = await _latest_upload(db, user_id, item)
    if upload is None or upload.packaging_job_id is None:
        raise PolicyUnavailableError(ERROR_NO_PRIOR_DEPLOYMENT)

    job = await db.get(PackagingJob, upload.packaging_job_id)
    if job is None:
        raise PolicyUnavailableError(ERROR_NO_DEPLOYMENT_CONFIG)

    policy = AppUpdatePolicy(
        user_id=user_id,
        tenant_id=item.tenant_id,
        winget_id=item.winget_id,
        policy_type="notify",
        is_enabled=True,
        deployment_config=deployment_config_from_job(job),
        original_upload_history_id=upload.id,
    )
    db.add(policy)
    try:
        await db.flush()
    except SQLAlchemyError as e:
        await db.rollback()
        raise PolicyUnavailableError(f"Failed to create policy: {e}") from e

    logger.info(
        "Update policy derived from deployment",
        policy_id=str(policy.id),
        winget_id=item.winget_id,
        upload_history_id=str(upload.id),
    )
    return policy


async def get_latest_installer_info(
    catalog: PackageCatalog, winget_id: str, architecture: str | None = None
) -> InstallerInfo | None:
    """Installer of the latest catalog version, or None when there is no usable one."""
    manifest = await catalog.get_manifest(winget_id)
    if manifest is None:
        return None
    installer = manifest.best_installer(architecture)
    if installer is None or not installer.url:
        return None
    return InstallerInfo(
        winget_id=manifest.package_id,
        display_name=manifest.name,
        publisher=manifest.publisher,
        latest_version=manifest.version,
        installer_url=installer.url,
        installer_sha256=installer.sha256,
        installer_type=installer.type,
        architecture=installer.architecture,
    )


# --- Policy escalation ---


@asynccontextmanager
async def policy_escalation(db: AsyncSession, policy: AppUpdatePolicy) -> AsyncIterator[AppUpdatePolicy]:
    """Force the policy to (auto_update, enabled) for the duration of the block.

    The exact prior (policy_type, is_enabled) is written back on every exit,
    including exceptions. A failed restore is logged and never raised, so it
    cannot mask the block's own outcome.
    """
    if policy.policy_type == "auto_update" and policy.is_enabled:
        yield policy
        return

    policy_id = policy.id
    prior_type, prior_enabled = policy.policy_type, policy.is_enabled
    await db.execute(
        update(AppUpdatePolicy)
        .where(AppUpdatePolicy.id == policy_id)
        .values(policy_type="auto_update", is_enabled=True)
    )
    policy.policy_type, policy.is_enabled = "auto_update", True
    try:
        yield policy
    finally:
        try:
            await db.execute(
                update(AppUpdatePolicy)
                .where(AppUpdatePolicy.id == policy_id)
                .values(policy_type=prior_type, is_enabled=prior_enabled)
            )
            policy.policy_type, policy.is_enabled = prior_type, prior_enabled
        except Exception:
            logger.exception("Failed to restore update policy", policy_id=str(policy_id))


# --- Triggering ---


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _check_policy(policy: AppUpdatePolicy, skip_rate_limits: bool, cfg: UpdatesConfig) -> str | None:
    """Reason the policy may not auto-update now, or None."""
    if policy.policy_type != "auto_update" or not policy.is_enabled:
        return "Auto-update is not enabled for this app"
    if skip_rate_limits:
        return None
    if policy.consecutive_failures >= cfg.max_consecutive_failures:
        return f"Auto-update paused after {policy.consecutive_failures} consecutive failures"
    if policy.last_auto_update_at is not None:
        next_allowed = _aware(policy.last_auto_update_at) + timedelta(minutes=cfg.cooldown_minutes)
        if datetime.now(UTC) < next_allowed:
            return "Auto-update cooldown has not elapsed"
    return None


def _cart_item_for_update(policy: AppUpdatePolicy, info: InstallerInfo) -> Win32CartItem:
    config = policy.deployment_config or {}
    installer_type = info.installer_type or config.get("installerType") or "exe"
    return Win32CartItem(
        winget_id=policy.winget_id,
        display_name=config.get("displayName") or info.display_name,
        publisher=config.get("publisher") or "Unknown Publisher",
        version=info.latest_version,
        architecture=config.get("architecture") or "x64",
        install_scope="user" if config.get("installScope") == "user" else "machine",
        installer_type=installer_type,
        installer_url=info.installer_url,
        installer_sha256=info.installer_sha256 or "",
        install_command=config.get("installCommand") or "",
        uninstall_command=config.get("uninstallCommand") or "",
        detection_rules=list(config.get("detectionRules") or []),
        description=config.get("description"),
        assignments=list(config.get("assignments") or []),
        categories=list(config.get("categories") or []),
        force_create=config.get("forceCreateNewApp") is not False,
    )


async def trigger_auto_update(
    db: AsyncSession,
    policy: AppUpdatePolicy,
    info: InstallerInfo,
    *,
    update_check_result_id: uuid.UUID | None = None,
    skip_rate_limits: bool = False,
    config: UpdatesConfig | None = None,
) -> TriggerOutcome:
    """Queue a packaging job for the latest version under the policy's deployment config.

    Records an auto_update_history row and stamps last_auto_update_at.
    Rate limits (failure ceiling, cooldown) apply unless skip_rate_limits.
    """
    cfg = config or settings.updates
    reason = _check_policy(policy, skip_rate_limits, cfg)
    if reason is not None:
        logger.info("Auto-update skipped", policy_id=str(policy.id), reason=reason)
        return TriggerOutcome(success=False, skip_reason=reason)

    cart_item = _cart_item_for_update(policy, info)
    job = await packaging_service.create_packaging_job(
        db,
        policy.user_id,
        policy.tenant_id,
        cart_item,
        update_check_result_id=update_check_result_id,
    )
    history = AutoUpdateHistory(
        policy_id=policy.id,
        packaging_job_id=job.id,
        from_version=info.current_version,
        to_version=info.latest_version,
        update_type="manual" if skip_rate_limits else "scheduled",
        status="pending",
    )
    db.add(history)
    policy.last_auto_update_at = utc_now()
    await db.flush()

    logger.info(
        "Auto-update queued",
        policy_id=str(policy.id),
        winget_id=policy.winget_id,
        from_version=info.current_version,
        to_version=info.latest_version,
        packaging_job_id=str(job.id),
    )
    return TriggerOutcome(success=True, packaging_job=job, cart_item=cart_item, history=history)


async def _dispatch(
    db: AsyncSession,
    policy: AppUpdatePolicy,
    outcome: TriggerOutcome,
    tenant_id: str,
    is_batch: bool,
) -> str | None:
    """Start packaging for a queued update job. Returns the dispatch error, if any.

    A failed dispatch marks the job and its history row failed and counts
    against the policy's consecutive failures.
    """
    job, history = outcome.packaging_job, outcome.history
    if settings.packaging.mode == PackagingMode.LOCAL:
        return None
    if not github_service.is_configured():
        logger.warning("GitHub dispatch not configured, job left queued", packaging_job_id=str(job.id))
        return None

    inputs = packaging_service.build_workflow_inputs(job.id, tenant_id, outcome.cart_item)

    try:
        dispatched = await github_service.dispatch_workflow(inputs, skip_run_capture=is_batch)
    except (github_service.GitHubDispatchError, httpx.HTTPError) as e:
        logger.warning("Update dispatch failed", packaging_job_id=str(job.id), error=str(e))
        job.status = "failed"
        job.error_message = str(e)
        history.status = "failed"
        history.error_message = str(e)
        policy.consecutive_failures += 1
        await db.flush()
        return str(e)

    job.status = "packaging"
    history.status = "packaging"
    if dispatched.run_id is not None:
        job.github_run_id = str(dispatched.run_id)
        job.github_run_url = dispatched.run_url
    await db.flush()
    return None


async def _trigger_one(
    db: AsyncSession,
    user_id: str,
    item: TriggerItem,
    catalog: PackageCatalog,
    skip_rate_limits: bool,
    is_batch: bool,
) -> ItemResult:
    def failed(error: str) -> ItemResult:
        return ItemResult(item.winget_id, item.tenant_id, success=False, error=error)

    update_result = await _get_update_result(db, user_id, item)
    if update_result is None:
        return failed(ERROR_UPDATE_NOT_FOUND)

    try:
        policy = await get_or_create_policy(db, user_id, item)
    except PolicyUnavailableError as e:
        return failed(str(e))

    async with policy_escalation(db, policy):
        architecture = (policy.deployment_config or {}).get("architecture")
        info = await get_latest_installer_info(catalog, item.winget_id, architecture)
        if info is None:
            return failed(ERROR_NO_INSTALLER_INFO)
        info.current_version = update_result.current_version
        info.current_intune_app_id = update_result.intune_app_id

        outcome = await trigger_auto_update(
            db,
            policy,
            info,
            update_check_result_id=update_result.id,
            skip_rate_limits=skip_rate_limits,
        )
        if not outcome.success:
            return failed(outcome.error or outcome.skip_reason or "Unknown error")

        dispatch_error = await _dispatch(db, policy, outcome, item.tenant_id, is_batch)
        if dispatch_error is not None:
            return failed(dispatch_error)

    return ItemResult(
        item.winget_id,
        item.tenant_id,
        success=True,
        packaging_job_id=outcome.packaging_job.id,
    )


async def trigger_updates(
    db: AsyncSession,
    user_id: str,
    items: list[TriggerItem],
    *,
    catalog: PackageCatalog,
    skip_rate_limits: bool = True,
) -> TriggerResponse:
    """Trigger updates for each item. triggered + failed == len(items).

    Each item is committed on its own; an unexpected error rolls back only
    that item's writes.
    """
    response = TriggerResponse()
    is_batch = len(items) > 1

    for item in items:
        try:
            result = await _trigger_one(db, user_id, item, catalog, skip_rate_limits, is_batch)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.warning(
                "Update trigger failed",
                winget_id=item.winget_id,
                tenant_id=item.tenant_id,
                error=str(e),
            )
            result = ItemResult(
                item.winget_id, item.tenant_id, success=False, error=str(e) or "Unknown error"
            )
        response.add(result)

    logger.info(
        "Updates triggered",
        user_id=user_id,
        requested=len(items),
        triggered=response.triggered,
        failed=response.failed,
    )
    return response
