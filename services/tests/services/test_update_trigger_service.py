"""Tests for manual update triggering and policy escalation."""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from intuneget.config import PackagingMode, UpdatesConfig, settings
from intuneget.db.models import (
    AppUpdatePolicy,
    AutoUpdateHistory,
    PackagingJob,
    UpdateCheckResult,
    UploadHistory,
)
from intuneget.services import github_service, update_trigger_service
from intuneget.services.update_trigger_service import (
    ERROR_NO_INSTALLER_INFO,
    ERROR_NO_PRIOR_DEPLOYMENT,
    ERROR_UPDATE_NOT_FOUND,
    InstallerInfo,
    TriggerItem,
    deployment_config_from_job,
    parse_assignment_migration,
    parse_package_assignments,
    parse_package_categories,
    policy_escalation,
    trigger_auto_update,
    trigger_updates,
)

USER = "user-1"
TENANT = "tenant-1"


async def _deployed(db, winget_id: str = "Google.Chrome", current_version: str = "119.0.6045.200"):
    """An app deployed through a packaging job, with a pending update check result."""
    job = PackagingJob(
        user_id=USER,
        tenant_id=TENANT,
        winget_id=winget_id,
        version=current_version,
        display_name="Google Chrome",
        publisher="Google LLC",
        architecture="x64",
        installer_type="msi",
        install_command='msiexec /i "googlechromestandaloneenterprise64.msi" /qn ALLUSERS=1 /norestart',
        uninstall_command="msiexec /x {8A69D345-D564-463C-AFF1-A69D9E530F96} /qn /norestart",
        detection_rules=[{"type": "msi", "productCode": "{8A69D345-D564-463C-AFF1-A69D9E530F96}"}],
        package_config={
            "assignments": [{"type": "allDevices", "intent": "required"}],
            "categories": [{"id": "cat-1", "displayName": "Browsers"}],
        },
        status="deployed",
    )
    db.add(job)
    await db.flush()
    db.add(
        UploadHistory(
            user_id=USER,
            intune_tenant_id=TENANT,
            winget_id=winget_id,
            version=current_version,
            display_name="Google Chrome",
            packaging_job_id=job.id,
            intune_app_id="app-123",
        )
    )
    check = UpdateCheckResult(
        user_id=USER,
        tenant_id=TENANT,
        winget_id=winget_id,
        display_name="Google Chrome",
        current_version=current_version,
        latest_version="120.0.6099.110",
        intune_app_id="app-123",
    )
    db.add(check)
    await db.flush()
    return job, check


async def _policy(db, winget_id: str = "Google.Chrome") -> AppUpdatePolicy:
    result = await db.execute(select(AppUpdatePolicy).where(AppUpdatePolicy.winget_id == winget_id))
    return result.scalar_one()


def _info(**overrides) -> InstallerInfo:
    fields = {
        "winget_id": "Google.Chrome",
        "display_name": "Google Chrome",
        "publisher": "Google LLC",
        "latest_version": "120.0.6099.110",
        "installer_url": "https://dl.google.com/chrome/install/googlechromestandaloneenterprise64.msi",
        "installer_sha256": "a" * 64,
        "installer_type": "msi",
        "architecture": "x64",
        "current_version": "119.0.6045.200",
    }
    fields.update(overrides)
    return InstallerInfo(**fields)


@pytest.fixture
def github_mode():
    with patch.object(settings.packaging, "mode", PackagingMode.GITHUB):
        yield


class TestTriggerUpdates:
    @patch("intuneget.services.github_service.dispatch_workflow", new_callable=AsyncMock)
    @patch("intuneget.services.github_service.is_configured", return_value=True)
    async def test_items_independent(self, mock_configured, mock_dispatch, db, file_catalog, github_mode):
        mock_dispatch.return_value = github_service.DispatchResult()
        await _deployed(db)
        db.add(UpdateCheckResult(user_id=USER, tenant_id=TENANT, winget_id="7zip.7zip", current_version="22.01"))
        await db.flush()

        response = await trigger_updates(
            db,
            USER,
            [
                TriggerItem("Google.Chrome", TENANT),
                TriggerItem("Mozilla.Firefox", TENANT),
                TriggerItem("7zip.7zip", TENANT),
            ],
            catalog=file_catalog,
        )

        assert response.triggered == 1
        assert response.failed == 2
        assert not response.success
        by_id = {r.winget_id: r for r in response.results}
        assert by_id["Google.Chrome"].success
        assert by_id["Google.Chrome"].packaging_job_id is not None
        assert by_id["Mozilla.Firefox"].error == ERROR_UPDATE_NOT_FOUND
        assert by_id["7zip.7zip"].error == ERROR_NO_PRIOR_DEPLOYMENT
        assert mock_dispatch.await_args.kwargs["skip_run_capture"] is True

    @patch("intuneget.services.github_service.dispatch_workflow", new_callable=AsyncMock)
    @patch("intuneget.services.github_service.is_configured", return_value=True)
    async def test_policy_derived_and_restored(self, mock_configured, mock_dispatch, db, file_catalog, github_mode):
        mock_dispatch.return_value = github_service.DispatchResult(run_id=7, run_url="https://github.com/runs/7")
        _, check = await _deployed(db)

        response = await trigger_updates(db, USER, [TriggerItem("Google.Chrome", TENANT)], catalog=file_catalog)

        assert response.success
        policy = await _policy(db)
        assert policy.policy_type == "notify"
        assert policy.is_enabled is True
        assert policy.deployment_config["assignments"] == [{"type": "allDevices", "intent": "required"}]
        assert policy.last_auto_update_at is not None

        job = await db.get(PackagingJob, response.results[0].packaging_job_id)
        assert job.status == "packaging"
        assert job.version == "120.0.6099.110"
        assert job.github_run_id == "7"
        assert job.update_check_result_id == check.id
        assert job.install_command.startswith("msiexec /i")

        history = (await db.execute(select(AutoUpdateHistory))).scalar_one()
        assert history.from_version == "119.0.6045.200"
        assert history.to_version == "120.0.6099.110"
        assert history.update_type == "manual"
        assert history.status == "packaging"
        assert mock_dispatch.await_args.kwargs["skip_run_capture"] is False

    @patch("intuneget.services.github_service.dispatch_workflow", new_callable=AsyncMock)
    @patch("intuneget.services.github_service.is_configured", return_value=True)
    async def test_dispatch_failure(self, mock_configured, mock_dispatch, db, file_catalog, github_mode):
        mock_dispatch.side_effect = github_service.GitHubDispatchError("Workflow dispatch failed (500): boom")
        await _deployed(db)

        response = await trigger_updates(db, USER, [TriggerItem("Google.Chrome", TENANT)], catalog=file_catalog)

        assert response.failed == 1
        assert response.results[0].error == "Workflow dispatch failed (500): boom"
        policy = await _policy(db)
        assert policy.consecutive_failures == 1
        assert policy.policy_type == "notify"
        history = (await db.execute(select(AutoUpdateHistory))).scalar_one()
        assert history.status == "failed"
        job = await db.get(PackagingJob, history.packaging_job_id)
        assert job.status == "failed"
        assert job.error_message == "Workflow dispatch failed (500): boom"

    async def test_local_mode_leaves_job_queued(self, db, file_catalog):
        await _deployed(db)

        with (
            patch.object(settings.packaging, "mode", PackagingMode.LOCAL),
            patch("intuneget.services.github_service.dispatch_workflow", new_callable=AsyncMock) as mock_dispatch,
        ):
            response = await trigger_updates(
                db, USER, [TriggerItem("Google.Chrome", TENANT)], catalog=file_catalog
            )

        assert response.success
        job = await db.get(PackagingJob, response.results[0].packaging_job_id)
        assert job.status == "queued"
        mock_dispatch.assert_not_awaited()

    async def test_package_missing_from_catalog(self, db, file_catalog):
        await _deployed(db, winget_id="Contoso.Retired")

        response = await trigger_updates(
            db, USER, [TriggerItem("Contoso.Retired", TENANT)], catalog=file_catalog
        )

        assert response.results[0].error == ERROR_NO_INSTALLER_INFO
        policy = await _policy(db, "Contoso.Retired")
        assert policy.policy_type == "notify"

    async def test_existing_policy_reused(self, db, file_catalog):
        await _deployed(db)
        db.add(
            AppUpdatePolicy(
                user_id=USER,
                tenant_id=TENANT,
                winget_id="Google.Chrome",
                policy_type="ignore",
                is_enabled=False,
                deployment_config={"displayName": "Chrome (managed)", "architecture": "x86"},
            )
        )
        await db.flush()

        with patch.object(settings.packaging, "mode", PackagingMode.LOCAL):
            response = await trigger_updates(
                db, USER, [TriggerItem("Google.Chrome", TENANT)], catalog=file_catalog
            )

        job = await db.get(PackagingJob, response.results[0].packaging_job_id)
        assert job.display_name == "Chrome (managed)"
        assert job.architecture == "x86"
        assert job.installer_url.endswith("googlechromestandaloneenterprise.msi")
        policy = await _policy(db)
        assert (policy.policy_type, policy.is_enabled) == ("ignore", False)


class TestPolicyEscalation:
    async def test_restored_after_exception(self, db):
        policy = AppUpdatePolicy(user_id=USER, tenant_id=TENANT, winget_id="Google.Chrome", policy_type="pin_version")
        db.add(policy)
        await db.flush()

        with pytest.raises(RuntimeError):
            async with policy_escalation(db, policy) as escalated:
                assert (escalated.policy_type, escalated.is_enabled) == ("auto_update", True)
                raise RuntimeError("packaging exploded")

        stored = (
            await db.execute(
                select(AppUpdatePolicy.policy_type, AppUpdatePolicy.is_enabled).where(
                    AppUpdatePolicy.id == policy.id
                )
            )
        ).one()
        assert tuple(stored) == ("pin_version", True)
        assert policy.policy_type == "pin_version"

    async def test_noop_when_already_auto(self):
        db = AsyncMock()
        policy = AppUpdatePolicy(id=uuid.uuid4(), policy_type="auto_update", is_enabled=True)

        async with policy_escalation(db, policy):
            pass

        db.execute.assert_not_awaited()

    @patch("intuneget.services.update_trigger_service.logger")
    async def test_restore_failure_not_raised(self, mock_logger):
        db = AsyncMock()
        db.execute.side_effect = [None, RuntimeError("connection lost")]
        policy = AppUpdatePolicy(id=uuid.uuid4(), policy_type="notify", is_enabled=False)

        async with policy_escalation(db, policy):
            pass

        assert db.execute.await_count == 2
        mock_logger.exception.assert_called_once()


class TestTriggerAutoUpdate:
    @pytest.mark.parametrize(
        ("policy_type", "is_enabled", "failures", "last_update", "reason"),
        [
            ("notify", True, 0, None, "Auto-update is not enabled for this app"),
            ("auto_update", False, 0, None, "Auto-update is not enabled for this app"),
            ("auto_update", True, 3, None, "Auto-update paused after 3 consecutive failures"),
            ("auto_update", True, 0, "now", "Auto-update cooldown has not elapsed"),
        ],
    )
    async def test_skip_reasons(self, policy_type, is_enabled, failures, last_update, reason):
        policy = AppUpdatePolicy(
            id=uuid.uuid4(),
            winget_id="Google.Chrome",
            policy_type=policy_type,
            is_enabled=is_enabled,
            consecutive_failures=failures,
            last_auto_update_at=datetime.now(UTC) if last_update == "now" else None,
        )

        outcome = await trigger_auto_update(AsyncMock(), policy, _info(), config=UpdatesConfig())

        assert not outcome.success
        assert outcome.skip_reason == reason

    async def test_manual_trigger_ignores_rate_limits(self, db):
        policy = AppUpdatePolicy(
            user_id=USER,
            tenant_id=TENANT,
            winget_id="Google.Chrome",
            policy_type="auto_update",
            is_enabled=True,
            consecutive_failures=5,
            last_auto_update_at=datetime.now(UTC),
            deployment_config={"installScope": "user", "forceCreateNewApp": False},
        )
        db.add(policy)
        await db.flush()

        outcome = await trigger_auto_update(db, policy, _info(), skip_rate_limits=True)

        assert outcome.success
        assert outcome.packaging_job.status == "queued"
        assert outcome.cart_item.install_scope == "user"
        assert outcome.cart_item.force_create is False
        assert outcome.cart_item.publisher == "Unknown Publisher"
        assert outcome.history.update_type == "manual"


class TestPackageConfigParsing:
    def test_assignments_filter_invalid(self):
        config = {
            "assignments": [
                {"type": "allUsers", "intent": "available"},
                {"type": "group", "intent": "required", "groupId": "g-1"},
                {"type": "group", "intent": "required"},
                {"type": "everyone", "intent": "required"},
                {"type": "allDevices", "intent": "maybe"},
                "junk",
            ]
        }
        assert parse_package_assignments(config) == [
            {"type": "allUsers", "intent": "available"},
            {"type": "group", "intent": "required", "groupId": "g-1"},
        ]

    def test_legacy_assigned_groups(self):
        config = {
            "assignedGroups": [
                {"groupId": "g-1", "groupName": "Finance", "assignmentType": "available"},
                {"groupId": "g-2"},
                {"groupName": "No id"},
            ]
        }
        assert parse_package_assignments(config) == [
            {"type": "group", "groupId": "g-1", "intent": "available", "groupName": "Finance"},
            {"type": "group", "groupId": "g-2", "intent": "required"},
        ]

    def test_assignments_take_precedence_over_legacy(self):
        config = {"assignments": [], "assignedGroups": [{"groupId": "g-1"}]}
        assert parse_package_assignments(config) == []
        assert parse_package_assignments(None) == []

    def test_categories(self):
        config = {
            "categories": [
                {"id": "c-1", "displayName": "Browsers"},
                {"id": "c-1", "displayName": "Browsers again"},
                {"id": "c-2"},
            ]
        }
        assert parse_package_categories(config) == [{"id": "c-1", "displayName": "Browsers"}]
        assert parse_package_categories({"categoryIds": ["c-3", "", "c-3"]}) == [
            {"id": "c-3", "displayName": "c-3"}
        ]

    def test_assignment_migration_nested_wins(self):
        config = {
            "assignmentMigration": {"carryOverAssignments": True},
            "carryOverAssignments": False,
            "removeAssignmentsFromPreviousApp": True,
        }
        assert parse_assignment_migration(config) == {
            "carryOverAssignments": True,
            "removeAssignmentsFromPreviousApp": True,
        }
        assert parse_assignment_migration("nope") == {
            "carryOverAssignments": False,
            "removeAssignmentsFromPreviousApp": False,
        }

    def test_deployment_config_from_job(self):
        job = PackagingJob(
            display_name="7-Zip",
            publisher="",
            architecture="x64",
            installer_type="exe",
            install_command='"7z2301-x64.exe" /S',
            uninstall_command="",
            install_scope="machine",
            detection_rules=None,
            package_config={"categoryIds": ["utilities"]},
        )

        config = deployment_config_from_job(job)

        assert config["publisher"] == "Unknown Publisher"
        assert config["detectionRules"] == []
        assert config["categories"] == [{"id": "utilities", "displayName": "utilities"}]
        assert config["forceCreateNewApp"] is True
        assert config["assignments"] == []
