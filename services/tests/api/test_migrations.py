"""Tests for SCCM migration project endpoints."""

import uuid
from unittest.mock import AsyncMock, patch

from intuneget.services import matching_orchestrator, migration_service
from intuneget.services.migration_service import ImportedApp

IMPORT_BODY = {
    "name": "Wave 1",
    "description": "Office workstations",
    "apps": [
        {"displayName": "Google Chrome", "ciId": "ci-1", "manufacturer": "Google LLC", "isDeployed": True},
        {"displayName": "Firefox", "ciId": "ci-2"},
        {
            "displayName": "Contoso Payroll",
            "technology": "Script",
            "detectionRules": [{"type": "file", "path": "C:\\Contoso", "fileName": "payroll.exe"}],
        },
    ],
}


async def _seed(session_factory, user_id: str = "user-1"):
    async with session_factory() as db:
        migration = await migration_service.create_migration(
            db, user_id, "tenant-1", "Seeded", [ImportedApp("Firefox"), ImportedApp("Google Chrome")]
        )
        apps = {a.display_name: a.id for a in await migration_service.list_apps(db, migration.id)}
        return migration.id, apps


class TestImport:
    async def test_import(self, client, audit):
        response = await client.post("/api/sccm/migrations", json=IMPORT_BODY)

        assert response.status_code == 201
        migration = response.json()["migration"]
        assert migration["status"] == "importing"
        assert migration["totalApps"] == 3
        assert migration["tenantId"] == "tenant-1"
        assert migration["errorMessage"] is None
        assert audit.await_args.args[3] == "import"

        apps = (await client.get(f"/api/sccm/migrations/{migration['id']}/apps")).json()["apps"]
        assert {a["displayName"] for a in apps} == {"Google Chrome", "Firefox", "Contoso Payroll"}
        assert all(a["matchStatus"] == "pending" for a in apps)

    async def test_empty_name_rejected(self, client):
        response = await client.post("/api/sccm/migrations", json={"name": "", "apps": []})
        assert response.status_code == 422

    async def test_list_only_own(self, client, session_factory):
        await _seed(session_factory)
        await _seed(session_factory, user_id="user-2")

        response = await client.get("/api/sccm/migrations")

        assert [m["name"] for m in response.json()["migrations"]] == ["Seeded"]


class TestGetMigration:
    async def test_not_owner(self, client, session_factory):
        migration_id, _ = await _seed(session_factory, user_id="user-2")

        response = await client.get(f"/api/sccm/migrations/{migration_id}")

        assert response.status_code == 404

    async def test_no_progress_outside_matching(self, client, session_factory):
        migration_id, _ = await _seed(session_factory)

        body = (await client.get(f"/api/sccm/migrations/{migration_id}")).json()

        assert body["migration"]["totalApps"] == 2
        assert body["progress"] is None

    @patch("intuneget.services.matching_orchestrator.get_matching_progress", new_callable=AsyncMock)
    async def test_progress_while_matching(self, mock_progress, client, session_factory):
        migration_id, _ = await _seed(session_factory)
        async with session_factory() as db:
            migration = await migration_service.get_migration(db, migration_id)
            await migration_service.transition_migration(db, migration, "matching")
        mock_progress.return_value = matching_orchestrator.MatchingProgress(
            total=2, processed=1, matched=1
        )

        body = (await client.get(f"/api/sccm/migrations/{migration_id}")).json()

        assert body["progress"]["processed"] == 1
        assert body["progress"]["total"] == 2

    async def test_invalid_match_status_filter(self, client, session_factory):
        migration_id, _ = await _seed(session_factory)

        response = await client.get(f"/api/sccm/migrations/{migration_id}/apps", params={"matchStatus": "maybe"})

        assert response.status_code == 400


class TestStartMatching:
    @patch("intuneget.services.matching_orchestrator.start_matching", new_callable=AsyncMock)
    async def test_accepted(self, mock_start, client, session_factory, file_catalog):
        migration_id, _ = await _seed(session_factory)

        response = await client.post(
            "/api/sccm/migrations/match", json={"migrationId": str(migration_id), "forceRematch": True}
        )

        assert response.status_code == 202
        assert response.json()["migrationId"] == str(migration_id)
        args = mock_start.await_args.args
        assert args[1].id == migration_id
        assert args[2] is file_catalog
        assert args[3] is True

    @patch("intuneget.services.matching_orchestrator.start_matching", new_callable=AsyncMock)
    async def test_already_running(self, mock_start, client, session_factory):
        mock_start.side_effect = matching_orchestrator.MatchingInProgressError("busy")
        migration_id, _ = await _seed(session_factory)

        response = await client.post("/api/sccm/migrations/match", json={"migrationId": str(migration_id)})

        assert response.status_code == 409
        assert response.json()["detail"] == "Matching already in progress"

    async def test_unknown_project(self, client):
        response = await client.post("/api/sccm/migrations/match", json={"migrationId": str(uuid.uuid4())})
        assert response.status_code == 404


class TestAppActions:
    async def test_link_resolves_name_from_catalog(self, client, session_factory, audit):
        migration_id, apps = await _seed(session_factory)

        response = await client.patch(
            "/api/sccm/migrations/match",
            json={"appId": str(apps["Firefox"]), "action": "link", "wingetPackageId": "Mozilla.Firefox"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["app"]["matchStatus"] == "manual"
        assert body["app"]["matchedWingetName"] == "Mozilla Firefox"
        assert body["app"]["matchConfidence"] == 1.0
        assert body["migration"]["matchedApps"] == 1
        assert audit.await_args.kwargs["previous_value"] == {"matchStatus": "pending", "wingetId": None}

    async def test_link_unknown_package(self, client, session_factory):
        _, apps = await _seed(session_factory)

        response = await client.patch(
            "/api/sccm/migrations/match",
            json={"appId": str(apps["Firefox"]), "action": "link", "wingetPackageId": "Contoso.Retired"},
        )

        assert response.status_code == 404

    async def test_link_requires_package(self, client, session_factory):
        _, apps = await _seed(session_factory)

        response = await client.patch(
            "/api/sccm/migrations/match", json={"appId": str(apps["Firefox"]), "action": "link"}
        )

        assert response.status_code == 400

    async def test_exclude(self, client, session_factory):
        _, apps = await _seed(session_factory)

        response = await client.patch(
            "/api/sccm/migrations/match", json={"appId": str(apps["Google Chrome"]), "action": "exclude"}
        )

        assert response.json()["app"]["migrationStatus"] == "excluded"

    async def test_other_users_app(self, client, session_factory):
        _, apps = await _seed(session_factory, user_id="user-2")

        response = await client.patch(
            "/api/sccm/migrations/match", json={"appId": str(apps["Firefox"]), "action": "exclude"}
        )

        assert response.status_code == 404


class TestDelete:
    async def test_delete(self, client, session_factory):
        migration_id, _ = await _seed(session_factory)

        response = await client.delete(f"/api/sccm/migrations/{migration_id}")

        assert response.status_code == 204
        assert (await client.get(f"/api/sccm/migrations/{migration_id}")).status_code == 404
