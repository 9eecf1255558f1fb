"""Microsoft Graph: app-only tokens, Store app deployment and caller identity.

Store apps are created as winGetApp resources straight from the Microsoft
Store; there is no packaging step.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import httpx

from intuneget.config import GraphConfig, settings
from intuneget.logging_config import get_logger
from intuneget.services.cart import StoreCartItem

logger = get_logger(__name__)

PUBLISH_POLL_ATTEMPTS = 15
PUBLISH_POLL_INTERVAL_SECONDS = 2.0

INTUNE_APP_URL = "https://intune.microsoft.com/#view/Microsoft_Intune_Apps/SettingsMenu/~/0/appId/{app_id}"

_ASSIGNMENT_TARGETS = {
    "allUsers": "#microsoft.graph.allLicensedUsersAssignmentTarget",
    "allDevices": "#microsoft.graph.allDevicesAssignmentTarget",
    "group": "#microsoft.graph.groupAssignmentTarget",
    "exclusionGroup": "#microsoft.graph.exclusionGroupAssignmentTarget",
}


class GraphError(Exception):
    """A Microsoft Graph call failed."""


@dataclass
class GraphIdentity:
    user_id: str
    email: str | None


@dataclass
class StoreDeployResult:
    intune_app_id: str
    intune_app_url: str


def _beta(config: GraphConfig) -> str:
    return f"{config.base_url.rstrip('/')}/beta"


async def acquire_app_token(tenant_id: str, config: GraphConfig | None = None) -> str:
    """Client-credentials access token for Graph in the given tenant.

    Raises:
        GraphError: If credentials are missing or the token request fails.
    """
    cfg = config or settings.graph
    if not cfg.client_id or not cfg.client_secret:
        raise GraphError("Azure AD credentials not configured")

    async with httpx.AsyncClient(timeout=30.0) as client:
        resp = await client.post(
            f"{cfg.authority.rstrip('/')}/{tenant_id}/oauth2/v2.0/token",
            data={
                "client_id": cfg.client_id,
                "client_secret": cfg.client_secret,
                "scope": f"{cfg.base_url.rstrip('/')}/.default",
                "grant_type": "client_credentials",
            },
        )
    if resp.status_code >= 400:
        raise GraphError(f"Token acquisition failed ({resp.status_code}): {resp.text[:500]}")
    return resp.json()["access_token"]


async def get_me(access_token: str, config: GraphConfig | None = None) -> GraphIdentity | None:
    """Resolve a delegated token to its user. None when Graph rejects the token."""
    cfg = config or settings.graph
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(
            f"{cfg.base_url.rstrip('/')}/v1.0/me",
            headers={"Authorization": f"Bearer {access_token}"},
            params={"$select": "id,mail,userPrincipalName"},
        )
    if resp.status_code in (401, 403):
        return None
    resp.raise_for_status()
    data = resp.json()
    return GraphIdentity(user_id=data["id"], email=data.get("mail") or data.get("userPrincipalName"))


def _store_assignment(assignment: dict[str, Any]) -> dict[str, Any] | None:
    kind = assignment.get("type")
    odata_type = _ASSIGNMENT_TARGETS.get(kind)
    if odata_type is None:
        return None
    target: dict[str, Any] = {"@odata.type": odata_type}
    if kind in ("group", "exclusionGroup"):
        if not assignment.get("groupId"):
            return None
        target["groupId"] = assignment["groupId"]
    if assignment.get("filterId"):
        target["deviceAndAppManagementAssignmentFilterId"] = assignment["filterId"]
        target["deviceAndAppManagementAssignmentFilterType"] = assignment.get("filterType") or "include"

    intent = assignment.get("intent") or "required"
    result: dict[str, Any] = {
        "@odata.type": "#microsoft.graph.mobileAppAssignment",
        "intent": "required" if intent == "updateOnly" else intent,
        "target": target,
    }
    # Exclusions take no settings
    if kind != "exclusionGroup":
        result["settings"] = {
            "@odata.type": "#microsoft.graph.winGetAppAssignmentSettings",
            "notifications": "showAll",
            "installTimeSettings": None,
            "restartSettings": None,
        }
    return result


async def _wait_for_published(client: httpx.AsyncClient, base: str, app_id: str) -> None:
    for _ in range(PUBLISH_POLL_ATTEMPTS):
        resp = await client.get(
            f"{base}/deviceAppManagement/mobileApps/{app_id}",
            params={"$select": "id,publishingState"},
        )
        if resp.status_code == 200 and resp.json().get("publishingState") == "published":
            return
        await asyncio.sleep(PUBLISH_POLL_INTERVAL_SECONDS)
    # Assignment may still succeed; let it report its own error
    logger.warning("Store app not published before assignment", intune_app_id=app_id)


async def deploy_store_app(
    item: StoreCartItem, access_token: str, config: GraphConfig | None = None
) -> StoreDeployResult:
    """Create a winGetApp for a Store item, then apply its assignments and categories.

    Raises:
        GraphError: If any Graph call is rejected.
    """
    cfg = config or settings.graph
    base = _beta(cfg)
    body = {
        "@odata.type": "#microsoft.graph.winGetApp",
        "displayName": item.display_name,
        "description": item.description
        or f"Deployed via IntuneGet from Microsoft Store: {item.package_identifier}",
        "publisher": item.publisher,
        "packageIdentifier": item.package_identifier,
        "installExperience": {"runAsAccount": item.install_experience},
    }

    async with httpx.AsyncClient(
        timeout=30.0, headers={"Authorization": f"Bearer {access_token}"}
    ) as client:
        resp = await client.post(f"{base}/deviceAppManagement/mobileApps", json=body)
        if resp.status_code >= 400:
            raise GraphError(f"Failed to create Store app ({resp.status_code}): {resp.text[:500]}")
        app_id = resp.json()["id"]

        assignments = [a for a in map(_store_assignment, item.assignments) if a is not None]
        if assignments or item.categories:
            await _wait_for_published(client, base, app_id)

        if assignments:
            resp = await client.post(
                f"{base}/deviceAppManagement/mobileApps/{app_id}/assign",
                json={"mobileAppAssignments": assignments},
            )
            if resp.status_code >= 400:
                raise GraphError(f"Failed to assign Store app ({resp.status_code}): {resp.text[:500]}")

        for category in item.categories:
            resp = await client.post(
                f"{base}/deviceAppManagement/mobileApps/{app_id}/categories/$ref",
                json={"@odata.id": f"{base}/deviceAppManagement/mobileAppCategories/{category['id']}"},
            )
            if resp.status_code >= 400:
                raise GraphError(
                    f"Failed to apply category {category['id']} ({resp.status_code}): {resp.text[:500]}"
                )

    logger.info("Store app deployed", winget_id=item.winget_id, intune_app_id=app_id)
    return StoreDeployResult(intune_app_id=app_id, intune_app_url=INTUNE_APP_URL.format(app_id=app_id))
