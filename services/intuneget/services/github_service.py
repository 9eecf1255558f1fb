"""GitHub Actions packaging dispatch.

Packaging jobs run as a workflow_dispatch of the configured workflow. The
service authenticates with a static token when one is configured, otherwise
as a GitHub App installation (app JWT exchanged for an installation token).
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx
import jwt

from intuneget.config import GitHubConfig, settings
from intuneget.logging_config import get_logger

logger = get_logger(__name__)

API_VERSION = "2022-11-28"
RUN_CAPTURE_ATTEMPTS = 3
RUN_CAPTURE_DELAY_SECONDS = 2.0

# Installation token cache: {installation_id: (token, expires_at_epoch)}
_token_cache: dict[int, tuple[str, float]] = {}


class GitHubDispatchError(Exception):
    """The packaging workflow could not be dispatched."""


@dataclass
class DispatchResult:
    run_id: int | None = None
    run_url: str | None = None


def is_configured(config: GitHubConfig | None = None) -> bool:
    """Whether enough GitHub settings exist to dispatch a workflow."""
    cfg = config or settings.github
    if not cfg.owner or not cfg.repo:
        return False
    return bool(cfg.token) or bool(cfg.app_id and cfg.installation_id and cfg.private_key)


def _headers(token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": API_VERSION,
    }


def _generate_app_jwt(app_id: int, private_key: str) -> str:
    """Short-lived RS256 JWT identifying the GitHub App (10 minute maximum)."""
    now = int(time.time())
    payload = {
        "iat": now - 60,  # clock skew
        "exp": now + (10 * 60),
        "iss": app_id,
    }
    return jwt.encode(payload, private_key, algorithm="RS256")


async def get_access_token(config: GitHubConfig | None = None) -> str:
    """Token for the Actions API: the static token, or a cached installation token.

    Installation tokens last an hour and are cached for 50 minutes.
    """
    cfg = config or settings.github
    if cfg.token:
        return cfg.token

    cached = _token_cache.get(cfg.installation_id)
    if cached:
        token, expires_at = cached
        if time.time() < expires_at:
            return token

    app_jwt = _generate_app_jwt(cfg.app_id, cfg.private_key)
    async with httpx.AsyncClient() as client:
        resp = await client.post(
            f"{cfg.api_url.rstrip('/')}/app/installations/{cfg.installation_id}/access_tokens",
            headers=_headers(app_jwt),
        )
        resp.raise_for_status()
        data = resp.json()

    token = data["token"]
    _token_cache[cfg.installation_id] = (token, time.time() + 50 * 60)
    logger.debug("GitHub installation token obtained", installation_id=cfg.installation_id)
    return token


def _stringify_inputs(inputs: dict[str, object]) -> dict[str, str]:
    """workflow_dispatch inputs are strings; None values are omitted."""
    result = {}
    for key, value in inputs.items():
        if value is None:
            continue
        if isinstance(value, bool):
            result[key] = "true" if value else "false"
        else:
            result[key] = str(value)
    return result


async def dispatch_workflow(
    inputs: dict[str, object],
    *,
    skip_run_capture: bool = False,
    config: GitHubConfig | None = None,
) -> DispatchResult:
    """Dispatch the packaging workflow.

    The dispatch API returns no run id. Unless skip_run_capture is set, the
    most recent dispatched run created after the request is looked up; that
    lookup is best-effort and never fails the dispatch.

    Raises:
        GitHubDispatchError: If GitHub is not configured or rejects the dispatch.
    """
    cfg = config or settings.github
    if not is_configured(cfg):
        raise GitHubDispatchError("GitHub Actions packaging service not configured")

    token = await get_access_token(cfg)
    api_url = cfg.api_url.rstrip("/")
    workflow_url = f"{api_url}/repos/{cfg.owner}/{cfg.repo}/actions/workflows/{cfg.workflow}"
    dispatched_at = datetime.now(UTC).replace(microsecond=0)

    async with httpx.AsyncClient(timeout=30.0) as client:
        resp = await client.post(
            f"{workflow_url}/dispatches",
            headers=_headers(token),
            json={"ref": cfg.ref, "inputs": _stringify_inputs(inputs)},
        )
        if resp.status_code >= 400:
            raise GitHubDispatchError(
                f"Workflow dispatch failed ({resp.status_code}): {resp.text[:500]}"
            )

        logger.info(
            "Packaging workflow dispatched",
            job_id=inputs.get("jobId"),
            winget_id=inputs.get("wingetId"),
            workflow=cfg.workflow,
        )

        if skip_run_capture:
            return DispatchResult()
        return await _capture_run(client, workflow_url, token, dispatched_at)


async def _capture_run(
    client: httpx.AsyncClient, workflow_url: str, token: str, dispatched_at: datetime
) -> DispatchResult:
    for attempt in range(RUN_CAPTURE_ATTEMPTS):
        await asyncio.sleep(RUN_CAPTURE_DELAY_SECONDS)
        try:
            resp = await client.get(
                f"{workflow_url}/runs",
                headers=_headers(token),
                params={"event": "workflow_dispatch", "per_page": 5},
            )
            resp.raise_for_status()
            runs = resp.json().get("workflow_runs", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Workflow run lookup failed", attempt=attempt + 1, error=str(e))
            continue

        for run in runs:
            created = datetime.fromisoformat(run["created_at"].replace("Z", "+00:00"))
            if created >= dispatched_at:
                return DispatchResult(run_id=run["id"], run_url=run.get("html_url"))

    logger.info("Workflow run not found after dispatch")
    return DispatchResult()
