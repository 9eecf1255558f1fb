"""Tests for GitHub Actions workflow dispatch."""

import json
from unittest.mock import patch

import httpx
import pytest

from intuneget.config import GitHubConfig
from intuneget.services import github_service
from intuneget.services.github_service import (
    GitHubDispatchError,
    _stringify_inputs,
    dispatch_workflow,
    get_access_token,
    is_configured,
)

CONFIG = GitHubConfig(owner="contoso", repo="packager", token="ghp_test")

real_client = httpx.AsyncClient


def _client_factory(handler):
    transport = httpx.MockTransport(handler)
    return lambda **kwargs: real_client(transport=transport, **kwargs)


@pytest.fixture(autouse=True)
def no_capture_delay():
    with patch.object(github_service, "RUN_CAPTURE_DELAY_SECONDS", 0):
        yield


class TestConfiguration:
    def test_token(self):
        assert is_configured(CONFIG)

    def test_github_app(self):
        assert is_configured(
            GitHubConfig(owner="contoso", repo="packager", app_id=1, installation_id=2, private_key="pem")
        )

    def test_incomplete(self):
        assert not is_configured(GitHubConfig(token="ghp_test"))
        assert not is_configured(GitHubConfig(owner="contoso", repo="packager", app_id=1))

    def test_stringify_inputs(self):
        assert _stringify_inputs({"jobId": "j-1", "forceCreate": True, "skip": False, "categories": None, "n": 3}) == {
            "jobId": "j-1",
            "forceCreate": "true",
            "skip": "false",
            "n": "3",
        }


class TestDispatch:
    async def test_not_configured(self):
        with pytest.raises(GitHubDispatchError, match="not configured"):
            await dispatch_workflow({"jobId": "j-1"}, config=GitHubConfig())

    async def test_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, text="Unexpected inputs provided")

        with patch("intuneget.services.github_service.httpx.AsyncClient", side_effect=_client_factory(handler)):
            with pytest.raises(GitHubDispatchError, match=r"Workflow dispatch failed \(422\): Unexpected inputs"):
                await dispatch_workflow({"jobId": "j-1"}, config=CONFIG)

    async def test_dispatch_and_capture_run(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.method == "POST":
                return httpx.Response(204)
            return httpx.Response(
                200,
                json={
                    "workflow_runs": [
                        {
                            "id": 42,
                            "created_at": "2099-01-01T00:00:00Z",
                            "html_url": "https://github.com/contoso/packager/actions/runs/42",
                        }
                    ]
                },
            )

        with patch("intuneget.services.github_service.httpx.AsyncClient", side_effect=_client_factory(handler)):
            result = await dispatch_workflow({"jobId": "j-1", "forceCreate": True, "categories": None}, config=CONFIG)

        assert result.run_id == 42
        assert result.run_url.endswith("/runs/42")
        dispatch = requests[0]
        assert dispatch.url.path == "/repos/contoso/packager/actions/workflows/package.yml/dispatches"
        assert dispatch.headers["Authorization"] == "Bearer ghp_test"
        assert json.loads(dispatch.content) == {"ref": "main", "inputs": {"jobId": "j-1", "forceCreate": "true"}}

    async def test_skip_run_capture(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        with patch("intuneget.services.github_service.httpx.AsyncClient", side_effect=_client_factory(handler)):
            result = await dispatch_workflow({"jobId": "j-1"}, skip_run_capture=True, config=CONFIG)

        assert result == github_service.DispatchResult()
        assert [r.method for r in requests] == ["POST"]

    async def test_run_not_found_still_succeeds(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(204)
            if request.url.path.endswith("/runs"):
                return httpx.Response(200, json={"workflow_runs": [{"id": 1, "created_at": "2020-01-01T00:00:00Z"}]})
            return httpx.Response(404)

        with patch("intuneget.services.github_service.httpx.AsyncClient", side_effect=_client_factory(handler)):
            result = await dispatch_workflow({"jobId": "j-1"}, config=CONFIG)

        assert result.run_id is None


class TestAccessToken:
    async def test_static_token(self):
        assert await get_access_token(CONFIG) == "ghp_test"

    @patch("intuneget.services.github_service._generate_app_jwt", return_value="app-jwt")
    async def test_installation_token_cached(self, mock_jwt):
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(201, json={"token": "ghs_installation"})

        config = GitHubConfig(owner="contoso", repo="packager", app_id=1, installation_id=9001, private_key="pem")
        github_service._token_cache.pop(9001, None)

        with patch("intuneget.services.github_service.httpx.AsyncClient", side_effect=_client_factory(handler)):
            first = await get_access_token(config)
            second = await get_access_token(config)

        assert first == second == "ghs_installation"
        assert len(calls) == 1
        assert calls[0].url.path == "/app/installations/9001/access_tokens"
        assert calls[0].headers["Authorization"] == "Bearer app-jwt"
        github_service._token_cache.pop(9001, None)
