"""Pytest configuration and shared fixtures."""

import json
from typing import Any, Callable, Union

import httpx
import pytest

from snapreport.api.client import ApiClient
from snapreport.models.config import E2EIntegration, SnapConfig, TargetConfig
from snapreport.models.environment import RunEnvironment

ENDPOINT = "https://snap.test"

# A canned response: (status, json body or None), or a callable building one
CannedResponse = Union[tuple[int, Any], Callable[[httpx.Request], httpx.Response]]


class FakeRemote:
    """Routes requests to canned responses and records every request.

    Routes match on (method, path). A path ending in ``*`` matches by prefix.
    Responses queued for a route are used in order; the last one repeats.
    Unrouted requests get a 404.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[CannedResponse]] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *responses: CannedResponse) -> None:
        self.routes[(method, path)] = list(responses)

    def _find_route(self, method: str, path: str) -> list[CannedResponse] | None:
        if (method, path) in self.routes:
            return self.routes[(method, path)]
        for (route_method, route_path), responses in self.routes.items():
            if route_method == method and route_path.endswith("*") and path.startswith(route_path[:-1]):
                return responses
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responses = self._find_route(request.method, request.url.path)
        if not responses:
            return httpx.Response(404, json={"error": "not found"})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if callable(response):
            return response(request)
        status, body = response
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def requests_to(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and (r.url.path == path or (path.endswith("*") and r.url.path.startswith(path[:-1])))
        ]

    @staticmethod
    def json_body(request: httpx.Request) -> Any:
        return json.loads(request.content)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def target_config() -> TargetConfig:
    """Create a single chrome target."""
    return TargetConfig(browser_type="chrome", viewport="1024x768")


@pytest.fixture
def snap_config(target_config: TargetConfig) -> SnapConfig:
    """Create a test config with one chrome target and an e2e integration."""
    return SnapConfig(
        api_key="test-key",
        api_secret="test-secret",
        endpoint=ENDPOINT,
        project="web",
        targets={"chrome": target_config},
        integration=E2EIntegration(),
    )


@pytest.fixture
def environment() -> RunEnvironment:
    """Create a run environment comparing two different commits."""
    return RunEnvironment(
        before_sha="aaa111",
        after_sha="bbb222",
        link="https://github.com/acme/web/pull/7",
        message="Update button styles",
    )


# ============================================================================
# Remote Service Fixtures
# ============================================================================


@pytest.fixture
def fake_remote() -> FakeRemote:
    """Create an in-memory stand-in for the remote service."""
    return FakeRemote()


@pytest.fixture
def api_client(fake_remote: FakeRemote) -> ApiClient:
    """Create an ApiClient wired to fake_remote, retrying without waiting."""
    return ApiClient(
        ENDPOINT,
        "test-key",
        "test-secret",
        retry_min_wait=0,
        retry_max_wait=0,
        transport=httpx.MockTransport(fake_remote.handler),
    )
