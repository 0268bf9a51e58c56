"""Tests for the remote browser target."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from snapreport.dispatch.remote_target import (
    Chunk,
    DispatchUnit,
    RemoteBrowserTarget,
    get_page_slices,
    split_into_slices,
)
from snapreport.models.config import ConfigurationError, Page, TargetConfig


def _snaps(count: int) -> list[dict]:
    return [{"component": "Button", "variant": f"v{i}", "html": "<button/>"} for i in range(count)]


def _page(title: str, extends: str | None = None) -> Page:
    return Page(url=f"https://site.test/{title}", title=title, extends=extends)


class TestSlicing:
    """Tests for splitting payloads into slices."""

    def test_ceiling_division(self):
        """Test 7 items in 3 chunks split 3/3/1 with every item in one slice."""
        items = list(range(7))
        slices = split_into_slices(items, 3)

        assert [len(s) for s in slices] == [3, 3, 1]
        assert [i for s in slices for i in s] == items

    def test_empty_slices_are_dropped(self):
        """Test more chunks than items gives one slice per item."""
        assert split_into_slices(["a", "b"], 3) == [["a"], ["b"]]

    def test_no_items(self):
        """Test an empty list has no slices."""
        assert split_into_slices([], 4) == []

    def test_single_chunk(self):
        """Test one chunk keeps everything together."""
        assert split_into_slices([1, 2, 3], 1) == [[1, 2, 3]]

    def test_extends_pages_get_their_own_slices(self):
        """Test pages extending a baseline are grouped per sha, not chunked."""
        pages = [
            _page("home"),
            _page("about", extends="sha1"),
            _page("pricing"),
            _page("blog", extends="sha2"),
            _page("team", extends="sha1"),
        ]
        slices = get_page_slices(pages, 2)

        assert [[p.title for p in s.pages] for s in slices] == [
            ["home"], ["pricing"], ["about", "team"], ["blog"],
        ]
        assert [s.extends_sha for s in slices] == [None, None, "sha1", "sha2"]


class TestValidation:
    """Tests for target validation at construction time."""

    def test_valid_target(self):
        """Test a valid target keeps its settings."""
        target = RemoteBrowserTarget("chrome", TargetConfig(browser_type="chrome", viewport="800x600", chunks=2))
        assert target.viewport == "800x600"
        assert target.chunks == 2

    def test_invalid_viewport(self):
        """Test a malformed viewport is rejected."""
        with pytest.raises(ConfigurationError, match="Invalid viewport"):
            RemoteBrowserTarget("chrome", TargetConfig(browser_type="chrome", viewport="large"))

    def test_edge_minimum_width(self):
        """Test edge rejects viewports narrower than 400px."""
        with pytest.raises(ConfigurationError, match="edge"):
            RemoteBrowserTarget("edge", TargetConfig(browser_type="edge", viewport="320x640"))

    def test_narrow_viewport_allowed_elsewhere(self):
        """Test other browsers accept narrow viewports."""
        RemoteBrowserTarget("chrome", TargetConfig(browser_type="chrome", viewport="320x640"))

    def test_render_options_pass_through(self):
        """Test extra options end up in the payload in camelCase."""
        target = RemoteBrowserTarget(
            "chrome",
            TargetConfig(browser_type="chrome", max_height=5000, prefers_color_scheme="dark"),
        )
        assert target.other_options == {"prefersColorScheme": "dark"}
        assert target.max_height == 5000


class TestExecute:
    """Tests for dispatching snap-requests."""

    @pytest.fixture
    def chrome(self) -> RemoteBrowserTarget:
        return RemoteBrowserTarget("chrome", TargetConfig(browser_type="chrome", chunks=3))

    @pytest.mark.asyncio
    async def test_requires_exactly_one_mode(self, chrome, api_client):
        """Test zero or several dispatch modes are rejected."""
        with pytest.raises(ValueError):
            await chrome.execute(api_client, "chrome")
        with pytest.raises(ValueError):
            await chrome.execute(api_client, "chrome", static_package="p", pages=[])

    @pytest.mark.asyncio
    async def test_snapshot_slices(self, chrome, api_client, fake_remote):
        """Test 7 snapshots in 3 chunks become 3 snap-requests."""
        fake_remote.on(
            "POST", "/api/snap-requests",
            (200, {"requestId": 11}), (200, {"requestId": 12}), (200, {"requestId": 13}),
        )
        ids = await chrome.execute(api_client, "chrome", snap_payloads=_snaps(7), assets_package="assets/x")

        assert ids == [11, 12, 13]
        assert len(fake_remote.requests) == 3
        for request in fake_remote.requests:
            assert b"browser-chrome" in request.content
            assert request.url.params["payloadHash"]

    @pytest.mark.asyncio
    async def test_snapshot_payload_hash_is_content_addressed(self, api_client, fake_remote):
        """Test identical snapshot payloads hash identically."""
        target = RemoteBrowserTarget("chrome", TargetConfig(browser_type="chrome"))
        fake_remote.on("POST", "/api/snap-requests", (200, {"requestId": 1}))
        await target.execute(api_client, "chrome", snap_payloads=_snaps(2))
        await target.execute(api_client, "chrome", snap_payloads=_snaps(2))

        hashes = {r.url.params["payloadHash"] for r in fake_remote.requests}
        assert len(hashes) == 1

    @pytest.mark.asyncio
    async def test_static_package_chunks_are_salted(self, chrome, api_client, fake_remote):
        """Test chunked static package requests never share a hash."""
        fake_remote.on("POST", "/api/snap-requests", (200, {"requestId": 1}))
        ids = await chrome.execute(api_client, "chrome", static_package="static/abc.zip")

        assert ids == [1, 1, 1]
        hashes = {r.url.params["payloadHash"] for r in fake_remote.requests}
        assert len(hashes) == 3

    @pytest.mark.asyncio
    async def test_extends_slice_type(self, api_client, fake_remote):
        """Test a baseline slice is sent as an extends-report with its sha."""
        target = RemoteBrowserTarget("firefox", TargetConfig(browser_type="firefox"))
        fake_remote.on("POST", "/api/snap-requests", (200, {"requestId": 4}), (200, {"requestId": 5}))
        ids = await target.execute(
            api_client, "firefox", pages=[_page("home"), _page("about", extends="base-sha")]
        )

        assert ids == [4, 5]
        plain, extends = fake_remote.requests
        assert b"browser-firefox" in plain.content
        assert b"extends-report" in extends.content
        assert b"base-sha" in extends.content

    @pytest.mark.asyncio
    async def test_missing_request_id_raises(self, chrome, api_client, fake_remote):
        """Test a response without requestId is an error."""
        fake_remote.on("POST", "/api/snap-requests", (200, {"other": 1}))
        with pytest.raises(ValueError, match="requestId"):
            await chrome.execute(api_client, "chrome", snap_payloads=_snaps(1))

    @pytest.mark.asyncio
    async def test_dispatch_is_sequential(self, chrome):
        """Test only one snap-request is in flight at a time."""
        in_flight = 0
        max_in_flight = 0
        next_id = 100

        async def _send(*args, **kwargs):
            nonlocal in_flight, max_in_flight, next_id
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            next_id += 1
            return {"requestId": next_id}

        client = MagicMock()
        client.send = _send
        ids = await chrome.execute(client, "chrome", snap_payloads=_snaps(9))

        assert ids == [101, 102, 103]
        assert max_in_flight == 1


class TestBuildPayload:
    """Tests for payload serialization."""

    def test_payload_is_canonical_json(self):
        """Test the payload omits unset fields and sorts keys."""
        target = RemoteBrowserTarget("chrome", TargetConfig(browser_type="chrome"))
        payload = target.build_payload(
            DispatchUnit(chunk=Chunk(index=0, total=2)),
            {"staticPackage": "static/abc.zip", "globalCSS": None},
        )
        data = json.loads(payload)

        assert data == {
            "chunk": {"index": 0, "total": 2},
            "staticPackage": "static/abc.zip",
            "viewport": "1024x768",
        }
        assert list(data) == sorted(data)
