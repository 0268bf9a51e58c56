"""Per-process snapshot controller used from inside test runners.

A controller collects snapshots, stylesheets and asset references while the
tests run. ``finish()`` turns them into one asset package plus a
snap-request per target slice and reports the resulting ids, either to the
aggregation server of a wrapping ``snapreport e2e`` process or directly as an
async report.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

from PIL import Image

from snapreport.api.client import ApiClient, ApiRequestError, FormFile
from snapreport.api.jobs import create_async_report
from snapreport.api.uploads import upload_assets
from snapreport.dispatch.remote_target import RemoteBrowserTarget
from snapreport.models.config import ConfigurationError, SnapConfig, TargetConfig, find_config_file
from snapreport.models.environment import RunEnvironment
from snapreport.models.snapshot import AssetUrl, CSSBlock, DynamicTarget, LocalSnapshot, Snapshot
from snapreport.utils.archive import create_hash

from .asset_package import INLINED_ASSETS_DIR, create_asset_package, unique_urls
from .css import download_css_content, find_css_asset_urls

logger = logging.getLogger(__name__)

TargetSpec = Union[str, DynamicTarget, Mapping[str, Any]]


def dedupe_snapshots(snapshots: list[Snapshot]) -> list[Snapshot]:
    """Keep one snapshot per (component, variant): the last one registered."""
    indexed: dict[tuple[str, str], Snapshot] = {}
    for snapshot in snapshots:
        indexed[snapshot.key] = snapshot
    return list(indexed.values())


def _image_size(buffer: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(buffer)) as image:
        return image.size


def rewrite_external_urls(
    urls: list[AssetUrl], global_css: list[dict], snapshots: list[Snapshot]
) -> None:
    """Point references to externally hosted assets at their packaged copies.

    HTML may contain a URL with its ampersands entity-escaped, so both forms
    are replaced there.
    """
    for url in urls:
        if not url.name or not url.name.startswith("/_external/") or url.name == url.url:
            continue
        for block in global_css:
            block["css"] = block["css"].replace(url.url, url.name) if block["css"] else ""
        escaped = url.url.replace("&", "&amp;") if "&" in url.url else None
        for snapshot in snapshots:
            snapshot.html = snapshot.html.replace(url.url, url.name)
            if escaped:
                snapshot.html = snapshot.html.replace(escaped, url.name)


class SnapshotController:
    """Collects snapshots for one test process."""

    def __init__(self, client: Optional[ApiClient] = None):
        self.client = client
        self.config: Optional[SnapConfig] = None
        self.env: Mapping[str, str] = {}
        self.debug = False
        self._reset()

    def _reset(self) -> None:
        self.snapshots: list[Snapshot] = []
        self.css_blocks: dict[str, CSSBlock] = {}
        self.asset_urls: list[AssetUrl] = []
        self.local_snapshots: list[LocalSnapshot] = []
        self.dynamic_targets: dict[str, TargetConfig] = {}

    def init(
        self,
        env: Optional[Mapping[str, str]] = None,
        config: Optional[SnapConfig] = None,
    ) -> None:
        """Reset state and activate collection if the environment enables it.

        Collection is enabled by a wrapping process (SNAPREPORT_E2E_PORT) or
        explicitly (SNAPREPORT_ENABLED).
        """
        self._reset()
        self.config = None
        self.env = os.environ if env is None else env
        self.debug = bool(self.env.get("SNAPREPORT_DEBUG"))

        if not (self.env.get("SNAPREPORT_E2E_PORT") or self.env.get("SNAPREPORT_ENABLED")):
            logger.info(
                "snapreport is disabled. Run your tests through `snapreport e2e -- <command>` "
                "or set SNAPREPORT_ENABLED=true to enable it."
            )
            return

        if self.debug:
            logger.info("Running SnapshotController.init")

        if config is None:
            config = SnapConfig.load(find_config_file(self.env.get("SNAPREPORT_CONFIG_FILE")))
        # A wrapping process passes its resolved credentials down
        credentials = {
            attr: self.env[var]
            for attr, var in (("api_key", "SNAPREPORT_API_KEY"), ("api_secret", "SNAPREPORT_API_SECRET"))
            if self.env.get(var)
        }
        if credentials:
            config = config.model_copy(update=credentials)
        self.config = config
        if self.client is None:
            self.client = ApiClient.from_config(config)

    def is_active(self) -> bool:
        result = self.config is not None
        if self.debug:
            logger.info("SnapshotController.is_active() = %s", result)
        return result

    def effective_targets(self) -> dict[str, TargetConfig]:
        """Configured targets merged with targets declared during the run."""
        if self.config is None:
            return {}
        return {**self.config.targets, **self.dynamic_targets}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_snapshot(
        self,
        component: str,
        variant: str,
        html: str,
        asset_urls: Iterable[Union[AssetUrl, Mapping[str, Any]]] = (),
        css_blocks: Iterable[Union[CSSBlock, Mapping[str, Any]]] = (),
        targets: Optional[list[TargetSpec]] = None,
        html_element_attrs: Optional[dict[str, str]] = None,
        body_element_attrs: Optional[dict[str, str]] = None,
        timestamp: Optional[float] = None,
    ) -> None:
        if not self.is_active():
            return
        if not component:
            raise ConfigurationError("Missing `component`")
        if not variant:
            raise ConfigurationError("Missing `variant`")

        if self.debug:
            logger.info("Registering snapshot for %s > %s", component, variant)

        target_names = self._resolve_targets(targets)
        blocks = [b if isinstance(b, CSSBlock) else CSSBlock.model_validate(b) for b in css_blocks]
        self.asset_urls.extend(
            u if isinstance(u, AssetUrl) else AssetUrl.model_validate(u) for u in asset_urls
        )
        self.snapshots.append(Snapshot(
            component=component,
            variant=variant,
            html=html,
            targets=target_names,
            stylesheets=[b.key for b in blocks],
            html_element_attrs=html_element_attrs,
            body_element_attrs=body_element_attrs,
            timestamp=timestamp,
        ))
        for block in blocks:
            self.css_blocks.setdefault(block.key, block)

    def _resolve_targets(self, targets: Optional[list[TargetSpec]]) -> list[str]:
        """Turn a snapshot's target list into names, registering dynamic targets.

        Without an explicit list a snapshot goes to the configured targets
        only, never to dynamic ones.
        """
        if targets is None:
            return list(self.config.targets)

        names = []
        for target in targets:
            if isinstance(target, str):
                names.append(target)
                continue
            dynamic = target if isinstance(target, DynamicTarget) else DynamicTarget.model_validate(target)
            if dynamic.name not in self.effective_targets():
                target_config = TargetConfig(browser_type=dynamic.browser_type, viewport=dynamic.viewport)
                RemoteBrowserTarget(target_config.browser_type, target_config)
                self.dynamic_targets[dynamic.name] = target_config
                logger.debug("Registered dynamic target %s (%s)", dynamic.name, dynamic.viewport)
            names.append(dynamic.name)
        return names

    async def register_local_snapshot(
        self,
        component: str,
        variant: str,
        path: Optional[Union[str, Path]] = None,
        buffer: Optional[bytes] = None,
        targets: Optional[list[str]] = None,
        target: Optional[str] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> None:
        """Register a screenshot rendered locally instead of a DOM snapshot."""
        if not self.is_active():
            return
        if path is None and buffer is None:
            raise ValueError("One of path or buffer is required")
        if buffer is None:
            buffer = await asyncio.to_thread(Path(path).read_bytes)
        if not width and not height:
            width, height = await asyncio.to_thread(_image_size, buffer)

        self.local_snapshots.append(LocalSnapshot(
            component=component,
            variant=variant,
            targets=targets,
            target=target,
            url=await self.upload_image(buffer),
            width=width,
            height=height,
        ))

    def register_base64_image_chunk(
        self, base64_chunk: str, src: str, is_first: bool, is_last: bool
    ) -> None:
        """Stream an inlined image to disk, one base64 chunk at a time.

        ``src`` is the packaged path (e.g. ``/.snapreport-tmp/_inlined/x.png``);
        the decoded file is picked up when the asset package is built.
        """
        filename = Path(src[1:])
        if INLINED_ASSETS_DIR not in filename.as_posix():
            raise ValueError(f"Inlined image must live under {INLINED_ASSETS_DIR}: {src}")
        filename_b64 = filename.with_name(filename.name + ".b64")
        if is_first:
            filename.parent.mkdir(parents=True, exist_ok=True)
            filename_b64.write_text(base64_chunk)
        else:
            with open(filename_b64, "a") as f:
                f.write(base64_chunk)

        if is_last:
            filename.write_bytes(base64.b64decode(filename_b64.read_text()))
            filename_b64.unlink()

    def remove_snapshots_made_between(self, start: float, end: float) -> None:
        """Drop snapshots taken inside [start, end], e.g. by a retried test."""
        if self.debug:
            logger.info("Removing snapshots made between %s and %s", start, end)
        self.snapshots = [
            s for s in self.snapshots
            if s.timestamp is None or s.timestamp < start or s.timestamp > end
        ]

    def remove_duplicates_in_timeframe(self, start: float, end: float) -> None:
        """Within [start, end], keep only the first snapshot per (component, variant)."""
        if self.debug:
            logger.info("Removing duplicate snapshots made between %s and %s", start, end)
        seen: set[tuple[str, str]] = set()
        kept = []
        for snapshot in self.snapshots:
            if snapshot.timestamp is not None and start <= snapshot.timestamp <= end:
                if snapshot.key in seen:
                    if self.debug:
                        logger.info(
                            'Found duplicate snapshot to remove: "%s", "%s" at %s',
                            snapshot.component, snapshot.variant, snapshot.timestamp,
                        )
                    continue
                seen.add(snapshot.key)
            kept.append(snapshot)
        self.snapshots = kept

    # ------------------------------------------------------------------
    # Finish
    # ------------------------------------------------------------------

    async def finish(self) -> list[int]:
        """Package, dispatch and report everything collected. Returns the request ids."""
        if not self.is_active():
            return []
        if self.debug:
            logger.info("Running SnapshotController.finish")

        if self.local_snapshots:
            logger.debug("Processing %d local snapshots", len(self.local_snapshots))
            request_ids = [await self.upload_local_snapshots()]
            await self.process_snap_request_ids(request_ids)
            self._reset()
            return request_ids

        if not self.snapshots:
            logger.debug("No snapshots recorded")
            self._reset()
            return []

        # Validate every target before anything is dispatched
        targets = {
            name: RemoteBrowserTarget(target.browser_type, target)
            for name, target in self.effective_targets().items()
        }

        self.snapshots = dedupe_snapshots(self.snapshots)
        blocks = list(self.css_blocks.values())
        await download_css_content(blocks, self.client, debug=self.debug)

        all_urls = list(self.asset_urls)
        for block in blocks:
            for url in find_css_asset_urls(block.content or ""):
                all_urls.append(AssetUrl(url=url, base_url=block.assets_base_url or block.base_url))
        urls = unique_urls(all_urls)

        package = await create_asset_package(
            urls,
            self.client,
            download_all_assets=getattr(self.config.integration, "download_all_assets", False),
        )
        assets_path = await upload_assets(self.client, self.config, package.buffer, package.hash)

        global_css = [{"id": b.key, "conditional": True, "css": b.content or ""} for b in blocks]
        rewrite_external_urls(urls, global_css, self.snapshots)

        all_request_ids: list[int] = []
        for name, remote_target in targets.items():
            for_target = [s for s in self.snapshots if not s.targets or name in s.targets]
            if not for_target:
                logger.debug("No snapshots recorded for target=%s. Skipping.", name)
                continue
            logger.debug("Sending snap-request(s) for target=%s", name)
            request_ids = await remote_target.execute(
                self.client,
                name,
                snap_payloads=[s.to_payload() for s in for_target],
                global_css=global_css,
                assets_package=assets_path,
            )
            logger.debug(
                "Snap-request(s) for target=%s created with ID(s)=%s",
                name, ",".join(map(str, request_ids)),
            )
            all_request_ids.extend(request_ids)

        await self.process_snap_request_ids(all_request_ids)
        self._reset()
        return all_request_ids

    async def process_snap_request_ids(self, request_ids: list[int]) -> None:
        port = self.env.get("SNAPREPORT_E2E_PORT")
        if port:
            # Running under `snapreport e2e --`: the wrapping process aggregates
            res = await self.client.http.post(
                f"http://127.0.0.1:{port}/",
                content="\n".join(str(i) for i in request_ids),
            )
            if res.status_code != 200:
                raise ApiRequestError(
                    "Failed to communicate with the snapreport e2e server",
                    status_code=res.status_code,
                )
            return

        # Not wrapped (e.g. a local interactive run). The report may be
        # incomplete but is still useful.
        environment = RunEnvironment.from_env(self.env)
        result = await create_async_report(self.client, self.config, environment, request_ids)
        logger.info("Async report: %s", result.url)

    # ------------------------------------------------------------------
    # Local snapshots
    # ------------------------------------------------------------------

    async def upload_image(self, data: bytes) -> str:
        image_hash = create_hash(data)
        upload_url_result = await self.client.send(
            f"/api/images/{image_hash}/upload-url", method="GET", retry_count=2
        ) or {}

        if not upload_url_result.get("uploadUrl"):
            logger.debug("Image has already been uploaded: %s", upload_url_result.get("url"))
            return upload_url_result["url"]

        upload_result = await self.client.send(
            upload_url_result["uploadUrl"],
            method="POST",
            form_data={"file": FormFile("image.png", data, "image/png")},
            retry_count=2,
        ) or {}
        logger.debug("Uploaded image: %s", upload_url_result.get("url"))
        return upload_result["url"]

    async def upload_local_snapshots(self) -> int:
        result = await self.client.send(
            "/api/snap-requests/with-results",
            method="POST",
            body={"snaps": [s.model_dump(exclude_none=True) for s in self.local_snapshots]},
            retry_count=3,
        )
        if not result or "requestId" not in result:
            raise ValueError("No requestId in with-results response")
        return int(result["requestId"])
