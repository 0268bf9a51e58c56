"""Prepare snap-requests for integrations that don't run in a test process."""

from __future__ import annotations

import logging
import time

from snapreport.api.client import ApiClient
from snapreport.api.uploads import upload_assets
from snapreport.dispatch.remote_target import RemoteBrowserTarget
from snapreport.models.config import (
    ConfigurationError,
    CustomIntegration,
    PagesIntegration,
    SnapConfig,
)
from snapreport.utils.archive import deterministic_archive

logger = logging.getLogger(__name__)


async def _upload_static_package(client: ApiClient, config: SnapConfig) -> str:
    package_dir = config.integration.static_package_dir()
    if not package_dir.is_dir():
        raise ConfigurationError(f"Static package directory not found: {package_dir}")
    archive = await deterministic_archive([package_dir])
    logger.info("Packaged %s (%d bytes, hash %s)", package_dir, len(archive.buffer), archive.hash)
    return await upload_assets(client, config, archive.buffer, archive.hash)


async def prepare_snap_requests(client: ApiClient, config: SnapConfig) -> list[int]:
    """Dispatch work for every configured target and return all snap-request ids.

    Static and custom integrations are packaged and uploaded once, then shared
    by all targets. Page integrations send their page list directly.
    """
    if config.produces_snapshots:
        raise ConfigurationError(
            "The e2e integration produces snapshots from a test run. "
            "Use `snapreport e2e -- <command>` instead."
        )
    if not config.targets:
        raise ConfigurationError("No targets configured")

    dispatch_kwargs: dict = {}
    if config.produces_static_package:
        dispatch_kwargs["static_package"] = await _upload_static_package(client, config)
        if isinstance(config.integration, CustomIntegration):
            dispatch_kwargs["entry_point"] = config.integration.entry_point
    elif isinstance(config.integration, PagesIntegration):
        dispatch_kwargs["pages"] = config.integration.pages

    # Validate every target before dispatching anything
    targets = {
        name: RemoteBrowserTarget(target.browser_type, target)
        for name, target in config.targets.items()
    }

    count = len(targets)
    logger.info("Generating screenshots in %d target%s...", count, "s" if count > 1 else "")
    results: list[int] = []
    for name, remote_target in targets.items():
        start = time.time()
        request_ids = await remote_target.execute(client, name, **dispatch_kwargs)
        logger.info("  - %s: %s (%.1fs)", name, ", ".join(map(str, request_ids)), time.time() - start)
        results.extend(request_ids)
    return results
