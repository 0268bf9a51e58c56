"""Asset upload: reuse an existing package by hash or upload a new one."""

from __future__ import annotations

import logging
import os

from snapreport.api.client import ApiClient, ApiRequestError, FormFile
from snapreport.models.config import SnapConfig

logger = logging.getLogger(__name__)


def _require_path(result: dict | None, what: str) -> str:
    if not result or "path" not in result:
        raise ValueError(f"{what} response is missing path")
    return str(result["path"])


async def upload_assets_through_api(client: ApiClient, buffer: bytes, package_hash: str) -> str:
    """Probe for an existing package; upload a multipart payload if it's missing.

    A 404 from the probe means "not uploaded yet". Any other probe error is
    logged and treated the same way, so a flaky probe costs a redundant upload
    rather than a failed run.
    """
    try:
        existing = await client.send(
            f"/api/snap-requests/assets-data/{package_hash}", method="GET", retry_count=2
        )
        path = _require_path(existing, "Asset data")
        logger.info(
            "Reusing existing assets at %s (previously uploaded on %s)",
            path, existing.get("uploadedAt"),
        )
        return path
    except ApiRequestError as e:
        if e.status_code != 404:
            logger.warning(
                "Assuming assets don't exist since we got error response: %s - %s",
                e.status_code, e,
            )
    except ValueError as e:
        logger.warning("Assuming assets don't exist: %s", e)

    logger.info("Uploading assets package %s (%d bytes)", package_hash, len(buffer))
    uploaded = await client.send(
        f"/api/snap-requests/assets/{package_hash}",
        method="POST",
        form_data={"payload": FormFile("payload.zip", buffer, "application/zip")},
        retry_count=2,
    )
    return _require_path(uploaded, "Asset upload")


async def upload_assets_with_signed_url(client: ApiClient, buffer: bytes, package_hash: str) -> str:
    """Upload through a pre-signed target, then register completion."""
    signed = await client.send(
        f"/api/snap-requests/assets/{package_hash}/signed-url", method="GET", retry_count=3
    )
    if not signed or "path" not in signed:
        raise ValueError("Signed URL response is missing path")

    # Already uploaded
    if signed["path"]:
        logger.info("Reusing existing assets at %s", signed["path"])
        return str(signed["path"])

    signed_url = signed.get("signedUrl")
    if not signed_url:
        raise ValueError("Signed URL response is missing signedUrl")

    await client.put(str(signed_url), buffer, "application/zip", retry_count=3)

    finalized = await client.send(
        f"/api/snap-requests/assets/{package_hash}/signed-url/finalize",
        method="POST",
        retry_count=3,
    )
    return _require_path(finalized, "Finalize")


async def upload_assets(
    client: ApiClient, config: SnapConfig, buffer: bytes, package_hash: str
) -> str:
    """Upload an asset package and return its remote path, whichever flow is used."""
    if config.signed_url_upload or os.environ.get("SNAPREPORT_SIGNED_URL"):
        return await upload_assets_with_signed_url(client, buffer, package_hash)
    return await upload_assets_through_api(client, buffer, package_hash)
