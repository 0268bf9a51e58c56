"""Build the combined asset package referenced by snapshot HTML and CSS."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
from urllib.parse import unquote

from snapreport.api.client import ApiClient, ApiRequestError
from snapreport.models.snapshot import AssetUrl
from snapreport.utils.archive import ArchiveResult, ContentEntry, create_hash, deterministic_archive

from .css import make_absolute

logger = logging.getLogger(__name__)

INLINED_ASSETS_DIR = ".snapreport-tmp/_inlined"
MAX_CONCURRENT_ASSET_FETCHES = 5


def strip_query_params(url: str) -> str:
    return url.split("?", 1)[0]


def normalize(url: str, base_url: str) -> str:
    if base_url and url.startswith(base_url):
        return url[len(base_url):]
    if url.startswith("/"):
        return url[1:]
    if url.startswith("../"):
        return url[3:]
    return url


def file_suffix_from_mime_type(mime_type: str) -> str:
    ext = mimetypes.guess_extension(mime_type.split(";")[0].strip())
    return ext or ""


def unique_urls(urls: list[AssetUrl]) -> list[AssetUrl]:
    """Dedupe by (url, base_url). The same relative url under a different base is distinct."""
    seen: set[tuple[str, str]] = set()
    result = []
    for url in urls:
        if url.key not in seen:
            result.append(url)
            seen.add(url.key)
    return result


async def create_asset_package(
    urls: list[AssetUrl],
    client: ApiClient,
    download_all_assets: bool = False,
) -> ArchiveResult:
    """Fetch every packageable asset and archive them deterministically.

    Sets ``name`` on each packaged AssetUrl to its path inside the package.
    Fetches run concurrently; archive order is fixed by the packager.
    """
    logger.debug("Creating asset package from %d urls", len(urls))
    semaphore = asyncio.Semaphore(MAX_CONCURRENT_ASSET_FETCHES)
    seen_names: set[str] = set()
    archive_files: list[str] = []
    archive_content: list[ContentEntry] = []

    async def _collect(item: AssetUrl) -> None:
        url = item.url
        base_url = item.base_url or ""
        is_external = bool(re.match(r"^https?:", url))
        is_localhost = bool(re.search(r"//(localhost|127\.0\.0\.1)(:|/)", url))

        if not download_all_assets and is_external and not is_localhost:
            return

        is_dynamic = "?" in url
        if is_external or is_dynamic:
            name = f"_external/{create_hash(url)}"
        else:
            name = normalize(strip_query_params(url), base_url)

        if name.startswith("#") or name == "" or name in seen_names:
            return
        seen_names.add(name)

        if INLINED_ASSETS_DIR in name:
            logger.debug("Adding inlined asset %s", name)
            archive_files.append(name)
            return

        fetch_url = make_absolute(url, base_url)
        logger.debug("Fetching asset from %s, storing as %s", fetch_url, name)
        async with semaphore:
            try:
                res = await client.fetch(fetch_url, retry_count=5)
            except ApiRequestError as e:
                logger.warning("Failed to fetch url %s: %s", fetch_url, e)
                return

        if is_dynamic or is_external:
            # Keep a file suffix so that e.g. svg images are served correctly
            name = f"{name}{file_suffix_from_mime_type(res.headers.get('content-type', 'image/png'))}"

        name = unquote(name)
        item.name = f"/{name}"
        archive_content.append(ContentEntry(name=name, content=res.content))

    await asyncio.gather(*(_collect(item) for item in urls))
    return await deterministic_archive(archive_files, archive_content)
