"""CSS helpers: url() discovery, URL absolutization and bounded stylesheet fetching."""

from __future__ import annotations

import asyncio
import logging
import re
from urllib.parse import urljoin

from snapreport.api.client import ApiClient, ApiRequestError
from snapreport.models.snapshot import CSSBlock

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"""(url\(['"]?)(.*?)(['"]?\))""")
MAX_CONCURRENT_CSS_FETCHES = 5


def find_css_asset_urls(css: str) -> list[str]:
    """Return every url(...) reference in css, skipping data: URIs."""
    return [
        m.group(2) for m in URL_PATTERN.finditer(css)
        if m.group(2) and not m.group(2).startswith("data:")
    ]


def make_absolute(url: str, base_url: str) -> str:
    if url.startswith("//"):
        return f"{base_url.split(':')[0]}:{url}"
    if re.match(r"^https?:", url):
        return url
    return urljoin(base_url, url)


def make_external_urls_absolute(css: str, abs_url: str) -> str:
    """Rewrite relative url() references so they resolve against abs_url."""
    def _replace(m: re.Match) -> str:
        pre, url, post = m.group(1), m.group(2), m.group(3)
        if url.startswith("data:"):
            return m.group(0)
        return f"{pre}{urljoin(abs_url, url)}{post}"

    return URL_PATTERN.sub(_replace, css)


async def download_css_content(
    blocks: list[CSSBlock], client: ApiClient, debug: bool = False
) -> None:
    """Resolve linked stylesheets in place, at most 5 fetches in flight.

    A failed fetch is logged and the block left without content.
    """
    semaphore = asyncio.Semaphore(MAX_CONCURRENT_CSS_FETCHES)

    async def _download(block: CSSBlock) -> None:
        if not block.href:
            return
        base_url = block.base_url or ""
        abs_url = make_absolute(block.href, base_url)
        async with semaphore:
            if debug:
                logger.info("Downloading CSS file from %s", abs_url)
            try:
                res = await client.fetch(abs_url, retry_count=5)
            except ApiRequestError as e:
                logger.warning(
                    "Failed to fetch CSS file from %s (using %s with base URL %s). "
                    "This might mean styles are missing in your screenshots. %s",
                    abs_url, block.href, block.base_url, e,
                )
                return

        text = res.text
        if debug:
            logger.info("Done downloading CSS file from %s. Got %d chars back.", abs_url, len(text))

        if text.startswith("\ufeff"):
            text = text[1:]

        if not abs_url.startswith(base_url):
            text = make_external_urls_absolute(text, abs_url)

        block.content = text
        block.assets_base_url = re.sub(r"/[^/]*$", "/", abs_url)
        block.href = None

    await asyncio.gather(*(_download(block) for block in blocks))
