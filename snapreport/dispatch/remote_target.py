"""Remote browser target: split work into slices and dispatch snap-requests."""

from __future__ import annotations

import json
import logging
import math
import random
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence, TypeVar

from snapreport.api.client import ApiClient, FormFile
from snapreport.models.config import ConfigurationError, Page, TargetConfig
from snapreport.utils.archive import create_hash

logger = logging.getLogger(__name__)

VIEWPORT_PATTERN = re.compile(r"^([0-9]+)x([0-9]+)$")
MIN_EDGE_WIDTH = 400

T = TypeVar("T")


@dataclass
class Chunk:
    index: int
    total: int


@dataclass
class PageSlice:
    pages: list[Page]
    extends_sha: Optional[str] = None


@dataclass
class DispatchUnit:
    """One snap-request worth of work."""
    snap_payloads: Optional[list[dict]] = None
    chunk: Optional[Chunk] = None
    page_slice: Optional[PageSlice] = None


def split_into_slices(items: Sequence[T], chunks: int) -> list[list[T]]:
    """Split items into at most ``chunks`` slices of ceil(len/chunks) items.

    Empty trailing slices are dropped, so every item lands in exactly one slice.
    """
    if not items:
        return []
    per_chunk = math.ceil(len(items) / chunks)
    slices = [list(items[i * per_chunk:(i + 1) * per_chunk]) for i in range(chunks)]
    return [s for s in slices if s]


def get_page_slices(pages: list[Page], chunks: int) -> list[PageSlice]:
    """Numeric slices for plain pages, plus one slice per shared baseline sha."""
    extends_pages: dict[str, list[Page]] = {}
    raw_pages: list[Page] = []
    for page in pages:
        if page.extends:
            extends_pages.setdefault(page.extends, []).append(page)
        else:
            raw_pages.append(page)

    result = [PageSlice(pages=s) for s in split_into_slices(raw_pages, chunks)]
    for sha, grouped in extends_pages.items():
        result.append(PageSlice(pages=grouped, extends_sha=sha))
    return result


class RemoteBrowserTarget:
    """Dispatches rendering work for one configured browser target."""

    def __init__(self, browser_type: str, target: TargetConfig):
        if not browser_type:
            raise ConfigurationError(
                f'Invalid browser type: "{browser_type}". Make sure the "type" field '
                "in your target configuration is set to a valid browser type."
            )

        match = VIEWPORT_PATTERN.match(target.viewport or "")
        if not match:
            raise ConfigurationError(
                f'Invalid viewport "{target.viewport}". '
                'Here\'s an example of a valid one: "1024x768".'
            )

        width = int(match.group(1))
        if browser_type == "edge" and width < MIN_EDGE_WIDTH:
            raise ConfigurationError(
                f'Invalid viewport width for the "edge" target (you provided {width}). '
                f"Smallest width it can handle is {MIN_EDGE_WIDTH}."
            )

        self.browser_type = browser_type
        self.viewport = target.viewport
        self.chunks = target.chunks
        self.max_height = target.max_height
        self.other_options = target.render_options()

    async def execute(
        self,
        client: ApiClient,
        target_name: str,
        *,
        static_package: Optional[str] = None,
        snap_payloads: Optional[list[dict]] = None,
        pages: Optional[list[Page]] = None,
        global_css: Any = None,
        assets_package: Optional[str] = None,
        entry_point: Optional[str] = None,
    ) -> list[int]:
        """Dispatch one snap-request per chunk/slice and return their ids.

        Exactly one of static_package, snap_payloads or pages must be given.
        """
        modes = [m for m in (static_package, snap_payloads, pages) if m is not None]
        if len(modes) != 1:
            raise ValueError(
                "Exactly one of static_package, snap_payloads or pages is required"
            )

        if static_package is not None:
            units = [
                DispatchUnit(chunk=Chunk(index=i, total=self.chunks))
                for i in range(self.chunks)
            ]
        elif pages is not None:
            units = [DispatchUnit(page_slice=s) for s in get_page_slices(pages, self.chunks)]
        else:
            units = [DispatchUnit(snap_payloads=s) for s in split_into_slices(snap_payloads, self.chunks)]

        common = {
            "globalCSS": global_css,
            "staticPackage": static_package,
            "assetsPackage": assets_package,
            "entryPoint": entry_point,
        }
        return await self._dispatch_sequentially(client, target_name, units, common)

    async def _dispatch_sequentially(
        self,
        client: ApiClient,
        target_name: str,
        units: list[DispatchUnit],
        common: dict[str, Any],
    ) -> list[int]:
        # One snap-request in flight at a time to avoid bursting the ingestion endpoint
        request_ids = []
        for i, unit in enumerate(units):
            request_id = await self._dispatch(client, target_name, unit, common)
            logger.debug(
                "Dispatched %s slice %d/%d as snap-request %d",
                target_name, i + 1, len(units), request_id,
            )
            request_ids.append(request_id)
        return request_ids

    def build_payload(self, unit: DispatchUnit, common: dict[str, Any]) -> str:
        payload = {
            "viewport": self.viewport,
            "maxHeight": self.max_height,
            **self.other_options,
            **common,
            "snapPayloads": unit.snap_payloads,
            "chunk": {"index": unit.chunk.index, "total": unit.chunk.total} if unit.chunk else None,
            "pages": (
                [p.model_dump(by_alias=True, exclude_none=True) for p in unit.page_slice.pages]
                if unit.page_slice else None
            ),
            "extendsSha": unit.page_slice.extends_sha if unit.page_slice else None,
        }
        payload = {k: v for k, v in payload.items() if v is not None}
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))

    async def _dispatch(
        self,
        client: ApiClient,
        target_name: str,
        unit: DispatchUnit,
        common: dict[str, Any],
    ) -> int:
        payload_string = self.build_payload(unit, common)
        # Page and chunk payloads aren't guaranteed to be content-unique, so the
        # hash is salted to keep the remote side from deduplicating them.
        salt = str(random.random()) if (unit.page_slice or unit.chunk) else ""
        payload_hash = create_hash(payload_string + salt)

        extends_sha = unit.page_slice.extends_sha if unit.page_slice else None
        form_data = {
            "type": "extends-report" if extends_sha else f"browser-{self.browser_type}",
            "targetName": target_name,
            "payloadHash": payload_hash,
            "payload": FormFile("payload.json", payload_string.encode("utf-8"), "application/json"),
            "extendsSha": extends_sha,
        }

        result = await client.send(
            f"/api/snap-requests?payloadHash={payload_hash}",
            method="POST",
            form_data=form_data,
            retry_count=5,
        )
        if not result or "requestId" not in result:
            raise ValueError("No requestId in snap-request response")
        request_id = result["requestId"]
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            raise TypeError(f"requestId is not a number: {request_id!r}")
        return request_id
