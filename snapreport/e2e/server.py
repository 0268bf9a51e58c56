"""Local aggregation server that sibling test processes report snap-request ids to."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from aiohttp import web

from snapreport.api.client import ApiClient, ApiRequestError
from snapreport.api.jobs import create_async_report
from snapreport.models.config import SnapConfig
from snapreport.models.environment import RunEnvironment

logger = logging.getLogger(__name__)


class RequestIdSet:
    """Run-scoped set of snap-request ids. Re-adding an id is a no-op."""

    def __init__(self) -> None:
        self._ids: set[int] = set()

    def add(self, ids: Iterable[int]) -> None:
        self._ids.update(ids)

    @property
    def ids(self) -> list[int]:
        return sorted(self._ids)

    def __len__(self) -> int:
        return len(self._ids)


def parse_request_ids(body: str) -> Optional[list[int]]:
    """Parse newline-separated ids. Returns None if any entry isn't an integer."""
    ids = []
    for line in body.split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            ids.append(int(line))
        except ValueError:
            return None
    return ids


class AggregationServer:
    """Accepts ``POST /`` with a plain-text body of newline-separated ids.

    Ids land in the shared RequestIdSet. With a nonce they are also forwarded
    to the async report right away, so they survive a crash of this process.
    """

    def __init__(
        self,
        request_ids: RequestIdSet,
        client: ApiClient,
        config: SnapConfig,
        environment: RunEnvironment,
        host: str = "127.0.0.1",
    ):
        self.request_ids = request_ids
        self.client = client
        self.config = config
        self.environment = environment
        self.host = host
        self.port: Optional[int] = None
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> int:
        """Bind an ephemeral port and return it."""
        app = web.Application()
        app.router.add_post("/", self._handle_request_ids)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, 0)
        await site.start()
        self.port = self._runner.addresses[0][1]
        logger.info("Listening on port %d", self.port)
        return self.port

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def __aenter__(self) -> "AggregationServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def _handle_request_ids(self, request: web.Request) -> web.Response:
        ids = parse_request_ids(await request.text())
        if ids is None:
            return web.Response(status=400, text="invalid payload")

        self.request_ids.add(ids)
        logger.debug("Received %d request id(s), %d total", len(ids), len(self.request_ids))

        if self.environment.nonce and ids:
            try:
                await create_async_report(
                    self.client, self.config, self.environment, ids, retry_count=2
                )
            except ApiRequestError as e:
                # Ids stay recorded locally and are posted again at finalize
                logger.error("Failed to forward request ids to async report: %s", e)
                return web.Response(status=500, text=str(e))

        return web.Response(status=200, text="")
