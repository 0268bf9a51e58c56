"""Job/report orchestrator: coordinates start, dispatch, finalize and cancel."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import time
from pathlib import Path
from typing import Awaitable, Callable, Coroutine, Literal, Optional

from pydantic import ValidationError

from snapreport.api.client import ApiClient
from snapreport.api.jobs import (
    ComparisonResult,
    cancel_job,
    create_async_comparison,
    create_async_report,
    finalize_async_report,
    start_job,
)
from snapreport.dispatch.prepare import prepare_snap_requests
from snapreport.e2e.server import AggregationServer, RequestIdSet
from snapreport.models.config import ConfigurationError, E2EIntegration, SnapConfig
from snapreport.models.environment import RunEnvironment, SkippedExample
from snapreport.models.job import Job, JobStateError

logger = logging.getLogger(__name__)

# (link, comparison, github_api_url, github_token)
CommentPoster = Callable[[str, ComparisonResult, str, str], Awaitable[None]]


def parse_skipped_examples(raw: Optional[str]) -> list[SkippedExample]:
    """Parse the --skipped-examples JSON array. Invalid input is fatal."""
    if not raw:
        return []
    try:
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ConfigurationError("Skipped examples must be a JSON array")
        return [SkippedExample.model_validate(item) for item in data]
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error("Error when parsing --skipped-examples: %s", raw)
        raise ConfigurationError(f"Invalid skipped examples: {e}") from e


class Orchestrator:
    """Owns one job and the run-scoped request id set for one invocation."""

    def __init__(
        self,
        config: SnapConfig,
        environment: RunEnvironment,
        client: Optional[ApiClient] = None,
        comment_poster: Optional[CommentPoster] = None,
        config_path: Optional[Path] = None,
    ):
        self.config = config
        self.environment = environment
        self.client = client or ApiClient.from_config(config)
        self.comment_poster = comment_poster
        self.config_path = config_path
        self.request_ids = RequestIdSet()
        self.job: Optional[Job] = None

    # ------------------------------------------------------------------
    # Synchronous entry points (CLI)
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Dispatch a static/custom/pages integration and report it."""
        return asyncio.run(self._closing(self.run_default()))

    def run_e2e(self, command: list[str]) -> int:
        """Run a test command under the aggregation server. Returns its exit code."""
        return asyncio.run(self._closing(self.run_wrapped(command)))

    def finalize(self, skipped_examples_json: Optional[str] = None) -> None:
        """Finalize a nonce-scoped report contributed to by several runs."""
        asyncio.run(self._closing(self.finalize_all(skipped_examples_json)))

    async def _closing(self, coro: Coroutine):
        try:
            return await coro
        finally:
            await self.client.aclose()

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def start_job(self) -> Job:
        result = await start_job(self.client, self.config, self.environment)
        self.job = Job(
            before_sha=self.environment.before_sha,
            after_sha=self.environment.after_sha,
            id=result.id,
            url=result.url,
        )
        logger.info("Started job %s", result.url)
        return self.job

    def _require_open_job(self, action: str) -> Job:
        if self.job is None:
            raise JobStateError(f"Cannot {action} a job that was never started")
        self.job.ensure_open(action)
        return self.job

    async def cancel_job(self, status: Literal["failure", "success"], message: str) -> None:
        job = self._require_open_job("cancel")
        await cancel_job(self.client, self.config, self.environment, status, message)
        job.mark_cancelled()
        logger.info("Cancelled job %s..%s (%s)", job.before_sha, job.after_sha, status)

    async def finalize_report(self) -> None:
        """Post all aggregated ids as one report and, without a nonce, compare."""
        job = self._require_open_job("finalize")
        if not len(self.request_ids):
            logger.info("No snapshots were recorded. Closing the job.")
            await self.cancel_job("success", "No snapshots were recorded")
            return

        report = await create_async_report(
            self.client, self.config, self.environment, self.request_ids.ids, retry_count=2
        )
        if not self.environment.nonce:
            # With a nonce, comparison waits for an explicit `snapreport finalize`
            await self._compare_and_comment()
        job.mark_finalized()
        logger.info("Report: %s", job.url or report.url)

    async def finalize_all(self, skipped_examples_json: Optional[str] = None) -> None:
        skipped = parse_skipped_examples(skipped_examples_json)
        await finalize_async_report(self.client, self.config, self.environment, skipped)
        logger.info("Finalized report for nonce %s", self.environment.nonce)
        await self._compare_and_comment()

    async def _compare_and_comment(self) -> Optional[ComparisonResult]:
        env = self.environment
        if env.before_sha == env.after_sha:
            logger.info("Nothing to compare: before and after are both %s", env.after_sha)
            return None

        comparison = await create_async_comparison(self.client, self.config, env)
        logger.info("Comparison: %s", comparison.compare_url)

        if env.link and env.github_token and self.config.github_api_url and self.comment_poster:
            await self.comment_poster(
                env.link, comparison, self.config.github_api_url, env.github_token
            )
        return comparison

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def run_default(self) -> int:
        start = time.time()
        logger.info(
            "=== Starting run for %s..%s ===",
            self.environment.before_sha, self.environment.after_sha,
        )
        await self.start_job()
        try:
            request_ids = await prepare_snap_requests(self.client, self.config)
            self.request_ids.add(request_ids)
            report = await create_async_report(
                self.client, self.config, self.environment, request_ids
            )
            logger.info("Async report: %s", report.url)
            if not self.environment.nonce:
                await self._compare_and_comment()
            self.job.mark_finalized()
        except Exception as e:
            logger.error("Run failed: %s", e)
            await self.cancel_job("failure", str(e))
            return 1

        logger.info("=== Run complete in %.1fs ===", time.time() - start)
        return 0

    async def run_wrapped(self, command: list[str]) -> int:
        integration = self.config.integration
        if not isinstance(integration, E2EIntegration):
            raise ConfigurationError(
                f"Integration type {integration.type} can't wrap a test command"
            )
        if not command:
            raise ConfigurationError("Missing command. Usage: snapreport e2e -- <command>")

        self.request_ids = RequestIdSet()
        server = AggregationServer(self.request_ids, self.client, self.config, self.environment)
        port = await server.start()
        try:
            await self.start_job()
            exit_code = await self._run_child(command, port)
            if exit_code == 0 or integration.allow_failures:
                await self.finalize_report()
            else:
                logger.error("Command failed with exit code %d. Cancelling job.", exit_code)
                await self.cancel_job("failure", f"{integration.runner} run failed")
            return exit_code
        finally:
            await server.stop()

    def child_env(self, port: int) -> dict[str, str]:
        env = {
            **os.environ,
            **self.environment.child_env(),
            "SNAPREPORT_E2E_PORT": str(port),
            "SNAPREPORT_API_KEY": self.config.api_key,
            "SNAPREPORT_API_SECRET": self.config.api_secret,
        }
        if self.config_path is not None:
            env["SNAPREPORT_CONFIG_FILE"] = str(self.config_path)
        return env

    async def _run_child(self, command: list[str], port: int) -> int:
        logger.info("Running %s", " ".join(command))
        process = await asyncio.create_subprocess_exec(*command, env=self.child_env(port))

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, process.send_signal, signal.SIGINT)
            forwarding = True
        except (NotImplementedError, RuntimeError, ValueError):
            # Not on the main thread, or no signal support on this platform
            forwarding = False

        try:
            code = await process.wait()
        finally:
            if forwarding:
                loop.remove_signal_handler(signal.SIGINT)
        # Killed by a signal: report it the way a shell would
        return code if code >= 0 else 128 - code
