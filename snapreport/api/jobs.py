"""Job, async report and comparison endpoints of the remote service."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from snapreport.api.client import ApiClient, ApiRequestError
from snapreport.models.config import SnapConfig
from snapreport.models.environment import RunEnvironment, SkippedExample

logger = logging.getLogger(__name__)


class StartJobResult(BaseModel):
    id: int
    url: str


class AsyncReportResult(BaseModel):
    id: int
    url: str


class ComparisonResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    status_image_url: str = Field(alias="statusImageUrl")
    compare_url: str = Field(alias="compareUrl")


def _validated(model: type[BaseModel], result: dict | None, what: str):
    if result is None:
        raise TypeError(f"Empty response when trying to {what}")
    return model.model_validate(result)


async def start_job(
    client: ApiClient, config: SnapConfig, environment: RunEnvironment
) -> StartJobResult:
    """Tell the remote service that a job comparing two SHAs is about to run."""
    result = await client.send(
        f"/api/jobs/{environment.before_sha}/{environment.after_sha}",
        method="POST",
        body={
            "link": environment.link,
            "message": environment.message,
            "project": config.project,
        },
        retry_count=5,
    )
    return _validated(StartJobResult, result, "start job")


async def cancel_job(
    client: ApiClient,
    config: SnapConfig,
    environment: RunEnvironment,
    status: Literal["failure", "success"],
    message: str,
) -> None:
    """Cancel a job. A 409 means it was already completed and is not an error."""
    try:
        await client.send(
            f"/api/jobs/{environment.before_sha}/{environment.after_sha}/cancel",
            method="POST",
            body={
                "link": environment.link,
                "message": message,
                "project": config.project,
                "status": status,
            },
            retry_count=5,
        )
    except ApiRequestError as e:
        if e.status_code != 409:
            raise
        logger.warning(
            "Skipping cancellation of job because it has already been completed: %s", e
        )


async def create_async_report(
    client: ApiClient,
    config: SnapConfig,
    environment: RunEnvironment,
    request_ids: list[int],
    retry_count: int = 3,
) -> AsyncReportResult:
    """Associate snap-request ids with the async report for after_sha.

    Idempotent per call, so the same ids may be posted more than once.
    """
    body = {
        "requestIds": list(request_ids),
        "project": config.project,
        "link": environment.link,
        "message": environment.message,
    }
    if environment.nonce:
        body["nonce"] = environment.nonce
    logger.debug("Posting %d request id(s) to async report %s", len(request_ids), environment.after_sha)
    result = await client.send(
        f"/api/async-reports/{environment.after_sha}",
        method="POST",
        body=body,
        retry_count=retry_count,
    )
    return _validated(AsyncReportResult, result, "create async report")


async def finalize_async_report(
    client: ApiClient,
    config: SnapConfig,
    environment: RunEnvironment,
    skipped_examples: Optional[list[SkippedExample]] = None,
) -> None:
    """Merge everything contributed under the run nonce into one report."""
    if not environment.nonce:
        raise ValueError("Missing nonce. Set SNAPREPORT_NONCE or pass --nonce.")
    await client.send(
        f"/api/async-reports/{environment.after_sha}/finalize",
        method="POST",
        body={
            "project": config.project,
            "nonce": environment.nonce,
            "skippedExamples": [e.model_dump() for e in skipped_examples or []],
        },
        retry_count=3,
    )


async def create_async_comparison(
    client: ApiClient, config: SnapConfig, environment: RunEnvironment
) -> ComparisonResult:
    """Compare the after_sha report against before_sha."""
    result = await client.send(
        f"/api/reports/{environment.before_sha}/compare/{environment.after_sha}",
        method="POST",
        body={
            "link": environment.link,
            "message": environment.message,
            "author": environment.author,
            "project": config.project,
            "isAsync": True,
            "notify": environment.notify,
            "fallbackShas": environment.fallback_shas,
        },
        retry_count=3,
    )
    return _validated(ComparisonResult, result, "create comparison")
