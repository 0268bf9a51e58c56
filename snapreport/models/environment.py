"""Resolved run environment (commit pairing, PR link, correlation nonce)."""

from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel


class RunEnvironment(BaseModel):
    before_sha: str
    after_sha: str
    link: Optional[str] = None
    message: Optional[str] = None
    author: Optional[str] = None
    nonce: Optional[str] = None
    notify: Optional[str] = None
    fallback_shas: Optional[list[str]] = None
    github_token: Optional[str] = None
    debug_mode: bool = False

    @classmethod
    def from_env(
        cls, env: Mapping[str, str] | None = None, **overrides
    ) -> "RunEnvironment":
        """Build from already-resolved SNAPREPORT_* variables.

        CI provider detection happens upstream; this only reads the result.
        Explicit keyword overrides (e.g. from CLI flags) win when not None.
        """
        env = os.environ if env is None else env
        after_sha = env.get("SNAPREPORT_CURRENT_SHA") or env.get("SNAPREPORT_AFTER_SHA")
        before_sha = env.get("SNAPREPORT_PREVIOUS_SHA") or env.get("SNAPREPORT_BEFORE_SHA")
        fallback = env.get("SNAPREPORT_FALLBACK_SHAS")
        data = {
            "after_sha": after_sha,
            "before_sha": before_sha or after_sha,
            "link": env.get("SNAPREPORT_CHANGE_URL"),
            "message": env.get("SNAPREPORT_MESSAGE"),
            "author": env.get("SNAPREPORT_AUTHOR"),
            "nonce": env.get("SNAPREPORT_NONCE"),
            "notify": env.get("SNAPREPORT_NOTIFY"),
            "fallback_shas": fallback.replace(",", " ").split() if fallback else None,
            "github_token": env.get("SNAPREPORT_GITHUB_TOKEN"),
            "debug_mode": bool(env.get("SNAPREPORT_DEBUG")),
        }
        data.update({k: v for k, v in overrides.items() if v is not None})
        if not data["after_sha"]:
            raise ValueError(
                "Unable to resolve the current commit. Set SNAPREPORT_CURRENT_SHA "
                "or pass --after-sha."
            )
        if not data["before_sha"]:
            data["before_sha"] = data["after_sha"]
        return cls(**data)

    def child_env(self) -> dict[str, str]:
        """Variables a wrapped child process needs to rebuild this environment."""
        result = {
            "SNAPREPORT_CURRENT_SHA": self.after_sha,
            "SNAPREPORT_PREVIOUS_SHA": self.before_sha,
        }
        if self.nonce:
            result["SNAPREPORT_NONCE"] = self.nonce
        if self.link:
            result["SNAPREPORT_CHANGE_URL"] = self.link
        if self.message:
            result["SNAPREPORT_MESSAGE"] = self.message
        return result


class SkippedExample(BaseModel):
    component: str
    variant: str
    target: str

