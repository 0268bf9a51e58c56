"""Job lifecycle: a (before_sha, after_sha) pairing that ends finalized or cancelled."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class JobStateError(RuntimeError):
    """Raised on an illegal job transition."""


class JobState(str, Enum):
    STARTED = "started"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


class Job(BaseModel):
    before_sha: str
    after_sha: str
    id: Optional[int] = None
    url: Optional[str] = None
    state: JobState = JobState.STARTED

    @property
    def is_open(self) -> bool:
        return self.state == JobState.STARTED

    def ensure_open(self, action: str) -> None:
        if not self.is_open:
            raise JobStateError(
                f"Job {self.before_sha}..{self.after_sha} is already {self.state.value}; "
                f"cannot {action} it"
            )

    def mark_finalized(self) -> None:
        self.ensure_open("finalize")
        self.state = JobState.FINALIZED

    def mark_cancelled(self) -> None:
        self.ensure_open("cancel")
        self.state = JobState.CANCELLED
