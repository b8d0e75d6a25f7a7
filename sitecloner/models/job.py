"""Job, progress, and pipeline result data structures."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class JobPhase(str, Enum):
    QUEUED = "queued"
    CAPTURING = "capturing"
    EXTRACTING = "extracting"
    GENERATING = "generating"
    AWAITING_APPROVAL = "awaiting_approval"
    SCAFFOLDING = "scaffolding"
    VERSIONING = "versioning"
    COMPLETE = "complete"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"


# Percent reported when a phase is entered
PHASE_PERCENT: dict[JobPhase, int] = {
    JobPhase.QUEUED: 0,
    JobPhase.CAPTURING: 10,
    JobPhase.EXTRACTING: 30,
    JobPhase.GENERATING: 40,
    JobPhase.AWAITING_APPROVAL: 55,
    JobPhase.SCAFFOLDING: 60,
    JobPhase.VERSIONING: 80,
    JobPhase.COMPLETE: 100,
}


class Job(BaseModel):
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}")
    website_id: str
    url: str
    phase: JobPhase = JobPhase.QUEUED
    percent: int = 0
    status: JobStatus = JobStatus.PENDING
    message: str = ""
    error: Optional[str] = None
    require_approval: bool = True
    skip_cache: bool = False
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @field_validator("website_id", "url")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class ProgressEvent(BaseModel):
    job_id: str
    phase: JobPhase
    percent: int
    message: str = ""
    timestamp: str = Field(default_factory=utc_now)


class PipelineResult(BaseModel):
    """Outcome of start() or resume(). Failures are reported here, never raised."""
    success: bool
    job: Job
    paused: bool = False
    duplicate: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
