"""Checkpoint data structures — one variant per resumable point of a job."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .job import JobPhase, utc_now


class CaptureArtifacts(BaseModel):
    reference_dir: str
    metadata_path: str
    fullpage_path: Optional[str] = None
    section_count: int = 0
    reused: bool = False


class DiscoveredComponent(BaseModel):
    name: str  # e.g. "Hero", "Features2"
    section_type: str
    order: int
    section_id: str = ""
    reference_image: str = ""


class _CheckpointBase(BaseModel):
    job_id: str
    website_id: str
    url: str
    saved_at: str = Field(default_factory=utc_now)
    completed_at: Optional[str] = None
    capture: CaptureArtifacts
    components: list[DiscoveredComponent] = Field(default_factory=list)
    design_tokens: dict[str, Any] = Field(default_factory=dict)

    @property
    def component_count(self) -> int:
        return len(self.components)

    @property
    def is_live(self) -> bool:
        return self.completed_at is None

    @property
    def resume_phase(self) -> JobPhase:
        """First phase a resume still has to run."""
        raise NotImplementedError


class ApprovalCheckpoint(_CheckpointBase):
    """Written at the approval gate, before the pause is reported."""
    phase: Literal["awaiting_approval"] = "awaiting_approval"

    @property
    def resume_phase(self) -> JobPhase:
        return JobPhase.SCAFFOLDING


class ScaffoldedCheckpoint(_CheckpointBase):
    """Written during resume once scaffolding has been committed."""
    phase: Literal["scaffolded"] = "scaffolded"
    scaffold_paths: list[str] = Field(default_factory=list)

    @property
    def resume_phase(self) -> JobPhase:
        return JobPhase.VERSIONING


class VersionedCheckpoint(_CheckpointBase):
    """Written during resume once the version snapshot exists."""
    phase: Literal["versioned"] = "versioned"
    scaffold_paths: list[str] = Field(default_factory=list)
    version_id: str

    @property
    def resume_phase(self) -> JobPhase:
        return JobPhase.COMPLETE


Checkpoint = Annotated[
    Union[ApprovalCheckpoint, ScaffoldedCheckpoint, VersionedCheckpoint],
    Field(discriminator="phase"),
]

checkpoint_adapter: TypeAdapter[Checkpoint] = TypeAdapter(Checkpoint)


class CheckpointInfo(BaseModel):
    exists: bool
    phase: str
    saved_at: str
    component_count: int
