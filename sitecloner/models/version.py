"""Version store data structures."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class Version(BaseModel):
    id: str
    website_id: str
    version_number: str
    source_dir: str
    tokens_json: Optional[str] = None
    changelog: Optional[str] = None
    accuracy_score: Optional[float] = None
    parent_version_id: Optional[str] = None
    job_id: Optional[str] = None  # pipeline job that produced this version
    is_active: bool = False  # derived from VersionIndex.active_version_id
    created_at: str


class VersionFile(BaseModel):
    version_id: str
    file_path: str  # relative to the version directory, "/"-separated
    file_hash: str  # SHA-256 hex digest
    file_size: int
    created_at: str


class VersionIndex(BaseModel):
    """Append-only log of a website's versions plus the single active pointer."""
    website_id: str
    last_updated: str = ""
    versions: list[Version] = Field(default_factory=list)  # creation order
    files: dict[str, list[VersionFile]] = Field(default_factory=dict)
    active_version_id: Optional[str] = None


class CreateVersionResult(BaseModel):
    version: Version
    version_path: str
    files_copied: int


class RollbackCheck(BaseModel):
    can_rollback: bool
    reason: Optional[str] = None


class RollbackResult(BaseModel):
    new_version: Version
    target_version: Version
    version_path: str
    files_copied: int


class RollbackPreview(BaseModel):
    target_version: Version
    new_version_number: str
    affected_versions: list[Version] = Field(default_factory=list)


class FileChange(BaseModel):
    file_path: str
    change_type: str  # added, removed, modified
    old_hash: Optional[str] = None
    new_hash: Optional[str] = None


class ChangelogResult(BaseModel):
    from_version_id: str
    to_version_id: str
    file_changes: list[FileChange] = Field(default_factory=list)
    token_changes: list[str] = Field(default_factory=list)
    summary: str = ""
