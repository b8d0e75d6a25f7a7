"""Version store — append-only snapshots of generated output with one active pointer.

Layout per website::

    <websites_dir>/<website_id>/versions/index.json      version log + active pointer
    <websites_dir>/<website_id>/versions/<version_id>/   immutable file snapshot
    <websites_dir>/<website_id>/current                  symlink to the active snapshot

Versions are never edited or removed. Rollback appends a new version that
mirrors an older one. All mutations for one website are serialized by a
per-website lock, and the index is replaced atomically, so readers never see
zero or two active versions.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
import time
import uuid
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from sitecloner.errors import (
    ConflictError,
    CorruptStateError,
    ImmutableVersionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from sitecloner.models.version import (
    CreateVersionResult,
    RollbackCheck,
    RollbackPreview,
    RollbackResult,
    Version,
    VersionFile,
    VersionIndex,
)
from sitecloner.utils.files import atomic_write_json, iter_files, sha256_file

from .numbering import ChangeType, latest_version, next_version_number, parse_version

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

ALREADY_ACTIVE_REASON = "Target version is already active"

# Shared across store instances so two stores on the same directory still serialize
_locks: dict[tuple[str, str], threading.Lock] = {}
_locks_guard = threading.Lock()


def _check_id(value: str, label: str) -> str:
    if not value or not _ID_PATTERN.match(value):
        raise ValidationError(f"Invalid {label}: {value!r}")
    return value


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class VersionStore:
    """Manages version snapshots and their JSON index."""

    def __init__(self, websites_dir: Path, link_current: bool = True):
        self.websites_dir = Path(websites_dir)
        self.link_current = link_current
        self._id_to_website: dict[str, str] = {}

    # ------------------------------------------------------------------ paths

    def _website_dir(self, website_id: str) -> Path:
        return self.websites_dir / website_id

    def _versions_dir(self, website_id: str) -> Path:
        return self._website_dir(website_id) / "versions"

    def _index_path(self, website_id: str) -> Path:
        return self._versions_dir(website_id) / "index.json"

    def get_version_path(self, website_id: str, version_id: str) -> Path:
        return self._versions_dir(website_id) / version_id

    def get_current_path(self, website_id: str) -> Path:
        return self._website_dir(website_id) / "current"

    def _lock(self, website_id: str) -> threading.Lock:
        key = (str(self.websites_dir.resolve()), website_id)
        with _locks_guard:
            return _locks.setdefault(key, threading.Lock())

    # ------------------------------------------------------------------ index

    def load_index(self, website_id: str) -> VersionIndex:
        """Load a website's index, or an empty one when none exists yet."""
        path = self._index_path(website_id)
        if not path.exists():
            return VersionIndex(website_id=website_id)
        try:
            return VersionIndex.model_validate_json(path.read_text())
        except (OSError, PydanticValidationError) as e:
            raise CorruptStateError(f"Version index unreadable at {path}: {e}") from e

    def _save_index(self, index: VersionIndex) -> None:
        index.last_updated = _now()
        atomic_write_json(self._index_path(index.website_id), index.model_dump())
        logger.debug("Saved version index for %s (%d versions)",
                     index.website_id, len(index.versions))

    @staticmethod
    def _view(index: VersionIndex, version: Version) -> Version:
        return version.model_copy(update={"is_active": version.id == index.active_version_id})

    def _find(self, version_id: str) -> tuple[VersionIndex, Version] | None:
        website_id = self._id_to_website.get(version_id)
        candidates = [website_id] if website_id else []
        if not candidates and self.websites_dir.exists():
            candidates = sorted(
                p.parent.parent.name for p in self.websites_dir.glob("*/versions/index.json")
            )
        for candidate in candidates:
            index = self.load_index(candidate)
            for version in index.versions:
                self._id_to_website[version.id] = candidate
                if version.id == version_id:
                    return index, version
        return None

    # ------------------------------------------------------------------ create

    def create_new_version(
        self,
        website_id: str,
        source_dir: str | Path,
        version_number: Optional[str] = None,
        tokens_json: Optional[str] = None,
        changelog: Optional[str] = None,
        accuracy_score: Optional[float] = None,
        parent_version_id: Optional[str] = None,
        set_active: Optional[bool] = None,
        change_type: ChangeType = "edit",
        exclude: Iterable[str] = (),
        job_id: Optional[str] = None,
    ) -> CreateVersionResult:
        """Copy source_dir into a new immutable version and record it.

        set_active=None activates the version only when it is the website's
        first one. Top-level entries named in exclude are not copied. Nothing
        is recorded if any step fails, including the current/ link update.
        """
        _check_id(website_id, "website id")
        source = Path(source_dir)
        if not source.is_dir():
            raise ValidationError(f"Source directory does not exist: {source}")
        if version_number is not None:
            parse_version(version_number)

        versions_dir = self._versions_dir(website_id)
        versions_dir.mkdir(parents=True, exist_ok=True)
        version_id = f"version-{uuid.uuid4()}"
        staging = versions_dir / f".staging-{version_id}"
        final = self.get_version_path(website_id, version_id)
        created_at = _now()

        # Copy outside the lock; only the metadata commit is serialized
        try:
            files = self._copy_tree(source, staging, version_id, created_at, frozenset(exclude))
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise PersistenceError(f"Failed to copy {source} into version storage: {e}") from e

        link: Path | None = None
        try:
            with self._lock(website_id):
                index = self.load_index(website_id)
                existing = [v.version_number for v in index.versions]
                number = self._resolve_number(existing, version_number, change_type)
                if parent_version_id and not any(v.id == parent_version_id for v in index.versions):
                    raise NotFoundError(
                        f"Parent version {parent_version_id} not found for website {website_id}"
                    )
                activate = set_active if set_active is not None else not index.versions
                if activate:
                    self._check_current_replaceable(website_id)
                    link = self._prepare_current_link(website_id, version_id)

                version = Version(
                    id=version_id,
                    website_id=website_id,
                    version_number=number,
                    source_dir=str(source.resolve()),
                    tokens_json=tokens_json,
                    changelog=changelog,
                    accuracy_score=accuracy_score,
                    parent_version_id=parent_version_id,
                    job_id=job_id,
                    created_at=created_at,
                )
                previous = index.model_copy(deep=True)
                os.replace(staging, final)
                index.versions.append(version)
                index.files[version_id] = files
                if activate:
                    index.active_version_id = version_id
                try:
                    self._save_index(index)
                    self._commit_current_link(website_id, link, previous)
                except (OSError, PersistenceError):
                    shutil.rmtree(final, ignore_errors=True)
                    raise
                self._id_to_website[version_id] = website_id
        except OSError as e:
            raise PersistenceError(f"Failed to commit version for {website_id}: {e}") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)
            self._discard_link(link)

        logger.info("Created version %s (%s) for %s: %d files%s",
                    number, version_id, website_id, len(files), " [active]" if activate else "")
        return CreateVersionResult(
            version=self._view(index, version),
            version_path=str(final),
            files_copied=len(files),
        )

    @staticmethod
    def _resolve_number(existing: list[str], requested: Optional[str], change_type: ChangeType) -> str:
        if requested is None:
            return next_version_number(existing, change_type)
        if requested in existing:
            raise ConflictError(f"Version {requested} already exists")
        latest = latest_version(existing)
        if latest is not None and parse_version(requested) <= latest:
            raise ValidationError(
                f"Version {requested} is not higher than the latest version "
                f"{latest[0]}.{latest[1]}"
            )
        return requested

    @staticmethod
    def _copy_tree(source: Path, dest: Path, version_id: str, created_at: str,
                   exclude: frozenset[str] = frozenset()) -> list[VersionFile]:
        dest.mkdir(parents=True, exist_ok=True)
        files: list[VersionFile] = []
        for src_path in iter_files(source):
            rel = src_path.relative_to(source).as_posix()
            if rel.split("/", 1)[0] in exclude:
                continue
            target = dest / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src_path, target)
            files.append(VersionFile(
                version_id=version_id,
                file_path=rel,
                file_hash=sha256_file(target),
                file_size=target.stat().st_size,
                created_at=created_at,
            ))
            logger.debug("Copied %s", rel)
        return files

    # ------------------------------------------------------------------ current/ link

    def _check_current_replaceable(self, website_id: str) -> None:
        if not self.link_current:
            return
        current = self.get_current_path(website_id)
        if current.exists() and not current.is_symlink():
            raise ConflictError(f"current/ path exists but is not a symlink: {current}")

    def _prepare_current_link(self, website_id: str, version_id: str) -> Path | None:
        """Create a temporary symlink to a version, ready to replace current/."""
        if not self.link_current:
            return None
        current = self.get_current_path(website_id)
        tmp = current.with_name(f".current-{uuid.uuid4().hex[:8]}")
        os.symlink(Path("versions") / version_id, tmp, target_is_directory=True)
        return tmp

    def _commit_current_link(self, website_id: str, link: Path | None, previous: VersionIndex) -> None:
        """Swap a prepared link into current/; restore the previous index if that fails."""
        if link is None:
            return
        try:
            os.replace(link, self.get_current_path(website_id))
        except OSError:
            self._save_index(previous)
            raise
        logger.debug("current/ for %s -> %s", website_id, os.readlink(self.get_current_path(website_id)))

    @staticmethod
    def _discard_link(link: Path | None) -> None:
        if link is not None and link.is_symlink():
            link.unlink()

    # ------------------------------------------------------------------ reads

    def list_versions(self, website_id: str) -> list[Version]:
        """All versions of a website, most recent first."""
        index = self.load_index(website_id)
        return [self._view(index, v) for v in reversed(index.versions)]

    def get_version(self, version_id: str) -> Version | None:
        found = self._find(version_id)
        if found is None:
            return None
        index, version = found
        return self._view(index, version)

    def get_files_for_version(self, version_id: str) -> list[VersionFile]:
        found = self._find(version_id)
        if found is None:
            return []
        index, _ = found
        return list(index.files.get(version_id, []))

    def read_version_file(self, version_id: str, file_path: str) -> bytes:
        found = self._find(version_id)
        if found is None:
            raise NotFoundError(f"Version not found: {version_id}")
        _, version = found
        root = self.get_version_path(version.website_id, version_id).resolve()
        path = (root / file_path).resolve()
        if not path.is_relative_to(root):
            raise ValidationError(f"Path escapes version directory: {file_path}")
        if not path.is_file():
            raise NotFoundError(f"File {file_path} not found in version {version_id}")
        return path.read_bytes()

    def get_current_version(self, website_id: str) -> Version | None:
        index = self.load_index(website_id)
        for version in index.versions:
            if version.id == index.active_version_id:
                return self._view(index, version)
        return None

    def find_job_version(self, website_id: str, job_id: str) -> Version | None:
        """The version a pipeline job already produced, if any."""
        index = self.load_index(website_id)
        for version in index.versions:
            if version.job_id == job_id:
                return self._view(index, version)
        return None

    # ------------------------------------------------------------------ activation

    def activate_version(self, version_id: str, website_id: str) -> Version | None:
        """Make an existing version the active one for its website."""
        found = self._find(version_id)
        if found is None:
            return None
        _, version = found
        if version.website_id != website_id:
            raise NotFoundError(f"Version {version_id} does not belong to website {website_id}")
        if not self.get_version_path(website_id, version_id).is_dir():
            raise NotFoundError(f"Version directory missing for {version_id}")

        with self._lock(website_id):
            index = self.load_index(website_id)
            self._check_current_replaceable(website_id)
            previous_index = index.model_copy(deep=True)
            link: Path | None = None
            try:
                link = self._prepare_current_link(website_id, version_id)
                index.active_version_id = version_id
                self._save_index(index)
                self._commit_current_link(website_id, link, previous_index)
            except OSError as e:
                raise PersistenceError(f"Failed to update current/ for {website_id}: {e}") from e
            finally:
                self._discard_link(link)

        logger.info("Activated version %s for %s (was %s)",
                    version.version_number, website_id, previous_index.active_version_id or "none")
        return self._view(index, version)

    # ------------------------------------------------------------------ rollback

    def can_rollback(self, website_id: str, target_version_id: str) -> RollbackCheck:
        found = self._find(target_version_id)
        if found is None:
            return RollbackCheck(can_rollback=False, reason=f"Version not found: {target_version_id}")
        _, target = found
        if target.website_id != website_id:
            return RollbackCheck(
                can_rollback=False,
                reason=f"Version {target_version_id} does not belong to website {website_id}",
            )
        if not self.get_version_path(website_id, target_version_id).is_dir():
            return RollbackCheck(
                can_rollback=False,
                reason=f"Version directory does not exist for {target_version_id}",
            )
        index = self.load_index(website_id)
        if index.active_version_id == target_version_id:
            return RollbackCheck(can_rollback=False, reason=ALREADY_ACTIVE_REASON)
        return RollbackCheck(can_rollback=True)

    def rollback_to_version(
        self,
        website_id: str,
        target_version_id: str,
        changelog: Optional[str] = None,
    ) -> RollbackResult:
        """Append a new active version mirroring target_version_id.

        The target and every other historical version stay untouched.
        """
        check = self.can_rollback(website_id, target_version_id)
        if not check.can_rollback:
            if check.reason == ALREADY_ACTIVE_REASON:
                raise ConflictError(check.reason)
            raise NotFoundError(check.reason or "Cannot rollback to this version")

        target = self.get_version(target_version_id)
        if target is None:
            raise NotFoundError(f"Version not found: {target_version_id}")
        result = self.create_new_version(
            website_id=website_id,
            source_dir=self.get_version_path(website_id, target_version_id),
            tokens_json=target.tokens_json,
            changelog=changelog or f"Rolled back to version {target.version_number}",
            accuracy_score=target.accuracy_score,
            parent_version_id=target_version_id,
            set_active=True,
            change_type="edit",
        )
        logger.info("Rolled back %s to %s as %s", website_id,
                    target.version_number, result.version.version_number)
        return RollbackResult(
            new_version=result.version,
            target_version=self.get_version(target_version_id) or target,
            version_path=result.version_path,
            files_copied=result.files_copied,
        )

    def get_rollback_preview(self, website_id: str, target_version_id: str) -> RollbackPreview:
        """Describe a rollback without performing it."""
        found = self._find(target_version_id)
        if found is None or found[1].website_id != website_id:
            raise NotFoundError(f"Version {target_version_id} not found for website {website_id}")
        index, target = found
        newer = []
        for version in reversed(index.versions):
            if version.id == target_version_id:
                break
            newer.append(self._view(index, version))
        return RollbackPreview(
            target_version=self._view(index, target),
            new_version_number=next_version_number(
                [v.version_number for v in index.versions], "edit"
            ),
            affected_versions=newer,
        )

    def delete_version(self, version_id: str) -> None:
        """Always refused; the version log is append-only."""
        logger.warning("Refused delete of version %s: versions are immutable", version_id)
        raise ImmutableVersionError(version_id)
