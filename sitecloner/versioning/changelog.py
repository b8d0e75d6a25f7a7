"""Changelog generation between two versions."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from sitecloner.errors import NotFoundError
from sitecloner.models.version import ChangelogResult, FileChange, Version, VersionFile

from .version_store import VersionStore

logger = logging.getLogger(__name__)


def compare_files(old_files: list[VersionFile], new_files: list[VersionFile]) -> list[FileChange]:
    old = {f.file_path: f.file_hash for f in old_files}
    new = {f.file_path: f.file_hash for f in new_files}
    changes: list[FileChange] = []
    for path in sorted(old.keys() | new.keys()):
        if path not in old:
            changes.append(FileChange(file_path=path, change_type="added", new_hash=new[path]))
        elif path not in new:
            changes.append(FileChange(file_path=path, change_type="removed", old_hash=old[path]))
        elif old[path] != new[path]:
            changes.append(FileChange(
                file_path=path, change_type="modified", old_hash=old[path], new_hash=new[path],
            ))
    return changes


def _load_tokens(version: Version) -> dict[str, Any] | None:
    if not version.tokens_json:
        return None
    try:
        tokens = json.loads(version.tokens_json)
    except json.JSONDecodeError:
        logger.warning("Version %s has unparseable tokens_json", version.id)
        return None
    return tokens if isinstance(tokens, dict) else None


def compare_tokens(old: dict[str, Any], new: dict[str, Any]) -> list[str]:
    """Top-level token groups (colors, typography, ...) whose values differ."""
    return sorted(k for k in old.keys() | new.keys() if old.get(k) != new.get(k))


def summarize_changes(file_changes: list[FileChange], token_changes: list[str], version_number: str) -> str:
    kinds = list(token_changes)
    if file_changes:
        kinds.append("file")
    if not kinds:
        return "No changes detected"
    if len(kinds) == 1:
        if kinds[0] == "file":
            return f"File changes in version {version_number}"
        return f"{kinds[0].capitalize()} updates in version {version_number}"
    return f"Updated {', '.join(kinds)} in version {version_number}"


def generate_changelog(store: VersionStore, from_version_id: str, to_version_id: str) -> ChangelogResult:
    from_version = store.get_version(from_version_id)
    if from_version is None:
        raise NotFoundError(f"Source version not found: {from_version_id}")
    to_version = store.get_version(to_version_id)
    if to_version is None:
        raise NotFoundError(f"Target version not found: {to_version_id}")

    token_changes: list[str] = []
    old_tokens, new_tokens = _load_tokens(from_version), _load_tokens(to_version)
    if old_tokens is not None and new_tokens is not None:
        token_changes = compare_tokens(old_tokens, new_tokens)

    file_changes = compare_files(
        store.get_files_for_version(from_version_id),
        store.get_files_for_version(to_version_id),
    )
    return ChangelogResult(
        from_version_id=from_version_id,
        to_version_id=to_version_id,
        file_changes=file_changes,
        token_changes=token_changes,
        summary=summarize_changes(file_changes, token_changes, to_version.version_number),
    )


def generate_version_changelog(store: VersionStore, version_id: str) -> Optional[ChangelogResult]:
    """Changelog of a version against its parent, or None when it has no parent."""
    version = store.get_version(version_id)
    if version is None or not version.parent_version_id:
        return None
    return generate_changelog(store, version.parent_version_id, version_id)
