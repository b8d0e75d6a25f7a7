"""Tests for the append-only version store."""

import json
import os
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from sitecloner.errors import (
    ConflictError,
    CorruptStateError,
    ImmutableVersionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from sitecloner.utils.files import sha256_file
from sitecloner.versioning.version_store import VersionStore


def _active(store: VersionStore, website_id: str) -> list[str]:
    return [v.version_number for v in store.list_versions(website_id) if v.is_active]


_real_replace = os.replace


def _failing_swap(src, dst):
    """os.replace that refuses to swap the current/ link."""
    if Path(dst).name == "current":
        raise OSError("read-only")
    return _real_replace(src, dst)


class TestCreateVersion:
    """Tests for create_new_version."""

    def test_first_version(self, version_store, source_dir):
        """First version is 1.0, active, and the only one listed."""
        result = version_store.create_new_version("acme", source_dir, set_active=True)

        assert result.version.version_number == "1.0"
        assert result.version.is_active
        assert result.files_copied == 3
        assert [v.version_number for v in version_store.list_versions("acme")] == ["1.0"]
        assert _active(version_store, "acme") == ["1.0"]

    def test_first_version_active_by_default(self, version_store, source_dir):
        result = version_store.create_new_version("acme", source_dir)
        assert result.version.is_active

    def test_later_versions_inactive_by_default(self, version_store, source_dir):
        version_store.create_new_version("acme", source_dir)
        second = version_store.create_new_version("acme", source_dir)
        assert second.version.version_number == "1.1"
        assert not second.version.is_active
        assert _active(version_store, "acme") == ["1.0"]

    def test_regeneration_bumps_major(self, version_store, source_dir):
        version_store.create_new_version("acme", source_dir)
        version_store.create_new_version("acme", source_dir)
        result = version_store.create_new_version("acme", source_dir, change_type="regeneration")
        assert result.version.version_number == "2.0"

    def test_list_is_newest_first(self, version_store, source_dir):
        for _ in range(3):
            version_store.create_new_version("acme", source_dir)
        assert [v.version_number for v in version_store.list_versions("acme")] == ["1.2", "1.1", "1.0"]

    def test_list_unknown_website(self, version_store):
        assert version_store.list_versions("nobody") == []

    def test_source_is_copied_not_moved(self, version_store, source_dir):
        version_store.create_new_version("acme", source_dir)
        assert (source_dir / "app" / "page.tsx").exists()

    def test_files_are_byte_identical(self, version_store, source_dir):
        result = version_store.create_new_version("acme", source_dir)
        files = version_store.get_files_for_version(result.version.id)

        assert {f.file_path for f in files} == {"app/page.tsx", "components/Hero/Hero.tsx", "logo.bin"}
        for f in files:
            original = source_dir / f.file_path
            assert version_store.read_version_file(result.version.id, f.file_path) == original.read_bytes()
            assert f.file_hash == sha256_file(original)
            assert f.file_size == original.stat().st_size

    def test_later_source_changes_do_not_affect_snapshot(self, version_store, source_dir):
        result = version_store.create_new_version("acme", source_dir)
        (source_dir / "app" / "page.tsx").write_text("changed")
        data = version_store.read_version_file(result.version.id, "app/page.tsx")
        assert data == b"export default function Home() {}\n"

    def test_exclude_top_level_entries(self, version_store, source_dir):
        (source_dir / "node_modules" / "pkg").mkdir(parents=True)
        (source_dir / "node_modules" / "pkg" / "index.js").write_text("x")
        result = version_store.create_new_version("acme", source_dir, exclude=["node_modules"])
        paths = {f.file_path for f in version_store.get_files_for_version(result.version.id)}
        assert not any(p.startswith("node_modules/") for p in paths)

    def test_explicit_version_number(self, version_store, source_dir):
        version_store.create_new_version("acme", source_dir)
        result = version_store.create_new_version("acme", source_dir, version_number="3.0")
        assert result.version.version_number == "3.0"

    def test_duplicate_version_number(self, version_store, source_dir):
        version_store.create_new_version("acme", source_dir)
        with pytest.raises(ConflictError):
            version_store.create_new_version("acme", source_dir, version_number="1.0")

    def test_non_increasing_version_number(self, version_store, source_dir):
        version_store.create_new_version("acme", source_dir, version_number="2.0")
        with pytest.raises(ValidationError):
            version_store.create_new_version("acme", source_dir, version_number="1.5")

    def test_malformed_version_number(self, version_store, source_dir):
        with pytest.raises(ValidationError):
            version_store.create_new_version("acme", source_dir, version_number="one")

    def test_missing_source_dir(self, version_store, tmp_path):
        with pytest.raises(ValidationError):
            version_store.create_new_version("acme", tmp_path / "missing")

    def test_invalid_website_id(self, version_store, source_dir):
        with pytest.raises(ValidationError):
            version_store.create_new_version("../escape", source_dir)

    def test_unknown_parent(self, version_store, source_dir):
        with pytest.raises(NotFoundError):
            version_store.create_new_version("acme", source_dir, parent_version_id="version-nope")
        assert version_store.list_versions("acme") == []

    def test_failed_index_write_leaves_nothing(self, version_store, source_dir, config):
        """A failed commit records no version and leaves no snapshot directory."""
        with patch("sitecloner.versioning.version_store.atomic_write_json",
                   side_effect=PersistenceError("disk full")):
            with pytest.raises(PersistenceError):
                version_store.create_new_version("acme", source_dir)

        assert version_store.list_versions("acme") == []
        versions_dir = config.websites_path / "acme" / "versions"
        assert [p.name for p in versions_dir.iterdir()] == []

    def test_failed_link_leaves_nothing(self, version_store, source_dir, config):
        """A current/ link that cannot be created records no version."""
        with patch("sitecloner.versioning.version_store.os.symlink", side_effect=OSError("read-only")):
            with pytest.raises(PersistenceError):
                version_store.create_new_version("acme", source_dir)

        assert version_store.list_versions("acme") == []
        assert [p.name for p in (config.websites_path / "acme" / "versions").iterdir()] == []
        assert not (config.websites_path / "acme" / "current").exists()

    def test_failed_link_swap_restores_index(self, version_store, source_dir, config):
        first = version_store.create_new_version("acme", source_dir)

        with patch("sitecloner.versioning.version_store.os.replace", side_effect=_failing_swap):
            with pytest.raises(PersistenceError):
                version_store.create_new_version("acme", source_dir, set_active=True)

        assert [v.id for v in version_store.list_versions("acme")] == [first.version.id]
        assert _active(version_store, "acme") == ["1.0"]
        versions_dir = config.websites_path / "acme" / "versions"
        assert sorted(p.name for p in versions_dir.iterdir()) == sorted(["index.json", first.version.id])
        assert list((config.websites_path / "acme").glob(".current-*")) == []

    def test_current_link_points_at_active(self, version_store, source_dir, config):
        result = version_store.create_new_version("acme", source_dir)
        current = config.websites_path / "acme" / "current"
        assert current.is_symlink()
        assert os.path.realpath(current) == os.path.realpath(result.version_path)
        assert (current / "app" / "page.tsx").exists()

    def test_current_real_directory_conflicts(self, version_store, source_dir, config):
        (config.websites_path / "acme" / "current").mkdir(parents=True)
        with pytest.raises(ConflictError):
            version_store.create_new_version("acme", source_dir)
        assert version_store.list_versions("acme") == []

    def test_corrupt_index(self, version_store, source_dir, config):
        index = config.websites_path / "acme" / "versions" / "index.json"
        index.parent.mkdir(parents=True)
        index.write_text("{not json")
        with pytest.raises(CorruptStateError):
            version_store.list_versions("acme")


class TestLookup:
    def test_get_version(self, version_store, source_dir):
        created = version_store.create_new_version("acme", source_dir, changelog="first")
        fetched = version_store.get_version(created.version.id)
        assert fetched.changelog == "first"
        assert fetched.is_active

    def test_get_unknown_version(self, version_store):
        assert version_store.get_version("version-missing") is None
        assert version_store.get_files_for_version("version-missing") == []

    def test_get_version_from_fresh_store(self, version_store, source_dir, config):
        created = version_store.create_new_version("acme", source_dir)
        other = VersionStore(config.websites_path)
        assert other.get_version(created.version.id).website_id == "acme"

    def test_get_current_version(self, version_store, source_dir):
        assert version_store.get_current_version("acme") is None
        created = version_store.create_new_version("acme", source_dir)
        assert version_store.get_current_version("acme").id == created.version.id

    def test_read_file_rejects_traversal(self, version_store, source_dir):
        created = version_store.create_new_version("acme", source_dir)
        with pytest.raises(ValidationError):
            version_store.read_version_file(created.version.id, "../index.json")

    def test_read_missing_file(self, version_store, source_dir):
        created = version_store.create_new_version("acme", source_dir)
        with pytest.raises(NotFoundError):
            version_store.read_version_file(created.version.id, "nope.txt")


    def test_find_job_version(self, version_store, source_dir):
        assert version_store.find_job_version("acme", "job_1") is None
        created = version_store.create_new_version("acme", source_dir, job_id="job_1")
        version_store.create_new_version("acme", source_dir, job_id="job_2")

        found = version_store.find_job_version("acme", "job_1")
        assert found.id == created.version.id
        assert found.job_id == "job_1"
        assert version_store.find_job_version("globex", "job_1") is None


class TestActivate:
    """Tests for activate_version."""

    def test_switches_active(self, version_store, source_dir, config):
        first = version_store.create_new_version("acme", source_dir)
        second = version_store.create_new_version("acme", source_dir)

        activated = version_store.activate_version(second.version.id, "acme")
        assert activated.is_active
        assert _active(version_store, "acme") == ["1.1"]
        current = config.websites_path / "acme" / "current"
        assert os.path.realpath(current) == os.path.realpath(second.version_path)
        assert not version_store.get_version(first.version.id).is_active

    def test_failed_link_keeps_previous_active(self, version_store, source_dir, config):
        first = version_store.create_new_version("acme", source_dir)
        second = version_store.create_new_version("acme", source_dir)

        with patch("sitecloner.versioning.version_store.os.symlink", side_effect=OSError("read-only")):
            with pytest.raises(PersistenceError):
                version_store.activate_version(second.version.id, "acme")

        assert _active(version_store, "acme") == ["1.0"]
        current = config.websites_path / "acme" / "current"
        assert os.path.realpath(current) == os.path.realpath(first.version_path)

    def test_failed_link_swap_restores_index(self, version_store, source_dir, config):
        first = version_store.create_new_version("acme", source_dir)
        second = version_store.create_new_version("acme", source_dir)

        with patch("sitecloner.versioning.version_store.os.replace", side_effect=_failing_swap):
            with pytest.raises(PersistenceError):
                version_store.activate_version(second.version.id, "acme")

        assert _active(version_store, "acme") == ["1.0"]
        current = config.websites_path / "acme" / "current"
        assert os.path.realpath(current) == os.path.realpath(first.version_path)
        assert list((config.websites_path / "acme").glob(".current-*")) == []

    def test_unknown_version(self, version_store):
        assert version_store.activate_version("version-missing", "acme") is None

    def test_other_websites_version(self, version_store, source_dir):
        other = version_store.create_new_version("globex", source_dir)
        version_store.create_new_version("acme", source_dir)
        with pytest.raises(NotFoundError):
            version_store.activate_version(other.version.id, "acme")
        assert version_store.get_version(other.version.id).is_active

    def test_concurrent_activations_leave_one_active(self, version_store, source_dir):
        ids = [version_store.create_new_version("acme", source_dir).version.id for _ in range(4)]
        errors = []

        def activate(version_id):
            try:
                version_store.activate_version(version_id, "acme")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=activate, args=(vid,)) for vid in ids * 3]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(_active(version_store, "acme")) == 1

    def test_activation_without_link(self, config, source_dir):
        store = VersionStore(config.websites_path, link_current=False)
        store.create_new_version("acme", source_dir)
        assert not (config.websites_path / "acme" / "current").exists()


class TestRollback:
    """Tests for can_rollback and rollback_to_version."""

    def test_rollback_to_active_refused(self, version_store, source_dir):
        first = version_store.create_new_version("acme", source_dir, set_active=True)
        check = version_store.can_rollback("acme", first.version.id)
        assert not check.can_rollback
        assert "already active" in check.reason
        with pytest.raises(ConflictError):
            version_store.rollback_to_version("acme", first.version.id)

    def test_rollback_unknown_target(self, version_store):
        check = version_store.can_rollback("acme", "version-missing")
        assert not check.can_rollback
        assert "not found" in check.reason
        with pytest.raises(NotFoundError):
            version_store.rollback_to_version("acme", "version-missing")

    def test_rollback_other_website(self, version_store, source_dir):
        other = version_store.create_new_version("globex", source_dir)
        check = version_store.can_rollback("acme", other.version.id)
        assert not check.can_rollback
        assert "does not belong" in check.reason

    def test_rollback_missing_directory(self, version_store, source_dir):
        first = version_store.create_new_version("acme", source_dir)
        version_store.create_new_version("acme", source_dir, set_active=True)
        os.rename(first.version_path, first.version_path + ".moved")
        check = version_store.can_rollback("acme", first.version.id)
        assert not check.can_rollback

    def test_rollback_creates_new_active_version(self, version_store, source_dir):
        first = version_store.create_new_version("acme", source_dir, changelog="initial",
                                                 tokens_json='{"colors": ["#fff"]}', accuracy_score=91.5)
        (source_dir / "app" / "page.tsx").write_text("v2")
        version_store.create_new_version("acme", source_dir, set_active=True)
        target_files_before = version_store.get_files_for_version(first.version.id)

        result = version_store.rollback_to_version("acme", first.version.id)

        new = result.new_version
        assert new.version_number == "1.2"
        assert new.is_active
        assert new.parent_version_id == first.version.id
        assert new.changelog == "Rolled back to version 1.0"
        assert new.tokens_json == '{"colors": ["#fff"]}'
        assert new.accuracy_score == 91.5
        assert len(version_store.list_versions("acme")) == 3
        assert _active(version_store, "acme") == ["1.2"]

        target = version_store.get_version(first.version.id)
        assert target.changelog == "initial"
        assert not target.is_active
        assert version_store.get_files_for_version(first.version.id) == target_files_before
        assert version_store.read_version_file(new.id, "app/page.tsx") == \
            b"export default function Home() {}\n"

    def test_rollback_target_vanishes(self, version_store, source_dir):
        first = version_store.create_new_version("acme", source_dir)
        version_store.create_new_version("acme", source_dir, set_active=True)

        with patch.object(version_store, "get_version", return_value=None):
            with pytest.raises(NotFoundError):
                version_store.rollback_to_version("acme", first.version.id)
        assert len(version_store.list_versions("acme")) == 2

    def test_rollback_custom_changelog(self, version_store, source_dir):
        first = version_store.create_new_version("acme", source_dir)
        version_store.create_new_version("acme", source_dir, set_active=True)
        result = version_store.rollback_to_version("acme", first.version.id, changelog="revert hero")
        assert result.new_version.changelog == "revert hero"

    def test_rollback_preview(self, version_store, source_dir):
        first = version_store.create_new_version("acme", source_dir)
        version_store.create_new_version("acme", source_dir)
        version_store.create_new_version("acme", source_dir)

        preview = version_store.get_rollback_preview("acme", first.version.id)
        assert preview.new_version_number == "1.3"
        assert [v.version_number for v in preview.affected_versions] == ["1.2", "1.1"]
        assert len(version_store.list_versions("acme")) == 3


class TestDelete:
    def test_delete_always_refused(self, version_store, source_dir, config):
        created = version_store.create_new_version("acme", source_dir)
        index = config.websites_path / "acme" / "versions" / "index.json"
        before = json.loads(index.read_text())

        with pytest.raises(ImmutableVersionError, match="immutable"):
            version_store.delete_version(created.version.id)

        assert json.loads(index.read_text()) == before
        assert os.path.isdir(created.version_path)

    def test_delete_unknown_also_refused(self, version_store):
        with pytest.raises(ConflictError):
            version_store.delete_version("version-missing")
