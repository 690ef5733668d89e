"""Integration tests for SyncEngine against the in-memory Drive store."""

import asyncio
from unittest.mock import patch

import pytest

from vault_drive_sync.errors import PULL_FIRST_MESSAGE
from vault_drive_sync.sync.engine import SyncEngine, SyncSettings
from vault_drive_sync.sync.meta import CONFLICT_FOLDER_NAME, read_remote_sync_meta
from vault_drive_sync.sync.models import (
    ConflictChoice,
    ConflictKind,
    FileChangeType,
    HistoryOrigin,
    SyncStatus,
)


async def _synced(engine, write_files, files):
    """Write ``files`` and push them so both sides agree."""
    write_files(files)
    report = await engine.push()
    assert report.ok, report.error
    await engine.drain_background()
    return report


def _backups(store, root_id):
    folder_id = store.ensure_subfolder(root_id, CONFLICT_FOLDER_NAME)
    return store.list_files(folder_id)


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


class TestPush:
    """Tests for SyncEngine.push()."""

    async def test_first_push_uploads_everything(
        self, engine, store, root_id, write_files
    ):
        report = await _synced(
            engine, write_files, {"a.md": "alpha", "notes/b.md": "beta"}
        )

        assert report.pushed == ["a.md", "notes/b.md"]
        assert report.status is SyncStatus.IDLE
        assert store.text_of("notes/b.md") == "beta"
        remote = read_remote_sync_meta(store, root_id)
        assert {r.vault_path for r in remote.files.values()} == {
            "a.md",
            "notes/b.md",
        }
        local = engine.meta_store.load()
        assert set(local.path_to_id) == {"a.md", "notes/b.md"}
        assert engine.local_modified_count == 0
        assert engine.remote_modified_count == 0

    async def test_nothing_to_push(self, engine, store, write_files):
        await _synced(engine, write_files, {"a.md": "alpha"})
        store.calls.clear()

        report = await engine.push()
        assert report.pushed == []
        assert "create_file" not in store.calls

    async def test_edit_updates_same_remote_file(self, engine, store, write_files):
        await _synced(engine, write_files, {"a.md": "alpha"})
        file_id = store.id_of("a.md")
        write_files({"a.md": "alpha, edited"})

        report = await engine.push()
        assert report.pushed == ["a.md"]
        assert store.id_of("a.md") == file_id
        assert store.text_of("a.md") == "alpha, edited"

    async def test_local_delete_moves_to_remote_trash(
        self, engine, store, root_id, vault_root, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha", "b.md": "beta"})
        file_id = store.id_of("b.md")
        (vault_root / "b.md").unlink()

        report = await engine.push()
        assert report.trashed == ["b.md"]
        trash_id = store.ensure_subfolder(root_id, "trash")
        assert store.names_in(trash_id) == {"b.md"}
        assert file_id not in read_remote_sync_meta(store, root_id).files
        assert "b.md" not in engine.meta_store.load().path_to_id

    async def test_local_rename_is_metadata_only(
        self, engine, store, vault_root, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        file_id = store.id_of("a.md")
        (vault_root / "archive").mkdir()
        (vault_root / "a.md").rename(vault_root / "archive" / "a.md")
        store.calls.clear()

        report = await engine.push()
        assert report.renamed == [("a.md", "archive/a.md")]
        assert store.id_of("archive/a.md") == file_id
        assert "create_file" not in store.calls
        assert engine.meta_store.load().path_to_id == {"archive/a.md": file_id}

    async def test_rejected_while_remote_has_changes(
        self, engine, store, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha", "b.md": "beta"})
        device.push("a.md", "alpha from elsewhere")
        write_files({"b.md": "beta, edited"})

        with patch(
            "vault_drive_sync.sync.engine.write_remote_sync_meta"
        ) as write_meta, patch.object(engine.meta_store, "save") as save_local:
            report = await engine.push()

        write_meta.assert_not_called()
        save_local.assert_not_called()
        assert report.error == PULL_FIRST_MESSAGE
        assert engine.status is SyncStatus.ERROR
        assert engine.last_error == PULL_FIRST_MESSAGE
        assert store.text_of("b.md") == "beta"

    async def test_rejected_when_remote_deleted_a_file(
        self, engine, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha", "b.md": "beta"})
        device.delete("b.md")

        report = await engine.push()
        assert report.error == PULL_FIRST_MESSAGE

    async def test_failed_upload_keeps_ancestor_and_retries(
        self, engine, store, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        ancestor = engine.meta_store.load()
        write_files({"a.md": "alpha, edited once"})
        store.fail_names.add("a.md")

        report = await engine.push()
        assert report.failed == ["a.md"]
        assert report.error is None
        assert engine.meta_store.load().files == ancestor.files
        assert engine.local_modified_count == 1

        store.fail_names.clear()
        report = await engine.push()
        assert report.pushed == ["a.md"]
        assert store.text_of("a.md") == "alpha, edited once"

    async def test_unreadable_file_is_kept_not_trashed(
        self, engine, store, root_id, vault, monkeypatch, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha", "b.md": "beta"})
        file_id = store.id_of("b.md")
        ancestor = engine.meta_store.load()
        write_files({"b.md": "beta, edited while locked"})
        read_text = vault.read_text

        def locked(path):
            if path == "b.md":
                raise PermissionError(path)
            return read_text(path)

        monkeypatch.setattr(vault, "read_text", locked)
        report = await engine.push()

        assert report.trashed == []
        assert report.failed == ["b.md"]
        assert report.error is None
        assert file_id in read_remote_sync_meta(store, root_id).files
        assert store.text_of("b.md") == "beta"
        local = engine.meta_store.load()
        assert local.path_to_id["b.md"] == file_id
        assert local.files[file_id] == ancestor.files[file_id]

        monkeypatch.undo()
        report = await engine.push()
        assert report.pushed == ["b.md"]
        assert store.text_of("b.md") == "beta, edited while locked"

    async def test_identical_deleted_files_are_all_trashed(
        self, engine, store, root_id, vault_root, write_files
    ):
        await _synced(
            engine, write_files, {"a.md": "same", "b.md": "same", "c.md": "other"}
        )
        (vault_root / "a.md").unlink()
        (vault_root / "b.md").unlink()

        report = await engine.push()
        assert sorted(report.trashed) == ["a.md", "b.md"]
        remote = read_remote_sync_meta(store, root_id)
        assert {r.vault_path for r in remote.files.values()} == {"c.md"}
        assert set(engine.meta_store.load().path_to_id) == {"c.md"}

    async def test_excluded_paths_are_not_pushed(self, vault, store, write_files):
        engine = SyncEngine(
            vault, store, SyncSettings(exclude_patterns=("drafts/", "*.tmp"))
        )
        write_files({"a.md": "a", "drafts/x.md": "x", "scratch.tmp": "t"})

        report = await engine.push()
        assert report.pushed == ["a.md"]

    async def test_binary_file_round_trip(self, engine, store, device, vault, write_files):
        data = b"\x89PNG\r\n\x1a\n\x00\x01"
        await _synced(engine, write_files, {"img.png": data})
        assert store.read_bytes(store.id_of("img.png")) == data

        device.push("img.png", data + b"\x02\x03")
        report = await engine.pull()
        assert report.pulled == ["img.png"]
        assert vault.read_bytes("img.png") == data + b"\x02\x03"

    async def test_index_hook_runs_after_push(self, vault, store, settings, write_files):
        calls = []

        async def hook(pushed, renamed, deleted):
            calls.append((pushed, renamed, deleted))

        engine = SyncEngine(vault, store, settings, index_hook=hook)
        await _synced(engine, write_files, {"a.md": "alpha"})
        assert calls == [(["a.md"], {}, [])]

    async def test_remote_history_recorded_for_text_edits(
        self, engine, write_files
    ):
        await _synced(engine, write_files, {"a.md": "v1\n"})
        write_files({"a.md": "v1\nv2\n"})
        await engine.push()
        await engine.drain_background()

        (entry,) = await engine.load_remote_edit_history("a.md")
        assert "+v2" in entry.diff
        assert await engine.history_content_at("a.md", entry.id) == "v1\n"

        timeline = await engine.history_timeline("a.md")
        assert timeline[0].origin is HistoryOrigin.REMOTE

        assert await engine.clear_remote_edit_history("a.md") is True
        assert await engine.load_remote_edit_history("a.md") == []

    async def test_remote_history_chain_reaches_every_version(
        self, engine, write_files
    ):
        versions = ["v1\n", "v1\nv2\n", "v1\nv2\nv3\n", "v0\nv1\nv2\nv3\n"]
        await _synced(engine, write_files, {"a.md": versions[0]})
        for version in versions[1:]:
            await _synced(engine, write_files, {"a.md": version})

        entries = await engine.load_remote_edit_history("a.md")
        assert len(entries) == 3
        for entry, before in zip(entries, versions):
            assert await engine.history_content_at("a.md", entry.id) == before

    async def test_read_remote_file(self, engine, store, write_files):
        await _synced(engine, write_files, {"a.md": "alpha"})
        file_id = store.id_of("a.md")

        assert await engine.read_remote_file(file_id) == "alpha"


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


class TestPull:
    """Tests for SyncEngine.pull()."""

    async def test_without_remote_meta_is_noop(self, engine, write_files):
        write_files({"a.md": "alpha"})
        report = await engine.pull()
        assert report.status is SyncStatus.IDLE
        assert report.pulled == []

    async def test_remote_edit_is_downloaded(self, engine, vault, device, write_files):
        await _synced(engine, write_files, {"a.md": "alpha"})
        device.push("a.md", "alpha from elsewhere")
        await engine.refresh_sync_counts()
        assert engine.remote_modified_count == 1

        report = await engine.pull()
        assert report.pulled == ["a.md"]
        assert vault.read_text("a.md") == "alpha from elsewhere"
        assert engine.remote_modified_count == 0

    async def test_new_remote_file_is_downloaded(
        self, engine, vault, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        device.push("sub/c.md", "gamma")

        report = await engine.pull()
        assert report.pulled == ["sub/c.md"]
        assert vault.read_text("sub/c.md") == "gamma"
        assert "sub/c.md" in engine.meta_store.load().path_to_id

    async def test_remote_delete_moves_local_to_trash(
        self, engine, vault, vault_root, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha", "b.md": "beta"})
        device.delete("b.md")

        report = await engine.pull()
        assert report.deleted == ["b.md"]
        assert not vault.exists("b.md")
        assert (vault_root / ".trash" / "b.md").read_text() == "beta"

    async def test_remote_rename_moves_local_file(
        self, engine, vault, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        device.rename("a.md", "moved/a.md")

        report = await engine.pull()
        assert report.renamed == [("a.md", "moved/a.md")]
        assert vault.read_text("moved/a.md") == "alpha"
        assert not vault.exists("a.md")

    async def test_local_deletion_is_not_resurrected(
        self, engine, vault, vault_root, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha", "b.md": "beta"})
        (vault_root / "b.md").unlink()

        report = await engine.pull()
        assert report.pulled == []
        assert not vault.exists("b.md")

        report = await engine.push()
        assert report.trashed == ["b.md"]

    async def test_failed_download_is_retried(
        self, engine, store, vault, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        file_id = device.push("a.md", "alpha from elsewhere")
        store.fail_ids.add(file_id)

        report = await engine.pull()
        assert report.failed == ["a.md"]
        assert vault.read_text("a.md") == "alpha"

        store.fail_ids.clear()
        report = await engine.pull()
        assert report.pulled == ["a.md"]
        assert vault.read_text("a.md") == "alpha from elsewhere"

    async def test_unreadable_file_is_not_overwritten(
        self, engine, vault, vault_root, device, monkeypatch, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha", "b.md": "beta"})
        ancestor = engine.meta_store.load()
        write_files({"b.md": "beta, edited while locked"})
        device.push("b.md", "beta from elsewhere")
        read_text = vault.read_text

        def locked(path):
            if path == "b.md":
                raise PermissionError(path)
            return read_text(path)

        monkeypatch.setattr(vault, "read_text", locked)
        report = await engine.pull()

        assert report.pulled == []
        assert report.deleted == []
        assert (vault_root / "b.md").read_text() == "beta, edited while locked"
        file_id = ancestor.path_to_id["b.md"]
        assert engine.meta_store.load().files[file_id] == ancestor.files[file_id]

    async def test_unsafe_remote_path_is_skipped(
        self, engine, vault_root, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        device.push("../escape.md", "nope")

        report = await engine.pull()
        assert report.pulled == []
        assert report.error is None
        assert not (vault_root.parent / "escape.md").exists()


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class TestConflicts:
    """Tests for conflict detection and resolution."""

    async def _conflicted(self, engine, device, write_files):
        await _synced(engine, write_files, {"a.md": "alpha"})
        write_files({"a.md": "alpha, local side"})
        device.push("a.md", "alpha, remote")
        report = await engine.pull()
        assert report.status is SyncStatus.CONFLICT
        return report

    async def test_pull_halts_on_conflict(self, engine, vault, device, write_files):
        report = await self._conflicted(engine, device, write_files)

        (conflict,) = report.conflicts
        assert conflict.file_name == "a.md"
        assert conflict.kind is ConflictKind.NORMAL
        assert engine.conflicts == report.conflicts
        assert vault.read_text("a.md") == "alpha, local side"
        assert report.ok is False

    async def test_resolve_local_keeps_local_and_backs_up_remote(
        self, engine, store, root_id, device, write_files
    ):
        report = await self._conflicted(engine, device, write_files)
        file_id = report.conflicts[0].file_id

        resolved = await engine.resolve_conflict(file_id, ConflictChoice.LOCAL)
        assert resolved.pushed == ["a.md"]
        assert store.text_of("a.md") == "alpha, local side"
        (backup,) = _backups(store, root_id)
        assert backup.name.startswith("a_")
        assert store.read_text(backup.id) == "alpha, remote"
        assert engine.conflicts == []
        assert engine.status is SyncStatus.IDLE
        assert resolved.follow_up is not None
        assert resolved.follow_up.status is SyncStatus.IDLE

    async def test_resolve_remote_takes_remote_and_backs_up_local(
        self, engine, store, root_id, vault, device, write_files
    ):
        report = await self._conflicted(engine, device, write_files)

        await engine.resolve_conflict(
            report.conflicts[0].file_id, ConflictChoice.REMOTE
        )
        assert vault.read_text("a.md") == "alpha, remote"
        (backup,) = _backups(store, root_id)
        assert store.read_text(backup.id) == "alpha, local side"

        report = await engine.push()
        assert report.ok
        assert report.pushed == []

    async def test_follow_up_pull_only_after_last_conflict(
        self, engine, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "a", "b.md": "b"})
        write_files({"a.md": "a local", "b.md": "b local"})
        device.push("a.md", "a remote")
        device.push("b.md", "b remote")
        report = await engine.pull()
        first, second = (c.file_id for c in report.conflicts)
        ancestor = engine.meta_store.load().files[second]

        resolved = await engine.resolve_conflict(first, ConflictChoice.LOCAL)
        assert resolved.follow_up is None
        assert engine.status is SyncStatus.CONFLICT
        assert engine.meta_store.load().files[second].checksum == ancestor.checksum

        resolved = await engine.resolve_conflict(second, ConflictChoice.REMOTE)
        assert resolved.follow_up is not None
        assert engine.status is SyncStatus.IDLE

    async def test_unknown_conflict_is_an_error(self, engine):
        report = await engine.resolve_conflict("nope", ConflictChoice.LOCAL)
        assert report.error == "Conflict not found: nope"
        assert engine.status is SyncStatus.ERROR

    async def test_untracked_local_file_blocks_remote_new_file(
        self, engine, store, vault, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        device.push("c.md", "remote c")
        write_files({"c.md": "local c, different"})

        report = await engine.pull()
        (conflict,) = report.conflicts
        assert conflict.file_name == "c.md"
        assert vault.read_text("c.md") == "local c, different"

        await engine.resolve_conflict(conflict.file_id, ConflictChoice.LOCAL)
        assert store.text_of("c.md") == "local c, different"

    async def test_edit_delete_resolved_local_recreates_remote(
        self, engine, store, root_id, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        write_files({"a.md": "alpha, still editing"})
        old_id = device.delete("a.md")

        report = await engine.pull()
        (conflict,) = report.conflicts
        assert conflict.kind is ConflictKind.EDIT_DELETE

        await engine.resolve_conflict(conflict.file_id, ConflictChoice.LOCAL)
        new_id = store.id_of("a.md")
        assert new_id != old_id
        remote = read_remote_sync_meta(store, root_id)
        assert remote.files[new_id].vault_path == "a.md"
        assert old_id not in remote.files

    async def test_edit_delete_resolved_remote_trashes_local(
        self, engine, store, root_id, vault, vault_root, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        write_files({"a.md": "alpha, still editing"})
        device.delete("a.md")
        report = await engine.pull()

        await engine.resolve_conflict(
            report.conflicts[0].file_id, ConflictChoice.REMOTE
        )
        assert not vault.exists("a.md")
        assert (vault_root / ".trash" / "a.md").exists()
        (backup,) = _backups(store, root_id)
        assert store.read_text(backup.id) == "alpha, still editing"
        assert "a.md" not in engine.meta_store.load().path_to_id


# ---------------------------------------------------------------------------
# Full push / full pull
# ---------------------------------------------------------------------------


class TestFullSync:
    """Tests for full_push() and full_pull()."""

    async def test_full_push_overrides_remote(
        self, engine, store, root_id, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        file_id = store.id_of("a.md")
        device.push("a.md", "alpha from elsewhere")
        device.push("c.md", "gamma")

        report = await engine.full_push()
        assert report.ok
        assert store.id_of("a.md") == file_id
        assert store.text_of("a.md") == "alpha"
        remote = read_remote_sync_meta(store, root_id)
        assert {r.vault_path for r in remote.files.values()} == {"a.md"}

    async def test_full_pull_mirrors_remote(
        self, engine, vault, vault_root, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        write_files({"a.md": "alpha, local only edit", "x.md": "extra"})

        report = await engine.full_pull()
        assert report.deleted == ["x.md"]
        assert report.pulled == ["a.md"]
        assert vault.read_text("a.md") == "alpha"
        assert (vault_root / ".trash" / "x.md").exists()
        assert engine.local_modified_count == 0

    async def test_full_pull_without_remote(self, engine, vault, write_files):
        write_files({"a.md": "alpha"})
        report = await engine.full_pull()
        assert report.ok
        assert vault.exists("a.md")


# ---------------------------------------------------------------------------
# Operation boundary and status
# ---------------------------------------------------------------------------


class TestOperationBoundary:
    """Tests for locking, error capture and pending-change listings."""

    async def test_concurrent_operation_is_skipped(self, engine, write_files):
        write_files({"a.md": "alpha"})
        reports = await asyncio.gather(engine.push(), engine.push())
        assert sorted(r.skipped for r in reports) == [False, True]
        assert not engine.is_syncing

    async def test_unexpected_error_is_captured(self, engine, store, monkeypatch):
        def boom(name):
            raise RuntimeError("drive unreachable")

        monkeypatch.setattr(store, "ensure_root_folder", boom)
        report = await engine.push()
        assert report.error == "drive unreachable"
        assert engine.status is SyncStatus.ERROR
        assert not engine.is_syncing

    async def test_file_lists(self, engine, vault_root, device, write_files):
        await _synced(engine, write_files, {"a.md": "alpha", "b.md": "beta"})
        write_files({"a.md": "alpha, edited", "new.md": "fresh"})
        (vault_root / "b.md").unlink()

        push_list = await engine.compute_sync_file_list("push")
        assert [(i.name, i.type) for i in push_list.files] == [
            ("a.md", FileChangeType.MODIFIED),
            ("b.md", FileChangeType.DELETED),
            ("new.md", FileChangeType.NEW),
        ]
        assert not push_list.has_remote_changes

        await engine.refresh_sync_counts()
        assert engine.local_modified_count == 3

    async def test_pull_list_shows_new_remote_file(
        self, engine, device, write_files
    ):
        await _synced(engine, write_files, {"a.md": "alpha"})
        device.push("c.md", "gamma")

        pull_list = await engine.compute_sync_file_list("pull")
        assert [(i.name, i.type) for i in pull_list.files] == [
            ("c.md", FileChangeType.NEW)
        ]
        assert pull_list.has_remote_changes

    async def test_invalid_direction(self, engine):
        with pytest.raises(ValueError):
            await engine.compute_sync_file_list("sideways")

    async def test_read_remote_file_by_path(self, engine, write_files):
        await _synced(engine, write_files, {"a.md": "alpha"})
        assert await engine.read_remote_file_by_path("a.md") == "alpha"
        assert await engine.read_remote_file_by_path("none.md") is None
