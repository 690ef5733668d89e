"""Sync-diff computer and local change detection.

``compute_sync_diff`` is the three-way classifier. For every file id it
compares the live local state (summarised as "locally modified or not")
and the current remote record against the ancestor stored in local meta.
Ids are visited in sorted order so the output never depends on dict
iteration order.

``find_locally_modified`` produces that summary from a checksum scan and
also pairs disappeared and newly appeared paths with identical content
into renames, which are handled as metadata moves instead of delete + new.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass, field

from vault_drive_sync.sync.models import (
    ConflictInfo,
    LocalSyncMeta,
    RemoteSyncMeta,
    SyncDiff,
)
from vault_drive_sync.sync.paths import SYNC_META_FILE_NAME

SYSTEM_FILE_NAMES = frozenset({SYNC_META_FILE_NAME, "settings.json"})


def compute_sync_diff(
    local_meta: LocalSyncMeta | None,
    remote_meta: RemoteSyncMeta | None,
    locally_modified_ids: set[str] | frozenset[str] = frozenset(),
) -> SyncDiff:
    """Classify every known file id.

    Args:
        local_meta: Ancestor state; None behaves as empty.
        remote_meta: Current remote state; None means first sync.
        locally_modified_ids: Ids whose live checksum differs from the
            ancestor checksum.

    Returns:
        The ``SyncDiff`` for this pass. With no remote meta every locally
        known id is ``to_push``.
    """
    local_files = local_meta.files if local_meta else {}

    if remote_meta is None:
        return SyncDiff(
            to_push=sorted(set(local_files) | set(locally_modified_ids))
        )

    remote_files = remote_meta.files
    all_ids = (
        set(local_files)
        | {
            fid
            for fid, rec in remote_files.items()
            if rec.name not in SYSTEM_FILE_NAMES
        }
        | set(locally_modified_ids)
    )

    to_push: list[str] = []
    to_pull: list[str] = []
    local_only: list[str] = []
    remote_only: list[str] = []
    conflicts: list[ConflictInfo] = []
    edit_delete: list[str] = []

    for file_id in sorted(all_ids):
        local = local_files.get(file_id)
        remote = remote_files.get(file_id)
        local_changed = file_id in locally_modified_ids
        has_local = local is not None or local_changed

        remote_changed = False
        if local is not None and remote is not None:
            remote_changed = local.checksum != remote.checksum or (
                local.name is not None and local.name != remote.name
            )

        if has_local and remote is None:
            if local_changed and local is not None:
                edit_delete.append(file_id)
            else:
                local_only.append(file_id)
        elif not has_local and remote is not None:
            remote_only.append(file_id)
        elif local_changed and remote_changed:
            conflicts.append(
                ConflictInfo(
                    file_id=file_id,
                    file_name=remote.name if remote else file_id,
                    local_checksum=local.checksum if local else "",
                    remote_checksum=remote.checksum if remote else "",
                    local_modified_time=local.modified_time if local else "",
                    remote_modified_time=(
                        remote.modified_time if remote else ""
                    ),
                )
            )
        elif local_changed:
            to_push.append(file_id)
        elif remote_changed:
            to_pull.append(file_id)

    return SyncDiff(
        to_push=to_push,
        to_pull=to_pull,
        local_only=local_only,
        remote_only=remote_only,
        conflicts=conflicts,
        edit_delete_conflicts=edit_delete,
    )


# ---------------------------------------------------------------------------
# Local change detection
# ---------------------------------------------------------------------------


@dataclass
class LocalChanges:
    """Local changes relative to the ancestor.

    Attributes:
        modified_ids: Tracked ids whose live checksum differs.
        new_paths: Untracked paths that are not the target of a rename.
        renames: Old path -> new path for content-preserving moves.
        deleted_ids: Tracked ids whose file is gone and was not renamed.
        unreadable_ids: Tracked ids whose file is listed but could not be
            read this pass. They are neither modified nor deleted.
    """

    modified_ids: set[str] = field(default_factory=set)
    new_paths: list[str] = field(default_factory=list)
    renames: dict[str, str] = field(default_factory=dict)
    deleted_ids: set[str] = field(default_factory=set)
    unreadable_ids: set[str] = field(default_factory=set)

    def renamed_ids(self, local_meta: LocalSyncMeta) -> set[str]:
        """File ids of the renamed paths."""
        return {
            local_meta.path_to_id[old]
            for old in self.renames
            if old in local_meta.path_to_id
        }


def find_locally_modified(
    local_meta: LocalSyncMeta,
    checksums: dict[str, str],
    listed: Collection[str] | None = None,
) -> LocalChanges:
    """Compare a checksum scan against the ancestor state.

    Args:
        local_meta: Ancestor state.
        checksums: Path -> checksum of every file that could be read.
        listed: Every path present on disk, readable or not. A tracked path
            that is listed but has no checksum is unreadable, not deleted.
    """
    changes = LocalChanges()
    listed = checksums if listed is None else listed
    # checksum -> [(file_id, old_path)] of tracked files no longer on disk
    disappeared: dict[str, list[tuple[str, str]]] = {}

    for path in sorted(local_meta.path_to_id):
        file_id = local_meta.path_to_id[path]
        entry = local_meta.files.get(file_id)
        tracked = entry.checksum if entry else ""
        current = checksums.get(path)
        if current is None and path in listed:
            changes.unreadable_ids.add(file_id)
        elif current is None and tracked:
            disappeared.setdefault(tracked, []).append((file_id, path))
        elif current is not None and tracked and current != tracked:
            changes.modified_ids.add(file_id)

    for path in sorted(checksums):
        if path in local_meta.path_to_id:
            continue
        candidates = disappeared.get(checksums[path])
        if candidates:
            _, old_path = candidates.pop(0)
            changes.renames[old_path] = path
        else:
            changes.new_paths.append(path)

    changes.deleted_ids = {
        file_id for candidates in disappeared.values() for file_id, _ in candidates
    }
    return changes


def find_missing_local_files(
    local_meta: LocalSyncMeta,
    remote_meta: RemoteSyncMeta | None,
    checksums: dict[str, str],
    diff: SyncDiff,
    renames: dict[str, str] | None = None,
    deleted_ids: set[str] | None = None,
    unreadable_ids: set[str] | None = None,
) -> list[str]:
    """Tracked, unchanged files that vanished from disk without intent.

    These are re-downloaded on pull. Ids already classified by ``diff``,
    intentionally deleted ids, unreadable ids and rename sources are
    excluded.
    """
    if remote_meta is None:
        return []
    renames = renames or {}
    skipped = (deleted_ids or set()) | (unreadable_ids or set())
    id_to_path = build_id_to_path(local_meta)
    handled = diff.handled_ids()

    missing: list[str] = []
    for file_id in sorted(remote_meta.files):
        if file_id in handled or file_id in skipped:
            continue
        if file_id not in local_meta.files:
            continue
        path = id_to_path.get(file_id) or remote_meta.files[file_id].vault_path
        if not path or path in renames:
            continue
        if path not in checksums:
            missing.append(file_id)
    return missing


def build_id_to_path(local_meta: LocalSyncMeta) -> dict[str, str]:
    """Reverse of ``path_to_id``."""
    return {fid: path for path, fid in local_meta.path_to_id.items()}
