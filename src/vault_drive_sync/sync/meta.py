"""Sync metadata persistence for both sides.

Two JSON documents carry the sync state:

* **Remote meta** (``_sync-meta.json`` in the root Drive folder) is the
  authoritative file set, read fresh on every operation and rewritten
  after every successful push.
* **Local meta** (``{workspace}/drive-sync-meta.json`` in the vault) is the
  ancestor state per file id plus the ``pathToId`` index.

Key design choices:

* **Stage, then commit** -- callers mutate deep copies during a sync pass
  and persist once at the end, remote first, then local.
* **Ancestor only advances on success** -- ``to_local_sync_meta`` keeps the
  previous entry for ids whose transfer failed this pass.
* **Corrupt local meta is survivable** -- it is logged and treated as
  empty, which degrades to a first sync rather than a crash.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Mapping

from pydantic import ValidationError

from vault_drive_sync.sync.models import (
    DriveFile,
    LocalFileEntry,
    LocalSyncMeta,
    RemoteFileRecord,
    RemoteSyncMeta,
    utc_now_iso,
)
from vault_drive_sync.sync.paths import SYNC_META_FILE_NAME
from vault_drive_sync.vault import VaultAdapter, VaultFile

if TYPE_CHECKING:
    from vault_drive_sync.core.store import RemoteStore

logger = logging.getLogger(__name__)

LOCAL_META_FILE_NAME = "drive-sync-meta.json"
CONFLICT_FOLDER_NAME = "sync_conflicts"


# ---------------------------------------------------------------------------
# Local meta
# ---------------------------------------------------------------------------


class LocalMetaStore:
    """Load and save the local sync meta inside the vault.

    Args:
        vault: Vault holding the meta file.
        workspace_folder: Vault folder the meta file lives in.
    """

    def __init__(self, vault: VaultAdapter, workspace_folder: str) -> None:
        self.vault = vault
        self.workspace_folder = workspace_folder.strip("/")

    @property
    def path(self) -> str:
        return f"{self.workspace_folder}/{LOCAL_META_FILE_NAME}"

    def load(self) -> LocalSyncMeta:
        """Read the local meta.

        Returns:
            The parsed meta, or an empty one when the file is missing or
            unreadable.
        """
        try:
            if not self.vault.exists(self.path):
                return LocalSyncMeta()
            return LocalSyncMeta.model_validate_json(
                self.vault.read_text(self.path)
            )
        except (OSError, ValueError, ValidationError) as exc:
            logger.error("Failed to read local sync meta: %s", exc)
            return LocalSyncMeta()

    def save(self, meta: LocalSyncMeta) -> None:
        if not self.vault.exists(self.workspace_folder):
            self.vault.mkdir(self.workspace_folder)
        self.vault.write_text(
            self.path,
            json.dumps(
                meta.model_dump(by_alias=True, exclude_none=True), indent=2
            ),
        )


# ---------------------------------------------------------------------------
# Remote meta
# ---------------------------------------------------------------------------


def read_remote_sync_meta(
    store: RemoteStore, root_folder_id: str
) -> RemoteSyncMeta | None:
    """Fetch ``_sync-meta.json`` from the root folder.

    Returns:
        The parsed meta, or None when it does not exist or cannot be parsed.
    """
    meta_file = store.find_file_by_name(SYNC_META_FILE_NAME, root_folder_id)
    if meta_file is None:
        return None
    try:
        return RemoteSyncMeta.model_validate_json(
            store.read_text(meta_file.id)
        )
    except (ValueError, ValidationError) as exc:
        logger.error("Failed to parse remote sync meta: %s", exc)
        return None


def write_remote_sync_meta(
    store: RemoteStore, root_folder_id: str, meta: RemoteSyncMeta
) -> None:
    content = json.dumps(
        meta.model_dump(by_alias=True, exclude_none=True), indent=2
    )
    meta_file = store.find_file_by_name(SYNC_META_FILE_NAME, root_folder_id)
    if meta_file is not None:
        store.update_file(meta_file.id, content, "application/json")
    else:
        store.create_file(
            SYNC_META_FILE_NAME, content, root_folder_id, "application/json"
        )


def record_from_drive_file(
    drive_file: DriveFile, vault_path: str | None = None
) -> RemoteFileRecord:
    return RemoteFileRecord(
        name=drive_file.name,
        path=vault_path,
        mime_type=drive_file.mime_type,
        checksum=drive_file.md5_checksum or "",
        modified_time=drive_file.modified_time or "",
        created_time=drive_file.created_time,
    )


def rebuild_sync_meta(
    store: RemoteStore, root_folder_id: str, persist: bool = True
) -> RemoteSyncMeta:
    """Rebuild remote meta from a full listing of the root folder.

    Vault paths recorded in the previous meta are kept for ids that still
    exist.

    Args:
        store: Remote store.
        root_folder_id: Root Drive folder id.
        persist: Write the rebuilt meta back to Drive.
    """
    existing = read_remote_sync_meta(store, root_folder_id)
    meta = RemoteSyncMeta(last_updated_at=utc_now_iso())
    for drive_file in store.list_user_files(root_folder_id):
        prev = existing.files.get(drive_file.id) if existing else None
        meta.files[drive_file.id] = record_from_drive_file(
            drive_file, prev.path if prev else None
        )
    if persist:
        write_remote_sync_meta(store, root_folder_id, meta)
    return meta


def upsert_file_in_meta(
    meta: RemoteSyncMeta, drive_file: DriveFile, vault_path: str | None = None
) -> None:
    meta.files[drive_file.id] = record_from_drive_file(drive_file, vault_path)
    meta.last_updated_at = utc_now_iso()


def remove_file_from_meta(meta: RemoteSyncMeta, file_id: str) -> None:
    meta.files.pop(file_id, None)
    meta.last_updated_at = utc_now_iso()


# ---------------------------------------------------------------------------
# Conflict backups
# ---------------------------------------------------------------------------


def conflict_backup_name(file_name: str, when: datetime | None = None) -> str:
    """Flattened backup name with a timestamp before the extension.

    ``notes/a.md`` at 2024-05-01 12:30:00 UTC becomes
    ``notes_a_20240501_123000.md``.
    """
    when = when or datetime.now(timezone.utc)
    stamp = when.strftime("%Y%m%d_%H%M%S")
    safe = file_name.replace("/", "_")
    dot = safe.rfind(".")
    if dot > 0:
        return f"{safe[:dot]}_{stamp}{safe[dot:]}"
    return f"{safe}_{stamp}"


def save_conflict_backup(
    store: RemoteStore,
    root_folder_id: str,
    file_name: str,
    content: str | bytes,
) -> DriveFile:
    """Store the losing side of a conflict in ``sync_conflicts/``."""
    folder_id = store.ensure_subfolder(root_folder_id, CONFLICT_FOLDER_NAME)
    mime_type = (
        "application/octet-stream" if isinstance(content, bytes) else "text/plain"
    )
    backup = store.create_file(
        conflict_backup_name(file_name), content, folder_id, mime_type
    )
    logger.info("Saved conflict backup %s", backup.name)
    return backup


# ---------------------------------------------------------------------------
# Remote -> local
# ---------------------------------------------------------------------------


def to_local_sync_meta(
    remote_meta: RemoteSyncMeta,
    existing: LocalSyncMeta | None,
    stats: Mapping[str, VaultFile] | None = None,
    checksums: Mapping[str, str] | None = None,
    preserve_ids: Iterable[str] = (),
) -> LocalSyncMeta:
    """Derive the new local meta from remote meta after an operation.

    Args:
        remote_meta: Remote meta as it will be committed.
        existing: Local meta before the operation.
        stats: Vault stats per path, recorded as the checksum cache key.
        checksums: Live checksums per path. When given, stats are recorded
            only for paths whose live checksum equals the remote one.
        preserve_ids: Ids whose transfer failed; their previous entry and
            path mapping are kept unchanged.

    Returns:
        A fresh ``LocalSyncMeta`` whose ``pathToId`` only references ids
        present in ``files``.
    """
    stats = stats or {}
    preserved = set(preserve_ids)
    files: dict[str, LocalFileEntry] = {}
    path_to_id: dict[str, str] = {}
    old_files = existing.files if existing else {}
    old_paths = existing.path_to_id if existing else {}

    for path, file_id in old_paths.items():
        if file_id in preserved and file_id in old_files:
            path_to_id[path] = file_id
            files[file_id] = old_files[file_id]

    for file_id, record in remote_meta.files.items():
        if file_id in preserved:
            continue
        vault_path = record.vault_path
        previous = old_files.get(file_id)
        stat = stats.get(vault_path)
        if checksums is not None and checksums.get(vault_path) != record.checksum:
            stat = None

        cached_mtime = cached_size = None
        if stat is not None:
            cached_mtime, cached_size = stat.mtime, stat.size
        elif previous is not None and previous.checksum == record.checksum:
            cached_mtime, cached_size = (
                previous.cached_mtime,
                previous.cached_size,
            )

        files[file_id] = LocalFileEntry(
            checksum=record.checksum,
            modified_time=record.modified_time,
            name=record.name,
            cached_mtime=cached_mtime,
            cached_size=cached_size,
        )
        for old_path in [p for p, i in path_to_id.items() if i == file_id]:
            del path_to_id[old_path]
        path_to_id[vault_path] = file_id

    return LocalSyncMeta(
        last_updated_at=remote_meta.last_updated_at,
        files=files,
        path_to_id=path_to_id,
    )
