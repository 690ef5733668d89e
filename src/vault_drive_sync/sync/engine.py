"""Sync orchestrator between a local vault and a Drive folder.

The ``SyncEngine`` ties together the checksum scan, the three-way diff,
batched transfers and the two metadata documents. Every public operation:

1. Declines to start when another operation holds the sync lock.
2. Loads local meta (ancestor state) and fresh remote meta.
3. Scans the vault and classifies every file id.
4. Transfers files in sequential batches of concurrent calls.
5. Stages all metadata changes on copies and commits them at the end,
   remote meta first, then local meta.
6. Returns a ``SyncReport``; failures end up in ``last_error`` and the
   ``error`` status instead of propagating.

Error handling is per-file: a failed upload or download is logged, reported
in ``failed`` and its ancestor entry is preserved so it is retried on the
next pass.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from vault_drive_sync.core.async_utils import (
    run_in_batches,
    run_sync,
    spawn_background,
)
from vault_drive_sync.errors import (
    ConflictNotFoundError,
    PushRejectedError,
    RemoteMetaMissingError,
    VaultSyncError,
)
from vault_drive_sync.sync.checksum import ChecksumScan, compute_vault_checksums
from vault_drive_sync.sync.diff import (
    LocalChanges,
    build_id_to_path,
    compute_sync_diff,
    find_locally_modified,
    find_missing_local_files,
)
from vault_drive_sync.sync.history import EditHistoryManager, content_at, merge_timeline
from vault_drive_sync.sync.housekeeping import TRASH_FOLDER_NAME, RemoteHousekeeping
from vault_drive_sync.sync.meta import (
    LocalMetaStore,
    read_remote_sync_meta,
    remove_file_from_meta,
    save_conflict_backup,
    to_local_sync_meta,
    upsert_file_in_meta,
    write_remote_sync_meta,
)
from vault_drive_sync.sync.models import (
    ConflictChoice,
    ConflictInfo,
    ConflictKind,
    EditHistoryEntry,
    EditSource,
    FileChangeType,
    LocalSyncMeta,
    RemoteSyncMeta,
    SyncDiff,
    SyncFileList,
    SyncFileListItem,
    SyncOperation,
    SyncReport,
    SyncStatus,
    TimelineEntry,
    utc_now_iso,
)
from vault_drive_sync.sync.patch import DEFAULT_CONTEXT_LINES, DEFAULT_DRIFT_TOLERANCE
from vault_drive_sync.sync.paths import (
    get_mime_type,
    is_binary_extension,
    make_exclude_predicate,
)
from vault_drive_sync.sync.remote_history import RemoteEditHistory
from vault_drive_sync.vault import VaultAdapter, VaultFile, is_valid_vault_path

if TYPE_CHECKING:
    from vault_drive_sync.core.store import RemoteStore

logger = logging.getLogger(__name__)

IndexHook = Callable[[list[str], dict[str, str], list[str]], Awaitable[None]]
"""Called after a push with (uploaded paths, renames old->new, deleted paths)."""


@dataclass(frozen=True)
class SyncSettings:
    """Tunables for one engine instance.

    Attributes:
        root_folder_name: Name of the Drive folder holding the vault.
        workspace_folder: Vault folder for local meta (never synced).
        config_dir: Host configuration folder (never synced).
        exclude_patterns: User exclusion globs and folder prefixes.
        concurrency: Transfers per batch.
        drift_tolerance: Line drift allowed when replaying history diffs.
        context_lines: Context lines kept around history diff hunks.
        history_enabled: Record local edit history.
    """

    root_folder_name: str = "vault-drive-sync"
    workspace_folder: str = ".vault_sync"
    config_dir: str | None = None
    exclude_patterns: tuple[str, ...] = ()
    concurrency: int = 5
    drift_tolerance: int = DEFAULT_DRIFT_TOLERANCE
    context_lines: int = DEFAULT_CONTEXT_LINES
    history_enabled: bool = True


@dataclass
class _Progress:
    """Mutable collector turned into a ``SyncReport`` at the end."""

    pushed: list[str] = field(default_factory=list)
    pulled: list[str] = field(default_factory=list)
    renamed: list[tuple[str, str]] = field(default_factory=list)
    trashed: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    conflicts: list[ConflictInfo] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)

    def report(
        self, operation: SyncOperation, status: SyncStatus, error: str | None
    ) -> SyncReport:
        return SyncReport(
            operation=operation,
            status=status,
            pushed=sorted(self.pushed),
            pulled=sorted(self.pulled),
            renamed=self.renamed,
            trashed=sorted(self.trashed),
            deleted=sorted(self.deleted),
            failed=sorted(self.failed),
            conflicts=self.conflicts,
            error=error,
            started_at=self.started_at,
            completed_at=utc_now_iso(),
        )


@dataclass
class _SyncState:
    """Everything one pass needs after scanning and classifying."""

    local_meta: LocalSyncMeta
    remote_meta: RemoteSyncMeta | None
    scan: ChecksumScan
    changes: LocalChanges
    diff: SyncDiff

    @property
    def id_to_path(self) -> dict[str, str]:
        return build_id_to_path(self.local_meta)


@dataclass
class _Upload:
    path: str
    old_content: str | None
    new_content: str | None


class SyncEngine:
    """Push/pull orchestrator with conflict tracking.

    Args:
        vault: Local file tree.
        store: Remote store (``DriveClient`` in production).
        settings: Engine tunables.
        history: Local edit history manager; one is created if omitted.
        index_hook: Optional coroutine run in the background after a push.
    """

    def __init__(
        self,
        vault: VaultAdapter,
        store: RemoteStore,
        settings: SyncSettings | None = None,
        history: EditHistoryManager | None = None,
        index_hook: IndexHook | None = None,
    ) -> None:
        self.vault = vault
        self.store = store
        self.settings = settings or SyncSettings()
        self.history = history or EditHistoryManager(
            vault,
            enabled=self.settings.history_enabled,
            context_lines=self.settings.context_lines,
            drift_tolerance=self.settings.drift_tolerance,
        )
        self.index_hook = index_hook
        self.meta_store = LocalMetaStore(vault, self.settings.workspace_folder)
        self.is_excluded = make_exclude_predicate(
            self.settings.exclude_patterns,
            self.settings.config_dir,
            self.settings.workspace_folder,
        )

        self.status = SyncStatus.IDLE
        self.last_error: str | None = None
        self.conflicts: list[ConflictInfo] = []
        self.local_modified_count = 0
        self.remote_modified_count = 0

        self._sync_lock = False
        self._background: set[asyncio.Task] = set()
        self._root_folder_id: str | None = None

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock

    @property
    def housekeeping(self) -> RemoteHousekeeping:
        return RemoteHousekeeping(
            self.vault, self.store, self.meta_store, self.root_folder_id
        )

    async def root_folder_id(self) -> str:
        """Resolve (and cache) the root Drive folder id."""
        if self._root_folder_id is None:
            self._root_folder_id = await run_sync(
                self.store.ensure_root_folder, self.settings.root_folder_name
            )
        return self._root_folder_id

    async def drain_background(self) -> None:
        """Wait for background side tasks to finish."""
        while self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Operation boundary
    # ------------------------------------------------------------------

    async def _run(
        self,
        operation: SyncOperation,
        busy_status: SyncStatus | None,
        body: Callable[[_Progress], Awaitable[None]],
    ) -> SyncReport:
        if self._sync_lock:
            logger.warning(
                "%s skipped: sync already in progress", operation.value
            )
            return SyncReport(
                operation=operation, status=self.status, skipped=True
            )

        self._sync_lock = True
        if busy_status is not None:
            self.status = busy_status
        self.last_error = None
        progress = _Progress()
        logger.info("Sync %s started", operation.value)
        try:
            await body(progress)
        except VaultSyncError as exc:
            logger.warning("Sync %s failed: %s", operation.value, exc)
            self.last_error = str(exc)
            self.status = SyncStatus.ERROR
        except Exception as exc:
            logger.exception("Sync %s failed", operation.value)
            self.last_error = str(exc) or type(exc).__name__
            self.status = SyncStatus.ERROR
        finally:
            self._sync_lock = False

        await self.refresh_sync_counts()
        report = progress.report(operation, self.status, self.last_error)
        logger.info(
            "Sync %s finished: %s", operation.value, self.status.value
        )
        return report

    # ------------------------------------------------------------------
    # Scanning and classification
    # ------------------------------------------------------------------

    def _vault_files(self) -> list[VaultFile]:
        meta_path = self.meta_store.path
        return [
            f
            for f in self.vault.list_files()
            if f.path != meta_path and not self.is_excluded(f.path)
        ]

    async def _scan(self, local_meta: LocalSyncMeta | None) -> ChecksumScan:
        files = await run_sync(self._vault_files)
        return await compute_vault_checksums(
            self.vault, files, local_meta, self.settings.concurrency
        )

    async def _load_state(self, root_id: str) -> _SyncState:
        local_meta = await run_sync(self.meta_store.load)
        remote_meta = await run_sync(
            read_remote_sync_meta, self.store, root_id
        )
        scan = await self._scan(local_meta)
        changes = find_locally_modified(local_meta, scan.checksums, scan.stats)
        diff = compute_sync_diff(local_meta, remote_meta, changes.modified_ids)
        return _SyncState(local_meta, remote_meta, scan, changes, diff)

    def _resolve_path(self, state: _SyncState, file_id: str) -> str | None:
        path = state.id_to_path.get(file_id)
        if path:
            return path
        if state.remote_meta is not None and file_id in state.remote_meta.files:
            return state.remote_meta.files[file_id].vault_path
        return None

    def _excluded_id(self, state: _SyncState, file_id: str) -> bool:
        path = self._resolve_path(state, file_id)
        return path is not None and self.is_excluded(path)

    @staticmethod
    def _remote_deleted_ids(state: _SyncState) -> list[str]:
        renamed = state.changes.renamed_ids(state.local_meta)
        return [
            fid
            for fid in state.diff.local_only
            if fid in state.local_meta.files and fid not in renamed
        ]

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def _read_local(self, path: str) -> str | bytes:
        if is_binary_extension(path):
            return await run_sync(self.vault.read_bytes, path)
        return await run_sync(self.vault.read_text, path)

    async def _read_remote(self, file_id: str, path: str) -> str | bytes:
        if is_binary_extension(path):
            return await run_sync(self.store.read_bytes, file_id)
        return await run_sync(self.store.read_text, file_id)

    async def _write_local(self, path: str, content: str | bytes) -> None:
        if isinstance(content, bytes):
            await run_sync(self.vault.write_bytes, path, content)
        else:
            await run_sync(self.vault.write_text, path, content)

    async def _previous_content(self, path: str, file_id: str) -> str | None:
        """Content before this push: from local history, else from Drive."""
        entries = self.history.get_history(path)
        if entries:
            content = self.history.get_content_at(path, entries[0].id)
            if content is not None:
                return content
        try:
            return await run_sync(self.store.read_text, file_id)
        except Exception as exc:
            logger.debug("Old content read failed for %s: %s", path, exc)
            return None

    async def _upload(
        self,
        root_id: str,
        path: str,
        existing_id: str | None,
        staged: RemoteSyncMeta,
    ) -> _Upload:
        """Upload one vault file and stage its new remote record."""
        mime_type = get_mime_type(path)
        binary = is_binary_extension(path)
        old_content: str | None = None
        if existing_id and not binary:
            old_content = await self._previous_content(path, existing_id)

        content = await self._read_local(path)
        if existing_id:
            drive_file = await run_sync(
                self.store.update_file, existing_id, content, mime_type
            )
        else:
            drive_file = await run_sync(
                self.store.create_file, path, content, root_id, mime_type
            )
        upsert_file_in_meta(staged, drive_file, path)
        return _Upload(
            path,
            old_content,
            None if isinstance(content, bytes) else content,
        )

    async def _download(self, file_id: str, remote_meta: RemoteSyncMeta) -> str:
        """Download one remote file into the vault. Returns its vault path."""
        record = remote_meta.files[file_id]
        path = record.vault_path
        content = await self._read_remote(file_id, path)
        await self._write_local(path, content)
        return path

    def _downloadable(self, record_path: str) -> bool:
        if not is_valid_vault_path(record_path):
            logger.warning("Skipping unsafe remote path: %s", record_path)
            return False
        return not self.is_excluded(record_path)

    async def _commit(
        self,
        root_id: str,
        local_meta: LocalSyncMeta | None,
        remote_meta: RemoteSyncMeta,
        preserve_ids: Iterable[str] = (),
        write_remote: bool = True,
    ) -> None:
        """Persist staged metadata: remote first, then local."""
        if write_remote:
            remote_meta.last_updated_at = utc_now_iso()
            await run_sync(
                write_remote_sync_meta, self.store, root_id, remote_meta
            )
        scan = await self._scan(local_meta)
        new_local = to_local_sync_meta(
            remote_meta,
            local_meta,
            scan.stats,
            scan.checksums,
            preserve_ids,
        )
        await run_sync(self.meta_store.save, new_local)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push(self) -> SyncReport:
        """Upload local changes.

        Rejected without any mutation when the remote has changes that have
        not been pulled yet.
        """
        return await self._run(
            SyncOperation.PUSH, SyncStatus.PUSHING, self._push
        )

    async def _push(self, progress: _Progress) -> None:
        root_id = await self.root_folder_id()
        state = await self._load_state(root_id)
        diff = state.diff
        if (
            diff.conflicts
            or diff.edit_delete_conflicts
            or diff.to_pull
            or diff.remote_only
            or self._remote_deleted_ids(state)
        ):
            raise PushRejectedError()

        local_meta = state.local_meta
        staged = (
            state.remote_meta.model_copy(deep=True)
            if state.remote_meta is not None
            else RemoteSyncMeta(last_updated_at=utc_now_iso())
        )
        id_to_path = state.id_to_path
        # Unreadable files keep their ancestor and remote record untouched
        failed_ids: set[str] = set(state.changes.unreadable_ids)
        progress.failed.extend(
            sorted(id_to_path[fid] for fid in failed_ids if fid in id_to_path)
        )

        # Renames: metadata only, no content transfer
        for old_path, new_path in state.changes.renames.items():
            file_id = local_meta.path_to_id[old_path]
            try:
                drive_file = await run_sync(
                    self.store.rename_file, file_id, new_path
                )
            except Exception as exc:
                logger.warning("Rename %s -> %s failed: %s", old_path, new_path, exc)
                failed_ids.add(file_id)
                progress.failed.append(old_path)
                continue
            upsert_file_in_meta(staged, drive_file, new_path)
            self.history.handle_file_rename(old_path, new_path)
            progress.renamed.append((old_path, new_path))

        # Uploads: modified tracked files, then new files
        targets: list[tuple[str, str | None]] = [
            (id_to_path[fid], fid)
            for fid in diff.to_push
            if fid in id_to_path and id_to_path[fid] in state.scan.checksums
        ]
        targets.extend((path, None) for path in state.changes.new_paths)

        async def _one(target: tuple[str, str | None]) -> _Upload | None:
            path, existing_id = target
            try:
                return await self._upload(root_id, path, existing_id, staged)
            except Exception as exc:
                logger.warning("Upload of %s failed: %s", path, exc)
                progress.failed.append(path)
                if existing_id:
                    failed_ids.add(existing_id)
                return None

        uploads = [
            u
            for u in await run_in_batches(
                targets, _one, self.settings.concurrency
            )
            if u is not None
        ]
        progress.pushed.extend(u.path for u in uploads)

        # Local deletions go to the remote trash folder, never hard-deleted
        trash_ids = sorted(state.changes.deleted_ids)
        if trash_ids:
            trash_id = await run_sync(
                self.store.ensure_subfolder, root_id, TRASH_FOLDER_NAME
            )
            for file_id in trash_ids:
                path = id_to_path.get(file_id)
                if not path:
                    continue
                try:
                    await run_sync(
                        self.store.move_file, file_id, trash_id, root_id
                    )
                except Exception as exc:
                    logger.warning("Failed to trash %s on Drive: %s", path, exc)
                    failed_ids.add(file_id)
                    progress.failed.append(path)
                    continue
                remove_file_from_meta(staged, file_id)
                progress.trashed.append(path)

        await self._commit(root_id, local_meta, staged, failed_ids)

        for path in [*progress.pushed, *progress.trashed]:
            self.history.forget(path)

        changed_texts = [
            u
            for u in uploads
            if u.old_content is not None
            and u.new_content is not None
            and u.old_content != u.new_content
        ]
        if changed_texts:
            spawn_background(
                self._save_remote_history(root_id, changed_texts),
                "remote-edit-history",
                self._background,
            )
        if self.index_hook is not None:
            spawn_background(
                self.index_hook(
                    list(progress.pushed),
                    dict(progress.renamed),
                    list(progress.trashed),
                ),
                "index-sync",
                self._background,
            )
        self.status = SyncStatus.IDLE

    async def _save_remote_history(
        self, root_id: str, uploads: list[_Upload]
    ) -> None:
        remote = RemoteEditHistory(
            self.store, root_id, self.settings.context_lines
        )
        await run_sync(remote.ensure_folder)

        async def _one(upload: _Upload) -> None:
            await run_sync(
                remote.save_edit,
                upload.path,
                upload.old_content,
                upload.new_content,
                EditSource.MANUAL,
            )

        await run_in_batches(uploads, _one, self.settings.concurrency)

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def pull(self) -> SyncReport:
        """Download remote changes, halting on any conflict."""
        return await self._run(
            SyncOperation.PULL, SyncStatus.PULLING, self._pull
        )

    async def _pull(self, progress: _Progress) -> None:
        root_id = await self.root_folder_id()
        state = await self._load_state(root_id)
        remote_meta = state.remote_meta
        if remote_meta is None:
            logger.info("No remote data found; push first")
            self.status = SyncStatus.IDLE
            return

        local_meta = state.local_meta
        diff = state.diff
        checksums = state.scan.checksums
        id_to_path = state.id_to_path
        missing = find_missing_local_files(
            local_meta,
            remote_meta,
            checksums,
            diff,
            state.changes.renames,
            state.changes.deleted_ids,
            state.changes.unreadable_ids,
        )

        # Untracked local files a remote-only file would overwrite
        safe_remote_only: list[str] = []
        conflicts = list(diff.conflicts)
        for file_id in diff.remote_only:
            record = remote_meta.files[file_id]
            live = checksums.get(record.vault_path)
            if live and live != record.checksum:
                conflicts.append(
                    ConflictInfo(
                        file_id=file_id,
                        file_name=record.vault_path,
                        local_checksum=live,
                        remote_checksum=record.checksum,
                        remote_modified_time=record.modified_time,
                    )
                )
            else:
                safe_remote_only.append(file_id)

        for file_id in diff.edit_delete_conflicts:
            entry = local_meta.files.get(file_id)
            conflicts.append(
                ConflictInfo(
                    file_id=file_id,
                    file_name=id_to_path.get(file_id, file_id),
                    local_checksum=entry.checksum if entry else "",
                    local_modified_time=entry.modified_time if entry else "",
                    kind=ConflictKind.EDIT_DELETE,
                )
            )

        if conflicts:
            self.conflicts = conflicts
            progress.conflicts.extend(conflicts)
            self.status = SyncStatus.CONFLICT
            logger.info("Pull halted: %d conflict(s)", len(conflicts))
            return

        preserve: set[str] = set(state.changes.unreadable_ids)

        # Files deleted on the remote
        for file_id in diff.local_only:
            path = id_to_path.get(file_id)
            if not path or file_id in preserve:
                continue
            try:
                if await run_sync(self.vault.exists, path):
                    await run_sync(self.vault.trash, path)
            except Exception as exc:
                logger.warning("Failed to remove %s: %s", path, exc)
                preserve.add(file_id)
                progress.failed.append(path)
                continue
            self.history.forget(path)
            progress.deleted.append(path)

        to_fetch = [*diff.to_pull, *missing, *safe_remote_only]
        for file_id in to_fetch:
            if not self._downloadable(remote_meta.files[file_id].vault_path):
                preserve.add(file_id)

        async def _one(file_id: str) -> None:
            if file_id in preserve:
                return
            try:
                path = await self._download(file_id, remote_meta)
            except Exception as exc:
                logger.warning("Download of %s failed: %s", file_id, exc)
                preserve.add(file_id)
                progress.failed.append(remote_meta.files[file_id].vault_path)
                return
            progress.pulled.append(path)
            self.history.forget(path)
            # Remote rename: the old local copy goes after the new one landed
            old_path = id_to_path.get(file_id)
            if old_path and old_path != path:
                if await run_sync(self.vault.exists, old_path):
                    await run_sync(self.vault.trash, old_path)
                self.history.forget(old_path)
                progress.renamed.append((old_path, path))

        await run_in_batches(to_fetch, _one, self.settings.concurrency)

        await self._commit(
            root_id, local_meta, remote_meta, preserve, write_remote=False
        )
        self.conflicts = []
        self.status = SyncStatus.IDLE

    # ------------------------------------------------------------------
    # Full push / full pull
    # ------------------------------------------------------------------

    async def full_push(self) -> SyncReport:
        """Declare the vault authoritative and rebuild both metas."""
        return await self._run(
            SyncOperation.FULL_PUSH, SyncStatus.PUSHING, self._full_push
        )

    async def _full_push(self, progress: _Progress) -> None:
        root_id = await self.root_folder_id()
        old_local = await run_sync(self.meta_store.load)
        scan = await self._scan(old_local)
        staged = RemoteSyncMeta(last_updated_at=utc_now_iso())

        async def _one(path: str) -> None:
            try:
                await self._upload(
                    root_id, path, old_local.path_to_id.get(path), staged
                )
            except Exception as exc:
                logger.warning("Upload of %s failed: %s", path, exc)
                progress.failed.append(path)
                return
            progress.pushed.append(path)

        await run_in_batches(
            sorted(scan.checksums), _one, self.settings.concurrency
        )
        await self._commit(root_id, old_local, staged)
        self.history.clear_all_history()
        self.conflicts = []
        self.status = SyncStatus.IDLE

    async def full_pull(self) -> SyncReport:
        """Declare the remote authoritative and mirror it into the vault."""
        return await self._run(
            SyncOperation.FULL_PULL, SyncStatus.PULLING, self._full_pull
        )

    async def _full_pull(self, progress: _Progress) -> None:
        root_id = await self.root_folder_id()
        remote_meta = await run_sync(
            read_remote_sync_meta, self.store, root_id
        )
        if remote_meta is None:
            logger.info("No remote data found")
            self.status = SyncStatus.IDLE
            return

        preserve: set[str] = set()

        async def _one(file_id: str) -> None:
            if not self._downloadable(remote_meta.files[file_id].vault_path):
                preserve.add(file_id)
                return
            try:
                path = await self._download(file_id, remote_meta)
            except Exception as exc:
                logger.warning("Download of %s failed: %s", file_id, exc)
                preserve.add(file_id)
                progress.failed.append(remote_meta.files[file_id].vault_path)
                return
            progress.pulled.append(path)

        await run_in_batches(
            sorted(remote_meta.files), _one, self.settings.concurrency
        )

        remote_paths = {r.vault_path for r in remote_meta.files.values()}
        for vault_file in await run_sync(self._vault_files):
            if vault_file.path not in remote_paths:
                await run_sync(self.vault.trash, vault_file.path)
                progress.deleted.append(vault_file.path)

        await self._commit(
            root_id, None, remote_meta, preserve, write_remote=False
        )
        self.history.clear_all_history()
        self.conflicts = []
        self.status = SyncStatus.IDLE

    # ------------------------------------------------------------------
    # Conflict resolution
    # ------------------------------------------------------------------

    async def resolve_conflict(
        self, file_id: str, choice: ConflictChoice
    ) -> SyncReport:
        """Resolve one pending conflict by keeping one side whole.

        The losing side is saved to ``sync_conflicts/`` first. When the last
        conflict is resolved a pull runs and is attached as ``follow_up``.
        """
        should_pull = False

        async def _body(progress: _Progress) -> None:
            nonlocal should_pull
            root_id = await self.root_folder_id()
            conflict = next(
                (c for c in self.conflicts if c.file_id == file_id), None
            )
            if conflict is None:
                raise ConflictNotFoundError(f"Conflict not found: {file_id}")
            local_meta = await run_sync(self.meta_store.load)
            remote_meta = await run_sync(
                read_remote_sync_meta, self.store, root_id
            )
            if remote_meta is None:
                raise RemoteMetaMissingError("Remote meta not found")

            path = build_id_to_path(local_meta).get(file_id) or conflict.file_name
            staged = remote_meta.model_copy(deep=True)
            match conflict.kind:
                case ConflictKind.NORMAL:
                    await self._resolve_normal(
                        root_id, file_id, path, choice, staged, progress
                    )
                case ConflictKind.EDIT_DELETE:
                    await self._resolve_edit_delete(
                        root_id, file_id, path, choice, staged, progress
                    )
            # Only the resolved file's ancestor moves; the rest wait for a pull
            untouched = (set(remote_meta.files) | set(local_meta.files)) - {file_id}
            await self._commit(root_id, local_meta, staged, untouched)

            self.history.forget(path)
            self.conflicts = [c for c in self.conflicts if c.file_id != file_id]
            if self.conflicts:
                self.status = SyncStatus.CONFLICT
            else:
                should_pull = self.status is SyncStatus.CONFLICT
                self.status = SyncStatus.IDLE

        report = await self._run(SyncOperation.RESOLVE, None, _body)
        if should_pull:
            report = report.model_copy(update={"follow_up": await self.pull()})
        return report

    async def _resolve_normal(
        self,
        root_id: str,
        file_id: str,
        path: str,
        choice: ConflictChoice,
        staged: RemoteSyncMeta,
        progress: _Progress,
    ) -> None:
        if not await run_sync(self.vault.exists, path):
            if choice is ConflictChoice.REMOTE:
                await self._download_to(file_id, path, progress)
            return
        match choice:
            case ConflictChoice.LOCAL:
                remote_content = await self._read_remote(file_id, path)
                await run_sync(
                    save_conflict_backup,
                    self.store,
                    root_id,
                    path,
                    remote_content,
                )
                drive_file = await run_sync(
                    self.store.update_file,
                    file_id,
                    await self._read_local(path),
                    get_mime_type(path),
                )
                upsert_file_in_meta(staged, drive_file, path)
                progress.pushed.append(path)
            case ConflictChoice.REMOTE:
                await run_sync(
                    save_conflict_backup,
                    self.store,
                    root_id,
                    path,
                    await self._read_local(path),
                )
                await self._download_to(file_id, path, progress)

    async def _download_to(
        self, file_id: str, path: str, progress: _Progress
    ) -> None:
        await self._write_local(path, await self._read_remote(file_id, path))
        progress.pulled.append(path)

    async def _resolve_edit_delete(
        self,
        root_id: str,
        file_id: str,
        path: str,
        choice: ConflictChoice,
        staged: RemoteSyncMeta,
        progress: _Progress,
    ) -> None:
        exists = await run_sync(self.vault.exists, path)
        match choice:
            case ConflictChoice.LOCAL:
                # Local survives as a brand-new remote object
                if exists:
                    drive_file = await run_sync(
                        self.store.create_file,
                        path,
                        await self._read_local(path),
                        root_id,
                        get_mime_type(path),
                    )
                    upsert_file_in_meta(staged, drive_file, path)
                    progress.pushed.append(path)
            case ConflictChoice.REMOTE:
                if exists:
                    await run_sync(
                        save_conflict_backup,
                        self.store,
                        root_id,
                        path,
                        await self._read_local(path),
                    )
                    await run_sync(self.vault.trash, path)
                    progress.deleted.append(path)
        remove_file_from_meta(staged, file_id)

    # ------------------------------------------------------------------
    # Pending changes
    # ------------------------------------------------------------------

    async def refresh_sync_counts(self) -> None:
        """Recompute pending push/pull counts. Failures are logged only."""
        try:
            root_id = await self.root_folder_id()
            state = await self._load_state(root_id)
        except Exception as exc:
            logger.debug("refresh_sync_counts failed: %s", exc)
            return

        diff = state.diff
        changes = state.changes

        def _count(ids: Iterable[str]) -> int:
            return sum(1 for fid in ids if not self._excluded_id(state, fid))

        self.local_modified_count = (
            _count(diff.to_push)
            + sum(1 for p in changes.new_paths if not self.is_excluded(p))
            + sum(
                1 for new in changes.renames.values() if not self.is_excluded(new)
            )
            + _count(diff.edit_delete_conflicts)
            + _count(changes.deleted_ids)
        )
        if state.remote_meta is None:
            self.remote_modified_count = 0
            return
        missing = find_missing_local_files(
            state.local_meta,
            state.remote_meta,
            state.scan.checksums,
            diff,
            changes.renames,
            changes.deleted_ids,
            changes.unreadable_ids,
        )
        self.remote_modified_count = (
            _count([*diff.to_pull, *missing])
            + _count(diff.remote_only)
            + _count(fid for fid in diff.local_only if fid in state.local_meta.files)
            + _count(c.file_id for c in diff.conflicts)
        )

    async def compute_sync_file_list(self, direction: str) -> SyncFileList:
        """List pending changes for ``"push"`` or ``"pull"``, sorted by path."""
        if direction not in ("push", "pull"):
            raise ValueError(f"direction must be 'push' or 'pull', got {direction!r}")
        root_id = await self.root_folder_id()
        state = await self._load_state(root_id)
        diff = state.diff
        changes = state.changes
        local_meta = state.local_meta
        id_to_path = state.id_to_path
        remote_files = state.remote_meta.files if state.remote_meta else {}

        def _name(fid: str) -> str:
            return self._resolve_path(state, fid) or fid

        items: list[SyncFileListItem] = []
        if direction == "push":
            items += [
                SyncFileListItem(id=fid, name=_name(fid), type=FileChangeType.MODIFIED)
                for fid in diff.to_push
            ]
            items += [
                SyncFileListItem(id=p, name=p, type=FileChangeType.NEW)
                for p in changes.new_paths
            ]
            items += [
                SyncFileListItem(
                    id=local_meta.path_to_id.get(old, old),
                    name=new,
                    type=FileChangeType.RENAMED,
                    old_name=old,
                )
                for old, new in changes.renames.items()
            ]
            items += [
                SyncFileListItem(
                    id=fid, name=id_to_path.get(fid, fid), type=FileChangeType.EDIT_DELETED
                )
                for fid in diff.edit_delete_conflicts
            ]
            deleted = {
                fid
                for fid in diff.local_only
                if fid in id_to_path and id_to_path[fid] not in state.scan.stats
            } | changes.deleted_ids
            items += [
                SyncFileListItem(id=fid, name=id_to_path[fid], type=FileChangeType.DELETED)
                for fid in sorted(deleted)
                if fid in id_to_path
            ]
        else:
            missing = find_missing_local_files(
                local_meta,
                state.remote_meta,
                state.scan.checksums,
                diff,
                changes.renames,
                changes.deleted_ids,
                changes.unreadable_ids,
            )
            items += [
                SyncFileListItem(
                    id=fid, name=remote_files[fid].vault_path, type=FileChangeType.NEW
                )
                for fid in diff.remote_only
            ]
            items += [
                SyncFileListItem(id=fid, name=_name(fid), type=FileChangeType.MODIFIED)
                for fid in [*diff.to_pull, *missing]
            ]
            items += [
                SyncFileListItem(
                    id=fid, name=id_to_path.get(fid, fid), type=FileChangeType.DELETED
                )
                for fid in diff.local_only
                if fid in local_meta.files
            ]
            items += [
                SyncFileListItem(
                    id=fid, name=id_to_path.get(fid, fid), type=FileChangeType.EDIT_DELETED
                )
                for fid in diff.edit_delete_conflicts
            ]
            items += [
                SyncFileListItem(
                    id=c.file_id, name=_name(c.file_id), type=FileChangeType.CONFLICT
                )
                for c in diff.conflicts
            ]

        items.sort(key=lambda item: item.name)
        has_remote_changes = bool(
            diff.conflicts
            or diff.edit_delete_conflicts
            or diff.to_pull
            or diff.remote_only
            or any(fid in local_meta.files for fid in diff.local_only)
        )
        return SyncFileList(
            files=[i for i in items if not self.is_excluded(i.name)],
            has_remote_changes=has_remote_changes,
        )

    # ------------------------------------------------------------------
    # Remote reads and history
    # ------------------------------------------------------------------

    async def read_remote_file(self, file_id: str) -> str:
        return await run_sync(self.store.read_text, file_id)

    async def read_remote_file_by_path(self, vault_path: str) -> str | None:
        """Remote text of a tracked path, or None when the path is untracked."""
        local_meta = await run_sync(self.meta_store.load)
        file_id = local_meta.path_to_id.get(vault_path)
        if not file_id:
            return None
        return await run_sync(self.store.read_text, file_id)

    async def _remote_history(self) -> RemoteEditHistory:
        return RemoteEditHistory(
            self.store, await self.root_folder_id(), self.settings.context_lines
        )

    async def load_remote_edit_history(self, path: str) -> list[EditHistoryEntry]:
        remote = await self._remote_history()
        return await run_sync(remote.load, path)

    async def clear_remote_edit_history(self, path: str) -> bool:
        remote = await self._remote_history()
        return await run_sync(remote.clear, path)

    async def history_timeline(self, path: str) -> list[TimelineEntry]:
        """Local and remote history of ``path`` merged newest first."""
        remote_entries = await self.load_remote_edit_history(path)
        return merge_timeline(self.history.get_history(path), remote_entries)

    async def history_content_at(self, path: str, entry_id: str) -> str | None:
        """Content of ``path`` just before timeline entry ``entry_id``."""
        if not await run_sync(self.vault.exists, path):
            return None
        current = await run_sync(self.vault.read_text, path)
        timeline = await self.history_timeline(path)
        return content_at(
            current, timeline, entry_id, self.settings.drift_tolerance
        )


__all__ = [
    "IndexHook",
    "SyncEngine",
    "SyncSettings",
]
