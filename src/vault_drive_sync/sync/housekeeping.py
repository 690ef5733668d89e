"""Remote housekeeping: trash, conflict backups and temp staging.

These folders live under the root Drive folder and are never part of the
synced file set:

* ``trash/`` receives files deleted locally and pushed;
* ``sync_conflicts/`` receives the losing side of a resolved conflict;
* ``__TEMP__/`` holds single-file snapshots staged for later application,
  as JSON payloads ``{fileId, content, savedAt, isBinary}`` (binary content
  base64 encoded).

Batch deletes count successes; a failure on one id is logged and skipped.
"""

from __future__ import annotations

import base64
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from pydantic import ValidationError

from vault_drive_sync.core.async_utils import run_sync
from vault_drive_sync.errors import TempFileTooLargeError
from vault_drive_sync.sync.diff import build_id_to_path
from vault_drive_sync.sync.meta import (
    CONFLICT_FOLDER_NAME,
    LocalMetaStore,
    read_remote_sync_meta,
    upsert_file_in_meta,
    write_remote_sync_meta,
)
from vault_drive_sync.sync.models import (
    DriveFile,
    RemoteSyncMeta,
    TempFile,
    TempFilePayload,
    utc_now_iso,
)
from vault_drive_sync.sync.paths import is_binary_extension
from vault_drive_sync.vault import VaultAdapter, is_valid_vault_path

if TYPE_CHECKING:
    from vault_drive_sync.core.store import RemoteStore

logger = logging.getLogger(__name__)

TRASH_FOLDER_NAME = "trash"
TEMP_FOLDER_NAME = "__TEMP__"
MAX_TEMP_FILE_BYTES = 30 * 1024 * 1024


class RemoteHousekeeping:
    """Manage the auxiliary Drive folders next to the synced files.

    Args:
        vault: Local vault.
        store: Remote store.
        meta_store: Local meta store (for path <-> id lookups).
        root_folder_id: Coroutine function resolving the root folder id.
    """

    def __init__(
        self,
        vault: VaultAdapter,
        store: RemoteStore,
        meta_store: LocalMetaStore,
        root_folder_id: Callable[[], Awaitable[str]],
    ) -> None:
        self.vault = vault
        self.store = store
        self.meta_store = meta_store
        self._root_folder_id = root_folder_id

    async def _folder(self, name: str) -> tuple[str, str]:
        root_id = await self._root_folder_id()
        folder_id = await run_sync(self.store.ensure_subfolder, root_id, name)
        return root_id, folder_id

    async def _delete_many(self, file_ids: Iterable[str], label: str) -> int:
        deleted = 0
        for file_id in file_ids:
            try:
                await run_sync(self.store.delete_file, file_id)
                deleted += 1
            except Exception as exc:
                logger.warning("Failed to delete %s %s: %s", label, file_id, exc)
        return deleted

    async def _load_remote_meta(self, root_id: str) -> RemoteSyncMeta:
        meta = await run_sync(read_remote_sync_meta, self.store, root_id)
        return meta or RemoteSyncMeta(last_updated_at=utc_now_iso())

    async def _write_local(self, path: str, content: str | bytes) -> None:
        if isinstance(content, bytes):
            await run_sync(self.vault.write_bytes, path, content)
        else:
            await run_sync(self.vault.write_text, path, content)

    # ------------------------------------------------------------------
    # Trash
    # ------------------------------------------------------------------

    async def list_trash_files(self) -> list[DriveFile]:
        _, folder_id = await self._folder(TRASH_FOLDER_NAME)
        return await run_sync(self.store.list_files, folder_id)

    async def restore_from_trash(self, file_ids: Iterable[str]) -> int:
        """Move trashed files back to the root folder and re-register them.

        Returns:
            Number of files restored.
        """
        root_id, trash_id = await self._folder(TRASH_FOLDER_NAME)
        remote_meta = await self._load_remote_meta(root_id)
        restored = 0
        for file_id in file_ids:
            try:
                await run_sync(self.store.move_file, file_id, root_id, trash_id)
                drive_file = await run_sync(self.store.get_metadata, file_id)
            except Exception as exc:
                logger.warning("Failed to restore %s from trash: %s", file_id, exc)
                continue
            upsert_file_in_meta(remote_meta, drive_file, drive_file.name)
            restored += 1
        if restored:
            await run_sync(write_remote_sync_meta, self.store, root_id, remote_meta)
        return restored

    async def permanent_delete_files(self, file_ids: Iterable[str]) -> int:
        return await self._delete_many(file_ids, "trashed file")

    # ------------------------------------------------------------------
    # Conflict backups
    # ------------------------------------------------------------------

    async def list_conflict_files(self) -> list[DriveFile]:
        _, folder_id = await self._folder(CONFLICT_FOLDER_NAME)
        return await run_sync(self.store.list_files, folder_id)

    async def restore_conflict_file(self, file_id: str, restore_name: str) -> None:
        """Write a backup into the vault at ``restore_name``, then delete it.

        The restored file is picked up by the next push like any edit.
        """
        if not is_valid_vault_path(restore_name):
            raise ValueError(f"Unsafe restore path: {restore_name!r}")
        if is_binary_extension(restore_name):
            content: str | bytes = await run_sync(self.store.read_bytes, file_id)
        else:
            content = await run_sync(self.store.read_text, file_id)
        await self._write_local(restore_name, content)
        await run_sync(self.store.delete_file, file_id)
        logger.info("Restored conflict backup to %s", restore_name)

    async def delete_conflict_files(self, file_ids: Iterable[str]) -> int:
        return await self._delete_many(file_ids, "conflict backup")

    # ------------------------------------------------------------------
    # Temp staging
    # ------------------------------------------------------------------

    async def save_temp_file(self, vault_path: str) -> tuple[str, str]:
        """Stage a vault file in ``__TEMP__/``, replacing a same-name entry.

        Returns:
            Tuple of (file id recorded in the payload, temp file name).

        Raises:
            FileNotFoundError: The vault file does not exist.
            TempFileTooLargeError: The file exceeds 30 MB.
        """
        stat = await run_sync(self.vault.stat, vault_path)
        if stat is None:
            raise FileNotFoundError(f"File not found: {vault_path}")
        if stat.size > MAX_TEMP_FILE_BYTES:
            raise TempFileTooLargeError(
                f"File too large ({round(stat.size / 1024 / 1024)}MB). Max 30MB."
            )

        local_meta = await run_sync(self.meta_store.load)
        file_id = local_meta.path_to_id.get(vault_path, vault_path)
        binary = is_binary_extension(vault_path)
        if binary:
            raw = await run_sync(self.vault.read_bytes, vault_path)
            content = base64.b64encode(raw).decode("ascii")
        else:
            content = await run_sync(self.vault.read_text, vault_path)

        payload = TempFilePayload(
            file_id=file_id,
            content=content,
            saved_at=utc_now_iso(),
            is_binary=binary,
        )
        body = payload.model_dump_json(by_alias=True)
        _, temp_id = await self._folder(TEMP_FOLDER_NAME)
        file_name = vault_path.rsplit("/", 1)[-1]

        existing = next(
            (
                f
                for f in await run_sync(self.store.list_files, temp_id)
                if f.name == file_name
            ),
            None,
        )
        if existing is not None:
            await run_sync(
                self.store.update_file, existing.id, body, "application/json"
            )
        else:
            await run_sync(
                self.store.create_file, file_name, body, temp_id, "application/json"
            )
        return file_id, file_name

    async def list_temp_files(self) -> list[TempFile]:
        """Staged files with their payloads; malformed entries are skipped."""
        _, temp_id = await self._folder(TEMP_FOLDER_NAME)
        results: list[TempFile] = []
        for drive_file in await run_sync(self.store.list_files, temp_id):
            if drive_file.name.startswith("_"):
                continue
            try:
                raw = await run_sync(self.store.read_text, drive_file.id)
                payload = TempFilePayload.model_validate_json(raw)
            except (ValueError, ValidationError) as exc:
                logger.debug("Skipping malformed temp file %s: %s", drive_file.id, exc)
                continue
            results.append(TempFile(file=drive_file, payload=payload))
        return results

    async def apply_temp_file(self, temp_file_id: str, payload: TempFilePayload) -> None:
        """Write a staged payload to its Drive file, then delete the temp file."""
        content: str | bytes = (
            base64.b64decode(payload.content) if payload.is_binary else payload.content
        )
        mime_type = (
            "application/octet-stream" if payload.is_binary else "text/plain"
        )
        await run_sync(self.store.update_file, payload.file_id, content, mime_type)
        drive_file = await run_sync(self.store.get_metadata, payload.file_id)

        root_id = await self._root_folder_id()
        remote_meta = await self._load_remote_meta(root_id)
        previous = remote_meta.files.get(payload.file_id)
        upsert_file_in_meta(
            remote_meta,
            drive_file,
            previous.path if previous and previous.path else drive_file.name,
        )
        await run_sync(write_remote_sync_meta, self.store, root_id, remote_meta)
        await run_sync(self.store.delete_file, temp_file_id)

    async def download_temp_to_vault(
        self, temp_file_id: str, payload: TempFilePayload
    ) -> str:
        """Write a staged payload into the vault and apply it to Drive.

        Returns:
            The vault path written.
        """
        local_meta = await run_sync(self.meta_store.load)
        vault_path = build_id_to_path(local_meta).get(
            payload.file_id, payload.file_id
        )
        if not is_valid_vault_path(vault_path):
            raise ValueError(f"Unsafe vault path: {vault_path!r}")
        if payload.is_binary:
            await self._write_local(vault_path, base64.b64decode(payload.content))
        else:
            await self._write_local(vault_path, payload.content)
        await self.apply_temp_file(temp_file_id, payload)
        return vault_path

    async def delete_temp_files(self, file_ids: Iterable[str]) -> int:
        return await self._delete_many(file_ids, "temp file")
