"""Remote object-store interface consumed by the sync engine.

``DriveClient`` is the production implementation; tests use an in-memory
fake. All methods are blocking and are awaited through ``run_sync``.
"""

from __future__ import annotations

from typing import Protocol

from vault_drive_sync.sync.models import DriveFile

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


class RemoteStore(Protocol):
    """Narrow Drive-like interface: folders, files, metadata."""

    def ensure_root_folder(self, name: str) -> str: ...

    def ensure_subfolder(self, parent_id: str, name: str) -> str: ...

    def list_files(self, folder_id: str) -> list[DriveFile]: ...

    def list_user_files(self, folder_id: str) -> list[DriveFile]: ...

    def find_file_by_name(
        self, name: str, parent_id: str | None = None
    ) -> DriveFile | None: ...

    def get_metadata(self, file_id: str) -> DriveFile: ...

    def read_text(self, file_id: str) -> str: ...

    def read_bytes(self, file_id: str) -> bytes: ...

    def create_file(
        self,
        name: str,
        content: str | bytes,
        parent_id: str,
        mime_type: str = "text/plain",
    ) -> DriveFile: ...

    def update_file(
        self,
        file_id: str,
        content: str | bytes,
        mime_type: str = "text/plain",
    ) -> DriveFile: ...

    def rename_file(self, file_id: str, new_name: str) -> DriveFile: ...

    def move_file(
        self, file_id: str, new_parent_id: str, old_parent_id: str
    ) -> None: ...

    def delete_file(self, file_id: str) -> None: ...
