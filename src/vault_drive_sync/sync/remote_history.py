"""Edit history stored on Drive under ``history/files/``.

One JSON document per vault path holds forward (old -> new) diffs captured
at push time. Path separators are percent-encoded in the document name so
``a/b.md`` and ``a-b.md`` never collide.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING

from pydantic import ValidationError

from vault_drive_sync.sync.history import new_entry_id
from vault_drive_sync.sync.models import (
    EditHistoryEntry,
    EditHistoryFile,
    EditSource,
    utc_now_iso,
)
from vault_drive_sync.sync.patch import DEFAULT_CONTEXT_LINES, create_diff

if TYPE_CHECKING:
    from vault_drive_sync.core.store import RemoteStore

logger = logging.getLogger(__name__)

HISTORY_FOLDER = "history"
EDIT_HISTORY_FOLDER = "files"


def history_file_name(path: str) -> str:
    """Encode a vault path as a history document name."""
    return path.replace("%", "%25").replace("/", "%2F") + ".history.json"


class RemoteEditHistory:
    """Read and append Drive-side edit history.

    Args:
        store: Remote store.
        root_folder_id: Root Drive folder id.
        context_lines: Context lines kept around each diff hunk.
    """

    def __init__(
        self,
        store: RemoteStore,
        root_folder_id: str,
        context_lines: int = DEFAULT_CONTEXT_LINES,
    ) -> None:
        self.store = store
        self.root_folder_id = root_folder_id
        self.context_lines = context_lines
        self._folder_id: str | None = None
        self._lock = threading.Lock()

    def ensure_folder(self) -> str:
        """Resolve (creating if needed) ``history/files/``, once per instance."""
        with self._lock:
            if self._folder_id is None:
                history_id = self.store.ensure_subfolder(
                    self.root_folder_id, HISTORY_FOLDER
                )
                self._folder_id = self.store.ensure_subfolder(
                    history_id, EDIT_HISTORY_FOLDER
                )
            return self._folder_id

    def _load_file(self, path: str) -> tuple[EditHistoryFile, str | None]:
        folder_id = self.ensure_folder()
        found = self.store.find_file_by_name(history_file_name(path), folder_id)
        if found is None:
            return EditHistoryFile(path=path), None
        try:
            history = EditHistoryFile.model_validate_json(
                self.store.read_text(found.id)
            )
        except (ValueError, ValidationError) as exc:
            logger.debug("Unreadable remote history for %s: %s", path, exc)
            history = EditHistoryFile(path=path)
        return history, found.id

    def load(self, path: str) -> list[EditHistoryEntry]:
        """Entries for ``path``, oldest first."""
        history, _ = self._load_file(path)
        return history.entries

    def save_edit(
        self,
        path: str,
        old_content: str,
        new_content: str,
        source: EditSource = EditSource.MANUAL,
        workflow_name: str | None = None,
        model: str | None = None,
    ) -> EditHistoryEntry | None:
        """Append the forward diff ``old_content -> new_content``.

        Returns:
            The appended entry, or None for a no-op edit.
        """
        diff, stats = create_diff(old_content, new_content, self.context_lines)
        if stats.is_empty:
            return None
        entry = EditHistoryEntry(
            id=new_entry_id(),
            timestamp=utc_now_iso(),
            source=source,
            workflow_name=workflow_name,
            model=model,
            diff=diff,
            stats=stats,
        )
        history, file_id = self._load_file(path)
        history.entries.append(entry)
        content = json.dumps(
            history.model_dump(by_alias=True, exclude_none=True), indent=2
        )
        if file_id is not None:
            self.store.update_file(file_id, content, "application/json")
        else:
            self.store.create_file(
                history_file_name(path),
                content,
                self.ensure_folder(),
                "application/json",
            )
        return entry

    def clear(self, path: str) -> bool:
        """Delete the history document for ``path``. Returns True if one existed."""
        found = self.store.find_file_by_name(
            history_file_name(path), self.ensure_folder()
        )
        if found is None:
            return False
        self.store.delete_file(found.id)
        return True
