"""Edit history: reconstruction from diff chains and the local history store.

Two kinds of diff feed the same reconstruction:

* **local** entries are captured right after an edit as an undo patch
  (new -> old) and are applied as-is to walk back;
* **remote** entries are recorded at push time as forward patches
  (old -> new) and are reverse-applied to walk back.

``reconstruct_content`` folds a newest-first list of such entries over the
current content. Truncating the list before folding yields intermediate
states, which is how "restore to this point" works.

``EditHistoryManager`` owns its snapshot and history maps per instance, so
two engines (or two tests) never share state.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable

from vault_drive_sync.sync.models import (
    DiffStats,
    DiffWithOrigin,
    EditHistoryEntry,
    EditHistoryFile,
    EditSource,
    HistoryOrigin,
    TimelineEntry,
    utc_now_iso,
)
from vault_drive_sync.sync.patch import (
    DEFAULT_CONTEXT_LINES,
    DEFAULT_DRIFT_TOLERANCE,
    apply_diff,
    create_diff,
    reverse_apply_diff,
)
from vault_drive_sync.vault import VaultAdapter, parent_folder

logger = logging.getLogger(__name__)


def new_entry_id(length: int = 8) -> str:
    return uuid.uuid4().hex[:length]


# ---------------------------------------------------------------------------
# Reconstruction
# ---------------------------------------------------------------------------


def reconstruct_content(
    current_content: str,
    entries: Iterable[DiffWithOrigin],
    drift_tolerance: int = DEFAULT_DRIFT_TOLERANCE,
) -> str:
    """Walk back through ``entries`` (newest first) from ``current_content``.

    An empty entry list returns ``current_content`` unchanged.
    """
    content = current_content
    for entry in entries:
        match entry.origin:
            case HistoryOrigin.REMOTE:
                content = reverse_apply_diff(
                    content, entry.diff, drift_tolerance=drift_tolerance
                )
            case HistoryOrigin.LOCAL:
                content = apply_diff(
                    content, entry.diff, drift_tolerance=drift_tolerance
                )
    return content


def _timestamp_key(entry: EditHistoryEntry) -> datetime:
    try:
        parsed = datetime.fromisoformat(entry.timestamp.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def merge_timeline(
    local_entries: Iterable[EditHistoryEntry],
    remote_entries: Iterable[EditHistoryEntry],
) -> list[TimelineEntry]:
    """Merge local and remote history into one newest-first timeline."""
    merged = [
        TimelineEntry(entry=e, origin=HistoryOrigin.LOCAL)
        for e in local_entries
    ] + [
        TimelineEntry(entry=e, origin=HistoryOrigin.REMOTE)
        for e in remote_entries
    ]
    merged.sort(key=lambda t: _timestamp_key(t.entry), reverse=True)
    return merged


def content_at(
    current_content: str,
    timeline: list[TimelineEntry],
    entry_id: str,
    drift_tolerance: int = DEFAULT_DRIFT_TOLERANCE,
) -> str | None:
    """Content just before the timeline entry ``entry_id`` was made.

    Returns:
        The reconstructed text, or None when the id is not in the timeline.
    """
    for idx, item in enumerate(timeline):
        if item.entry.id == entry_id:
            return reconstruct_content(
                current_content,
                [t.as_diff() for t in timeline[: idx + 1]],
                drift_tolerance,
            )
    return None


# ---------------------------------------------------------------------------
# Local history manager
# ---------------------------------------------------------------------------


class EditHistoryManager:
    """In-memory edit history for vault notes.

    Each tracked path has a snapshot (last recorded content) and a list of
    entries, oldest first, whose diffs lead from the newer state back to the
    older one.

    Args:
        vault: Vault used to read and write note content.
        enabled: When False, recording calls are no-ops.
        context_lines: Context lines kept around each diff hunk.
        drift_tolerance: Line drift allowed when replaying diffs.
    """

    def __init__(
        self,
        vault: VaultAdapter,
        enabled: bool = True,
        context_lines: int = DEFAULT_CONTEXT_LINES,
        drift_tolerance: int = DEFAULT_DRIFT_TOLERANCE,
    ) -> None:
        self.vault = vault
        self.enabled = enabled
        self.context_lines = context_lines
        self.drift_tolerance = drift_tolerance
        self._histories: dict[str, EditHistoryFile] = {}
        self._snapshots: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def get_snapshot(self, path: str) -> str | None:
        return self._snapshots.get(path)

    def set_snapshot(self, path: str, content: str) -> None:
        self._snapshots[path] = content

    def clear_snapshot(self, path: str) -> None:
        self._snapshots.pop(path, None)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _append(
        self,
        path: str,
        diff: str,
        stats: DiffStats,
        source: EditSource,
        workflow_name: str | None = None,
        model: str | None = None,
    ) -> EditHistoryEntry:
        entry = EditHistoryEntry(
            id=new_entry_id(6),
            timestamp=utc_now_iso(),
            source=source,
            workflow_name=workflow_name,
            model=model,
            diff=diff,
            stats=stats,
        )
        history = self._histories.setdefault(
            path, EditHistoryFile(path=path)
        )
        history.entries.append(entry)
        return entry

    def save_edit(
        self,
        path: str,
        modified_content: str,
        source: EditSource = EditSource.MANUAL,
        workflow_name: str | None = None,
        model: str | None = None,
    ) -> EditHistoryEntry | None:
        """Record ``modified_content`` against the snapshot.

        The stored diff runs new -> old. The snapshot advances to
        ``modified_content``.

        Returns:
            The new entry, or None when disabled or nothing changed.
        """
        if not self.enabled:
            return None
        snapshot = self._snapshots.get(path, "")
        diff, stats = create_diff(
            modified_content, snapshot, self.context_lines
        )
        if stats.is_empty:
            return None
        entry = self._append(
            path, diff, stats, source, workflow_name, model
        )
        self._snapshots[path] = modified_content
        return entry

    def init_snapshot(self, path: str) -> None:
        """Start tracking a note when it is opened.

        Creates the first snapshot, or records drift since the last one as
        an ``auto`` entry.
        """
        if not self.enabled or not path.endswith(".md"):
            return
        if not self.vault.exists(path):
            return
        current = self.vault.read_text(path)
        snapshot = self._snapshots.get(path)
        if snapshot is None:
            self._snapshots[path] = current
        elif snapshot != current:
            self.save_edit(path, current, EditSource.AUTO)

    def ensure_snapshot(self, path: str) -> str | None:
        """Bring the snapshot in line with the file before modifying it.

        Returns:
            The current content when the snapshot was created or updated,
            None when nothing was needed or the file does not exist.
        """
        if not self.enabled or not path.endswith(".md"):
            return None
        if not self.vault.exists(path):
            return None
        current = self.vault.read_text(path)
        snapshot = self._snapshots.get(path)
        if snapshot is None:
            self._snapshots[path] = current
            return current
        if snapshot == current:
            return None
        diff, stats = create_diff(current, snapshot, self.context_lines)
        if not stats.is_empty:
            self._append(path, diff, stats, EditSource.AUTO)
        self._snapshots[path] = current
        return current

    def save_manual_snapshot(self, path: str) -> EditHistoryEntry | None:
        if not self.vault.exists(path):
            return None
        return self.save_edit(
            path, self.vault.read_text(path), EditSource.MANUAL
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _drop_orphan(self, path: str) -> bool:
        """Drop history that lost its snapshot. Returns True if dropped."""
        if path in self._histories and path not in self._snapshots:
            logger.debug("Dropping orphaned history for %s", path)
            del self._histories[path]
            return True
        return False

    def get_history(self, path: str) -> list[EditHistoryEntry]:
        if self._drop_orphan(path):
            return []
        history = self._histories.get(path)
        return list(history.entries) if history else []

    def has_history(self, path: str) -> bool:
        if self._drop_orphan(path):
            return False
        return path in self._histories

    def get_content_at(self, path: str, entry_id: str) -> str | None:
        """Content before the change recorded by ``entry_id``."""
        snapshot = self._snapshots.get(path)
        history = self._histories.get(path)
        if snapshot is None or history is None:
            return None
        ids = [e.id for e in history.entries]
        if entry_id not in ids:
            return None
        target = ids.index(entry_id)
        newest_first = [
            DiffWithOrigin(diff=e.diff, origin=HistoryOrigin.LOCAL)
            for e in reversed(history.entries[target:])
        ]
        return reconstruct_content(
            snapshot, newest_first, self.drift_tolerance
        )

    def get_diff_from_last_saved(
        self, path: str
    ) -> tuple[str, DiffStats] | None:
        """Forward diff from the snapshot to the file's current content."""
        snapshot = self._snapshots.get(path)
        if snapshot is None or not self.vault.exists(path):
            return None
        current = self.vault.read_text(path)
        if current == snapshot:
            return "", DiffStats()
        return create_diff(snapshot, current, self.context_lines)

    def get_stats(self) -> dict[str, int]:
        return {
            "total_files": len(self._histories),
            "total_entries": sum(
                len(h.entries) for h in self._histories.values()
            ),
        }

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore_to(self, path: str, entry_id: str) -> bool:
        """Rewrite the file to its state before ``entry_id``.

        The restored content becomes the new snapshot and history is cleared.
        """
        content = self.get_content_at(path, entry_id)
        if content is None or not self.vault.exists(path):
            return False
        self.vault.write_text(path, content)
        self._snapshots[path] = content
        self.clear_history(path)
        return True

    def revert_to_base(self, path: str) -> bool:
        """Discard unrecorded changes by rewriting the snapshot to disk."""
        snapshot = self._snapshots.get(path)
        if snapshot is None or not self.vault.exists(path):
            return False
        self.vault.write_text(path, snapshot)
        return True

    def copy_to(
        self, source_path: str, entry_id: str, dest_path: str
    ) -> tuple[bool, str | None]:
        """Write the content before ``entry_id`` to a new file.

        Returns:
            Tuple of (success, error message).
        """
        content = self.get_content_at(source_path, entry_id)
        if content is None:
            return False, "Failed to get content at entry"
        if self.vault.exists(dest_path):
            return False, "File already exists"
        folder = parent_folder(dest_path)
        if folder:
            self.vault.mkdir(folder)
        self.vault.write_text(dest_path, content)
        return True, None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def delete_entry(self, path: str, entry_id: str) -> None:
        history = self._histories.get(path)
        if history is None:
            return
        history.entries = [e for e in history.entries if e.id != entry_id]

    def clear_history(self, path: str) -> None:
        """Forget the entries for ``path``; the snapshot is kept."""
        self._histories.pop(path, None)

    def forget(self, path: str) -> None:
        """Forget both history and snapshot (file synced, deleted, resolved)."""
        self.clear_history(path)
        self.clear_snapshot(path)

    def clear_all_history(self) -> int:
        """Forget every history and snapshot. Returns the paths cleared."""
        count = len(self._histories)
        self._histories.clear()
        self._snapshots.clear()
        return count

    def handle_file_rename(self, old_path: str, new_path: str) -> None:
        history = self._histories.pop(old_path, None)
        if history is not None:
            history.path = new_path
            self._histories[new_path] = history
        snapshot = self._snapshots.pop(old_path, None)
        if snapshot is not None:
            self._snapshots[new_path] = snapshot

    def handle_file_delete(self, path: str, keep_history: bool = False) -> None:
        if not keep_history:
            self.forget(path)
