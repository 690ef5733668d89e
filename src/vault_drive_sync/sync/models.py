"""Pydantic models for the vault <-> Drive sync engine.

Defines the data contracts shared across sync modules:

- ``DriveFile``: File metadata as returned by the Drive API.
- ``RemoteFileRecord`` / ``RemoteSyncMeta``: The remote authoritative file set.
- ``LocalFileEntry`` / ``LocalSyncMeta``: The last agreed (ancestor) state
  per file plus the path index.
- ``ConflictInfo`` / ``SyncDiff``: Ephemeral classification of one sync pass.
- ``EditHistoryEntry`` / ``EditHistoryFile``: Diff-based edit history.
- ``SyncReport``: Outcome of one orchestrator operation.

Records are frozen; the two meta documents are mutable containers so a
sync pass can stage changes on a deep copy and persist once at the end.
Field aliases match the JSON wire format (camelCase, ``md5Checksum``).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SyncStatus(str, Enum):
    """Orchestrator state."""

    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    CONFLICT = "conflict"
    ERROR = "error"


class SyncOperation(str, Enum):
    """Public orchestrator operations."""

    PUSH = "push"
    PULL = "pull"
    FULL_PUSH = "full_push"
    FULL_PULL = "full_pull"
    RESOLVE = "resolve"


class ConflictKind(str, Enum):
    """Variants of a sync conflict."""

    NORMAL = "normal"
    EDIT_DELETE = "edit_delete"


class ConflictChoice(str, Enum):
    """Which side wins a conflict."""

    LOCAL = "local"
    REMOTE = "remote"


class HistoryOrigin(str, Enum):
    """Where a history diff came from, which fixes its stored direction."""

    LOCAL = "local"
    REMOTE = "remote"


class EditSource(str, Enum):
    """What produced an edit history entry."""

    WORKFLOW = "workflow"
    PROPOSE_EDIT = "propose_edit"
    MANUAL = "manual"
    AUTO = "auto"


class FileChangeType(str, Enum):
    """Row type in the pending-changes file list."""

    MODIFIED = "modified"
    NEW = "new"
    RENAMED = "renamed"
    DELETED = "deleted"
    EDIT_DELETED = "editDeleted"
    CONFLICT = "conflict"


# ---------------------------------------------------------------------------
# Remote side
# ---------------------------------------------------------------------------


class DriveFile(BaseModel):
    """File metadata returned by the Drive API."""

    id: str
    name: str
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")
    modified_time: str | None = Field(default=None, alias="modifiedTime")
    created_time: str | None = Field(default=None, alias="createdTime")
    md5_checksum: str | None = Field(default=None, alias="md5Checksum")
    parents: list[str] | None = None
    size: str | None = None

    model_config = {"frozen": True, "populate_by_name": True}


class RemoteFileRecord(BaseModel):
    """One file known to the remote store.

    Attributes:
        name: Drive file name (the vault path for files created by push).
        path: Vault-relative path; falls back to ``name`` when missing.
        mime_type: MIME type used on upload.
        checksum: Drive's MD5 of the stored bytes.
        modified_time: Drive modification timestamp.
        created_time: Drive creation timestamp.
    """

    name: str
    path: str | None = None
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")
    checksum: str = Field(default="", alias="md5Checksum")
    modified_time: str = Field(default="", alias="modifiedTime")
    created_time: str | None = Field(default=None, alias="createdTime")

    model_config = {"frozen": True, "populate_by_name": True}

    @property
    def vault_path(self) -> str:
        """Vault path of this record (``path`` or, failing that, ``name``)."""
        return self.path or self.name


class RemoteSyncMeta(BaseModel):
    """The remote store's authoritative file set, keyed by file id."""

    last_updated_at: str = Field(default="", alias="lastUpdatedAt")
    files: dict[str, RemoteFileRecord] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


# ---------------------------------------------------------------------------
# Local side
# ---------------------------------------------------------------------------


class LocalFileEntry(BaseModel):
    """Common-ancestor state of one file plus its checksum cache key.

    ``checksum``/``modified_time`` record the content as it stood at the
    last successful sync of this file. They only advance when a push or
    pull of this file completes.

    Attributes:
        checksum: Ancestor MD5.
        modified_time: Remote modification time at the ancestor.
        name: Remote file name at the ancestor.
        cached_mtime: Vault mtime (epoch ms) the checksum was computed at.
        cached_size: Vault size (bytes) the checksum was computed at.
    """

    checksum: str = Field(default="", alias="md5Checksum")
    modified_time: str = Field(default="", alias="modifiedTime")
    name: str | None = None
    cached_mtime: int | None = Field(default=None, alias="localMtime")
    cached_size: int | None = Field(default=None, alias="localSize")

    model_config = {"frozen": True, "populate_by_name": True}


class LocalSyncMeta(BaseModel):
    """Persisted local sync metadata.

    ``path_to_id`` is a secondary index over ``files``: every value is a key
    of ``files`` and no two paths share an id.
    """

    last_updated_at: str = Field(default="", alias="lastUpdatedAt")
    files: dict[str, LocalFileEntry] = Field(default_factory=dict)
    path_to_id: dict[str, str] = Field(default_factory=dict, alias="pathToId")

    model_config = {"populate_by_name": True}


# ---------------------------------------------------------------------------
# Diff classification
# ---------------------------------------------------------------------------


class ConflictInfo(BaseModel):
    """A file whose two sides diverged from the ancestor.

    Attributes:
        file_id: Remote file id.
        file_name: Vault path shown to the user.
        local_checksum: Ancestor (or live, for untracked files) checksum.
        remote_checksum: Current remote checksum; empty for edit-delete.
        local_modified_time: Ancestor modification time.
        remote_modified_time: Current remote modification time.
        kind: ``NORMAL`` or ``EDIT_DELETE``.
    """

    file_id: str
    file_name: str
    local_checksum: str = ""
    remote_checksum: str = ""
    local_modified_time: str = ""
    remote_modified_time: str = ""
    kind: ConflictKind = ConflictKind.NORMAL

    model_config = {"frozen": True}

    @property
    def is_edit_delete(self) -> bool:
        return self.kind is ConflictKind.EDIT_DELETE


class SyncDiff(BaseModel):
    """Classification of one sync pass. Never persisted."""

    to_push: list[str] = Field(default_factory=list)
    to_pull: list[str] = Field(default_factory=list)
    local_only: list[str] = Field(default_factory=list)
    remote_only: list[str] = Field(default_factory=list)
    conflicts: list[ConflictInfo] = Field(default_factory=list)
    edit_delete_conflicts: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    def handled_ids(self) -> set[str]:
        """Every file id that landed in some category."""
        return {
            *self.to_push,
            *self.to_pull,
            *self.local_only,
            *self.remote_only,
            *self.edit_delete_conflicts,
            *(c.file_id for c in self.conflicts),
        }

    @property
    def is_empty(self) -> bool:
        return not self.handled_ids()


class SyncFileListItem(BaseModel):
    """One row of the pending-changes list."""

    id: str
    name: str
    type: FileChangeType
    old_name: str | None = None

    model_config = {"frozen": True}


class SyncFileList(BaseModel):
    """Pending changes for one direction."""

    files: list[SyncFileListItem] = Field(default_factory=list)
    has_remote_changes: bool = False

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Edit history
# ---------------------------------------------------------------------------


class DiffStats(BaseModel):
    """Line counts of a diff."""

    additions: int = 0
    deletions: int = 0

    model_config = {"frozen": True}

    @property
    def is_empty(self) -> bool:
        return self.additions == 0 and self.deletions == 0


class EditHistoryEntry(BaseModel):
    """One recorded edit.

    Local entries store the diff new->old (an undo patch); remote entries
    store it old->new as captured at push time.
    """

    id: str
    timestamp: str
    source: EditSource
    workflow_name: str | None = Field(default=None, alias="workflowName")
    model: str | None = None
    diff: str
    stats: DiffStats = Field(default_factory=DiffStats)

    model_config = {"frozen": True, "populate_by_name": True}


class EditHistoryFile(BaseModel):
    """History document for one vault path."""

    version: int = 1
    path: str
    entries: list[EditHistoryEntry] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class DiffWithOrigin(BaseModel):
    """A diff tagged with the origin that fixes its direction."""

    diff: str
    origin: HistoryOrigin

    model_config = {"frozen": True}


class TimelineEntry(BaseModel):
    """An entry of the merged local + remote history timeline."""

    entry: EditHistoryEntry
    origin: HistoryOrigin

    model_config = {"frozen": True}

    def as_diff(self) -> DiffWithOrigin:
        return DiffWithOrigin(diff=self.entry.diff, origin=self.origin)


# ---------------------------------------------------------------------------
# Temp staging
# ---------------------------------------------------------------------------


class TempFilePayload(BaseModel):
    """Content staged in ``__TEMP__/`` for later application."""

    file_id: str = Field(alias="fileId")
    content: str
    saved_at: str = Field(alias="savedAt")
    is_binary: bool = Field(default=False, alias="isBinary")

    model_config = {"frozen": True, "populate_by_name": True}


class TempFile(BaseModel):
    """A temp file on Drive together with its decoded payload."""

    file: DriveFile
    payload: TempFilePayload

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Operation report
# ---------------------------------------------------------------------------


class SyncReport(BaseModel):
    """Outcome of one orchestrator operation.

    Attributes:
        operation: Which operation ran.
        status: Engine status after the operation.
        skipped: True when the sync lock was held and nothing ran.
        pushed: Vault paths uploaded.
        pulled: Vault paths downloaded.
        renamed: Rename pairs applied as ``(old, new)``.
        trashed: Vault paths moved to the remote trash.
        deleted: Vault paths removed locally.
        failed: Vault paths whose transfer failed this pass.
        conflicts: Conflicts that halted a pull.
        error: Error message when the operation failed.
        started_at: ISO 8601 start time.
        completed_at: ISO 8601 completion time.
        follow_up: Report of an operation chained after this one (the
            pull that runs once the last conflict is resolved).
    """

    operation: SyncOperation
    status: SyncStatus = SyncStatus.IDLE
    skipped: bool = False
    pushed: list[str] = Field(default_factory=list)
    pulled: list[str] = Field(default_factory=list)
    renamed: list[tuple[str, str]] = Field(default_factory=list)
    trashed: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    conflicts: list[ConflictInfo] = Field(default_factory=list)
    error: str | None = None
    started_at: str = Field(default_factory=utc_now_iso)
    completed_at: str | None = None
    follow_up: SyncReport | None = None

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        """True when the operation ran and finished without error or conflict."""
        return (
            not self.skipped
            and self.error is None
            and self.status is not SyncStatus.CONFLICT
        )

    def summary(self) -> str:
        """Format a human-readable summary of the operation.

        Returns:
            Multi-line summary string with counts per category.
        """
        title = f"Sync {self.operation.value}"
        if self.skipped:
            return f"{title}: skipped (sync already in progress, try again later)"
        lines = [
            f"{title}: {self.status.value}",
            f"  Pushed:    {len(self.pushed)}",
            f"  Pulled:    {len(self.pulled)}",
            f"  Renamed:   {len(self.renamed)}",
            f"  Trashed:   {len(self.trashed)}",
            f"  Deleted:   {len(self.deleted)}",
            f"  Failed:    {len(self.failed)}",
            f"  Conflicts: {len(self.conflicts)}",
        ]
        if self.error:
            lines.append(f"  Error:     {self.error}")
        if self.follow_up is not None:
            lines.append(self.follow_up.summary())
        return "\n".join(lines)
