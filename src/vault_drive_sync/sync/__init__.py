"""Two-way vault <-> Drive sync engine.

Architecture
------------
Changes are detected with a **three-way comparison**: the live local
checksum and the current remote checksum are each compared against the
common ancestor recorded in local meta at the last successful sync. Local
content is never compared directly to remote content to decide direction.

Modules:

- ``engine``         -- ``SyncEngine``: push, pull, full push/pull and
  conflict resolution.
- ``diff``           -- ``compute_sync_diff``: the three-way classifier, plus
  local change and rename detection.
- ``checksum``       -- Drive-compatible MD5 scan with a stat cache.
- ``meta``           -- Local and remote sync meta persistence, conflict
  backups.
- ``history``        -- Diff-based local edit history and reconstruction.
- ``remote_history`` -- Edit history documents stored on Drive.
- ``housekeeping``   -- Remote trash, conflict backups and temp staging.
- ``patch``          -- Unified diff creation and fuzzy application.
- ``paths``          -- Exclusion rules, MIME types and binary detection.
- ``models``         -- Pydantic data contracts.

Usage example
-------------
::

    import asyncio
    from pathlib import Path
    from vault_drive_sync.core.drive_client import DriveClient
    from vault_drive_sync.sync import SyncEngine, SyncSettings
    from vault_drive_sync.vault import LocalVault

    engine = SyncEngine(
        LocalVault(Path("~/notes").expanduser()),
        DriveClient(access_token),
        SyncSettings(exclude_patterns=("drafts/",)),
    )

    report = asyncio.run(engine.pull())
    print(report.summary())
"""

from .diff import compute_sync_diff, find_locally_modified
from .engine import SyncEngine, SyncSettings
from .history import EditHistoryManager, reconstruct_content
from .models import (
    ConflictChoice,
    ConflictInfo,
    LocalSyncMeta,
    RemoteSyncMeta,
    SyncDiff,
    SyncReport,
    SyncStatus,
)
from .patch import apply_diff, create_diff, reverse_apply_diff

__all__ = [
    "ConflictChoice",
    "ConflictInfo",
    "EditHistoryManager",
    "LocalSyncMeta",
    "RemoteSyncMeta",
    "SyncDiff",
    "SyncEngine",
    "SyncReport",
    "SyncSettings",
    "SyncStatus",
    "apply_diff",
    "compute_sync_diff",
    "create_diff",
    "find_locally_modified",
    "reconstruct_content",
    "reverse_apply_diff",
]
