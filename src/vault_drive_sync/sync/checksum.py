"""Checksum engine: Drive-compatible MD5 fingerprints with a stat cache.

The digest is MD5 over the exact bytes Drive stores, so it compares
directly against ``md5Checksum``. Text files are read as text and UTF-8
encoded before hashing, binary files are hashed raw.

Hashing is skipped when a file's ``(mtime, size)`` equals the values the
cached checksum was computed at. The cache is an optimisation only: a stale
hit costs at most one extra hash on a later pass, never a wrong decision.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field

from vault_drive_sync.core.async_utils import run_in_batches, run_sync
from vault_drive_sync.sync.models import LocalFileEntry, LocalSyncMeta
from vault_drive_sync.sync.paths import is_binary_extension
from vault_drive_sync.vault import VaultAdapter, VaultFile

logger = logging.getLogger(__name__)


def md5_bytes(data: bytes) -> str:
    """Hex MD5 of raw bytes."""
    return hashlib.md5(data).hexdigest()


def md5_text(text: str) -> str:
    """Hex MD5 of text encoded as UTF-8."""
    return md5_bytes(text.encode("utf-8"))


def file_checksum(vault: VaultAdapter, path: str) -> str:
    """Read one vault file and return its Drive-compatible checksum."""
    if is_binary_extension(path):
        return md5_bytes(vault.read_bytes(path))
    return md5_text(vault.read_text(path))


@dataclass
class ChecksumScan:
    """Result of scanning the vault.

    Attributes:
        checksums: Vault path -> live MD5, for every readable file.
        stats: Vault path -> stat of every listed file (readable or not).
    """

    checksums: dict[str, str] = field(default_factory=dict)
    stats: dict[str, VaultFile] = field(default_factory=dict)


def _cached_entries(
    local_meta: LocalSyncMeta | None,
) -> dict[str, LocalFileEntry]:
    if local_meta is None:
        return {}
    return {
        path: local_meta.files[file_id]
        for path, file_id in local_meta.path_to_id.items()
        if file_id in local_meta.files
    }


async def compute_vault_checksums(
    vault: VaultAdapter,
    files: list[VaultFile],
    local_meta: LocalSyncMeta | None = None,
    batch_size: int = 5,
) -> ChecksumScan:
    """Checksum every file, reusing cached digests where the stat matches.

    Unreadable files are logged and left out of ``checksums`` but stay in
    ``stats``, so callers can tell them apart from deleted files.
    """
    cached = _cached_entries(local_meta)
    scan = ChecksumScan()

    async def _one(file: VaultFile) -> None:
        scan.stats[file.path] = file
        entry = cached.get(file.path)
        if (
            entry is not None
            and entry.checksum
            and entry.cached_mtime == file.mtime
            and entry.cached_size == file.size
        ):
            scan.checksums[file.path] = entry.checksum
            return
        try:
            scan.checksums[file.path] = await run_sync(
                file_checksum, vault, file.path
            )
        except Exception as exc:
            logger.warning("Skipping %s (read error): %s", file.path, exc)

    await run_in_batches(files, _one, batch_size)
    return scan
