"""Vault adapter: the local file tree the engine syncs.

Paths are vault-relative POSIX strings ("notes/daily/2024-01-01.md").
``LocalVault`` maps them onto a directory; every write is atomic (temp
file + ``os.replace``) so a crash never leaves a half-written note.
Text reads try UTF-8 first and fall back to charset-normalizer detection.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import NamedTuple, Protocol

from charset_normalizer import from_bytes

from vault_drive_sync.errors import InvalidVaultPathError

logger = logging.getLogger(__name__)

LOCAL_TRASH_DIR = ".trash"


class VaultFile(NamedTuple):
    """A file in the vault with the stats used as the checksum cache key."""

    path: str
    mtime: int
    size: int


class VaultAdapter(Protocol):
    """Narrow file-tree interface consumed by the sync engine."""

    def list_files(self) -> list[VaultFile]: ...

    def stat(self, path: str) -> VaultFile | None: ...

    def exists(self, path: str) -> bool: ...

    def read_text(self, path: str) -> str: ...

    def read_bytes(self, path: str) -> bytes: ...

    def write_text(self, path: str, content: str) -> None: ...

    def write_bytes(self, path: str, content: bytes) -> None: ...

    def trash(self, path: str) -> None: ...

    def mkdir(self, path: str) -> None: ...

    def remove(self, path: str) -> None: ...


# =============================================================================
# Path Validation
# =============================================================================


def is_valid_vault_path(path: str) -> bool:
    """Return True for a relative path with no empty, "." or ".." segments."""
    if not path or path.startswith(("/", "\\")):
        return False
    segments = path.replace("\\", "/").split("/")
    return all(seg not in ("", ".", "..") for seg in segments)


def parent_folder(path: str) -> str:
    """Vault-relative parent folder of ``path`` ("" at the root)."""
    parent = str(PurePosixPath(path).parent)
    return "" if parent == "." else parent


# =============================================================================
# Text decoding
# =============================================================================


def decode_text(raw: bytes) -> str:
    """Decode file bytes, preferring UTF-8.

    Falls back to charset-normalizer detection when the bytes are not valid
    UTF-8, and to lossy UTF-8 when detection fails.
    """
    if not raw:
        return ""
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        pass
    best = from_bytes(raw).best()
    if best is None:
        return raw.decode("utf-8", errors="replace")
    logger.debug("Decoded non-UTF-8 content as %s", best.encoding)
    return str(best)


# =============================================================================
# Filesystem vault
# =============================================================================


class LocalVault:
    """Vault backed by a directory on disk.

    Args:
        root: Vault root directory (created if missing).
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        if not is_valid_vault_path(path):
            raise InvalidVaultPathError(f"Unsafe vault path: {path!r}")
        return self.root.joinpath(*path.split("/"))

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_files(self) -> list[VaultFile]:
        """Every regular file under the root, sorted by path."""
        files: list[VaultFile] = []
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for filename in filenames:
                full = Path(dirpath) / filename
                rel = full.relative_to(self.root).as_posix()
                try:
                    st = full.stat()
                except OSError as exc:
                    logger.warning("Cannot stat %s: %s", rel, exc)
                    continue
                files.append(
                    VaultFile(rel, st.st_mtime_ns // 1_000_000, st.st_size)
                )
        files.sort(key=lambda f: f.path)
        return files

    def stat(self, path: str) -> VaultFile | None:
        target = self._resolve(path)
        if not target.is_file():
            return None
        st = target.stat()
        return VaultFile(path, st.st_mtime_ns // 1_000_000, st.st_size)

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    def read_text(self, path: str) -> str:
        return decode_text(self._resolve(path).read_bytes())

    def read_bytes(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def write_text(self, path: str, content: str) -> None:
        self.write_bytes(path, content.encode("utf-8"))

    def write_bytes(self, path: str, content: bytes) -> None:
        """Write atomically, creating parent folders as needed."""
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(target.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # ------------------------------------------------------------------
    # Tree operations
    # ------------------------------------------------------------------

    def trash(self, path: str) -> None:
        """Move a file into the vault's ``.trash/`` folder.

        An existing trashed file of the same name is replaced.
        """
        source = self._resolve(path)
        if not source.exists():
            return
        dest = self.root / LOCAL_TRASH_DIR / path
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(dest))
        logger.debug("Trashed %s", path)

    def mkdir(self, path: str) -> None:
        self._resolve(path).mkdir(parents=True, exist_ok=True)

    def remove(self, path: str) -> None:
        """Delete a file permanently. Missing files are ignored."""
        target = self._resolve(path)
        if target.is_file():
            target.unlink()
