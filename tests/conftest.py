"""Shared pytest fixtures for vault-drive-sync tests."""

from __future__ import annotations

import hashlib
import itertools
import threading
from pathlib import Path

import pytest
from dotenv import load_dotenv

from vault_drive_sync.core.store import FOLDER_MIME_TYPE
from vault_drive_sync.errors import DriveAPIError
from vault_drive_sync.sync.engine import SyncEngine, SyncSettings
from vault_drive_sync.sync.meta import (
    read_remote_sync_meta,
    remove_file_from_meta,
    upsert_file_in_meta,
    write_remote_sync_meta,
)
from vault_drive_sync.sync.models import DriveFile
from vault_drive_sync.sync.paths import SYNC_META_FILE_NAME
from vault_drive_sync.vault import LocalVault

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live Google Drive account",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live Google Drive account"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# In-memory Drive
# ---------------------------------------------------------------------------


class FakeDriveStore:
    """Thread-safe in-memory ``RemoteStore``.

    Files live in a flat dict keyed by id; folders are entries with the
    folder MIME type. Checksums are MD5 of the stored bytes, as on Drive.

    Attributes:
        calls: Names of mutating methods in call order.
        fail_names: File names whose create/update raise ``DriveAPIError``.
        fail_ids: File ids whose update/read raise ``DriveAPIError``.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._clock = itertools.count(1)
        self.entries: dict[str, dict] = {}
        self.calls: list[str] = []
        self.fail_names: set[str] = set()
        self.fail_ids: set[str] = set()

    # -- helpers -------------------------------------------------------

    def _now(self) -> str:
        tick = next(self._clock)
        return f"2024-01-01T{tick // 3600:02d}:{tick // 60 % 60:02d}:{tick % 60:02d}Z"

    def _new_id(self) -> str:
        return f"id{next(self._ids)}"

    def _to_drive_file(self, file_id: str) -> DriveFile:
        entry = self.entries[file_id]
        return DriveFile(
            id=file_id,
            name=entry["name"],
            mime_type=entry["mime"],
            modified_time=entry["modified"],
            created_time=entry["created"],
            md5_checksum=(
                None
                if entry["mime"] == FOLDER_MIME_TYPE
                else hashlib.md5(entry["content"]).hexdigest()
            ),
            parents=[entry["parent"]] if entry["parent"] else None,
        )

    def _get(self, file_id: str) -> dict:
        if file_id not in self.entries:
            raise DriveAPIError(404, f"File not found: {file_id}")
        return self.entries[file_id]

    def _folder(self, name: str, parent: str | None) -> str:
        with self._lock:
            for fid, e in self.entries.items():
                if (
                    e["mime"] == FOLDER_MIME_TYPE
                    and e["name"] == name
                    and e["parent"] == parent
                ):
                    return fid
            fid = self._new_id()
            now = self._now()
            self.entries[fid] = {
                "name": name,
                "parent": parent,
                "mime": FOLDER_MIME_TYPE,
                "content": b"",
                "modified": now,
                "created": now,
            }
            return fid

    # -- RemoteStore ---------------------------------------------------

    def ensure_root_folder(self, name: str) -> str:
        return self._folder(name, None)

    def ensure_subfolder(self, parent_id: str, name: str) -> str:
        return self._folder(name, parent_id)

    def list_files(self, folder_id: str) -> list[DriveFile]:
        with self._lock:
            return [
                self._to_drive_file(fid)
                for fid, e in self.entries.items()
                if e["parent"] == folder_id
            ]

    def list_user_files(self, folder_id: str) -> list[DriveFile]:
        return [
            f
            for f in self.list_files(folder_id)
            if f.mime_type != FOLDER_MIME_TYPE
            and f.name not in ("settings.json", SYNC_META_FILE_NAME)
        ]

    def find_file_by_name(
        self, name: str, parent_id: str | None = None
    ) -> DriveFile | None:
        with self._lock:
            for fid, e in self.entries.items():
                if (
                    e["name"] == name
                    and e["mime"] != FOLDER_MIME_TYPE
                    and (parent_id is None or e["parent"] == parent_id)
                ):
                    return self._to_drive_file(fid)
            return None

    def get_metadata(self, file_id: str) -> DriveFile:
        with self._lock:
            self._get(file_id)
            return self._to_drive_file(file_id)

    def read_bytes(self, file_id: str) -> bytes:
        with self._lock:
            if file_id in self.fail_ids:
                raise DriveAPIError(500, "injected read failure")
            return self._get(file_id)["content"]

    def read_text(self, file_id: str) -> str:
        return self.read_bytes(file_id).decode("utf-8")

    def create_file(
        self,
        name: str,
        content: str | bytes,
        parent_id: str,
        mime_type: str = "text/plain",
    ) -> DriveFile:
        with self._lock:
            self.calls.append("create_file")
            if name in self.fail_names:
                raise DriveAPIError(500, "injected create failure")
            data = content.encode("utf-8") if isinstance(content, str) else content
            fid = self._new_id()
            now = self._now()
            self.entries[fid] = {
                "name": name,
                "parent": parent_id,
                "mime": mime_type,
                "content": data,
                "modified": now,
                "created": now,
            }
            return self._to_drive_file(fid)

    def update_file(
        self,
        file_id: str,
        content: str | bytes,
        mime_type: str = "text/plain",
    ) -> DriveFile:
        with self._lock:
            self.calls.append("update_file")
            entry = self._get(file_id)
            if file_id in self.fail_ids or entry["name"] in self.fail_names:
                raise DriveAPIError(500, "injected update failure")
            entry["content"] = (
                content.encode("utf-8") if isinstance(content, str) else content
            )
            entry["mime"] = mime_type
            entry["modified"] = self._now()
            return self._to_drive_file(file_id)

    def rename_file(self, file_id: str, new_name: str) -> DriveFile:
        with self._lock:
            self.calls.append("rename_file")
            entry = self._get(file_id)
            entry["name"] = new_name
            entry["modified"] = self._now()
            return self._to_drive_file(file_id)

    def move_file(
        self, file_id: str, new_parent_id: str, old_parent_id: str
    ) -> None:
        with self._lock:
            self.calls.append("move_file")
            entry = self._get(file_id)
            assert entry["parent"] == old_parent_id
            entry["parent"] = new_parent_id

    def delete_file(self, file_id: str) -> None:
        with self._lock:
            self.calls.append("delete_file")
            self._get(file_id)
            del self.entries[file_id]

    # -- test helpers --------------------------------------------------

    def id_of(self, name: str) -> str:
        found = self.find_file_by_name(name)
        assert found is not None, f"no remote file named {name}"
        return found.id

    def text_of(self, name: str) -> str:
        return self.read_text(self.id_of(name))

    def names_in(self, folder_id: str) -> set[str]:
        return {f.name for f in self.list_files(folder_id)}


# ---------------------------------------------------------------------------
# Simulated second device
# ---------------------------------------------------------------------------


class RemoteDevice:
    """Another client sharing the Drive folder: edits land with meta updates."""

    def __init__(self, store: FakeDriveStore, root_id: str) -> None:
        self.store = store
        self.root_id = root_id

    def _id_for(self, meta, path: str) -> str | None:
        return next(
            (fid for fid, rec in meta.files.items() if rec.vault_path == path),
            None,
        )

    def push(self, path: str, content: str | bytes) -> str:
        """Create or update ``path`` as another device's push would."""
        meta = read_remote_sync_meta(self.store, self.root_id)
        assert meta is not None
        existing = self._id_for(meta, path)
        if existing is not None:
            drive_file = self.store.update_file(existing, content)
        else:
            drive_file = self.store.create_file(path, content, self.root_id)
        upsert_file_in_meta(meta, drive_file, path)
        write_remote_sync_meta(self.store, self.root_id, meta)
        return drive_file.id

    def delete(self, path: str) -> str:
        meta = read_remote_sync_meta(self.store, self.root_id)
        assert meta is not None
        file_id = self._id_for(meta, path)
        assert file_id is not None
        self.store.delete_file(file_id)
        remove_file_from_meta(meta, file_id)
        write_remote_sync_meta(self.store, self.root_id, meta)
        return file_id

    def rename(self, old_path: str, new_path: str) -> str:
        meta = read_remote_sync_meta(self.store, self.root_id)
        assert meta is not None
        file_id = self._id_for(meta, old_path)
        assert file_id is not None
        upsert_file_in_meta(
            meta, self.store.rename_file(file_id, new_path), new_path
        )
        write_remote_sync_meta(self.store, self.root_id, meta)
        return file_id


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> FakeDriveStore:
    return FakeDriveStore()


@pytest.fixture
def vault_root(tmp_path: Path) -> Path:
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def vault(vault_root: Path) -> LocalVault:
    return LocalVault(vault_root)


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(concurrency=2)


@pytest.fixture
async def engine(vault, store, settings):
    engine = SyncEngine(vault, store, settings)
    yield engine
    await engine.drain_background()


@pytest.fixture
def write_files(vault_root: Path):
    """Factory fixture writing ``{path: content}`` into the vault."""

    def _write(files: dict[str, str | bytes]) -> None:
        for rel_path, content in files.items():
            target = vault_root / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                target.write_bytes(content)
            else:
                target.write_text(content, encoding="utf-8")

    return _write


@pytest.fixture
def root_id(store, settings) -> str:
    return store.ensure_root_folder(settings.root_folder_name)


@pytest.fixture
def device(store, root_id) -> RemoteDevice:
    return RemoteDevice(store, root_id)
