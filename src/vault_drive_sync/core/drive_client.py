import json
import logging
import threading
import time
import uuid
from typing import Any

import requests

from vault_drive_sync.errors import DriveAPIError
from vault_drive_sync.sync.models import DriveFile
from vault_drive_sync.core.store import FOLDER_MIME_TYPE

logger = logging.getLogger(__name__)

DRIVE_API = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_API = "https://www.googleapis.com/upload/drive/v3"

FILE_FIELDS = "id,name,mimeType,modifiedTime,createdTime,webViewLink,md5Checksum"
SYSTEM_FILE_NAMES = frozenset({"settings.json", "_sync-meta.json"})

_RETRY_STATUSES = (429, 503)


def escape_query(value: str) -> str:
    """Escape a literal for use inside a Drive ``q`` expression."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveClient:
    """Google Drive v3 REST client.

    Args:
        access_token: OAuth bearer token.
        timeout: ``(connect, read)`` timeout passed to requests.
        max_retries: Retries for 429/503 responses.
    """

    def __init__(
        self,
        access_token: str,
        timeout: tuple[float, float] = (10, 60),
        max_retries: int = 2,
    ):
        self.access_token = access_token
        self.timeout = timeout
        self.max_retries = max_retries
        self._thread_local = threading.local()
        self._folder_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        """Session for the calling thread."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers["Authorization"] = f"Bearer {self.access_token}"
        return session

    def _request(
        self, method: str, url: str, **kwargs: Any
    ) -> requests.Response:
        """
        Send a request, retrying rate-limit and unavailable responses.
        """
        retries = self.max_retries
        while True:
            response = self._get_session().request(
                method, url, timeout=self.timeout, **kwargs
            )
            if response.status_code in _RETRY_STATUSES and retries > 0:
                retries -= 1
                try:
                    delay = int(response.headers.get("Retry-After", "2"))
                except ValueError:
                    delay = 2
                logger.info(
                    "Drive returned %d, retrying in %ds",
                    response.status_code,
                    delay,
                )
                time.sleep(delay)
                continue
            if not 200 <= response.status_code < 300:
                raise DriveAPIError(
                    response.status_code, response.text[:200]
                )
            return response

    def _query(self, q: str, fields: str, **params: Any) -> list[DriveFile]:
        response = self._request(
            "GET",
            f"{DRIVE_API}/files",
            params={"q": q, "fields": f"files({fields})", **params},
        )
        return [
            DriveFile.model_validate(f)
            for f in response.json().get("files", [])
        ]

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def _create_folder(self, name: str, parent_id: str | None) -> str:
        body: dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            body["parents"] = [parent_id]
        response = self._request("POST", f"{DRIVE_API}/files", json=body)
        return response.json()["id"]

    def ensure_root_folder(self, name: str) -> str:
        """Find or create the top-level sync folder."""
        q = (
            f"name='{escape_query(name)}' and mimeType='{FOLDER_MIME_TYPE}' "
            "and trashed=false"
        )
        with self._folder_lock:
            found = self._query(q, "id,name")
            if found:
                return found[0].id
            return self._create_folder(name, None)

    def ensure_subfolder(self, parent_id: str, name: str) -> str:
        """Find or create a folder under ``parent_id``.

        Serialised per client so concurrent callers never create twins.
        """
        q = (
            f"name='{escape_query(name)}' and '{parent_id}' in parents "
            f"and mimeType='{FOLDER_MIME_TYPE}' and trashed=false"
        )
        with self._folder_lock:
            found = self._query(q, "id,name")
            if found:
                return found[0].id
            return self._create_folder(name, parent_id)

    # ------------------------------------------------------------------
    # Listing and lookup
    # ------------------------------------------------------------------

    def list_files(self, folder_id: str) -> list[DriveFile]:
        """All non-trashed children of a folder, following page tokens."""
        files: list[DriveFile] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "q": f"'{folder_id}' in parents and trashed=false",
                "fields": f"nextPageToken,files({FILE_FIELDS})",
                "orderBy": "modifiedTime desc",
                "pageSize": 1000,
            }
            if page_token:
                params["pageToken"] = page_token
            data = self._request(
                "GET", f"{DRIVE_API}/files", params=params
            ).json()
            files.extend(
                DriveFile.model_validate(f) for f in data.get("files", [])
            )
            page_token = data.get("nextPageToken")
            if not page_token:
                return files

    def list_user_files(self, folder_id: str) -> list[DriveFile]:
        """Files of a folder minus subfolders and sync system files."""
        return [
            f
            for f in self.list_files(folder_id)
            if f.mime_type != FOLDER_MIME_TYPE
            and f.name not in SYSTEM_FILE_NAMES
        ]

    def find_file_by_name(
        self, name: str, parent_id: str | None = None
    ) -> DriveFile | None:
        q = (
            f"name='{escape_query(name)}' and mimeType!='{FOLDER_MIME_TYPE}' "
            "and trashed=false"
        )
        if parent_id:
            q += f" and '{parent_id}' in parents"
        found = self._query(
            q, "id,name,mimeType,modifiedTime,md5Checksum", pageSize=1
        )
        return found[0] if found else None

    def get_metadata(self, file_id: str) -> DriveFile:
        response = self._request(
            "GET",
            f"{DRIVE_API}/files/{file_id}",
            params={"fields": f"{FILE_FIELDS},parents,size"},
        )
        return DriveFile.model_validate(response.json())

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def read_bytes(self, file_id: str) -> bytes:
        response = self._request(
            "GET",
            f"{DRIVE_API}/files/{file_id}",
            params={"alt": "media"},
        )
        return response.content

    def read_text(self, file_id: str) -> str:
        return self.read_bytes(file_id).decode("utf-8")

    def create_file(
        self,
        name: str,
        content: str | bytes,
        parent_id: str,
        mime_type: str = "text/plain",
    ) -> DriveFile:
        """Create a file with a multipart/related upload."""
        data = content.encode("utf-8") if isinstance(content, str) else content
        boundary = f"----vault-drive-sync-{uuid.uuid4().hex}"
        metadata = json.dumps(
            {"name": name, "parents": [parent_id], "mimeType": mime_type}
        )
        body = b"".join(
            [
                f"--{boundary}\r\n".encode(),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                metadata.encode("utf-8"),
                f"\r\n--{boundary}\r\n".encode(),
                f"Content-Type: {mime_type}\r\n\r\n".encode(),
                data,
                f"\r\n--{boundary}--".encode(),
            ]
        )
        response = self._request(
            "POST",
            f"{DRIVE_UPLOAD_API}/files",
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            data=body,
            headers={
                "Content-Type": f"multipart/related; boundary={boundary}"
            },
        )
        return DriveFile.model_validate(response.json())

    def update_file(
        self,
        file_id: str,
        content: str | bytes,
        mime_type: str = "text/plain",
    ) -> DriveFile:
        data = content.encode("utf-8") if isinstance(content, str) else content
        response = self._request(
            "PATCH",
            f"{DRIVE_UPLOAD_API}/files/{file_id}",
            params={"uploadType": "media", "fields": FILE_FIELDS},
            data=data,
            headers={"Content-Type": mime_type},
        )
        return DriveFile.model_validate(response.json())

    # ------------------------------------------------------------------
    # Tree operations
    # ------------------------------------------------------------------

    def rename_file(self, file_id: str, new_name: str) -> DriveFile:
        response = self._request(
            "PATCH",
            f"{DRIVE_API}/files/{file_id}",
            params={"fields": FILE_FIELDS},
            json={"name": new_name},
        )
        return DriveFile.model_validate(response.json())

    def move_file(
        self, file_id: str, new_parent_id: str, old_parent_id: str
    ) -> None:
        self._request(
            "PATCH",
            f"{DRIVE_API}/files/{file_id}",
            params={
                "addParents": new_parent_id,
                "removeParents": old_parent_id,
                "fields": "id",
            },
        )

    def delete_file(self, file_id: str) -> None:
        """Permanently delete. Only used for trash, backups and temp files."""
        self._request("DELETE", f"{DRIVE_API}/files/{file_id}")
