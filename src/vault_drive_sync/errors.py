"""Exception taxonomy for vault-drive-sync.

Engine operations catch these at the operation boundary and turn them into
``last_error`` plus an error status; lower layers raise them freely.
"""

from __future__ import annotations

PULL_FIRST_MESSAGE = "Remote has pending changes. Please pull first."


class VaultSyncError(Exception):
    """Base class for all sync errors."""


class PatchError(VaultSyncError):
    """A strict patch application left hunks unmatched.

    Attributes:
        unmatched: Number of hunks that could not be located.
    """

    def __init__(self, unmatched: int) -> None:
        self.unmatched = unmatched
        super().__init__(f"{unmatched} diff hunk(s) failed to match")


class PushRejectedError(VaultSyncError):
    """Push refused because the remote has changes not yet pulled."""

    def __init__(self, message: str = PULL_FIRST_MESSAGE) -> None:
        super().__init__(message)


class RemoteMetaMissingError(VaultSyncError):
    """Remote sync metadata is required but does not exist."""


class ConflictNotFoundError(VaultSyncError):
    """No pending conflict matches the requested file id."""


class InvalidVaultPathError(VaultSyncError, ValueError):
    """Vault path is absolute or escapes the vault root."""


class TempFileTooLargeError(VaultSyncError):
    """File exceeds the temp staging size cap."""


class DriveAPIError(VaultSyncError):
    """Drive API answered with a non-2xx status.

    Attributes:
        status: HTTP status code.
        body: Leading part of the response body.
    """

    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(f"Drive API error {status}: {body}")
