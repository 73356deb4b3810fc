"""Error taxonomy shared by the store, the Drive provider and the sync engine.

Storage failures are fatal to the calling operation. Remote failures are split
so the orchestrator can tell a cycle-level abort (``AuthExpired``) from an
entity-level skip (``NetworkError`` on a single file, ``RemoteNotFound``).
"""

from __future__ import annotations


class QuillSyncError(RuntimeError):
    code = "quillsync_error"

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(f"{self.code}: {detail}" if detail else self.code)


class StorageUnavailable(QuillSyncError):
    code = "storage_unavailable"


class BookNotFound(QuillSyncError, LookupError):
    code = "book_not_found"


class BookAlreadyExists(QuillSyncError, ValueError):
    code = "book_already_exists"


class RemoteError(QuillSyncError):
    code = "remote_error"

    def __init__(self, detail: str = "", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(detail)


class AuthExpired(RemoteError):
    code = "auth_expired"


class NetworkError(RemoteError):
    code = "network_error"


class RemoteNotFound(RemoteError):
    code = "remote_not_found"
