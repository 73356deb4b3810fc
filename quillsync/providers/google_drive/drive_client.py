import json
import logging
import time
from typing import Any

import requests

from quillsync.core.errors import AuthExpired, NetworkError, RemoteError, RemoteNotFound

BASE = "https://www.googleapis.com/drive/v3"
UPLOAD_BASE = "https://www.googleapis.com/upload/drive/v3"
FOLDER_MIME = "application/vnd.google-apps.folder"
FILE_FIELDS = "id,name,mimeType,modifiedTime"
MULTIPART_BOUNDARY = "-------quillsync-5d1f0c2b7e"

logger = logging.getLogger("quillsync.drive")


def escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def build_multipart_body(metadata: dict[str, Any], content: str, mime_type: str) -> bytes:
    parts = [
        f"--{MULTIPART_BOUNDARY}\r\n",
        "Content-Type: application/json; charset=UTF-8\r\n\r\n",
        json.dumps(metadata, ensure_ascii=False),
        "\r\n",
        f"--{MULTIPART_BOUNDARY}\r\n",
        f"Content-Type: {mime_type}; charset=UTF-8\r\n\r\n",
        content,
        f"\r\n--{MULTIPART_BOUNDARY}--",
    ]
    return "".join(parts).encode("utf-8")


class DriveClient:
    """Thin Google Drive v3 REST client.

    Every call goes through ``_request``, which turns transport failures and
    HTTP statuses into the ``quillsync.core.errors`` taxonomy:
    connection errors, timeouts, 429 and 5xx become ``NetworkError`` after
    ``max_retry`` retries; 401 triggers one forced token refresh and then
    ``AuthExpired``; 404 becomes ``RemoteNotFound``.
    """

    def __init__(self, auth, timeout: int = 30, max_retry: int = 3, retry_backoff_sec: float = 1.0,
                 session: requests.Session | None = None):
        self.auth = auth
        self.timeout = timeout
        self.max_retry = max(int(max_retry), 0)
        self.retry_backoff_sec = max(float(retry_backoff_sec), 0.0)
        self.session = session or requests.Session()

    def _sleep_before_retry(self, attempt: int):
        if self.retry_backoff_sec > 0:
            time.sleep(self.retry_backoff_sec * (2 ** attempt))

    def _request(self, method: str, url: str, *, expect: str = "json", **kwargs) -> Any:
        extra_headers = kwargs.pop("headers", None) or {}
        refreshed = False
        attempt = 0
        while True:
            token = self.auth.ensure_valid_token(force_refresh=refreshed)
            headers = {"Authorization": f"Bearer {token}", **extra_headers}
            try:
                res = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt < self.max_retry:
                    logger.warning("drive_request_retry %s %s attempt=%s error=%s", method, url, attempt + 1, e)
                    self._sleep_before_retry(attempt)
                    attempt += 1
                    continue
                raise NetworkError(f"{method} {url}: {e}") from e
            except requests.RequestException as e:
                raise NetworkError(f"{method} {url}: {e}") from e

            status = res.status_code
            if status == 401:
                if not refreshed:
                    refreshed = True
                    continue
                raise AuthExpired(f"{method} {url}: status_401", status_code=status)
            if status == 429 or status >= 500:
                if attempt < self.max_retry:
                    logger.warning("drive_request_retry %s %s attempt=%s status=%s", method, url, attempt + 1, status)
                    self._sleep_before_retry(attempt)
                    attempt += 1
                    continue
                raise NetworkError(f"{method} {url}: status_{status}", status_code=status)
            if status == 404:
                raise RemoteNotFound(f"{method} {url}", status_code=status)
            if status >= 400:
                text = (res.text or "").strip()
                raise RemoteError(f"{method} {url}: status_{status}: {text[:200]}", status_code=status)

            if expect == "text":
                res.encoding = res.encoding or "utf-8"
                return res.text
            if expect == "none" or status == 204 or not (res.content or b"").strip():
                return None
            try:
                payload = res.json()
            except ValueError as e:
                raise RemoteError(f"invalid_response: {(res.text or '')[:200]}") from e
            if not isinstance(payload, dict):
                raise RemoteError("invalid_response")
            return payload

    def list_children(self, folder_id: str, name: str | None = None, folders_only: bool = False,
                      files_only: bool = False) -> list[dict[str, Any]]:
        clauses = [f"'{escape_query_value(folder_id)}' in parents", "trashed=false"]
        if name is not None:
            clauses.append(f"name='{escape_query_value(name)}'")
        if folders_only:
            clauses.append(f"mimeType='{FOLDER_MIME}'")
        elif files_only:
            clauses.append(f"mimeType!='{FOLDER_MIME}'")

        items: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, str | int] = {
                "q": " and ".join(clauses),
                "fields": f"nextPageToken,files({FILE_FIELDS})",
                "pageSize": 1000,
                "orderBy": "name,modifiedTime desc",
            }
            if page_token:
                params["pageToken"] = page_token
            body = self._request("GET", f"{BASE}/files", params=params) or {}
            files = body.get("files", []) or []
            items.extend(item for item in files if isinstance(item, dict))
            page_token = body.get("nextPageToken")
            if not page_token:
                break
        return items

    def create_folder(self, name: str, parent_id: str) -> str:
        body = self._request(
            "POST",
            f"{BASE}/files",
            params={"fields": FILE_FIELDS},
            json={"name": name, "mimeType": FOLDER_MIME, "parents": [parent_id]},
        ) or {}
        folder_id = body.get("id")
        if not isinstance(folder_id, str) or not folder_id:
            raise RemoteError("create_folder_no_id")
        return folder_id

    def create_file(self, name: str, parent_id: str, content: str, mime_type: str) -> dict[str, Any]:
        metadata = {"name": name, "parents": [parent_id], "mimeType": mime_type}
        return self._upload("POST", f"{UPLOAD_BASE}/files", metadata, content, mime_type)

    def update_file(self, file_id: str, content: str, mime_type: str) -> dict[str, Any]:
        # Updates must not carry "parents"; Drive rejects it on PATCH.
        metadata = {"mimeType": mime_type}
        return self._upload("PATCH", f"{UPLOAD_BASE}/files/{file_id}", metadata, content, mime_type)

    def _upload(self, method: str, url: str, metadata: dict[str, Any], content: str, mime_type: str) -> dict[str, Any]:
        body = self._request(
            method,
            url,
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            data=build_multipart_body(metadata, content, mime_type),
            headers={"Content-Type": f"multipart/related; boundary={MULTIPART_BOUNDARY}"},
        ) or {}
        if not body.get("id"):
            raise RemoteError("upload_no_file_id")
        return body

    def download_text(self, file_id: str) -> str:
        return self._request("GET", f"{BASE}/files/{file_id}", params={"alt": "media"}, expect="text")

    def delete_file(self, file_id: str) -> None:
        self._request("DELETE", f"{BASE}/files/{file_id}", expect="none")
