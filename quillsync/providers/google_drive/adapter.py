from __future__ import annotations

from datetime import datetime
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from pydantic import BaseModel

from quillsync.core.errors import RemoteNotFound
from quillsync.store.models import book_config_path, chapter_path, chapters_folder_path, now_ms

ROOT_ALIAS = "root"

MIME_BY_SUFFIX = {
    ".json": "application/json",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
}


def parse_timestamp(value) -> int:
    """Return epoch milliseconds for an epoch (s or ms) or RFC 3339 timestamp; 0 if unparseable."""
    if value is None or value == "":
        return 0
    raw = str(value).strip()
    if raw.isdigit():
        num = int(raw)
        return num if num > 10_000_000_000 else num * 1000
    try:
        return int(datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return 0


def mime_type_for(name: str) -> str:
    return MIME_BY_SUFFIX.get(PurePosixPath(name).suffix.lower(), "text/plain")


def split_path(path: str) -> tuple[str, str]:
    clean = str(PurePosixPath(path.strip("/")))
    if clean in ("", "."):
        raise ValueError("remote_path_empty")
    parent, _, name = clean.rpartition("/")
    return parent, name


class RemoteFile(BaseModel):
    id: str
    name: str
    modified_time: int = 0
    content: Optional[str] = None


def _to_remote_file(item: dict, content: Optional[str] = None) -> RemoteFile:
    return RemoteFile(
        id=item["id"],
        name=item.get("name") or "",
        modified_time=parse_timestamp(item.get("modifiedTime")) or now_ms(),
        content=content,
    )


class DriveAdapter:
    """Maps logical paths (``<book>/book.json``, ``<book>/chapters/<file>``) onto
    Drive folders under one app folder.

    Folder resolution is find-or-create with a cache. It is not safe against two
    concurrent callers creating the same folder; the orchestrator's single-flight
    lock is what keeps that from happening.
    """

    def __init__(self, client, app_folder_name: str = "QuillSync"):
        self.client = client
        self.app_folder_name = app_folder_name
        self._folder_cache: Dict[str, str] = {}

    def initialize(self) -> str:
        return self._app_folder_id()

    def reset_cache(self):
        self._folder_cache.clear()

    def _app_folder_id(self) -> str:
        cached = self._folder_cache.get("")
        if cached:
            return cached
        found = self.client.list_children(ROOT_ALIAS, name=self.app_folder_name, folders_only=True)
        if found:
            folder_id = found[0]["id"]
        else:
            folder_id = self.client.create_folder(self.app_folder_name, ROOT_ALIAS)
        self._folder_cache[""] = folder_id
        return folder_id

    def _find_child_folder(self, parent_id: str, name: str) -> Optional[str]:
        found = self.client.list_children(parent_id, name=name, folders_only=True)
        return found[0]["id"] if found else None

    def _resolve_folder(self, folder_path: str, create: bool) -> Optional[str]:
        folder_path = folder_path.strip("/")
        if folder_path in self._folder_cache:
            return self._folder_cache[folder_path]

        current = self._app_folder_id()
        if not folder_path:
            return current

        current_rel = ""
        for part in PurePosixPath(folder_path).parts:
            current_rel = f"{current_rel}/{part}" if current_rel else part
            if current_rel in self._folder_cache:
                current = self._folder_cache[current_rel]
                continue

            found = self._find_child_folder(current, part)
            if not found:
                if not create:
                    return None
                found = self.client.create_folder(part, current)

            self._folder_cache[current_rel] = found
            current = found

        return current

    def _forget_folder(self, folder_path: str):
        folder_path = folder_path.strip("/")
        for key in list(self._folder_cache):
            if key == folder_path or key.startswith(f"{folder_path}/") or (not folder_path and key):
                self._folder_cache.pop(key, None)

    def _find_file(self, folder_id: str, name: str) -> Optional[dict]:
        found = self.client.list_children(folder_id, name=name, files_only=True)
        return found[0] if found else None

    def upsert(self, path: str, content: str) -> RemoteFile:
        """Create the file if absent, update it in place if present."""
        parent, name = split_path(path)
        try:
            return self._upsert_once(parent, name, content)
        except RemoteNotFound:
            # A cached folder was removed remotely since we resolved it; resolve again.
            self._forget_folder(parent)
            return self._upsert_once(parent, name, content)

    def _upsert_once(self, parent: str, name: str, content: str) -> RemoteFile:
        folder_id = self._resolve_folder(parent, create=True)
        mime_type = mime_type_for(name)
        existing = self._find_file(folder_id, name)
        if existing:
            item = self.client.update_file(existing["id"], content, mime_type)
        else:
            item = self.client.create_file(name, folder_id, content, mime_type)
        return _to_remote_file(item)

    def read_file(self, path: str) -> Optional[RemoteFile]:
        parent, name = split_path(path)
        folder_id = self._resolve_folder(parent, create=False)
        if not folder_id:
            return None
        item = self._find_file(folder_id, name)
        if not item:
            return None
        try:
            content = self.client.download_text(item["id"])
        except RemoteNotFound:
            return None
        return _to_remote_file(item, content=content)

    def read(self, path: str) -> Optional[str]:
        found = self.read_file(path)
        return found.content if found else None

    def list(self, folder_path: str = "", folders_only: bool = False) -> List[str]:
        folder_id = self._resolve_folder(folder_path, create=False)
        if not folder_id:
            return []
        if folders_only:
            items = self.client.list_children(folder_id, folders_only=True)
        else:
            items = self.client.list_children(folder_id, files_only=True)
        names = sorted({item.get("name") or "" for item in items} - {""})
        return names

    def delete(self, path: str) -> bool:
        """Delete a file, or a whole folder when ``path`` names one. Missing targets return False."""
        parent, name = split_path(path)
        folder_id = self._resolve_folder(parent, create=False)
        if not folder_id:
            return False
        targets = self.client.list_children(folder_id, name=name)
        if not targets:
            return False
        for item in targets:
            try:
                self.client.delete_file(item["id"])
            except RemoteNotFound:
                continue
        self._forget_folder(path)
        return True

    # Book-level helpers

    def list_books(self) -> List[str]:
        return self.list("", folders_only=True)

    def list_chapter_files(self, book_name: str) -> List[str]:
        return self.list(chapters_folder_path(book_name))

    def delete_book(self, book_name: str) -> bool:
        return self.delete(book_name)

    @staticmethod
    def book_config_path(book_name: str) -> str:
        return book_config_path(book_name)

    @staticmethod
    def chapter_path(book_name: str, file_name: str) -> str:
        return chapter_path(book_name, file_name)

