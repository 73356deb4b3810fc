from __future__ import annotations

import itertools
import threading
from pathlib import Path

import pytest

from quillsync.core.config import SyncConfig
from quillsync.core.errors import AuthExpired, RemoteNotFound
from quillsync.providers.google_drive import DriveAdapter
from quillsync.providers.google_drive.drive_client import FOLDER_MIME
from quillsync.store import LocalStore
from quillsync.sync import SyncOrchestrator

APP_FOLDER = "QuillSync"


class FakeDriveClient:
    """In-memory stand-in for ``DriveClient`` with the same method surface.

    ``fail`` maps ``(operation, name)`` to an exception raised when that
    operation touches an item of that name; ``name=None`` matches every call.
    ``gate`` (a threading.Event) blocks ``list_children`` until set.
    """

    def __init__(self):
        self.items: dict[str, dict] = {}
        self.fail: dict[tuple[str, str | None], Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.gate: threading.Event | None = None
        self.entered = threading.Event()
        self._ids = itertools.count(1)
        self._clock = itertools.count(1_700_000_000_000, 1000)

    def _check(self, op: str, name: str | None):
        self.calls.append((op, name or ""))
        err = self.fail.get((op, name)) or self.fail.get((op, None))
        if err is not None:
            raise err

    def _new(self, name: str, parent_id: str, mime: str, content: str | None = None) -> dict:
        item = {
            "id": f"id{next(self._ids)}",
            "name": name,
            "mimeType": mime,
            "parents": [parent_id],
            "modifiedTime": str(next(self._clock)),
            "content": content,
        }
        self.items[item["id"]] = item
        return item

    @staticmethod
    def _public(item: dict) -> dict:
        return {k: item[k] for k in ("id", "name", "mimeType", "modifiedTime")}

    # DriveClient surface

    def list_children(self, folder_id, name=None, folders_only=False, files_only=False):
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        self._check("list_children", name)
        out = []
        for item in self.items.values():
            if folder_id not in item["parents"]:
                continue
            if name is not None and item["name"] != name:
                continue
            is_folder = item["mimeType"] == FOLDER_MIME
            if folders_only and not is_folder:
                continue
            if files_only and is_folder:
                continue
            out.append(self._public(item))
        return sorted(out, key=lambda i: i["name"])

    def create_folder(self, name, parent_id):
        self._check("create_folder", name)
        return self._new(name, parent_id, FOLDER_MIME)["id"]

    def create_file(self, name, parent_id, content, mime_type):
        self._check("create_file", name)
        return self._public(self._new(name, parent_id, mime_type, content))

    def update_file(self, file_id, content, mime_type):
        item = self.items.get(file_id)
        if item is None:
            raise RemoteNotFound(f"PATCH {file_id}", status_code=404)
        self._check("update_file", item["name"])
        item["content"] = content
        item["modifiedTime"] = str(next(self._clock))
        return self._public(item)

    def download_text(self, file_id):
        item = self.items.get(file_id)
        if item is None:
            raise RemoteNotFound(f"GET {file_id}", status_code=404)
        self._check("download_text", item["name"])
        return item["content"] or ""

    def delete_file(self, file_id):
        if file_id not in self.items:
            raise RemoteNotFound(f"DELETE {file_id}", status_code=404)
        self._check("delete_file", self.items[file_id]["name"])
        for child_id in [i["id"] for i in self.items.values() if file_id in i["parents"]]:
            self.delete_file(child_id)
        self.items.pop(file_id, None)

    # Test helpers

    def _child(self, parent_id: str, name: str) -> dict | None:
        for item in self.items.values():
            if parent_id in item["parents"] and item["name"] == name:
                return item
        return None

    def seed(self, path: str, content: str) -> dict:
        """Create ``QuillSync/<path>`` directly, bypassing failure hooks."""
        parent_id = "root"
        parts = [APP_FOLDER, *path.strip("/").split("/")]
        for part in parts[:-1]:
            folder = self._child(parent_id, part)
            if folder is None:
                folder = self._new(part, parent_id, FOLDER_MIME)
            parent_id = folder["id"]
        existing = self._child(parent_id, parts[-1])
        if existing is not None:
            existing["content"] = content
            existing["modifiedTime"] = str(next(self._clock))
            return existing
        return self._new(parts[-1], parent_id, "text/plain", content)

    def tree(self) -> dict[str, str]:
        """Map of ``<path under app folder>`` to file content."""

        def path_of(item: dict) -> str:
            parts = [item["name"]]
            parent = item["parents"][0]
            while parent in self.items:
                parts.append(self.items[parent]["name"])
                parent = self.items[parent]["parents"][0]
            return "/".join(reversed(parts))

        out = {}
        for item in self.items.values():
            if item["mimeType"] == FOLDER_MIME:
                continue
            full = path_of(item)
            prefix = f"{APP_FOLDER}/"
            if full.startswith(prefix):
                out[full[len(prefix):]] = item["content"]
        return out

    def count_named(self, name: str) -> int:
        return sum(1 for item in self.items.values() if item["name"] == name)


class FakeAuth:
    def __init__(self, signed_in: bool = True):
        self.signed_in = signed_in
        self.refreshes = 0

    def is_signed_in(self) -> bool:
        return self.signed_in

    def ensure_valid_token(self, force_refresh: bool = False) -> str:
        if not self.signed_in:
            raise AuthExpired("not_signed_in")
        if force_refresh:
            self.refreshes += 1
        return "token"


class LogRecorder:
    def __init__(self):
        self.entries: list[tuple[str, str, str, str | None]] = []

    def __call__(self, level, module, message, detail=None):
        self.entries.append((level, module, message, detail))

    def messages(self, level: str | None = None) -> list[str]:
        return [m for (lv, _mod, m, _d) in self.entries if level is None or lv == level]


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    s = LocalStore(str(tmp_path / "quillsync.db"))
    s.initialize()
    return s


@pytest.fixture
def drive() -> FakeDriveClient:
    return FakeDriveClient()


@pytest.fixture
def auth() -> FakeAuth:
    return FakeAuth()


@pytest.fixture
def log_recorder() -> LogRecorder:
    return LogRecorder()


@pytest.fixture
def orchestrator(store, drive, auth, log_recorder) -> SyncOrchestrator:
    remote = DriveAdapter(drive, app_folder_name=APP_FOLDER)
    return SyncOrchestrator(store, remote, auth, SyncConfig(enabled=True), log_func=log_recorder)
