from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def now_ms() -> int:
    return int(time.time() * 1000)


class SyncState(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"


class Idea(BaseModel):
    id: str
    text: str = ""
    order: int = 0


class Chapter(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    file_name: str = Field(alias="fileName")


class BookConfig(BaseModel):
    """Contents of a book's ``book.json``.

    Serialized with the camelCase keys the remote file uses; Python code works
    with the snake_case attributes.
    """

    model_config = ConfigDict(populate_by_name=True)

    chapters: list[Chapter] = Field(default_factory=list)
    chapter_order: list[str] = Field(default_factory=list, alias="chapterOrder")
    ideas: dict[str, list[Idea]] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, text: str) -> "BookConfig":
        return cls.model_validate_json(text)


class BookRecord(BaseModel):
    name: str
    config: BookConfig = Field(default_factory=BookConfig)
    last_modified: int = 0
    sync_state: SyncState = SyncState.PENDING


BOOK_CONFIG_FILE = "book.json"
CHAPTERS_FOLDER = "chapters"


def chapter_key(book_name: str, file_name: str) -> str:
    return f"{book_name}:{file_name}"


def book_config_path(book_name: str) -> str:
    return f"{book_name}/{BOOK_CONFIG_FILE}"


def chapters_folder_path(book_name: str) -> str:
    return f"{book_name}/{CHAPTERS_FOLDER}"


def chapter_path(book_name: str, file_name: str) -> str:
    return f"{book_name}/{CHAPTERS_FOLDER}/{file_name}"


class ChapterRecord(BaseModel):
    book_name: str
    file_name: str
    content: str = ""
    last_modified: int = 0
    sync_state: SyncState = SyncState.PENDING

    @property
    def key(self) -> str:
        return chapter_key(self.book_name, self.file_name)


class SyncMetadata(BaseModel):
    remote_path: str
    remote_file_id: str
    last_sync_time: int
    local_last_modified: int
    remote_last_modified: int


class ChapterRef(BaseModel):
    book_name: str
    file_name: str


class Tombstone(BaseModel):
    remote_path: str
    kind: str
    book_name: str
    file_name: str | None = None
    created_at: int = 0


class PendingChanges(BaseModel):
    books: list[str] = Field(default_factory=list)
    chapters: list[ChapterRef] = Field(default_factory=list)
    deletions: list[Tombstone] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.books or self.chapters or self.deletions)


class ConflictRecord(BaseModel):
    id: int
    kind: str
    book_name: str
    file_name: str | None = None
    discarded_local: str
    remote_value: str
    created_at: str


# Known app config keys and the value type each one accepts. Anything else is rejected.
APP_CONFIG_SCHEMA: dict[str, Any] = {
    "google_client_id": str,
    "google_api_key": str,
    "last_sync_attempt": int,
    "last_sync_result": str,
}

_APP_CONFIG_ADAPTERS = {key: TypeAdapter(tp) for key, tp in APP_CONFIG_SCHEMA.items()}


def validate_app_config(key: str, value: Any) -> Any:
    adapter = _APP_CONFIG_ADAPTERS.get(key)
    if adapter is None:
        raise ValueError(f"unknown_app_config_key: {key}")
    return adapter.validate_python(value, strict=True)
