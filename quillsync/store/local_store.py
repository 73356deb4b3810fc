from __future__ import annotations

import json
from typing import Any, Optional

from quillsync.core.errors import BookAlreadyExists
from quillsync.store.db import init_db, transaction
from quillsync.store.models import (
    BookConfig,
    BookRecord,
    ChapterRecord,
    ChapterRef,
    ConflictRecord,
    PendingChanges,
    SyncMetadata,
    SyncState,
    Tombstone,
    chapter_key,
    chapter_path,
    now_ms,
    validate_app_config,
)


def validate_name(value: str, what: str) -> str:
    name = (value or "").strip()
    if not name:
        raise ValueError(f"{what}_name_empty")
    if "/" in name or ":" in name:
        raise ValueError(f"{what}_name_invalid: {value!r}")
    return name


def _book_from_row(row) -> BookRecord:
    return BookRecord(
        name=row["name"],
        config=BookConfig.from_json(row["config_json"]),
        last_modified=row["last_modified"],
        sync_state=SyncState(row["sync_state"]),
    )


def _chapter_from_row(row) -> ChapterRecord:
    return ChapterRecord(
        book_name=row["book_name"],
        file_name=row["file_name"],
        content=row["content"],
        last_modified=row["last_modified"],
        sync_state=SyncState(row["sync_state"]),
    )


def _put_metadata(conn, meta: SyncMetadata):
    conn.execute(
        """
        INSERT INTO sync_metadata(remote_path,remote_file_id,last_sync_time,local_last_modified,remote_last_modified)
        VALUES (?,?,?,?,?)
        ON CONFLICT(remote_path) DO UPDATE SET
            remote_file_id=excluded.remote_file_id,
            last_sync_time=excluded.last_sync_time,
            local_last_modified=excluded.local_last_modified,
            remote_last_modified=excluded.remote_last_modified
        """,
        (
            meta.remote_path,
            meta.remote_file_id,
            meta.last_sync_time,
            meta.local_last_modified,
            meta.remote_last_modified,
        ),
    )


def _put_tombstone(conn, remote_path: str, kind: str, book_name: str, file_name: Optional[str]):
    conn.execute(
        """
        INSERT OR REPLACE INTO tombstones(remote_path,kind,book_name,file_name,created_at)
        VALUES (?,?,?,?,?)
        """,
        (remote_path, kind, book_name, file_name, now_ms()),
    )


class LocalStore:
    """SQLite-backed system of record for books, chapters and sync bookkeeping.

    Every public method opens its own connection, so one instance can be shared
    between the event loop and the worker threads the orchestrator runs in.
    Multi-row changes go through a single transaction.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def initialize(self):
        init_db(self.db_path)

    def _tx(self):
        return transaction(self.db_path)

    # Books

    def list_books(self) -> list[str]:
        with self._tx() as conn:
            rows = conn.execute("SELECT name FROM books ORDER BY name").fetchall()
        return [r["name"] for r in rows]

    def get_book(self, name: str) -> Optional[BookRecord]:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM books WHERE name=?", (name,)).fetchone()
        return _book_from_row(row) if row else None

    def create_book(self, name: str) -> BookRecord:
        name = validate_name(name, "book")
        record = BookRecord(name=name, config=BookConfig(), last_modified=now_ms(), sync_state=SyncState.PENDING)
        with self._tx() as conn:
            if conn.execute("SELECT 1 FROM books WHERE name=?", (name,)).fetchone():
                raise BookAlreadyExists(name)
            conn.execute(
                "INSERT INTO books(name,config_json,last_modified,sync_state) VALUES (?,?,?,?)",
                (name, record.config.to_json(), record.last_modified, record.sync_state.value),
            )
        return record

    def put_book(self, name: str, config: BookConfig, synced: bool = False,
                 metadata: Optional[SyncMetadata] = None) -> BookRecord:
        """Upsert a book; stamps ``last_modified`` and marks it pending unless ``synced``."""
        name = validate_name(name, "book")
        record = BookRecord(
            name=name,
            config=config,
            last_modified=now_ms(),
            sync_state=SyncState.SYNCED if synced else SyncState.PENDING,
        )
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO books(name,config_json,last_modified,sync_state) VALUES (?,?,?,?)
                ON CONFLICT(name) DO UPDATE SET
                    config_json=excluded.config_json,
                    last_modified=excluded.last_modified,
                    sync_state=excluded.sync_state
                """,
                (name, config.to_json(), record.last_modified, record.sync_state.value),
            )
            if metadata is not None:
                _put_metadata(conn, metadata.model_copy(update={"local_last_modified": record.last_modified}))
        return record

    def delete_book(self, name: str) -> bool:
        """Delete a book and every chapter under it in one transaction.

        If the book was ever synced, a tombstone is left so the next push removes
        the remote folder too.
        """
        with self._tx() as conn:
            existed = conn.execute("SELECT 1 FROM books WHERE name=?", (name,)).fetchone() is not None
            conn.execute("DELETE FROM books WHERE name=?", (name,))
            conn.execute("DELETE FROM chapters WHERE book_name=?", (name,))
            synced_before = conn.execute(
                "SELECT 1 FROM sync_metadata WHERE remote_path LIKE ? ESCAPE '\\' LIMIT 1",
                (_like_prefix(f"{name}/"),),
            ).fetchone()
            # The folder delete covers any chapter deletions still queued for this book.
            conn.execute("DELETE FROM tombstones WHERE book_name=? AND kind='chapter'", (name,))
            if synced_before:
                _put_tombstone(conn, name, "book", name, None)
        return existed

    # Chapters

    def get_chapter(self, book_name: str, file_name: str) -> Optional[ChapterRecord]:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM chapters WHERE key=?", (chapter_key(book_name, file_name),)
            ).fetchone()
        return _chapter_from_row(row) if row else None

    def put_chapter(self, book_name: str, file_name: str, content: str, synced: bool = False,
                    metadata: Optional[SyncMetadata] = None) -> ChapterRecord:
        book_name = validate_name(book_name, "book")
        file_name = validate_name(file_name, "chapter")
        record = ChapterRecord(
            book_name=book_name,
            file_name=file_name,
            content=content,
            last_modified=now_ms(),
            sync_state=SyncState.SYNCED if synced else SyncState.PENDING,
        )
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO chapters(key,book_name,file_name,content,last_modified,sync_state)
                VALUES (?,?,?,?,?,?)
                ON CONFLICT(key) DO UPDATE SET
                    content=excluded.content,
                    last_modified=excluded.last_modified,
                    sync_state=excluded.sync_state
                """,
                (
                    record.key,
                    book_name,
                    file_name,
                    content,
                    record.last_modified,
                    record.sync_state.value,
                ),
            )
            if metadata is not None:
                _put_metadata(conn, metadata.model_copy(update={"local_last_modified": record.last_modified}))
        return record

    def delete_chapter(self, book_name: str, file_name: str) -> bool:
        path = chapter_path(book_name, file_name)
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM chapters WHERE key=?", (chapter_key(book_name, file_name),))
            synced_before = conn.execute("SELECT 1 FROM sync_metadata WHERE remote_path=?", (path,)).fetchone()
            if synced_before:
                _put_tombstone(conn, path, "chapter", book_name, file_name)
        return cur.rowcount > 0

    def list_chapters(self, book_name: str) -> list[ChapterRecord]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM chapters WHERE book_name=? ORDER BY file_name", (book_name,)
            ).fetchall()
        return [_chapter_from_row(r) for r in rows]

    def list_chapter_files(self, book_name: str) -> list[str]:
        return [c.file_name for c in self.list_chapters(book_name)]

    # Sync state

    def list_pending(self) -> PendingChanges:
        with self._tx() as conn:
            books = conn.execute(
                "SELECT name FROM books WHERE sync_state='pending' ORDER BY last_modified, name"
            ).fetchall()
            chapters = conn.execute(
                "SELECT book_name, file_name FROM chapters WHERE sync_state='pending' ORDER BY last_modified, key"
            ).fetchall()
            tombstones = conn.execute("SELECT * FROM tombstones ORDER BY created_at").fetchall()
        return PendingChanges(
            books=[r["name"] for r in books],
            chapters=[ChapterRef(book_name=r["book_name"], file_name=r["file_name"]) for r in chapters],
            deletions=[Tombstone(**dict(r)) for r in tombstones],
        )

    def mark_book_synced(self, name: str, pushed: BookConfig, metadata: SyncMetadata) -> bool:
        """Flip a book to synced if its stored config still equals what was pushed.

        Returns False (and leaves the record pending) when the book changed or
        vanished while the upload was in flight. Metadata is written either way,
        since the remote file now exists. A book deleted mid-upload gets a
        tombstone so the next push removes the file it just created.
        """
        with self._tx() as conn:
            _put_metadata(conn, metadata)
            row = conn.execute("SELECT config_json FROM books WHERE name=?", (name,)).fetchone()
            if row is None:
                _put_tombstone(conn, name, "book", name, None)
                return False
            if BookConfig.from_json(row["config_json"]) != pushed:
                return False
            conn.execute("UPDATE books SET sync_state='synced' WHERE name=?", (name,))
        return True

    def mark_chapter_synced(self, book_name: str, file_name: str, pushed_content: str,
                            metadata: SyncMetadata) -> bool:
        key = chapter_key(book_name, file_name)
        with self._tx() as conn:
            _put_metadata(conn, metadata)
            cur = conn.execute(
                "UPDATE chapters SET sync_state='synced' WHERE key=? AND content=?",
                (key, pushed_content),
            )
            if cur.rowcount > 0:
                return True
            gone = conn.execute("SELECT 1 FROM chapters WHERE key=?", (key,)).fetchone() is None
            # A pending book tombstone already removes the whole folder.
            book_tombstoned = conn.execute(
                "SELECT 1 FROM tombstones WHERE remote_path=? AND kind='book'", (book_name,)
            ).fetchone()
            if gone and not book_tombstoned:
                _put_tombstone(conn, chapter_path(book_name, file_name), "chapter", book_name, file_name)
        return False

    # Sync metadata

    def get_sync_metadata(self, remote_path: str) -> Optional[SyncMetadata]:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM sync_metadata WHERE remote_path=?", (remote_path,)).fetchone()
        return SyncMetadata(**dict(row)) if row else None

    def put_sync_metadata(self, metadata: SyncMetadata):
        with self._tx() as conn:
            _put_metadata(conn, metadata)

    def delete_sync_metadata(self, remote_path: str, recursive: bool = False) -> int:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM sync_metadata WHERE remote_path=?", (remote_path,))
            deleted = cur.rowcount
            if recursive:
                cur = conn.execute(
                    "DELETE FROM sync_metadata WHERE remote_path LIKE ? ESCAPE '\\'",
                    (_like_prefix(f"{remote_path}/"),),
                )
                deleted += cur.rowcount
        return deleted

    # Tombstones

    def list_tombstones(self) -> list[Tombstone]:
        return self.list_pending().deletions

    def has_tombstone(self, book_name: str, file_name: Optional[str] = None) -> bool:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT 1 FROM tombstones WHERE remote_path IN (?, ?) LIMIT 1",
                (book_name, chapter_path(book_name, file_name) if file_name else book_name),
            ).fetchone()
        return row is not None

    def complete_tombstone(self, tombstone: Tombstone):
        """Forget a tombstone whose remote delete finished, with its sync metadata."""
        with self._tx() as conn:
            conn.execute("DELETE FROM tombstones WHERE remote_path=?", (tombstone.remote_path,))
            if tombstone.kind == "book":
                conn.execute(
                    "DELETE FROM sync_metadata WHERE remote_path LIKE ? ESCAPE '\\'",
                    (_like_prefix(f"{tombstone.book_name}/"),),
                )
            else:
                conn.execute("DELETE FROM sync_metadata WHERE remote_path=?", (tombstone.remote_path,))

    # Conflict log

    def record_conflict(self, kind: str, book_name: str, file_name: Optional[str], discarded_local: str,
                        remote_value: str) -> int:
        with self._tx() as conn:
            cur = conn.execute(
                "INSERT INTO conflicts(kind,book_name,file_name,discarded_local,remote_value) VALUES (?,?,?,?,?)",
                (kind, book_name, file_name, discarded_local, remote_value),
            )
            return cur.lastrowid

    def list_conflicts(self, limit: int = 50) -> list[ConflictRecord]:
        with self._tx() as conn:
            rows = conn.execute("SELECT * FROM conflicts ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [ConflictRecord(**dict(r)) for r in rows]

    # App config

    def get_app_config(self, key: str, default: Any = None) -> Any:
        with self._tx() as conn:
            row = conn.execute("SELECT value_json FROM app_config WHERE key=?", (key,)).fetchone()
        if not row:
            return default
        return json.loads(row["value_json"])

    def set_app_config(self, key: str, value: Any):
        value = validate_app_config(key, value)
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO app_config(key,value_json,last_modified) VALUES (?,?,?)
                ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json, last_modified=excluded.last_modified
                """,
                (key, json.dumps(value, ensure_ascii=False), now_ms()),
            )

    def delete_app_config(self, key: str):
        with self._tx() as conn:
            conn.execute("DELETE FROM app_config WHERE key=?", (key,))

    # Sync run history

    def insert_sync_run(self, direction: str, run_type: str) -> int:
        with self._tx() as conn:
            cur = conn.execute(
                "INSERT INTO sync_runs(direction,run_type,status,summary_json) VALUES (?,?,?,?)",
                (direction, run_type, "running", "{}"),
            )
            return cur.lastrowid

    def finish_sync_run(self, run_id: int, status: str, summary: dict):
        with self._tx() as conn:
            conn.execute(
                "UPDATE sync_runs SET status=?, finished_at=CURRENT_TIMESTAMP, summary_json=? WHERE id=?",
                (status, json.dumps(summary, ensure_ascii=False), run_id),
            )

    def list_sync_runs(self, limit: int = 20) -> list[dict]:
        with self._tx() as conn:
            rows = conn.execute("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        out = []
        for r in rows:
            item = dict(r)
            item["summary"] = json.loads(item.pop("summary_json") or "{}")
            out.append(item)
        return out

    # Maintenance

    def clear_books(self):
        with self._tx() as conn:
            conn.execute("DELETE FROM books")
            conn.execute("DELETE FROM chapters")

    def clear_all(self):
        with self._tx() as conn:
            for table in ("books", "chapters", "sync_metadata", "app_config", "tombstones", "conflicts"):
                conn.execute(f"DELETE FROM {table}")


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"
