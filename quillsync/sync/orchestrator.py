from __future__ import annotations

import asyncio
import json
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from quillsync.core.config import SyncConfig
from quillsync.core.errors import AuthExpired, QuillSyncError, StorageUnavailable
from quillsync.core.logging_setup import make_log_func
from quillsync.store.models import (
    BookConfig,
    SyncMetadata,
    SyncState,
    Tombstone,
    book_config_path,
    chapter_path,
    now_ms,
)


def now_iso():
    return datetime.now().isoformat(timespec="seconds")


class OrchestratorState(str, Enum):
    IDLE = "idle"
    PUSHING = "pushing_to_cloud"
    PULLING = "pulling_from_cloud"
    ERROR = "error"


class SyncOrchestrator:
    """Push/pull state machine between the local store and the remote adapter.

    At most one cycle runs at a time. A call made while a cycle is in flight is
    rejected with ``status="skipped_busy"`` rather than queued, so two cycles
    never interleave. Cycles never raise to the caller; they return a summary
    dict and leave ``state``/``last_error`` behind for the status reporter.

    Entity-level failures (one file failing to upload or download) are logged
    and skipped. ``AuthExpired``, ``StorageUnavailable`` and failures while
    listing remote folders abort the cycle and move to ``error`` until the next
    invocation.
    """

    def __init__(self, store, remote, auth, sync_cfg: Optional[SyncConfig] = None,
                 log_func: Optional[Callable] = None):
        self.store = store
        self.remote = remote
        self.auth = auth
        self.sync_cfg = sync_cfg or SyncConfig()
        self.log_func = log_func or make_log_func()

        self.state = OrchestratorState.IDLE
        self.last_error: Optional[str] = None
        self.last_error_code: Optional[str] = None
        self.last_summary: Optional[dict] = None
        self._run_lock = threading.Lock()

    def _log(self, level: str, message: str, detail: Optional[dict] = None):
        self.log_func(level, "sync", message, json.dumps(detail, ensure_ascii=False) if detail else None)

    @property
    def enabled(self) -> bool:
        return bool(self.sync_cfg.enabled)

    @property
    def in_flight(self) -> bool:
        return self._run_lock.locked()

    def offline_reason(self) -> Optional[str]:
        if not self.enabled:
            return "sync_disabled"
        if not self.auth.is_signed_in():
            return "not_signed_in"
        return None

    # Entry points

    async def sync_to_cloud(self, run_type: str = "manual") -> dict:
        summaries = await self._run_exclusive(["push"], run_type)
        return summaries[0]

    async def sync_from_cloud(self, run_type: str = "manual") -> dict:
        summaries = await self._run_exclusive(["pull"], run_type)
        return summaries[0]

    async def force_sync(self, run_type: str = "manual") -> dict:
        """Push then pull under a single hold of the single-flight lock."""
        summaries = await self._run_exclusive(["push", "pull"], run_type)
        if len(summaries) == 1 and summaries[0].get("status") in ("offline", "skipped_busy"):
            return summaries[0]
        push = summaries[0]
        pull = summaries[1] if len(summaries) > 1 else {"direction": "pull", "status": "skipped_after_push_abort"}
        failed = any(s.get("status") == "failed" for s in (push, pull))
        return {"status": "failed" if failed else "success", "push": push, "pull": pull}

    async def _run_exclusive(self, directions: List[str], run_type: str) -> List[dict]:
        reason = self.offline_reason()
        if reason:
            return [{"direction": directions[0], "run_type": run_type, "status": "offline", "reason": reason}]

        if not self._run_lock.acquire(blocking=False):
            self._log("WARNING", "sync_skipped_busy", {"directions": directions, "run_type": run_type})
            return [{"direction": directions[0], "run_type": run_type, "status": "skipped_busy"}]

        # The worker thread releases the lock, so a cancelled awaiter cannot free it mid-cycle.
        return await asyncio.to_thread(self._run_locked, directions, run_type)

    def _run_locked(self, directions: List[str], run_type: str) -> List[dict]:
        try:
            summaries = []
            for direction in directions:
                if direction == "push":
                    summary = self._push_cycle(run_type)
                else:
                    summary = self._pull_cycle(run_type)
                summaries.append(summary)
                if summary.get("fatal_code") == AuthExpired.code:
                    break
            return summaries
        finally:
            self._run_lock.release()

    # Cycle plumbing

    def _new_summary(self, direction: str, run_type: str) -> dict:
        summary = {
            "run_id": None,
            "direction": direction,
            "run_type": run_type,
            "started_at": now_iso(),
            "status": "running",
            "skipped": 0,
            "errors": 0,
            "failed": [],
        }
        if direction == "push":
            summary.update({"pending_total": 0, "pushed_books": 0, "pushed_chapters": 0,
                            "deleted_remote": 0, "changed_during_push": 0})
        else:
            summary.update({"remote_books": 0, "pulled_books": 0, "pulled_chapters": 0,
                            "marked_synced": 0, "unchanged": 0, "conflicts": 0,
                            "orphan_chapters": 0})
        return summary

    def _run_entity(self, summary: dict, kind: str, path: str, fn, *args):
        try:
            return fn(*args, summary)
        except (AuthExpired, StorageUnavailable):
            raise
        except Exception as e:
            summary["errors"] += 1
            summary["failed"].append({"kind": kind, "path": path, "error": str(e)})
            self._log("WARNING", f"{summary['direction']}_entity_failed", {"kind": kind, "path": path, "error": str(e)})
            return None

    def _begin(self, state: OrchestratorState, summary: dict):
        self.state = state
        self.last_error = None
        self.last_error_code = None
        summary["run_id"] = self.store.insert_sync_run(summary["direction"], summary["run_type"])

    def _finish(self, summary: dict):
        summary["finished_at"] = now_iso()
        self.last_summary = summary
        if summary["run_id"] is None:
            return
        try:
            self.store.finish_sync_run(summary["run_id"], summary["status"], summary)
        except StorageUnavailable as e:
            self._log("ERROR", "sync_run_record_failed", {"run_id": summary["run_id"], "error": str(e)})

    def _abort(self, summary: dict, e: Exception):
        code = e.code if isinstance(e, QuillSyncError) else "unexpected_error"
        self.state = OrchestratorState.ERROR
        self.last_error = str(e)
        self.last_error_code = code
        summary["status"] = "failed"
        summary["fatal_error"] = str(e)
        summary["fatal_code"] = code
        self._log("ERROR", f"{summary['direction']}_aborted", {"run_id": summary["run_id"], "error": str(e)})

    def _metadata(self, path: str, remote_file_id: str, remote_last_modified: int,
                  local_last_modified: int = 0) -> SyncMetadata:
        now = now_ms()
        return SyncMetadata(
            remote_path=path,
            remote_file_id=remote_file_id,
            last_sync_time=now,
            local_last_modified=local_last_modified,
            remote_last_modified=remote_last_modified or now,
        )

    # Push

    def _push_cycle(self, run_type: str) -> dict:
        summary = self._new_summary("push", run_type)
        try:
            self._begin(OrchestratorState.PUSHING, summary)
            pending = self.store.list_pending()
            summary["pending_total"] = len(pending.books) + len(pending.chapters) + len(pending.deletions)

            # Deletions go first so a delete-then-recreate of the same name ends with the new file.
            for tomb in pending.deletions:
                self._run_entity(summary, tomb.kind, tomb.remote_path, self._push_deletion, tomb)

            for name in pending.books:
                self._run_entity(summary, "book", book_config_path(name), self._push_book, name)

            for ref in pending.chapters:
                self._run_entity(
                    summary,
                    "chapter",
                    chapter_path(ref.book_name, ref.file_name),
                    self._push_chapter,
                    ref.book_name,
                    ref.file_name,
                )

            self.state = OrchestratorState.IDLE
            summary["status"] = "success" if summary["errors"] == 0 else "partial"
            self._log("INFO", "push_completed", {k: v for k, v in summary.items() if k != "failed"})
        except Exception as e:
            self._abort(summary, e)
        self._finish(summary)
        return summary

    def _push_deletion(self, tomb: Tombstone, summary: dict):
        if tomb.kind == "book":
            self.remote.delete_book(tomb.book_name)
        else:
            self.remote.delete(tomb.remote_path)
        self.store.complete_tombstone(tomb)
        summary["deleted_remote"] += 1

    def _push_book(self, name: str, summary: dict):
        record = self.store.get_book(name)
        if record is None:
            summary["skipped"] += 1
            return
        path = book_config_path(name)
        remote_file = self.remote.upsert(path, record.config.to_json())
        now = now_ms()
        meta = self._metadata(path, remote_file.id, now, local_last_modified=record.last_modified)
        if self.store.mark_book_synced(name, record.config, meta):
            summary["pushed_books"] += 1
        else:
            summary["changed_during_push"] += 1
            self._log("INFO", "book_changed_during_push", {"book": name})

    def _push_chapter(self, book_name: str, file_name: str, summary: dict):
        record = self.store.get_chapter(book_name, file_name)
        if record is None:
            summary["skipped"] += 1
            return
        path = chapter_path(book_name, file_name)
        remote_file = self.remote.upsert(path, record.content)
        now = now_ms()
        meta = self._metadata(path, remote_file.id, now, local_last_modified=record.last_modified)
        if self.store.mark_chapter_synced(book_name, file_name, record.content, meta):
            summary["pushed_chapters"] += 1
        else:
            summary["changed_during_push"] += 1
            self._log("INFO", "chapter_changed_during_push", {"book": book_name, "file": file_name})

    # Pull

    def _pull_cycle(self, run_type: str) -> dict:
        summary = self._new_summary("pull", run_type)
        try:
            self._begin(OrchestratorState.PULLING, summary)
            remote_books = self.remote.list_books()
            summary["remote_books"] = len(remote_books)

            for name in remote_books:
                if self.store.has_tombstone(name):
                    summary["skipped"] += 1
                    self._log("INFO", "pull_skipped_local_delete_pending", {"book": name})
                    continue

                self._run_entity(summary, "book", book_config_path(name), self._pull_book, name)
                if self.store.get_book(name) is None:
                    orphaned = len(self.remote.list_chapter_files(name))
                    summary["skipped"] += 1 + orphaned
                    summary["orphan_chapters"] += orphaned
                    self._log("WARNING", "remote_book_without_config", {"book": name, "skipped_chapters": orphaned})
                    continue

                # Listing failures abort the cycle; only single-file reads are skipped.
                for file_name in self.remote.list_chapter_files(name):
                    if self.store.has_tombstone(name, file_name):
                        summary["skipped"] += 1
                        continue
                    self._run_entity(
                        summary,
                        "chapter",
                        chapter_path(name, file_name),
                        self._pull_chapter,
                        name,
                        file_name,
                    )

            self.state = OrchestratorState.IDLE
            summary["status"] = "success" if summary["errors"] == 0 else "partial"
            self._log("INFO", "pull_completed", {k: v for k, v in summary.items() if k != "failed"})
        except Exception as e:
            self._abort(summary, e)
        self._finish(summary)
        return summary

    def _record_conflict(self, summary: dict, kind: str, book_name: str, file_name: Optional[str],
                         local_value: str, remote_value: str):
        self.store.record_conflict(kind, book_name, file_name, local_value, remote_value)
        summary["conflicts"] += 1
        self._log("WARNING", "pull_overwrote_pending_local", {"kind": kind, "book": book_name, "file": file_name})

    def _pull_book(self, name: str, summary: dict):
        path = book_config_path(name)
        remote_file = self.remote.read_file(path)
        if remote_file is None:
            return
        remote_cfg = BookConfig.from_json(remote_file.content or "{}")
        local = self.store.get_book(name)
        meta = self._metadata(path, remote_file.id, remote_file.modified_time)

        if local is not None and local.config == remote_cfg:
            if local.sync_state != SyncState.SYNCED or self.store.get_sync_metadata(path) is None:
                meta = meta.model_copy(update={"local_last_modified": local.last_modified})
                self.store.mark_book_synced(name, remote_cfg, meta)
                summary["marked_synced"] += 1
            else:
                summary["unchanged"] += 1
            return

        # Remote wins. A pending local edit is about to be discarded; keep a copy.
        if local is not None and local.sync_state == SyncState.PENDING:
            self._record_conflict(summary, "book", name, None, local.config.to_json(), remote_cfg.to_json())
        self.store.put_book(name, remote_cfg, synced=True, metadata=meta)
        summary["pulled_books"] += 1

    def _pull_chapter(self, book_name: str, file_name: str, summary: dict):
        path = chapter_path(book_name, file_name)
        remote_file = self.remote.read_file(path)
        if remote_file is None:
            summary["skipped"] += 1
            return
        remote_content = remote_file.content or ""
        local = self.store.get_chapter(book_name, file_name)
        meta = self._metadata(path, remote_file.id, remote_file.modified_time)

        if local is not None and local.content == remote_content:
            if local.sync_state != SyncState.SYNCED or self.store.get_sync_metadata(path) is None:
                meta = meta.model_copy(update={"local_last_modified": local.last_modified})
                self.store.mark_chapter_synced(book_name, file_name, remote_content, meta)
                summary["marked_synced"] += 1
            else:
                summary["unchanged"] += 1
            return

        if local is not None and local.sync_state == SyncState.PENDING:
            self._record_conflict(summary, "chapter", book_name, file_name, local.content, remote_content)
        self.store.put_chapter(book_name, file_name, remote_content, synced=True, metadata=meta)
        summary["pulled_chapters"] += 1
