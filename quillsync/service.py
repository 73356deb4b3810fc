from __future__ import annotations

import asyncio
import logging
from typing import Optional

from quillsync.core.config import AppConfig, load_config
from quillsync.core.errors import BookNotFound, StorageUnavailable
from quillsync.core.logging_setup import make_log_func
from quillsync.providers.google_drive import DriveAdapter, DriveClient, GoogleAuth
from quillsync.store import LocalStore
from quillsync.store.models import BookConfig, BookRecord, ChapterRecord, ConflictRecord, PendingChanges
from quillsync.sync import SyncOrchestrator, SyncStatus, SyncStatusReporter, SyncWorker

logger = logging.getLogger("quillsync.service")


class DataService:
    """Facade the UI talks to.

    Reads and writes always go to the local store and never wait on the
    network. Each mutation marks the record pending and, when auto-sync
    applies, queues a push on the worker without blocking the caller.
    """

    def __init__(self, store: LocalStore, remote, auth, orchestrator: SyncOrchestrator,
                 reporter: SyncStatusReporter, worker: SyncWorker):
        self.store = store
        self.remote = remote
        self.auth = auth
        self.orchestrator = orchestrator
        self.reporter = reporter
        self.worker = worker
        self._initialized = False
        self._init_result: dict = {}
        self._init_lock = asyncio.Lock()

    @property
    def sync_cfg(self):
        return self.orchestrator.sync_cfg

    async def initialize(self) -> dict:
        if self._initialized:
            return self._init_result
        # Overlapping callers wait here; only the first resolves the app folder.
        async with self._init_lock:
            if self._initialized:
                return self._init_result
            return await self._initialize_locked()

    async def _initialize_locked(self) -> dict:
        self.store.initialize()
        result: dict = {"store": "ready", "sync": "offline", "reason": None, "initial_pull": None}

        reason = self.orchestrator.offline_reason()
        if reason:
            result["reason"] = reason
            logger.info("sync_offline reason=%s", reason)
        else:
            try:
                await asyncio.to_thread(self.remote.initialize)
                result["sync"] = "ready"
            except Exception as e:
                result["reason"] = str(e)
                logger.warning("remote_init_failed, continuing offline: %s", e)

            if result["sync"] == "ready" and self.sync_cfg.pull_on_startup:
                result["initial_pull"] = await self.orchestrator.sync_from_cloud(run_type="startup")

        self.worker.start()
        self._initialized = True
        self._init_result = result
        return result

    async def close(self):
        await self.worker.stop()
        self._initialized = False

    def _request_push(self):
        if not self.sync_cfg.auto_sync_enabled:
            return
        if self.orchestrator.offline_reason():
            return
        self.worker.request_push()

    # Books

    def list_books(self) -> list[str]:
        return self.store.list_books()

    def create_book(self, name: str) -> BookRecord:
        record = self.store.create_book(name)
        self._request_push()
        return record

    def delete_book(self, name: str) -> bool:
        deleted = self.store.delete_book(name)
        if deleted:
            self._request_push()
        return deleted

    def get_book_config(self, name: str) -> Optional[BookConfig]:
        record = self.store.get_book(name)
        return record.config if record else None

    def save_book_config(self, name: str, config: BookConfig) -> BookRecord:
        record = self.store.put_book(name, config)
        self._request_push()
        return record

    # Chapters

    def get_chapter_content(self, book_name: str, file_name: str) -> Optional[str]:
        record = self.store.get_chapter(book_name, file_name)
        return record.content if record else None

    def save_chapter_content(self, book_name: str, file_name: str, content: str) -> ChapterRecord:
        if self.store.get_book(book_name) is None:
            raise BookNotFound(book_name)
        record = self.store.put_chapter(book_name, file_name, content)
        self._request_push()
        return record

    def delete_chapter_content(self, book_name: str, file_name: str) -> bool:
        deleted = self.store.delete_chapter(book_name, file_name)
        if deleted:
            self._request_push()
        return deleted

    def list_chapter_files(self, book_name: str) -> list[str]:
        return self.store.list_chapter_files(book_name)

    def list_pending(self) -> PendingChanges:
        return self.store.list_pending()

    # Sync

    async def sync_to_cloud(self) -> dict:
        return await self.orchestrator.sync_to_cloud()

    async def sync_from_cloud(self) -> dict:
        return await self.orchestrator.sync_from_cloud()

    def get_sync_status(self) -> SyncStatus:
        return self.reporter.get_sync_status()

    async def force_sync(self) -> dict:
        return await self.reporter.force_sync()

    async def force_sync_to_cloud(self) -> dict:
        return await self.reporter.force_sync_to_cloud()

    async def force_sync_from_cloud(self) -> dict:
        return await self.reporter.force_sync_from_cloud()

    def is_sync_in_progress(self) -> bool:
        return self.orchestrator.in_flight

    def list_conflicts(self, limit: int = 50) -> list[ConflictRecord]:
        return self.store.list_conflicts(limit=limit)

    def status_payload(self) -> dict:
        status = self.get_sync_status()
        in_flight = self.is_sync_in_progress()
        return {
            "status": status.value,
            # Pending work that only a manual push will send.
            "needs_manual_sync": status == SyncStatus.PENDING and not in_flight and not self.sync_cfg.auto_sync_enabled,
            "state": self.orchestrator.state.value,
            "in_flight": in_flight,
            "offline_reason": self.orchestrator.offline_reason(),
            "last_error": self.orchestrator.last_error,
            "last_sync_attempt": self.reporter.last_attempted_at(),
            "worker": self.worker.snapshot(),
        }


def build_service(cfg: Optional[AppConfig] = None, *, client=None, auth=None, log_func=None) -> DataService:
    """Construct every component once and wire them together.

    ``client`` and ``auth`` may be injected (tests pass in-memory fakes);
    otherwise a token-file ``GoogleAuth`` and a ``requests``-backed
    ``DriveClient`` are built from ``cfg``.
    """
    cfg = cfg or load_config()
    store = LocalStore(cfg.database.path)

    def client_id_fallback() -> Optional[str]:
        try:
            return store.get_app_config("google_client_id")
        except StorageUnavailable:
            return None

    if auth is None:
        auth = GoogleAuth(
            client_id=cfg.auth.client_id,
            client_secret=cfg.auth.client_secret,
            token_file=cfg.auth.token_file,
            timeout=int(cfg.auth.timeout_sec),
            client_id_fallback=client_id_fallback,
        )
    if client is None:
        client = DriveClient(
            auth,
            timeout=int(cfg.auth.timeout_sec),
            max_retry=cfg.sync.max_retry,
            retry_backoff_sec=cfg.sync.retry_backoff_sec,
        )

    remote = DriveAdapter(client, app_folder_name=cfg.sync.app_folder_name)
    orchestrator = SyncOrchestrator(store, remote, auth, cfg.sync, log_func=log_func or make_log_func())
    reporter = SyncStatusReporter(orchestrator, store)
    worker = SyncWorker(orchestrator, cfg.sync)
    return DataService(store, remote, auth, orchestrator, reporter, worker)
