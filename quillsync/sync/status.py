from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from quillsync.core.errors import AuthExpired, StorageUnavailable
from quillsync.store.models import now_ms
from quillsync.sync.orchestrator import OrchestratorState, SyncOrchestrator

logger = logging.getLogger("quillsync.status")


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    OFFLINE = "offline"
    ERROR = "error"


class SyncStatusReporter:
    """Derives the user-facing sync status and records manual sync attempts."""

    def __init__(self, orchestrator: SyncOrchestrator, store):
        self.orchestrator = orchestrator
        self.store = store
        self.last_sync_attempt: Optional[int] = None

    def get_sync_status(self) -> SyncStatus:
        orch = self.orchestrator
        if orch.offline_reason():
            return SyncStatus.OFFLINE
        if orch.state == OrchestratorState.ERROR:
            if orch.last_error_code == AuthExpired.code:
                return SyncStatus.OFFLINE
            return SyncStatus.ERROR
        if orch.in_flight:
            return SyncStatus.PENDING
        try:
            pending = self.store.list_pending()
        except Exception as e:
            logger.warning("pending_check_failed: %s", e)
            return SyncStatus.ERROR
        return SyncStatus.PENDING if pending.has_changes else SyncStatus.SYNCED

    def last_attempted_at(self) -> Optional[int]:
        if self.last_sync_attempt is not None:
            return self.last_sync_attempt
        try:
            return self.store.get_app_config("last_sync_attempt")
        except StorageUnavailable:
            return None

    def _record_attempt(self, result: Optional[dict] = None):
        try:
            self.store.set_app_config("last_sync_attempt", self.last_sync_attempt)
            if result is not None:
                self.store.set_app_config("last_sync_result", str(result.get("status") or "unknown"))
        except StorageUnavailable as e:
            logger.warning("last_sync_attempt_not_persisted: %s", e)

    async def force_sync(self) -> dict:
        self.last_sync_attempt = now_ms()
        result = await self.orchestrator.force_sync(run_type="manual")
        self._record_attempt(result)
        return result

    async def force_sync_to_cloud(self) -> dict:
        self.last_sync_attempt = now_ms()
        result = await self.orchestrator.sync_to_cloud(run_type="manual")
        self._record_attempt(result)
        return result

    async def force_sync_from_cloud(self) -> dict:
        self.last_sync_attempt = now_ms()
        result = await self.orchestrator.sync_from_cloud(run_type="manual")
        self._record_attempt(result)
        return result
