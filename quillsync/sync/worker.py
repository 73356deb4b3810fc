from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Optional

from quillsync.core.config import SyncConfig
from quillsync.sync.orchestrator import SyncOrchestrator

WORKER_POLL_GRANULARITY_SEC = 1.0

logger = logging.getLogger("quillsync.worker")


def _as_int(value: object, default: int = 0) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


class SyncWorker:
    """Background task that turns push requests into push cycles.

    ``request_push()`` never blocks and may be called from any thread; repeated
    requests before the next tick collapse into one push. If the orchestrator
    is busy the request stays queued and is retried on the next tick. With
    ``auto_sync_interval_sec > 0`` the loop also runs push-then-pull on that
    period.
    """

    def __init__(self, orchestrator: SyncOrchestrator, sync_cfg: Optional[SyncConfig] = None,
                 poll_granularity_sec: float = WORKER_POLL_GRANULARITY_SEC):
        self.orchestrator = orchestrator
        self.sync_cfg = sync_cfg or orchestrator.sync_cfg
        self.poll_granularity_sec = poll_granularity_sec

        self._push_requested = threading.Event()
        self._state_lock = threading.Lock()
        self._state: dict[str, object] = {
            "running": False,
            "pending_push": False,
            "last_started_at": None,
            "last_finished_at": None,
            "last_result": None,
            "last_error": None,
            "next_periodic_at": None,
            "run_count": 0,
            "skipped_busy_count": 0,
        }
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wake: Optional[asyncio.Event] = None
        self._stopping = False

    def _state_update(self, **kwargs):
        with self._state_lock:
            self._state.update(kwargs)

    def snapshot(self) -> dict[str, object]:
        with self._state_lock:
            snap = dict(self._state)
        snap["pending_push"] = self._push_requested.is_set()
        return snap

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def request_push(self):
        self._push_requested.set()
        loop, wake = self._loop, self._wake
        if loop is not None and wake is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(wake.set)
            except RuntimeError:
                # Loop already shut down; the request stays queued for the next start().
                pass

    def start(self):
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._stopping = False
        self._task = asyncio.create_task(self._run_loop(), name="quillsync_sync_worker")

    async def stop(self):
        self._stopping = True
        if self._wake is not None:
            self._wake.set()
        if self._task is not None:
            try:
                await self._task
            except Exception:
                logger.exception("sync_worker_stop_error")
        self._task = None
        self._wake = None
        self._loop = None
        self._state_update(running=False, next_periodic_at=None)

    async def _sleep(self, timeout_sec: float):
        assert self._wake is not None
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout_sec)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _run_cycle(self, run_type: str, fn) -> dict:
        self._state_update(last_started_at=time.time(), last_result="running", last_error=None)
        try:
            summary = await fn(run_type=run_type)
        except Exception as e:
            logger.exception("background_sync_failed run_type=%s: %s", run_type, e)
            self._state_update(
                last_finished_at=time.time(),
                last_result="failed",
                last_error=str(e),
                run_count=_as_int(self.snapshot().get("run_count")) + 1,
            )
            return {"status": "failed", "fatal_error": str(e)}

        status = str(summary.get("status") or "")
        if status == "skipped_busy":
            self._state_update(
                last_finished_at=time.time(),
                last_result="skipped_busy",
                last_error="sync_busy",
                skipped_busy_count=_as_int(self.snapshot().get("skipped_busy_count")) + 1,
            )
            return summary

        self._state_update(
            last_finished_at=time.time(),
            last_result=status,
            last_error=summary.get("fatal_error"),
            run_count=_as_int(self.snapshot().get("run_count")) + 1,
        )
        logger.info("background_sync_completed run_type=%s status=%s", run_type, status)
        return summary

    async def _run_loop(self):
        next_periodic_at: Optional[float] = None
        self._state_update(running=True, last_error=None, last_result=None)
        logger.info("sync_worker_started")
        try:
            while not self._stopping:
                interval = _as_int(self.sync_cfg.auto_sync_interval_sec)
                now_ts = time.time()
                if interval > 0:
                    if next_periodic_at is None:
                        next_periodic_at = now_ts + interval
                    if now_ts >= next_periodic_at:
                        await self._run_cycle("scheduled", self.orchestrator.force_sync)
                        next_periodic_at = time.time() + interval
                        self._state_update(next_periodic_at=next_periodic_at)
                        continue
                else:
                    next_periodic_at = None
                self._state_update(next_periodic_at=next_periodic_at)

                if self._push_requested.is_set():
                    self._push_requested.clear()
                    summary = await self._run_cycle("queued_push", self.orchestrator.sync_to_cloud)
                    if summary.get("status") == "skipped_busy":
                        self._push_requested.set()
                        await self._sleep(self.poll_granularity_sec)
                    continue

                wait_sec = self.poll_granularity_sec
                if next_periodic_at is not None:
                    wait_sec = max(min(wait_sec, next_periodic_at - time.time()), 0)
                await self._sleep(wait_sec)
        finally:
            self._state_update(running=False, next_periodic_at=None)
            logger.info("sync_worker_stopped")
