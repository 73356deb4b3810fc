import asyncio
import threading

from quillsync.core.config import SyncConfig
from quillsync.core.errors import AuthExpired, NetworkError, StorageUnavailable
from quillsync.providers.google_drive import DriveAdapter
from quillsync.sync import SyncOrchestrator, SyncStatus, SyncStatusReporter


def _reporter(orchestrator, store) -> SyncStatusReporter:
    return SyncStatusReporter(orchestrator, store)


def test_offline_when_disabled_or_signed_out(store, drive, auth):
    remote = DriveAdapter(drive)
    disabled = SyncOrchestrator(store, remote, auth, SyncConfig(enabled=False), log_func=lambda *_: None)
    assert _reporter(disabled, store).get_sync_status() == SyncStatus.OFFLINE

    enabled = SyncOrchestrator(store, remote, auth, SyncConfig(enabled=True), log_func=lambda *_: None)
    auth.signed_in = False
    assert _reporter(enabled, store).get_sync_status() == SyncStatus.OFFLINE


def test_synced_then_pending_then_synced(orchestrator, store):
    reporter = _reporter(orchestrator, store)
    assert reporter.get_sync_status() == SyncStatus.SYNCED

    store.create_book("Novel")
    assert reporter.get_sync_status() == SyncStatus.PENDING

    asyncio.run(reporter.force_sync_to_cloud())
    assert reporter.get_sync_status() == SyncStatus.SYNCED


def test_pending_while_cycle_in_flight(orchestrator, store, drive):
    reporter = _reporter(orchestrator, store)
    drive.gate = threading.Event()

    async def scenario():
        task = asyncio.create_task(reporter.force_sync_from_cloud())
        await asyncio.to_thread(drive.entered.wait, 5)
        during = reporter.get_sync_status()
        busy = await reporter.force_sync()
        drive.gate.set()
        await task
        return during, busy

    during, busy = asyncio.run(scenario())

    assert during == SyncStatus.PENDING
    assert busy["status"] == "skipped_busy"
    assert reporter.get_sync_status() == SyncStatus.SYNCED


def test_auth_abort_reports_offline_and_other_aborts_report_error(orchestrator, store, drive):
    reporter = _reporter(orchestrator, store)

    drive.fail[("list_children", None)] = AuthExpired("expired")
    asyncio.run(reporter.force_sync_from_cloud())
    assert reporter.get_sync_status() == SyncStatus.OFFLINE

    drive.fail[("list_children", None)] = NetworkError("unreachable")
    asyncio.run(reporter.force_sync_from_cloud())
    assert reporter.get_sync_status() == SyncStatus.ERROR

    drive.fail.clear()
    asyncio.run(reporter.force_sync_from_cloud())
    assert reporter.get_sync_status() == SyncStatus.SYNCED


def test_error_when_pending_check_fails(orchestrator, store, monkeypatch):
    reporter = _reporter(orchestrator, store)

    def broken():
        raise StorageUnavailable("disk gone")

    monkeypatch.setattr(store, "list_pending", broken)

    assert reporter.get_sync_status() == SyncStatus.ERROR


def test_force_sync_records_last_attempt(orchestrator, store):
    reporter = _reporter(orchestrator, store)
    assert reporter.last_attempted_at() is None

    result = asyncio.run(reporter.force_sync())

    assert result["status"] == "success"
    assert reporter.last_sync_attempt is not None
    assert store.get_app_config("last_sync_attempt") == reporter.last_sync_attempt
    assert store.get_app_config("last_sync_result") == "success"


def test_last_attempt_survives_storage_failure(orchestrator, store, monkeypatch):
    reporter = _reporter(orchestrator, store)

    def broken(_key, _value):
        raise StorageUnavailable("read only")

    monkeypatch.setattr(store, "set_app_config", broken)
    asyncio.run(reporter.force_sync_to_cloud())

    assert reporter.last_attempted_at() == reporter.last_sync_attempt
    assert reporter.last_sync_attempt is not None


def test_attempt_is_recorded_even_when_offline(store, drive, auth):
    orch = SyncOrchestrator(store, DriveAdapter(drive), auth, SyncConfig(enabled=False), log_func=lambda *_: None)
    reporter = _reporter(orch, store)

    result = asyncio.run(reporter.force_sync())

    assert result["status"] == "offline"
    assert store.get_app_config("last_sync_attempt") == reporter.last_sync_attempt
