from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient

from quillsync.core.config import AppConfig
from quillsync.service import build_service
from quillsync.web import api as api_module
from quillsync.web.main import build_app


def _cfg(tmp_path: Path, enabled: bool = True) -> AppConfig:
    cfg = AppConfig()
    cfg.database.path = str(tmp_path / "runtime" / "quillsync.db")
    cfg.logging.file = str(tmp_path / "runtime" / "quillsync.log")
    cfg.sync.enabled = enabled
    cfg.sync.auto_sync_enabled = False
    return cfg


def test_healthz_returns_alive():
    app = FastAPI()
    app.include_router(api_module.router)
    client = TestClient(app)

    resp = client.get("/api/healthz")

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["status"] == "alive"
    assert "checked_at" in payload


def test_book_and_chapter_crud(tmp_path: Path, drive, auth):
    service = build_service(_cfg(tmp_path), client=drive, auth=auth)

    with TestClient(build_app(service=service)) as client:
        assert client.post("/api/books", json={"name": "Novel"}).status_code == 201
        assert client.post("/api/books", json={"name": "Novel"}).status_code == 409
        assert client.post("/api/books", json={"name": "bad/name"}).status_code == 400
        assert client.get("/api/books").json() == {"books": ["Novel"]}

        config = {"chapters": [{"id": "c1", "title": "One", "fileName": "ch1.md"}], "chapterOrder": ["c1"], "ideas": {}}
        assert client.put("/api/books/Novel/config", json=config).status_code == 200
        assert client.get("/api/books/Novel/config").json()["chapterOrder"] == ["c1"]
        assert client.get("/api/books/Ghost/config").status_code == 404

        resp = client.put("/api/books/Novel/chapters/ch1.md", json={"content": "Hello"})
        assert resp.status_code == 200
        assert resp.json()["sync_state"] == "pending"
        assert client.put("/api/books/Ghost/chapters/ch1.md", json={"content": "x"}).status_code == 404
        assert client.get("/api/books/Novel/chapters").json()["files"] == ["ch1.md"]
        assert client.get("/api/books/Novel/chapters/ch1.md").json()["content"] == "Hello"

        pending = client.get("/api/sync/pending").json()
        assert pending["books"] == ["Novel"]
        assert pending["chapters"] == [{"book_name": "Novel", "file_name": "ch1.md"}]

        assert client.delete("/api/books/Novel/chapters/ch1.md").status_code == 200
        assert client.get("/api/books/Novel/chapters/ch1.md").status_code == 404
        assert client.delete("/api/books/Novel").status_code == 200
        assert client.delete("/api/books/Novel").status_code == 404


def test_sync_endpoints(tmp_path: Path, drive, auth):
    drive.seed("Remote/book.json", "{}")
    cfg = _cfg(tmp_path)
    cfg.sync.pull_on_startup = False
    service = build_service(cfg, client=drive, auth=auth)

    with TestClient(build_app(service=service)) as client:
        client.post("/api/books", json={"name": "Novel"})
        before = client.get("/api/sync/status").json()
        assert before["status"] == "pending"
        assert before["needs_manual_sync"] is True

        push = client.post("/api/sync/push").json()
        assert push["status"] == "success"
        assert push["pushed_books"] == 1

        pull = client.post("/api/sync/pull").json()
        assert pull["pulled_books"] == 1

        forced = client.post("/api/sync/force").json()
        assert forced["push"]["status"] == "success"
        assert forced["pull"]["status"] == "success"

        status = client.get("/api/sync/status").json()
        assert status["status"] == "synced"
        assert status["needs_manual_sync"] is False
        assert status["state"] == "idle"
        assert status["last_sync_attempt"] is not None

        runs = client.get("/api/sync/runs", params={"limit": 2}).json()["items"]
        assert [r["direction"] for r in runs] == ["pull", "push"]
        assert client.get("/api/sync/conflicts").json() == {"items": []}

    assert sorted(service.list_books()) == ["Novel", "Remote"]


def test_sync_status_offline_when_disabled(tmp_path: Path, drive, auth):
    service = build_service(_cfg(tmp_path, enabled=False), client=drive, auth=auth)

    with TestClient(build_app(service=service)) as client:
        status = client.get("/api/sync/status").json()
        push = client.post("/api/sync/push").json()

    assert status["status"] == "offline"
    assert status["offline_reason"] == "sync_disabled"
    assert push["status"] == "offline"
    assert drive.calls == []
