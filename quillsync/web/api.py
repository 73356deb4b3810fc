from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from quillsync.core.errors import BookAlreadyExists, BookNotFound, StorageUnavailable
from quillsync.service import DataService
from quillsync.store.models import BookConfig

router = APIRouter(prefix="/api")


class CreateBookPayload(BaseModel):
    name: str


class ChapterContentPayload(BaseModel):
    content: str = ""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _service(request: Request) -> DataService:
    return request.app.state.service


def _call(fn, *args):
    try:
        return fn(*args)
    except BookNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BookAlreadyExists as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StorageUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


# Books


@router.get("/books")
def list_books(request: Request):
    return {"books": _call(_service(request).list_books)}


@router.post("/books", status_code=201)
def create_book(payload: CreateBookPayload, request: Request):
    record = _call(_service(request).create_book, payload.name)
    return {"ok": True, "name": record.name, "sync_state": record.sync_state.value}


@router.delete("/books/{name}")
def delete_book(name: str, request: Request):
    if not _call(_service(request).delete_book, name):
        raise HTTPException(status_code=404, detail=f"book_not_found: {name}")
    return {"ok": True}


@router.get("/books/{name}/config")
def get_book_config(name: str, request: Request):
    config = _call(_service(request).get_book_config, name)
    if config is None:
        raise HTTPException(status_code=404, detail=f"book_not_found: {name}")
    return config.model_dump(by_alias=True)


@router.put("/books/{name}/config")
def save_book_config(name: str, config: BookConfig, request: Request):
    record = _call(_service(request).save_book_config, name, config)
    return {"ok": True, "name": record.name, "sync_state": record.sync_state.value}


# Chapters


@router.get("/books/{name}/chapters")
def list_chapters(name: str, request: Request):
    return {"book": name, "files": _call(_service(request).list_chapter_files, name)}


@router.get("/books/{name}/chapters/{file_name}")
def get_chapter(name: str, file_name: str, request: Request):
    content = _call(_service(request).get_chapter_content, name, file_name)
    if content is None:
        raise HTTPException(status_code=404, detail=f"chapter_not_found: {name}/{file_name}")
    return {"book": name, "file": file_name, "content": content}


@router.put("/books/{name}/chapters/{file_name}")
def save_chapter(name: str, file_name: str, payload: ChapterContentPayload, request: Request):
    record = _call(_service(request).save_chapter_content, name, file_name, payload.content)
    return {"ok": True, "book": record.book_name, "file": record.file_name, "sync_state": record.sync_state.value}


@router.delete("/books/{name}/chapters/{file_name}")
def delete_chapter(name: str, file_name: str, request: Request):
    if not _call(_service(request).delete_chapter_content, name, file_name):
        raise HTTPException(status_code=404, detail=f"chapter_not_found: {name}/{file_name}")
    return {"ok": True}


# Sync


@router.get("/sync/status")
def sync_status(request: Request):
    return {"checked_at": _now_iso(), **_service(request).status_payload()}


@router.get("/sync/pending")
def sync_pending(request: Request):
    return _call(_service(request).list_pending).model_dump()


@router.post("/sync/push")
async def sync_push(request: Request):
    return await _service(request).force_sync_to_cloud()


@router.post("/sync/pull")
async def sync_pull(request: Request):
    return await _service(request).force_sync_from_cloud()


@router.post("/sync/force")
async def sync_force(request: Request):
    return await _service(request).force_sync()


@router.get("/sync/conflicts")
def sync_conflicts(request: Request, limit: int = 50):
    limit = max(1, min(int(limit), 500))
    return {"items": [c.model_dump() for c in _call(_service(request).list_conflicts, limit)]}


@router.get("/sync/runs")
def sync_runs(request: Request, limit: int = 20):
    limit = max(1, min(int(limit), 200))
    return {"items": _call(_service(request).store.list_sync_runs, limit)}
