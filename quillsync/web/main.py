from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from quillsync import __version__
from quillsync.core.config import AppConfig, load_config
from quillsync.service import DataService, build_service
from quillsync.web.api import router as api_router


def build_app(cfg: AppConfig | None = None, service: DataService | None = None) -> FastAPI:
    if service is None:
        service = build_service(cfg or load_config())

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        await service.initialize()
        try:
            yield
        finally:
            await service.close()

    api = FastAPI(title="QuillSync", version=__version__, lifespan=lifespan)
    api.state.service = service
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    cfg = load_config()

    from quillsync.core.logging_setup import setup_logging

    setup_logging(cfg.logging.level, cfg.logging.file)

    uvicorn.run(
        build_app(cfg),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
