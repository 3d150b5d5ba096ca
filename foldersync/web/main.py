from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from foldersync import __version__
from foldersync.core.config import AppConfig, ensure_runtime_dirs, load_config
from foldersync.core.db import init_db
from foldersync.core.logging_setup import setup_logging
from foldersync.web.api import reset_service, router as api_router, start_scheduler, stop_scheduler
from foldersync.web.security import NetworkAllowlistMiddleware, get_allowed_nets

logger = logging.getLogger("foldersync.web")


def build_app(cfg: AppConfig | None = None, with_scheduler: bool = True) -> FastAPI:
    cfg = cfg or load_config()
    ensure_runtime_dirs(cfg)
    init_db(cfg.database.path)

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        logger.info(
            "web_startup local_root=%s remote_root=%s scheduler=%s",
            cfg.sync.local_root,
            cfg.sync.remote_root,
            with_scheduler,
        )
        if with_scheduler:
            start_scheduler()
        try:
            yield
        finally:
            await stop_scheduler()
            reset_service()
            logger.info("web_shutdown")

    api = FastAPI(title="foldersync", version=__version__, lifespan=lifespan)
    api.add_middleware(NetworkAllowlistMiddleware, allowed_nets=get_allowed_nets())
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    cfg = load_config()
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
