# backend/app.py
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import data, keys
from .config import Settings, get_settings, setup_logging
from .core.batch_coordinator import BatchCoordinator
from .core.key_monitor import start_key_monitor
from .core.key_service import APIKeyService
from .core.storage import KeyStore, UsageStore
from .core.usage_fetcher import UsageFetcher
from .core.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


def build_service(settings: Settings, session_factory, fetcher=None):
    """组装 Worker 池、批量调度和 Key 服务，返回 (pool, service)；池尚未启动"""
    fetcher = fetcher or UsageFetcher(
        timeout=settings.http_timeout,
        url=settings.usage_api_url,
        pool_maxsize=settings.max_workers * 2,
    )
    pool = WorkerPool(
        max_workers=settings.max_workers,
        queue_size=settings.queue_size,
        fetcher=fetcher,
        submit_timeout=settings.submit_timeout,
    )
    coordinator = BatchCoordinator(
        pool,
        base_timeout=settings.batch_base_timeout,
        per_item_timeout=settings.batch_per_item_timeout,
        max_timeout=settings.batch_max_timeout,
    )
    service = APIKeyService(
        KeyStore(session_factory),
        UsageStore(session_factory),
        coordinator,
        cache_ttl=settings.cache_ttl,
        freshness=settings.cache_freshness,
    )
    return pool, service


def create_app(settings: Settings = None, fetcher=None, session_factory=None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)

        factory = session_factory
        if factory is None:
            from .db import SessionLocal, init_db
            init_db()
            factory = SessionLocal
            logger.info("数据库初始化完成")

        pool, service = build_service(settings, factory, fetcher)
        pool.start()
        app.state.worker_pool = pool
        app.state.key_service = service

        # 启动定时刷新任务（作为后台任务）
        monitor_task = None
        if settings.monitor_interval > 0:
            monitor_task = asyncio.create_task(start_key_monitor(service, settings.monitor_interval))
            logger.info(f"Usage monitor started, interval {settings.monitor_interval}s")

        yield

        if monitor_task is not None:
            monitor_task.cancel()
            try:
                await monitor_task
            except asyncio.CancelledError:
                pass
        await asyncio.to_thread(pool.stop)
        logger.info("应用关闭，Worker 池已停止")

    app = FastAPI(title="Key Usage Monitor API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Origin", "Content-Type", "Accept", "Authorization"],
    )
    app.include_router(data.router)
    app.include_router(keys.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.app:app", host="0.0.0.0", port=8000)
