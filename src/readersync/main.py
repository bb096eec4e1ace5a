"""readersync 主应用入口."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from readersync.api import articles, settings, sync
from readersync.config import get_settings
from readersync.core.progress import (
    DurableProgressStore,
    FastProgressStore,
    ProgressTracker,
    set_tracker,
)
from readersync.core.uplink import UplinkCoordinator, set_coordinator
from readersync.models.database import async_session_maker, close_db, init_db
from readersync.scheduler import create_scheduler, shutdown_scheduler

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def _load_dynamic_settings() -> None:
    """从数据库加载动态配置."""
    session_factory = async_session_maker()
    async with session_factory() as session:
        await settings.load_dynamic_settings(session)
    logger.info("动态配置已加载")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """应用生命周期管理."""
    app_settings = get_settings()

    # 启动时初始化
    logger.info("正在初始化数据库...")
    await init_db(app_settings.database_url)

    logger.info("正在加载动态配置...")
    await _load_dynamic_settings()

    session_factory = async_session_maker()
    tracker = ProgressTracker(
        fast=FastProgressStore(app_settings.progress_path),
        durable=DurableProgressStore(
            session_factory,
            retention=timedelta(hours=app_settings.progress_retention_hours),
        ),
        cleanup_delay=app_settings.progress_cleanup_delay_seconds,
    )
    set_tracker(tracker)

    # 上一个进程中断的运行
    abandoned = await tracker.durable.mark_abandoned()
    if abandoned:
        logger.info(f"已将 {abandoned} 个中断的同步运行标记为失败")

    coordinator = UplinkCoordinator(session_factory, tracker)
    set_coordinator(coordinator)

    logger.info("正在启动定时任务...")
    create_scheduler(app_settings)

    logger.info("readersync 启动完成！")
    yield

    # 关闭时清理
    logger.info("正在关闭...")
    await shutdown_scheduler()
    await coordinator.shutdown()
    tracker.close()
    set_coordinator(None)
    set_tracker(None)
    await close_db()
    logger.info("readersync 已关闭")


app = FastAPI(
    title="readersync",
    description="阅读状态双向同步服务 - Google Reader 兼容 API",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(articles.router)
app.include_router(sync.router)
app.include_router(settings.router)


@app.get("/")
async def root() -> dict:
    """根路径."""
    return {
        "name": "readersync",
        "version": "0.1.0",
        "description": "阅读状态双向同步服务",
    }


@app.get("/health")
async def health() -> dict:
    """健康检查."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "readersync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
