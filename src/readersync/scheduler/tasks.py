"""定时任务定义."""

import asyncio
import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from readersync.config import Settings, get_effective_settings

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None

# 下行同步单飞
_downlink_lock = asyncio.Lock()
_downlink_run_id: str | None = None


def get_current_downlink_run_id() -> str | None:
    """获取正在运行的下行同步 ID."""
    return _downlink_run_id


async def uplink_task() -> None:
    """上行任务：按触发策略推送本地变更."""
    from readersync.core.uplink import get_coordinator

    await get_coordinator().run_scheduled()


async def downlink_task(run_id: str | None = None) -> None:
    """下行任务：从远端拉取订阅和文章状态，完成后触发一次上行."""
    from readersync.core.greader import create_greader_client
    from readersync.core.progress import get_tracker
    from readersync.core.sync import SyncService
    from readersync.core.uplink import get_coordinator
    from readersync.models.database import async_session_maker
    from readersync.models.sync import SyncRunStatus

    global _downlink_run_id

    settings = get_effective_settings()
    tracker = get_tracker()

    if not settings.greader_base_url:
        logger.warning("远端未配置，跳过下行同步")
        if run_id is not None:
            await tracker.finish(run_id, SyncRunStatus.FAILED, error="远端未配置")
        return

    if _downlink_lock.locked():
        logger.info("已有下行同步在运行，跳过本次调度")
        if run_id is not None:
            await tracker.finish(
                run_id,
                SyncRunStatus.COMPLETED,
                stage_label=f"已合并到正在运行的同步 {_downlink_run_id}",
            )
        return

    async with _downlink_lock:
        if run_id is None:
            run_id = (await tracker.start("downlink")).run_id
        _downlink_run_id = run_id

        client = create_greader_client(settings)
        try:
            session_factory = async_session_maker()
            async with session_factory() as session:
                service = SyncService(
                    client,
                    session,
                    tracker=tracker,
                    on_complete=get_coordinator().on_downlink_completed,
                )
                await service.run(max_count=settings.sync_max_items, run_id=run_id)
        except Exception as e:
            logger.exception(f"下行同步任务失败: {e}")
        finally:
            _downlink_run_id = None
            await client.close()


async def maintenance_task(settings: Settings) -> None:
    """维护任务：清理过期进度和过期队列记录."""
    from readersync.core.progress import get_tracker
    from readersync.core.queue import ChangeQueue
    from readersync.models.database import async_session_maker

    try:
        fast_count, durable_count = await get_tracker().purge_expired()
        logger.info(f"进度清理: 文件 {fast_count}，数据库 {durable_count}")

        if settings.queue_max_age_days:
            session_factory = async_session_maker()
            async with session_factory() as session:
                await ChangeQueue(session).purge_older_than(
                    timedelta(days=settings.queue_max_age_days)
                )
    except Exception as e:
        logger.exception(f"维护任务失败: {e}")


def create_scheduler(settings: Settings) -> AsyncIOScheduler:
    """创建并启动定时任务调度器."""
    global _scheduler

    _scheduler = AsyncIOScheduler()

    _scheduler.add_job(
        uplink_task,
        "interval",
        minutes=settings.uplink_interval_minutes,
        id="uplink_task",
        name="上行推送",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    _scheduler.add_job(
        downlink_task,
        "interval",
        minutes=settings.sync_interval_minutes,
        id="downlink_task",
        name="下行同步",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # 启动时立即执行一次下行同步
    _scheduler.add_job(
        downlink_task,
        "date",
        id="downlink_task_initial",
        name="初始下行同步",
    )

    _scheduler.add_job(
        maintenance_task,
        "interval",
        hours=1,
        args=[settings],
        id="maintenance_task",
        name="过期数据清理",
        replace_existing=True,
    )

    _scheduler.start()
    logger.info(
        f"定时任务调度器已启动，下行间隔: {settings.sync_interval_minutes} 分钟，"
        f"上行间隔: {settings.uplink_interval_minutes} 分钟"
    )

    return _scheduler


async def shutdown_scheduler() -> None:
    """关闭定时任务调度器."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        logger.info("定时任务调度器已关闭")
        _scheduler = None
