"""上行同步协调器 - 单飞门控.

定时 tick、手动触发和下行同步完成钩子共用同一个门：同一时刻最多
一个批处理在运行。运行期间到达的手动触发被合并（返回正在运行的
run_id），不会排队。
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from readersync.config import Settings, get_effective_settings
from readersync.core.batch import BatchProcessor, BatchResult
from readersync.core.greader import TagAdapter, create_greader_client
from readersync.core.progress import ProgressTracker, new_run_id
from readersync.models.sync import SyncRunStatus

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Settings], AbstractAsyncContextManager[TagAdapter]]


@asynccontextmanager
async def greader_adapter(settings: Settings) -> AsyncIterator[TagAdapter]:
    """创建并在结束时关闭 GReader 客户端."""
    client = create_greader_client(settings)
    try:
        yield client
    finally:
        await client.close()


class UplinkCoordinator:
    """上行同步协调器."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tracker: ProgressTracker,
        adapter_factory: AdapterFactory = greader_adapter,
        settings_provider: Callable[[], Settings] = get_effective_settings,
    ) -> None:
        self.session_factory = session_factory
        self.tracker = tracker
        self.adapter_factory = adapter_factory
        self.settings_provider = settings_provider

        self._lock = asyncio.Lock()
        self._active_run_id: str | None = None
        self._announced = False
        self._pending_run_id: str | None = None
        self._background: set[asyncio.Task[None]] = set()

    @property
    def active_run_id(self) -> str | None:
        """正在运行（或等待去抖）的 run_id."""
        return self._active_run_id or self._pending_run_id

    @property
    def is_running(self) -> bool:
        """是否有批处理正在运行."""
        return self._lock.locked()

    async def run(
        self,
        force: bool = False,
        run_id: str | None = None,
        source: str = "scheduled",
    ) -> BatchResult | None:
        """执行一轮上行推送，已有运行时直接跳过.

        run_id 由手动触发预先创建并已返回给调用方；这种情况下无论
        本轮是否推送都会写入终态。
        """
        if self._lock.locked():
            logger.info(f"上行同步正在运行，跳过本次 {source} 触发")
            if run_id is not None:
                await self.tracker.finish(
                    run_id,
                    SyncRunStatus.COMPLETED,
                    stage_label=f"已合并到正在运行的同步 {self._active_run_id}",
                )
            return None

        async with self._lock:
            announced = run_id is not None
            run_id = run_id or new_run_id("uplink")
            self._active_run_id = run_id
            self._announced = announced
            started = announced

            async def ensure_started() -> None:
                nonlocal started
                if not started:
                    await self.tracker.start("uplink", run_id, stage_label="推送变更")
                    started = True

            async def on_progress(
                percent: int, stage_label: str, stats: dict[str, int]
            ) -> None:
                await ensure_started()
                await self.tracker.update(
                    run_id,
                    progress_percent=percent,
                    stage_label=stage_label,
                    stats=stats,
                )

            try:
                settings = self.settings_provider()
                if not settings.greader_base_url:
                    logger.warning("远端未配置，跳过上行同步")
                    if self._announced:
                        await ensure_started()
                        await self.tracker.finish(
                            run_id, SyncRunStatus.FAILED, error="远端未配置"
                        )
                    return None

                async with (
                    self.session_factory() as session,
                    self.adapter_factory(settings) as adapter,
                ):
                    processor = BatchProcessor.from_settings(session, adapter, settings)
                    result = await processor.tick(force=force, on_progress=on_progress)

                if result.triggered or self._announced:
                    await ensure_started()
                    await self.tracker.finish(
                        run_id,
                        result.status,
                        stage_label=_stage_for(result),
                        stats=result.stats(),
                        error=result.error,
                    )
                return result

            except Exception as e:
                logger.exception(f"上行同步失败: {e}")
                if started or self._announced:
                    await ensure_started()
                    await self.tracker.finish(run_id, SyncRunStatus.FAILED, error=str(e))
                return None

            finally:
                self._active_run_id = None
                self._announced = False

    async def run_scheduled(self) -> BatchResult | None:
        """定时 tick：遵守触发策略."""
        return await self.run(force=False, source="scheduled")

    async def on_downlink_completed(self) -> BatchResult | None:
        """下行同步完成钩子：立即推送一次."""
        return await self.run(force=True, source="downlink")

    async def trigger_manual(self, debounce_seconds: float | None = None) -> tuple[str, bool]:
        """手动触发，返回 (run_id, 是否被合并)."""
        if self._active_run_id is not None:
            self._announced = True
            return self._active_run_id, True
        if self._pending_run_id is not None:
            return self._pending_run_id, True

        if debounce_seconds is None:
            debounce_seconds = self.settings_provider().uplink_manual_debounce_ms / 1000

        run_id = new_run_id("uplink")
        self._pending_run_id = run_id
        await self.tracker.start("uplink", run_id, stage_label="等待执行")

        task = asyncio.create_task(self._run_debounced(run_id, debounce_seconds))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return run_id, False

    async def _run_debounced(self, run_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._pending_run_id = None
        await self.run(force=True, run_id=run_id, source="manual")

    async def wait_idle(self) -> None:
        """等待后台手动触发执行完毕."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def shutdown(self) -> None:
        """取消尚未执行的手动触发."""
        for task in list(self._background):
            task.cancel()
        await self.wait_idle()


def _stage_for(result: BatchResult) -> str:
    if not result.triggered:
        return "没有需要推送的变更"
    if result.rate_limited_until is not None:
        return "远端限流，剩余变更已延后"
    if result.budget_exhausted:
        return "今日配额已用尽"
    return "推送完成"


# 全局协调器（应用启动时创建）
_coordinator: UplinkCoordinator | None = None


def set_coordinator(coordinator: UplinkCoordinator | None) -> None:
    """设置全局协调器."""
    global _coordinator
    _coordinator = coordinator


def get_coordinator() -> UplinkCoordinator:
    """获取全局协调器（用于依赖注入）."""
    if _coordinator is None:
        msg = "上行同步协调器未初始化"
        raise RuntimeError(msg)
    return _coordinator
