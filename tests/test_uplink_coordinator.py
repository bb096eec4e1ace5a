"""测试上行同步协调器（单飞门控）."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from readersync.config import Settings
from readersync.core.greader import TagAdapter
from readersync.core.progress import ProgressTracker
from readersync.core.queue import ChangeQueue
from readersync.core.uplink import UplinkCoordinator
from readersync.models.sync import SyncRunStatus
from readersync.models.sync_queue import ActionKind

from conftest import FakeTagAdapter, wait_until


def _settings(**kwargs) -> Settings:
    values = {"greader_base_url": "https://rss.example.com"}
    values.update(kwargs)
    return Settings(**values)


def _coordinator(
    session_factory: async_sessionmaker[AsyncSession],
    tracker: ProgressTracker,
    adapter: FakeTagAdapter,
    settings: Settings | None = None,
) -> UplinkCoordinator:
    @asynccontextmanager
    async def factory(_: Settings) -> AsyncIterator[TagAdapter]:
        yield adapter

    return UplinkCoordinator(
        session_factory,
        tracker,
        adapter_factory=factory,
        settings_provider=lambda: settings or _settings(),
    )


async def _enqueue(session_factory: async_sessionmaker[AsyncSession], count: int) -> None:
    async with session_factory() as session:
        queue = ChangeQueue(session)
        for i in range(count):
            await queue.enqueue(f"a{i}", f"r{i}", ActionKind.READ)


class TestSingleFlight:
    """测试同一时刻只有一个批处理."""

    async def test_manual_trigger_coalesces_into_active_run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tracker: ProgressTracker,
    ) -> None:
        """运行期间的手动触发返回正在运行的 run_id."""
        release = asyncio.Event()
        adapter = FakeTagAdapter()

        async def block() -> None:
            await release.wait()

        adapter.before_return = block
        await _enqueue(session_factory, 5)
        coordinator = _coordinator(session_factory, tracker, adapter)

        running = asyncio.create_task(coordinator.run_scheduled())
        await wait_until(lambda: len(adapter.calls) == 1)
        active = coordinator.active_run_id
        assert active is not None

        run_id, coalesced = await coordinator.trigger_manual(debounce_seconds=0)
        assert (run_id, coalesced) == (active, True)

        # 定时 tick 与下行钩子也被跳过
        assert await coordinator.run_scheduled() is None
        assert await coordinator.on_downlink_completed() is None

        release.set()
        result = await running
        assert result is not None
        assert result.synced == 5
        assert len(adapter.calls) == 1

        snapshot = await tracker.get(active)
        assert snapshot is not None
        assert snapshot.status == SyncRunStatus.COMPLETED

    async def test_scheduled_noop_records_nothing(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tracker: ProgressTracker,
    ) -> None:
        """未达到触发条件的定时 tick 不产生运行记录."""
        await _enqueue(session_factory, 2)
        adapter = FakeTagAdapter()
        coordinator = _coordinator(session_factory, tracker, adapter)

        result = await coordinator.run_scheduled()

        assert result is not None
        assert result.triggered is False
        assert adapter.calls == []
        assert await tracker.recent() == []


class TestManualTrigger:
    """测试手动触发."""

    async def test_debounce_merges_rapid_triggers(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tracker: ProgressTracker,
    ) -> None:
        """去抖窗口内的多次触发合并为一次运行."""
        await _enqueue(session_factory, 1)
        adapter = FakeTagAdapter()
        coordinator = _coordinator(session_factory, tracker, adapter)

        first, coalesced_first = await coordinator.trigger_manual(debounce_seconds=0.05)
        second, coalesced_second = await coordinator.trigger_manual(debounce_seconds=0.05)

        assert coalesced_first is False
        assert (second, coalesced_second) == (first, True)
        assert (await tracker.get(first)) is not None

        await coordinator.wait_idle()

        assert len(adapter.calls) == 1
        snapshot = await tracker.get(first)
        assert snapshot is not None
        assert snapshot.status == SyncRunStatus.COMPLETED
        assert snapshot.stats["synced"] == 1

    async def test_manual_with_empty_queue_completes(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tracker: ProgressTracker,
    ) -> None:
        """队列为空时手动触发也有终态."""
        adapter = FakeTagAdapter()
        coordinator = _coordinator(session_factory, tracker, adapter)

        run_id, _ = await coordinator.trigger_manual(debounce_seconds=0)
        await coordinator.wait_idle()

        snapshot = await tracker.get(run_id)
        assert snapshot is not None
        assert snapshot.status == SyncRunStatus.COMPLETED
        assert adapter.calls == []

    async def test_unconfigured_remote_fails_run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tracker: ProgressTracker,
    ) -> None:
        """远端未配置时运行失败."""
        adapter = FakeTagAdapter()
        coordinator = _coordinator(
            session_factory, tracker, adapter, settings=_settings(greader_base_url="")
        )

        run_id, _ = await coordinator.trigger_manual(debounce_seconds=0)
        await coordinator.wait_idle()

        snapshot = await tracker.get(run_id)
        assert snapshot is not None
        assert snapshot.status == SyncRunStatus.FAILED


class TestDownlinkHook:
    """测试下行同步完成钩子."""

    async def test_hook_pushes_immediately(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tracker: ProgressTracker,
    ) -> None:
        """钩子跳过阈值立即推送."""
        await _enqueue(session_factory, 1)
        adapter = FakeTagAdapter()
        coordinator = _coordinator(session_factory, tracker, adapter)

        result = await coordinator.on_downlink_completed()

        assert result is not None
        assert result.synced == 1
        runs = await tracker.recent()
        assert [r.kind for r in runs] == ["uplink"]


class TestFailure:
    """测试异常处理."""

    async def test_adapter_exception_fails_run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tracker: ProgressTracker,
    ) -> None:
        """批处理抛出异常时运行失败，队列保持不变."""
        adapter = FakeTagAdapter()

        async def boom() -> None:
            msg = "adapter crashed"
            raise RuntimeError(msg)

        adapter.before_return = boom
        await _enqueue(session_factory, 1)
        coordinator = _coordinator(session_factory, tracker, adapter)

        run_id, _ = await coordinator.trigger_manual(debounce_seconds=0)
        await coordinator.wait_idle()

        snapshot = await tracker.get(run_id)
        assert snapshot is not None
        assert snapshot.status == SyncRunStatus.FAILED
        assert snapshot.error == "adapter crashed"
        assert coordinator.is_running is False

        async with session_factory() as session:
            assert await ChangeQueue(session).count() == 1

