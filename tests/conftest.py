"""测试配置和 fixtures."""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import readersync.models  # noqa: F401
from readersync.core.greader import TagOutcome, TagResult
from readersync.core.progress import DurableProgressStore, FastProgressStore, ProgressTracker
from readersync.models.article import Article
from readersync.models.feed import Feed


class FakeClock:
    """可手动推进的时钟."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeTagAdapter:
    """记录调用的 edit-tag 替身.

    results 中的元素依次作为每次调用的返回值，用完后返回成功；
    元素也可以是协程函数，用于模拟阻塞或超时。
    """

    def __init__(
        self,
        results: Sequence[TagResult | Callable[[], Awaitable[TagResult]]] = (),
    ) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, list[str]]] = []
        self.before_return: Callable[[], Awaitable[None]] | None = None

    async def edit_tag(self, action_kind: str, item_ids: Sequence[str]) -> TagResult:
        self.calls.append((action_kind, list(item_ids)))
        if self.before_return is not None:
            await self.before_return()

        if not self.results:
            return TagResult(outcome=TagOutcome.SUCCESS, status_code=200)
        result = self.results.pop(0)
        if isinstance(result, TagResult):
            return result
        return await result()


@pytest.fixture
def clock() -> FakeClock:
    """固定在 2026-01-10 12:00 UTC 的时钟."""
    return FakeClock(datetime(2026, 1, 10, 12, 0, 0))


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    """每个测试独立的 SQLite 文件数据库."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    """测试会话工厂."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """测试会话."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def sample_feed(session: AsyncSession) -> Feed:
    """测试用的 Feed."""
    feed = Feed(
        id="feed/1",
        title="Test Feed",
        url="https://example.com/feed.xml",
        site_url="https://example.com",
    )
    session.add(feed)
    await session.commit()
    return feed


@pytest_asyncio.fixture
async def sample_articles(session: AsyncSession, sample_feed: Feed) -> list[Article]:
    """五篇未读文章."""
    articles = [
        Article(
            id=f"tag:google.com,2005:reader/item/{i:016x}",
            feed_id=sample_feed.id,
            title=f"Article {i}",
            url=f"https://example.com/article-{i}",
        )
        for i in range(1, 6)
    ]
    session.add_all(articles)
    await session.commit()
    return articles


@pytest.fixture
def fake_adapter() -> FakeTagAdapter:
    """默认全部成功的 edit-tag 替身."""
    return FakeTagAdapter()


@pytest_asyncio.fixture
async def tracker(
    tmp_path: Path,
    session_factory: async_sessionmaker[AsyncSession],
    clock: FakeClock,
) -> AsyncGenerator[ProgressTracker, None]:
    """使用临时目录和测试数据库的进度追踪器."""
    tracker = ProgressTracker(
        fast=FastProgressStore(tmp_path / "progress"),
        durable=DurableProgressStore(session_factory, retention=timedelta(hours=24)),
        cleanup_delay=60.0,
        clock=clock,
    )
    yield tracker
    tracker.close()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """轮询直到条件成立."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            msg = "等待超时"
            raise AssertionError(msg)
        await asyncio.sleep(0.01)
