"""测试文章与同步 API 端点."""

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from readersync.config import Settings, clear_dynamic_settings, set_dynamic_settings
from readersync.core.progress import ProgressTracker, get_tracker
from readersync.core.queue import ChangeQueue, ChangeQueueError
from readersync.core.uplink import get_coordinator
from readersync.main import app
from readersync.models.article import Article
from readersync.models.database import get_session
from readersync.models.sync import SyncRunStatus
from readersync.models.sync_queue import ActionKind


@pytest.fixture
def coordinator() -> MagicMock:
    """上行协调器替身."""
    coordinator = MagicMock()
    coordinator.trigger_manual = AsyncMock(return_value=("uplink_abc", False))
    return coordinator


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    sample_articles: list[Article],
    tracker: ProgressTracker,
    coordinator: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """创建测试客户端."""

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_tracker] = lambda: tracker
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    set_dynamic_settings({"greader_base_url": "https://rss.example.com"})

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    clear_dynamic_settings()


class TestArticleEndpoints:
    """测试 /api/articles 端点."""

    async def test_only_state_toggles_exposed(self, client: AsyncClient) -> None:
        """只提供已读/收藏切换，不提供文章列表."""
        assert (await client.get("/api/articles")).status_code == 404
        assert (await client.get("/api/articles/detail")).status_code == 404

    async def test_mark_read_enqueues_change(
        self,
        client: AsyncClient,
        sample_articles: list[Article],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """标记已读：更新本地状态并写入队列."""
        article_id = sample_articles[0].id
        response = await client.patch(
            "/api/articles/read", params={"article_id": article_id, "read": True}
        )
        assert response.status_code == 200
        assert response.json() == {"id": article_id, "is_read": True}

        async with session_factory() as session:
            article = await session.get(Article, article_id)
            assert article is not None
            assert article.is_read is True
            assert article.last_local_update is not None

            change = await ChangeQueue(session).get_by_remote_id(article_id)
            assert change is not None
            assert change.action_kind == ActionKind.READ

    async def test_star_then_unstar_keeps_one_row(
        self,
        client: AsyncClient,
        sample_articles: list[Article],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """收藏后取消收藏，队列中只有 unstar."""
        article_id = sample_articles[1].id
        await client.patch("/api/articles/star", params={"article_id": article_id})
        await client.patch(
            "/api/articles/star", params={"article_id": article_id, "starred": False}
        )

        async with session_factory() as session:
            pending = await ChangeQueue(session).list_pending()
            assert [(c.remote_article_id, c.action_kind) for c in pending] == [
                (article_id, ActionKind.UNSTAR)
            ]

    async def test_unknown_article(self, client: AsyncClient) -> None:
        """文章不存在."""
        response = await client.patch(
            "/api/articles/read", params={"article_id": "missing"}
        )
        assert response.status_code == 404

    async def test_queue_unavailable(
        self,
        client: AsyncClient,
        sample_articles: list[Article],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """队列写入失败时返回 503."""
        monkeypatch.setattr(
            "readersync.api.articles.record_local_change",
            AsyncMock(side_effect=ChangeQueueError("database is locked")),
        )
        response = await client.patch(
            "/api/articles/read", params={"article_id": sample_articles[0].id}
        )
        assert response.status_code == 503


class TestSyncEndpoints:
    """测试 /api/sync 端点."""

    async def test_status_not_found(self, client: AsyncClient) -> None:
        """未知 run_id 返回 404."""
        response = await client.get("/api/sync/status/uplink_missing")
        assert response.status_code == 404

    async def test_status_found(self, client: AsyncClient, tracker: ProgressTracker) -> None:
        """返回运行快照."""
        snapshot = await tracker.start("uplink")
        await tracker.finish(snapshot.run_id, SyncRunStatus.PARTIAL, stats={"synced": 3})

        response = await client.get(f"/api/sync/status/{snapshot.run_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "partial"
        assert data["stats"] == {"synced": 3}

    async def test_manual_uplink(self, client: AsyncClient, coordinator: MagicMock) -> None:
        """手动触发返回 run_id."""
        response = await client.post("/api/sync/uplink")
        assert response.status_code == 200
        assert response.json() == {"run_id": "uplink_abc", "coalesced": False}
        coordinator.trigger_manual.assert_awaited_once()

    async def test_uplink_requires_remote(
        self, client: AsyncClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """远端未配置时返回 400."""
        monkeypatch.setattr(
            "readersync.api.sync.get_effective_settings",
            lambda: Settings(greader_base_url=""),
        )
        response = await client.post("/api/sync/uplink")
        assert response.status_code == 400
        assert response.json()["detail"] == "远端未配置"

    async def test_queue_stats_and_stuck(
        self,
        client: AsyncClient,
        sample_articles: list[Article],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """队列统计和 stuck 记录的人工处理."""
        async with session_factory() as session:
            queue = ChangeQueue(session)
            change = await queue.enqueue(
                sample_articles[0].id, sample_articles[0].id, ActionKind.READ
            )
            await queue.enqueue(sample_articles[1].id, sample_articles[1].id, ActionKind.STAR)
            await queue.mark_stuck([change.id], error="400 Bad Request")

        stats = (await client.get("/api/sync/queue")).json()
        assert stats["total"] == 2
        assert stats["stuck"] == 1
        assert stats["pending"] == 1

        stuck = (await client.get("/api/sync/queue/stuck")).json()["items"]
        assert [item["id"] for item in stuck] == [change.id]
        assert stuck[0]["last_error"] == "400 Bad Request"

        released = await client.post("/api/sync/queue/stuck/release", json={"ids": [change.id]})
        assert released.json() == {"released": 1}
        assert (await client.get("/api/sync/queue")).json()["stuck"] == 0

    async def test_usage(self, client: AsyncClient) -> None:
        """配额信息."""
        response = await client.get("/api/sync/usage")
        assert response.status_code == 200
        data = response.json()
        assert data["calls_used"] == 0
        assert data["remaining"] == data["calls_limit"]


class TestHealth:
    """测试健康检查."""

    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.json() == {"status": "ok"}
