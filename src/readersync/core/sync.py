"""下行同步服务 - 从 Google Reader 拉取订阅和文章状态."""

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from readersync.core.conflict import ConflictRecorder, LocalState, plan_overwrites
from readersync.core.greader import GReaderClient
from readersync.core.progress import ProgressTracker, new_run_id
from readersync.models.article import Article
from readersync.models.feed import Feed
from readersync.models.settings import LAST_SYNC_TIME_KEY, SettingItem
from readersync.models.sync import SyncRunStatus
from readersync.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass
class DownlinkStats:
    """下行同步计数."""

    feeds_synced: int = 0
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class SyncService:
    """下行同步服务."""

    def __init__(
        self,
        client: GReaderClient,
        session: AsyncSession,
        tracker: ProgressTracker | None = None,
        on_complete: Callable[[], Awaitable[object]] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.session = session
        self.tracker = tracker
        self.on_complete = on_complete
        self.clock = clock

    async def sync_feeds(self) -> int:
        """同步订阅源列表，返回新增数量."""
        feeds = await self.client.get_subscriptions()
        count = 0

        for feed in feeds:
            existing = await self.session.get(Feed, feed.id)
            if existing:
                existing.title = feed.title
                existing.url = feed.url
                existing.site_url = feed.site_url
                existing.icon_url = feed.icon_url
                existing.category = feed.category
                existing.updated_at = self.clock()
            else:
                self.session.add(feed)
                count += 1

        await self.session.commit()
        return count

    async def get_sync_boundary(self) -> datetime | None:
        """上一次完成的下行同步时间."""
        item = await self.session.get(SettingItem, LAST_SYNC_TIME_KEY)
        if item is None:
            return None
        try:
            return datetime.fromisoformat(item.value)
        except ValueError:
            logger.warning(f"同步边界格式错误，按首次同步处理: {item.value}")
            return None

    async def set_sync_boundary(self, boundary: datetime) -> None:
        """推进同步边界."""
        item = await self.session.get(SettingItem, LAST_SYNC_TIME_KEY)
        if item is None:
            item = SettingItem(key=LAST_SYNC_TIME_KEY, value=boundary.isoformat())
            self.session.add(item)
        else:
            item.value = boundary.isoformat()
            item.updated_at = self.clock()
        await self.session.commit()

    async def apply_snapshot(
        self,
        candidates: Sequence[Article],
        sync_boundary: datetime | None,
        run_id: str | None = None,
    ) -> DownlinkStats:
        """用远端快照覆盖本地行（本地更新晚于边界的文章除外）."""
        stats = DownlinkStats(fetched=len(candidates))
        if not candidates:
            return stats

        ids = [candidate.id for candidate in candidates]
        result = await self.session.execute(
            select(Article).where(col(Article.id).in_(ids))
        )
        existing = {article.id: article for article in result.scalars().all()}
        local_states = {
            article_id: LocalState.from_article(article)
            for article_id, article in existing.items()
        }

        now = self.clock()
        plan = plan_overwrites(candidates, local_states, sync_boundary, run_id, now)
        stats.skipped = len(plan.skipped)

        for candidate in plan.apply:
            row = existing.get(candidate.id)
            if row is None:
                candidate.last_sync_update = now
                self.session.add(candidate)
                stats.created += 1
                continue

            row.title = candidate.title
            row.author = candidate.author
            row.url = candidate.url
            row.content = candidate.content
            row.published_at = candidate.published_at
            row.is_read = candidate.is_read
            row.is_starred = candidate.is_starred
            row.last_sync_update = now
            stats.updated += 1

        await self.session.commit()

        # 冲突记录只用于诊断，写入失败不影响同步
        try:
            stats.conflicts = await ConflictRecorder(self.session).record(plan.conflicts)
        except SQLAlchemyError:
            await self.session.rollback()
            logger.exception("写入冲突记录失败")

        return stats

    async def sync_articles(
        self,
        max_count: int = 100,
        run_id: str | None = None,
    ) -> DownlinkStats:
        """拉取文章并合并到本地，成功后推进同步边界."""
        boundary = await self.get_sync_boundary()

        # 边界取拉取之前的时间：拉取期间的本地修改不会被误判为过期
        sync_started_at = self.clock()
        candidates = await self.client.get_items(count=max_count)
        await self._progress(run_id, 60, "合并文章状态", {"fetched": len(candidates)})

        stats = await self.apply_snapshot(candidates, boundary, run_id)
        await self.set_sync_boundary(sync_started_at)
        return stats

    async def run(self, max_count: int = 100, run_id: str | None = None) -> DownlinkStats:
        """完整的下行同步：订阅源 -> 文章 -> 完成钩子.

        run_id 为空时自行创建运行记录；否则认为调用方已经创建。
        """
        if self.tracker is not None and run_id is None:
            run_id = (await self.tracker.start("downlink")).run_id
        run_id = run_id or new_run_id("downlink")

        stats = DownlinkStats()
        try:
            if not self.client.is_authenticated:
                await self.client.authenticate()

            await self._progress(run_id, 10, "同步订阅源")
            stats.feeds_synced = await self.sync_feeds()
            logger.info(f"同步了 {stats.feeds_synced} 个新 Feed")

            await self._progress(run_id, 30, "拉取文章")
            article_stats = await self.sync_articles(max_count=max_count, run_id=run_id)
            article_stats.feeds_synced = stats.feeds_synced
            stats = article_stats
        except Exception as e:
            logger.exception(f"下行同步失败: {e}")
            await self.session.rollback()
            if self.tracker is not None:
                await self.tracker.finish(
                    run_id,
                    SyncRunStatus.FAILED,
                    stats=stats.as_dict(),
                    error=str(e),
                )
            return stats

        logger.info(
            f"下行同步完成: 拉取={stats.fetched}, 新增={stats.created}, "
            f"更新={stats.updated}, 保留本地={stats.skipped}"
        )
        if self.tracker is not None:
            await self.tracker.finish(
                run_id,
                SyncRunStatus.COMPLETED,
                stage_label="同步完成",
                stats=stats.as_dict(),
            )

        if self.on_complete is not None:
            await self.on_complete()
        return stats

    async def _progress(
        self,
        run_id: str | None,
        percent: int,
        stage_label: str,
        stats: dict[str, int] | None = None,
    ) -> None:
        if self.tracker is None or run_id is None:
            return
        await self.tracker.update(
            run_id, progress_percent=percent, stage_label=stage_label, stats=stats
        )
