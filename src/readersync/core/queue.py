"""变更队列 - 本地已读/收藏变更的持久化待上行队列."""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete, func, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from readersync.models.sync_queue import ActionKind, PendingChange
from readersync.utils.timeutil import age_seconds, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class ChangeQueueError(Exception):
    """变更队列存储错误（调用方应提示“未保存”）."""


class InvalidActionError(ValueError):
    """未知的变更类型."""


@dataclass
class QueueStats:
    """队列统计."""

    pending: int = 0  # 等待首次推送
    retrying: int = 0  # 失败后等待重试
    deferred: int = 0  # 限流延后
    stuck: int = 0  # 超过重试上限
    total: int = 0
    oldest_age_seconds: float = 0.0
    by_action: dict[str, int] = field(default_factory=dict)


def validate_action(action_kind: str) -> str:
    """校验变更类型."""
    if action_kind not in ActionKind.ALL:
        msg = f"未知的变更类型: {action_kind}"
        raise InvalidActionError(msg)
    return action_kind


class ChangeQueue:
    """待上行变更队列.

    每篇文章（remote_article_id）最多保留一条记录：新的变更覆盖旧的
    action_kind 并把 attempt_count 归零，但保留 created_at，以便
    队列年龄反映最早的未同步意图。
    """

    def __init__(
        self,
        session: AsyncSession,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.session = session
        self.max_attempts = max_attempts

    async def enqueue(
        self,
        local_article_id: str,
        remote_article_id: str,
        action_kind: str,
        now: datetime | None = None,
    ) -> PendingChange:
        """写入变更（按文章去重，后写覆盖）."""
        validate_action(action_kind)
        now = now or utcnow()

        stmt = insert(PendingChange).values(
            local_article_id=local_article_id,
            remote_article_id=remote_article_id,
            action_kind=action_kind,
            created_at=now,
            updated_at=now,
            attempt_count=0,
            stuck=False,
        )
        # created_at 不在更新列表中：年龄以最早的未同步意图为准
        stmt = stmt.on_conflict_do_update(
            index_elements=["remote_article_id"],
            set_={
                "local_article_id": stmt.excluded.local_article_id,
                "action_kind": stmt.excluded.action_kind,
                "updated_at": stmt.excluded.updated_at,
                "attempt_count": 0,
                "last_attempt_at": None,
                "last_error": None,
                "stuck": False,
            },
        )

        stmt = stmt.returning(PendingChange)

        try:
            result = await self.session.execute(
                stmt, execution_options={"populate_existing": True}
            )
            change = result.scalar_one()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.exception(f"变更入队失败: {remote_article_id} {action_kind}")
            msg = f"变更入队失败: {e}"
            raise ChangeQueueError(msg) from e

        logger.debug(f"变更入队: {remote_article_id} -> {action_kind}")
        return change

    async def get_by_remote_id(self, remote_article_id: str) -> PendingChange | None:
        """按远端文章 ID 查询."""
        stmt = select(PendingChange).where(
            PendingChange.remote_article_id == remote_article_id
        )
        result = await self.session.execute(
            stmt.execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_pending(self, include_stuck: bool = False) -> list[PendingChange]:
        """按 created_at 升序返回队列."""
        stmt = select(PendingChange)
        if not include_stuck:
            stmt = stmt.where(col(PendingChange.stuck).is_(False))
        stmt = stmt.order_by(col(PendingChange.created_at), col(PendingChange.id))

        result = await self.session.execute(
            stmt.execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_stuck(self) -> list[PendingChange]:
        """返回超过重试上限、等待人工处理的记录."""
        stmt = (
            select(PendingChange)
            .where(col(PendingChange.stuck).is_(True))
            .order_by(col(PendingChange.created_at), col(PendingChange.id))
        )
        result = await self.session.execute(
            stmt.execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def dequeue_success(
        self,
        ids: Iterable[int],
        action_kind: str | None = None,
    ) -> int:
        """删除已成功推送的记录.

        指定 action_kind 时，只删除仍为该类型的记录：推送期间被新动作
        覆盖的行会留在队列中等待下一轮。
        """
        id_list = list(ids)
        if not id_list:
            return 0

        stmt = delete(PendingChange).where(col(PendingChange.id).in_(id_list))
        if action_kind is not None:
            stmt = stmt.where(PendingChange.action_kind == action_kind)

        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount or 0

    async def dequeue_failure(
        self,
        ids: Iterable[int],
        action_kind: str | None = None,
        error: str | None = None,
        now: datetime | None = None,
    ) -> list[PendingChange]:
        """记录一次失败尝试，达到上限的记录标记为 stuck（不删除）."""
        id_list = list(ids)
        if not id_list:
            return []
        now = now or utcnow()

        stmt = (
            update(PendingChange)
            .where(col(PendingChange.id).in_(id_list))
            .values(
                attempt_count=PendingChange.attempt_count + 1,
                last_attempt_at=now,
                last_error=error,
            )
        )
        if action_kind is not None:
            stmt = stmt.where(PendingChange.action_kind == action_kind)
        await self.session.execute(stmt)

        await self.session.execute(
            update(PendingChange)
            .where(col(PendingChange.id).in_(id_list))
            .where(PendingChange.attempt_count >= self.max_attempts)
            .where(col(PendingChange.stuck).is_(False))
            .values(stuck=True)
        )
        await self.session.commit()

        changes = await self._get_many(id_list)
        for change in changes:
            if change.stuck:
                logger.warning(
                    f"变更已达最大重试次数，等待人工处理: {change.remote_article_id} "
                    f"({change.action_kind}, {change.attempt_count}/{self.max_attempts})"
                )
        return changes

    async def mark_stuck(
        self,
        ids: Iterable[int],
        action_kind: str | None = None,
        error: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """不可重试的失败：直接标记为 stuck，保留在队列中.

        与 dequeue_success 相同，指定 action_kind 时跳过推送期间被新动作
        覆盖的行。
        """
        id_list = list(ids)
        if not id_list:
            return 0

        stmt = update(PendingChange).where(col(PendingChange.id).in_(id_list))
        if action_kind is not None:
            stmt = stmt.where(PendingChange.action_kind == action_kind)

        result = await self.session.execute(
            stmt.values(
                attempt_count=PendingChange.attempt_count + 1,
                last_attempt_at=now or utcnow(),
                last_error=error,
                stuck=True,
            )
        )
        await self.session.commit()
        count = result.rowcount or 0
        logger.warning(f"{count} 条变更因不可重试错误被标记为 stuck: {error}")
        return count

    async def defer(self, ids: Iterable[int], until: datetime) -> int:
        """限流延后：在 until 之前不再调度，不计入失败次数."""
        id_list = list(ids)
        if not id_list:
            return 0

        result = await self.session.execute(
            update(PendingChange)
            .where(col(PendingChange.id).in_(id_list))
            .values(deferred_until=until)
        )
        await self.session.commit()
        return result.rowcount or 0

    async def release_stuck(self, ids: Sequence[int] | None = None) -> int:
        """人工干预：重置 stuck 记录，允许重新推送."""
        stmt = (
            update(PendingChange)
            .where(col(PendingChange.stuck).is_(True))
            .values(
                stuck=False,
                attempt_count=0,
                last_attempt_at=None,
                deferred_until=None,
            )
        )
        if ids is not None:
            stmt = stmt.where(col(PendingChange.id).in_(list(ids)))

        result = await self.session.execute(stmt)
        await self.session.commit()
        count = result.rowcount or 0
        logger.info(f"重置了 {count} 条 stuck 变更")
        return count

    async def discard_stuck(self, ids: Sequence[int] | None = None) -> int:
        """人工干预：删除 stuck 记录."""
        stmt = delete(PendingChange).where(col(PendingChange.stuck).is_(True))
        if ids is not None:
            stmt = stmt.where(col(PendingChange.id).in_(list(ids)))

        result = await self.session.execute(stmt)
        await self.session.commit()
        count = result.rowcount or 0
        logger.warning(f"人工删除了 {count} 条 stuck 变更")
        return count

    async def purge_older_than(
        self,
        max_age: timedelta,
        now: datetime | None = None,
    ) -> int:
        """删除超过最大保留时间的记录（仅在配置了 queue_max_age_days 时调用）."""
        cutoff = (now or utcnow()) - max_age
        result = await self.session.execute(
            delete(PendingChange).where(col(PendingChange.created_at) < cutoff)
        )
        await self.session.commit()
        count = result.rowcount or 0
        if count:
            logger.warning(f"删除了 {count} 条超过 {max_age} 的过期变更")
        return count

    async def count(self) -> int:
        """队列总数."""
        result = await self.session.execute(
            select(func.count()).select_from(PendingChange)
        )
        return int(result.scalar() or 0)

    async def stats(self, now: datetime | None = None) -> QueueStats:
        """队列统计."""
        now = now or utcnow()
        changes = await self.list_pending(include_stuck=True)

        stats = QueueStats(total=len(changes))
        for change in changes:
            stats.by_action[change.action_kind] = (
                stats.by_action.get(change.action_kind, 0) + 1
            )
            if change.stuck:
                stats.stuck += 1
            elif change.deferred_until and change.deferred_until > now:
                stats.deferred += 1
            elif change.attempt_count > 0:
                stats.retrying += 1
            else:
                stats.pending += 1

        if changes:
            stats.oldest_age_seconds = age_seconds(changes[0].created_at, now)
        return stats

    async def _get_many(self, ids: list[int]) -> list[PendingChange]:
        stmt = (
            select(PendingChange)
            .where(col(PendingChange.id).in_(ids))
            .order_by(col(PendingChange.created_at), col(PendingChange.id))
        )
        result = await self.session.execute(
            stmt.execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
