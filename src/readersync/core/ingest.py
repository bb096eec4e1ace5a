"""本地状态变更入口."""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from readersync.core.queue import ChangeQueue, validate_action
from readersync.models.article import Article
from readersync.models.sync_queue import ActionKind, PendingChange
from readersync.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class ArticleNotFoundError(LookupError):
    """文章不存在."""


def action_for(field_name: str, value: bool) -> str:
    """把 read/starred 开关映射为变更类型."""
    if field_name == "read":
        return ActionKind.READ if value else ActionKind.UNREAD
    if field_name == "starred":
        return ActionKind.STAR if value else ActionKind.UNSTAR
    msg = f"未知字段: {field_name}"
    raise ValueError(msg)


def apply_action(article: Article, action_kind: str) -> None:
    """把变更应用到本地文章."""
    if action_kind == ActionKind.READ:
        article.is_read = True
    elif action_kind == ActionKind.UNREAD:
        article.is_read = False
    elif action_kind == ActionKind.STAR:
        article.is_starred = True
    elif action_kind == ActionKind.UNSTAR:
        article.is_starred = False


async def record_local_change(
    session: AsyncSession,
    article_id: str,
    action_kind: str,
    now: datetime | None = None,
) -> PendingChange:
    """更新本地状态并写入变更队列.

    文章状态与队列记录在同一个事务中提交：队列写入失败时本地状态
    一并回滚，调用方收到 ChangeQueueError。
    """
    validate_action(action_kind)
    now = now or utcnow()

    article = await session.get(Article, article_id)
    if article is None:
        msg = f"文章不存在: {article_id}"
        raise ArticleNotFoundError(msg)

    apply_action(article, action_kind)
    article.last_local_update = now

    # 本地 ID 与远端 ID 相同（文章以远端 item ID 为主键）
    change = await ChangeQueue(session).enqueue(
        local_article_id=article.id,
        remote_article_id=article.id,
        action_kind=action_kind,
        now=now,
    )
    logger.info(f"本地变更已入队: {article_id} -> {action_kind}")
    return change
