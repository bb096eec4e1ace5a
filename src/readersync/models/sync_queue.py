"""PendingChange 待上行变更模型."""

from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from readersync.utils.timeutil import utcnow


class ActionKind:
    """变更类型."""

    READ = "read"
    UNREAD = "unread"
    STAR = "star"
    UNSTAR = "unstar"

    ALL = (READ, UNREAD, STAR, UNSTAR)


class PendingChange(SQLModel, table=True):
    """等待推送到远端的本地状态变更（每篇文章至多一条）."""

    __tablename__ = "sync_queue"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    local_article_id: str = Field(index=True, description="本地文章 ID")
    remote_article_id: str = Field(
        unique=True, index=True, description="远端文章 ID（去重键）"
    )
    action_kind: str = Field(description="变更类型: read|unread|star|unstar")
    created_at: datetime = Field(
        default_factory=utcnow,
        index=True,
        description="最早一次未同步意图的时间",
        sa_type=DateTime,
    )
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    attempt_count: int = Field(default=0, description="失败重试次数")
    last_attempt_at: datetime | None = Field(default=None, sa_type=DateTime)
    last_error: str | None = Field(default=None)
    deferred_until: datetime | None = Field(
        default=None, description="限流延后：在此之前不再尝试", sa_type=DateTime
    )
    stuck: bool = Field(default=False, description="超过最大重试次数，等待人工处理")
