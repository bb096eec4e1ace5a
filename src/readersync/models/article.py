"""Article 文章模型."""

from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from readersync.utils.timeutil import utcnow


class Article(SQLModel, table=True):
    """RSS 文章."""

    __tablename__ = "articles"  # type: ignore[assignment]

    id: str = Field(primary_key=True, description="远端 Google Reader item ID")
    feed_id: str = Field(foreign_key="feeds.id", description="关联 Feed")
    title: str = Field(description="标题")
    author: str | None = Field(default=None, description="作者")
    url: str | None = Field(default=None, description="原文链接")
    content: str | None = Field(default=None, description="HTML 内容")
    published_at: datetime | None = Field(
        default=None, description="发布时间", sa_type=DateTime
    )
    fetched_at: datetime = Field(
        default_factory=utcnow, description="抓取时间", sa_type=DateTime
    )
    is_read: bool = Field(default=False, description="是否已读")
    is_starred: bool = Field(default=False, description="是否收藏")
    last_local_update: datetime | None = Field(
        default=None, description="最近一次本地已读/收藏变更时间", sa_type=DateTime
    )
    last_sync_update: datetime | None = Field(
        default=None, description="最近一次被下行同步写入的时间", sa_type=DateTime
    )
