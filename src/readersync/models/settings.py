"""Settings 键值存储模型."""

from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from readersync.utils.timeutil import utcnow

# 上一次完成的下行同步时间（冲突判定边界）
LAST_SYNC_TIME_KEY = "last_sync_time"


class SettingItem(SQLModel, table=True):
    """配置项存储."""

    __tablename__ = "settings"  # type: ignore[assignment]

    key: str = Field(primary_key=True, description="配置键")
    value: str = Field(description="配置值")
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
