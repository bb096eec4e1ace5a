"""应用动态配置模型."""

from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from readersync.utils.timeutil import utcnow


class AppSettings(SQLModel, table=True):
    """应用动态配置表（单行存储）."""

    __tablename__ = "app_settings"

    id: int = Field(default=1, primary_key=True)

    # Google Reader 配置
    greader_base_url: str | None = Field(default=None)
    greader_api_path: str | None = Field(default=None)
    greader_username: str | None = Field(default=None)
    greader_api_password: str | None = Field(default=None)

    # 同步配置
    sync_interval_minutes: int | None = Field(default=None)
    uplink_min_changes: int | None = Field(default=None)
    uplink_max_staleness_minutes: int | None = Field(default=None)
    api_daily_call_limit: int | None = Field(default=None)

    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
