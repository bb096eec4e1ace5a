"""UsageCounter API 配额计数模型."""

from datetime import datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from readersync.utils.timeutil import utcnow


class UsageCounter(SQLModel, table=True):
    """每个配额窗口一行，新窗口开始后旧行保留."""

    __tablename__ = "api_usage"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("service", "window_id"),)

    id: int | None = Field(default=None, primary_key=True)
    service: str = Field(default="greader", description="远端服务")
    window_id: str = Field(index=True, description="配额窗口键 (UTC 日期)")
    calls_used: int = Field(default=0, ge=0)
    calls_limit: int = Field(default=100, ge=0)
    resets_at: datetime = Field(description="窗口重置时间", sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
