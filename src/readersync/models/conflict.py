"""ConflictRecord 冲突记录模型（仅用于诊断）."""

from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from readersync.utils.timeutil import utcnow


class ConflictResolution:
    """冲突处理结果."""

    REMOTE_APPLIED = "remote-applied"
    REMOTE_SKIPPED = "remote-skipped"


class ConflictRecord(SQLModel, table=True):
    """下行同步冲突记录（只追加）."""

    __tablename__ = "sync_conflicts"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    article_id: str = Field(index=True, description="文章 ID")
    run_id: str | None = Field(default=None, description="所属同步运行")
    conflict_type: str = Field(description="read_status|starred_status|both|none")
    local_value: str = Field(description="本地状态 (JSON)")
    remote_value: str = Field(description="远端状态 (JSON)")
    resolution: str = Field(description="remote-applied|remote-skipped")
    last_local_update: datetime | None = Field(default=None, sa_type=DateTime)
    sync_boundary: datetime | None = Field(default=None, sa_type=DateTime)
    observed_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
