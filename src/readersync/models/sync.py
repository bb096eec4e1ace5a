"""SyncRun 同步运行记录模型."""

from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from readersync.utils.timeutil import utcnow


class SyncRunStatus:
    """同步运行状态."""

    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    TERMINAL = (COMPLETED, PARTIAL, FAILED)


class SyncRun(SQLModel, table=True):
    """同步运行状态（持久化副本）."""

    __tablename__ = "sync_runs"  # type: ignore[assignment]

    run_id: str = Field(primary_key=True, description="同步运行 ID")
    kind: str = Field(default="downlink", description="同步方向: downlink|uplink")
    status: str = Field(description="状态: started|in_progress|completed|partial|failed")
    progress_percent: int = Field(default=0, ge=0, le=100)
    stage_label: str | None = Field(default=None, description="当前阶段描述")
    stats: str | None = Field(default=None, description="计数器 (JSON 对象)")
    error_message: str | None = Field(default=None, description="错误信息")
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    completed_at: datetime | None = Field(default=None, sa_type=DateTime)
    expires_at: datetime = Field(
        index=True, description="过期清理时间", sa_type=DateTime
    )
