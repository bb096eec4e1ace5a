"""应用配置管理."""

import tempfile
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Google Reader edit-tag 接口单次最多 100 个条目
REMOTE_BATCH_LIMIT = 100


class Settings(BaseSettings):
    """应用配置（环境变量）."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Google Reader API 配置（FreshRSS / Inoreader 等兼容服务）
    greader_base_url: str = ""
    greader_api_path: str = "/api/greader.php"
    greader_username: str = ""
    greader_api_password: str = ""

    # 应用配置
    database_url: str = "sqlite+aiosqlite:///./readersync.db"

    # 下行同步（拉取文章）
    sync_interval_minutes: int = 30
    sync_max_items: int = 100

    # 上行同步（推送已读/收藏变更）
    uplink_interval_minutes: int = 5
    uplink_min_changes: int = 5
    uplink_max_staleness_minutes: int = 15
    uplink_batch_size: int = REMOTE_BATCH_LIMIT
    uplink_max_attempts: int = 3
    uplink_retry_backoff_minutes: int = 5
    uplink_retry_backoff_cap_minutes: int = 60
    uplink_call_timeout_seconds: float = 30.0
    uplink_manual_debounce_ms: int = 500
    uplink_rate_limit_default_seconds: int = 60

    # 队列维护：None 表示永不过期
    queue_max_age_days: int | None = None

    # API 配额
    api_daily_call_limit: int = 100

    # 同步进度
    progress_dir: str = ""
    progress_retention_hours: int = 24
    progress_cleanup_delay_seconds: float = 60.0

    @property
    def effective_batch_size(self) -> int:
        """实际批次大小（不超过远端上限）."""
        return max(1, min(self.uplink_batch_size, REMOTE_BATCH_LIMIT))

    @property
    def progress_path(self) -> Path:
        """快速进度存储目录."""
        if self.progress_dir:
            return Path(self.progress_dir)
        return Path(tempfile.gettempdir()) / "readersync-progress"


# 动态配置缓存
_dynamic_settings: dict[str, str | int | None] | None = None


def set_dynamic_settings(settings_dict: dict[str, str | int | None]) -> None:
    """设置动态配置缓存."""
    global _dynamic_settings
    _dynamic_settings = settings_dict


def clear_dynamic_settings() -> None:
    """清除动态配置缓存."""
    global _dynamic_settings
    _dynamic_settings = None


@lru_cache
def get_settings() -> Settings:
    """获取应用配置（带缓存）."""
    return Settings()


def get_effective_settings() -> Settings:
    """合并动态配置后的 Settings 副本."""
    settings = get_settings()
    if not _dynamic_settings:
        return settings

    overrides = {
        key: value
        for key, value in _dynamic_settings.items()
        if value is not None and key in Settings.model_fields
    }
    return settings.model_copy(update=overrides)
