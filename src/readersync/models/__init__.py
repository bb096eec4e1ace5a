"""数据模型."""

from readersync.models.app_settings import AppSettings
from readersync.models.article import Article
from readersync.models.conflict import ConflictRecord, ConflictResolution
from readersync.models.database import get_session, init_db
from readersync.models.feed import Feed
from readersync.models.settings import SettingItem
from readersync.models.sync import SyncRun, SyncRunStatus
from readersync.models.sync_queue import ActionKind, PendingChange
from readersync.models.usage import UsageCounter

__all__ = [
    "ActionKind",
    "AppSettings",
    "Article",
    "ConflictRecord",
    "ConflictResolution",
    "Feed",
    "PendingChange",
    "SettingItem",
    "SyncRun",
    "SyncRunStatus",
    "UsageCounter",
    "get_session",
    "init_db",
]
