"""时间工具."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """当前 UTC 时间（naive，与 SQLite 存储保持一致）."""
    return datetime.now(UTC).replace(tzinfo=None)


def age_seconds(since: datetime | None, now: datetime) -> float:
    """计算距今秒数，since 为空时返回 0."""
    if since is None:
        return 0.0
    return max(0.0, (now - since).total_seconds())
