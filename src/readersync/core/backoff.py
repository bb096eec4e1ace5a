"""重试退避策略."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from readersync.models.sync_queue import PendingChange


@dataclass(frozen=True)
class RetryPolicy:
    """指数退避：base × 2^attempt_count，封顶 cap.

    退避通过“不选中”实现：批处理加载队列时过滤掉尚未到期的记录，
    不需要额外的定时器。
    """

    base: timedelta = timedelta(minutes=5)
    cap: timedelta = timedelta(minutes=60)
    max_attempts: int = 3

    def backoff_for(self, attempt_count: int) -> timedelta:
        """第 attempt_count 次失败后的等待时长."""
        if attempt_count <= 0:
            return timedelta(0)
        delay = self.base * (2**attempt_count)
        return min(delay, self.cap)

    def next_attempt_at(self, change: PendingChange) -> datetime | None:
        """下一次允许尝试的时间，None 表示立即可用."""
        candidates: list[datetime] = []
        if change.attempt_count > 0 and change.last_attempt_at is not None:
            candidates.append(
                change.last_attempt_at + self.backoff_for(change.attempt_count)
            )
        if change.deferred_until is not None:
            candidates.append(change.deferred_until)
        return max(candidates) if candidates else None

    def is_exhausted(self, change: PendingChange) -> bool:
        """是否已达到最大尝试次数."""
        return change.stuck or change.attempt_count >= self.max_attempts

    def is_due(self, change: PendingChange, now: datetime) -> bool:
        """当前是否可以再次尝试."""
        if self.is_exhausted(change):
            return False
        next_at = self.next_attempt_at(change)
        return next_at is None or next_at <= now
