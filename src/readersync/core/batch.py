"""上行批处理 - 把变更队列推送到远端."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from readersync.config import Settings
from readersync.core.backoff import RetryPolicy
from readersync.core.greader import (
    DEFAULT_RETRY_AFTER_SECONDS,
    TagAdapter,
    TagOutcome,
    TagResult,
)
from readersync.core.queue import ChangeQueue
from readersync.core.usage import UsageGuard
from readersync.models.sync import SyncRunStatus
from readersync.models.sync_queue import PendingChange
from readersync.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str, dict[str, int]], Awaitable[None]]


@dataclass
class TriggerDecision:
    """本轮是否推送."""

    should_run: bool
    reason: str


def evaluate_trigger(
    due: Sequence[PendingChange],
    now: datetime,
    min_changes: int,
    max_staleness: timedelta,
) -> TriggerDecision:
    """触发策略：有重试中的记录、数量达到阈值或最老记录过旧."""
    if not due:
        return TriggerDecision(False, "empty")
    if any(change.attempt_count > 0 for change in due):
        return TriggerDecision(True, "retry")
    if len(due) >= min_changes:
        return TriggerDecision(True, "threshold")

    oldest = min(change.created_at for change in due)
    if now - oldest > max_staleness:
        return TriggerDecision(True, "staleness")
    return TriggerDecision(False, "waiting")


def group_by_action(
    changes: Sequence[PendingChange],
) -> list[tuple[str, list[PendingChange]]]:
    """按 action_kind 分组，组的顺序为该类型在队列中首次出现的顺序."""
    groups: dict[str, list[PendingChange]] = {}
    for change in changes:
        groups.setdefault(change.action_kind, []).append(change)
    return list(groups.items())


def chunked(changes: list[PendingChange], size: int) -> list[list[PendingChange]]:
    """切分为不超过 size 的批次."""
    return [changes[i : i + size] for i in range(0, len(changes), size)]


@dataclass
class BatchResult:
    """一轮上行推送的结果."""

    triggered: bool = False
    reason: str = ""
    pending: int = 0
    skipped_backoff: int = 0
    calls: int = 0
    synced: int = 0
    failed: int = 0
    stuck: int = 0
    deferred: int = 0
    rate_limited_until: datetime | None = None
    budget_exhausted: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        """映射为同步运行终态."""
        if not self.triggered:
            return SyncRunStatus.COMPLETED
        if not (self.failed or self.stuck or self.deferred or self.budget_exhausted):
            return SyncRunStatus.COMPLETED
        if self.synced == 0 and (self.failed or self.stuck):
            return SyncRunStatus.FAILED
        return SyncRunStatus.PARTIAL

    @property
    def error(self) -> str | None:
        """最后一个错误."""
        return self.errors[-1] if self.errors else None

    def stats(self) -> dict[str, int]:
        """用于进度记录的计数."""
        return {
            "pending": self.pending,
            "calls": self.calls,
            "synced": self.synced,
            "failed": self.failed,
            "stuck": self.stuck,
            "deferred": self.deferred,
        }


class BatchProcessor:
    """上行批处理器.

    每轮（tick）流程：

    1. 读取队列，过滤掉仍在退避、被限流延后或已 stuck 的记录
    2. 按触发策略决定是否推送（force 时跳过阈值判断）
    3. 按 action_kind 分组并切分为 ≤100 的批次，严格顺序执行
    4. 每个批次前检查配额，用尽即停止
    5. 成功出队；限流则延后本批及后续所有记录并停止；
       其他失败计一次失败后继续下一批
    """

    def __init__(
        self,
        session: AsyncSession,
        adapter: TagAdapter,
        batch_size: int = 100,
        min_changes: int = 5,
        max_staleness: timedelta = timedelta(minutes=15),
        retry_policy: RetryPolicy | None = None,
        daily_limit: int = 100,
        call_timeout: float = 30.0,
        rate_limit_default: float = DEFAULT_RETRY_AFTER_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.adapter = adapter
        self.batch_size = batch_size
        self.min_changes = min_changes
        self.max_staleness = max_staleness
        self.retry_policy = retry_policy or RetryPolicy()
        self.call_timeout = call_timeout
        self.rate_limit_default = rate_limit_default
        self.clock = clock

        self.queue = ChangeQueue(session, max_attempts=self.retry_policy.max_attempts)
        self.guard = UsageGuard(session, daily_limit=daily_limit)

    @classmethod
    def from_settings(
        cls,
        session: AsyncSession,
        adapter: TagAdapter,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> "BatchProcessor":
        """根据配置创建."""
        return cls(
            session,
            adapter,
            batch_size=settings.effective_batch_size,
            min_changes=settings.uplink_min_changes,
            max_staleness=timedelta(minutes=settings.uplink_max_staleness_minutes),
            retry_policy=RetryPolicy(
                base=timedelta(minutes=settings.uplink_retry_backoff_minutes),
                cap=timedelta(minutes=settings.uplink_retry_backoff_cap_minutes),
                max_attempts=settings.uplink_max_attempts,
            ),
            daily_limit=settings.api_daily_call_limit,
            call_timeout=settings.uplink_call_timeout_seconds,
            rate_limit_default=settings.uplink_rate_limit_default_seconds,
            clock=clock,
        )

    async def tick(
        self,
        force: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """执行一轮推送."""
        now = self.clock()
        pending = await self.queue.list_pending()
        due = [change for change in pending if self.retry_policy.is_due(change, now)]

        result = BatchResult(
            pending=len(pending),
            skipped_backoff=len(pending) - len(due),
        )

        if force:
            decision = TriggerDecision(bool(due), "manual" if due else "empty")
        else:
            decision = evaluate_trigger(due, now, self.min_changes, self.max_staleness)
        result.reason = decision.reason

        if not decision.should_run:
            logger.debug(
                f"本轮无需推送: {decision.reason} "
                f"(待处理 {len(due)}，退避中 {result.skipped_backoff})"
            )
            return result
        result.triggered = True

        chunks = [
            (action_kind, chunk)
            for action_kind, group in group_by_action(due)
            for chunk in chunked(group, self.batch_size)
        ]
        logger.info(
            f"开始上行推送: {len(due)} 条变更，{len(chunks)} 个批次 ({decision.reason})"
        )

        for index, (action_kind, chunk) in enumerate(chunks):
            if await self.guard.remaining_budget(now=self.clock()) < 1:
                result.budget_exhausted = True
                logger.warning(
                    f"今日 API 配额已用尽，剩余 {len(chunks) - index} 个批次留待下个窗口"
                )
                break

            ids = [change.id for change in chunk if change.id is not None]
            tag_result = await self._call(action_kind, [c.remote_article_id for c in chunk])
            result.calls += 1

            if tag_result.usage is not None:
                await self.guard.apply_remote_usage(tag_result.usage, now=self.clock())

            if tag_result.outcome == TagOutcome.SUCCESS:
                await self.guard.record_call(1, now=self.clock())
                result.synced += await self.queue.dequeue_success(ids, action_kind)

            elif tag_result.outcome == TagOutcome.RATE_LIMITED:
                retry_after = tag_result.retry_after
                if retry_after is None:
                    retry_after = self.rate_limit_default
                until = self.clock() + timedelta(seconds=retry_after)
                remaining_ids = ids + [
                    change.id
                    for _, later in chunks[index + 1 :]
                    for change in later
                    if change.id is not None
                ]
                result.deferred = await self.queue.defer(remaining_ids, until)
                result.rate_limited_until = until
                result.errors.append(tag_result.error or "rate limited")
                logger.warning(
                    f"远端限流，{result.deferred} 条变更延后到 {until.isoformat()}"
                )
                break

            elif tag_result.outcome == TagOutcome.FATAL:
                result.stuck += await self.queue.mark_stuck(
                    ids, action_kind, error=tag_result.error, now=self.clock()
                )
                result.errors.append(tag_result.error or "fatal")

            else:
                changes = await self.queue.dequeue_failure(
                    ids, action_kind, error=tag_result.error, now=self.clock()
                )
                result.failed += len(ids)
                result.stuck += sum(1 for change in changes if change.stuck)
                result.errors.append(tag_result.error or "retryable")
                logger.warning(f"批次推送失败 ({action_kind}, {len(ids)} 条): {tag_result.error}")

            if on_progress is not None:
                percent = int((index + 1) * 100 / len(chunks))
                await on_progress(
                    percent, f"已推送 {index + 1}/{len(chunks)} 批", result.stats()
                )

        logger.info(
            f"上行推送结束: 成功={result.synced}, 失败={result.failed}, "
            f"stuck={result.stuck}, 延后={result.deferred}, 调用={result.calls}"
        )
        return result

    async def _call(self, action_kind: str, remote_ids: list[str]) -> TagResult:
        """带超时的远端调用，超时视为可重试失败."""
        try:
            return await asyncio.wait_for(
                self.adapter.edit_tag(action_kind, remote_ids),
                timeout=self.call_timeout,
            )
        except TimeoutError:
            return TagResult(
                outcome=TagOutcome.RETRYABLE,
                error=f"调用超时 ({self.call_timeout:.0f} 秒)",
            )
