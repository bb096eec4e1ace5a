"""API 配额守卫."""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta

from sqlalchemy import update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from readersync.models.usage import UsageCounter
from readersync.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

# 剩余调用次数告警阈值
WARNING_THRESHOLD = 20
CRITICAL_THRESHOLD = 5


@dataclass
class RemoteUsage:
    """远端响应头中报告的配额使用情况."""

    usage: int
    limit: int | None = None
    reset_after_seconds: int | None = None


def window_id_for(now: datetime) -> str:
    """配额窗口键：UTC 日期."""
    return now.date().isoformat()


def window_reset_at(now: datetime) -> datetime:
    """当前窗口的重置时间（下一个 UTC 零点）."""
    return datetime.combine(now.date() + timedelta(days=1), time.min)


class UsageGuard:
    """按日统计远端 API 调用次数.

    本类不加锁：调用方（上行批处理）本身是单飞的，计数通过单条
    UPDATE 语句原子递增。
    """

    def __init__(
        self,
        session: AsyncSession,
        daily_limit: int = 100,
        service: str = "greader",
    ) -> None:
        self.session = session
        self.daily_limit = daily_limit
        self.service = service

    async def current(self, now: datetime | None = None) -> UsageCounter:
        """获取（必要时创建）当前窗口的计数行."""
        now = now or utcnow()
        window_id = window_id_for(now)

        stmt = insert(UsageCounter).values(
            service=self.service,
            window_id=window_id,
            calls_used=0,
            calls_limit=self.daily_limit,
            resets_at=window_reset_at(now),
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["service", "window_id"])
        await self.session.execute(stmt)
        await self.session.commit()

        result = await self.session.execute(
            select(UsageCounter)
            .where(UsageCounter.service == self.service)
            .where(UsageCounter.window_id == window_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def remaining_budget(self, now: datetime | None = None) -> int:
        """当前窗口剩余可用调用次数."""
        counter = await self.current(now)
        return max(0, counter.calls_limit - counter.calls_used)

    async def record_call(self, n: int = 1, now: datetime | None = None) -> UsageCounter:
        """记录 n 次成功调用."""
        now = now or utcnow()
        counter = await self.current(now)

        await self.session.execute(
            update(UsageCounter)
            .where(col(UsageCounter.id) == counter.id)
            .values(
                calls_used=UsageCounter.calls_used + n,
                updated_at=now,
            )
        )
        await self.session.commit()
        await self.session.refresh(counter)

        self._warn_if_low(counter)
        return counter

    async def apply_remote_usage(
        self,
        remote: RemoteUsage,
        now: datetime | None = None,
    ) -> UsageCounter:
        """采用远端报告的用量（只会调高，不会调低本地计数）."""
        now = now or utcnow()
        counter = await self.current(now)

        values: dict[str, object] = {"updated_at": now}
        if remote.usage > counter.calls_used:
            values["calls_used"] = remote.usage
        if remote.limit is not None and remote.limit < counter.calls_limit:
            values["calls_limit"] = remote.limit

        if len(values) > 1:
            await self.session.execute(
                update(UsageCounter)
                .where(col(UsageCounter.id) == counter.id)
                .values(**values)
            )
            await self.session.commit()
            await self.session.refresh(counter)
            logger.info(
                f"根据远端响应头更新配额: {counter.calls_used}/{counter.calls_limit}"
            )
        return counter

    async def history(self, days: int = 7) -> list[UsageCounter]:
        """最近若干个窗口（含已被取代的旧窗口）."""
        result = await self.session.execute(
            select(UsageCounter)
            .where(UsageCounter.service == self.service)
            .order_by(col(UsageCounter.window_id).desc())
            .limit(days)
        )
        return list(result.scalars().all())

    def _warn_if_low(self, counter: UsageCounter) -> None:
        remaining = counter.calls_limit - counter.calls_used
        if remaining <= CRITICAL_THRESHOLD:
            logger.error(f"API 配额告急: 今日仅剩 {remaining} 次调用")
        elif remaining <= WARNING_THRESHOLD:
            logger.warning(f"API 配额预警: 今日剩余 {remaining} 次调用")
