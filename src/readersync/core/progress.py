"""同步进度追踪 - 快速存储 + 持久存储双写.

写入进度的进程不一定是之后处理查询请求的进程（重启、无状态实例），
因此每次更新同时写两份：

- 快速存储：本地目录下的 JSON 文件，延迟低，进程重启后可能丢失
- 持久存储：数据库 sync_runs 表

读取时先查快速存储，缺失再查持久存储，两边都没有则视为不存在。
终态后约 60 秒删除快速存储条目，避免仍在轮询的客户端拿到“不存在”；
持久存储按 24 小时保留期定期清理。
"""

import asyncio
import json
import logging
import os
import re
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import delete
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import col, select

from readersync.models.sync import SyncRun, SyncRunStatus
from readersync.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class RunNotFoundError(KeyError):
    """同步运行不存在."""


def new_run_id(kind: str) -> str:
    """生成同步运行 ID."""
    return f"{kind}_{uuid.uuid4().hex[:16]}"


class SyncRunSnapshot(BaseModel):
    """同步运行状态快照."""

    run_id: str
    kind: str = "downlink"
    status: str = SyncRunStatus.STARTED
    progress_percent: int = Field(default=0, ge=0, le=100)
    stage_label: str | None = None
    stats: dict[str, int] = Field(default_factory=dict)
    error: str | None = None
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """是否已结束."""
        return self.status in SyncRunStatus.TERMINAL

    @classmethod
    def from_row(cls, row: SyncRun) -> "SyncRunSnapshot":
        """从数据库行构造."""
        return cls(
            run_id=row.run_id,
            kind=row.kind,
            status=row.status,
            progress_percent=row.progress_percent,
            stage_label=row.stage_label,
            stats=json.loads(row.stats) if row.stats else {},
            error=row.error_message,
            started_at=row.started_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
        )


class FastProgressStore:
    """快速存储：每个运行一个 JSON 文件."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, run_id: str) -> Path:
        """运行对应的文件路径."""
        if not _RUN_ID_PATTERN.match(run_id):
            msg = f"非法的 run_id: {run_id!r}"
            raise ValueError(msg)
        return self.directory / f"sync-status-{run_id}.json"

    def write(self, snapshot: SyncRunSnapshot) -> None:
        """原子写入（先写临时文件再替换）."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(snapshot.run_id)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(snapshot.model_dump_json(), encoding="utf-8")
        os.replace(tmp_path, path)

    def read(self, run_id: str) -> SyncRunSnapshot | None:
        """读取快照，不存在或损坏时返回 None."""
        try:
            raw = self.path_for(run_id).read_text(encoding="utf-8")
        except (FileNotFoundError, ValueError):
            return None

        try:
            return SyncRunSnapshot.model_validate_json(raw)
        except ValidationError:
            logger.warning(f"进度文件损坏，忽略: {run_id}")
            return None

    def delete(self, run_id: str) -> bool:
        """删除快照."""
        try:
            self.path_for(run_id).unlink()
        except (FileNotFoundError, ValueError):
            return False
        return True

    def purge_older_than(self, max_age: timedelta) -> int:
        """删除修改时间早于 max_age 的文件."""
        if not self.directory.exists():
            return 0

        cutoff = time.time() - max_age.total_seconds()
        count = 0
        for path in self.directory.glob("sync-status-*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    count += 1
            except FileNotFoundError:
                continue
        if count:
            logger.info(f"清理了 {count} 个过期进度文件")
        return count


class DurableProgressStore:
    """持久存储：sync_runs 表."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retention: timedelta = timedelta(hours=24),
    ) -> None:
        self.session_factory = session_factory
        self.retention = retention

    async def write(self, snapshot: SyncRunSnapshot) -> None:
        """写入或更新运行记录."""
        values = {
            "run_id": snapshot.run_id,
            "kind": snapshot.kind,
            "status": snapshot.status,
            "progress_percent": snapshot.progress_percent,
            "stage_label": snapshot.stage_label,
            "stats": json.dumps(snapshot.stats),
            "error_message": snapshot.error,
            "started_at": snapshot.started_at,
            "updated_at": snapshot.updated_at,
            "completed_at": snapshot.completed_at,
            "expires_at": snapshot.updated_at + self.retention,
        }
        stmt = insert(SyncRun).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["run_id"],
            set_={k: v for k, v in values.items() if k not in ("run_id", "started_at")},
        )

        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def read(
        self,
        run_id: str,
        now: datetime | None = None,
    ) -> SyncRunSnapshot | None:
        """读取运行记录，超过保留期视为不存在."""
        now = now or utcnow()
        async with self.session_factory() as session:
            row = await session.get(SyncRun, run_id)

        if row is None or row.expires_at <= now:
            return None
        return SyncRunSnapshot.from_row(row)

    async def recent(self, limit: int = 20) -> list[SyncRunSnapshot]:
        """最近的运行记录."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncRun).order_by(col(SyncRun.started_at).desc()).limit(limit)
            )
            rows = result.scalars().all()
        return [SyncRunSnapshot.from_row(row) for row in rows]

    async def purge_expired(self, now: datetime | None = None) -> int:
        """删除超过保留期的记录."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                delete(SyncRun).where(col(SyncRun.expires_at) <= now)
            )
            await session.commit()
        count = result.rowcount or 0
        if count:
            logger.info(f"清理了 {count} 条过期同步记录")
        return count

    async def mark_abandoned(self, now: datetime | None = None) -> int:
        """把上一个进程遗留的未结束运行标记为失败."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncRun).where(
                    col(SyncRun.status).in_(
                        [SyncRunStatus.STARTED, SyncRunStatus.IN_PROGRESS]
                    )
                )
            )
            rows = result.scalars().all()
            for row in rows:
                row.status = SyncRunStatus.FAILED
                row.error_message = "进程重启，运行中断"
                row.updated_at = now
                row.completed_at = now
                row.expires_at = now + self.retention
            await session.commit()
        return len(rows)


class ProgressTracker:
    """同步进度追踪器（双写 + 回退读取）."""

    def __init__(
        self,
        fast: FastProgressStore,
        durable: DurableProgressStore,
        cleanup_delay: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.fast = fast
        self.durable = durable
        self.cleanup_delay = cleanup_delay
        self.clock = clock
        self._runs: dict[str, SyncRunSnapshot] = {}
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}

    async def start(
        self,
        kind: str,
        run_id: str | None = None,
        stage_label: str | None = "准备中",
    ) -> SyncRunSnapshot:
        """创建运行记录."""
        now = self.clock()
        snapshot = SyncRunSnapshot(
            run_id=run_id or new_run_id(kind),
            kind=kind,
            status=SyncRunStatus.STARTED,
            stage_label=stage_label,
            started_at=now,
            updated_at=now,
        )
        self._runs[snapshot.run_id] = snapshot
        await self._write(snapshot)
        return snapshot

    async def update(
        self,
        run_id: str,
        progress_percent: int | None = None,
        stage_label: str | None = None,
        stats: dict[str, int] | None = None,
    ) -> SyncRunSnapshot:
        """更新进度."""
        snapshot = await self._require(run_id)
        snapshot.status = SyncRunStatus.IN_PROGRESS
        if progress_percent is not None:
            snapshot.progress_percent = max(0, min(100, progress_percent))
        if stage_label is not None:
            snapshot.stage_label = stage_label
        if stats is not None:
            snapshot.stats.update(stats)
        snapshot.updated_at = self.clock()
        await self._write(snapshot)
        return snapshot

    async def finish(
        self,
        run_id: str,
        status: str,
        stage_label: str | None = None,
        stats: dict[str, int] | None = None,
        error: str | None = None,
    ) -> SyncRunSnapshot:
        """进入终态，并安排延迟清理快速存储."""
        if status not in SyncRunStatus.TERMINAL:
            msg = f"非终态: {status}"
            raise ValueError(msg)

        snapshot = await self._require(run_id)
        now = self.clock()
        snapshot.status = status
        if status == SyncRunStatus.COMPLETED:
            snapshot.progress_percent = 100
        if stage_label is not None:
            snapshot.stage_label = stage_label
        if stats is not None:
            snapshot.stats.update(stats)
        snapshot.error = error
        snapshot.updated_at = now
        snapshot.completed_at = now

        await self._write(snapshot)
        self._runs.pop(run_id, None)
        self._schedule_fast_cleanup(run_id)
        return snapshot

    async def get(self, run_id: str) -> SyncRunSnapshot | None:
        """查询运行状态：快速存储 -> 持久存储 -> None."""
        snapshot = self.fast.read(run_id)
        if snapshot is not None:
            return snapshot

        try:
            return await self.durable.read(run_id, now=self.clock())
        except SQLAlchemyError:
            logger.exception(f"读取持久进度失败: {run_id}")
            return None

    async def recent(self, limit: int = 20) -> list[SyncRunSnapshot]:
        """最近的运行记录（持久存储）."""
        return await self.durable.recent(limit)

    async def purge_expired(self, retention: timedelta | None = None) -> tuple[int, int]:
        """清理两个存储中过期的记录."""
        fast_count = self.fast.purge_older_than(retention or self.durable.retention)
        durable_count = await self.durable.purge_expired(now=self.clock())
        return fast_count, durable_count

    def close(self) -> None:
        """取消尚未执行的延迟清理."""
        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()

    async def _require(self, run_id: str) -> SyncRunSnapshot:
        snapshot = self._runs.get(run_id)
        if snapshot is not None:
            return snapshot

        # 其他进程创建的运行
        snapshot = await self.get(run_id)
        if snapshot is None:
            raise RunNotFoundError(run_id)
        self._runs[run_id] = snapshot
        return snapshot

    async def _write(self, snapshot: SyncRunSnapshot) -> None:
        """双写：任一存储失败只记日志，不影响同步本身."""
        try:
            self.fast.write(snapshot)
        except OSError:
            logger.exception(f"写入快速进度失败: {snapshot.run_id}")

        try:
            await self.durable.write(snapshot)
        except SQLAlchemyError:
            logger.exception(f"写入持久进度失败: {snapshot.run_id}")

    def _schedule_fast_cleanup(self, run_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        previous = self._cleanup_handles.pop(run_id, None)
        if previous is not None:
            previous.cancel()
        self._cleanup_handles[run_id] = loop.call_later(
            self.cleanup_delay, self._cleanup_fast, run_id
        )

    def _cleanup_fast(self, run_id: str) -> None:
        self._cleanup_handles.pop(run_id, None)
        if self.fast.delete(run_id):
            logger.info(f"已清理结束运行的快速进度: {run_id}")
        else:
            logger.debug(f"快速进度已不存在: {run_id}")


# 全局追踪器（应用启动时创建）
_tracker: ProgressTracker | None = None


def set_tracker(tracker: ProgressTracker | None) -> None:
    """设置全局追踪器."""
    global _tracker
    _tracker = tracker


def get_tracker() -> ProgressTracker:
    """获取全局追踪器（用于依赖注入）."""
    if _tracker is None:
        msg = "进度追踪器未初始化"
        raise RuntimeError(msg)
    return _tracker
