"""冲突判定 - 下行同步覆盖本地状态前的过滤器.

规则（远端优先，除非本地更新晚于上次同步边界）：

- 本地不存在该文章 -> 覆盖（新文章，无冲突）
- 没有同步边界（首次同步） -> 覆盖
- last_local_update < 同步边界 -> 覆盖
- 其他情况 -> 跳过，保留本地状态，并记录冲突

判定是纯函数，不读取任何全局状态；冲突记录只用于诊断，
从不参与判定。
"""

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from readersync.models.article import Article
from readersync.models.conflict import ConflictRecord, ConflictResolution
from readersync.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class Resolution:
    """覆盖判定结果."""

    APPLY = "apply"
    SKIP = "skip"


@dataclass(frozen=True)
class LocalState:
    """本地文章的已读/收藏状态及最近本地修改时间."""

    article_id: str
    is_read: bool
    is_starred: bool
    last_local_update: datetime | None = None

    @classmethod
    def from_article(cls, article: Article) -> "LocalState":
        """从文章行构造."""
        return cls(
            article_id=article.id,
            is_read=article.is_read,
            is_starred=article.is_starred,
            last_local_update=article.last_local_update,
        )


@dataclass
class OverwritePlan:
    """一批远端快照的过滤结果."""

    apply: list[Article] = field(default_factory=list)
    skipped: list[Article] = field(default_factory=list)
    conflicts: list[ConflictRecord] = field(default_factory=list)


def filter_for_overwrite(
    candidate: Article,
    local: LocalState | None,
    sync_boundary: datetime | None,
) -> str:
    """判定远端快照能否覆盖本地行."""
    if local is None:
        return Resolution.APPLY
    if sync_boundary is None:
        return Resolution.APPLY
    if local.last_local_update is None:
        return Resolution.APPLY
    if local.last_local_update < sync_boundary:
        return Resolution.APPLY
    return Resolution.SKIP


def conflict_type(local: LocalState, remote: Article) -> str:
    """冲突类型."""
    read_differs = local.is_read != remote.is_read
    starred_differs = local.is_starred != remote.is_starred
    if read_differs and starred_differs:
        return "both"
    if read_differs:
        return "read_status"
    if starred_differs:
        return "starred_status"
    return "none"


def _state_json(is_read: bool, is_starred: bool) -> str:
    return json.dumps({"read": is_read, "starred": is_starred})


def build_conflict_record(
    local: LocalState,
    remote: Article,
    resolution: str,
    sync_boundary: datetime | None,
    run_id: str | None = None,
    now: datetime | None = None,
) -> ConflictRecord:
    """构造冲突记录."""
    return ConflictRecord(
        article_id=local.article_id,
        run_id=run_id,
        conflict_type=conflict_type(local, remote),
        local_value=_state_json(local.is_read, local.is_starred),
        remote_value=_state_json(remote.is_read, remote.is_starred),
        resolution=resolution,
        last_local_update=local.last_local_update,
        sync_boundary=sync_boundary,
        observed_at=now or utcnow(),
    )


def plan_overwrites(
    candidates: Sequence[Article],
    local_states: Mapping[str, LocalState],
    sync_boundary: datetime | None,
    run_id: str | None = None,
    now: datetime | None = None,
) -> OverwritePlan:
    """对一批远端快照逐篇判定."""
    plan = OverwritePlan()

    for candidate in candidates:
        local = local_states.get(candidate.id)
        decision = filter_for_overwrite(candidate, local, sync_boundary)

        if decision == Resolution.SKIP and local is not None:
            plan.skipped.append(candidate)
            plan.conflicts.append(
                build_conflict_record(
                    local,
                    candidate,
                    ConflictResolution.REMOTE_SKIPPED,
                    sync_boundary,
                    run_id,
                    now,
                )
            )
            logger.info(f"冲突: {candidate.id} 本地修改晚于上次同步，保留本地状态")
            continue

        plan.apply.append(candidate)

        # 本地有旧修改且状态不同：远端覆盖，仍记录以便诊断
        if (
            local is not None
            and local.last_local_update is not None
            and conflict_type(local, candidate) != "none"
        ):
            plan.conflicts.append(
                build_conflict_record(
                    local,
                    candidate,
                    ConflictResolution.REMOTE_APPLIED,
                    sync_boundary,
                    run_id,
                    now,
                )
            )
            logger.info(f"冲突: {candidate.id} 应用远端状态")

    return plan


class ConflictRecorder:
    """冲突记录存储（只追加）."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(self, records: Iterable[ConflictRecord]) -> int:
        """写入冲突记录."""
        items = list(records)
        if not items:
            return 0

        self.session.add_all(items)
        await self.session.commit()

        skipped = sum(1 for r in items if r.resolution == ConflictResolution.REMOTE_SKIPPED)
        logger.warning(
            f"记录了 {len(items)} 条同步冲突（保留本地 {skipped}，"
            f"应用远端 {len(items) - skipped}）"
        )
        return len(items)

    async def list_recent(self, limit: int = 50) -> list[ConflictRecord]:
        """最近的冲突记录."""
        result = await self.session.execute(
            select(ConflictRecord)
            .order_by(col(ConflictRecord.observed_at).desc(), col(ConflictRecord.id).desc())
            .limit(limit)
        )
        return list(result.scalars().all())
