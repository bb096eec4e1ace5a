"""同步 API."""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from readersync.config import get_effective_settings
from readersync.core.conflict import ConflictRecorder
from readersync.core.progress import ProgressTracker, SyncRunSnapshot, get_tracker
from readersync.core.queue import ChangeQueue
from readersync.core.uplink import UplinkCoordinator, get_coordinator
from readersync.core.usage import UsageGuard
from readersync.models.database import get_session
from readersync.scheduler.tasks import downlink_task, get_current_downlink_run_id

router = APIRouter(prefix="/api/sync", tags=["sync"])


class TriggerResponse(BaseModel):
    """触发同步响应."""

    run_id: str
    coalesced: bool = False


class StuckRequest(BaseModel):
    """stuck 记录操作请求，ids 为空表示全部."""

    ids: list[int] | None = None


def _ensure_configured() -> None:
    if not get_effective_settings().greader_base_url:
        raise HTTPException(status_code=400, detail="远端未配置")


@router.post("")
async def trigger_sync(
    background_tasks: BackgroundTasks,
    tracker: ProgressTracker = Depends(get_tracker),
) -> TriggerResponse:
    """触发下行同步（后台执行，立即返回 run_id）."""
    _ensure_configured()

    current = get_current_downlink_run_id()
    if current:
        return TriggerResponse(run_id=current, coalesced=True)

    snapshot = await tracker.start("downlink")
    background_tasks.add_task(downlink_task, snapshot.run_id)
    return TriggerResponse(run_id=snapshot.run_id)


@router.get("/status/{run_id}")
async def get_sync_status(
    run_id: str,
    tracker: ProgressTracker = Depends(get_tracker),
) -> SyncRunSnapshot:
    """查询同步进度."""
    snapshot = await tracker.get(run_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="同步运行不存在或已过期")
    return snapshot


@router.get("/runs")
async def list_runs(
    limit: int = Query(20, ge=1, le=100),
    tracker: ProgressTracker = Depends(get_tracker),
) -> dict:
    """最近的同步运行."""
    runs = await tracker.recent(limit)
    return {"items": [run.model_dump(mode="json") for run in runs]}


@router.post("/uplink")
async def trigger_uplink(
    coordinator: UplinkCoordinator = Depends(get_coordinator),
) -> TriggerResponse:
    """手动触发上行推送（去抖，运行中时合并）."""
    _ensure_configured()
    run_id, coalesced = await coordinator.trigger_manual()
    return TriggerResponse(run_id=run_id, coalesced=coalesced)


@router.get("/queue")
async def get_queue_stats(
    session: AsyncSession = Depends(get_session),
) -> dict:
    """变更队列统计."""
    stats = await ChangeQueue(session).stats()
    return {
        "pending": stats.pending,
        "retrying": stats.retrying,
        "deferred": stats.deferred,
        "stuck": stats.stuck,
        "total": stats.total,
        "oldest_age_seconds": stats.oldest_age_seconds,
        "by_action": stats.by_action,
    }


@router.get("/queue/stuck")
async def list_stuck(
    session: AsyncSession = Depends(get_session),
) -> dict:
    """超过重试上限、等待人工处理的变更."""
    changes = await ChangeQueue(session).list_stuck()
    return {
        "items": [
            {
                "id": c.id,
                "remote_article_id": c.remote_article_id,
                "action_kind": c.action_kind,
                "attempt_count": c.attempt_count,
                "last_error": c.last_error,
                "created_at": c.created_at.isoformat(),
                "last_attempt_at": c.last_attempt_at.isoformat()
                if c.last_attempt_at
                else None,
            }
            for c in changes
        ]
    }


@router.post("/queue/stuck/release")
async def release_stuck(
    request: StuckRequest,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """重置 stuck 记录，下一轮重新推送."""
    count = await ChangeQueue(session).release_stuck(request.ids)
    return {"released": count}


@router.delete("/queue/stuck")
async def discard_stuck(
    ids: list[int] | None = Query(None, description="要删除的记录 ID，为空表示全部"),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """删除 stuck 记录（放弃这些变更）."""
    count = await ChangeQueue(session).discard_stuck(ids)
    return {"deleted": count}


@router.get("/usage")
async def get_usage(
    session: AsyncSession = Depends(get_session),
) -> dict:
    """API 配额使用情况."""
    guard = UsageGuard(session, daily_limit=get_effective_settings().api_daily_call_limit)
    counter = await guard.current()
    history = await guard.history()
    return {
        "window_id": counter.window_id,
        "calls_used": counter.calls_used,
        "calls_limit": counter.calls_limit,
        "remaining": max(0, counter.calls_limit - counter.calls_used),
        "resets_at": counter.resets_at.isoformat(),
        "history": [
            {
                "window_id": h.window_id,
                "calls_used": h.calls_used,
                "calls_limit": h.calls_limit,
            }
            for h in history
        ],
    }


@router.get("/conflicts")
async def list_conflicts(
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """最近的同步冲突."""
    records = await ConflictRecorder(session).list_recent(limit)
    return {
        "items": [
            {
                "id": r.id,
                "article_id": r.article_id,
                "run_id": r.run_id,
                "conflict_type": r.conflict_type,
                "local_value": r.local_value,
                "remote_value": r.remote_value,
                "resolution": r.resolution,
                "last_local_update": r.last_local_update.isoformat()
                if r.last_local_update
                else None,
                "sync_boundary": r.sync_boundary.isoformat()
                if r.sync_boundary
                else None,
                "observed_at": r.observed_at.isoformat(),
            }
            for r in records
        ]
    }
