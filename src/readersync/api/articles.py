"""文章已读/收藏状态 API."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from readersync.core.ingest import ArticleNotFoundError, action_for, record_local_change
from readersync.core.queue import ChangeQueueError
from readersync.models.database import get_session

router = APIRouter(prefix="/api/articles", tags=["articles"])


async def _record(session: AsyncSession, article_id: str, action_kind: str) -> None:
    try:
        await record_local_change(session, article_id, action_kind)
    except ArticleNotFoundError as e:
        raise HTTPException(status_code=404, detail="文章不存在") from e
    except ChangeQueueError as e:
        raise HTTPException(status_code=503, detail="变更未保存，请稍后重试") from e


@router.patch("/read")
async def mark_read(
    article_id: str = Query(..., description="文章 ID"),
    read: bool = Query(True, description="是否已读"),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """标记文章已读/未读（同时写入上行队列）."""
    await _record(session, article_id, action_for("read", read))
    return {"id": article_id, "is_read": read}


@router.patch("/star")
async def mark_starred(
    article_id: str = Query(..., description="文章 ID"),
    starred: bool = Query(True, description="是否收藏"),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """收藏/取消收藏（同时写入上行队列）."""
    await _record(session, article_id, action_for("starred", starred))
    return {"id": article_id, "is_starred": starred}
