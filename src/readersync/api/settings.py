"""设置 API."""

import httpx
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from readersync.config import get_effective_settings, set_dynamic_settings
from readersync.core.greader import GReaderError, create_greader_client
from readersync.models.app_settings import AppSettings
from readersync.models.database import get_session
from readersync.utils.timeutil import utcnow

router = APIRouter(prefix="/api/settings", tags=["settings"])

# 可在运行时修改的配置项
DYNAMIC_KEYS = (
    "greader_base_url",
    "greader_api_path",
    "greader_username",
    "greader_api_password",
    "sync_interval_minutes",
    "uplink_min_changes",
    "uplink_max_staleness_minutes",
    "api_daily_call_limit",
)


class SettingsResponse(BaseModel):
    """设置响应."""

    # Google Reader
    greader_base_url: str
    greader_api_path: str
    greader_username: str
    greader_configured: bool

    # 同步
    sync_interval_minutes: int
    uplink_interval_minutes: int
    uplink_min_changes: int
    uplink_max_staleness_minutes: int
    uplink_batch_size: int
    api_daily_call_limit: int


async def load_dynamic_settings(session: AsyncSession) -> None:
    """从数据库加载动态配置到缓存."""
    result = await session.execute(select(AppSettings).where(AppSettings.id == 1))
    db_settings = result.scalar_one_or_none()

    if db_settings:
        settings_dict: dict[str, str | int | None] = {
            key: getattr(db_settings, key) for key in DYNAMIC_KEYS
        }
        set_dynamic_settings(settings_dict)


@router.get("")
async def get_current_settings(
    session: AsyncSession = Depends(get_session),
) -> SettingsResponse:
    """获取当前设置（动态配置优先）."""
    await load_dynamic_settings(session)
    settings = get_effective_settings()

    return SettingsResponse(
        greader_base_url=settings.greader_base_url,
        greader_api_path=settings.greader_api_path,
        greader_username=settings.greader_username,
        greader_configured=bool(settings.greader_base_url and settings.greader_username),
        sync_interval_minutes=settings.sync_interval_minutes,
        uplink_interval_minutes=settings.uplink_interval_minutes,
        uplink_min_changes=settings.uplink_min_changes,
        uplink_max_staleness_minutes=settings.uplink_max_staleness_minutes,
        uplink_batch_size=settings.effective_batch_size,
        api_daily_call_limit=settings.api_daily_call_limit,
    )


class TestConnectionResult(BaseModel):
    """连接测试结果."""

    success: bool
    message: str


@router.post("/test-connection")
async def test_connection() -> TestConnectionResult:
    """测试 Google Reader 连接."""
    settings = get_effective_settings()

    if not settings.greader_base_url:
        return TestConnectionResult(success=False, message="远端 URL 未配置")

    client = create_greader_client(settings)
    try:
        await client.authenticate()
        subscriptions = await client.get_subscriptions()
        return TestConnectionResult(
            success=True,
            message=f"连接成功，发现 {len(subscriptions)} 个订阅",
        )
    except (httpx.HTTPError, GReaderError) as e:
        return TestConnectionResult(success=False, message=str(e))
    finally:
        await client.close()


class SettingsUpdateRequest(BaseModel):
    """设置更新请求."""

    greader_base_url: str | None = None
    greader_api_path: str | None = None
    greader_username: str | None = None
    greader_api_password: str | None = None
    sync_interval_minutes: int | None = None
    uplink_min_changes: int | None = None
    uplink_max_staleness_minutes: int | None = None
    api_daily_call_limit: int | None = None


class SettingsUpdateResponse(BaseModel):
    """设置更新响应."""

    success: bool
    message: str


@router.put("")
async def update_settings(
    request: SettingsUpdateRequest,
    session: AsyncSession = Depends(get_session),
) -> SettingsUpdateResponse:
    """更新设置（保存到数据库，立即生效）."""
    result = await session.execute(select(AppSettings).where(AppSettings.id == 1))
    db_settings = result.scalar_one_or_none()

    if not db_settings:
        db_settings = AppSettings(id=1)
        session.add(db_settings)

    # 更新非空字段
    update_fields = request.model_dump(exclude_unset=True)
    for key, value in update_fields.items():
        if value is not None:
            setattr(db_settings, key, value)

    db_settings.updated_at = utcnow()
    await session.commit()

    # 重新加载到缓存
    await load_dynamic_settings(session)

    return SettingsUpdateResponse(success=True, message="设置已更新")
