"""Google Reader 兼容 API 客户端（FreshRSS / Inoreader）."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

import httpx

from readersync.config import Settings
from readersync.core.usage import RemoteUsage
from readersync.models.article import Article
from readersync.models.feed import Feed
from readersync.models.sync_queue import ActionKind

logger = logging.getLogger(__name__)

READ_TAG = "user/-/state/com.google/read"
STARRED_TAG = "user/-/state/com.google/starred"

# action_kind -> (参数名, 标签)：a 为添加，r 为移除
ACTION_TAGS: dict[str, tuple[str, str]] = {
    ActionKind.READ: ("a", READ_TAG),
    ActionKind.UNREAD: ("r", READ_TAG),
    ActionKind.STAR: ("a", STARRED_TAG),
    ActionKind.UNSTAR: ("r", STARRED_TAG),
}

# 请求本身有问题，重试也不会成功
NON_RETRYABLE_STATUS = frozenset({400, 413, 422})

DEFAULT_RETRY_AFTER_SECONDS = 60.0


@dataclass
class GReaderConfig:
    """Google Reader API 连接配置."""

    base_url: str
    username: str
    api_password: str
    api_path: str = "/api/greader.php"
    timeout: float = 30.0

    @property
    def api_root(self) -> str:
        """API 根地址."""
        return f"{self.base_url.rstrip('/')}{self.api_path}"


class GReaderError(Exception):
    """Google Reader API 错误."""


class TagOutcome:
    """edit-tag 调用结果类型."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    RATE_LIMITED = "rate_limited"
    FATAL = "fatal"


@dataclass
class TagResult:
    """edit-tag 调用结果."""

    outcome: str
    status_code: int | None = None
    retry_after: float | None = None
    error: str | None = None
    usage: RemoteUsage | None = None

    @property
    def ok(self) -> bool:
        """是否成功."""
        return self.outcome == TagOutcome.SUCCESS


class TagAdapter(Protocol):
    """批量状态变更接口（批处理只依赖这一个方法）."""

    async def edit_tag(self, action_kind: str, item_ids: Sequence[str]) -> TagResult:
        """对一批条目执行同一种状态变更."""
        ...


def parse_retry_after(value: str | None, default: float = DEFAULT_RETRY_AFTER_SECONDS) -> float:
    """解析 Retry-After（秒数或 HTTP 日期）."""
    if not value:
        return default

    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    return max(0.0, (retry_at - datetime.now(UTC)).total_seconds())


def _parse_int(value: str | None) -> int | None:
    """解析带千分位/小数的整数头."""
    if not value:
        return None
    try:
        return int(float(value.replace(",", "")))
    except ValueError:
        return None


def parse_usage_headers(headers: httpx.Headers) -> RemoteUsage | None:
    """解析 X-Reader-Zone2-* 写操作配额头（Inoreader）."""
    usage = _parse_int(headers.get("X-Reader-Zone2-Usage"))
    if usage is None:
        return None
    return RemoteUsage(
        usage=usage,
        limit=_parse_int(headers.get("X-Reader-Zone2-Limit")),
        reset_after_seconds=_parse_int(headers.get("X-Reader-Limits-Reset-After")),
    )


class GReaderClient:
    """Google Reader 兼容 API 客户端."""

    def __init__(
        self,
        config: GReaderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._auth_token: str | None = None
        self._action_token: str | None = None
        self._client = httpx.AsyncClient(timeout=config.timeout, transport=transport)

    async def close(self) -> None:
        """关闭客户端."""
        await self._client.aclose()

    @property
    def is_authenticated(self) -> bool:
        """是否已持有认证 token."""
        return self._auth_token is not None

    async def authenticate(self) -> str:
        """获取认证 token."""
        url = f"{self.config.api_root}/accounts/ClientLogin"
        data = {
            "Email": self.config.username,
            "Passwd": self.config.api_password,
        }

        response = await self._client.post(url, data=data)
        response.raise_for_status()

        # 解析响应，格式为 "Auth=xxx"
        for line in response.text.strip().split("\n"):
            if line.startswith("Auth="):
                self._auth_token = line[5:]
                return self._auth_token

        msg = "认证失败：无法获取 Auth token"
        raise GReaderError(msg)

    def _get_headers(self) -> dict[str, str]:
        """获取带认证的请求头."""
        if not self._auth_token:
            msg = "未认证，请先调用 authenticate()"
            raise GReaderError(msg)
        return {"Authorization": f"GoogleLogin auth={self._auth_token}"}

    async def get_action_token(self) -> str:
        """获取写操作所需的 T token."""
        if self._action_token:
            return self._action_token

        url = f"{self.config.api_root}/reader/api/0/token"
        response = await self._client.get(url, headers=self._get_headers())
        response.raise_for_status()
        self._action_token = response.text.strip()
        return self._action_token

    async def get_subscriptions(self) -> list[Feed]:
        """获取订阅列表."""
        url = f"{self.config.api_root}/reader/api/0/subscription/list"
        params = {"output": "json"}

        response = await self._client.get(
            url,
            params=params,
            headers=self._get_headers(),
        )
        response.raise_for_status()

        data = response.json()
        feeds: list[Feed] = []

        for sub in data.get("subscriptions", []):
            # 提取分类
            categories = sub.get("categories", [])
            category = categories[0].get("label") if categories else None

            feed = Feed(
                id=sub["id"],
                title=sub["title"],
                url=sub["url"],
                site_url=sub.get("htmlUrl"),
                icon_url=sub.get("iconUrl"),
                category=category,
            )
            feeds.append(feed)

        return feeds

    async def get_items(self, count: int = 100) -> list[Article]:
        """获取阅读列表中的文章（包括已读，带远端已读/收藏状态）."""
        url = f"{self.config.api_root}/reader/api/0/stream/contents/user/-/state/com.google/reading-list"
        params = {
            "output": "json",
            "n": count,
        }

        response = await self._client.get(
            url,
            params=params,
            headers=self._get_headers(),
        )
        response.raise_for_status()

        data = response.json()
        return self._parse_items(data.get("items", []))

    def _parse_items(self, items: list[dict[str, Any]]) -> list[Article]:
        """解析文章列表."""
        articles: list[Article] = []

        for item in items:
            # 提取内容
            content_obj = item.get("content") or item.get("summary") or {}
            content = content_obj.get("content", "")

            # 提取链接
            alternates = item.get("alternate", [])
            url = alternates[0].get("href") if alternates else None

            # 提取 feed_id
            origin = item.get("origin", {})
            feed_id = origin.get("streamId", "")

            # 解析时间戳
            published_ts = item.get("published", 0)
            published_at = (
                datetime.fromtimestamp(published_ts, UTC).replace(tzinfo=None)
                if published_ts
                else None
            )

            categories = item.get("categories", [])

            article = Article(
                id=item["id"],
                feed_id=feed_id,
                title=item.get("title", "无标题"),
                author=item.get("author"),
                url=url,
                content=content,
                published_at=published_at,
                is_read=READ_TAG in categories,
                is_starred=STARRED_TAG in categories,
            )
            articles.append(article)

        return articles

    async def edit_tag(self, action_kind: str, item_ids: Sequence[str]) -> TagResult:
        """批量修改条目标签（一次调用最多 100 个条目）."""
        if action_kind not in ACTION_TAGS:
            return TagResult(
                outcome=TagOutcome.FATAL,
                error=f"未知的变更类型: {action_kind}",
            )
        if not item_ids:
            return TagResult(outcome=TagOutcome.SUCCESS)

        try:
            if not self.is_authenticated:
                await self.authenticate()
            token = await self.get_action_token()
        except (httpx.HTTPError, GReaderError) as e:
            # 拿不到 token 属于暂时性问题
            return TagResult(outcome=TagOutcome.RETRYABLE, error=f"认证失败: {e}")

        param, tag = ACTION_TAGS[action_kind]
        data = {
            "i": list(item_ids),
            param: tag,
            "T": token,
        }

        url = f"{self.config.api_root}/reader/api/0/edit-tag"
        try:
            response = await self._client.post(
                url,
                data=data,
                headers=self._get_headers(),
            )
        except httpx.TimeoutException as e:
            return TagResult(outcome=TagOutcome.RETRYABLE, error=f"请求超时: {e}")
        except httpx.HTTPError as e:
            return TagResult(outcome=TagOutcome.RETRYABLE, error=f"网络错误: {e}")

        return self._to_result(response)

    def _to_result(self, response: httpx.Response) -> TagResult:
        """把 HTTP 响应映射为三类结果."""
        usage = parse_usage_headers(response.headers)
        status = response.status_code

        if 200 <= status < 300:
            return TagResult(outcome=TagOutcome.SUCCESS, status_code=status, usage=usage)

        error = f"{status} {response.reason_phrase}: {response.text[:200]}"

        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(f"远端限流，{retry_after:.0f} 秒后重试")
            return TagResult(
                outcome=TagOutcome.RATE_LIMITED,
                status_code=status,
                retry_after=retry_after,
                error=error,
                usage=usage,
            )

        if status in (401, 403):
            # token 失效，下次调用重新认证
            self._auth_token = None
            self._action_token = None

        if status in NON_RETRYABLE_STATUS:
            return TagResult(
                outcome=TagOutcome.FATAL, status_code=status, error=error, usage=usage
            )

        return TagResult(
            outcome=TagOutcome.RETRYABLE, status_code=status, error=error, usage=usage
        )


def create_greader_client(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GReaderClient:
    """根据配置创建客户端."""
    config = GReaderConfig(
        base_url=settings.greader_base_url,
        username=settings.greader_username,
        api_password=settings.greader_api_password,
        api_path=settings.greader_api_path,
        timeout=settings.uplink_call_timeout_seconds,
    )
    return GReaderClient(config, transport=transport)
