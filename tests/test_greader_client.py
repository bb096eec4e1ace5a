"""测试 Google Reader 客户端."""

from urllib.parse import parse_qs

import httpx
import pytest

from readersync.core.greader import (
    READ_TAG,
    STARRED_TAG,
    GReaderClient,
    GReaderConfig,
    TagOutcome,
    parse_retry_after,
)
from readersync.models.sync_queue import ActionKind

BASE = "https://rss.example.com/api/greader.php"


def _client(handler, requests: list[httpx.Request] | None = None) -> GReaderClient:
    def record(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/accounts/ClientLogin"):
            return httpx.Response(200, text="SID=x\nLSID=y\nAuth=secret-token\n")
        if request.url.path.endswith("/reader/api/0/token"):
            return httpx.Response(200, text="action-token\n")
        if requests is not None:
            requests.append(request)
        return handler(request)

    config = GReaderConfig(
        base_url="https://rss.example.com",
        username="alice",
        api_password="pw",
    )
    return GReaderClient(config, transport=httpx.MockTransport(record))


class TestEditTag:
    """测试 edit-tag 调用."""

    @pytest.mark.parametrize(
        ("action_kind", "param", "tag"),
        [
            (ActionKind.READ, "a", READ_TAG),
            (ActionKind.UNREAD, "r", READ_TAG),
            (ActionKind.STAR, "a", STARRED_TAG),
            (ActionKind.UNSTAR, "r", STARRED_TAG),
        ],
    )
    async def test_form_body(self, action_kind: str, param: str, tag: str) -> None:
        """表单包含重复的 i 字段、标签参数和 T token."""
        requests: list[httpx.Request] = []
        client = _client(lambda r: httpx.Response(200, text="OK"), requests)

        result = await client.edit_tag(action_kind, ["id-1", "id-2"])
        await client.close()

        assert result.ok
        request = requests[0]
        assert str(request.url) == f"{BASE}/reader/api/0/edit-tag"
        assert request.headers["Authorization"] == "GoogleLogin auth=secret-token"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        form = parse_qs(request.content.decode())
        assert form["i"] == ["id-1", "id-2"]
        assert form[param] == [tag]
        assert form["T"] == ["action-token"]

    async def test_rate_limited(self) -> None:
        """429 返回限流结果和重试提示."""
        client = _client(
            lambda r: httpx.Response(429, headers={"Retry-After": "120"}, text="slow down")
        )
        result = await client.edit_tag(ActionKind.READ, ["id-1"])
        await client.close()

        assert result.outcome == TagOutcome.RATE_LIMITED
        assert result.retry_after == 120

    @pytest.mark.parametrize(
        ("status", "outcome"),
        [
            (400, TagOutcome.FATAL),
            (413, TagOutcome.FATAL),
            (500, TagOutcome.RETRYABLE),
            (503, TagOutcome.RETRYABLE),
        ],
    )
    async def test_status_mapping(self, status: int, outcome: str) -> None:
        """错误状态码映射."""
        client = _client(lambda r: httpx.Response(status, text="error"))
        result = await client.edit_tag(ActionKind.STAR, ["id-1"])
        await client.close()

        assert result.outcome == outcome
        assert result.status_code == status

    async def test_unauthorized_clears_token(self) -> None:
        """401 时清除 token，下次重新认证."""
        client = _client(lambda r: httpx.Response(401, text="Unauthorized"))
        result = await client.edit_tag(ActionKind.READ, ["id-1"])

        assert result.outcome == TagOutcome.RETRYABLE
        assert client.is_authenticated is False
        await client.close()

    async def test_network_error_is_retryable(self) -> None:
        """网络错误按可重试处理."""

        def fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(fail)
        result = await client.edit_tag(ActionKind.READ, ["id-1"])
        await client.close()

        assert result.outcome == TagOutcome.RETRYABLE

    async def test_usage_headers(self) -> None:
        """解析写操作配额头."""
        client = _client(
            lambda r: httpx.Response(
                200,
                text="OK",
                headers={
                    "X-Reader-Zone2-Usage": "42",
                    "X-Reader-Zone2-Limit": "100",
                    "X-Reader-Limits-Reset-After": "3600",
                },
            )
        )
        result = await client.edit_tag(ActionKind.READ, ["id-1"])
        await client.close()

        assert result.usage is not None
        assert result.usage.usage == 42
        assert result.usage.limit == 100
        assert result.usage.reset_after_seconds == 3600

    async def test_unknown_action_is_fatal(self) -> None:
        """未知变更类型不发请求."""
        requests: list[httpx.Request] = []
        client = _client(lambda r: httpx.Response(200), requests)
        result = await client.edit_tag("archive", ["id-1"])
        await client.close()

        assert result.outcome == TagOutcome.FATAL
        assert requests == []


class TestGetItems:
    """测试拉取文章."""

    async def test_parses_read_and_starred(self) -> None:
        """从 categories 解析已读/收藏状态."""
        payload = {
            "items": [
                {
                    "id": "tag:google.com,2005:reader/item/0001",
                    "title": "Hello",
                    "published": 1767960000,
                    "alternate": [{"href": "https://example.com/hello"}],
                    "origin": {"streamId": "feed/1"},
                    "summary": {"content": "<p>hi</p>"},
                    "categories": [READ_TAG, STARRED_TAG],
                },
                {
                    "id": "tag:google.com,2005:reader/item/0002",
                    "origin": {"streamId": "feed/1"},
                    "categories": [],
                },
            ]
        }
        client = _client(lambda r: httpx.Response(200, json=payload))
        await client.authenticate()
        articles = await client.get_items(count=10)
        await client.close()

        assert [a.id for a in articles] == [
            "tag:google.com,2005:reader/item/0001",
            "tag:google.com,2005:reader/item/0002",
        ]
        assert articles[0].is_read is True
        assert articles[0].is_starred is True
        assert articles[0].url == "https://example.com/hello"
        assert articles[0].published_at is not None
        assert articles[0].published_at.tzinfo is None
        assert articles[1].is_read is False
        assert articles[1].title == "无标题"


class TestParseRetryAfter:
    """测试 Retry-After 解析."""

    def test_seconds(self) -> None:
        assert parse_retry_after("30") == 30

    def test_missing_uses_default(self) -> None:
        assert parse_retry_after(None, default=60) == 60
        assert parse_retry_after("soon", default=45) == 45

    def test_http_date_in_past(self) -> None:
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0
