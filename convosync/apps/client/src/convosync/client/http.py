"""ChatApiClient -- REST 协作方封装

三个请求：
- GET  /api/chat/history/{conversation_id}  历史消息
- POST /api/chat                            发送消息（携带最近消息窗口）
- POST /api/chat/createInstance             创建会话（管理员模式走独立端点）

失败统一包装为 convosync.client.exceptions 中的异常，由 ChatSession 转化为状态。
"""

from typing import Any

import httpx
import structlog
from convosync.core.models import Identity, Message
from pydantic import BaseModel, Field, ValidationError

from .config import ClientConfig
from .exceptions import ClientError, HistoryFetchError, RateLimitedError, SendError

log = structlog.get_logger()


class HistoryPage(BaseModel):
    """历史接口响应"""

    messages: list[Message] = Field(default_factory=list)
    user: Identity | None = Field(default=None, description="服务端解析出的当前用户")


class SendResult(BaseModel):
    """发送接口响应；message 为服务端回显（可选）"""

    message: Message | None = None


class ChatApiClient:
    """REST API 客户端

    transport 可注入（测试中使用 httpx.MockTransport）。
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._http = httpx.AsyncClient(
            base_url=config.api_url.rstrip("/"),
            timeout=config.timeout_s,
            transport=transport,
        )

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.aclose()

    def _app_headers(self, user: Identity | None) -> dict[str, str]:
        headers = {"appToken": self._config.api_token.get_secret_value()}
        if user is not None and user.token:
            headers["x-use-chatbot-auth"] = "true"
            headers["Authorization"] = f"Bearer {user.token}"
        return headers

    async def fetch_history(self, conversation_id: str) -> HistoryPage:
        """拉取会话历史

        Raises:
            RateLimitedError: HTTP 429
            HistoryFetchError: 网络错误、非 2xx 或响应不合法
        """
        headers = {}
        if token := self._config.api_token.get_secret_value():
            headers["Authorization"] = f"Bearer {token}"

        try:
            resp = await self._http.get(f"/api/chat/history/{conversation_id}", headers=headers)
        except httpx.HTTPError as e:
            log.warning("history_fetch_failed", conversation_id=conversation_id, error=str(e))
            raise HistoryFetchError(conversation_id, str(e)) from e

        if resp.status_code == 429:
            log.warning("history_fetch_rate_limited", conversation_id=conversation_id)
            raise RateLimitedError()
        if not resp.is_success:
            raise HistoryFetchError(conversation_id, f"HTTP {resp.status_code}")

        try:
            page = HistoryPage.model_validate_json(resp.content)
        except ValidationError as e:
            log.warning(
                "history_payload_invalid",
                conversation_id=conversation_id,
                error_count=e.error_count(),
            )
            raise HistoryFetchError(conversation_id, "invalid payload") from e

        log.debug(
            "history_fetched",
            conversation_id=conversation_id,
            message_count=len(page.messages),
        )
        return page

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        window: list[Message],
        user: Identity | None = None,
    ) -> Message | None:
        """发送消息，返回服务端回显（可能为 None）

        Raises:
            RateLimitedError: HTTP 429
            SendError: 网络错误或非 2xx
        """
        body = {
            "message": text,
            "messages": [m.model_dump(mode="json", by_alias=True) for m in window],
            "chatInstanceId": conversation_id,
            "chatModelId": self._config.model_id,
            "lang": self._config.lang,
        }
        try:
            resp = await self._http.post("/api/chat", json=body, headers=self._app_headers(user))
        except httpx.HTTPError as e:
            log.warning("message_send_failed", conversation_id=conversation_id, error=str(e))
            raise SendError(str(e)) from e

        if resp.status_code == 429:
            raise RateLimitedError()
        if not resp.is_success:
            raise SendError(f"HTTP {resp.status_code}", status_code=resp.status_code)

        try:
            return SendResult.model_validate_json(resp.content).message
        except ValidationError:
            # 回显不影响正确性，消息 ID 以推送通道为准
            log.debug("send_echo_invalid", conversation_id=conversation_id)
            return None

    async def create_conversation(self, user: Identity | None = None) -> str:
        """创建新会话，返回会话 ID

        Raises:
            ClientError: 网络错误、非 2xx 或响应缺少会话 ID
        """
        if self._config.admin:
            path = f"/api/admin/chatModel/{self._config.model_id}/smartadmin/instance"
        else:
            path = "/api/chat/createInstance"
        body = {
            "chatModelId": self._config.model_id,
            "lang": self._config.lang,
            "userEmail": (user.email if user else "") or "anonymous@example.com",
            "userName": (user.name if user else "") or "Anonymous",
        }
        try:
            resp = await self._http.post(path, json=body, headers=self._app_headers(user))
        except httpx.HTTPError as e:
            raise ClientError(f"会话创建失败: {e}") from e

        if not resp.is_success:
            raise ClientError(f"会话创建失败: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ClientError("会话创建失败: 响应不是合法 JSON") from e
        conversation_id = data.get("chatInstanceId") if isinstance(data, dict) else None
        if not conversation_id:
            raise ClientError("会话创建失败: 响应缺少 chatInstanceId")
        return str(conversation_id)
