"""聊天后端的 HTTP 适配器。

本模块负责：

1. 把控制器的调用转换为后端 HTTP 请求（健康检查、新建会话、发送消息、附件、事件流）。
2. 处理网络/后端异常，统一包装为 ConnectivityError / BackendError。
3. 把响应 JSON 解析为 ChatReply / HealthStatus，把事件流拆成原始 data 字符串。

事件流的 data 内容在这里不做 JSON 解析，解码统一交给 domain.events.decode_event。
"""

from typing import Any, AsyncIterator, Optional
from urllib.parse import quote

import httpx

from chat_core.config.settings import settings as default_settings
from chat_core.domain.exceptions import BackendError, ConnectivityError, ConversationCreationError
from chat_core.domain.models import Attachment, ChatReply, HealthStatus, token_count
from chat_core.infrastructure.logging.logger import logger


class HttpBackendClient:
    """基于 httpx.AsyncClient 的后端客户端。

    - client: 可注入已配置好的 AsyncClient（测试中使用 MockTransport）；
      未注入时按配置自行创建，并在 aclose() 中关闭。
    """

    def __init__(self, cfg=None, client: Optional[httpx.AsyncClient] = None):
        self._settings = cfg or default_settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.api_url,
            timeout=self._settings.http_timeout,
            trust_env=False,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ---- 健康检查 ----

    async def health(self) -> HealthStatus:
        try:
            resp = await self._client.get("/api/health")
            if resp.status_code >= 400:
                return HealthStatus()
            data = resp.json()
        except (httpx.HTTPError, ValueError):
            return HealthStatus()
        if not isinstance(data, dict):
            return HealthStatus()
        return HealthStatus(connected=True, model_loaded=bool(data.get("model_loaded")))

    # ---- 会话 ----

    async def create_conversation(self) -> str:
        try:
            resp = await self._client.post("/api/chat/new")
        except httpx.HTTPError as e:
            raise ConversationCreationError(code="CONVERSATION_CREATE_FAILED", message=str(e))
        data = self._json_or_none(resp)
        if isinstance(data, dict) and isinstance(data.get("error"), str) and data["error"]:
            raise ConversationCreationError(
                code="CONVERSATION_CREATE_FAILED", message=data["error"], http_status=resp.status_code
            )
        if resp.status_code >= 400:
            raise ConversationCreationError(
                code="CONVERSATION_CREATE_FAILED",
                message=f"Conversation creation failed with HTTP {resp.status_code}",
                http_status=resp.status_code,
            )
        conversation_id = data.get("conversation_id") if isinstance(data, dict) else None
        if not isinstance(conversation_id, str) or not conversation_id:
            raise ConversationCreationError(
                code="CONVERSATION_CREATE_FAILED", message="Backend did not return a conversation id"
            )
        return conversation_id

    # ---- 非流式 ----

    async def send_message(self, conversation_id: str, message: str) -> ChatReply:
        try:
            resp = await self._client.post(self._chat_path(conversation_id), json={"message": message})
        except httpx.HTTPError as e:
            raise ConnectivityError(code="NETWORK_ERROR", message=str(e))
        return self._parse_reply(resp)

    async def send_attachment(
        self, conversation_id: str, attachment: Attachment, message: Optional[str] = None
    ) -> ChatReply:
        params = {"message": message} if message else None
        try:
            resp = await self._client.post(
                self._chat_path(conversation_id),
                params=params,
                files={"file": (attachment.name, attachment.data, attachment.content_type)},
            )
        except httpx.HTTPError as e:
            raise ConnectivityError(code="NETWORK_ERROR", message=str(e))
        return self._parse_reply(resp)

    # ---- 流式 ----

    async def stream(self, conversation_id: str, message: str) -> AsyncIterator[str]:
        """打开事件流，逐条 yield 每个事件的 data 字段。

        多行 data 按 SSE 规则用换行拼接；注释行与 event/id/retry 字段忽略。
        流式连接不设读超时，只保留连接超时。
        """

        timeout = httpx.Timeout(self._settings.http_timeout, read=None)
        try:
            async with self._client.stream(
                "GET",
                f"{self._chat_path(conversation_id)}/stream",
                params={"message": message},
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise self._backend_error(resp)
                data_lines: list[str] = []
                async for line in resp.aiter_lines():
                    if not line:
                        if data_lines:
                            yield "\n".join(data_lines)
                            data_lines = []
                        continue
                    if line.startswith(":"):
                        continue
                    if line.startswith("data:"):
                        value = line[5:]
                        data_lines.append(value[1:] if value.startswith(" ") else value)
                if data_lines:
                    yield "\n".join(data_lines)
        except httpx.HTTPError as e:
            raise ConnectivityError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)

    # ---- 辅助 ----

    @staticmethod
    def _chat_path(conversation_id: str) -> str:
        return f"/api/chat/{quote(conversation_id, safe='')}"

    @staticmethod
    def _json_or_none(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return None

    def _backend_error(self, resp: httpx.Response) -> BackendError:
        data = self._json_or_none(resp)
        if isinstance(data, dict) and isinstance(data.get("error"), str) and data["error"]:
            message = data["error"]
        else:
            message = f"Backend returned HTTP {resp.status_code}"
        return BackendError(code="BACKEND_ERROR", message=message, http_status=resp.status_code)

    def _parse_reply(self, resp: httpx.Response) -> ChatReply:
        """将 /api/chat/{id} 的响应 JSON 解析为 ChatReply。"""

        data = self._json_or_none(resp)
        if resp.status_code >= 400 or not isinstance(data, dict):
            raise self._backend_error(resp)
        if isinstance(data.get("error"), str) and data["error"]:
            raise BackendError(code="BACKEND_ERROR", message=data["error"], http_status=resp.status_code)
        response = data.get("response")
        if not isinstance(response, str):
            raise BackendError(code="BACKEND_ERROR", message="Backend returned no response text")
        tokens_used = token_count(data.get("tokens_used"))
        echoed = data.get("conversation_id")
        reply = ChatReply(
            response=response,
            tokens_used=tokens_used,
            conversation_id=echoed if isinstance(echoed, str) else None,
            raw=data,
        )
        logger.debug("backend.reply", extra={"extra": {"tokens_used": tokens_used}})
        return reply

