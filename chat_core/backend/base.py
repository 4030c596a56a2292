"""后端客户端抽象接口。

控制器与流会话不直接依赖 httpx，而是依赖此协议：

- HttpBackendClient 是唯一的生产实现。
- 测试中可以用手写的假后端替换，无需真实网络连接。
"""

from typing import AsyncIterator, Optional, Protocol

from chat_core.domain.models import Attachment, ChatReply, HealthStatus


class BackendClient(Protocol):
    """聊天后端客户端协议。

    实现者需要提供：
    - health(): 健康检查，任何失败都返回未连接状态，不抛异常。
    - create_conversation(): 申请新的会话 id，失败抛 ConversationCreationError。
    - send_message / send_attachment: 一次性请求-响应交换。
    - stream(): 打开事件流，逐条产出原始 data 字符串。
    """

    async def health(self) -> HealthStatus:
        ...

    async def create_conversation(self) -> str:
        ...

    async def send_message(self, conversation_id: str, message: str) -> ChatReply:
        ...

    async def send_attachment(
        self, conversation_id: str, attachment: Attachment, message: Optional[str] = None
    ) -> ChatReply:
        ...

    def stream(self, conversation_id: str, message: str) -> AsyncIterator[str]:
        """打开事件流。连接失败抛 ConnectivityError，后端拒绝抛 BackendError。"""

        ...

    async def aclose(self) -> None:
        ...
