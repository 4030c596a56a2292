"""会话控制器。

ConversationController 是对外的唯一入口，负责：

- 会话的创建与复用（ensure_conversation / start_new_conversation）。
- 发送消息：带附件时走一次性可取消请求，否则交给 StreamSession。
- 停止流（stop_stream）与资源释放（aclose / async with）。
- 生成只读快照（snapshot），供界面层渲染。

同一时刻最多只有一个进行中的交换，新的发送请求会被直接拒绝。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from chat_core.backend.base import BackendClient
from chat_core.config.settings import settings as default_settings
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import BackendError, ConnectivityError, ConversationCreationError
from chat_core.domain.message_log import MessageLog
from chat_core.domain.models import Attachment, ChatReply, HealthStatus, Message
from chat_core.domain.thinking import display_message
from chat_core.infrastructure.logging.logger import logger
from chat_core.session.stream_session import StreamSession


@dataclass(frozen=True)
class ChatSnapshot:
    """某一时刻的界面状态。messages 为展示视图（已剥离思考片段）。"""

    conversation_id: Optional[str]
    messages: Tuple[Message, ...]
    loading: bool
    typing: bool
    status: HealthStatus


def describe_user_message(text: str, attachment: Optional[Attachment]) -> str:
    """生成用户消息的展示文本，带附件时注明文件名。"""

    if attachment is None:
        return text
    label = f"[Attachment: {attachment.name}]"
    return f"{text}\n{label}" if text else label


class ConversationController:
    def __init__(
        self,
        backend: BackendClient,
        store: ConversationStore,
        cfg=None,
        initial_messages: Optional[Tuple[Message, ...]] = None,
    ):
        self._backend = backend
        self._store = store
        self._settings = cfg or default_settings
        self._log = MessageLog(store)
        self._session: Optional[StreamSession] = None
        self._task: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Task] = None
        self._loading = False
        self._generation = 0
        self._status = HealthStatus()

        state = store.load()
        last_id = state.last_conversation_id
        if last_id and last_id in state.conversations:
            self._log.reset(last_id, state.conversations[last_id].messages)
            self._log_info("Restored conversation", conversation_id=last_id, messages=len(self._log))
        elif initial_messages:
            self._log.reset(None, initial_messages)

    async def __aenter__(self) -> "ConversationController":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ---- 只读状态 ----

    @property
    def conversation_id(self) -> Optional[str]:
        return self._log.conversation_id

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._log.messages

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def typing(self) -> bool:
        if not self._loading:
            return False
        return self._session is None or not self._session.first_token_seen

    @property
    def busy(self) -> bool:
        if self._loading:
            return True
        # 被取消的交换在连接真正关闭前仍算占用
        return any(t is not None and not t.done() for t in (self._task, self._closing))

    @property
    def session(self) -> Optional[StreamSession]:
        return self._session

    def snapshot(self) -> ChatSnapshot:
        start = self._settings.thinking_start_marker
        end = self._settings.thinking_end_marker
        return ChatSnapshot(
            conversation_id=self.conversation_id,
            messages=tuple(display_message(m, start, end) for m in self._log.messages),
            loading=self.loading,
            typing=self.typing,
            status=self._status,
        )

    # ---- 健康检查 ----

    async def check_health(self) -> HealthStatus:
        self._status = await self._backend.health()
        return self._status

    # ---- 会话 ----

    async def ensure_conversation(self) -> str:
        """返回当前会话 id；没有时向后端申请并登记到本地存储。

        失败抛 ConversationCreationError，消息列表保持不变。
        """

        if self._log.conversation_id:
            return self._log.conversation_id
        conversation_id = await self._backend.create_conversation()
        if self._log.conversation_id:
            # 等待期间已有其他调用登记了会话（例如 start_new_conversation）
            self._log_info("Discarded late conversation id", discarded=conversation_id)
            return self._log.conversation_id
        self._log.bind(conversation_id)
        self._log_info("Created new conversation", conversation_id=conversation_id)
        return conversation_id

    async def start_new_conversation(self) -> str:
        self.stop_stream()
        generation = self._generation
        conversation_id = await self._backend.create_conversation()
        if generation != self._generation and self._log.conversation_id:
            # 更晚的一次新建或停止已经接管了会话
            self._log_info("Discarded late conversation id", discarded=conversation_id)
            return self._log.conversation_id
        self._log.reset(conversation_id)
        self._log.bind(conversation_id)
        self._log_info("Started new conversation", conversation_id=conversation_id)
        return conversation_id

    # ---- 发送 ----

    async def send_message(self, text: Optional[str] = None, attachment: Optional[Attachment] = None) -> bool:
        """发送一条消息并等待本轮交换结束。

        Returns:
            是否受理。空消息或已有进行中的交换时返回 False，且没有任何副作用。

        Raises:
            ConversationCreationError: 新建会话失败，消息列表不变。
        """

        text = (text or "").strip()
        if not text and attachment is None:
            return False
        if self.busy:
            self._log_info("Rejected send while busy", conversation_id=self.conversation_id)
            return False

        self._loading = True
        generation = self._generation
        try:
            conversation_id = await self.ensure_conversation()
        except ConversationCreationError as e:
            self._log_warning("Conversation creation failed", error_code=e.code, error=e.message)
            if generation == self._generation:
                self._loading = False
            raise
        if generation != self._generation:
            # 创建会话期间被 stop_stream 取消
            return False

        self._log.append(Message(role="user", content=describe_user_message(text, attachment)))

        if attachment is not None:
            coro = self._exchange_attachment(conversation_id, text, attachment)
        elif not self._settings.stream_responses:
            coro = self._exchange_text(conversation_id, text)
        else:
            self._session = StreamSession(
                self._backend,
                self._log,
                conversation_id,
                connectivity_message=self._settings.connectivity_error_message,
            )
            coro = self._session.open(text)

        task = asyncio.ensure_future(coro)
        self._task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            # 调用方被取消（例如界面卸载），连接不能悬空
            self.stop_stream()
            raise
        finally:
            if self._task is task:
                self._finish()
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
        return True

    def stop_stream(self) -> None:
        """停止进行中的交换。可重复调用，结束后 loading 必为 False。"""

        self._generation += 1
        session, task = self._session, self._task
        if session is not None:
            session.close()
        if task is not None and not task.done():
            task.cancel()
            self._closing = task
            self._log_info("Cancelled exchange", conversation_id=self.conversation_id)
        self._finish()

    async def aclose(self) -> None:
        """释放全部资源：停止进行中的交换并关闭后端连接。"""

        pending = {t for t in (self._task, self._closing) if t is not None}
        self.stop_stream()
        if pending:
            await asyncio.wait(pending)
        await self._backend.aclose()

    # ---- 非流式交换 ----

    async def _exchange_attachment(self, conversation_id: str, text: str, attachment: Attachment) -> None:
        await self._exchange(
            conversation_id,
            self._backend.send_attachment(conversation_id, attachment, text or None),
        )

    async def _exchange_text(self, conversation_id: str, text: str) -> None:
        await self._exchange(conversation_id, self._backend.send_message(conversation_id, text))

    async def _exchange(self, conversation_id: str, request) -> None:
        try:
            reply: ChatReply = await request
        except BackendError as e:
            self._log_warning("Backend error", conversation_id=conversation_id, error_code=e.code)
            self._log.append(Message(role="error", content=e.message))
            return
        except ConnectivityError as e:
            self._log_warning("Connectivity error", conversation_id=conversation_id, error=e.message)
            self._log.append(Message(role="error", content=self._settings.connectivity_error_message))
            return
        if reply.conversation_id and reply.conversation_id != conversation_id:
            self._log_warning(
                "Reply echoed a different conversation id",
                conversation_id=conversation_id,
                echoed=reply.conversation_id,
            )
        self._log.append(Message(role="assistant", content=reply.response, tokens=reply.tokens_used))

    # ---- 内部 ----

    def _finish(self) -> None:
        self._session = None
        self._task = None
        self._loading = False

    def _log_info(self, message: str, **fields: Any) -> None:
        self._log_event(logging.INFO, message, fields)

    def _log_warning(self, message: str, **fields: Any) -> None:
        self._log_event(logging.WARNING, message, fields)

    def _log_event(self, level: int, message: str, fields: Dict[str, Any]) -> None:
        payload: Dict[str, Any] = {"conversation_id": self.conversation_id}
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
